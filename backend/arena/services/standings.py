"""Ranked reads over the standings tables, shared by every service."""
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from arena.models import GlobalStanding, LeaderboardSnapshot, TournamentParticipant
from arena.ranking import assign_ranks, order_clauses, outranks_clause
from arena.schemas import LeaderboardEntry

_GLOBAL_ORDER = order_clauses(GlobalStanding.high_score, GlobalStanding.high_score_at, GlobalStanding.user_id)
_TOURNAMENT_ORDER = order_clauses(
    TournamentParticipant.best_score, TournamentParticipant.best_score_at, TournamentParticipant.user_id
)


def global_entry(rank: int, standing: GlobalStanding) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=rank,
        user_id=standing.user_id,
        player_name=standing.nickname,
        score=standing.high_score,
        achieved_at=standing.high_score_at,
        total_games=standing.total_games,
    )


def tournament_entry(rank: int, participant: TournamentParticipant) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=rank,
        user_id=participant.user_id,
        player_name=participant.player_name,
        score=participant.best_score,
        achieved_at=participant.best_score_at,
        total_games=participant.total_games,
    )


def global_standings(db: Session, limit: int, offset: int = 0) -> List[LeaderboardEntry]:
    rows = db.query(GlobalStanding).order_by(*_GLOBAL_ORDER).offset(offset).limit(limit).all()
    return [global_entry(rank, row) for rank, row in assign_ranks(rows, offset)]


def global_rank(db: Session, standing: GlobalStanding) -> int:
    ahead = db.query(func.count(GlobalStanding.user_id)).filter(
        outranks_clause(
            GlobalStanding.high_score, GlobalStanding.high_score_at, GlobalStanding.user_id,
            standing.high_score, standing.high_score_at, standing.user_id,
        )
    ).scalar()
    return ahead + 1


def tournament_standings(db: Session, tournament_id: str, limit: Optional[int] = None,
                         offset: int = 0) -> List[LeaderboardEntry]:
    query = db.query(TournamentParticipant).filter(
        TournamentParticipant.tournament_id == tournament_id
    ).order_by(*_TOURNAMENT_ORDER).offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return [tournament_entry(rank, row) for rank, row in assign_ranks(query.all(), offset)]


def tournament_participants_ranked(db: Session, tournament_id: str) -> List[TournamentParticipant]:
    """All participants of one tournament in ranking order."""
    return db.query(TournamentParticipant).filter(
        TournamentParticipant.tournament_id == tournament_id
    ).order_by(*_TOURNAMENT_ORDER).all()


def tournament_rank(db: Session, participant: TournamentParticipant) -> int:
    ahead = db.query(func.count(TournamentParticipant.id)).filter(
        TournamentParticipant.tournament_id == participant.tournament_id,
        outranks_clause(
            TournamentParticipant.best_score, TournamentParticipant.best_score_at, TournamentParticipant.user_id,
            participant.best_score, participant.best_score_at, participant.user_id,
        ),
    ).scalar()
    return ahead + 1


def write_snapshot(db: Session, participant: TournamentParticipant, rank: int, taken_at,
                   is_final: bool = False) -> LeaderboardSnapshot:
    snapshot = LeaderboardSnapshot(
        tournament_id=participant.tournament_id,
        user_id=participant.user_id,
        player_name=participant.player_name,
        score=participant.best_score,
        rank=rank,
        is_final=is_final,
        snapshot_time=taken_at,
    )
    db.add(snapshot)
    return snapshot
