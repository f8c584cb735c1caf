"""
Tournament management.

Handles creation, registration, direct score submission, lifecycle transitions
and cached reads. Status changes are compare-and-set updates, so a transition
that lost a race (or was already applied) is a logged no-op:

    upcoming | registration -> active -> ended -> archived
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from arena.cache import CURRENT_TOURNAMENT_KEY, CacheManager, player_stats_key, tournament_top_key
from arena.clock import Clock, start_of_next_week, utcnow
from arena.config import Settings, get_settings
from arena.exceptions import (
    AlreadyRegisteredError,
    NotRegisteredError,
    RegistrationClosedError,
    ScoreRejectedError,
    TournamentFullError,
    TournamentNotActiveError,
    TournamentNotFoundError,
    ValidationError,
)
from arena.models import LeaderboardSnapshot, Tournament, TournamentParticipant, TournamentStatus
from arena.schemas import (
    EndTournamentResult,
    LeaderboardEntry,
    PlayerStats,
    PrizeCalculationResult,
    RegistrationResult,
    ScoreSubmission,
    SubmissionResult,
    TournamentSummary,
)
from arena.services import notifications
from arena.services import tournament_log as log
from arena.services.aggregator import LeaderboardAggregator
from arena.services.anti_cheat import AntiCheatEngine
from arena.services.notifications import LoggingNotifier, Notifier
from arena.services.prizes import PrizeCalculator, tier_table, total_coins
from arena.services.standings import (
    tournament_entry,
    tournament_participants_ranked,
    tournament_rank,
    tournament_standings,
    write_snapshot,
)

logger = logging.getLogger(__name__)

REGISTRATION_OPEN = (
    TournamentStatus.UPCOMING.value,
    TournamentStatus.REGISTRATION.value,
    TournamentStatus.ACTIVE.value,
)
STARTABLE = (TournamentStatus.UPCOMING.value, TournamentStatus.REGISTRATION.value)
CURRENT = "current"


class TournamentManager:
    """
    Tournament lifecycle and standings.

    ``anti_cheat``, ``aggregator`` and ``prize_calculator`` are optional: without
    them submissions are not screened, ending skips the final aggregation pass
    and prizes are left to the catch-up sweep.
    """

    def __init__(self, session_factory: sessionmaker, cache: CacheManager,
                 anti_cheat: Optional[AntiCheatEngine] = None,
                 aggregator: Optional[LeaderboardAggregator] = None,
                 prize_calculator: Optional[PrizeCalculator] = None,
                 notifier: Optional[Notifier] = None,
                 settings: Optional[Settings] = None, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.cache = cache
        self.anti_cheat = anti_cheat
        self.aggregator = aggregator
        self.prize_calculator = prize_calculator
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or get_settings()
        self.clock = clock

    # ========================================================================
    # Creation
    # ========================================================================

    def create_tournament(self, name: str, start_date: datetime, end_date: datetime,
                          prize_pool: Optional[int] = None, tournament_type: str = "weekly",
                          description: Optional[str] = None,
                          max_participants: Optional[int] = None) -> TournamentSummary:
        if prize_pool is None:
            prize_pool = self.settings.default_prize_pool
        if prize_pool is None:
            prize_pool = total_coins()
        if prize_pool < 0:
            raise ValidationError("Prize pool must be non-negative", "prize_pool")
        if end_date <= start_date:
            raise ValidationError("Tournament must end after it starts", "end_date")

        now = self.clock()
        tournament = Tournament(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            tournament_type=tournament_type,
            status=TournamentStatus.UPCOMING.value,
            start_date=start_date,
            end_date=end_date,
            prize_pool=prize_pool,
            prize_distribution=tier_table(),
            max_participants=max_participants or self.settings.tournament_max_participants,
            prizes_calculated=False,
            created_at=now,
            updated_at=now,
        )

        db = self.session_factory()
        try:
            db.add(tournament)
            log.log_tournament_event(db, tournament.id, log.CREATED, now, {
                "name": name,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat(),
                "prize_pool": prize_pool,
            })
            db.commit()
            db.refresh(tournament)
            summary = self._summary(db, tournament)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self.cache.delete(CURRENT_TOURNAMENT_KEY)
        logger.info(f"Tournament created: id={summary.id}, name={name}, start={start_date}, end={end_date}")
        return summary

    def create_weekly_tournament(self, prize_pool: Optional[int] = None,
                                 start_offset_hours: Optional[int] = None,
                                 name: Optional[str] = None) -> TournamentSummary:
        """
        Create next week's tournament.

        It starts at next Monday 00:00 UTC plus ``start_offset_hours`` and runs
        for one week minus one second.
        """
        if start_offset_hours is None:
            start_offset_hours = self.settings.tournament_start_offset_hours

        start_date = start_of_next_week(self.clock()) + timedelta(hours=start_offset_hours)
        end_date = start_date + timedelta(days=7) - timedelta(seconds=1)
        name = name or f"Weekly Championship {start_date.strftime('%Y-%m-%d')}"

        return self.create_tournament(
            name=name,
            start_date=start_date,
            end_date=end_date,
            prize_pool=prize_pool,
            tournament_type="weekly",
            description="Weekly competitive tournament",
        )

    # ========================================================================
    # Players
    # ========================================================================

    def register_player(self, tournament_id: str, user_id: str,
                        player_name: Optional[str] = None) -> RegistrationResult:
        """
        Register a player.

        Raises:
            TournamentNotFoundError: Unknown tournament
            RegistrationClosedError: Tournament has ended or been archived
            TournamentFullError: ``max_participants`` reached
            AlreadyRegisteredError: Player already has a standing here
        """
        if not user_id:
            raise ValidationError("Player id is required", "user_id")

        db = self.session_factory()
        try:
            tournament = self._get(db, tournament_id)
            if tournament.status not in REGISTRATION_OPEN:
                raise RegistrationClosedError(tournament_id)

            if tournament.max_participants is not None:
                count = db.query(func.count(TournamentParticipant.id)).filter(
                    TournamentParticipant.tournament_id == tournament_id
                ).scalar()
                if count >= tournament.max_participants:
                    raise TournamentFullError(tournament_id, tournament.max_participants)

            now = self.clock()
            participant = TournamentParticipant(
                tournament_id=tournament_id,
                user_id=user_id,
                player_name=player_name or user_id,
                registered_at=now,
                best_score=0,
                total_games=0,
            )
            db.add(participant)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                raise AlreadyRegisteredError(tournament_id, user_id)

            log.log_tournament_event(db, tournament_id, log.PARTICIPANT_JOINED, now,
                                     {"player_name": participant.player_name}, user_id=user_id)
            db.commit()
            result = RegistrationResult(participant_id=participant.id, tournament_id=tournament_id, user_id=user_id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self.cache.invalidate_player(user_id)
        logger.info(f"Player registered: tournament={tournament_id}, user_id={user_id}")
        return result

    def submit_score(self, tournament_id: str, user_id: str, score: int,
                     game_data: Optional[Dict[str, Any]] = None) -> SubmissionResult:
        """
        Submit a score directly to an active tournament.

        The best score is max-merged; a new personal best writes a snapshot.

        Raises:
            ValidationError: Negative score
            TournamentNotFoundError: Unknown tournament
            TournamentNotActiveError: Tournament is not running
            NotRegisteredError: Player never registered
            ScoreRejectedError: Anti-cheat rejected the submission
        """
        if score < 0:
            raise ValidationError("Score must be non-negative", "score")
        game_data = game_data or {}

        db = self.session_factory()
        try:
            tournament = self._get(db, tournament_id)
            if tournament.status != TournamentStatus.ACTIVE.value:
                raise TournamentNotActiveError(tournament_id, tournament.status)

            participant = self._participant(db, tournament_id, user_id)
            if participant is None:
                raise NotRegisteredError(tournament_id, user_id)

            now = self.clock()
            validation = None
            if self.anti_cheat is not None:
                validation = self.anti_cheat.validate(ScoreSubmission(
                    user_id=user_id,
                    score=score,
                    survival_time_ms=game_data.get("survival_time_ms"),
                    game_duration_ms=game_data.get("game_duration_ms"),
                    device_fingerprint=game_data.get("device_fingerprint"),
                    submitted_at=now,
                ))
                if not validation.accepted:
                    raise ScoreRejectedError(validation.reason, validation.patterns, validation.severity)

            participant = self._participant(db, tournament_id, user_id, for_update=True)
            previous_best = participant.best_score
            new_best = score > previous_best
            if new_best:
                participant.best_score = score
                participant.best_score_at = now
            participant.total_games += 1
            db.flush()

            rank = tournament_rank(db, participant)
            if new_best:
                write_snapshot(db, participant, rank, now)
            log.log_tournament_event(db, tournament_id, log.SCORE_SUBMITTED, now, {
                "score": score,
                "new_best": new_best,
                "rank": rank,
                "game_data": game_data,
            }, user_id=user_id)
            db.commit()

            result = SubmissionResult(
                new_best=new_best,
                score=score,
                previous_best=previous_best,
                rank=rank,
                total_games=participant.total_games,
                validation=validation,
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if new_best:
            self.cache.invalidate_tournament(tournament_id)
        self.cache.invalidate_player(user_id)
        logger.info(
            f"Tournament score submitted: tournament={tournament_id}, user_id={user_id}, "
            f"score={score}, new_best={new_best}, rank={rank}"
        )
        return result

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start_tournament(self, tournament_id: str) -> bool:
        """
        Move an upcoming tournament to active.

        Returns:
            True if this call started it, False if it was not startable
        """
        db = self.session_factory()
        try:
            self._get(db, tournament_id)
            now = self.clock()
            started = db.query(Tournament).filter(
                Tournament.id == tournament_id,
                Tournament.status.in_(STARTABLE),
            ).update(
                {Tournament.status: TournamentStatus.ACTIVE.value, Tournament.updated_at: now},
                synchronize_session=False,
            )
            if not started:
                db.rollback()
                logger.info(f"Tournament {tournament_id} not startable, skipping")
                return False

            log.log_tournament_event(db, tournament_id, log.STARTED, now)
            db.commit()
            user_ids = self._participant_ids(db, tournament_id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self.cache.delete(CURRENT_TOURNAMENT_KEY)
        notifications.broadcast(self.notifier, user_ids, notifications.TOURNAMENT_STARTED,
                                {"tournament_id": tournament_id})
        logger.info(f"Tournament started: {tournament_id} ({len(user_ids)} participants)")
        return True

    def end_tournament(self, tournament_id: str) -> Optional[EndTournamentResult]:
        """
        Close an active tournament.

        Runs a last aggregation pass, freezes the standings as final snapshots,
        pays out prizes and moves the tournament to ended. Returns None when the
        tournament was not active.
        """
        db = self.session_factory()
        try:
            tournament = self._get(db, tournament_id)
            if tournament.status != TournamentStatus.ACTIVE.value:
                logger.info(f"Tournament {tournament_id} is {tournament.status}, not ending")
                return None
            start_date, end_date = tournament.start_date, tournament.end_date
        finally:
            db.close()

        if self.aggregator is not None:
            self.aggregator.update_tournament_leaderboard(tournament_id, start_date, end_date)

        final_standings = self._freeze_standings(tournament_id)
        if final_standings is None:
            logger.info(f"Tournament {tournament_id} was ended by another runner, not ending")
            return None

        prizes = PrizeCalculationResult(tournament_id=tournament_id)
        prizes_calculated = False
        if self.prize_calculator is not None:
            try:
                prizes = self.prize_calculator.calculate_tournament_prizes(tournament_id)
                prizes_calculated = True
            except Exception as e:
                logger.error(f"Prize calculation failed for {tournament_id}, leaving it to the prize sweep: {e}",
                             exc_info=True)

        db = self.session_factory()
        try:
            now = self.clock()
            values = {Tournament.status: TournamentStatus.ENDED.value, Tournament.updated_at: now}
            if prizes_calculated:
                values[Tournament.prizes_calculated] = True
                values[Tournament.prizes_calculated_at] = now
            ended = db.query(Tournament).filter(
                Tournament.id == tournament_id,
                Tournament.status == TournamentStatus.ACTIVE.value,
            ).update(values, synchronize_session=False)
            if not ended:
                db.rollback()
                logger.info(f"Tournament {tournament_id} already ended elsewhere")
                return None

            log.log_tournament_event(db, tournament_id, log.ENDED, now, {
                "participants": len(final_standings),
                "prizes_awarded": prizes.prizes_awarded,
            })
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self.cache.invalidate_tournament(tournament_id)
        self.cache.delete(CURRENT_TOURNAMENT_KEY)
        for entry in final_standings:
            self.cache.invalidate_player(entry.user_id)
            notifications.send(self.notifier, entry.user_id, notifications.TOURNAMENT_ENDED,
                               {"tournament_id": tournament_id, "final_rank": entry.rank})

        logger.info(f"Tournament ended: {tournament_id} ({len(final_standings)} participants)")
        return EndTournamentResult(tournament_id=tournament_id, final_standings=final_standings, prizes=prizes)

    def _freeze_standings(self, tournament_id: str) -> Optional[List[LeaderboardEntry]]:
        """
        Write final snapshots once and stamp ``final_rank`` on every participant.

        Runs under a lock on the tournament row and re-checks that it is still
        active. Returns None when another runner already ended it.
        """
        db = self.session_factory()
        try:
            tournament = db.query(Tournament).filter(
                Tournament.id == tournament_id
            ).with_for_update().populate_existing().first()
            if tournament is None or tournament.status != TournamentStatus.ACTIVE.value:
                db.rollback()
                return None

            now = self.clock()
            participants = tournament_participants_ranked(db, tournament_id)
            already_frozen = db.query(LeaderboardSnapshot.id).filter(
                LeaderboardSnapshot.tournament_id == tournament_id,
                LeaderboardSnapshot.is_final.is_(True),
            ).first() is not None

            entries = []
            for rank, participant in enumerate(participants, start=1):
                if not already_frozen:
                    write_snapshot(db, participant, rank, now, is_final=True)
                if participant.final_rank is None:
                    participant.final_rank = rank
                entries.append(tournament_entry(rank, participant))
            db.commit()
            return entries
        except IntegrityError:
            db.rollback()
            logger.info(f"Final standings for {tournament_id} were frozen by another runner")
            return None
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def archive_tournament(self, tournament_id: str) -> bool:
        db = self.session_factory()
        try:
            now = self.clock()
            archived = db.query(Tournament).filter(
                Tournament.id == tournament_id,
                Tournament.status == TournamentStatus.ENDED.value,
            ).update(
                {Tournament.status: TournamentStatus.ARCHIVED.value, Tournament.updated_at: now},
                synchronize_session=False,
            )
            if not archived:
                db.rollback()
                return False
            log.log_tournament_event(db, tournament_id, log.ARCHIVED, now)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        self.cache.invalidate_tournament(tournament_id)
        logger.info(f"Tournament archived: {tournament_id}")
        return True

    # ========================================================================
    # Reads
    # ========================================================================

    def get_tournament(self, tournament_id: str) -> TournamentSummary:
        db = self.session_factory()
        try:
            return self._summary(db, self._get(db, tournament_id))
        finally:
            db.close()

    def get_current_tournament(self) -> Optional[TournamentSummary]:
        """The active tournament, otherwise the next one to start."""
        cached = self.cache.get(CURRENT_TOURNAMENT_KEY)
        if cached:
            return TournamentSummary(**cached)

        db = self.session_factory()
        try:
            tournament = db.query(Tournament).filter(
                Tournament.status == TournamentStatus.ACTIVE.value
            ).order_by(Tournament.start_date.desc()).first()
            if tournament is None:
                tournament = db.query(Tournament).filter(
                    Tournament.status.in_(STARTABLE)
                ).order_by(Tournament.start_date).first()
            if tournament is None:
                return None
            summary = self._summary(db, tournament)
        finally:
            db.close()

        self.cache.set(CURRENT_TOURNAMENT_KEY, summary.model_dump(mode="json"),
                       self.settings.cache_ttl_current_tournament)
        return summary

    def get_leaderboard(self, tournament_id: str, limit: int = 50, offset: int = 0) -> List[LeaderboardEntry]:
        """Ranked page of one tournament; the top page is served from Redis."""
        size = self.settings.tournament_cache_size
        cacheable = offset + limit <= size
        key = tournament_top_key(tournament_id, size)

        if cacheable:
            cached = self.cache.get(key)
            if cached is not None:
                return [LeaderboardEntry(**item) for item in cached[offset:offset + limit]]

        db = self.session_factory()
        try:
            self._get(db, tournament_id)
            if not cacheable:
                return tournament_standings(db, tournament_id, limit=limit, offset=offset)
            top = tournament_standings(db, tournament_id, limit=size)
        finally:
            db.close()

        self.cache.set(key, [entry.model_dump(mode="json") for entry in top], self.settings.cache_ttl_tournament)
        return top[offset:offset + limit]

    def get_player_stats(self, user_id: str) -> PlayerStats:
        key = player_stats_key(user_id)
        cached = self.cache.get(key)
        if cached:
            return PlayerStats(**cached)

        db = self.session_factory()
        try:
            joined, best_rank, total_prizes = db.query(
                func.count(func.distinct(TournamentParticipant.tournament_id)),
                func.min(TournamentParticipant.final_rank),
                func.coalesce(func.sum(TournamentParticipant.prize_won), 0),
            ).filter(TournamentParticipant.user_id == user_id).one()

            current = db.query(TournamentParticipant).join(
                Tournament, Tournament.id == TournamentParticipant.tournament_id
            ).filter(
                TournamentParticipant.user_id == user_id,
                Tournament.status == TournamentStatus.ACTIVE.value,
            ).order_by(Tournament.start_date.desc()).first()

            stats = PlayerStats(
                tournaments_joined=joined,
                best_rank=best_rank,
                total_prizes=int(total_prizes),
                current_tournament_rank=tournament_rank(db, current) if current is not None else None,
            )
        finally:
            db.close()

        self.cache.set(key, stats.model_dump(mode="json"), self.settings.cache_ttl_player_stats)
        return stats

    def handle_tournament_session(self, tournament_id: str, user_id: str,
                                  player_name: Optional[str] = None,
                                  score: Optional[int] = None,
                                  game_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        One-call client flow: resolve ``"current"``, register the player if
        needed, optionally submit a score, and return the player's rank with the
        top 10.

        A rejected or out-of-window score is reported in ``score_submission``
        instead of raising.
        """
        if tournament_id == CURRENT:
            current = self.get_current_tournament()
            if current is None:
                raise TournamentNotFoundError(CURRENT)
            tournament_id = current.id

        just_registered = False
        db = self.session_factory()
        try:
            registered = self._participant(db, tournament_id, user_id) is not None
        finally:
            db.close()
        if not registered:
            self.register_player(tournament_id, user_id, player_name)
            just_registered = True

        score_submission = None
        if score is not None:
            try:
                submitted = self.submit_score(tournament_id, user_id, score, game_data)
                score_submission = {"accepted": True, **submitted.model_dump(exclude={"validation"})}
            except (ScoreRejectedError, TournamentNotActiveError, ValidationError) as e:
                score_submission = {"accepted": False, "error": e.message}

        db = self.session_factory()
        try:
            tournament = self._summary(db, self._get(db, tournament_id))
            participant = self._participant(db, tournament_id, user_id)
            rank = tournament_rank(db, participant)
            best_score, total_games = participant.best_score, participant.total_games
        finally:
            db.close()

        return {
            "tournament": tournament,
            "player": {
                "registered": True,
                "just_registered": just_registered,
                "rank": rank,
                "best_score": best_score,
                "total_games": total_games,
            },
            "score_submission": score_submission,
            "leaderboard": self.get_leaderboard(tournament_id, limit=10),
        }

    # ========================================================================
    # Helpers
    # ========================================================================

    def _get(self, db: Session, tournament_id: str) -> Tournament:
        tournament = db.get(Tournament, tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        return tournament

    def _participant(self, db: Session, tournament_id: str, user_id: str,
                     for_update: bool = False) -> Optional[TournamentParticipant]:
        query = db.query(TournamentParticipant).filter(
            TournamentParticipant.tournament_id == tournament_id,
            TournamentParticipant.user_id == user_id,
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def _participant_ids(self, db: Session, tournament_id: str) -> List[str]:
        return [
            user_id for (user_id,) in db.query(TournamentParticipant.user_id).filter(
                TournamentParticipant.tournament_id == tournament_id
            ).all()
        ]

    def _summary(self, db: Session, tournament: Tournament) -> TournamentSummary:
        count = db.query(func.count(TournamentParticipant.id)).filter(
            TournamentParticipant.tournament_id == tournament.id
        ).scalar()
        return TournamentSummary(
            id=tournament.id,
            name=tournament.name,
            tournament_type=tournament.tournament_type,
            status=tournament.status,
            start_date=tournament.start_date,
            end_date=tournament.end_date,
            prize_pool=tournament.prize_pool,
            participant_count=count,
        )
