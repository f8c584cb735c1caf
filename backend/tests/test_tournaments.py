"""
Tests for tournament creation, registration, submissions and the lifecycle.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from arena.cache import CURRENT_TOURNAMENT_KEY, tournament_top_key
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
from arena.models import (
    LeaderboardSnapshot,
    Prize,
    Tournament,
    TournamentLogEntry,
    TournamentParticipant,
)
from arena.services import notifications

from conftest import FROZEN_NOW


@pytest.fixture
def manager(services):
    return services.tournaments


@pytest.fixture
def active_tournament(manager):
    summary = manager.create_tournament(
        name="Spring Cup",
        start_date=FROZEN_NOW - timedelta(hours=1),
        end_date=FROZEN_NOW + timedelta(days=6),
    )
    manager.start_tournament(summary.id)
    return summary.id


def log_types(test_db, tournament_id):
    return [
        row.event_type for row in test_db.query(TournamentLogEntry).filter_by(
            tournament_id=tournament_id
        ).order_by(TournamentLogEntry.id)
    ]


# ============================================================================
# Creation Tests
# ============================================================================

def test_create_weekly_tournament_starts_next_monday(manager, test_db):
    summary = manager.create_weekly_tournament()

    assert summary.start_date == datetime(2026, 3, 9, 0, 0, 0)
    assert summary.end_date == datetime(2026, 3, 15, 23, 59, 59)
    assert summary.name == "Weekly Championship 2026-03-09"
    assert summary.status == "upcoming"
    assert summary.prize_pool == 37000
    assert summary.tournament_type == "weekly"

    tournament = test_db.get(Tournament, summary.id)
    assert tournament.prize_distribution[0] == {
        "name": "A", "min_rank": 1, "max_rank": 1, "coins": 5000, "gems": 250,
    }
    assert log_types(test_db, summary.id) == ["created"]


def test_create_weekly_tournament_with_offset(manager):
    summary = manager.create_weekly_tournament(start_offset_hours=12, prize_pool=1000)

    assert summary.start_date == datetime(2026, 3, 9, 12, 0, 0)
    assert summary.prize_pool == 1000


def test_configured_prize_pool_overrides_tier_total(manager, settings):
    settings.default_prize_pool = 1500
    summary = manager.create_weekly_tournament()
    assert summary.prize_pool == 1500


def test_create_tournament_rejects_bad_window(manager):
    with pytest.raises(ValidationError):
        manager.create_tournament("Broken", FROZEN_NOW, FROZEN_NOW)


def test_create_tournament_rejects_negative_pool(manager):
    with pytest.raises(ValidationError) as exc:
        manager.create_tournament("Broken", FROZEN_NOW, FROZEN_NOW + timedelta(days=1), prize_pool=-1)
    assert exc.value.details == {"field": "prize_pool"}


def test_create_invalidates_current_tournament_cache(manager, redis_client):
    redis_client.setex(CURRENT_TOURNAMENT_KEY, 300, "{}")
    manager.create_weekly_tournament()
    assert CURRENT_TOURNAMENT_KEY not in redis_client.store


# ============================================================================
# Registration Tests
# ============================================================================

def test_register_player(manager, active_tournament, test_db):
    result = manager.register_player(active_tournament, "alice", "Alice")

    assert result.tournament_id == active_tournament
    participant = test_db.query(TournamentParticipant).filter_by(user_id="alice").one()
    assert participant.player_name == "Alice"
    assert participant.best_score == 0
    assert participant.best_score_at is None
    assert log_types(test_db, active_tournament)[-1] == "participant_joined"


def test_register_twice_fails(manager, active_tournament):
    manager.register_player(active_tournament, "alice")
    with pytest.raises(AlreadyRegisteredError):
        manager.register_player(active_tournament, "alice")


def test_register_unknown_tournament(manager):
    with pytest.raises(TournamentNotFoundError):
        manager.register_player("missing", "alice")


def test_register_when_full(manager):
    summary = manager.create_tournament(
        "Tiny", FROZEN_NOW, FROZEN_NOW + timedelta(days=1), max_participants=1,
    )
    manager.register_player(summary.id, "alice")
    with pytest.raises(TournamentFullError):
        manager.register_player(summary.id, "bob")


def test_register_after_end_is_closed(manager, active_tournament):
    manager.end_tournament(active_tournament)
    with pytest.raises(RegistrationClosedError):
        manager.register_player(active_tournament, "late")


# ============================================================================
# Submission Tests
# ============================================================================

def test_submit_score_keeps_best(manager, active_tournament, test_db):
    manager.register_player(active_tournament, "alice")

    first = manager.submit_score(active_tournament, "alice", 500)
    second = manager.submit_score(active_tournament, "alice", 300)

    assert first.new_best is True
    assert first.rank == 1
    assert second.new_best is False
    assert second.previous_best == 500
    assert second.total_games == 2

    participant = test_db.query(TournamentParticipant).filter_by(user_id="alice").one()
    assert participant.best_score == 500
    assert participant.best_score_at == FROZEN_NOW
    # Only a new personal best writes a snapshot
    assert test_db.query(LeaderboardSnapshot).count() == 1


def test_submit_negative_score(manager, active_tournament):
    with pytest.raises(ValidationError):
        manager.submit_score(active_tournament, "alice", -5)


def test_submit_unknown_tournament(manager):
    with pytest.raises(TournamentNotFoundError):
        manager.submit_score("missing", "alice", 5)


def test_submit_before_start(manager):
    summary = manager.create_weekly_tournament()
    manager.register_player(summary.id, "alice")
    with pytest.raises(TournamentNotActiveError):
        manager.submit_score(summary.id, "alice", 100)


def test_submit_unregistered(manager, active_tournament):
    with pytest.raises(NotRegisteredError):
        manager.submit_score(active_tournament, "stranger", 100)


def test_submit_rejected_by_anti_cheat(manager, active_tournament, test_db, settings):
    manager.register_player(active_tournament, "mallory")

    with pytest.raises(ScoreRejectedError) as exc:
        manager.submit_score(active_tournament, "mallory", 700, {"survival_time_ms": 10000})

    assert exc.value.details["severity"] == "critical"
    participant = test_db.query(TournamentParticipant).filter_by(user_id="mallory").one()
    assert participant.best_score == 0
    assert participant.total_games == 0


def test_new_best_invalidates_leaderboard_cache(manager, active_tournament, redis_client, settings):
    manager.register_player(active_tournament, "alice")
    manager.get_leaderboard(active_tournament)
    key = tournament_top_key(active_tournament, settings.tournament_cache_size)
    assert key in redis_client.store

    manager.submit_score(active_tournament, "alice", 100)

    assert key not in redis_client.store


# ============================================================================
# Lifecycle Tests
# ============================================================================

def test_start_is_idempotent(manager, notifier):
    summary = manager.create_tournament("Cup", FROZEN_NOW, FROZEN_NOW + timedelta(days=1))
    manager.register_player(summary.id, "alice")

    assert manager.start_tournament(summary.id) is True
    assert manager.start_tournament(summary.id) is False
    assert manager.get_tournament(summary.id).status == "active"
    assert notifier.of_type(notifications.TOURNAMENT_STARTED) == [
        ("alice", {"type": "tournament_started", "payload": {"tournament_id": summary.id}}),
    ]


def test_end_requires_active(manager):
    summary = manager.create_weekly_tournament()
    assert manager.end_tournament(summary.id) is None
    assert manager.get_tournament(summary.id).status == "upcoming"


def test_end_unknown_tournament(manager):
    with pytest.raises(TournamentNotFoundError):
        manager.end_tournament("missing")


def test_tie_broken_by_earliest_achievement_through_payout(services, manager, active_tournament,
                                                          clock, notifier, test_db):
    for user_id in ("ann", "ben", "cat"):
        manager.register_player(active_tournament, user_id, user_id.title())

    manager.submit_score(active_tournament, "ann", 900)
    manager.submit_score(active_tournament, "ben", 700)
    clock.advance(seconds=1)
    manager.submit_score(active_tournament, "cat", 700)

    leaderboard = manager.get_leaderboard(active_tournament)
    assert [(e.rank, e.user_id) for e in leaderboard] == [(1, "ann"), (2, "ben"), (3, "cat")]

    clock.advance(days=6)
    result = manager.end_tournament(active_tournament)

    assert [(e.rank, e.user_id, e.score) for e in result.final_standings] == [
        (1, "ann", 900), (2, "ben", 700), (3, "cat", 700),
    ]
    assert result.prizes.prizes_awarded == 3

    test_db.expire_all()
    tournament = test_db.get(Tournament, active_tournament)
    assert tournament.status == "ended"
    assert tournament.prizes_calculated is True

    finals = test_db.query(LeaderboardSnapshot).filter_by(
        tournament_id=active_tournament, is_final=True
    ).order_by(LeaderboardSnapshot.rank).all()
    assert [(s.user_id, s.rank) for s in finals] == [("ann", 1), ("ben", 2), ("cat", 3)]

    prizes = {p.user_id: (p.rank, p.coins, p.gems) for p in test_db.query(Prize).all()}
    assert prizes == {"ann": (1, 5000, 250), "ben": (2, 3000, 150), "cat": (3, 2000, 100)}
    assert services.accounts.balances("ben") == {"coins": 3000, "gems": 150}

    participants = {
        p.user_id: p for p in test_db.query(TournamentParticipant).filter_by(tournament_id=active_tournament)
    }
    assert participants["cat"].final_rank == 3
    assert participants["cat"].prize_won == 2000

    assert len(notifier.of_type(notifications.TOURNAMENT_ENDED)) == 3
    assert len(notifier.of_type(notifications.PRIZE_WON)) == 3
    assert log_types(test_db, active_tournament)[-1] == "ended"


def test_end_twice_is_noop(manager, active_tournament, test_db):
    manager.register_player(active_tournament, "alice")
    manager.submit_score(active_tournament, "alice", 100)

    assert manager.end_tournament(active_tournament) is not None
    assert manager.end_tournament(active_tournament) is None
    assert test_db.query(Prize).count() == 1
    assert test_db.query(LeaderboardSnapshot).filter_by(is_final=True).count() == 1


def test_overlapping_end_calls_freeze_and_pay_once(services, manager, active_tournament,
                                                   monkeypatch, notifier, test_db):
    manager.register_player(active_tournament, "ann")
    manager.register_player(active_tournament, "ben")
    manager.submit_score(active_tournament, "ann", 900)
    manager.submit_score(active_tournament, "ben", 700)

    aggregate = services.aggregator.update_tournament_leaderboard
    calculate = services.prize_calculator.calculate_tournament_prizes
    inner = {}
    payouts = []

    def aggregate_then_overlap(tournament_id, start_date, end_date):
        result = aggregate(tournament_id, start_date, end_date)
        if "result" not in inner:
            # A second runner ends the tournament while the first is past its status check
            inner["result"] = None
            inner["result"] = manager.end_tournament(tournament_id)
        return result

    def counting_calculate(tournament_id):
        payouts.append(tournament_id)
        return calculate(tournament_id)

    monkeypatch.setattr(services.aggregator, "update_tournament_leaderboard", aggregate_then_overlap)
    monkeypatch.setattr(services.prize_calculator, "calculate_tournament_prizes", counting_calculate)

    assert manager.end_tournament(active_tournament) is None

    assert [e.user_id for e in inner["result"].final_standings] == ["ann", "ben"]
    assert payouts == [active_tournament]
    finals = test_db.query(LeaderboardSnapshot).filter_by(tournament_id=active_tournament, is_final=True).all()
    assert sorted(s.user_id for s in finals) == ["ann", "ben"]
    assert test_db.query(Prize).count() == 2
    assert len(notifier.of_type(notifications.TOURNAMENT_ENDED)) == 2


def test_final_standing_unique_per_player(active_tournament, test_db):
    def snapshot(is_final):
        return LeaderboardSnapshot(
            tournament_id=active_tournament, user_id="ann", player_name="Ann", score=900, rank=1,
            is_final=is_final, snapshot_time=FROZEN_NOW,
        )

    test_db.add_all([snapshot(False), snapshot(False), snapshot(True)])
    test_db.commit()

    test_db.add(snapshot(True))
    with pytest.raises(IntegrityError):
        test_db.commit()
    test_db.rollback()


def test_end_runs_final_aggregation(manager, active_tournament, add_event, test_db):
    add_event("walk-in", 400, FROZEN_NOW - timedelta(minutes=30))

    result = manager.end_tournament(active_tournament)

    assert [e.user_id for e in result.final_standings] == ["walk-in"]
    assert test_db.query(Prize).filter_by(user_id="walk-in").one().rank == 1


def test_prize_failure_leaves_tournament_for_prize_sweep(services, manager, active_tournament,
                                                         monkeypatch, test_db):
    manager.register_player(active_tournament, "alice")
    manager.submit_score(active_tournament, "alice", 100)

    def broken(tournament_id):
        raise RuntimeError("payout service down")

    monkeypatch.setattr(services.prize_calculator, "calculate_tournament_prizes", broken)
    result = manager.end_tournament(active_tournament)

    assert result is not None
    test_db.expire_all()
    tournament = test_db.get(Tournament, active_tournament)
    assert tournament.status == "ended"
    assert tournament.prizes_calculated is False


def test_archive_only_from_ended(manager, active_tournament):
    assert manager.archive_tournament(active_tournament) is False
    manager.end_tournament(active_tournament)
    assert manager.archive_tournament(active_tournament) is True
    assert manager.get_tournament(active_tournament).status == "archived"


# ============================================================================
# Read Tests
# ============================================================================

def test_current_tournament_prefers_active(manager, active_tournament, redis_client):
    manager.create_weekly_tournament()
    redis_client.store.clear()

    current = manager.get_current_tournament()

    assert current.id == active_tournament
    assert CURRENT_TOURNAMENT_KEY in redis_client.store


def test_current_tournament_falls_back_to_next_upcoming(manager):
    later = manager.create_tournament("Later", FROZEN_NOW + timedelta(days=9), FROZEN_NOW + timedelta(days=10))
    sooner = manager.create_weekly_tournament()

    current = manager.get_current_tournament()

    assert current.id == sooner.id
    assert current.id != later.id


def test_current_tournament_none(manager):
    assert manager.get_current_tournament() is None


def test_leaderboard_pagination_past_cache(manager, active_tournament, settings):
    for idx in range(3):
        manager.register_player(active_tournament, f"p{idx}")
        manager.submit_score(active_tournament, f"p{idx}", 100 + idx * 10)

    page = manager.get_leaderboard(active_tournament, limit=1, offset=settings.tournament_cache_size)
    assert page == []

    top = manager.get_leaderboard(active_tournament, limit=2, offset=1)
    assert [(e.rank, e.user_id) for e in top] == [(2, "p1"), (3, "p0")]


def test_player_stats(manager, active_tournament):
    manager.register_player(active_tournament, "alice")
    manager.register_player(active_tournament, "bob")
    manager.submit_score(active_tournament, "alice", 100)
    manager.submit_score(active_tournament, "bob", 200)

    stats = manager.get_player_stats("alice")

    assert stats.tournaments_joined == 1
    assert stats.current_tournament_rank == 2
    assert stats.best_rank is None


def test_session_registers_and_submits(manager, active_tournament):
    response = manager.handle_tournament_session("current", "alice", "Alice", score=250)

    assert response["tournament"].id == active_tournament
    assert response["player"]["just_registered"] is True
    assert response["player"]["rank"] == 1
    assert response["player"]["best_score"] == 250
    assert response["score_submission"]["accepted"] is True
    assert [e.user_id for e in response["leaderboard"]] == ["alice"]


def test_session_reports_rejection(manager, active_tournament):
    manager.handle_tournament_session(active_tournament, "alice")

    response = manager.handle_tournament_session(active_tournament, "alice", score=200000)

    assert response["player"]["just_registered"] is False
    assert response["score_submission"]["accepted"] is False
    assert "exceeds maximum" in response["score_submission"]["error"]
    assert response["player"]["total_games"] == 0


def test_session_without_current_tournament(manager):
    with pytest.raises(TournamentNotFoundError):
        manager.handle_tournament_session("current", "alice")
