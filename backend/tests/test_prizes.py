"""
Tests for tier payout, crediting and prize claims.
"""
from datetime import timedelta

import pytest

from arena.exceptions import PrizeNotFoundError, TournamentNotFoundError
from arena.models import (
    CurrencyTransaction,
    LeaderboardSnapshot,
    Prize,
    Tournament,
    TournamentParticipant,
)
from arena.services import notifications
from arena.services.prizes import (
    PRIZE_TIERS,
    PrizeCalculator,
    PrizeManager,
    SqlPlayerAccountStore,
    prize_for_rank,
    tier_table,
    tiers_from_distribution,
    total_coins,
)

from conftest import FROZEN_NOW, TestingSessionLocal


class BrokenAccounts:
    def credit(self, user_id, currency, amount, reason):
        raise RuntimeError("wallet service offline")


class GemsOutage:
    """Coins land in the wrapped store; gems fail while ``down`` is set."""

    def __init__(self, store):
        self.store = store
        self.down = True

    def credit(self, user_id, currency, amount, reason):
        if currency == "gems" and self.down:
            raise RuntimeError("gems ledger offline")
        return self.store.credit(user_id, currency, amount, reason)


def make_tournament(test_db, tournament_id="cup-1", status="ended", scores=None):
    test_db.add(Tournament(
        id=tournament_id,
        name="Spring Cup",
        status=status,
        start_date=FROZEN_NOW - timedelta(days=7),
        end_date=FROZEN_NOW - timedelta(minutes=5),
        prize_pool=37000,
        prize_distribution=tier_table(),
        prizes_calculated=False,
    ))
    for idx, (user_id, score) in enumerate((scores or {}).items()):
        test_db.add(TournamentParticipant(
            tournament_id=tournament_id,
            user_id=user_id,
            player_name=user_id.title(),
            registered_at=FROZEN_NOW - timedelta(days=6),
            best_score=score,
            best_score_at=FROZEN_NOW - timedelta(days=5) + timedelta(seconds=idx),
            total_games=1,
        ))
    test_db.commit()
    return tournament_id


@pytest.fixture
def calculator(services):
    return services.prize_calculator


# ============================================================================
# Tier Table Tests
# ============================================================================

@pytest.mark.parametrize("rank,coins,gems", [
    (1, 5000, 250),
    (2, 3000, 150),
    (3, 2000, 100),
    (4, 1000, 50),
    (10, 1000, 50),
    (11, 500, 25),
    (50, 500, 25),
])
def test_prize_for_rank(rank, coins, gems):
    tier = prize_for_rank(rank)
    assert (tier.coins, tier.gems) == (coins, gems)


def test_rank_past_last_tier_wins_nothing():
    assert prize_for_rank(51) is None


def test_default_table_totals():
    assert total_coins() == 37000


def test_stored_distribution_round_trip():
    assert tiers_from_distribution(tier_table()) == PRIZE_TIERS
    assert tiers_from_distribution(None) == PRIZE_TIERS


# ============================================================================
# Calculation Tests
# ============================================================================

def test_top_fifty_paid_from_live_standings(calculator, test_db):
    scores = {f"player-{idx:02d}": 1000 - idx for idx in range(51)}
    tid = make_tournament(test_db, scores=scores)

    result = calculator.calculate_tournament_prizes(tid)

    assert result.prizes_awarded == 50
    assert result.tournament_name == "Spring Cup"
    assert all(award.credited for award in result.prize_details)
    assert test_db.query(Prize).filter_by(user_id="player-50").first() is None
    first = test_db.get(Prize, f"prize_{tid}_player-00")
    assert (first.rank, first.coins, first.gems) == (1, 5000, 250)
    assert first.credited_at == FROZEN_NOW


def test_rerun_awards_nothing(calculator, services, test_db, notifier):
    tid = make_tournament(test_db, scores={"ann": 900, "ben": 700})

    calculator.calculate_tournament_prizes(tid)
    again = calculator.calculate_tournament_prizes(tid)

    assert again.prizes_awarded == 0
    assert again.already_awarded == 2
    assert test_db.query(Prize).count() == 2
    assert services.accounts.balances("ann") == {"coins": 5000, "gems": 250}
    assert len(notifier.of_type(notifications.PRIZE_WON)) == 2


def test_final_snapshots_take_precedence(calculator, test_db):
    tid = make_tournament(test_db, scores={"ann": 900, "ben": 700})
    test_db.add(LeaderboardSnapshot(
        tournament_id=tid, user_id="ben", player_name="Ben", score=700, rank=1,
        is_final=True, snapshot_time=FROZEN_NOW,
    ))
    test_db.commit()

    result = calculator.calculate_tournament_prizes(tid)

    assert [(a.user_id, a.rank) for a in result.prize_details] == [("ben", 1)]


def test_unknown_tournament(calculator):
    with pytest.raises(TournamentNotFoundError):
        calculator.calculate_tournament_prizes("missing")


def test_award_updates_participant_and_ledger(calculator, test_db):
    tid = make_tournament(test_db, scores={"ann": 900})

    calculator.calculate_tournament_prizes(tid)

    participant = test_db.query(TournamentParticipant).filter_by(user_id="ann").one()
    assert participant.prize_won == 5000
    assert participant.final_rank == 1
    ledger = {
        t.currency: (t.amount, t.previous_balance, t.new_balance)
        for t in test_db.query(CurrencyTransaction).filter_by(user_id="ann")
    }
    assert ledger == {"coins": (5000, 0, 5000), "gems": (250, 0, 250)}


def test_credit_failure_leaves_prize_uncredited(settings, clock, notifier, test_db, services):
    tid = make_tournament(test_db, scores={"ann": 900})
    broken = PrizeCalculator(
        TestingSessionLocal,
        PrizeManager(TestingSessionLocal, BrokenAccounts(), clock=clock),
        notifier=notifier,
        settings=settings,
        clock=clock,
    )

    result = broken.calculate_tournament_prizes(tid)

    assert result.prizes_awarded == 1
    assert result.prize_details[0].credited is False
    prize = test_db.get(Prize, f"prize_{tid}_ann")
    assert prize.credited_at is None
    assert notifier.of_type(notifications.PRIZE_WON) == []
    assert [p.prize_id for p in services.prize_manager.get_uncredited_prizes()] == [prize.prize_id]

    # Manual reconciliation credits the existing row
    credited = services.prize_manager.award(prize.prize_id)
    assert credited.credited_at == FROZEN_NOW
    assert services.accounts.balances("ann")["coins"] == 5000


def test_partial_credit_not_repeated_on_reconciliation(settings, clock, notifier, test_db, services):
    tid = make_tournament(test_db, scores={"ann": 900})
    accounts = GemsOutage(services.accounts)
    manager = PrizeManager(TestingSessionLocal, accounts, clock=clock)
    calculator = PrizeCalculator(TestingSessionLocal, manager, notifier=notifier, settings=settings, clock=clock)

    result = calculator.calculate_tournament_prizes(tid)

    assert result.prize_details[0].credited is False
    prize = test_db.get(Prize, f"prize_{tid}_ann")
    assert prize.coins_credited_at == FROZEN_NOW
    assert prize.gems_credited_at is None
    assert prize.credited_at is None
    assert services.accounts.balances("ann") == {"coins": 5000, "gems": 0}
    assert [t.currency for t in test_db.query(CurrencyTransaction).filter_by(user_id="ann")] == ["coins"]

    # Reconciliation only credits the missing gems
    accounts.down = False
    manager.award(prize.prize_id)

    assert services.accounts.balances("ann") == {"coins": 5000, "gems": 250}
    ledger = test_db.query(CurrencyTransaction).filter_by(user_id="ann").order_by(CurrencyTransaction.id).all()
    assert [(t.currency, t.amount) for t in ledger] == [("coins", 5000), ("gems", 250)]
    test_db.expire_all()
    assert test_db.get(Prize, prize.prize_id).credited_at == FROZEN_NOW


def test_pending_tournaments_are_marked_calculated(calculator, test_db):
    tid = make_tournament(test_db, scores={"ann": 900})
    make_tournament(test_db, tournament_id="cup-live", status="active", scores={})

    results = calculator.process_pending_tournaments()

    assert [r.tournament_id for r in results] == [tid]
    test_db.expire_all()
    assert test_db.get(Tournament, tid).prizes_calculated is True
    assert calculator.process_pending_tournaments() == []


# ============================================================================
# Account and Claim Tests
# ============================================================================

def test_unknown_currency_rejected():
    store = SqlPlayerAccountStore(TestingSessionLocal)
    with pytest.raises(ValueError):
        store.credit("ann", "gold", 10, "test")


def test_claim_prize(calculator, services, test_db):
    tid = make_tournament(test_db, scores={"ann": 900})
    calculator.calculate_tournament_prizes(tid)
    prize_id = f"prize_{tid}_ann"

    assert [p.prize_id for p in services.prize_manager.get_pending_prizes("ann")] == [prize_id]
    with pytest.raises(PrizeNotFoundError):
        services.prize_manager.claim_prize(prize_id, "ben")

    claimed = services.prize_manager.claim_prize(prize_id, "ann")
    again = services.prize_manager.claim_prize(prize_id, "ann")

    assert claimed.claimed_at == FROZEN_NOW
    assert again.claimed_at == claimed.claimed_at
    assert services.prize_manager.get_pending_prizes("ann") == []
    participant = test_db.query(TournamentParticipant).filter_by(user_id="ann").one()
    assert participant.prize_claimed is True


def test_prize_history_and_stats(calculator, services, test_db):
    tid = make_tournament(test_db, scores={"ann": 900, "ben": 700, "cat": 500})
    calculator.calculate_tournament_prizes(tid)

    history = services.prize_manager.get_player_prize_history("ben")
    stats = services.prize_manager.get_tournament_prize_stats(tid)

    assert history["total_coins"] == 3000
    assert history["total_gems"] == 150
    assert stats["total_winners"] == 3
    assert stats["total_coins"] == 10000
    assert stats["best_rank"] == 1
    assert stats["claimed"] == 0
