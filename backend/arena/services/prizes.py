"""
Tournament prize payout.

``PrizeCalculator`` turns final standings into ``Prize`` rows exactly once per
(tournament, player): the unique constraint on ``prizes`` is the guard, so a
re-run or a concurrent run awards nothing new. ``PrizeManager`` credits the
player account for each new row and serves prize reads and claims.

Prize pool:
- Rank 1:      5000 coins + 250 gems
- Rank 2:      3000 coins + 150 gems
- Rank 3:      2000 coins + 100 gems
- Rank 4-10:   1000 coins + 50 gems
- Rank 11-50:   500 coins + 25 gems
"""
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from arena.clock import Clock, utcnow
from arena.config import Settings, get_settings
from arena.exceptions import PrizeNotFoundError, TournamentNotFoundError
from arena.models import (
    CurrencyTransaction,
    LeaderboardSnapshot,
    PlayerAccount,
    Prize,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
)
from arena.monitoring import monitor_transaction, record_custom_metric
from arena.schemas import PrizeAward, PrizeCalculationResult, PrizeOut
from arena.services import notifications
from arena.services.notifications import LoggingNotifier, Notifier
from arena.services.standings import tournament_standings
from arena.services.tournament_log import PRIZE_DISTRIBUTED, log_tournament_event

logger = logging.getLogger(__name__)

COINS = "coins"
GEMS = "gems"


@dataclass(frozen=True)
class PrizeTier:
    name: str
    min_rank: int
    max_rank: int
    coins: int
    gems: int


PRIZE_TIERS: Tuple[PrizeTier, ...] = (
    PrizeTier("A", 1, 1, 5000, 250),
    PrizeTier("B", 2, 2, 3000, 150),
    PrizeTier("C", 3, 3, 2000, 100),
    PrizeTier("D", 4, 10, 1000, 50),
    PrizeTier("E", 11, 50, 500, 25),
)


def prize_for_rank(rank: int, tiers: Sequence[PrizeTier] = PRIZE_TIERS) -> Optional[PrizeTier]:
    """Tier covering ``rank``, or None when the rank wins nothing."""
    for tier in tiers:
        if tier.min_rank <= rank <= tier.max_rank:
            return tier
    return None


def tier_table(tiers: Sequence[PrizeTier] = PRIZE_TIERS) -> List[Dict]:
    """Tier table in the JSON shape stored on ``tournaments.prize_distribution``."""
    return [asdict(tier) for tier in tiers]


def tiers_from_distribution(distribution: Optional[Iterable[Dict]]) -> Tuple[PrizeTier, ...]:
    if not distribution:
        return PRIZE_TIERS
    return tuple(PrizeTier(**entry) for entry in distribution)


def total_coins(tiers: Sequence[PrizeTier] = PRIZE_TIERS) -> int:
    return sum(tier.coins * (tier.max_rank - tier.min_rank + 1) for tier in tiers)


# ============================================================================
# Player accounts
# ============================================================================

@dataclass(frozen=True)
class CreditResult:
    previous_balance: int
    new_balance: int


class PlayerAccountStore(Protocol):
    def credit(self, user_id: str, currency: str, amount: int, reason: str) -> CreditResult:
        ...


class SqlPlayerAccountStore:
    """Balances kept in ``player_accounts``; accounts are created on first credit."""

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def credit(self, user_id: str, currency: str, amount: int, reason: str) -> CreditResult:
        if currency not in (COINS, GEMS):
            raise ValueError(f"Unknown currency: {currency}")

        db = self.session_factory()
        try:
            account = db.query(PlayerAccount).filter(
                PlayerAccount.user_id == user_id
            ).with_for_update().first()
            if account is None:
                account = PlayerAccount(user_id=user_id, coins_balance=0, gems_balance=0)
                db.add(account)

            column = f"{currency}_balance"
            previous = getattr(account, column) or 0
            setattr(account, column, previous + amount)
            account.updated_at = self.clock()
            db.commit()

            logger.info(f"Credited {amount} {currency} to {user_id}: {reason}")
            return CreditResult(previous_balance=previous, new_balance=previous + amount)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def balances(self, user_id: str) -> Dict[str, int]:
        db = self.session_factory()
        try:
            account = db.get(PlayerAccount, user_id)
            if account is None:
                return {COINS: 0, GEMS: 0}
            return {COINS: account.coins_balance, GEMS: account.gems_balance}
        finally:
            db.close()


# ============================================================================
# Prize manager
# ============================================================================

class PrizeManager:
    """Credits awarded prizes and serves prize reads and claims."""

    def __init__(self, session_factory: sessionmaker, accounts: PlayerAccountStore, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.accounts = accounts
        self.clock = clock

    def award(self, prize_id: str) -> Prize:
        """
        Credit the coins and gems of an inserted prize.

        The prize row must already be committed. Each currency is recorded
        (ledger row plus ``<currency>_credited_at``) as soon as its credit
        lands, so a later call only credits what is still missing. Any credit
        failure propagates and leaves ``credited_at`` NULL for manual
        reconciliation.
        """
        db = self.session_factory()
        try:
            prize = db.get(Prize, prize_id)
            if prize is None:
                raise PrizeNotFoundError(prize_id)
            if prize.credited_at is not None:
                return prize

            reason = f"Tournament prize - {prize.tournament_name} (rank {prize.rank})"
            for currency, amount in ((COINS, prize.coins), (GEMS, prize.gems)):
                progress = f"{currency}_credited_at"
                if amount <= 0 or getattr(prize, progress) is not None:
                    continue

                credit = self.accounts.credit(prize.user_id, currency, amount, reason)
                credited_at = self.clock()
                db.add(CurrencyTransaction(
                    user_id=prize.user_id,
                    transaction_type="credit",
                    currency=currency,
                    amount=amount,
                    previous_balance=credit.previous_balance,
                    new_balance=credit.new_balance,
                    reason=reason,
                    tournament_id=prize.tournament_id,
                    created_at=credited_at,
                ))
                setattr(prize, progress, credited_at)
                db.commit()

            now = self.clock()
            prize.credited_at = now
            participant = db.query(TournamentParticipant).filter(
                TournamentParticipant.tournament_id == prize.tournament_id,
                TournamentParticipant.user_id == prize.user_id,
            ).first()
            if participant is not None:
                participant.prize_won = prize.coins
                if participant.final_rank is None:
                    participant.final_rank = prize.rank

            log_tournament_event(
                db, prize.tournament_id, PRIZE_DISTRIBUTED, now,
                {"rank": prize.rank, "coins": prize.coins, "gems": prize.gems},
                user_id=prize.user_id,
            )
            db.commit()
            db.refresh(prize)
            return prize
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_pending_prizes(self, user_id: str) -> List[PrizeOut]:
        """Prizes awarded to the player that have not been claimed yet."""
        db = self.session_factory()
        try:
            rows = db.query(Prize).filter(
                Prize.user_id == user_id,
                Prize.claimed_at.is_(None),
            ).order_by(Prize.awarded_at.desc()).all()
            return [PrizeOut.model_validate(row) for row in rows]
        finally:
            db.close()

    def claim_prize(self, prize_id: str, user_id: str) -> PrizeOut:
        """
        Mark a prize as claimed by its owner. Claiming twice is a no-op.

        Raises:
            PrizeNotFoundError: Unknown prize or owned by another player
        """
        db = self.session_factory()
        try:
            prize = db.query(Prize).filter(
                Prize.prize_id == prize_id,
                Prize.user_id == user_id,
            ).first()
            if prize is None:
                raise PrizeNotFoundError(prize_id)

            if prize.claimed_at is None:
                now = self.clock()
                prize.claimed_at = now
                db.query(TournamentParticipant).filter(
                    TournamentParticipant.tournament_id == prize.tournament_id,
                    TournamentParticipant.user_id == user_id,
                ).update(
                    {TournamentParticipant.prize_claimed: True, TournamentParticipant.prize_claimed_at: now},
                    synchronize_session=False,
                )
                db.commit()
                db.refresh(prize)
                logger.info(f"Prize {prize_id} claimed by {user_id}")

            return PrizeOut.model_validate(prize)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_player_prize_history(self, user_id: str, limit: int = 50) -> Dict:
        db = self.session_factory()
        try:
            rows = db.query(Prize).filter(Prize.user_id == user_id).order_by(
                Prize.awarded_at.desc()
            ).limit(limit).all()
            prizes = [PrizeOut.model_validate(row) for row in rows]
            return {
                "user_id": user_id,
                "prizes": prizes,
                "total_coins": sum(p.coins for p in prizes),
                "total_gems": sum(p.gems for p in prizes),
            }
        finally:
            db.close()

    def get_tournament_prize_stats(self, tournament_id: str) -> Dict:
        db = self.session_factory()
        try:
            winners, coins, gems, best_rank, claimed = db.query(
                func.count(Prize.prize_id),
                func.coalesce(func.sum(Prize.coins), 0),
                func.coalesce(func.sum(Prize.gems), 0),
                func.min(Prize.rank),
                func.count(Prize.claimed_at),
            ).filter(Prize.tournament_id == tournament_id).one()
            return {
                "tournament_id": tournament_id,
                "total_winners": winners,
                "total_coins": int(coins),
                "total_gems": int(gems),
                "best_rank": best_rank,
                "claimed": claimed,
            }
        finally:
            db.close()

    def get_uncredited_prizes(self) -> List[PrizeOut]:
        """Prize rows whose credit never completed; candidates for reconciliation."""
        db = self.session_factory()
        try:
            rows = db.query(Prize).filter(Prize.credited_at.is_(None)).order_by(Prize.awarded_at).all()
            return [PrizeOut.model_validate(row) for row in rows]
        finally:
            db.close()


# ============================================================================
# Prize calculator
# ============================================================================

class PrizeCalculator:
    """
    Computes and persists tier payouts for an ended tournament.

    Winners come from the final snapshots; when a tournament has none (for
    example a catch-up run after a partial failure) the live standings are
    ranked under the same rule instead.
    """

    def __init__(self, session_factory: sessionmaker, prize_manager: PrizeManager,
                 notifier: Optional[Notifier] = None, settings: Optional[Settings] = None,
                 clock: Clock = utcnow):
        self.session_factory = session_factory
        self.prize_manager = prize_manager
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or get_settings()
        self.clock = clock
        self.stats = {"tournaments_processed": 0, "total_prizes_awarded": 0, "last_calculation": None}

    def _winners(self, db: Session, tournament_id: str) -> List[Tuple[str, Optional[str], int]]:
        eligible = self.settings.prize_eligible_ranks
        finals = db.query(LeaderboardSnapshot).filter(
            LeaderboardSnapshot.tournament_id == tournament_id,
            LeaderboardSnapshot.is_final.is_(True),
            LeaderboardSnapshot.rank <= eligible,
        ).order_by(LeaderboardSnapshot.rank).all()
        if finals:
            return [(s.user_id, s.player_name, s.rank) for s in finals]

        logger.info(f"No final snapshots for tournament {tournament_id}, using live standings")
        return [(e.user_id, e.player_name, e.rank) for e in tournament_standings(db, tournament_id, limit=eligible)]

    @monitor_transaction("prize_calculation")
    def calculate_tournament_prizes(self, tournament_id: str) -> PrizeCalculationResult:
        """
        Award prizes for one tournament.

        Returns:
            PrizeCalculationResult; ``prizes_awarded`` counts only rows inserted
            by this run

        Raises:
            TournamentNotFoundError: Unknown tournament
        """
        started = time.monotonic()
        db = self.session_factory()
        try:
            tournament = db.get(Tournament, tournament_id)
            if tournament is None:
                raise TournamentNotFoundError(tournament_id)

            tournament_name = tournament.name
            tiers = tiers_from_distribution(tournament.prize_distribution)
            winners = self._winners(db, tournament_id)
            result = PrizeCalculationResult(
                tournament_id=tournament_id,
                tournament_name=tournament_name,
                participants=len(winners),
            )
            logger.info(f"Starting prize calculation for {tournament_id}: {len(winners)} ranked players")

            awarded = []
            for user_id, player_name, rank in winners:
                tier = prize_for_rank(rank, tiers)
                if tier is None:
                    continue

                if db.query(Prize.prize_id).filter(
                    Prize.tournament_id == tournament_id,
                    Prize.user_id == user_id,
                ).first() is not None:
                    logger.debug(f"Prize already awarded to {user_id} for {tournament_id}, skipping")
                    result.already_awarded += 1
                    continue

                prize_id = f"prize_{tournament_id}_{user_id}"
                try:
                    db.add(Prize(
                        prize_id=prize_id,
                        user_id=user_id,
                        tournament_id=tournament_id,
                        tournament_name=tournament_name,
                        rank=rank,
                        coins=tier.coins,
                        gems=tier.gems,
                        awarded_at=self.clock(),
                    ))
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.warning(f"Prize already awarded to {user_id} for {tournament_id}, skipping")
                    result.already_awarded += 1
                    continue

                result.prizes_awarded += 1
                awarded.append(PrizeAward(
                    user_id=user_id, player_name=player_name, rank=rank, coins=tier.coins, gems=tier.gems,
                ))
        finally:
            db.close()

        for award in awarded:
            try:
                self.prize_manager.award(f"prize_{tournament_id}_{award.user_id}")
                award.credited = True
            except Exception as e:
                logger.error(
                    f"Failed to credit prize for {award.user_id} in {tournament_id}; "
                    f"left uncredited for reconciliation: {e}",
                    exc_info=True,
                )
                continue

            notifications.send(self.notifier, award.user_id, notifications.PRIZE_WON, {
                "tournament_id": tournament_id,
                "tournament_name": tournament_name,
                "rank": award.rank,
                "coins": award.coins,
                "gems": award.gems,
            })

        result.prize_details = awarded
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.stats["tournaments_processed"] += 1
        self.stats["total_prizes_awarded"] += result.prizes_awarded
        self.stats["last_calculation"] = self.clock()
        record_custom_metric("Custom/Prizes/Awarded", result.prizes_awarded)

        logger.info(
            f"Prize calculation complete for {tournament_id}: awarded={result.prizes_awarded}, "
            f"already_awarded={result.already_awarded}, duration_ms={result.duration_ms}"
        )
        return result

    def mark_calculated(self, tournament_id: str) -> bool:
        db = self.session_factory()
        try:
            updated = db.query(Tournament).filter(
                Tournament.id == tournament_id,
                Tournament.prizes_calculated.is_(False),
            ).update(
                {Tournament.prizes_calculated: True, Tournament.prizes_calculated_at: self.clock()},
                synchronize_session=False,
            )
            db.commit()
            return bool(updated)
        finally:
            db.close()

    def process_pending_tournaments(self) -> List[PrizeCalculationResult]:
        """
        Catch-up sweep: pay out ended tournaments whose prizes were never marked
        calculated. Errors are logged per tournament.
        """
        db = self.session_factory()
        try:
            pending = [
                t.id for t in db.query(Tournament).filter(
                    Tournament.status == TournamentStatus.ENDED.value,
                    Tournament.prizes_calculated.is_(False),
                ).order_by(Tournament.end_date).all()
            ]
        finally:
            db.close()

        if not pending:
            logger.debug("No tournaments needing prize calculation")

        results = []
        for tournament_id in pending:
            try:
                results.append(self.calculate_tournament_prizes(tournament_id))
                self.mark_calculated(tournament_id)
            except Exception as e:
                logger.error(f"Prize calculation failed for {tournament_id}: {e}", exc_info=True)
        return results
