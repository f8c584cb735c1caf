"""
Wall-clock tournament sweeps.

Each public method is one periodic job body. Sweeps never raise: a failure on
one tournament is logged and the next firing retries it. Transitions go through
``TournamentManager`` so they stay compare-and-set.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from arena.clock import Clock, utcnow
from arena.config import Settings, get_settings
from arena.models import AntiCheatLog, LeaderboardSnapshot, Tournament, TournamentLogEntry, TournamentStatus
from arena.schemas import AggregationResult, PrizeCalculationResult, TournamentSummary
from arena.services.aggregator import LeaderboardAggregator
from arena.services.prizes import PrizeCalculator
from arena.services.tournaments import STARTABLE, TournamentManager

logger = logging.getLogger(__name__)


class TournamentScheduler:
    def __init__(self, session_factory: sessionmaker, manager: TournamentManager,
                 aggregator: LeaderboardAggregator, prize_calculator: PrizeCalculator,
                 settings: Optional[Settings] = None, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.manager = manager
        self.aggregator = aggregator
        self.prize_calculator = prize_calculator
        self.settings = settings or get_settings()
        self.clock = clock

    def _ids(self, *criteria) -> List[str]:
        db = self.session_factory()
        try:
            return [t.id for t in db.query(Tournament).filter(*criteria).order_by(Tournament.start_date).all()]
        finally:
            db.close()

    def _start_all(self, tournament_ids: List[str]) -> List[str]:
        started = []
        for tournament_id in tournament_ids:
            try:
                if self.manager.start_tournament(tournament_id):
                    started.append(tournament_id)
            except Exception as e:
                logger.error(f"Failed to start tournament {tournament_id}: {e}", exc_info=True)
        return started

    def _end_all(self, tournament_ids: List[str]) -> List[str]:
        ended = []
        for tournament_id in tournament_ids:
            try:
                if self.manager.end_tournament(tournament_id) is not None:
                    ended.append(tournament_id)
            except Exception as e:
                logger.error(f"Failed to end tournament {tournament_id}: {e}", exc_info=True)
        return ended

    # ========================================================================
    # Lifecycle sweeps
    # ========================================================================

    def status_sweep(self) -> Dict[str, List[str]]:
        """Start everything whose start has passed, then end everything whose end has passed."""
        now = self.clock()
        started = self._start_all(self._ids(
            Tournament.status.in_(STARTABLE),
            Tournament.start_date <= now,
        ))
        ended = self._end_all(self._ids(
            Tournament.status == TournamentStatus.ACTIVE.value,
            Tournament.end_date <= now,
        ))
        if started or ended:
            logger.info(f"Status sweep: started={started}, ended={ended}")
        return {"started": started, "ended": ended}

    def start_sweep(self) -> List[str]:
        """Start tournaments whose start fell inside the last sweep window."""
        now = self.clock()
        window = timedelta(seconds=self.settings.boundary_sweep_interval)
        return self._start_all(self._ids(
            Tournament.status.in_(STARTABLE),
            Tournament.start_date > now - window,
            Tournament.start_date <= now,
        ))

    def end_sweep(self) -> List[str]:
        """End tournaments whose end fell inside the last sweep window."""
        now = self.clock()
        window = timedelta(seconds=self.settings.boundary_sweep_interval)
        return self._end_all(self._ids(
            Tournament.status == TournamentStatus.ACTIVE.value,
            Tournament.end_date > now - window,
            Tournament.end_date <= now,
        ))

    def weekly_creation(self) -> Optional[TournamentSummary]:
        """Create next week's tournament unless one is already scheduled."""
        now = self.clock()
        scheduled = self._ids(
            Tournament.status.in_(STARTABLE),
            Tournament.start_date > now,
        )
        if scheduled:
            logger.debug(f"Upcoming tournament already scheduled: {scheduled[0]}")
            return None
        try:
            return self.manager.create_weekly_tournament()
        except Exception as e:
            logger.error(f"Weekly tournament creation failed: {e}", exc_info=True)
            return None

    # ========================================================================
    # Aggregation and payout sweeps
    # ========================================================================

    def aggregate_active_tournaments(self) -> List[AggregationResult]:
        db = self.session_factory()
        try:
            active = [
                (t.id, t.start_date, t.end_date)
                for t in db.query(Tournament).filter(Tournament.status == TournamentStatus.ACTIVE.value).all()
            ]
        finally:
            db.close()

        results = []
        for tournament_id, start_date, end_date in active:
            try:
                results.append(self.aggregator.update_tournament_leaderboard(tournament_id, start_date, end_date))
            except Exception as e:
                logger.error(f"Tournament aggregation failed for {tournament_id}: {e}", exc_info=True)
        return results

    def prize_sweep(self) -> List[PrizeCalculationResult]:
        return self.prize_calculator.process_pending_tournaments()

    # ========================================================================
    # Cleanup
    # ========================================================================

    def cleanup(self) -> Dict[str, int]:
        """
        Archive long-ended tournaments and prune aged audit data.

        Final snapshots and gameplay log rows are never deleted.
        """
        now = self.clock()
        archived = 0
        for tournament_id in self._ids(
            Tournament.status == TournamentStatus.ENDED.value,
            Tournament.end_date < now - timedelta(days=self.settings.archive_after_days),
        ):
            try:
                if self.manager.archive_tournament(tournament_id):
                    archived += 1
            except Exception as e:
                logger.error(f"Failed to archive tournament {tournament_id}: {e}", exc_info=True)

        counts = {"archived": archived, "snapshots": 0, "tournament_log": 0, "anti_cheat_logs": 0}
        db = self.session_factory()
        try:
            counts["snapshots"] = db.query(LeaderboardSnapshot).filter(
                LeaderboardSnapshot.is_final.is_(False),
                LeaderboardSnapshot.snapshot_time < now - timedelta(days=self.settings.snapshot_retention_days),
            ).delete(synchronize_session=False)
            counts["tournament_log"] = db.query(TournamentLogEntry).filter(
                TournamentLogEntry.created_at < now - timedelta(days=self.settings.tournament_log_retention_days),
            ).delete(synchronize_session=False)
            counts["anti_cheat_logs"] = db.query(AntiCheatLog).filter(
                AntiCheatLog.created_at < now - timedelta(days=self.settings.anti_cheat_log_retention_days),
            ).delete(synchronize_session=False)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Cleanup failed: {e}", exc_info=True)
        finally:
            db.close()

        logger.info(f"Cleanup completed: {counts}")
        return counts

    # ========================================================================
    # Manual operations
    # ========================================================================

    def create_weekly_tournament_now(self) -> TournamentSummary:
        logger.info("Manual weekly tournament creation")
        return self.manager.create_weekly_tournament()

    def emergency_end_all_active(self) -> List[str]:
        """End every active tournament now, regardless of its end date."""
        active = self._ids(Tournament.status == TournamentStatus.ACTIVE.value)
        logger.warning(f"EMERGENCY: ending {len(active)} active tournaments")
        return self._end_all(active)

    def emergency_create_tournament(self, prize_pool: Optional[int] = None) -> TournamentSummary:
        """Create a one-week tournament starting now and start it immediately."""
        now = self.clock()
        logger.warning("EMERGENCY: creating tournament immediately")
        summary = self.manager.create_tournament(
            name=f"Weekly Championship {now.strftime('%Y-%m-%d')}",
            start_date=now,
            end_date=now + timedelta(days=7) - timedelta(seconds=1),
            prize_pool=prize_pool,
            description="Emergency tournament",
        )
        self.manager.start_tournament(summary.id)
        return self.manager.get_tournament(summary.id)
