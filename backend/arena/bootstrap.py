"""Composition root: builds the services and registers their periodic jobs."""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from arena.cache import CacheManager
from arena.clock import Clock, utcnow
from arena.config import Settings, get_settings
from arena.database import get_session_factory
from arena.scheduling import JobScheduler
from arena.services.aggregator import LeaderboardAggregator
from arena.services.anti_cheat import AntiCheatEngine
from arena.services.notifications import LoggingNotifier, Notifier
from arena.services.prizes import PlayerAccountStore, PrizeCalculator, PrizeManager, SqlPlayerAccountStore
from arena.services.tournament_scheduler import TournamentScheduler
from arena.services.tournaments import TournamentManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    session_factory: sessionmaker
    cache: CacheManager
    anti_cheat: AntiCheatEngine
    aggregator: LeaderboardAggregator
    accounts: PlayerAccountStore
    prize_manager: PrizeManager
    prize_calculator: PrizeCalculator
    tournaments: TournamentManager
    tournament_scheduler: TournamentScheduler
    jobs: JobScheduler


def build_services(session_factory: Optional[sessionmaker] = None,
                   cache: Optional[CacheManager] = None,
                   settings: Optional[Settings] = None,
                   clock: Clock = utcnow,
                   notifier: Optional[Notifier] = None,
                   accounts: Optional[PlayerAccountStore] = None) -> Services:
    """Wire every service against one session factory, cache and clock."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    cache = cache or CacheManager()
    notifier = notifier or LoggingNotifier()
    accounts = accounts or SqlPlayerAccountStore(session_factory, clock=clock)

    anti_cheat = AntiCheatEngine(session_factory, settings=settings, clock=clock)
    aggregator = LeaderboardAggregator(session_factory, cache, anti_cheat=anti_cheat,
                                       settings=settings, clock=clock)
    prize_manager = PrizeManager(session_factory, accounts, clock=clock)
    prize_calculator = PrizeCalculator(session_factory, prize_manager, notifier=notifier,
                                       settings=settings, clock=clock)
    tournaments = TournamentManager(session_factory, cache, anti_cheat=anti_cheat, aggregator=aggregator,
                                    prize_calculator=prize_calculator, notifier=notifier,
                                    settings=settings, clock=clock)
    tournament_scheduler = TournamentScheduler(session_factory, tournaments, aggregator, prize_calculator,
                                               settings=settings, clock=clock)

    services = Services(
        session_factory=session_factory,
        cache=cache,
        anti_cheat=anti_cheat,
        aggregator=aggregator,
        accounts=accounts,
        prize_manager=prize_manager,
        prize_calculator=prize_calculator,
        tournaments=tournaments,
        tournament_scheduler=tournament_scheduler,
        jobs=JobScheduler(clock=clock),
    )
    register_jobs(services, settings)
    return services


def register_jobs(services: Services, settings: Settings) -> JobScheduler:
    jobs = services.jobs
    sweeps = services.tournament_scheduler

    jobs.add_job("status_sweep", sweeps.status_sweep, settings.status_sweep_interval, run_on_start=True)
    jobs.add_job("start_sweep", sweeps.start_sweep, settings.boundary_sweep_interval)
    jobs.add_job("end_sweep", sweeps.end_sweep, settings.boundary_sweep_interval)
    jobs.add_job("weekly_creation", sweeps.weekly_creation, settings.weekly_creation_interval, run_on_start=True)
    jobs.add_job("cleanup", sweeps.cleanup, settings.cleanup_interval)
    jobs.add_job("tournament_aggregation", sweeps.aggregate_active_tournaments,
                 settings.tournament_aggregation_interval)
    jobs.add_job("global_aggregation", services.aggregator.update_global_leaderboard,
                 settings.global_aggregation_interval)
    jobs.add_job("prize_sweep", sweeps.prize_sweep, settings.prize_sweep_interval)

    logger.info(f"Registered {len(jobs.job_names)} periodic jobs")
    return jobs
