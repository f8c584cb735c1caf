"""
Periodic job runner.

Every job is an independent asyncio task that sleeps for its interval and then
runs its synchronous body in a worker thread. Each job owns a stop event that
is checked between firings; a running body is always allowed to finish. State
is kept per job so it can be reported by the ops API and inspected in tests.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from arena.clock import Clock, utcnow
from arena.schemas import JobStatus

logger = logging.getLogger(__name__)


def summarize(result: Any) -> Any:
    """JSON-friendly view of a job result."""
    if hasattr(result, "model_dump"):
        return result.model_dump(mode="json")
    if isinstance(result, (list, tuple)):
        return [summarize(item) for item in result]
    if isinstance(result, dict):
        return {key: summarize(value) for key, value in result.items()}
    if isinstance(result, datetime):
        return result.isoformat()
    return result


@dataclass
class JobState:
    runs: int = 0
    failures: int = 0
    running: bool = False
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = None


class PeriodicJob:
    """One named job body fired every ``interval_seconds``."""

    def __init__(self, name: str, func: Callable[[], Any], interval_seconds: float,
                 run_on_start: bool = False, clock: Clock = utcnow):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.clock = clock
        self.state = JobState()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        # One firing at a time, whether scheduled or triggered by hand
        self._lock = threading.Lock()

    @property
    def scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.scheduled:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name=f"job:{self.name}")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

    async def _run(self) -> None:
        if self.run_on_start:
            await asyncio.to_thread(self.run_sync)
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            await asyncio.to_thread(self.run_sync)

    def run_sync(self) -> Any:
        """
        Run the body once in the calling thread.

        Returns the body's result, or None when it failed or another firing of
        the same job was still running. Exceptions are recorded, never raised.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning(f"Job {self.name} still running, skipping this firing")
            return None

        self.state.running = True
        self.state.last_started_at = self.clock()
        try:
            result = self.func()
            self.state.runs += 1
            self.state.last_error = None
            self.state.last_result = summarize(result)
            return result
        except Exception as e:
            self.state.failures += 1
            self.state.last_error = str(e)
            logger.error(f"Job {self.name} failed: {e}", exc_info=True)
            return None
        finally:
            self.state.running = False
            self.state.last_finished_at = self.clock()
            self._lock.release()

    def status(self) -> JobStatus:
        return JobStatus(
            name=self.name,
            interval_seconds=self.interval_seconds,
            running=self.state.running,
            runs=self.state.runs,
            failures=self.state.failures,
            last_started_at=self.state.last_started_at,
            last_finished_at=self.state.last_finished_at,
            last_error=self.state.last_error,
            last_result=self.state.last_result,
        )


class JobScheduler:
    """Owns the periodic jobs; started and stopped by the application lifespan."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._jobs: Dict[str, PeriodicJob] = {}
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    def add_job(self, name: str, func: Callable[[], Any], interval_seconds: float,
                run_on_start: bool = False) -> PeriodicJob:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        job = PeriodicJob(name, func, interval_seconds, run_on_start=run_on_start, clock=self.clock)
        self._jobs[name] = job
        return job

    async def start(self) -> None:
        if self._started:
            return
        for job in self._jobs.values():
            await job.start()
        self._started = True
        logger.info(f"Job scheduler started with {len(self._jobs)} jobs: {', '.join(self._jobs)}")

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("Stopping job scheduler...")
        await asyncio.gather(*(job.stop() for job in self._jobs.values()))
        self._started = False
        logger.info("Job scheduler stopped")

    def get_job(self, name: str) -> PeriodicJob:
        try:
            return self._jobs[name]
        except KeyError:
            raise KeyError(f"Unknown job: {name}") from None

    def run_job_now(self, name: str) -> Any:
        """Fire one job synchronously in the calling thread."""
        logger.info(f"Running job {name} on demand")
        return self.get_job(name).run_sync()

    def status(self) -> List[JobStatus]:
        return [job.status() for job in self._jobs.values()]
