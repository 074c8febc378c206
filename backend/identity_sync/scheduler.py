"""APScheduler configuration for timezone-pinned delta sync jobs."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from identity_sync.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MODE = "Delta Sync"


class UnknownJobError(LookupError):
    pass


@dataclass
class JobResult:
    ok: bool
    message: str
    count: int = 0


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobRun:
    status: RunStatus
    result: Optional[JobResult] = None


@dataclass
class JobState:
    name: str
    cron: str
    timezone: str
    handler: Callable[[], Awaitable[JobResult]]
    mode: str = DEFAULT_MODE
    last_run: Optional[datetime] = None
    last_result: Optional[JobResult] = None
    running: bool = False


def _tz(timezone: Union[str, Any]):
    return pytz.timezone(timezone) if isinstance(timezone, str) else timezone


def next_fire_time(expression: str, reference: datetime, timezone: Union[str, Any]) -> Optional[datetime]:
    """
    First fire time of a crontab expression strictly after reference.

    The expression is evaluated in the given timezone, never in host local
    time. reference must be timezone-aware.
    """
    if reference.tzinfo is None:
        raise ValueError("reference must be timezone-aware")
    trigger = CronTrigger.from_crontab(expression, timezone=_tz(timezone))
    # CronTrigger returns the first fire at or after "now"; nudge past the reference
    return trigger.get_next_fire_time(None, reference + timedelta(microseconds=1))


def format_local(moment: Optional[datetime], timezone: Union[str, Any]) -> Optional[str]:
    """e.g. 'Aug 9, 10:00 AM CDT'"""
    if moment is None:
        return None
    local = moment.astimezone(_tz(timezone))
    hour = local.hour % 12 or 12
    return f"{local:%b} {local.day}, {hour}:{local:%M} {local:%p} {local.tzname()}"


def describe_result(state: JobState) -> str:
    if state.last_result is None:
        return "No data" if state.last_run else "Never"
    if state.last_result.ok:
        return f"{state.last_result.count} synced"
    return f"Error: {state.last_result.message}"


class JobScheduler:
    """
    Named cron jobs on an AsyncIOScheduler.

    Cron fires and manual triggers both go through run_job, which skips a job
    that is already running. There is no queue: a skipped run is dropped.
    """

    def __init__(
        self,
        timezone: str = "America/Chicago",
        clock: Callable[[], datetime] = utcnow,
        scheduler: Optional[AsyncIOScheduler] = None
    ):
        self.timezone = timezone
        self._tzinfo = pytz.timezone(timezone)
        self._clock = clock
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self._tzinfo)
        self.jobs: Dict[str, JobState] = {}

    def register(
        self,
        name: str,
        cron: str,
        handler: Callable[[], Awaitable[JobResult]],
        mode: str = DEFAULT_MODE
    ) -> JobState:
        trigger = CronTrigger.from_crontab(cron, timezone=self._tzinfo)
        state = JobState(name=name, cron=cron, timezone=self.timezone, handler=handler, mode=mode)
        self.jobs[name] = state

        self.scheduler.add_job(
            self.run_job,
            trigger=trigger,
            args=[name],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        logger.info(f"✅ Scheduled: {name} ({cron} {self.timezone})")
        return state

    def start(self) -> None:
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        self.scheduler.start()
        logger.info("✅ APScheduler started successfully!")

        now = self._clock()
        for state in self.jobs.values():
            logger.info(f"   • {state.name}: Next run at {format_local(self.next_run(state, now), self.timezone)}")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def run_job(self, name: str) -> JobRun:
        """Guarded entry point shared by cron fires and manual triggers."""
        state = self.jobs.get(name)
        if state is None:
            raise UnknownJobError(name)

        # No await between the check and the set
        if state.running:
            logger.info(f"⏭️  {name} is already running - skipping this run")
            return JobRun(status=RunStatus.SKIPPED)
        state.running = True

        try:
            logger.info(f"▶️  {name} starting")
            try:
                result = await state.handler()
            except Exception as e:
                logger.exception(f"❌ {name} failed: {e}")
                result = JobResult(ok=False, message=str(e) or type(e).__name__)
            state.last_run = self._clock()
            state.last_result = result
        finally:
            state.running = False

        logger.info(f"{'✅' if result.ok else '❌'} {name} finished: {result.message} ({result.count} processed)")
        return JobRun(status=RunStatus.COMPLETED if result.ok else RunStatus.FAILED, result=result)

    async def trigger(self, name: str) -> JobRun:
        return await self.run_job(name)

    def next_run(self, state: JobState, reference: Optional[datetime] = None) -> Optional[datetime]:
        return next_fire_time(state.cron, reference or self._clock(), self._tzinfo)

    def get_status(self, name: str) -> Dict[str, Any]:
        state = self.jobs.get(name)
        if state is None:
            raise UnknownJobError(name)

        upcoming = self.next_run(state)
        return {
            "name": state.name,
            "status": "Running" if state.running else "Scheduled",
            "cron": state.cron,
            "timezone": state.timezone,
            "next_sync": upcoming.isoformat() if upcoming else None,
            "next_sync_formatted": format_local(upcoming, self.timezone),
            "last_sync": state.last_run.isoformat() if state.last_run else None,
            "last_result": describe_result(state),
            "sync_mode": state.mode,
            "is_running": state.running,
        }

    def all_statuses(self) -> List[Dict[str, Any]]:
        return [self.get_status(name) for name in self.jobs]
