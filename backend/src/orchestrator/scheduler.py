"""Cron timers that keep the in-memory job registry in step with stored schedules."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from functools import partial
from threading import RLock
from typing import Any

from croniter import croniter

from .errors import SchedulingError
from .events import record_event
from .schedules import ScheduleRepository, get_schedule_repository
from .schemas import Schedule
from .validation import is_active_now, is_expired, validate_cron
from .wled.utils import logger

ApplyPipeline = Callable[[int], Awaitable[Mapping[str, Any]]]
Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


class JobState(str, Enum):
    UNREGISTERED = "unregistered"
    ACTIVE = "active"
    SELF_STOPPED = "self_stopped"


@dataclass
class ActiveJob:
    """Runtime handle for one registered schedule."""

    schedule_id: int
    expression: str
    task: asyncio.Task[None]
    registered_at: datetime
    next_fire: datetime | None = None


class ScheduleManager:
    """Owns one asyncio timer task per active schedule.

    ``register``, ``deregister`` and ``reconcile`` are serialized by a
    re-entrant lock, so the registry never holds two timers for the same
    schedule id. Every fire re-reads the stored row before acting on it.
    The clock and sleep functions are injectable so the timing can be
    driven by tests.
    """

    def __init__(
        self,
        apply: ApplyPipeline,
        *,
        repository_factory: Callable[[], ScheduleRepository] = get_schedule_repository,
        clock: Clock | None = None,
        sleep: Sleeper = asyncio.sleep,
        tz: tzinfo | None = None,
    ) -> None:
        self._apply = apply
        self._repository_factory = repository_factory
        self._tz = tz
        self._clock = clock or self._system_now
        self._sleep = sleep
        self._lock = RLock()
        self._jobs: dict[int, ActiveJob] = {}
        self._states: dict[int, JobState] = {}
        self._retired: set[asyncio.Task[None]] = set()
        self._detached: set[asyncio.Future[Any]] = set()

    def _system_now(self) -> datetime:
        if self._tz is not None:
            return datetime.now(self._tz)
        return datetime.now().astimezone()

    def _now(self) -> datetime:
        return self._clock()

    # Registry ----------------------------------------------------------------

    async def initialize(self) -> int:
        """Register every enabled, unexpired schedule; return how many were registered."""
        schedules = self._repository_factory().list(enabled=True)
        now = self._now()
        registered = 0
        for schedule in schedules:
            if is_expired(schedule, now):
                logger.bind(schedule_id=schedule.id).info(
                    "Skipping schedule past its stop date"
                )
                continue
            if self.register(schedule):
                registered += 1
        logger.info(
            "Scheduler initialized.",
            registered=registered,
            enabled=len(schedules),
        )
        return registered

    def register(self, schedule: Schedule) -> bool:
        """Start a timer for ``schedule``; an invalid expression is logged and skipped."""
        if not validate_cron(schedule.cron_expression):
            logger.bind(
                schedule_id=schedule.id, expression=schedule.cron_expression
            ).error("Invalid cron expression; schedule not registered")
            return False

        expression = " ".join(schedule.cron_expression.split())
        loop = asyncio.get_running_loop()
        with self._lock:
            self.deregister(schedule.id)
            task = loop.create_task(
                self._run_job(schedule.id, expression),
                name=f"schedule-{schedule.id}",
            )
            self._jobs[schedule.id] = ActiveJob(
                schedule_id=schedule.id,
                expression=expression,
                task=task,
                registered_at=self._now(),
            )
            self._states[schedule.id] = JobState.ACTIVE
        logger.info("Schedule registered.", schedule_id=schedule.id, expression=expression)
        return True

    def deregister(self, schedule_id: int, *, state: JobState = JobState.UNREGISTERED) -> bool:
        """Stop and forget the timer for ``schedule_id``; safe to call repeatedly."""
        with self._lock:
            job = self._jobs.pop(schedule_id, None)
            if job is None:
                return False
            self._states[schedule_id] = state

        # A job stopping itself just falls out of its loop.
        if job.task is not asyncio.current_task() and not job.task.done():
            job.task.cancel()
            self._retired.add(job.task)
            job.task.add_done_callback(self._retired.discard)
        logger.bind(schedule_id=schedule_id, state=state.value).info("Schedule deregistered")
        return True

    def reconcile(self, schedule_id: int) -> bool:
        """Rebuild the timer for ``schedule_id`` from the stored row."""
        with self._lock:
            self.deregister(schedule_id)
            schedule = self._repository_factory().get(schedule_id)
            if schedule is None or not schedule.enabled:
                return False
            if is_expired(schedule, self._now()):
                return False
            return self.register(schedule)

    # Timer -------------------------------------------------------------------

    def _owns(self, schedule_id: int) -> bool:
        job = self._jobs.get(schedule_id)
        return job is not None and job.task is asyncio.current_task()

    async def _run_job(self, schedule_id: int, expression: str) -> None:
        last_fire: datetime | None = None
        while self._owns(schedule_id):
            now = self._now()
            # A sleep that wakes just short of the slot must not fire it twice.
            base = now if last_fire is None else max(now, last_fire)
            try:
                next_fire = croniter(expression, base).get_next(datetime)
            except (ValueError, KeyError) as exc:
                error = SchedulingError("Cron expression could not be evaluated", details=str(exc))
                logger.bind(schedule_id=schedule_id).error(error.message)
                self.deregister(schedule_id, state=JobState.SELF_STOPPED)
                return

            job = self._jobs.get(schedule_id)
            if job is not None:
                job.next_fire = next_fire
            await self._sleep(max((next_fire - now).total_seconds(), 0.0))
            if not self._owns(schedule_id):
                return
            last_fire = next_fire
            await self.run_tick(schedule_id)

    async def run_tick(self, schedule_id: int) -> Mapping[str, Any] | None:
        """Handle one fire; errors are logged and never escape."""
        try:
            schedule = self._repository_factory().get(schedule_id)
            if schedule is None:
                logger.bind(schedule_id=schedule_id).info(
                    "Schedule no longer exists; stopping its timer"
                )
                self.deregister(schedule_id)
                return None

            now = self._now()
            if is_active_now(schedule, now):
                apply_task = asyncio.ensure_future(self._apply(schedule.preset_id))
                try:
                    report = await asyncio.shield(apply_task)
                except asyncio.CancelledError:
                    # Device calls already in flight finish after the timer is cancelled.
                    self._detached.add(apply_task)
                    apply_task.add_done_callback(partial(self._finish_detached, schedule))
                    raise
                self._report_apply(schedule, report)
                return report

            if not schedule.enabled or is_expired(schedule, now):
                self.deregister(schedule_id, state=JobState.SELF_STOPPED)
            return None
        except Exception as exc:
            error = SchedulingError("Scheduled tick failed", details=str(exc))
            logger.bind(schedule_id=schedule_id).opt(exception=exc).error(error.message)
            return None

    def _report_apply(self, schedule: Schedule, report: Mapping[str, Any]) -> None:
        results = report.get("results", [])
        failed = sum(1 for result in results if not result.get("success"))
        logger.bind(
            schedule_id=schedule.id,
            preset_id=schedule.preset_id,
            failed=failed,
        ).info("Scheduled apply finished: {}", report.get("message"))
        record_event(
            action="schedule_triggered",
            subject_type="schedule",
            subject_id=schedule.id,
            actor=f"schedule:{schedule.id}",
            reason=schedule.name,
            metadata={
                "preset_id": schedule.preset_id,
                "device_count": len(results),
                "failed": failed,
            },
        )

    def _finish_detached(self, schedule: Schedule, task: asyncio.Future[Any]) -> None:
        """Report an apply that outlived its cancelled timer."""
        self._detached.discard(task)
        log = logger.bind(schedule_id=schedule.id, preset_id=schedule.preset_id)
        if task.cancelled():
            log.warning("Scheduled apply was cancelled before it finished")
            return
        exc = task.exception()
        if exc is not None:
            error = SchedulingError("Scheduled apply failed", details=str(exc))
            log.opt(exception=exc).error(error.message)
            return
        try:
            self._report_apply(schedule, task.result())
        except Exception as exc:
            log.opt(exception=exc).error("Could not report scheduled apply")

    # Views -------------------------------------------------------------------

    def has_job(self, schedule_id: int) -> bool:
        with self._lock:
            return schedule_id in self._jobs

    def job_state(self, schedule_id: int) -> JobState:
        with self._lock:
            return self._states.get(schedule_id, JobState.UNREGISTERED)

    def active_jobs(self) -> list[ActiveJob]:
        with self._lock:
            return [self._jobs[key] for key in sorted(self._jobs)]

    async def shutdown(self) -> None:
        """Cancel every timer and wait for the tasks to finish."""
        with self._lock:
            tasks = [job.task for job in self._jobs.values()]
            for schedule_id in self._jobs:
                self._states[schedule_id] = JobState.UNREGISTERED
            self._jobs.clear()
            tasks.extend(self._retired)
            self._retired.clear()
            detached = list(self._detached)

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Applies cut loose from their timers are left to finish and report.
        if detached:
            await asyncio.gather(*detached, return_exceptions=True)
        logger.info("Scheduler stopped.", cancelled=len(tasks))


__all__ = ["ActiveJob", "JobState", "ScheduleManager"]
