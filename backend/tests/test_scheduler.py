from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from orchestrator.events import list_recent_events
from orchestrator.scheduler import JobState, ScheduleManager
from orchestrator.schemas import Schedule

START = datetime(2025, 6, 1, 12, 1, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class InMemoryScheduleRepository:
    def __init__(self, *schedules: Schedule) -> None:
        self.rows = {schedule.id: schedule for schedule in schedules}

    def list(self, *, enabled: bool | None = None) -> list[Schedule]:
        return [
            row for row in self.rows.values() if enabled is None or row.enabled == enabled
        ]

    def get(self, schedule_id: int) -> Schedule | None:
        return self.rows.get(schedule_id)


class RecordingApply:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[int] = []
        self.fail = fail

    async def __call__(self, preset_id: int) -> dict:
        self.calls.append(preset_id)
        if self.fail:
            raise RuntimeError("apply exploded")
        return {"success": True, "message": "applied", "results": []}


def _schedule(schedule_id: int = 1, **overrides) -> Schedule:
    values = {
        "id": schedule_id,
        "name": f"Schedule {schedule_id}",
        "cron_expression": "*/5 * * * *",
        "enabled": True,
        "preset_id": 7,
    }
    values.update(overrides)
    return Schedule(**values)


async def _park(_seconds: float) -> None:
    await asyncio.get_running_loop().create_future()


def _manager(repo, apply=None, clock=None) -> ScheduleManager:
    """Timers only advance when a FakeClock is passed; otherwise they stay parked."""
    return ScheduleManager(
        apply or RecordingApply(),
        repository_factory=lambda: repo,
        clock=clock or FakeClock(),
        sleep=clock.sleep if clock else _park,
    )


def test_register_twice_keeps_a_single_job():
    async def scenario():
        manager = _manager(InMemoryScheduleRepository(_schedule()))
        assert manager.register(_schedule())
        first_task = manager.active_jobs()[0].task
        assert manager.register(_schedule())
        await asyncio.sleep(0)

        jobs = manager.active_jobs()
        assert len(jobs) == 1
        assert jobs[0].task is not first_task
        assert first_task.cancelled() or first_task.done()
        await manager.shutdown()

    asyncio.run(scenario())


def test_enable_disable_enable_leaves_exactly_one_job():
    async def scenario():
        repo = InMemoryScheduleRepository(_schedule())
        manager = _manager(repo)
        manager.register(repo.get(1))
        assert manager.has_job(1)

        repo.rows[1] = _schedule(enabled=False)
        assert manager.reconcile(1) is False
        assert not manager.has_job(1)
        assert manager.job_state(1) is JobState.UNREGISTERED

        repo.rows[1] = _schedule(enabled=True)
        assert manager.reconcile(1) is True
        assert manager.reconcile(1) is True
        assert [job.schedule_id for job in manager.active_jobs()] == [1]
        await manager.shutdown()

    asyncio.run(scenario())


def test_reconcile_drops_deleted_and_expired_schedules():
    async def scenario():
        repo = InMemoryScheduleRepository(_schedule())
        manager = _manager(repo)
        manager.register(repo.get(1))

        repo.rows[1] = _schedule(stop_date=START - timedelta(days=1))
        assert manager.reconcile(1) is False
        assert not manager.has_job(1)

        del repo.rows[1]
        assert manager.reconcile(1) is False
        assert manager.deregister(1) is False
        await manager.shutdown()

    asyncio.run(scenario())


def test_initialize_skips_invalid_and_expired_schedules():
    async def scenario():
        repo = InMemoryScheduleRepository(
            _schedule(1),
            _schedule(2, cron_expression="not a cron"),
            _schedule(3, stop_date=START - timedelta(minutes=1)),
            _schedule(4, enabled=False),
            _schedule(5, start_date=START + timedelta(days=2)),
        )
        manager = _manager(repo)

        registered = await manager.initialize()

        assert registered == 2
        assert [job.schedule_id for job in manager.active_jobs()] == [1, 5]
        await manager.shutdown()
        assert manager.active_jobs() == []

    asyncio.run(scenario())


def test_tick_applies_active_schedule():
    async def scenario():
        apply = RecordingApply()
        manager = _manager(InMemoryScheduleRepository(_schedule()), apply)
        manager.register(_schedule())

        report = await manager.run_tick(1)

        assert apply.calls == [7]
        assert report["success"] is True
        assert manager.has_job(1)
        await manager.shutdown()

    asyncio.run(scenario())


def test_tick_rereads_row_and_stops_when_disabled():
    async def scenario():
        repo = InMemoryScheduleRepository(_schedule())
        apply = RecordingApply()
        manager = _manager(repo, apply)
        manager.register(repo.get(1))
        repo.rows[1] = _schedule(enabled=False)

        assert await manager.run_tick(1) is None

        assert apply.calls == []
        assert not manager.has_job(1)
        assert manager.job_state(1) is JobState.SELF_STOPPED
        await manager.shutdown()

    asyncio.run(scenario())


def test_tick_keeps_timer_before_start_date():
    async def scenario():
        repo = InMemoryScheduleRepository(_schedule(start_date=START + timedelta(hours=1)))
        apply = RecordingApply()
        manager = _manager(repo, apply)
        manager.register(repo.get(1))

        assert await manager.run_tick(1) is None

        assert apply.calls == []
        assert manager.job_state(1) is JobState.ACTIVE
        await manager.shutdown()

    asyncio.run(scenario())


def test_tick_for_missing_row_deregisters():
    async def scenario():
        repo = InMemoryScheduleRepository(_schedule())
        manager = _manager(repo)
        manager.register(repo.get(1))
        repo.rows.clear()

        await manager.run_tick(1)

        assert not manager.has_job(1)
        await manager.shutdown()

    asyncio.run(scenario())


def test_tick_errors_are_swallowed():
    async def scenario():
        apply = RecordingApply(fail=True)
        manager = _manager(InMemoryScheduleRepository(_schedule()), apply)
        manager.register(_schedule())

        assert await manager.run_tick(1) is None

        assert apply.calls == [7]
        assert manager.has_job(1)
        await manager.shutdown()

    asyncio.run(scenario())


def test_register_rejects_invalid_expression():
    async def scenario():
        manager = _manager(InMemoryScheduleRepository())
        assert manager.register(_schedule(cron_expression="* * *")) is False
        assert manager.active_jobs() == []

    asyncio.run(scenario())


def test_timer_fires_on_cron_boundaries():
    async def scenario():
        clock = FakeClock()
        apply = RecordingApply()
        manager = _manager(InMemoryScheduleRepository(_schedule()), apply, clock)
        manager.register(_schedule())

        for _ in range(100):
            if len(apply.calls) >= 2:
                break
            await asyncio.sleep(0)
        await manager.shutdown()

        assert apply.calls[:2] == [7, 7]
        # 12:01 -> 12:05, then 12:05 -> 12:10
        assert clock.sleeps[:2] == [240.0, 300.0]

    asyncio.run(scenario())


def test_timer_self_stops_after_stop_date():
    async def scenario():
        clock = FakeClock()
        repo = InMemoryScheduleRepository(_schedule(stop_date=START + timedelta(minutes=7)))
        apply = RecordingApply()
        manager = _manager(repo, apply, clock)
        manager.register(repo.get(1))

        for _ in range(100):
            if manager.job_state(1) is JobState.SELF_STOPPED:
                break
            await asyncio.sleep(0)

        assert apply.calls == [7]
        assert manager.job_state(1) is JobState.SELF_STOPPED
        assert not manager.has_job(1)
        await manager.shutdown()

    asyncio.run(scenario())


class EarlyWakingClock(FakeClock):
    """Wakes a millisecond before each requested deadline."""

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=max(seconds - 0.001, 0.0))
        await asyncio.sleep(0)


def test_early_wakeup_does_not_fire_the_same_slot_twice():
    async def scenario():
        clock = EarlyWakingClock()
        apply = RecordingApply()
        manager = _manager(InMemoryScheduleRepository(_schedule()), apply, clock)
        manager.register(_schedule())

        for _ in range(100):
            if len(apply.calls) >= 2:
                break
            await asyncio.sleep(0)
        await manager.shutdown()

        assert apply.calls[:2] == [7, 7]
        # Woke at 12:04:59.999; the next slot is 12:10, not 12:05 again.
        assert clock.sleeps[0] == 240.0
        assert clock.sleeps[1] == pytest.approx(300.001)

    asyncio.run(scenario())


class BlockingApply(RecordingApply):
    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self, preset_id: int) -> dict:
        self.calls.append(preset_id)
        self.started.set()
        await self.gate.wait()
        return {"success": True, "message": "applied", "results": [{"success": False}]}


def test_apply_outliving_a_cancelled_tick_is_still_recorded():
    async def scenario():
        apply = BlockingApply()
        manager = _manager(InMemoryScheduleRepository(_schedule()), apply)
        manager.register(_schedule())

        tick = asyncio.create_task(manager.run_tick(1))
        await apply.started.wait()
        tick.cancel()
        await asyncio.gather(tick, return_exceptions=True)
        assert tick.cancelled()

        apply.gate.set()
        await manager.shutdown()

    asyncio.run(scenario())

    events = list_recent_events(subject_type="schedule")
    assert [event.action for event in events] == ["schedule_triggered"]
    assert events[0].subject_id == "1"
    assert events[0].actor == "schedule:1"
    assert events[0].metadata["failed"] == 1
