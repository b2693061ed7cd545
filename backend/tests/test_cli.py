"""Tests for the database command-line interface."""

from __future__ import annotations

import pytest

from orchestrator.database import create_session
from orchestrator.db_models import PresetModel, ScheduleModel
from orchestrator.db_setup import main
from orchestrator.schedules import get_schedule_repository


def _insert_legacy_schedule(expression: str) -> int:
    with create_session() as session:
        preset = PresetModel(name="Legacy", display_order=0, created_at="2024-01-01T00:00:00+00:00")
        session.add(preset)
        session.flush()
        schedule = ScheduleModel(
            name="Old", cron_expression=expression, enabled=True, preset_id=preset.id
        )
        session.add(schedule)
        session.commit()
        return schedule.id


def test_init_creates_tables(capsys):
    main(["init"])
    assert "Database tables ensured" in capsys.readouterr().out


def test_check_schedules_reports_clean_store(capsys):
    main(["check-schedules"])
    assert "All stored schedules have valid cron expressions." in capsys.readouterr().out


def test_check_schedules_flags_invalid_expressions(capsys):
    schedule_id = _insert_legacy_schedule("0 0 * * * *")

    with pytest.raises(SystemExit) as excinfo:
        main(["check-schedules"])

    assert excinfo.value.code == 1
    assert f"Schedule {schedule_id} ('Old')" in capsys.readouterr().out


def test_check_schedules_can_disable_invalid_schedules(capsys):
    schedule_id = _insert_legacy_schedule("every day")

    main(["check-schedules", "--disable"])

    assert f"disabled schedule {schedule_id}" in capsys.readouterr().out
    assert get_schedule_repository().get(schedule_id).enabled is False
