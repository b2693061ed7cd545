from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from orchestrator.errors import ValidationError
from orchestrator.validation import (
    is_active_now,
    is_expired,
    require_valid_cron,
    validate_cron,
    validate_ip,
)


@dataclass
class Window:
    enabled: bool = True
    start_date: datetime | None = None
    stop_date: datetime | None = None


UTC = timezone.utc


@pytest.mark.parametrize(
    "expression",
    ["*/5 * * * *", "0 7 * * 1-5", "30 22 1 1 *", "0 0 * * sun"],
)
def test_validate_cron_accepts_five_field_expressions(expression):
    assert validate_cron(expression)


@pytest.mark.parametrize(
    "expression",
    ["", None, "* * * *", "0 0 * * * *", "61 * * * *", "every minute", "* * 32 * *"],
)
def test_validate_cron_rejects_malformed_expressions(expression):
    assert not validate_cron(expression)


def test_require_valid_cron_normalizes_whitespace():
    assert require_valid_cron("  */5   *  * * * ") == "*/5 * * * *"


def test_require_valid_cron_raises_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        require_valid_cron("not a cron")
    assert excinfo.value.status_code == 400


def test_is_active_now_respects_window():
    start = datetime(2025, 6, 1, 8, 0, tzinfo=UTC)
    stop = datetime(2025, 6, 30, 20, 0, tzinfo=UTC)
    window = Window(start_date=start, stop_date=stop)

    assert not is_active_now(window, start - timedelta(seconds=1))
    assert is_active_now(window, start)
    assert is_active_now(window, stop)
    assert not is_active_now(window, stop + timedelta(seconds=1))


def test_is_active_now_is_false_when_disabled():
    assert not is_active_now(Window(enabled=False), datetime.now(UTC))


def test_is_active_now_unbounded_window():
    assert is_active_now(Window(), datetime(1999, 1, 1, tzinfo=UTC))


def test_is_active_now_stays_false_after_stop_date():
    stop = datetime(2025, 1, 1, tzinfo=UTC)
    window = Window(stop_date=stop)
    for offset in (1, 60, 3600, 86400 * 365):
        assert not is_active_now(window, stop + timedelta(seconds=offset))
    assert is_expired(window, stop + timedelta(seconds=1))
    assert not is_expired(window, stop)


def test_naive_dates_use_the_timezone_of_now():
    window = Window(start_date=datetime(2025, 3, 1, 9, 0))
    assert is_active_now(window, datetime(2025, 3, 1, 9, 0, tzinfo=UTC))
    assert not is_active_now(window, datetime(2025, 3, 1, 8, 59, tzinfo=UTC))


def test_validate_ip():
    assert validate_ip(" 10.0.0.1 ") == "10.0.0.1"
    with pytest.raises(ValidationError):
        validate_ip("10.0.0")
    with pytest.raises(ValidationError):
        validate_ip("")
