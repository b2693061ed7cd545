"""Pure checks for cron expressions, schedule windows and instance addresses."""

from __future__ import annotations

import ipaddress
from datetime import datetime, tzinfo
from typing import Protocol

from croniter import croniter

from .errors import ValidationError

CRON_FIELD_COUNT = 5


class ScheduleWindow(Protocol):
    enabled: bool
    start_date: datetime | None
    stop_date: datetime | None


def validate_cron(expression: str | None) -> bool:
    """Return True for a well-formed 5-field cron expression."""
    if not expression or not isinstance(expression, str):
        return False
    fields = expression.split()
    if len(fields) != CRON_FIELD_COUNT:
        return False
    try:
        return bool(croniter.is_valid(" ".join(fields)))
    except (ValueError, KeyError, TypeError):
        return False


def require_valid_cron(expression: str | None) -> str:
    """Return the normalized expression or raise ValidationError."""
    if not validate_cron(expression):
        raise ValidationError(
            "Invalid cron expression",
            details=f"Expected 5 fields (minute hour day-of-month month day-of-week), got {expression!r}",
        )
    assert expression is not None
    return " ".join(expression.split())


def ensure_timezone(value: datetime, tz: tzinfo | None) -> datetime:
    """Attach ``tz`` to naive datetimes so they compare with aware ones."""
    if value.tzinfo is None and tz is not None:
        return value.replace(tzinfo=tz)
    if value.tzinfo is not None and tz is None:
        return value.astimezone().replace(tzinfo=None)
    return value


def is_expired(schedule: ScheduleWindow, now: datetime) -> bool:
    """Return True once ``now`` is past the schedule's stop date."""
    if schedule.stop_date is None:
        return False
    return ensure_timezone(schedule.stop_date, now.tzinfo) < now


def is_active_now(schedule: ScheduleWindow, now: datetime) -> bool:
    """Return True when the schedule is enabled and ``now`` is inside its window."""
    if not schedule.enabled:
        return False
    if schedule.start_date is not None and ensure_timezone(schedule.start_date, now.tzinfo) > now:
        return False
    if is_expired(schedule, now):
        return False
    return True


def validate_ip(ip: str | None) -> str:
    """Return the stripped IPv4 address or raise ValidationError."""
    if not ip or not ip.strip():
        raise ValidationError("IP address is required")
    candidate = ip.strip()
    try:
        ipaddress.IPv4Address(candidate)
    except ValueError as exc:
        raise ValidationError("Invalid IP address format", details=candidate) from exc
    return candidate


__all__ = [
    "CRON_FIELD_COUNT",
    "ensure_timezone",
    "is_active_now",
    "is_expired",
    "require_valid_cron",
    "validate_cron",
    "validate_ip",
]
