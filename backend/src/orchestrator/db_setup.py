"""Utility CLI for preparing the SQL database and auditing stored schedules."""

from __future__ import annotations

import argparse
import sys

from sqlalchemy.exc import SQLAlchemyError

from .database import get_database_settings, get_engine
from .db_models import Base
from .schedules import get_schedule_repository
from .schemas import ScheduleUpdateRequest
from .validation import validate_cron


def init_db() -> None:
    """Create database tables if they do not already exist."""
    try:
        engine = get_engine()
        Base.metadata.create_all(engine)
    except SQLAlchemyError as exc:
        raise SystemExit(f"Failed to initialize database: {exc}") from exc
    print(f"Database tables ensured at {get_database_settings().url}.")


def check_schedules(*, disable: bool = False) -> int:
    """Report stored schedules whose cron expression is invalid; return how many."""
    repo = get_schedule_repository()
    try:
        invalid = [
            schedule
            for schedule in repo.list()
            if not validate_cron(schedule.cron_expression)
        ]
        for schedule in invalid:
            print(
                f"Schedule {schedule.id} ({schedule.name!r}) has an invalid "
                f"cron expression: {schedule.cron_expression!r}"
            )
            if disable and schedule.enabled:
                repo.update(schedule.id, ScheduleUpdateRequest(enabled=False))
                print(f"  disabled schedule {schedule.id}")
    except SQLAlchemyError as exc:
        raise SystemExit(f"Failed to read schedules: {exc}") from exc

    if not invalid:
        print("All stored schedules have valid cron expressions.")
    return len(invalid)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the orchestrator SQL database.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create database tables.")
    check_parser = sub.add_parser(
        "check-schedules", help="List schedules with invalid cron expressions."
    )
    check_parser.add_argument(
        "--disable",
        action="store_true",
        help="Disable every enabled schedule whose expression is invalid.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if args.command == "init":
        init_db()
    elif args.command == "check-schedules":
        if check_schedules(disable=args.disable) and not args.disable:
            raise SystemExit(1)
    else:
        raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main(sys.argv[1:])
