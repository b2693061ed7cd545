"""Repositories and helpers for managing preset schedules."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from .database import get_session_factory, transaction
from .db_models import PresetModel, ScheduleModel
from .errors import ConflictError, NotFoundError, ValidationError
from .schemas import CLEAR, Schedule, ScheduleCreateRequest, ScheduleUpdateRequest
from .validation import ensure_timezone, require_valid_cron
from .wled.utils import logger

DUPLICATE_NAME_MESSAGE = "Schedule with this name already exists"

# Utility ---------------------------------------------------------------------


def _format_date(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_date(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _model_to_schedule(model: ScheduleModel, preset_name: str | None = None) -> Schedule:
    return Schedule(
        id=model.id,
        name=model.name,
        cron_expression=model.cron_expression,
        start_date=_parse_date(model.start_date),
        stop_date=_parse_date(model.stop_date),
        enabled=bool(model.enabled),
        preset_id=model.preset_id,
        preset_name=preset_name,
    )


def _check_window(start: datetime | None, stop: datetime | None) -> None:
    if start is None or stop is None:
        return
    if ensure_timezone(start, stop.tzinfo) > stop:
        raise ValidationError(
            "start_date must not be after stop_date",
            details={"start_date": start.isoformat(), "stop_date": stop.isoformat()},
        )


def _clean_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise ValidationError("Valid schedule name is required")
    return cleaned


def _require_preset(session: Session, preset_id: int) -> None:
    if session.get(PresetModel, preset_id) is None:
        raise NotFoundError("Preset not found", details={"preset_id": preset_id})


def _name_taken(session: Session, name: str, *, exclude_id: int | None = None) -> bool:
    stmt = select(ScheduleModel.id).where(ScheduleModel.name == name)
    if exclude_id is not None:
        stmt = stmt.where(ScheduleModel.id != exclude_id)
    return session.execute(stmt).first() is not None


# Repository protocol ---------------------------------------------------------


class ScheduleRepository(Protocol):
    """Abstraction used by routers and the scheduler to manage schedules."""

    def list(self, *, enabled: bool | None = None) -> list[Schedule]:
        ...

    def get(self, schedule_id: int) -> Schedule | None:
        ...

    def create(self, payload: ScheduleCreateRequest) -> Schedule:
        ...

    def update(self, schedule_id: int, payload: ScheduleUpdateRequest) -> Schedule:
        ...

    def delete(self, schedule_id: int) -> bool:
        ...


class SqlScheduleRepository(ScheduleRepository):
    """SQL-backed schedule repository."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list(self, *, enabled: bool | None = None) -> list[Schedule]:
        stmt = select(ScheduleModel, PresetModel.name).join(
            PresetModel, PresetModel.id == ScheduleModel.preset_id
        )
        if enabled is not None:
            stmt = stmt.where(ScheduleModel.enabled == enabled)
        stmt = stmt.order_by(ScheduleModel.id)
        with self._session_factory() as session:
            return [
                _model_to_schedule(model, preset_name)
                for model, preset_name in session.execute(stmt).all()
            ]

    def get(self, schedule_id: int) -> Schedule | None:
        stmt = (
            select(ScheduleModel, PresetModel.name)
            .join(PresetModel, PresetModel.id == ScheduleModel.preset_id)
            .where(ScheduleModel.id == schedule_id)
        )
        with self._session_factory() as session:
            row = session.execute(stmt).first()
            if row is None:
                return None
            model, preset_name = row
            return _model_to_schedule(model, preset_name)

    def create(self, payload: ScheduleCreateRequest) -> Schedule:
        name = _clean_name(payload.name)
        expression = require_valid_cron(payload.cron_expression)
        _check_window(payload.start_date, payload.stop_date)

        with transaction(
            self._session_factory, conflict_message=DUPLICATE_NAME_MESSAGE
        ) as session:
            _require_preset(session, payload.preset_id)
            if _name_taken(session, name):
                raise ConflictError(DUPLICATE_NAME_MESSAGE, details=name)
            model = ScheduleModel(
                name=name,
                cron_expression=expression,
                start_date=_format_date(payload.start_date),
                stop_date=_format_date(payload.stop_date),
                enabled=payload.enabled,
                preset_id=payload.preset_id,
            )
            session.add(model)
            session.flush()
            schedule_id = model.id

        logger.bind(schedule_id=schedule_id, expression=expression).info("Schedule created")
        created = self.get(schedule_id)
        assert created is not None
        return created

    def update(self, schedule_id: int, payload: ScheduleUpdateRequest) -> Schedule:
        data = payload.model_dump(exclude_unset=True)

        with transaction(
            self._session_factory, conflict_message=DUPLICATE_NAME_MESSAGE
        ) as session:
            model = session.get(ScheduleModel, schedule_id)
            if model is None:
                raise NotFoundError("Schedule not found", details={"schedule_id": schedule_id})

            if data.get("name") is not None:
                name = _clean_name(data["name"])
                if _name_taken(session, name, exclude_id=schedule_id):
                    raise ConflictError(DUPLICATE_NAME_MESSAGE, details=name)
                model.name = name
            if data.get("cron_expression") is not None:
                model.cron_expression = require_valid_cron(data["cron_expression"])
            if data.get("enabled") is not None:
                model.enabled = data["enabled"]
            if data.get("preset_id") is not None:
                _require_preset(session, data["preset_id"])
                model.preset_id = data["preset_id"]

            for field_name in ("start_date", "stop_date"):
                value = data.get(field_name)
                if value == CLEAR:
                    setattr(model, field_name, None)
                elif isinstance(value, datetime):
                    setattr(model, field_name, value.isoformat())

            _check_window(_parse_date(model.start_date), _parse_date(model.stop_date))

        updated = self.get(schedule_id)
        assert updated is not None
        return updated

    def delete(self, schedule_id: int) -> bool:
        with transaction(self._session_factory) as session:
            result = session.execute(delete(ScheduleModel).where(ScheduleModel.id == schedule_id))
            removed = bool(result.rowcount)
        if removed:
            logger.bind(schedule_id=schedule_id).info("Schedule deleted")
        return removed


def get_schedule_repository() -> ScheduleRepository:
    """Return the configured schedule repository."""
    return SqlScheduleRepository(get_session_factory())


__all__ = [
    "ScheduleRepository",
    "SqlScheduleRepository",
    "get_schedule_repository",
]
