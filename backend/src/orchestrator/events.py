"""Audit trail of mutating API calls and scheduled applies."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .database import get_session_factory
from .db_models import EventModel
from .wled.utils import logger


@dataclass(frozen=True)
class Event:
    """One recorded action; ``actor`` is a caller name or ``schedule:<id>``."""

    action: str
    subject_type: str
    timestamp: datetime
    subject_id: str | None = None
    actor: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None


class EventRepository(Protocol):
    def record(self, event: Event) -> Event:
        ...

    def list_recent(
        self,
        limit: int = 100,
        *,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[Event]:
        ...


def _model_to_event(model: EventModel) -> Event:
    return Event(
        id=model.id,
        timestamp=datetime.fromisoformat(model.timestamp),
        action=model.action,
        actor=model.actor,
        subject_type=model.subject_type,
        subject_id=model.subject_id,
        reason=model.reason,
        metadata=json.loads(model.metadata_json) if model.metadata_json else {},
    )


class SQLEventRepository(EventRepository):
    """Stores events in the ``events`` table, newest first on read."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def record(self, event: Event) -> Event:
        model = EventModel(
            timestamp=event.timestamp.isoformat(),
            action=event.action,
            actor=event.actor,
            subject_type=event.subject_type,
            subject_id=event.subject_id,
            reason=event.reason,
            metadata_json=json.dumps(event.metadata, default=str) if event.metadata else None,
        )
        with self._session_factory() as session:
            session.add(model)
            session.commit()
            return _model_to_event(model)

    def list_recent(
        self,
        limit: int = 100,
        *,
        subject_type: str | None = None,
        subject_id: str | None = None,
    ) -> list[Event]:
        stmt = select(EventModel)
        if subject_type is not None:
            stmt = stmt.where(EventModel.subject_type == subject_type)
        if subject_id is not None:
            stmt = stmt.where(EventModel.subject_id == subject_id)
        stmt = stmt.order_by(EventModel.id.desc()).limit(limit)
        with self._session_factory() as session:
            return [_model_to_event(model) for model in session.execute(stmt).scalars()]


def get_event_repository() -> EventRepository:
    return SQLEventRepository(get_session_factory())


def record_event(
    *,
    action: str,
    subject_type: str,
    subject_id: str | int | None = None,
    actor: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Event | None:
    """Persist an audit event.

    Auditing never fails the operation being audited: a store error is
    logged and ``None`` is returned.
    """
    event = Event(
        action=action,
        subject_type=subject_type,
        subject_id=None if subject_id is None else str(subject_id),
        actor=actor,
        reason=reason,
        metadata=metadata or {},
        timestamp=datetime.now(tz=UTC),
    )
    try:
        return get_event_repository().record(event)
    except SQLAlchemyError as exc:
        logger.bind(action=action, subject_type=subject_type).warning(
            "Failed to record audit event: {}", exc
        )
        return None


def list_recent_events(
    limit: int = 100,
    *,
    subject_type: str | None = None,
    subject_id: str | None = None,
) -> list[Event]:
    return get_event_repository().list_recent(
        limit, subject_type=subject_type, subject_id=subject_id
    )


__all__ = [
    "Event",
    "EventRepository",
    "SQLEventRepository",
    "get_event_repository",
    "list_recent_events",
    "record_event",
]
