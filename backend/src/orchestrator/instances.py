"""Instance (WLED controller) inventory with repository abstractions."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from .database import get_session_factory, transaction
from .db_models import BindingModel, InstanceModel, PresetModel, ScheduleModel
from .errors import ConflictError, NotFoundError, ValidationError
from .schemas import Instance, InstanceUpdateRequest
from .validation import validate_ip
from .wled.utils import logger

DUPLICATE_IP_MESSAGE = "A WLED instance with this IP already exists"


@dataclass(frozen=True)
class InstanceDeleteOutcome:
    """Rows removed alongside an instance by cascade and orphan pruning."""

    instance_id: int
    pruned_preset_ids: list[int] = field(default_factory=list)
    removed_schedule_ids: list[int] = field(default_factory=list)


class InstanceRepository(Protocol):
    """Port defining operations for managing WLED instances."""

    def list_all(self) -> list[Instance]:
        ...

    def get(self, instance_id: int) -> Instance | None:
        ...

    def get_by_ip(self, ip: str) -> Instance | None:
        ...

    def create(
        self, ip: str, name: str | None = None, *, last_seen: datetime | None = None
    ) -> Instance:
        ...

    def update(self, instance_id: int, payload: InstanceUpdateRequest) -> Instance:
        ...

    def delete(self, instance_id: int) -> InstanceDeleteOutcome:
        ...

    def reorder(self, ordered_ids: Sequence[int]) -> list[Instance]:
        ...

    def touch_last_seen(self, instance_id: int, *, seen_at: datetime | None = None) -> None:
        ...


def _ip_taken(session: Session, ip: str, *, exclude_id: int | None = None) -> bool:
    stmt = select(InstanceModel.id).where(InstanceModel.ip == ip)
    if exclude_id is not None:
        stmt = stmt.where(InstanceModel.id != exclude_id)
    return session.execute(stmt).first() is not None


def validate_reorder_ids(ordered_ids: Sequence[int]) -> list[int]:
    ids = list(ordered_ids)
    if not ids:
        raise ValidationError("orderedIds must be a non-empty array of ids")
    if len(set(ids)) != len(ids):
        raise ValidationError("orderedIds must not contain duplicates")
    return ids


class SQLAlchemyInstanceRepository(InstanceRepository):
    """Adapter that stores instances in a SQL database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list_all(self) -> list[Instance]:
        with self._session_factory() as session:
            rows = (
                session.execute(
                    select(InstanceModel).order_by(
                        InstanceModel.display_order, InstanceModel.id
                    )
                )
                .scalars()
                .all()
            )
            return [Instance.model_validate(row) for row in rows]

    def get(self, instance_id: int) -> Instance | None:
        with self._session_factory() as session:
            row = session.get(InstanceModel, instance_id)
            return Instance.model_validate(row) if row else None

    def get_by_ip(self, ip: str) -> Instance | None:
        with self._session_factory() as session:
            row = (
                session.execute(select(InstanceModel).where(InstanceModel.ip == ip.strip()))
                .scalars()
                .first()
            )
            return Instance.model_validate(row) if row else None

    def create(
        self, ip: str, name: str | None = None, *, last_seen: datetime | None = None
    ) -> Instance:
        address = validate_ip(ip)
        with transaction(
            self._session_factory, conflict_message=DUPLICATE_IP_MESSAGE
        ) as session:
            if _ip_taken(session, address):
                raise ConflictError(DUPLICATE_IP_MESSAGE, details=address)
            max_order = session.execute(
                select(func.max(InstanceModel.display_order))
            ).scalar()
            model = InstanceModel(
                ip=address,
                name=(name or "").strip(),
                display_order=0 if max_order is None else max_order + 1,
                last_seen=last_seen.isoformat() if last_seen else None,
            )
            session.add(model)
            session.flush()
            created = Instance.model_validate(model)
        logger.bind(instance_id=created.id, ip=created.ip).info("Instance created")
        return created

    def update(self, instance_id: int, payload: InstanceUpdateRequest) -> Instance:
        data = payload.model_dump(exclude_none=True)
        if not data:
            raise ValidationError("No update fields provided")

        with transaction(
            self._session_factory, conflict_message=DUPLICATE_IP_MESSAGE
        ) as session:
            model = session.get(InstanceModel, instance_id)
            if model is None:
                raise NotFoundError("Instance not found", details={"instance_id": instance_id})
            if "ip" in data:
                address = validate_ip(data["ip"])
                if _ip_taken(session, address, exclude_id=instance_id):
                    raise ConflictError(DUPLICATE_IP_MESSAGE, details=address)
                model.ip = address
            if "name" in data:
                model.name = data["name"].strip()
            session.flush()
            return Instance.model_validate(model)

    def delete(self, instance_id: int) -> InstanceDeleteOutcome:
        with transaction(self._session_factory) as session:
            if session.get(InstanceModel, instance_id) is None:
                raise NotFoundError("Instance not found", details={"instance_id": instance_id})

            affected_presets = sorted(
                set(
                    session.execute(
                        select(BindingModel.preset_id).where(
                            BindingModel.instance_id == instance_id
                        )
                    ).scalars()
                )
            )
            session.execute(delete(BindingModel).where(BindingModel.instance_id == instance_id))
            session.execute(delete(InstanceModel).where(InstanceModel.id == instance_id))

            # Only presets emptied by this cascade are pruned.
            pruned: list[int] = []
            for preset_id in affected_presets:
                remaining = session.execute(
                    select(func.count())
                    .select_from(BindingModel)
                    .where(BindingModel.preset_id == preset_id)
                ).scalar_one()
                if remaining == 0:
                    pruned.append(preset_id)

            removed_schedules: list[int] = []
            if pruned:
                removed_schedules = list(
                    session.execute(
                        select(ScheduleModel.id).where(ScheduleModel.preset_id.in_(pruned))
                    ).scalars()
                )
                session.execute(delete(ScheduleModel).where(ScheduleModel.preset_id.in_(pruned)))
                session.execute(delete(PresetModel).where(PresetModel.id.in_(pruned)))

        logger.bind(
            instance_id=instance_id,
            pruned_presets=pruned,
            removed_schedules=removed_schedules,
        ).info("Instance deleted")
        return InstanceDeleteOutcome(
            instance_id=instance_id,
            pruned_preset_ids=pruned,
            removed_schedule_ids=removed_schedules,
        )

    def reorder(self, ordered_ids: Sequence[int]) -> list[Instance]:
        ids = validate_reorder_ids(ordered_ids)
        with transaction(self._session_factory) as session:
            for index, instance_id in enumerate(ids):
                result = session.execute(
                    update(InstanceModel)
                    .where(InstanceModel.id == instance_id)
                    .values(display_order=index)
                )
                if result.rowcount == 0:
                    raise NotFoundError(
                        "Instance not found", details={"instance_id": instance_id}
                    )
        return self.list_all()

    def touch_last_seen(self, instance_id: int, *, seen_at: datetime | None = None) -> None:
        timestamp = (seen_at or datetime.now(tz=UTC)).isoformat()
        with transaction(self._session_factory) as session:
            session.execute(
                update(InstanceModel)
                .where(InstanceModel.id == instance_id)
                .values(last_seen=timestamp)
            )


def get_instance_repository() -> InstanceRepository:
    """Return the configured instance repository."""
    return SQLAlchemyInstanceRepository(get_session_factory())


__all__ = [
    "InstanceDeleteOutcome",
    "InstanceRepository",
    "SQLAlchemyInstanceRepository",
    "get_instance_repository",
    "validate_reorder_ids",
]
