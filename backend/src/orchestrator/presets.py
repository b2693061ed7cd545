"""Preset storage: named, ordered collections of per-instance desired states."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from .database import get_session_factory, transaction
from .db_models import BindingModel, InstanceModel, PresetModel, ScheduleModel
from .errors import ConflictError, NotFoundError, ValidationError
from .instances import validate_reorder_ids
from .resolver import StoredBinding, normalize_desired_state
from .schemas import (
    Preset,
    PresetBinding,
    PresetBindingInput,
    PresetCreateRequest,
    PresetSummary,
    PresetUpdateRequest,
)
from .wled.utils import logger

DUPLICATE_NAME_MESSAGE = "Preset with this name already exists"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def encode_desired_state(value: object) -> str:
    """Serialize a desired state in its canonical JSON-object form."""
    return json.dumps(normalize_desired_state(value))


class PresetRepository(Protocol):
    """Port defining operations for managing presets and their bindings."""

    def list_summaries(self) -> list[PresetSummary]:
        ...

    def get(self, preset_id: int) -> Preset | None:
        ...

    def create(self, payload: PresetCreateRequest) -> Preset:
        ...

    def update(self, preset_id: int, payload: PresetUpdateRequest) -> Preset:
        ...

    def delete(self, preset_id: int) -> list[int]:
        ...

    def reorder(self, ordered_ids: Sequence[int]) -> list[PresetSummary]:
        ...

    def load_bindings(self, preset_id: int) -> tuple[str, list[StoredBinding]] | None:
        ...


def _clean_name(name: str) -> str:
    cleaned = name.strip()
    if not cleaned:
        raise ValidationError("Valid preset name is required")
    return cleaned


def _name_taken(session: Session, name: str, *, exclude_id: int | None = None) -> bool:
    stmt = select(PresetModel.id).where(PresetModel.name == name)
    if exclude_id is not None:
        stmt = stmt.where(PresetModel.id != exclude_id)
    return session.execute(stmt).first() is not None


def _check_bindings(session: Session, bindings: Sequence[PresetBindingInput]) -> None:
    instance_ids = [binding.instance_id for binding in bindings]
    if len(set(instance_ids)) != len(instance_ids):
        raise ValidationError("An instance may appear only once per preset")
    if not instance_ids:
        return
    known = set(
        session.execute(
            select(InstanceModel.id).where(InstanceModel.id.in_(instance_ids))
        ).scalars()
    )
    missing = [instance_id for instance_id in instance_ids if instance_id not in known]
    if missing:
        raise ValidationError("Unknown instance id(s) in preset", details=missing)


def _insert_bindings(
    session: Session, preset_id: int, bindings: Sequence[PresetBindingInput]
) -> None:
    for position, binding in enumerate(bindings):
        session.add(
            BindingModel(
                preset_id=preset_id,
                instance_id=binding.instance_id,
                position=position,
                desired_state=encode_desired_state(binding.desired_state),
            )
        )


def _binding_rows(session: Session, preset_id: int) -> list[StoredBinding]:
    rows = session.execute(
        select(BindingModel, InstanceModel)
        .join(InstanceModel, InstanceModel.id == BindingModel.instance_id)
        .where(BindingModel.preset_id == preset_id)
        .order_by(BindingModel.position, BindingModel.instance_id)
    ).all()
    return [
        StoredBinding(
            instance_id=instance.id,
            instance_name=instance.name,
            instance_ip=instance.ip,
            desired_state=binding.desired_state,
        )
        for binding, instance in rows
    ]


class SQLAlchemyPresetRepository(PresetRepository):
    """Adapter that stores presets and bindings in a SQL database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list_summaries(self) -> list[PresetSummary]:
        binding_count = func.count(BindingModel.instance_id)
        stmt = (
            select(PresetModel, binding_count)
            .outerjoin(BindingModel, BindingModel.preset_id == PresetModel.id)
            .group_by(PresetModel.id)
            .order_by(PresetModel.display_order, PresetModel.id)
        )
        with self._session_factory() as session:
            return [
                PresetSummary(
                    id=model.id,
                    name=model.name,
                    display_order=model.display_order,
                    created_at=datetime.fromisoformat(model.created_at),
                    instance_count=count,
                )
                for model, count in session.execute(stmt).all()
            ]

    def get(self, preset_id: int) -> Preset | None:
        with self._session_factory() as session:
            model = session.get(PresetModel, preset_id)
            if model is None:
                return None
            bindings = _binding_rows(session, preset_id)
            return Preset(
                id=model.id,
                name=model.name,
                display_order=model.display_order,
                created_at=datetime.fromisoformat(model.created_at),
                instances=[
                    PresetBinding(
                        instance_id=row.instance_id,
                        instance_name=row.instance_name,
                        instance_ip=row.instance_ip,
                        desired_state=normalize_desired_state(row.desired_state),
                    )
                    for row in bindings
                ],
            )

    def load_bindings(self, preset_id: int) -> tuple[str, list[StoredBinding]] | None:
        with self._session_factory() as session:
            model = session.get(PresetModel, preset_id)
            if model is None:
                return None
            return model.name, _binding_rows(session, preset_id)

    def create(self, payload: PresetCreateRequest) -> Preset:
        name = _clean_name(payload.name)
        with transaction(
            self._session_factory, conflict_message=DUPLICATE_NAME_MESSAGE
        ) as session:
            if _name_taken(session, name):
                raise ConflictError(DUPLICATE_NAME_MESSAGE, details=name)
            _check_bindings(session, payload.instances)
            max_order = session.execute(select(func.max(PresetModel.display_order))).scalar()
            model = PresetModel(
                name=name,
                display_order=0 if max_order is None else max_order + 1,
                created_at=_now_iso(),
            )
            session.add(model)
            session.flush()
            preset_id = model.id
            _insert_bindings(session, preset_id, payload.instances)

        logger.bind(preset_id=preset_id, bindings=len(payload.instances)).info("Preset created")
        created = self.get(preset_id)
        assert created is not None
        return created

    def update(self, preset_id: int, payload: PresetUpdateRequest) -> Preset:
        with transaction(
            self._session_factory, conflict_message=DUPLICATE_NAME_MESSAGE
        ) as session:
            model = session.get(PresetModel, preset_id)
            if model is None:
                raise NotFoundError("Preset not found", details={"preset_id": preset_id})
            if payload.name is not None:
                name = _clean_name(payload.name)
                if _name_taken(session, name, exclude_id=preset_id):
                    raise ConflictError(DUPLICATE_NAME_MESSAGE, details=name)
                model.name = name
            if payload.instances is not None:
                _check_bindings(session, payload.instances)
                session.execute(delete(BindingModel).where(BindingModel.preset_id == preset_id))
                _insert_bindings(session, preset_id, payload.instances)

        updated = self.get(preset_id)
        assert updated is not None
        return updated

    def delete(self, preset_id: int) -> list[int]:
        """Delete a preset with its bindings and schedules; return the schedule ids."""
        with transaction(self._session_factory) as session:
            if session.get(PresetModel, preset_id) is None:
                raise NotFoundError("Preset not found", details={"preset_id": preset_id})
            schedule_ids = list(
                session.execute(
                    select(ScheduleModel.id).where(ScheduleModel.preset_id == preset_id)
                ).scalars()
            )
            session.execute(delete(ScheduleModel).where(ScheduleModel.preset_id == preset_id))
            session.execute(delete(BindingModel).where(BindingModel.preset_id == preset_id))
            session.execute(delete(PresetModel).where(PresetModel.id == preset_id))
        logger.bind(preset_id=preset_id, removed_schedules=schedule_ids).info("Preset deleted")
        return schedule_ids

    def reorder(self, ordered_ids: Sequence[int]) -> list[PresetSummary]:
        ids = validate_reorder_ids(ordered_ids)
        with transaction(self._session_factory) as session:
            for index, preset_id in enumerate(ids):
                result = session.execute(
                    update(PresetModel)
                    .where(PresetModel.id == preset_id)
                    .values(display_order=index)
                )
                if result.rowcount == 0:
                    raise NotFoundError("Preset not found", details={"preset_id": preset_id})
        return self.list_summaries()


def get_preset_repository() -> PresetRepository:
    """Return the configured preset repository."""
    return SQLAlchemyPresetRepository(get_session_factory())


__all__ = [
    "PresetRepository",
    "SQLAlchemyPresetRepository",
    "encode_desired_state",
    "get_preset_repository",
]
