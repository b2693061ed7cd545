"""SQLAlchemy ORM models for persisting instances, presets, schedules, and audit events."""

from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for ORM models."""


class InstanceModel(Base):
    """ORM model representing a WLED controller."""

    __tablename__ = "instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen: Mapped[str | None] = mapped_column(String(64), nullable=True)


class PresetModel(Base):
    """ORM model representing a named group of desired device states."""

    __tablename__ = "presets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)


class BindingModel(Base):
    """Desired state of one instance within one preset."""

    __tablename__ = "preset_instances"

    preset_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("presets.id", ondelete="CASCADE"),
        primary_key=True,
    )
    instance_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("instances.id", ondelete="CASCADE"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Always a JSON object; integer slots are stored as {"selected_slot": n}.
    desired_state: Mapped[str] = mapped_column(Text, nullable=False)


class ScheduleModel(Base):
    """ORM model representing a cron-triggered preset schedule."""

    __tablename__ = "preset_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    cron_expression: Mapped[str] = mapped_column(String(255), nullable=False)
    start_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stop_date: Mapped[str | None] = mapped_column(String(64), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    preset_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("presets.id", ondelete="CASCADE"),
        nullable=False,
    )


class EventModel(Base):
    """Audit log entries for significant system actions."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject_type: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
