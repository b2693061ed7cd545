"""Pydantic models for the orchestrator FastAPI backend."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

CLEAR = "clear"

DesiredState = int | dict[str, Any]


class Instance(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ip: str
    name: str = ""
    display_order: int = 0
    last_seen: datetime | None = None


class InstanceCreateRequest(BaseModel):
    ip: str = Field(..., min_length=1)
    name: str | None = None


class InstanceUpdateRequest(BaseModel):
    """Partial update; omitted or null fields keep their stored value."""

    ip: str | None = None
    name: str | None = None


class ReorderRequest(BaseModel):
    ordered_ids: list[int] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("ordered_ids", "orderedIds"),
    )


class InstanceDeleteResponse(BaseModel):
    success: bool = True
    pruned_presets: list[int] = Field(default_factory=list)
    removed_schedules: list[int] = Field(default_factory=list)


class PresetBindingInput(BaseModel):
    instance_id: int
    desired_state: DesiredState = Field(
        ...,
        validation_alias=AliasChoices("desired_state", "instance_preset"),
    )


class PresetBinding(BaseModel):
    instance_id: int
    instance_name: str
    instance_ip: str
    desired_state: dict[str, Any]


class Preset(BaseModel):
    id: int
    name: str
    display_order: int = 0
    created_at: datetime
    instances: list[PresetBinding] = Field(default_factory=list)


class PresetSummary(BaseModel):
    id: int
    name: str
    display_order: int = 0
    created_at: datetime
    instance_count: int = 0


class PresetCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    instances: list[PresetBindingInput] = Field(default_factory=list)


class PresetUpdateRequest(BaseModel):
    """Omitted fields are left untouched; ``instances`` replaces every binding."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    instances: list[PresetBindingInput] | None = None


class DeleteResponse(BaseModel):
    success: bool = True
    removed_schedules: list[int] = Field(default_factory=list)


class ApplyResult(BaseModel):
    instance_id: int
    instance_name: str
    success: bool
    result: dict[str, Any] | None = None
    error: Literal["timeout", "unreachable", "protocol_error", "other"] | None = None
    details: str | None = None


class ApplyReport(BaseModel):
    success: bool
    message: str
    results: list[ApplyResult] = Field(default_factory=list)


class Schedule(BaseModel):
    id: int
    name: str
    cron_expression: str
    start_date: datetime | None = None
    stop_date: datetime | None = None
    enabled: bool = True
    preset_id: int
    preset_name: str | None = None


class ScheduleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    cron_expression: str = Field(..., min_length=1)
    start_date: datetime | None = None
    stop_date: datetime | None = None
    enabled: bool = True
    preset_id: int


class ScheduleUpdateRequest(BaseModel):
    """Typed update options for a schedule.

    Every field is optional. A missing or null value keeps the stored value;
    the string ``"clear"`` resets ``start_date``/``stop_date`` to unbounded.
    """

    name: str | None = Field(default=None, min_length=1, max_length=255)
    cron_expression: str | None = Field(default=None, min_length=1)
    start_date: datetime | Literal["clear"] | None = None
    stop_date: datetime | Literal["clear"] | None = None
    enabled: bool | None = None
    preset_id: int | None = None


class ActiveJob(BaseModel):
    schedule_id: int
    expression: str
    state: Literal["unregistered", "active", "self_stopped"]
    registered_at: datetime | None = None
    next_fire: datetime | None = None


class ActiveJobListResponse(BaseModel):
    jobs: list[ActiveJob] = Field(default_factory=list)


class AuditEvent(BaseModel):
    id: int | None = None
    timestamp: datetime
    action: str
    actor: str | None = None
    subject_type: str
    subject_id: str | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EventListResponse(BaseModel):
    events: list[AuditEvent] = Field(default_factory=list)


__all__ = [
    "CLEAR",
    "ActiveJob",
    "ActiveJobListResponse",
    "ApplyReport",
    "ApplyResult",
    "AuditEvent",
    "DeleteResponse",
    "EventListResponse",
    "Instance",
    "InstanceCreateRequest",
    "InstanceDeleteResponse",
    "InstanceUpdateRequest",
    "Preset",
    "PresetBinding",
    "PresetBindingInput",
    "PresetCreateRequest",
    "PresetSummary",
    "PresetUpdateRequest",
    "ReorderRequest",
    "Schedule",
    "ScheduleCreateRequest",
    "ScheduleUpdateRequest",
]
