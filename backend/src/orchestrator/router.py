"""API router exposing instance, preset, schedule and audit endpoints."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Header, Query, Request, status

from . import schemas
from .config import Settings
from .errors import AuthenticationError, ConflictError, NotFoundError
from .events import Event, list_recent_events, record_event
from .instances import get_instance_repository
from .presets import get_preset_repository
from .scheduler import ScheduleManager
from .schedules import get_schedule_repository
from .services import call_device, trigger_apply, verify_controller
from .validation import validate_ip


def require_api_key(
    request: Request,
    x_api_key: Annotated[str | None, Header()] = None,
    api_key: Annotated[str | None, Query(alias="apiKey")] = None,
) -> None:
    """Reject requests without a known key when API keys are configured."""
    keys = _settings(request).api_keys
    if not keys:
        return
    supplied = x_api_key or api_key
    if not supplied:
        raise AuthenticationError("API key required")
    if supplied not in keys:
        raise AuthenticationError("Invalid API key")


router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _scheduler(request: Request) -> ScheduleManager:
    return request.app.state.scheduler


def _device_client(request: Request) -> Any:
    return request.app.state.device_client


def _resolve_actor(request: Request, explicit: str | None = None) -> str:
    if explicit:
        candidate = explicit.strip()
        if candidate:
            return candidate
    header_actor = request.headers.get("x-actor")
    if header_actor:
        candidate = header_actor.strip()
        if candidate:
            return candidate
    return "system"


def _resolve_reason(request: Request, explicit: str | None = None) -> str | None:
    if explicit:
        candidate = explicit.strip()
        if candidate:
            return candidate
    header_reason = request.headers.get("x-reason")
    if header_reason:
        candidate = header_reason.strip()
        if candidate:
            return candidate
    return None


def _audit(request: Request, action: str, subject_type: str, subject_id: Any, **metadata: Any) -> None:
    record_event(
        action=action,
        subject_type=subject_type,
        subject_id=subject_id,
        actor=_resolve_actor(request),
        reason=_resolve_reason(request),
        metadata=metadata or None,
    )


def _event_to_schema(event: Event) -> schemas.AuditEvent:
    return schemas.AuditEvent(
        id=event.id,
        timestamp=event.timestamp,
        action=event.action,
        actor=event.actor,
        subject_type=event.subject_type,
        subject_id=event.subject_id,
        reason=event.reason,
        metadata=event.metadata,
    )


# Instances -------------------------------------------------------------------


@router.get("/instances", response_model=list[schemas.Instance], tags=["instances"])
async def list_instances() -> list[schemas.Instance]:
    return get_instance_repository().list_all()


@router.post(
    "/instances",
    response_model=schemas.Instance,
    status_code=status.HTTP_201_CREATED,
    tags=["instances"],
)
async def create_instance(
    payload: schemas.InstanceCreateRequest, request: Request
) -> schemas.Instance:
    repo = get_instance_repository()
    ip = validate_ip(payload.ip)
    if repo.get_by_ip(ip) is not None:
        raise ConflictError("A WLED instance with this IP already exists", details=ip)

    settings = _settings(request)
    last_seen: datetime | None = None
    if settings.verify_instances:
        await verify_controller(ip, client=_device_client(request), timeout=settings.device_timeout)
        last_seen = datetime.now(tz=UTC)

    instance = repo.create(ip, payload.name, last_seen=last_seen)
    _audit(request, "instance_created", "instance", instance.id, ip=instance.ip)
    return instance


@router.put("/instances/reorder", response_model=list[schemas.Instance], tags=["instances"])
async def reorder_instances(
    payload: schemas.ReorderRequest, request: Request
) -> list[schemas.Instance]:
    instances = get_instance_repository().reorder(payload.ordered_ids)
    _audit(request, "instances_reordered", "instance", None, ordered_ids=payload.ordered_ids)
    return instances


@router.put("/instances/{instance_id}", response_model=schemas.Instance, tags=["instances"])
async def update_instance(
    instance_id: int, payload: schemas.InstanceUpdateRequest, request: Request
) -> schemas.Instance:
    repo = get_instance_repository()
    current = repo.get(instance_id)
    if current is None:
        raise NotFoundError("Instance not found", details={"instance_id": instance_id})

    settings = _settings(request)
    if payload.ip is not None and settings.verify_instances:
        ip = validate_ip(payload.ip)
        if ip != current.ip:
            await verify_controller(
                ip, client=_device_client(request), timeout=settings.device_timeout
            )

    instance = repo.update(instance_id, payload)
    _audit(
        request,
        "instance_updated",
        "instance",
        instance_id,
        **payload.model_dump(exclude_none=True),
    )
    return instance


@router.delete(
    "/instances/{instance_id}",
    response_model=schemas.InstanceDeleteResponse,
    tags=["instances"],
)
async def delete_instance(instance_id: int, request: Request) -> schemas.InstanceDeleteResponse:
    outcome = get_instance_repository().delete(instance_id)
    scheduler = _scheduler(request)
    for schedule_id in outcome.removed_schedule_ids:
        scheduler.deregister(schedule_id)
    _audit(
        request,
        "instance_deleted",
        "instance",
        instance_id,
        pruned_presets=outcome.pruned_preset_ids,
        removed_schedules=outcome.removed_schedule_ids,
    )
    return schemas.InstanceDeleteResponse(
        pruned_presets=outcome.pruned_preset_ids,
        removed_schedules=outcome.removed_schedule_ids,
    )


@router.get("/instances/{instance_id}/state", tags=["devices"])
async def read_instance_state(instance_id: int, request: Request) -> Any:
    return await call_device(
        instance_id,
        "get_state",
        client=_device_client(request),
        timeout=_settings(request).device_timeout,
    )


@router.post("/instances/{instance_id}/state", tags=["devices"])
async def write_instance_state(
    instance_id: int,
    request: Request,
    payload: Annotated[dict[str, Any], Body()],
) -> Any:
    result = await call_device(
        instance_id,
        "set_state",
        client=_device_client(request),
        timeout=_settings(request).device_timeout,
        payload=payload,
    )
    _audit(request, "instance_state_set", "instance", instance_id, keys=sorted(payload))
    return result


@router.get("/instances/{instance_id}/info", tags=["devices"])
async def read_instance_info(instance_id: int, request: Request) -> Any:
    return await call_device(
        instance_id,
        "get_info",
        client=_device_client(request),
        timeout=_settings(request).device_timeout,
    )


@router.get("/instances/{instance_id}/presets", tags=["devices"])
async def read_instance_presets(instance_id: int, request: Request) -> Any:
    return await call_device(
        instance_id,
        "get_presets",
        client=_device_client(request),
        timeout=_settings(request).device_timeout,
    )


# Presets ---------------------------------------------------------------------


@router.get("/presets", response_model=list[schemas.PresetSummary], tags=["presets"])
async def list_presets() -> list[schemas.PresetSummary]:
    return get_preset_repository().list_summaries()


@router.post(
    "/presets",
    response_model=schemas.Preset,
    status_code=status.HTTP_201_CREATED,
    tags=["presets"],
)
async def create_preset(payload: schemas.PresetCreateRequest, request: Request) -> schemas.Preset:
    preset = get_preset_repository().create(payload)
    _audit(
        request,
        "preset_created",
        "preset",
        preset.id,
        name=preset.name,
        instance_count=len(preset.instances),
    )
    return preset


@router.put("/presets/reorder", response_model=list[schemas.PresetSummary], tags=["presets"])
async def reorder_presets(
    payload: schemas.ReorderRequest, request: Request
) -> list[schemas.PresetSummary]:
    presets = get_preset_repository().reorder(payload.ordered_ids)
    _audit(request, "presets_reordered", "preset", None, ordered_ids=payload.ordered_ids)
    return presets


@router.get("/presets/{preset_id}", response_model=schemas.Preset, tags=["presets"])
async def get_preset(preset_id: int) -> schemas.Preset:
    preset = get_preset_repository().get(preset_id)
    if preset is None:
        raise NotFoundError("Preset not found", details={"preset_id": preset_id})
    return preset


@router.put("/presets/{preset_id}", response_model=schemas.Preset, tags=["presets"])
async def update_preset(
    preset_id: int, payload: schemas.PresetUpdateRequest, request: Request
) -> schemas.Preset:
    preset = get_preset_repository().update(preset_id, payload)
    _audit(
        request,
        "preset_updated",
        "preset",
        preset_id,
        name=preset.name,
        instance_count=len(preset.instances),
    )
    return preset


@router.delete("/presets/{preset_id}", response_model=schemas.DeleteResponse, tags=["presets"])
async def delete_preset(preset_id: int, request: Request) -> schemas.DeleteResponse:
    removed = get_preset_repository().delete(preset_id)
    scheduler = _scheduler(request)
    for schedule_id in removed:
        scheduler.deregister(schedule_id)
    _audit(request, "preset_deleted", "preset", preset_id, removed_schedules=removed)
    return schemas.DeleteResponse(removed_schedules=removed)


@router.post(
    "/presets/{preset_id}/apply",
    response_model=schemas.ApplyReport,
    tags=["presets"],
)
async def apply_preset(preset_id: int, request: Request) -> dict[str, Any]:
    report = await trigger_apply(
        preset_id,
        client=_device_client(request),
        timeout=_settings(request).device_timeout,
    )
    failed = [result["instance_id"] for result in report["results"] if not result["success"]]
    _audit(
        request,
        "preset_applied",
        "preset",
        preset_id,
        device_count=len(report["results"]),
        failed_instances=failed,
    )
    return report


# Schedules -------------------------------------------------------------------


@router.get("/schedules", response_model=list[schemas.Schedule], tags=["schedules"])
async def list_schedules(
    enabled: Annotated[bool | None, Query()] = None,
) -> list[schemas.Schedule]:
    return get_schedule_repository().list(enabled=enabled)


@router.get("/schedules/jobs", response_model=schemas.ActiveJobListResponse, tags=["schedules"])
async def list_schedule_jobs(request: Request) -> schemas.ActiveJobListResponse:
    scheduler = _scheduler(request)
    return schemas.ActiveJobListResponse(
        jobs=[
            schemas.ActiveJob(
                schedule_id=job.schedule_id,
                expression=job.expression,
                state=scheduler.job_state(job.schedule_id).value,
                registered_at=job.registered_at,
                next_fire=job.next_fire,
            )
            for job in scheduler.active_jobs()
        ]
    )


@router.post(
    "/schedules",
    response_model=schemas.Schedule,
    status_code=status.HTTP_201_CREATED,
    tags=["schedules"],
)
async def create_schedule(
    payload: schemas.ScheduleCreateRequest, request: Request
) -> schemas.Schedule:
    schedule = get_schedule_repository().create(payload)
    if schedule.enabled:
        _scheduler(request).register(schedule)
    _audit(
        request,
        "schedule_created",
        "schedule",
        schedule.id,
        name=schedule.name,
        cron_expression=schedule.cron_expression,
        preset_id=schedule.preset_id,
    )
    return schedule


@router.get("/schedules/{schedule_id}", response_model=schemas.Schedule, tags=["schedules"])
async def get_schedule(schedule_id: int) -> schemas.Schedule:
    schedule = get_schedule_repository().get(schedule_id)
    if schedule is None:
        raise NotFoundError("Schedule not found", details={"schedule_id": schedule_id})
    return schedule


@router.put("/schedules/{schedule_id}", response_model=schemas.Schedule, tags=["schedules"])
async def update_schedule(
    schedule_id: int, payload: schemas.ScheduleUpdateRequest, request: Request
) -> schemas.Schedule:
    schedule = get_schedule_repository().update(schedule_id, payload)
    registered = _scheduler(request).reconcile(schedule_id)
    _audit(
        request,
        "schedule_updated",
        "schedule",
        schedule_id,
        changes=payload.model_dump(mode="json", exclude_unset=True),
        registered=registered,
    )
    return schedule


@router.delete(
    "/schedules/{schedule_id}",
    response_model=schemas.DeleteResponse,
    tags=["schedules"],
)
async def delete_schedule(schedule_id: int, request: Request) -> schemas.DeleteResponse:
    if not get_schedule_repository().delete(schedule_id):
        raise NotFoundError("Schedule not found", details={"schedule_id": schedule_id})
    _scheduler(request).deregister(schedule_id)
    _audit(request, "schedule_deleted", "schedule", schedule_id)
    return schemas.DeleteResponse(removed_schedules=[schedule_id])


# Audit -----------------------------------------------------------------------


@router.get("/events", response_model=schemas.EventListResponse, tags=["events"])
async def get_events(
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    subject_type: Annotated[str | None, Query()] = None,
    subject_id: Annotated[str | None, Query()] = None,
) -> schemas.EventListResponse:
    events = list_recent_events(limit, subject_type=subject_type, subject_id=subject_id)
    return schemas.EventListResponse(events=[_event_to_schema(event) for event in events])
