"""Service helpers backing the FastAPI endpoints and scheduled triggers."""

from __future__ import annotations

import asyncio
from concurrent.futures import Executor, ThreadPoolExecutor
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Literal, Protocol, TypedDict

from .errors import DeviceCommunicationError, DeviceErrorKind, NotFoundError, ValidationError
from .instances import get_instance_repository
from .resolver import resolve_preset
from .wled.client import DEFAULT_TIMEOUT
from .wled.utils import logger

if TYPE_CHECKING:
    from .instances import InstanceRepository
    from .resolver import BindingSource, DeviceBinding

DeviceOperation = Literal["get_state", "set_state", "get_info", "get_presets"]


class DeviceClient(Protocol):
    def set_state(self, ip: str, state: Mapping[str, Any]) -> Any:
        ...


class DeviceOutcome(TypedDict, total=False):
    instance_id: int
    instance_name: str
    success: bool
    result: dict[str, Any]
    error: str
    details: str


class ApplyReport(TypedDict):
    success: bool
    message: str
    results: list[DeviceOutcome]


def _notify_contact(on_contact: Callable[[int], None] | None, instance_id: int) -> None:
    """Run the contact hook; a failing hook never fails the device result."""
    if on_contact is None:
        return
    try:
        on_contact(instance_id)
    except Exception as exc:
        logger.warning(
            "Failed to record instance contact.",
            instance_id=instance_id,
            error=str(exc),
        )


def _failure(binding: DeviceBinding, kind: DeviceErrorKind, details: str) -> DeviceOutcome:
    return {
        "instance_id": binding.instance_id,
        "instance_name": binding.instance_name,
        "success": False,
        "error": kind.value,
        "details": details,
    }


async def _apply_one(
    binding: DeviceBinding,
    *,
    client: DeviceClient,
    timeout: float,
    on_contact: Callable[[int], None] | None,
    executor: Executor,
) -> DeviceOutcome:
    log = logger.bind(instance_id=binding.instance_id, ip=binding.instance_ip)
    loop = asyncio.get_running_loop()
    try:
        result = await asyncio.wait_for(
            loop.run_in_executor(
                executor, client.set_state, binding.instance_ip, binding.desired_state
            ),
            timeout=timeout,
        )
    except TimeoutError:
        log.warning("WLED device did not answer in time")
        return _failure(binding, DeviceErrorKind.TIMEOUT, f"No response within {timeout:g}s")
    except DeviceCommunicationError as exc:
        log.bind(kind=exc.kind.value).warning("WLED device request failed")
        details = exc.message if exc.details is None else f"{exc.message}: {exc.details}"
        return _failure(binding, exc.kind, details)
    except Exception as exc:
        log.exception("Unexpected error while applying state")
        return _failure(binding, DeviceErrorKind.OTHER, str(exc) or type(exc).__name__)

    _notify_contact(on_contact, binding.instance_id)
    return {
        "instance_id": binding.instance_id,
        "instance_name": binding.instance_name,
        "success": True,
        "result": result if isinstance(result, dict) else {"response": result},
    }


async def apply_bindings(
    bindings: Sequence[DeviceBinding],
    *,
    client: DeviceClient,
    timeout: float = DEFAULT_TIMEOUT,
    on_contact: Callable[[int], None] | None = None,
) -> list[DeviceOutcome]:
    """Send every binding's desired state concurrently.

    Each device gets its own timeout, so one slow controller never delays the
    others. Every apply runs on its own pool with one worker per binding, so
    a device call starts at once and its timeout never counts time spent
    queued behind other devices. The returned list follows binding order and
    holds exactly one outcome per binding; failures are reported in the
    outcome, never raised.
    """
    if not bindings:
        return []
    executor = ThreadPoolExecutor(max_workers=len(bindings), thread_name_prefix="wled-apply")
    try:
        outcomes = await asyncio.gather(
            *(
                _apply_one(
                    binding,
                    client=client,
                    timeout=timeout,
                    on_contact=on_contact,
                    executor=executor,
                )
                for binding in bindings
            )
        )
    finally:
        # Calls abandoned by a timeout finish on their own threads.
        executor.shutdown(wait=False)
    return list(outcomes)


def build_report(preset_name: str, outcomes: Sequence[DeviceOutcome]) -> ApplyReport:
    """Summarize per-device outcomes; partial failure still counts as applied."""
    failed = sum(1 for outcome in outcomes if not outcome["success"])
    message = f'Preset "{preset_name}" applied to {len(outcomes)} instances'
    if failed:
        message += f" ({failed} failed)"
    return {"success": True, "message": message, "results": list(outcomes)}


async def trigger_apply(
    preset_id: int,
    *,
    client: DeviceClient,
    timeout: float = DEFAULT_TIMEOUT,
    preset_source: BindingSource | None = None,
    instance_repository: InstanceRepository | None = None,
) -> ApplyReport:
    """Resolve a preset and push it to every bound controller.

    Manual applies and schedule ticks both come through here.
    """
    resolved = resolve_preset(preset_id, preset_source)
    instances = instance_repository or get_instance_repository()

    logger.info(
        "Applying preset.",
        preset_id=preset_id,
        preset=resolved.name,
        device_count=len(resolved.bindings),
    )
    outcomes = await apply_bindings(
        resolved.bindings,
        client=client,
        timeout=timeout,
        on_contact=instances.touch_last_seen,
    )
    report = build_report(resolved.name, outcomes)
    failed = sum(1 for outcome in outcomes if not outcome["success"])
    logger.bind(preset_id=preset_id, failed=failed).info(report["message"])
    return report


async def call_device(
    instance_id: int,
    operation: DeviceOperation,
    *,
    client: Any,
    timeout: float = DEFAULT_TIMEOUT,
    payload: Mapping[str, Any] | None = None,
    instance_repository: InstanceRepository | None = None,
) -> Any:
    """Forward a single request to a stored instance and return the device's answer."""
    repo = instance_repository or get_instance_repository()
    instance = repo.get(instance_id)
    if instance is None:
        raise NotFoundError("Instance not found", details={"instance_id": instance_id})

    method = getattr(client, operation)
    args: tuple[Any, ...] = (instance.ip,) if payload is None else (instance.ip, payload)
    try:
        result = await asyncio.wait_for(asyncio.to_thread(method, *args), timeout=timeout)
    except TimeoutError as exc:
        raise DeviceCommunicationError(
            f"Connection to WLED device at {instance.ip} timed out",
            kind=DeviceErrorKind.TIMEOUT,
        ) from exc

    _notify_contact(repo.touch_last_seen, instance_id)
    return result


async def verify_controller(
    ip: str, *, client: Any, timeout: float = DEFAULT_TIMEOUT
) -> dict[str, Any]:
    """Confirm that ``ip`` answers like a WLED controller before it is stored."""
    try:
        info = await asyncio.wait_for(asyncio.to_thread(client.get_info, ip), timeout=timeout)
    except TimeoutError as exc:
        raise ValidationError(
            "Could not connect to WLED instance", details=DeviceErrorKind.TIMEOUT.value
        ) from exc
    except DeviceCommunicationError as exc:
        raise ValidationError(
            "Could not connect to WLED instance", details=exc.kind.value
        ) from exc

    if not isinstance(info, dict) or "ver" not in info:
        raise ValidationError("The device doesn't appear to be a WLED controller", details=ip)
    logger.bind(ip=ip, version=info.get("ver")).info("Verified WLED controller")
    return info


__all__ = [
    "ApplyReport",
    "DeviceOutcome",
    "apply_bindings",
    "build_report",
    "call_device",
    "trigger_apply",
    "verify_controller",
]
