"""Expand a preset id into the ordered device bindings it should be applied to."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import NotFoundError, ValidationError
from .wled.client import SLOT_KEY


@dataclass(frozen=True)
class StoredBinding:
    """A binding row as read from the store, before normalization."""

    instance_id: int
    instance_name: str
    instance_ip: str
    desired_state: Any


@dataclass(frozen=True)
class DeviceBinding:
    instance_id: int
    instance_name: str
    instance_ip: str
    desired_state: dict[str, Any]


@dataclass(frozen=True)
class ResolvedPreset:
    preset_id: int
    name: str
    bindings: list[DeviceBinding]


class BindingSource(Protocol):
    def load_bindings(self, preset_id: int) -> tuple[str, list[StoredBinding]] | None:
        ...


def normalize_desired_state(value: Any) -> dict[str, Any]:
    """Return the canonical JSON-object form of a binding's desired state.

    A bare slot number becomes ``{"selected_slot": n}``, an object passes
    through unchanged and JSON text (legacy rows) is decoded first.
    """
    if isinstance(value, bool):
        raise ValidationError("Desired state must be a preset slot or a state object")
    if isinstance(value, int):
        if value < 0:
            raise ValidationError("Preset slot must not be negative", details=value)
        return {SLOT_KEY: value}
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (str, bytes)):
        try:
            decoded = json.loads(value)
        except ValueError as exc:
            raise ValidationError(
                "Desired state is not valid JSON", details=str(value)[:200]
            ) from exc
        if isinstance(decoded, (str, bytes)):
            raise ValidationError("Desired state must decode to a slot or an object")
        return normalize_desired_state(decoded)
    raise ValidationError(
        "Desired state must be a preset slot or a state object",
        details=type(value).__name__,
    )


def resolve_preset(preset_id: int, source: BindingSource | None = None) -> ResolvedPreset:
    """Return the preset name and its normalized bindings in binding order."""
    if source is None:
        from .presets import get_preset_repository  # Local import to avoid circular deps

        source = get_preset_repository()

    loaded = source.load_bindings(preset_id)
    if loaded is None:
        raise NotFoundError("Preset not found", details={"preset_id": preset_id})

    name, rows = loaded
    bindings = [
        DeviceBinding(
            instance_id=row.instance_id,
            instance_name=row.instance_name,
            instance_ip=row.instance_ip,
            desired_state=normalize_desired_state(row.desired_state),
        )
        for row in rows
    ]
    return ResolvedPreset(preset_id=preset_id, name=name, bindings=bindings)


__all__ = [
    "BindingSource",
    "DeviceBinding",
    "ResolvedPreset",
    "StoredBinding",
    "normalize_desired_state",
    "resolve_preset",
]
