"""Client-side helpers for talking to WLED lighting controllers."""

from __future__ import annotations

from .client import WLEDClient, to_wire_state

__all__ = ["WLEDClient", "to_wire_state"]
