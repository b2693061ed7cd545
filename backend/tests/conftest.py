from __future__ import annotations

import os
import threading
from collections.abc import Iterator, Mapping
from typing import Any

import pytest

# Every test runs against a fresh in-memory SQLite database.
os.environ["ORCHESTRATOR_DB_URL"] = "sqlite://"

from orchestrator.database import reset_engine  # noqa: E402
from orchestrator.errors import DeviceCommunicationError, DeviceErrorKind  # noqa: E402


class FakeDeviceClient:
    """Stand-in for WLEDClient keyed by controller IP."""

    def __init__(
        self,
        *,
        unreachable: set[str] | None = None,
        slow: set[str] | None = None,
        release: threading.Event | None = None,
    ) -> None:
        self.unreachable = unreachable or set()
        self.slow = slow or set()
        self.release = release or threading.Event()
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self._lock = threading.Lock()

    def _check(self, ip: str) -> None:
        if ip in self.unreachable:
            raise DeviceCommunicationError(
                f"Could not connect to WLED device at {ip}",
                kind=DeviceErrorKind.UNREACHABLE,
            )
        if ip in self.slow:
            self.release.wait(timeout=5)

    def set_state(self, ip: str, state: Mapping[str, Any]) -> dict[str, Any]:
        with self._lock:
            self.sent.append((ip, dict(state)))
        self._check(ip)
        return {"success": True}

    def get_state(self, ip: str) -> dict[str, Any]:
        self._check(ip)
        return {"on": True, "bri": 128}

    def get_info(self, ip: str) -> dict[str, Any]:
        self._check(ip)
        return {"ver": "0.14.4", "name": f"WLED {ip}"}

    def get_presets(self, ip: str) -> dict[str, Any]:
        self._check(ip)
        return {"0": {}, "1": {"n": "Warm"}}

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def fresh_database(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv("ORCHESTRATOR_DB_URL", "sqlite://")
    reset_engine()
    yield
    reset_engine()


@pytest.fixture
def device_client() -> Iterator[FakeDeviceClient]:
    client = FakeDeviceClient()
    yield client
    # Unblock any worker thread still parked on a slow device.
    client.release.set()
