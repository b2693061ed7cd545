"""WLED JSON API client utilities."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import requests  # type: ignore[import-untyped]
from requests import Response, Session

from ..errors import DeviceCommunicationError, DeviceErrorKind
from .utils import device_url, logger

DEFAULT_TIMEOUT = 3.0
SLOT_KEY = "selected_slot"


def to_wire_state(state: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a normalized desired state into the body WLED expects."""
    payload = dict(state)
    if SLOT_KEY in payload:
        payload["ps"] = payload.pop(SLOT_KEY)
    return payload


class WLEDClient:
    """Minimal client for the JSON API exposed by WLED controllers."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        scheme: str = "http",
    ) -> None:
        self.timeout = timeout
        self.scheme = scheme
        self._session: Session | None = None

    def establish_connection(self) -> Session:
        """Initialize (or reuse) a requests.Session for talking to controllers."""
        if self._session is not None:
            return self._session

        session = requests.Session()
        session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        self._session = session
        return session

    def request(
        self,
        method: str,
        ip: str,
        path: str,
        *,
        json: Any | None = None,
    ) -> Any:
        """Execute an HTTP request against a controller and return the decoded body."""
        session = self.establish_connection()
        url = device_url(ip, path, scheme=self.scheme)

        try:
            response = session.request(
                method=method.upper(),
                url=url,
                json=json,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise DeviceCommunicationError(
                f"Connection to WLED device at {ip} timed out",
                kind=DeviceErrorKind.TIMEOUT,
                details=str(exc),
            ) from exc
        except requests.ConnectionError as exc:
            raise DeviceCommunicationError(
                f"Could not connect to WLED device at {ip}",
                kind=DeviceErrorKind.UNREACHABLE,
                details=str(exc),
            ) from exc
        except requests.RequestException as exc:
            raise DeviceCommunicationError(
                f"Request to WLED device at {ip} failed",
                kind=DeviceErrorKind.OTHER,
                details=str(exc),
            ) from exc

        return self._decode(ip, response)

    def _decode(self, ip: str, response: Response) -> Any:
        if not response.ok:
            raise DeviceCommunicationError(
                f"WLED device at {ip} answered with status {response.status_code}",
                kind=DeviceErrorKind.PROTOCOL_ERROR,
                details=response.text,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise DeviceCommunicationError(
                f"WLED device at {ip} returned a malformed response",
                kind=DeviceErrorKind.PROTOCOL_ERROR,
                details=response.text[:200],
            ) from exc

    def get_state(self, ip: str) -> dict[str, Any]:
        return self.request("get", ip, "json/state")

    def set_state(self, ip: str, state: Mapping[str, Any]) -> dict[str, Any]:
        """Push a desired state to the controller's state endpoint."""
        payload = to_wire_state(state)
        logger.bind(ip=ip, keys=sorted(payload)).debug("Sending WLED state update")
        return self.request("post", ip, "json/state", json=payload)

    def get_info(self, ip: str) -> dict[str, Any]:
        return self.request("get", ip, "json/info")

    def get_presets(self, ip: str) -> dict[str, Any]:
        """Return the preset slots stored on the controller itself."""
        return self.request("get", ip, "presets.json")

    def close(self) -> None:
        """Close the underlying session if it was created."""
        if self._session is not None:
            self._session.close()
            self._session = None


__all__ = ["WLEDClient", "to_wire_state", "DEFAULT_TIMEOUT", "SLOT_KEY"]
