from __future__ import annotations

import pytest
import requests

from orchestrator.errors import DeviceCommunicationError, DeviceErrorKind
from orchestrator.wled.client import WLEDClient
from orchestrator.wled.utils import device_url


class StubResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class StubSession:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.requests: list[dict] = []
        self.closed = False

    def request(self, **kwargs):
        self.requests.append(kwargs)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def close(self) -> None:
        self.closed = True


def _client(outcome) -> tuple[WLEDClient, StubSession]:
    client = WLEDClient(timeout=1.5)
    session = StubSession(outcome)
    client._session = session  # type: ignore[assignment]
    return client, session


def test_device_url():
    assert device_url(" 10.0.0.1 ", "/json/state") == "http://10.0.0.1/json/state"


def test_set_state_translates_slot_and_uses_timeout():
    client, session = _client(StubResponse(payload={"success": True}))

    assert client.set_state("10.0.0.1", {"selected_slot": 3}) == {"success": True}

    sent = session.requests[0]
    assert sent["method"] == "POST"
    assert sent["url"] == "http://10.0.0.1/json/state"
    assert sent["json"] == {"ps": 3}
    assert sent["timeout"] == 1.5


def test_get_presets_reads_presets_file():
    client, session = _client(StubResponse(payload={"0": {}}))
    client.get_presets("10.0.0.1")
    assert session.requests[0]["url"] == "http://10.0.0.1/presets.json"


@pytest.mark.parametrize(
    ("outcome", "kind"),
    [
        (requests.Timeout("slow"), DeviceErrorKind.TIMEOUT),
        (requests.ConnectionError("refused"), DeviceErrorKind.UNREACHABLE),
        (requests.TooManyRedirects("loop"), DeviceErrorKind.OTHER),
        (StubResponse(status_code=500, text="oops"), DeviceErrorKind.PROTOCOL_ERROR),
        (StubResponse(payload=None, text="<html>"), DeviceErrorKind.PROTOCOL_ERROR),
    ],
)
def test_failures_are_classified(outcome, kind):
    client, _ = _client(outcome)
    with pytest.raises(DeviceCommunicationError) as excinfo:
        client.get_state("10.0.0.1")
    assert excinfo.value.kind is kind


def test_close_releases_session():
    client, session = _client(StubResponse(payload={}))
    client.close()
    assert session.closed
