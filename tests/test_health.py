from __future__ import annotations

from typing import Any, List, Optional

import pytest
import requests

from conftest import FakeService
from envharness.health import CallableProbe, HttpProbe, LogLineProbe, RunningProbe, StatusFieldProbe


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None, invalid_json: bool = False) -> None:
        self.status_code = status_code
        self._body = body
        self._invalid_json = invalid_json

    def json(self) -> Any:
        if self._invalid_json:
            raise ValueError("not json")
        return self._body


class FakeSession:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: List[tuple] = []

    def get(self, url: str, timeout: Optional[float] = None):
        self.requests.append((url, timeout))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_http_probe_requires_200_and_json():
    session = FakeSession(FakeResponse(503), FakeResponse(200, {"ok": True}))
    probe = HttpProbe("health", port=8080, session=session)
    service = FakeService()

    assert probe.check(service, 10.0) is None
    assert probe.check(service, 10.0) == ""
    assert session.requests[0] == ("http://127.0.0.1:18080/health", 5.0)


def test_http_probe_timeout_is_bounded_by_remaining_time():
    session = FakeSession(FakeResponse(200, {}))
    HttpProbe(session=session).check(FakeService(), 0.5)
    assert session.requests[0][1] == 0.5


def test_http_probe_invalid_json_raises():
    probe = HttpProbe(session=FakeSession(FakeResponse(200, invalid_json=True)))
    with pytest.raises(ValueError):
        probe.check(FakeService(), 5.0)


def test_http_probe_propagates_connection_errors():
    probe = HttpProbe(session=FakeSession(requests.ConnectionError("refused")))
    with pytest.raises(requests.ConnectionError):
        probe.check(FakeService(), 5.0)


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"isOnline": True, "isReady": False, "inviteCode": "ABC"}, None),
        ({"isOnline": True, "isReady": True, "inviteCode": ""}, None),
        ({"isOnline": True, "isReady": True, "inviteCode": "ABC123"}, "ABC123"),
        (["not", "a", "dict"], None),
    ],
)
def test_status_field_probe(body, expected):
    probe = StatusFieldProbe(session=FakeSession(FakeResponse(200, body)))
    assert probe.check(FakeService(), 5.0) == expected


def test_status_field_probe_without_token_field():
    probe = StatusFieldProbe(token_field=None, session=FakeSession(FakeResponse(200, {"isOnline": True, "isReady": True})))
    assert probe.check(FakeService(), 5.0) == ""
    assert probe.last_status == {"isOnline": True, "isReady": True}


def test_log_line_probe():
    service = FakeService()
    probe = LogLineProbe(r"Listening on port \d+")
    service.emit("booting")
    assert probe.check(service, 1.0) is None
    service.emit("Listening on port 7777")
    assert probe.check(service, 1.0) == ""


def test_running_and_callable_probes():
    service = FakeService()
    assert RunningProbe().check(service, 1.0) is None
    service.start()
    assert RunningProbe().check(service, 1.0) == ""

    probe = CallableProbe(lambda svc, timeout: f"{svc.name}:{timeout:.0f}", "custom check")
    assert probe.check(service, 3.0) == "server:3"
    assert probe.description == "custom check"


def test_http_probe_closes_only_its_own_session(monkeypatch):
    class RecordingSession(FakeSession):
        closed = False

        def close(self):
            self.closed = True

    shared = RecordingSession()
    HttpProbe(session=shared).close()
    assert not shared.closed

    owned = RecordingSession()
    monkeypatch.setattr(requests, "Session", lambda: owned)
    HttpProbe().close()
    assert owned.closed
