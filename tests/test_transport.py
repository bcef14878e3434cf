import datetime
import socket
import threading
import time

import pytest
import requests

from controlsync.core.diagnostics import DiagnosticSink
from controlsync.core.errors import RequestCancelled, RequestTimeout, TransportError, ValidationError
from controlsync.core.transport import CallContext, Transport, TransportOptions


def _free_port():
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def test_api_key_is_required():
    with pytest.raises(ValueError):
        Transport("http://127.0.0.1:1", "")


def test_sends_bearer_and_json_headers(transport, api_calls, fake_api):
    raw = transport.send("POST", "/api/v1/agents", {"name": "svc-bot"})
    assert raw.status == 201 and raw.ok
    assert api_calls[-1] == ("POST", "/api/v1/agents", {"name": "svc-bot"})
    assert transport.session.headers["Authorization"] == "Bearer test-key"
    assert transport.session.headers["Content-Type"] == "application/json"


def test_non_2xx_is_returned_and_recorded_redacted(transport, fake_api, diag_path):
    _, handler = fake_api
    handler.failures[("POST", "/api/v1/agents")] = (422, {"detail": "bad llm_config", "api_key": "sk-abcdef"})

    raw = transport.send("POST", "/api/v1/agents", {"name": "svc-bot", "llm_config": {"api_key": "sk-abcdef"}})

    # the caller still gets the real body
    assert raw.status == 422 and not raw.ok
    assert "sk-abcdef" in raw.text

    content = diag_path.read_text(encoding="utf-8")
    assert "Status Code: 422" in content
    assert "[REDACTED]" in content
    assert "sk-abcdef" not in content
    assert "test-key" not in content


def test_success_writes_no_diagnostic(transport, diag_path):
    transport.send("GET", "/api/v1/agents")
    assert not diag_path.exists()


def test_unreachable_host_is_transport_error(tmp_path):
    diag = tmp_path / "diag.log"
    t = Transport(
        f"http://127.0.0.1:{_free_port()}",
        "test-key",
        options=TransportOptions(timeout_sec=2),
        sink=DiagnosticSink(str(diag)),
    )
    with pytest.raises(TransportError) as ei:
        t.send("GET", "/api/v1/agents")
    assert ei.value.retryable
    assert not isinstance(ei.value, (RequestTimeout, RequestCancelled))
    assert "Error: " in diag.read_text(encoding="utf-8")


def test_deadline_is_request_timeout(transport):
    with pytest.raises(RequestTimeout) as ei:
        transport.send("GET", "/api/v1/slow", ctx=CallContext(timeout_sec=0.05))
    assert isinstance(ei.value, TransportError)


def test_cancel_before_send_issues_no_call(transport, api_calls):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RequestCancelled) as ei:
        transport.send("GET", "/api/v1/agents", ctx=CallContext(cancel=cancel))
    assert isinstance(ei.value, TransportError)
    assert api_calls == []


def test_cancel_during_call_is_distinguishable(transport):
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    try:
        with pytest.raises(RequestCancelled):
            transport.send("GET", "/api/v1/slow", ctx=CallContext(cancel=cancel, timeout_sec=2))
    finally:
        timer.cancel()


def test_cancel_then_deadline_is_still_cancelled(transport, diag_path):
    cancel = threading.Event()
    timer = threading.Timer(0.02, cancel.set)
    timer.start()
    start = time.monotonic()
    try:
        with pytest.raises(RequestCancelled):
            transport.send("GET", "/api/v1/slow", ctx=CallContext(cancel=cancel, timeout_sec=0.15))
    finally:
        timer.cancel()
    # the wait stops at cancellation, not at the deadline or the slow response
    assert time.monotonic() - start < 0.15
    assert "cancelled by caller" in diag_path.read_text(encoding="utf-8")


class _CancelThenRefuse(requests.Session):
    """Session whose call is cancelled while the connection attempt fails."""

    def __init__(self, cancel):
        super().__init__()
        self.cancel = cancel

    def request(self, *args, **kwargs):
        self.cancel.set()
        raise requests.ConnectionError("connection refused")


def test_cancel_during_connection_failure_is_cancelled(tmp_path):
    cancel = threading.Event()
    t = Transport(
        "http://127.0.0.1:1",
        "test-key",
        sink=DiagnosticSink(str(tmp_path / "diag.log")),
        session=_CancelThenRefuse(cancel),
    )
    with pytest.raises(RequestCancelled):
        t.send("GET", "/api/v1/agents", ctx=CallContext(cancel=cancel, timeout_sec=2))


def test_unserializable_body_is_validation_error(transport, api_calls):
    with pytest.raises(ValidationError):
        transport.send("POST", "/api/v1/environments", {"name": "prod", "settings": {"since": datetime.date(2024, 1, 1)}})
    assert api_calls == []
