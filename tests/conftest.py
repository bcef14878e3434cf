import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

import pytest

from controlsync.core.diagnostics import DiagnosticSink
from controlsync.core.transport import Transport

_PREFIX = {
    "agents": "agent",
    "teams": "team",
    "projects": "proj",
    "environments": "env",
    "jobs": "job",
    "policies": "pol",
    "skills": "skill",
    "toolsets": "ts",
    "workers": "w",
    "worker-queues": "wq",
}


class _ControlPlaneHandler(BaseHTTPRequestHandler):
    """In-memory stand-in for the control plane REST API."""

    store = {}            # collection -> {id: record}
    calls = []            # [(method, path, body)]
    failures = {}         # (method, path) -> (status, body)
    worker_shape = "object"
    id_override = None    # id returned by the next update, when set
    counter = 0

    protocol_version = "HTTP/1.1"

    @classmethod
    def reset(cls):
        cls.store = {c: {} for c in _PREFIX}
        cls.calls = []
        cls.failures = {}
        cls.worker_shape = "object"
        cls.id_override = None
        cls.counter = 0

    # ----- plumbing -----
    def _send_json(self, status, obj=None):
        raw = b"" if obj is None else json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        if raw:
            self.wfile.write(raw)

    def _body(self):
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length) if length else b""
        return json.loads(raw.decode("utf-8")) if raw else None

    def _dispatch(self, method):
        path = urlparse(self.path).path
        body = self._body()
        cls = _ControlPlaneHandler
        cls.calls.append((method, path, body))

        if self.headers.get("Authorization") != "Bearer test-key":
            return self._send_json(401, {"detail": "invalid api key"})
        if path == "/api/v1/slow":
            time.sleep(0.3)  # longer than the client timeout in tests
            return self._send_json(200, {"ok": True})
        if (method, path) in cls.failures:
            status, obj = cls.failures[(method, path)]
            return self._send_json(status, obj)

        parts = [p for p in path.split("/") if p]
        if parts[:2] != ["api", "v1"] or len(parts) < 3:
            return self._send_json(404, {"detail": "not found"})
        rest = parts[2:]

        if rest[0] == "workers":
            return self._workers(method, rest, body)
        if rest[0] == "environments" and len(rest) >= 3 and rest[2] == "worker-queues":
            return self._env_queues(method, rest[1], body)
        if rest[0] == "jobs" and len(rest) == 3 and method == "POST":
            return self._job_action(rest[1], rest[2])
        return self._generic(method, rest, body)

    def _new_id(self, collection):
        cls = _ControlPlaneHandler
        cls.counter += 1
        return f"{_PREFIX[collection]}-{cls.counter}"

    def _create(self, collection, body, **extra):
        rid = self._new_id(collection)
        record = {
            "id": rid,
            "organization_id": "org-1",
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-01-01T00:00:00Z",
            **(body or {}),
            **extra,
        }
        if collection in ("agents", "teams", "projects", "environments", "worker-queues"):
            record.setdefault("status", "active")
        if collection == "jobs":
            record.update({"status": "active", "webhook_secret": "whsec-123"})
        _ControlPlaneHandler.store[collection][rid] = record
        return record

    # ----- routes -----
    def _generic(self, method, rest, body):
        collection = rest[0]
        if collection not in _PREFIX:
            return self._send_json(404, {"detail": "unknown collection"})
        items = _ControlPlaneHandler.store[collection]

        if len(rest) == 1:
            if method == "POST":
                return self._send_json(201, self._create(collection, body))
            if method == "GET":
                return self._send_json(200, list(items.values()))
            return self._send_json(405, {"detail": "method not allowed"})

        rid = rest[1]
        if rid not in items:
            return self._send_json(404, {"detail": f"{collection} {rid} not found"})
        if method == "GET":
            return self._send_json(200, items[rid])
        if method in ("PUT", "PATCH"):
            items[rid] = {**items[rid], **(body or {}), "updated_at": "2024-01-02T00:00:00Z"}
            response = dict(items[rid])
            if _ControlPlaneHandler.id_override:
                response["id"] = _ControlPlaneHandler.id_override
            return self._send_json(200, response)
        if method == "DELETE":
            del items[rid]
            return self._send_json(204)
        return self._send_json(405, {"detail": "method not allowed"})

    def _workers(self, method, rest, body):
        workers = _ControlPlaneHandler.store["workers"]
        if rest[1:] == ["register"] and method == "POST":
            wid = self._new_id("workers")
            record = {
                "id": f"rec-{wid}",
                "worker_id": wid,
                "environment_name": f"org-1/{(body or {}).get('environment_name', '')}",
                "hostname": (body or {}).get("hostname", ""),
                "status": "registered",
            }
            workers[wid] = record
            return self._send_json(201, record)
        if len(rest) != 2:
            return self._send_json(404, {"detail": "not found"})
        wid = rest[1]
        if method == "DELETE":
            return self._send_json(405, {"detail": "workers cannot be deleted"})
        if method != "GET":
            return self._send_json(405, {"detail": "method not allowed"})
        if wid not in workers:
            return self._send_json(404, {"detail": "worker not found"})
        record = workers[wid]
        shape = _ControlPlaneHandler.worker_shape
        if shape == "array":
            return self._send_json(200, [record])
        if shape == "wrapped":
            return self._send_json(200, {"workers": [record]})
        if shape == "empty":
            return self._send_json(200, {"id": None, "worker_id": None})
        return self._send_json(200, record)

    def _env_queues(self, method, env_id, body):
        queues = _ControlPlaneHandler.store["worker-queues"]
        if env_id not in _ControlPlaneHandler.store["environments"]:
            return self._send_json(404, {"detail": "environment not found"})
        if method == "POST":
            return self._send_json(201, self._create("worker-queues", body, environment_id=env_id))
        if method == "GET":
            return self._send_json(200, {"items": [q for q in queues.values() if q["environment_id"] == env_id]})
        return self._send_json(405, {"detail": "method not allowed"})

    def _job_action(self, job_id, action):
        jobs = _ControlPlaneHandler.store["jobs"]
        if job_id not in jobs:
            return self._send_json(404, {"detail": "job not found"})
        if action not in ("enable", "disable"):
            return self._send_json(404, {"detail": "unknown action"})
        jobs[job_id] = {**jobs[job_id], "enabled": action == "enable",
                        "status": "active" if action == "enable" else "paused"}
        return self._send_json(200, jobs[job_id])

    def do_GET(self):  # noqa: N802
        self._dispatch("GET")

    def do_POST(self):  # noqa: N802
        self._dispatch("POST")

    def do_PUT(self):  # noqa: N802
        self._dispatch("PUT")

    def do_PATCH(self):  # noqa: N802
        self._dispatch("PATCH")

    def do_DELETE(self):  # noqa: N802
        self._dispatch("DELETE")

    def log_message(self, fmt, *args):  # silence test server logs
        return


@pytest.fixture
def fake_api():
    """Start the fake control plane; yields (base_url, handler class)."""
    _ControlPlaneHandler.reset()
    server = ThreadingHTTPServer(("127.0.0.1", 0), _ControlPlaneHandler)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    base_url = f"http://{server.server_address[0]}:{server.server_address[1]}"
    yield base_url, _ControlPlaneHandler
    server.shutdown()
    server.server_close()
    t.join(timeout=1.0)


@pytest.fixture
def diag_path(tmp_path):
    return tmp_path / "api_errors.log"


@pytest.fixture
def transport(fake_api, diag_path):
    base_url, _ = fake_api
    t = Transport(base_url, "test-key", sink=DiagnosticSink(str(diag_path)))
    yield t
    t.close()


@pytest.fixture
def api_calls(fake_api):
    """Live list of (method, path, body) seen by the fake API."""
    return fake_api[1].calls
