"""
Out-of-band diagnostic sink for failed API calls.

Each failed request is appended as one human-readable block to a text file
(``KUBIYA_API_LOG_FILE``, default ``/tmp/kubiya_api_errors.log``). Every value
that could carry a secret goes through :mod:`controlsync.core.redaction`
before it is written.

A block is written with a single ``os.write`` on an ``O_APPEND`` descriptor so
concurrent reconciliations never interleave inside a record. Failures to
write are logged and dropped: they must never mask the original API error.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .logging_setup import get_logger
from .redaction import redact_body, redact_headers, redact_url

log = get_logger(__name__)

DEFAULT_LOG_FILE = "/tmp/kubiya_api_errors.log"
LOG_FILE_ENV = "KUBIYA_API_LOG_FILE"


@dataclass
class DiagnosticRecord:
    """Everything known about one failed call. Values are raw; rendering redacts."""
    method: str
    url: str
    status: int = 0
    duration_ms: float = 0.0
    request_headers: Dict[str, Any] = field(default_factory=dict)
    request_body: Optional[bytes] = None
    response_headers: Dict[str, Any] = field(default_factory=dict)
    response_body: Optional[bytes] = None
    error: str = ""
    corr: str = ""

    def render(self, now: Optional[datetime] = None) -> str:
        ts = (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")
        lines = [
            "",
            "========== API ERROR ==========",
            f"Time: {ts}",
        ]
        if self.corr:
            lines.append(f"Correlation: {self.corr}")
        lines += [
            f"Method: {self.method}",
            f"URL: {redact_url(self.url)}",
            f"Status Code: {self.status if self.status else '-'}",
            f"Duration: {int(self.duration_ms)}ms",
        ]
        if self.error:
            lines.append(f"Error: {self.error}")

        lines += ["", "--- Request Headers ---"]
        for k, v in redact_headers(self.request_headers).items():
            lines.append(f"{k}: {v}")
        req_body = redact_body(self.request_body)
        if req_body:
            lines += ["", "--- Request Body ---", req_body]

        if self.status:
            lines += ["", "--- Response Headers ---"]
            for k, v in redact_headers(self.response_headers).items():
                lines.append(f"{k}: {v}")
            lines += ["", "--- Response Body ---", redact_body(self.response_body)]

        lines += ["===============================", "", ""]
        return "\n".join(lines)


class DiagnosticSink:
    """Append-only diagnostic file shared by all transports of a process."""

    _lock = threading.Lock()

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or os.getenv(LOG_FILE_ENV) or DEFAULT_LOG_FILE

    def append(self, record: DiagnosticRecord) -> bool:
        """Write one record. Returns False (never raises) if the write failed."""
        try:
            data = record.render().encode("utf-8")
            with self._lock:
                fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
                try:
                    os.write(fd, data)
                finally:
                    os.close(fd)
            return True
        except Exception as exc:
            try:
                log.warning("Could not write diagnostic record to %s: %s", self.path, exc)
            except Exception:
                pass
            return False
