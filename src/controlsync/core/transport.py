"""
HTTP transport for the control plane API.

``Transport.send`` issues one JSON request with bearer auth and returns the
raw response, whatever its status. Only failures that produced *no* response
raise (:class:`TransportError` and its ``RequestTimeout`` /
``RequestCancelled`` subtypes). Non-2xx responses are handed back to the
caller for decoding and, in addition, recorded in the diagnostic sink with
secrets redacted.

No retries: a failed call is returned immediately; retry policy belongs to
the caller.

Example:
    transport = Transport("https://control-plane.kubiya.ai", api_key)
    raw = transport.send("GET", "/api/v1/agents/123")
"""

from __future__ import annotations

import json
import threading
import time
import uuid
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
import urllib3

from .diagnostics import DiagnosticRecord, DiagnosticSink
from .errors import RequestCancelled, RequestTimeout, TransportError, ValidationError
from .logging_setup import get_logger

log = get_logger(__name__)

DEFAULT_BASE_URL = "https://control-plane.kubiya.ai"
USER_AGENT = "controlsync/HTTPTransport"

# how often a cancellable call checks its cancel event
_CANCEL_POLL_SEC = 0.01


@dataclass
class TransportOptions:
    """Runtime options for :class:`Transport`.

    Attributes:
        verify: If False, TLS certificate verification is disabled.
        timeout_sec: Per-request timeout (seconds) when the caller gives none.
        suppress_insecure_warning: Silence urllib3's warning when ``verify`` is off.
    """
    verify: bool = True
    timeout_sec: float = 60.0
    suppress_insecure_warning: bool = True


@dataclass
class CallContext:
    """Caller-owned deadline and cancellation for a single call."""
    timeout_sec: Optional[float] = None
    cancel: Optional[threading.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


@dataclass
class RawResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    url: str = ""
    method: str = ""
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class Transport:
    """Bearer-authenticated JSON transport over a ``requests.Session``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        options: Optional[TransportOptions] = None,
        sink: Optional[DiagnosticSink] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("API key is required")
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.options = options or TransportOptions()
        self.sink = sink or DiagnosticSink()
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        })

        if not self.options.verify and self.options.suppress_insecure_warning:
            warnings.filterwarnings("ignore", category=urllib3.exceptions.InsecureRequestWarning)

        log.info("Created control plane transport base_url=%s", self.base_url)

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def send(
        self,
        method: str,
        path: str,
        body: Optional[Any] = None,
        *,
        ctx: Optional[CallContext] = None,
        corr: str = "",
    ) -> RawResponse:
        """Send one request and return the raw response.

        Raises:
            RequestCancelled: The caller's cancel event was set before or during the call.
            RequestTimeout: The call exceeded its deadline.
            TransportError: The remote host could not be reached (DNS, connect, TLS, ...).
            ValidationError: The body cannot be serialized to JSON.
        """
        method = method.upper()
        url = self._url(path)
        corr = corr or uuid.uuid4().hex[:8]
        ctx = ctx or CallContext()
        data: Optional[bytes] = None
        if body is not None:
            try:
                data = json.dumps(body).encode("utf-8")
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"{method} {url}: request body is not JSON serializable: {exc}") from exc
        timeout = ctx.timeout_sec if ctx.timeout_sec is not None else self.options.timeout_sec

        if ctx.cancelled:
            raise RequestCancelled(message="cancelled before send", url=url)

        start = time.monotonic()
        try:
            resp = self._request(method, url, data, timeout, ctx, corr)
        except requests.Timeout as exc:
            elapsed = (time.monotonic() - start) * 1000
            if ctx.cancelled:
                raise self._cancelled(method, url, data, elapsed, corr) from exc
            self._record_failure(method, url, data, elapsed, corr, error=f"timeout after {timeout}s: {exc}")
            log.error("[%s] %s %s timed out after %.1fms", corr, method, url, elapsed)
            raise RequestTimeout(message=f"timed out after {timeout}s", url=url) from exc
        except requests.RequestException as exc:
            elapsed = (time.monotonic() - start) * 1000
            if ctx.cancelled:
                raise self._cancelled(method, url, data, elapsed, corr) from exc
            self._record_failure(method, url, data, elapsed, corr, error=str(exc))
            log.error("[%s] %s %s failed: %s", corr, method, url, exc)
            raise TransportError(message=f"request failed: {exc}", url=url) from exc

        elapsed = (time.monotonic() - start) * 1000
        raw = RawResponse(
            status=resp.status_code,
            headers=dict(resp.headers),
            body=resp.content or b"",
            url=url,
            method=method,
            elapsed_ms=elapsed,
        )

        if ctx.cancelled:
            log.warning("[%s] %s %s cancelled after response (status=%s)", corr, method, url, raw.status)
            raise RequestCancelled(message="cancelled during request", status=raw.status, url=url)

        if raw.ok:
            log.debug("[%s] %s %s -> %s in %.1fms", corr, method, url, raw.status, elapsed)
        else:
            self.sink.append(DiagnosticRecord(
                method=method,
                url=url,
                status=raw.status,
                duration_ms=elapsed,
                request_headers=dict(self.session.headers),
                request_body=data,
                response_headers=raw.headers,
                response_body=raw.body,
                corr=corr,
            ))
            log.error(
                "[%s] %s %s -> %s in %.1fms (details in %s)",
                corr, method, url, raw.status, elapsed, self.sink.path,
            )
        return raw

    def _request(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        timeout: float,
        ctx: CallContext,
        corr: str,
    ) -> requests.Response:
        """Run the HTTP call; with a cancel event, stop waiting as soon as it fires.

        The call itself runs on a worker thread bounded by *timeout*; a
        cancelled call is abandoned there and its outcome discarded.
        """
        kwargs = dict(method=method, url=url, data=data, timeout=timeout, verify=self.options.verify)
        if ctx.cancel is None:
            return self.session.request(**kwargs)

        box: Dict[str, Any] = {}
        done = threading.Event()

        def run() -> None:
            try:
                box["resp"] = self.session.request(**kwargs)
            except BaseException as exc:  # re-raised on the caller's thread
                box["exc"] = exc
            finally:
                done.set()

        worker = threading.Thread(target=run, name=f"csync-http-{corr}", daemon=True)
        worker.start()
        start = time.monotonic()
        while not done.wait(_CANCEL_POLL_SEC):
            if ctx.cancelled:
                raise self._cancelled(method, url, data, (time.monotonic() - start) * 1000, corr)
        if "exc" in box:
            raise box["exc"]
        return box["resp"]

    def _cancelled(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        elapsed_ms: float,
        corr: str,
    ) -> RequestCancelled:
        self._record_failure(method, url, data, elapsed_ms, corr, error="cancelled by caller")
        log.warning("[%s] %s %s cancelled after %.1fms", corr, method, url, elapsed_ms)
        return RequestCancelled(message="cancelled during request", url=url)

    def _record_failure(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        elapsed_ms: float,
        corr: str,
        *,
        error: str,
    ) -> None:
        self.sink.append(DiagnosticRecord(
            method=method,
            url=url,
            duration_ms=elapsed_ms,
            request_headers=dict(self.session.headers),
            request_body=data,
            error=error,
            corr=corr,
        ))

    def close(self) -> None:
        self.session.close()
