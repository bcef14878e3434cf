"""
Secret redaction helpers.

Keys are matched case-insensitively against a denylist of fragments, so
compounds such as ``api_key``, ``X-Api-Key``, ``webhook_secret`` or
``worker_token`` are covered. Matched values are replaced by ``REDACTED``,
recursively through dicts and lists.

Redaction is for out-of-band sinks (diagnostic file, logs) only. Errors
returned to callers keep the real body.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, Mapping, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "[REDACTED]"

_DENY_FRAGMENTS: Tuple[str, ...] = (
    "password",
    "passwd",
    "token",
    "secret",
    "key",
    "authorization",
    "credential",
    "cookie",
)

_TEXT_PATTERNS = [
    re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
    re.compile(
        r"""(["']?[A-Za-z0-9_-]*(?:password|passwd|token|secret|key|authorization|credential)[A-Za-z0-9_-]*["']?\s*[=:]\s*["']?)([^"'\s,&}]+)""",
        re.IGNORECASE,
    ),
]


def is_sensitive_key(key: Any) -> bool:
    k = str(key).lower()
    return any(frag in k for frag in _DENY_FRAGMENTS)


def redact(obj: Any) -> Any:
    """Return a copy of *obj* with sensitive values replaced."""
    if isinstance(obj, Mapping):
        out = {}
        for k, v in obj.items():
            if is_sensitive_key(k):
                out[k] = REDACTED
            else:
                out[k] = redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj


def redact_headers(headers: Mapping[str, Any] | Iterable[Tuple[str, Any]]) -> dict:
    items = headers.items() if isinstance(headers, Mapping) else headers
    return {k: (REDACTED if is_sensitive_key(k) else v) for k, v in items}


def redact_text(text: str) -> str:
    """Mask ``key=value`` / ``"key": "value"`` / bearer fragments in free text."""
    masked = text
    for pat in _TEXT_PATTERNS:
        masked = pat.sub(lambda m: m.group(1) + REDACTED, masked)
    return masked


def redact_body(raw: bytes | str | None) -> str:
    """Redact a raw HTTP body.

    JSON bodies are redacted structurally; anything else falls back to
    pattern masking.
    """
    if raw is None:
        return ""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text.strip():
        return ""
    try:
        data = json.loads(text)
    except ValueError:
        return redact_text(text)
    return json.dumps(redact(data), ensure_ascii=False, indent=2, sort_keys=True)


def redact_url(url: str) -> str:
    """Redact userinfo passwords and sensitive query parameters."""
    parts = urlsplit(url)
    netloc = parts.netloc
    if "@" in netloc:
        userinfo, host = netloc.rsplit("@", 1)
        user = userinfo.split(":", 1)[0]
        netloc = f"{user}:{REDACTED}@{host}" if ":" in userinfo else netloc
    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        query = urlencode([(k, REDACTED if is_sensitive_key(k) else v) for k, v in pairs], safe="[]")
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


_LOG_PREVIEW = 2000


def short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    """Compact, redacted, length-capped rendering of *obj* for log lines."""
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(redact(obj), ensure_ascii=False, sort_keys=True)
        else:
            s = redact_text(str(obj))
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"
