"""
Response decoding.

Turns a :class:`RawResponse` into a record, a list of records, or a
classified error:

- non-2xx  -> RemoteStatusError (404 -> NotFoundError), real body attached
- 2xx with a body that is not JSON or not a record container -> DecodeError
- 2xx single-record lookup with no identified record -> NotFoundError

Some lookups are served with inconsistent shapes (a Worker GET may return an
object, an array, or ``{"workers": [...]}``). Those are handled by an
ordered list of parse strategies; the first one yielding a record that
carries a non-empty identity wins.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from .errors import DecodeError, NotFoundError, RemoteStatusError
from .logging_setup import get_logger
from .registry import KindSpec, ResponseShape
from .transport import RawResponse

log = get_logger(__name__)

Record = Dict[str, Any]


def resolve_identity(record: Any, identity_fields: Sequence[str]) -> Optional[str]:
    """Return the first non-empty identity field value, in priority order."""
    if not isinstance(record, dict):
        return None
    for name in identity_fields:
        val = record.get(name)
        if val not in (None, ""):
            return str(val)
    return None


class ParseStrategy:
    """One accepted response shape."""

    name = "strategy"

    def __init__(self, identity_fields: Sequence[str]) -> None:
        self.identity_fields = tuple(identity_fields)

    def try_parse(self, payload: Any) -> Optional[Record]:
        raise NotImplementedError

    def _identified(self, candidate: Any) -> Optional[Record]:
        if resolve_identity(candidate, self.identity_fields) is None:
            return None
        return candidate


class SingleObject(ParseStrategy):
    """``{"id": ...}``; an object without identity (e.g. all-null) is rejected."""

    name = "object"

    def try_parse(self, payload: Any) -> Optional[Record]:
        if isinstance(payload, dict):
            return self._identified(payload)
        return None


class FirstOfArray(ParseStrategy):
    """``[{"id": ...}, ...]`` -> first element."""

    name = "array"

    def try_parse(self, payload: Any) -> Optional[Record]:
        if isinstance(payload, list) and payload:
            return self._identified(payload[0])
        return None


class FirstOfWrapper(ParseStrategy):
    """``{"<key>": [{"id": ...}, ...]}`` -> first element."""

    name = "wrapped"

    def __init__(self, identity_fields: Sequence[str], key: str) -> None:
        super().__init__(identity_fields)
        self.key = key

    def try_parse(self, payload: Any) -> Optional[Record]:
        if isinstance(payload, dict):
            items = payload.get(self.key)
            if isinstance(items, list) and items:
                return self._identified(items[0])
        return None


def strategies_for(spec: KindSpec) -> List[ParseStrategy]:
    out: List[ParseStrategy] = []
    for shape in spec.read_shapes:
        if shape is ResponseShape.OBJECT:
            out.append(SingleObject(spec.identity_fields))
        elif shape is ResponseShape.ARRAY:
            out.append(FirstOfArray(spec.identity_fields))
        elif shape is ResponseShape.WRAPPED:
            out.append(FirstOfWrapper(spec.identity_fields, spec.wrapper_key))
    return out


# ---------------- decoding ----------------

def check_status(raw: RawResponse) -> None:
    """Raise the classified error for a non-2xx response."""
    if raw.ok:
        return
    if raw.status == 404:
        raise NotFoundError(message="resource not found", status=404, url=raw.url, body=raw.text)
    raise RemoteStatusError(
        message=f"API error (status {raw.status})",
        status=raw.status,
        url=raw.url,
        body=raw.text,
    )


def decode_empty(raw: RawResponse) -> None:
    """Success with no interesting body (DELETE)."""
    check_status(raw)


def decode_json(raw: RawResponse) -> Any:
    """Status check then JSON parse; an empty 2xx body decodes to ``None``."""
    check_status(raw)
    if not raw.body.strip():
        return None
    try:
        return json.loads(raw.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        log.error("Failed to parse response body from %s %s: %s", raw.method, raw.url, exc)
        raise DecodeError(
            message=f"failed to parse response: {exc}",
            status=raw.status,
            url=raw.url,
            body=raw.text,
        ) from exc


def decode_record(raw: RawResponse, strategies: Sequence[ParseStrategy]) -> Record:
    """Decode a single record, trying *strategies* in order.

    Raises:
        DecodeError: The body is empty or not a JSON object/array.
        NotFoundError: Every strategy was exhausted without an identified record.
    """
    payload = decode_json(raw)
    if not isinstance(payload, (dict, list)):
        raise DecodeError(
            message="expected a JSON object or array",
            status=raw.status,
            url=raw.url,
            body=raw.text,
        )
    for strategy in strategies:
        record = strategy.try_parse(payload)
        if record is not None:
            log.debug("Decoded %s %s using %s shape", raw.method, raw.url, strategy.name)
            return record
    raise NotFoundError(message="no identified record in response", status=0, url=raw.url, body=raw.text)


def decode_list(raw: RawResponse, wrapper_keys: Sequence[str] = ("items",)) -> List[Record]:
    """Decode a list endpoint: a JSON array, or an object wrapping one."""
    payload = decode_json(raw)
    if payload is None:
        return []
    if isinstance(payload, list):
        return [i for i in payload if isinstance(i, dict)]
    if isinstance(payload, dict):
        for key in wrapper_keys:
            if isinstance(payload.get(key), list):
                return [i for i in payload[key] if isinstance(i, dict)]
    raise DecodeError(
        message="list endpoint must return a JSON list or an object wrapping one",
        status=raw.status,
        url=raw.url,
        body=raw.text,
    )
