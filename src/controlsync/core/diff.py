"""
Payload building and change detection.

``build_create_payload`` turns a :class:`DesiredConfig` into the JSON body of
a create call. ``diff`` compares desired against observed and returns the
minimal :class:`UpdateDelta`: only fields the user set (VALUE or CLEAR) and
whose canonical form differs from what the remote holds.

Comparison rules:
  - scalars and JSON blobs: canonical JSON equality (key order irrelevant,
    ``1`` != ``1.0``, ``true`` != ``1``)
  - unordered lists: compared as multisets
  - ordered lists: element-wise
  - an observed ``null``/missing value equals the type's empty value
"""

from __future__ import annotations

import copy
import json
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .fields import DesiredConfig, FieldState, ObservedState
from .registry import FieldSpec, FieldType, KindSpec

Payload = Dict[str, Any]


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def make_comparable(fspec: FieldSpec, value: Any) -> Any:
    """Normalize *value* for comparison under *fspec*'s rules."""
    if value is None:
        value = fspec.empty()
    value = copy.deepcopy(value)
    if fspec.type is FieldType.LIST and isinstance(value, list) and not fspec.ordered:
        value = sorted(value, key=_canonical)
    return _canonical(value)


class UpdateDelta(Mapping[str, Any]):
    """Fields to send on update, with their wire values."""

    def __init__(self, changes: Optional[Mapping[str, Any]] = None) -> None:
        self._changes: Dict[str, Any] = dict(changes or {})

    def __getitem__(self, key: str) -> Any:
        return self._changes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._changes)

    def __len__(self) -> int:
        return len(self._changes)

    @property
    def is_empty(self) -> bool:
        return not self._changes

    def as_payload(self) -> Payload:
        return copy.deepcopy(self._changes)

    def __repr__(self) -> str:
        return f"UpdateDelta({sorted(self._changes)})"


def _sendable(spec: KindSpec, desired: DesiredConfig) -> Iterator[Tuple[FieldSpec, Any]]:
    for name, fv in desired.present():
        fspec = spec.field(name)
        if fspec is None:
            # remote-computed; never sent
            continue
        yield fspec, fv.resolve(fspec)


def path_params(spec: KindSpec, desired: DesiredConfig) -> Dict[str, Any]:
    """Values of fields substituted into the create/list path."""
    out: Dict[str, Any] = {}
    for fspec in spec.fields:
        if fspec.path_param:
            fv = desired.get(fspec.name)
            if fv.state is FieldState.VALUE:
                out[fspec.name] = fv.value
    return out


def validate_for_create(spec: KindSpec, desired: DesiredConfig) -> None:
    missing: List[str] = []
    for fspec in spec.fields:
        if not fspec.required:
            continue
        fv = desired.get(fspec.name)
        if fv.state is not FieldState.VALUE or fv.value in ("", None):
            missing.append(fspec.name)
    if missing:
        raise ValidationError(
            f"{spec.kind.value} is missing required field(s): {', '.join(missing)}"
        )


def build_create_payload(spec: KindSpec, desired: DesiredConfig) -> Payload:
    """Body of a create call. UNSET fields are omitted; CLEAR fields send the empty value."""
    validate_for_create(spec, desired)
    payload: Payload = {}
    for fspec, value in _sendable(spec, desired):
        if fspec.path_param or fspec.update_only:
            continue
        payload[fspec.name] = value
    return payload


def diff(spec: KindSpec, desired: DesiredConfig, observed: ObservedState) -> UpdateDelta:
    """Minimal set of changes that brings *observed* to *desired*.

    Create-only and path fields never appear: they cannot change after creation.
    """
    changes: Dict[str, Any] = {}
    for fspec, value in _sendable(spec, desired):
        if fspec.create_only or fspec.path_param:
            continue
        if make_comparable(fspec, value) != make_comparable(fspec, observed.get(fspec.name)):
            changes[fspec.name] = value
    return UpdateDelta(changes)


def drifted_create_only(spec: KindSpec, desired: DesiredConfig, observed: ObservedState) -> List[str]:
    """Create-only fields whose desired value no longer matches the remote."""
    out: List[str] = []
    for fspec, value in _sendable(spec, desired):
        if not fspec.create_only or fspec.path_param:
            continue
        if observed.get(fspec.name) is None:
            # not echoed by the server; nothing to compare
            continue
        if make_comparable(fspec, value) != make_comparable(fspec, observed.get(fspec.name)):
            out.append(fspec.name)
    return out
