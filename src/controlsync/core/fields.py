"""
Desired and observed records.

A desired field is always in one of three states:

    UNSET   the user has no opinion; the remote value is left alone
    CLEAR   the user explicitly wants the field emptied ("" / 0 / false / [] / {})
    VALUE   the user wants this exact value

JSON optionality alone cannot tell UNSET from CLEAR, so the state travels
with every field from the manifest through payload building and diffing.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .errors import ValidationError
from .registry import EntityKind, FieldSpec, FieldType, KindSpec, get_kind_spec


def _json_error(value: Any) -> Optional[str]:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        return str(exc)
    return None


class FieldState(str, Enum):
    UNSET = "unset"
    CLEAR = "clear"
    VALUE = "value"


@dataclass(frozen=True)
class FieldValue:
    state: FieldState
    value: Any = None

    @classmethod
    def unset(cls) -> "FieldValue":
        return cls(FieldState.UNSET)

    @classmethod
    def clear(cls) -> "FieldValue":
        return cls(FieldState.CLEAR)

    @classmethod
    def of(cls, value: Any) -> "FieldValue":
        return cls(FieldState.VALUE, value)

    @property
    def is_set(self) -> bool:
        return self.state is not FieldState.UNSET

    def resolve(self, spec: FieldSpec) -> Any:
        """Wire value for a present field: the value itself, or the type's empty value."""
        if self.state is FieldState.UNSET:
            raise ValueError(f"Field '{spec.name}' is unset and has no wire value")
        if self.state is FieldState.CLEAR:
            return spec.empty()
        return copy.deepcopy(self.value)


class DesiredConfig:
    """The user's declared target state for one resource. Immutable."""

    def __init__(self, kind: "str | EntityKind", fields: Optional[Mapping[str, FieldValue]] = None) -> None:
        self.kind = EntityKind.parse(kind)
        self._fields: Dict[str, FieldValue] = {
            k: v for k, v in (fields or {}).items() if v.is_set
        }

    @property
    def spec(self) -> KindSpec:
        return get_kind_spec(self.kind)

    def get(self, name: str) -> FieldValue:
        return self._fields.get(name, FieldValue.unset())

    def present(self) -> Iterator[Tuple[str, FieldValue]]:
        """Yield (name, FieldValue) for every field that is not UNSET."""
        yield from self._fields.items()

    def __contains__(self, name: str) -> bool:
        return name in self._fields

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DesiredConfig):
            return NotImplemented
        return self.kind is other.kind and self._fields == other._fields

    def __repr__(self) -> str:
        inner = ", ".join(
            f"{k}={'<clear>' if v.state is FieldState.CLEAR else repr(v.value)}"
            for k, v in self._fields.items()
        )
        return f"DesiredConfig({self.kind.value}: {inner})"

    def with_fields(self, **changes: FieldValue) -> "DesiredConfig":
        merged = dict(self._fields)
        for k, v in changes.items():
            if v.is_set:
                merged[k] = v
            else:
                merged.pop(k, None)
        return DesiredConfig(self.kind, merged)

    @classmethod
    def from_mapping(cls, kind: "str | EntityKind", data: Mapping[str, Any]) -> "DesiredConfig":
        """Build a DesiredConfig from a plain mapping (manifest block, CLI input).

        Absent keys are UNSET, explicit ``None`` is CLEAR, everything else is
        a VALUE checked against the field's declared type. Remote-computed
        fields are accepted but never sent.

        Raises:
            ValidationError: On unknown fields or values of the wrong type.
        """
        spec = get_kind_spec(kind)
        fields: Dict[str, FieldValue] = {}
        errors = []
        for name, raw in data.items():
            fspec = spec.field(name)
            if fspec is None:
                if spec.is_computed(name):
                    fields[name] = FieldValue.of(raw) if raw is not None else FieldValue.clear()
                    continue
                errors.append(f"unknown field '{name}'")
                continue
            if raw is None:
                fields[name] = FieldValue.clear()
                continue
            if not fspec.accepts(raw):
                errors.append(f"field '{name}' expects {fspec.type.value}, got {type(raw).__name__}")
                continue
            if fspec.type in (FieldType.LIST, FieldType.JSON):
                # YAML dates and similar values have no JSON form
                problem = _json_error(raw)
                if problem:
                    errors.append(f"field '{name}' is not JSON serializable: {problem}")
                    continue
            fields[name] = FieldValue.of(list(raw) if isinstance(raw, tuple) else raw)
        if errors:
            raise ValidationError(f"Invalid {spec.kind.value} configuration: " + "; ".join(errors))
        return cls(spec.kind, fields)


@dataclass
class ObservedState:
    """The last record read from the remote system for one resource."""
    kind: EntityKind
    identity: str
    record: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.record.get(name, default)

    def __getitem__(self, name: str) -> Any:
        return self.record[name]

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "identity": self.identity, "record": copy.deepcopy(self.record)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ObservedState":
        return cls(
            kind=EntityKind.parse(data["kind"]),
            identity=str(data["identity"]),
            record=dict(data.get("record") or {}),
        )
