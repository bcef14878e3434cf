"""
Persisted observed state.

The state file maps each resource address (``<kind>.<name>``) to the last
ObservedState recorded for it, in the order resources were first applied:

    {
      "version": 1,
      "resources": {
        "agent.svc-bot": {"kind": "agent", "identity": "a-1", "record": {...}}
      }
    }

Writes go to a temp file in the same directory followed by ``os.replace``,
so a crash never leaves a half-written state file behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import ValidationError
from .fields import ObservedState
from .logging_setup import get_logger

log = get_logger(__name__)

STATE_VERSION = 1


class StateStore:
    def __init__(self, path: str) -> None:
        self.path = path
        self._resources: Dict[str, ObservedState] = {}

    # ----- persistence -----
    def load(self) -> "StateStore":
        if not os.path.exists(self.path):
            log.debug("No state file at %s; starting empty", self.path)
            self._resources = {}
            return self
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except ValueError as exc:
            raise ValidationError(f"State file {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("resources", {}), dict):
            raise ValidationError(f"State file {self.path} must be an object with a 'resources' mapping")
        version = data.get("version", STATE_VERSION)
        if version != STATE_VERSION:
            raise ValidationError(f"Unsupported state version {version!r} in {self.path}")
        self._resources = {
            address: ObservedState.from_dict(entry)
            for address, entry in (data.get("resources") or {}).items()
        }
        log.debug("Loaded %d resource(s) from %s", len(self._resources), self.path)
        return self

    def save(self) -> None:
        payload = {
            "version": STATE_VERSION,
            "resources": {a: o.to_dict() for a, o in self._resources.items()},
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".controlsync-state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ----- access -----
    def get(self, address: str) -> Optional[ObservedState]:
        return self._resources.get(address)

    def put(self, address: str, observed: ObservedState) -> None:
        self._resources[address] = observed

    def remove(self, address: str) -> Optional[ObservedState]:
        return self._resources.pop(address, None)

    def addresses(self) -> List[str]:
        return list(self._resources)

    def items(self) -> Iterator[Tuple[str, ObservedState]]:
        return iter(list(self._resources.items()))

    def __contains__(self, address: object) -> bool:
        return address in self._resources

    def __len__(self) -> int:
        return len(self._resources)
