"""
Declarative plan / apply over a manifest.

Manifest (YAML):

    resources:
      environment.prod:
        kind: environment
        name: prod
        tags: [prod]
      worker_queue.default:
        kind: worker_queue
        environment_id: ${environment.prod.id}
        name: default
        description: null        # explicit clear

A key that is absent is left alone on the remote, ``null`` clears the
field, anything else is the wanted value. ``${<address>.<field>}`` is
resolved against the recorded state of an earlier resource; a value that
is exactly one reference keeps the referenced value's type.

Resources are applied in manifest order. Resources recorded in state but
gone from the manifest are deleted in reverse order of creation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .diff import diff, drifted_create_only
from .errors import ControlPlaneError, NotFoundError, ValidationError
from .fields import DesiredConfig, ObservedState
from .logging_setup import get_logger
from .reconciler import Reconciler
from .registry import EntityKind
from .state import StateStore
from .transport import CallContext, Transport

_REF = re.compile(r"\$\{([A-Za-z0-9_.-]+)\.([A-Za-z_][A-Za-z0-9_]*)\}")

# Plan actions
CREATE = "CREATE"
UPDATE = "UPDATE"
UNCHANGED = "UNCHANGED"
DELETE = "DELETE"
GONE = "GONE"
ERROR = "ERROR"


# ---------------- manifest ----------------

@dataclass(frozen=True)
class ManifestResource:
    address: str
    kind: EntityKind
    data: Dict[str, Any] = field(default_factory=dict)


def parse_manifest(doc: Any, source: str = "<manifest>") -> List[ManifestResource]:
    """Validate a loaded manifest document and return its resources in order."""
    if doc is None:
        return []
    if not isinstance(doc, dict) or not isinstance(doc.get("resources", {}), dict):
        raise ValidationError(f"{source}: top-level must be a mapping with a 'resources' mapping")
    out: List[ManifestResource] = []
    for address, block in (doc.get("resources") or {}).items():
        address = str(address)
        if block is None:
            block = {}
        if not isinstance(block, dict):
            raise ValidationError(f"{source}: resource '{address}' must be a mapping")
        block = dict(block)
        raw_kind = block.pop("kind", None) or address.split(".", 1)[0]
        try:
            kind = EntityKind.parse(raw_kind)
        except ValueError as exc:
            raise ValidationError(f"{source}: resource '{address}': {exc}") from None
        out.append(ManifestResource(address=address, kind=kind, data=block))
    return out


def load_manifest(path: str) -> List[ManifestResource]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except FileNotFoundError:
        raise ValidationError(f"Manifest not found: {path}") from None
    except yaml.YAMLError as exc:
        raise ValidationError(f"Manifest {path} is not valid YAML: {exc}") from exc
    return parse_manifest(doc, path)


def resolve_references(data: Dict[str, Any], state: StateStore) -> Tuple[Dict[str, Any], List[str]]:
    """Substitute ``${address.field}`` from state. Returns (resolved, unresolved refs)."""
    unresolved: List[str] = []

    def lookup(m: "re.Match[str]") -> Tuple[bool, Any]:
        address, name = m.group(1), m.group(2)
        observed = state.get(address)
        if observed is None:
            unresolved.append(m.group(0))
            return False, None
        if name == "id":
            return True, observed.identity
        if name not in observed.record:
            unresolved.append(m.group(0))
            return False, None
        return True, observed.record[name]

    def render(obj: Any) -> Any:
        if isinstance(obj, str):
            whole = _REF.fullmatch(obj)
            if whole:
                ok, val = lookup(whole)
                return val if ok else obj

            def repl(m: "re.Match[str]") -> str:
                ok, val = lookup(m)
                return str(val) if ok else m.group(0)

            return _REF.sub(repl, obj)
        if isinstance(obj, list):
            return [render(x) for x in obj]
        if isinstance(obj, dict):
            return {k: render(v) for k, v in obj.items()}
        return obj

    return render(data), unresolved


# ---------------- results ----------------

@dataclass(frozen=True)
class PlanItem:
    address: str
    kind: str
    action: str
    identity: str = ""
    changes: Tuple[str, ...] = ()
    reason: str = ""


@dataclass(frozen=True)
class ApplyResult:
    index: int
    address: str
    kind: str
    status: str
    identity: str = ""
    reason: str = ""
    error: str = ""


# ---------------- engine ----------------

class Engine:
    """Bring the remote side in line with a manifest, tracking results in a StateStore."""

    def __init__(
        self,
        transport: Transport,
        state: StateStore,
        resources: Optional[List[ManifestResource]] = None,
        *,
        ctx: Optional[CallContext] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.transport = transport
        self.state = state
        self.resources = list(resources or [])
        self.ctx = ctx
        self.log = logger or get_logger(__name__)
        self._reconcilers: Dict[EntityKind, Reconciler] = {}

    def reconciler(self, kind: "str | EntityKind") -> Reconciler:
        kind = EntityKind.parse(kind)
        if kind not in self._reconcilers:
            self._reconcilers[kind] = Reconciler(kind, self.transport)
        return self._reconcilers[kind]

    def _refresh(self, prior: ObservedState) -> Optional[ObservedState]:
        return self.reconciler(prior.kind).read(prior.identity, prior=prior, ctx=self.ctx)

    def _desired(self, res: ManifestResource) -> DesiredConfig:
        data, unresolved = resolve_references(res.data, self.state)
        if unresolved:
            raise ValidationError(f"{res.address}: unresolved reference(s): {', '.join(unresolved)}")
        return DesiredConfig.from_mapping(res.kind, data)

    def _orphans(self) -> List[Tuple[str, ObservedState]]:
        wanted = {r.address for r in self.resources}
        return [(a, o) for a, o in reversed(list(self.state.items())) if a not in wanted]

    def _recorded(self, res: ManifestResource) -> Optional[ObservedState]:
        """State recorded under the resource's address, checked against its declared kind."""
        prior = self.state.get(res.address)
        if prior is not None and prior.kind is not res.kind:
            raise ValidationError(
                f"{res.address} is recorded as {prior.kind.value} {prior.identity} but declared as "
                f"{res.kind.value}; destroy or rename it before changing its kind"
            )
        return prior

    # ----- plan -----
    def plan(self) -> List[PlanItem]:
        """Refresh recorded resources and classify each manifest entry. Makes no writes."""
        items: List[PlanItem] = []
        for res in self.resources:
            kind = res.kind.value
            try:
                prior = self._recorded(res)
                observed = self._refresh(prior) if prior is not None else None
                if prior is not None and observed is None:
                    items.append(PlanItem(res.address, kind, GONE, prior.identity, reason="vanished remotely"))
                    continue

                data, unresolved = resolve_references(res.data, self.state)
                if unresolved:
                    action = CREATE if prior is None else UPDATE
                    items.append(PlanItem(
                        res.address, kind, action, prior.identity if prior else "",
                        reason="known after apply: " + ", ".join(unresolved),
                    ))
                    continue
                desired = DesiredConfig.from_mapping(res.kind, data)

                if observed is None:
                    items.append(PlanItem(res.address, kind, CREATE, changes=tuple(n for n, _ in desired.present())))
                    continue

                spec = self.reconciler(res.kind).spec
                delta = diff(spec, desired, observed)
                drift = drifted_create_only(spec, desired, observed)
                reason = f"create-only field(s) differ: {', '.join(drift)}" if drift else ""
                if delta.is_empty or not spec.updatable:
                    items.append(PlanItem(res.address, kind, UNCHANGED, observed.identity, reason=reason))
                else:
                    items.append(PlanItem(res.address, kind, UPDATE, observed.identity, tuple(delta), reason))
            except (ControlPlaneError, ValueError) as e:
                self.log.error("PLAN %s failed: %s", res.address, e)
                items.append(PlanItem(res.address, kind, ERROR, reason=str(e)))

        for address, observed in self._orphans():
            items.append(PlanItem(address, observed.kind.value, DELETE, observed.identity))
        return items

    # ----- apply -----
    def apply(self) -> Tuple[List[ApplyResult], Dict[str, int]]:
        results: List[ApplyResult] = []
        counts: Dict[str, int] = {}

        for idx, res in enumerate(self.resources):
            kind = res.kind.value
            try:
                self._append(results, counts, self._apply_one(idx, res))
            except (ControlPlaneError, ValueError) as e:
                self.log.error("APPLY %s failed: %s", res.address, e)
                self._append(results, counts, ApplyResult(idx, res.address, kind, "ERROR", error=str(e)))

        base = len(self.resources)
        for offset, (address, observed) in enumerate(self._orphans()):
            self._append(results, counts, self._delete_one(base + offset, address, observed))

        return results, counts

    def _apply_one(self, idx: int, res: ManifestResource) -> ApplyResult:
        kind = res.kind.value
        rec = self.reconciler(res.kind)
        prior = self._recorded(res)

        if prior is not None:
            observed = self._refresh(prior)
            if observed is None:
                self.state.remove(res.address)
                self.state.save()
                self.log.info("APPLY %s: %s vanished remotely; dropped from state", res.address, prior.identity)
                return ApplyResult(idx, res.address, kind, "GONE", prior.identity, reason="vanished remotely")
        else:
            observed = None

        desired = self._desired(res)

        if observed is None:
            created = rec.create(desired, ctx=self.ctx)
            self.state.put(res.address, created)
            self.state.save()
            return ApplyResult(idx, res.address, kind, "CREATED", created.identity)

        drift = drifted_create_only(rec.spec, desired, observed)
        if drift:
            self.log.warning(
                "APPLY %s: create-only field(s) %s differ from remote and cannot be updated in place",
                res.address, ", ".join(drift),
            )

        delta = diff(rec.spec, desired, observed)
        if delta.is_empty or not rec.spec.updatable:
            self.state.put(res.address, observed)
            self.state.save()
            return ApplyResult(idx, res.address, kind, "UNCHANGED", observed.identity)

        updated = rec.update(desired, observed, ctx=self.ctx)
        self.state.put(res.address, updated)
        self.state.save()
        return ApplyResult(idx, res.address, kind, "UPDATED", updated.identity, reason=", ".join(sorted(delta)))

    def _delete_one(self, idx: int, address: str, observed: ObservedState) -> ApplyResult:
        kind = observed.kind.value
        try:
            self.reconciler(observed.kind).delete(observed.identity, ctx=self.ctx)
        except NotFoundError:
            self.state.remove(address)
            self.state.save()
            self.log.info("DELETE %s: already absent remotely", address)
            return ApplyResult(idx, address, kind, "GONE", observed.identity, reason="already absent")
        except ControlPlaneError as e:
            self.log.error("DELETE %s failed: %s", address, e)
            return ApplyResult(idx, address, kind, "ERROR", observed.identity, error=str(e))
        self.state.remove(address)
        self.state.save()
        return ApplyResult(idx, address, kind, "DELETED", observed.identity)

    # ----- destroy / import -----
    def destroy(self) -> Tuple[List[ApplyResult], Dict[str, int]]:
        """Delete every resource recorded in state, newest first."""
        results: List[ApplyResult] = []
        counts: Dict[str, int] = {}
        for idx, (address, observed) in enumerate(reversed(list(self.state.items()))):
            self._append(results, counts, self._delete_one(idx, address, observed))
        return results, counts

    def import_resource(self, address: str, kind: "str | EntityKind", identity: str) -> ApplyResult:
        """Adopt an existing remote resource into state under *address*."""
        kind = EntityKind.parse(kind)
        if address in self.state:
            raise ValidationError(f"{address} is already tracked in state")
        observed = self.reconciler(kind).import_by_identity(identity, ctx=self.ctx)
        self.state.put(address, observed)
        self.state.save()
        self.log.info("IMPORT %s: %s %s", address, kind.value, observed.identity)
        return ApplyResult(0, address, kind.value, "IMPORTED", observed.identity)

    @staticmethod
    def _append(results: List[ApplyResult], counts: Dict[str, int], res: ApplyResult) -> None:
        results.append(res)
        counts[res.status] = counts.get(res.status, 0) + 1
