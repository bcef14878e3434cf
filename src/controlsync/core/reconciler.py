"""
Resource reconciler.

One :class:`Reconciler` drives Create / Read / Update / Delete for a single
entity kind, using the kind's :class:`KindSpec` for everything that differs
between kinds (paths, verbs, identity fields, accepted shapes, quirks).

Contract:
  - create(desired)            -> ObservedState (nothing retained on failure)
  - read(identity)             -> ObservedState, or None for a vanished
                                  ephemeral resource; NotFoundError otherwise
  - update(desired, observed)  -> merged ObservedState; identity never changes
  - delete(identity)           -> None; a documented no-op for non-deletable kinds

Every call is one blocking HTTP round trip at most; errors propagate
unchanged to the caller.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from .decoder import (
    SingleObject,
    decode_empty,
    decode_json,
    decode_list,
    decode_record,
    resolve_identity,
    strategies_for,
)
from .diff import build_create_payload, diff, path_params
from .errors import DecodeError, IdentityChangedError, NotFoundError
from .fields import DesiredConfig, FieldState, ObservedState
from .logging_setup import get_logger
from .redaction import short_json
from .registry import EntityKind, KindSpec, get_kind_spec
from .transport import CallContext, RawResponse, Transport

log = get_logger(__name__)


def _corr() -> str:
    return uuid.uuid4().hex[:8]


class Reconciler:
    """Generic CRUD reconciler for one entity kind."""

    def __init__(self, kind: "str | EntityKind | KindSpec", transport: Transport) -> None:
        self.spec = kind if isinstance(kind, KindSpec) else get_kind_spec(kind)
        self.transport = transport
        self._strategies = strategies_for(self.spec)

    @property
    def kind(self) -> EntityKind:
        return self.spec.kind

    # ---------------- helpers ----------------

    def _identity_of(self, record: Dict[str, Any]) -> Optional[str]:
        return resolve_identity(record, self.spec.identity_fields)

    def _preserve(self, record: Dict[str, Any], source: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Keep locally-known values of preserved fields over the server's echo."""
        if not source:
            return record
        for name in self.spec.preserve_desired:
            if source.get(name) not in (None, ""):
                record[name] = source[name]
        return record

    def _observed(self, record: Dict[str, Any], raw: RawResponse) -> ObservedState:
        identity = self._identity_of(record)
        if identity is None:
            raise DecodeError(
                message=f"{self.kind.value} response carried no identity ({', '.join(self.spec.identity_fields)})",
                status=raw.status,
                url=raw.url,
                body=raw.text,
            )
        return ObservedState(kind=self.kind, identity=identity, record=record)

    # ---------------- CRUD ----------------

    def create(self, desired: DesiredConfig, *, ctx: Optional[CallContext] = None) -> ObservedState:
        """POST the full desired payload and return the created resource.

        Path-parameter fields (WorkerQueue ``environment_id``) are substituted
        into the create path, not sent in the body.
        """
        params = path_params(self.spec, desired)
        payload = build_create_payload(self.spec, desired)
        path = self.spec.path_for_create(params)
        corr = _corr()

        log.info("CREATE[%s] POST %s kind=%s", corr, path, self.kind.value)
        log.debug("CREATE[%s] payload=%s", corr, short_json(payload))

        raw = self.transport.send("POST", path, payload, ctx=ctx, corr=corr)
        try:
            record = decode_record(raw, [SingleObject(self.spec.identity_fields)])
        except NotFoundError as exc:
            if exc.status:
                raise
            raise DecodeError(
                message=f"create {self.kind.value} returned no identified object",
                status=raw.status,
                url=raw.url,
                body=raw.text,
            ) from exc
        log.debug("CREATE[%s] response=%s", corr, short_json(record))

        record = dict(record)
        for name, value in params.items():
            record.setdefault(name, value)
        self._preserve(record, {k: v.value for k, v in desired.present() if v.state is FieldState.VALUE})
        observed = self._observed(record, raw)
        log.info("CREATE[%s] %s created id=%s", corr, self.kind.value, observed.identity)
        return observed

    def read(
        self,
        identity: str,
        *,
        prior: Optional[ObservedState] = None,
        ctx: Optional[CallContext] = None,
    ) -> Optional[ObservedState]:
        """GET the resource by identity.

        Returns ``None`` when an ephemeral resource (Worker) no longer exists;
        the caller drops it from tracking. Durable kinds raise NotFoundError.
        """
        path = self.spec.path_for_item(identity)
        corr = _corr()
        log.debug("READ[%s] GET %s kind=%s", corr, path, self.kind.value)

        raw = self.transport.send("GET", path, ctx=ctx, corr=corr)
        try:
            record = decode_record(raw, self._strategies)
        except NotFoundError:
            if self.spec.ephemeral:
                log.info("READ[%s] %s %s no longer exists; dropping", corr, self.kind.value, identity)
                return None
            raise

        record = dict(record)
        if prior is not None:
            for fspec in self.spec.fields:
                if fspec.path_param and fspec.name in prior.record:
                    record.setdefault(fspec.name, prior.record[fspec.name])
            self._preserve(record, prior.record)
        return self._observed(record, raw)

    def update(
        self,
        desired: DesiredConfig,
        observed: ObservedState,
        *,
        ctx: Optional[CallContext] = None,
    ) -> ObservedState:
        """Send only what changed and merge the answer into *observed*.

        An empty delta returns *observed* unchanged without any network call.

        Raises:
            IdentityChangedError: The response names a different resource.
        """
        delta = diff(self.spec, desired, observed)
        if delta.is_empty:
            log.debug("UPDATE %s %s: no changes", self.kind.value, observed.identity)
            return observed

        if not self.spec.updatable:
            log.warning(
                "UPDATE %s %s: kind is immutable after creation; ignoring changes to %s",
                self.kind.value, observed.identity, ", ".join(sorted(delta)),
            )
            return observed

        method = self.spec.update_method or "PATCH"
        path = self.spec.path_for_item(observed.identity)
        corr = _corr()
        payload = delta.as_payload()

        log.info("UPDATE[%s] %s %s kind=%s fields=%s", corr, method, path, self.kind.value, sorted(payload))
        log.debug("UPDATE[%s] payload=%s", corr, short_json(payload))

        raw = self.transport.send(method, path, payload, ctx=ctx, corr=corr)
        response = decode_json(raw)
        if response is None:
            response = {}
        if not isinstance(response, dict):
            raise DecodeError(
                message=f"update {self.kind.value} expected a JSON object",
                status=raw.status,
                url=raw.url,
                body=raw.text,
            )
        log.debug("UPDATE[%s] response=%s", corr, short_json(response))
        merged = self._merge(observed, payload, response, raw)
        log.info("UPDATE[%s] %s updated id=%s", corr, self.kind.value, merged.identity)
        return merged

    def delete(self, identity: str, *, ctx: Optional[CallContext] = None) -> None:
        """DELETE the resource. Non-deletable kinds return at once without a call."""
        if not self.spec.deletable:
            log.info(
                "DELETE %s %s: not deletable through the API; dropping from tracking only",
                self.kind.value, identity,
            )
            return
        path = self.spec.path_for_item(identity)
        corr = _corr()
        log.info("DELETE[%s] DELETE %s kind=%s", corr, path, self.kind.value)
        raw = self.transport.send("DELETE", path, ctx=ctx, corr=corr)
        decode_empty(raw)
        log.info("DELETE[%s] %s deleted id=%s", corr, self.kind.value, identity)

    # ---------------- extras ----------------

    def import_by_identity(self, identity: str, *, ctx: Optional[CallContext] = None) -> ObservedState:
        """Seed observed state from an identifier alone (no prior desired config)."""
        observed = self.read(identity, ctx=ctx)
        if observed is None:
            raise NotFoundError(message=f"{self.kind.value} '{identity}' not found", url=self.spec.path_for_item(identity))
        return observed

    def list(self, *, ctx: Optional[CallContext] = None, **params: Any) -> List[ObservedState]:
        """All resources of this kind. WorkerQueue needs ``environment_id=...``."""
        path = self.spec.path_for_list(params)
        raw = self.transport.send("GET", path, ctx=ctx)
        out: List[ObservedState] = []
        for record in decode_list(raw, ("items", self.spec.wrapper_key)):
            identity = self._identity_of(record)
            if identity is None:
                log.debug("LIST %s: skipping record without identity", self.kind.value)
                continue
            out.append(ObservedState(kind=self.kind, identity=identity, record=dict(record)))
        log.debug("LIST %s %s -> %d item(s)", self.kind.value, path, len(out))
        return out

    def find_by_name(self, name: str, *, ctx: Optional[CallContext] = None, **params: Any) -> Optional[ObservedState]:
        for observed in self.list(ctx=ctx, **params):
            if observed.get("name") == name:
                return observed
        return None

    def invoke_action(
        self,
        observed: ObservedState,
        action: str,
        *,
        ctx: Optional[CallContext] = None,
    ) -> ObservedState:
        """Run a kind-specific action (Job ``enable``/``disable``) and merge its answer."""
        path = self.spec.action_path(action).format(id=observed.identity)
        corr = _corr()
        log.info("%s[%s] POST %s kind=%s", action.upper(), corr, path, self.kind.value)
        raw = self.transport.send("POST", path, ctx=ctx, corr=corr)
        response = decode_json(raw)
        if response is None:
            response = {}
        if not isinstance(response, dict):
            raise DecodeError(
                message=f"{action} {self.kind.value} expected a JSON object",
                status=raw.status,
                url=raw.url,
                body=raw.text,
            )
        return self._merge(observed, {}, response, raw)

    def _merge(
        self,
        observed: ObservedState,
        sent: Dict[str, Any],
        response: Dict[str, Any],
        raw: RawResponse,
    ) -> ObservedState:
        """prior <- sent <- response; fields the response omits keep their prior value."""
        returned = self._identity_of(response)
        if returned is not None and returned != observed.identity:
            raise IdentityChangedError(
                message=f"{self.kind.value} identity changed on update",
                status=raw.status,
                url=raw.url,
                body=raw.text,
                expected=observed.identity,
                actual=returned,
            )
        record = {**observed.record, **sent, **response}
        self._preserve(record, observed.record)
        merged = self._observed(record, raw)
        if merged.identity != observed.identity:
            raise IdentityChangedError(
                message=f"{self.kind.value} identity changed on update",
                status=raw.status,
                url=raw.url,
                expected=observed.identity,
                actual=merged.identity,
            )
        return merged
