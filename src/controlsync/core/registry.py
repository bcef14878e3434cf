"""Entity registry for controlsync.

Each managed entity kind declares itself here as data: endpoint templates,
identity fields (in priority order), update verb, deletability, accepted
response shapes, user-controlled fields and remote-computed fields. The
reconciler is generic over this table; adding a kind is a data change.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple


class EntityKind(str, Enum):
    AGENT = "agent"
    TEAM = "team"
    PROJECT = "project"
    ENVIRONMENT = "environment"
    JOB = "job"
    POLICY = "policy"
    SKILL = "skill"
    TOOLSET = "toolset"
    WORKER = "worker"
    WORKER_QUEUE = "worker_queue"

    @classmethod
    def parse(cls, value: "str | EntityKind") -> "EntityKind":
        if isinstance(value, cls):
            return value
        norm = str(value).strip().lower().replace("-", "_")
        aliases = {"tool_set": "toolset", "workerqueue": "worker_queue"}
        try:
            return cls(aliases.get(norm, norm))
        except ValueError:
            raise ValueError(f"Unknown entity kind '{value}'") from None


class FieldType(str, Enum):
    STRING = "string"
    INT = "int"
    BOOL = "bool"
    LIST = "list"
    JSON = "json"


class ResponseShape(str, Enum):
    """Accepted shapes of a single-record GET, tried in declaration order."""
    OBJECT = "object"          # {"id": ...}
    ARRAY = "array"            # [{"id": ...}, ...] -> first element
    WRAPPED = "wrapped"        # {"<wrapper_key>": [{"id": ...}]} -> first element


_EMPTY: Dict[FieldType, Any] = {
    FieldType.STRING: "",
    FieldType.INT: 0,
    FieldType.BOOL: False,
}


@dataclass(frozen=True)
class FieldSpec:
    """A user-controlled field.

    Attributes:
        name: JSON field name on the wire.
        type: Value type; drives validation, the "clear" value and diff rules.
        ordered: For lists, whether element order is meaningful.
        required: Must be present (with a value) on create.
        create_only: Sent on create, never part of an update delta.
        update_only: Never sent on create (server assigns the initial value).
        path_param: Substituted into the create/list path instead of the body.
    """
    name: str
    type: FieldType = FieldType.STRING
    ordered: bool = False
    required: bool = False
    create_only: bool = False
    update_only: bool = False
    path_param: bool = False

    def empty(self) -> Any:
        if self.type is FieldType.LIST:
            return []
        if self.type is FieldType.JSON:
            return {}
        return _EMPTY[self.type]

    def accepts(self, value: Any) -> bool:
        if self.type is FieldType.STRING:
            return isinstance(value, str)
        if self.type is FieldType.INT:
            return isinstance(value, int) and not isinstance(value, bool)
        if self.type is FieldType.BOOL:
            return isinstance(value, bool)
        if self.type is FieldType.LIST:
            return isinstance(value, (list, tuple))
        return isinstance(value, dict)


def _f(name: str, type: FieldType = FieldType.STRING, **kw: Any) -> FieldSpec:
    return FieldSpec(name=name, type=type, **kw)


S, I, B, L, J = FieldType.STRING, FieldType.INT, FieldType.BOOL, FieldType.LIST, FieldType.JSON

_TIMESTAMPS = ("created_at", "updated_at")


@dataclass(frozen=True)
class KindSpec:
    kind: EntityKind
    collection: str
    fields: Tuple[FieldSpec, ...]
    computed: Tuple[str, ...] = ()
    identity_fields: Tuple[str, ...] = ("id",)
    create_path: Optional[str] = None
    item_path: Optional[str] = None
    list_path: Optional[str] = None
    update_method: Optional[str] = "PATCH"
    deletable: bool = True
    ephemeral: bool = False
    read_shapes: Tuple[ResponseShape, ...] = (ResponseShape.OBJECT,)
    wrapper_key: str = "items"
    preserve_desired: Tuple[str, ...] = ()
    actions: Tuple[Tuple[str, str], ...] = ()

    # ----- lookups -----
    def field(self, name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def updatable(self) -> bool:
        return self.update_method is not None

    def is_computed(self, name: str) -> bool:
        return name in self.computed or name in self.identity_fields

    def action_path(self, action: str) -> str:
        for name, tpl in self.actions:
            if name == action:
                return tpl
        raise KeyError(f"{self.kind.value} has no action '{action}'")

    # ----- paths -----
    def path_for_create(self, params: Dict[str, Any]) -> str:
        return _render(self.create_path or self.collection, params)

    def path_for_item(self, identity: str) -> str:
        return _render(self.item_path or self.collection + "/{id}", {"id": identity})

    def path_for_list(self, params: Dict[str, Any]) -> str:
        return _render(self.list_path or self.collection, params)


def _render(template: str, params: Dict[str, Any]) -> str:
    try:
        return template.format(**{k: str(v) for k, v in params.items()})
    except KeyError as exc:
        raise ValueError(f"Missing path parameter {exc} for '{template}'") from None


_KINDS: Dict[EntityKind, KindSpec] = {
    EntityKind.AGENT: KindSpec(
        kind=EntityKind.AGENT,
        collection="/api/v1/agents",
        update_method="PUT",
        fields=(
            _f("name", S, required=True),
            _f("description"),
            _f("status", update_only=True),
            _f("capabilities", L),
            _f("configuration", J),
            _f("model_id"),
            _f("llm_config", J),
            _f("runtime"),
            _f("team_id"),
        ),
        computed=_TIMESTAMPS + ("last_active_at", "state", "error_message"),
    ),
    EntityKind.TEAM: KindSpec(
        kind=EntityKind.TEAM,
        collection="/api/v1/teams",
        update_method="PUT",
        fields=(
            _f("name", S, required=True),
            _f("description"),
            _f("status", update_only=True),
            _f("configuration", J),
            _f("skill_ids", L),
            _f("execution_environment", J),
        ),
        computed=_TIMESTAMPS + ("organization_id",),
    ),
    EntityKind.PROJECT: KindSpec(
        kind=EntityKind.PROJECT,
        collection="/api/v1/projects",
        fields=(
            _f("name", S, required=True),
            _f("key", S, required=True),
            _f("description"),
            _f("goals"),
            _f("settings", J),
            _f("status", update_only=True),
            _f("visibility"),
            _f("restrict_to_environment", B),
            _f("policy_ids", L),
            _f("default_model"),
        ),
        computed=_TIMESTAMPS + (
            "organization_id", "owner_id", "owner_email", "archived_at",
            "agent_count", "team_count",
        ),
    ),
    EntityKind.ENVIRONMENT: KindSpec(
        kind=EntityKind.ENVIRONMENT,
        collection="/api/v1/environments",
        fields=(
            _f("name", S, required=True),
            _f("display_name"),
            _f("description"),
            _f("tags", L),
            _f("settings", J),
            _f("status", update_only=True),
            _f("execution_environment", J),
        ),
        computed=_TIMESTAMPS + (
            "organization_id", "created_by", "worker_token", "provisioning_workflow_id",
            "provisioned_at", "error_message", "temporal_namespace_id",
            "active_workers", "idle_workers", "busy_workers", "toolset_ids", "toolsets",
        ),
    ),
    EntityKind.JOB: KindSpec(
        kind=EntityKind.JOB,
        collection="/api/v1/jobs",
        fields=(
            _f("name", S, required=True),
            _f("description"),
            _f("enabled", B),
            _f("trigger_type", S, required=True),
            _f("cron_schedule"),
            _f("cron_timezone"),
            _f("planning_mode"),
            _f("entity_type"),
            _f("entity_id"),
            _f("prompt_template", S, required=True),
            _f("system_prompt"),
            _f("executor_type"),
            _f("worker_queue_name"),
            _f("environment_name"),
            _f("config", J),
            _f("execution_environment", J),
        ),
        computed=_TIMESTAMPS + (
            "organization_id", "status", "webhook_url", "webhook_secret", "temporal_schedule_id",
        ),
        actions=(
            ("enable", "/api/v1/jobs/{id}/enable"),
            ("disable", "/api/v1/jobs/{id}/disable"),
        ),
    ),
    EntityKind.POLICY: KindSpec(
        kind=EntityKind.POLICY,
        collection="/api/v1/policies",
        update_method="PUT",
        fields=(
            _f("name", S, required=True),
            _f("description"),
            _f("policy_content", S, required=True),
            _f("policy_type", create_only=True),
            _f("enabled", B),
            _f("tags", L),
        ),
        computed=_TIMESTAMPS + ("organization_id", "version"),
    ),
    EntityKind.SKILL: KindSpec(
        kind=EntityKind.SKILL,
        collection="/api/v1/skills",
        fields=(
            _f("name", S, required=True),
            _f("type", S, required=True, create_only=True),
            _f("description"),
            _f("icon"),
            _f("enabled", B),
            _f("configuration", J),
        ),
        computed=_TIMESTAMPS + ("organization_id",),
    ),
    EntityKind.TOOLSET: KindSpec(
        kind=EntityKind.TOOLSET,
        collection="/api/v1/toolsets",
        fields=(
            _f("name", S, required=True),
            _f("type", S, required=True, create_only=True),
            _f("description"),
            _f("icon"),
            _f("enabled", B),
            _f("configuration", J),
        ),
        computed=_TIMESTAMPS + ("organization_id",),
    ),
    # Workers register themselves and disconnect on their own: no update, no delete.
    EntityKind.WORKER: KindSpec(
        kind=EntityKind.WORKER,
        collection="/api/v1/workers",
        create_path="/api/v1/workers/register",
        update_method=None,
        deletable=False,
        ephemeral=True,
        identity_fields=("worker_id", "id"),
        read_shapes=(ResponseShape.OBJECT, ResponseShape.ARRAY, ResponseShape.WRAPPED),
        wrapper_key="workers",
        preserve_desired=("environment_name",),
        fields=(
            _f("environment_name", S, required=True, create_only=True),
            _f("hostname", create_only=True),
            _f("worker_metadata", J, create_only=True),
        ),
        computed=("updated_at", "organization_id", "status", "registered_at", "last_heartbeat"),
    ),
    EntityKind.WORKER_QUEUE: KindSpec(
        kind=EntityKind.WORKER_QUEUE,
        collection="/api/v1/worker-queues",
        create_path="/api/v1/environments/{environment_id}/worker-queues",
        list_path="/api/v1/environments/{environment_id}/worker-queues",
        fields=(
            _f("environment_id", S, required=True, create_only=True, path_param=True),
            _f("name", S, required=True),
            _f("display_name"),
            _f("description"),
            _f("status", update_only=True),
            _f("max_workers", I),
            _f("heartbeat_interval", I),
            _f("tags", L),
            _f("settings", J),
        ),
        computed=_TIMESTAMPS + ("organization_id", "created_by", "active_workers", "task_queue_name"),
    ),
}


def get_kind_spec(kind: "str | EntityKind") -> KindSpec:
    return _KINDS[EntityKind.parse(kind)]


def iter_kind_specs() -> Iterable[KindSpec]:
    return _KINDS.values()
