import textwrap

import pytest

from controlsync.core.engine import Engine, load_manifest, parse_manifest, resolve_references
from controlsync.core.errors import ValidationError
from controlsync.core.fields import DesiredConfig, ObservedState
from controlsync.core.reconciler import Reconciler
from controlsync.core.registry import EntityKind
from controlsync.core.state import StateStore

MANIFEST = """
resources:
  environment.prod:
    name: prod
    tags: [prod]
  worker_queue.default:
    environment_id: ${environment.prod.id}
    name: default
    max_workers: 2
  agent.bot:
    kind: agent
    name: bot
    description: first
"""


def _manifest(tmp_path, text=MANIFEST, name="manifest.yml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return load_manifest(str(path))


def _engine(transport, tmp_path, text=MANIFEST):
    state = StateStore(str(tmp_path / "state.json")).load()
    return Engine(transport, state, _manifest(tmp_path, text))


def _writes(calls):
    return [c for c in calls if c[0] != "GET"]


def test_parse_manifest_infers_kind_and_keeps_order(tmp_path):
    resources = _manifest(tmp_path)
    assert [r.address for r in resources] == ["environment.prod", "worker_queue.default", "agent.bot"]
    assert [r.kind for r in resources] == [EntityKind.ENVIRONMENT, EntityKind.WORKER_QUEUE, EntityKind.AGENT]
    assert "kind" not in resources[2].data


def test_parse_manifest_rejects_bad_documents():
    with pytest.raises(ValidationError):
        parse_manifest({"resources": ["not", "a", "mapping"]})
    with pytest.raises(ValidationError):
        parse_manifest({"resources": {"gizmo.x": {"name": "x"}}})
    assert parse_manifest(None) == []


def test_missing_manifest_is_validation_error(tmp_path):
    with pytest.raises(ValidationError):
        load_manifest(str(tmp_path / "nope.yml"))


def test_resolve_references_keeps_native_type(tmp_path):
    state = StateStore(str(tmp_path / "s.json"))
    state.put("environment.prod", ObservedState(EntityKind.ENVIRONMENT, "env-1", {"id": "env-1", "active_workers": 3}))

    resolved, unresolved = resolve_references(
        {
            "a": "${environment.prod.id}",
            "b": "${environment.prod.active_workers}",
            "c": "queue-for-${environment.prod.id}",
            "d": ["${agent.missing.id}"],
        },
        state,
    )
    assert resolved["a"] == "env-1"
    assert resolved["b"] == 3
    assert resolved["c"] == "queue-for-env-1"
    assert resolved["d"] == ["${agent.missing.id}"]
    assert unresolved == ["${agent.missing.id}"]


def test_plan_on_empty_state(transport, tmp_path, api_calls):
    items = _engine(transport, tmp_path).plan()
    assert [(i.address, i.action) for i in items] == [
        ("environment.prod", "CREATE"),
        ("worker_queue.default", "CREATE"),
        ("agent.bot", "CREATE"),
    ]
    assert "known after apply" in items[1].reason
    assert api_calls == []


def test_apply_creates_then_is_idempotent(transport, tmp_path, api_calls, fake_api):
    _, handler = fake_api
    results, counts = _engine(transport, tmp_path).apply()
    assert counts == {"CREATED": 3}
    assert [r.status for r in results] == ["CREATED", "CREATED", "CREATED"]

    state = StateStore(str(tmp_path / "state.json")).load()
    env = state.get("environment.prod")
    queue = state.get("worker_queue.default")
    assert queue["environment_id"] == env.identity
    assert handler.store["worker-queues"][queue.identity]["environment_id"] == env.identity

    writes_before = len(_writes(api_calls))
    results, counts = _engine(transport, tmp_path).apply()
    assert counts == {"UNCHANGED": 3}
    assert len(_writes(api_calls)) == writes_before


def test_apply_updates_only_what_changed(transport, tmp_path, api_calls):
    _engine(transport, tmp_path).apply()
    agent_id = StateStore(str(tmp_path / "state.json")).load().get("agent.bot").identity

    changed = MANIFEST.replace("description: first", "description: second")
    plan = _engine(transport, tmp_path, changed).plan()
    assert [(i.address, i.action, i.changes) for i in plan if i.action != "UNCHANGED"] == [
        ("agent.bot", "UPDATE", ("description",)),
    ]

    results, counts = _engine(transport, tmp_path, changed).apply()
    assert counts == {"UNCHANGED": 2, "UPDATED": 1}
    assert api_calls[-1] == ("PUT", f"/api/v1/agents/{agent_id}", {"description": "second"})
    assert StateStore(str(tmp_path / "state.json")).load().get("agent.bot")["description"] == "second"


def test_removed_resources_are_deleted(transport, tmp_path, api_calls, fake_api):
    _, handler = fake_api
    _engine(transport, tmp_path).apply()
    smaller = "\n".join(MANIFEST.splitlines()[:9])  # environment + queue only

    plan = _engine(transport, tmp_path, smaller).plan()
    assert plan[-1].address == "agent.bot" and plan[-1].action == "DELETE"

    results, counts = _engine(transport, tmp_path, smaller).apply()
    assert counts == {"UNCHANGED": 2, "DELETED": 1}
    assert handler.store["agents"] == {}
    assert "agent.bot" not in StateStore(str(tmp_path / "state.json")).load()


def test_one_failure_does_not_stop_the_rest(transport, tmp_path, fake_api):
    _, handler = fake_api
    handler.failures[("POST", "/api/v1/agents")] = (500, {"detail": "boom"})

    results, counts = _engine(transport, tmp_path).apply()

    assert counts == {"CREATED": 2, "ERROR": 1}
    err = [r for r in results if r.status == "ERROR"][0]
    assert err.address == "agent.bot" and "boom" in err.error
    state = StateStore(str(tmp_path / "state.json")).load()
    assert state.addresses() == ["environment.prod", "worker_queue.default"]


def test_unresolved_reference_is_an_error_row(transport, tmp_path):
    text = """
    resources:
      worker_queue.orphan:
        environment_id: ${environment.nowhere.id}
        name: orphan
    """
    results, counts = _engine(transport, tmp_path, text).apply()
    assert counts == {"ERROR": 1}
    assert "unresolved" in results[0].error


def test_vanished_worker_is_gone_then_recreated(transport, tmp_path, fake_api):
    _, handler = fake_api
    text = """
    resources:
      worker.box:
        environment_name: prod
        hostname: box-1
    """
    _, counts = _engine(transport, tmp_path, text).apply()
    assert counts == {"CREATED": 1}

    handler.store["workers"].clear()
    assert _engine(transport, tmp_path, text).plan()[0].action == "GONE"

    results, counts = _engine(transport, tmp_path, text).apply()
    assert counts == {"GONE": 1}
    assert "worker.box" not in StateStore(str(tmp_path / "state.json")).load()

    _, counts = _engine(transport, tmp_path, text).apply()
    assert counts == {"CREATED": 1}


def test_destroy_deletes_newest_first(transport, tmp_path, api_calls):
    _engine(transport, tmp_path).apply()
    state = StateStore(str(tmp_path / "state.json")).load()
    ids = [state.get(a).identity for a in state.addresses()]

    results, counts = Engine(transport, state).destroy()

    assert counts == {"DELETED": 3}
    deletes = [c[1] for c in api_calls if c[0] == "DELETE"]
    assert deletes == [
        f"/api/v1/agents/{ids[2]}",
        f"/api/v1/worker-queues/{ids[1]}",
        f"/api/v1/environments/{ids[0]}",
    ]
    assert len(StateStore(str(tmp_path / "state.json")).load()) == 0


def test_destroy_worker_drops_tracking_without_http(transport, tmp_path, api_calls):
    text = """
    resources:
      worker.box:
        environment_name: prod
    """
    _engine(transport, tmp_path, text).apply()
    state = StateStore(str(tmp_path / "state.json")).load()
    results, counts = Engine(transport, state).destroy()
    assert counts == {"DELETED": 1}
    assert not [c for c in api_calls if c[0] == "DELETE"]


def test_import_resource(transport, tmp_path):
    created = Reconciler("agent", transport).create(DesiredConfig.from_mapping("agent", {"name": "legacy"}))
    state = StateStore(str(tmp_path / "state.json")).load()
    engine = Engine(transport, state)

    row = engine.import_resource("agent.legacy", "agent", created.identity)

    assert row.status == "IMPORTED" and row.identity == created.identity
    assert StateStore(str(tmp_path / "state.json")).load().get("agent.legacy")["name"] == "legacy"
    with pytest.raises(ValidationError):
        engine.import_resource("agent.legacy", "agent", created.identity)


def test_value_without_json_form_is_an_error_row(transport, tmp_path, api_calls):
    text = """
    resources:
      environment.prod:
        name: prod
        settings: {since: 2024-01-01}
      agent.bot:
        name: bot
    """
    plan = _engine(transport, tmp_path, text).plan()
    assert [i.action for i in plan] == ["ERROR", "CREATE"]

    results, counts = _engine(transport, tmp_path, text).apply()

    assert counts == {"ERROR": 1, "CREATED": 1}
    assert "not JSON serializable" in results[0].error
    assert not [c for c in api_calls if c[1] == "/api/v1/environments"]


def test_changing_kind_under_same_address_is_refused(transport, tmp_path, api_calls):
    _engine(transport, tmp_path, "resources:\n  agent.bot:\n    name: bot\n").apply()
    agent_id = StateStore(str(tmp_path / "state.json")).load().get("agent.bot").identity
    as_team = "resources:\n  agent.bot:\n    kind: team\n    name: bot\n"

    assert _engine(transport, tmp_path, as_team).plan()[0].action == "ERROR"
    results, counts = _engine(transport, tmp_path, as_team).apply()

    assert counts == {"ERROR": 1}
    assert "declared as team" in results[0].error
    assert not [c for c in api_calls if c[1].startswith("/api/v1/teams")]
    kept = StateStore(str(tmp_path / "state.json")).load().get("agent.bot")
    assert kept.kind is EntityKind.AGENT and kept.identity == agent_id
