import threading

import pytest

from flow_errors import SessionClosedError
from flow_models import StepResult
from session_state import SessionSnapshot, SessionState


def make_result(body=None, status=200) -> StepResult:
    return StepResult(status=status, body=body, timestamp="2024-01-01T00:00:00.000Z")


def test_environment_writes_merge():
    session = SessionState("s1", environment={"host": "a", "port": "80"})
    session.set_environment({"host": "b"})
    snap = session.snapshot()
    assert dict(snap.environment) == {"host": "b", "port": "80"}
    assert snap.session_id == "s1"


def test_generated_session_id_is_unique():
    assert SessionState().session_id != SessionState().session_id


def test_snapshot_is_isolated_from_later_writes():
    session = SessionState()
    session.set_runtime_var("requestId", "r-1")
    snap = session.snapshot()
    session.set_runtime_var("requestId", "r-2")
    session.set_flow_inputs({"user": "alice"})
    assert snap.runtime_vars["requestId"] == "r-1"
    assert "user" not in snap.flow_inputs
    assert session.snapshot().runtime_vars["requestId"] == "r-2"


def test_snapshot_mappings_are_read_only():
    session = SessionState(environment={"host": "a"})
    snap = session.snapshot()
    with pytest.raises(TypeError):
        snap.environment["host"] = "b"


def test_stored_values_are_copies_of_caller_data():
    nested = {"creds": {"user": "alice"}}
    session = SessionState()
    session.set_config(nested)
    nested["creds"]["user"] = "mallory"
    assert session.snapshot().config["creds"]["user"] == "alice"

    snap = session.snapshot()
    snap.config["creds"]["user"] = "eve"
    assert session.snapshot().config["creds"]["user"] == "alice"


def test_step_output_overwritten_on_rerun():
    session = SessionState()
    session.set_step_output("login", make_result({"token": "old"}))
    session.set_step_output("login", make_result({"token": "new"}))
    assert session.snapshot().step_outputs["login"].body == {"token": "new"}


def test_drop_step_outputs_only_touches_given_ids():
    session = SessionState()
    session.set_step_output("a", make_result())
    session.set_step_output("b", make_result())
    session.drop_step_outputs(["a", "missing"])
    assert set(session.snapshot().step_outputs) == {"b"}


@pytest.mark.parametrize("scope,attribute", [
    ("environment", "environment"),
    ("env", "environment"),
    ("input", "flow_inputs"),
    ("runtimeVars", "runtime_vars"),
    ("steps", "step_outputs"),
])
def test_clear_accepts_storage_names_and_prefixes(scope, attribute):
    session = SessionState(environment={"e": 1}, config={"c": 1})
    session.set_flow_inputs({"i": 1})
    session.set_runtime_var("r", 1)
    session.set_step_output("a", make_result())
    session.clear(scope)
    snap = session.snapshot()
    assert len(getattr(snap, attribute)) == 0
    assert dict(snap.config) == {"c": 1}


def test_clear_unknown_scope_raises_value_error():
    with pytest.raises(ValueError):
        SessionState().clear("globals")


def test_reset_empties_scopes_and_keeps_identity():
    session = SessionState("keep-me", environment={"a": 1})
    created_at = session.created_at
    session.set_step_output("a", make_result())
    session.reset()
    snap = session.snapshot()
    assert session.session_id == "keep-me"
    assert session.created_at == created_at
    assert not snap.environment and not snap.step_outputs


def test_close_drops_data_and_rejects_writes():
    session = SessionState(environment={"a": 1})
    session.close()
    session.close()
    assert session.closed
    assert not session.snapshot().environment
    with pytest.raises(SessionClosedError):
        session.set_environment({"b": 2})
    with pytest.raises(SessionClosedError):
        session.set_step_output("a", make_result())


def test_missing_keys_never_raise():
    snap = SessionState().snapshot()
    assert snap.environment.get("nope") is None
    assert snap.scope("steps") is None


def test_info_reports_counts_and_timestamps():
    session = SessionState("info", environment={"a": 1, "b": 2})
    session.set_runtime_var("x", 1)
    info = session.info()
    assert info["sessionId"] == "info"
    assert info["createdAt"].endswith("Z")
    assert info["stateCounts"]["environment"] == 2
    assert info["stateCounts"]["runtimeVars"] == 1
    assert info["closed"] is False


def test_is_stale_uses_last_activity():
    session = SessionState()
    assert not session.is_stale(3600)
    session._last_activity_monotonic -= 120
    assert session.is_stale(60)
    session.set_runtime_var("touch", True)
    assert not session.is_stale(60)


def test_concurrent_writes_from_threads_are_all_kept():
    session = SessionState()

    def writer(n):
        for i in range(50):
            session.set_runtime_var(f"t{n}-{i}", i)
            session.snapshot()

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(session.snapshot().runtime_vars) == 8 * 50


def test_snapshot_to_dict_exports_step_results():
    session = SessionState("export", environment={"host": "h"})
    session.set_step_output("a", make_result({"id": 7}))
    exported = session.snapshot().to_dict()
    assert exported["sessionId"] == "export"
    assert exported["stepOutputs"]["a"]["body"] == {"id": 7}
    assert exported["environment"] == {"host": "h"}


def test_detached_snapshot_from_scopes():
    snap = SessionSnapshot.from_scopes(environment={"a": "1"})
    assert snap.scope("env")["a"] == "1"
    assert not snap.step_outputs
