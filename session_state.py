# session_state.py

import copy
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel

from flow_errors import SessionClosedError
from flow_logging import get_logger
from flow_models import StepResult

logger = get_logger("session")

# Storage name -> token prefix used in {{scope.path}} references
SCOPE_PREFIXES = {
    "environment": "env",
    "flowInputs": "input",
    "runtimeVars": "runtime",
    "config": "config",
}
RESERVED_SCOPES = frozenset(SCOPE_PREFIXES.values())

_SCOPE_ALIASES = {
    "environment": "environment", "env": "environment",
    "flowInputs": "flowInputs", "input": "flowInputs", "inputs": "flowInputs",
    "stepOutputs": "stepOutputs", "steps": "stepOutputs",
    "runtimeVars": "runtimeVars", "runtime": "runtimeVars",
    "config": "config",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _export(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Mapping):
        return {k: _export(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_export(v) for v in value]
    return value


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Immutable, point-in-time copy of all five scopes of a session.
    Scope mappings are read-only views over deep copies, so holding a snapshot
    never observes later writes.
    """
    session_id: str
    environment: Mapping[str, Any]
    flow_inputs: Mapping[str, Any]
    step_outputs: Mapping[str, StepResult]
    runtime_vars: Mapping[str, Any]
    config: Mapping[str, Any]
    taken_at: datetime

    def scope(self, prefix: str) -> Optional[Mapping[str, Any]]:
        """Mapping selected by a reference prefix; None for steps that have no output."""
        if prefix == "env":
            return self.environment
        if prefix == "input":
            return self.flow_inputs
        if prefix == "runtime":
            return self.runtime_vars
        if prefix == "config":
            return self.config
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Read-only export of the scopes for debugging tools and APIs."""
        return {
            "sessionId": self.session_id,
            "environment": _export(self.environment),
            "flowInputs": _export(self.flow_inputs),
            "stepOutputs": _export(self.step_outputs),
            "runtimeVars": _export(self.runtime_vars),
            "config": _export(self.config),
            "takenAt": self.taken_at.isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_scopes(cls, **scopes: Any) -> "SessionSnapshot":
        """Build a detached snapshot directly from plain mappings (handy for tests and previews)."""
        return cls(
            session_id=str(scopes.get("session_id", "detached")),
            environment=MappingProxyType(dict(scopes.get("environment", {}))),
            flow_inputs=MappingProxyType(dict(scopes.get("flow_inputs", {}))),
            step_outputs=MappingProxyType(dict(scopes.get("step_outputs", {}))),
            runtime_vars=MappingProxyType(dict(scopes.get("runtime_vars", {}))),
            config=MappingProxyType(dict(scopes.get("config", {}))),
            taken_at=_utcnow(),
        )


class SessionState:
    """
    In-memory scoped variable store for one logical test session.

    Every write and every snapshot copy happens under one lock. The critical
    sections are short and never await, so the lock is safe to take from
    coroutines and from worker threads alike. Nothing is persisted: closing
    the session drops its data.
    """

    def __init__(self, session_id: Optional[str] = None, *, environment: Optional[Mapping[str, Any]] = None,
                 config: Optional[Mapping[str, Any]] = None):
        self.session_id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        self.created_at = _utcnow()
        self.last_activity = self.created_at
        self._created_monotonic = time.monotonic()
        self._last_activity_monotonic = self._created_monotonic
        self._lock = threading.Lock()
        self._closed = False

        self._environment: Dict[str, Any] = {}
        self._flow_inputs: Dict[str, Any] = {}
        self._step_outputs: Dict[str, StepResult] = {}
        self._runtime_vars: Dict[str, Any] = {}
        self._config: Dict[str, Any] = {}

        if environment:
            self.set_environment(environment)
        if config:
            self.set_config(config)
        logger.debug(f"Session {self.session_id} created.")

    # --- internal helpers (call with the lock held) ---
    def _touch(self):
        self.last_activity = _utcnow()
        self._last_activity_monotonic = time.monotonic()

    def _ensure_open(self, operation: str):
        if self._closed:
            raise SessionClosedError(f"Cannot {operation}: session {self.session_id} is closed")

    def _scope_dict(self, storage_name: str) -> Dict[str, Any]:
        return {
            "environment": self._environment,
            "flowInputs": self._flow_inputs,
            "stepOutputs": self._step_outputs,
            "runtimeVars": self._runtime_vars,
            "config": self._config,
        }[storage_name]

    def _merge(self, storage_name: str, partial: Optional[Mapping[str, Any]]):
        if not partial:
            return
        with self._lock:
            self._ensure_open(f"update {storage_name}")
            self._scope_dict(storage_name).update(copy.deepcopy(dict(partial)))
            self._touch()
        logger.debug(f"Session {self.session_id}: merged {len(partial)} key(s) into {storage_name}.")

    # --- writes ---
    def set_environment(self, partial: Mapping[str, Any]):
        self._merge("environment", partial)

    def set_flow_inputs(self, partial: Mapping[str, Any]):
        self._merge("flowInputs", partial)

    def set_config(self, partial: Mapping[str, Any]):
        self._merge("config", partial)

    def set_runtime_var(self, key: str, value: Any):
        with self._lock:
            self._ensure_open("set runtime variable")
            self._runtime_vars[key] = copy.deepcopy(value)
            self._touch()

    def set_step_output(self, step_id: str, result: StepResult):
        """Record a step's result. Re-running the same flow overwrites the previous entry."""
        with self._lock:
            self._ensure_open("record step output")
            if step_id in self._step_outputs:
                logger.debug(f"Session {self.session_id}: overwriting output of step '{step_id}'.")
            self._step_outputs[step_id] = result
            self._touch()

    def drop_step_outputs(self, step_ids: Iterable[str]):
        """Forget the outputs of the given steps so a re-run starts from fresh results."""
        with self._lock:
            self._ensure_open("drop step outputs")
            for step_id in step_ids:
                self._step_outputs.pop(step_id, None)
            self._touch()

    def clear(self, scope: str):
        storage_name = _SCOPE_ALIASES.get(scope)
        if storage_name is None:
            raise ValueError(f"Unknown scope '{scope}'. Expected one of {sorted(_SCOPE_ALIASES)}")
        with self._lock:
            self._ensure_open(f"clear {storage_name}")
            self._scope_dict(storage_name).clear()
            self._touch()
        logger.debug(f"Session {self.session_id}: cleared {storage_name}.")

    def reset(self):
        """Empty every scope. Identity and timestamps are preserved."""
        with self._lock:
            self._ensure_open("reset")
            for storage_name in ("environment", "flowInputs", "stepOutputs", "runtimeVars", "config"):
                self._scope_dict(storage_name).clear()
            self._touch()
        logger.info(f"Session {self.session_id} reset.")

    def close(self):
        """Release the session. All scopes are dropped; closing twice is a no-op."""
        with self._lock:
            if self._closed:
                return
            for storage_name in ("environment", "flowInputs", "stepOutputs", "runtimeVars", "config"):
                self._scope_dict(storage_name).clear()
            self._closed = True
            self._touch()
        logger.info(f"Session {self.session_id} closed.")

    # --- reads ---
    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                session_id=self.session_id,
                environment=MappingProxyType(copy.deepcopy(self._environment)),
                flow_inputs=MappingProxyType(copy.deepcopy(self._flow_inputs)),
                # StepResult is frozen; a shallow copy of the mapping is enough
                step_outputs=MappingProxyType(dict(self._step_outputs)),
                runtime_vars=MappingProxyType(copy.deepcopy(self._runtime_vars)),
                config=MappingProxyType(copy.deepcopy(self._config)),
                taken_at=_utcnow(),
            )

    def idle_seconds(self) -> float:
        return time.monotonic() - self._last_activity_monotonic

    def is_stale(self, max_idle_seconds: float) -> bool:
        return self.idle_seconds() > max_idle_seconds

    def info(self) -> Dict[str, Any]:
        with self._lock:
            counts = {
                "environment": len(self._environment),
                "flowInputs": len(self._flow_inputs),
                "stepOutputs": len(self._step_outputs),
                "runtimeVars": len(self._runtime_vars),
                "config": len(self._config),
            }
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at.isoformat().replace("+00:00", "Z"),
            "lastActivity": self.last_activity.isoformat().replace("+00:00", "Z"),
            "uptimeSeconds": round(time.monotonic() - self._created_monotonic, 3),
            "closed": self._closed,
            "stateCounts": counts,
        }
