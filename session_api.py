# session_api.py

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import psutil
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from flow_errors import ConfigurationError, FlowValidationError, SessionClosedError
from flow_logging import configure_logging, get_logger
from flow_models import EndpointDefinition
from flow_runner import FlowOrchestrator, Metrics
from http_client import AiohttpClient, HttpClient
from runner_config import RunnerConfig, load_runner_config
from session_state import SessionState
from step_executor import StepExecutor

logger = get_logger("api")


# ------------------------------------------------------
# Session registry
# ------------------------------------------------------
class SessionRegistry:
    """Open sessions of this process, keyed by session id. Nothing is persisted."""

    def __init__(self):
        self._sessions: Dict[str, SessionState] = {}

    def create(self, session_id: Optional[str] = None, **scopes) -> SessionState:
        if session_id and session_id in self._sessions:
            raise ValueError(f"Session '{session_id}' already exists")
        session = SessionState(session_id, environment=scopes.get("environment"), config=scopes.get("config"))
        if scopes.get("flowInputs"):
            session.set_flow_inputs(scopes["flowInputs"])
        for key, value in (scopes.get("runtimeVars") or {}).items():
            session.set_runtime_var(key, value)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> Optional[SessionState]:
        return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def prune(self, max_idle_seconds: Optional[float]) -> List[str]:
        """Close and forget sessions idle for longer than max_idle_seconds."""
        if not max_idle_seconds:
            return []
        stale = [sid for sid, session in self._sessions.items() if session.is_stale(max_idle_seconds)]
        for sid in stale:
            self.close(sid)
        if stale:
            logger.info(f"Pruned {len(stale)} idle session(s): {', '.join(stale)}")
        return stale

    def sessions(self) -> Iterable[SessionState]:
        return list(self._sessions.values())

    def close_all(self):
        for sid in list(self._sessions):
            self.close(sid)

    def __len__(self) -> int:
        return len(self._sessions)


# ------------------------------------------------------
# Request bodies
# ------------------------------------------------------
class CreateSessionRequest(BaseModel):
    sessionId: Optional[str] = None
    environment: Dict[str, Any] = Field(default_factory=dict)
    flowInputs: Dict[str, Any] = Field(default_factory=dict)
    runtimeVars: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)


class RuntimeVarRequest(BaseModel):
    value: Any = None


class RunFlowRequest(BaseModel):
    flow: Dict[str, Any]
    config: Optional[Dict[str, Any]] = None
    flowInputs: Optional[Dict[str, Any]] = None
    dryRun: Optional[bool] = None


_MERGE_SCOPES = {
    "environment": SessionState.set_environment,
    "env": SessionState.set_environment,
    "flowInputs": SessionState.set_flow_inputs,
    "input": SessionState.set_flow_inputs,
    "config": SessionState.set_config,
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def _collect_stats(app: FastAPI) -> Dict[str, Any]:
    container_cpu_percent = psutil.cpu_percent(interval=None)
    container_mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()
    return {
        "timestamp": _utc_now_iso(),
        "sessions": len(app.state.registry),
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
            "packets_sent": net_io.packets_sent,
            "packets_recv": net_io.packets_recv,
        },
        "system": {
            "cpu_percent": round(container_cpu_percent, 1),
            "memory_percent": round(container_mem.percent, 1),
            "memory_available_mb": round(container_mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(container_mem.used / (1024 * 1024), 2),
        },
        "metrics": await app.state.metrics.as_dict(),
    }


def create_app(http_client: Optional[HttpClient] = None, runner_config: Optional[RunnerConfig] = None,
               endpoints: Optional[Iterable[EndpointDefinition]] = None) -> FastAPI:
    """
    Build the session API. When no http_client is given an AiohttpClient is
    created from runner_config and closed on application shutdown.
    """
    runner_config = runner_config or RunnerConfig()
    owns_client = http_client is None
    if owns_client:
        http_client = AiohttpClient(runner_config.base_url, connector_limit=runner_config.connector_limit,
                                    verify_ssl=runner_config.verify_ssl)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Session API starting.")
        yield
        app.state.registry.close_all()
        if owns_client:
            await http_client.close()
        logger.info("Session API stopped.")

    app = FastAPI(title="Stateful Flow Runner", lifespan=lifespan)
    app.state.registry = SessionRegistry()
    app.state.metrics = Metrics()
    app.state.http_client = http_client
    app.state.runner_config = runner_config
    app.state.endpoints = {endpoint.id: endpoint for endpoint in (endpoints or [])}

    def _session_or_404(request: Request, session_id: str) -> SessionState:
        session = request.app.state.registry.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
        return session

    # --------------------------------------------------
    # Health & metrics
    # --------------------------------------------------
    @app.get('/api/health')
    async def health_check(request: Request):
        """Basic health check endpoint."""
        return JSONResponse({"status": "healthy", "sessions": len(request.app.state.registry)})

    @app.get('/api/metrics')
    async def api_metrics(request: Request):
        """System stats plus runner metrics (under the top-level 'metrics' key)."""
        return JSONResponse(await _collect_stats(request.app))

    @app.get('/metrics')
    async def metrics_prometheus(request: Request):
        """Prometheus text exposition of the same stats."""
        stats = await _collect_stats(request.app)
        runner = stats["metrics"]
        lines = [
            "# HELP container_cpu_percent CPU usage percent.",
            "# TYPE container_cpu_percent gauge",
            f"container_cpu_percent {stats['system']['cpu_percent']}",
            "# HELP container_memory_percent Memory usage percent.",
            "# TYPE container_memory_percent gauge",
            f"container_memory_percent {stats['system']['memory_percent']}",
            "# HELP flow_runner_sessions Open sessions.",
            "# TYPE flow_runner_sessions gauge",
            f"flow_runner_sessions {stats['sessions']}",
            "# HELP flow_runner_rps Current requests-per-second sent by flow steps.",
            "# TYPE flow_runner_rps gauge",
            f"flow_runner_rps {float(runner['rps'])}",
            "# HELP flow_runner_requests_total Requests sent by flow steps.",
            "# TYPE flow_runner_requests_total counter",
            f"flow_runner_requests_total {runner['total_requests']}",
            "# HELP flow_runner_flows_total Flow runs finished.",
            "# TYPE flow_runner_flows_total counter",
            f"flow_runner_flows_total {runner['flows_run']}",
            "# HELP flow_runner_average_duration_ms Average flow duration in milliseconds.",
            "# TYPE flow_runner_average_duration_ms gauge",
            f"flow_runner_average_duration_ms {runner['average_flow_duration_ms']}",
            "# HELP flow_runner_steps_total Finished steps by status.",
            "# TYPE flow_runner_steps_total counter",
        ]
        lines.extend(f'flow_runner_steps_total{{status="{status}"}} {count}'
                     for status, count in sorted(runner["step_statuses"].items()))
        return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")

    # --------------------------------------------------
    # Sessions
    # --------------------------------------------------
    @app.post('/api/sessions', status_code=201)
    async def create_session(body: CreateSessionRequest, request: Request):
        registry: SessionRegistry = request.app.state.registry
        registry.prune(request.app.state.runner_config.session_idle_timeout_s)
        try:
            session = registry.create(body.sessionId, environment=body.environment, flowInputs=body.flowInputs,
                                      runtimeVars=body.runtimeVars, config=body.config)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        logger.info(f"Session {session.session_id} created via API.")
        return session.info()

    @app.get('/api/sessions')
    async def list_sessions(request: Request):
        return {"sessions": [session.info() for session in request.app.state.registry.sessions()]}

    @app.get('/api/sessions/{session_id}')
    async def get_session(session_id: str, request: Request):
        session = _session_or_404(request, session_id)
        return {"info": session.info(), "state": session.snapshot().to_dict()}

    @app.delete('/api/sessions/{session_id}')
    async def close_session(session_id: str, request: Request):
        _session_or_404(request, session_id)
        request.app.state.registry.close(session_id)
        return {"message": f"Session '{session_id}' closed"}

    @app.post('/api/sessions/{session_id}/reset')
    async def reset_session(session_id: str, request: Request):
        session = _session_or_404(request, session_id)
        session.reset()
        return session.info()

    @app.patch('/api/sessions/{session_id}/scopes/{scope}')
    async def merge_scope(session_id: str, scope: str, values: Dict[str, Any], request: Request):
        session = _session_or_404(request, session_id)
        if scope in ("runtimeVars", "runtime"):
            for key, value in values.items():
                session.set_runtime_var(key, value)
        elif scope in _MERGE_SCOPES:
            _MERGE_SCOPES[scope](session, values)
        else:
            raise HTTPException(status_code=400, detail=f"Scope '{scope}' cannot be merged into")
        return session.snapshot().to_dict()

    @app.delete('/api/sessions/{session_id}/scopes/{scope}')
    async def clear_scope(session_id: str, scope: str, request: Request):
        session = _session_or_404(request, session_id)
        try:
            session.clear(scope)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return session.snapshot().to_dict()

    @app.put('/api/sessions/{session_id}/runtime/{key}')
    async def set_runtime_var(session_id: str, key: str, body: RuntimeVarRequest, request: Request):
        session = _session_or_404(request, session_id)
        session.set_runtime_var(key, body.value)
        return {"key": key, "value": body.value}

    @app.post('/api/sessions/prune')
    async def prune_sessions(request: Request):
        pruned = request.app.state.registry.prune(request.app.state.runner_config.session_idle_timeout_s)
        return {"pruned": pruned}

    # --------------------------------------------------
    # Flow runs
    # --------------------------------------------------
    @app.post('/api/sessions/{session_id}/run')
    async def run_flow(session_id: str, body: RunFlowRequest, request: Request):
        """Run a flow in the session; the result is returned when every step is terminal."""
        state = request.app.state
        session = _session_or_404(request, session_id)
        dry_run = state.runner_config.dry_run if body.dryRun is None else body.dryRun
        executor = StepExecutor(state.http_client, default_timeout_ms=state.runner_config.default_step_timeout_ms,
                                dry_run=dry_run)
        orchestrator = FlowOrchestrator(executor, metrics=state.metrics, endpoints=state.endpoints)
        try:
            result = await orchestrator.run(body.flow, session, body.config, flow_inputs=body.flowInputs)
        except FlowValidationError as e:
            logger.error(f"Flow rejected for session {session_id}: {e}")
            raise HTTPException(status_code=400, detail=e.to_dict())
        except ConfigurationError as e:
            logger.error(f"Flow cannot start in session {session_id}: {e}")
            raise HTTPException(status_code=409, detail=e.to_dict())
        except SessionClosedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return JSONResponse(result.model_dump(mode="json"))

    return app


app = create_app(runner_config=load_runner_config())


# ---------------------------------------------------------------------
# MAIN ENTRY POINT (for dev usage)
# ---------------------------------------------------------------------
if __name__ == '__main__':
    configure_logging(os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG" or app.state.runner_config.debug)
    logger.info("Starting session API server...")

    import uvicorn
    uvicorn.run(
        "session_api:app",
        host='0.0.0.0',
        port=int(os.getenv("PORT", "8080")),
        log_level="info",
        reload=os.environ.get("DEV_RELOAD", "false").lower() == "true"
    )
