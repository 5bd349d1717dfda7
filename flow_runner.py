# flow_runner.py

import asyncio
import time
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from flow_errors import ConfigurationError, FlowValidationError, ValidationIssue
from flow_logging import get_logger
from flow_models import (
    EndpointDefinition,
    FlowConfig,
    FlowDefinition,
    FlowResult,
    FlowSummary,
    Step,
    StepOutcome,
    StepResult,
    StepStatus,
)
from flow_validator import (
    check_input_values,
    dependency_issues,
    input_defaults,
    parse_config,
    parse_flow,
    step_dependencies,
    step_templates,
    validate_flow,
)
from interpolator import _MISSING, extract_value, malformed_references, referenced_scopes
from session_state import SessionState
from step_executor import StepExecutor

logger = get_logger("orchestrator")


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------
# Metrics Tracking
# ---------------------------
class Metrics:
    """
    Tracks RPS using a rolling window, per-status step counts and the
    average flow duration. Safe for concurrent coroutines via asyncio.Lock.
    """
    def __init__(self):
        self.lock = asyncio.Lock()
        self.request_timestamps = deque()
        self.last_rps_update_time = 0
        self.last_rps_value = 0.0

        self.total_requests = 0
        self.step_status_counts: Counter = Counter()

        self.flow_duration_sum = 0.0
        self.flow_count = 0
        self.successful_flow_count = 0

    async def increment(self):
        """Record that a request was sent (for RPS)."""
        now = time.monotonic()
        async with self.lock:
            self.total_requests += 1
            self.request_timestamps.append(now)
            one_second_ago = now - 1.0
            while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
                self.request_timestamps.popleft()

    async def record_step_status(self, status: StepStatus):
        async with self.lock:
            self.step_status_counts[status.value] += 1

    async def get_rps(self) -> float:
        """Return the approximate RPS over the last 1 second."""
        now = time.monotonic()
        # Cache result briefly to avoid excessive lock contention if called rapidly
        if now - self.last_rps_update_time < 0.1:
            return self.last_rps_value

        async with self.lock:
            one_second_ago = now - 1.0
            while self.request_timestamps and self.request_timestamps[0] < one_second_ago:
                self.request_timestamps.popleft()
            current_rps = float(len(self.request_timestamps))
            self.last_rps_value = current_rps
            self.last_rps_update_time = now
            return current_rps

    async def record_flow(self, duration_seconds: float, success: bool):
        """Record the duration and outcome of a finished flow run."""
        if duration_seconds < 0:
            logger.warning(f"Attempted to record negative flow duration: {duration_seconds:.3f}s. Ignoring.")
            return
        async with self.lock:
            self.flow_duration_sum += duration_seconds
            self.flow_count += 1
            if success:
                self.successful_flow_count += 1

    async def get_average_flow_duration_ms(self) -> float:
        async with self.lock:
            if self.flow_count == 0:
                return 0.0
            return (self.flow_duration_sum / self.flow_count) * 1000.0

    async def as_dict(self) -> Dict[str, Any]:
        rps = await self.get_rps()
        average_ms = await self.get_average_flow_duration_ms()
        async with self.lock:
            return {
                "rps": rps,
                "total_requests": self.total_requests,
                "flows_run": self.flow_count,
                "flows_succeeded": self.successful_flow_count,
                "average_flow_duration_ms": round(average_ms, 3),
                "step_statuses": dict(self.step_status_counts),
            }


# ---------------------------
# Orchestration
# ---------------------------
def _status_for(result: StepResult) -> StepStatus:
    if result.error is None:
        return StepStatus.COMPLETED
    return StepStatus.TIMED_OUT if result.error.kind == "timeout" else StepStatus.FAILED


def summarize(outcomes: List[StepOutcome]) -> FlowSummary:
    counts = Counter(outcome.status for outcome in outcomes)
    passed = sum(1 for o in outcomes if o.status == StepStatus.COMPLETED and o.result is not None and o.result.passed())
    total = len(outcomes)
    return FlowSummary(
        total=total,
        completed=counts[StepStatus.COMPLETED],
        failed=counts[StepStatus.FAILED],
        timedOut=counts[StepStatus.TIMED_OUT],
        skipped=counts[StepStatus.SKIPPED],
        cancelled=counts[StepStatus.CANCELLED],
        passed=passed,
        successRate=round(passed / total * 100, 2) if total else 0.0,
    )


class FlowOrchestrator:
    """
    Validates a flow and drives its steps through a StepExecutor.

    A step becomes eligible once every step of the same flow it references has
    reached a terminal state. Sequential runs take steps strictly in array
    order, one at a time; parallel runs keep up to ``maxConcurrency`` eligible
    steps in flight and re-check eligibility whenever one finishes. Every
    result is written back to the session before dependents are started, and
    each step interpolates against a snapshot taken when it starts.
    """

    def __init__(self, executor: StepExecutor, *, metrics: Optional[Metrics] = None,
                 endpoints: Optional[Union[Mapping[str, EndpointDefinition], Iterable[EndpointDefinition]]] = None):
        self.executor = executor
        self.metrics = metrics
        if endpoints is None:
            self.endpoints: Dict[str, EndpointDefinition] = {}
        elif isinstance(endpoints, Mapping):
            self.endpoints = dict(endpoints)
        else:
            self.endpoints = {endpoint.id: endpoint for endpoint in endpoints}

    # --- pre-flight ---
    def _resolve_endpoint(self, step: Step) -> Step:
        endpoint = self.endpoints[step.endpointId]
        return step.model_copy(update={
            "method": step.method or endpoint.method,
            "url": step.url if step.url is not None else endpoint.url,
            "headers": {**endpoint.headers, **step.headers},
            "body": step.body if step.body is not None else endpoint.body,
        })

    def _preflight(self, flow: FlowDefinition, session: SessionState, config: FlowConfig,
                   flow_inputs: Optional[Dict[str, Any]]) -> List[Step]:
        """
        Resolve endpoint references and check prerequisite session data.
        Returns the steps to schedule. Caller-supplied flow inputs and declared
        defaults are merged into the session only when every check passes.
        """
        if session.closed:
            raise ConfigurationError(f"Session {session.session_id} is closed")

        problems = []
        steps = []
        issues = []
        for index, step in enumerate(flow.steps):
            if not step.endpointId:
                steps.append(step)
            elif step.endpointId not in self.endpoints:
                problems.append(f"Step {step.label()}: endpoint '{step.endpointId}' is not defined")
                steps.append(step)
            else:
                resolved = self._resolve_endpoint(step)
                issues.extend(ValidationIssue(location=f"steps[{index}]",
                                              message=f"Malformed reference {raw} from endpoint '{step.endpointId}'")
                              for raw in malformed_references(step_templates(resolved)))
                steps.append(resolved)

        # Endpoint templates may add references the raw flow did not show
        issues.extend(dependency_issues(steps, config.parallel))
        if issues:
            logger.error(f"Flow '{flow.name}' rejected after endpoint resolution: {len(issues)} issue(s)")
            raise FlowValidationError(issues)

        snapshot = session.snapshot()
        uses_env = any("env" in referenced_scopes(step_templates(step)) for step in steps)
        if uses_env and not snapshot.environment:
            problems.append("Steps reference {{env.*}} but no environment is configured for this session")

        supplied = dict(flow_inputs or {})
        current = {**snapshot.flow_inputs, **supplied}
        defaults = {}
        if flow.inputs:
            defaults = {k: v for k, v in input_defaults(flow.inputs).items() if k not in current}
            problems.extend(str(issue) for issue in check_input_values(flow.inputs, {**defaults, **current}))

        if problems:
            raise ConfigurationError(
                f"Flow '{flow.name}' cannot start: {len(problems)} configuration problem(s)", problems)
        if supplied or defaults:
            session.set_flow_inputs({**defaults, **supplied})
        return steps

    def _extract(self, step: Step, result: StepResult, session: SessionState):
        """Copy the values named in ``step.extract`` into the session's runtime variables."""
        for name, path in step.extract.items():
            value = extract_value(result, path)
            if value is _MISSING:
                logger.warning(f"Step {step.label()}: extraction path '{path}' for '{name}' not found in response; "
                               f"setting runtime.{name} to null")
                value = None
            else:
                logger.debug(f"Step {step.label()}: extracted '{path}' into runtime.{name}")
            session.set_runtime_var(name, value)

    # --- run ---
    async def run(self, flow: Union[FlowDefinition, Dict[str, Any]], session: SessionState,
                  config: Optional[Union[FlowConfig, Dict[str, Any]]] = None, *,
                  cancel_event: Optional[asyncio.Event] = None,
                  flow_inputs: Optional[Dict[str, Any]] = None) -> FlowResult:
        """
        Execute a flow in a session and return its ordered FlowResult.
        ``flow_inputs`` are merged into the session once the flow passes
        validation and pre-flight.

        Raises FlowValidationError or ConfigurationError before any request is
        sent. Network and timeout failures never raise; they are reported in
        the result. Cancelling this coroutine cancels every in-flight step.
        """
        flow = parse_flow(flow)
        effective = parse_config(config) or flow.config or FlowConfig()

        issues = validate_flow(flow, effective)
        if issues:
            logger.error(f"Flow '{flow.name}' rejected: {len(issues)} validation issue(s)")
            raise FlowValidationError(issues)

        steps = self._preflight(flow, session, effective, flow_inputs)
        session.drop_step_outputs(step.id for step in steps)

        logger.info(f"Starting flow '{flow.name}' in session {session.session_id}: {len(steps)} step(s), "
                    f"parallel={effective.parallel}, maxConcurrency={effective.maxConcurrency}, "
                    f"stopOnError={effective.stopOnError}, timeout={effective.timeoutMs}ms")

        started_at = datetime.now(timezone.utc)
        start_monotonic = time.monotonic()
        states, results, cancelled_reason = await self._schedule(steps, session, effective, cancel_event)
        duration_ms = round((time.monotonic() - start_monotonic) * 1000, 3)

        outcomes = [
            StepOutcome(stepId=step.id, name=step.name, status=states[step.id], result=results.get(step.id))
            for step in steps
        ]
        success = cancelled_reason is None and all(
            o.status == StepStatus.COMPLETED and o.result is not None and o.result.passed() for o in outcomes
        )
        result = FlowResult(
            flowName=flow.name,
            sessionId=session.session_id,
            steps=outcomes,
            startedAt=_iso(started_at),
            finishedAt=_iso(datetime.now(timezone.utc)),
            durationMs=duration_ms,
            success=success,
            summary=summarize(outcomes),
            cancelledReason=cancelled_reason,
        )

        if self.metrics:
            await self.metrics.record_flow(duration_ms / 1000.0, success)
        log = logger.info if success else logger.warning
        log(f"Flow '{flow.name}' finished in {duration_ms:.2f} ms: success={success}, "
            f"{result.summary.completed}/{result.summary.total} completed"
            f"{f', cancelled ({cancelled_reason})' if cancelled_reason else ''}")
        return result

    async def _schedule(self, steps: List[Step], session: SessionState, config: FlowConfig,
                        cancel_event: Optional[asyncio.Event]):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.timeoutMs / 1000.0
        limit = config.maxConcurrency if config.parallel else 1
        deps = step_dependencies(steps)

        states: Dict[str, StepStatus] = {step.id: StepStatus.PENDING for step in steps}
        results: Dict[str, StepResult] = {}
        running: Dict[asyncio.Task, Step] = {}
        halted = False
        cancelled_reason = None
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None

        def eligible() -> List[Step]:
            ready = []
            for step in steps:
                if states[step.id] != StepStatus.PENDING:
                    continue
                if all(states[dep].is_terminal for dep in deps[step.id]):
                    ready.append(step)
                if not config.parallel:
                    break
            return ready

        try:
            while True:
                has_work = running or (not halted and any(s == StepStatus.PENDING for s in states.values()))
                if not has_work:
                    break
                if cancel_event is not None and cancel_event.is_set():
                    cancelled_reason = "cancelled"
                    break
                if loop.time() >= deadline:
                    cancelled_reason = "timeout"
                    break

                if not halted:
                    for step in eligible():
                        if len(running) >= limit:
                            break
                        states[step.id] = StepStatus.RUNNING
                        task = asyncio.create_task(self.executor.execute(step, session.snapshot()),
                                                   name=f"step-{step.id}")
                        running[task] = step
                        logger.debug(f"Step {step.label()} started ({len(running)} running)")

                if not running:
                    # Pending steps whose dependencies can never finish
                    pending = [sid for sid, state in states.items() if state == StepStatus.PENDING]
                    raise RuntimeError(f"No runnable step among pending steps {pending}")

                waiters = set(running)
                if cancel_waiter is not None:
                    waiters.add(cancel_waiter)
                done, _ = await asyncio.wait(waiters, timeout=max(0.0, deadline - loop.time()),
                                             return_when=asyncio.FIRST_COMPLETED)

                for task in done:
                    if task is cancel_waiter:
                        continue
                    step = running.pop(task)
                    result = task.result()
                    session.set_step_output(step.id, result)
                    if step.extract and result.error is None and not result.dryRun:
                        self._extract(step, result, session)
                    results[step.id] = result
                    states[step.id] = _status_for(result)
                    if self.metrics:
                        if not result.dryRun:
                            await self.metrics.increment()
                        await self.metrics.record_step_status(states[step.id])
                    if result.error is not None and config.stopOnError and not halted:
                        halted = True
                        logger.warning(f"Step {step.label()} ended with a {result.error.kind} error; "
                                       f"stopOnError is set, no further steps will start")
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            if running:
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)

        if cancelled_reason:
            logger.warning(f"Flow cancelled ({cancelled_reason}); {len(running)} step(s) were in flight")
        for step in steps:
            if states[step.id].is_terminal:
                continue
            if cancelled_reason:
                states[step.id] = StepStatus.CANCELLED
            else:
                states[step.id] = StepStatus.SKIPPED
            if self.metrics:
                await self.metrics.record_step_status(states[step.id])
        return states, results, cancelled_reason
