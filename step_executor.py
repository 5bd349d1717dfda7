# step_executor.py

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from flow_errors import HttpTimeoutError
from flow_logging import get_logger, mask_headers, preview
from flow_models import (
    DEFAULT_STEP_TIMEOUT_MS,
    DRY_RUN_STATUS,
    NETWORK_ERROR_STATUS,
    TIMEOUT_STATUS,
    ResolvedRequest,
    Step,
    StepError,
    StepResult,
)
from http_client import HttpClient
from interpolator import interpolate, interpolate_value
from session_state import SessionSnapshot

logger = get_logger("executor")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


class StepExecutor:
    """
    Runs exactly one step: interpolate, send once, measure, report.

    The executor never writes to the session; the caller records the returned
    StepResult. Network and timeout failures come back as data in
    ``StepResult.error``, never as exceptions. Task cancellation propagates.
    """

    def __init__(self, http_client: HttpClient, *, default_timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS,
                 dry_run: bool = False):
        self.http_client = http_client
        self.default_timeout_ms = default_timeout_ms
        self.dry_run = dry_run

    def effective_timeout_ms(self, step: Step, snapshot: SessionSnapshot) -> int:
        if step.timeoutMs:
            return step.timeoutMs
        return _positive_int(snapshot.config.get("timeoutMs")) or self.default_timeout_ms

    def detail_level(self, snapshot: SessionSnapshot) -> int:
        """Level for request and response detail; sessions with config.debug set log it at INFO."""
        debug = snapshot.config.get("debug")
        if debug is True or (isinstance(debug, str) and debug.lower() == "true"):
            return logging.INFO
        return logging.DEBUG

    def resolve_request(self, step: Step, snapshot: SessionSnapshot) -> ResolvedRequest:
        """Materialize the concrete request for a step from the current snapshot."""
        headers = {interpolate(key, snapshot): interpolate(value, snapshot) for key, value in (step.headers or {}).items()}
        return ResolvedRequest(
            method=step.method or "GET",
            url=interpolate(step.url or "", snapshot),
            headers=headers,
            body=interpolate_value(step.body, snapshot),
            timeoutMs=self.effective_timeout_ms(step, snapshot),
        )

    async def execute(self, step: Step, snapshot: SessionSnapshot) -> StepResult:
        step_identifier = step.label()
        request = self.resolve_request(step, snapshot)
        detail_level = self.detail_level(snapshot)

        if logger.isEnabledFor(detail_level):
            logger.log(detail_level, f"Step {step_identifier}: {request.method} {request.url} "
                                     f"headers={mask_headers(request.headers)} body={preview(request.body)} "
                                     f"timeout={request.timeoutMs}ms")

        if self.dry_run:
            logger.info(f"Step {step_identifier} (dry run): {request.method} {request.url}")
            return StepResult(status=DRY_RUN_STATUS, timestamp=utc_timestamp(), request=request, dryRun=True)

        request_start_time = time.monotonic()
        error = None
        try:
            response = await asyncio.wait_for(
                self.http_client.send(request.method, request.url, request.headers, request.body, request.timeoutMs),
                timeout=request.timeoutMs / 1000.0,
            )
        except (HttpTimeoutError, asyncio.TimeoutError) as e:
            error = StepError(kind="timeout", message=str(e) or f"Request exceeded {request.timeoutMs} ms")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # HttpNetworkError and anything else a client may raise
            error = StepError(kind="network", message=f"{type(e).__name__}: {e}")
        latency_ms = round((time.monotonic() - request_start_time) * 1000, 3)

        if error is not None:
            status = TIMEOUT_STATUS if error.kind == "timeout" else NETWORK_ERROR_STATUS
            logger.warning(f"Step {step_identifier} {error.kind} error: {error.message} "
                           f"({request.method} {request.url}, {latency_ms:.2f} ms)")
            return StepResult(status=status, latencyMs=latency_ms, timestamp=utc_timestamp(),
                              error=error, request=request)

        expectation_met = None
        if step.expectedStatus is not None:
            expectation_met = response.status == step.expectedStatus

        log_level = logging.WARNING if response.status >= 400 or expectation_met is False else logging.INFO
        expectation_note = f", expected {step.expectedStatus}" if expectation_met is False else ""
        logger.log(log_level, f"Step {step_identifier} received: {response.status} {request.method} {request.url} "
                              f"({latency_ms:.2f} ms{expectation_note})")
        if logger.isEnabledFor(detail_level):
            logger.log(detail_level, f"  Response Headers: {mask_headers(response.headers)}")
            logger.log(detail_level, f"  Response Body ({type(response.body).__name__}): {preview(response.body, 250)}")

        return StepResult(
            status=response.status,
            headers=dict(response.headers),
            body=response.body,
            latencyMs=latency_ms,
            timestamp=utc_timestamp(),
            request=request,
            expectationMet=expectation_met,
        )
