# flow_models.py

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

HTTP_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'HEAD', 'PATCH', 'OPTIONS']

DEFAULT_STEP_TIMEOUT_MS = 30000
DEFAULT_FLOW_TIMEOUT_MS = 300000
DEFAULT_MAX_CONCURRENCY = 5

# Status recorded when no HTTP response was received
TIMEOUT_STATUS = 598
NETWORK_ERROR_STATUS = 597
DRY_RUN_STATUS = 0

JsonBody = Union[Dict[str, Any], List[Any], str]


def _stringify_headers(v):
    if v is None:
        return {}
    if isinstance(v, dict):
        return {str(k): ("" if val is None else str(val)) for k, val in v.items()}
    return v


# ---------------------------
# Flow Definition Models
# ---------------------------
# Input models are intentionally lenient: range and cross-field checks live in
# flow_validator so that every violation can be reported in one pass.

class Step(BaseModel):
    id: Optional[str] = Field(None, description="Unique identifier for the step within its flow")
    name: Optional[str] = Field(None, description="Human-readable name for the step")
    endpointId: Optional[str] = Field(None, description="Reference to a pre-existing endpoint definition")
    method: Optional[str] = Field(None, description="HTTP method (GET, POST, PUT, etc.)")
    url: Optional[str] = Field(None, description="Full URL or path. Can contain {{scope.path}} references.")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers. Values can contain {{scope.path}} references.")
    body: Optional[JsonBody] = Field(None, description="Request body (raw string or JSON object). String leaves can contain references.")
    timeoutMs: Optional[int] = Field(
        None,
        validation_alias=AliasChoices('timeoutMs', 'timeout'),
        description="Per-request timeout in milliseconds",
    )
    expectedStatus: Optional[int] = Field(None, description="HTTP status the step is expected to return")
    extract: Dict[str, str] = Field(default_factory=dict, description="Mapping of runtime variable names to response paths (e.g., 'token': 'body.data.token', 'firstId': 'body.items[0].id', 'code': 'status', 'trace': 'headers.X-Trace')")
    description: Optional[str] = Field(None, description="Free-form description")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator('method', mode='before')
    def normalize_method(cls, v):
        if isinstance(v, str):
            return v.strip().upper() or None
        return v

    @field_validator('headers', mode='before')
    def normalize_headers(cls, v):
        return _stringify_headers(v)

    @field_validator('extract', mode='before')
    def extract_default(cls, v):
        return {} if v is None else v

    def label(self) -> str:
        return f"'{self.name}' ({self.id})" if self.name else f"({self.id})"


class FlowConfig(BaseModel):
    """Execution policy for one flow run."""
    timeoutMs: int = Field(
        DEFAULT_FLOW_TIMEOUT_MS,
        validation_alias=AliasChoices('timeoutMs', 'timeout'),
        description="Overall deadline for the whole flow in milliseconds",
    )
    stopOnError: bool = Field(True, description="Stop scheduling new steps after a network or timeout failure")
    parallel: bool = Field(False, description="Allow independent steps to run concurrently")
    maxConcurrency: int = Field(DEFAULT_MAX_CONCURRENCY, description="Maximum steps running at once when parallel (1-20)")

    model_config = ConfigDict(extra="ignore", frozen=True)


class InputValidation(BaseModel):
    min_length: Optional[Any] = None
    max_length: Optional[Any] = None
    min: Optional[Any] = None
    max: Optional[Any] = None
    pattern: Optional[str] = None
    options: Optional[Any] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


class FlowInput(BaseModel):
    """Describes one caller-supplied value that populates the flowInputs scope."""
    name: Optional[str] = None
    type: Optional[str] = None
    required: bool = False
    default: Optional[Any] = None
    description: Optional[str] = None
    validation: Optional[InputValidation] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


class FlowDefinition(BaseModel):
    name: Optional[str] = Field(None, description="Name of the flow")
    description: Optional[str] = Field(None, description="Description of the flow")
    steps: List[Step] = Field(default_factory=list, description="Ordered steps of the flow")
    config: Optional[FlowConfig] = Field(None, description="Default execution policy for this flow")
    inputs: List[FlowInput] = Field(default_factory=list, description="Declared flow inputs")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator('inputs', mode='before')
    def inputs_default(cls, v):
        return [] if v is None else v

    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps if step.id]


class EndpointDefinition(BaseModel):
    """A saved request a step may point at through 'endpointId'."""
    id: str
    name: Optional[str] = None
    method: str = 'GET'
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[JsonBody] = None

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator('method', mode='before')
    def normalize_method(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator('headers', mode='before')
    def normalize_headers(cls, v):
        return _stringify_headers(v)


# ---------------------------
# Execution Result Models
# ---------------------------
class StepError(BaseModel):
    kind: Literal['network', 'timeout']
    message: str

    model_config = ConfigDict(frozen=True)


class ResolvedRequest(BaseModel):
    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeoutMs: int

    model_config = ConfigDict(frozen=True)


class StepResult(BaseModel):
    status: int = Field(..., description="HTTP status, or a sentinel when no response was received")
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    latencyMs: float = 0.0
    timestamp: str = Field(..., description="ISO-8601 UTC completion time")
    error: Optional[StepError] = Field(None, description="Only set for network-level or timeout failures")
    request: Optional[ResolvedRequest] = None
    expectationMet: Optional[bool] = None
    dryRun: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def is_timeout(self) -> bool:
        return self.error is not None and self.error.kind == 'timeout'

    def passed(self) -> bool:
        """True when the step returned the response it was expected to."""
        if self.error is not None:
            return False
        if self.expectationMet is not None:
            return self.expectationMet
        return self.dryRun or self.status < 400


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class StepOutcome(BaseModel):
    stepId: str
    name: Optional[str] = None
    status: StepStatus
    result: Optional[StepResult] = None

    model_config = ConfigDict(frozen=True)


class FlowSummary(BaseModel):
    total: int
    completed: int
    failed: int
    timedOut: int
    skipped: int
    cancelled: int
    passed: int
    successRate: float

    model_config = ConfigDict(frozen=True)


class FlowResult(BaseModel):
    flowName: Optional[str] = None
    sessionId: Optional[str] = None
    steps: List[StepOutcome]
    startedAt: str
    finishedAt: str
    durationMs: float
    success: bool
    summary: FlowSummary
    cancelledReason: Optional[Literal['timeout', 'cancelled']] = None

    model_config = ConfigDict(frozen=True)

    def outcome(self, step_id: str) -> Optional[StepOutcome]:
        for item in self.steps:
            if item.stepId == step_id:
                return item
        return None

    def statuses(self) -> Dict[str, StepStatus]:
        return {item.stepId: item.status for item in self.steps}
