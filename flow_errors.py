# flow_errors.py

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ValidationIssue(BaseModel):
    """One structural or range problem found in a flow definition."""
    model_config = ConfigDict(frozen=True)

    location: str = Field(..., description="Where the problem is, e.g. 'steps[1].method' or 'config.maxConcurrency'")
    message: str = Field(..., description="Human-readable description of the problem")

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class FlowError(Exception):
    """Base class for errors surfaced synchronously to the caller of a flow run."""


class FlowValidationError(FlowError):
    """Malformed flow, step or config. Raised before any request is sent."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues[:5])
        if len(self.issues) > 5:
            summary += f"; ... and {len(self.issues) - 5} more"
        super().__init__(f"Flow validation failed with {len(self.issues)} issue(s): {summary}")

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "validation", "issues": [issue.model_dump() for issue in self.issues]}


class ConfigurationError(FlowError):
    """Prerequisite session data is missing or unusable. Fatal, raised before scheduling."""

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        self.problems = list(problems or [])
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "configuration", "message": str(self), "problems": self.problems}


class SessionClosedError(FlowError):
    """A write was attempted on a session that has been closed."""


# ---------------------------
# HTTP client failures
# ---------------------------
class HttpClientError(Exception):
    """Transport-level failure raised by an HTTP client collaborator."""


class HttpNetworkError(HttpClientError):
    """DNS failure, refused connection, reset, invalid URL and similar."""


class HttpTimeoutError(HttpClientError):
    """The request did not complete within its timeout."""
