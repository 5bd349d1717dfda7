# flow_validator.py

import json
import re
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set
from urllib.parse import urlparse

from pydantic import ValidationError

from flow_errors import FlowValidationError, ValidationIssue
from flow_logging import get_logger
from flow_models import HTTP_METHODS, FlowConfig, FlowDefinition, FlowInput, Step
from interpolator import CLOSE, OPEN, iter_tokens, malformed_references, split_path, tokenize
from session_state import RESERVED_SCOPES

logger = get_logger("validator")

MAX_STEP_TIMEOUT_MS = 600000
MAX_FLOW_TIMEOUT_MS = 3600000
MIN_CONCURRENCY, MAX_CONCURRENCY = 1, 20
MIN_EXPECTED_STATUS, MAX_EXPECTED_STATUS = 100, 599

INPUT_TYPES = ['string', 'number', 'boolean', 'email', 'password', 'object', 'array', 'file', 'date', 'json']
_LENGTHLESS_TYPES = ('number', 'boolean', 'date')

_IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_-]*$')
_INPUT_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def _loc(*parts) -> str:
    """('steps', 1, 'method') -> 'steps[1].method'"""
    text = ""
    for part in parts:
        if isinstance(part, int):
            text += f"[{part}]"
        else:
            text += f".{part}" if text else str(part)
    return text


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------
# Static reference analysis
# ---------------------------
def step_templates(step: Step) -> List[Any]:
    """Every field of a step that may carry {{scope.path}} references."""
    return [step.url, step.headers, step.body]


def step_dependencies(steps: Sequence[Step]) -> Dict[str, Set[str]]:
    """
    Map each step id to the ids of steps *in the same flow* its templates
    reference. A ``{{runtime.name}}`` reference depends on the other steps
    of the flow that extract ``name``. References to steps outside the flow
    are resolved from outputs already in the session and never block
    scheduling.
    """
    known = {step.id for step in steps if step.id}
    extractors: Dict[str, Set[str]] = {}
    for step in steps:
        if step.id:
            for name in step.extract:
                extractors.setdefault(name, set()).add(step.id)

    deps = {}
    for step in steps:
        if not step.id:
            continue
        referenced = set()
        for template in step_templates(step):
            for token in iter_tokens(template):
                if token.is_step_reference:
                    referenced.add(token.scope)
                elif token.valid and token.scope == "runtime":
                    referenced.update(extractors.get(token.path[0], set()) - {step.id})
        deps[step.id] = referenced & known
    return deps


def dependency_issues(steps: Sequence[Step], parallel: bool) -> List[ValidationIssue]:
    """
    Dependency cycles, plus references to later steps when running
    sequentially. Step ids must already be unique.
    """
    issues = []
    deps = step_dependencies(steps)
    for cycle in find_cycles(deps):
        issues.append(ValidationIssue(location="steps", message=f"Dependency cycle: {' -> '.join(cycle)}"))
    if not parallel:
        position = {step.id: index for index, step in enumerate(steps) if step.id}
        for index, step in enumerate(steps):
            for dep in sorted(deps.get(step.id, ())):
                if position[dep] > index:
                    issues.append(ValidationIssue(
                        location=_loc("steps", index),
                        message=f"Step '{step.id}' references later step '{dep}', which cannot run first in sequential mode"))
    return issues


def find_cycles(deps: Mapping[str, Set[str]]) -> List[List[str]]:
    """Dependency cycles as lists of ids, each closed on its first element (a -> b -> a)."""
    visiting, done = set(), set()
    cycles = []
    stack: List[str] = []

    def visit(node: str):
        visiting.add(node)
        stack.append(node)
        for dep in sorted(deps.get(node, ())):
            if dep in visiting:
                cycles.append(stack[stack.index(dep):] + [dep])
            elif dep not in done:
                visit(dep)
        stack.pop()
        visiting.discard(node)
        done.add(node)

    for node in deps:
        if node not in done:
            visit(node)
    return cycles


def _check_url(url: Any) -> Optional[str]:
    if not isinstance(url, str) or not url.strip():
        return "url must be a non-empty string"
    if url.count(OPEN) != url.count(CLOSE):
        return f"url has unbalanced '{{{{' / '}}}}' in '{url}'"
    literal = "".join(part if isinstance(part, str) else "" for part in tokenize(url))
    if any(ch.isspace() for ch in literal):
        return f"url must not contain whitespace: '{url}'"
    lowered = url.lower()
    if lowered.startswith(("http://", "https://")):
        if not urlparse(url).netloc:
            return f"url has no host: '{url}'"
    elif not (url.startswith("/") or url.startswith(OPEN)):
        return f"url must start with http://, https://, / or a {{{{reference}}}}: '{url}'"
    return None


# ---------------------------
# Flow checks
# ---------------------------
def _validate_step(step: Step, index: int, seen_ids: Set[str]) -> List[ValidationIssue]:
    issues = []

    def add(field, message):
        issues.append(ValidationIssue(location=_loc("steps", index, field) if field else _loc("steps", index),
                                      message=message))

    if not step.id or not step.id.strip():
        add("id", "Step id is required")
    else:
        if step.id in seen_ids:
            add("id", f"Duplicate step id '{step.id}'")
        seen_ids.add(step.id)
        if not _IDENTIFIER_RE.match(step.id):
            add("id", f"Step id '{step.id}' must start with a letter or underscore and contain only letters, digits, '_' or '-'")
        if step.id in RESERVED_SCOPES:
            add("id", f"Step id '{step.id}' collides with the reserved scope name '{step.id}'")

    if not step.name or not step.name.strip():
        add("name", "Step name is required")

    if not step.endpointId:
        if not step.method:
            add("method", "method is required when no endpointId is given")
        if step.url is None:
            add("url", "url is required when no endpointId is given")
    if step.method and step.method not in HTTP_METHODS:
        add("method", f"method '{step.method}' must be one of: {', '.join(HTTP_METHODS)}")
    if step.url is not None:
        problem = _check_url(step.url)
        if problem:
            add("url", problem)

    if step.timeoutMs is not None and not (1 <= step.timeoutMs <= MAX_STEP_TIMEOUT_MS):
        add("timeoutMs", f"timeoutMs must be between 1 and {MAX_STEP_TIMEOUT_MS}, got {step.timeoutMs}")
    if step.expectedStatus is not None and not (MIN_EXPECTED_STATUS <= step.expectedStatus <= MAX_EXPECTED_STATUS):
        add("expectedStatus", f"expectedStatus must be between {MIN_EXPECTED_STATUS} and {MAX_EXPECTED_STATUS}, got {step.expectedStatus}")

    for name, path in step.extract.items():
        if not _INPUT_NAME_RE.match(name):
            add(f"extract.{name}", f"Extract variable name '{name}' must be a valid variable name")
        if not path or not all(split_path(path.lstrip("."))):
            add(f"extract.{name}", f"Extract path '{path}' must be a dot-separated path such as 'body.data.id'")

    for raw in malformed_references(step_templates(step)):
        add(None, f"Malformed reference {raw}; expected {{{{scope.path}}}}")
    return issues


def _validate_config(config: FlowConfig) -> List[ValidationIssue]:
    issues = []
    if not (1 <= config.timeoutMs <= MAX_FLOW_TIMEOUT_MS):
        issues.append(ValidationIssue(
            location="config.timeoutMs",
            message=f"timeoutMs must be between 1 and {MAX_FLOW_TIMEOUT_MS}, got {config.timeoutMs}"))
    if not (MIN_CONCURRENCY <= config.maxConcurrency <= MAX_CONCURRENCY):
        issues.append(ValidationIssue(
            location="config.maxConcurrency",
            message=f"maxConcurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, got {config.maxConcurrency}"))
    return issues


def _validate_input_definition(flow_input: FlowInput, index: int, seen: Set[str]) -> List[ValidationIssue]:
    issues = []

    def add(field, message):
        issues.append(ValidationIssue(location=_loc("inputs", index, field), message=message))

    if not flow_input.name:
        add("name", "Input name is required")
    elif not _INPUT_NAME_RE.match(flow_input.name):
        add("name", f"Input name '{flow_input.name}' must be a valid variable name")
    elif flow_input.name in seen:
        add("name", f"Duplicate input name '{flow_input.name}'")
    else:
        seen.add(flow_input.name)

    if not flow_input.type:
        add("type", "Input type is required")
    elif flow_input.type not in INPUT_TYPES:
        add("type", f"Input type must be one of: {', '.join(INPUT_TYPES)}")

    rules = flow_input.validation
    if rules is None:
        return issues
    input_type = flow_input.type
    if rules.min_length is not None:
        if not _is_int(rules.min_length) or rules.min_length < 0:
            add("validation.min_length", "min_length must be a non-negative integer")
        if input_type in _LENGTHLESS_TYPES:
            add("validation.min_length", f"min_length is not applicable for type {input_type}")
    if rules.max_length is not None:
        if not _is_int(rules.max_length) or rules.max_length <= 0:
            add("validation.max_length", "max_length must be a positive integer")
        if input_type in _LENGTHLESS_TYPES:
            add("validation.max_length", f"max_length is not applicable for type {input_type}")
    if input_type == 'number':
        if rules.min is not None and not _is_number(rules.min):
            add("validation.min", "min must be numeric for number type")
        if rules.max is not None and not _is_number(rules.max):
            add("validation.max", "max must be numeric for number type")
        if _is_number(rules.min) and _is_number(rules.max) and rules.min > rules.max:
            add("validation", "min cannot be greater than max")
    if rules.pattern is not None:
        try:
            re.compile(rules.pattern)
        except re.error as e:
            add("validation.pattern", f"pattern must be a valid regex: {e}")
    if rules.options is not None:
        if not isinstance(rules.options, list):
            add("validation.options", "options must be an array")
        else:
            for option_index, option in enumerate(rules.options):
                if not isinstance(option, str):
                    add("validation.options", f"option {option_index} must be a string")
    return issues


def validate_flow(flow: FlowDefinition, config: Optional[FlowConfig] = None) -> List[ValidationIssue]:
    """
    Structural and range checks for a flow and the config it will run with.
    Returns every violation found; an empty list means the flow may run.
    Does no network or session access.
    """
    issues: List[ValidationIssue] = []
    effective = config or flow.config or FlowConfig()

    if not flow.name or not flow.name.strip():
        issues.append(ValidationIssue(location="name", message="Flow name is required"))
    if not flow.steps:
        issues.append(ValidationIssue(location="steps", message="At least one step is required"))

    seen_ids: Set[str] = set()
    for index, step in enumerate(flow.steps):
        issues.extend(_validate_step(step, index, seen_ids))

    issues.extend(_validate_config(effective))

    seen_inputs: Set[str] = set()
    for index, flow_input in enumerate(flow.inputs):
        issues.extend(_validate_input_definition(flow_input, index, seen_inputs))

    # Dependency shape only makes sense once ids are unique
    if len(seen_ids) == len([s for s in flow.steps if s.id]):
        issues.extend(dependency_issues(flow.steps, effective.parallel))

    if issues:
        logger.debug(f"Flow '{flow.name}' failed validation with {len(issues)} issue(s).")
    return issues


# ---------------------------
# Caller-supplied input values
# ---------------------------
def _coerce_check(input_type: str, value: Any) -> Optional[str]:
    """Reason the value does not fit the declared type, or None."""
    if input_type in ('string', 'password', 'file'):
        return None if isinstance(value, str) else "must be a string"
    if input_type == 'number':
        if _is_number(value):
            return None
        if isinstance(value, str):
            try:
                float(value)
                return None
            except ValueError:
                pass
        return "must be a number"
    if input_type == 'boolean':
        if isinstance(value, bool) or (isinstance(value, str) and value.lower() in ('true', 'false')):
            return None
        return "must be a boolean"
    if input_type == 'email':
        return None if isinstance(value, str) and _EMAIL_RE.match(value) else "must be a valid email address"
    if input_type == 'date':
        if isinstance(value, (date, datetime)):
            return None
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value.replace("Z", "+00:00"))
                return None
            except ValueError:
                pass
        return "must be an ISO-8601 date"
    if input_type in ('object', 'array', 'json'):
        parsed = value
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                return "must be valid JSON"
        if input_type == 'object' and not isinstance(parsed, dict):
            return "must be an object"
        if input_type == 'array' and not isinstance(parsed, list):
            return "must be an array"
    return None


def _as_number(value: Any) -> Optional[float]:
    if _is_number(value):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def check_input_values(inputs: Sequence[FlowInput], values: Mapping[str, Any]) -> List[ValidationIssue]:
    """Check caller-supplied flowInputs against the flow's declared inputs."""
    issues = []
    for flow_input in inputs:
        if not flow_input.name:
            continue
        location = f"inputs.{flow_input.name}"
        value = values.get(flow_input.name)
        if value is None or value == "":
            if flow_input.required and flow_input.default is None:
                issues.append(ValidationIssue(location=location, message="Required input is missing"))
            continue

        problem = _coerce_check(flow_input.type, value) if flow_input.type else None
        if problem:
            issues.append(ValidationIssue(location=location, message=f"Value {problem}"))
            continue

        rules = flow_input.validation
        if rules is None:
            continue
        if flow_input.type not in _LENGTHLESS_TYPES:
            length = len(value) if isinstance(value, (str, list, dict)) else len(str(value))
            if _is_int(rules.min_length) and length < rules.min_length:
                issues.append(ValidationIssue(location=location, message=f"Value is shorter than {rules.min_length}"))
            if _is_int(rules.max_length) and length > rules.max_length:
                issues.append(ValidationIssue(location=location, message=f"Value is longer than {rules.max_length}"))
        if flow_input.type == 'number':
            number = _as_number(value)
            if _is_number(rules.min) and number is not None and number < rules.min:
                issues.append(ValidationIssue(location=location, message=f"Value must be >= {rules.min}"))
            if _is_number(rules.max) and number is not None and number > rules.max:
                issues.append(ValidationIssue(location=location, message=f"Value must be <= {rules.max}"))
        if rules.pattern and isinstance(value, str):
            try:
                if not re.search(rules.pattern, value):
                    issues.append(ValidationIssue(location=location, message=f"Value does not match pattern '{rules.pattern}'"))
            except re.error:
                issues.append(ValidationIssue(location=location, message=f"Invalid pattern '{rules.pattern}'"))
        if isinstance(rules.options, list) and rules.options and str(value) not in rules.options:
            issues.append(ValidationIssue(location=location, message=f"Value must be one of: {', '.join(map(str, rules.options))}"))
    return issues


def input_defaults(inputs: Sequence[FlowInput]) -> Dict[str, Any]:
    return {i.name: i.default for i in inputs if i.name and i.default is not None}


# ---------------------------
# Raw input parsing
# ---------------------------
def _issues_from_pydantic(exc: ValidationError, prefix: str = "") -> List[ValidationIssue]:
    issues = []
    for err in exc.errors():
        location = _loc(*err.get("loc", ())) or prefix or "flow"
        if prefix and not location.startswith(prefix):
            location = f"{prefix}.{location}"
        issues.append(ValidationIssue(location=location, message=err.get("msg", "Invalid value")))
    return issues


def parse_flow(data: Any) -> FlowDefinition:
    """Build a FlowDefinition from raw data, raising FlowValidationError on malformed input."""
    if isinstance(data, FlowDefinition):
        return data
    if not isinstance(data, dict):
        raise FlowValidationError([ValidationIssue(location="flow", message="Flow definition must be an object")])
    try:
        return FlowDefinition.model_validate(data)
    except ValidationError as e:
        raise FlowValidationError(_issues_from_pydantic(e)) from e


def parse_config(data: Any) -> Optional[FlowConfig]:
    if data is None or isinstance(data, FlowConfig):
        return data
    if not isinstance(data, dict):
        raise FlowValidationError([ValidationIssue(location="config", message="Configuration must be an object")])
    try:
        return FlowConfig.model_validate(data)
    except ValidationError as e:
        raise FlowValidationError(_issues_from_pydantic(e, prefix="config")) from e
