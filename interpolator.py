# interpolator.py
"""
Resolution of ``{{scope.path}}`` references against a session snapshot.

Grammar: ``{{`` + scope + ``.`` + path + ``}}``. The scope is one of ``env``,
``input``, ``runtime`` or ``config``; any other scope is read as a step
identifier and looked up among the recorded step outputs. The path is a
dot-separated list of keys or list indices (``items.0.id``; ``items[0].id``
is accepted as the same thing).

Resolution is fail-open: a reference that cannot be resolved is left in the
output exactly as written, so a flow can still progress when only some of its
steps have produced output.
"""

import json
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel

from flow_logging import get_logger
from session_state import RESERVED_SCOPES, SessionSnapshot

logger = get_logger("interpolator")

OPEN = "{{"
CLOSE = "}}"

# --- Sentinel Object for Missing Values ---
_MISSING = object()


@dataclass(frozen=True)
class Token:
    raw: str
    scope: str
    path: Tuple[str, ...]
    valid: bool

    @property
    def is_step_reference(self) -> bool:
        return self.valid and self.scope not in RESERVED_SCOPES


def _split_reference(text: str) -> List[str]:
    normalized = text.replace("[", ".").replace("]", "")
    return [segment.strip() for segment in normalized.split(".")]


def _make_token(raw: str, inner: str) -> Token:
    segments = _split_reference(inner.strip())
    valid = len(segments) >= 2 and all(segments)
    scope = segments[0] if segments else ""
    return Token(raw=raw, scope=scope, path=tuple(segments[1:]), valid=valid)


def tokenize(template: str) -> List[Union[str, Token]]:
    """
    Split a template into literal strings and Tokens, left to right.
    An opening ``{{`` with no closing ``}}`` is kept as literal text.
    """
    parts: List[Union[str, Token]] = []
    pos = 0
    length = len(template)
    while pos < length:
        start = template.find(OPEN, pos)
        if start == -1:
            break
        end = template.find(CLOSE, start + len(OPEN))
        if end == -1:
            break
        # "{{a {{b.c}}" -> the innermost opening wins, the rest is literal
        nested = template.rfind(OPEN, start + len(OPEN), end)
        if nested != -1:
            start = nested
        if start > pos:
            parts.append(template[pos:start])
        raw = template[start:end + len(CLOSE)]
        parts.append(_make_token(raw, template[start + len(OPEN):end]))
        pos = end + len(CLOSE)
    if pos < length:
        parts.append(template[pos:])
    return parts


def iter_tokens(value: Any) -> Iterable[Token]:
    """Every token in a string, or in the string keys/leaves of nested dicts and lists."""
    if isinstance(value, str):
        if OPEN in value:
            for part in tokenize(value):
                if isinstance(part, Token):
                    yield part
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from iter_tokens(key)
            yield from iter_tokens(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_tokens(item)


def referenced_scopes(value: Any) -> Set[str]:
    return {token.scope for token in iter_tokens(value) if token.valid}


def referenced_steps(value: Any) -> Set[str]:
    """Step identifiers referenced by a template, found without resolving anything."""
    return {token.scope for token in iter_tokens(value) if token.is_step_reference}


def malformed_references(value: Any) -> List[str]:
    return [token.raw for token in iter_tokens(value) if not token.valid]


def resolve_path(root: Any, segments: Iterable[str]) -> Any:
    """
    Walk ``segments`` through dicts (by key), lists (by index) and pydantic
    models (by field). Returns the sentinel _MISSING as soon as a segment
    cannot be followed.
    """
    current = root
    headers_level = False # header names are case-insensitive
    for segment in segments:
        if isinstance(current, BaseModel):
            if segment not in type(current).model_fields:
                return _MISSING
            current = getattr(current, segment)
            headers_level = segment == "headers"
        elif isinstance(current, Mapping):
            if segment in current:
                current = current[segment]
            elif headers_level:
                lowered = segment.lower()
                match = next((k for k in current if isinstance(k, str) and k.lower() == lowered), _MISSING)
                if match is _MISSING:
                    return _MISSING
                current = current[match]
            else:
                return _MISSING
            headers_level = False
        elif isinstance(current, (list, tuple)):
            if not segment.isdigit():
                return _MISSING
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
            headers_level = False
        else:
            return _MISSING
    return current


def split_path(path: str) -> Tuple[str, ...]:
    """'data.items[0].id' -> ('data', 'items', '0', 'id')"""
    return tuple(_split_reference(path.strip()))


def extract_value(result: BaseModel, path: str) -> Any:
    """
    Value at ``path`` in a step result: 'body.data.items[0].id',
    'headers.X-Trace', 'status'. A path that does not start with a result
    field is read from the body, and a leading '.' is ignored ('.status').
    Returns _MISSING when the path cannot be followed.
    """
    segments = split_path(path.lstrip(".")) if isinstance(path, str) else ()
    if not segments or not all(segments):
        return _MISSING
    if segments[0] not in type(result).model_fields:
        segments = ("body",) + segments
    return resolve_path(result, segments)


def resolve_token(token: Token, snapshot: SessionSnapshot) -> Any:
    if not token.valid:
        return _MISSING
    if token.scope in RESERVED_SCOPES:
        root = snapshot.scope(token.scope)
    else:
        root = snapshot.step_outputs.get(token.scope, _MISSING)
    if root is None or root is _MISSING:
        return _MISSING
    return resolve_path(root, token.path)


def _json_default(value: Any):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (BaseModel, Mapping, list, tuple)):
        return json.dumps(value, default=_json_default, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def interpolate(template: str, snapshot: SessionSnapshot) -> str:
    """
    Replace every resolvable reference in ``template``; unresolved references
    stay as written. Pure: the snapshot is only read.
    """
    if not isinstance(template, str) or OPEN not in template:
        return template

    result_parts = []
    unresolved = []
    for part in tokenize(template):
        if isinstance(part, str):
            result_parts.append(part)
            continue
        value = resolve_token(part, snapshot)
        if value is _MISSING:
            unresolved.append(part.raw)
            result_parts.append(part.raw)
        else:
            result_parts.append(stringify(value))

    if unresolved:
        logger.debug(f"Unresolved reference(s) left as-is: {', '.join(unresolved)}")
    return "".join(result_parts)


def interpolate_value(value: Any, snapshot: SessionSnapshot) -> Any:
    """Recursively interpolate strings inside dicts and lists; other values pass through."""
    if isinstance(value, str):
        return interpolate(value, snapshot)
    if isinstance(value, Mapping):
        return {interpolate(key, snapshot) if isinstance(key, str) else key: interpolate_value(item, snapshot)
                for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate_value(item, snapshot) for item in value]
    return value


def lookup(reference: str, snapshot: SessionSnapshot) -> Optional[Any]:
    """Resolve a bare 'scope.path' reference (without braces); None when unresolved."""
    value = resolve_token(_make_token(reference, reference), snapshot)
    return None if value is _MISSING else value
