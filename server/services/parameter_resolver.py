"""Parameter Resolver - Template variable resolution.

Resolves {{path.to.value}} template variables in step inputs against the
per-run execution context.
"""

import json
import re
from typing import Any, Dict

from core.logging import get_logger

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{([^{}]+?)\}\}')
EXACT_TEMPLATE_PATTERN = re.compile(r'^\{\{([^{}]+?)\}\}$')


class _Unresolved:
    """Marker for a path that does not exist (distinct from a falsy value)."""

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()


def get_path_value(context: Dict[str, Any], path: str) -> Any:
    """Walk a dot-separated path into the context.

    Numeric segments index into lists. Returns UNRESOLVED when a segment is
    missing or an intermediate value is not a container.

    Examples:
        >>> get_path_value({"a": {"b": 5}}, "a.b")
        5
        >>> get_path_value({"items": [{"name": "x"}]}, "items.0.name")
        'x'
    """
    current: Any = context
    for part in (p.strip() for p in path.split('.')):
        if isinstance(current, dict):
            if part not in current:
                return UNRESOLVED
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return UNRESOLVED
            current = current[index]
        else:
            return UNRESOLVED
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def resolve_value(value: Any, context: Dict[str, Any]) -> Any:
    """Resolve a single input value.

    - Non-strings are returned unchanged.
    - "{{path}}" alone returns the raw value (type preserved), or None if missing.
    - Any other string has each token interpolated; missing tokens stay verbatim.
    """
    if not isinstance(value, str):
        return value

    exact = EXACT_TEMPLATE_PATTERN.match(value)
    if exact:
        path = exact.group(1).strip()
        resolved = get_path_value(context, path)
        if resolved is UNRESOLVED:
            logger.warning("Template variable not found in context", path=path)
            return None
        return resolved

    if '{{' not in value:
        return value

    def replace(match: re.Match) -> str:
        path = match.group(1).strip()
        resolved = get_path_value(context, path)
        if resolved is UNRESOLVED:
            logger.warning("Template variable not found in context", path=path)
            return match.group(0)
        return _stringify(resolved)

    return TEMPLATE_PATTERN.sub(replace, value)


def resolve_inputs(inputs: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve {{variable}} templates in an input map recursively."""
    template_keys = [k for k, v in inputs.items() if isinstance(v, str) and '{{' in v]
    if template_keys:
        logger.debug("Resolving templates", params_with_templates=template_keys,
                     context_keys=len(context))

    def resolve(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [resolve(item) for item in value]
        return resolve_value(value, context)

    return {k: resolve(v) for k, v in inputs.items()}
