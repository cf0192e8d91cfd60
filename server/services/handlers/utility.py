"""Utility node handlers - Current Time, Merge, Math, Transform, JSON Extractor.

These nodes need no external services. Each returns a flat result map that
the executor merges into the context both flat and under the step id.
"""

import json
import math
import operator
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from core.logging import get_logger
from services.parameter_resolver import UNRESOLVED, get_path_value

logger = get_logger(__name__)


async def handle_current_time(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any]
) -> Dict[str, Any]:
    """Return the current timestamp in several formats."""
    now = datetime.now(timezone.utc)
    return {
        "ISO": now.isoformat(timespec='milliseconds').replace('+00:00', 'Z'),
        "UNIX": int(now.timestamp()),
        "UNIX_MS": int(now.timestamp() * 1000),
        "READABLE": now.astimezone().strftime('%Y-%m-%d %H:%M:%S'),
        "STATUS": "Success",
    }


async def handle_merge(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any]
) -> Dict[str, Any]:
    """Synchronization barrier after a parallel region. Passes data through."""
    logger.info("[Merge] Barrier reached", node_id=node_id, context_keys=len(context))
    return {"STATUS": "Merged", "TIMESTAMP": int(time.time() * 1000)}


# =============================================================================
# MATH
# =============================================================================

_BINARY_OPS: Dict[str, Callable[[float, float], float]] = {
    'add': operator.add,
    'subtract': operator.sub,
    'multiply': operator.mul,
    'divide': operator.truediv,
    'modulo': operator.mod,
    'power': operator.pow,
    'min': min,
    'max': max,
}

_UNARY_OPS: Dict[str, Callable[[float], float]] = {
    'abs': abs,
    'round': round,
    'floor': math.floor,
    'ceil': math.ceil,
    'sqrt': math.sqrt,
}


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got a boolean")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")
    return int(number) if number.is_integer() else number


async def handle_math(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any]
) -> Dict[str, Any]:
    """Arithmetic on resolved operands.

    Parameters:
        operation: add, subtract, multiply, divide, modulo, power, min, max,
                   abs, round, floor, ceil, sqrt
        a: first operand
        b: second operand (binary operations only)
        precision: optional decimal places for the result
    """
    op = str(parameters.get('operation', 'add')).lower()
    a = _number(parameters.get('a'), 'a')

    if op in _UNARY_OPS:
        result = _UNARY_OPS[op](a)
    elif op in _BINARY_OPS:
        b = _number(parameters.get('b'), 'b')
        if op in ('divide', 'modulo') and b == 0:
            raise ZeroDivisionError(f"Cannot {op} by zero")
        result = _BINARY_OPS[op](a, b)
    else:
        raise ValueError(f"Unknown math operation: {op}")

    precision = parameters.get('precision')
    if precision not in (None, ''):
        result = round(result, int(precision))

    return {"RESULT": result}


# =============================================================================
# TRANSFORM
# =============================================================================

def _split(value: Any, parameters: Dict[str, Any]) -> Any:
    return str(value).split(parameters.get('separator', ','))


def _join(value: Any, parameters: Dict[str, Any]) -> Any:
    if not isinstance(value, list):
        raise ValueError("join expects a list")
    return parameters.get('separator', ',').join(str(v) for v in value)


_TRANSFORMS: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {
    'uppercase': lambda v, p: str(v).upper(),
    'lowercase': lambda v, p: str(v).lower(),
    'trim': lambda v, p: str(v).strip(),
    'length': lambda v, p: len(v) if isinstance(v, (list, dict)) else len(str(v)),
    'to_number': lambda v, p: _number(v, 'value'),
    'to_string': lambda v, p: v if isinstance(v, str) else json.dumps(v),
    'split': _split,
    'join': _join,
}


async def handle_transform(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any]
) -> Dict[str, Any]:
    """Apply a simple transformation to a value.

    The result is returned under RESULT, and also under outputKey when given.
    """
    op = str(parameters.get('operation', 'trim')).lower()
    transform = _TRANSFORMS.get(op)
    if transform is None:
        raise ValueError(f"Unknown transform operation: {op}")

    value = parameters.get('value')
    if value is None:
        raise ValueError("value is required")

    result = {"RESULT": transform(value, parameters)}
    output_key = parameters.get('outputKey')
    if output_key:
        result[str(output_key)] = result["RESULT"]
    return result


async def handle_json_extractor(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any]
) -> Dict[str, Any]:
    """Extract a dot-path value from JSON data.

    Parameters:
        source: dict/list, or a JSON string
        path: dot-separated path, numeric segments index lists
        required: raise when the path does not exist (default false)
    """
    source = parameters.get('source')
    path = str(parameters.get('path', '')).strip()

    if isinstance(source, str):
        try:
            source = json.loads(source)
        except json.JSONDecodeError:
            raise ValueError("source is not valid JSON")

    if not path:
        return {"VALUE": source, "FOUND": True}

    value = get_path_value({"$": source}, f"$.{path}")
    if value is UNRESOLVED:
        if parameters.get('required') in (True, 'true'):
            raise KeyError(f"Path not found: {path}")
        logger.warning("[JSON Extractor] Path not found", node_id=node_id, path=path)
        return {"VALUE": None, "FOUND": False}
    return {"VALUE": value, "FOUND": True}
