"""Deterministic task evaluation.

Every recipe here must produce bit-identical output to the other workers on
the network, since the coordinator only credits outputs that agree.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ScriptCharacterError, ScriptError, ScriptSyntaxError
from .expression import evaluate_expression
from .schemas import CUSTOM_KIND, SCRIPT_KIND, Evaluation, Task

SCRIPT_PATTERN = re.compile(r"^print\s*\((.*)\)\s*$", re.IGNORECASE)
EXPRESSION_WHITELIST = re.compile(r"^[0-9+\-*/%.()\s]+$")

# 170! is the largest factorial a double can hold.
MAX_FACTORIAL = 170

CAPABILITY_BY_OPERATION: Dict[str, str] = {
    "script_eval": "script:sandbox",
    "vector_sum": "analytics:vector",
    "factorial": "math:advanced",
}
DEFAULT_CAPABILITY = "math:basic"


def infer_capabilities(operation: str) -> List[str]:
    return [CAPABILITY_BY_OPERATION.get(operation, DEFAULT_CAPABILITY)]


def infer_kind(operation: str) -> str:
    return SCRIPT_KIND if operation == "script_eval" else CUSTOM_KIND


# ---------------------------------------------------------------------------
# Script sandbox
# ---------------------------------------------------------------------------


def evaluate_script(source: str) -> Evaluation:
    """Run a ``print(<expression>)`` script through the arithmetic interpreter.

    The source must match the call wrapper, and the inner expression must
    only contain digits, ``+ - * / % . ( )`` and whitespace before it is
    parsed. Anything else raises a :class:`ScriptError` subclass.
    """

    trimmed = str(source).strip()
    match = SCRIPT_PATTERN.match(trimmed)
    if not match:
        raise ScriptSyntaxError("Only print(expression) scripts are supported", source=trimmed)
    expression = match.group(1)
    if not EXPRESSION_WHITELIST.match(expression):
        raise ScriptCharacterError("Expression contains unsupported characters", source=trimmed)
    try:
        value = evaluate_expression(expression)
    except ScriptError as exc:
        exc.source = trimmed
        raise
    return Evaluation(output=value, metadata={"expression": expression.strip(), "source": trimmed})


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------


def _decode_payload(payload: Any) -> Tuple[Optional[Mapping[str, Any]], Optional[str]]:
    if payload is None or payload == "":
        return None, None
    if isinstance(payload, Mapping):
        return payload, None
    if isinstance(payload, (str, bytes)):
        try:
            decoded = json.loads(payload)
        except ValueError:
            return None, "payload is not valid JSON"
        if isinstance(decoded, Mapping):
            return decoded, None
    return None, "payload is not an object"


def _numeric_values(payload: Optional[Mapping[str, Any]]) -> Optional[List[float]]:
    if payload is None:
        return None
    raw = payload.get("values")
    if not isinstance(raw, (list, tuple)):
        return None
    values: List[float] = []
    for item in raw:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            continue
        value = float(item)
        if math.isfinite(value):
            values.append(value)
    return values


def _running_sum(values: List[float]) -> float:
    # Plain left-to-right addition; builtin sum() compensates rounding on newer Pythons.
    total = 0.0
    for value in values:
        total += value
    return total


def _square(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    return Evaluation(output=x * x)


def _sqrt(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    return Evaluation(output=math.sqrt(max(x, 0.0)))


def _double(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    return Evaluation(output=x * 2)


def _factorial(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    n = max(0, math.floor(x))
    if n > MAX_FACTORIAL:
        return Evaluation(output=x, metadata={"n": n, "error": "factorial result is not finite"})
    acc = 1.0
    for i in range(2, n + 1):
        acc *= i
    return Evaluation(output=acc, metadata={"n": n})


def _vector_sum(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    values = _numeric_values(payload)
    if values is None:
        return Evaluation(output=x, metadata={"warning": "vector_sum payload missing"})
    if not values:
        return Evaluation(output=x, metadata={"warning": "vector_sum payload missing numeric values"})
    total = _running_sum(values)
    return Evaluation(
        output=total,
        metadata={
            "count": len(values),
            "min": min(values),
            "max": max(values),
            "average": total / len(values),
        },
    )


def _mean(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    values = _numeric_values(payload)
    if values is None:
        return Evaluation(output=x, metadata={"warning": "mean payload missing"})
    if not values:
        return Evaluation(output=x, metadata={"warning": "mean payload missing numeric values"})
    return Evaluation(output=_running_sum(values) / len(values), metadata={"count": len(values)})


def _script_eval(x: float, payload: Optional[Mapping[str, Any]]) -> Evaluation:
    source = str((payload or {}).get("source") or "").strip()
    if not source:
        return Evaluation(output=x, metadata={"warning": "script payload missing source"})
    try:
        return evaluate_script(source)
    except ScriptError as exc:
        return Evaluation(output=x, metadata={"error": str(exc), "source": source})


RECIPES: Dict[str, Callable[[float, Optional[Mapping[str, Any]]], Evaluation]] = {
    "square": _square,
    "sqrt": _sqrt,
    "double": _double,
    "factorial": _factorial,
    "vector_sum": _vector_sum,
    "mean": _mean,
    "script_eval": _script_eval,
}


def evaluate(operation: str, input_value: Any = 0.0, payload: Any = None) -> Evaluation:
    """Compute the output for one operation. Problems come back as metadata."""

    try:
        x = float(input_value)
    except (TypeError, ValueError, OverflowError):
        x = 0.0
    if not math.isfinite(x):
        return Evaluation(output=0.0, metadata={"error": "task input is not a finite number"})

    recipe = RECIPES.get(operation or "")
    if recipe is None:
        return Evaluation(output=x, metadata={"warning": f"unhandled op {operation}"})

    decoded, problem = _decode_payload(payload)
    result = recipe(x, decoded)
    if not math.isfinite(result.output):
        metadata = dict(result.metadata or {})
        metadata["error"] = f"{operation} result is not finite"
        return Evaluation(output=x, metadata=metadata)
    if problem and result.metadata is not None and "warning" in result.metadata:
        result.metadata["warning"] = f"{result.metadata['warning']} ({problem})"
    return result


def evaluate_task(task: Task) -> Evaluation:
    return evaluate(task.operation, task.input, task.payload)


__all__ = [
    "CAPABILITY_BY_OPERATION",
    "EXPRESSION_WHITELIST",
    "MAX_FACTORIAL",
    "RECIPES",
    "SCRIPT_PATTERN",
    "evaluate",
    "evaluate_script",
    "evaluate_task",
    "infer_capabilities",
    "infer_kind",
]
