"""Condition expressions for edges and event filters.

Uses simpleeval for safe expression evaluation (no eval() or exec()).
Expressions see the execution's variable bag (or an event payload) as plain
names, e.g. ``amount > 1000 and region == "EU"``.
"""

from __future__ import annotations

import ast
import logging
from collections.abc import Mapping
from typing import Any

from simpleeval import DEFAULT_FUNCTIONS, DEFAULT_OPERATORS, NameNotDefined, SimpleEval

logger = logging.getLogger(__name__)

_CONSTANTS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
}


class ConditionError(ValueError):
    """An expression could not be parsed or evaluated."""


class ConditionEvaluator:
    """Evaluates boolean expressions against a mapping of variables."""

    def __init__(self, extra_functions: Mapping[str, Any] | None = None) -> None:
        self._functions: dict[str, Any] = {
            **DEFAULT_FUNCTIONS,
            "len": len,
            "lower": lambda s: str(s).lower(),
            "upper": lambda s: str(s).upper(),
            "contains": lambda container, item: item in (container or ()),
            "startswith": lambda s, prefix: str(s).startswith(prefix),
            "endswith": lambda s, suffix: str(s).endswith(suffix),
            "abs": abs,
            "min": min,
            "max": max,
            "round": round,
            "exists": lambda value: value is not None,
        }
        if extra_functions:
            self._functions.update(extra_functions)

    def check_syntax(self, expression: str) -> str | None:
        """Return an error message if the expression does not parse."""

        if not expression.strip():
            return "expression is empty"
        try:
            ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            return f"invalid expression {expression!r}: {e.msg}"
        return None

    def evaluate(self, expression: str, variables: Mapping[str, Any]) -> bool:
        """Evaluate to a bool. Raises :class:`ConditionError` on failure."""

        # A fresh evaluator per call keeps evaluation thread-safe.
        evaluator = SimpleEval(
            operators=DEFAULT_OPERATORS.copy(),
            functions=self._functions,
            names={**_CONSTANTS, **dict(variables)},
        )
        try:
            return bool(evaluator.eval(expression.strip()))
        except NameNotDefined as e:
            raise ConditionError(f"unknown variable in {expression!r}: {e}") from e
        except Exception as e:
            raise ConditionError(f"cannot evaluate {expression!r}: {e}") from e

    def holds(self, expression: str | None, variables: Mapping[str, Any]) -> bool:
        """Lenient evaluation: a missing condition is true, a failing one is false."""

        if expression is None or not expression.strip():
            return True
        try:
            return self.evaluate(expression, variables)
        except ConditionError as e:
            logger.warning("Condition treated as false", extra={"reason": str(e)})
            return False
