"""Arithmetic tool backed by simpleeval (no Python eval)."""

import math
from typing import Any, Dict

from simpleeval import InvalidExpression, SimpleEval

from relay.capabilities.base import ToolCapability, ToolContext, require_string
from relay.core.exceptions import ToolExecutionError

_FUNCTIONS = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "floor": math.floor,
    "ceil": math.ceil,
    "log": math.log,
}

_NAMES = {"pi": math.pi, "e": math.e}


def format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class CalculatorTool(ToolCapability):
    name = "calculator"
    description = (
        "Evaluate an arithmetic expression. Supports + - * / // % ** and "
        "parentheses, plus abs, round, min, max, sqrt, floor, ceil, log, pi and e."
    )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "expression": {"type": "string", "description": "Expression to evaluate, e.g. 2+2"},
            },
            "required": ["expression"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        expression = require_string(arguments, "expression")
        evaluator = SimpleEval(functions=_FUNCTIONS, names=_NAMES)
        try:
            result = evaluator.eval(expression)
        except (InvalidExpression, SyntaxError) as e:
            raise ToolExecutionError(f"Invalid expression: {e}") from e
        except (ArithmeticError, ValueError, TypeError) as e:
            raise ToolExecutionError(f"Cannot evaluate {expression!r}: {e}") from e
        if isinstance(result, bool) or not isinstance(result, (int, float)):
            raise ToolExecutionError(f"Expression did not produce a number: {expression!r}")
        return format_number(result)
