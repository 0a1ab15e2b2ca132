"""Arithmetic tool restricted to numbers, parentheses and the basic operators."""

import ast
import math
import operator
import re
import sys
from typing import (
    Any,
    Callable,
    Dict,
    Type,
)

from pydantic import (
    BaseModel,
    Field,
)

from agentdesk.tools import (
    ToolContext,
    register_tool,
)

SAFE_EXPRESSION = re.compile(r"^[0-9+\-*/%().\s]+$")
MAX_EXPONENT = 64


def _remainder(left: Any, right: Any) -> float | int:
    # sign follows the dividend, like C
    if right == 0:
        raise ZeroDivisionError("modulo by zero")
    if isinstance(left, int) and isinstance(right, int):
        remainder = abs(left) % abs(right)
        return -remainder if left < 0 else remainder
    return math.fmod(left, right)


def _check_magnitude(value: Any) -> Any:
    # anything a double cannot hold counts as overflow
    if isinstance(value, int) and abs(value) > sys.float_info.max:
        raise OverflowError("integer result too large")
    return value


_BINARY_OPS: Dict[Type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: _remainder,
    ast.Pow: operator.pow,
}
_UNARY_OPS: Dict[Type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


class CalculateArgs(BaseModel):
    expression: str = Field(..., description="Arithmetic expression, e.g. (12 + 3) * 4")


def _evaluate(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return _check_magnitude(node.value)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ValueError("Exponent is too large.")
        return _check_magnitude(_BINARY_OPS[type(node.op)](left, right))
    raise ValueError("Expression contains unsupported syntax.")


def evaluate_expression(expression: str) -> float | int:
    """Evaluate *expression* without ever handing it to ``eval``."""
    if not SAFE_EXPRESSION.match(expression):
        raise ValueError("Expression contains invalid characters.")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except (SyntaxError, RecursionError) as exc:
        raise ValueError("Expression is not valid arithmetic.") from exc
    try:
        result = _evaluate(tree)
        valid = not isinstance(result, complex) and math.isfinite(result)
    except (ZeroDivisionError, OverflowError, RecursionError) as exc:
        raise ValueError("Expression did not produce a valid number.") from exc
    if not valid:
        raise ValueError("Expression did not produce a valid number.")
    return result


@register_tool(
    "calculate",
    args_model=CalculateArgs,
    description="Calculate a math expression. Supports numbers, (), + - * / % and spaces.",
)
def calculate(
    args: CalculateArgs, ctx: ToolContext  # pylint: disable=unused-argument
) -> Dict[str, Any]:
    return {"expression": args.expression, "result": evaluate_expression(args.expression)}
