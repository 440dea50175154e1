"""Arithmetic calculator tool."""

from __future__ import annotations

import ast
import operator
import re
from typing import Any

from pydantic import Field

from tool_loop_agent.ai.tools.base import Tool, ToolInput

_ALLOWED_CHARS = re.compile(r"^[0-9+\-*/().%\s]+$")

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

MAX_EXPONENT = 1000
# Integer results stay well under the interpreter's int-to-str digit limit.
MAX_RESULT_BITS = 8192


class CalculateInput(ToolInput):
    expression: str = Field(
        min_length=1,
        description="Mathematical expression to evaluate (e.g., '2 + 2', '10 * 5')",
    )


def evaluate(expression: str) -> int | float:
    """Evaluate a plain arithmetic expression without ``eval``."""
    if not _ALLOWED_CHARS.match(expression):
        raise ValueError("Invalid characters in expression")
    tree = ast.parse(expression.strip(), mode="eval")
    return _eval_node(tree.body)


def _eval_node(node: ast.AST) -> int | float:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        _check_size(node.value)
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT:
                raise ValueError("Exponent too large")
            if isinstance(left, int) and isinstance(right, int) and right > 0:
                _check_bits(left.bit_length() * right)
        elif isinstance(node.op, ast.Mult) and isinstance(left, int) and isinstance(right, int):
            _check_bits(left.bit_length() + right.bit_length())
        return _check_size(_BINARY_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def _check_bits(bits: int) -> None:
    if bits > MAX_RESULT_BITS:
        raise ValueError("Result too large")


def _check_size(value: int | float) -> int | float:
    if isinstance(value, int):
        _check_bits(value.bit_length())
    return value


def _normalize(value: int | float) -> int | float:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class CalculatorTool(Tool):
    name = "calculate"
    description = "Perform a mathematical calculation"
    input_model = CalculateInput

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        expression = kwargs["expression"]
        return {"expression": expression, "result": _normalize(evaluate(expression))}
