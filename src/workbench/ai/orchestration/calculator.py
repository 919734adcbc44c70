"""Arithmetic expression evaluator used by the ``calculate`` action."""

from __future__ import annotations

import ast
import math
import operator
from typing import Any, Callable, Mapping

from ..errors import CalculationError

__all__ = ["Calculator"]

Number = int | float

_MAX_EXPONENT = 1_000
# Integer results stay below the interpreter's int-to-str digit limit.
_MAX_RESULT_BITS = 10_000
_MAX_FACTORIAL = 1_000
_MAX_EXPRESSION_LENGTH = 2_000
_TOO_LARGE = f"Result is larger than {_MAX_RESULT_BITS} bits"

_BINARY_OPERATORS: Mapping[type[ast.operator], Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPERATORS: Mapping[type[ast.unaryop], Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_CONSTANTS: Mapping[str, float] = {
    "pi": math.pi,
    "e": math.e,
    "tau": math.tau,
    "inf": math.inf,
    "Infinity": math.inf,
}


def _factorial(value: Number) -> int:
    if isinstance(value, float):
        if not value.is_integer():
            raise CalculationError("factorial() is only defined for integers")
        value = int(value)
    if value > _MAX_FACTORIAL:
        raise CalculationError(f"factorial() argument is larger than {_MAX_FACTORIAL}")
    return math.factorial(value)


def _check_product_size(left: Number, right: Number) -> None:
    if isinstance(left, int) and isinstance(right, int):
        if abs(left).bit_length() + abs(right).bit_length() > _MAX_RESULT_BITS + 1:
            raise CalculationError(_TOO_LARGE)


def _log(value: Number, base: Number | None = None) -> float:
    return math.log(value) if base is None else math.log(value, base)


_FUNCTIONS: Mapping[str, Callable[..., Any]] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sqrt": math.sqrt,
    "cbrt": lambda value: math.copysign(abs(value) ** (1 / 3), value),
    "exp": math.exp,
    "log": _log,
    "ln": math.log,
    "log10": math.log10,
    "log2": math.log2,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "atan2": math.atan2,
    "sinh": math.sinh,
    "cosh": math.cosh,
    "tanh": math.tanh,
    "floor": math.floor,
    "ceil": math.ceil,
    "hypot": math.hypot,
    "degrees": math.degrees,
    "radians": math.radians,
    "factorial": _factorial,
    "gcd": math.gcd,
    "lcm": math.lcm,
}


class Calculator:
    """Evaluates arithmetic by walking the Python AST of the expression.

    Only numeric literals, arithmetic operators, the names in ``_CONSTANTS`` and
    calls to the functions in ``_FUNCTIONS`` are accepted. ``^`` is read as a
    power operator.
    """

    def evaluate(self, expression: str) -> Number:
        source = (expression or "").strip()
        if not source:
            raise CalculationError("Missing content (expression).")
        if len(source) > _MAX_EXPRESSION_LENGTH:
            raise CalculationError("Expression is too long")
        try:
            tree = ast.parse(source.replace("^", "**"), mode="eval")
        except SyntaxError as exc:
            raise CalculationError(f"Invalid expression: {exc.msg}") from exc
        try:
            return self._walk(tree.body)
        except CalculationError:
            raise
        except (ArithmeticError, ValueError, TypeError) as exc:
            raise CalculationError(str(exc) or exc.__class__.__name__) from exc

    def calculate(self, expression: str) -> str:
        value = self.evaluate(expression)
        try:
            return self.format_result(value)
        except ValueError as exc:
            raise CalculationError(_TOO_LARGE) from exc

    @staticmethod
    def format_result(value: Number) -> str:
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, int):
            return str(value)
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return format(value, ".14g")

    def _walk(self, node: ast.AST) -> Number:
        if isinstance(node, ast.Constant):
            if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
                raise CalculationError(f"Unsupported literal: {node.value!r}")
            return node.value
        if isinstance(node, ast.Name):
            if node.id not in _CONSTANTS:
                raise CalculationError(f"Undefined symbol {node.id}")
            return _CONSTANTS[node.id]
        if isinstance(node, ast.UnaryOp):
            unary = _UNARY_OPERATORS.get(type(node.op))
            if unary is None:
                raise CalculationError("Unsupported unary operator")
            return unary(self._walk(node.operand))
        if isinstance(node, ast.BinOp):
            left = self._walk(node.left)
            right = self._walk(node.right)
            if isinstance(node.op, ast.Pow):
                return self._power(left, right)
            if isinstance(node.op, ast.Mult):
                _check_product_size(left, right)
            binary = _BINARY_OPERATORS.get(type(node.op))
            if binary is None:
                raise CalculationError("Unsupported operator")
            return binary(left, right)
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
                name = node.func.id if isinstance(node.func, ast.Name) else "expression"
                raise CalculationError(f"Unknown function {name}")
            if node.keywords:
                raise CalculationError("Keyword arguments are not supported")
            args = [self._walk(arg) for arg in node.args]
            return _FUNCTIONS[node.func.id](*args)
        raise CalculationError(f"Unsupported syntax: {node.__class__.__name__}")

    @staticmethod
    def _power(base: Number, exponent: Number) -> Number:
        if abs(exponent) > _MAX_EXPONENT and abs(base) > 1:
            raise CalculationError(f"Exponent is larger than {_MAX_EXPONENT}")
        if isinstance(base, int) and isinstance(exponent, int) and exponent > 0 and abs(base) > 1:
            if exponent * math.log2(abs(base)) > _MAX_RESULT_BITS:
                raise CalculationError(_TOO_LARGE)
        result = base**exponent
        if isinstance(result, complex):
            raise CalculationError("Result is not a real number")
        return result
