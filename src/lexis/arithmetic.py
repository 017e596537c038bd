"""Lexis arithmetic -- safe evaluation of arithmetic found in natural-language input.

Only numeric literals, ``+ - * / // % **``, unary signs and parentheses are
accepted. Undefined results (division by zero, runaway exponents) raise
InvalidInput instead of producing a wrong answer.
"""

import ast
import math
import operator
import re
from typing import Union

from lexis.errors import InvalidInput

Number = Union[int, float]

MAX_EXPONENT = 1000
MAX_FACTORIAL = 170
MAX_FIBONACCI = 1000

# Longest phrases first so "multiplied by" wins over "by"
_WORD_OPERATORS = (
    (r"to the power of", "**"),
    (r"multiplied by", "*"),
    (r"divided by", "/"),
    (r"modulo|mod", "%"),
    (r"plus|add", "+"),
    (r"minus|subtract", "-"),
    (r"times|x", "*"),
    (r"over", "/"),
)
_WORD_OPERATOR_RES = [(re.compile(rf"(?<=[\d\s)])(?:{pat})(?=[\s\d(])"), sym) for pat, sym in _WORD_OPERATORS]
_SYMBOLS = {"×": "*", "÷": "/", "^": "**", "−": "-"}
_EXPR_RE = re.compile(r"[\d\s.+\-*/%()]+")

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}


class UndefinedResult(InvalidInput):
    """The expression is well formed but has no finite real value (e.g. 1 / 0)."""


def normalize_number(value: Number) -> str:
    """Render a result without float noise: 8.0 -> "8", 0.1+0.2 -> "0.3"."""
    if isinstance(value, float):
        if math.isinf(value) or math.isnan(value):
            raise UndefinedResult("result is not a finite number")
        if abs(value - round(value)) < 1e-9:
            return str(int(round(value)))
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def rewrite_operators(text: str) -> str:
    """Replace operator words and typographic symbols with Python operators."""
    out = text.lower()
    for sym, repl in _SYMBOLS.items():
        out = out.replace(sym, repl)
    for pattern, sym in _WORD_OPERATOR_RES:
        out = pattern.sub(f" {sym} ", out)
    return out


def extract_expression(text: str) -> str:
    """Return the longest arithmetic span containing a digit, or "" if none."""
    rewritten = rewrite_operators(text)
    candidates = [m.strip() for m in _EXPR_RE.findall(rewritten)]
    candidates = [c for c in candidates if any(ch.isdigit() for ch in c)]
    if not candidates:
        return ""
    return max(candidates, key=len)


def _eval_node(node: ast.AST) -> Number:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise InvalidInput("expression constants must be numeric")
        return node.value
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)) and right == 0:
            raise UndefinedResult("division by zero")
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise UndefinedResult(f"exponent too large (max {MAX_EXPONENT})")
        try:
            return _BIN_OPS[type(node.op)](left, right)
        except (OverflowError, ZeroDivisionError) as e:
            raise UndefinedResult(f"undefined result: {e}") from e
    raise InvalidInput(f"unsupported expression element: {type(node).__name__}")


def evaluate(expression: str) -> Number:
    """Evaluate a bare arithmetic expression such as ``"5 + 3 * (2 - 1)"``."""
    expr = (expression or "").strip()
    if not expr:
        raise InvalidInput("no arithmetic expression found")
    try:
        tree = ast.parse(expr, mode="eval")
    except SyntaxError as e:
        raise InvalidInput(f"malformed expression: {expr!r}") from e
    value = _eval_node(tree)
    if isinstance(value, complex):
        raise UndefinedResult("result is not a real number")
    return value


def evaluate_text(text: str) -> tuple[str, Number]:
    """Pull the arithmetic out of a sentence and evaluate it.

    Returns ``(expression, value)``. Raises InvalidInput when no expression
    is present or it is undefined.
    """
    expr = extract_expression(text)
    return expr, evaluate(expr)


# ---------------------------------------------------------------------------
# Number helpers
# ---------------------------------------------------------------------------


def factorial(n: int) -> int:
    if not isinstance(n, int) or n < 0:
        raise InvalidInput("factorial is only defined for non-negative integers")
    if n > MAX_FACTORIAL:
        raise InvalidInput(f"factorial argument too large (max {MAX_FACTORIAL})")
    return math.factorial(n)


def gcd(a: int, b: int) -> int:
    return math.gcd(int(a), int(b))


def lcm(a: int, b: int) -> int:
    a, b = int(a), int(b)
    if a == 0 or b == 0:
        return 0
    return abs(a * b) // math.gcd(a, b)


def is_prime(n: int) -> bool:
    if n < 2:
        return False
    if n < 4:
        return True
    if n % 2 == 0:
        return False
    for i in range(3, math.isqrt(n) + 1, 2):
        if n % i == 0:
            return False
    return True


def fibonacci(n: int) -> int:
    """The n-th Fibonacci number, fibonacci(0) == 0."""
    if n < 0:
        raise InvalidInput("fibonacci is only defined for non-negative indices")
    if n > MAX_FIBONACCI:
        raise InvalidInput(f"fibonacci index too large (max {MAX_FIBONACCI})")
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return a


def percentage(part: Number, total: Number) -> float:
    if total == 0:
        raise InvalidInput("percentage of a zero total is undefined")
    return part / total * 100


def sqrt(n: Number) -> float:
    if n < 0:
        raise InvalidInput("square root of a negative number is not real")
    return math.sqrt(n)
