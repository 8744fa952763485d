"""
Arithmetic for ``{{math:...}}`` expressions.

Variable (``$name``) and placeholder (``@table.prop``) references are
substituted with their values first; the resulting expression is then
evaluated with simpleeval restricted to arithmetic operators and a few
numeric functions.
"""

from typing import Callable, Union
import ast
import logging
import math
import operator as op
import re

from simpleeval import InvalidExpression, NumberTooHigh, SimpleEval, safe_add, safe_mult, safe_power

from tablecraft.errors import MathError

logger = logging.getLogger(__name__)

Number = Union[int, float]

ALLOWED_OPS = {
    ast.Add: safe_add,
    ast.Sub: op.sub,
    ast.Mult: safe_mult,
    ast.Div: op.truediv,
    ast.FloorDiv: op.floordiv,
    ast.Mod: op.mod,
    ast.Pow: safe_power,
    ast.USub: op.neg,
    ast.UAdd: op.pos,
}

FUNCTIONS = {
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
}

# $name, or @table / @table.prop / @table.@prop
REFERENCE = re.compile(r"\$[A-Za-z_]\w*|@[A-Za-z_][\w\-]*(?:\.@?[A-Za-z_][\w\-]*)*")


def _to_number(text: str, ref: str, expression: str) -> Number:
    stripped = str(text).strip()
    try:
        number = float(stripped)
    except ValueError:
        raise MathError(f"'{ref}' is not numeric (value '{stripped}')", f"math:{expression}")
    if number.is_integer() and "." not in stripped:
        return int(number)
    return number


def substitute_references(expression: str, resolve: Callable[[str], str]) -> str:
    """Replace every $var / @table.prop reference with its numeric value."""

    def replace(match: re.Match) -> str:
        ref = match.group(0)
        value = _to_number(resolve(ref), ref, expression)
        # Parenthesize negatives so '2 - $x' stays correct
        return f"({value})" if value < 0 else str(value)

    return REFERENCE.sub(replace, expression)


def evaluate_math(expression: str, resolve: Callable[[str], str]) -> tuple[Number, str]:
    """
    Evaluate an arithmetic expression.

    Args:
        expression: Expression text after the 'math:' prefix
        resolve: Callback returning the value of a '$var' or '@t.p' reference

    Returns:
        (result, substituted expression)

    Raises:
        MathError: if the expression is malformed or not numeric
    """
    substituted = substitute_references(expression, resolve)
    evaluator = SimpleEval(names={}, functions=FUNCTIONS, operators=ALLOWED_OPS)
    try:
        result = evaluator.eval(substituted)
    except ZeroDivisionError:
        raise MathError("Division by zero", f"math:{expression}")
    except (NumberTooHigh, OverflowError) as e:
        raise MathError(f"Math result out of range in '{substituted}': {e}", f"math:{expression}")
    except (InvalidExpression, SyntaxError, TypeError, ValueError) as e:
        raise MathError(f"Invalid math expression '{substituted}': {e}", f"math:{expression}")

    if isinstance(result, bool) or not isinstance(result, (int, float)):
        raise MathError(f"Math expression did not produce a number: {result!r}", f"math:{expression}")
    if isinstance(result, float) and result.is_integer():
        result = int(result)

    logger.debug(f"math: {expression} -> {substituted} = {result}")
    return result, substituted
