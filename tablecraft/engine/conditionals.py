"""
Conditional logic: when-clauses, document conditionals and switch cases.

When-clause grammar (OR binds looser than AND):

    or_expr    := and_expr ( '||' and_expr )*
    and_expr   := unary ( '&&' unary )*
    unary      := '!' unary | '(' or_expr ')' | comparison
    comparison := operand [ op operand ]
    op         := == | != | > | < | >= | <= | contains | matches

Operands are quoted literals, numbers, bare words, ``$var``, ``@table.prop``
or, inside a switch, a lone ``$`` standing for the switch subject. Missing
values compare as the empty string. ``contains`` and ``matches`` are
case-insensitive.
"""

from dataclasses import dataclass
from typing import Callable, Optional
import logging
import re

from tablecraft.errors import ParseError
from tablecraft.tables.table_types import Conditional, ConditionalAction

logger = logging.getLogger(__name__)

COMPARISON_OPERATORS = ("==", "!=", ">=", "<=", ">", "<", "contains", "matches")

Resolver = Callable[[str], Optional[str]]


@dataclass
class Token:
    text: str
    quoted: bool = False

    @property
    def is_operator(self) -> bool:
        return not self.quoted and self.text in COMPARISON_OPERATORS

    @property
    def is_structural(self) -> bool:
        return not self.quoted and self.text in ("&&", "||", "!", "(", ")")


def tokenize(expr: str) -> list[Token]:
    """Split a when-clause into tokens."""
    tokens: list[Token] = []
    current = ""
    i = 0

    def flush():
        nonlocal current
        if current:
            tokens.append(Token(current))
        current = ""

    while i < len(expr):
        char = expr[i]
        pair = expr[i:i + 2]

        if char in "\"'":
            flush()
            end = expr.find(char, i + 1)
            if end == -1:
                raise ParseError(f"Unterminated quote in condition '{expr}'")
            tokens.append(Token(expr[i + 1:end], quoted=True))
            i = end + 1
            continue
        if char in " \t":
            flush()
        elif char in "()":
            flush()
            tokens.append(Token(char))
        elif pair in ("&&", "||", "==", "!=", ">=", "<="):
            flush()
            tokens.append(Token(pair))
            i += 2
            continue
        elif char == "!":
            flush()
            tokens.append(Token("!"))
        elif char in "<>":
            flush()
            tokens.append(Token(char))
        else:
            current += char
        i += 1

    flush()
    return tokens


def _to_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compare(left: Optional[str], operator: str, right: Optional[str]) -> bool:
    """Compare two resolved operand values."""
    left = "" if left is None else str(left)
    right = "" if right is None else str(right)

    if operator in ("==", "!="):
        left_num, right_num = _to_float(left), _to_float(right)
        if left_num is not None and right_num is not None:
            equal = left_num == right_num
        else:
            equal = left == right
        return equal if operator == "==" else not equal

    if operator in (">", "<", ">=", "<="):
        left_num, right_num = _to_float(left), _to_float(right)
        if left_num is None or right_num is None:
            return False
        if operator == ">":
            return left_num > right_num
        if operator == "<":
            return left_num < right_num
        if operator == ">=":
            return left_num >= right_num
        return left_num <= right_num

    if operator == "contains":
        return right.lower() in left.lower()

    if operator == "matches":
        try:
            return re.search(right, left, re.IGNORECASE) is not None
        except re.error:
            logger.warning(f"Invalid regex in condition: '{right}'")
            return False

    raise ParseError(f"Unknown comparison operator '{operator}'")


def is_truthy(value: Optional[str]) -> bool:
    if value is None or value == "":
        return False
    number = _to_float(value)
    if number is not None:
        return number != 0
    return True


class _WhenParser:
    """Recursive descent over a token list."""

    def __init__(self, tokens: list[Token], resolve: Resolver, source: str):
        self.tokens = tokens
        self.pos = 0
        self.resolve = resolve
        self.source = source

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def at(self, text: str) -> bool:
        token = self.peek()
        return token is not None and not token.quoted and token.text == text

    def parse(self) -> bool:
        if not self.tokens:
            return False
        result = self.or_expr()
        if self.peek() is not None:
            raise ParseError(f"Unexpected '{self.peek().text}' in condition '{self.source}'")
        return result

    def or_expr(self) -> bool:
        result = self.and_expr()
        while self.at("||"):
            self.take()
            right = self.and_expr()
            result = result or right
        return result

    def and_expr(self) -> bool:
        result = self.unary()
        while self.at("&&"):
            self.take()
            right = self.unary()
            result = result and right
        return result

    def unary(self) -> bool:
        if self.at("!"):
            self.take()
            return not self.unary()
        if self.at("("):
            self.take()
            result = self.or_expr()
            if not self.at(")"):
                raise ParseError(f"Missing ')' in condition '{self.source}'")
            self.take()
            return result
        return self.comparison()

    def operand(self) -> Optional[str]:
        words: list[Token] = []
        while True:
            token = self.peek()
            if token is None or token.is_operator or token.is_structural:
                break
            words.append(self.take())
        if not words:
            raise ParseError(f"Missing operand in condition '{self.source}'")
        if len(words) == 1:
            return self.value_of(words[0])
        return " ".join(w.text for w in words)

    def value_of(self, token: Token) -> Optional[str]:
        if token.quoted:
            return token.text
        if token.text.startswith("$") or token.text.startswith("@"):
            return self.resolve(token.text)
        return token.text

    def comparison(self) -> bool:
        left = self.operand()
        token = self.peek()
        if token is not None and token.is_operator:
            operator = self.take().text
            right = self.operand()
            return compare(left, operator, right)
        return is_truthy(left)


def evaluate_when(when: str, resolve: Resolver) -> bool:
    """
    Evaluate a when-clause.

    Args:
        when: Condition text, e.g. '@race.value == "Elf" && $level > 3'
        resolve: Callback giving the value of a '$var', '@t.p' or '$' token
                 (None when the reference is undefined)
    """
    return _WhenParser(tokenize(when), resolve, when).parse()


# =============================================================================
# DOCUMENT CONDITIONALS
# =============================================================================


@dataclass
class ConditionalOutcome:
    """What a single conditional did."""
    matched: bool
    text: str
    action: Optional[ConditionalAction] = None
    variable_set: Optional[tuple[str, str]] = None


def apply_conditional(
    conditional: Conditional,
    text: str,
    resolve: Resolver,
    evaluate_pattern: Callable[[str], str],
    set_variable: Callable[[str, str], None],
) -> ConditionalOutcome:
    """Evaluate one conditional against the current text and apply its action."""
    if not evaluate_when(conditional.when, resolve):
        return ConditionalOutcome(matched=False, text=text)

    value = evaluate_pattern(conditional.value)
    action = conditional.action

    if action == ConditionalAction.APPEND:
        return ConditionalOutcome(True, text + value, action)
    if action == ConditionalAction.PREPEND:
        return ConditionalOutcome(True, value + text, action)
    if action == ConditionalAction.REPLACE:
        if not conditional.target:
            return ConditionalOutcome(True, value, action)
        try:
            replaced = re.sub(conditional.target, lambda _: value, text)
        except re.error:
            replaced = text.replace(conditional.target, value)
        return ConditionalOutcome(True, replaced, action)
    if action == ConditionalAction.SET_VARIABLE:
        if conditional.target:
            set_variable(conditional.target, value)
            return ConditionalOutcome(True, text, action, (conditional.target, value))
        return ConditionalOutcome(True, text, action)

    raise ValueError(f"Unknown conditional action: {action}")


def apply_conditionals(
    conditionals: list[Conditional],
    text: str,
    resolve: Resolver,
    evaluate_pattern: Callable[[str], str],
    set_variable: Callable[[str, str], None],
    on_outcome: Optional[Callable[[Conditional, ConditionalOutcome], None]] = None,
) -> str:
    """Apply every conditional in order; each sees the previous one's text."""
    for conditional in conditionals:
        outcome = apply_conditional(conditional, text, resolve, evaluate_pattern, set_variable)
        if on_outcome is not None:
            on_outcome(conditional, outcome)
        text = outcome.text
    return text
