"""
Pattern and expression parser.

A pattern is literal text with embedded ``{{...}}`` spans. ``parse_pattern``
splits it into Literal and Span segments (spans may nest, e.g. inside a
quoted switch result). ``parse_expression`` classifies the inner text of a
span into one expression type, trying in this order:

    switch[...]          anywhere in the text        -> SwitchExpr
    dice:2d6+1           prefix                       -> DiceExpr
    math:$a * 2          prefix                       -> MathExpr
    collect:$v.@p        prefix                       -> CollectExpr
    3*t >> $v            contains '>> $' or '>>$'     -> CaptureMultiRollExpr
    $name / $v[0].@p     '$' prefix                   -> VariableExpr / CaptureAccessExpr
    @table.prop          '@' prefix                   -> PlaceholderExpr
    again / 2*again      'again' suffix               -> AgainExpr
    unique:3*t           prefix                       -> MultiRollExpr (unique)
    3*t / $n*t / 1d4*t   count prefix                 -> MultiRollExpr
    t / alias.t / t#a    anything else                -> TableRefExpr / InstanceExpr

Trailing modifiers are written after '|': ``|"; "`` sets a separator,
``|silent`` hides capture output and ``|unique`` de-duplicates collect.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Union
import re

from tablecraft.data_models import is_dice_notation
from tablecraft.errors import ParseError

REF_SEGMENT = re.compile(r"^[A-Za-z_][\w\-]*$")
VAR_NAME = re.compile(r"^\$(?P<name>[A-Za-z_]\w*)")
COUNT_PREFIX = re.compile(
    r"^(?P<count>\d+|\$[A-Za-z_]\w*|\d*d\d+(?:[+\-]\d+)?)\s*\*\s*(?P<unique>unique\s*\*\s*)?(?P<rest>.+)$",
    re.IGNORECASE,
)
AGAIN = re.compile(r"^(?:(?P<count>\d+)\s*\*\s*)?(?:(?P<unique>unique)\s*\*\s*)?again$")
INDEX = re.compile(r"^\[\s*(?P<index>-?\d+)\s*\]")

TERMINAL_PROPERTIES = ("value", "count", "description")


# =============================================================================
# SEGMENTS
# =============================================================================


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Span:
    """One ``{{...}}`` span: its raw text, inner expression and position."""
    raw: str
    inner: str
    start: int
    end: int


Segment = Union[Literal, Span]


@lru_cache(maxsize=2048)
def parse_pattern(pattern: str) -> tuple[Segment, ...]:
    """
    Split a pattern into literal text and expression spans.

    Raises:
        ParseError: if a '{{' is never closed
    """
    segments: list[Segment] = []
    pos = 0
    length = len(pattern)

    while pos < length:
        start = pattern.find("{{", pos)
        if start == -1:
            segments.append(Literal(pattern[pos:]))
            break
        if start > pos:
            segments.append(Literal(pattern[pos:start]))

        depth = 0
        i = start
        end = -1
        while i < length - 1:
            pair = pattern[i:i + 2]
            if pair == "{{":
                depth += 1
                i += 2
                continue
            if pair == "}}":
                depth -= 1
                i += 2
                if depth == 0:
                    end = i
                    break
                continue
            i += 1

        if end == -1:
            raise ParseError(f"Unclosed '{{{{' at position {start} in pattern '{pattern}'")

        segments.append(Span(raw=pattern[start:end], inner=pattern[start + 2:end - 2], start=start, end=end))
        pos = end

    return tuple(segments)


# =============================================================================
# EXPRESSIONS
# =============================================================================


@dataclass(frozen=True)
class CountSpec:
    """How many times a multi-roll repeats: a literal, a $variable or dice."""
    raw: str
    literal: Optional[int] = None
    variable: Optional[str] = None
    dice: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "CountSpec":
        raw = raw.strip()
        if raw.isdigit():
            return cls(raw=raw, literal=int(raw))
        if raw.startswith("$"):
            return cls(raw=raw, variable=raw[1:])
        if is_dice_notation(raw):
            return cls(raw=raw, dice=raw)
        raise ParseError(f"Invalid roll count: '{raw}'")

    @property
    def source(self) -> str:
        if self.variable is not None:
            return "variable"
        if self.dice is not None:
            return "dice"
        return "literal"


@dataclass(frozen=True)
class TableRefExpr:
    """Roll a table or template; optional property chain reads its sets."""
    ref: str
    properties: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstanceExpr:
    ref: str
    label: str


@dataclass(frozen=True)
class MultiRollExpr:
    count: CountSpec
    ref: str
    unique: bool = False
    separator: Optional[str] = None


@dataclass(frozen=True)
class AgainExpr:
    count: int = 1
    unique: bool = False
    separator: Optional[str] = None


@dataclass(frozen=True)
class DiceExpr:
    notation: str


@dataclass(frozen=True)
class MathExpr:
    expression: str


@dataclass(frozen=True)
class VariableExpr:
    name: str


@dataclass(frozen=True)
class PlaceholderExpr:
    name: str
    properties: tuple[str, ...] = ()


@dataclass(frozen=True)
class CaptureMultiRollExpr:
    count: CountSpec
    ref: str
    capture_var: str
    unique: bool = False
    silent: bool = False
    separator: Optional[str] = None


@dataclass(frozen=True)
class CaptureAccessExpr:
    var_name: str
    index: Optional[int] = None
    properties: tuple[str, ...] = ()
    separator: Optional[str] = None


@dataclass(frozen=True)
class CollectExpr:
    var_name: str
    property: str
    unique: bool = False
    separator: Optional[str] = None


@dataclass(frozen=True)
class SwitchCase:
    condition: str
    result: str


@dataclass(frozen=True)
class SwitchExpr:
    subject: Optional[str]
    cases: tuple[SwitchCase, ...] = field(default_factory=tuple)
    fallback: Optional[str] = None


Expression = Union[
    TableRefExpr,
    InstanceExpr,
    MultiRollExpr,
    AgainExpr,
    DiceExpr,
    MathExpr,
    VariableExpr,
    PlaceholderExpr,
    CaptureMultiRollExpr,
    CaptureAccessExpr,
    CollectExpr,
    SwitchExpr,
]


# =============================================================================
# HELPERS
# =============================================================================


def split_top_level(text: str, sep: str) -> list[str]:
    """Split on ``sep`` outside quotes, brackets and nested {{ }}."""
    parts = []
    current = []
    quote = None
    depth = 0
    i = 0
    while i < len(text):
        char = text[i]
        if quote:
            current.append(char)
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
            current.append(char)
        elif text.startswith("{{", i):
            depth += 1
            current.append("{{")
            i += 2
            continue
        elif text.startswith("}}", i) and depth:
            depth -= 1
            current.append("}}")
            i += 2
            continue
        elif char in "[(":
            depth += 1
            current.append(char)
        elif char in "])" and depth:
            depth -= 1
            current.append(char)
        elif depth == 0 and text.startswith(sep, i):
            parts.append("".join(current))
            current = []
            i += len(sep)
            continue
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return parts


def unquote(text: str) -> Optional[str]:
    """Return the contents of a quoted string, or None if not quoted."""
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return None


@dataclass
class _Modifiers:
    separator: Optional[str] = None
    silent: bool = False
    unique: bool = False


def _split_modifiers(text: str, allowed: tuple[str, ...]) -> tuple[str, _Modifiers]:
    parts = split_top_level(text, "|")
    body = parts[0].strip()
    mods = _Modifiers()
    for part in parts[1:]:
        quoted = unquote(part)
        word = part.strip()
        if quoted is not None:
            mods.separator = quoted
        elif word == "silent" and "silent" in allowed:
            mods.silent = True
        elif word == "unique" and "unique" in allowed:
            mods.unique = True
        else:
            raise ParseError(f"Unknown modifier '|{word}'", text)
    return body, mods


def _parse_ref(ref: str, expression: str) -> tuple[str, tuple[str, ...]]:
    """Validate a reference and split off any '.@prop' chain."""
    if not ref:
        raise ParseError("Empty reference", expression)
    if ref.endswith(".") or ".." in ref or ref.startswith("."):
        raise ParseError(f"Incomplete property access in '{ref}'", expression)

    segments = ref.split(".")
    name_parts: list[str] = []
    properties: list[str] = []
    for segment in segments:
        if segment.startswith("@") or properties:
            prop = segment[1:] if segment.startswith("@") else segment
            if not prop or not REF_SEGMENT.match(prop):
                raise ParseError(f"Invalid property '{segment}' in '{ref}'", expression)
            properties.append(prop)
        else:
            if not REF_SEGMENT.match(segment):
                raise ParseError(f"Invalid reference '{ref}'", expression)
            name_parts.append(segment)

    if not name_parts:
        raise ParseError(f"Invalid reference '{ref}'", expression)
    return ".".join(name_parts), tuple(properties)


def _parse_property_chain(rest: str, expression: str) -> tuple[str, ...]:
    """Parse '.@a.@b' / '.count' style chains after a variable or placeholder."""
    if not rest:
        return ()
    if not rest.startswith("."):
        raise ParseError(f"Unexpected '{rest}'", expression)
    if rest.endswith("."):
        raise ParseError("Incomplete property access", expression)
    props = []
    for segment in rest[1:].split("."):
        prop = segment[1:] if segment.startswith("@") else segment
        if not prop or not REF_SEGMENT.match(prop):
            raise ParseError(f"Invalid property '{segment}'", expression)
        props.append(prop)
    return tuple(props)


# =============================================================================
# CLASSIFICATION
# =============================================================================


def _find_switch(text: str) -> int:
    """Index of the first 'switch[' outside quotes, or -1."""
    quote = None
    for i, char in enumerate(text):
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif text.startswith("switch[", i):
            return i
    return -1


def _read_bracket(text: str, open_index: int, expression: str) -> tuple[str, int]:
    """Read from '[' at open_index to its matching ']'; return (body, next index)."""
    depth = 0
    quote = None
    i = open_index
    while i < len(text):
        char = text[i]
        if quote:
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return text[open_index + 1:i], i + 1
        i += 1
    raise ParseError("Unclosed '[' in switch expression", expression)


def _parse_switch(text: str, at: int) -> SwitchExpr:
    subject = text[:at].strip()
    if subject.endswith("."):
        subject = subject[:-1].strip()

    cases: list[SwitchCase] = []
    fallback: Optional[str] = None
    i = at
    while i < len(text):
        if text[i] in ". \t":
            i += 1
            continue
        if text.startswith("switch[", i):
            body, i = _read_bracket(text, i + len("switch"), text)
            parts = split_top_level(body, ":")
            if len(parts) < 2:
                raise ParseError(f"Switch case needs 'condition:result', got '{body}'", text)
            condition = parts[0].strip()
            result = ":".join(parts[1:]).strip()
            if not condition:
                raise ParseError("Switch case has an empty condition", text)
            cases.append(SwitchCase(condition=condition, result=result))
        elif text.startswith("else[", i):
            if fallback is not None:
                raise ParseError("Switch has more than one else[...]", text)
            fallback, i = _read_bracket(text, i + len("else"), text)
            fallback = fallback.strip()
        else:
            raise ParseError(f"Unexpected text in switch expression: '{text[i:]}'", text)

    if not cases:
        raise ParseError("Switch expression has no cases", text)
    return SwitchExpr(subject=subject or None, cases=tuple(cases), fallback=fallback)


def _parse_collect(body: str, expression: str) -> CollectExpr:
    target, mods = _split_modifiers(body, ("unique",))
    match = VAR_NAME.match(target)
    if not match:
        raise ParseError("collect: expects '$variable.@property'", expression)
    props = _parse_property_chain(target[match.end():], expression)
    if len(props) != 1:
        raise ParseError("collect: expects exactly one property", expression)
    return CollectExpr(
        var_name=match.group("name"),
        property=props[0],
        unique=mods.unique,
        separator=mods.separator,
    )


def _parse_capture(text: str) -> CaptureMultiRollExpr:
    marker = ">>"
    left, _, right = text.partition(marker)
    left = left.strip()
    target, mods = _split_modifiers(right.strip(), ("silent",))
    match = VAR_NAME.match(target)
    if not match or match.end() != len(target):
        raise ParseError("Capture target must be '$name'", text)

    count_match = COUNT_PREFIX.match(left)
    if count_match:
        count = CountSpec.parse(count_match.group("count"))
        unique = bool(count_match.group("unique"))
        ref_text = count_match.group("rest").strip()
    else:
        count = CountSpec(raw="1", literal=1)
        unique = False
        ref_text = left
    ref, props = _parse_ref(ref_text, text)
    if props:
        raise ParseError("Capture source cannot have a property chain", text)

    return CaptureMultiRollExpr(
        count=count,
        ref=ref,
        capture_var=match.group("name"),
        unique=unique,
        silent=mods.silent,
        separator=mods.separator,
    )


def _parse_variable(text: str) -> Union[VariableExpr, CaptureAccessExpr]:
    body, mods = _split_modifiers(text, ())
    match = VAR_NAME.match(body)
    if not match:
        raise ParseError(f"Invalid variable '{body}'", text)
    name = match.group("name")
    rest = body[match.end():]

    if not rest and mods.separator is None:
        return VariableExpr(name=name)

    index = None
    index_match = INDEX.match(rest)
    if index_match:
        index = int(index_match.group("index"))
        rest = rest[index_match.end():]

    properties = _parse_property_chain(rest, text)
    for prop in properties[:-1]:
        if prop in TERMINAL_PROPERTIES:
            raise ParseError(f"'.{prop}' must be the last property", text)

    return CaptureAccessExpr(
        var_name=name,
        index=index,
        properties=properties,
        separator=mods.separator,
    )


def _parse_placeholder(text: str) -> PlaceholderExpr:
    body = text[1:]
    if not body:
        raise ParseError("Empty placeholder", text)
    head, dot, rest = body.partition(".")
    if not REF_SEGMENT.match(head):
        raise ParseError(f"Invalid placeholder name '{head}'", text)
    properties = _parse_property_chain(dot + rest, text) if dot else ()
    return PlaceholderExpr(name=head, properties=properties)


def _parse_reference(text: str) -> Union[TableRefExpr, InstanceExpr]:
    if "#" in text:
        ref_text, _, label = text.partition("#")
        ref, props = _parse_ref(ref_text.strip(), text)
        label = label.strip()
        if props or not REF_SEGMENT.match(label):
            raise ParseError(f"Invalid instance reference '{text}'", text)
        return InstanceExpr(ref=ref, label=label)
    ref, props = _parse_ref(text, text)
    return TableRefExpr(ref=ref, properties=props)


def _parse_multi_roll(text: str, force_unique: bool = False) -> Union[MultiRollExpr, TableRefExpr, InstanceExpr]:
    body, mods = _split_modifiers(text, ())
    match = COUNT_PREFIX.match(body)
    if not match:
        if force_unique:
            ref, props = _parse_ref(body, text)
            if props:
                raise ParseError("unique: target cannot have a property chain", text)
            return MultiRollExpr(count=CountSpec(raw="1", literal=1), ref=ref, unique=True, separator=mods.separator)
        if mods.separator is not None:
            raise ParseError("A separator needs a multi-roll count", text)
        return _parse_reference(body)

    ref, props = _parse_ref(match.group("rest").strip(), text)
    if props:
        raise ParseError("Multi-roll target cannot have a property chain", text)
    return MultiRollExpr(
        count=CountSpec.parse(match.group("count")),
        ref=ref,
        unique=force_unique or bool(match.group("unique")),
        separator=mods.separator,
    )


@lru_cache(maxsize=4096)
def parse_expression(text: str) -> Expression:
    """
    Classify the inner text of a ``{{...}}`` span.

    Raises:
        ParseError: if the text matches no expression form
    """
    text = text.strip()
    if not text:
        raise ParseError("Empty expression '{{}}'")

    switch_at = _find_switch(text)
    if switch_at != -1:
        return _parse_switch(text, switch_at)

    if text.startswith("dice:"):
        notation = text[len("dice:"):].strip()
        if not is_dice_notation(notation):
            raise ParseError(f"Invalid dice notation '{notation}'", text)
        return DiceExpr(notation=notation)

    if text.startswith("math:"):
        body = text[len("math:"):].strip()
        if not body:
            raise ParseError("Empty math expression", text)
        return MathExpr(expression=body)

    if text.startswith("collect:"):
        return _parse_collect(text[len("collect:"):].strip(), text)

    if ">> $" in text or ">>$" in text:
        return _parse_capture(text)

    if text.startswith("$"):
        if COUNT_PREFIX.match(text):
            return _parse_multi_roll(text)
        return _parse_variable(text)

    if text.startswith("@"):
        return _parse_placeholder(text)

    body, mods = _split_modifiers(text, ())
    again = AGAIN.match(body)
    if again:
        return AgainExpr(
            count=int(again.group("count")) if again.group("count") else 1,
            unique=bool(again.group("unique")),
            separator=mods.separator,
        )

    if text.startswith("unique:"):
        return _parse_multi_roll(text[len("unique:"):].strip(), force_unique=True)

    return _parse_multi_roll(text)
