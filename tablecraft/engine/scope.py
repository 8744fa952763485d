"""
Per-evaluation state: scope frames, captures and the evaluation context.

Placeholders (``@table.prop``) live in scope frames on an explicit stack.
Entry ``sets`` are written into the top frame and ``@`` reads consult the
top frame only. A frame is pushed when a top-level roll or template starts,
for each item of a capturing multi-roll, and for a template referenced from
inside another pattern; each push is matched by exactly one pop.

Captured variables (``$var``) are not frame-scoped: they stay visible for
the rest of the top-level call.

An EvaluationContext is created fresh for every top-level call, so two
calls on the same engine never share scope, captures or instance caches.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union
import logging

from tablecraft.data_models import DiceRoller
from tablecraft.engine.config import EngineConfig
from tablecraft.engine.results import DescriptionEntry
from tablecraft.observability.trace import TraceBuilder

logger = logging.getLogger(__name__)

Scalar = Union[str, int, float]


def format_scalar(value: Any) -> str:
    """Render a variable value; integral floats lose their '.0'."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if value is None:
        return ""
    return str(value)


def coerce_scalar(text: str) -> Scalar:
    """Store numeric-looking text as a number, anything else as text."""
    stripped = text.strip()
    if not stripped:
        return text
    try:
        number = float(stripped)
    except ValueError:
        return text
    if number != number or number in (float("inf"), float("-inf")):
        return text
    if number.is_integer() and "." not in stripped and "e" not in stripped.lower():
        return int(number)
    return number


# =============================================================================
# CAPTURES
# =============================================================================


@dataclass
class CaptureItem:
    """
    One captured roll: its text, its evaluated sets and its description.

    A set value is either a string or, when the set was a single table
    reference, a nested CaptureItem holding that roll.
    """
    value: str
    sets: dict[str, Union[str, "CaptureItem"]] = field(default_factory=dict)
    description: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "value": self.value,
            "sets": {
                k: v.to_dict() if isinstance(v, CaptureItem) else v for k, v in self.sets.items()
            },
        }
        if self.description is not None:
            data["description"] = self.description
        return data


@dataclass
class CaptureVariable:
    """Ordered items captured by a ``N*table >> $var`` expression."""
    items: list[CaptureItem] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items], "count": self.count}


def set_value_text(value: Union[str, CaptureItem]) -> str:
    """Text of a set value, unwrapping nested captures."""
    if isinstance(value, CaptureItem):
        return value.value
    return value


# =============================================================================
# SCOPE FRAMES
# =============================================================================


@dataclass
class ScopeFrame:
    """Placeholder values visible at one level of the evaluation chain."""
    label: str
    # table id -> {property: value}; "value" holds the rendered entry text
    placeholders: dict[str, dict[str, Union[str, CaptureItem]]] = field(default_factory=dict)
    captures: Optional[dict[str, CaptureVariable]] = None

    def merge(self, table_id: str, sets: dict[str, Union[str, CaptureItem]]) -> None:
        existing = self.placeholders.setdefault(table_id, {})
        existing.update(sets)

    def lookup(self, table_id: str, prop: str = "value") -> Optional[Union[str, CaptureItem]]:
        props = self.placeholders.get(table_id)
        if props is None:
            return None
        return props.get(prop)


class ScopeImbalanceError(RuntimeError):
    """A frame was popped out of order."""


class ScopeStack:
    """
    Explicit stack of scope frames.

    ``pushes`` and ``pops`` count every operation so tests can assert
    that a top-level call left the stack balanced.
    """

    def __init__(self, captures: Optional[dict[str, CaptureVariable]] = None):
        self._frames: list[ScopeFrame] = []
        self._captures = captures if captures is not None else {}
        self.pushes = 0
        self.pops = 0
        self.max_depth = 0

    @property
    def depth(self) -> int:
        return len(self._frames)

    @property
    def top(self) -> ScopeFrame:
        if not self._frames:
            raise ScopeImbalanceError("No active scope frame")
        return self._frames[-1]

    @property
    def balanced(self) -> bool:
        return self.pushes == self.pops and not self._frames

    def push(self, label: str) -> ScopeFrame:
        frame = ScopeFrame(label=label, captures=self._captures)
        self._frames.append(frame)
        self.pushes += 1
        self.max_depth = max(self.max_depth, len(self._frames))
        return frame

    def pop(self, frame: ScopeFrame) -> None:
        if not self._frames or self._frames[-1] is not frame:
            raise ScopeImbalanceError(f"Scope frame '{frame.label}' popped out of order")
        self._frames.pop()
        self.pops += 1

    @contextmanager
    def frame(self, label: str) -> Iterator[ScopeFrame]:
        """Push a frame for the duration of a block; always pops it."""
        frame = self.push(label)
        try:
            yield frame
        finally:
            self.pop(frame)


# =============================================================================
# EVALUATION CONTEXT
# =============================================================================


@dataclass
class InstanceRecord:
    """A ``table#label`` result cached for the rest of the call."""
    text: str
    table_id: str
    collection_id: str
    entry_id: Optional[str] = None


@dataclass
class EvaluationContext:
    """Mutable state for one top-level call."""
    collection_id: str
    config: EngineConfig
    roller: DiceRoller
    trace: TraceBuilder
    scopes: ScopeStack = field(default=None)  # type: ignore[assignment]
    captures: dict[str, CaptureVariable] = field(default_factory=dict)
    capture_shared: dict[str, CaptureItem] = field(default_factory=dict)
    shared_variables: dict[str, Scalar] = field(default_factory=dict)
    shared_sources: dict[str, str] = field(default_factory=dict)
    static_variables: dict[str, str] = field(default_factory=dict)
    document_shared_names: set[str] = field(default_factory=set)
    instances: dict[str, InstanceRecord] = field(default_factory=dict)
    descriptions: list[DescriptionEntry] = field(default_factory=list)
    recursion_depth: int = 0

    # Current table/entry, for {{again}} and {{@self.description}}
    current_table_id: Optional[str] = None
    current_table_collection: Optional[str] = None
    current_entry_id: Optional[str] = None
    current_entry_description: Optional[str] = None

    # "<tableId>.<key>" of set values being evaluated, to break cycles
    active_set_keys: set[str] = field(default_factory=set)

    def __post_init__(self):
        if self.scopes is None:
            self.scopes = ScopeStack(self.captures)

    # -------------------------------------------------------------------------
    # Placeholders
    # -------------------------------------------------------------------------

    def merge_placeholders(self, table_id: str, sets: dict[str, Union[str, CaptureItem]]) -> None:
        self.scopes.top.merge(table_id, sets)

    def get_placeholder(self, table_id: str, prop: str = "value") -> Optional[Union[str, CaptureItem]]:
        return self.scopes.top.lookup(table_id, prop)

    # -------------------------------------------------------------------------
    # Variables
    # -------------------------------------------------------------------------

    def resolve_variable(self, name: str) -> Optional[Scalar]:
        """Shared then static variables; None when undefined."""
        if name in self.shared_variables:
            return self.shared_variables[name]
        if name in self.static_variables:
            return self.static_variables[name]
        return None

    def set_shared(self, name: str, value: Scalar, source: Optional[str] = None) -> None:
        self.shared_variables[name] = value
        if source is not None:
            self.shared_sources[name] = source

    def set_capture(self, name: str, variable: CaptureVariable) -> None:
        conflict = self.variable_conflict(name)
        if conflict:
            logger.warning(f"Capture variable '${name}' overwrites existing {conflict} variable")
        self.captures[name] = variable

    def variable_conflict(self, name: str) -> Optional[str]:
        if name in self.captures:
            return "capture"
        if name in self.capture_shared:
            return "capture-aware shared"
        if name in self.shared_variables:
            return "shared"
        if name in self.static_variables:
            return "static"
        return None

    @contextmanager
    def isolated_shared(self) -> Iterator[None]:
        """Give a nested template its own copy of the shared variables."""
        saved_vars = self.shared_variables
        saved_sources = self.shared_sources
        self.shared_variables = dict(saved_vars)
        self.shared_sources = dict(saved_sources)
        try:
            yield
        finally:
            self.shared_variables = saved_vars
            self.shared_sources = saved_sources

    # -------------------------------------------------------------------------
    # Current table tracking
    # -------------------------------------------------------------------------

    @contextmanager
    def current_table(self, table_id: str, collection_id: str) -> Iterator[None]:
        saved = (
            self.current_table_id,
            self.current_table_collection,
            self.current_entry_id,
            self.current_entry_description,
        )
        self.current_table_id = table_id
        self.current_table_collection = collection_id
        self.current_entry_id = None
        self.current_entry_description = None
        try:
            yield
        finally:
            (
                self.current_table_id,
                self.current_table_collection,
                self.current_entry_id,
                self.current_entry_description,
            ) = saved

    def add_description(self, table_id: str, table_name: str, rolled_value: str, description: str) -> None:
        self.descriptions.append(
            DescriptionEntry(
                table_id=table_id,
                table_name=table_name,
                rolled_value=rolled_value,
                description=description,
            )
        )
