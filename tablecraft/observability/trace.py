"""
Execution trace for table rolls.

A trace is a tree of TraceNode objects mirroring the evaluator's recursion:
a root per top-level call, then table rolls, entry selections, dice rolls,
variable reads and so on. Each node type has its own metadata dataclass,
tagged with the same TraceNodeType as the node, so a consumer always knows
which fields to expect.

Tracing is off by default. A disabled TraceBuilder ignores every call, so
the evaluator can call it unconditionally.

Usage:
    builder = TraceBuilder(enabled=True)
    builder.begin(TraceNodeType.ROOT, "Roll: weapons", "weapons")
    builder.leaf(TraceNodeType.DICE_ROLL, "Dice: 2d6", "2d6", "7", DiceRollMetadata(...))
    builder.end("7")
    trace = builder.finish()
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional
import logging
import time

logger = logging.getLogger(__name__)


class TraceNodeType(str, Enum):
    """Kinds of evaluation step recorded in a trace."""

    ROOT = "root"
    TABLE_ROLL = "table_roll"
    TEMPLATE_ROLL = "template_roll"
    TEMPLATE_REF = "template_ref"
    ENTRY_SELECT = "entry_select"
    EXPRESSION = "expression"
    DICE_ROLL = "dice_roll"
    MATH_EVAL = "math_eval"
    VARIABLE_ACCESS = "variable_access"
    PLACEHOLDER_ACCESS = "placeholder_access"
    CONDITIONAL = "conditional"
    MULTI_ROLL = "multi_roll"
    INSTANCE = "instance"
    COMPOSITE_SELECT = "composite_select"
    COLLECTION_MERGE = "collection_merge"
    CAPTURE_MULTI_ROLL = "capture_multi_roll"
    CAPTURE_ACCESS = "capture_access"
    COLLECT = "collect"


# =============================================================================
# NODE METADATA
# =============================================================================


@dataclass
class TraceMetadata:
    """Base class for per-node-type metadata."""

    node_type: ClassVar[TraceNodeType] = TraceNodeType.EXPRESSION

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.node_type.value
        return data


@dataclass
class RootMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.ROOT

    kind: str = "roll"  # "roll", "template" or "pattern"
    source_id: str = ""
    collection_id: str = ""


@dataclass
class TableRollMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.TABLE_ROLL

    table_id: str = ""
    table_name: str = ""
    table_type: str = ""
    collection_id: str = ""


@dataclass
class TemplateRollMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.TEMPLATE_ROLL

    template_id: str = ""
    template_name: str = ""
    collection_id: str = ""


@dataclass
class TemplateRefMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.TEMPLATE_REF

    template_id: str = ""
    template_name: str = ""
    collection_id: str = ""
    pattern: str = ""


@dataclass
class EntrySelectMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.ENTRY_SELECT

    table_id: str = ""
    entry_id: str = ""
    selected_weight: float = 0.0
    total_weight: float = 0.0
    probability: float = 0.0
    pool_size: int = 0
    unique: bool = False
    excluded_ids: list[str] = field(default_factory=list)
    source_table_id: Optional[str] = None


@dataclass
class ExpressionMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.EXPRESSION

    expression_type: str = ""


@dataclass
class DiceRollMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.DICE_ROLL

    expression: str = ""
    rolls: list[int] = field(default_factory=list)
    kept: list[int] = field(default_factory=list)
    modifier: int = 0
    operator: Optional[str] = None
    exploded: bool = False
    breakdown: str = ""


@dataclass
class MathEvalMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.MATH_EVAL

    expression: str = ""
    substituted: str = ""
    result: Optional[float] = None


@dataclass
class VariableAccessMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.VARIABLE_ACCESS

    name: str = ""
    source: str = ""  # "captureShared", "shared", "static" or "capture"


@dataclass
class PlaceholderAccessMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.PLACEHOLDER_ACCESS

    name: str = ""
    properties: list[str] = field(default_factory=list)
    found: bool = False
    dynamic_table: Optional[str] = None


@dataclass
class ConditionalMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.CONDITIONAL

    kind: str = "switch"  # "switch" or "document"
    condition: str = ""
    matched: bool = False
    action: Optional[str] = None
    branch_index: Optional[int] = None


@dataclass
class MultiRollMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.MULTI_ROLL

    table_id: str = ""
    count: int = 0
    count_source: str = "literal"  # "literal", "variable" or "dice"
    unique: bool = False
    separator: str = ", "
    is_template: bool = False


@dataclass
class InstanceMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.INSTANCE

    name: str = ""
    table_id: str = ""
    cached: bool = False


@dataclass
class CompositeSelectMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.COMPOSITE_SELECT

    sources: list[dict[str, Any]] = field(default_factory=list)
    selected_table_id: str = ""


@dataclass
class CollectionMergeMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.COLLECTION_MERGE

    source_tables: list[str] = field(default_factory=list)
    total_entries: int = 0
    total_weight: float = 0.0


@dataclass
class CaptureMultiRollMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.CAPTURE_MULTI_ROLL

    table_id: str = ""
    capture_var: str = ""
    count: int = 0
    unique: bool = False
    silent: bool = False
    separator: str = ", "
    captured_values: list[str] = field(default_factory=list)


@dataclass
class CaptureAccessMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.CAPTURE_ACCESS

    var_name: str = ""
    index: Optional[int] = None
    properties: list[str] = field(default_factory=list)
    found: bool = False
    total_items: int = 0
    is_capture_shared: bool = False


@dataclass
class CollectMetadata(TraceMetadata):
    node_type: ClassVar[TraceNodeType] = TraceNodeType.COLLECT

    var_name: str = ""
    property: str = ""
    unique: bool = False
    separator: str = ", "
    all_values: list[str] = field(default_factory=list)
    result_values: list[str] = field(default_factory=list)


# =============================================================================
# NODES AND STATS
# =============================================================================


@dataclass
class TraceNode:
    """One recorded evaluation step."""

    id: str
    type: TraceNodeType
    label: str
    input: str = ""
    output: str = ""
    metadata: Optional[TraceMetadata] = None
    duration_ms: float = 0.0
    error: Optional[str] = None
    children: list["TraceNode"] = field(default_factory=list)
    _started: float = field(default=0.0, repr=False, compare=False)

    def walk(self):
        """Yield this node and all descendants, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "label": self.label,
            "input": self.input,
            "output": self.output,
            "duration_ms": round(self.duration_ms, 4),
            "children": [child.to_dict() for child in self.children],
        }
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class TraceStats:
    """Summary statistics computed once over a finished trace."""

    node_count: int = 0
    dice_rolled: int = 0
    tables_accessed: list[str] = field(default_factory=list)
    variables_accessed: list[str] = field(default_factory=list)
    max_depth: int = 0
    total_duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RollTrace:
    """A finished trace: the root node plus its statistics."""

    root: TraceNode
    stats: TraceStats

    def find(self, node_type: TraceNodeType) -> list[TraceNode]:
        return [node for node in self.root.walk() if node.type == node_type]

    def to_dict(self) -> dict[str, Any]:
        return {"root": self.root.to_dict(), "stats": self.stats.to_dict()}


def compute_stats(root: TraceNode) -> TraceStats:
    """Walk a finished tree once and aggregate statistics."""
    stats = TraceStats(total_duration_ms=root.duration_ms)
    tables: dict[str, None] = {}
    variables: dict[str, None] = {}

    stack = [(root, 1)]
    while stack:
        node, depth = stack.pop()
        stats.node_count += 1
        stats.max_depth = max(stats.max_depth, depth)
        metadata = node.metadata

        if isinstance(metadata, DiceRollMetadata):
            stats.dice_rolled += len(metadata.rolls)
        elif isinstance(metadata, TableRollMetadata):
            tables[metadata.table_id] = None
        elif isinstance(metadata, VariableAccessMetadata):
            variables[metadata.name] = None
        elif isinstance(metadata, (CaptureAccessMetadata, CollectMetadata)):
            variables[metadata.var_name] = None

        for child in reversed(node.children):
            stack.append((child, depth + 1))

    stats.tables_accessed = list(tables)
    stats.variables_accessed = list(variables)
    return stats


# =============================================================================
# BUILDER
# =============================================================================


class TraceBuilder:
    """Builds a trace tree with begin/end pairs and leaf nodes."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._root: Optional[TraceNode] = None
        self._stack: list[TraceNode] = []
        self._counter = 0

    @property
    def depth(self) -> int:
        return len(self._stack)

    @property
    def root(self) -> Optional[TraceNode]:
        return self._root

    def _new_node(
        self,
        node_type: TraceNodeType,
        label: str,
        input_text: str,
        metadata: Optional[TraceMetadata],
    ) -> TraceNode:
        self._counter += 1
        node = TraceNode(
            id=f"n{self._counter}",
            type=node_type,
            label=label,
            input=input_text,
            metadata=metadata,
            _started=time.perf_counter(),
        )
        if self._stack:
            self._stack[-1].children.append(node)
        elif self._root is None:
            self._root = node
        return node

    def begin(
        self,
        node_type: TraceNodeType,
        label: str,
        input_text: str = "",
        metadata: Optional[TraceMetadata] = None,
    ) -> None:
        """Open a node; later nodes become its children until end()."""
        if not self.enabled:
            return
        self._stack.append(self._new_node(node_type, label, input_text, metadata))

    def end(
        self,
        output: Any = "",
        metadata: Optional[TraceMetadata] = None,
        error: Optional[str] = None,
    ) -> None:
        """Close the innermost open node."""
        if not self.enabled or not self._stack:
            return
        node = self._stack.pop()
        node.output = str(output)
        node.duration_ms = (time.perf_counter() - node._started) * 1000.0
        if metadata is not None:
            node.metadata = metadata
        if error is not None:
            node.error = error

    def leaf(
        self,
        node_type: TraceNodeType,
        label: str,
        input_text: str = "",
        output: Any = "",
        metadata: Optional[TraceMetadata] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a node with no children."""
        if not self.enabled:
            return
        node = self._new_node(node_type, label, input_text, metadata)
        node.output = str(output)
        node.error = error

    def abort(self, error: str) -> Optional[TraceNode]:
        """Close every open node with an error and return the partial root."""
        if not self.enabled:
            return None
        while self._stack:
            self.end(error=error)
        return self._root

    def finish(self) -> Optional[RollTrace]:
        """Close any open nodes and return the finished trace."""
        if not self.enabled or self._root is None:
            return None
        while self._stack:
            self.end()
        return RollTrace(root=self._root, stats=compute_stats(self._root))
