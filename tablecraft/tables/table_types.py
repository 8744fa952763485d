"""
Document model for random table collections.

A document (one "collection" once loaded) holds tables, templates, import
bindings, static variables, shared variables and conditionals. Tables are a
tagged union of three variants: SimpleTable, CompositeTable and
CollectionTable. Code that handles a Table matches on all three explicitly
(see ``dispatch_table``) rather than relying on a class hierarchy.

Documents arrive as JSON-shaped dicts with camelCase keys; ``from_dict`` and
``to_dict`` convert between that wire form and these dataclasses.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Optional, TypeVar, Union


class TableType(str, Enum):
    """Table variants."""
    SIMPLE = "simple"          # Weighted list of entries
    COMPOSITE = "composite"    # Pick one source table, then roll it
    COLLECTION = "collection"  # Merge source tables into one pool


class ConditionalAction(str, Enum):
    """Actions a document-level conditional can apply."""
    APPEND = "append"
    PREPEND = "prepend"
    REPLACE = "replace"
    SET_VARIABLE = "setVariable"


SUPPORTED_SPEC_VERSIONS = ("1.0", "1.1", "1.2")


def _str_map(data: Optional[dict[str, Any]]) -> dict[str, str]:
    """Coerce a JSON object of scalars into a string map, keeping order."""
    if not data:
        return {}
    return {str(k): str(v) for k, v in data.items()}


# =============================================================================
# ENTRIES AND TABLES
# =============================================================================


@dataclass
class Entry:
    """
    One row of a simple table.

    ``value`` is a pattern string. Either ``weight`` or ``range`` gives the
    entry's share of the pool; a range [min, max] counts as weight
    max - min + 1. Child tables may override a parent entry by id and omit
    ``value``, so it is optional here.
    """
    value: Optional[str] = None
    id: Optional[str] = None
    weight: Optional[float] = None
    range: Optional[tuple[int, int]] = None
    sets: dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None
    result_type: Optional[str] = None

    @property
    def effective_weight(self) -> float:
        if self.range is not None:
            low, high = self.range
            return float(high - low + 1)
        if self.weight is None:
            return 1.0
        return float(self.weight)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.id is not None:
            data["id"] = self.id
        if self.value is not None:
            data["value"] = self.value
        if self.range is not None:
            data["range"] = list(self.range)
        elif self.weight is not None:
            data["weight"] = self.weight
        if self.sets:
            data["sets"] = dict(self.sets)
        if self.description is not None:
            data["description"] = self.description
        if self.result_type is not None:
            data["resultType"] = self.result_type
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Entry":
        # Bare strings are shorthand for {"value": "..."}
        if isinstance(data, str):
            return cls(value=data)
        range_value = data.get("range")
        return cls(
            value=None if data.get("value") is None else str(data["value"]),
            id=data.get("id"),
            weight=data.get("weight"),
            range=tuple(range_value) if range_value is not None else None,
            sets=_str_map(data.get("sets")),
            description=data.get("description"),
            result_type=data.get("resultType"),
        )


@dataclass
class SimpleTable:
    """A weighted list of entries, optionally extending another simple table."""
    table_type: ClassVar[TableType] = TableType.SIMPLE

    id: str
    name: str = ""
    entries: list[Entry] = field(default_factory=list)
    extends: Optional[str] = None
    default_sets: dict[str, str] = field(default_factory=dict)
    shared: dict[str, str] = field(default_factory=dict)
    result_type: Optional[str] = None
    hidden: bool = False
    description: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    def entry_id(self, index: int) -> str:
        """Id of the entry at ``index``, defaulting to '<tableId><000>'."""
        entry = self.entries[index]
        return entry.id if entry.id else f"{self.id}{index:03d}"


@dataclass
class CompositeSource:
    """One candidate source of a composite table."""
    table_id: str
    weight: float = 1.0


@dataclass
class CompositeTable:
    """Chooses exactly one source table by weight, then rolls it."""
    table_type: ClassVar[TableType] = TableType.COMPOSITE

    id: str
    name: str = ""
    sources: list[CompositeSource] = field(default_factory=list)
    shared: dict[str, str] = field(default_factory=dict)
    result_type: Optional[str] = None
    hidden: bool = False
    description: Optional[str] = None
    tags: list[str] = field(default_factory=list)


@dataclass
class CollectionTable:
    """Merges the entries of several simple tables into one weighted pool."""
    table_type: ClassVar[TableType] = TableType.COLLECTION

    id: str
    name: str = ""
    collections: list[str] = field(default_factory=list)
    shared: dict[str, str] = field(default_factory=dict)
    result_type: Optional[str] = None
    hidden: bool = False
    description: Optional[str] = None
    tags: list[str] = field(default_factory=list)


Table = Union[SimpleTable, CompositeTable, CollectionTable]

T = TypeVar("T")


def dispatch_table(
    table: Table,
    on_simple: Callable[[SimpleTable], T],
    on_composite: Callable[[CompositeTable], T],
    on_collection: Callable[[CollectionTable], T],
) -> T:
    """Exhaustive match over the table variants."""
    if isinstance(table, SimpleTable):
        return on_simple(table)
    if isinstance(table, CompositeTable):
        return on_composite(table)
    if isinstance(table, CollectionTable):
        return on_collection(table)
    raise TypeError(f"Unknown table type: {type(table).__name__}")


def _common_table_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(data["id"]),
        "name": data.get("name", ""),
        "shared": _str_map(data.get("shared")),
        "result_type": data.get("resultType"),
        "hidden": bool(data.get("hidden", False)),
        "description": data.get("description"),
        "tags": list(data.get("tags", [])),
    }


def table_from_dict(data: dict[str, Any]) -> Table:
    """Build the right table variant from its JSON form."""
    table_type = TableType(data.get("type", TableType.SIMPLE.value))
    common = _common_table_fields(data)

    if table_type == TableType.SIMPLE:
        return SimpleTable(
            entries=[Entry.from_dict(e) for e in data.get("entries", [])],
            extends=data.get("extends"),
            default_sets=_str_map(data.get("defaultSets")),
            **common,
        )
    if table_type == TableType.COMPOSITE:
        sources = []
        for source in data.get("sources", []):
            if isinstance(source, str):
                sources.append(CompositeSource(table_id=source))
            else:
                sources.append(
                    CompositeSource(
                        table_id=str(source["tableId"]),
                        weight=float(source.get("weight", 1)),
                    )
                )
        return CompositeTable(sources=sources, **common)
    return CollectionTable(collections=[str(c) for c in data.get("collections", [])], **common)


def table_to_dict(table: Table) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": table.id,
        "name": table.name,
        "type": table.table_type.value,
    }

    def simple(t: SimpleTable) -> None:
        data["entries"] = [e.to_dict() for e in t.entries]
        if t.extends:
            data["extends"] = t.extends
        if t.default_sets:
            data["defaultSets"] = dict(t.default_sets)

    def composite(t: CompositeTable) -> None:
        data["sources"] = [{"tableId": s.table_id, "weight": s.weight} for s in t.sources]

    def collection(t: CollectionTable) -> None:
        data["collections"] = list(t.collections)

    dispatch_table(table, simple, composite, collection)

    if table.shared:
        data["shared"] = dict(table.shared)
    if table.result_type is not None:
        data["resultType"] = table.result_type
    if table.hidden:
        data["hidden"] = True
    if table.description is not None:
        data["description"] = table.description
    if table.tags:
        data["tags"] = list(table.tags)
    return data


# =============================================================================
# TEMPLATES, IMPORTS, CONDITIONALS
# =============================================================================


@dataclass
class Template:
    """A named pattern, optionally staging shared variables before it runs."""
    id: str
    pattern: str
    name: str = ""
    shared: dict[str, str] = field(default_factory=dict)
    result_type: Optional[str] = None
    description: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name, "pattern": self.pattern}
        if self.shared:
            data["shared"] = dict(self.shared)
        if self.result_type is not None:
            data["resultType"] = self.result_type
        if self.description is not None:
            data["description"] = self.description
        if self.tags:
            data["tags"] = list(self.tags)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Template":
        return cls(
            id=str(data["id"]),
            pattern=str(data.get("pattern", "")),
            name=data.get("name", ""),
            shared=_str_map(data.get("shared")),
            result_type=data.get("resultType"),
            description=data.get("description"),
            tags=list(data.get("tags", [])),
        )


@dataclass
class ImportBinding:
    """Binds a local alias to another collection, named by namespace or path."""
    path: str
    alias: str
    description: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {"path": self.path, "alias": self.alias}
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportBinding":
        return cls(path=str(data["path"]), alias=str(data["alias"]), description=data.get("description"))


@dataclass
class Conditional:
    """Post-processing rule applied to a roll's final text."""
    when: str
    action: ConditionalAction
    value: str = ""
    target: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {"when": self.when, "action": self.action.value, "value": self.value}
        if self.target is not None:
            data["target"] = self.target
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Conditional":
        return cls(
            when=str(data.get("when", "")),
            action=ConditionalAction(data["action"]),
            value=str(data.get("value", "")),
            target=data.get("target"),
        )


# =============================================================================
# DOCUMENT
# =============================================================================


@dataclass
class DocumentMetadata:
    """Document header, including optional per-document engine limits."""
    name: str
    namespace: str
    version: str = "1.0.0"
    spec_version: str = "1.0"
    description: Optional[str] = None
    author: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    max_recursion_depth: Optional[int] = None
    max_exploding_dice: Optional[int] = None
    max_inheritance_depth: Optional[int] = None
    unique_overflow_behavior: Optional[str] = None

    _LIMIT_KEYS: ClassVar[dict[str, str]] = {
        "max_recursion_depth": "maxRecursionDepth",
        "max_exploding_dice": "maxExplodingDice",
        "max_inheritance_depth": "maxInheritanceDepth",
        "unique_overflow_behavior": "uniqueOverflowBehavior",
    }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "version": self.version,
            "specVersion": self.spec_version,
        }
        if self.description is not None:
            data["description"] = self.description
        if self.author is not None:
            data["author"] = self.author
        if self.tags:
            data["tags"] = list(self.tags)
        for attr, key in self._LIMIT_KEYS.items():
            if getattr(self, attr) is not None:
                data[key] = getattr(self, attr)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DocumentMetadata":
        limits = {attr: data.get(key) for attr, key in cls._LIMIT_KEYS.items()}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            version=str(data.get("version", "1.0.0")),
            spec_version=str(data.get("specVersion", "")),
            description=data.get("description"),
            author=data.get("author"),
            tags=list(data.get("tags", [])),
            **limits,
        )


@dataclass
class RandomTableDocument:
    """A complete random table document."""
    metadata: DocumentMetadata
    tables: list[Table] = field(default_factory=list)
    templates: list[Template] = field(default_factory=list)
    imports: list[ImportBinding] = field(default_factory=list)
    variables: dict[str, str] = field(default_factory=dict)
    shared: dict[str, str] = field(default_factory=dict)
    conditionals: list[Conditional] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "metadata": self.metadata.to_dict(),
            "tables": [table_to_dict(t) for t in self.tables],
        }
        if self.templates:
            data["templates"] = [t.to_dict() for t in self.templates]
        if self.imports:
            data["imports"] = [i.to_dict() for i in self.imports]
        if self.variables:
            data["variables"] = dict(self.variables)
        if self.shared:
            data["shared"] = dict(self.shared)
        if self.conditionals:
            data["conditionals"] = [c.to_dict() for c in self.conditionals]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RandomTableDocument":
        return cls(
            metadata=DocumentMetadata.from_dict(data.get("metadata", {})),
            tables=[table_from_dict(t) for t in data.get("tables", [])],
            templates=[Template.from_dict(t) for t in data.get("templates", [])],
            imports=[ImportBinding.from_dict(i) for i in data.get("imports", [])],
            variables=_str_map(data.get("variables")),
            shared=_str_map(data.get("shared")),
            conditionals=[Conditional.from_dict(c) for c in data.get("conditionals", [])],
        )


def ensure_document(document: Union[RandomTableDocument, dict[str, Any]]) -> RandomTableDocument:
    """Accept either a parsed document or its JSON dict form."""
    if isinstance(document, RandomTableDocument):
        return document
    return RandomTableDocument.from_dict(document)
