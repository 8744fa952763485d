"""
Collection registry and reference resolution.

Owns every loaded document keyed by collection id, indexes their tables and
templates, binds import aliases to concrete collections, and resolves table
and template references of the forms ``name``, ``alias.name`` and
``some.namespace.name``. Also resolves simple-table inheritance (``extends``)
and caches the merged result until the registry changes.

The registry is an ordinary object: each engine constructs its own, so any
number of engines can coexist without sharing state.

Usage:
    registry = CollectionRegistry()
    registry.load(document, "core")
    registry.resolve_imports({"core.json": "core"})
    found = registry.resolve_table("names.greeting", "core")
"""

from dataclasses import dataclass, field
from typing import Generic, Iterator, Optional, TypeVar
import logging

from tablecraft.errors import (
    ImportResolutionError,
    RecursionLimitError,
    ReferenceResolutionError,
)
from tablecraft.tables.table_types import (
    Entry,
    RandomTableDocument,
    SimpleTable,
    Table,
    Template,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LoadedCollection:
    """A document registered under a collection id, with lookup indexes."""
    id: str
    document: RandomTableDocument
    is_preloaded: bool = False
    table_index: dict[str, Table] = field(default_factory=dict)
    template_index: dict[str, Template] = field(default_factory=dict)
    # alias -> collection id, filled by resolve_imports()
    imports: dict[str, str] = field(default_factory=dict)

    @property
    def namespace(self) -> str:
        return self.document.metadata.namespace

    @property
    def name(self) -> str:
        return self.document.metadata.name


@dataclass
class ResolvedRef(Generic[T]):
    """A table or template together with the collection it was found in."""
    item: T
    collection_id: str


def _build_collection(
    document: RandomTableDocument, collection_id: str, is_preloaded: bool
) -> LoadedCollection:
    return LoadedCollection(
        id=collection_id,
        document=document,
        is_preloaded=is_preloaded,
        table_index={t.id: t for t in document.tables},
        template_index={t.id: t for t in document.templates},
    )


class CollectionRegistry:
    """
    Registry of loaded collections.

    Mutation (load/unload/resolve_imports) is not synchronized; callers must
    not mutate the registry while a roll is in flight.
    """

    def __init__(self):
        self._collections: dict[str, LoadedCollection] = {}

        # "<collectionId>:<tableId>" -> table with inheritance merged in
        self._resolved_tables: dict[str, SimpleTable] = {}

    # =========================================================================
    # LOADING
    # =========================================================================

    def load(
        self,
        document: RandomTableDocument,
        collection_id: str,
        is_preloaded: bool = False,
    ) -> LoadedCollection:
        """Insert or replace the collection stored under ``collection_id``."""
        replaced = collection_id in self._collections
        collection = _build_collection(document, collection_id, is_preloaded)
        self._collections[collection_id] = collection
        self.clear_inheritance_cache()

        action = "Replaced" if replaced else "Loaded"
        logger.info(
            f"{action} collection '{collection_id}' ({collection.namespace}): "
            f"{len(collection.table_index)} tables, {len(collection.template_index)} templates"
        )
        return collection

    def unload(self, collection_id: str) -> bool:
        """Remove a collection and drop any state that refers to it."""
        if collection_id not in self._collections:
            return False
        del self._collections[collection_id]

        for collection in self._collections.values():
            stale = [alias for alias, target in collection.imports.items() if target == collection_id]
            for alias in stale:
                del collection.imports[alias]
        self.clear_inheritance_cache()

        logger.info(f"Unloaded collection '{collection_id}'")
        return True

    def update_document(self, collection_id: str, document: RandomTableDocument) -> None:
        """Swap a loaded collection's document and re-resolve imports."""
        existing = self._collections.get(collection_id)
        if existing is None:
            raise ReferenceResolutionError(f"Collection not found: '{collection_id}'")
        self._collections[collection_id] = _build_collection(
            document, collection_id, existing.is_preloaded
        )
        self.clear_inheritance_cache()
        self.resolve_imports()

    def get(self, collection_id: str) -> Optional[LoadedCollection]:
        return self._collections.get(collection_id)

    def require(self, collection_id: str) -> LoadedCollection:
        collection = self._collections.get(collection_id)
        if collection is None:
            raise ReferenceResolutionError(f"Collection not found: '{collection_id}'")
        return collection

    def __contains__(self, collection_id: str) -> bool:
        return collection_id in self._collections

    def __iter__(self) -> Iterator[LoadedCollection]:
        return iter(list(self._collections.values()))

    def __len__(self) -> int:
        return len(self._collections)

    def find_by_namespace(self, namespace: str) -> Optional[LoadedCollection]:
        for collection in self._collections.values():
            if collection.namespace == namespace:
                return collection
        return None

    # =========================================================================
    # IMPORTS
    # =========================================================================

    def resolve_imports(self, path_to_id: Optional[dict[str, str]] = None) -> None:
        """
        Bind every loaded document's import aliases to collection ids.

        For each import, tries in order: the explicit ``path_to_id`` map,
        a collection whose namespace equals the import path, and a
        collection whose id equals the import path. Aliases that match
        nothing stay unbound; referencing them later raises
        ImportResolutionError.
        """
        for collection in self._collections.values():
            if not collection.document.imports:
                continue
            collection.imports.clear()

            for binding in collection.document.imports:
                target = self._find_import_target(binding.path, path_to_id)
                if target is None:
                    logger.warning(
                        f"Import '{binding.alias}' -> '{binding.path}' in collection "
                        f"'{collection.id}' matches no loaded collection"
                    )
                    continue
                collection.imports[binding.alias] = target.id
                logger.debug(f"Bound import '{binding.alias}' in '{collection.id}' to '{target.id}'")

    def _find_import_target(
        self, path: str, path_to_id: Optional[dict[str, str]] = None
    ) -> Optional[LoadedCollection]:
        if path_to_id:
            target_id = path_to_id.get(path)
            if target_id and target_id in self._collections:
                return self._collections[target_id]
        by_namespace = self.find_by_namespace(path)
        if by_namespace is not None:
            return by_namespace
        return self._collections.get(path)

    # =========================================================================
    # REFERENCE RESOLUTION
    # =========================================================================

    def resolve_table(self, ref: str, collection_id: str) -> Optional[ResolvedRef[Table]]:
        """Resolve a table reference as seen from ``collection_id``."""
        return self._resolve(ref, collection_id, "table_index")

    def resolve_template(self, ref: str, collection_id: str) -> Optional[ResolvedRef[Template]]:
        """Resolve a template reference as seen from ``collection_id``."""
        return self._resolve(ref, collection_id, "template_index")

    def _resolve(self, ref: str, collection_id: str, index_name: str):
        current = self._collections.get(collection_id)

        if "." in ref:
            parts = ref.split(".")
            alias = parts[0]
            item_id = parts[-1]
            namespace = ".".join(parts[:-1])

            # 1. Explicitly bound import alias
            if current is not None and alias in current.imports:
                target = self._collections.get(current.imports[alias])
                if target is not None:
                    item = getattr(target, index_name).get(item_id)
                    if item is not None:
                        return ResolvedRef(item, target.id)

            # 2. Namespace prefix
            for collection in self._collections.values():
                if collection.namespace == namespace:
                    item = getattr(collection, index_name).get(item_id)
                    if item is not None:
                        return ResolvedRef(item, collection.id)

            # 3. Declared but unresolved import: treat its path as a namespace or id
            if current is not None:
                binding = next((b for b in current.document.imports if b.alias == alias), None)
                if binding is not None:
                    matched_any = False
                    for collection in self._collections.values():
                        if collection.id == collection_id:
                            continue
                        if collection.namespace == binding.path or collection.id == binding.path:
                            matched_any = True
                            item = getattr(collection, index_name).get(item_id)
                            if item is not None:
                                return ResolvedRef(item, collection.id)
                    if not matched_any and alias not in current.imports:
                        raise ImportResolutionError(alias, binding.path, collection_id)

        # Plain id: current collection first, then every collection
        if current is not None:
            item = getattr(current, index_name).get(ref)
            if item is not None:
                return ResolvedRef(item, collection_id)
        for collection in self._collections.values():
            item = getattr(collection, index_name).get(ref)
            if item is not None:
                return ResolvedRef(item, collection.id)
        return None

    # =========================================================================
    # INHERITANCE
    # =========================================================================

    def resolve_inheritance(
        self,
        table: SimpleTable,
        collection_id: str,
        max_depth: int = 5,
        _depth: int = 0,
        _chain: Optional[tuple[str, ...]] = None,
    ) -> SimpleTable:
        """
        Merge a simple table with the tables it extends.

        Parent entries come first; a child entry with the same id replaces
        the parent's entry in place (child fields win), other child entries
        are appended. default_sets merge parent then child.

        Raises:
            RecursionLimitError: chain longer than ``max_depth`` or cyclic
            ReferenceResolutionError: parent missing or not a simple table
        """
        cache_key = f"{collection_id}:{table.id}"
        cached = self._resolved_tables.get(cache_key)
        if cached is not None:
            return cached
        if not table.extends:
            return table

        chain = (_chain or ()) + (cache_key,)
        if _depth >= max_depth:
            raise RecursionLimitError(
                f"Inheritance depth limit exceeded for table '{table.id}' (max: {max_depth})"
            )

        parent_ref = self.resolve_table(table.extends, collection_id)
        if parent_ref is None:
            raise ReferenceResolutionError(
                f"Parent table not found: '{table.extends}' for table '{table.id}'"
            )
        parent = parent_ref.item
        if not isinstance(parent, SimpleTable):
            raise ReferenceResolutionError(
                f"Cannot extend non-simple table: '{table.extends}' "
                f"(type: {parent.table_type.value})"
            )
        if f"{parent_ref.collection_id}:{parent.id}" in chain:
            raise RecursionLimitError(
                f"Inheritance depth limit exceeded: cycle through table '{parent.id}'"
            )

        resolved_parent = self.resolve_inheritance(
            parent, parent_ref.collection_id, max_depth, _depth + 1, chain
        )

        merged: dict[str, Entry] = {}
        for index, entry in enumerate(resolved_parent.entries):
            entry_id = resolved_parent.entry_id(index)
            merged[entry_id] = _with_id(entry, entry_id)

        for index, entry in enumerate(table.entries):
            entry_id = table.entry_id(index)
            parent_entry = merged.get(entry_id)
            merged[entry_id] = _merge_entry(parent_entry, entry, entry_id)

        resolved = SimpleTable(
            id=table.id,
            name=table.name,
            entries=list(merged.values()),
            extends=None,
            default_sets={**resolved_parent.default_sets, **table.default_sets},
            shared=dict(table.shared),
            result_type=table.result_type,
            hidden=table.hidden,
            description=table.description,
            tags=list(table.tags),
        )
        self._resolved_tables[cache_key] = resolved
        logger.debug(f"Resolved inheritance for '{cache_key}': {len(resolved.entries)} entries")
        return resolved

    def clear_inheritance_cache(self) -> None:
        self._resolved_tables.clear()


def _with_id(entry: Entry, entry_id: str) -> Entry:
    return Entry(
        value=entry.value,
        id=entry_id,
        weight=entry.weight,
        range=entry.range,
        sets=dict(entry.sets),
        description=entry.description,
        result_type=entry.result_type,
    )


def _merge_entry(parent: Optional[Entry], child: Entry, entry_id: str) -> Entry:
    if parent is None:
        return _with_id(child, entry_id)

    # A child giving a range drops the parent's weight and vice versa
    if child.range is not None:
        weight, range_value = None, child.range
    elif child.weight is not None:
        weight, range_value = child.weight, None
    else:
        weight, range_value = parent.weight, parent.range

    return Entry(
        value=child.value if child.value is not None else parent.value,
        id=entry_id,
        weight=weight,
        range=range_value,
        sets=dict(child.sets) if child.sets else dict(parent.sets),
        description=child.description if child.description is not None else parent.description,
        result_type=child.result_type if child.result_type is not None else parent.result_type,
    )
