"""
Random table documents, weighted selection and the collection registry.

This module provides:
- Document model (simple, composite and collection tables, templates, imports)
- Weighted entry and source selection
- CollectionRegistry for loading documents and resolving references
"""

from tablecraft.tables.table_types import (
    # Enums
    TableType,
    ConditionalAction,
    # Document model
    Entry,
    SimpleTable,
    CompositeSource,
    CompositeTable,
    CollectionTable,
    Table,
    Template,
    ImportBinding,
    Conditional,
    DocumentMetadata,
    RandomTableDocument,
    # Helpers
    SUPPORTED_SPEC_VERSIONS,
    dispatch_table,
    table_from_dict,
    table_to_dict,
    ensure_document,
)
from tablecraft.tables.selection import (
    PoolEntry,
    Selection,
    SourceCandidate,
    SourceSelection,
    build_weighted_pool,
    merge_collection_pool,
    select_weighted,
    select_source,
    total_weight,
)
from tablecraft.tables.table_manager import (
    CollectionRegistry,
    LoadedCollection,
    ResolvedRef,
)

__all__ = [
    # Enums
    "TableType",
    "ConditionalAction",
    # Document model
    "Entry",
    "SimpleTable",
    "CompositeSource",
    "CompositeTable",
    "CollectionTable",
    "Table",
    "Template",
    "ImportBinding",
    "Conditional",
    "DocumentMetadata",
    "RandomTableDocument",
    "SUPPORTED_SPEC_VERSIONS",
    "dispatch_table",
    "table_from_dict",
    "table_to_dict",
    "ensure_document",
    # Selection
    "PoolEntry",
    "Selection",
    "SourceCandidate",
    "SourceSelection",
    "build_weighted_pool",
    "merge_collection_pool",
    "select_weighted",
    "select_source",
    "total_weight",
    # Registry
    "CollectionRegistry",
    "LoadedCollection",
    "ResolvedRef",
]
