"""
Shared builders for small in-memory documents used across the test suite.
"""

from typing import Any, Optional


def make_document(
    tables: Optional[list[dict[str, Any]]] = None,
    templates: Optional[list[dict[str, Any]]] = None,
    namespace: str = "test.core",
    name: str = "Test Collection",
    spec_version: str = "1.0",
    **extra: Any,
) -> dict[str, Any]:
    """Build a minimal valid document dict; extra keys go at the top level."""
    document: dict[str, Any] = {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "version": "1.0.0",
            "specVersion": spec_version,
        },
        "tables": tables or [],
    }
    if templates:
        document["templates"] = templates
    metadata_overrides = extra.pop("metadata", None)
    if metadata_overrides:
        document["metadata"].update(metadata_overrides)
    document.update(extra)
    return document


def simple_table(table_id: str, *entries: Any, **fields: Any) -> dict[str, Any]:
    """A simple table whose entries are strings or entry dicts."""
    return {"id": table_id, "name": fields.pop("name", table_id), "entries": list(entries), **fields}


def template(template_id: str, pattern: str, **fields: Any) -> dict[str, Any]:
    return {"id": template_id, "name": fields.pop("name", template_id), "pattern": pattern, **fields}
