"""
Structural validation for random table documents.

Validation works on the raw JSON dict so that documents too broken to parse
into RandomTableDocument still get a useful report. Errors make a document
unloadable; warnings are informational.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union
import logging
import re

from tablecraft.tables.table_types import (
    SUPPORTED_SPEC_VERSIONS,
    ConditionalAction,
    RandomTableDocument,
    TableType,
)

logger = logging.getLogger(__name__)

NAMESPACE_PATTERN = re.compile(r"^[A-Za-z][\w\-]*(?:\.[A-Za-z][\w\-]*)*$")


@dataclass
class ValidationIssue:
    """A single validation finding."""
    severity: str  # "error" or "warning"
    code: str
    message: str
    path: str = ""

    def __str__(self) -> str:
        where = f" at {self.path}" if self.path else ""
        return f"[{self.code}]{where}: {self.message}"


@dataclass
class ValidationResult:
    """Result of document validation."""
    is_valid: bool = True
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def add_error(self, code: str, message: str, path: str = "") -> None:
        self.errors.append(ValidationIssue("error", code, message, path))
        self.is_valid = False

    def add_warning(self, code: str, message: str, path: str = "") -> None:
        self.warnings.append(ValidationIssue("warning", code, message, path))

    def codes(self) -> list[str]:
        return [issue.code for issue in self.errors + self.warnings]


def _braces_balanced(text: str) -> bool:
    depth = 0
    i = 0
    while i < len(text) - 1:
        pair = text[i:i + 2]
        if pair == "{{":
            depth += 1
            i += 2
            continue
        if pair == "}}":
            depth -= 1
            if depth < 0:
                return False
            i += 2
            continue
        i += 1
    return depth == 0


def _check_pattern(result: ValidationResult, text: Any, path: str) -> None:
    if isinstance(text, str) and not _braces_balanced(text):
        result.add_error("UNBALANCED_BRACES", "Unbalanced '{{' / '}}' in pattern", path)


def _validate_metadata(
    result: ValidationResult,
    metadata: Any,
    supported_versions: tuple[str, ...],
    strict_spec_version: bool,
) -> None:
    if not isinstance(metadata, dict):
        result.add_error("MISSING_METADATA", "Document has no metadata section", "metadata")
        return

    if not metadata.get("name"):
        result.add_error("MISSING_NAME", "metadata.name is required", "metadata.name")

    namespace = metadata.get("namespace")
    if not namespace:
        result.add_error("MISSING_NAMESPACE", "metadata.namespace is required", "metadata.namespace")
    elif not NAMESPACE_PATTERN.match(str(namespace)):
        result.add_error(
            "INVALID_NAMESPACE",
            f"Namespace '{namespace}' must be dot-separated identifiers",
            "metadata.namespace",
        )

    spec_version = metadata.get("specVersion")
    if not spec_version:
        result.add_error("MISSING_SPEC_VERSION", "metadata.specVersion is required", "metadata.specVersion")
    elif str(spec_version) not in supported_versions:
        message = (
            f"Spec version '{spec_version}' is not supported "
            f"(supported: {', '.join(supported_versions)})"
        )
        if strict_spec_version:
            result.add_error("UNSUPPORTED_SPEC_VERSION", message, "metadata.specVersion")
        else:
            result.add_warning("UNSUPPORTED_SPEC_VERSION", message, "metadata.specVersion")


def _validate_entry(result: ValidationResult, entry: Any, path: str) -> None:
    if isinstance(entry, str):
        _check_pattern(result, entry, path)
        return
    if not isinstance(entry, dict):
        result.add_error("INVALID_ENTRY", "Entry must be a string or an object", path)
        return

    weight = entry.get("weight")
    range_value = entry.get("range")
    if weight is not None and range_value is not None:
        result.add_error("RANGE_AND_WEIGHT", "Entry cannot have both 'range' and 'weight'", path)
    if weight is not None and (isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0):
        result.add_error("INVALID_WEIGHT", f"Weight must be a non-negative number, got {weight!r}", path)
    if range_value is not None:
        valid = (
            isinstance(range_value, (list, tuple))
            and len(range_value) == 2
            and all(isinstance(v, int) and not isinstance(v, bool) for v in range_value)
            and range_value[0] <= range_value[1]
        )
        if not valid:
            result.add_error("INVALID_RANGE", f"Range must be [min, max] with min <= max, got {range_value!r}", path)

    _check_pattern(result, entry.get("value"), f"{path}.value")
    _check_pattern(result, entry.get("description"), f"{path}.description")
    for key, value in (entry.get("sets") or {}).items():
        _check_pattern(result, value, f"{path}.sets.{key}")


def _validate_table(result: ValidationResult, table: dict[str, Any], path: str) -> None:
    table_type = table.get("type", TableType.SIMPLE.value)
    if table_type not in {t.value for t in TableType}:
        result.add_error("UNKNOWN_TABLE_TYPE", f"Unknown table type '{table_type}'", f"{path}.type")
        return

    if table_type == TableType.SIMPLE.value:
        entries = table.get("entries") or []
        if not entries and not table.get("extends"):
            result.add_error("EMPTY_TABLE", f"Table '{table.get('id')}' has no entries", f"{path}.entries")
        for index, entry in enumerate(entries):
            _validate_entry(result, entry, f"{path}.entries[{index}]")
    elif table_type == TableType.COMPOSITE.value:
        sources = table.get("sources") or []
        if not sources:
            result.add_error("MISSING_SOURCES", f"Composite table '{table.get('id')}' has no sources", f"{path}.sources")
        for index, source in enumerate(sources):
            weight = source.get("weight", 1) if isinstance(source, dict) else None
            if isinstance(weight, bool) or not isinstance(weight, (int, float)) or weight < 0:
                result.add_error("INVALID_WEIGHT", "Source weight must be a non-negative number", f"{path}.sources[{index}]")
    else:
        if not table.get("collections"):
            result.add_error(
                "MISSING_SOURCES", f"Collection table '{table.get('id')}' has no source tables", f"{path}.collections"
            )

    for key, value in (table.get("shared") or {}).items():
        _check_pattern(result, value, f"{path}.shared.{key}")


def validate_document(
    document: Union[RandomTableDocument, dict[str, Any]],
    supported_versions: Optional[tuple[str, ...]] = None,
    strict_spec_version: bool = False,
) -> ValidationResult:
    """
    Validate a document's structure.

    Args:
        document: Parsed document or its JSON dict form
        supported_versions: Accepted metadata.specVersion values
        strict_spec_version: Report unsupported versions as errors, not warnings

    Returns:
        ValidationResult listing every error and warning found
    """
    if isinstance(document, RandomTableDocument):
        document = document.to_dict()
    supported_versions = supported_versions or SUPPORTED_SPEC_VERSIONS

    result = ValidationResult()
    if not isinstance(document, dict):
        result.add_error("MISSING_METADATA", "Document must be a JSON object")
        return result

    _validate_metadata(result, document.get("metadata"), supported_versions, strict_spec_version)

    seen_ids: dict[str, str] = {}

    def check_id(item: Any, path: str, kind: str) -> None:
        if not isinstance(item, dict) or not item.get("id"):
            result.add_error("MISSING_ID", f"{kind} has no id", path)
            return
        item_id = str(item["id"])
        if item_id in seen_ids:
            result.add_error(
                "DUPLICATE_ID", f"Id '{item_id}' is already used by {seen_ids[item_id]}", f"{path}.id"
            )
        else:
            seen_ids[item_id] = path

    for index, table in enumerate(document.get("tables") or []):
        path = f"tables[{index}]"
        check_id(table, path, "Table")
        if isinstance(table, dict):
            _validate_table(result, table, path)

    for index, template in enumerate(document.get("templates") or []):
        path = f"templates[{index}]"
        check_id(template, path, "Template")
        if not isinstance(template, dict):
            continue
        if not template.get("pattern"):
            result.add_error("MISSING_PATTERN", f"Template '{template.get('id')}' has no pattern", f"{path}.pattern")
        else:
            _check_pattern(result, template["pattern"], f"{path}.pattern")

    aliases: set[str] = set()
    for index, binding in enumerate(document.get("imports") or []):
        alias = binding.get("alias") if isinstance(binding, dict) else None
        if alias in aliases:
            result.add_error("DUPLICATE_ALIAS", f"Import alias '{alias}' is declared twice", f"imports[{index}].alias")
        aliases.add(alias)

    for key, value in (document.get("shared") or {}).items():
        _check_pattern(result, value, f"shared.{key}")

    actions = {a.value for a in ConditionalAction}
    for index, conditional in enumerate(document.get("conditionals") or []):
        action = conditional.get("action") if isinstance(conditional, dict) else None
        if action not in actions:
            result.add_error(
                "INVALID_CONDITIONAL_ACTION",
                f"Conditional action must be one of {sorted(actions)}, got {action!r}",
                f"conditionals[{index}].action",
            )

    if result.errors:
        logger.debug(f"Document failed validation with {len(result.errors)} errors")
    return result
