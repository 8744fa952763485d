"""
Result and listing types returned by the public engine API.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from tablecraft.observability.trace import RollTrace


@dataclass
class DescriptionEntry:
    """An entry description collected while rolling."""
    table_id: str
    table_name: str
    rolled_value: str
    description: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tableId": self.table_id,
            "tableName": self.table_name,
            "rolledValue": self.rolled_value,
            "description": self.description,
        }


@dataclass
class RollResult:
    """Outcome of one top-level roll."""
    text: str
    trace: Optional[RollTrace] = None
    captures: Optional[dict[str, Any]] = None  # name -> CaptureVariable
    descriptions: Optional[list[DescriptionEntry]] = None
    placeholders: Optional[dict[str, Any]] = None
    result_type: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for history/persistence collaborators."""
        data: dict[str, Any] = {"text": self.text, "metadata": dict(self.metadata)}
        if self.trace is not None:
            data["trace"] = self.trace.to_dict()
        if self.captures is not None:
            data["captures"] = {name: var.to_dict() for name, var in self.captures.items()}
        if self.descriptions is not None:
            data["descriptions"] = [d.to_dict() for d in self.descriptions]
        if self.placeholders is not None:
            data["placeholders"] = {
                key: {p: getattr(v, "value", v) for p, v in props.items()}
                for key, props in self.placeholders.items()
            }
        if self.result_type is not None:
            data["resultType"] = self.result_type
        return data


@dataclass
class CollectionRef:
    id: str
    name: str
    namespace: str
    is_preloaded: bool = False


@dataclass
class TableInfo:
    id: str
    name: str
    type: str
    collection_id: str
    description: Optional[str] = None
    entry_count: Optional[int] = None
    result_type: Optional[str] = None
    hidden: bool = False
    tags: list[str] = field(default_factory=list)


@dataclass
class TemplateInfo:
    id: str
    name: str
    collection_id: str
    description: Optional[str] = None
    result_type: Optional[str] = None
    tags: list[str] = field(default_factory=list)
