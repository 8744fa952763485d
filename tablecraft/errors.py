"""
Error taxonomy for the table engine.

Every failure raised out of roll()/roll_template() is a TableEngineError.
When tracing was enabled, the partially built trace is attached as
``error.trace`` so callers can inspect how far evaluation got.
"""

from typing import Any, Optional


class TableEngineError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, expression: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.expression = expression
        self.trace: Optional[Any] = None

    def __str__(self) -> str:
        if self.expression:
            return f"{self.message} (in '{{{{{self.expression}}}}}')"
        return self.message


class ParseError(TableEngineError):
    """Malformed expression syntax inside a {{...}} span."""


class ReferenceResolutionError(TableEngineError, LookupError):
    """Unknown table, template, variable, property, alias or collection."""


class ImportResolutionError(ReferenceResolutionError):
    """An import alias could not be bound to any loaded collection."""

    def __init__(self, alias: str, path: str, collection_id: Optional[str] = None):
        where = f" in collection '{collection_id}'" if collection_id else ""
        super().__init__(
            f"Import alias '{alias}'{where} could not be resolved: "
            f"no loaded collection matches '{path}'"
        )
        self.alias = alias
        self.path = path
        self.collection_id = collection_id


class RecursionLimitError(TableEngineError, RecursionError):
    """Evaluation nested too deeply, or an inheritance chain is cyclic."""


class SelectionError(TableEngineError):
    """A weighted pool is empty or its total weight is not positive."""


class SharedShadowError(TableEngineError):
    """A table/template shared variable would shadow a document-level one."""

    code = "SHARED_SHADOW"


class MathError(TableEngineError):
    """A math: expression could not be evaluated."""


class DocumentValidationError(TableEngineError):
    """A document failed validation and was not loaded."""

    def __init__(self, message: str, validation: Any = None):
        super().__init__(message)
        self.validation = validation
