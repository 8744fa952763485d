"""Document validation and loading of collections from disk."""

from tablecraft.content_loader.validator import (
    ValidationIssue,
    ValidationResult,
    validate_document,
)
from tablecraft.content_loader.collection_loader import (
    CollectionLoader,
    CollectionFileLoadResult,
    CollectionDirectoryLoadResult,
    load_directory,
)

__all__ = [
    # Validation
    "ValidationIssue",
    "ValidationResult",
    "validate_document",
    # Loading
    "CollectionLoader",
    "CollectionFileLoadResult",
    "CollectionDirectoryLoadResult",
    "load_directory",
]
