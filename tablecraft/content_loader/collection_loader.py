"""
Collection loader for random table documents stored as JSON files.

Loads every document in a directory into an engine, using each file's stem
as its collection id, then binds imports using the file paths the documents
declare.

Usage:
    engine = RandomTableEngine()
    loader = CollectionLoader(engine)
    result = loader.load_directory(Path("data/collections"))
    print(result.collections_loaded)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional
import json
import logging

from tablecraft.content_loader.validator import ValidationResult

if TYPE_CHECKING:
    from tablecraft.engine.engine import RandomTableEngine

logger = logging.getLogger(__name__)


@dataclass
class CollectionFileLoadResult:
    """Result of loading a single collection file."""
    file_path: Path
    success: bool
    collection_id: str = ""
    namespace: str = ""
    validation: Optional[ValidationResult] = None
    errors: list[str] = field(default_factory=list)


@dataclass
class CollectionDirectoryLoadResult:
    """Result of loading all collection files from a directory."""
    directory: Path
    files_processed: int = 0
    files_successful: int = 0
    files_failed: int = 0
    collections_loaded: list[str] = field(default_factory=list)
    file_results: list[CollectionFileLoadResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def path_to_id(self) -> dict[str, str]:
        """Import paths (file name and stem) mapped to collection ids."""
        mapping: dict[str, str] = {}
        for file_result in self.file_results:
            if file_result.success:
                mapping[file_result.file_path.name] = file_result.collection_id
                mapping[file_result.file_path.stem] = file_result.collection_id
        return mapping


class CollectionLoader:
    """
    Loads random table documents from disk into a RandomTableEngine.

    Args:
        engine: Engine to load collections into
        is_preloaded: Mark loaded collections as built-in
    """

    def __init__(self, engine: "RandomTableEngine", is_preloaded: bool = False):
        self.engine = engine
        self.is_preloaded = is_preloaded

    def load_directory(
        self,
        directory: Path,
        recursive: bool = False,
        pattern: str = "*.json",
        resolve_imports: bool = True,
    ) -> CollectionDirectoryLoadResult:
        """
        Load all collection JSON files from a directory.

        Args:
            directory: Path to directory containing collection JSON files
            recursive: Search subdirectories recursively
            pattern: Glob pattern for matching files
            resolve_imports: Bind import aliases once every file is loaded

        Returns:
            CollectionDirectoryLoadResult with load statistics
        """
        directory = Path(directory)
        result = CollectionDirectoryLoadResult(directory=directory)

        if not directory.exists():
            result.errors.append(f"Directory not found: {directory}")
            logger.error(f"Collection directory not found: {directory}")
            return result

        if not directory.is_dir():
            result.errors.append(f"Path is not a directory: {directory}")
            logger.error(f"Path is not a directory: {directory}")
            return result

        if recursive:
            json_files = list(directory.rglob(pattern))
        else:
            json_files = list(directory.glob(pattern))

        logger.info(f"Found {len(json_files)} JSON files in {directory}")

        for json_file in sorted(json_files):
            result.files_processed += 1

            file_result = self.load_file(json_file)
            result.file_results.append(file_result)

            if file_result.success:
                result.files_successful += 1
                result.collections_loaded.append(file_result.collection_id)
            else:
                result.files_failed += 1
                result.errors.extend(f"{json_file.name}: {error}" for error in file_result.errors)

        if resolve_imports and result.collections_loaded:
            self.engine.resolve_imports(result.path_to_id)

        logger.info(
            f"Loaded {len(result.collections_loaded)} collections from "
            f"{result.files_successful}/{result.files_processed} files"
        )
        return result

    def load_file(self, file_path: Path, collection_id: Optional[str] = None) -> CollectionFileLoadResult:
        """
        Validate and load a single collection file.

        Args:
            file_path: Path to JSON file
            collection_id: Collection id to load under (defaults to the file stem)

        Returns:
            CollectionFileLoadResult with load status
        """
        file_path = Path(file_path)
        collection_id = collection_id or file_path.stem
        result = CollectionFileLoadResult(file_path=file_path, success=False, collection_id=collection_id)

        if not file_path.exists():
            result.errors.append(f"File not found: {file_path}")
            return result

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            result.errors.append(f"Invalid JSON: {e}")
            logger.error(f"Failed to parse {file_path}: {e}")
            return result
        except UnicodeDecodeError as e:
            result.errors.append(f"Invalid encoding (expected UTF-8): {e}")
            logger.error(f"Failed to decode {file_path}: {e}")
            return result
        except OSError as e:
            result.errors.append(f"Error reading file: {e}")
            logger.error(f"Error reading {file_path}: {e}")
            return result

        result.validation = self.engine.validate(data)
        if not result.validation.is_valid:
            result.errors.extend(str(issue) for issue in result.validation.errors)
            logger.error(f"Collection {file_path} failed validation: {len(result.validation.errors)} errors")
            return result

        collection = self.engine.load_collection(data, collection_id, self.is_preloaded)
        result.namespace = collection.namespace
        result.success = True
        return result


def load_directory(engine: "RandomTableEngine", directory: Path, recursive: bool = False) -> CollectionDirectoryLoadResult:
    """Convenience wrapper: load every collection in ``directory`` into ``engine``."""
    return CollectionLoader(engine).load_directory(Path(directory), recursive=recursive)
