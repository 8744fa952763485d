"""
RandomTableEngine: the public API for loading collections and rolling.

The engine owns a CollectionRegistry and a PatternEvaluator. Every top-level
call (roll, roll_template, evaluate_raw_pattern) builds a fresh
EvaluationContext, so calls never share placeholders, captures, shared
variables or instance caches. The registry is the only state that outlives
a call; callers must not mutate it (load, unload, resolve_imports) while a
roll is in flight.

Usage:
    engine = RandomTableEngine(seed=42)
    engine.load_collection(document_dict, "fantasy")
    engine.resolve_imports()
    result = engine.roll("treasure", "fantasy", {"enableTrace": True})
    print(result.text)
"""

from datetime import datetime
from typing import Any, Callable, Optional, Union
import json
import logging
import random

from tablecraft.content_loader.validator import ValidationResult, validate_document
from tablecraft.data_models import DiceRoller
from tablecraft.engine.config import EngineConfig, RollOptions
from tablecraft.errors import (
    DocumentValidationError,
    RecursionLimitError,
    ReferenceResolutionError,
    TableEngineError,
)
from tablecraft.engine.evaluator import PatternEvaluator
from tablecraft.engine.results import CollectionRef, RollResult, TableInfo, TemplateInfo
from tablecraft.engine.scope import EvaluationContext
from tablecraft.observability.trace import RootMetadata, TraceBuilder, TraceNodeType
from tablecraft.tables.table_manager import CollectionRegistry, LoadedCollection
from tablecraft.tables.table_types import (
    RandomTableDocument,
    SimpleTable,
    Table,
    Template,
    ensure_document,
)

logger = logging.getLogger(__name__)

# What a top-level evaluation returns: (text, result_type, entry_id)
Evaluation = tuple[str, Optional[str], Optional[str]]


class RandomTableEngine:
    """
    Loads random table documents and evaluates tables, templates and
    ad-hoc patterns against them.

    Args:
        config: Engine limits and defaults (EngineConfig() if omitted)
        seed: Seed for the engine's random generator
        rng: A random.Random to draw from instead of a private one
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        seed: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or EngineConfig()
        self.registry = CollectionRegistry()
        self.evaluator = PatternEvaluator(self.registry)
        self.roller = DiceRoller(seed=seed, rng=rng, max_exploding_dice=self.config.max_exploding_dice)

    def set_seed(self, seed: int) -> None:
        """Reseed the engine's generator."""
        self.roller.set_seed(seed)

    # =========================================================================
    # COLLECTIONS
    # =========================================================================

    def load_collection(
        self,
        document: Union[RandomTableDocument, dict[str, Any]],
        collection_id: str,
        is_preloaded: bool = False,
    ) -> LoadedCollection:
        """
        Register a document under ``collection_id``, replacing any previous one.

        Raises:
            DocumentValidationError: unsupported spec version with strict_spec_version
        """
        doc = ensure_document(document)
        version = doc.metadata.spec_version
        if version not in self.config.supported_spec_versions:
            message = (
                f"Collection '{collection_id}' declares spec version '{version or '(none)'}'; "
                f"supported: {', '.join(self.config.supported_spec_versions)}"
            )
            if self.config.strict_spec_version:
                raise DocumentValidationError(message)
            logger.warning(message)
        return self.registry.load(doc, collection_id, is_preloaded)

    def load_from_json(self, text: str, collection_id: str, is_preloaded: bool = False) -> ValidationResult:
        """
        Parse, validate and load a JSON document.

        Documents with validation errors are not loaded; the returned
        ValidationResult says why.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            result = ValidationResult()
            result.add_error("INVALID_JSON", f"Invalid JSON: {e}")
            logger.error(f"Failed to parse collection '{collection_id}': {e}")
            return result

        result = self.validate(data)
        if not result.is_valid:
            logger.warning(
                f"Collection '{collection_id}' not loaded: {len(result.errors)} validation errors"
            )
            return result
        self.load_collection(data, collection_id, is_preloaded)
        return result

    def validate(self, document: Union[RandomTableDocument, dict[str, Any]]) -> ValidationResult:
        return validate_document(
            document,
            self.config.supported_spec_versions,
            self.config.strict_spec_version,
        )

    def unload_collection(self, collection_id: str) -> bool:
        return self.registry.unload(collection_id)

    def has_collection(self, collection_id: str) -> bool:
        return collection_id in self.registry

    def update_document(
        self, collection_id: str, document: Union[RandomTableDocument, dict[str, Any]]
    ) -> None:
        """Replace a loaded collection's document in place."""
        self.registry.update_document(collection_id, ensure_document(document))

    def resolve_imports(self, path_to_id: Optional[dict[str, str]] = None) -> None:
        """Bind import aliases; see CollectionRegistry.resolve_imports."""
        self.registry.resolve_imports(path_to_id)

    def list_collections(self) -> list[CollectionRef]:
        return [
            CollectionRef(id=c.id, name=c.name, namespace=c.namespace, is_preloaded=c.is_preloaded)
            for c in self.registry
        ]

    def get_collection(self, collection_id: str) -> Optional[LoadedCollection]:
        return self.registry.get(collection_id)

    def list_tables(self, collection_id: Optional[str] = None, include_hidden: bool = False) -> list[TableInfo]:
        """Tables of one collection, or of every collection when none is given."""
        if collection_id is not None:
            collections = [self.registry.require(collection_id)]
        else:
            collections = list(self.registry)

        tables = []
        for collection in collections:
            for table in collection.document.tables:
                if table.hidden and not include_hidden:
                    continue
                tables.append(
                    TableInfo(
                        id=table.id,
                        name=table.name or table.id,
                        type=table.table_type.value,
                        collection_id=collection.id,
                        description=table.description,
                        entry_count=len(table.entries) if isinstance(table, SimpleTable) else None,
                        result_type=table.result_type,
                        hidden=table.hidden,
                        tags=list(table.tags),
                    )
                )
        return tables

    def list_templates(self, collection_id: str) -> list[TemplateInfo]:
        collection = self.registry.require(collection_id)
        return [
            TemplateInfo(
                id=t.id,
                name=t.name or t.id,
                collection_id=collection.id,
                description=t.description,
                result_type=t.result_type,
                tags=list(t.tags),
            )
            for t in collection.document.templates
        ]

    def get_table(self, table_id: str, collection_id: Optional[str] = None) -> Optional[Table]:
        """Find a table by id, in one collection or the first that has it."""
        if collection_id is not None:
            collection = self.registry.get(collection_id)
            return collection.table_index.get(table_id) if collection else None
        for collection in self.registry:
            if table_id in collection.table_index:
                return collection.table_index[table_id]
        return None

    def get_template(self, template_id: str, collection_id: str) -> Optional[Template]:
        collection = self.registry.get(collection_id)
        return collection.template_index.get(template_id) if collection else None

    # =========================================================================
    # ROLLING
    # =========================================================================

    def roll(self, table_id: str, collection_id: str, options: Any = None) -> RollResult:
        """
        Roll a table and return its rendered text.

        Raises:
            ReferenceResolutionError: unknown collection, table or reference
            ParseError, RecursionLimitError, SelectionError, MathError
        """

        def body(ctx: EvaluationContext) -> Evaluation:
            ref = self.registry.resolve_table(table_id, collection_id)
            if ref is None:
                raise ReferenceResolutionError(f"Table not found: '{table_id}' in collection '{collection_id}'")
            outcome = self.evaluator.roll_table(ref.item, ctx, ref.collection_id)
            text = self.evaluator.apply_document_conditionals(outcome.text, ctx, collection_id)
            return text, outcome.result_type, outcome.entry_id

        return self._run("roll", table_id, collection_id, options, body)

    def roll_template(self, template_id: str, collection_id: str, options: Any = None) -> RollResult:
        """Evaluate a template's pattern and return the rendered text."""

        def body(ctx: EvaluationContext) -> Evaluation:
            ref = self.registry.resolve_template(template_id, collection_id)
            if ref is None:
                raise ReferenceResolutionError(
                    f"Template not found: '{template_id}' in collection '{collection_id}'"
                )
            text = self.evaluator.trace_template_roll(ref.item, ctx, ref.collection_id)
            return text, ref.item.result_type, None

        return self._run("template", template_id, collection_id, options, body)

    def evaluate_raw_pattern(self, pattern: str, collection_id: str, options: Any = None) -> RollResult:
        """Evaluate an ad-hoc pattern as if it were a template in the collection."""

        def body(ctx: EvaluationContext) -> Evaluation:
            text = self.evaluator.evaluate_pattern(pattern, ctx, collection_id)
            text = self.evaluator.apply_document_conditionals(text, ctx, collection_id)
            return text, None, None

        return self._run("pattern", pattern, collection_id, options, body)

    def _run(
        self,
        kind: str,
        source_id: str,
        collection_id: str,
        options: Any,
        body: Callable[[EvaluationContext], Evaluation],
    ) -> RollResult:
        options = RollOptions.coerce(options)
        collection = self.registry.require(collection_id)
        config = self.config.for_document(collection.document.metadata)

        enable_trace = options.enable_trace
        if enable_trace is None:
            enable_trace = config.enable_trace_by_default

        roller = self.roller
        if options.seed is not None:
            roller = DiceRoller(seed=options.seed, max_exploding_dice=config.max_exploding_dice)

        ctx = EvaluationContext(
            collection_id=collection_id,
            config=config,
            roller=roller,
            trace=TraceBuilder(enabled=enable_trace),
            static_variables=dict(collection.document.variables),
            document_shared_names=set(collection.document.shared),
        )

        try:
            with ctx.scopes.frame(f"{kind}:{source_id}") as frame:
                ctx.trace.begin(
                    TraceNodeType.ROOT,
                    f"{kind.title()}: {source_id}",
                    source_id,
                    RootMetadata(kind=kind, source_id=source_id, collection_id=collection_id),
                )
                if collection.document.shared:
                    self.evaluator.evaluate_shared(collection.document.shared, ctx, collection_id)
                text, result_type, entry_id = body(ctx)
                ctx.trace.end(text)
        except TableEngineError as e:
            e.trace = ctx.trace.abort(str(e))
            logger.debug(f"{kind} '{source_id}' in '{collection_id}' failed: {e}")
            raise
        except RecursionError as e:
            # The interpreter stack ran out before max_recursion_depth was reached
            error = RecursionLimitError(
                f"Recursion limit exceeded (interpreter stack exhausted below "
                f"max_recursion_depth={config.max_recursion_depth})"
            )
            error.trace = ctx.trace.abort(str(error))
            logger.warning(f"{kind} '{source_id}' in '{collection_id}' exhausted the interpreter stack")
            raise error from e

        return RollResult(
            text=text,
            trace=ctx.trace.finish(),
            captures=dict(ctx.captures) if ctx.captures else None,
            descriptions=list(ctx.descriptions) if ctx.descriptions else None,
            placeholders={key: dict(props) for key, props in frame.placeholders.items()},
            result_type=result_type,
            metadata={
                "kind": kind,
                "sourceId": source_id,
                "collectionId": collection_id,
                "entryId": entry_id,
                "seed": options.seed,
                "scopePushes": ctx.scopes.pushes,
                "scopePops": ctx.scopes.pops,
                "timestamp": datetime.now().isoformat(),
            },
        )
