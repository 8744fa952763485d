"""
Pattern evaluator: the interpreter behind roll() and roll_template().

PatternEvaluator walks a pattern's spans, classifies each one with the
parser and evaluates it against the collection registry, drawing all
randomness from the context's DiceRoller. Every recursive entry point that
can loop through data (table rolls and template references) goes through
a depth guard, so cyclic documents fail with RecursionLimitError. A depth
limit set higher than the interpreter stack allows is caught by the engine
and reported as the same error.

All per-call state lives on the EvaluationContext passed in; the evaluator
itself only holds the registry, so one evaluator serves any number of
independent calls.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union
import logging
import re

from tablecraft.data_models import DiceNotationError, DiceResult, parse_dice_notation
from tablecraft.engine import parser as p
from tablecraft.engine.conditionals import ConditionalOutcome, apply_conditionals, evaluate_when
from tablecraft.errors import (
    ParseError,
    RecursionLimitError,
    ReferenceResolutionError,
    SelectionError,
    SharedShadowError,
    TableEngineError,
)
from tablecraft.engine.math_eval import evaluate_math
from tablecraft.engine.scope import (
    CaptureItem,
    CaptureVariable,
    EvaluationContext,
    InstanceRecord,
    coerce_scalar,
    format_scalar,
    set_value_text,
)
from tablecraft.observability.trace import (
    CaptureAccessMetadata,
    CaptureMultiRollMetadata,
    CollectMetadata,
    CollectionMergeMetadata,
    CompositeSelectMetadata,
    ConditionalMetadata,
    DiceRollMetadata,
    EntrySelectMetadata,
    ExpressionMetadata,
    InstanceMetadata,
    MathEvalMetadata,
    MultiRollMetadata,
    PlaceholderAccessMetadata,
    TableRollMetadata,
    TemplateRefMetadata,
    TemplateRollMetadata,
    TraceNodeType,
    VariableAccessMetadata,
)
from tablecraft.tables.selection import (
    PoolEntry,
    build_weighted_pool,
    merge_collection_pool,
    select_source,
    select_weighted,
    total_weight,
)
from tablecraft.tables.table_manager import CollectionRegistry
from tablecraft.tables.table_types import (
    CollectionTable,
    CompositeTable,
    SimpleTable,
    Table,
    Template,
    dispatch_table,
)

logger = logging.getLogger(__name__)

# Strings that could name a table or template (optionally alias/namespace qualified)
CANDIDATE_ID = re.compile(r"^[A-Za-z_][\w\-]*(?:\.[A-Za-z_][\w\-]*)*$")


@dataclass
class RollOutcome:
    """What rolling one table produced."""
    text: str
    result_type: Optional[str] = None
    placeholders: dict[str, Union[str, CaptureItem]] = field(default_factory=dict)
    entry_id: Optional[str] = None
    description: Optional[str] = None
    exhausted: bool = False  # a unique draw found nothing left to pick


class PatternEvaluator:
    """Evaluates patterns, expressions, tables and templates."""

    def __init__(self, registry: CollectionRegistry):
        self.registry = registry

    # =========================================================================
    # PATTERNS AND EXPRESSIONS
    # =========================================================================

    def evaluate_pattern(self, pattern: str, ctx: EvaluationContext, collection_id: str) -> str:
        """Render a pattern: literal text plus the value of every {{...}} span."""
        if not pattern or "{{" not in pattern:
            return pattern or ""

        parts = []
        for segment in p.parse_pattern(pattern):
            if isinstance(segment, p.Literal):
                parts.append(segment.text)
            else:
                parts.append(self.evaluate_span(segment, ctx, collection_id))
        return "".join(parts)

    def evaluate_span(self, span: p.Span, ctx: EvaluationContext, collection_id: str) -> str:
        try:
            expr = p.parse_expression(span.inner)
        except ParseError as e:
            if e.expression is None:
                e.expression = span.inner.strip()
            raise

        ctx.trace.begin(
            TraceNodeType.EXPRESSION,
            span.raw,
            span.inner,
            ExpressionMetadata(expression_type=type(expr).__name__),
        )
        try:
            value = self.evaluate_expression(expr, ctx, collection_id)
        except TableEngineError as e:
            if e.expression is None:
                e.expression = span.inner.strip()
            raise
        ctx.trace.end(value)
        return value

    def evaluate_expression(self, expr: p.Expression, ctx: EvaluationContext, collection_id: str) -> str:
        """Dispatch a classified expression to its evaluator."""
        if isinstance(expr, p.TableRefExpr):
            return self.evaluate_table_ref(expr, ctx, collection_id)
        if isinstance(expr, p.MultiRollExpr):
            return self.evaluate_multi_roll(expr, ctx, collection_id)
        if isinstance(expr, p.InstanceExpr):
            return self.evaluate_instance(expr, ctx, collection_id)
        if isinstance(expr, p.AgainExpr):
            return self.evaluate_again(expr, ctx, collection_id)
        if isinstance(expr, p.DiceExpr):
            return self.evaluate_dice(expr, ctx)
        if isinstance(expr, p.MathExpr):
            return self.evaluate_math(expr, ctx, collection_id)
        if isinstance(expr, p.VariableExpr):
            return self.evaluate_variable(expr, ctx)
        if isinstance(expr, p.PlaceholderExpr):
            return self.evaluate_placeholder(expr, ctx, collection_id)
        if isinstance(expr, p.CaptureMultiRollExpr):
            return self.evaluate_capture_multi_roll(expr, ctx, collection_id)
        if isinstance(expr, p.CaptureAccessExpr):
            return self.evaluate_capture_access(expr, ctx, collection_id)
        if isinstance(expr, p.CollectExpr):
            return self.evaluate_collect(expr, ctx)
        if isinstance(expr, p.SwitchExpr):
            return self.evaluate_switch(expr, ctx, collection_id)
        raise TypeError(f"Unknown expression type: {type(expr).__name__}")

    def evaluate_inline(self, text: str, ctx: EvaluationContext, collection_id: str) -> str:
        """Evaluate a bare expression (no braces); quoted text is a pattern."""
        quoted = p.unquote(text)
        if quoted is not None:
            return self.evaluate_pattern(quoted, ctx, collection_id)
        text = text.strip()
        if not text:
            return ""
        return self.evaluate_expression(p.parse_expression(text), ctx, collection_id)

    # =========================================================================
    # RECURSION GUARD
    # =========================================================================

    @contextmanager
    def _guard(self, ctx: EvaluationContext) -> Iterator[None]:
        ctx.recursion_depth += 1
        try:
            if ctx.recursion_depth > ctx.config.max_recursion_depth:
                raise RecursionLimitError(
                    f"Recursion limit exceeded ({ctx.config.max_recursion_depth})"
                )
            yield
        finally:
            ctx.recursion_depth -= 1

    # =========================================================================
    # SHARED VARIABLES
    # =========================================================================

    def evaluate_shared(
        self,
        shared: dict[str, str],
        ctx: EvaluationContext,
        collection_id: str,
        source_id: Optional[str] = None,
    ) -> None:
        """
        Evaluate shared variables in declaration order.

        With no ``source_id`` these are the document-level variables. For a
        table or template (``source_id`` set), names already set by an
        enclosing roll are skipped, and shadowing a document-level shared
        or static variable raises SharedShadowError.
        """
        document_level = source_id is None

        for name, expression in shared.items():
            if name.startswith("$"):
                var_name = name[1:]
                if not document_level:
                    if name in ctx.document_shared_names:
                        raise SharedShadowError(
                            f"SHARED_SHADOW in {source_id}: capture-aware shared variable "
                            f"'{name}' would shadow a document-level shared variable"
                        )
                    if var_name in ctx.capture_shared:
                        continue
                self.evaluate_capture_aware_shared(var_name, expression, ctx, collection_id)
                continue

            if not document_level:
                if name in ctx.document_shared_names:
                    raise SharedShadowError(
                        f"SHARED_SHADOW in {source_id}: shared variable '{name}' "
                        f"would shadow a document-level shared variable"
                    )
                if name in ctx.static_variables:
                    raise SharedShadowError(
                        f"SHARED_SHADOW in {source_id}: shared variable '{name}' "
                        f"would shadow a static variable"
                    )
                if name in ctx.shared_variables:
                    continue

            text = self.evaluate_pattern(expression, ctx, collection_id)
            ctx.set_shared(name, coerce_scalar(text), source_id)

    def evaluate_capture_aware_shared(
        self, var_name: str, expression: str, ctx: EvaluationContext, collection_id: str
    ) -> None:
        """Store a '$name' shared variable as a full CaptureItem where possible."""
        single = self._single_expression(expression)

        if isinstance(single, p.TableRefExpr) and not single.properties:
            ref = self.registry.resolve_table(single.ref, collection_id)
            if ref is not None:
                outcome = self.roll_table(ref.item, ctx, ref.collection_id)
                ctx.capture_shared[var_name] = CaptureItem(
                    value=outcome.text,
                    sets=dict(outcome.placeholders),
                    description=outcome.description,
                )
                return

        if isinstance(single, p.CaptureAccessExpr) and single.properties and single.index is None:
            source = ctx.capture_shared.get(single.var_name)
            if source is not None and single.properties[-1] not in p.TERMINAL_PROPERTIES:
                nested = self._nested_capture_item(source, single.properties)
                if nested is not None:
                    ctx.capture_shared[var_name] = nested
                    return

        text = self.evaluate_pattern(expression, ctx, collection_id)
        ctx.capture_shared[var_name] = CaptureItem(value=text)

    def _single_expression(self, text: str) -> Optional[p.Expression]:
        """The expression, if ``text`` is exactly one {{...}} span."""
        segments = p.parse_pattern(text.strip())
        if len(segments) == 1 and isinstance(segments[0], p.Span):
            return p.parse_expression(segments[0].inner)
        return None

    @staticmethod
    def _nested_capture_item(item: CaptureItem, properties: tuple[str, ...]) -> Optional[CaptureItem]:
        current = item
        for prop in properties:
            value = current.sets.get(prop)
            if not isinstance(value, CaptureItem):
                return None
            current = value
        return current

    # =========================================================================
    # TABLE ROLLS
    # =========================================================================

    def roll_table(
        self,
        table: Table,
        ctx: EvaluationContext,
        collection_id: str,
        unique: bool = False,
        exclude_ids: Optional[set[str]] = None,
    ) -> RollOutcome:
        """Roll any table variant, evaluating its shared variables first."""
        with self._guard(ctx):
            ctx.trace.begin(
                TraceNodeType.TABLE_ROLL,
                f"Table: {table.name or table.id}",
                table.id,
                TableRollMetadata(
                    table_id=table.id,
                    table_name=table.name,
                    table_type=table.table_type.value,
                    collection_id=collection_id,
                ),
            )
            with ctx.current_table(table.id, collection_id):
                if table.shared:
                    # A table rolled again re-evaluates its own shared values;
                    # values set by an enclosing table are kept.
                    for name in table.shared:
                        if ctx.shared_sources.get(name) == table.id:
                            ctx.shared_variables.pop(name, None)
                            ctx.shared_sources.pop(name, None)
                    self.evaluate_shared(table.shared, ctx, collection_id, table.id)

                outcome = dispatch_table(
                    table,
                    lambda t: self._roll_simple(t, ctx, collection_id, unique, exclude_ids),
                    lambda t: self._roll_composite(t, ctx, collection_id, unique, exclude_ids),
                    lambda t: self._roll_collection(t, ctx, collection_id, unique, exclude_ids),
                )
            ctx.trace.end(outcome.text)
            return outcome

    def _roll_simple(
        self,
        table: SimpleTable,
        ctx: EvaluationContext,
        collection_id: str,
        unique: bool,
        exclude_ids: Optional[set[str]],
    ) -> RollOutcome:
        resolved = self.registry.resolve_inheritance(
            table, collection_id, ctx.config.max_inheritance_depth
        )
        pool = build_weighted_pool(resolved, exclude_ids)
        if not pool and exclude_ids:
            self._trace_exhausted(table.id, ctx, unique, exclude_ids)
            return RollOutcome(text="", exhausted=True)

        selection = select_weighted(pool, ctx.roller, table.id, unique, sorted(exclude_ids or ()))
        ctx.trace.leaf(
            TraceNodeType.ENTRY_SELECT,
            f"Selected: {selection.item.entry_id}",
            table.id,
            selection.item.entry.value or "",
            EntrySelectMetadata(
                table_id=table.id,
                entry_id=selection.item.entry_id,
                selected_weight=selection.selected_weight,
                total_weight=selection.total_weight,
                probability=selection.probability,
                pool_size=selection.pool_size,
                unique=unique,
                excluded_ids=selection.excluded_ids,
            ),
        )
        return self._render_entry(
            selection.item, table.id, resolved.name or resolved.id, resolved.result_type, ctx, collection_id
        )

    def _roll_composite(
        self,
        table: CompositeTable,
        ctx: EvaluationContext,
        collection_id: str,
        unique: bool,
        exclude_ids: Optional[set[str]],
    ) -> RollOutcome:
        choice = select_source(table, ctx.roller)
        ctx.trace.leaf(
            TraceNodeType.COMPOSITE_SELECT,
            f"Source: {choice.table_id}",
            table.id,
            choice.table_id,
            CompositeSelectMetadata(
                sources=[
                    {"table_id": c.table_id, "weight": c.weight, "probability": c.probability}
                    for c in choice.candidates
                ],
                selected_table_id=choice.table_id,
            ),
        )

        ref = self.registry.resolve_table(choice.table_id, collection_id)
        if ref is None:
            raise ReferenceResolutionError(
                f"Source table not found: '{choice.table_id}' in composite '{table.id}'"
            )
        outcome = self.roll_table(ref.item, ctx, ref.collection_id, unique, exclude_ids)
        outcome.result_type = outcome.result_type or ref.item.result_type or table.result_type
        return outcome

    def _roll_collection(
        self,
        table: CollectionTable,
        ctx: EvaluationContext,
        collection_id: str,
        unique: bool,
        exclude_ids: Optional[set[str]],
    ) -> RollOutcome:
        sources: list[SimpleTable] = []
        for source_id in table.collections:
            ref = self.registry.resolve_table(source_id, collection_id)
            if ref is None:
                raise ReferenceResolutionError(
                    f"Source table not found: '{source_id}' in collection table '{table.id}'"
                )
            if not isinstance(ref.item, SimpleTable):
                raise ReferenceResolutionError(
                    f"Collection table '{table.id}' can only merge simple tables, "
                    f"'{source_id}' is {ref.item.table_type.value}"
                )
            sources.append(
                self.registry.resolve_inheritance(
                    ref.item, ref.collection_id, ctx.config.max_inheritance_depth
                )
            )

        pool = merge_collection_pool(sources, exclude_ids)
        merged_weight = total_weight(pool)
        ctx.trace.leaf(
            TraceNodeType.COLLECTION_MERGE,
            f"Merged {len(sources)} tables",
            table.id,
            f"{len(pool)} entries",
            CollectionMergeMetadata(
                source_tables=list(table.collections),
                total_entries=len(pool),
                total_weight=merged_weight,
            ),
        )
        if not pool and exclude_ids:
            self._trace_exhausted(table.id, ctx, unique, exclude_ids)
            return RollOutcome(text="", exhausted=True)

        selection = select_weighted(pool, ctx.roller, table.id, unique, sorted(exclude_ids or ()))
        ctx.trace.leaf(
            TraceNodeType.ENTRY_SELECT,
            f"Selected: {selection.item.entry_id}",
            table.id,
            selection.item.entry.value or "",
            EntrySelectMetadata(
                table_id=table.id,
                entry_id=selection.item.entry_id,
                selected_weight=selection.selected_weight,
                total_weight=selection.total_weight,
                probability=selection.probability,
                pool_size=selection.pool_size,
                unique=unique,
                excluded_ids=selection.excluded_ids,
                source_table_id=selection.item.source_table_id,
            ),
        )

        source_table = next(t for t in sources if t.id == selection.item.source_table_id)
        outcome = self._render_entry(
            selection.item,
            table.id,
            source_table.name or source_table.id,
            source_table.result_type,
            ctx,
            collection_id,
            description_table_id=source_table.id,
        )
        outcome.result_type = outcome.result_type or table.result_type
        return outcome

    def _trace_exhausted(
        self, table_id: str, ctx: EvaluationContext, unique: bool, exclude_ids: set[str]
    ) -> None:
        ctx.trace.leaf(
            TraceNodeType.ENTRY_SELECT,
            "No entry selected",
            table_id,
            "",
            EntrySelectMetadata(
                table_id=table_id,
                unique=unique,
                excluded_ids=sorted(exclude_ids),
            ),
        )

    def _render_entry(
        self,
        item: PoolEntry,
        placeholder_key: str,
        table_name: str,
        table_result_type: Optional[str],
        ctx: EvaluationContext,
        collection_id: str,
        description_table_id: Optional[str] = None,
    ) -> RollOutcome:
        """Evaluate a selected entry's sets, value and description."""
        entry = item.entry
        ctx.current_entry_id = item.entry_id

        sets: dict[str, Union[str, CaptureItem]] = {}
        if item.sets:
            sets = self.evaluate_set_values(item.sets, ctx, collection_id, placeholder_key)
            ctx.merge_placeholders(placeholder_key, sets)

        ctx.current_entry_description = entry.description
        text = self.evaluate_pattern(entry.value or "", ctx, collection_id)
        ctx.current_entry_description = None
        ctx.merge_placeholders(placeholder_key, {"value": text})

        description = None
        if entry.description:
            description = self.evaluate_pattern(entry.description, ctx, collection_id)
            ctx.add_description(
                description_table_id or placeholder_key, table_name, text, description
            )

        return RollOutcome(
            text=text,
            result_type=entry.result_type or table_result_type,
            placeholders=sets,
            entry_id=item.entry_id,
            description=description,
        )

    def evaluate_set_values(
        self,
        sets: dict[str, str],
        ctx: EvaluationContext,
        collection_id: str,
        table_id: str,
    ) -> dict[str, Union[str, CaptureItem]]:
        """
        Evaluate an entry's sets at selection time.

        Plain strings pass through. A value that is exactly one table
        reference becomes a nested CaptureItem so its own sets stay
        reachable; other patterns are rendered to text. A set that is
        re-entered while already being evaluated keeps its raw value.
        """
        evaluated: dict[str, Union[str, CaptureItem]] = {}
        for key, value in sets.items():
            if "{{" not in value:
                evaluated[key] = value
                continue

            set_key = f"{table_id}.{key}"
            if set_key in ctx.active_set_keys:
                logger.debug(f"Set value cycle at '{set_key}', keeping raw value")
                evaluated[key] = value
                continue

            ctx.active_set_keys.add(set_key)
            try:
                single = self._single_expression(value)
                if isinstance(single, p.TableRefExpr) and not single.properties:
                    ref = self.registry.resolve_table(single.ref, collection_id)
                    if ref is not None:
                        outcome = self.roll_table(ref.item, ctx, ref.collection_id)
                        evaluated[key] = CaptureItem(
                            value=outcome.text,
                            sets=dict(outcome.placeholders),
                            description=outcome.description,
                        )
                        continue
                evaluated[key] = self.evaluate_pattern(value, ctx, collection_id)
            finally:
                ctx.active_set_keys.discard(set_key)
        return evaluated

    def _roll_with_overflow(
        self,
        table: Table,
        ctx: EvaluationContext,
        collection_id: str,
        unique: bool,
        used_ids: list[str],
    ) -> Optional[RollOutcome]:
        """
        One draw of a multi-roll. Returns None when a unique draw runs out
        of entries and the overflow behavior is 'stop'.
        """
        if not unique:
            return self.roll_table(table, ctx, collection_id)

        outcome = self.roll_table(table, ctx, collection_id, True, set(used_ids))
        if not outcome.exhausted:
            return outcome

        behavior = ctx.config.unique_overflow_behavior
        if behavior == "error":
            raise SelectionError(
                f"Unique roll on '{table.id}' requested more items than the table holds "
                f"({len(used_ids)} available)"
            )
        if behavior == "cycle":
            used_ids.clear()
            return self.roll_table(table, ctx, collection_id, True, set())
        logger.warning(f"Unique roll on '{table.id}' stopped after {len(used_ids)} items")
        return None

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    def evaluate_template_body(self, template: Template, ctx: EvaluationContext, collection_id: str) -> str:
        """Shared staging, pattern and document conditionals for a template."""
        if template.shared:
            self.evaluate_shared(template.shared, ctx, collection_id, template.id)
        text = self.evaluate_pattern(template.pattern, ctx, collection_id)
        return self.apply_document_conditionals(text, ctx, collection_id)

    def evaluate_template_ref(self, template: Template, ctx: EvaluationContext, collection_id: str) -> str:
        """
        Evaluate a template referenced from inside another pattern.

        The template runs in its own scope frame with a private copy of the
        shared variables, and re-evaluates its own shared values, so its
        placeholders never leak into the referencing pattern.
        """
        with self._guard(ctx):
            ctx.trace.begin(
                TraceNodeType.TEMPLATE_REF,
                f"Template: {template.name or template.id}",
                template.id,
                TemplateRefMetadata(
                    template_id=template.id,
                    template_name=template.name,
                    collection_id=collection_id,
                    pattern=template.pattern,
                ),
            )
            with ctx.scopes.frame(f"template:{template.id}"), ctx.isolated_shared():
                for name in template.shared:
                    ctx.shared_variables.pop(name, None)
                    ctx.shared_sources.pop(name, None)
                text = self.evaluate_template_body(template, ctx, collection_id)
            ctx.trace.end(text)
            return text

    def trace_template_roll(self, template: Template, ctx: EvaluationContext, collection_id: str) -> str:
        """Top-level template evaluation, wrapped in a template_roll node."""
        ctx.trace.begin(
            TraceNodeType.TEMPLATE_ROLL,
            f"Template: {template.name or template.id}",
            template.id,
            TemplateRollMetadata(
                template_id=template.id,
                template_name=template.name,
                collection_id=collection_id,
            ),
        )
        text = self.evaluate_template_body(template, ctx, collection_id)
        ctx.trace.end(text)
        return text

    # =========================================================================
    # REFERENCES
    # =========================================================================

    def evaluate_table_ref(self, expr: p.TableRefExpr, ctx: EvaluationContext, collection_id: str) -> str:
        table_ref = self.registry.resolve_table(expr.ref, collection_id)
        if table_ref is not None:
            outcome = self.roll_table(table_ref.item, ctx, table_ref.collection_id)
            if not expr.properties:
                return outcome.text
            props: dict[str, Union[str, CaptureItem]] = {"value": outcome.text, **outcome.placeholders}
            item = CaptureItem(value=outcome.text, sets=props, description=outcome.description)
            value = self._traverse(item, expr.properties, expr.ref, strict=True)
            return self._dispatch_dynamic(value, ctx, table_ref.collection_id, expr.properties[-1])

        template_ref = self.registry.resolve_template(expr.ref, collection_id)
        if template_ref is not None:
            if expr.properties:
                raise ReferenceResolutionError(
                    f"Template '{expr.ref}' has no properties to access"
                )
            return self.evaluate_template_ref(template_ref.item, ctx, template_ref.collection_id)

        raise ReferenceResolutionError(f"Unknown table or template: '{expr.ref}'")

    def _resolve_count(self, count: p.CountSpec, ctx: EvaluationContext) -> int:
        if count.literal is not None:
            return count.literal
        if count.dice is not None:
            return max(0, self._roll_dice(count.dice, "roll count", ctx).total)

        value = ctx.resolve_variable(count.variable)
        if value is None and count.variable in ctx.capture_shared:
            value = ctx.capture_shared[count.variable].value
        if value is None:
            raise ReferenceResolutionError(f"Unknown variable '${count.variable}' used as roll count")
        try:
            return max(0, int(float(format_scalar(value))))
        except (OverflowError, ValueError):
            raise ParseError(f"Roll count '${count.variable}' is not a number (value '{value}')")

    def evaluate_multi_roll(self, expr: p.MultiRollExpr, ctx: EvaluationContext, collection_id: str) -> str:
        count = self._resolve_count(expr.count, ctx)
        separator = expr.separator if expr.separator is not None else ctx.config.default_separator

        table_ref = self.registry.resolve_table(expr.ref, collection_id)
        if table_ref is None:
            template_ref = self.registry.resolve_template(expr.ref, collection_id)
            if template_ref is None:
                raise ReferenceResolutionError(f"Unknown table or template: '{expr.ref}'")
            return self._multi_roll_template(expr, count, separator, template_ref.item, template_ref.collection_id, ctx)

        ctx.trace.begin(
            TraceNodeType.MULTI_ROLL,
            f"{count}x {expr.ref}",
            f"{expr.count.raw}*{expr.ref}",
        )
        results: list[str] = []
        used_ids: list[str] = []
        for _ in range(count):
            outcome = self._roll_with_overflow(
                table_ref.item, ctx, table_ref.collection_id, expr.unique, used_ids
            )
            if outcome is None:
                break
            if outcome.text:
                results.append(outcome.text)
            if outcome.entry_id:
                used_ids.append(outcome.entry_id)

        text = separator.join(results)
        ctx.trace.end(
            text,
            MultiRollMetadata(
                table_id=expr.ref,
                count=count,
                count_source=expr.count.source,
                unique=expr.unique,
                separator=separator,
            ),
        )
        return text

    def _multi_roll_template(
        self,
        expr: p.MultiRollExpr,
        count: int,
        separator: str,
        template: Template,
        template_collection: str,
        ctx: EvaluationContext,
    ) -> str:
        # Templates have no entry ids, so 'unique' does not apply
        ctx.trace.begin(
            TraceNodeType.MULTI_ROLL,
            f"{count}x {expr.ref} (template)",
            f"{expr.count.raw}*{expr.ref}",
        )
        results = []
        for _ in range(count):
            text = self.evaluate_template_ref(template, ctx, template_collection)
            if text:
                results.append(text)
        text = separator.join(results)
        ctx.trace.end(
            text,
            MultiRollMetadata(
                table_id=expr.ref,
                count=count,
                count_source=expr.count.source,
                unique=False,
                separator=separator,
                is_template=True,
            ),
        )
        return text

    def evaluate_again(self, expr: p.AgainExpr, ctx: EvaluationContext, collection_id: str) -> str:
        """Re-roll the table currently being rolled, never picking the current entry."""
        if ctx.current_table_id is None:
            raise ReferenceResolutionError("{{again}} used outside of a table")

        table_collection = ctx.current_table_collection or collection_id
        ref = self.registry.resolve_table(ctx.current_table_id, table_collection)
        if ref is None:
            raise ReferenceResolutionError(f"Unknown table: '{ctx.current_table_id}'")

        exclude_ids = {ctx.current_entry_id} if ctx.current_entry_id else set()
        separator = expr.separator if expr.separator is not None else ctx.config.default_separator
        results = []
        for _ in range(expr.count):
            outcome = self.roll_table(ref.item, ctx, ref.collection_id, expr.unique, set(exclude_ids))
            if outcome.exhausted:
                break
            if outcome.text:
                results.append(outcome.text)
            if outcome.entry_id and expr.unique:
                exclude_ids.add(outcome.entry_id)
        return separator.join(results)

    def evaluate_instance(self, expr: p.InstanceExpr, ctx: EvaluationContext, collection_id: str) -> str:
        """Roll once per label; later references with the same label reuse the result."""
        existing = ctx.instances.get(expr.label)
        if existing is not None:
            ctx.trace.leaf(
                TraceNodeType.INSTANCE,
                f"Instance: {expr.label} (cached)",
                f"{expr.ref}#{expr.label}",
                existing.text,
                InstanceMetadata(name=expr.label, table_id=existing.table_id, cached=True),
            )
            return existing.text

        ctx.trace.begin(
            TraceNodeType.INSTANCE,
            f"Instance: {expr.label}",
            f"{expr.ref}#{expr.label}",
            InstanceMetadata(name=expr.label, table_id=expr.ref, cached=False),
        )
        table_ref = self.registry.resolve_table(expr.ref, collection_id)
        if table_ref is not None:
            outcome = self.roll_table(table_ref.item, ctx, table_ref.collection_id)
            record = InstanceRecord(
                text=outcome.text,
                table_id=table_ref.item.id,
                collection_id=table_ref.collection_id,
                entry_id=outcome.entry_id,
            )
        else:
            template_ref = self.registry.resolve_template(expr.ref, collection_id)
            if template_ref is None:
                raise ReferenceResolutionError(f"Unknown table or template: '{expr.ref}'")
            record = InstanceRecord(
                text=self.evaluate_template_ref(template_ref.item, ctx, template_ref.collection_id),
                table_id=template_ref.item.id,
                collection_id=template_ref.collection_id,
            )
        ctx.instances[expr.label] = record
        ctx.trace.end(record.text)
        return record.text

    # =========================================================================
    # DICE AND MATH
    # =========================================================================

    def _trace_dice(self, result, ctx: EvaluationContext) -> None:
        ctx.trace.leaf(
            TraceNodeType.DICE_ROLL,
            f"Dice: {result.notation}",
            result.notation,
            result.total,
            DiceRollMetadata(
                expression=result.notation,
                rolls=list(result.rolls),
                kept=list(result.kept),
                modifier=result.modifier,
                operator=result.operator,
                exploded=result.exploded,
                breakdown=result.breakdown,
            ),
        )

    def _roll_dice(self, notation: str, reason: str, ctx: EvaluationContext) -> DiceResult:
        try:
            spec = parse_dice_notation(notation)
        except DiceNotationError as e:
            raise ParseError(str(e), f"dice:{notation}")
        if spec.count > ctx.config.max_dice_count:
            raise ParseError(
                f"Too many dice in '{notation}' (limit {ctx.config.max_dice_count})", f"dice:{notation}"
            )
        result = ctx.roller.roll(notation, reason=reason, max_exploding_dice=ctx.config.max_exploding_dice)
        self._trace_dice(result, ctx)
        return result

    def evaluate_dice(self, expr: p.DiceExpr, ctx: EvaluationContext) -> str:
        return str(self._roll_dice(expr.notation, "dice expression", ctx).total)

    def evaluate_math(self, expr: p.MathExpr, ctx: EvaluationContext, collection_id: str) -> str:
        expression = expr.expression
        if "{{" in expression:
            expression = self.evaluate_pattern(expression, ctx, collection_id)

        def resolve(ref: str) -> str:
            value = self.lookup_reference(ref, ctx)
            if value is None:
                raise ReferenceResolutionError(f"Unknown reference '{ref}' in math expression")
            return value

        result, substituted = evaluate_math(expression, resolve)
        ctx.trace.leaf(
            TraceNodeType.MATH_EVAL,
            f"Math: {expr.expression}",
            expr.expression,
            result,
            MathEvalMetadata(expression=expr.expression, substituted=substituted, result=result),
        )
        return format_scalar(result)

    # =========================================================================
    # VARIABLES AND PLACEHOLDERS
    # =========================================================================

    def lookup_reference(
        self, ref: str, ctx: EvaluationContext, subject: Optional[str] = None
    ) -> Optional[str]:
        """
        Raw value of a '$var', '@table.prop' or bare '$' (switch subject)
        reference, or None when it is undefined. No tables are rolled.
        """
        if ref == "$":
            return subject
        if ref.startswith("$"):
            name = ref[1:]
            if name in ctx.capture_shared:
                return ctx.capture_shared[name].value
            value = ctx.resolve_variable(name)
            if value is not None:
                return format_scalar(value)
            if name in ctx.captures:
                return ctx.config.default_separator.join(i.value for i in ctx.captures[name].items)
            return None
        if ref.startswith("@"):
            name, _, rest = ref[1:].partition(".")
            props = [seg.lstrip("@") for seg in rest.split(".")] if rest else ["value"]
            value = ctx.get_placeholder(name, props[0])
            for prop in props[1:]:
                if not isinstance(value, CaptureItem):
                    return None
                value = value.value if prop == "value" else value.sets.get(prop)
            return None if value is None else set_value_text(value)
        return None

    def evaluate_variable(self, expr: p.VariableExpr, ctx: EvaluationContext) -> str:
        name = expr.name
        if name in ctx.capture_shared:
            value, source = ctx.capture_shared[name].value, "captureShared"
        elif name in ctx.shared_variables:
            value, source = format_scalar(ctx.shared_variables[name]), "shared"
        elif name in ctx.static_variables:
            value, source = ctx.static_variables[name], "static"
        elif name in ctx.captures:
            items = ctx.captures[name].items
            value, source = ctx.config.default_separator.join(i.value for i in items), "capture"
        else:
            raise ReferenceResolutionError(f"Unknown variable: '${name}'")

        ctx.trace.leaf(
            TraceNodeType.VARIABLE_ACCESS,
            f"${name}",
            name,
            value,
            VariableAccessMetadata(name=name, source=source),
        )
        return value

    def evaluate_placeholder(self, expr: p.PlaceholderExpr, ctx: EvaluationContext, collection_id: str) -> str:
        label = "@" + ".".join((expr.name,) + expr.properties)

        if expr.name == "self":
            if expr.properties != ("description",):
                raise ReferenceResolutionError(f"Unknown property on @self: '{label}'")
            raw = ctx.current_entry_description or ""
            value = self.evaluate_pattern(raw, ctx, collection_id) if raw else ""
            ctx.trace.leaf(
                TraceNodeType.PLACEHOLDER_ACCESS,
                label,
                label,
                value,
                PlaceholderAccessMetadata(name="self", properties=["description"], found=bool(raw)),
            )
            return value

        properties = expr.properties or ("value",)
        first = ctx.get_placeholder(expr.name, properties[0])
        if first is None:
            raise ReferenceResolutionError(f"Placeholder not set: '@{expr.name}.{properties[0]}'")

        if len(properties) == 1:
            value = set_value_text(first)
        else:
            if not isinstance(first, CaptureItem):
                raise ReferenceResolutionError(f"Cannot access properties of plain value '{label}'")
            value = self._traverse(first, properties[1:], f"@{expr.name}.{properties[0]}", strict=True)

        resolved = self._dispatch_dynamic(value, ctx, collection_id, properties[-1])
        ctx.trace.leaf(
            TraceNodeType.PLACEHOLDER_ACCESS,
            label,
            label,
            resolved,
            PlaceholderAccessMetadata(
                name=expr.name,
                properties=list(properties),
                found=True,
                dynamic_table=value if resolved != value else None,
            ),
        )
        return resolved

    def _dispatch_dynamic(
        self, value: str, ctx: EvaluationContext, collection_id: str, prop: str = ""
    ) -> str:
        """
        If a property value names a table or template, roll it instead of
        returning the id. Repeats while the result names another one.
        """
        if prop in p.TERMINAL_PROPERTIES:
            return value

        current = value
        visited: set[str] = set()
        while current not in visited and CANDIDATE_ID.match(current):
            table_ref = self.registry.resolve_table(current, collection_id)
            if table_ref is not None:
                visited.add(current)
                current = self.roll_table(table_ref.item, ctx, table_ref.collection_id).text
                continue
            template_ref = self.registry.resolve_template(current, collection_id)
            if template_ref is not None:
                visited.add(current)
                current = self.evaluate_template_ref(template_ref.item, ctx, template_ref.collection_id)
                continue
            break
        return current

    # =========================================================================
    # CAPTURES
    # =========================================================================

    def evaluate_capture_multi_roll(
        self, expr: p.CaptureMultiRollExpr, ctx: EvaluationContext, collection_id: str
    ) -> str:
        """Roll N times, storing each roll's text and sets in ``$var``."""
        count = self._resolve_count(expr.count, ctx)
        separator = expr.separator if expr.separator is not None else ctx.config.default_separator

        table_ref = self.registry.resolve_table(expr.ref, collection_id)
        if table_ref is None:
            raise ReferenceResolutionError(f"Unknown table: '{expr.ref}'")

        ctx.trace.begin(
            TraceNodeType.CAPTURE_MULTI_ROLL,
            f"{count}x {expr.ref} >> ${expr.capture_var}",
            f"{expr.count.raw}*{expr.ref} >> ${expr.capture_var}",
        )

        items: list[CaptureItem] = []
        results: list[str] = []
        used_ids: list[str] = []
        for index in range(count):
            with ctx.scopes.frame(f"capture:{expr.capture_var}[{index}]"):
                outcome = self._roll_with_overflow(
                    table_ref.item, ctx, table_ref.collection_id, expr.unique, used_ids
                )
            if outcome is None:
                break
            if outcome.text:
                results.append(outcome.text)
                items.append(
                    CaptureItem(
                        value=outcome.text,
                        sets=dict(outcome.placeholders),
                        description=outcome.description,
                    )
                )
            if outcome.entry_id:
                used_ids.append(outcome.entry_id)

        ctx.set_capture(expr.capture_var, CaptureVariable(items=items))
        text = "" if expr.silent else separator.join(results)

        ctx.trace.end(
            text,
            CaptureMultiRollMetadata(
                table_id=expr.ref,
                capture_var=expr.capture_var,
                count=len(items),
                unique=expr.unique,
                silent=expr.silent,
                separator=separator,
                captured_values=[item.value for item in items],
            ),
        )
        return text

    def _traverse(
        self, item: CaptureItem, properties: tuple[str, ...], path: str, strict: bool
    ) -> str:
        """
        Follow a property chain through nested CaptureItems.

        ``value``, ``description`` and ``count`` end a chain. With
        ``strict`` a missing property raises; otherwise it yields ''.
        """
        current = item
        for position, prop in enumerate(properties):
            path = f"{path}.@{prop}"
            last = position == len(properties) - 1
            if prop == "value":
                return current.value
            if prop == "description":
                return current.description or ""
            if prop == "count":
                return "1"

            value = current.sets.get(prop)
            if value is None:
                if strict:
                    raise ReferenceResolutionError(f"Property not found: '{path}'")
                return ""
            if last:
                return set_value_text(value)
            if not isinstance(value, CaptureItem):
                if strict:
                    raise ReferenceResolutionError(f"Cannot chain through plain value at '{path}'")
                return ""
            current = value
        return current.value

    def evaluate_capture_access(
        self, expr: p.CaptureAccessExpr, ctx: EvaluationContext, collection_id: str
    ) -> str:
        label = f"${expr.var_name}"
        if expr.index is not None:
            label += f"[{expr.index}]"
        if expr.properties:
            label += "." + ".".join(f"@{prop}" for prop in expr.properties)
        separator = expr.separator if expr.separator is not None else ctx.config.default_separator
        last_prop = expr.properties[-1] if expr.properties else "value"

        capture = ctx.captures.get(expr.var_name)
        shared_item = ctx.capture_shared.get(expr.var_name)

        if capture is None and shared_item is not None:
            value = shared_item.value
            if expr.properties:
                value = self._traverse(shared_item, expr.properties, f"${expr.var_name}", strict=True)
                value = self._dispatch_dynamic(value, ctx, collection_id, last_prop)
            self._trace_capture_access(ctx, label, value, expr, True, 1, is_shared=True)
            return value

        if capture is None:
            raise ReferenceResolutionError(f"Capture variable not found: '${expr.var_name}'")

        first_prop = expr.properties[0] if expr.properties else None
        if first_prop == "count" and expr.index is None:
            value = str(capture.count)
            self._trace_capture_access(ctx, label, value, expr, True, capture.count)
            return value

        if expr.index is not None:
            index = expr.index + capture.count if expr.index < 0 else expr.index
            if index < 0 or index >= capture.count:
                logger.debug(f"Capture access out of bounds: {label} ({capture.count} items)")
                self._trace_capture_access(ctx, label, "", expr, False, capture.count)
                return ""
            item = capture.items[index]
            if expr.properties:
                value = self._traverse(item, expr.properties, f"${expr.var_name}[{expr.index}]", strict=True)
                value = self._dispatch_dynamic(value, ctx, collection_id, last_prop)
            else:
                value = item.value
            self._trace_capture_access(ctx, label, value, expr, True, capture.count)
            return value

        if first_prop and first_prop not in ("value", "count"):
            values = []
            for item in capture.items:
                text = self._traverse(item, expr.properties, f"${expr.var_name}", strict=False)
                if text:
                    values.append(self._dispatch_dynamic(text, ctx, collection_id, last_prop))
        elif first_prop == "value" or first_prop is None:
            values = [item.value for item in capture.items]
        else:
            values = []
        value = separator.join(values)
        self._trace_capture_access(ctx, label, value, expr, True, capture.count)
        return value

    def _trace_capture_access(
        self,
        ctx: EvaluationContext,
        label: str,
        value: str,
        expr: p.CaptureAccessExpr,
        found: bool,
        total_items: int,
        is_shared: bool = False,
    ) -> None:
        ctx.trace.leaf(
            TraceNodeType.CAPTURE_ACCESS,
            label,
            label,
            value,
            CaptureAccessMetadata(
                var_name=expr.var_name,
                index=expr.index,
                properties=list(expr.properties),
                found=found,
                total_items=total_items,
                is_capture_shared=is_shared,
            ),
            error=None if found else f"Index out of bounds ({total_items} items)",
        )

    def evaluate_collect(self, expr: p.CollectExpr, ctx: EvaluationContext) -> str:
        """Join one property across every captured item, skipping empties."""
        separator = expr.separator if expr.separator is not None else ctx.config.default_separator

        capture = ctx.captures.get(expr.var_name)
        if capture is not None:
            items = capture.items
        elif expr.var_name in ctx.capture_shared:
            items = [ctx.capture_shared[expr.var_name]]
        else:
            raise ReferenceResolutionError(f"Capture variable not found: '${expr.var_name}'")

        all_values = []
        for item in items:
            if expr.property == "value":
                all_values.append(item.value)
            elif expr.property == "description":
                all_values.append(item.description or "")
            else:
                value = item.sets.get(expr.property)
                all_values.append("" if value is None else set_value_text(value))

        present = [v for v in all_values if v != ""]
        result_values = list(dict.fromkeys(present)) if expr.unique else present
        text = separator.join(result_values)

        ctx.trace.leaf(
            TraceNodeType.COLLECT,
            f"collect:${expr.var_name}.{expr.property}",
            f"collect:${expr.var_name}.@{expr.property}",
            text,
            CollectMetadata(
                var_name=expr.var_name,
                property=expr.property,
                unique=expr.unique,
                separator=separator,
                all_values=present,
                result_values=result_values,
            ),
        )
        return text

    # =========================================================================
    # CONDITIONALS
    # =========================================================================

    def evaluate_switch(self, expr: p.SwitchExpr, ctx: EvaluationContext, collection_id: str) -> str:
        """
        First case whose condition holds wins; else the fallback, else ''.

        Quoted results are patterns; unquoted results are expressions.
        """
        subject = None
        if expr.subject is not None:
            subject = self.evaluate_inline(expr.subject, ctx, collection_id)

        def resolve(ref: str) -> Optional[str]:
            return self.lookup_reference(ref, ctx, subject)

        for index, case in enumerate(expr.cases):
            matched = evaluate_when(case.condition, resolve)
            ctx.trace.leaf(
                TraceNodeType.CONDITIONAL,
                f"switch[{case.condition}]",
                case.condition,
                matched,
                ConditionalMetadata(kind="switch", condition=case.condition, matched=matched, branch_index=index),
            )
            if matched:
                return self.evaluate_inline(case.result, ctx, collection_id)

        if expr.fallback is not None:
            return self.evaluate_inline(expr.fallback, ctx, collection_id)
        return ""

    def apply_document_conditionals(self, text: str, ctx: EvaluationContext, collection_id: str) -> str:
        collection = self.registry.get(collection_id)
        if collection is None or not collection.document.conditionals:
            return text

        def on_outcome(conditional, outcome: ConditionalOutcome) -> None:
            ctx.trace.leaf(
                TraceNodeType.CONDITIONAL,
                f"when {conditional.when}",
                conditional.when,
                outcome.text,
                ConditionalMetadata(
                    kind="document",
                    condition=conditional.when,
                    matched=outcome.matched,
                    action=conditional.action.value,
                ),
            )

        return apply_conditionals(
            collection.document.conditionals,
            text,
            resolve=lambda ref: self.lookup_reference(ref, ctx),
            evaluate_pattern=lambda pattern: self.evaluate_pattern(pattern, ctx, collection_id),
            set_variable=lambda name, value: ctx.set_shared(name, coerce_scalar(value)),
            on_outcome=on_outcome,
        )
