"""
Weighted selection over table entries and composite sources.

A pool is a list of PoolEntry items in document order. Selection draws a
uniform number in [0, total_weight) and walks the prefix sums, returning the
first item whose cumulative weight exceeds the draw.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional
import logging

from tablecraft.data_models import DiceRoller
from tablecraft.errors import SelectionError
from tablecraft.tables.table_types import CompositeTable, Entry, SimpleTable

logger = logging.getLogger(__name__)


@dataclass
class PoolEntry:
    """An entry as it sits in a weighted pool."""
    entry: Entry
    entry_id: str
    weight: float
    source_table_id: str
    sets: dict[str, str] = field(default_factory=dict)


@dataclass
class Selection:
    """Outcome of a weighted draw plus the metadata the trace records."""
    item: PoolEntry
    selected_weight: float
    total_weight: float
    probability: float
    pool_size: int
    unique: bool = False
    excluded_ids: list[str] = field(default_factory=list)


@dataclass
class SourceCandidate:
    table_id: str
    weight: float
    probability: float


@dataclass
class SourceSelection:
    """Outcome of choosing a composite table's source."""
    table_id: str
    candidates: list[SourceCandidate]
    total_weight: float


def build_weighted_pool(
    table: SimpleTable,
    exclude_ids: Optional[Iterable[str]] = None,
    source_table_id: Optional[str] = None,
) -> list[PoolEntry]:
    """
    Build the selectable pool for a (fully resolved) simple table.

    Entries whose id is in ``exclude_ids`` and entries with non-positive
    weight are left out. Each pool entry carries its effective sets:
    the table's default_sets overlaid with the entry's own sets.
    """
    excluded = set(exclude_ids or ())
    pool = []
    for index, entry in enumerate(table.entries):
        entry_id = table.entry_id(index)
        if entry_id in excluded:
            continue
        weight = entry.effective_weight
        if weight <= 0:
            continue
        pool.append(
            PoolEntry(
                entry=entry,
                entry_id=entry_id,
                weight=weight,
                source_table_id=source_table_id or table.id,
                sets={**table.default_sets, **entry.sets},
            )
        )
    return pool


def merge_collection_pool(
    tables: list[SimpleTable],
    exclude_ids: Optional[Iterable[str]] = None,
) -> list[PoolEntry]:
    """Merge several simple tables into one pool, tagging each entry's source."""
    excluded = list(exclude_ids or ())
    merged: list[PoolEntry] = []
    for table in tables:
        merged.extend(build_weighted_pool(table, excluded))
    return merged


def total_weight(pool: list[PoolEntry]) -> float:
    return sum(item.weight for item in pool)


def select_weighted(
    pool: list[PoolEntry],
    roller: DiceRoller,
    table_id: str = "",
    unique: bool = False,
    excluded_ids: Optional[Iterable[str]] = None,
) -> Selection:
    """
    Pick one entry from the pool by weight.

    Raises:
        SelectionError: if the pool is empty or its weights sum to <= 0
    """
    total = total_weight(pool)
    if not pool:
        raise SelectionError(f"No selectable entries in table '{table_id}'")
    if total <= 0:
        raise SelectionError(f"Total weight of table '{table_id}' must be positive (got {total})")

    draw = roller.random() * total
    cumulative = 0.0
    chosen = pool[-1]
    for item in pool:
        cumulative += item.weight
        if cumulative > draw:
            chosen = item
            break

    logger.debug(f"Selected '{chosen.entry_id}' from '{table_id}' ({chosen.weight}/{total})")

    return Selection(
        item=chosen,
        selected_weight=chosen.weight,
        total_weight=total,
        probability=chosen.weight / total,
        pool_size=len(pool),
        unique=unique,
        excluded_ids=list(excluded_ids or ()),
    )


def select_source(table: CompositeTable, roller: DiceRoller) -> SourceSelection:
    """
    Choose one source of a composite table by weight.

    Raises:
        SelectionError: if the table has no sources or a non-positive total
    """
    sources = [s for s in table.sources if s.weight > 0]
    total = sum(s.weight for s in sources)
    if not sources or total <= 0:
        raise SelectionError(f"Composite table '{table.id}' has no selectable sources")

    candidates = [
        SourceCandidate(table_id=s.table_id, weight=s.weight, probability=s.weight / total)
        for s in sources
    ]

    draw = roller.random() * total
    cumulative = 0.0
    chosen = sources[-1]
    for source in sources:
        cumulative += source.weight
        if cumulative > draw:
            chosen = source
            break

    return SourceSelection(table_id=chosen.table_id, candidates=candidates, total_weight=total)
