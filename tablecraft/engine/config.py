"""
Engine configuration.

EngineConfig holds engine-wide limits. A document may override the limits
in its metadata; ``for_document`` returns the config that applies to rolls
made in that document's collection.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from tablecraft.tables.table_types import SUPPORTED_SPEC_VERSIONS, DocumentMetadata

UNIQUE_OVERFLOW_BEHAVIORS = ("stop", "cycle", "error")


@dataclass
class EngineConfig:
    """Configuration for a RandomTableEngine."""

    max_recursion_depth: int = 50
    max_exploding_dice: int = 100
    max_dice_count: int = 1000  # dice rolled by one NdM term
    max_inheritance_depth: int = 5

    # What a unique multi-roll does once the pool runs dry:
    # stop (return fewer items), cycle (allow repeats) or error (SelectionError)
    unique_overflow_behavior: str = "stop"

    # Spec versions
    supported_spec_versions: tuple[str, ...] = field(default_factory=lambda: SUPPORTED_SPEC_VERSIONS)
    strict_spec_version: bool = False  # reject, rather than warn on, unsupported versions

    # Output
    enable_trace_by_default: bool = False
    default_separator: str = ", "

    def __post_init__(self):
        """Validate limits."""
        for name in (
            "max_recursion_depth",
            "max_exploding_dice",
            "max_dice_count",
            "max_inheritance_depth",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.unique_overflow_behavior not in UNIQUE_OVERFLOW_BEHAVIORS:
            raise ValueError(
                f"unique_overflow_behavior must be one of {UNIQUE_OVERFLOW_BEHAVIORS}, "
                f"got '{self.unique_overflow_behavior}'"
            )
        self.supported_spec_versions = tuple(self.supported_spec_versions)

    def for_document(self, metadata: Optional[DocumentMetadata]) -> "EngineConfig":
        """Apply a document's metadata overrides on top of this config."""
        if metadata is None:
            return self
        overrides: dict[str, Any] = {}
        if metadata.max_recursion_depth is not None:
            overrides["max_recursion_depth"] = int(metadata.max_recursion_depth)
        if metadata.max_exploding_dice is not None:
            overrides["max_exploding_dice"] = int(metadata.max_exploding_dice)
        if metadata.max_inheritance_depth is not None:
            overrides["max_inheritance_depth"] = int(metadata.max_inheritance_depth)
        if metadata.unique_overflow_behavior is not None:
            overrides["unique_overflow_behavior"] = metadata.unique_overflow_behavior
        if not overrides:
            return self
        return replace(self, **overrides)


@dataclass
class RollOptions:
    """Per-call options for roll(), roll_template() and evaluate_raw_pattern()."""

    enable_trace: Optional[bool] = None
    seed: Optional[int] = None

    @classmethod
    def coerce(cls, options: Any) -> "RollOptions":
        """Accept RollOptions, None, or a dict using either key style."""
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, dict):
            enable_trace = options.get("enable_trace", options.get("enableTrace"))
            return cls(enable_trace=enable_trace, seed=options.get("seed"))
        raise TypeError(f"Unsupported roll options: {options!r}")
