"""
Pattern evaluation engine for random table documents.

This module provides:
- RandomTableEngine, the public load/roll API
- EngineConfig and per-call RollOptions
- The expression parser and PatternEvaluator behind it
- Result and listing types returned to callers
"""

from tablecraft.engine.config import EngineConfig, RollOptions, UNIQUE_OVERFLOW_BEHAVIORS
from tablecraft.engine.results import (
    RollResult,
    DescriptionEntry,
    CollectionRef,
    TableInfo,
    TemplateInfo,
)
from tablecraft.engine.scope import (
    CaptureItem,
    CaptureVariable,
    EvaluationContext,
    ScopeFrame,
    ScopeStack,
)
from tablecraft.engine.parser import parse_expression, parse_pattern
from tablecraft.engine.evaluator import PatternEvaluator, RollOutcome
from tablecraft.engine.engine import RandomTableEngine

__all__ = [
    # Engine
    "RandomTableEngine",
    "EngineConfig",
    "RollOptions",
    "UNIQUE_OVERFLOW_BEHAVIORS",
    # Results
    "RollResult",
    "DescriptionEntry",
    "CollectionRef",
    "TableInfo",
    "TemplateInfo",
    # Evaluation internals
    "CaptureItem",
    "CaptureVariable",
    "EvaluationContext",
    "ScopeFrame",
    "ScopeStack",
    "PatternEvaluator",
    "RollOutcome",
    "parse_expression",
    "parse_pattern",
]
