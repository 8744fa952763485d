"""
Pytest fixtures for the tablecraft test suite.

Provides seeded dice rollers, engines and a document builder.
"""

import pytest
from typing import Any

from tablecraft.data_models import DiceRoller
from tablecraft.engine import EngineConfig, RandomTableEngine

from helpers import make_document


# =============================================================================
# DICE FIXTURES
# =============================================================================


@pytest.fixture
def seeded_roller():
    """Provide a seeded DiceRoller for reproducible tests."""
    roller = DiceRoller(seed=42)
    yield roller
    roller.clear_roll_log()


@pytest.fixture
def clean_roller():
    """Provide an unseeded DiceRoller."""
    return DiceRoller()


# =============================================================================
# ENGINE FIXTURES
# =============================================================================


@pytest.fixture
def engine():
    """Engine with default configuration and a fixed seed."""
    return RandomTableEngine(seed=1234)


@pytest.fixture
def seeded_engine():
    """Factory for engines with a given seed and config overrides."""

    def _make(seed: int = 42, **config: Any) -> RandomTableEngine:
        return RandomTableEngine(config=EngineConfig(**config), seed=seed)

    return _make


@pytest.fixture
def document_builder():
    """Expose make_document to tests."""
    return make_document
