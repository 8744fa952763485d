"""
Core data models for tablecraft.

Holds the dice roller used by every random draw the engine makes. The
roller owns an injectable ``random.Random`` so that an engine (or a test)
can be made fully deterministic by seeding it.

Usage:
    roller = DiceRoller(seed=42)
    result = roller.roll("4d6k3", reason="ability score")
    print(result.total, result.kept)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import logging
import random
import re

logger = logging.getLogger(__name__)


# =============================================================================
# DICE NOTATION
# =============================================================================

# NdM, optional exploding "!", optional keep (k/kh/kl), optional flat modifier.
DICE_PATTERN = re.compile(
    r"^\s*(?P<count>\d*)\s*d\s*(?P<sides>\d+)"
    r"(?P<explode>!)?"
    r"(?:(?P<keep>kh|kl|k)(?P<keep_count>\d+))?"
    r"(?:\s*(?P<operator>[+\-*])\s*(?P<modifier>\d+))?\s*$",
    re.IGNORECASE,
)


class DiceNotationError(ValueError):
    """Raised when a dice expression cannot be parsed."""


@dataclass
class DiceSpec:
    """Parsed form of a dice expression."""
    count: int
    sides: int
    exploding: bool = False
    keep_mode: Optional[str] = None  # "highest" or "lowest"
    keep_count: Optional[int] = None
    operator: Optional[str] = None  # "+", "-" or "*"
    modifier: int = 0


def parse_dice_notation(notation: str) -> DiceSpec:
    """
    Parse dice notation such as '2d6', '1d20+5', '4d6k3', '1d6*10'.

    Raises:
        DiceNotationError: if the notation is malformed or out of range
    """
    match = DICE_PATTERN.match(notation)
    if not match:
        raise DiceNotationError(f"Invalid dice notation: '{notation}'")

    count = int(match.group("count")) if match.group("count") else 1
    sides = int(match.group("sides"))
    if sides < 1:
        raise DiceNotationError(f"Dice must have at least one side: '{notation}'")

    keep_mode = None
    keep_count = None
    if match.group("keep"):
        keep_mode = "lowest" if match.group("keep").lower() == "kl" else "highest"
        keep_count = int(match.group("keep_count"))

    operator = match.group("operator")
    modifier = int(match.group("modifier")) if operator else 0

    return DiceSpec(
        count=count,
        sides=sides,
        exploding=bool(match.group("explode")),
        keep_mode=keep_mode,
        keep_count=keep_count,
        operator=operator,
        modifier=modifier,
    )


def is_dice_notation(text: str) -> bool:
    """Check whether text is a complete, rollable dice expression."""
    try:
        parse_dice_notation(text)
    except DiceNotationError:
        return False
    return True


# =============================================================================
# DICE ROLLER
# =============================================================================


@dataclass
class DiceResult:
    """Result of a dice roll with full information."""
    notation: str
    rolls: list[int]
    kept: list[int]
    modifier: int
    total: int
    reason: str = ""
    operator: Optional[str] = None
    exploded: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def breakdown(self) -> str:
        """Human readable account of the roll, e.g. '[6, 4, 3] + 2 = 15'."""
        text = f"{self.rolls}"
        if self.kept != self.rolls:
            text += f" keep {self.kept}"
        if self.operator:
            text += f" {self.operator} {self.modifier}"
        return f"{text} = {self.total}"

    def __str__(self) -> str:
        return f"{self.notation}: {self.breakdown}"


class DiceRoller:
    """
    Randomization interface for the engine.

    All random draws (dice, weighted selection) go through one roller so a
    seed makes an entire evaluation reproducible. Each engine owns its own
    roller; there is no process-wide instance.
    """

    def __init__(
        self,
        seed: Optional[int] = None,
        rng: Optional[random.Random] = None,
        max_exploding_dice: int = 100,
    ):
        self._rng = rng if rng is not None else random.Random(seed)
        self._seed = seed
        self.max_exploding_dice = max_exploding_dice
        self._roll_log: list[DiceResult] = []

    @property
    def rng(self) -> random.Random:
        return self._rng

    def set_seed(self, seed: int) -> None:
        """Re-seed the underlying generator for reproducibility."""
        self._seed = seed
        self._rng.seed(seed)

    def randint(self, low: int, high: int) -> int:
        return self._rng.randint(low, high)

    def random(self) -> float:
        """Uniform float in [0.0, 1.0)."""
        return self._rng.random()

    def roll(
        self,
        dice: str,
        reason: str = "",
        max_exploding_dice: Optional[int] = None,
    ) -> DiceResult:
        """
        Roll dice using standard notation.

        Supports 'NdM', keep highest ('4d6k3' / '4d6kh3'), keep lowest
        ('2d20kl1'), exploding dice ('3d6!') and a flat modifier applied
        to the kept sum ('1d20+5', '1d8-2', '1d6*10').

        Args:
            dice: Dice notation string
            reason: Why this roll is being made (for logging)
            max_exploding_dice: Cap on extra dice added by explosions

        Returns:
            DiceResult with raw rolls, kept rolls and total
        """
        spec = parse_dice_notation(dice)
        limit = self.max_exploding_dice if max_exploding_dice is None else max_exploding_dice

        rolls = [self._rng.randint(1, spec.sides) for _ in range(spec.count)]

        exploded = False
        if spec.exploding and spec.sides > 1:
            extra = 0
            pending = sum(1 for r in rolls if r == spec.sides)
            while pending and extra < limit:
                value = self._rng.randint(1, spec.sides)
                rolls.append(value)
                extra += 1
                exploded = True
                pending -= 1
                if value == spec.sides:
                    pending += 1
            if pending:
                logger.debug(f"Exploding dice capped at {limit} extra dice for '{dice}'")

        if spec.keep_count is not None:
            ordered = sorted(rolls, reverse=spec.keep_mode == "highest")
            kept = ordered[: spec.keep_count]
        else:
            kept = list(rolls)

        subtotal = sum(kept)
        if spec.operator == "+":
            total = subtotal + spec.modifier
        elif spec.operator == "-":
            total = subtotal - spec.modifier
        elif spec.operator == "*":
            total = subtotal * spec.modifier
        else:
            total = subtotal

        result = DiceResult(
            notation=dice.strip(),
            rolls=rolls,
            kept=kept,
            modifier=spec.modifier,
            total=total,
            reason=reason,
            operator=spec.operator,
            exploded=exploded,
        )
        logger.debug(f"Rolled {result}")

        self._roll_log.append(result)
        return result

    def get_roll_log(self) -> list[DiceResult]:
        """Get every roll made by this roller."""
        return self._roll_log.copy()

    def clear_roll_log(self) -> None:
        """Clear the roll log."""
        self._roll_log = []
