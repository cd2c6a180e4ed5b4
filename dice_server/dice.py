"""
Dice notation parsing and rolling.

``NdS`` means "roll N dice with S sides each".  Rolls are deliberately
skewed towards low faces (Zipf distribution) unless the ``uniform``
distribution is configured; the demo exists to produce interesting
metric dimensions, not fair dice.
"""

import random
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from werkzeug.exceptions import BadRequest

from .constants import DEFAULT_FORBIDDEN_VALUES, DEFAULT_MAX_DICE_VALUE, ZIPF_S, ZIPF_V
from .observability.context import Context

_DIGITS_RE = re.compile(r"[0-9]+")


class DiceError(BadRequest):
    """Base for every rejected roll request (HTTP 400)."""


class DiceNotationError(DiceError):
    """The dice string is not of the form ``NdS`` with positive fields."""

    def __init__(self, notation: str, reason: str = "") -> None:
        message = f"expected dice notation like 2d20, got {notation}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.notation = notation


class ForbiddenValueError(DiceError):
    """Count or sides equal a value the service refuses to roll."""

    def __init__(self, value: int) -> None:
        super().__init__("tetraphobic" if value == 4 else f"forbidden value: {value}")
        self.value = value


@dataclass(frozen=True)
class DiceRules:
    """Validation limits applied by ``parse_dice``."""

    forbidden_values: FrozenSet[int] = DEFAULT_FORBIDDEN_VALUES
    max_value: int = DEFAULT_MAX_DICE_VALUE

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "DiceRules":
        dice = config.get("dice", {})
        return cls(
            forbidden_values=frozenset(dice.get("forbidden_values", DEFAULT_FORBIDDEN_VALUES)),
            max_value=int(dice.get("max_value", DEFAULT_MAX_DICE_VALUE)),
        )


def parse_dice(notation: str, rules: Optional[DiceRules] = None) -> Tuple[int, int]:
    """Parse ``NdS`` into ``(count, sides)``.

    The string is split on the first ``d``.  Both fields must be plain
    decimal digits in ``1..rules.max_value``.

    Raises:
        DiceNotationError: Malformed, zero or out-of-range fields.
        ForbiddenValueError: Either field is a forbidden value.
    """
    rules = rules or DiceRules()
    count_str, sep, sides_str = notation.partition("d")
    if not sep:
        raise DiceNotationError(notation)

    count = _parse_field(notation, count_str, "count", rules.max_value)
    sides = _parse_field(notation, sides_str, "sides", rules.max_value)

    for value in (count, sides):
        if value in rules.forbidden_values:
            raise ForbiddenValueError(value)
    return count, sides


def _parse_field(notation: str, field: str, label: str, max_value: int) -> int:
    if not _DIGITS_RE.fullmatch(field):
        raise DiceNotationError(notation, f"{label} is not a number")
    value = int(field)
    if value == 0:
        raise DiceNotationError(notation, f"{label} must be at least 1")
    if value > max_value:
        raise DiceNotationError(notation, f"{label} must be at most {max_value}")
    return value


# ── Rollers ──────────────────────────────────────────────────────


@lru_cache(maxsize=256)
def _zipf_cum_weights(sides: int, s: float, v: float) -> Tuple[float, ...]:
    # P(k) is proportional to (v + k) ** -s for k in 0..sides-1
    total = 0.0
    cumulative: List[float] = []
    for k in range(sides):
        total += (v + k) ** -s
        cumulative.append(total)
    return tuple(cumulative)


class ZipfRoller:
    """Rolls faces ``1..sides`` with probability falling off as a power law."""

    def __init__(self, s: float = ZIPF_S, v: float = ZIPF_V, rng: Optional[random.Random] = None):
        if s <= 1 or v < 1:
            raise ValueError("Zipf parameters require s > 1 and v >= 1")
        self.s = s
        self.v = v
        self._rng = rng or random.Random()

    def roll(self, sides: int) -> int:
        weights = _zipf_cum_weights(sides, self.s, self.v)
        return 1 + self._rng.choices(range(sides), cum_weights=weights)[0]


class UniformRoller:
    """A fair die."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def roll(self, sides: int) -> int:
        return self._rng.randint(1, sides)


def make_roller(distribution: str = "zipf", rng: Optional[random.Random] = None):
    """Return the roller configured by ``dice.distribution``."""
    if distribution == "zipf":
        return ZipfRoller(rng=rng)
    if distribution == "uniform":
        return UniformRoller(rng=rng)
    raise ValueError(f"Unknown dice distribution: {distribution!r}")


def roll_dice(context: Context, count: int, sides: int, counter, roller) -> int:
    """Roll ``count`` dice and return the sum.

    Adds a ``rolling dice`` event to the span in ``context`` and counts
    every individual roll on ``counter`` with the face as ``value``.
    """
    span = context.span
    if span is not None:
        span.add_event("rolling dice", {"n": count, "sides": sides})

    total = 0
    for _ in range(count):
        roll = roller.roll(sides)
        counter.add(1, {"value": roll})
        total += roll
    return total
