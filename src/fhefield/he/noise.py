"""
Noise model.

Pure functions over noise levels. Nothing here looks at payload bytes:
the same estimate drives circuit planning, engine accounting and the
auto-bootstrap decision.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from .constants import MAX_NOISE_LEVEL
from .core import Ciphertext
from .params import GrowthFactors

ADDITIVE_OPERATIONS = frozenset({"add", "subtract"})

_DEFAULT_GROWTH = GrowthFactors()


def estimate(
    operation: str,
    input_noise_levels: Sequence[float],
    growth: Optional[GrowthFactors] = None,
) -> float:
    """
    Noise after applying ``operation`` to inputs with the given noise levels.

        add / subtract  max(levels) + growth.add
        multiply        product(levels) * growth.multiply
        rotate          max(levels) * growth.rotate
        other           max(levels)
    """
    if not input_noise_levels:
        raise ValueError("at least one input noise level is required")
    growth = growth or _DEFAULT_GROWTH
    operation = operation.lower()

    if operation in ADDITIVE_OPERATIONS:
        return max(input_noise_levels) + growth.add
    if operation == "multiply":
        return math.prod(input_noise_levels) * growth.multiply
    if operation == "rotate":
        return max(input_noise_levels) * growth.rotate
    return max(input_noise_levels)


def is_exhausted(noise_level: float, max_noise: float = MAX_NOISE_LEVEL) -> bool:
    """Exhausted means strictly above the maximum."""
    return noise_level > max_noise


def remaining_additions(noise_level: float, growth: Optional[GrowthFactors] = None) -> int:
    """How many more additive steps fit before the budget is exceeded."""
    growth = growth or _DEFAULT_GROWTH
    if is_exhausted(noise_level):
        return 0
    return int(math.floor((MAX_NOISE_LEVEL - noise_level) / growth.add))


@dataclass(frozen=True)
class NoiseEstimate:
    """Noise budget report for one ciphertext."""

    current_noise: float
    max_noise: float
    remaining_computations: int
    requires_bootstrapping: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_noise": self.current_noise,
            "max_noise": self.max_noise,
            "remaining_computations": self.remaining_computations,
            "requires_bootstrapping": self.requires_bootstrapping,
        }


def noise_estimate(ciphertext: Ciphertext, growth: Optional[GrowthFactors] = None) -> NoiseEstimate:
    return NoiseEstimate(
        current_noise=ciphertext.noise_level,
        max_noise=MAX_NOISE_LEVEL,
        remaining_computations=remaining_additions(ciphertext.noise_level, growth),
        requires_bootstrapping=is_exhausted(ciphertext.noise_level),
    )


__all__ = [
    "estimate",
    "is_exhausted",
    "remaining_additions",
    "NoiseEstimate",
    "noise_estimate",
]
