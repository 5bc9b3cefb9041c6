"""Merge strategies for combining values reported by several models."""

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Vote:
    """A value reported by one model, with that model's confidence and roster index."""
    value: Any
    confidence: float
    model_index: int
    model_id: str


class WeightedAverageStrategy:
    """
    Numeric merge: confidence-weighted mean of the reported values.

    Falls back to the plain mean when every weight is zero. Values are
    rounded to ``precision`` decimals.
    """

    def __init__(self, tolerance: float = 0.15, precision: int = 2):
        self.tolerance = tolerance
        self.precision = precision
        logger.debug(f"Initialized WeightedAverageStrategy (tolerance={tolerance})")

    def merge(self, votes: Sequence[Vote]) -> Optional[float]:
        values = [v.value for v in votes if v.value is not None]
        if not values:
            return None
        weights = [max(v.confidence, 0.0) for v in votes if v.value is not None]
        if sum(weights) > 0:
            merged = float(np.average(values, weights=weights))
        else:
            merged = float(np.mean(values))
        return round(merged, self.precision)

    @staticmethod
    def spread(votes: Sequence[Vote]) -> float:
        """
        Relative spread (max - min) / min of the reported values.

        Returns 0.0 for fewer than two values or identical values, and
        infinity when the minimum is zero but the maximum is not.
        """
        values = [v.value for v in votes if v.value is not None]
        if len(values) < 2:
            return 0.0
        low, high = min(values), max(values)
        if high == low:
            return 0.0
        if low <= 0:
            return math.inf
        return (high - low) / low

    def is_disagreement(self, votes: Sequence[Vote]) -> bool:
        return self.spread(votes) > self.tolerance


class MajorityVoteStrategy:
    """
    Categorical merge: the most common value wins.

    Ties are broken by preferring the value backed by the highest single
    confidence, then the value first reported by the lowest model index.
    """

    def __init__(self):
        logger.debug("Initialized MajorityVoteStrategy")

    def merge(self, votes: Sequence[Vote]) -> Any:
        cast = [v for v in votes if v.value is not None]
        if not cast:
            return None

        counts = Counter(v.value for v in cast)

        def rank(value: Any):
            backers = [v for v in cast if v.value == value]
            return (
                -counts[value],
                -max(v.confidence for v in backers),
                min(v.model_index for v in backers),
            )

        return min(counts, key=rank)

    @staticmethod
    def is_disagreement(votes: Sequence[Vote]) -> bool:
        return len({v.value for v in votes if v.value is not None}) > 1

    @staticmethod
    def distinct_values(votes: Sequence[Vote]) -> List[Any]:
        seen: List[Any] = []
        for vote in sorted(votes, key=lambda v: v.model_index):
            if vote.value is not None and vote.value not in seen:
                seen.append(vote.value)
        return seen
