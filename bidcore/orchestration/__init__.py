"""Multi-model orchestration: item matching, merge strategies and consensus."""

from .consensus import ConsensusEngine, ALL_AGREE
from .matching import ItemMatcher, Cluster, text_similarity
from .strategies import MajorityVoteStrategy, WeightedAverageStrategy, Vote

__all__ = [
    'ConsensusEngine',
    'ALL_AGREE',
    'ItemMatcher',
    'Cluster',
    'text_similarity',
    'MajorityVoteStrategy',
    'WeightedAverageStrategy',
    'Vote',
]
