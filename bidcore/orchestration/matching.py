"""Cross-model item identity: deciding when two reported items are the same thing.

Two entries match when all of these hold:

- their normalized labels have similarity >= ``similarity_threshold``, where
  similarity is the larger of the difflib ratio and the token Jaccard index;
- they share a category, or the similarity is at least ``strong_similarity``;
- their locations are compatible: when both carry a model-supplied bounding
  box, boxes on the same page with IoU >= ``iou_threshold``; when both carry
  a textual location, token overlap >= ``location_overlap``. Either signal
  matching is enough. Entries with no comparable location signal are
  treated as compatible.

Clustering is greedy and deterministic: models are visited in roster order
and each model's entries in the order the model listed them. An entry joins
the existing cluster whose seed (first member) it matches best; ties go to
the earliest cluster. A cluster never holds two entries from the same model.
"""

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import List, Optional, Sequence, Tuple, Union

from ..models.items import ExtractedItem, AnalysisIssue

logger = logging.getLogger(__name__)

Entry = Union[ExtractedItem, AnalysisIssue]

_NON_ALNUM = re.compile(r'[^a-z0-9]+')


def normalize_text(text: Optional[str]) -> str:
    """Lowercase and collapse punctuation/whitespace to single spaces."""
    if not text:
        return ""
    return _NON_ALNUM.sub(' ', text.lower()).strip()


def _tokens(text: str) -> set:
    return set(text.split()) if text else set()


def text_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Similarity of two labels in [0, 1].

    Args:
        a: First label
        b: Second label

    Returns:
        max(difflib ratio, token Jaccard) of the normalized labels
    """
    left, right = normalize_text(a), normalize_text(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0

    ratio = SequenceMatcher(None, left, right).ratio()
    left_tokens, right_tokens = _tokens(left), _tokens(right)
    jaccard = len(left_tokens & right_tokens) / len(left_tokens | right_tokens)
    return max(ratio, jaccard)


def location_overlap(a: Optional[str], b: Optional[str]) -> float:
    """Token overlap of two location strings relative to the shorter one."""
    left, right = _tokens(normalize_text(a)), _tokens(normalize_text(b))
    if not left or not right:
        return 0.0
    return len(left & right) / min(len(left), len(right))


@dataclass
class Contribution:
    """One model's entry inside a cluster."""
    model_index: int
    model_id: str
    entry: Entry


@dataclass
class Cluster:
    """Entries from different models judged to be the same real-world item."""
    members: List[Contribution] = field(default_factory=list)

    @property
    def seed(self) -> Contribution:
        return self.members[0]

    @property
    def support(self) -> int:
        return len({m.model_id for m in self.members})

    @property
    def model_ids(self) -> List[str]:
        return [m.model_id for m in sorted(self.members, key=lambda m: m.model_index)]

    @property
    def representative(self) -> Contribution:
        """Highest-confidence member; lowest model index on ties."""
        return min(self.members, key=lambda m: (-m.entry.confidence, m.model_index))

    def has_model(self, model_id: str) -> bool:
        return any(m.model_id == model_id for m in self.members)


class ItemMatcher:
    """Decides item identity across models and groups entries into clusters."""

    def __init__(
        self,
        similarity_threshold: float = 0.6,
        strong_similarity: float = 0.85,
        iou_threshold: float = 0.3,
        location_overlap_threshold: float = 0.5,
    ):
        self.similarity_threshold = similarity_threshold
        self.strong_similarity = strong_similarity
        self.iou_threshold = iou_threshold
        self.location_overlap_threshold = location_overlap_threshold

    def locations_compatible(self, a: Entry, b: Entry) -> bool:
        box_a, box_b = a.bounding_box, b.bounding_box
        boxes_known = not box_a.estimated and not box_b.estimated
        text_known = bool(normalize_text(a.location)) and bool(normalize_text(b.location))

        if not boxes_known and not text_known:
            return True
        if boxes_known and box_a.iou(box_b) >= self.iou_threshold:
            return True
        if text_known and location_overlap(a.location, b.location) >= self.location_overlap_threshold:
            return True
        return False

    def score(self, a: Entry, b: Entry) -> float:
        """
        Match score of two entries; 0.0 when they are not the same item.

        Args:
            a: Entry from one model
            b: Entry from another model

        Returns:
            Label similarity when the entries match, else 0.0
        """
        similarity = text_similarity(a.label, b.label)
        if similarity < self.similarity_threshold:
            return 0.0
        if a.category != b.category and similarity < self.strong_similarity:
            return 0.0
        if not self.locations_compatible(a, b):
            return 0.0
        return similarity

    def cluster(self, per_model: Sequence[Tuple[int, str, Sequence[Entry]]]) -> List[Cluster]:
        """
        Group entries from several models into identity clusters.

        Args:
            per_model: (model_index, model_id, entries) for each successful model

        Returns:
            Clusters in creation order
        """
        clusters: List[Cluster] = []

        for model_index, model_id, entries in sorted(per_model, key=lambda t: t[0]):
            for entry in entries:
                best: Optional[Cluster] = None
                best_score = 0.0
                for candidate in clusters:
                    if candidate.has_model(model_id):
                        continue
                    score = self.score(candidate.seed.entry, entry)
                    if score > best_score:
                        best, best_score = candidate, score

                contribution = Contribution(model_index=model_index, model_id=model_id, entry=entry)
                if best is None:
                    clusters.append(Cluster(members=[contribution]))
                else:
                    best.members.append(contribution)

        logger.debug(
            f"Clustered {sum(len(t[2]) for t in per_model)} entries from "
            f"{len(per_model)} models into {len(clusters)} clusters"
        )
        return clusters
