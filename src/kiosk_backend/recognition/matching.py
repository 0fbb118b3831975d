"""
Best-match search over a catalog of known attendees.
One MatchEngine per vector kind; only the confidence function and the
threshold differ between kinds.
"""

import logging
from typing import Any, Callable, Iterable, NamedTuple, Optional, Tuple

from .similarity import cosine_confidence, euclidean_confidence

logger = logging.getLogger(__name__)

BIOMETRIC_MATCH_THRESHOLD = 0.6
EMBEDDING_MATCH_THRESHOLD = 0.75
PIXEL_MATCH_THRESHOLD = 0.8
CHECKOUT_MATCH_THRESHOLD = 0.7


class MatchResult(NamedTuple):
    is_match: bool
    confidence: float
    attendee_id: Optional[str] = None


NO_MATCH = MatchResult(False, 0.0, None)


class MatchEngine:
    """
    Linear scan for the highest-confidence catalog entry.

    A match needs best confidence strictly above the threshold. Among equal
    maxima the first entry in catalog order wins.
    """

    def __init__(self, name: str, confidence_fn: Callable[[Any, Any], float], threshold: float):
        self.name = name
        self.confidence_fn = confidence_fn
        self.threshold = threshold

    def find_best_match(self, query, catalog: Iterable[Tuple[str, Any]]) -> MatchResult:
        if query is None:
            return NO_MATCH

        best_id = None
        best_confidence = 0.0
        for attendee_id, candidate in catalog:
            if candidate is None:
                continue
            confidence = self.confidence_fn(query, candidate)
            if best_id is None or confidence > best_confidence:
                best_id, best_confidence = attendee_id, confidence

        if best_id is None:
            return NO_MATCH

        is_match = best_confidence > self.threshold
        logger.debug(
            f"[{self.name}] best={best_id} confidence={best_confidence:.3f} "
            f"threshold={self.threshold} match={is_match}"
        )
        return MatchResult(is_match, best_confidence, best_id if is_match else None)

    def __repr__(self):
        return f"<MatchEngine(name={self.name}, threshold={self.threshold})>"


def biometric_engine(threshold: float = BIOMETRIC_MATCH_THRESHOLD) -> MatchEngine:
    return MatchEngine("biometric", euclidean_confidence, threshold)


def embedding_engine(threshold: float = EMBEDDING_MATCH_THRESHOLD) -> MatchEngine:
    return MatchEngine("embedding", cosine_confidence, threshold)
