from __future__ import annotations

from functools import lru_cache
from typing import Any, Iterable, Optional

import numpy as np

from .config import get_settings
from .exceptions import DimensionMismatch
from .types import FaceDescriptor, MatchResult, RosterEntry

DEFAULT_MATCH_THRESHOLD = 0.6


def _as_probe(probe: Any) -> FaceDescriptor:
    if isinstance(probe, FaceDescriptor):
        return probe
    return FaceDescriptor.from_values(probe)


def euclidean_distance(a: Any, b: Any) -> float:
    first = _as_probe(a).values
    second = _as_probe(b).values
    if first.size != second.size:
        raise DimensionMismatch(
            f"Descriptors must have the same length ({first.size} != {second.size})."
        )
    return float(np.sqrt(np.sum((first - second) ** 2)))


def match(
    probe: Any,
    roster: Iterable[RosterEntry],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> MatchResult:
    """Return the closest roster identity strictly under ``threshold``.

    Entries without a descriptor, or whose descriptor length differs from the
    probe, are skipped. Ties on the minimum distance go to the entry seen
    first, so results are deterministic for a given roster ordering.
    """
    query = _as_probe(probe).values

    candidates = [
        entry
        for entry in roster
        if entry.descriptor is not None and len(entry.descriptor) == query.size
    ]
    if not candidates:
        return MatchResult.no_match()

    matrix = np.vstack([entry.descriptor.values for entry in candidates])
    distances = np.sqrt(np.sum((matrix - query) ** 2, axis=1))
    # argmin returns the first index among equal minima.
    idx = int(np.argmin(distances))
    best = float(distances[idx])
    if best >= threshold:
        return MatchResult.no_match()
    return MatchResult.matched_with(candidates[idx].identity, best)


class FaceMatcher:
    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD) -> None:
        self.threshold = threshold

    def match(
        self,
        probe: Any,
        roster: Iterable[RosterEntry],
        threshold: Optional[float] = None,
    ) -> MatchResult:
        return match(probe, roster, self.threshold if threshold is None else threshold)


@lru_cache(maxsize=1)
def get_matcher() -> FaceMatcher:
    settings = get_settings()
    return FaceMatcher(threshold=settings.match_threshold)
