"""Euclidean-distance matching of face descriptors against known identities."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from facetrack.types import KnownIdentity

LOGGER = logging.getLogger("facetrack.recognition.matcher")


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Return ``sqrt(sum((a_i - b_i)^2))``; mismatched shapes are infinitely far apart."""
    a = np.asarray(a, dtype=np.float64).reshape(-1)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    if a.shape != b.shape or a.size == 0:
        return float("inf")
    return float(np.linalg.norm(a - b))


def best_match(
    descriptor: np.ndarray,
    identities: Sequence[KnownIdentity],
    threshold: float,
) -> Optional[Tuple[KnownIdentity, float]]:
    """Closest identity whose distance is strictly below ``threshold``."""
    if not identities or descriptor is None:
        return None
    best: Optional[KnownIdentity] = None
    best_distance = float("inf")
    for identity in identities:
        distance = euclidean_distance(descriptor, identity.embedding)
        if distance < best_distance:
            best, best_distance = identity, distance
    if best is None or not best_distance < threshold:
        return None
    return best, best_distance


def match_identity(
    descriptor: np.ndarray,
    identities: Sequence[KnownIdentity],
    threshold: float,
) -> Optional[KnownIdentity]:
    match = best_match(descriptor, identities, threshold)
    return match[0] if match is not None else None


def rank_identities(
    descriptor: np.ndarray,
    identities: Sequence[KnownIdentity],
    k: int = 3,
) -> List[Tuple[str, float]]:
    """Return the k nearest identities without applying any threshold."""
    if not identities or descriptor is None:
        return []
    distances = [
        (identity.display_name, euclidean_distance(descriptor, identity.embedding))
        for identity in identities
    ]
    distances.sort(key=lambda item: item[1])
    return distances[:k]
