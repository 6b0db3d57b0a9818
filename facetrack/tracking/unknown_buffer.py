"""Buffer of unrecognized faces and the confirmation state machine for registration.

A face moves through ``absent -> candidate -> pending -> (registered | abandoned)``.
Candidates are promoted to a pending registration only after they have been
re-observed for ``confirmation_window_s``; candidates that go unseen for
``staleness_window_s`` are dropped silently, so faces flickering through the
frame never reach the caller.
"""

from __future__ import annotations

import logging
from typing import Container, Dict, Iterable, List, Optional, Set

from facetrack.tracking.spatial import SpatialIndex
from facetrack.types import Detection, PendingRegistration, TrackingKey, UnknownCandidate

LOGGER = logging.getLogger("facetrack.tracking.unknown")


class UnknownFaceBuffer:
    def __init__(
        self,
        spatial: SpatialIndex,
        confirmation_window_s: float,
        staleness_window_s: float,
        cache_ttl_s: float,
        min_registration_confidence: float = 0.7,
    ) -> None:
        self.spatial = spatial
        self.confirmation_window_s = confirmation_window_s
        self.staleness_window_s = staleness_window_s
        self.cache_ttl_s = cache_ttl_s
        self.min_registration_confidence = min_registration_confidence
        self.candidates: Dict[TrackingKey, UnknownCandidate] = {}
        self.pending: Dict[TrackingKey, PendingRegistration] = {}

    def __len__(self) -> int:
        return len(self.candidates) + len(self.pending)

    def keys(self) -> Set[TrackingKey]:
        return set(self.candidates) | set(self.pending)

    def locate(self, detection: Detection, exclude: Container[TrackingKey] = ()) -> Optional[TrackingKey]:
        """Key of the nearest candidate or pending entry, if any is close enough."""
        boxes = {key: cand.last_detection.bbox for key, cand in self.candidates.items() if key not in exclude}
        boxes.update(
            {key: pending.detection.bbox for key, pending in self.pending.items() if key not in exclude}
        )
        return self.spatial.find_nearest(detection, boxes)

    def observe(
        self,
        detection: Detection,
        now: float,
        reserved: Iterable[TrackingKey] = (),
        observed: Optional[Set[TrackingKey]] = None,
    ) -> Optional[PendingRegistration]:
        """Record an unmatched detection; return a registration if this sighting confirms one.

        Keys in ``observed`` were already matched to another face this cycle and
        are skipped; the key this detection lands on is added to it.
        """
        if observed is None:
            observed = set()
        key = self.locate(detection, exclude=observed)

        pending = self.pending.get(key) if key is not None else None
        if pending is not None:
            observed.add(key)
            pending.detection = detection
            pending.last_seen_at = now
            return None

        candidate = self.candidates.get(key) if key is not None else None
        if candidate is not None:
            observed.add(key)
            if now - candidate.last_seen_at > self.staleness_window_s:
                LOGGER.debug("Candidate %s went stale; restarting confirmation window", key)
                candidate.first_seen_at = now
            candidate.last_seen_at = now
            candidate.last_detection = detection
            return self._maybe_confirm(candidate, now)

        if detection.score < self.min_registration_confidence:
            LOGGER.debug(
                "Unknown face below registration floor (%.2f < %.2f)",
                detection.score,
                self.min_registration_confidence,
            )
            return None

        taken = self.keys() | set(reserved)
        key = self.spatial.allocate_key(detection, taken)
        candidate = UnknownCandidate(
            tracking_key=key,
            first_seen_at=now,
            last_seen_at=now,
            last_detection=detection,
        )
        self.candidates[key] = candidate
        observed.add(key)
        LOGGER.debug("New unknown candidate %s score=%.2f", key, detection.score)
        return self._maybe_confirm(candidate, now)

    def _maybe_confirm(self, candidate: UnknownCandidate, now: float) -> Optional[PendingRegistration]:
        key = candidate.tracking_key
        if candidate.age(now) < self.confirmation_window_s or key in self.pending:
            return None
        del self.candidates[key]
        registration = PendingRegistration(
            tracking_key=key,
            detection=candidate.last_detection,
            created_at=now,
            last_seen_at=now,
        )
        self.pending[key] = registration
        LOGGER.info("Unknown face %s confirmed after %.2fs", key, candidate.age(now))
        return registration

    def sweep(self, now: float) -> List[PendingRegistration]:
        """Drop stale candidates silently; return pending registrations abandoned past the TTL."""
        for key, candidate in list(self.candidates.items()):
            if now - candidate.last_seen_at > self.staleness_window_s:
                del self.candidates[key]
                LOGGER.debug("Dropped flickering candidate %s", key)

        abandoned: List[PendingRegistration] = []
        for key, pending in list(self.pending.items()):
            if now - pending.last_seen_at > self.cache_ttl_s:
                abandoned.append(self.pending.pop(key))
                LOGGER.info("Pending registration %s abandoned; face left the frame", key)
        return abandoned

    def get_pending(self, key: TrackingKey) -> Optional[PendingRegistration]:
        return self.pending.get(key)

    def clear_pending(self, key: TrackingKey) -> Optional[PendingRegistration]:
        return self.pending.pop(key, None)

    def discard_near(self, detection: Detection) -> List[PendingRegistration]:
        """Forget whatever unknown entry sits at ``detection``; returns any dropped registration."""
        key = self.locate(detection)
        if key is None:
            return []
        if self.candidates.pop(key, None) is not None:
            LOGGER.debug("Candidate %s recognized; leaving unknown buffer", key)
            return []
        pending = self.pending.pop(key, None)
        return [pending] if pending is not None else []

    def clear(self) -> None:
        self.candidates.clear()
        self.pending.clear()
