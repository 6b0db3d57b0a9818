"""Cache of currently visible, already-known faces."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from facetrack.tracking.spatial import SpatialIndex
from facetrack.types import Detection, KnownIdentity, TrackedFace, TrackingKey, center_distance

LOGGER = logging.getLogger("facetrack.tracking.cache")


@dataclass
class UpsertResult:
    entry: TrackedFace
    created: bool
    migrated_from: Optional[TrackingKey] = None

    @property
    def is_new_key(self) -> bool:
        return self.created or self.migrated_from is not None


class IdentityCache:
    """Owns the TrackedFace entries and their lifecycle.

    Keys are resolved identity-first: a known person keeps the same key no
    matter where they appear in the frame. Entries are evicted only once
    their last position is no longer occupied by any detection and they have
    been idle for longer than ``cache_ttl_s``.
    """

    def __init__(self, spatial: SpatialIndex, cache_ttl_s: float, rekey_on_jump: bool = False) -> None:
        self.spatial = spatial
        self.cache_ttl_s = cache_ttl_s
        self.rekey_on_jump = rekey_on_jump
        self.entries: Dict[TrackingKey, TrackedFace] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __iter__(self) -> Iterator[TrackedFace]:
        return iter(list(self.entries.values()))

    def get(self, key: TrackingKey) -> Optional[TrackedFace]:
        return self.entries.get(key)

    def find_by_identity(self, identity_id: str) -> Optional[TrackedFace]:
        for entry in self.entries.values():
            if entry.identity.id == identity_id:
                return entry
        return None

    def nearest(self, detection: Detection) -> Optional[TrackedFace]:
        boxes = {key: entry.last_detection.bbox for key, entry in self.entries.items()}
        key = self.spatial.find_nearest(detection, boxes)
        return self.entries.get(key) if key is not None else None

    def upsert(
        self,
        detection: Detection,
        identity: KnownIdentity,
        now: float,
        reserved: Iterable[TrackingKey] = (),
    ) -> UpsertResult:
        entry = self.find_by_identity(identity.id)
        if entry is not None:
            jumped = (
                center_distance(entry.last_detection.bbox, detection.bbox)
                >= self.spatial.proximity_threshold_px
            )
            if self.rekey_on_jump and jumped:
                old_key = entry.tracking_key
                taken = set(self.entries) | set(reserved)
                new_key = self.spatial.allocate_key(detection, taken)
                del self.entries[old_key]
                entry.tracking_key = new_key
                self.entries[new_key] = entry
                self._refresh(entry, detection, identity, now)
                LOGGER.info("Migrated %s from %s to %s", identity.display_name, old_key, new_key)
                return UpsertResult(entry=entry, created=False, migrated_from=old_key)
            self._refresh(entry, detection, identity, now)
            return UpsertResult(entry=entry, created=False)

        # Only entries whose identity vanished from the store can be re-claimed by position
        stale_boxes = {
            key: cached.last_detection.bbox for key, cached in self.entries.items() if cached.stale
        }
        key = self.spatial.find_nearest(detection, stale_boxes)
        if key is not None:
            entry = self.entries[key]
            LOGGER.info(
                "Reassigning stale entry %s from %s to %s",
                key,
                entry.identity.display_name,
                identity.display_name,
            )
            self._refresh(entry, detection, identity, now)
            return UpsertResult(entry=entry, created=False)

        taken = set(self.entries) | set(reserved)
        key = self.spatial.allocate_key(detection, taken)
        entry = TrackedFace(
            tracking_key=key,
            identity=identity,
            last_detection=detection,
            last_seen_at=now,
            first_seen_at=now,
        )
        self.entries[key] = entry
        LOGGER.debug("Tracking %s under %s", identity.display_name, key)
        return UpsertResult(entry=entry, created=True)

    def refresh_identities(self, identities: Sequence[KnownIdentity]) -> None:
        """Swap in reloaded identity records and flag entries whose identity is gone."""
        by_id = {identity.id: identity for identity in identities}
        for entry in self.entries.values():
            fresh = by_id.get(entry.identity.id)
            if fresh is None:
                entry.stale = True
            else:
                entry.identity = fresh
                entry.stale = False

    def evict(self, now: float, detections: Sequence[Detection]) -> List[TrackedFace]:
        removed: List[TrackedFace] = []
        for key, entry in list(self.entries.items()):
            if self.spatial.is_occupied(entry.last_detection.bbox, detections):
                continue
            if now - entry.last_seen_at > self.cache_ttl_s:
                removed.append(self.entries.pop(key))
                LOGGER.debug(
                    "Evicted %s (%s) idle for %.2fs",
                    key,
                    entry.identity.display_name,
                    now - entry.last_seen_at,
                )
        return removed

    def remove(self, key: TrackingKey) -> Optional[TrackedFace]:
        return self.entries.pop(key, None)

    def clear(self) -> None:
        self.entries.clear()

    @staticmethod
    def _refresh(entry: TrackedFace, detection: Detection, identity: KnownIdentity, now: float) -> None:
        entry.last_detection = detection
        entry.last_seen_at = now
        entry.identity = identity
        entry.stale = False
