"""Common dataclasses and type aliases used across the facetrack package."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Tuple

import numpy as np

# Bounding box order: x1, y1, x2, y2 (pixel coordinates)
BBox = Tuple[float, float, float, float]
Point = Tuple[float, float]


class TrackingKey(NamedTuple):
    """Quantized position/size bucket identifying one tracked face.

    ``serial`` separates two live entries that land in the same bucket.
    """

    cx: int
    cy: int
    size: int
    serial: int = 0

    def bucket(self) -> "TrackingKey":
        return self._replace(serial=0)

    def __str__(self) -> str:
        base = f"{self.cx}_{self.cy}_{self.size}"
        return base if self.serial == 0 else f"{base}#{self.serial}"


@dataclass
class Detection:
    """A single face returned by the detector for one frame."""

    bbox: Optional[BBox]
    score: float
    descriptor: Optional[np.ndarray]
    landmarks: Optional[np.ndarray] = None
    frame_idx: int = -1

    def as_xywh(self) -> Tuple[float, float, float, float]:
        x1, y1, x2, y2 = self.bbox
        return x1, y1, x2 - x1, y2 - y1

    @property
    def center(self) -> Point:
        return bbox_center(self.bbox)

    def is_valid(self) -> bool:
        if self.bbox is None or self.descriptor is None:
            return False
        if len(self.bbox) != 4:
            return False
        return np.asarray(self.descriptor).size > 0


@dataclass
class KnownIdentity:
    """A registered person as loaded from the identity store."""

    id: str
    display_name: str
    embedding: np.ndarray
    note: str = ""
    user_scope: str = "default"


@dataclass
class TrackedFace:
    """Identity cache entry for a recognized face."""

    tracking_key: TrackingKey
    identity: KnownIdentity
    last_detection: Detection
    last_seen_at: float
    first_seen_at: float = 0.0
    # Set when the identity vanished from the store on the last refresh
    stale: bool = False


@dataclass
class UnknownCandidate:
    """Unmatched face waiting out the confirmation window."""

    tracking_key: TrackingKey
    first_seen_at: float
    last_seen_at: float
    last_detection: Detection

    def age(self, now: float) -> float:
        return now - self.first_seen_at


@dataclass
class PendingRegistration:
    """Confirmed unknown face waiting for a name from the caller."""

    tracking_key: TrackingKey
    detection: Detection
    created_at: float
    last_seen_at: float


@dataclass(frozen=True)
class FaceSnapshot:
    """Read-only view of one face handed to observers."""

    tracking_key: TrackingKey
    detection: Detection
    status: str  # "recognized" or "pending"
    identity: Optional[KnownIdentity] = None
    last_seen_at: float = 0.0

    @property
    def label(self) -> str:
        if self.identity is None:
            return "Unknown"
        return self.identity.display_name


@dataclass
class FrameUpdate:
    """Consolidated per-cycle state published after each sweep."""

    timestamp: float
    faces: List[FaceSnapshot] = field(default_factory=list)

    @property
    def recognized(self) -> List[FaceSnapshot]:
        return [face for face in self.faces if face.status == "recognized"]

    @property
    def pending(self) -> List[FaceSnapshot]:
        return [face for face in self.faces if face.status == "pending"]


def bbox_center(box: BBox) -> Point:
    x1, y1, x2, y2 = box
    return (0.5 * (x1 + x2), 0.5 * (y1 + y2))


def bbox_size(box: BBox) -> Tuple[float, float]:
    x1, y1, x2, y2 = box
    return max(0.0, x2 - x1), max(0.0, y2 - y1)


def center_distance(box_a: BBox, box_b: BBox) -> float:
    ax, ay = bbox_center(box_a)
    bx, by = bbox_center(box_b)
    return float(np.hypot(ax - bx, ay - by))
