"""Position/size quantization and nearest-neighbour lookup over tracked boxes."""

from __future__ import annotations

import logging
from typing import Container, Iterable, Mapping, Optional

from facetrack.types import BBox, Detection, TrackingKey, bbox_center, bbox_size, center_distance

LOGGER = logging.getLogger("facetrack.tracking.spatial")


class SpatialIndex:
    """Linear-scan spatial index; the number of faces per frame stays small."""

    def __init__(self, proximity_threshold_px: float = 80.0, grid_px: float = 40.0) -> None:
        if proximity_threshold_px <= 0:
            raise ValueError("proximity_threshold_px must be positive")
        if grid_px <= 0:
            raise ValueError("grid_px must be positive")
        self.proximity_threshold_px = proximity_threshold_px
        self.grid_px = grid_px

    def quantize_key(self, detection: Detection) -> TrackingKey:
        cx, cy = bbox_center(detection.bbox)
        width, height = bbox_size(detection.bbox)
        size = 0.5 * (width + height)
        return TrackingKey(
            cx=int(round(cx / self.grid_px)),
            cy=int(round(cy / self.grid_px)),
            size=int(round(size / self.grid_px)),
        )

    def allocate_key(self, detection: Detection, taken: Container[TrackingKey]) -> TrackingKey:
        """Quantized key for ``detection`` with the lowest serial not in ``taken``."""
        key = self.quantize_key(detection)
        while key in taken:
            key = key._replace(serial=key.serial + 1)
        if key.serial:
            LOGGER.debug("Bucket %s busy; allocated %s", key.bucket(), key)
        return key

    def find_nearest(
        self,
        detection: Detection,
        candidates: Mapping[TrackingKey, BBox],
    ) -> Optional[TrackingKey]:
        """Key of the candidate whose centre is closest and within the proximity threshold."""
        best_key: Optional[TrackingKey] = None
        best_distance = self.proximity_threshold_px
        for key, bbox in candidates.items():
            distance = center_distance(detection.bbox, bbox)
            if distance < best_distance:
                best_key, best_distance = key, distance
        return best_key

    def is_occupied(self, bbox: BBox, detections: Iterable[Detection]) -> bool:
        """True if any detection's centre lies within the proximity threshold of ``bbox``."""
        return any(
            center_distance(bbox, det.bbox) < self.proximity_threshold_px for det in detections
        )
