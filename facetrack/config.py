"""Engine configuration with documented defaults."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from facetrack.io_utils import load_yaml

LOGGER = logging.getLogger("facetrack.config")

# Timing defaults expressed as multiples of the detection interval
CACHE_TTL_CYCLES = 6.0
CONFIRMATION_CYCLES = 8.0
STALENESS_CYCLES = 1.5


@dataclass
class EngineConfig:
    # Seconds between the start of two detection cycles
    detection_interval_s: float = 0.5
    # Detections narrower or shorter than this (pixels) are ignored
    min_face_size_px: float = 40.0
    # Euclidean distance thresholds; a match must be strictly below
    match_threshold: float = 0.55
    relaxed_match_threshold: float = 0.65
    # Detector confidence needed before an unknown face is buffered
    min_registration_confidence: float = 0.7
    # Derived from detection_interval_s when left as None
    cache_ttl_s: Optional[float] = None
    confirmation_window_s: Optional[float] = None
    staleness_window_s: Optional[float] = None
    # Max centre distance (pixels) for two boxes to count as the same face
    proximity_threshold_px: float = 80.0
    # Quantization step (pixels) for tracking keys
    key_grid_px: float = 40.0
    # Give a known identity a new key when it jumps across the frame
    rekey_on_jump: bool = False
    user_scope: str = "default"

    def __post_init__(self) -> None:
        if self.detection_interval_s <= 0:
            raise ValueError("detection_interval_s must be positive")
        if self.cache_ttl_s is None:
            self.cache_ttl_s = CACHE_TTL_CYCLES * self.detection_interval_s
        if self.confirmation_window_s is None:
            self.confirmation_window_s = CONFIRMATION_CYCLES * self.detection_interval_s
        if self.staleness_window_s is None:
            self.staleness_window_s = STALENESS_CYCLES * self.detection_interval_s
        if self.match_threshold < 0 or self.relaxed_match_threshold < 0:
            raise ValueError("match thresholds must be non-negative")
        if self.relaxed_match_threshold < self.match_threshold:
            raise ValueError(
                f"relaxed_match_threshold ({self.relaxed_match_threshold}) must not be "
                f"stricter than match_threshold ({self.match_threshold})"
            )
        if self.proximity_threshold_px <= 0 or self.key_grid_px <= 0:
            raise ValueError("proximity_threshold_px and key_grid_px must be positive")
        for name in ("cache_ttl_s", "confirmation_window_s", "staleness_window_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            LOGGER.warning("Ignoring unknown engine config keys: %s", unknown)
        return cls(**{key: value for key, value in data.items() if key in known})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_engine_config(path: Optional[Path], overrides: Optional[Mapping[str, Any]] = None) -> EngineConfig:
    """Build an EngineConfig from an optional YAML file plus explicit overrides.

    The YAML may hold the settings at the top level or under an ``engine`` key.
    Overrides whose value is ``None`` are skipped so unset CLI flags fall back
    to the file or the defaults.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        raw = load_yaml(path)
        data.update(raw.get("engine", raw))
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    config = EngineConfig.from_dict(data)
    LOGGER.debug("Engine config: %s", config.to_dict())
    return config
