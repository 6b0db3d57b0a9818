"""
Core package init for the face tracking engine.

Makes the `facetrack` modules importable without requiring an editable install.
"""

__all__ = [
    "config",
    "detectors",
    "engine",
    "events",
    "io_utils",
    "recognition",
    "tracking",
    "types",
]
