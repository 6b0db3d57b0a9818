from typing import List, Optional

import numpy as np
import pytest

from facetrack.events import EngineObserver
from facetrack.types import Detection, KnownIdentity


def make_detection(
    x: float,
    y: float,
    size: float = 120.0,
    score: float = 0.9,
    descriptor: Optional[np.ndarray] = None,
) -> Detection:
    if descriptor is None:
        descriptor = np.array([0.3, 0.1, 0.7, 0.2], dtype=np.float32)
    return Detection(
        bbox=(float(x), float(y), float(x + size), float(y + size)),
        score=score,
        descriptor=np.asarray(descriptor, dtype=np.float32),
    )


def make_identity(identity_id: str, embedding, name: Optional[str] = None) -> KnownIdentity:
    return KnownIdentity(
        id=identity_id,
        display_name=name or identity_id.title(),
        embedding=np.asarray(embedding, dtype=np.float32),
    )


class RecordingObserver(EngineObserver):
    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.updates = []

    def on_face_recognized(self, identity, detection, tracking_key) -> None:
        self.events.append(("recognized", identity.id, tracking_key))

    def on_new_face_ready(self, detection, tracking_key) -> None:
        self.events.append(("ready", tracking_key))

    def on_frame_update(self, update) -> None:
        self.updates.append(update)

    def on_face_removed(self, tracking_key) -> None:
        self.events.append(("removed", tracking_key))

    def of(self, kind: str) -> List[tuple]:
        return [event for event in self.events if event[0] == kind]


@pytest.fixture
def recorder() -> RecordingObserver:
    return RecordingObserver()
