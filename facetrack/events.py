"""Observer interface and event bus for engine notifications."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from facetrack.types import Detection, FrameUpdate, KnownIdentity, TrackingKey

LOGGER = logging.getLogger("facetrack.events")

EVENT_NAMES = (
    "on_face_recognized",
    "on_new_face_ready",
    "on_frame_update",
    "on_face_removed",
)


class EngineObserver:
    """No-op base class; override the hooks you care about."""

    def on_face_recognized(self, identity: KnownIdentity, detection: Detection, tracking_key: TrackingKey) -> None:
        pass

    def on_new_face_ready(self, detection: Detection, tracking_key: TrackingKey) -> None:
        pass

    def on_frame_update(self, update: FrameUpdate) -> None:
        pass

    def on_face_removed(self, tracking_key: TrackingKey) -> None:
        pass


class CallbackObserver(EngineObserver):
    """Adapts plain callables to the observer interface."""

    def __init__(
        self,
        on_face_recognized: Optional[Callable[..., None]] = None,
        on_new_face_ready: Optional[Callable[..., None]] = None,
        on_frame_update: Optional[Callable[..., None]] = None,
        on_face_removed: Optional[Callable[..., None]] = None,
    ) -> None:
        self._callbacks = {
            "on_face_recognized": on_face_recognized,
            "on_new_face_ready": on_new_face_ready,
            "on_frame_update": on_frame_update,
            "on_face_removed": on_face_removed,
        }

    def on_face_recognized(self, identity, detection, tracking_key) -> None:
        self._call("on_face_recognized", identity, detection, tracking_key)

    def on_new_face_ready(self, detection, tracking_key) -> None:
        self._call("on_new_face_ready", detection, tracking_key)

    def on_frame_update(self, update) -> None:
        self._call("on_frame_update", update)

    def on_face_removed(self, tracking_key) -> None:
        self._call("on_face_removed", tracking_key)

    def _call(self, name: str, *args) -> None:
        callback = self._callbacks.get(name)
        if callback is not None:
            callback(*args)


class LoggingObserver(EngineObserver):
    """Writes every event to a logger; used by the CLI."""

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or LOGGER

    def on_face_recognized(self, identity, detection, tracking_key) -> None:
        note = f" ({identity.note})" if identity.note else ""
        self.logger.info("Recognized %s%s as %s score=%.2f", identity.display_name, note, tracking_key, detection.score)

    def on_new_face_ready(self, detection, tracking_key) -> None:
        self.logger.info("New face %s ready for registration score=%.2f", tracking_key, detection.score)

    def on_frame_update(self, update) -> None:
        self.logger.debug(
            "Frame t=%.2f recognized=%s pending=%d",
            update.timestamp,
            [face.label for face in update.recognized],
            len(update.pending),
        )

    def on_face_removed(self, tracking_key) -> None:
        self.logger.info("Face %s removed", tracking_key)


class EventBus:
    """Fans each event out to every subscribed observer in subscription order."""

    def __init__(self) -> None:
        self._observers: List[EngineObserver] = []

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: EngineObserver) -> EngineObserver:
        if observer not in self._observers:
            self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: EngineObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def clear(self) -> None:
        self._observers.clear()

    def emit(self, event: str, *args) -> None:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event {event!r}")
        for observer in list(self._observers):
            handler = getattr(observer, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:  # observer failures must not stop the loop
                LOGGER.exception("Observer %r failed handling %s", observer, event)
