"""Tracking loop: sequences detections through matching, caching and registration buffering."""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from facetrack.config import EngineConfig
from facetrack.events import EngineObserver, EventBus
from facetrack.recognition.identity_store import IdentityStore, InMemoryIdentityStore
from facetrack.recognition.matcher import best_match, rank_identities
from facetrack.tracking.identity_cache import IdentityCache
from facetrack.tracking.spatial import SpatialIndex
from facetrack.tracking.unknown_buffer import UnknownFaceBuffer
from facetrack.types import (
    Detection,
    FaceSnapshot,
    FrameUpdate,
    KnownIdentity,
    PendingRegistration,
    TrackedFace,
    TrackingKey,
    bbox_size,
)

LOGGER = logging.getLogger("facetrack.engine")

DetectorResult = Union[Sequence[Detection], Awaitable[Sequence[Detection]]]
Detector = Callable[[Any], DetectorResult]
FrameSource = Callable[[], Any]


def _is_async_callable(func: Any) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(getattr(func, "__call__", None))


class TrackingEngine:
    """Runs one detection cycle at a time and publishes events to subscribed observers.

    All cache and buffer state belongs to the task driving the cycles. The
    known-identity list is the only state other threads may touch, through
    :meth:`set_identities` / :meth:`reload_identities`; the new list is picked
    up by the cache at the start of the next cycle.
    """

    def __init__(
        self,
        detector: Optional[Detector] = None,
        identity_store: Optional[IdentityStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self.detector = detector
        self.identity_store = identity_store if identity_store is not None else InMemoryIdentityStore()
        self.clock = clock

        cfg = self.config
        self.spatial = SpatialIndex(cfg.proximity_threshold_px, cfg.key_grid_px)
        self.cache = IdentityCache(self.spatial, cfg.cache_ttl_s, rekey_on_jump=cfg.rekey_on_jump)
        self.unknown = UnknownFaceBuffer(
            self.spatial,
            confirmation_window_s=cfg.confirmation_window_s,
            staleness_window_s=cfg.staleness_window_s,
            cache_ttl_s=cfg.cache_ttl_s,
            min_registration_confidence=cfg.min_registration_confidence,
        )
        self.events = EventBus()

        self._identities: List[KnownIdentity] = []
        self._identities_loaded = False
        self._identities_dirty = False
        self._identities_lock = threading.Lock()

        # Pending keys released by register/skip calls made off the engine thread
        self._released: List[TrackingKey] = []
        self._released_lock = threading.Lock()
        self._engine_thread: Optional[int] = None

        self._task: Optional[asyncio.Task] = None
        self._slow_warned = False
        self.cycles = 0

    # ------------------------------------------------------------------ observers
    def subscribe(self, observer: EngineObserver) -> EngineObserver:
        return self.events.subscribe(observer)

    def unsubscribe(self, observer: EngineObserver) -> None:
        self.events.unsubscribe(observer)

    # ------------------------------------------------------------------ identities
    @property
    def identities(self) -> List[KnownIdentity]:
        with self._identities_lock:
            return list(self._identities)

    def set_identities(self, identities: Sequence[KnownIdentity]) -> None:
        with self._identities_lock:
            self._identities = list(identities)
            self._identities_loaded = True
            self._identities_dirty = True

    def reload_identities(self) -> List[KnownIdentity]:
        """Fetch identities from the store for the configured user scope.

        A store failure on the first load leaves the engine with no known
        identities, so every face is treated as unknown. A failure on a later
        reload keeps the previously loaded list.
        """
        scope = self.config.user_scope
        try:
            identities = self.identity_store.load_known_identities(scope)
        except Exception as exc:
            LOGGER.warning("Identity store unavailable (scope=%s): %s", scope, exc)
            with self._identities_lock:
                if self._identities_loaded:
                    return list(self._identities)
            self.set_identities([])
            return []
        self.set_identities(identities)
        LOGGER.info("Loaded %d known identities (scope=%s)", len(identities), scope)
        return list(identities)

    def _apply_identity_refresh(self) -> List[KnownIdentity]:
        with self._identities_lock:
            snapshot = list(self._identities)
            dirty = self._identities_dirty
            self._identities_dirty = False
        if dirty:
            self.cache.refresh_identities(snapshot)
        return snapshot

    # ------------------------------------------------------------------ cycle
    def _prepare(self, detections: Sequence[Detection]) -> List[Detection]:
        """Drop malformed and undersized detections, sort by confidence, dedupe buckets."""
        min_size = self.config.min_face_size_px
        valid: List[Detection] = []
        for det in detections:
            if det is None or not det.is_valid():
                LOGGER.debug("Dropping malformed detection %r", det)
                continue
            width, height = bbox_size(det.bbox)
            if width < min_size or height < min_size:
                continue
            valid.append(det)

        valid.sort(key=lambda det: det.score, reverse=True)
        seen: Set[TrackingKey] = set()
        kept: List[Detection] = []
        for det in valid:
            bucket = self.spatial.quantize_key(det)
            if bucket in seen:
                LOGGER.debug("Duplicate detection in bucket %s score=%.2f", bucket, det.score)
                continue
            seen.add(bucket)
            kept.append(det)
        return kept

    def _match(
        self,
        detection: Detection,
        identities: Sequence[KnownIdentity],
        neighbour: Optional[TrackedFace],
    ) -> Optional[KnownIdentity]:
        cfg = self.config
        match = best_match(detection.descriptor, identities, cfg.match_threshold)
        if match is not None:
            return match[0]
        if neighbour is None:
            return None
        relaxed = best_match(detection.descriptor, identities, cfg.relaxed_match_threshold)
        if relaxed is None:
            return None
        identity, distance = relaxed
        if identity.id != neighbour.identity.id:
            LOGGER.debug(
                "Relaxed match %s rejected; spatial neighbour is %s",
                identity.display_name,
                neighbour.identity.display_name,
            )
            return None
        LOGGER.debug("Relaxed match kept %s at distance %.3f", identity.display_name, distance)
        return identity

    def process_detections(self, detections: Sequence[Detection], now: Optional[float] = None) -> FrameUpdate:
        """Run steps 2-8 of a cycle on detections already produced for one frame."""
        now = self.clock() if now is None else now
        self._engine_thread = threading.get_ident()
        self._apply_released()
        identities = self._apply_identity_refresh()
        survivors = self._prepare(detections)

        events: List[Tuple[str, tuple]] = []
        claimed: Set[str] = set()
        refreshed: Set[TrackingKey] = set()
        observed: Set[TrackingKey] = set()
        # Detections that can keep a cached face alive; confirmed strangers cannot
        occupants: List[Detection] = []

        for det in survivors:
            neighbour = self.cache.nearest(det)
            if neighbour is not None and neighbour.tracking_key in refreshed:
                # Already claimed by another face this cycle
                neighbour = None
            identity = self._match(det, identities, neighbour)

            if identity is not None:
                if identity.id in claimed:
                    LOGGER.debug("%s already matched this cycle; ignoring extra detection", identity.display_name)
                    continue
                claimed.add(identity.id)
                for dropped in self.unknown.discard_near(det):
                    events.append(("on_face_removed", (dropped.tracking_key,)))
                result = self.cache.upsert(det, identity, now, reserved=self.unknown.keys())
                key = result.entry.tracking_key
                refreshed.add(key)
                if result.migrated_from is not None:
                    events.append(("on_face_removed", (result.migrated_from,)))
                if result.is_new_key:
                    LOGGER.info("Recognized %s as %s", identity.display_name, key)
                    events.append(("on_face_recognized", (identity, det, key)))
                occupants.append(det)
                continue

            if neighbour is not None:
                LOGGER.debug("Unmatched detection on top of %s", neighbour.identity.display_name)
            if identities and LOGGER.isEnabledFor(logging.DEBUG):
                LOGGER.debug("No match; nearest identities %s", rank_identities(det.descriptor, identities))
            registration = self.unknown.observe(
                det, now, reserved=self.cache.entries.keys(), observed=observed
            )
            if registration is not None:
                events.append(("on_new_face_ready", (registration.detection, registration.tracking_key)))
            if not any(pending.detection is det for pending in self.unknown.pending.values()):
                occupants.append(det)

        for entry in self.cache.evict(now, occupants):
            LOGGER.info("%s left the frame (%s)", entry.identity.display_name, entry.tracking_key)
            events.append(("on_face_removed", (entry.tracking_key,)))
        for abandoned in self.unknown.sweep(now):
            events.append(("on_face_removed", (abandoned.tracking_key,)))

        # Observers may register or skip faces in response; the frame update reflects that
        for event, args in events:
            self.events.emit(event, *args)
        update = self.snapshot(now)
        self.events.emit("on_frame_update", update)
        LOGGER.debug(
            "Cycle t=%.2f detections=%d kept=%d tracked=%d candidates=%d pending=%d",
            now,
            len(detections),
            len(survivors),
            len(self.cache),
            len(self.unknown.candidates),
            len(self.unknown.pending),
        )
        return update

    def snapshot(self, now: Optional[float] = None) -> FrameUpdate:
        now = self.clock() if now is None else now
        faces = [
            FaceSnapshot(
                tracking_key=entry.tracking_key,
                detection=entry.last_detection,
                status="recognized",
                identity=entry.identity,
                last_seen_at=entry.last_seen_at,
            )
            for entry in self.cache
        ]
        faces.extend(
            FaceSnapshot(
                tracking_key=pending.tracking_key,
                detection=pending.detection,
                status="pending",
                last_seen_at=pending.last_seen_at,
            )
            for pending in self.unknown.pending.values()
        )
        return FrameUpdate(timestamp=now, faces=faces)

    async def _detect(self, frame: Any) -> Sequence[Detection]:
        if self.detector is None:
            raise RuntimeError("TrackingEngine has no detector configured")
        if _is_async_callable(self.detector):
            return await self.detector(frame)
        result = await asyncio.to_thread(self.detector, frame)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run_cycle(self, frame: Any, now: Optional[float] = None) -> Optional[FrameUpdate]:
        """Detect faces in ``frame`` and process them; a detector failure skips the cycle."""
        started = self.clock()
        now = started if now is None else now
        try:
            detections = await self._detect(frame)
        except Exception as exc:
            LOGGER.warning("Face detection failed; skipping cycle: %s", exc)
            return None
        elapsed = self.clock() - started
        if elapsed > self.config.staleness_window_s and not self._slow_warned:
            # Candidates go stale between sightings, so no face can be confirmed
            LOGGER.warning(
                "Detection took %.2fs, longer than the %.2fs staleness window; "
                "raise detection_interval_s or staleness_window_s",
                elapsed,
                self.config.staleness_window_s,
            )
            self._slow_warned = True
        return self.process_detections(list(detections or []), now=now)

    # ------------------------------------------------------------------ lifecycle
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, frame_source: FrameSource, max_cycles: Optional[int] = None) -> asyncio.Task:
        """Schedule the fixed-interval loop on the running event loop."""
        if self.running:
            raise RuntimeError("TrackingEngine is already running")
        if self.detector is None:
            raise RuntimeError("TrackingEngine has no detector configured")
        self.reset()
        with self._identities_lock:
            loaded = self._identities_loaded
        if not loaded:
            self.reload_identities()
        self._task = asyncio.get_running_loop().create_task(self._loop(frame_source, max_cycles))
        LOGGER.info(
            "Tracking engine started interval=%.2fs identities=%d",
            self.config.detection_interval_s,
            len(self.identities),
        )
        return self._task

    async def _loop(self, frame_source: FrameSource, max_cycles: Optional[int]) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.detection_interval_s
        next_tick = loop.time()
        while True:
            frame = frame_source()
            if inspect.isawaitable(frame):
                frame = await frame
            if frame is None:
                LOGGER.info("Frame source exhausted after %d cycles", self.cycles)
                break
            await self.run_cycle(frame)
            self.cycles += 1
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            next_tick += interval
            delay = next_tick - loop.time()
            if delay < 0:
                LOGGER.debug("Cycle overran its slot by %.3fs", -delay)
                next_tick = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    async def run(self, frame_source: FrameSource, max_cycles: Optional[int] = None) -> None:
        """Start the loop and wait until the source is exhausted or ``max_cycles`` is reached."""
        task = self.start(frame_source, max_cycles=max_cycles)
        try:
            await task
        finally:
            self.stop()

    def stop(self) -> None:
        """Cancel the pending cycle and clear all tracked and buffered faces."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        self.reset()
        LOGGER.info("Tracking engine stopped after %d cycles", self.cycles)

    def dispose(self) -> None:
        self.stop()
        self.events.clear()

    def reset(self) -> None:
        self.cache.clear()
        self.unknown.clear()
        with self._released_lock:
            self._released.clear()
        self._slow_warned = False

    # ------------------------------------------------------------------ registration
    def tracked_faces(self) -> List[TrackedFace]:
        return list(self.cache)

    def pending_registrations(self) -> List[PendingRegistration]:
        return list(self.unknown.pending.values())

    def _on_engine_thread(self) -> bool:
        return self._engine_thread is None or self._engine_thread == threading.get_ident()

    def _release_pending(self, tracking_key: TrackingKey) -> None:
        """Drop a pending entry now on the engine thread, otherwise at the next cycle."""
        if self._on_engine_thread():
            self._drop_pending(tracking_key)
            return
        with self._released_lock:
            self._released.append(tracking_key)
        LOGGER.debug("Queued release of %s for the next cycle", tracking_key)

    def _apply_released(self) -> None:
        with self._released_lock:
            released, self._released = self._released, []
        for tracking_key in released:
            self._drop_pending(tracking_key)

    def _drop_pending(self, tracking_key: TrackingKey) -> None:
        # Already gone means the sweep abandoned it and announced the removal
        if self.unknown.clear_pending(tracking_key) is not None:
            self.events.emit("on_face_removed", tracking_key)

    def register_face(self, tracking_key: TrackingKey, name: str, note: str = "") -> str:
        """Save the pending face under ``name``; it is recognized on its next sighting.

        Store errors propagate and leave the registration pending so the
        caller can retry. Called from a thread other than the one running
        the cycles, the pending entry is released at the start of the next
        cycle.
        """
        pending = self.unknown.get_pending(tracking_key)
        if pending is None:
            raise KeyError(tracking_key)
        name = (name or "").strip()
        if not name:
            raise ValueError("A name is required to register a face")
        note = (note or "").strip()
        scope = self.config.user_scope
        descriptor = np.asarray(pending.detection.descriptor, dtype=np.float32).reshape(-1)
        identity_id = self.identity_store.save_new_identity(name, note, descriptor, scope)

        identity = KnownIdentity(id=identity_id, display_name=name, embedding=descriptor, note=note, user_scope=scope)
        with self._identities_lock:
            self._identities.append(identity)
            self._identities_loaded = True
        LOGGER.info("Registered %s (%s) from %s", name, identity_id, tracking_key)
        self._release_pending(tracking_key)
        return identity_id

    def skip_registration(self, tracking_key: TrackingKey) -> None:
        if self.unknown.get_pending(tracking_key) is None:
            raise KeyError(tracking_key)
        LOGGER.info("Registration skipped for %s", tracking_key)
        self._release_pending(tracking_key)
