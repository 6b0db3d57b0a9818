import threading

import numpy as np
import pytest

from conftest import RecordingObserver, make_detection, make_identity
from facetrack.config import EngineConfig
from facetrack.engine import TrackingEngine
from facetrack.events import CallbackObserver, EngineObserver
from facetrack.recognition.identity_store import InMemoryIdentityStore
from facetrack.types import Detection

INTERVAL = 0.5
ALICE_VEC = np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32)
BOB_VEC = np.array([0.0, 0.0, 1.0, 0.0], dtype=np.float32)
STRANGER_VEC = np.array([0.0, 5.0, 0.0, 5.0], dtype=np.float32)


def _engine(recorder, identities=(), **config):
    engine = TrackingEngine(config=EngineConfig(**config))
    engine.set_identities(list(identities))
    engine.subscribe(recorder)
    return engine


def _run(engine, frames, start=0):
    """Feed one list of detections per cycle at the default interval."""
    for step, detections in enumerate(frames, start=start):
        engine.process_detections(detections, now=step * INTERVAL)


def test_scenario_a_unknown_face_ready_on_ninth_cycle(recorder):
    engine = _engine(recorder)
    for step in range(9):
        engine.process_detections([make_detection(200, 200, score=0.9)], now=step * INTERVAL)
        expected = 1 if step == 8 else 0
        assert len(recorder.of("ready")) == expected, f"cycle {step + 1}"

    (_, key) = recorder.of("ready")[0]
    assert [reg.tracking_key for reg in engine.pending_registrations()] == [key]
    last = recorder.updates[-1]
    assert [face.status for face in last.faces] == ["pending"]
    assert last.faces[0].label == "Unknown"


def test_scenario_b_known_face_recognized_once(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    _run(engine, [[make_detection(200, 200, descriptor=ALICE_VEC.copy())] for _ in range(5)])

    recognized = recorder.of("recognized")
    assert len(recognized) == 1
    assert recognized[0][1] == "alice"
    assert len(recorder.updates) == 5
    for update in recorder.updates:
        assert [face.identity.id for face in update.recognized] == ["alice"]
        assert update.faces[0].tracking_key == recognized[0][2]


def test_scenario_c_missing_face_removed_exactly_once(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=0.0)
    key = recorder.of("recognized")[0][2]

    # The 3.0s TTL is reached at step 6; eviction needs strictly more
    for step in range(1, 7):
        engine.process_detections([], now=step * INTERVAL)
    assert recorder.of("removed") == []

    engine.process_detections([], now=7 * INTERVAL)
    assert recorder.of("removed") == [("removed", key)]

    for step in range(8, 20):
        engine.process_detections([], now=step * INTERVAL)
    assert len(recorder.of("removed")) == 1
    assert engine.tracked_faces() == []


def test_identity_keeps_key_while_moving_anywhere(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    positions = [(100, 100), (700, 300), (40, 500), (1100, 60), (500, 500)]
    _run(engine, [[make_detection(x, y, descriptor=ALICE_VEC)] for x, y in positions])

    keys = {update.faces[0].tracking_key for update in recorder.updates}
    assert len(keys) == 1
    assert len(recorder.of("recognized")) == 1
    assert recorder.of("removed") == []


def test_continuously_seen_face_is_never_evicted(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    _run(engine, [[make_detection(200, 200, descriptor=ALICE_VEC)] for _ in range(200)])
    assert recorder.of("removed") == []
    assert len(engine.tracked_faces()) == 1


def test_brief_misclassification_keeps_entry_alive(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    frames = [[make_detection(200, 200, descriptor=ALICE_VEC)]]
    frames += [[make_detection(205, 200, descriptor=STRANGER_VEC)] for _ in range(3)]
    frames += [[make_detection(200, 200, descriptor=ALICE_VEC)] for _ in range(6)]
    _run(engine, frames)

    assert recorder.of("removed") == []
    assert recorder.of("ready") == []
    assert [entry.identity.id for entry in engine.tracked_faces()] == ["alice"]
    assert engine.unknown.candidates == {}


def test_stranger_taking_known_persons_place_is_offered_for_registration(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=0.0)
    alice_key = recorder.of("recognized")[0][2]

    _run(engine, [[make_detection(205, 200, descriptor=STRANGER_VEC)] for _ in range(120)], start=1)

    # Candidate from t=0.5 confirms at t=4.5; Alice's entry then has nothing holding it
    (ready,) = recorder.of("ready")
    assert recorder.of("removed") == [("removed", alice_key)]
    assert recorder.events.index(ready) < recorder.events.index(("removed", alice_key))
    assert engine.tracked_faces() == []
    assert [face.label for face in recorder.updates[-1].faces] == ["Unknown"]
    assert [reg.tracking_key for reg in engine.pending_registrations()] == [ready[1]]


def test_relaxed_threshold_accepts_same_identity_near_tracked_face(recorder):
    alice = make_identity("alice", ALICE_VEC)
    bob = make_identity("bob", BOB_VEC)
    engine = _engine(recorder, [alice, bob])
    drifted = np.array([1.0, 0.6, 0.0, 0.0], dtype=np.float32)  # 0.6 from Alice

    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=0.0)
    engine.process_detections([make_detection(210, 200, descriptor=drifted)], now=0.5)

    (entry,) = engine.tracked_faces()
    assert entry.identity.id == "alice"
    assert entry.last_seen_at == 0.5
    assert len(recorder.of("recognized")) == 1
    assert engine.unknown.candidates == {}


def test_relaxed_threshold_is_not_used_without_a_spatial_neighbour(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    drifted = np.array([1.0, 0.6, 0.0, 0.0], dtype=np.float32)
    engine.process_detections([make_detection(200, 200, descriptor=drifted)], now=0.0)
    assert recorder.of("recognized") == []
    assert len(engine.unknown.candidates) == 1


def test_relaxed_threshold_never_swaps_identities(recorder):
    alice = make_identity("alice", ALICE_VEC)
    bob = make_identity("bob", BOB_VEC)
    engine = _engine(recorder, [alice, bob])
    drifted = np.array([1.0, 0.6, 0.0, 0.0], dtype=np.float32)

    engine.process_detections([make_detection(200, 200, descriptor=BOB_VEC)], now=0.0)
    engine.process_detections([make_detection(205, 200, descriptor=drifted)], now=0.5)

    assert [event[1] for event in recorder.of("recognized")] == ["bob"]
    (entry,) = engine.tracked_faces()
    assert entry.identity.id == "bob"
    assert entry.last_seen_at == 0.0


def test_duplicate_boxes_in_one_bucket_yield_one_event(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    engine.process_detections(
        [
            make_detection(100, 100, score=0.8, descriptor=ALICE_VEC),
            make_detection(104, 102, score=0.95, descriptor=ALICE_VEC),
        ],
        now=0.0,
    )
    assert len(recorder.of("recognized")) == 1
    assert len(engine.tracked_faces()) == 1
    # The higher-confidence box wins the bucket
    assert engine.tracked_faces()[0].last_detection.score == 0.95


def test_duplicate_unknown_boxes_yield_one_candidate(recorder):
    engine = _engine(recorder)
    frames = [[make_detection(100, 100), make_detection(104, 102)] for _ in range(9)]
    _run(engine, frames)
    assert len(recorder.of("ready")) == 1
    assert len(engine.unknown) == 1


def test_flicker_never_prompts_registration(recorder):
    engine = _engine(recorder)
    frames = [[make_detection(200, 200)]] + [[] for _ in range(20)]
    _run(engine, frames)
    assert recorder.of("ready") == []
    assert len(engine.unknown) == 0


def test_intermittent_face_restarts_confirmation(recorder):
    engine = _engine(recorder)
    # Seen only every other cycle: each gap (1.0s) exceeds the staleness window
    frames = [[make_detection(200, 200)] if step % 2 == 0 else [] for step in range(20)]
    _run(engine, frames)
    assert recorder.of("ready") == []


def test_low_confidence_unknown_is_ignored(recorder):
    engine = _engine(recorder)
    _run(engine, [[make_detection(200, 200, score=0.4)] for _ in range(12)])
    assert recorder.of("ready") == []
    assert len(engine.unknown) == 0


def test_malformed_and_small_detections_are_dropped(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    detections = [
        Detection(bbox=None, score=0.99, descriptor=ALICE_VEC),
        Detection(bbox=(0.0, 0.0, 100.0, 100.0), score=0.99, descriptor=None),
        make_detection(600, 600, size=20, descriptor=ALICE_VEC),
        make_detection(200, 200, score=0.5, descriptor=ALICE_VEC),
    ]
    update = engine.process_detections(detections, now=0.0)
    assert len(recorder.of("recognized")) == 1
    assert update.faces[0].detection.bbox == (200.0, 200.0, 320.0, 320.0)


def test_descriptor_length_mismatch_is_not_a_match(recorder):
    short = make_identity("short", [1.0, 0.0, 0.0])
    engine = _engine(recorder, [short])
    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=0.0)
    assert recorder.of("recognized") == []
    assert len(engine.unknown.candidates) == 1


def test_pending_registration_abandoned_after_ttl(recorder):
    engine = _engine(recorder)
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])
    (_, key) = recorder.of("ready")[0]

    # Confirmed at t=4.0; abandoned once unseen for more than 3.0s
    for step in range(9, 15):
        engine.process_detections([], now=step * INTERVAL)
    assert recorder.of("removed") == []
    engine.process_detections([], now=15 * INTERVAL)
    assert recorder.of("removed") == [("removed", key)]
    assert engine.pending_registrations() == []


def test_pending_face_stays_pending_while_visible(recorder):
    engine = _engine(recorder)
    _run(engine, [[make_detection(200, 200)] for _ in range(30)])
    assert len(recorder.of("ready")) == 1
    assert recorder.of("removed") == []
    assert len(engine.pending_registrations()) == 1


def test_register_face_then_recognize_on_next_sighting(recorder):
    store = InMemoryIdentityStore()
    engine = TrackingEngine(identity_store=store)
    engine.set_identities([])
    engine.subscribe(recorder)
    stranger = make_detection(200, 200)
    _run(engine, [[stranger] for _ in range(9)])
    (_, key) = recorder.of("ready")[0]

    identity_id = engine.register_face(key, "  Alex ", note="volunteer medic")
    assert recorder.of("removed") == [("removed", key)]
    assert engine.pending_registrations() == []
    (saved,) = store.load_known_identities("default")
    assert saved.id == identity_id
    assert saved.display_name == "Alex"
    assert saved.note == "volunteer medic"

    engine.process_detections([make_detection(202, 200)], now=5.0)
    assert recorder.of("recognized")[-1][1] == identity_id
    assert recorder.updates[-1].faces[0].label == "Alex"
    assert len(engine.unknown) == 0


def test_register_face_errors(recorder):
    class FailingStore(InMemoryIdentityStore):
        def save_new_identity(self, *args, **kwargs):
            raise ConnectionError("datastore offline")

    engine = TrackingEngine(identity_store=FailingStore())
    engine.set_identities([])
    engine.subscribe(recorder)
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])
    (_, key) = recorder.of("ready")[0]

    with pytest.raises(KeyError):
        engine.register_face(key._replace(serial=7), "Alex")
    with pytest.raises(ValueError):
        engine.register_face(key, "   ")
    with pytest.raises(ConnectionError):
        engine.register_face(key, "Alex")
    assert [reg.tracking_key for reg in engine.pending_registrations()] == [key]


def test_skip_registration_clears_pending(recorder):
    engine = _engine(recorder)
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])
    (_, key) = recorder.of("ready")[0]
    engine.skip_registration(key)
    assert recorder.of("removed") == [("removed", key)]
    assert engine.pending_registrations() == []
    with pytest.raises(KeyError):
        engine.skip_registration(key)


def test_recognition_discards_unknown_entry_at_same_position(recorder):
    engine = _engine(recorder)
    _run(engine, [[make_detection(200, 200, descriptor=ALICE_VEC)] for _ in range(3)])
    assert len(engine.unknown.candidates) == 1

    engine.set_identities([make_identity("alice", ALICE_VEC)])
    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=1.5)
    assert len(engine.unknown) == 0
    assert len(recorder.of("recognized")) == 1


def test_rekey_on_jump_emits_removal_then_recognition(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice], rekey_on_jump=True)
    _run(engine, [[make_detection(100, 100, descriptor=ALICE_VEC)], [make_detection(900, 500, descriptor=ALICE_VEC)]])

    first, removed, second = recorder.events
    assert first[0] == "recognized" and second[0] == "recognized"
    assert removed == ("removed", first[2])
    assert second[2] != first[2]
    assert [entry.tracking_key for entry in engine.tracked_faces()] == [second[2]]


def test_deleted_identity_entry_is_reclaimed_by_reregistered_person(recorder):
    alice = make_identity("alice", ALICE_VEC)
    engine = _engine(recorder, [alice])
    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=0.0)
    key = recorder.of("recognized")[0][2]

    engine.set_identities([make_identity("alice-2", ALICE_VEC, name="Alice")])
    engine.process_detections([make_detection(205, 200, descriptor=ALICE_VEC)], now=0.5)

    assert len(recorder.of("recognized")) == 1
    (entry,) = engine.tracked_faces()
    assert entry.tracking_key == key
    assert entry.identity.id == "alice-2"


def test_two_people_get_distinct_keys(recorder):
    alice = make_identity("alice", ALICE_VEC)
    bob = make_identity("bob", BOB_VEC)
    engine = _engine(recorder, [alice, bob])
    engine.process_detections(
        [make_detection(100, 100, descriptor=ALICE_VEC), make_detection(600, 100, descriptor=BOB_VEC)],
        now=0.0,
    )
    keys = [event[2] for event in recorder.of("recognized")]
    assert len(set(keys)) == 2


def test_frame_update_is_emitted_last_each_cycle():
    order = []

    class OrderObserver(EngineObserver):
        def on_face_recognized(self, identity, detection, tracking_key):
            order.append("recognized")

        def on_frame_update(self, update):
            order.append("frame")

    engine = TrackingEngine()
    engine.set_identities([make_identity("alice", ALICE_VEC)])
    engine.subscribe(OrderObserver())
    engine.process_detections([make_detection(200, 200, descriptor=ALICE_VEC)], now=0.0)
    engine.process_detections([], now=0.5)
    assert order == ["recognized", "frame", "frame"]


def test_failing_observer_does_not_block_others(recorder):
    class Broken(EngineObserver):
        def on_frame_update(self, update):
            raise RuntimeError("overlay crashed")

    engine = TrackingEngine()
    engine.set_identities([])
    engine.subscribe(Broken())
    engine.subscribe(recorder)
    engine.process_detections([make_detection(200, 200)], now=0.0)
    assert len(recorder.updates) == 1


def test_store_unavailable_means_everything_is_unknown(recorder):
    class OfflineStore(InMemoryIdentityStore):
        def load_known_identities(self, user_scope=None):
            raise ConnectionError("offline")

    engine = TrackingEngine(identity_store=OfflineStore())
    engine.subscribe(recorder)
    assert engine.reload_identities() == []
    _run(engine, [[make_detection(200, 200, descriptor=ALICE_VEC)] for _ in range(9)])
    assert recorder.of("recognized") == []
    assert len(recorder.of("ready")) == 1

    engine.set_identities([make_identity("alice", ALICE_VEC)])
    assert [identity.id for identity in engine.reload_identities()] == ["alice"]
    assert [identity.id for identity in engine.identities] == ["alice"]


def test_reload_identities_filters_by_user_scope():
    alice = make_identity("alice", ALICE_VEC)
    bob = make_identity("bob", BOB_VEC)
    bob.user_scope = "other"
    engine = TrackingEngine(identity_store=InMemoryIdentityStore([alice, bob]))
    assert [identity.id for identity in engine.reload_identities()] == ["alice"]


def test_multiple_engines_are_independent():
    first = _engine(RecordingObserver())
    second = _engine(RecordingObserver())
    first.process_detections([make_detection(200, 200)], now=0.0)
    assert len(first.unknown) == 1
    assert len(second.unknown) == 0


def test_frame_update_reflects_registration_made_by_observer(recorder):
    class Registrar(EngineObserver):
        def __init__(self, engine):
            self.engine = engine
            self.ids = []

        def on_new_face_ready(self, detection, tracking_key):
            self.ids.append(self.engine.register_face(tracking_key, "Visitor"))

    engine = _engine(recorder)
    registrar = engine.subscribe(Registrar(engine))
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])

    (_, key) = recorder.of("ready")[0]
    assert recorder.of("removed") == [("removed", key)]
    assert recorder.updates[-1].faces == []
    assert len(registrar.ids) == 1


def test_frame_update_reflects_skip_made_by_observer(recorder):
    engine = _engine(recorder)
    engine.subscribe(CallbackObserver(on_new_face_ready=lambda det, key: engine.skip_registration(key)))
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])
    assert len(recorder.of("removed")) == 1
    assert recorder.updates[-1].faces == []


def test_skip_from_another_thread_is_applied_on_next_cycle(recorder):
    engine = _engine(recorder)
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])
    (_, key) = recorder.of("ready")[0]

    worker = threading.Thread(target=engine.skip_registration, args=(key,))
    worker.start()
    worker.join()
    assert recorder.of("removed") == []
    assert [reg.tracking_key for reg in engine.pending_registrations()] == [key]

    engine.process_detections([], now=4.5)
    assert recorder.of("removed") == [("removed", key)]
    assert engine.pending_registrations() == []


def test_register_from_another_thread_recognizes_on_next_cycle(recorder):
    store = InMemoryIdentityStore()
    engine = TrackingEngine(identity_store=store)
    engine.set_identities([])
    engine.subscribe(recorder)
    _run(engine, [[make_detection(200, 200)] for _ in range(9)])
    (_, key) = recorder.of("ready")[0]

    result = []
    worker = threading.Thread(target=lambda: result.append(engine.register_face(key, "Alex")))
    worker.start()
    worker.join()
    (identity_id,) = result
    assert [identity.id for identity in store.load_known_identities()] == [identity_id]
    assert recorder.of("removed") == []

    engine.process_detections([make_detection(202, 200)], now=4.5)
    assert recorder.events[-2:] == [("removed", key), ("recognized", identity_id, recorder.events[-1][2])]
    assert engine.pending_registrations() == []


def test_nearby_unknown_faces_in_different_buckets_stay_separate(recorder):
    engine = _engine(recorder)
    frames = [
        [make_detection(100, 100, score=0.95), make_detection(150, 100, score=0.9)]
        for _ in range(9)
    ]
    _run(engine, frames)
    ready = recorder.of("ready")
    assert len(ready) == 2
    assert len({key for _, key in ready}) == 2
