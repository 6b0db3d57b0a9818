#!/usr/bin/env python3
"""CLI for running the face tracking engine against a camera or a video file."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TextIO

import cv2

from facetrack.config import load_engine_config
from facetrack.detectors.face_insight import InsightFaceDetector
from facetrack.engine import TrackingEngine
from facetrack.events import EngineObserver, LoggingObserver
from facetrack.io_utils import ensure_dir, json_default, load_yaml, setup_logging
from facetrack.recognition.identity_store import ParquetIdentityStore


LOGGER = logging.getLogger("scripts.run_engine")


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Track and recognize faces from a camera or video")
    parser.add_argument("source", type=str, help="Camera index (e.g. 0) or path to a video file")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/engine.yaml"),
        help="Engine configuration YAML",
    )
    parser.add_argument(
        "--identity-store",
        type=Path,
        default=Path("data/identities.parquet"),
        help="Parquet file holding registered identities",
    )
    parser.add_argument("--user-scope", type=str, default=None, help="Only load identities for this scope")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between detection cycles")
    parser.add_argument("--match-threshold", type=float, default=None)
    parser.add_argument("--relaxed-threshold", type=float, default=None)
    parser.add_argument("--min-face-size", type=float, default=None, help="Minimum face size in pixels")
    parser.add_argument("--max-cycles", type=int, default=None, help="Stop after this many cycles")
    parser.add_argument(
        "--providers",
        type=str,
        nargs="*",
        default=None,
        help="ONNX execution providers (overrides platform defaults)",
    )
    parser.add_argument(
        "--det-size",
        type=int,
        nargs=2,
        default=None,
        metavar=("WIDTH", "HEIGHT"),
        help="Override InsightFace detection size",
    )
    parser.add_argument("--det-thresh", type=float, default=None)
    parser.add_argument(
        "--events-jsonl",
        type=Path,
        default=None,
        help="Append every engine event to this JSON-lines file",
    )
    parser.add_argument(
        "--auto-register",
        type=str,
        default=None,
        metavar="PREFIX",
        help="Register confirmed unknown faces automatically as '<PREFIX> <n>'",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def parse_source(source: str):
    """Camera indices are given as plain integers; anything else is a path."""
    return int(source) if source.isdigit() else source


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "detection_interval_s": args.interval,
        "match_threshold": args.match_threshold,
        "relaxed_match_threshold": args.relaxed_threshold,
        "min_face_size_px": args.min_face_size,
        "user_scope": args.user_scope,
    }


class JsonlEventWriter(EngineObserver):
    """Appends one JSON object per engine event."""

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    def _write(self, payload: Dict[str, Any]) -> None:
        self.stream.write(json.dumps(payload, default=json_default) + "\n")
        self.stream.flush()

    def on_face_recognized(self, identity, detection, tracking_key) -> None:
        self._write(
            {
                "event": "face_recognized",
                "key": str(tracking_key),
                "identity_id": identity.id,
                "name": identity.display_name,
                "bbox": detection.bbox,
                "score": detection.score,
            }
        )

    def on_new_face_ready(self, detection, tracking_key) -> None:
        self._write({"event": "new_face_ready", "key": str(tracking_key), "bbox": detection.bbox, "score": detection.score})

    def on_frame_update(self, update) -> None:
        self._write(
            {
                "event": "frame_update",
                "timestamp": update.timestamp,
                "faces": [
                    {"key": str(face.tracking_key), "status": face.status, "label": face.label, "bbox": face.detection.bbox}
                    for face in update.faces
                ],
            }
        )

    def on_face_removed(self, tracking_key) -> None:
        self._write({"event": "face_removed", "key": str(tracking_key)})


class AutoRegistrar(EngineObserver):
    """Registers every confirmed unknown face under a generated name."""

    def __init__(self, engine: TrackingEngine, prefix: str) -> None:
        self.engine = engine
        self.prefix = prefix
        self.count = 0

    def on_new_face_ready(self, detection, tracking_key) -> None:
        self.count += 1
        name = f"{self.prefix} {self.count}"
        identity_id = self.engine.register_face(tracking_key, name, note="auto-registered")
        LOGGER.info("Auto-registered %s as %s", tracking_key, identity_id)


def make_frame_source(cap: "cv2.VideoCapture", stride: int = 1) -> Callable[[], Any]:
    """Return a callable yielding one frame per call, skipping ``stride - 1`` frames in between."""

    def read_frame():
        for _ in range(max(0, stride - 1)):
            if not cap.grab():
                return None
        ok, frame = cap.read()
        return frame if ok else None

    return read_frame


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    config_path = args.config if args.config and args.config.exists() else None
    if args.config and config_path is None:
        LOGGER.warning("Config %s not found; using defaults", args.config)
    config = load_engine_config(config_path, build_overrides(args))
    detector_cfg = (load_yaml(config_path).get("detector", {}) if config_path else {}) or {}

    det_size = tuple(args.det_size) if args.det_size else tuple(detector_cfg.get("det_size", [640, 640]))
    det_thresh = args.det_thresh if args.det_thresh is not None else float(detector_cfg.get("det_thresh", 0.5))
    detector = InsightFaceDetector(
        model_name=detector_cfg.get("model_name", "buffalo_l"),
        providers=args.providers,
        det_size=det_size,
        det_thresh=det_thresh,
    )
    store = ParquetIdentityStore(args.identity_store)
    engine = TrackingEngine(detector=detector, identity_store=store, config=config)
    engine.subscribe(LoggingObserver(logging.getLogger("facetrack.events")))
    if args.auto_register:
        engine.subscribe(AutoRegistrar(engine, args.auto_register))

    source = parse_source(args.source)
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        raise RuntimeError(f"Unable to open video source {args.source}")
    stride = 1
    if isinstance(source, str):
        fps = cap.get(cv2.CAP_PROP_FPS) or 30.0
        stride = max(1, int(round(fps * config.detection_interval_s)))
    LOGGER.info(
        "Running engine source=%s stride=%d interval=%.2fs store=%s",
        args.source,
        stride,
        config.detection_interval_s,
        args.identity_store,
    )

    events_fh = None
    if args.events_jsonl is not None:
        ensure_dir(args.events_jsonl.parent)
        events_fh = args.events_jsonl.open("a", encoding="utf-8")
        engine.subscribe(JsonlEventWriter(events_fh))

    try:
        asyncio.run(engine.run(make_frame_source(cap, stride), max_cycles=args.max_cycles))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted; shutting down")
    finally:
        engine.dispose()
        cap.release()
        if events_fh is not None:
            events_fh.close()


if __name__ == "__main__":
    main()
