"""
EmoLens — Launcher
===================
Main entry point for live emotion recognition from a camera or a
video file. Prints every published label change to the console.

Usage:
  python start_emo.py --source 0
  python start_emo.py --source clip.mp4 --detector haar --layout packed_pixel
"""

import argparse
import logging
import os
import sys
import time

from emo_aggregator import EmotionObserver
from emo_config import load_config, setup_logger
from emo_engine import EmotionEngine
from emo_types import NO_FACE_INDEX, EmotionResult

_log = logging.getLogger("EmoLauncher")


class ConsoleObserver(EmotionObserver):
    """Print each label change."""

    def on_emotion(self, result: EmotionResult) -> None:
        if result.face_index == NO_FACE_INDEX:
            print(f"[EMO] {result.label}")
        else:
            print(f"[EMO] face {result.face_index}: {result.label:<10} bbox={result.bbox}")

    def on_clear(self) -> None:
        _log.debug("Per-face state cleared")


def build_config(args: argparse.Namespace) -> dict:
    overrides = {}
    if args.source is not None:
        overrides["camera_id"] = int(args.source) if args.source.isdigit() else args.source
    if args.model:
        overrides["model_path"] = os.path.abspath(args.model)
    if args.detector:
        overrides["detector_type"] = args.detector
    if args.layout:
        overrides["tensor_layout"] = args.layout
    if args.throttle:
        overrides["throttle_interval"] = args.throttle
    if args.debug_crops:
        overrides["debug_crops"] = True
    return load_config(args.config, overrides)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="EmoLens live emotion recognition")
    parser.add_argument("--source", type=str, default=None, help="Camera ID (0, 1, etc.) or video file path")
    parser.add_argument("--config", type=str, default=None, help="YAML config file (default: config.yaml)")
    parser.add_argument("--model", type=str, default=None, help="Path to ONNX emotion model")
    parser.add_argument("--detector", choices=["mediapipe", "haar"], default=None, help="Face detector backend")
    parser.add_argument("--layout", choices=["planar_float", "packed_pixel"], default=None, help="Classifier input layout")
    parser.add_argument("--throttle", type=int, default=None, help="Admit 1 of every N frames")
    parser.add_argument("--debug-crops", action="store_true", help="Attach the preprocessed face crop to results")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run until Ctrl-C)")

    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        print(f"[EMO] Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logger(None, config["log_level"])

    print("=" * 60)
    print("  EmoLens — Starting...")
    print(f"  Source:   {config['camera_id']}")
    print(f"  Detector: {config['detector_type']}")
    print(f"  Model:    {config['model_path']}")
    print(f"  Layout:   {config['tensor_layout']} {config['target_width']}x{config['target_height']}")
    print(f"  Throttle: 1/{config['throttle_interval']}")
    print("=" * 60)

    engine = None
    try:
        engine = EmotionEngine(config)
        engine.add_observer(ConsoleObserver())
        engine.start()
        print("[EMO] System Active. Press Ctrl-C to exit.")

        started = time.monotonic()
        while engine.running and not engine.source_exhausted:
            if args.duration and time.monotonic() - started >= args.duration:
                break
            time.sleep(0.1)
        if engine.source_exhausted:
            print("[EMO] Video source finished.")
            time.sleep(0.5)  # let the last admitted frames drain
            engine.flush(timeout=5.0)

    except KeyboardInterrupt:
        print("\n[EMO] Interrupted by user.")
    finally:
        if engine is not None:
            print("[EMO] Cleaning up...")
            engine.stop()
            health = engine.get_health_status()
            print(f"[EMO] Frames: {health['throttle']}")
        print("[EMO] Shutdown complete.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
