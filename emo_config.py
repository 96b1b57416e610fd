"""
EmoLens — Configuration
========================
DEFAULT_CONFIG is the single source of defaults. A YAML file
(config.yaml) and explicit overrides are layered on top:

    config = {**DEFAULT_CONFIG, **yaml_file, **overrides}

Every integrator-facing constant lives here: throttle ratio, target
tensor size and layout, contrast gain, rotation, and the ordered
label set.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import yaml

from emo_types import EMOTION_LABELS, TensorLayout

# ─── Project Root ─────────────────────────────────────────────
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_CONFIG_PATH = os.path.join(_SCRIPT_DIR, "config.yaml")

DEFAULT_CONFIG: dict[str, Any] = {
    # Capture
    "camera_id": 0,
    "camera_width": 1280,
    "camera_height": 720,
    "device_orientation": "portrait",
    # Admission (30 fps → 5 fps)
    "throttle_interval": 6,
    # Detection
    "detector_type": "mediapipe",
    "detector_model": "models/blaze_face_short_range.tflite",
    "max_faces": 4,
    "min_detection_confidence": 0.5,
    # Preprocessing
    "target_width": 224,
    "target_height": 224,
    "tensor_layout": "planar_float",
    "contrast_gain": 1.1,
    "rotation_degrees": -90,
    "interpolation": "bilinear",
    # Classification
    "model_path": "models/emotion_classifier.onnx",
    "providers": ["CPUExecutionProvider"],
    "labels": list(EMOTION_LABELS),
    "classifier_max_inflight": 2,
    "face_workers": 4,
    # Publishing
    "stale_result_fencing": True,
    "debug_crops": False,
    # Logging
    "log_path": "logs/emo_audit.jsonl",
    "log_level": "INFO",
}

_DETECTOR_TYPES = ("mediapipe", "haar")
_INTERPOLATIONS = ("bilinear", "bicubic", "area")
_ROTATIONS = (0, 90, -90, 180, -180, 270, -270)
_ORIENTATIONS = (
    "portrait", "portrait_upside_down", "landscape_left",
    "landscape_right", "unknown",
)


def load_config(
    path: Optional[str] = None,
    overrides: Optional[dict] = None,
) -> dict:
    """Build the effective configuration.

    Args:
        path: YAML file to load. None uses config.yaml next to this module
              if it exists; a missing explicit path is an error.
        overrides: Values that win over both defaults and the file.

    Returns:
        Validated configuration dictionary.
    """
    file_config: dict = {}
    target = path or DEFAULT_CONFIG_PATH
    if path is not None or os.path.exists(target):
        with open(target, "r", encoding="utf-8") as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"Config file {target} must contain a mapping")

    config = {**DEFAULT_CONFIG, **file_config, **(overrides or {})}
    validate_config(config)
    return config


def validate_config(config: dict) -> None:
    """Raise ValueError for any setting the pipeline cannot run with."""
    if int(config["throttle_interval"]) < 1:
        raise ValueError(
            f"throttle_interval must be >= 1, got {config['throttle_interval']}")

    if int(config["target_width"]) <= 0 or int(config["target_height"]) <= 0:
        raise ValueError(
            f"Target size must be positive, got "
            f"{config['target_width']}x{config['target_height']}")

    try:
        TensorLayout(config["tensor_layout"])
    except ValueError:
        raise ValueError(
            f"Unknown tensor_layout: {config['tensor_layout']!r}. "
            f"Supported: {[l.value for l in TensorLayout]}") from None

    if config["detector_type"] not in _DETECTOR_TYPES:
        raise ValueError(
            f"Unknown detector_type: {config['detector_type']!r}. "
            f"Supported: {list(_DETECTOR_TYPES)}")

    if config["interpolation"] not in _INTERPOLATIONS:
        raise ValueError(
            f"Unknown interpolation: {config['interpolation']!r}. "
            f"Supported: {list(_INTERPOLATIONS)}")

    if int(config["rotation_degrees"]) not in _ROTATIONS:
        raise ValueError(
            f"rotation_degrees must be a quarter turn, got {config['rotation_degrees']}")

    if config["device_orientation"] not in _ORIENTATIONS:
        raise ValueError(
            f"Unknown device_orientation: {config['device_orientation']!r}")

    labels = list(config["labels"])
    if len(labels) != len(EMOTION_LABELS) or len(set(labels)) != len(labels):
        raise ValueError(
            f"labels must be {len(EMOTION_LABELS)} unique entries, got {labels}")

    if float(config["contrast_gain"]) <= 0:
        raise ValueError(f"contrast_gain must be > 0, got {config['contrast_gain']}")

    for key in ("classifier_max_inflight", "face_workers", "max_faces"):
        if int(config[key]) < 1:
            raise ValueError(f"{key} must be >= 1, got {config[key]}")


# ─── Logging Setup ───────────────────────────────────────────
def setup_logger(name: Optional[str] = None, level=logging.INFO) -> logging.Logger:
    """Attach a console handler to a logger (root logger if name is None)."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-16s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)
    return logger
