"""
EmoLens — Shared Data Types
============================
Value types passed between pipeline stages. Every stage receives
an immutable value and hands a new one to the next stage; nothing
here holds a reference back to the camera buffer it came from.

Coordinate conventions:
  - NormalizedRect: detector unit square, BOTTOM-LEFT origin.
  - PixelRect:      absolute frame pixels, TOP-LEFT origin.

Error taxonomy:
  Adapters (detector, classifier) raise the exceptions below.
  Core stages signal invalid geometry / failed transforms by
  returning None, and the engine records a SkipReason instead.
"""

from __future__ import annotations

import enum
import math
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from typing import Optional, Sequence

import numpy as np


# ─── Labels & Sentinels ───────────────────────────────────────

# FER-2013 ordering; index order is also the arg-max tie-break priority.
EMOTION_LABELS: tuple[str, ...] = (
    "angry", "disgust", "fear", "happy", "sad", "surprise", "neutral",
)

NO_FACE_LABEL = "no_face"
ERROR_LABEL = "error"
UNKNOWN_LABEL = "unknown"
NO_FACE_INDEX = -1


# ─── Errors ───────────────────────────────────────────────────

class EmoLensError(Exception):
    """Base class for all pipeline errors."""


class DetectionFailure(EmoLensError):
    """The face detector call errored."""


class InferenceFailure(EmoLensError):
    """The classifier call errored or returned an unusable score vector."""


class TransformFailure(EmoLensError):
    """An image transform could not produce output."""


class GeometryInvalid(EmoLensError):
    """A rectangle is empty or degenerate after clipping or rotation."""


# ─── Orientation ──────────────────────────────────────────────

class DeviceOrientation(enum.Enum):
    PORTRAIT = "portrait"
    PORTRAIT_UPSIDE_DOWN = "portrait_upside_down"
    LANDSCAPE_LEFT = "landscape_left"
    LANDSCAPE_RIGHT = "landscape_right"
    UNKNOWN = "unknown"


class ImageOrientation(enum.Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


_ORIENTATION_MAP = {
    DeviceOrientation.PORTRAIT: ImageOrientation.UP,
    DeviceOrientation.PORTRAIT_UPSIDE_DOWN: ImageOrientation.DOWN,
    DeviceOrientation.LANDSCAPE_LEFT: ImageOrientation.LEFT,
    DeviceOrientation.LANDSCAPE_RIGHT: ImageOrientation.RIGHT,
}


def image_orientation_for(device: DeviceOrientation) -> ImageOrientation:
    """Map the device orientation at capture to the image orientation
    handed to the detector. Face-up, face-down and unknown map to UP."""
    return _ORIENTATION_MAP.get(device, ImageOrientation.UP)


# ─── Frame ────────────────────────────────────────────────────

@dataclass(frozen=True)
class Frame:
    """One captured camera frame.

    Attributes:
        pixels: (H, W, C) uint8 buffer. Never mutated by the pipeline.
        width: Frame width in pixels.
        height: Frame height in pixels.
        pixel_format: "BGR24" or "BGRA32".
        timestamp: Monotonic capture time in seconds.
        orientation: Device orientation at capture.
        sequence: Monotonic sequence number, assigned on admission.
    """
    pixels: np.ndarray
    width: int
    height: int
    pixel_format: str = "BGR24"
    timestamp: float = 0.0
    orientation: DeviceOrientation = DeviceOrientation.PORTRAIT
    sequence: int = 0

    @classmethod
    def from_array(
        cls,
        pixels: np.ndarray,
        timestamp: float = 0.0,
        orientation: DeviceOrientation = DeviceOrientation.PORTRAIT,
        sequence: int = 0,
    ) -> "Frame":
        h, w = pixels.shape[:2]
        channels = pixels.shape[2] if pixels.ndim == 3 else 1
        pixel_format = "BGRA32" if channels == 4 else "BGR24"
        return cls(pixels, w, h, pixel_format, timestamp, orientation, sequence)

    def with_sequence(self, sequence: int) -> "Frame":
        return Frame(self.pixels, self.width, self.height, self.pixel_format,
                     self.timestamp, self.orientation, sequence)

    def __repr__(self) -> str:
        return (
            f"Frame(sequence={self.sequence}, {self.width}x{self.height} "
            f"{self.pixel_format}, timestamp={self.timestamp:.3f}, "
            f"orientation={self.orientation.value})"
        )


# ─── Geometry ─────────────────────────────────────────────────

@dataclass(frozen=True)
class NormalizedRect:
    """Face rectangle in the detector's unit square (bottom-left origin)."""
    x: float
    y: float
    width: float
    height: float
    confidence: float = 1.0


@dataclass(frozen=True)
class PixelRect:
    """Face rectangle in absolute frame pixels (top-left origin)."""
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def is_valid(self) -> bool:
        values = (self.x, self.y, self.width, self.height)
        if not all(math.isfinite(v) for v in values):
            return False
        return self.width > 0 and self.height > 0

    def as_int_bbox(self) -> tuple[int, int, int, int]:
        """(x, y, w, h) rounded to whole pixels, for overlays and logs."""
        x0 = int(round(self.x))
        y0 = int(round(self.y))
        x1 = int(round(self.x + self.width))
        y1 = int(round(self.y + self.height))
        return (x0, y0, x1 - x0, y1 - y0)


@dataclass
class FaceCrop:
    """Zero-origin copy of one face region."""
    pixels: np.ndarray
    frame_sequence: int
    face_index: int
    rect: PixelRect

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


# ─── Tensors ──────────────────────────────────────────────────

class TensorLayout(enum.Enum):
    PLANAR_FLOAT = "planar_float"   # (1, 3, H, W) float32 in [0, 1]
    PACKED_PIXEL = "packed_pixel"   # (H, W, 4) uint8 BGRA


@dataclass
class PreparedTensor:
    """Classifier input. Shape is fixed by configuration."""
    data: np.ndarray
    layout: TensorLayout

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)


# ─── Scores & Results ─────────────────────────────────────────

class EmotionScores:
    """Ordered label → score mapping over a fixed label set.

    The label order is the tie-break priority used by the aggregator.
    """

    def __init__(self, labels: Sequence[str], values: Sequence[float]):
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if len(values) != len(labels):
            raise InferenceFailure(
                f"Expected {len(labels)} scores, got {len(values)}"
            )
        self._labels = tuple(labels)
        self._values = values

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def values(self) -> np.ndarray:
        return self._values.copy()

    def as_dict(self) -> "OrderedDict[str, float]":
        return OrderedDict(
            (label, float(v)) for label, v in zip(self._labels, self._values)
        )

    def __len__(self) -> int:
        return len(self._labels)

    def __getitem__(self, label: str) -> float:
        return float(self._values[self._labels.index(label)])

    def __repr__(self) -> str:
        body = ", ".join(f"{k}={v:.3f}" for k, v in self.as_dict().items())
        return f"EmotionScores({body})"


@dataclass
class EmotionResult:
    """Published state of one face slot (or the no-face sentinel)."""
    face_index: int
    label: str
    timestamp: float
    frame_sequence: int = 0
    bbox: Optional[tuple[int, int, int, int]] = None
    scores: Optional[dict] = None
    debug_crop: Optional[np.ndarray] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d.pop("debug_crop", None)
        return d


@dataclass(frozen=True)
class ThrottleState:
    counter: int
    interval: int


# ─── Per-frame reporting ──────────────────────────────────────

class FaceState(enum.Enum):
    PUBLISHED = "published"
    SKIPPED = "skipped"


class SkipReason(enum.Enum):
    GEOMETRY_INVALID = "geometry_invalid"
    TRANSFORM_FAILED = "transform_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass
class FaceOutcome:
    """Terminal state of one face in one admitted frame."""
    face_index: int
    state: FaceState
    label: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    bbox: Optional[tuple[int, int, int, int]] = None
    latency_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "face_index": self.face_index,
            "state": self.state.value,
            "label": self.label,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "bbox": self.bbox,
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass
class FrameReport:
    """Outcome of one admitted frame."""
    frame_sequence: int
    timestamp: float
    faces_detected: int
    outcomes: list[FaceOutcome] = field(default_factory=list)
    detection_failed: bool = False
    timing_breakdown: dict = field(default_factory=dict)

    @property
    def published(self) -> list[FaceOutcome]:
        return [o for o in self.outcomes if o.state is FaceState.PUBLISHED]

    @property
    def skipped(self) -> list[FaceOutcome]:
        return [o for o in self.outcomes if o.state is FaceState.SKIPPED]
