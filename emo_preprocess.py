"""
EmoLens — Face Preprocessing
=============================
Tone, orientation, resampling and tensor packing for a face crop.

Stage order (per face):
  1. apply_tone      — desaturate to luma, contrast gain around mid-grey
  2. apply_rotation  — fixed quarter turn for the sensor mount
  3. resize_and_pack — exact target size, then classifier layout

Each stage returns None when it cannot produce a usable image; the
engine turns that into a skipped face, never an exception.

Planar Layout Documentation:
  ═══════════════════════════════════════════════════════════
  The planar classifier input is (1, 3, H, W) float32. Cell
  [0, c, r, col] reads the byte at

      r * bytes_per_row + col * channels + c

  of the resized pixel buffer, divided by 255.0. Iteration order is
  channel-major, then row-major, then column-major. Any other
  element order silently corrupts every inference.
  ═══════════════════════════════════════════════════════════
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from emo_types import PreparedTensor, TensorLayout

_log = logging.getLogger("EmoPreprocess")

_ROTATIONS = {
    -90: cv2.ROTATE_90_CLOCKWISE,
    270: cv2.ROTATE_90_CLOCKWISE,
    90: cv2.ROTATE_90_COUNTERCLOCKWISE,
    -270: cv2.ROTATE_90_COUNTERCLOCKWISE,
    180: cv2.ROTATE_180,
    -180: cv2.ROTATE_180,
}

_INTERPOLATIONS = {
    "bilinear": cv2.INTER_LINEAR,
    "bicubic": cv2.INTER_CUBIC,
    "area": cv2.INTER_AREA,
}


@dataclass(frozen=True)
class PreprocessSettings:
    """Preprocessing constants, fixed for the lifetime of an engine."""
    target_width: int = 224
    target_height: int = 224
    layout: TensorLayout = TensorLayout.PLANAR_FLOAT
    contrast: float = 1.1
    rotation_degrees: int = -90
    interpolation: str = "bilinear"

    @classmethod
    def from_config(cls, config: dict) -> "PreprocessSettings":
        return cls(
            target_width=int(config["target_width"]),
            target_height=int(config["target_height"]),
            layout=TensorLayout(config["tensor_layout"]),
            contrast=float(config["contrast_gain"]),
            rotation_degrees=int(config["rotation_degrees"]),
            interpolation=str(config["interpolation"]),
        )

    @property
    def tensor_shape(self) -> tuple[int, ...]:
        if self.layout is TensorLayout.PLANAR_FLOAT:
            return (1, 3, self.target_height, self.target_width)
        return (self.target_height, self.target_width, 4)


def _is_image(image) -> bool:
    if not isinstance(image, np.ndarray) or image.size == 0:
        return False
    if image.dtype != np.uint8:
        return False
    if image.ndim == 2:
        return True
    return image.ndim == 3 and image.shape[2] in (1, 3, 4)


# ─── Stage 1: Tone ────────────────────────────────────────────

def apply_tone(image: np.ndarray, contrast: float = 1.1) -> Optional[np.ndarray]:
    """Remove chrominance and sharpen contrast around the midpoint.

        luma = BT.601 weighted sum of B, G, R
        out  = clip((luma / 255 - 0.5) * contrast + 0.5, 0, 1) * 255

    The single luma plane is replicated to 3 channels so the output keeps
    the crop's geometry and channel count expected downstream.

    Returns:
        (H, W, 3) uint8 grey image, or None if the input is unusable.
    """
    if not _is_image(image) or not math.isfinite(contrast) or contrast <= 0:
        _log.debug("Tone transform rejected input (contrast=%s)", contrast)
        return None

    if image.ndim == 2 or image.shape[2] == 1:
        gray = image.reshape(image.shape[0], image.shape[1])
    elif image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    else:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)

    tone = gray.astype(np.float32) / 255.0
    tone = (tone - 0.5) * contrast + 0.5
    tone = np.clip(tone, 0.0, 1.0)
    gray_out = np.round(tone * 255.0).astype(np.uint8)

    return cv2.cvtColor(gray_out, cv2.COLOR_GRAY2BGR)


# ─── Stage 2: Orientation ─────────────────────────────────────

def apply_rotation(image: np.ndarray, degrees: int = -90) -> Optional[np.ndarray]:
    """Rotate by a fixed quarter turn to undo the sensor mount angle.

    Negative degrees turn clockwise as seen on screen. The result is
    re-validated; a non-positive extent invalidates the face.
    """
    if not _is_image(image):
        return None

    degrees = int(degrees)
    if degrees % 360 == 0:
        rotated = image.copy()
    elif degrees in _ROTATIONS:
        rotated = cv2.rotate(image, _ROTATIONS[degrees])
    else:
        raise ValueError(f"Unsupported rotation: {degrees} degrees")

    h, w = rotated.shape[:2]
    if h <= 0 or w <= 0:
        _log.debug("Rotated image extent is invalid: %dx%d", w, h)
        return None
    return rotated


# ─── Stage 3: Resize & Pack ───────────────────────────────────

def compute_scale(
    source_width: int,
    source_height: int,
    target_width: int,
    target_height: int,
) -> Optional[tuple[float, float]]:
    """Per-axis scale factors target / source.

    Returns None when either factor is zero, negative or non-finite
    (a zero-extent source gives an infinite scale).
    """
    scale_x = target_width / source_width if source_width > 0 else math.inf
    scale_y = target_height / source_height if source_height > 0 else math.inf

    if not (math.isfinite(scale_x) and math.isfinite(scale_y)):
        _log.debug("Invalid scale values: scale_x=%s scale_y=%s", scale_x, scale_y)
        return None
    if scale_x <= 0 or scale_y <= 0:
        _log.debug("Invalid scale values: scale_x=%s scale_y=%s", scale_x, scale_y)
        return None
    return scale_x, scale_y


def pack_planar(
    buffer: np.ndarray,
    height: int,
    width: int,
    bytes_per_row: int,
    channels: int = 3,
) -> Optional[np.ndarray]:
    """Pack an interleaved pixel buffer into a (1, C, H, W) float tensor.

    Args:
        buffer: Raw pixel bytes (any shape; read as a flat byte array).
        height: Rows to read.
        width: Columns to read.
        bytes_per_row: Row stride in bytes (may include padding).
        channels: Bytes per pixel and number of output planes.

    Returns:
        float32 array in [0, 1], or None if the buffer is too small for
        the requested geometry.
    """
    flat = np.ascontiguousarray(buffer, dtype=np.uint8).reshape(-1)
    last = (height - 1) * bytes_per_row + (width - 1) * channels + (channels - 1)
    if height <= 0 or width <= 0 or last >= flat.size:
        _log.debug("Pixel buffer too small for %dx%dx%d (stride=%d, size=%d)",
                   width, height, channels, bytes_per_row, flat.size)
        return None

    rows = np.arange(height, dtype=np.int64)[:, None] * bytes_per_row
    cols = np.arange(width, dtype=np.int64)[None, :] * channels
    offsets = rows + cols

    tensor = np.empty((1, channels, height, width), dtype=np.float32)
    for c in range(channels):
        tensor[0, c] = flat[offsets + c].astype(np.float32) / 255.0
    return tensor


def resize_and_pack(
    image: np.ndarray,
    settings: PreprocessSettings,
) -> Optional[PreparedTensor]:
    """Resample to the exact target size and pack for the classifier.

    Aspect ratio is NOT preserved: a non-square face is stretched to
    the square input. No letterboxing, no centre crop.
    """
    if not _is_image(image):
        return None

    h, w = image.shape[:2]
    if compute_scale(w, h, settings.target_width, settings.target_height) is None:
        return None

    interpolation = _INTERPOLATIONS.get(settings.interpolation, cv2.INTER_LINEAR)
    resized = cv2.resize(
        image, (settings.target_width, settings.target_height),
        interpolation=interpolation,
    )
    if resized.ndim == 2:
        resized = cv2.cvtColor(resized, cv2.COLOR_GRAY2BGR)
    elif resized.shape[2] == 4:
        resized = cv2.cvtColor(resized, cv2.COLOR_BGRA2BGR)

    if settings.layout is TensorLayout.PACKED_PIXEL:
        data = cv2.cvtColor(resized, cv2.COLOR_BGR2BGRA)
    else:
        # OpenCV buffers are BGR; the classifier was trained on RGB planes.
        rgb = np.ascontiguousarray(cv2.cvtColor(resized, cv2.COLOR_BGR2RGB))
        data = pack_planar(
            rgb, settings.target_height, settings.target_width,
            bytes_per_row=rgb.strides[0], channels=3,
        )
        if data is None:
            return None

    if tuple(data.shape) != settings.tensor_shape:
        _log.warning("Packed tensor shape %s != expected %s",
                     data.shape, settings.tensor_shape)
        return None
    return PreparedTensor(data=data, layout=settings.layout)
