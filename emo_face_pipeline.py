"""
EmoLens — Face Geometry & Cropping
===================================
Owns the conversion from detector rectangles to frame pixels and
the extraction of the face region. No other module should slice
frame buffers directly.

Coordinate Documentation:
  ═══════════════════════════════════════════════════════════
  Detectors report a unit-square rectangle with the origin at the
  BOTTOM-LEFT of the image (y grows upwards). Frame buffers are
  indexed with the origin at the TOP-LEFT (row 0 is the top row).

    x = nx * W
    y = (1 - ny - nh) * H        (vertical axis flip)
    w = nw * W
    h = nh * H

  The result is intersected with [0, W) x [0, H). Faces partially
  off-frame keep their visible part; faces fully off-frame, or with
  zero/negative/NaN extent, are reported as None and skipped.
  ═══════════════════════════════════════════════════════════
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import numpy as np

from emo_types import DeviceOrientation, FaceCrop, Frame, NormalizedRect, PixelRect

_log = logging.getLogger("EmoFacePipeline")


def intersect_rect(rect: PixelRect, width: float, height: float) -> Optional[PixelRect]:
    """Clip a pixel rectangle against the frame extent [0,W) x [0,H).

    Returns None when the intersection is empty.
    """
    x0 = max(rect.x, 0.0)
    y0 = max(rect.y, 0.0)
    x1 = min(rect.x + rect.width, float(width))
    y1 = min(rect.y + rect.height, float(height))

    if x1 <= x0 or y1 <= y0:
        return None
    return PixelRect(x0, y0, x1 - x0, y1 - y0)


def normalize_rect(
    rect: NormalizedRect,
    frame_width: int,
    frame_height: int,
    orientation: Optional[DeviceOrientation] = None,
) -> Optional[PixelRect]:
    """Convert a detector rectangle into a clipped frame-pixel rectangle.

    Args:
        rect: Unit-square rectangle, bottom-left origin.
        frame_width: Source frame width in pixels.
        frame_height: Source frame height in pixels.
        orientation: Device orientation at capture. Recorded by the
            caller for rotation compensation; the detector already ran
            with it applied, so it does not change the math here.

    Returns:
        A valid PixelRect inside the frame, or None if the rectangle is
        off-frame or degenerate.
    """
    values = (rect.x, rect.y, rect.width, rect.height)
    if not all(math.isfinite(v) for v in values):
        _log.debug("Non-finite detector rectangle: %s", rect)
        return None
    if frame_width <= 0 or frame_height <= 0:
        _log.debug("Degenerate frame extent %dx%d", frame_width, frame_height)
        return None

    raw = PixelRect(
        x=rect.x * frame_width,
        y=(1.0 - rect.y - rect.height) * frame_height,
        width=rect.width * frame_width,
        height=rect.height * frame_height,
    )

    clipped = intersect_rect(raw, frame_width, frame_height)
    if clipped is None:
        _log.debug("Face rectangle %s does not intersect %dx%d frame",
                   raw, frame_width, frame_height)
        return None
    if not clipped.is_valid:
        _log.debug("Invalid face rectangle after clipping: %s", clipped)
        return None
    return clipped


def crop_face(frame: Frame, rect: PixelRect, face_index: int = 0) -> Optional[FaceCrop]:
    """Copy the face region out of the frame.

    The crop owns its pixels (never a view into the frame buffer) and
    its origin is (0, 0) regardless of where the face sat in the frame.
    Downstream rotation/scale math depends on that zero origin.

    Returns:
        FaceCrop with strictly positive integer dimensions, or None if
        the rectangle rounds to an empty pixel region.
    """
    if not rect.is_valid:
        return None

    x0 = max(0, int(round(rect.x)))
    y0 = max(0, int(round(rect.y)))
    x1 = min(frame.width, int(round(rect.x + rect.width)))
    y1 = min(frame.height, int(round(rect.y + rect.height)))

    if x1 <= x0 or y1 <= y0:
        _log.debug("Face %d rounds to empty region (%d,%d)-(%d,%d)",
                   face_index, x0, y0, x1, y1)
        return None

    pixels = np.ascontiguousarray(frame.pixels[y0:y1, x0:x1]).copy()
    if pixels.size == 0:
        return None

    return FaceCrop(
        pixels=pixels,
        frame_sequence=frame.sequence,
        face_index=face_index,
        rect=rect,
    )
