"""
EmoLens — Camera Frame Source
==============================
The only module that talks to cv2.VideoCapture. Produces immutable
Frame values for the engine's capture thread.

Per read:
  1. grab the newest buffer (driver queue limited to one frame)
  2. reject unusable buffers, counting the reason
  3. stamp a monotonic timestamp and the device orientation

A video-file source that runs out of frames is reported through
`exhausted` so the capture loop can stop instead of spinning.
"""

from __future__ import annotations

import logging
import time
from collections import Counter, deque
from typing import Optional, Union

import cv2
import numpy as np

from emo_types import DeviceOrientation, Frame

_log = logging.getLogger("EmoCamera")


class EmotionCamera:
    """Camera index or video file wrapped as a Frame source."""

    MIN_SIZE: tuple[int, int] = (160, 120)      # (width, height)
    CHANNELS: tuple[int, ...] = (3, 4)          # BGR24 or BGRA32
    RATE_WINDOW: int = 30

    def __init__(
        self,
        source: Union[int, str] = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        orientation: DeviceOrientation = DeviceOrientation.PORTRAIT,
        backend: int = cv2.CAP_ANY,
    ) -> None:
        self._source = source
        self._is_file = isinstance(source, str) and not source.isdigit()
        self._orientation = orientation
        self._cap = cv2.VideoCapture(source, backend)

        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        for prop, value in ((cv2.CAP_PROP_FRAME_WIDTH, width),
                            (cv2.CAP_PROP_FRAME_HEIGHT, height)):
            if value:
                self._cap.set(prop, value)

        self._native_size = (
            int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )
        self._reads = 0
        self._drops: Counter = Counter()
        self._exhausted = False
        self._last_good = 0.0
        self._stamps: deque[float] = deque(maxlen=self.RATE_WINDOW)

        _log.info("EmotionCamera opened — source=%s size=%dx%d file=%s orientation=%s",
                  source, *self._native_size, self._is_file, orientation.value)

    # ── Properties ────────────────────────────────────────────

    @property
    def orientation(self) -> DeviceOrientation:
        return self._orientation

    @orientation.setter
    def orientation(self, value: DeviceOrientation) -> None:
        self._orientation = value

    @property
    def exhausted(self) -> bool:
        """True once a video-file source has no more frames."""
        return self._exhausted

    # ── Reading ───────────────────────────────────────────────

    def read_frame(self) -> Optional[Frame]:
        """Next usable Frame, or None if this read was dropped."""
        self._reads += 1
        stamp = time.monotonic()
        ret, pixels = self._cap.read()

        reason = self._rejection(ret, pixels)
        if reason is not None:
            self._drops[reason] += 1
            if reason == "read_failed" and self._is_file:
                self._exhausted = True
                _log.info("Video source %s exhausted after %d reads", self._source, self._reads)
            else:
                _log.debug("Frame dropped: %s", reason)
            return None

        self._last_good = stamp
        self._stamps.append(stamp)
        return Frame.from_array(pixels, timestamp=stamp, orientation=self._orientation)

    def _rejection(self, ret: bool, pixels) -> Optional[str]:
        """Why a captured buffer is unusable, or None if it is fine."""
        if not ret or pixels is None:
            return "read_failed"
        if not isinstance(pixels, np.ndarray) or pixels.dtype != np.uint8:
            return "bad_dtype"
        if pixels.ndim != 3 or pixels.shape[2] not in self.CHANNELS:
            return "bad_channels"
        min_w, min_h = self.MIN_SIZE
        if pixels.shape[1] < min_w or pixels.shape[0] < min_h:
            return "too_small"
        return None

    # ── Health ────────────────────────────────────────────────

    def measured_fps(self) -> float:
        """Rate of usable frames over the recent window."""
        if len(self._stamps) < 2:
            return 0.0
        span = self._stamps[-1] - self._stamps[0]
        return (len(self._stamps) - 1) / span if span > 0 else 0.0

    def get_health_status(self) -> dict:
        dropped = sum(self._drops.values())
        age_ms = (time.monotonic() - self._last_good) * 1000.0 if self._last_good else float("inf")
        return {
            "connected": self._cap.isOpened(),
            "fps_actual": self.measured_fps(),
            "frames_total": self._reads,
            "frames_dropped": dropped,
            "drop_rate_pct": dropped / self._reads * 100.0 if self._reads else 0.0,
            "drop_reasons": dict(self._drops),
            "last_valid_frame_age_ms": round(age_ms, 2),
            "resolution": self._native_size,
            "exhausted": self._exhausted,
        }

    # ── Lifecycle ─────────────────────────────────────────────

    def is_opened(self) -> bool:
        return self._cap.isOpened()

    def release(self) -> None:
        health = self.get_health_status()
        _log.info("EmotionCamera released — reads=%d dropped=%d %s fps=%.1f",
                  health["frames_total"], health["frames_dropped"],
                  health["drop_reasons"], health["fps_actual"])
        self._cap.release()

    def __enter__(self) -> "EmotionCamera":
        return self

    def __exit__(self, *args) -> None:
        self.release()
