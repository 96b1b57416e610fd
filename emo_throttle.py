"""
EmoLens — Frame Throttler
==========================
Deterministic modulo rate limiter. Admits exactly one frame out of
every N captured frames (N=6 turns a 30 fps camera into 5 fps of
downstream work). It only looks at the frame ordinal, never at how
long earlier frames took to process.
"""

from __future__ import annotations

import logging

from emo_types import ThrottleState

_log = logging.getLogger("EmoThrottle")


class FrameThrottler:
    """Admit one frame per `interval` frames.

    The counter is incremented before the check, so with interval=6
    the admitted 0-based ordinals are 5, 11, 17, ...
    """

    def __init__(self, interval: int = 6) -> None:
        if int(interval) < 1:
            raise ValueError(f"Throttle interval must be >= 1, got {interval}")
        self._interval: int = int(interval)
        self._counter: int = 0
        self._admitted: int = 0
        self._dropped: int = 0

    @property
    def interval(self) -> int:
        return self._interval

    @property
    def state(self) -> ThrottleState:
        return ThrottleState(counter=self._counter, interval=self._interval)

    def admit(self) -> bool:
        """Count one captured frame and decide whether it is admitted."""
        self._counter += 1
        if self._counter % self._interval == 0:
            self._admitted += 1
            return True
        self._dropped += 1
        return False

    def reset(self) -> None:
        """Start over, e.g. on capture session restart."""
        _log.debug(
            "Throttle reset after %d frames (admitted=%d dropped=%d)",
            self._counter, self._admitted, self._dropped,
        )
        self._counter = 0
        self._admitted = 0
        self._dropped = 0

    def get_stats(self) -> dict:
        return {
            "interval": self._interval,
            "frames_seen": self._counter,
            "frames_admitted": self._admitted,
            "frames_dropped": self._dropped,
        }
