"""
EmoLens — Result Aggregator
============================
Reduces classifier scores to a label and keeps the published
per-face state.

Rules:
  - Arg-max picks the FIRST maximum in label order (stable,
    independent of score magnitude).
  - One slot per face index; a new result overwrites the slot,
    no history is kept.
  - A slot the latest frame did not write is dropped (end_frame).
  - Observers are only notified when a slot's label changes.
  - All slot mutation happens on one publish context (PublishContext),
    the Python analogue of a UI thread.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional, Sequence, Union

import numpy as np

from emo_types import (
    EMOTION_LABELS,
    ERROR_LABEL,
    NO_FACE_INDEX,
    NO_FACE_LABEL,
    UNKNOWN_LABEL,
    EmotionResult,
    EmotionScores,
)

_log = logging.getLogger("EmoAggregator")


def argmax_first(scores: Sequence[float]) -> Optional[int]:
    """Index of the first maximum score.

    NaN scores never win. Returns None for an empty or all-NaN vector.
    """
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return None
    finite = ~np.isnan(values)
    if not finite.any():
        return None
    best = np.max(values[finite])
    # np.flatnonzero returns ascending indices, so [0] is the first maximum.
    return int(np.flatnonzero(finite & (values == best))[0])


# ─── Observer interface ───────────────────────────────────────

class EmotionObserver(ABC):
    """Receives published emotion state."""

    @abstractmethod
    def on_emotion(self, result: EmotionResult) -> None:
        """Called on the publish context whenever a slot changes."""
        pass

    def on_clear(self) -> None:
        """Called when all per-face slots are cleared (no face in view)."""
        pass


class _CallableObserver(EmotionObserver):
    def __init__(self, fn: Callable[[EmotionResult], None]):
        self._fn = fn

    def on_emotion(self, result: EmotionResult) -> None:
        self._fn(result)


ObserverLike = Union[EmotionObserver, Callable[[EmotionResult], None]]


# ─── Aggregator ───────────────────────────────────────────────

class EmotionAggregator:
    """Per-face emotion slots plus observer fan-out.

    Not thread-safe by itself; run every mutating call on a single
    context (see PublishContext).
    """

    def __init__(
        self,
        labels: Sequence[str] = EMOTION_LABELS,
        stale_result_fencing: bool = True,
    ) -> None:
        self._labels: tuple[str, ...] = tuple(labels)
        self._fencing = stale_result_fencing
        self._slots: dict[int, EmotionResult] = {}
        self._sentinel: Optional[EmotionResult] = None
        self._observers: list[EmotionObserver] = []
        self._current_sequence: int = -1
        self._stale_dropped: int = 0
        self._published: int = 0

    # ── Observers ─────────────────────────────────────────────

    def add_observer(self, observer: ObserverLike) -> EmotionObserver:
        if not isinstance(observer, EmotionObserver):
            observer = _CallableObserver(observer)
        self._observers.append(observer)
        return observer

    def remove_observer(self, observer: EmotionObserver) -> None:
        self._observers.remove(observer)

    # ── State access ──────────────────────────────────────────

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def slots(self) -> dict[int, EmotionResult]:
        return dict(self._slots)

    @property
    def sentinel(self) -> Optional[EmotionResult]:
        return self._sentinel

    def get(self, face_index: int) -> Optional[EmotionResult]:
        return self._slots.get(face_index)

    @property
    def dominant(self) -> str:
        """Single emotion state: the largest face's label.

        Falls back to the face with the lowest index when no bbox is known,
        and to the no-face / unknown sentinel when there are no slots.
        """
        if not self._slots:
            return self._sentinel.label if self._sentinel else UNKNOWN_LABEL

        def _key(item):
            idx, result = item
            area = result.bbox[2] * result.bbox[3] if result.bbox else 0
            return (-area, idx)

        return sorted(self._slots.items(), key=_key)[0][1].label

    def get_stats(self) -> dict:
        return {
            "slots": len(self._slots),
            "published": self._published,
            "stale_dropped": self._stale_dropped,
        }

    # ── Mutations (publish context only) ──────────────────────

    def label_for(self, scores: Union[EmotionScores, Sequence[float]]) -> str:
        values = scores.values if isinstance(scores, EmotionScores) else scores
        idx = argmax_first(values)
        if idx is None or idx >= len(self._labels):
            return UNKNOWN_LABEL
        return self._labels[idx]

    def begin_frame(self, sequence: int, face_count: int) -> None:
        """Size the slot map for a newly detected frame.

        Slots whose index no longer exists in this frame are dropped so
        indices from a frame with more faces never leak forward.
        """
        if self._fencing and sequence < self._current_sequence:
            return
        self._current_sequence = sequence
        for idx in [i for i in self._slots if i >= face_count]:
            del self._slots[idx]
        if face_count > 0:
            self._sentinel = None

    def end_frame(self, sequence: int, written: Iterable[int]) -> None:
        """Drop every slot the given frame did not write.

        A face that was skipped in this frame must not keep showing the
        label of an earlier frame. When nothing survives, observers get
        on_clear.
        """
        if self._fencing and sequence < self._current_sequence:
            return
        keep = set(written)
        gone = [i for i in self._slots if i not in keep]
        for idx in gone:
            del self._slots[idx]
        if gone:
            _log.debug("Frame %d left faces %s unpublished; slots dropped", sequence, gone)
            if not self._slots:
                for observer in list(self._observers):
                    self._notify(observer.on_clear)

    def apply_scores(
        self,
        face_index: int,
        scores: Union[EmotionScores, Sequence[float]],
        timestamp: float,
        frame_sequence: int = 0,
        bbox: Optional[tuple[int, int, int, int]] = None,
        debug_crop: Optional[np.ndarray] = None,
    ) -> Optional[EmotionResult]:
        """Reduce scores to a label and write the face slot."""
        label = self.label_for(scores)
        score_map = scores.as_dict() if isinstance(scores, EmotionScores) else None
        result = EmotionResult(
            face_index=face_index,
            label=label,
            timestamp=timestamp,
            frame_sequence=frame_sequence,
            bbox=bbox,
            scores=score_map,
            debug_crop=debug_crop,
        )
        return self._write_slot(result)

    def apply_error(
        self,
        face_index: int,
        timestamp: float,
        frame_sequence: int = 0,
        bbox: Optional[tuple[int, int, int, int]] = None,
    ) -> Optional[EmotionResult]:
        """Mark a slot with the explicit error sentinel."""
        result = EmotionResult(
            face_index=face_index,
            label=ERROR_LABEL,
            timestamp=timestamp,
            frame_sequence=frame_sequence,
            bbox=bbox,
        )
        return self._write_slot(result)

    def apply_no_face(self, timestamp: float, frame_sequence: int = 0) -> Optional[EmotionResult]:
        """Clear every slot and publish the no-face sentinel."""
        if self._fencing and frame_sequence < self._current_sequence:
            self._stale_dropped += 1
            return None
        self._current_sequence = frame_sequence

        changed = bool(self._slots) or self._sentinel is None
        self._slots.clear()
        result = EmotionResult(
            face_index=NO_FACE_INDEX,
            label=NO_FACE_LABEL,
            timestamp=timestamp,
            frame_sequence=frame_sequence,
        )
        self._sentinel = result
        if changed:
            self._published += 1
            for observer in list(self._observers):
                self._notify(observer.on_clear)
                self._notify(observer.on_emotion, result)
        return result

    def reset(self) -> None:
        self._slots.clear()
        self._sentinel = None
        self._current_sequence = -1

    # ── Internals ─────────────────────────────────────────────

    def _write_slot(self, result: EmotionResult) -> Optional[EmotionResult]:
        previous = self._slots.get(result.face_index)

        if self._fencing:
            stale_slot = previous is not None and result.frame_sequence < previous.frame_sequence
            if stale_slot or result.frame_sequence < self._current_sequence:
                self._stale_dropped += 1
                _log.debug(
                    "Dropping stale result for face %d (sequence %d)",
                    result.face_index, result.frame_sequence,
                )
                return None

        self._slots[result.face_index] = result
        self._sentinel = None

        if previous is not None and previous.label == result.label:
            return result

        self._published += 1
        for observer in list(self._observers):
            self._notify(observer.on_emotion, result)
        return result

    @staticmethod
    def _notify(fn, *args) -> None:
        try:
            fn(*args)
        except Exception as e:
            _log.error("Observer %r failed: %s", fn, e, exc_info=True)


# ─── Publish context ──────────────────────────────────────────

class PublishContext:
    """Single worker that serializes every aggregator mutation.

    Pipeline threads call `submit`; the callable runs later, in FIFO
    order, on the one publish thread.
    """

    def __init__(self, name: str = "emo-publish") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._closed = False
        self._lock = threading.Lock()

    def submit(self, fn, *args, **kwargs) -> Optional[Future]:
        with self._lock:
            if self._closed:
                _log.debug("Publish context closed; dropping %r", fn)
                return None
            return self._executor.submit(fn, *args, **kwargs)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until everything submitted so far has run."""
        future = self.submit(lambda: None)
        if future is not None:
            future.result(timeout=timeout)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=True)
