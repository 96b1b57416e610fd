"""
EmoLens — Aggregator Tests
===========================
Arg-max tie-breaking, per-face slots, the no-face sentinel,
change-only notification, stale-result fencing and the publish
context.
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from emo_aggregator import EmotionAggregator, EmotionObserver, PublishContext, argmax_first
from emo_types import (
    EMOTION_LABELS,
    ERROR_LABEL,
    NO_FACE_INDEX,
    NO_FACE_LABEL,
    UNKNOWN_LABEL,
    EmotionScores,
    InferenceFailure,
)


class _RecordingObserver(EmotionObserver):
    def __init__(self):
        self.results = []
        self.clears = 0

    def on_emotion(self, result):
        self.results.append(result)

    def on_clear(self):
        self.clears += 1


def _scores_for(label: str, labels=EMOTION_LABELS) -> EmotionScores:
    values = [0.05] * len(labels)
    values[labels.index(label)] = 0.7
    return EmotionScores(labels, values)


# ─── Test 1: Arg-max picks the first maximum ──────────────────

def test_argmax_tie_prefers_lower_index():
    assert argmax_first([0.2, 0.9, 0.9, 0.1, 0.0, 0.0, 0.0]) == 1


def test_argmax_clear_winner():
    assert argmax_first([0.51, 0.49, 0, 0, 0, 0, 0]) == 0


def test_argmax_all_equal():
    assert argmax_first([0.0] * 7) == 0


def test_argmax_ignores_nan():
    assert argmax_first([float("nan"), 0.1, 0.3]) == 2


@pytest.mark.parametrize("scores", [[], [float("nan"), float("nan")]])
def test_argmax_undefined(scores):
    assert argmax_first(scores) is None


def test_label_for_reference_vectors():
    agg = EmotionAggregator()
    assert agg.label_for([0.51, 0.49, 0, 0, 0, 0, 0]) == "angry"
    assert agg.label_for([0.2, 0.9, 0.9, 0.1, 0, 0, 0]) == "disgust"
    assert agg.label_for([]) == UNKNOWN_LABEL


def test_label_order_is_configurable():
    labels = ("neutral", "happy", "sad", "angry", "fear", "disgust", "surprise")
    agg = EmotionAggregator(labels)
    assert agg.label_for([0.1, 0.8, 0.8, 0, 0, 0, 0]) == "happy"


def test_scores_length_mismatch_raises():
    with pytest.raises(InferenceFailure):
        EmotionScores(EMOTION_LABELS, [0.5, 0.5])


# ─── Test 2: Slots and observers ──────────────────────────────

def test_apply_scores_writes_slot_and_notifies():
    agg = EmotionAggregator()
    obs = _RecordingObserver()
    agg.add_observer(obs)

    result = agg.apply_scores(0, _scores_for("happy"), timestamp=1.0,
                              frame_sequence=1, bbox=(10, 10, 50, 50))

    assert result.label == "happy"
    assert agg.get(0).label == "happy"
    assert agg.get(0).scores["happy"] == pytest.approx(0.7)
    assert [r.label for r in obs.results] == ["happy"]
    assert agg.dominant == "happy"


def test_unchanged_label_does_not_renotify():
    agg = EmotionAggregator()
    obs = _RecordingObserver()
    agg.add_observer(obs)

    agg.apply_scores(0, _scores_for("sad"), 1.0, frame_sequence=1)
    agg.apply_scores(0, _scores_for("sad"), 2.0, frame_sequence=2)
    agg.apply_scores(0, _scores_for("fear"), 3.0, frame_sequence=3)

    assert [r.label for r in obs.results] == ["sad", "fear"]
    # Slot still overwritten with the latest timestamp
    assert agg.get(0).timestamp == 3.0


def test_callable_observer_supported():
    agg = EmotionAggregator()
    seen = []
    agg.add_observer(seen.append)
    agg.apply_scores(1, _scores_for("surprise"), 1.0)
    assert seen[0].label == "surprise"
    assert seen[0].face_index == 1


def test_failing_observer_does_not_break_others():
    agg = EmotionAggregator()

    def _boom(result):
        raise RuntimeError("observer down")

    obs = _RecordingObserver()
    agg.add_observer(_boom)
    agg.add_observer(obs)
    agg.apply_scores(0, _scores_for("happy"), 1.0)

    assert len(obs.results) == 1


def test_remove_observer():
    agg = EmotionAggregator()
    obs = _RecordingObserver()
    handle = agg.add_observer(obs)
    agg.remove_observer(handle)
    agg.apply_scores(0, _scores_for("happy"), 1.0)
    assert obs.results == []


# ─── Test 3: Error sentinel ───────────────────────────────────

def test_apply_error_is_distinct_from_emotions():
    agg = EmotionAggregator()
    agg.apply_scores(0, _scores_for("happy"), 1.0, frame_sequence=1)
    result = agg.apply_error(0, 2.0, frame_sequence=2)

    assert result.label == ERROR_LABEL
    assert ERROR_LABEL not in EMOTION_LABELS
    assert agg.get(0).label == ERROR_LABEL


# ─── Test 4: No-face sentinel ─────────────────────────────────

def test_no_face_clears_all_slots():
    agg = EmotionAggregator()
    obs = _RecordingObserver()
    agg.add_observer(obs)

    agg.begin_frame(1, 2)
    agg.apply_scores(0, _scores_for("happy"), 1.0, frame_sequence=1)
    agg.apply_scores(1, _scores_for("sad"), 1.0, frame_sequence=1)
    result = agg.apply_no_face(2.0, frame_sequence=2)

    assert result.face_index == NO_FACE_INDEX
    assert result.label == NO_FACE_LABEL
    assert agg.slots == {}
    assert agg.sentinel.label == NO_FACE_LABEL
    assert agg.dominant == NO_FACE_LABEL
    assert obs.clears == 1
    assert obs.results[-1].label == NO_FACE_LABEL


def test_repeated_no_face_notifies_once():
    agg = EmotionAggregator()
    obs = _RecordingObserver()
    agg.add_observer(obs)

    agg.apply_no_face(1.0, frame_sequence=1)
    agg.apply_no_face(2.0, frame_sequence=2)

    assert obs.clears == 1
    assert [r.label for r in obs.results] == [NO_FACE_LABEL]


def test_face_after_no_face_clears_sentinel():
    agg = EmotionAggregator()
    agg.apply_no_face(1.0, frame_sequence=1)
    agg.begin_frame(2, 1)
    agg.apply_scores(0, _scores_for("neutral"), 2.0, frame_sequence=2)

    assert agg.sentinel is None
    assert agg.dominant == "neutral"


# ─── Test 5: Slot count follows the detected face count ───────

def test_begin_frame_drops_vanished_faces():
    agg = EmotionAggregator()
    agg.begin_frame(1, 3)
    for i, label in enumerate(["happy", "sad", "fear"]):
        agg.apply_scores(i, _scores_for(label), 1.0, frame_sequence=1)

    agg.begin_frame(2, 1)

    assert sorted(agg.slots) == [0]


def test_dominant_is_largest_face():
    agg = EmotionAggregator()
    agg.apply_scores(0, _scores_for("sad"), 1.0, bbox=(0, 0, 20, 20))
    agg.apply_scores(1, _scores_for("happy"), 1.0, bbox=(50, 50, 80, 90))
    assert agg.dominant == "happy"


def test_dominant_without_state_is_unknown():
    assert EmotionAggregator().dominant == UNKNOWN_LABEL


def test_end_frame_drops_unwritten_slots():
    agg = EmotionAggregator()
    observer = _RecordingObserver()
    agg.add_observer(observer)
    agg.begin_frame(1, 2)
    agg.apply_scores(0, _scores_for("happy"), 1.0, frame_sequence=1)
    agg.apply_scores(1, _scores_for("sad"), 1.0, frame_sequence=1)
    agg.end_frame(1, [0, 1])
    assert sorted(agg.slots) == [0, 1]

    agg.begin_frame(2, 2)
    agg.apply_scores(1, _scores_for("sad"), 2.0, frame_sequence=2)
    agg.end_frame(2, [1])
    assert sorted(agg.slots) == [1]
    assert observer.clears == 0

    agg.begin_frame(3, 1)
    agg.end_frame(3, [])
    assert agg.slots == {}
    assert observer.clears == 1
    assert agg.dominant == UNKNOWN_LABEL


def test_end_frame_for_older_frame_is_ignored():
    agg = EmotionAggregator(stale_result_fencing=True)
    agg.begin_frame(5, 1)
    agg.apply_scores(0, _scores_for("happy"), 5.0, frame_sequence=5)

    agg.end_frame(4, [])
    assert agg.get(0).label == "happy"


# ─── Test 6: Stale-result fencing ─────────────────────────────

def test_fencing_drops_older_results():
    agg = EmotionAggregator(stale_result_fencing=True)
    agg.begin_frame(5, 1)
    agg.apply_scores(0, _scores_for("happy"), 5.0, frame_sequence=5)

    assert agg.apply_scores(0, _scores_for("sad"), 3.0, frame_sequence=3) is None
    assert agg.get(0).label == "happy"
    assert agg.get_stats()["stale_dropped"] == 1


def test_fencing_drops_late_no_face():
    agg = EmotionAggregator(stale_result_fencing=True)
    agg.begin_frame(5, 1)
    agg.apply_scores(0, _scores_for("happy"), 5.0, frame_sequence=5)

    assert agg.apply_no_face(3.0, frame_sequence=3) is None
    assert agg.get(0).label == "happy"


def test_without_fencing_last_write_wins():
    agg = EmotionAggregator(stale_result_fencing=False)
    agg.apply_scores(0, _scores_for("happy"), 5.0, frame_sequence=5)
    agg.apply_scores(0, _scores_for("sad"), 3.0, frame_sequence=3)
    assert agg.get(0).label == "sad"


def test_reset_clears_everything():
    agg = EmotionAggregator()
    agg.begin_frame(9, 1)
    agg.apply_scores(0, _scores_for("happy"), 1.0, frame_sequence=9)
    agg.reset()

    assert agg.slots == {}
    assert agg.sentinel is None
    # Sequence fence restarts too
    assert agg.apply_scores(0, _scores_for("sad"), 2.0, frame_sequence=1) is not None


# ─── Test 7: Publish context ──────────────────────────────────

def test_publish_context_runs_fifo_on_one_thread():
    ctx = PublishContext()
    order, threads = [], set()

    def _record(i):
        order.append(i)
        threads.add(threading.get_ident())

    for i in range(50):
        ctx.submit(_record, i)
    ctx.flush(timeout=5.0)
    ctx.close()

    assert order == list(range(50))
    assert len(threads) == 1
    assert threading.get_ident() not in threads


def test_publish_context_drops_after_close():
    ctx = PublishContext()
    ctx.close()
    assert ctx.submit(lambda: None) is None
    ctx.flush()


def test_result_to_dict_omits_debug_crop():
    agg = EmotionAggregator()
    result = agg.apply_scores(0, _scores_for("happy"), 1.0,
                              debug_crop=np.zeros((4, 4, 3), dtype=np.uint8))
    d = result.to_dict()
    assert "debug_crop" not in d
    assert d["label"] == "happy"
