"""
EmoLens — Emotion Classifier Adapter
=====================================
Wraps the external emotion model behind one interface.

The classifier returns one raw score per label, in the label order
both sides agree on. The adapter does not apply softmax or any
threshold: arg-max over raw scores and over probabilities picks the
same label.

Concurrency:
  onnxruntime.InferenceSession.run is safe to call from several
  threads on one session. The engine still bounds in-flight calls
  (classifier_max_inflight) to cap memory and latency under load.

Failure to load the model at startup is fatal and propagates.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import numpy as np

from emo_types import (
    EMOTION_LABELS,
    EmotionScores,
    InferenceFailure,
    PreparedTensor,
    TensorLayout,
)

_log = logging.getLogger("EmoClassifier")
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))


class EmotionClassifier(ABC):
    """Emotion model interface."""

    def __init__(self, labels: Sequence[str] = EMOTION_LABELS) -> None:
        self._labels = tuple(labels)

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @abstractmethod
    def predict_raw(self, tensor: PreparedTensor) -> np.ndarray:
        """Run the model and return the flat score vector."""
        pass

    def predict(self, tensor: PreparedTensor) -> EmotionScores:
        """Score one prepared face.

        Raises:
            InferenceFailure: the model errored or returned a score
                vector whose length differs from the label set.
        """
        try:
            raw = self.predict_raw(tensor)
        except InferenceFailure:
            raise
        except Exception as e:
            raise InferenceFailure(f"Classifier call failed: {e}") from e
        return EmotionScores(self._labels, np.asarray(raw).reshape(-1))

    def release(self) -> None:
        pass


class OnnxEmotionClassifier(EmotionClassifier):
    """ONNX Runtime classifier.

    Accepts either tensor layout:
      - PLANAR_FLOAT: (1, 3, H, W) float32 fed as-is.
      - PACKED_PIXEL: (H, W, 4) uint8 BGRA, batch dimension added and
        cast to the model's declared input element type.
    """

    def __init__(
        self,
        model_path: str,
        labels: Sequence[str] = EMOTION_LABELS,
        providers: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(labels)
        import onnxruntime as ort

        full_path = model_path if os.path.isabs(model_path) else os.path.join(_SCRIPT_DIR, model_path)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"Emotion model not found: {full_path}")

        providers = list(providers or ["CPUExecutionProvider"])
        available = set(ort.get_available_providers())
        selected = [p for p in providers if p in available] or ["CPUExecutionProvider"]

        try:
            self.session = ort.InferenceSession(full_path, providers=selected)
        except Exception as e:
            _log.error("Failed to load ONNX model %s: %s", full_path, e)
            raise

        model_input = self.session.get_inputs()[0]
        self.input_name = model_input.name
        self.input_type = getattr(model_input, "type", "tensor(float)")
        _log.info(
            "Emotion model loaded — path=%s input=%s type=%s providers=%s",
            full_path, self.input_name, self.input_type,
            self.session.get_providers(),
        )

    def predict_raw(self, tensor: PreparedTensor) -> np.ndarray:
        data = tensor.data
        if tensor.layout is TensorLayout.PACKED_PIXEL:
            data = np.expand_dims(data, axis=0)
        if self.input_type == "tensor(uint8)":
            if tensor.layout is TensorLayout.PLANAR_FLOAT:
                data = np.round(data * 255.0)
            data = data.astype(np.uint8)
        else:
            data = data.astype(np.float32)
        outputs = self.session.run(None, {self.input_name: data})
        return np.asarray(outputs[0])[0]
