"""
EmoLens — Face Detector Backends
=================================
Black-box face rectangle detectors behind one interface.

Every backend returns NormalizedRect values in the unit square with
a BOTTOM-LEFT origin, whatever convention the underlying library
uses, so the geometry normalizer has a single input format.

Supported backends:
  - 'mediapipe': MediaPipe Tasks FaceDetector (BlazeFace short range).
  - 'haar':      OpenCV Haar cascade bundled with opencv-python.
                 No model download; less robust to pose and lighting.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod

import cv2
import numpy as np

from emo_types import DetectionFailure, Frame, ImageOrientation, NormalizedRect

_log = logging.getLogger("EmoDetector")

_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))


def to_normalized_rect(
    x: float,
    y: float,
    w: float,
    h: float,
    frame_width: int,
    frame_height: int,
    confidence: float = 1.0,
) -> NormalizedRect:
    """Convert a top-left-origin pixel box to a bottom-left unit rect."""
    return NormalizedRect(
        x=x / frame_width,
        y=1.0 - (y + h) / frame_height,
        width=w / frame_width,
        height=h / frame_height,
        confidence=confidence,
    )


class FaceDetector(ABC):
    """Face rectangle detector interface."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def detect(
        self,
        frame: Frame,
        orientation: ImageOrientation = ImageOrientation.UP,
    ) -> list[NormalizedRect]:
        """Locate faces in a frame.

        Args:
            frame: Admitted frame. Pixels are expected upright; the
                   orientation is passed through for backends that can
                   use it.
            orientation: Image orientation derived from the device.

        Returns:
            Zero or more rectangles, bottom-left unit-square convention.

        Raises:
            DetectionFailure: the backend errored.
        """
        pass

    def release(self) -> None:
        pass

    def __enter__(self) -> "FaceDetector":
        return self

    def __exit__(self, *args) -> None:
        self.release()


# ═══════════════════════════════════════════════════════════════
# MediaPipe
# ═══════════════════════════════════════════════════════════════

class MediaPipeFaceDetector(FaceDetector):
    """MediaPipe Tasks FaceDetector in IMAGE mode.

    IMAGE mode keeps calls independent of each other, so admitted
    frames can arrive at any cadence without timestamp bookkeeping.
    """

    def __init__(
        self,
        model_path: str = "models/blaze_face_short_range.tflite",
        min_detection_confidence: float = 0.5,
        max_faces: int = 4,
    ) -> None:
        from mediapipe.tasks import python
        from mediapipe.tasks.python import vision

        full_path = model_path if os.path.isabs(model_path) else os.path.join(_SCRIPT_DIR, model_path)
        if not os.path.exists(full_path):
            raise FileNotFoundError(f"MediaPipe face detector model not found: {full_path}")

        options = vision.FaceDetectorOptions(
            base_options=python.BaseOptions(model_asset_path=full_path),
            running_mode=vision.RunningMode.IMAGE,
            min_detection_confidence=min_detection_confidence,
        )
        self._detector = vision.FaceDetector.create_from_options(options)
        self._max_faces = max_faces
        _log.info("MediaPipe FaceDetector loaded from %s", full_path)

    @property
    def name(self) -> str:
        return "mediapipe"

    def detect(
        self,
        frame: Frame,
        orientation: ImageOrientation = ImageOrientation.UP,
    ) -> list[NormalizedRect]:
        if self._detector is None:
            raise DetectionFailure("MediaPipe detector has been released")

        import mediapipe as mp

        pixels = frame.pixels
        code = cv2.COLOR_BGRA2RGB if frame.pixel_format == "BGRA32" else cv2.COLOR_BGR2RGB
        rgb = cv2.cvtColor(pixels, code)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)

        try:
            result = self._detector.detect(mp_image)
        except Exception as e:
            raise DetectionFailure(f"MediaPipe detection failed: {e}") from e

        rects: list[NormalizedRect] = []
        for det in (result.detections or [])[: self._max_faces]:
            box = det.bounding_box
            score = det.categories[0].score if det.categories else 1.0
            rects.append(to_normalized_rect(
                box.origin_x, box.origin_y, box.width, box.height,
                frame.width, frame.height, confidence=float(score),
            ))
        return rects

    def release(self) -> None:
        if self._detector is not None:
            self._detector.close()
            self._detector = None
        _log.info("MediaPipe FaceDetector released")


# ═══════════════════════════════════════════════════════════════
# OpenCV Haar cascade
# ═══════════════════════════════════════════════════════════════

class HaarFaceDetector(FaceDetector):
    """OpenCV frontal-face Haar cascade."""

    CASCADE_FILE = "haarcascade_frontalface_default.xml"

    def __init__(
        self,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: tuple[int, int] = (30, 30),
        max_faces: int = 4,
    ) -> None:
        cascade_path = os.path.join(cv2.data.haarcascades, self.CASCADE_FILE)
        self._cascade = cv2.CascadeClassifier(cascade_path)
        if self._cascade.empty():
            raise FileNotFoundError(f"Haar cascade not found: {cascade_path}")
        self._scale_factor = scale_factor
        self._min_neighbors = min_neighbors
        self._min_size = min_size
        self._max_faces = max_faces
        _log.info("Haar cascade face detector loaded")

    @property
    def name(self) -> str:
        return "haar"

    def detect(
        self,
        frame: Frame,
        orientation: ImageOrientation = ImageOrientation.UP,
    ) -> list[NormalizedRect]:
        pixels = frame.pixels
        try:
            if pixels.ndim == 2:
                gray = pixels
            elif pixels.shape[2] == 4:
                gray = cv2.cvtColor(pixels, cv2.COLOR_BGRA2GRAY)
            else:
                gray = cv2.cvtColor(pixels, cv2.COLOR_BGR2GRAY)
            boxes = self._cascade.detectMultiScale(
                gray,
                scaleFactor=self._scale_factor,
                minNeighbors=self._min_neighbors,
                minSize=self._min_size,
            )
        except cv2.error as e:
            raise DetectionFailure(f"Haar detection failed: {e}") from e

        boxes = np.asarray(boxes).reshape(-1, 4)
        return [
            to_normalized_rect(x, y, w, h, frame.width, frame.height)
            for (x, y, w, h) in boxes[: self._max_faces]
        ]


def create_detector(config: dict) -> FaceDetector:
    """Build the detector backend named by config['detector_type']."""
    detector_type = config.get("detector_type", "mediapipe")
    if detector_type == "mediapipe":
        return MediaPipeFaceDetector(
            model_path=config.get("detector_model", "models/blaze_face_short_range.tflite"),
            min_detection_confidence=config.get("min_detection_confidence", 0.5),
            max_faces=config.get("max_faces", 4),
        )
    if detector_type == "haar":
        return HaarFaceDetector(max_faces=config.get("max_faces", 4))
    raise ValueError(f"Unknown detector_type: {detector_type!r}. "
                     f"Supported: 'mediapipe', 'haar'")
