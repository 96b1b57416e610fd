"""
EmoLens — EmotionEngine (Face Pipeline Orchestrator)
=====================================================
Runs the full path from captured frame to published emotion label.

Architecture: Latest-Wins Async Pipeline
  1. Capture thread:   reads frames, throttles, hands admitted frames
                       to a 2-slot queue (oldest dropped when full).
  2. Detection thread: runs the face detector, then fans each face out
                       to the face worker pool and joins the results.
  3. Face workers:     Normalizing → Cropping → ToneAdjusting →
                       Orienting → Resizing → Classifying.
  4. Publish context:  the only thread that touches aggregator state
                       and calls observers.

Per-face terminal states: PUBLISHED or SKIPPED. A skipped face never
affects its siblings in the same frame. Once every face of a frame is
joined, slots that frame did not publish are dropped. Zero faces
publishes the "no face" sentinel and clears every per-face slot.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import psutil

from emo_aggregator import EmotionAggregator, ObserverLike, PublishContext
from emo_camera import EmotionCamera
from emo_classifier import EmotionClassifier, OnnxEmotionClassifier
from emo_config import DEFAULT_CONFIG, validate_config
from emo_detector import FaceDetector, create_detector
from emo_face_pipeline import crop_face, normalize_rect
from emo_logger import get_logger
from emo_preprocess import (
    PreprocessSettings,
    apply_rotation,
    apply_tone,
    compute_scale,
    resize_and_pack,
)
from emo_throttle import FrameThrottler
from emo_types import (
    ERROR_LABEL,
    NO_FACE_LABEL,
    DeviceOrientation,
    FaceOutcome,
    FaceState,
    Frame,
    FrameReport,
    GeometryInvalid,
    InferenceFailure,
    NormalizedRect,
    SkipReason,
    TransformFailure,
    image_orientation_for,
)

_log = logging.getLogger("EmoEngine")


class EmotionEngine:
    """Throttle → detect → per-face preprocess/classify → publish."""

    def __init__(
        self,
        config: Optional[dict] = None,
        detector: Optional[FaceDetector] = None,
        classifier: Optional[EmotionClassifier] = None,
        camera: Optional[EmotionCamera] = None,
    ) -> None:
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        validate_config(self.config)

        self.logger = get_logger(self.config["log_path"])
        self.logger.log({"event": "engine_init_start", "config": str(self.config)})

        self.labels: tuple[str, ...] = tuple(self.config["labels"])
        self.settings = PreprocessSettings.from_config(self.config)
        self.throttler = FrameThrottler(self.config["throttle_interval"])

        # External collaborators; a missing classifier at startup is fatal.
        self.detector = detector or create_detector(self.config)
        if classifier is None:
            try:
                classifier = OnnxEmotionClassifier(
                    self.config["model_path"],
                    labels=self.labels,
                    providers=self.config["providers"],
                )
            except Exception as e:
                self.logger.error(f"Failed to load emotion classifier: {e}", exception=e)
                raise
        self.classifier = classifier
        self.camera = camera

        # Publishing
        self.aggregator = EmotionAggregator(
            labels=self.labels,
            stale_result_fencing=self.config["stale_result_fencing"],
        )
        self.publisher = PublishContext()
        # Every label change is also recorded in the audit log
        self.aggregator.add_observer(self.logger.log_label)

        # Per-face workers and bounded classifier access
        self._face_pool = ThreadPoolExecutor(
            max_workers=int(self.config["face_workers"]),
            thread_name_prefix="emo-face",
        )
        self._classifier_slots = threading.BoundedSemaphore(
            int(self.config["classifier_max_inflight"])
        )

        # Async queues (size 2: never let backlog accumulate)
        self.frame_queue: queue.Queue = queue.Queue(maxsize=2)
        self.report_queue: queue.Queue = queue.Queue(maxsize=2)
        self._sequence = itertools.count(1)

        # Monitoring
        self.running = False
        self.source_exhausted = False
        self._process = psutil.Process()
        self._memory_baseline = self._process.memory_info().rss
        self._frame_times: deque[float] = deque(maxlen=120)

        self.logger.log({
            "event": "engine_init_complete",
            "detector": getattr(self.detector, "name", type(self.detector).__name__),
            "tensor_shape": self.settings.tensor_shape,
        })

    # ── Observers ─────────────────────────────────────────────

    def add_observer(self, observer: ObserverLike) -> None:
        """Register an observer on the publish context."""
        self.publisher.submit(self.aggregator.add_observer, observer)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued publish has been applied."""
        self.publisher.flush(timeout=timeout)

    @property
    def current_emotion(self) -> str:
        """Single dominant emotion label, read on the publish context."""
        future = self.publisher.submit(lambda: self.aggregator.dominant)
        return future.result() if future is not None else NO_FACE_LABEL

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        """Open the camera (if none was injected) and start threads."""
        if self.camera is None:
            self.camera = EmotionCamera(
                source=self.config["camera_id"],
                width=self.config["camera_width"],
                height=self.config["camera_height"],
                orientation=DeviceOrientation(self.config["device_orientation"]),
            )
        self.throttler.reset()
        self.source_exhausted = False
        self.running = True

        self.cam_thread = threading.Thread(target=self._camera_thread, name="emo-capture", daemon=True)
        self.detect_thread = threading.Thread(target=self._detection_thread, name="emo-detect", daemon=True)
        self.cam_thread.start()
        self.detect_thread.start()
        self.logger.log({"event": "engine_started"})

    def stop(self) -> None:
        """Stop threads and release every resource."""
        self.running = False
        if hasattr(self, "cam_thread"):
            self.cam_thread.join(timeout=1.0)
        if hasattr(self, "detect_thread"):
            self.detect_thread.join(timeout=2.0)
        self._face_pool.shutdown(wait=True)
        self.publisher.close()
        if self.camera is not None:
            self.camera.release()
        self.detector.release()
        self.classifier.release()
        self.logger.log({"event": "engine_stopped", "stats": self.get_health_status()})
        self.logger.close()

    def __enter__(self) -> "EmotionEngine":
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    # ── Frame delivery ────────────────────────────────────────

    def submit_frame(self, frame: Frame) -> bool:
        """Offer one captured frame. Never blocks.

        Returns:
            True if the throttler admitted the frame.
        """
        if not self.throttler.admit():
            return False
        admitted = frame.with_sequence(next(self._sequence))
        self._put_latest(self.frame_queue, admitted)
        return True

    def _camera_thread(self) -> None:
        """Thread 1: capture and admit frames."""
        while self.running:
            frame = self.camera.read_frame()
            if frame is None:
                if self.camera.exhausted:
                    self.source_exhausted = True
                    self.logger.log({"event": "source_exhausted"})
                    break
                time.sleep(0.01)  # Avoid busy loop on camera failure
                continue
            self.submit_frame(frame)

    def _detection_thread(self) -> None:
        """Thread 2: detect faces and run the per-face pipeline."""
        while self.running:
            try:
                frame = self.frame_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            try:
                report = self.process_frame(frame)
                self._put_latest(self.report_queue, report)
            except Exception as e:
                self.logger.error(f"Detection thread error: {e}", exception=e, exc_info=True)

    @staticmethod
    def _put_latest(q: queue.Queue, item) -> None:
        """Put without blocking; drop the oldest entry when full."""
        try:
            q.put_nowait(item)
        except queue.Full:
            try:
                q.get_nowait()
            except queue.Empty:
                pass
            try:
                q.put_nowait(item)
            except queue.Full:
                _log.debug("Queue contended; dropping %r", item)

    # ── Orchestration ─────────────────────────────────────────

    def process_frame(self, frame: Frame) -> FrameReport:
        """Full pipeline for one admitted frame.

        Faces are processed concurrently and joined before returning.
        Publishing happens asynchronously on the publish context; call
        flush() to wait for it.
        """
        t_start = time.monotonic()
        timing: dict = {}
        report = FrameReport(
            frame_sequence=frame.sequence,
            timestamp=frame.timestamp,
            faces_detected=0,
            timing_breakdown=timing,
        )

        # STAGE 1: Face detection
        t0 = time.monotonic()
        orientation = image_orientation_for(frame.orientation)
        try:
            rects = list(self.detector.detect(frame, orientation))
        except Exception as e:
            # DetectionFailure (or an adapter bug): treat as zero faces
            self.logger.warn(
                f"Face detection error: {e}",
                context={"frame_sequence": frame.sequence},
            )
            rects = []
            report.detection_failed = True
        timing["detect_ms"] = (time.monotonic() - t0) * 1000
        report.faces_detected = len(rects)

        # STAGE 2: Per-face pipeline
        t0 = time.monotonic()
        if not rects:
            self.publisher.submit(self.aggregator.apply_no_face, frame.timestamp, frame.sequence)
            _log.debug("No faces detected in frame %d", frame.sequence)
        else:
            self.publisher.submit(self.aggregator.begin_frame, frame.sequence, len(rects))
            futures = [
                self._face_pool.submit(self._process_face, frame, rect, index)
                for index, rect in enumerate(rects)
            ]
            report.outcomes = [f.result() for f in futures]
            self.publisher.submit(
                self.aggregator.end_frame,
                frame.sequence,
                [o.face_index for o in report.outcomes if o.state is FaceState.PUBLISHED],
            )
        timing["faces_ms"] = (time.monotonic() - t0) * 1000

        # STAGE 3: Performance + audit
        t_total = time.monotonic() - t_start
        timing["total_ms"] = t_total * 1000
        self._frame_times.append(t_total)

        self.logger.log_frame({
            "frame_sequence": frame.sequence,
            "timestamp": frame.timestamp,
            "orientation": frame.orientation.value,
            "faces_detected": report.faces_detected,
            "detection_failed": report.detection_failed,
            "outcomes": [o.to_dict() for o in report.outcomes],
            "timing": timing,
        })
        return report

    def _process_face(self, frame: Frame, rect: NormalizedRect, index: int) -> FaceOutcome:
        """Preprocess, classify and publish one face."""
        t0 = time.monotonic()

        def _skip(reason: SkipReason, detail: str, bbox=None) -> FaceOutcome:
            _log.info("Face %d of frame %d skipped (%s): %s",
                      index, frame.sequence, reason.value, detail)
            return FaceOutcome(
                face_index=index,
                state=FaceState.SKIPPED,
                skip_reason=reason,
                bbox=bbox,
                latency_ms=(time.monotonic() - t0) * 1000,
            )

        bbox = None
        try:
            # Normalizing
            pixel_rect = normalize_rect(rect, frame.width, frame.height, frame.orientation)
            if pixel_rect is None:
                raise GeometryInvalid("rectangle empty after clipping")
            bbox = pixel_rect.as_int_bbox()

            # Cropping
            crop = crop_face(frame, pixel_rect, index)
            if crop is None:
                raise GeometryInvalid("empty crop")

            # ToneAdjusting
            toned = apply_tone(crop.pixels, self.settings.contrast)
            if toned is None:
                raise TransformFailure("tone transform produced no output")

            # Orienting
            oriented = apply_rotation(toned, self.settings.rotation_degrees)
            if oriented is None:
                raise GeometryInvalid("rotated extent invalid")

            # Resizing
            h, w = oriented.shape[:2]
            if compute_scale(w, h, self.settings.target_width, self.settings.target_height) is None:
                raise GeometryInvalid("invalid scale factors")
            tensor = resize_and_pack(oriented, self.settings)
            if tensor is None:
                raise TransformFailure("resize/pack failed")

            # Classifying
            try:
                with self._classifier_slots:
                    scores = self.classifier.predict(tensor)
            except InferenceFailure as e:
                _log.warning("Inference failed for face %d of frame %d: %s",
                             index, frame.sequence, e)
                self.publisher.submit(
                    self.aggregator.apply_error,
                    index, frame.timestamp, frame.sequence, bbox,
                )
                return FaceOutcome(
                    face_index=index,
                    state=FaceState.PUBLISHED,
                    label=ERROR_LABEL,
                    bbox=bbox,
                    latency_ms=(time.monotonic() - t0) * 1000,
                )

            # Aggregating
            label = self.aggregator.label_for(scores)
            debug_crop = oriented if self.config["debug_crops"] else None
            self.publisher.submit(
                self.aggregator.apply_scores,
                index, scores, frame.timestamp, frame.sequence, bbox, debug_crop,
            )
            _log.debug("Face %d of frame %d: %s", index, frame.sequence, scores)
            return FaceOutcome(
                face_index=index,
                state=FaceState.PUBLISHED,
                label=label,
                bbox=bbox,
                latency_ms=(time.monotonic() - t0) * 1000,
            )
        except GeometryInvalid as e:
            return _skip(SkipReason.GEOMETRY_INVALID, str(e), bbox)
        except TransformFailure as e:
            return _skip(SkipReason.TRANSFORM_FAILED, str(e), bbox)
        except Exception as e:
            _log.error("Face %d of frame %d failed: %s", index, frame.sequence, e, exc_info=True)
            return _skip(SkipReason.INTERNAL_ERROR, str(e), bbox)

    # ── Results & health ──────────────────────────────────────

    def get_latest_report(self) -> Optional[FrameReport]:
        """Newest queued FrameReport, or None. Older queued reports are discarded."""
        latest = None
        while True:
            try:
                latest = self.report_queue.get_nowait()
            except queue.Empty:
                return latest

    def get_health_status(self) -> dict:
        times = tuple(self._frame_times)
        fps = len(times) / sum(times) if sum(times) > 0 else 0.0
        current_mem = self._process.memory_info().rss
        return {
            "throttle": self.throttler.get_stats(),
            "camera": self.camera.get_health_status() if self.camera is not None else None,
            "aggregator": self.aggregator.get_stats(),
            "pipeline_fps": round(fps, 2),
            "memory_mb": round(current_mem / 1e6, 1),
            "memory_growth_mb": round((current_mem - self._memory_baseline) / 1e6, 1),
        }
