"""
EmoLens — Structured Audit Logger
==================================
Records every admitted frame, published label change and pipeline
error as one JSON object per line, for post-mortem analysis.

Key Features:
  - JSONL (Newline Delimited JSON) format
  - Thread-safe writes (capture, detection, face workers and the
    publish context all share one logger)
  - Levels: AUDIT, WARN, ERROR, SYSTEM
  - NumPy scalars/arrays, enums and result objects serialized transparently

Event vocabulary:
  system_startup · frame_processed · label_published ·
  system_warning · system_error · system_shutdown
"""

import json
import logging
import os
import sys
import threading
import time
from typing import Any, Dict, Optional

import numpy as np

# Configure standard logger to console
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


class EmoJSONEncoder(json.JSONEncoder):
    """JSON encoder for NumPy values, enums and objects exposing to_dict()."""
    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        if hasattr(obj, "value") and hasattr(obj, "name"):
            return obj.value
        return super().default(obj)


class EmoAuditLogger:
    """Append-only JSONL audit log at a fixed path."""

    def __init__(self, log_path: str = "logs/emo_audit.jsonl"):
        self.log_path = log_path
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        self._file = open(self.log_path, "a", encoding="utf-8")
        self._lock = threading.Lock()
        self.entries_written = 0

        self.log({
            "event": "system_startup",
            "python_version": sys.version,
            "platform": sys.platform,
            "pid": os.getpid(),
        }, level="SYSTEM")

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, data: Dict[str, Any], level: str = "AUDIT", event: Optional[str] = None):
        """Append one entry. Entries written after close() are discarded."""
        entry = {
            "timestamp": time.time(),
            "level": level,
            "event": event or data.get("event", "unknown"),
            "data": data,
        }
        line = json.dumps(entry, cls=EmoJSONEncoder) + "\n"

        with self._lock:
            if self._file.closed:
                return
            self._file.write(line)
            self._file.flush()
            self.entries_written += 1

    def log_frame(self, frame_data: Dict[str, Any]):
        """One record per admitted frame (detections, outcomes, timing)."""
        self.log(frame_data, level="AUDIT", event="frame_processed")

    def log_label(self, result):
        """One record per published label change.

        The debug crop is never written; EmotionResult.to_dict drops it.
        """
        self.log(result.to_dict(), level="AUDIT", event="label_published")

    def warn(self, message: str, context: Optional[Dict] = None):
        logging.warning(message)
        self.log({"message": message, "context": context}, level="WARN", event="system_warning")

    def error(self, message: str, exception: Optional[Exception] = None, **kwargs):
        """Log an error to the console (kwargs go to logging.error) and the audit file."""
        logging.error(message, **kwargs)
        self.log({
            "message": message,
            "exception": str(exception) if exception else None,
            "exception_type": type(exception).__name__ if exception else None,
        }, level="ERROR", event="system_error")

    def close(self):
        if self._file.closed:
            return
        self.log({"message": "Logger shutting down", "entries": self.entries_written},
                 level="SYSTEM", event="system_shutdown")
        with self._lock:
            self._file.close()


_logger: Optional[EmoAuditLogger] = None
_logger_lock = threading.Lock()


def get_logger(log_path: str = "logs/emo_audit.jsonl") -> EmoAuditLogger:
    """Shared audit logger. A closed logger, or a request for a different
    path, opens a fresh one."""
    global _logger
    with _logger_lock:
        if _logger is None or _logger.closed or _logger.log_path != log_path:
            _logger = EmoAuditLogger(log_path)
        return _logger
