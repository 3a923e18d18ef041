"""Outcome recording for upstream calls, guest issuance and tool runs.

Components never touch global counters; they receive an ``OutcomeRecorder``
and report each finished operation to it.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from .error_logger import sanitize_for_log

logger = logging.getLogger(__name__)


@dataclass
class OutcomeEvent:
    kind: str  # upstream_call | guest_token | tool_call
    success: bool
    detail: Optional[str] = None
    latency_ms: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class OutcomeRecorder(Protocol):
    def record_outcome(self, event: OutcomeEvent) -> None: ...


class NullRecorder:
    """Recorder that drops every event."""

    def record_outcome(self, event: OutcomeEvent) -> None:
        return None


class JsonlOutcomeRecorder:
    """Append one JSON line per outcome to ``<log_dir>/outcomes_<date>.jsonl``."""

    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir)
        self._lock = threading.Lock()

    def _log_path(self) -> Path:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.log_dir / f"outcomes_{date_str}.jsonl"

    def record_outcome(self, event: OutcomeEvent) -> None:
        entry = asdict(event)
        entry["timestamp"] = datetime.fromtimestamp(
            event.timestamp, tz=timezone.utc
        ).isoformat()
        entry["extra"] = sanitize_for_log(entry["extra"])
        line = json.dumps(entry, ensure_ascii=False, default=str)

        path = self._log_path()
        try:
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError as e:
            logger.warning("Failed to write outcome log (%s): %s", path, e)


def build_recorder(log_dir: Optional[str]) -> OutcomeRecorder:
    if log_dir:
        return JsonlOutcomeRecorder(log_dir)
    return NullRecorder()
