"""Parsing of the upstream's ``data: {json}`` event stream."""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

THINKING_PHASE = "thinking"
DONE_PHASE = "done"
ERROR_PHASE = "error"


@dataclass(frozen=True)
class UpstreamErrorInfo:
    detail: str
    code: Any = None


@dataclass(frozen=True)
class StreamEvent:
    """One upstream event line."""

    type: str = ""
    phase: str = ""
    delta_content: str = ""
    edit_content: Optional[str] = None
    done: bool = False
    usage: Optional[Dict[str, Any]] = None
    error: Optional[UpstreamErrorInfo] = None

    @property
    def is_thinking(self) -> bool:
        return self.phase == THINKING_PHASE

    @property
    def is_done(self) -> bool:
        return self.done or self.phase == DONE_PHASE

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StreamEvent":
        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        phase = str(data.get("phase") or "")
        delta = data.get("delta_content")
        edit = data.get("edit_content")
        usage = data.get("usage")
        return cls(
            type=str(payload.get("type") or ""),
            phase=phase,
            delta_content=delta if isinstance(delta, str) else "",
            edit_content=edit if isinstance(edit, str) and edit else None,
            done=bool(data.get("done")),
            usage=usage if isinstance(usage, dict) else None,
            error=_extract_error(payload, data),
        )


def _as_error(value: Any) -> Optional[UpstreamErrorInfo]:
    if not value:
        return None
    if isinstance(value, dict):
        detail = value.get("detail") or value.get("message") or json.dumps(value)
        return UpstreamErrorInfo(detail=str(detail), code=value.get("code"))
    return UpstreamErrorInfo(detail=str(value))


def _extract_error(payload: Dict[str, Any], data: Dict[str, Any]) -> Optional[UpstreamErrorInfo]:
    """Errors may be top-level, under ``data``, under ``data.inner`` or phase-scoped."""
    inner = data.get("inner")
    candidates = [payload.get("error"), data.get("error")]
    if isinstance(inner, dict):
        candidates.append(inner.get("error"))
    for candidate in candidates:
        error = _as_error(candidate)
        if error is not None:
            return error
    if data.get("phase") == ERROR_PHASE:
        detail = data.get("delta_content") or "Upstream reported an error"
        return UpstreamErrorInfo(detail=str(detail))
    return None


def parse_event_line(line: str) -> Optional[StreamEvent]:
    """Parse one SSE line. Returns None for blank, comment and non-data lines.

    Raises:
        ValueError: the data payload is not a JSON object.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    raw = line[5:].strip()
    if not raw or raw == "[DONE]":
        return None
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")
    return StreamEvent.from_payload(payload)


async def iter_events(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Yield parsed events, logging and skipping malformed lines."""
    async for line in lines:
        try:
            event = parse_event_line(line)
        except ValueError as e:
            logger.warning("[transform] skipping malformed event line: %s (%s)", line[:200], e)
            continue
        if event is not None:
            yield event
