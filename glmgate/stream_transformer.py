"""Upstream event stream -> presentation units.

One ``StreamTransformer`` instance lives for one response. It turns each
``StreamEvent`` into zero or more output units:

    RoleUnit        first unit of every response
    ContentUnit     answer text (also carries think-tag markers in tag modes)
    ReasoningUnit   reasoning text, ``separate`` mode only, at most once
    ToolCallUnit    a tool call detected in the answer text
    TerminalUnit    end of response, with usage or the upstream error

Incremental consumers forward units as they come; ``aggregate`` folds the same
unit sequence into one result, so both consumption modes see identical text.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Union

from .constants import TRANSIENT_ERROR_MARKERS
from .stream_events import StreamEvent, UpstreamErrorInfo, iter_events
from .thinking import ThinkingCleaner, ThinkMode, clean_thinking_text, split_thinking_block
from .tool_bridge import ToolExecutionBridge
from .tool_detection import ToolCall, ToolCallDetector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleUnit:
    role: str = "assistant"


@dataclass(frozen=True)
class ContentUnit:
    text: str


@dataclass(frozen=True)
class ReasoningUnit:
    text: str


@dataclass(frozen=True)
class ToolCallUnit:
    call: ToolCall


@dataclass(frozen=True)
class TerminalUnit:
    usage: Optional[Dict[str, Any]] = None
    error: Optional[UpstreamErrorInfo] = None

    @property
    def finish_reason(self) -> str:
        return "error" if self.error is not None else "stop"


OutputUnit = Union[RoleUnit, ContentUnit, ReasoningUnit, ToolCallUnit, TerminalUnit]


@dataclass
class TransformState:
    accumulated_thinking: str = ""
    thinking_emitted: bool = False
    in_thinking: bool = False
    opener_sent: bool = False
    raw_thinking_streamed: bool = False
    tool_buffer: str = ""
    final_usage: Optional[Dict[str, Any]] = None
    finished: bool = False


def _has_block_close(text: str) -> bool:
    return "</details>" in text.lower()


def _log_upstream_error(error: UpstreamErrorInfo) -> None:
    detail = error.detail.lower()
    if any(marker in detail for marker in TRANSIENT_ERROR_MARKERS):
        logger.warning(
            "[transform] upstream reported a transient error (code=%s): %s. "
            "This usually means the signature, frontend version or credential was "
            "rejected; check signing.secret, the X-FE-Version refresh and token validity.",
            error.code,
            error.detail,
        )
    else:
        logger.error("[transform] upstream error (code=%s): %s", error.code, error.detail)


class StreamTransformer:
    """Thinking-mode state machine plus tool-call detection for one response."""

    def __init__(
        self,
        mode: ThinkMode,
        bridge: Optional[ToolExecutionBridge] = None,
        detector: Optional[ToolCallDetector] = None,
    ):
        self.mode = mode
        self.bridge = bridge
        self.detector = detector or (ToolCallDetector() if bridge is not None else None)
        self.state = TransformState()
        self._cleaner = ThinkingCleaner()

    @property
    def finished(self) -> bool:
        return self.state.finished

    def start(self) -> List[OutputUnit]:
        return [RoleUnit()]

    async def feed(self, event: StreamEvent) -> List[OutputUnit]:
        """Advance the state machine by one upstream event."""
        state = self.state
        if state.finished:
            return []

        if event.error is not None:
            _log_upstream_error(event.error)
            state.finished = True
            return [TerminalUnit(usage=state.final_usage, error=event.error)]

        if event.usage:
            state.final_usage = event.usage

        units: List[OutputUnit] = []
        if event.edit_content is not None:
            units += await self._on_edit(event.edit_content)

        if event.delta_content:
            if event.is_thinking:
                units += await self._on_thinking_delta(event.delta_content)
            else:
                units += self._leave_thinking()
                units += await self._on_content(event.delta_content)

        if event.is_done:
            units += self.finish()
        return units

    def finish(self) -> List[OutputUnit]:
        """Close any open block and emit the terminal unit, once."""
        if self.state.finished:
            return []
        units = self._leave_thinking()
        self.state.finished = True
        units.append(TerminalUnit(usage=self.state.final_usage))
        return units

    async def _on_thinking_delta(self, delta: str) -> List[OutputUnit]:
        state = self.state
        if state.thinking_emitted:
            logger.debug("[transform] thinking block already emitted, dropping delta")
            return []
        state.in_thinking = True

        if self.mode is ThinkMode.RAW:
            state.raw_thinking_streamed = True
            return [ContentUnit(delta)]

        if self.mode is ThinkMode.STRIP:
            return []

        if self.mode is ThinkMode.SEPARATE:
            state.accumulated_thinking += delta
            if not _has_block_close(state.accumulated_thinking):
                return []
            reasoning, tail = split_thinking_block(state.accumulated_thinking)
            units: List[OutputUnit] = [ReasoningUnit(reasoning)] if reasoning else []
            self._mark_block_done()
            if tail:
                units += await self._on_content(tail)
            return units

        opener, _ = self.mode.markers
        units = []
        if not state.opener_sent:
            state.opener_sent = True
            units.append(ContentUnit(opener))
        cleaned = self._cleaner.feed(delta)
        if cleaned:
            units.append(ContentUnit(cleaned))
        return units

    def _leave_thinking(self) -> List[OutputUnit]:
        state = self.state
        if not state.in_thinking:
            return []

        units: List[OutputUnit] = []
        if self.mode is ThinkMode.SEPARATE:
            reasoning = clean_thinking_text(state.accumulated_thinking).strip()
            if reasoning:
                units.append(ReasoningUnit(reasoning))
        elif self.mode.markers is not None:
            rest = self._cleaner.flush()
            if rest:
                units.append(ContentUnit(rest))
            if state.opener_sent:
                units.append(ContentUnit(self.mode.markers[1]))
        self._mark_block_done()
        return units

    async def _on_edit(self, edit: str) -> List[OutputUnit]:
        """Authoritative replay of the thinking block, honoured only once."""
        state = self.state
        if state.thinking_emitted:
            logger.debug("[transform] ignoring replay of an already emitted thinking block")
            return []
        if not _has_block_close(edit):
            logger.debug("[transform] ignoring edit_content without a thinking block")
            return []

        reasoning, tail = split_thinking_block(edit)
        units: List[OutputUnit] = []

        if self.mode is ThinkMode.SEPARATE:
            if reasoning:
                units.append(ReasoningUnit(reasoning))
        elif self.mode is ThinkMode.RAW:
            if not state.raw_thinking_streamed:
                units.append(ContentUnit(edit))
                tail = ""
        elif self.mode.markers is not None:
            opener, closer = self.mode.markers
            if state.opener_sent:
                # the replay supersedes whatever partial markup is still held back
                self._cleaner = ThinkingCleaner()
                units.append(ContentUnit(closer))
            elif reasoning:
                units += [ContentUnit(opener), ContentUnit(reasoning), ContentUnit(closer)]

        self._mark_block_done()
        if tail:
            units += await self._on_content(tail)
        return units

    def _mark_block_done(self) -> None:
        state = self.state
        state.thinking_emitted = True
        state.in_thinking = False
        state.accumulated_thinking = ""

    async def _on_content(self, text: str) -> List[OutputUnit]:
        if self.detector is None or self.bridge is None:
            return [ContentUnit(text)]

        state = self.state
        state.tool_buffer += text
        call = self.detector.detect(state.tool_buffer)
        if call is None:
            state.tool_buffer = self.detector.trim(state.tool_buffer)
            return [ContentUnit(text)]

        state.tool_buffer = ""
        result = await self.bridge.run(call)
        return [ToolCallUnit(call), ContentUnit(result)]


async def transform_events(
    events: AsyncIterable[StreamEvent],
    mode: ThinkMode,
    bridge: Optional[ToolExecutionBridge] = None,
    detector: Optional[ToolCallDetector] = None,
) -> AsyncIterator[OutputUnit]:
    """Incremental consumption: yield units as soon as each event is processed."""
    transformer = StreamTransformer(mode, bridge=bridge, detector=detector)
    for unit in transformer.start():
        yield unit
    async for event in events:
        for unit in await transformer.feed(event):
            yield unit
        if transformer.finished:
            return
    if not transformer.finished:
        logger.warning("[transform] upstream stream ended without a done event")
    for unit in transformer.finish():
        yield unit


def transform_lines(
    lines: AsyncIterable[str],
    mode: ThinkMode,
    bridge: Optional[ToolExecutionBridge] = None,
    detector: Optional[ToolCallDetector] = None,
) -> AsyncIterator[OutputUnit]:
    return transform_events(iter_events(lines), mode, bridge=bridge, detector=detector)


@dataclass
class AggregateResult:
    content: str = ""
    reasoning_content: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    error: Optional[UpstreamErrorInfo] = None


async def aggregate(units: AsyncIterable[OutputUnit]) -> AggregateResult:
    """Aggregate consumption: fold the unit sequence into one result."""
    content: List[str] = []
    reasoning: List[str] = []
    result = AggregateResult()
    async for unit in units:
        if isinstance(unit, ContentUnit):
            content.append(unit.text)
        elif isinstance(unit, ReasoningUnit):
            reasoning.append(unit.text)
        elif isinstance(unit, ToolCallUnit):
            result.tool_calls.append(unit.call)
        elif isinstance(unit, TerminalUnit):
            result.usage = unit.usage
            result.error = unit.error
    result.content = "".join(content)
    result.reasoning_content = "".join(reasoning) or None
    return result
