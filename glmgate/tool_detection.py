"""Detection of tool calls embedded in model output text.

Each encoding is a matcher with ``try_match(buffer) -> Optional[ToolCall]``.
Matchers never raise on partial or malformed input; they return None and the
detector tries again once the buffer has grown.
"""

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

# upper bound on answer text kept while waiting for a call to complete
MAX_TOOL_BUFFER = 32 * 1024


def new_tool_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _serialize_arguments(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments, ensure_ascii=False)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str  # JSON text

    def to_openai(self, index: int = 0) -> Dict[str, Any]:
        return {
            "index": index,
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ToolCallMatcher(Protocol):
    name: str
    start_marker: Optional[str]  # text every match begins with; None if unknown

    def try_match(self, buffer: str) -> Optional[ToolCall]: ...


class FencedJsonMatcher:
    """```json {"name": ..., "arguments": ...} ``` blocks."""

    name = "fenced_json"
    start_marker = "```json"
    _pattern = re.compile(r"```json\s*\n\s*(\{[^`]*\})\s*\n\s*```")

    def try_match(self, buffer: str) -> Optional[ToolCall]:
        for match in self._pattern.finditer(buffer):
            try:
                data = json.loads(match.group(1))
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue
            name = data.get("name")
            if not isinstance(name, str) or not name or "arguments" not in data:
                continue
            return ToolCall(
                id=new_tool_call_id(),
                name=name,
                arguments=_serialize_arguments(data["arguments"]),
            )
        return None


class InvokeMarkupMatcher:
    """<function_calls><invoke name="x"><parameter name="k">v</parameter></invoke></function_calls>"""

    name = "invoke_markup"
    start_marker = "<function_calls>"
    _block = re.compile(r"<function_calls>(.*?)</function_calls>", re.DOTALL)
    _invoke = re.compile(r'<invoke\s+name="([^"]+)"\s*>(.*?)</invoke>', re.DOTALL)
    _param = re.compile(r'<parameter\s+name="([^"]+)"\s*>(.*?)</parameter>', re.DOTALL)

    def try_match(self, buffer: str) -> Optional[ToolCall]:
        block = self._block.search(buffer)
        if block is None:
            return None
        invoke = self._invoke.search(block.group(1))
        if invoke is None:
            return None
        params = {
            key: value.strip() for key, value in self._param.findall(invoke.group(2))
        }
        return ToolCall(
            id=new_tool_call_id(),
            name=invoke.group(1).strip(),
            arguments=_serialize_arguments(params),
        )


class InlineCallMatcher:
    """``function_call: name(args)``; args are JSON when they parse, else raw input."""

    name = "inline_call"
    start_marker = "function_call:"
    _pattern = re.compile(r"function_call:\s*(\w+)\s*\(([^)]*)\)")

    def try_match(self, buffer: str) -> Optional[ToolCall]:
        match = self._pattern.search(buffer)
        if match is None:
            return None
        raw_args = match.group(2).strip()
        if not raw_args:
            arguments: Any = {}
        else:
            try:
                arguments = json.loads(raw_args)
            except ValueError:
                arguments = {"input": raw_args}
        return ToolCall(
            id=new_tool_call_id(),
            name=match.group(1),
            arguments=_serialize_arguments(arguments),
        )


DEFAULT_MATCHERS: Sequence[ToolCallMatcher] = (
    FencedJsonMatcher(),
    InvokeMarkupMatcher(),
    InlineCallMatcher(),
)


class ToolCallDetector:
    """Try each matcher in order against the accumulated buffer; first match wins.

    ``trim`` drops buffer text that can no longer be part of a call so that
    long answers are not re-scanned from the start on every chunk.
    """

    def __init__(
        self,
        matchers: Optional[Sequence[ToolCallMatcher]] = None,
        max_buffer: int = MAX_TOOL_BUFFER,
    ):
        self.matchers: List[ToolCallMatcher] = list(matchers or DEFAULT_MATCHERS)
        self.max_buffer = max_buffer

    def detect(self, buffer: str) -> Optional[ToolCall]:
        if not buffer:
            return None
        for matcher in self.matchers:
            call = matcher.try_match(buffer)
            if call is not None:
                logger.info("[tools] detected %s call to %s", matcher.name, call.name)
                return call
        return None

    def trim(self, buffer: str) -> str:
        """Keep the buffer from the earliest still-open start marker."""
        markers = [getattr(m, "start_marker", None) for m in self.matchers]
        if markers and all(markers):
            starts = [buffer.rfind(marker) for marker in markers]
            found = [start for start in starts if start >= 0]
            if found:
                buffer = buffer[min(found):]
            else:
                # a marker may be split across chunks
                keep = max(len(marker) for marker in markers) - 1
                buffer = buffer[-keep:] if keep > 0 else ""
        if len(buffer) > self.max_buffer:
            buffer = buffer[-self.max_buffer:]
        return buffer
