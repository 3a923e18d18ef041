"""Presentation modes and markup cleanup for upstream thinking blocks.

Upstream wraps reasoning as::

    <details type="reasoning" done="true" duration="3">
    <summary>Thought for 3 seconds</summary>
    > first line of reasoning
    > second line
    </details>

Deltas arrive in arbitrary pieces, so the incremental cleaner holds back any
tail that could still turn into one of these structural tags.
"""

import logging
import re
from enum import Enum
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

_DETAILS_BLOCK_RE = re.compile(r"<details[^>]*>(.*?)</details>", re.DOTALL | re.IGNORECASE)
_DETAILS_OPEN_RE = re.compile(r"<details[^>]*>", re.IGNORECASE)
_DETAILS_CLOSE_RE = re.compile(r"</details>", re.IGNORECASE)
_SUMMARY_RE = re.compile(r"<summary[^>]*>.*?</summary>", re.DOTALL | re.IGNORECASE)
_SUMMARY_TAG_RE = re.compile(r"</?summary[^>]*>", re.IGNORECASE)
_QUOTE_PREFIX_RE = re.compile(r"^> ", re.MULTILINE)
# tail of an opening tag whose "<details" was cut off, e.g. `true" duration="3">`
_PARTIAL_OPEN_RE = re.compile(r'^[^<>\n]*"\s*>')

_STRUCTURAL_TAGS = ("<details", "</details", "<summary", "</summary")


class ThinkMode(str, Enum):
    """How thinking blocks are shown to the API caller."""

    STRIP = "strip"  # drop reasoning entirely
    THINKING = "thinking"  # wrap in <thinking>...</thinking>
    THINK = "think"  # wrap in <think>...</think>
    RAW = "raw"  # pass upstream markup through unchanged
    SEPARATE = "separate"  # emit reasoning as its own field

    @property
    def markers(self) -> Optional[Tuple[str, str]]:
        if self is ThinkMode.THINKING:
            return "<thinking>", "</thinking>"
        if self is ThinkMode.THINK:
            return "<think>", "</think>"
        return None

    @classmethod
    def parse(cls, value: Optional[str], default: "ThinkMode") -> "ThinkMode":
        if not value:
            return default
        try:
            return cls(value.strip().lower())
        except ValueError:
            logger.warning("Unknown think mode '%s', using %s", value, default.value)
            return default


def clean_thinking_text(text: str) -> str:
    """Remove block tags, summary labels and quote prefixes from reasoning text."""
    text = _SUMMARY_RE.sub("", text)
    text = _DETAILS_OPEN_RE.sub("", text)
    text = _DETAILS_CLOSE_RE.sub("", text)
    text = _SUMMARY_TAG_RE.sub("", text)
    return _QUOTE_PREFIX_RE.sub("", text)


def _strip_stray_markup(text: str) -> str:
    text = _SUMMARY_RE.sub("", text)
    text = _DETAILS_OPEN_RE.sub("", text)
    text = _DETAILS_CLOSE_RE.sub("", text)
    return _SUMMARY_TAG_RE.sub("", text)


def split_thinking_block(text: str) -> Tuple[str, str]:
    """Split a replayed block into ``(reasoning, content)``.

    Handles complete ``<details>`` blocks as well as replays whose opening tag
    was cut off upstream. Text without any thinking markup comes back as
    ``("", text)`` unchanged.
    """
    if _DETAILS_BLOCK_RE.search(text):
        reasoning = "\n".join(
            clean_thinking_text(inner).strip()
            for inner in _DETAILS_BLOCK_RE.findall(text)
        ).strip()
        content = _strip_stray_markup(_DETAILS_BLOCK_RE.sub("", text)).lstrip("\n")
        return reasoning, content

    closes = list(_DETAILS_CLOSE_RE.finditer(text))
    if not closes:
        return "", text

    last_close = closes[-1]
    head = _PARTIAL_OPEN_RE.sub("", text[: last_close.start()], count=1)
    reasoning = clean_thinking_text(head).strip()
    content = _strip_stray_markup(text[last_close.end():]).lstrip("\n")
    return reasoning, content


class ThinkingCleaner:
    """Incremental ``clean_thinking_text`` for chunked input.

    ``feed`` returns the cleaned text that is safe to emit now; a trailing
    fragment that might still become a structural tag, an unfinished summary
    label, or a lone ``>`` at a line start is held until more input arrives
    or ``flush`` is called.
    """

    def __init__(self):
        self._pending = ""
        self._line_start = True

    def _safe_cut(self, buf: str) -> int:
        cut = len(buf)
        lowered = buf.lower()

        lt = buf.rfind("<")
        if lt != -1 and ">" not in buf[lt:]:
            tail = lowered[lt:]
            if any(tag.startswith(tail) or tail.startswith(tag) for tag in _STRUCTURAL_TAGS):
                cut = lt

        summary = lowered.rfind("<summary")
        if summary != -1 and "</summary>" not in lowered[summary:]:
            cut = min(cut, summary)

        line_begin = buf.rfind("\n") + 1
        if buf[line_begin:] == ">" and (line_begin > 0 or self._line_start):
            cut = min(cut, line_begin)
        return cut

    def _clean(self, text: str) -> str:
        text = _strip_stray_markup(text)
        if not text:
            return ""
        lines = text.split("\n")
        for i, line in enumerate(lines):
            if (i > 0 or self._line_start) and line.startswith("> "):
                lines[i] = line[2:]
        self._line_start = text.endswith("\n")
        return "\n".join(lines)

    def feed(self, text: str) -> str:
        buf = self._pending + text
        cut = self._safe_cut(buf)
        self._pending = buf[cut:]
        return self._clean(buf[:cut])

    def flush(self) -> str:
        rest, self._pending = self._pending, ""
        return self._clean(rest)
