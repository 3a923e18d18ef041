"""Tests for the upstream stream state machine."""

import asyncio
import json
import logging

import pytest

from glmgate.stream_events import StreamEvent
from glmgate.stream_transformer import (
    ContentUnit,
    ReasoningUnit,
    RoleUnit,
    StreamTransformer,
    TerminalUnit,
    ToolCallUnit,
    aggregate,
    transform_lines,
)
from glmgate.thinking import ThinkMode
from glmgate.tool_bridge import ToolExecutionBridge

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _event(phase="answer", delta="", **data):
    payload = {"type": "chat:completion", "data": {"phase": phase, "delta_content": delta, **data}}
    return "data: " + json.dumps(payload)


def _thinking(delta):
    return _event("thinking", delta)


def _done(**data):
    return _event("done", "", done=True, **data)


async def _aiter(items):
    for item in items:
        yield item


def _units(lines, mode=ThinkMode.THINK, bridge=None):
    async def _run():
        return [unit async for unit in transform_lines(_aiter(lines), mode, bridge=bridge)]

    return asyncio.run(_run())


def _aggregate(lines, mode=ThinkMode.THINK, bridge=None):
    return asyncio.run(aggregate(transform_lines(_aiter(lines), mode, bridge=bridge)))


def _content(units):
    return "".join(u.text for u in units if isinstance(u, ContentUnit))


def _reasoning(units):
    return [u.text for u in units if isinstance(u, ReasoningUnit)]


THINKING_STREAM = [
    _thinking('<details type="reasoning" done="false">\n'),
    _thinking("<summary>Thinking…</summary>\n"),
    _thinking("> weigh option A\n"),
    _thinking("> pick B"),
    _thinking("\n</details>"),
    _event("answer", "Use B."),
    _event("answer", " Done."),
    _done(usage={"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8}),
]


# ---------------------------------------------------------------------------
# Basic flows
# ---------------------------------------------------------------------------


def test_single_content_event():
    lines = [_event("answer", "Hello"), _done()]
    units = _units(lines)
    assert isinstance(units[0], RoleUnit)
    assert isinstance(units[-1], TerminalUnit)

    result = _aggregate(lines)
    assert result.content == "Hello"
    assert result.reasoning_content is None
    assert result.error is None


def test_think_mode_wraps_thinking_deltas():
    lines = [
        _thinking("<details>"),
        _thinking("reason A"),
        _thinking("</details>"),
        _event("answer", "Answer"),
        _done(),
    ]
    assert _aggregate(lines, ThinkMode.THINK).content == "<think>reason A</think>Answer"


def test_separate_mode_edit_content_emits_reasoning_once():
    replay = '<details type="reasoning" done="true">\n<summary>Thought</summary>\n> step one\n</details>\nHel'
    lines = [
        _event("answer", "", edit_content=replay),
        _event("answer", "lo"),
        _event("answer", "", edit_content=replay),
        _event("answer", " world"),
        _done(),
    ]
    units = _units(lines, ThinkMode.SEPARATE)
    assert _reasoning(units) == ["step one"]
    assert _content(units) == "Hello world"


# ---------------------------------------------------------------------------
# Presentation modes
# ---------------------------------------------------------------------------


def test_strip_mode_drops_thinking_entirely():
    result = _aggregate(THINKING_STREAM, ThinkMode.STRIP)
    assert result.content == "Use B. Done."
    assert result.reasoning_content is None


def test_thinking_mode_wraps_one_block():
    content = _aggregate(THINKING_STREAM, ThinkMode.THINKING).content
    assert content == "<thinking>\n\nweigh option A\npick B\n</thinking>Use B. Done."
    assert content.count("<thinking>") == 1
    assert content.count("</thinking>") == 1
    assert "<details" not in content and "<summary" not in content


def test_raw_mode_is_identity():
    deltas = [json.loads(line[6:])["data"]["delta_content"] for line in THINKING_STREAM]
    assert _aggregate(THINKING_STREAM, ThinkMode.RAW).content == "".join(deltas)


def test_separate_mode_accumulates_deltas_into_one_reasoning_unit():
    units = _units(THINKING_STREAM, ThinkMode.SEPARATE)
    assert _reasoning(units) == ["weigh option A\npick B"]
    assert _content(units) == "Use B. Done."


def test_separate_mode_flushes_unclosed_block_on_phase_change():
    lines = [_thinking("> just thinking"), _event("answer", "ok"), _done()]
    units = _units(lines, ThinkMode.SEPARATE)
    assert _reasoning(units) == ["just thinking"]
    assert _content(units) == "ok"


def test_tag_mode_edit_content_closes_open_block_and_keeps_tail():
    lines = [
        _thinking("<details>"),
        _thinking("> reason"),
        _event("answer", "", edit_content='x">\n> reason\n</details>\nHi'),
        _event("answer", " there"),
        _done(),
    ]
    assert _aggregate(lines, ThinkMode.THINK).content == "<think>reason</think>Hi there"


def test_tag_mode_edit_content_without_streamed_thinking_emits_full_block():
    lines = [
        _event("answer", "", edit_content='<details type="reasoning">\n> why\n</details>\nAnswer'),
        _done(),
    ]
    assert _aggregate(lines, ThinkMode.THINK).content == "<think>why</think>Answer"


def test_second_thinking_phase_is_not_emitted():
    lines = [
        _thinking("first"),
        _event("answer", "A"),
        _thinking("second"),
        _event("answer", "B"),
        _done(),
    ]
    assert _aggregate(lines, ThinkMode.THINK).content == "<think>first</think>AB"


@pytest.mark.parametrize("mode", list(ThinkMode))
def test_incremental_and_aggregate_agree(mode):
    units = _units(THINKING_STREAM, mode)
    result = _aggregate(THINKING_STREAM, mode)
    assert result.content == _content(units)
    assert (result.reasoning_content or "") == "".join(_reasoning(units))
    assert result.usage == {"prompt_tokens": 3, "completion_tokens": 5, "total_tokens": 8}


# ---------------------------------------------------------------------------
# Termination and errors
# ---------------------------------------------------------------------------


def test_done_phase_terminates_and_ignores_later_events():
    lines = [_event("answer", "a"), _event("done", ""), _event("answer", "late")]
    units = _units(lines)
    assert _content(units) == "a"
    assert sum(isinstance(u, TerminalUnit) for u in units) == 1


def test_stream_end_without_done_closes_open_block():
    units = _units([_thinking("hmm")], ThinkMode.THINK)
    assert _content(units) == "<think>hmm</think>"
    assert isinstance(units[-1], TerminalUnit)


def test_usage_is_carried_to_terminal_unit():
    lines = [_event("answer", "x", usage={"total_tokens": 9}), _done()]
    terminal = _units(lines)[-1]
    assert terminal.usage == {"total_tokens": 9}
    assert terminal.finish_reason == "stop"


@pytest.mark.parametrize(
    "error_line",
    [
        "data: " + json.dumps({"type": "error", "error": {"detail": "bad request", "code": 400}}),
        _event("answer", "", error={"detail": "bad request", "code": 400}),
        _event("answer", "", inner={"error": {"detail": "bad request", "code": 400}}),
    ],
)
def test_error_events_short_circuit(error_line):
    lines = [_event("answer", "partial"), error_line, _event("answer", "more"), _done()]
    units = _units(lines)
    terminal = units[-1]
    assert isinstance(terminal, TerminalUnit)
    assert terminal.error.detail == "bad request"
    assert terminal.finish_reason == "error"
    assert _content(units) == "partial"

    result = _aggregate(lines)
    assert result.error.code == 400


def test_transient_error_logs_guidance(caplog):
    line = _event("answer", "", error={"detail": "Something went wrong, please try again later", "code": 500})
    with caplog.at_level(logging.WARNING, logger="glmgate.stream_transformer"):
        result = _aggregate([line])
    assert result.error is not None
    assert "transient" in caplog.text


def test_malformed_lines_are_skipped(caplog):
    lines = [
        _event("answer", "a"),
        "data: {not json",
        "data: [1, 2]",
        ": keep-alive",
        "",
        _event("answer", "b"),
        _done(),
    ]
    with caplog.at_level(logging.WARNING, logger="glmgate.stream_events"):
        result = _aggregate(lines)
    assert result.content == "ab"
    assert "malformed" in caplog.text


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class CountingExecutor:
    def __init__(self):
        self.calls = []

    async def __call__(self, name, args_json):
        self.calls.append((name, json.loads(args_json)))
        return {"time": "12:00", "timezone": "UTC"}


def test_fenced_tool_call_split_across_three_chunks():
    executor = CountingExecutor()
    bridge = ToolExecutionBridge(executor)
    lines = [
        _event("answer", 'Checking.\n```json\n{"name": "get_current_time", '),
        _event("answer", '"arguments": {"timezone": "UTC"}}'),
        _event("answer", "\n```"),
        _event("answer", "After."),
        _done(),
    ]
    units = _units(lines, ThinkMode.THINK, bridge=bridge)

    assert executor.calls == [("get_current_time", {"timezone": "UTC"})]
    tool_units = [u for u in units if isinstance(u, ToolCallUnit)]
    assert len(tool_units) == 1
    assert tool_units[0].call.name == "get_current_time"

    index = units.index(tool_units[0])
    result_unit = units[index + 1]
    assert isinstance(result_unit, ContentUnit)
    assert json.loads(result_unit.text) == {"time": "12:00", "timezone": "UTC"}
    assert isinstance(units[index + 2], ContentUnit)
    assert units[index + 2].text == "After."


def test_tool_detection_disabled_without_bridge():
    lines = [_event("answer", 'function_call: now()'), _done()]
    units = _units(lines)
    assert not any(isinstance(u, ToolCallUnit) for u in units)
    assert _content(units) == "function_call: now()"


def test_thinking_text_is_not_scanned_for_tool_calls():
    executor = CountingExecutor()
    lines = [_thinking("function_call: now()"), _event("answer", "ok"), _done()]
    _units(lines, ThinkMode.THINK, bridge=ToolExecutionBridge(executor))
    assert executor.calls == []


def test_tool_buffer_stays_bounded_on_long_answers():
    async def _run():
        transformer = StreamTransformer(ThinkMode.THINK, bridge=ToolExecutionBridge(CountingExecutor()))
        for _ in range(200):
            await transformer.feed(StreamEvent(type="chat:completion", phase="answer", delta_content="word " * 50))
        return transformer

    transformer = asyncio.run(_run())
    assert len(transformer.state.tool_buffer) < 20


def test_tool_call_after_long_answer_is_still_detected():
    executor = CountingExecutor()
    filler = [_event("answer", "filler text. " * 40) for _ in range(20)]
    lines = filler + [
        _event("answer", "```js"),
        _event("answer", 'on\n{"name": "get_current_time", "arguments": {}}\n```'),
        _done(),
    ]
    units = _units(lines, ThinkMode.THINK, bridge=ToolExecutionBridge(executor))
    assert executor.calls == [("get_current_time", {})]
    assert sum(isinstance(u, ToolCallUnit) for u in units) == 1
