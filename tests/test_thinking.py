"""Tests for thinking-block markup handling."""

import pytest

from glmgate.thinking import (
    ThinkingCleaner,
    ThinkMode,
    clean_thinking_text,
    split_thinking_block,
)

FULL_BLOCK = (
    '<details type="reasoning" done="true" duration="2">\n'
    "<summary>Thought for 2 seconds</summary>\n"
    "> first step\n"
    "> second step\n"
    "</details>\n"
    "The answer is 4."
)


def _feed_all(chunks):
    cleaner = ThinkingCleaner()
    out = "".join(cleaner.feed(chunk) for chunk in chunks)
    return out + cleaner.flush()


def test_clean_removes_tags_labels_and_quote_prefixes():
    assert clean_thinking_text(FULL_BLOCK).strip() == "first step\nsecond step\n\nThe answer is 4."


def test_split_full_block():
    reasoning, content = split_thinking_block(FULL_BLOCK)
    assert reasoning == "first step\nsecond step"
    assert content == "The answer is 4."


def test_split_replay_with_truncated_opening_tag():
    replay = 'true" duration="1" view="">\n<summary>Thought</summary>\n> only step\n</details>\nDone'
    reasoning, content = split_thinking_block(replay)
    assert reasoning == "only step"
    assert content == "Done"


def test_split_without_markup_is_unchanged():
    assert split_thinking_block("plain > text") == ("", "plain > text")


@pytest.mark.parametrize(
    "text",
    [
        FULL_BLOCK,
        '<details type="reasoning">\n> a\n</details>\n\nB',
        'x">\n> partial\n</details>tail',
        "no thinking here",
    ],
)
def test_separate_split_is_idempotent_on_content(text):
    reasoning, content = split_thinking_block(text)
    assert "<details" not in content and "</details>" not in content
    assert "<details" not in reasoning and "<summary" not in reasoning
    second_reasoning, second_content = split_thinking_block(content)
    assert second_reasoning == ""
    assert second_content == content


def test_cleaner_handles_tags_split_across_chunks():
    chunks = [
        "<det",
        'ails type="reasoning" done="false">',
        "\n> line one\n",
        "> line",
        " two",
        "</det",
        "ails>",
    ]
    assert _feed_all(chunks) == "\nline one\nline two"


def test_cleaner_holds_quote_marker_at_line_start():
    cleaner = ThinkingCleaner()
    assert cleaner.feed("a\n>") == "a\n"
    assert cleaner.feed(" b") == "b"


def test_cleaner_holds_unfinished_summary():
    cleaner = ThinkingCleaner()
    assert cleaner.feed("<summary>Thinking") == ""
    assert cleaner.feed("...</summary>\n> go") == "\ngo"


def test_cleaner_passes_ordinary_angle_brackets():
    assert _feed_all(["if x < y", " and y > 2"]) == "if x < y and y > 2"


def test_think_mode_parse():
    assert ThinkMode.parse("SEPARATE", ThinkMode.THINK) is ThinkMode.SEPARATE
    assert ThinkMode.parse(None, ThinkMode.RAW) is ThinkMode.RAW
    assert ThinkMode.parse("bogus", ThinkMode.STRIP) is ThinkMode.STRIP
    assert ThinkMode.THINK.markers == ("<think>", "</think>")
    assert ThinkMode.STRIP.markers is None
