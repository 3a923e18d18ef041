"""Shared message content conversion helpers."""

import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

_MEDIA_BLOCK_TYPES = {"image_url", "image", "input_audio", "file", "video_url"}


def content_to_text(content: Any) -> str:
    """Best-effort conversion of message content to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text_val = item.get("text")
                if isinstance(text_val, str):
                    parts.append(text_val)
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    if isinstance(content, dict):
        if content.get("type") == "text":
            text_val = content.get("text")
            if isinstance(text_val, str):
                return text_val
        return ""
    return str(content)


def last_user_text(messages: List[Dict[str, Any]]) -> str:
    """Text of the most recent user message, or "" when there is none."""
    for msg in reversed(messages):
        if msg.get("role") == "user":
            return content_to_text(msg.get("content"))
    return ""


def has_media_blocks(content: Any) -> bool:
    if not isinstance(content, list):
        return False
    return any(
        isinstance(item, dict) and item.get("type") in _MEDIA_BLOCK_TYPES
        for item in content
    )


def strip_media_blocks(messages: List[Dict[str, Any]], model_name: str) -> List[Dict[str, Any]]:
    """Reduce multimodal messages to their text for models without vision."""
    result: List[Dict[str, Any]] = []
    for index, msg in enumerate(messages):
        content = msg.get("content")
        if not has_media_blocks(content):
            result.append(msg)
            continue
        dropped = sum(
            1
            for item in content
            if isinstance(item, dict) and item.get("type") in _MEDIA_BLOCK_TYPES
        )
        logger.warning(
            "Model %s has no vision support; dropped %d media block(s) from message %d",
            model_name,
            dropped,
            index,
        )
        stripped = dict(msg)
        stripped["content"] = content_to_text(content)
        result.append(stripped)
    return result
