"""Upstream request assembly: envelope, signing context and query string.

The envelope is built once per inbound request and never mutated; the
signing context and query string are rebuilt for every network attempt
because they depend on the credential and the current time.
"""

import base64
import binascii
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import formatdate
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .constants import (
    CLIENT_PLATFORM,
    CLIENT_VERSION,
    PAGE_TITLE,
    TIMEZONE_OFFSET_MINUTES,
    TRUTHY_HEADER_VALUES,
)
from .errors import MissingSigningMaterialError
from .message_utils import last_user_text, strip_media_blocks
from .model_catalog import ModelSpec
from .signing import build_identity, extract_user_id

logger = logging.getLogger(__name__)

UploadFile = Callable[[bytes, str], Awaitable[str]]

FEATURE_KEYS = (
    "enable_thinking",
    "web_search",
    "auto_web_search",
    "image_generation",
    "title_generation",
    "tags_generation",
    "mcp",
)


def parse_feature_flag(value: Optional[str], default: bool) -> bool:
    """Header value to bool: true/1/yes are true, absent keeps the default."""
    if value is None:
        return default
    return value.strip().lower() in TRUTHY_HEADER_VALUES


def merge_features(spec: ModelSpec, overrides: Mapping[str, bool]) -> Dict[str, bool]:
    """Override present wins, otherwise the model capability default applies."""
    merged = spec.feature_defaults()
    for key, value in overrides.items():
        if key not in merged:
            logger.debug("Ignoring unknown feature override '%s'", key)
            continue
        if value is not None:
            merged[key] = bool(value)
    return merged


def _template_variables(now: datetime, language: str) -> Dict[str, str]:
    return {
        "{{USER_NAME}}": "Guest",
        "{{USER_LOCATION}}": "Unknown",
        "{{CURRENT_DATETIME}}": now.strftime("%Y-%m-%d %H:%M:%S"),
        "{{CURRENT_DATE}}": now.strftime("%Y-%m-%d"),
        "{{CURRENT_TIME}}": now.strftime("%H:%M:%S"),
        "{{CURRENT_WEEKDAY}}": now.strftime("%A"),
        "{{CURRENT_TIMEZONE}}": now.tzname() or "UTC",
        "{{USER_LANGUAGE}}": language,
    }


@dataclass(frozen=True)
class UpstreamEnvelope:
    """Outbound chat payload."""

    model: ModelSpec
    messages: Tuple[Dict[str, Any], ...]
    params: Dict[str, Any]
    feature_flags: Dict[str, bool]
    session_id: str
    message_id: str
    variables: Dict[str, str]
    stream: bool = True
    mcp_servers: Optional[List[str]] = None

    @property
    def model_id(self) -> str:
        return self.model.id

    def to_payload(self) -> Dict[str, Any]:
        """JSON body for the upstream chat endpoint."""
        flags = self.feature_flags
        payload: Dict[str, Any] = {
            "stream": self.stream,
            "model": self.model.id,
            "messages": copy.deepcopy(list(self.messages)),
            "params": dict(self.params),
            "features": {
                "image_generation": flags["image_generation"],
                "web_search": flags["web_search"],
                "auto_web_search": flags["auto_web_search"],
                "preview_mode": self.model.capabilities.vision,
                "flags": [],
                "features": [],
                "enable_thinking": flags["enable_thinking"],
            },
            "background_tasks": {
                "title_generation": flags["title_generation"],
                "tags_generation": flags["tags_generation"],
            },
            "chat_id": self.session_id,
            "id": self.message_id,
            "model_item": {
                "id": self.model.id,
                "name": self.model.name,
                "owned_by": "openai",
            },
            "tool_servers": [],
            "variables": dict(self.variables),
        }
        if self.mcp_servers is not None:
            payload["mcp_servers"] = list(self.mcp_servers)
        return payload


def build_envelope(
    messages: List[Dict[str, Any]],
    model: ModelSpec,
    feature_overrides: Optional[Mapping[str, bool]] = None,
    session_id: Optional[str] = None,
    message_id: Optional[str] = None,
    language: str = "en-US",
    now: Optional[datetime] = None,
) -> UpstreamEnvelope:
    """Assemble the upstream envelope for one inbound request."""
    if not model.capabilities.vision:
        messages = strip_media_blocks(messages, model.name)

    flags = merge_features(model, feature_overrides or {})
    mcp_servers = [] if flags["mcp"] and model.capabilities.mcp else None

    return UpstreamEnvelope(
        model=model,
        messages=tuple(copy.deepcopy(messages)),
        params=dict(model.default_params),
        feature_flags=flags,
        session_id=session_id or str(uuid.uuid4()),
        message_id=message_id or str(uuid.uuid4()),
        variables=_template_variables(now or datetime.now().astimezone(), language),
        mcp_servers=mcp_servers,
    )


def _decode_data_url(url: str) -> Optional[Tuple[bytes, str]]:
    if not url.startswith("data:") or "," not in url:
        return None
    header, encoded = url[5:].split(",", 1)
    mime = header.split(";", 1)[0] or "application/octet-stream"
    if ";base64" not in header:
        return None
    try:
        return base64.b64decode(encoded), mime
    except (binascii.Error, ValueError):
        return None


async def upload_inline_media(
    messages: List[Dict[str, Any]], upload_file: UploadFile
) -> List[Dict[str, Any]]:
    """Upload ``data:`` image blocks and point them at the returned file handle.

    Blocks whose upload fails are dropped with a warning.
    """
    result: List[Dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        if not isinstance(content, list):
            result.append(msg)
            continue

        blocks: List[Any] = []
        for block in content:
            if not (isinstance(block, dict) and block.get("type") == "image_url"):
                blocks.append(block)
                continue
            image = block.get("image_url") or {}
            url = image.get("url", "") if isinstance(image, dict) else str(image)
            decoded = _decode_data_url(url)
            if decoded is None:
                blocks.append(block)
                continue
            data, mime = decoded
            try:
                handle = await upload_file(data, mime)
            except Exception as e:
                logger.warning("Image upload failed (%s, %d bytes), dropping block: %s", mime, len(data), e)
                continue
            blocks.append({"type": "image_url", "image_url": {"url": handle}})

        updated = dict(msg)
        updated["content"] = blocks
        result.append(updated)
    return result


@dataclass
class SigningContext:
    """Per-attempt material for the signing engine."""

    request_id: str
    timestamp_ms: int
    user_id: str
    last_user_message_text: str
    token: str = field(repr=False, default="")

    @property
    def identity(self) -> str:
        return build_identity(self.request_id, self.timestamp_ms, self.user_id)


def build_signing_context(
    envelope: UpstreamEnvelope,
    token: str,
    timestamp_ms: Optional[int] = None,
    request_id: Optional[str] = None,
) -> SigningContext:
    """Collect signing inputs.

    Raises:
        MissingSigningMaterialError: the envelope has no user text to sign.
    """
    text = last_user_text(list(envelope.messages))
    if not text:
        raise MissingSigningMaterialError()
    return SigningContext(
        request_id=request_id or str(uuid.uuid4()),
        timestamp_ms=timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        user_id=extract_user_id(token),
        last_user_message_text=text,
        token=token,
    )


def build_query_params(
    ctx: SigningContext,
    origin: str,
    session_id: Optional[str],
    browser_name: str = "Chrome",
    os_name: str = "Windows",
) -> Dict[str, str]:
    """Query string that accompanies the signed chat request."""
    parsed = urlparse(origin)
    host = parsed.netloc or origin
    path = f"/c/{session_id}" if session_id else "/"
    moment = datetime.fromtimestamp(ctx.timestamp_ms // 1000, tz=timezone.utc)
    timestamp = str(ctx.timestamp_ms)

    return {
        "timestamp": timestamp,
        "requestId": ctx.request_id,
        "user_id": ctx.user_id,
        "version": CLIENT_VERSION,
        "platform": CLIENT_PLATFORM,
        "token": ctx.token,
        "current_url": f"{origin.rstrip('/')}{path}" if session_id else origin,
        "pathname": path,
        "search": "",
        "hash": "",
        "host": host,
        "hostname": parsed.hostname or host,
        "protocol": f"{parsed.scheme or 'https'}:",
        "referrer": "",
        "title": PAGE_TITLE,
        "timezone_offset": str(TIMEZONE_OFFSET_MINUTES),
        "local_time": moment.strftime("%Y-%m-%d %H:%M:%S.")
        + f"{ctx.timestamp_ms % 1000:03d}Z",
        "utc_time": formatdate(ctx.timestamp_ms / 1000, usegmt=True),
        "is_mobile": "false",
        "is_touch": "false",
        "max_touch_points": "10",
        "browser_name": browser_name,
        "os_name": os_name,
        "signature_timestamp": timestamp,
    }
