"""Pipeline steps for the chat completions request lifecycle.

Each step takes a RequestContext and mutates it in place.
Shared infrastructure (credential pool, upstream caller, tool bridge) is
passed explicitly.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

import httpx

from .errors import MissingSigningMaterialError, UpstreamTransportError
from .message_utils import has_media_blocks, last_user_text
from .model_catalog import resolve_model as resolve_model_spec
from .request_builder import UploadFile, build_envelope, upload_inline_media
from .stream_transformer import AggregateResult, OutputUnit, aggregate, transform_lines
from .thinking import ThinkMode

if TYPE_CHECKING:
    from .config import Config
    from .credential_pool import Credential, CredentialPool
    from .model_catalog import ModelSpec
    from .request_builder import UpstreamEnvelope
    from .tool_bridge import ToolExecutionBridge
    from .upstream import UpstreamCaller

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class NormalizedRequest:
    """Format-neutral request handed over by an outer API adapter."""

    messages: List[Dict[str, Any]]
    model: str
    feature_overrides: Dict[str, bool] = dataclasses.field(default_factory=dict)
    stream: bool = True
    think_mode: Optional[ThinkMode] = None
    session_id: Optional[str] = None


@dataclasses.dataclass
class RequestContext:
    """Carries all mutable state through the chat completions pipeline."""

    request: NormalizedRequest
    config: "Config"

    # Step 1: model resolution
    model_spec: Optional["ModelSpec"] = None
    think_mode: ThinkMode = ThinkMode.THINK

    # Step 2: message preparation
    messages: List[Dict[str, Any]] = dataclasses.field(default_factory=list)

    # Step 3: envelope
    envelope: Optional["UpstreamEnvelope"] = None

    # Step 4: upstream call
    credential: Optional["Credential"] = None
    response: Optional["httpx.Response"] = None


def _require_user_text(messages) -> None:
    if not last_user_text(list(messages)):
        raise MissingSigningMaterialError()


# ---------------------------------------------------------------------------
# Step 1: Model resolution
# ---------------------------------------------------------------------------


def resolve_model(ctx: RequestContext) -> None:
    """Pick the catalog model and the presentation mode for this request."""
    ctx.model_spec = resolve_model_spec(ctx.request.model)
    ctx.think_mode = ctx.request.think_mode or ctx.config.transform.think_mode


# ---------------------------------------------------------------------------
# Step 2: Message preparation
# ---------------------------------------------------------------------------


async def prepare_messages(
    ctx: RequestContext, upload_file: Optional[UploadFile] = None
) -> None:
    """Upload inline images for vision models when an uploader is available."""
    _require_user_text(ctx.request.messages)
    messages = [dict(msg) for msg in ctx.request.messages]
    if (
        upload_file is not None
        and ctx.model_spec is not None
        and ctx.model_spec.capabilities.vision
        and any(has_media_blocks(msg.get("content")) for msg in messages)
    ):
        messages = await upload_inline_media(messages, upload_file)
    ctx.messages = messages


# ---------------------------------------------------------------------------
# Step 3: Envelope assembly
# ---------------------------------------------------------------------------


def build_request(ctx: RequestContext) -> None:
    """Assemble the envelope; rejects requests with nothing to sign before any I/O."""
    if ctx.model_spec is None:
        resolve_model(ctx)
    ctx.envelope = build_envelope(
        ctx.messages or ctx.request.messages,
        ctx.model_spec,
        feature_overrides=ctx.request.feature_overrides,
        session_id=ctx.request.session_id,
        language=ctx.config.upstream.language,
    )
    _require_user_text(ctx.envelope.messages)


# ---------------------------------------------------------------------------
# Step 4: Upstream call
# ---------------------------------------------------------------------------


async def call_upstream(
    ctx: RequestContext, pool: "CredentialPool", caller: "UpstreamCaller"
) -> None:
    ctx.credential = await pool.acquire()
    ctx.response = await caller.call(ctx.envelope, ctx.envelope.session_id, ctx.credential)


# ---------------------------------------------------------------------------
# Step 5: Response transformation
# ---------------------------------------------------------------------------


async def stream_units(
    ctx: RequestContext, bridge: Optional["ToolExecutionBridge"] = None
) -> AsyncIterator[OutputUnit]:
    """Yield presentation units; always closes the upstream response.

    Raises:
        UpstreamTransportError: the connection dropped mid-response.
    """
    response = ctx.response
    try:
        async for unit in transform_lines(response.aiter_lines(), ctx.think_mode, bridge=bridge):
            yield unit
    except httpx.TransportError as e:
        logger.warning("[upstream] connection lost while reading response: %s", e)
        raise UpstreamTransportError(f"Upstream connection lost mid-response: {e}") from e
    finally:
        await response.aclose()


async def collect_response(
    ctx: RequestContext, bridge: Optional["ToolExecutionBridge"] = None
) -> AggregateResult:
    return await aggregate(stream_units(ctx, bridge))
