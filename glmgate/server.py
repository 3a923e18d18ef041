"""FastAPI server with OpenAI-compatible endpoints"""

import logging
import time
import uuid
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import Config, load_config
from .constants import FEATURE_HEADERS, THINK_MODE_HEADER
from .credential_pool import CredentialPool
from .errors import GatewayError, UpstreamReportedError
from .fingerprint import FingerprintGenerator
from .guest_token import GuestTokenIssuer
from .model_catalog import DEFAULT_MODEL, list_models as catalog_models
from .models import (
    ChatCompletionChoice,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatCompletionStreamChoice,
    ChatCompletionStreamResponse,
    HealthResponse,
    Message,
    ModelInfo,
    ModelListResponse,
    PoolStatusResponse,
)
from .outcome_logger import build_recorder
from .pipeline import (
    NormalizedRequest,
    RequestContext,
    build_request,
    call_upstream,
    collect_response,
    prepare_messages,
    resolve_model,
    stream_units,
)
from .request_builder import UploadFile, parse_feature_flag
from .stream_transformer import (
    ContentUnit,
    ReasoningUnit,
    RoleUnit,
    TerminalUnit,
    ToolCallUnit,
)
from .thinking import ThinkMode
from .tool_bridge import ToolExecutionBridge, ToolExecutor, ToolRegistry
from .upstream import UpstreamCaller

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global state (initialized in create_app)
config: Config = None
pool: CredentialPool = None
caller: UpstreamCaller = None
bridge: Optional[ToolExecutionBridge] = None


def _configure_logging(debug: bool) -> None:
    """Apply runtime log level from config."""
    level = logging.DEBUG if debug else logging.INFO
    logging.getLogger("glmgate").setLevel(level)


def normalize_openai_request(
    request: ChatCompletionRequest, headers: Mapping[str, str], cfg: Config
) -> NormalizedRequest:
    """OpenAI request + feature headers -> format-neutral request."""
    overrides: Dict[str, bool] = {}
    for header, feature in FEATURE_HEADERS.items():
        value = headers.get(header)
        if value is not None:
            overrides[feature] = parse_feature_flag(value, False)

    mode_header = headers.get(THINK_MODE_HEADER)
    think_mode = (
        ThinkMode.parse(mode_header, cfg.transform.think_mode) if mode_header else None
    )
    stream = request.stream if request.stream is not None else cfg.transform.default_stream

    return NormalizedRequest(
        messages=[msg.model_dump(exclude_none=True) for msg in request.messages],
        model=request.model,
        feature_overrides=overrides,
        stream=bool(stream),
        think_mode=think_mode,
        session_id=request.chat_id,
    )


def _sse(chunk: ChatCompletionStreamResponse) -> str:
    return f"data: {chunk.model_dump_json(exclude_none=True)}\n\n"


async def _openai_stream(
    ctx: RequestContext, completion_id: str, created: int
) -> AsyncIterator[str]:
    """Render presentation units as chat.completion.chunk SSE lines."""
    model_name = ctx.request.model
    units = stream_units(ctx, bridge)
    tool_index = 0

    def _chunk(delta: Dict[str, Any], **kwargs: Any) -> str:
        return _sse(
            ChatCompletionStreamResponse(
                id=completion_id,
                created=created,
                model=model_name,
                choices=[
                    ChatCompletionStreamChoice(
                        delta=delta, finish_reason=kwargs.pop("finish_reason", None)
                    )
                ],
                **kwargs,
            )
        )

    try:
        async for unit in units:
            if isinstance(unit, RoleUnit):
                yield _chunk({"role": unit.role})
            elif isinstance(unit, ContentUnit):
                yield _chunk({"content": unit.text})
            elif isinstance(unit, ReasoningUnit):
                yield _chunk({"reasoning_content": unit.text})
            elif isinstance(unit, ToolCallUnit):
                yield _chunk({"tool_calls": [unit.call.to_openai(tool_index)]})
                tool_index += 1
            elif isinstance(unit, TerminalUnit):
                error = None
                if unit.error is not None:
                    error = UpstreamReportedError(unit.error.detail, unit.error.code).to_dict()["error"]
                yield _chunk(
                    {}, finish_reason=unit.finish_reason, usage=unit.usage, error=error
                )
    except GatewayError as e:
        # headers are already sent; report the failure in-band
        yield _chunk({}, finish_reason="error", error=e.to_dict()["error"])
    finally:
        await units.aclose()
    yield "data: [DONE]\n\n"


def _completion_body(
    ctx: RequestContext, result, completion_id: str, created: int
) -> Dict[str, Any]:
    message = Message(
        role="assistant",
        content=result.content,
        reasoning_content=result.reasoning_content or None,
        tool_calls=[
            call.to_openai(index) for index, call in enumerate(result.tool_calls)
        ]
        or None,
    )
    response = ChatCompletionResponse(
        id=completion_id,
        created=created,
        model=ctx.request.model,
        choices=[ChatCompletionChoice(index=0, message=message, finish_reason="stop")],
        usage=result.usage or None,
    )
    return response.model_dump(exclude_none=True)


def create_app(
    config_path: str = "config.yaml",
    env_file: str | None = None,
    preloaded_config: Config | None = None,
    http_client: httpx.AsyncClient | None = None,
    tool_executor: ToolExecutor | None = None,
    upload_file: UploadFile | None = None,
) -> FastAPI:
    """Create and configure FastAPI application

    Args:
        config_path: Path to configuration file
        env_file: Optional path to dotenv file
        preloaded_config: Preloaded config object to avoid re-parsing config
        http_client: Shared client for upstream calls (created when omitted)
        tool_executor: ``execute(name, args_json)`` used when tools are enabled
        upload_file: ``upload(bytes, mime) -> handle`` for inline images

    Returns:
        Configured FastAPI app
    """
    global config, pool, caller, bridge

    if preloaded_config is not None:
        config = preloaded_config
        _configure_logging(config.serve.debug)
        logger.info("Using preloaded configuration")
    else:
        try:
            config = load_config(config_path, env_file=env_file)
            _configure_logging(config.serve.debug)
            logger.info(f"Loaded configuration from {config_path}")
        except Exception as e:
            logger.exception(f"Failed to load configuration: {e}")
            raise

    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(follow_redirects=True)
    recorder = build_recorder(config.serve.log_dir)

    fingerprint = FingerprintGenerator(
        client,
        origin=config.upstream.base_url,
        language=config.upstream.language,
        fe_version=config.upstream.fe_version,
        timeout=config.upstream.fingerprint_timeout,
    )
    guest_fetcher = None
    if config.credentials.guest_enabled:
        guest_fetcher = GuestTokenIssuer(
            client,
            fingerprint,
            max_attempts=config.credentials.guest_max_attempts,
            retry_delay=config.credentials.guest_retry_delay,
            timeout=config.upstream.guest_timeout,
            recorder=recorder,
        )
    pool = CredentialPool(
        config.credentials.tokens,
        guest_fetcher=guest_fetcher,
        failure_threshold=config.credentials.failure_threshold,
        guest_ttl=config.credentials.guest_ttl_seconds,
    )
    caller = UpstreamCaller(
        client,
        pool,
        fingerprint,
        origin=config.upstream.base_url,
        chat_path=config.upstream.chat_path,
        signing_secret=config.signing.secret,
        timeout=config.upstream.timeout,
        recorder=recorder,
        error_log_dir=config.serve.log_dir,
    )
    bridge = None
    if config.tools.enabled:
        bridge = ToolExecutionBridge(
            tool_executor or ToolRegistry().execute,
            recorder=recorder,
            timeout=config.tools.timeout,
        )

    app = FastAPI(
        title="glmgate",
        description="OpenAI-compatible gateway for the GLM chat service",
        version="0.1.0",
    )

    @app.on_event("shutdown")
    async def shutdown():
        """Close the shared upstream client."""
        if owns_client:
            await client.aclose()

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def _check_api_key(http_request: Request) -> None:
        expected = config.serve.api_key
        if not expected:
            return
        auth = http_request.headers.get("authorization", "")
        if auth != f"Bearer {expected}":
            raise HTTPException(status_code=401, detail="Invalid API key")

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(
            status="ok",
            default_model=DEFAULT_MODEL.name,
            think_mode=config.transform.think_mode.value,
            credentials=pool.counts(),
        )

    @app.get("/v1/models", response_model=ModelListResponse)
    @app.get("/models", response_model=ModelListResponse)
    async def list_models():
        """List available models (OpenAI-compatible)"""
        return ModelListResponse(
            data=[
                ModelInfo(id=spec.id, name=spec.name, owned_by="glmgate")
                for spec in catalog_models()
            ]
        )

    @app.get("/v1/pool-status", response_model=PoolStatusResponse)
    async def pool_status(http_request: Request):
        """Masked view of the credential pool."""
        _check_api_key(http_request)
        return PoolStatusResponse(
            failure_threshold=pool.failure_threshold,
            guest_enabled=config.credentials.guest_enabled,
            credentials=pool.snapshot(),
        )

    @app.post("/v1/chat/completions")
    async def chat_completions(request: ChatCompletionRequest, http_request: Request):
        """Chat completions endpoint (OpenAI-compatible)"""
        _check_api_key(http_request)
        try:
            normalized = normalize_openai_request(request, http_request.headers, config)
            ctx = RequestContext(request=normalized, config=config)
            resolve_model(ctx)
            await prepare_messages(ctx, upload_file)
            build_request(ctx)

            logger.info(
                "[request] model=%s upstream=%s mode=%s stream=%s overrides=%s",
                request.model,
                ctx.model_spec.id,
                ctx.think_mode.value,
                normalized.stream,
                normalized.feature_overrides or "-",
            )

            await call_upstream(ctx, pool, caller)
            completion_id = f"chatcmpl-{uuid.uuid4().hex[:24]}"
            created = int(time.time())

            if normalized.stream:
                return StreamingResponse(
                    _openai_stream(ctx, completion_id, created),
                    media_type="text/event-stream",
                )

            result = await collect_response(ctx, bridge)
            if result.error is not None:
                raise UpstreamReportedError(result.error.detail, result.error.code)
            return _completion_body(ctx, result, completion_id, created)

        except (HTTPException, GatewayError):
            raise
        except Exception as e:
            logger.error(f"Error processing request: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=str(e))

    return app
