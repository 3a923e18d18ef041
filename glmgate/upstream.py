"""Signed upstream chat call with a single credential-rotating retry."""

import logging
import time
from typing import Optional, Tuple

import httpx

from .constants import CHAT_TIMEOUT, DEFAULT_CHAT_PATH, DEFAULT_ORIGIN
from .credential_pool import Credential, CredentialPool
from .error_logger import log_upstream_error
from .errors import UpstreamStatusError, UpstreamTransportError
from .fingerprint import FingerprintGenerator
from .outcome_logger import NullRecorder, OutcomeEvent, OutcomeRecorder
from .request_builder import UpstreamEnvelope, build_query_params, build_signing_context
from .signing import sign

logger = logging.getLogger(__name__)

_CREDENTIAL_REJECTED_STATUSES = {401, 403}


class UpstreamCaller:
    """Send an envelope upstream and hand back the open streaming response.

    The caller owns the returned ``httpx.Response`` and must ``aclose()`` it.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        pool: CredentialPool,
        fingerprint: FingerprintGenerator,
        origin: str = DEFAULT_ORIGIN,
        chat_path: str = DEFAULT_CHAT_PATH,
        signing_secret: Optional[str] = None,
        timeout: float = CHAT_TIMEOUT,
        recorder: Optional[OutcomeRecorder] = None,
        error_log_dir: Optional[str] = None,
    ):
        self.client = client
        self.pool = pool
        self.fingerprint = fingerprint
        self.origin = origin.rstrip("/")
        self.chat_url = f"{self.origin}{chat_path}"
        self.signing_secret = signing_secret or None
        self.timeout = timeout
        self.recorder = recorder or NullRecorder()
        self.error_log_dir = error_log_dir

    async def _build_request(
        self, envelope: UpstreamEnvelope, session_id: str, credential: Credential
    ) -> httpx.Request:
        ctx = build_signing_context(envelope, credential.value)
        signature = sign(
            ctx.identity, ctx.last_user_message_text, ctx.timestamp_ms, self.signing_secret
        )

        headers = await self.fingerprint.headers(session_id)
        headers["Authorization"] = f"Bearer {credential.value}"
        headers["X-Signature"] = signature.signature
        headers["Accept"] = "application/json, text/event-stream"

        profile = self.fingerprint.profile
        params = build_query_params(
            ctx,
            self.origin,
            session_id,
            browser_name=profile.browser_name if profile else "Chrome",
            os_name=profile.os_name if profile else "Windows",
        )
        logger.debug(
            "[upstream] request %s model=%s user=%s sig=%s...",
            ctx.request_id,
            envelope.model_id,
            ctx.user_id,
            signature.signature[:16],
        )
        return self.client.build_request(
            "POST",
            self.chat_url,
            params=params,
            headers=headers,
            json=envelope.to_payload(),
            timeout=self.timeout,
        )

    async def _send(
        self, envelope: UpstreamEnvelope, session_id: str, credential: Credential
    ) -> httpx.Response:
        request = await self._build_request(envelope, session_id, credential)
        return await self.client.send(request, stream=True)

    async def call(
        self, envelope: UpstreamEnvelope, session_id: str, credential: Credential
    ) -> httpx.Response:
        """Perform the call; retries exactly once on transport failure.

        Raises:
            MissingSigningMaterialError: before any network I/O.
            UpstreamTransportError: both attempts failed at the network level.
            UpstreamStatusError: upstream answered with a non-2xx status.
            UpstreamAuthError: no replacement credential could be obtained.
        """
        start = time.monotonic()
        try:
            response = await self._send(envelope, session_id, credential)
        except httpx.TransportError as e:
            logger.warning(
                "[upstream] transport failure with %s: %s; rotating credential",
                credential.masked,
                e,
            )
            replacement = await self.pool.report_failure(credential)
            if replacement is None:
                replacement = await self.pool.acquire()
            response, credential = await self._retry(envelope, session_id, replacement, e, start)

        return await self._check_status(response, envelope, credential, start)

    async def _retry(
        self,
        envelope: UpstreamEnvelope,
        session_id: str,
        credential: Credential,
        first_error: Exception,
        start: float,
    ) -> Tuple[httpx.Response, Credential]:
        try:
            return await self._send(envelope, session_id, credential), credential
        except httpx.TransportError as e:
            await self.pool.report_failure(credential)
            error = UpstreamTransportError(
                f"Upstream unreachable after retry: {e}",
                details={"first_error": str(first_error)},
            )
            self._record(False, start, envelope, str(e))
            log_upstream_error(
                self.error_log_dir, "transport", {"model": envelope.model_id}, error
            )
            raise error from e

    async def _check_status(
        self,
        response: httpx.Response,
        envelope: UpstreamEnvelope,
        credential: Credential,
        start: float,
    ) -> httpx.Response:
        if response.is_success:
            await self.pool.report_success(credential)
            self._record(True, start, envelope, None, response.status_code)
            return response

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()

        if response.status_code in _CREDENTIAL_REJECTED_STATUSES:
            await self.pool.report_failure(credential)
        error = UpstreamStatusError(response.status_code, body)
        logger.error(
            "[upstream] HTTP %d from upstream: %s", response.status_code, body[:200]
        )
        self._record(False, start, envelope, body[:200], response.status_code)
        log_upstream_error(
            self.error_log_dir,
            "status",
            {"model": envelope.model_id, "url": self.chat_url},
            error,
        )
        raise error

    def _record(
        self,
        success: bool,
        start: float,
        envelope: UpstreamEnvelope,
        detail: Optional[str],
        status_code: Optional[int] = None,
    ) -> None:
        self.recorder.record_outcome(
            OutcomeEvent(
                kind="upstream_call",
                success=success,
                detail=detail,
                latency_ms=(time.monotonic() - start) * 1000,
                extra={"model": envelope.model_id, "status_code": status_code},
            )
        )
