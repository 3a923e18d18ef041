"""Guest credential issuance from the upstream's public auth endpoint."""

import asyncio
import logging
import time
from typing import Optional

import httpx

from .constants import (
    GUEST_AUTH_PATH,
    GUEST_BLOCKED_STATUS,
    GUEST_MAX_ATTEMPTS,
    GUEST_RETRY_DELAY,
    GUEST_TIMEOUT,
)
from .errors import UpstreamAuthError
from .fingerprint import FingerprintGenerator
from .outcome_logger import NullRecorder, OutcomeEvent, OutcomeRecorder

logger = logging.getLogger(__name__)


class GuestTokenIssuer:
    """Callable that fetches a guest token with bounded retries.

    Used as the ``guest_fetcher`` of ``CredentialPool``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        fingerprint: FingerprintGenerator,
        max_attempts: int = GUEST_MAX_ATTEMPTS,
        retry_delay: float = GUEST_RETRY_DELAY,
        timeout: float = GUEST_TIMEOUT,
        recorder: Optional[OutcomeRecorder] = None,
    ):
        self.client = client
        self.fingerprint = fingerprint
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.recorder = recorder or NullRecorder()

    @property
    def url(self) -> str:
        return f"{self.fingerprint.origin}{GUEST_AUTH_PATH}"

    async def _attempt(self) -> Optional[str]:
        """One request. Returns the token, or None when the response had none."""
        headers = await self.fingerprint.headers()
        response = await self.client.get(self.url, headers=headers, timeout=self.timeout)
        if response.status_code == GUEST_BLOCKED_STATUS:
            raise _BlockedError()
        response.raise_for_status()
        data = response.json()
        token = data.get("token") if isinstance(data, dict) else None
        if isinstance(token, str) and token:
            return token
        return None

    async def __call__(self) -> str:
        start = time.monotonic()
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                token = await self._attempt()
            except _BlockedError:
                last_error = f"blocked (HTTP {GUEST_BLOCKED_STATUS})"
                logger.warning("[guest] issuance blocked by upstream firewall, not retrying")
                break
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "[guest] attempt %d/%d failed: %s", attempt, self.max_attempts, last_error
                )
            else:
                if token:
                    self.recorder.record_outcome(
                        OutcomeEvent(
                            kind="guest_token",
                            success=True,
                            latency_ms=(time.monotonic() - start) * 1000,
                            extra={"attempts": attempt},
                        )
                    )
                    logger.info("[guest] issued guest credential on attempt %d", attempt)
                    return token
                last_error = "response carried no token"
                logger.warning(
                    "[guest] attempt %d/%d returned no token", attempt, self.max_attempts
                )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay)

        self.recorder.record_outcome(
            OutcomeEvent(
                kind="guest_token",
                success=False,
                detail=last_error,
                latency_ms=(time.monotonic() - start) * 1000,
            )
        )
        raise UpstreamAuthError(f"Guest credential issuance failed: {last_error}")


class _BlockedError(Exception):
    pass
