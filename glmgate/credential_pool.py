"""Credential pool with round-robin rotation, failure thresholds and guest fallback."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .constants import GUEST_TOKEN_TTL_SECONDS, TOKEN_FAILURE_THRESHOLD
from .error_logger import mask_secret
from .errors import UpstreamAuthError

logger = logging.getLogger(__name__)

GuestFetcher = Callable[[], Awaitable[str]]


@dataclass
class Credential:
    """One upstream identity. Owned and mutated only by ``CredentialPool``."""

    value: str
    is_valid: bool = True
    last_used_at: float = 0.0
    consecutive_failures: int = 0
    is_guest: bool = False
    expires_at: Optional[float] = None

    @property
    def masked(self) -> str:
        return mask_secret(self.value)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def to_status(self) -> Dict[str, object]:
        return {
            "token": self.masked,
            "is_valid": self.is_valid,
            "is_guest": self.is_guest,
            "consecutive_failures": self.consecutive_failures,
            "last_used_at": self.last_used_at or None,
        }


class CredentialPool:
    """Configured credentials plus a cached guest credential.

    ``acquire`` is sticky: it keeps returning the credential under the cursor
    until that credential fails, then rotation moves the cursor forward.
    All record mutation happens under one lock; guest issuance has its own
    lock so concurrent requests share a single fetch.
    """

    def __init__(
        self,
        tokens: List[str],
        guest_fetcher: Optional[GuestFetcher] = None,
        failure_threshold: int = TOKEN_FAILURE_THRESHOLD,
        guest_ttl: float = GUEST_TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        seen = set()
        self._credentials: List[Credential] = []
        for token in tokens:
            token = token.strip()
            if token and token not in seen:
                seen.add(token)
                self._credentials.append(Credential(value=token))
        self._cursor = 0
        self._guest: Optional[Credential] = None
        self._guest_fetcher = guest_fetcher
        self.failure_threshold = failure_threshold
        self.guest_ttl = guest_ttl
        self._clock = clock
        self._lock = asyncio.Lock()
        self._guest_lock = asyncio.Lock()

        if self._credentials:
            logger.info("[pool] loaded %d configured credential(s)", len(self._credentials))
        else:
            logger.info("[pool] no configured credentials, guest mode only")

    @property
    def credentials(self) -> List[Credential]:
        return list(self._credentials)

    def _eligible(self, cred: Credential) -> bool:
        return cred.is_valid and cred.consecutive_failures < self.failure_threshold

    def _next_eligible_from(self, start: int) -> Optional[int]:
        count = len(self._credentials)
        for offset in range(count):
            index = (start + offset) % count
            if self._eligible(self._credentials[index]):
                return index
        return None

    async def acquire(self) -> Credential:
        """Return a usable credential, falling back to a guest credential.

        Raises:
            UpstreamAuthError: no configured credential qualifies and guest
                issuance is disabled or failed.
        """
        async with self._lock:
            if self._credentials:
                index = self._next_eligible_from(self._cursor)
                if index is not None:
                    self._cursor = index
                    cred = self._credentials[index]
                    cred.last_used_at = self._clock()
                    return cred
                logger.warning("[pool] all configured credentials exhausted, using guest")
        return await self._guest_credential()

    async def _guest_credential(self) -> Credential:
        if self._guest_fetcher is None:
            raise UpstreamAuthError("No valid credential and guest mode is disabled")

        async with self._guest_lock:
            now = self._clock()
            guest = self._guest
            if guest is not None and guest.is_valid and not guest.is_expired(now):
                guest.last_used_at = now
                return guest

            token = await self._guest_fetcher()
            now = self._clock()
            self._guest = Credential(
                value=token,
                is_guest=True,
                last_used_at=now,
                expires_at=now + self.guest_ttl,
            )
            logger.info("[pool] cached guest credential %s", self._guest.masked)
            return self._guest

    async def report_success(self, cred: Credential) -> None:
        async with self._lock:
            cred.consecutive_failures = 0
            cred.is_valid = True
            cred.last_used_at = self._clock()

    async def report_failure(self, cred: Credential) -> Optional[Credential]:
        """Record a failure and rotate.

        Returns the next eligible configured credential, or None when only the
        guest path remains.
        """
        async with self._lock:
            cred.consecutive_failures += 1
            if cred.is_guest:
                # drop it so the next acquire fetches a fresh guest token
                if self._guest is cred:
                    self._guest = None
                logger.warning("[pool] guest credential failed, discarding")
                index = self._next_eligible_from(self._cursor) if self._credentials else None
                if index is None:
                    return None
                self._cursor = index
                return self._credentials[index]

            if cred.consecutive_failures >= self.failure_threshold:
                cred.is_valid = False
                logger.warning(
                    "[pool] credential %s disabled after %d consecutive failures",
                    cred.masked,
                    cred.consecutive_failures,
                )
            else:
                logger.info(
                    "[pool] credential %s failed (%d/%d)",
                    cred.masked,
                    cred.consecutive_failures,
                    self.failure_threshold,
                )

            if not self._credentials:
                return None
            try:
                position = self._credentials.index(cred)
            except ValueError:
                position = self._cursor
            index = self._next_eligible_from(position + 1)
            if index is None:
                return None
            self._cursor = index
            return self._credentials[index]

    def snapshot(self) -> List[Dict[str, object]]:
        """Masked view of every record, for status endpoints."""
        records = [cred.to_status() for cred in self._credentials]
        if self._guest is not None:
            records.append(self._guest.to_status())
        return records

    def counts(self) -> Dict[str, int]:
        valid = sum(1 for cred in self._credentials if self._eligible(cred))
        return {
            "configured": len(self._credentials),
            "valid": valid,
            "guest_cached": int(self._guest is not None),
        }
