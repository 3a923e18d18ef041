"""Browser-like request headers and frontend version discovery."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx

from .constants import (
    DEFAULT_FE_VERSION,
    DEFAULT_ORIGIN,
    FE_VERSION_RE,
    FINGERPRINT_TIMEOUT,
    HEADER_CACHE_SECONDS,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BrowserProfile:
    """A consistent user-agent / client-hint / platform tuple."""

    name: str
    user_agent: str
    sec_ch_ua: Optional[str]  # Firefox and Safari send no client hints
    platform: str
    os_name: str
    browser_name: str


_CHROMIUM_UA = "Mozilla/5.0 ({os}) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{v}.0.0.0 Safari/537.36"

BROWSER_PROFILES: List[BrowserProfile] = [
    BrowserProfile(
        name="chrome-windows",
        user_agent=_CHROMIUM_UA.format(os="Windows NT 10.0; Win64; x64", v=140),
        sec_ch_ua='"Chromium";v="140", "Not=A?Brand";v="24", "Google Chrome";v="140"',
        platform='"Windows"',
        os_name="Windows",
        browser_name="Chrome",
    ),
    BrowserProfile(
        name="chrome-macos",
        user_agent=_CHROMIUM_UA.format(os="Macintosh; Intel Mac OS X 10_15_7", v=139),
        sec_ch_ua='"Not;A=Brand";v="99", "Google Chrome";v="139", "Chromium";v="139"',
        platform='"macOS"',
        os_name="Mac OS",
        browser_name="Chrome",
    ),
    BrowserProfile(
        name="edge-windows",
        user_agent=_CHROMIUM_UA.format(os="Windows NT 10.0; Win64; x64", v=140)
        + " Edg/140.0.0.0",
        sec_ch_ua='"Chromium";v="140", "Not=A?Brand";v="24", "Microsoft Edge";v="140"',
        platform='"Windows"',
        os_name="Windows",
        browser_name="Edge",
    ),
    BrowserProfile(
        name="firefox-windows",
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:131.0) Gecko/20100101 Firefox/131.0",
        sec_ch_ua=None,
        platform='"Windows"',
        os_name="Windows",
        browser_name="Firefox",
    ),
    BrowserProfile(
        name="chrome-linux",
        user_agent=_CHROMIUM_UA.format(os="X11; Linux x86_64", v=139),
        sec_ch_ua='"Not;A=Brand";v="99", "Google Chrome";v="139", "Chromium";v="139"',
        platform='"Linux"',
        os_name="Linux",
        browser_name="Chrome",
    ),
    BrowserProfile(
        name="safari-macos",
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.6 Safari/605.1.15"
        ),
        sec_ch_ua=None,
        platform='"macOS"',
        os_name="Mac OS",
        browser_name="Safari",
    ),
]


def build_profile_headers(profile: BrowserProfile, origin: str, language: str) -> Dict[str, str]:
    """Headers that depend only on the chosen browser profile."""
    primary_lang = language.split("-")[0]
    headers = {
        "Accept": "*/*",
        "Accept-Language": f"{language},{primary_lang};q=0.9",
        "Accept-Encoding": "gzip, deflate, br",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "Content-Type": "application/json",
        "Pragma": "no-cache",
        "User-Agent": profile.user_agent,
        "Origin": origin,
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
        "Sec-Fetch-Site": "same-origin",
    }
    if profile.sec_ch_ua:
        headers["Sec-Ch-Ua"] = profile.sec_ch_ua
        headers["Sec-Ch-Ua-Mobile"] = "?0"
        headers["Sec-Ch-Ua-Platform"] = profile.platform
    return headers


class FingerprintGenerator:
    """Cached browser fingerprint plus the upstream frontend version token.

    Headers are regenerated with a freshly picked profile once the cache
    expires; the version token is refreshed on the same schedule and keeps
    its previous value when the homepage cannot be read.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        origin: str = DEFAULT_ORIGIN,
        language: str = "en-US",
        fe_version: str = DEFAULT_FE_VERSION,
        cache_seconds: float = HEADER_CACHE_SECONDS,
        timeout: float = FINGERPRINT_TIMEOUT,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.origin = origin.rstrip("/")
        self.language = language
        self.fe_version = fe_version
        self.cache_seconds = cache_seconds
        self.timeout = timeout
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._cached: Optional[Dict[str, str]] = None
        self._profile: Optional[BrowserProfile] = None
        self._expires_at = 0.0

    @property
    def profile(self) -> Optional[BrowserProfile]:
        return self._profile

    async def refresh_version(self) -> str:
        """Read the frontend version token from the homepage."""
        try:
            response = await self.client.get(
                f"{self.origin}/",
                headers={"User-Agent": BROWSER_PROFILES[0].user_agent},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "[fingerprint] version refresh failed, keeping %s: %s", self.fe_version, e
            )
            return self.fe_version

        match = FE_VERSION_RE.search(response.text)
        if match:
            version = f"prod-fe-{match.group(1)}"
            if version != self.fe_version:
                logger.info("[fingerprint] frontend version %s -> %s", self.fe_version, version)
            self.fe_version = version
        else:
            logger.debug("[fingerprint] no version token on homepage, keeping %s", self.fe_version)
        return self.fe_version

    async def _regenerate(self) -> None:
        await self.refresh_version()
        self._profile = self._rng.choice(BROWSER_PROFILES)
        self._cached = build_profile_headers(self._profile, self.origin, self.language)
        self._expires_at = self._clock() + self.cache_seconds
        logger.debug("[fingerprint] generated headers for %s", self._profile.name)

    async def headers(self, session_id: Optional[str] = None) -> Dict[str, str]:
        """Return a fresh copy of the cached headers for one request."""
        async with self._lock:
            if self._cached is None or self._clock() >= self._expires_at:
                await self._regenerate()
            headers = dict(self._cached)

        headers["X-FE-Version"] = self.fe_version
        headers["Referer"] = f"{self.origin}/c/{session_id}" if session_id else f"{self.origin}/"
        return headers
