"""Request signing for the upstream chat endpoint.

The upstream validates ``X-Signature`` against a two-stage HMAC:

1. ``intermediate = HMAC-SHA256(root_key, str(timestamp_ms // 300000)).hex()``
2. ``signature = HMAC-SHA256(intermediate, identity|base64(text)|timestamp_ms).hex()``

The intermediate key rotates with the five minute signing window, so clock skew
larger than that window produces rejected requests.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
from typing import NamedTuple, Optional

from .constants import (
    DEFAULT_SIGNING_KEY,
    GUEST_USER_ID,
    JWT_USER_ID_FIELDS,
    SIGNING_WINDOW_MS,
)

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"[0-9a-fA-F]+")


class Signature(NamedTuple):
    signature: str
    timestamp: str


def resolve_root_key(secret: Optional[str] = None) -> bytes:
    """Decode the configured root key: even-length hex is decoded, anything else is UTF-8."""
    if not secret:
        return DEFAULT_SIGNING_KEY.encode("utf-8")
    if len(secret) % 2 == 0 and _HEX_RE.fullmatch(secret):
        return bytes.fromhex(secret)
    return secret.encode("utf-8")


def build_identity(request_id: str, timestamp_ms: int, user_id: str) -> str:
    return f"requestId,{request_id},timestamp,{timestamp_ms},user_id,{user_id}"


def sign(
    identity: str,
    message_text: str,
    timestamp_ms: int,
    secret: Optional[str] = None,
) -> Signature:
    """Sign one upstream request. Pure and deterministic for identical inputs."""
    body_b64 = base64.b64encode(message_text.encode("utf-8")).decode("ascii")
    canonical = f"{identity}|{body_b64}|{timestamp_ms}"

    bucket = timestamp_ms // SIGNING_WINDOW_MS
    intermediate = hmac.new(
        resolve_root_key(secret), str(bucket).encode("utf-8"), hashlib.sha256
    ).hexdigest()
    signature = hmac.new(
        intermediate.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return Signature(signature=signature, timestamp=str(timestamp_ms))


def extract_user_id(token: str) -> str:
    """Read the user id from a JWT payload without verifying it.

    Falls back to ``"guest"`` for opaque tokens or payloads without an id field.
    """
    parts = (token or "").split(".")
    if len(parts) < 2 or not parts[1]:
        return GUEST_USER_ID

    payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.debug("[signing] could not decode token payload: %s", e)
        return GUEST_USER_ID

    if not isinstance(payload, dict):
        return GUEST_USER_ID
    for field in JWT_USER_ID_FIELDS:
        value = payload.get(field)
        if isinstance(value, (str, int)) and str(value):
            return str(value)
    return GUEST_USER_ID
