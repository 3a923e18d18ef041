"""Gateway exception types.

Every error that can end a request carries an HTTP status and a stable
``type``/``code`` pair so the HTTP surface can render it without guessing.
"""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for errors surfaced to API callers."""

    def __init__(
        self,
        message: str,
        error_type: str = "gateway_error",
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Render in the OpenAI-style error envelope."""
        result: Dict[str, Any] = {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class UpstreamTransportError(GatewayError):
    """Network-level failure talking to the upstream, after the single retry."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            error_type="upstream_transport_error",
            code="bad_gateway",
            status_code=502,
            details=details,
        )


class UpstreamAuthError(GatewayError):
    """No usable credential: configured ones exhausted and guest issuance failed."""

    def __init__(self, message: str = "No upstream credential available"):
        super().__init__(
            message,
            error_type="upstream_auth_error",
            code="credentials_exhausted",
            status_code=502,
        )


class UpstreamStatusError(GatewayError):
    """Upstream answered with a non-2xx status."""

    def __init__(self, upstream_status: int, body: str = ""):
        super().__init__(
            f"Upstream returned HTTP {upstream_status}",
            error_type="upstream_status_error",
            code=f"upstream_{upstream_status}",
            status_code=502,
            details={"upstream_status": upstream_status, "body": body[:500]},
        )
        self.upstream_status = upstream_status


class UpstreamReportedError(GatewayError):
    """Upstream emitted an explicit error event inside the stream."""

    def __init__(self, message: str, upstream_code: Any = None):
        super().__init__(
            message,
            error_type="upstream_error",
            code=str(upstream_code) if upstream_code is not None else "upstream_error",
            status_code=502,
        )


class MissingSigningMaterialError(GatewayError):
    """No user-authored text to sign; rejected before any network call."""

    def __init__(self, message: str = "Request has no user message text to sign"):
        super().__init__(
            message,
            error_type="invalid_request_error",
            code="missing_user_message",
            status_code=400,
        )
