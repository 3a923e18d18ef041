"""Upstream error logging with sensitive data redaction."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_ERROR_LOG_NAME = "upstream_errors.jsonl"

_SENSITIVE_KEYS = {
    "api_key",
    "authorization",
    "cookie",
    "signature",
    "token",
    "x-signature",
}


def sanitize_for_log(value: Any) -> Any:
    """Recursively sanitize payload values for logging."""
    if isinstance(value, dict):
        sanitized = {}
        for key, item in value.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                sanitized[key] = "[REDACTED]"
            else:
                sanitized[key] = sanitize_for_log(item)
        return sanitized

    if isinstance(value, list):
        return [sanitize_for_log(item) for item in value]

    return value


def mask_secret(value: str, visible: int = 12) -> str:
    """Short prefix of a credential, safe for log lines."""
    if not value:
        return ""
    if len(value) <= visible:
        return value[: max(1, visible // 3)] + "..."
    return value[:visible] + "..."


def log_upstream_error(
    log_dir: Optional[str],
    stage: str,
    params: Dict[str, Any],
    error: Exception,
) -> None:
    """Log upstream error details to JSONL file for debugging."""
    if not log_dir:
        return

    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "stage": stage,
        "status_code": getattr(error, "upstream_status", None),
        "error_type": type(error).__name__,
        "error": str(error),
        "params": sanitize_for_log(params),
    }

    path = Path(log_dir) / _ERROR_LOG_NAME
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False) + "\n")
    except OSError as log_error:
        logger.warning(
            "Failed to write upstream error log (%s): %s",
            path,
            log_error,
        )
