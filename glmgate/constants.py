"""Shared constants for glmgate."""

import re

# Upstream endpoints (request_builder.py, guest_token.py, fingerprint.py)
DEFAULT_ORIGIN = "https://chat.z.ai"
DEFAULT_CHAT_PATH = "/api/chat/completions"
GUEST_AUTH_PATH = "/api/v1/auths/"

# Frontend version token sent as X-FE-Version (fingerprint.py)
DEFAULT_FE_VERSION = "prod-fe-1.0.95"
FE_VERSION_RE = re.compile(r"prod-fe-(\d+\.\d+\.\d+)")

# Credential pool defaults (credential_pool.py)
TOKEN_FAILURE_THRESHOLD = 3
GUEST_TOKEN_TTL_SECONDS = 60 * 60
GUEST_MAX_ATTEMPTS = 3
GUEST_RETRY_DELAY = 2.0  # seconds
GUEST_BLOCKED_STATUS = 405  # WAF block on the issuance endpoint

# Timeouts in seconds
CHAT_TIMEOUT = 60.0
GUEST_TIMEOUT = 8.0
FINGERPRINT_TIMEOUT = 5.0

# Header cache lifetime (fingerprint.py)
HEADER_CACHE_SECONDS = 5 * 60

# Signing (signing.py)
SIGNING_WINDOW_MS = 5 * 60 * 1000
DEFAULT_SIGNING_KEY = "key-@@@@)))()((9))-xxxx&&&%%%%%"
GUEST_USER_ID = "guest"
JWT_USER_ID_FIELDS = ("id", "user_id", "uid", "sub")

# Query string constants (request_builder.py)
CLIENT_VERSION = "0.0.1"
CLIENT_PLATFORM = "web"
TIMEZONE_OFFSET_MINUTES = -480
PAGE_TITLE = "Z.ai Chat - Free AI powered by GLM-4.6 & GLM-4.5"

# Feature header names -> envelope feature keys (server.py)
FEATURE_HEADERS = {
    "x-feature-thinking": "enable_thinking",
    "x-feature-web-search": "web_search",
    "x-feature-auto-web-search": "auto_web_search",
    "x-feature-image-generation": "image_generation",
    "x-feature-title-generation": "title_generation",
    "x-feature-tags-generation": "tags_generation",
    "x-feature-mcp": "mcp",
}
THINK_MODE_HEADER = "x-think-tags-mode"
TRUTHY_HEADER_VALUES = {"true", "1", "yes"}

# Error details that signal a transient upstream condition (stream_transformer.py)
TRANSIENT_ERROR_MARKERS = ("something went wrong", "try again later")
