"""Configuration loading and validation"""

import os
import re
from typing import Any, List, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, field_validator, model_validator

from .constants import (
    CHAT_TIMEOUT,
    DEFAULT_CHAT_PATH,
    DEFAULT_FE_VERSION,
    DEFAULT_ORIGIN,
    FINGERPRINT_TIMEOUT,
    GUEST_MAX_ATTEMPTS,
    GUEST_RETRY_DELAY,
    GUEST_TIMEOUT,
    GUEST_TOKEN_TTL_SECONDS,
    TOKEN_FAILURE_THRESHOLD,
)
from .thinking import ThinkMode


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class ServeConfig(BaseModel):
    """Server configuration"""

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False
    api_key: Optional[str] = None
    log_dir: Optional[str] = None  # JSONL outcome/error logs; unset disables them

    @field_validator("api_key", "log_dir", mode="before")
    @classmethod
    def _blank_optional(cls, value: Any) -> Any:
        return _blank_to_none(value)


class UpstreamConfig(BaseModel):
    """Upstream chat service endpoints and timeouts"""

    base_url: str = DEFAULT_ORIGIN
    chat_path: str = DEFAULT_CHAT_PATH
    timeout: float = CHAT_TIMEOUT
    guest_timeout: float = GUEST_TIMEOUT
    fingerprint_timeout: float = FINGERPRINT_TIMEOUT
    fe_version: str = DEFAULT_FE_VERSION
    language: str = "en-US"

    @field_validator("base_url", mode="before")
    @classmethod
    def _default_base_url(cls, value: Any) -> Any:
        value = _blank_to_none(value)
        return (value or DEFAULT_ORIGIN).rstrip("/")


class CredentialsConfig(BaseModel):
    """Long-lived upstream tokens and guest fallback settings"""

    tokens: List[str] = []
    guest_enabled: bool = True
    failure_threshold: int = TOKEN_FAILURE_THRESHOLD
    guest_ttl_seconds: float = GUEST_TOKEN_TTL_SECONDS
    guest_max_attempts: int = GUEST_MAX_ATTEMPTS
    guest_retry_delay: float = GUEST_RETRY_DELAY

    @field_validator("tokens", mode="before")
    @classmethod
    def _split_tokens(cls, value: Any) -> Any:
        """Accept a comma-separated string such as ``${ZAI_TOKENS}``."""
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, list):
            return [str(v).strip() for v in value if v is not None and str(v).strip()]
        return value


class SigningConfig(BaseModel):
    """Signing root key (hex or UTF-8); unset uses the built-in default"""

    secret: Optional[str] = None

    @field_validator("secret", mode="before")
    @classmethod
    def _blank_secret(cls, value: Any) -> Any:
        return _blank_to_none(value)


class TransformConfig(BaseModel):
    """Response presentation settings"""

    think_mode: ThinkMode = ThinkMode.THINK
    default_stream: bool = True

    @field_validator("think_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or ThinkMode.THINK.value
        return value


class ToolsConfig(BaseModel):
    """Tool-call detection in model output"""

    enabled: bool = False
    timeout: float = 30.0


class Config(BaseModel):
    """Main configuration"""

    serve: ServeConfig = ServeConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    credentials: CredentialsConfig = CredentialsConfig()
    signing: SigningConfig = SigningConfig()
    transform: TransformConfig = TransformConfig()
    tools: ToolsConfig = ToolsConfig()

    @model_validator(mode="before")
    @classmethod
    def _drop_empty_sections(cls, data: Any) -> Any:
        """A section written as ``upstream:`` with no keys parses as None."""
        if isinstance(data, dict):
            data = {k: v for k, v in data.items() if v is not None}
        return data

    @property
    def chat_url(self) -> str:
        return f"{self.upstream.base_url}{self.upstream.chat_path}"


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute environment variables in configuration values

    Supports ${VAR_NAME} syntax for environment variable substitution
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)

        for var_name in matches:
            env_value = os.getenv(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)

        return value
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    else:
        return value


def load_config(
    config_path: str = "config.yaml", env_file: Optional[str] = None
) -> Config:
    """Load and validate configuration from YAML file

    Args:
        config_path: Path to YAML configuration file
        env_file: Optional path to dotenv file

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config or env file doesn't exist
        ValueError: If configuration is invalid
    """
    if env_file:
        if not os.path.exists(env_file):
            raise FileNotFoundError(f"Environment file not found: {env_file}")
        load_dotenv(dotenv_path=env_file)
    else:
        cwd_env_file = find_dotenv(usecwd=True)
        if cwd_env_file:
            load_dotenv(dotenv_path=cwd_env_file)
        else:
            load_dotenv()

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    config_data = substitute_env_vars(raw_config)

    try:
        return Config(**config_data)
    except Exception as e:
        raise ValueError(f"Invalid configuration: {e}")
