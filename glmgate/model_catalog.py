"""Static upstream model table and public model id normalization."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    vision: bool = False
    mcp: bool = False
    thinking: bool = False


@dataclass(frozen=True)
class ModelSpec:
    """One upstream model with its capabilities and default sampling params."""

    id: str
    name: str
    description: str
    capabilities: ModelCapabilities
    default_params: Dict[str, Any] = field(default_factory=dict)

    def feature_defaults(self) -> Dict[str, bool]:
        """Capability-derived values for every upstream feature flag."""
        return {
            "enable_thinking": self.capabilities.thinking,
            "web_search": False,
            "auto_web_search": False,
            "image_generation": False,
            "title_generation": False,
            "tags_generation": False,
            "mcp": self.capabilities.mcp,
        }


SUPPORTED_MODELS: Tuple[ModelSpec, ...] = (
    ModelSpec(
        id="0727-360B-API",
        name="GLM-4.5",
        description="General purpose model with reasoning and tool use",
        capabilities=ModelCapabilities(vision=False, mcp=True, thinking=True),
        default_params={"top_p": 0.95, "temperature": 0.6, "max_tokens": 80000},
    ),
    ModelSpec(
        id="GLM-4-6-API-V1",
        name="GLM-4.6",
        description="Long-context reasoning model",
        capabilities=ModelCapabilities(vision=False, mcp=True, thinking=True),
        default_params={"top_p": 0.95, "temperature": 0.6, "max_tokens": 195000},
    ),
    ModelSpec(
        id="glm-4.5v",
        name="GLM-4.5V",
        description="Vision model with image understanding",
        capabilities=ModelCapabilities(vision=True, mcp=False, thinking=True),
        default_params={"top_p": 0.6, "temperature": 0.8},
    ),
)

DEFAULT_MODEL = SUPPORTED_MODELS[0]

# Lowercased aliases accepted from clients.
MODEL_ALIASES: Dict[str, str] = {
    "glm-4.5": "0727-360B-API",
    "glm4.5": "0727-360B-API",
    "glm_4.5": "0727-360B-API",
    "glm-4.5-turbo": "0727-360B-API",
    "gpt-4": "0727-360B-API",
    "gpt-4o": "0727-360B-API",
    "glm-4.6": "GLM-4-6-API-V1",
    "glm4.6": "GLM-4-6-API-V1",
    "glm_4.6": "GLM-4-6-API-V1",
    "glm-4.6-api-v1": "GLM-4-6-API-V1",
    "glm-4.5v": "glm-4.5v",
    "glm4.5v": "glm-4.5v",
    "glm_4.5v": "glm-4.5v",
    "gpt-4-vision-preview": "glm-4.5v",
}

_BY_ID: Dict[str, ModelSpec] = {spec.id: spec for spec in SUPPORTED_MODELS}


def _lookup(candidate: str) -> str | None:
    if candidate in _BY_ID:
        return candidate
    lowered = candidate.lower()
    for spec in SUPPORTED_MODELS:
        if spec.id.lower() == lowered or spec.name.lower() == lowered:
            return spec.id
    return MODEL_ALIASES.get(lowered)


def normalize_model_id(model_name: str) -> str | None:
    """Map a public model identifier to an upstream id, or None if unknown.

    Namespaced ids used by some OpenAI-compatible clients
    (``glmgate/glm-4.6``) resolve by their suffix.
    """
    normalized = (model_name or "").strip()
    if not normalized:
        return None

    resolved = _lookup(normalized)
    if resolved is not None:
        return resolved

    if "/" in normalized:
        suffix = normalized.rsplit("/", 1)[-1].strip()
        if suffix:
            return _lookup(suffix)
    return None


def resolve_model(model_name: str) -> ModelSpec:
    """Resolve to a catalog entry, falling back to the default model."""
    model_id = normalize_model_id(model_name)
    if model_id is None:
        logger.warning(
            "Unknown model '%s', falling back to %s (%s)",
            model_name,
            DEFAULT_MODEL.name,
            DEFAULT_MODEL.id,
        )
        return DEFAULT_MODEL
    return _BY_ID[model_id]


def list_models() -> List[ModelSpec]:
    return list(SUPPORTED_MODELS)
