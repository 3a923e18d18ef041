"""Tests for model id normalization and catalog fallback."""

import logging

import pytest

from glmgate.model_catalog import DEFAULT_MODEL, normalize_model_id, resolve_model


@pytest.mark.parametrize(
    "requested,expected",
    [
        ("GLM-4.5", "0727-360B-API"),
        ("glm4.5", "0727-360B-API"),
        ("gpt-4", "0727-360B-API"),
        ("0727-360B-API", "0727-360B-API"),
        ("glm-4.6", "GLM-4-6-API-V1"),
        ("GLM-4-6-API-V1", "GLM-4-6-API-V1"),
        ("glm-4.5v", "glm-4.5v"),
        ("gpt-4-vision-preview", "glm-4.5v"),
        ("glmgate/glm-4.6", "GLM-4-6-API-V1"),
    ],
)
def test_normalize_known_ids(requested, expected):
    assert normalize_model_id(requested) == expected


def test_normalize_unknown_returns_none():
    assert normalize_model_id("claude-3-opus") is None
    assert normalize_model_id("") is None
    assert normalize_model_id("vendor/") is None


def test_unknown_model_falls_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="glmgate.model_catalog"):
        spec = resolve_model("mystery-model")
    assert spec is DEFAULT_MODEL
    assert "mystery-model" in caplog.text


def test_capability_defaults_follow_model():
    vision = resolve_model("glm-4.5v")
    assert vision.capabilities.vision
    assert vision.feature_defaults()["mcp"] is False
    text_model = resolve_model("glm-4.5")
    assert text_model.feature_defaults()["enable_thinking"] is True
    assert text_model.default_params["max_tokens"] == 80000
