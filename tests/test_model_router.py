"""Unit tests for `ModelRouter` provider selection and metadata."""

from __future__ import annotations

from typing import Dict

import pytest

from src.scaffolder.services.model_router import ModelRouter, ProviderSelection


def _router(values: Dict[str, str], **kwargs) -> ModelRouter:
    """Router over an explicit environment so the host's credentials never leak in."""

    return ModelRouter(env=dict(values), **kwargs)


def test_structured_calls_prefer_gemini():
    router = _router({"GEMINI_API_KEY": "gemini", "OPENAI_API_KEY": "openai"})
    selection = router.select_provider("structured")
    assert isinstance(selection, ProviderSelection)
    assert selection.name == "gemini"
    assert selection.model == "gemini-2.5-flash"


def test_codegen_prefers_openai():
    router = _router({"GEMINI_API_KEY": "gemini", "OPENAI_API_KEY": "openai"})
    assert router.select_provider("codegen").name == "openai"


def test_model_env_overrides_default_model():
    router = _router({"OPENAI_API_KEY": "openai", "OPENAI_MODEL": "gpt-4.1"})
    assert router.select_provider("codegen").model == "gpt-4.1"


def test_preferred_provider_moves_to_front():
    router = _router({"GEMINI_API_KEY": "g", "XAI_API_KEY": "x", "SCAFFOLDER_MODEL_PROVIDER": "xai"})
    assert router.select_provider("structured").name == "xai"


def test_local_provider_requires_opt_in():
    env = {"LOCAL_BASE_URL": "http://localhost:11434"}
    assert _router(env).maybe_select_provider("codegen") is None
    enabled = _router({**env, "SCAFFOLDER_ENABLE_LOCAL_PROVIDER": "1"})
    selection = enabled.select_provider("codegen")
    assert selection.name == "local"
    assert selection.requires_api_key is False


def test_allowed_providers_filter():
    router = _router({"GEMINI_API_KEY": "g", "OPENAI_API_KEY": "o"}, allowed_providers=["openai"])
    assert router.select_provider("structured").name == "openai"


def test_no_provider_raises():
    with pytest.raises(RuntimeError):
        _router({}).select_provider("structured")


def test_resolve_unknown_provider_raises_key_error():
    with pytest.raises(KeyError):
        _router({}).resolve_provider("nope")
