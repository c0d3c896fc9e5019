"""Routing helpers for selecting the model provider for a generation task.

The router only picks a provider configuration; the model client turns the
selection into a concrete SDK client. Keeping the policy separate keeps it
unit-testable without importing any SDK.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set


@dataclass(frozen=True)
class ProviderSelection:
    """Details about the provider that should handle a task."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router across hosted and local providers."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "default_model": "gpt-4o-mini",
            "default_base_url": "https://api.openai.com/v1",
        },
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "default_model": "gemini-2.5-flash",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "default_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "default_model": "qwen2.5-coder:14b",
            "default_base_url": "http://127.0.0.1:11434",
            "requires_api_key": False,
        },
    }

    ROUTING_POLICY: Dict[str, tuple[str, ...]] = {
        # Short structured calls (intent, plan, proposals) favour cheap hosted models.
        "structured": ("gemini", "openai", "xai", "local"),
        # Code generation wants the strongest coder available.
        "codegen": ("openai", "xai", "gemini", "local"),
        # Free-form chat turns in agent mode.
        "conversation": ("gemini", "openai", "xai", "local"),
    }

    def __init__(
        self,
        env: Optional[Dict[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("SCAFFOLDER_MODEL_PROVIDER") or "").strip().lower()
        force_flag = (self._env.get("SCAFFOLDER_FORCE_MODEL_PROVIDER") or "").strip().lower() in ("1", "true", "yes")
        self._forced_provider = preferred if preferred and force_flag else None
        self._preferred_provider = preferred or None

    def _provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(api_key_env))

        # local: must be switched on explicitly and pointed somewhere
        enforced = self._forced_provider == "local"
        enabled_flag = (self._env.get("SCAFFOLDER_ENABLE_LOCAL_PROVIDER") or "").strip() == "1"
        if not (enforced or enabled_flag):
            return False
        base_url_env = cfg.get("base_url_env")
        api_key_env = cfg.get("api_key_env")
        has_base = bool(base_url_env and self._env.get(base_url_env))
        has_key = bool(api_key_env and self._env.get(api_key_env))
        return has_base or has_key

    def _resolve_selection(self, provider: str) -> ProviderSelection:
        cfg = self.PROVIDER_CONFIG[provider]
        model_env = cfg.get("model_env") or ""
        model = self._env.get(model_env, cfg.get("default_model") or "")
        return ProviderSelection(
            name=provider,
            model=model,
            api_key_env=cfg.get("api_key_env"),
            base_url_env=cfg.get("base_url_env"),
            default_base_url=cfg.get("default_base_url"),
            requires_api_key=bool(cfg.get("requires_api_key", True)),
        )

    def resolve_provider(self, provider: str) -> ProviderSelection:
        """Selection for an explicit provider name. Raises ``KeyError`` when unknown."""
        if provider not in self.PROVIDER_CONFIG:
            raise KeyError(provider)
        return self._resolve_selection(provider)

    def select_provider(self, purpose: str) -> ProviderSelection:
        """Return the provider selected for the supplied purpose.

        Raises
        ------
        RuntimeError
            If no provider configured for the purpose is currently available.
        """

        priority = list(self.ROUTING_POLICY.get(purpose, self.ROUTING_POLICY["conversation"]))
        if self._preferred_provider and self._preferred_provider in self.PROVIDER_CONFIG:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        if self._forced_provider and self._provider_available(self._forced_provider):
            return self._resolve_selection(self._forced_provider)
        for provider in priority:
            if self._provider_available(provider):
                return self._resolve_selection(provider)
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, purpose: str) -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(purpose)
        except RuntimeError:
            return None
