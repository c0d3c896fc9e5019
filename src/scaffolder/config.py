from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _get_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ScaffolderConfig:
    """Runtime settings for the orchestration core.

    Every value has a usable default so the service runs with an empty
    environment; ``from_env`` overrides them from ``SCAFFOLDER_*`` variables.
    """

    environment: str = "development"
    heartbeat_seconds: float = 15.0
    buffer_max_size: int = 100
    buffer_max_age_seconds: float = 60.0
    connect_wait_seconds: float = 3.0
    max_checkpoints: int = 10
    max_questions: int = 5
    proposal_boost: int = 20
    quality_enabled: bool = True
    store_impl: str = "memory"
    store_file: Optional[str] = None

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("prod", "production")

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "ScaffolderConfig":
        env = env if env is not None else os.environ
        return ScaffolderConfig(
            environment=(env.get("SCAFFOLDER_ENV") or "development").strip(),
            heartbeat_seconds=max(0.1, _get_float(env, "SCAFFOLDER_HEARTBEAT_SECONDS", 15.0)),
            buffer_max_size=max(1, _get_int(env, "SCAFFOLDER_BUFFER_MAX_SIZE", 100)),
            buffer_max_age_seconds=max(1.0, _get_float(env, "SCAFFOLDER_BUFFER_MAX_AGE_SECONDS", 60.0)),
            connect_wait_seconds=max(0.0, _get_float(env, "SCAFFOLDER_CONNECT_WAIT_SECONDS", 3.0)),
            max_checkpoints=max(1, _get_int(env, "SCAFFOLDER_MAX_CHECKPOINTS", 10)),
            max_questions=max(1, _get_int(env, "SCAFFOLDER_MAX_QUESTIONS", 5)),
            proposal_boost=max(0, _get_int(env, "SCAFFOLDER_PROPOSAL_BOOST", 20)),
            quality_enabled=_get_flag(env, "SCAFFOLDER_QUALITY_ENABLED", True),
            store_impl=(env.get("SCAFFOLDER_STORE_IMPL") or "memory").strip().lower(),
            store_file=env.get("SCAFFOLDER_STORE_FILE") or None,
        )
