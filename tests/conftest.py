import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _offline_model(monkeypatch):
    """Force the model-free paths so tests are deterministic without provider keys."""
    from src.scaffolder.observability.telemetry_sink import clear_events
    from src.scaffolder.services.model_client import reset_breaker

    monkeypatch.setenv("SCAFFOLDER_DISABLE_LLM", "1")
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_breaker()
    clear_events()
    yield
    reset_breaker()


@pytest.fixture
def bus():
    from src.scaffolder.infrastructure.event_bus import StatusEventBus

    return StatusEventBus(mirror=False, connect_wait_seconds=0.0)


@pytest.fixture
def repository():
    from src.scaffolder.infrastructure.state_store import InMemoryStateStore, ScaffolderRepository

    return ScaffolderRepository(InMemoryStateStore())


@pytest.fixture
def service(repository, bus):
    from src.scaffolder.config import ScaffolderConfig
    from src.scaffolder.services.orchestration import ScaffolderService

    return ScaffolderService(repository, bus, config=ScaffolderConfig(connect_wait_seconds=0.0))
