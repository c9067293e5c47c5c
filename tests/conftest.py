"""Shared fixtures for orchestration engine tests."""

import pytest

from shared.config import ProviderSettings, RegistrySettings
from shared.models import CostRates, ModelInfo


def mock_provider(provider_id: str, **overrides) -> ProviderSettings:
    """A mock-kind provider with one model and simple rates."""
    values = {
        "id": provider_id,
        "display_name": provider_id.upper(),
        "kind": "mock",
        "models": [
            ModelInfo(id=f"{provider_id}-small", display_name="Small", context_window=8192),
            ModelInfo(id=f"{provider_id}-large", display_name="Large", context_window=128000),
        ],
        "default_model": f"{provider_id}-small",
        "cost_per_1k": CostRates(input=0.001, output=0.002),
    }
    values.update(overrides)
    return ProviderSettings(**values)


@pytest.fixture
def bus():
    from orchestrator.bus import EventBus

    bus = EventBus()
    bus.start()
    return bus


@pytest.fixture
def provider_settings():
    return [mock_provider("A"), mock_provider("B"), mock_provider("C")]


@pytest.fixture
def registry_settings():
    return RegistrySettings(
        default_provider="A",
        auto_switch_on_error=True,
        auto_switch_threshold=3,
        breaker_cooldown_seconds=0,
    )


@pytest.fixture
def recorder(bus):
    """Collects every published event."""
    events = []
    bus.subscribe("*", events.append)
    return events
