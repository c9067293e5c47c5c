"""Tests for the provider registry."""

import pytest

from shared.config import RegistrySettings
from shared.errors import UnknownModel, UnknownProvider
from shared.models import ProviderStatus


def build_registry(bus, provider_settings, registry_settings, store=None):
    from orchestrator.llm import MockProviderClient
    from orchestrator.registry import ProviderRegistry

    registry = ProviderRegistry(bus, registry_settings, provider_settings, store=store)
    clients = {}
    for settings in provider_settings:
        clients[settings.id] = MockProviderClient(models=settings.models, cost_per_1k=settings.cost_per_1k)
        registry.register_client(settings.id, clients[settings.id])
    return registry, clients


def names(events):
    return [e.name for e in events]


class TestProviderLifecycle:
    """Tests for provider status and initialization."""

    def test_providers_start_disconnected(self, bus, provider_settings, registry_settings):
        """Providers are created from configuration in the disconnected state."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        assert [p.id for p in registry.providers] == ["A", "B", "C"]
        assert all(p.status == ProviderStatus.DISCONNECTED for p in registry.providers)
        assert registry.get_provider("A").model == "A-small"
        assert registry.get_provider("A").has_credential is True

    @pytest.mark.asyncio
    async def test_initialize_connects_and_activates_default(self, bus, provider_settings, registry_settings, recorder):
        """initialize() connects every provider and activates the default."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        await registry.initialize()

        assert all(p.status == ProviderStatus.CONNECTED for p in registry.providers)
        assert registry.active_provider_id == "A"
        assert "ai-providers-initialized" in names(recorder)

        status_events = [e for e in recorder if e.name == "provider-status-changed" and e.data["providerId"] == "A"]
        assert [e.data["status"] for e in status_events] == ["connecting", "connected"]
        assert status_events[1].data["previousStatus"] == "connecting"

    @pytest.mark.asyncio
    async def test_initialize_falls_back_to_connected_provider(self, bus, provider_settings, registry_settings):
        """When the default cannot connect, the first connected provider is activated."""
        registry, clients = build_registry(bus, provider_settings, registry_settings)
        clients["A"].healthy = False

        await registry.initialize()

        assert registry.get_provider("A").status == ProviderStatus.ERROR
        assert registry.active_provider_id == "B"

    def test_invalid_transition_rejected(self, bus, provider_settings, registry_settings):
        """disconnected -> connected is not an allowed transition."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        with pytest.raises(ValueError):
            registry.set_status("A", ProviderStatus.CONNECTED)

        assert registry.get_provider("A").status == ProviderStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_credential_loss_forces_disconnected(self, bus, provider_settings, registry_settings, recorder):
        """Losing the credential moves a connected provider to disconnected."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()

        registry.set_credential("B", False)

        provider = registry.get_provider("B")
        assert provider.status == ProviderStatus.DISCONNECTED
        assert provider.has_credential is False
        key_events = [e for e in recorder if e.name == "provider-key-status-changed"]
        assert key_events[-1].data == {"providerId": "B", "hasCredential": False}

    def test_unknown_provider_fails_fast(self, bus, provider_settings, registry_settings):
        """Operations on an unknown provider raise UnknownProvider."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        with pytest.raises(UnknownProvider):
            registry.get_provider("missing")
        with pytest.raises(UnknownProvider):
            registry.track_usage("missing", 10, 0.1)


class TestSwitching:
    """Tests for active provider switching."""

    @pytest.mark.asyncio
    async def test_switch_unknown_provider_leaves_state_unchanged(self, bus, provider_settings, registry_settings):
        """Switching to an unknown provider raises and mutates nothing."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()

        active = registry.active_provider_id
        history = registry.get_switch_history()
        statuses = {p.id: p.status for p in registry.providers}

        with pytest.raises(UnknownProvider):
            registry.switch_active_provider("doesnotexist")

        assert registry.active_provider_id == active
        assert registry.get_switch_history() == history
        assert {p.id: p.status for p in registry.providers} == statuses

    @pytest.mark.asyncio
    async def test_switch_emits_events(self, bus, provider_settings, registry_settings, recorder):
        """A switch records history and emits the activation events."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()
        recorder.clear()

        record = registry.switch_active_provider("B", reason="manual")

        assert record.from_provider == "A"
        assert record.to_provider == "B"
        assert registry.active_provider_id == "B"
        assert registry.get_switch_history()[-1] == record

        changed = next(e for e in recorder if e.name == "active-provider-changed")
        assert changed.data == {"providerId": "B", "previousProvider": "A", "reason": "manual"}
        assert "provider-activated" in names(recorder)
        deactivated = next(e for e in recorder if e.name == "provider-deactivated")
        assert deactivated.data["providerId"] == "A"

    def test_switch_to_unready_provider_warns(self, bus, provider_settings, registry_settings, recorder):
        """Switching is never blocked by status; a warning is emitted instead."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        registry.switch_active_provider("B")

        assert registry.active_provider_id == "B"
        warning = next(e for e in recorder if e.name == "provider-switch-warning")
        assert warning.data["providerId"] == "B"
        assert warning.data["status"] == "disconnected"
        assert registry.get_switch_history()[0].from_provider is None

    def test_switch_binds_conversation(self, bus, provider_settings, registry_settings, recorder):
        """Passing a conversation id binds it and announces the binding."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        registry.switch_active_provider("C", conversation_id="conv_1")

        assert registry.conversation_provider("conv_1") == "C"
        updated = next(e for e in recorder if e.name == "conversation-provider-updated")
        assert updated.data["conversationId"] == "conv_1"
        assert updated.data["providerId"] == "C"

    def test_switch_history_is_capped(self, bus, provider_settings):
        """Only the most recent max_switch_history records are kept."""
        registry, _ = build_registry(bus, provider_settings, RegistrySettings(max_switch_history=5))

        for i in range(8):
            registry.switch_active_provider(["A", "B"][i % 2])

        history = registry.get_switch_history()
        assert len(history) == 5
        assert registry.get_switch_history(limit=2) == history[-2:]

    def test_set_model(self, bus, provider_settings, registry_settings, recorder):
        """Known models are selected, unknown ones rejected without change."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        with pytest.raises(UnknownModel):
            registry.set_model("A", "gpt-99")
        assert registry.get_provider("A").model == "A-small"

        registry.set_model("A", "A-large")

        assert registry.get_provider("A").model == "A-large"
        changed = next(e for e in recorder if e.name == "provider-model-changed")
        assert changed.data == {"providerId": "A", "model": "A-large", "previousModel": "A-small"}


class TestUsageTracking:
    """Tests for cost and token accounting."""

    def test_track_usage_twice(self, bus, provider_settings, registry_settings):
        """Two tracked calls of 0.01 give 0.02 for the provider and globally."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        registry.track_usage("B", 1000, 0.01)
        registry.track_usage("B", 1000, 0.01)

        tracking = registry.get_provider("B").cost_tracking
        assert tracking.total_cost == pytest.approx(0.02)
        assert tracking.total_tokens == 2000
        assert registry.global_cost.total_cost == pytest.approx(0.02)

    def test_total_cost_is_sum_and_non_decreasing(self, bus, provider_settings, registry_settings):
        """Total cost equals the sum of tracked costs and never goes down."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        costs = [0.5, 0.0, 0.25, 1.0, 0.125]

        previous = 0.0
        for cost in costs:
            registry.track_usage("A", 10, cost)
            total = registry.get_provider("A").cost_tracking.total_cost
            assert total >= previous
            previous = total

        registry.reset_session_costs()

        tracking = registry.get_provider("A").cost_tracking
        assert tracking.total_cost == pytest.approx(sum(costs))
        assert tracking.session_cost == 0.0
        assert registry.global_cost.session_cost == 0.0
        assert registry.global_cost.total_cost == pytest.approx(sum(costs))

    def test_negative_usage_rejected(self, bus, provider_settings, registry_settings):
        """Negative values are rejected and leave counters unchanged."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        registry.track_usage("A", 10, 0.1)

        with pytest.raises(ValueError):
            registry.track_usage("A", 10, -0.05)

        assert registry.get_provider("A").cost_tracking.total_cost == pytest.approx(0.1)

    def test_usage_event_payload(self, bus, provider_settings, registry_settings, recorder):
        """provider-usage-tracked carries the running totals."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)

        registry.track_usage("A", 100, 0.25)

        event = next(e for e in recorder if e.name == "provider-usage-tracked")
        assert event.data["providerId"] == "A"
        assert event.data["tokens"] == 100
        assert event.data["cost"] == 0.25
        assert event.data["sessionCost"] == 0.25
        assert event.data["totalCost"] == 0.25

    def test_cost_limit_warning_once(self, bus, provider_settings, recorder):
        """The 80% warning fires once per crossing."""
        registry, _ = build_registry(bus, provider_settings, RegistrySettings(session_cost_limit=1.0))

        registry.track_usage("A", 10, 0.5)
        registry.track_usage("A", 10, 0.35)
        registry.track_usage("A", 10, 0.01)

        warnings = [e for e in recorder if e.name == "cost-limit-warning"]
        assert len(warnings) == 1
        assert warnings[0].data["type"] == "cost"
        assert warnings[0].data["limit"] == 1.0
        assert warnings[0].data["percentage"] == pytest.approx(85.0)

    def test_token_limit_warning_is_independent(self, bus, provider_settings, recorder):
        """Token usage is checked separately from cost."""
        registry, _ = build_registry(
            bus, provider_settings, RegistrySettings(session_cost_limit=100.0, session_token_limit=1000)
        )

        registry.track_usage("A", 900, 0.01)

        warnings = [e for e in recorder if e.name == "cost-limit-warning"]
        assert [w.data["type"] for w in warnings] == ["tokens"]

    def test_budget_exceeded(self, bus, provider_settings, recorder):
        """Crossing 100% emits cost-budget-exceeded."""
        registry, _ = build_registry(bus, provider_settings, RegistrySettings(session_cost_limit=1.0))

        registry.track_usage("A", 10, 1.2)

        assert "cost-limit-warning" in names(recorder)
        assert "cost-budget-exceeded" in names(recorder)

    def test_reset_rearms_warning(self, bus, provider_settings, recorder):
        """After a reset the warning can fire again."""
        registry, _ = build_registry(bus, provider_settings, RegistrySettings(session_cost_limit=1.0))

        registry.track_usage("A", 10, 0.9)
        registry.reset_session_costs()
        registry.track_usage("A", 10, 0.9)

        assert names(recorder).count("cost-limit-warning") == 2
        assert "session-cost-reset" in names(recorder)


class TestFailover:
    """Tests for health checks and auto-switching."""

    @pytest.mark.asyncio
    async def test_auto_switch_after_threshold(self, bus, provider_settings, registry_settings, recorder):
        """Three failures on the active provider switch to a healthy one."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()

        registry.record_failure("A", "timeout")
        assert registry.get_provider("A").status == ProviderStatus.DEGRADED
        registry.record_failure("A", "timeout")
        assert registry.active_provider_id == "A"
        registry.record_failure("A", "timeout")

        assert registry.active_provider_id == "B"
        assert registry.get_provider("A").status == ProviderStatus.ERROR
        assert registry.get_provider("A").consecutive_failures == 3
        assert registry.get_provider("A").last_error == "timeout"

        switched = next(e for e in recorder if e.name == "provider-auto-switched")
        assert switched.data == {"from": "A", "to": "B", "reason": "error-recovery"}

    @pytest.mark.asyncio
    async def test_auto_switch_prefers_most_recently_used(self, bus, provider_settings, registry_settings):
        """The most recently used healthy provider is chosen."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()
        registry.track_usage("C", 10, 0.01)

        for _ in range(3):
            registry.record_failure("A", "down")

        assert registry.active_provider_id == "C"

    @pytest.mark.asyncio
    async def test_auto_switch_without_candidates(self, bus, provider_settings, registry_settings, recorder):
        """With no healthy alternative, provider-auto-switch-failed is emitted."""
        registry, _ = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()
        registry.set_credential("B", False)
        registry.set_credential("C", False)

        for _ in range(3):
            registry.record_failure("A", "down")

        assert registry.active_provider_id == "A"
        failed = next(e for e in recorder if e.name == "provider-auto-switch-failed")
        assert failed.data["from"] == "A"
        assert "provider-auto-switched" not in names(recorder)

    @pytest.mark.asyncio
    async def test_auto_switch_disabled(self, bus, provider_settings):
        """No failover when auto_switch_on_error is off."""
        registry, _ = build_registry(bus, provider_settings, RegistrySettings(default_provider="A", auto_switch_on_error=False))
        await registry.initialize()

        for _ in range(5):
            registry.record_failure("A", "down")

        assert registry.active_provider_id == "A"
        assert registry.get_provider("A").status == ProviderStatus.ERROR

    @pytest.mark.asyncio
    async def test_failing_health_checks_trigger_failover(self, bus, provider_settings, registry_settings):
        """Repeated failed probes degrade, then fail over."""
        registry, clients = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()
        clients["A"].healthy = False

        results = await registry.check_health()
        assert results == {"A": False, "B": True, "C": True}
        assert registry.get_provider("A").status == ProviderStatus.DEGRADED

        await registry.check_health()
        await registry.check_health()

        assert registry.get_provider("A").status == ProviderStatus.ERROR
        assert registry.active_provider_id == "B"

    @pytest.mark.asyncio
    async def test_successful_probe_recovers(self, bus, provider_settings, registry_settings, recorder):
        """A successful probe moves error back to connected and resets failures."""
        registry, clients = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()
        for _ in range(3):
            registry.record_failure("A", "down")

        await registry.check_health()

        provider = registry.get_provider("A")
        assert provider.status == ProviderStatus.CONNECTED
        assert provider.consecutive_failures == 0
        assert "provider-recovered" in names(recorder)

    @pytest.mark.asyncio
    async def test_open_breaker_skips_probe(self, bus, provider_settings):
        """Providers whose breaker is cooling down are not probed."""
        registry, clients = build_registry(
            bus, provider_settings, RegistrySettings(default_provider="A", breaker_cooldown_seconds=3600)
        )
        await registry.initialize()
        for _ in range(3):
            registry.record_failure("A", "down")
        probes = clients["A"].health_checks

        results = await registry.check_health()

        assert results["A"] is False
        assert clients["A"].health_checks == probes

    @pytest.mark.asyncio
    async def test_probe_exceptions_are_not_raised(self, bus, provider_settings, registry_settings):
        """A probe that raises is recorded as a failure."""
        registry, clients = build_registry(bus, provider_settings, registry_settings)
        await registry.initialize()

        async def broken():
            raise RuntimeError("socket closed")

        clients["B"].health_check = broken

        results = await registry.check_health()

        assert results["B"] is False
        assert registry.get_provider("B").last_error == "socket closed"


class TestRegistryPersistence:
    """Tests for saving and restoring registry state."""

    @pytest.mark.asyncio
    async def test_state_round_trip(self, bus, provider_settings, registry_settings):
        """Totals, model, history and active provider survive a restart."""
        from orchestrator.persistence import MemoryStore

        store = MemoryStore()
        registry, _ = build_registry(bus, provider_settings, registry_settings, store=store)
        await registry.initialize()
        registry.track_usage("B", 500, 0.3)
        registry.set_model("B", "B-large")
        registry.switch_active_provider("B")

        assert await registry.save_state() is True

        restored, _ = build_registry(bus, provider_settings, registry_settings, store=store)
        assert await restored.load_state() is True

        provider = restored.get_provider("B")
        assert restored.active_provider_id == "B"
        assert provider.model == "B-large"
        assert provider.cost_tracking.total_cost == pytest.approx(0.3)
        assert provider.cost_tracking.session_cost == 0.0
        assert restored.global_cost.total_cost == pytest.approx(0.3)
        assert restored.get_switch_history()[-1].to_provider == "B"

    @pytest.mark.asyncio
    async def test_corrupt_state_is_ignored(self, bus, provider_settings, registry_settings):
        """Unreadable persisted state is logged and skipped."""
        from orchestrator.persistence import MemoryStore

        store = MemoryStore()
        await store.set("provider-state", {"providers": "not-a-mapping"})
        registry, _ = build_registry(bus, provider_settings, registry_settings, store=store)

        assert await registry.load_state() is False
        assert registry.active_provider_id is None

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self, bus, provider_settings, registry_settings):
        """A failing store never raises from save_state."""
        from unittest.mock import AsyncMock

        store = AsyncMock()
        store.set.side_effect = OSError("disk full")
        registry, _ = build_registry(bus, provider_settings, registry_settings, store=store)

        assert await registry.save_state() is False
