"""Provider Registry.

Source of truth for provider status, active-provider selection and usage
accounting. Owns the health-check and auto-failover policy.

All mutators are synchronous: every read-modify-write of a counter finishes
before control returns to the event loop, so a health check interleaving
with a send can never lose an update.
"""

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from shared.config import ProviderSettings, RegistrySettings, default_providers
from shared.errors import ProviderNotReady, UnknownModel, UnknownProvider
from shared.logging import get_logger
from shared.models import (
    GlobalCostTracking,
    Provider,
    ProviderCostTracking,
    ProviderStatus,
    SwitchRecord,
    utcnow,
)
from orchestrator.breaker import CircuitBreaker
from orchestrator.bus import EventBus
from orchestrator.events import EventName
from orchestrator.llm import ProviderClient
from orchestrator.persistence import KeyValueStore

logger = get_logger(__name__)

STATE_KEY = "provider-state"

_TRANSITIONS: dict[ProviderStatus, set[ProviderStatus]] = {
    ProviderStatus.DISCONNECTED: {ProviderStatus.CONNECTING},
    ProviderStatus.CONNECTING: {ProviderStatus.CONNECTED, ProviderStatus.ERROR},
    ProviderStatus.CONNECTED: {ProviderStatus.DEGRADED, ProviderStatus.ERROR},
    ProviderStatus.DEGRADED: {ProviderStatus.CONNECTED, ProviderStatus.ERROR},
    ProviderStatus.ERROR: {ProviderStatus.CONNECTED, ProviderStatus.CONNECTING},
}

# An auto-switch target must have fewer failures than this
_MAX_TARGET_FAILURES = 2

_NEVER = datetime.min.replace(tzinfo=timezone.utc)


class ProviderRegistryState(BaseModel):
    """Everything the registry owns; also the persisted snapshot."""
    providers: dict[str, Provider] = Field(default_factory=dict)
    active_provider: Optional[str] = None
    switch_history: list[SwitchRecord] = Field(default_factory=list)
    global_cost: GlobalCostTracking = Field(default_factory=GlobalCostTracking)
    conversation_bindings: dict[str, str] = Field(default_factory=dict)


class ProviderRegistry:
    """
    Registry of configured providers.

    Responsibilities:
    - Provider status state machine and credential availability
    - Active provider pointer and switch audit trail
    - Session/total cost and token accounting with limit warnings
    - Health checks, circuit breakers and auto-failover
    """

    def __init__(
        self,
        bus: EventBus,
        settings: Optional[RegistrySettings] = None,
        providers: Optional[Iterable[ProviderSettings]] = None,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], float]] = None
    ) -> None:
        self.bus = bus
        self.settings = settings or RegistrySettings()
        self.store = store

        self.state = ProviderRegistryState()
        self._clients: dict[str, ProviderClient] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._limit_warnings: set[str] = set()

        for config in providers if providers is not None else default_providers():
            self._add_provider(config, clock)

    def _add_provider(self, config: ProviderSettings, clock: Optional[Callable[[], float]]) -> None:
        if config.id in self.state.providers:
            raise ValueError(f"Provider '{config.id}' is already registered")

        default_model = config.default_model or (config.models[0].id if config.models else None)
        self.state.providers[config.id] = Provider(
            id=config.id,
            display_name=config.display_name,
            kind=config.kind,
            model=default_model,
            available_models=list(config.models),
            has_credential=config.enabled and config.has_credential,
            cost_per_1k=config.cost_per_1k,
        )

        breaker = CircuitBreaker(
            failure_threshold=self.settings.auto_switch_threshold,
            cooldown_seconds=self.settings.breaker_cooldown_seconds,
        )
        if clock is not None:
            breaker.clock = clock
        self._breakers[config.id] = breaker

    # Accessors

    @property
    def providers(self) -> list[Provider]:
        return list(self.state.providers.values())

    @property
    def active_provider_id(self) -> Optional[str]:
        return self.state.active_provider

    @property
    def global_cost(self) -> GlobalCostTracking:
        return self.state.global_cost

    def get_provider(self, provider_id: str) -> Provider:
        """
        Get a provider by id.

        Raises:
            UnknownProvider: If the id is not registered
        """
        provider = self.state.providers.get(provider_id)
        if provider is None:
            raise UnknownProvider(provider_id)
        return provider

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self.state.providers

    def get_active_provider(self) -> Optional[Provider]:
        if self.state.active_provider is None:
            return None
        return self.state.providers[self.state.active_provider]

    def get_client(self, provider_id: str) -> Optional[ProviderClient]:
        self.get_provider(provider_id)
        return self._clients.get(provider_id)

    def get_breaker(self, provider_id: str) -> CircuitBreaker:
        self.get_provider(provider_id)
        return self._breakers[provider_id]

    def conversation_provider(self, conversation_id: str) -> Optional[str]:
        """Provider bound to a conversation by switch_active_provider, if any."""
        return self.state.conversation_bindings.get(conversation_id)

    def get_switch_history(self, limit: Optional[int] = None) -> list[SwitchRecord]:
        history = self.state.switch_history
        return list(history[-limit:] if limit else history)

    # Configuration mutators

    def register_client(self, provider_id: str, client: ProviderClient) -> None:
        """Attach the client used to talk to a provider."""
        provider = self.get_provider(provider_id)
        self._clients[provider_id] = client

        if not provider.available_models and client.models:
            provider.available_models = list(client.models)
            provider.model = provider.model or client.models[0].id

        logger.info("Provider client registered", provider=provider_id)

    def set_credential(self, provider_id: str, available: bool) -> None:
        """
        Record whether a provider has a usable credential.

        Losing the credential always moves the provider to disconnected.
        """
        provider = self.get_provider(provider_id)
        previous = provider.has_credential
        provider.has_credential = available

        if not available:
            self._breakers[provider_id].reset()
            provider.consecutive_failures = 0
            self.set_status(provider_id, ProviderStatus.DISCONNECTED)

        if previous != available:
            self.bus.publish(EventName.PROVIDER_KEY_STATUS_CHANGED, {
                "providerId": provider_id,
                "hasCredential": available,
            })

    def set_model(self, provider_id: str, model_id: str) -> Provider:
        """
        Select the model a provider uses.

        Raises:
            UnknownProvider: If the provider is not registered
            UnknownModel: If the provider does not offer the model
        """
        provider = self.get_provider(provider_id)
        if provider.get_model(model_id) is None:
            raise UnknownModel(provider_id, model_id)

        previous = provider.model
        provider.model = model_id

        self.bus.publish(EventName.PROVIDER_MODEL_CHANGED, {
            "providerId": provider_id,
            "model": model_id,
            "previousModel": previous,
        })
        logger.info("Provider model changed", provider=provider_id, model=model_id)
        return provider

    def set_status(
        self,
        provider_id: str,
        status: ProviderStatus,
        error: Optional[str] = None
    ) -> None:
        """
        Move a provider to a new status.

        Raises:
            UnknownProvider: If the provider is not registered
            ValueError: If the transition is not allowed
        """
        provider = self.get_provider(provider_id)
        previous = provider.status
        if error is not None:
            provider.last_error = error

        if status == previous:
            return

        if status != ProviderStatus.DISCONNECTED and status not in _TRANSITIONS[previous]:
            raise ValueError(
                f"Invalid status transition for '{provider_id}': {previous.value} -> {status.value}"
            )

        provider.status = status
        provider.last_status_change_at = utcnow()

        logger.info(
            "Provider status changed",
            provider=provider_id,
            status=status.value,
            previous=previous.value,
            error=error
        )

        self.bus.publish(EventName.PROVIDER_STATUS_CHANGED, {
            "providerId": provider_id,
            "status": status.value,
            "previousStatus": previous.value,
            "error": error,
        })

        if status == ProviderStatus.ERROR:
            self.bus.publish(EventName.PROVIDER_ERROR, {
                "providerId": provider_id,
                "error": provider.last_error,
                "consecutiveFailures": provider.consecutive_failures,
            })
        elif status == ProviderStatus.CONNECTED and previous in (ProviderStatus.DEGRADED, ProviderStatus.ERROR):
            self.bus.publish(EventName.PROVIDER_RECOVERED, {
                "providerId": provider_id,
                "previousStatus": previous.value,
            })

    # Switching

    def switch_active_provider(
        self,
        provider_id: str,
        reason: str = "manual",
        conversation_id: Optional[str] = None
    ) -> SwitchRecord:
        """
        Make a provider the active one.

        Switching to a provider that is not connected is allowed; a
        provider-switch-warning is published instead.

        Args:
            provider_id: Provider to activate
            reason: Why the switch happened (manual, error-recovery, ...)
            conversation_id: Optional conversation to bind to the provider

        Returns:
            The appended switch record

        Raises:
            UnknownProvider: If the provider is not registered (nothing changes)
        """
        provider = self.get_provider(provider_id)
        previous = self.state.active_provider

        if provider.status != ProviderStatus.CONNECTED:
            warning = ProviderNotReady(provider_id, provider.status.value)
            logger.warning("Switching to provider that is not ready", provider=provider_id, status=provider.status.value)
            self.bus.publish(EventName.PROVIDER_SWITCH_WARNING, {
                "providerId": provider_id,
                "status": provider.status.value,
                "reason": reason,
                "message": warning.message,
            })

        record = SwitchRecord(
            from_provider=previous,
            to_provider=provider_id,
            reason=reason,
            conversation_id=conversation_id,
            context_snapshot={
                "status": provider.status.value,
                "model": provider.model,
                "previousStatus": self.state.providers[previous].status.value if previous else None,
                "sessionCost": self.state.global_cost.session_cost,
            },
        )
        self.state.switch_history.append(record)
        del self.state.switch_history[:-self.settings.max_switch_history]

        self.state.active_provider = provider_id

        if conversation_id:
            self.state.conversation_bindings[conversation_id] = provider_id
            self.bus.publish(EventName.CONVERSATION_PROVIDER_UPDATED, {
                "conversationId": conversation_id,
                "providerId": provider_id,
                "model": provider.model,
                "reason": reason,
            })

        logger.info("Active provider switched", provider=provider_id, previous=previous, reason=reason)

        self.bus.publish(EventName.ACTIVE_PROVIDER_CHANGED, {
            "providerId": provider_id,
            "previousProvider": previous,
            "reason": reason,
        })
        self.bus.publish(EventName.PROVIDER_ACTIVATED, {"providerId": provider_id, "reason": reason})
        if previous is not None and previous != provider_id:
            self.bus.publish(EventName.PROVIDER_DEACTIVATED, {"providerId": previous, "reason": reason})
        self.bus.publish(EventName.PROVIDER_SWITCH_COMPLETED, {
            "switchId": record.id,
            "from": previous,
            "to": provider_id,
            "reason": reason,
        })

        return record

    def attempt_auto_switch(self, provider_id: str, reason: str = "error-recovery") -> Optional[SwitchRecord]:
        """
        Fail over from a provider to the most recently used healthy one.

        A candidate has a credential, is connected and has fewer than two
        consecutive failures.

        Returns:
            The switch record, or None when no candidate qualifies
        """
        candidates = [
            p for p in self.state.providers.values()
            if p.id != provider_id
            and p.has_credential
            and p.status == ProviderStatus.CONNECTED
            and p.consecutive_failures < _MAX_TARGET_FAILURES
        ]

        if not candidates:
            logger.warning("Auto-switch failed, no healthy provider", provider=provider_id, reason=reason)
            self.bus.publish(EventName.PROVIDER_AUTO_SWITCH_FAILED, {
                "from": provider_id,
                "reason": reason,
                "error": "No healthy alternative provider available",
            })
            return None

        # Stable sort keeps configuration order among never-used providers
        candidates.sort(key=lambda p: p.last_used_at or _NEVER, reverse=True)
        target = candidates[0]

        record = self.switch_active_provider(target.id, reason)
        self.bus.publish(EventName.PROVIDER_AUTO_SWITCHED, {
            "from": provider_id,
            "to": target.id,
            "reason": reason,
        })
        return record

    # Usage

    def track_usage(self, provider_id: str, tokens: int, cost: float) -> ProviderCostTracking:
        """
        Add usage to a provider's and to the global counters.

        Raises:
            UnknownProvider: If the provider is not registered
            ValueError: If tokens or cost is negative
        """
        provider = self.get_provider(provider_id)
        if tokens < 0 or cost < 0:
            raise ValueError("Usage must not be negative")

        tracking = provider.cost_tracking
        tracking.session_cost += cost
        tracking.session_tokens += tokens
        tracking.total_cost += cost
        tracking.total_tokens += tokens

        totals = self.state.global_cost
        totals.session_cost += cost
        totals.session_tokens += tokens
        totals.total_cost += cost
        totals.total_tokens += tokens

        provider.last_used_at = utcnow()

        self.bus.publish(EventName.PROVIDER_USAGE_TRACKED, {
            "providerId": provider_id,
            "tokens": tokens,
            "cost": cost,
            "sessionCost": tracking.session_cost,
            "totalCost": tracking.total_cost,
            "sessionTokens": tracking.session_tokens,
            "totalTokens": tracking.total_tokens,
        })

        self._check_limits()
        return tracking.model_copy()

    def _check_limits(self) -> None:
        totals = self.state.global_cost
        ceilings = (
            ("cost", totals.session_cost, self.settings.session_cost_limit),
            ("tokens", totals.session_tokens, self.settings.session_token_limit),
        )

        for kind, current, limit in ceilings:
            percentage = current / limit * 100
            data = {"type": kind, "current": current, "limit": limit, "percentage": round(percentage, 2)}

            if percentage >= self.settings.limit_warning_ratio * 100 and kind not in self._limit_warnings:
                self._limit_warnings.add(kind)
                logger.warning("Session usage limit approaching", **data)
                self.bus.publish(EventName.COST_LIMIT_WARNING, data)

            exceeded = f"{kind}-exceeded"
            if percentage >= 100 and exceeded not in self._limit_warnings:
                self._limit_warnings.add(exceeded)
                self.bus.publish(EventName.COST_BUDGET_EXCEEDED, data)

    def reset_session_costs(self, provider_id: Optional[str] = None) -> None:
        """Zero session counters for one provider, or for all of them."""
        targets = [self.get_provider(provider_id)] if provider_id else self.providers
        totals = self.state.global_cost

        for provider in targets:
            totals.session_cost = max(0.0, totals.session_cost - provider.cost_tracking.session_cost)
            totals.session_tokens = max(0, totals.session_tokens - provider.cost_tracking.session_tokens)
            provider.cost_tracking.session_cost = 0.0
            provider.cost_tracking.session_tokens = 0

        if provider_id is None:
            totals.session_cost = 0.0
            totals.session_tokens = 0

        self._limit_warnings.clear()
        self._check_limits()

        logger.info("Session costs reset", provider=provider_id or "all")
        self.bus.publish(EventName.SESSION_COST_RESET, {"providerId": provider_id})

    # Health and failover

    def record_success(self, provider_id: str) -> None:
        """A call or probe against the provider succeeded."""
        provider = self.get_provider(provider_id)
        self._breakers[provider_id].record_success()
        provider.consecutive_failures = 0

        if not provider.has_credential:
            return
        if provider.status == ProviderStatus.DISCONNECTED:
            self.set_status(provider_id, ProviderStatus.CONNECTING)
        if provider.status != ProviderStatus.CONNECTED:
            self.set_status(provider_id, ProviderStatus.CONNECTED)
        provider.last_error = None

    def record_failure(self, provider_id: str, error: str) -> None:
        """
        A call or probe against the provider failed.

        connected -> degraded on the first failure; error once the circuit
        breaker opens. When the failing provider is the active one and
        auto-switch is enabled, fail over at the threshold.
        """
        provider = self.get_provider(provider_id)
        breaker = self._breakers[provider_id]
        breaker.record_failure()
        provider.consecutive_failures = breaker.consecutive_failures
        provider.last_error = error

        logger.warning(
            "Provider failure recorded",
            provider=provider_id,
            failures=provider.consecutive_failures,
            error=error
        )

        if provider.status == ProviderStatus.DISCONNECTED:
            return

        if breaker.is_open or provider.status == ProviderStatus.CONNECTING:
            self.set_status(provider_id, ProviderStatus.ERROR, error)
        elif provider.status == ProviderStatus.CONNECTED:
            self.set_status(provider_id, ProviderStatus.DEGRADED, error)

        if (
            self.settings.auto_switch_on_error
            and provider.consecutive_failures >= self.settings.auto_switch_threshold
            and provider_id == self.state.active_provider
        ):
            self.attempt_auto_switch(provider_id, "error-recovery")

    async def _probe(self, provider_id: str) -> tuple[bool, Optional[str]]:
        client = self._clients.get(provider_id)
        if client is None:
            return False, "No client registered"

        try:
            healthy = await client.health_check()
        except Exception as e:
            return False, str(e) or type(e).__name__
        return (True, None) if healthy else (False, "Health check reported unhealthy")

    async def connect(self, provider_id: str) -> bool:
        """
        Connect a provider: disconnected -> connecting -> connected (or error).

        Returns:
            True if the provider ended up connected
        """
        provider = self.get_provider(provider_id)
        if not provider.has_credential or provider_id not in self._clients:
            self.set_status(provider_id, ProviderStatus.DISCONNECTED)
            return False

        if provider.status in (ProviderStatus.DISCONNECTED, ProviderStatus.ERROR):
            self.set_status(provider_id, ProviderStatus.CONNECTING)

        healthy, error = await self._probe(provider_id)
        if not provider.has_credential:
            return False

        if healthy:
            self.record_success(provider_id)
        else:
            self.record_failure(provider_id, error or "Connection failed")
        return provider.status == ProviderStatus.CONNECTED

    async def check_health(self) -> dict[str, bool]:
        """
        Probe every provider that has a credential and a client.

        Probe failures are recorded, never raised. Providers whose breaker
        is open and still cooling down are skipped and reported unhealthy.

        Returns:
            Mapping of provider id to probe outcome
        """
        candidates = [
            p for p in self.state.providers.values()
            if p.has_credential and p.id in self._clients
        ]
        self.bus.publish(EventName.HEALTH_CHECK_STARTED, {"providers": [p.id for p in candidates]})

        results: dict[str, bool] = {}
        for provider in candidates:
            if not self._breakers[provider.id].allow_request():
                results[provider.id] = False
                continue

            if provider.status == ProviderStatus.DISCONNECTED:
                self.set_status(provider.id, ProviderStatus.CONNECTING)

            healthy, error = await self._probe(provider.id)
            # Credential may have been revoked while the probe was pending
            if not provider.has_credential:
                continue

            if healthy:
                self.record_success(provider.id)
            else:
                self.record_failure(provider.id, error or "Health check failed")
            results[provider.id] = healthy

        self.bus.publish(EventName.HEALTH_CHECK_COMPLETED, {
            "results": results,
            "activeProvider": self.state.active_provider,
        })
        logger.debug("Health check completed", results=results)
        return results

    async def initialize(self) -> None:
        """Restore persisted state, connect providers and pick an active one."""
        await self.load_state()

        for provider_id in list(self.state.providers):
            provider = self.state.providers[provider_id]
            if provider.has_credential and provider_id in self._clients:
                await self.connect(provider_id)

        if self.state.active_provider is None:
            connected = [p.id for p in self.providers if p.status == ProviderStatus.CONNECTED]
            default = self.settings.default_provider
            if default in connected or (default in self.state.providers and not connected):
                self.switch_active_provider(default, "initialization")
            elif connected:
                self.switch_active_provider(connected[0], "initialization")

        self.bus.publish(EventName.PROVIDERS_INITIALIZED, {
            "providers": [p.id for p in self.providers],
            "activeProvider": self.state.active_provider,
        })
        logger.info(
            "Provider registry initialized",
            providers=len(self.state.providers),
            active=self.state.active_provider
        )

    # Persistence

    async def save_state(self) -> bool:
        """Persist the registry snapshot. Failures are logged, never raised."""
        if self.store is None:
            return False
        try:
            await self.store.set(STATE_KEY, self.state.model_dump(mode="json", by_alias=True))
            return True
        except Exception as e:
            logger.error("Failed to persist provider state", error=str(e))
            return False

    async def load_state(self) -> bool:
        """
        Restore persisted state on top of the configuration.

        Configuration wins for provider definitions; persisted totals,
        selected models, switch history and the active pointer are merged.
        Session counters start at zero.
        """
        if self.store is None:
            return False
        try:
            data = await self.store.get(STATE_KEY)
            if not data:
                return False
            saved = ProviderRegistryState.model_validate(data)
        except Exception as e:
            logger.warning("Failed to load provider state", error=str(e))
            return False

        for provider_id, saved_provider in saved.providers.items():
            provider = self.state.providers.get(provider_id)
            if provider is None:
                continue
            if saved_provider.model and provider.get_model(saved_provider.model):
                provider.model = saved_provider.model
            tracking = provider.cost_tracking
            tracking.total_cost = max(tracking.total_cost, saved_provider.cost_tracking.total_cost)
            tracking.total_tokens = max(tracking.total_tokens, saved_provider.cost_tracking.total_tokens)
            provider.last_used_at = saved_provider.last_used_at

        totals = self.state.global_cost
        totals.total_cost = max(totals.total_cost, saved.global_cost.total_cost)
        totals.total_tokens = max(totals.total_tokens, saved.global_cost.total_tokens)

        self.state.switch_history = saved.switch_history[-self.settings.max_switch_history:]
        self.state.conversation_bindings.update(saved.conversation_bindings)
        if saved.active_provider in self.state.providers:
            self.state.active_provider = saved.active_provider

        logger.info("Provider state restored", active=self.state.active_provider)
        return True

    def get_stats(self) -> dict[str, Any]:
        """Registry summary for health endpoints and analytics."""
        return {
            "active_provider": self.state.active_provider,
            "providers": {
                p.id: {
                    "status": p.status.value,
                    "model": p.model,
                    "has_credential": p.has_credential,
                    "consecutive_failures": p.consecutive_failures,
                    "breaker": self._breakers[p.id].state.value,
                    "total_cost": p.cost_tracking.total_cost,
                }
                for p in self.providers
            },
            "global_cost": self.state.global_cost.model_dump(),
            "switch_count": len(self.state.switch_history),
        }
