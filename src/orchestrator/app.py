"""Composition root.

Builds exactly one of each component, wires them to one event bus and owns
the background jobs.
"""

from dataclasses import dataclass, field
from typing import Optional

from shared.config import Settings, get_settings
from shared.logging import get_logger
from orchestrator.bus import EventBus
from orchestrator.conversation import ConversationStore
from orchestrator.gateway import ProviderGateway
from orchestrator.llm import ProviderClient, create_provider_client
from orchestrator.persistence import JsonFileStore, KeyValueStore, MemoryStore
from orchestrator.registry import ProviderRegistry
from orchestrator.scheduler import Scheduler
from orchestrator.tools import ToolRegistry

logger = get_logger(__name__)

HEALTH_CHECK_JOB = "health-check"
AUTOSAVE_JOB = "autosave"


@dataclass
class Orchestrator:
    """The wired engine."""
    settings: Settings
    bus: EventBus
    registry: ProviderRegistry
    conversations: ConversationStore
    tools: ToolRegistry
    gateway: ProviderGateway
    scheduler: Scheduler
    store: KeyValueStore
    started: bool = field(default=False, init=False)

    async def start(self, run_jobs: bool = True) -> None:
        """Start the bus, restore state, connect providers and start the jobs."""
        if self.started:
            return

        self.bus.start()
        await self.registry.initialize()
        await self.conversations.load()
        if run_jobs:
            self.scheduler.start()
        self.started = True

        logger.info(
            "Orchestrator started",
            active_provider=self.registry.active_provider_id,
            conversations=len(self.conversations)
        )

    async def stop(self) -> None:
        """Stop the jobs, persist state and stop the bus."""
        if not self.started:
            return

        await self.scheduler.stop()
        await self.save_state()
        self.bus.stop()
        self.started = False

        logger.info("Orchestrator stopped")

    async def save_state(self) -> None:
        await self.registry.save_state()
        await self.conversations.save()


def build_store(settings: Settings) -> KeyValueStore:
    """JSON files under storage_path, or memory when it is unset."""
    if settings.storage_path:
        return JsonFileStore(settings.storage_path)
    return MemoryStore()


def build_orchestrator(
    settings: Optional[Settings] = None,
    clients: Optional[dict[str, ProviderClient]] = None,
    store: Optional[KeyValueStore] = None
) -> Orchestrator:
    """
    Build the engine from settings.

    Args:
        settings: Application settings (loaded with get_settings() when None)
        clients: Provider clients by provider id; built from settings otherwise
        store: Persistence backend; from settings.storage_path otherwise
    """
    settings = settings or get_settings()
    clients = clients or {}
    store = store or build_store(settings)

    bus = EventBus(max_history=settings.bus.max_history, enable_logging=settings.bus.enable_logging)

    providers = [p for p in settings.providers if p.enabled]
    registry = ProviderRegistry(bus, settings.registry, providers, store=store)

    for provider in providers:
        client = clients.get(provider.id)
        if client is None and provider.has_credential:
            try:
                client = create_provider_client(provider)
            except ValueError as e:
                logger.warning("Provider client not created", provider=provider.id, error=str(e))
                continue
        if client is not None:
            registry.register_client(provider.id, client)

    conversations = ConversationStore(
        bus,
        settings.conversations,
        providers,
        default_provider=settings.registry.default_provider,
        store=store,
    )
    tools = ToolRegistry()
    gateway = ProviderGateway(bus, registry, conversations, tools, settings.gateway)
    scheduler = Scheduler()

    orchestrator = Orchestrator(
        settings=settings,
        bus=bus,
        registry=registry,
        conversations=conversations,
        tools=tools,
        gateway=gateway,
        scheduler=scheduler,
        store=store,
    )

    scheduler.add(HEALTH_CHECK_JOB, settings.registry.health_check_interval_seconds, registry.check_health)
    scheduler.add(AUTOSAVE_JOB, settings.conversations.autosave_interval_seconds, orchestrator.save_state)

    return orchestrator
