"""Provider orchestration and conversation state engine.

Keeps a registry of AI providers with live status and usage accounting,
routes chat turns to the active provider, stores conversations with
compaction, and coordinates everything over one event bus.
"""

from orchestrator.app import Orchestrator, build_orchestrator
from orchestrator.bus import EventBus
from orchestrator.conversation import ConversationStore
from orchestrator.events import EventName
from orchestrator.gateway import ProviderGateway
from orchestrator.llm import MockProviderClient, ProviderClient, create_provider_client
from orchestrator.registry import ProviderRegistry
from orchestrator.tools import ToolRegistry

__all__ = [
    "Orchestrator",
    "build_orchestrator",
    "EventBus",
    "ConversationStore",
    "EventName",
    "ProviderGateway",
    "MockProviderClient",
    "ProviderClient",
    "create_provider_client",
    "ProviderRegistry",
    "ToolRegistry",
]
