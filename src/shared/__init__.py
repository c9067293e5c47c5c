"""Shared configuration, models, errors and logging for the orchestration engine."""

from shared.models import (
    ChatResult,
    Conversation,
    Event,
    Message,
    Provider,
    ProviderStatus,
    SwitchRecord,
    ToolDefinition,
    ToolResult,
)
from shared.config import Settings, get_settings
from shared.errors import OrchestratorError
from shared.logging import get_logger, setup_logging

__all__ = [
    "ChatResult",
    "Conversation",
    "Event",
    "Message",
    "Provider",
    "ProviderStatus",
    "SwitchRecord",
    "ToolDefinition",
    "ToolResult",
    "Settings",
    "get_settings",
    "OrchestratorError",
    "get_logger",
    "setup_logging",
]
