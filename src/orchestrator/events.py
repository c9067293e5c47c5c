"""Event names and payload shapes published on the event bus.

Payload keys are camelCase: UI, logging and analytics subscribers bind
to them directly, so they are part of the contract.
"""

from enum import Enum
from typing import Optional, TypedDict


class EventName(str, Enum):
    # Provider lifecycle
    PROVIDERS_INITIALIZED = "ai-providers-initialized"
    PROVIDER_STATUS_CHANGED = "provider-status-changed"
    PROVIDER_ACTIVATED = "provider-activated"
    PROVIDER_DEACTIVATED = "provider-deactivated"
    PROVIDER_ERROR = "provider-error"
    PROVIDER_RECOVERED = "provider-recovered"
    PROVIDER_KEY_STATUS_CHANGED = "provider-key-status-changed"
    PROVIDER_MODEL_CHANGED = "provider-model-changed"
    PROVIDER_CREDENTIAL_REQUIRED = "provider-credential-required"

    # Switching
    ACTIVE_PROVIDER_CHANGED = "active-provider-changed"
    PROVIDER_SWITCH_WARNING = "provider-switch-warning"
    PROVIDER_SWITCH_COMPLETED = "provider-switch-completed"
    PROVIDER_AUTO_SWITCHED = "provider-auto-switched"
    PROVIDER_AUTO_SWITCH_FAILED = "provider-auto-switch-failed"
    CONVERSATION_PROVIDER_UPDATED = "conversation-provider-updated"

    # Usage
    PROVIDER_USAGE_TRACKED = "provider-usage-tracked"
    COST_LIMIT_WARNING = "cost-limit-warning"
    COST_BUDGET_EXCEEDED = "cost-budget-exceeded"
    SESSION_COST_RESET = "session-cost-reset"

    # Health
    HEALTH_CHECK_STARTED = "provider-health-check-started"
    HEALTH_CHECK_COMPLETED = "provider-health-check-completed"

    # Conversations
    CONVERSATION_CREATED = "conversation-created"
    CONVERSATION_DELETED = "conversation-deleted"
    CONVERSATION_CLEARED = "conversation-cleared"
    CONVERSATION_COMPACTED = "conversation-compacted"
    CONVERSATION_EVICTED = "conversation-evicted"
    CONVERSATION_IMPORTED = "conversation-imported"
    CONVERSATION_PROVIDER_SWITCHED = "conversation-provider-switched"
    ACTIVE_CONVERSATION_CHANGED = "active-conversation-changed"
    MESSAGE_ADDED = "message-added"
    SESSION_CREATED = "session-created"
    SESSION_RESUMED = "session-resumed"
    SESSION_CONTINUED = "session-continued"

    # Gateway
    MESSAGE_COMPLETED = "message-completed"


class ActiveProviderChanged(TypedDict):
    providerId: str
    previousProvider: Optional[str]
    reason: str


class ProviderStatusChanged(TypedDict):
    providerId: str
    status: str
    previousStatus: str
    error: Optional[str]


class ProviderUsageTracked(TypedDict):
    providerId: str
    tokens: int
    cost: float
    sessionCost: float
    totalCost: float


class CostLimitWarning(TypedDict):
    type: str
    current: float
    limit: float
    percentage: float


class ConversationCompacted(TypedDict):
    conversationId: str
    summary: str
    compactedCount: int
    compactionCount: int


class SessionEvent(TypedDict):
    conversationId: str


# "from" is a keyword, so the functional form is required here
ProviderAutoSwitched = TypedDict(
    "ProviderAutoSwitched", {"from": str, "to": str, "reason": str}
)
