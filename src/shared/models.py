"""Core data models for the orchestration engine.

This module defines the shared data structures used by the registry,
the conversation store and the gateway. Event payloads use camelCase keys
(see orchestrator.events); models here use snake_case attributes.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier (e.g. conv_1f2e...)."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# Providers

class ProviderStatus(str, Enum):
    """Live connection status of a provider."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    ERROR = "error"


class ModelInfo(BaseModel):
    """A model offered by a provider."""
    id: str
    display_name: str
    context_window: int = 0


class CostRates(BaseModel):
    """Cost in USD per 1000 tokens."""
    input: float = 0.0
    output: float = 0.0


class ProviderCostTracking(BaseModel):
    """Usage counters. Session values reset explicitly, totals never decrease."""
    session_cost: float = 0.0
    session_tokens: int = 0
    total_cost: float = 0.0
    total_tokens: int = 0


class GlobalCostTracking(ProviderCostTracking):
    """Usage aggregated over every provider."""


class Provider(BaseModel):
    """
    A configured AI backend.

    Providers are created from configuration when the registry starts and
    are only mutated through registry methods.
    """
    id: str
    display_name: str
    kind: str = "mock"
    status: ProviderStatus = ProviderStatus.DISCONNECTED
    model: Optional[str] = None
    available_models: list[ModelInfo] = Field(default_factory=list)
    has_credential: bool = False
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_used_at: Optional[datetime] = None
    last_status_change_at: Optional[datetime] = None
    cost_tracking: ProviderCostTracking = Field(default_factory=ProviderCostTracking)
    cost_per_1k: CostRates = Field(default_factory=CostRates)

    def get_model(self, model_id: str) -> Optional[ModelInfo]:
        for model in self.available_models:
            if model.id == model_id:
                return model
        return None


class SwitchRecord(BaseModel):
    """Audit entry for an active-provider switch."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: new_id("switch"))
    timestamp: datetime = Field(default_factory=utcnow)
    from_provider: Optional[str] = Field(default=None, alias="from")
    to_provider: str = Field(..., alias="to")
    reason: str = "manual"
    conversation_id: Optional[str] = None
    context_snapshot: dict[str, Any] = Field(default_factory=dict)


# Events

class Event(BaseModel):
    """A unit of bus traffic."""
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    id: str = Field(default_factory=lambda: new_id("evt"))


# Conversations

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TokenCount(BaseModel):
    input: int = 0
    output: int = 0


class MessageMetadata(BaseModel):
    """Provider attribution and accounting for a single message."""
    provider: Optional[str] = None
    model: Optional[str] = None
    tokens: TokenCount = Field(default_factory=TokenCount)
    cost: float = 0.0
    processing_time: Optional[float] = None
    summary: bool = False
    compacted_count: int = 0
    topics: list[str] = Field(default_factory=list)
    tool_results: list[dict[str, Any]] = Field(default_factory=list)


class Message(BaseModel):
    """A single chat message. Immutable once appended."""
    id: str = Field(default_factory=lambda: new_id("msg"))
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)


class ConversationSettings(BaseModel):
    """Per-conversation generation settings."""
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4000, gt=0)
    system_prompt: Optional[str] = None


class ProviderSwitch(BaseModel):
    """Entry in a conversation's provider history."""
    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime = Field(default_factory=utcnow)
    from_provider: Optional[str] = Field(default=None, alias="from")
    to_provider: str = Field(..., alias="to")
    from_model: Optional[str] = None
    to_model: Optional[str] = None


class SessionState(BaseModel):
    current_provider: Optional[str] = None
    current_model: Optional[str] = None
    provider_history: list[ProviderSwitch] = Field(default_factory=list)
    continuation_mode: bool = False
    pinned: bool = False


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class ConversationCost(BaseModel):
    session: float = 0.0
    total: float = 0.0
    by_provider: dict[str, float] = Field(default_factory=dict)


class ProviderStats(BaseModel):
    """Usage of one provider within one conversation."""
    message_count: int = 0
    last_used_at: Optional[datetime] = None
    total_cost: float = 0.0
    total_tokens: int = 0
    models: dict[str, int] = Field(default_factory=dict)


class ConversationMetadata(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    message_count: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_tracking: ConversationCost = Field(default_factory=ConversationCost)
    provider_stats: dict[str, ProviderStats] = Field(default_factory=dict)
    compaction_count: int = 0
    tags: list[str] = Field(default_factory=list)
    auto_titled: bool = False


class Conversation(BaseModel):
    """Conversation (session) state maintained by the conversation store."""
    id: str = Field(default_factory=lambda: new_id("conv"))
    title: str = "New Conversation"
    messages: list[Message] = Field(default_factory=list)
    settings: ConversationSettings = Field(default_factory=ConversationSettings)
    session_state: SessionState = Field(default_factory=SessionState)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)


class SearchMatch(BaseModel):
    """A message whose content matched a search."""
    message_id: str
    role: MessageRole
    snippet: str
    timestamp: datetime


class SearchResult(BaseModel):
    conversation_id: str
    title: str
    score: int
    matched_messages: int = 0
    matches: list[SearchMatch] = Field(default_factory=list)
    updated_at: datetime


# Tools

class ToolDefinition(BaseModel):
    """A tool the model may ask the gateway to run."""
    name: str = Field(..., description="Tool name as exposed to the model")
    description: str = Field(..., description="Clear description for LLM usage")
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        description="JSON Schema for argument validation"
    )
    tags: list[str] = Field(default_factory=list)


class ToolResultStatus(str, Enum):
    """Status of tool execution."""
    SUCCESS = "success"
    ERROR = "error"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"


class ToolResult(BaseModel):
    """Result of a tool execution."""
    tool_name: str
    status: ToolResultStatus
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    execution_time_ms: float = 0


# Gateway

class LLMResponse(BaseModel):
    """Response from a provider client."""
    content: Optional[str] = None
    tool_calls: Optional[list[dict[str, Any]]] = None
    finish_reason: str = "stop"
    usage: dict[str, int] = Field(default_factory=dict)


class Usage(BaseModel):
    """Token and cost usage of one chat turn."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    estimated: bool = False


class ErrorInfo(BaseModel):
    """Structured, user-actionable error description."""
    code: str
    message: str
    category: str
    details: dict[str, Any] = Field(default_factory=dict)


class ChatResult(BaseModel):
    """Outcome of ProviderGateway.send."""
    success: bool
    conversation_id: str
    content: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    tool_results: list[ToolResult] = Field(default_factory=list)
    needs_credential: bool = False
    error: Optional[ErrorInfo] = None
