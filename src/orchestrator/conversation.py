"""Conversation Store.

Manages conversation lifecycle, message accounting, compaction and
session continuation.
"""

import json
from collections.abc import Iterable
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from shared.config import ConversationStoreSettings, ProviderSettings, default_providers
from shared.errors import (
    ConversationNotFound,
    NoRecentSession,
    SessionNotFound,
    UnknownModel,
    UnknownProvider,
)
from shared.logging import get_logger
from shared.models import (
    Conversation,
    ConversationCost,
    ConversationSettings,
    Event,
    Message,
    MessageMetadata,
    MessageRole,
    ProviderStats,
    ProviderSwitch,
    SearchMatch,
    SearchResult,
    SessionState,
    TokenCount,
    TokenUsage,
    new_id,
    utcnow,
)
from orchestrator.bus import EventBus
from orchestrator.events import EventName
from orchestrator.persistence import KeyValueStore

logger = get_logger(__name__)

STATE_KEY = "conversations"
DEFAULT_TITLE = "New Conversation"
SUBSCRIBER = "conversation-store"

_TITLE_LENGTH = 50
_SUMMARY_TOPICS = 3
_TOPIC_LENGTH = 80
_SNIPPET_LENGTH = 200
_INSTRUCTIONS_LENGTH = 200
_SEARCH_TYPES = ("all", "title", "content", "tags")
_EXPORT_FORMATS = ("json", "markdown", "plain")


class ConversationStoreState(BaseModel):
    """Everything the store owns; also the persisted snapshot."""
    conversations: dict[str, Conversation] = Field(default_factory=dict)
    current_id: Optional[str] = None


class ConversationStore:
    """
    Owns every conversation in the process.

    Responsibilities:
    - Create, retrieve, delete and evict conversations
    - Append messages with token/cost accounting per provider and model
    - Compact long histories into one summary message
    - Track the current conversation and session continuation
    """

    def __init__(
        self,
        bus: EventBus,
        settings: Optional[ConversationStoreSettings] = None,
        providers: Optional[Iterable[ProviderSettings]] = None,
        default_provider: Optional[str] = None,
        store: Optional[KeyValueStore] = None
    ) -> None:
        """
        Initialize conversation store.

        Args:
            bus: Event bus shared with the registry and the gateway
            settings: Store limits and compaction policy
            providers: Provider catalogue used to validate provider switches
            default_provider: Provider given to conversations created without one
            store: Optional persistence backend
        """
        self.bus = bus
        self.settings = settings or ConversationStoreSettings()
        self.catalogue = {p.id: p for p in (providers if providers is not None else default_providers())}
        self.default_provider = default_provider
        self.store = store

        self.state = ConversationStoreState()

        bus.subscribe(EventName.CONVERSATION_PROVIDER_UPDATED, self._on_provider_updated, owner=SUBSCRIBER)
        bus.subscribe(EventName.PROVIDER_AUTO_SWITCHED, self._on_provider_auto_switched, owner=SUBSCRIBER)

    def __len__(self) -> int:
        return len(self.state.conversations)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self.state.conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return conversation

    def _default_model(self, provider_id: Optional[str]) -> Optional[str]:
        provider = self.catalogue.get(provider_id) if provider_id else None
        if provider is None:
            return None
        return provider.default_model or (provider.models[0].id if provider.models else None)

    def _validate_provider(self, provider_id: str, model_id: Optional[str]) -> None:
        provider = self.catalogue.get(provider_id)
        if provider is None:
            raise UnknownProvider(provider_id)
        if model_id and provider.models and model_id not in {m.id for m in provider.models}:
            raise UnknownModel(provider_id, model_id)

    # Lifecycle

    def create_conversation(
        self,
        title: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4000,
        system_prompt: Optional[str] = None,
        tags: Optional[list[str]] = None,
        conversation_id: Optional[str] = None
    ) -> str:
        """
        Create a new conversation and make it current.

        Args:
            title: Title; derived from the first user message when omitted
            provider: Provider to pin; the default provider when omitted
            model: Model id; the provider's default when omitted
            temperature: Sampling temperature
            max_tokens: Maximum tokens per reply
            system_prompt: Conversation-specific system prompt
            tags: Search tags
            conversation_id: Explicit id (must be unused)

        Returns:
            The new conversation id

        Raises:
            UnknownProvider: If the provider is not configured
            UnknownModel: If the provider does not offer the model
        """
        if provider is not None:
            self._validate_provider(provider, model)
        if conversation_id is not None and conversation_id in self.state.conversations:
            raise ValueError(f"Conversation '{conversation_id}' already exists")

        provider_id = provider or self.default_provider
        model_id = model or self._default_model(provider_id)

        conversation = Conversation(
            id=conversation_id or new_id("conv"),
            title=title or DEFAULT_TITLE,
            settings=ConversationSettings(
                provider=provider_id,
                model=model_id,
                temperature=temperature,
                max_tokens=max_tokens,
                system_prompt=system_prompt,
            ),
            session_state=SessionState(
                current_provider=provider_id,
                current_model=model_id,
                pinned=provider is not None,
            ),
        )
        conversation.metadata.tags = list(tags or [])
        conversation.metadata.auto_titled = title is not None

        self.state.conversations[conversation.id] = conversation
        previous = self.state.current_id
        self.state.current_id = conversation.id

        logger.info("Conversation created", conversation_id=conversation.id, provider=provider_id)

        self.bus.publish(EventName.CONVERSATION_CREATED, {
            "conversationId": conversation.id,
            "title": conversation.title,
            "provider": provider_id,
            "model": model_id,
        })
        self.bus.publish(EventName.SESSION_CREATED, {"conversationId": conversation.id})
        self._publish_current_changed(previous)

        self._enforce_session_limit()
        return conversation.id

    def get(self, conversation_id: str) -> Conversation:
        """
        Get a conversation and mark it accessed.

        Raises:
            ConversationNotFound: If the id is unknown
        """
        conversation = self._require(conversation_id)
        conversation.metadata.last_accessed_at = utcnow()
        return conversation

    def exists(self, conversation_id: str) -> bool:
        return conversation_id in self.state.conversations

    @property
    def current(self) -> Optional[Conversation]:
        if self.state.current_id is None:
            return None
        return self.state.conversations.get(self.state.current_id)

    @property
    def current_id(self) -> Optional[str]:
        return self.state.current_id

    def set_current(self, conversation_id: str) -> Conversation:
        """Make a conversation the current one."""
        conversation = self.get(conversation_id)
        previous = self.state.current_id
        self.state.current_id = conversation_id
        self._publish_current_changed(previous)
        return conversation

    def _publish_current_changed(self, previous: Optional[str]) -> None:
        if previous == self.state.current_id:
            return
        self.bus.publish(EventName.ACTIVE_CONVERSATION_CHANGED, {
            "conversationId": self.state.current_id,
            "previousConversationId": previous,
        })

    def delete(self, conversation_id: str) -> bool:
        """
        Delete a conversation.

        Raises:
            ConversationNotFound: If the id is unknown
        """
        self._require(conversation_id)
        del self.state.conversations[conversation_id]

        if self.state.current_id == conversation_id:
            remaining = self._by_recent_update()
            self.state.current_id = remaining[0].id if remaining else None
            self._publish_current_changed(conversation_id)

        logger.info("Conversation deleted", conversation_id=conversation_id)
        self.bus.publish(EventName.CONVERSATION_DELETED, {"conversationId": conversation_id})
        return True

    def _by_recent_update(self) -> list[Conversation]:
        return sorted(
            self.state.conversations.values(),
            key=lambda c: c.metadata.updated_at,
            reverse=True
        )

    def list_conversations(self) -> list[dict[str, Any]]:
        """Conversation summaries, most recently updated first."""
        return [
            {
                "id": c.id,
                "title": c.title,
                "message_count": len(c.messages),
                "created_at": c.metadata.created_at.isoformat(),
                "updated_at": c.metadata.updated_at.isoformat(),
                "provider": c.session_state.current_provider,
                "tags": list(c.metadata.tags),
                "is_active": c.id == self.state.current_id,
            }
            for c in self._by_recent_update()
        ]

    def _enforce_session_limit(self) -> None:
        """Evict least recently accessed conversations, never the current one."""
        while len(self.state.conversations) > self.settings.max_sessions:
            candidates = [c for c in self.state.conversations.values() if c.id != self.state.current_id]
            if not candidates:
                break

            # min() keeps insertion order on ties, so the oldest goes first
            victim = min(candidates, key=lambda c: c.metadata.last_accessed_at)
            del self.state.conversations[victim.id]

            logger.info("Conversation evicted", conversation_id=victim.id)
            self.bus.publish(EventName.CONVERSATION_EVICTED, {
                "conversationId": victim.id,
                "reason": "session-limit",
            })

    # Messages

    def add_message(
        self,
        conversation_id: str,
        role: Union[MessageRole, str],
        content: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float = 0.0,
        processing_time: Optional[float] = None,
        tool_results: Optional[list[dict[str, Any]]] = None
    ) -> Message:
        """
        Append a message and update the conversation's accounting.

        Usage is attributed to the given provider, or the conversation's
        current provider when omitted. Afterwards the history is compacted
        (when enabled and over the threshold) or trimmed to max_history_size.

        Raises:
            ConversationNotFound: If the id is unknown
        """
        conversation = self._require(conversation_id)
        provider_id = provider or conversation.session_state.current_provider
        model_id = model or conversation.session_state.current_model

        message = Message(
            role=MessageRole(role),
            content=content,
            metadata=MessageMetadata(
                provider=provider_id,
                model=model_id,
                tokens=TokenCount(input=input_tokens, output=output_tokens),
                cost=cost,
                processing_time=processing_time,
                tool_results=list(tool_results or []),
            ),
        )
        conversation.messages.append(message)

        now = utcnow()
        metadata = conversation.metadata
        metadata.message_count += 1
        metadata.updated_at = now
        metadata.last_accessed_at = now

        tokens = input_tokens + output_tokens
        metadata.token_usage.input += input_tokens
        metadata.token_usage.output += output_tokens
        metadata.token_usage.total += tokens

        metadata.cost_tracking.session += cost
        metadata.cost_tracking.total += cost

        if provider_id:
            by_provider = metadata.cost_tracking.by_provider
            by_provider[provider_id] = by_provider.get(provider_id, 0.0) + cost

            stats = metadata.provider_stats.setdefault(provider_id, ProviderStats())
            stats.message_count += 1
            stats.last_used_at = now
            stats.total_cost += cost
            stats.total_tokens += tokens
            if model_id:
                stats.models[model_id] = stats.models.get(model_id, 0) + 1

        if message.role == MessageRole.USER and not metadata.auto_titled and conversation.title == DEFAULT_TITLE:
            conversation.title = content.strip()[:_TITLE_LENGTH] or DEFAULT_TITLE
            metadata.auto_titled = True

        self.bus.publish(EventName.MESSAGE_ADDED, {
            "conversationId": conversation_id,
            "messageId": message.id,
            "role": message.role.value,
            "provider": provider_id,
        })

        if self.settings.compaction_enabled and len(conversation.messages) > self.settings.compaction_threshold:
            self.compact(conversation_id)
        self._trim(conversation)

        return message

    def _trim(self, conversation: Conversation) -> None:
        excess = len(conversation.messages) - self.settings.max_history_size
        if excess > 0:
            del conversation.messages[:excess]
            logger.debug("Trimmed old messages", conversation_id=conversation.id, removed=excess)

    def get_context_messages(self, conversation_id: str, window: Optional[int] = None) -> list[Message]:
        """The trailing window of messages (context_window by default)."""
        conversation = self.get(conversation_id)
        size = self.settings.context_window if window is None else window
        if size <= 0:
            return []
        return list(conversation.messages[-size:])

    # Compaction

    def compact(self, conversation_id: str, instructions: Optional[str] = None) -> Conversation:
        """
        Replace everything older than the context window with one summary.

        A no-op below min_messages_to_compact messages or when nothing is
        older than the window. The most recent context_window messages are
        kept verbatim.

        Raises:
            ConversationNotFound: If the id is unknown
        """
        conversation = self._require(conversation_id)
        messages = conversation.messages
        window = max(self.settings.context_window, 0)

        if len(messages) < self.settings.min_messages_to_compact or len(messages) <= window:
            return conversation

        split = len(messages) - window
        older, recent = messages[:split], messages[split:]

        compacted_count = sum(
            m.metadata.compacted_count if m.metadata.summary else 1
            for m in older
        )
        content, topics = self._summarize(older, compacted_count, instructions)
        summary = Message(
            role=MessageRole.SYSTEM,
            content=content,
            metadata=MessageMetadata(summary=True, compacted_count=compacted_count, topics=topics),
        )

        conversation.messages = [summary, *recent]
        conversation.metadata.compaction_count += 1
        conversation.metadata.updated_at = utcnow()

        logger.info(
            "Conversation compacted",
            conversation_id=conversation_id,
            compacted=len(older),
            remaining=len(conversation.messages)
        )

        self.bus.publish(EventName.CONVERSATION_COMPACTED, {
            "conversationId": conversation_id,
            "summary": summary.content,
            "compactedCount": compacted_count,
            "compactionCount": conversation.metadata.compaction_count,
        })
        return conversation

    @staticmethod
    def _summarize(older: list[Message], compacted_count: int, instructions: Optional[str]) -> tuple[str, list[str]]:
        """Fixed-size summary text and the topics it carries forward."""
        previous = [m for m in older if m.metadata.summary]
        turns = [m for m in older if not m.metadata.summary]
        user_turns = [m for m in turns if m.role == MessageRole.USER]
        assistant_count = sum(1 for m in turns if m.role == MessageRole.ASSISTANT)

        lines = [
            f"Summary of {compacted_count} earlier messages "
            f"({len(user_turns)} user, {assistant_count} assistant in this span)."
        ]
        if previous:
            folded = sum(m.metadata.compacted_count for m in previous)
            lines.append(f"Includes an earlier summary of {folded} messages.")

        topics = [topic for m in previous for topic in m.metadata.topics]
        topics.extend(" ".join(m.content.split())[:_TOPIC_LENGTH] for m in user_turns)
        topics = topics[-_SUMMARY_TOPICS:]
        if topics:
            lines.append("Recent topics: " + "; ".join(topics))
        if instructions:
            lines.append(f"Focus: {instructions[:_INSTRUCTIONS_LENGTH]}")

        return "\n".join(lines), topics

    # Providers

    def switch_provider(
        self,
        conversation_id: str,
        provider_id: str,
        model_id: Optional[str] = None
    ) -> Conversation:
        """
        Pin a conversation to a provider, independent of the active provider.

        Raises:
            ConversationNotFound: If the id is unknown
            UnknownProvider: If the provider is not configured
            UnknownModel: If the provider does not offer the model
        """
        conversation = self._require(conversation_id)
        self._validate_provider(provider_id, model_id)

        switch = self._apply_switch(conversation, provider_id, model_id or self._default_model(provider_id))

        logger.info("Conversation provider switched", conversation_id=conversation_id, provider=provider_id)
        self.bus.publish(EventName.CONVERSATION_PROVIDER_SWITCHED, {
            "conversationId": conversation_id,
            "from": switch.from_provider,
            "to": provider_id,
            "model": switch.to_model,
        })
        return conversation

    def record_provider(self, conversation_id: str, provider_id: str, model_id: Optional[str]) -> None:
        """Note the provider that answered; pinning is left unchanged."""
        conversation = self._require(conversation_id)
        state = conversation.session_state
        if state.current_provider != provider_id or state.current_model != model_id:
            self._apply_switch(conversation, provider_id, model_id, pin=False)

    @staticmethod
    def _apply_switch(
        conversation: Conversation,
        provider_id: str,
        model_id: Optional[str],
        pin: bool = True
    ) -> ProviderSwitch:
        state = conversation.session_state
        switch = ProviderSwitch(
            from_provider=state.current_provider,
            to_provider=provider_id,
            from_model=state.current_model,
            to_model=model_id,
        )
        state.provider_history.append(switch)
        state.current_provider = provider_id
        state.current_model = model_id
        state.pinned = state.pinned or pin

        conversation.settings.provider = provider_id
        conversation.settings.model = model_id
        conversation.metadata.updated_at = utcnow()
        return switch

    def _on_provider_updated(self, event: Event) -> None:
        """Apply a registry switch that named this conversation."""
        conversation = self.state.conversations.get(event.data.get("conversationId"))
        if conversation is None:
            return

        provider_id = event.data["providerId"]
        if conversation.session_state.current_provider == provider_id:
            return
        self._apply_switch(conversation, provider_id, event.data.get("model") or self._default_model(provider_id))

    def _on_provider_auto_switched(self, event: Event) -> None:
        """Move conversations pinned to a failed provider along with the failover."""
        failed, target = event.data.get("from"), event.data.get("to")
        for conversation in self.state.conversations.values():
            state = conversation.session_state
            if state.pinned and state.current_provider == failed:
                self._apply_switch(conversation, target, self._default_model(target))
                logger.info("Conversation followed failover", conversation_id=conversation.id, provider=target)

    # Sessions

    def continue_last(self) -> Conversation:
        """
        Continue the most recently updated conversation.

        Raises:
            NoRecentSession: If there are no conversations
        """
        recent = self._by_recent_update()
        if not recent:
            raise NoRecentSession()
        return self._enter_session(recent[0], EventName.SESSION_CONTINUED)

    def resume_session(self, session_id: str) -> Conversation:
        """
        Resume a specific conversation.

        Raises:
            SessionNotFound: If the id is unknown
        """
        conversation = self.state.conversations.get(session_id)
        if conversation is None:
            raise SessionNotFound(session_id)
        return self._enter_session(conversation, EventName.SESSION_RESUMED)

    def _enter_session(self, conversation: Conversation, event_name: EventName) -> Conversation:
        conversation.session_state.continuation_mode = True
        conversation.metadata.last_accessed_at = utcnow()

        previous = self.state.current_id
        self.state.current_id = conversation.id

        logger.info("Session entered", conversation_id=conversation.id, mode=event_name.value)
        self.bus.publish(event_name, {"conversationId": conversation.id})
        self._publish_current_changed(previous)
        return conversation

    def clear(self, conversation_id: str) -> Conversation:
        """Drop all messages and zero the counters; id and title are kept."""
        conversation = self._require(conversation_id)
        conversation.messages = []

        metadata = conversation.metadata
        metadata.message_count = 0
        metadata.token_usage = TokenUsage()
        metadata.cost_tracking = ConversationCost()
        metadata.provider_stats = {}
        metadata.updated_at = utcnow()

        self.bus.publish(EventName.CONVERSATION_CLEARED, {"conversationId": conversation_id})
        return conversation

    def reset_session_cost(self, conversation_id: str) -> None:
        self._require(conversation_id).metadata.cost_tracking.session = 0.0

    # Search and analytics

    def search(self, query: str, type: str = "all", limit: int = 20) -> list[SearchResult]:
        """
        Score conversations against a case-insensitive substring query.

        Title match +10, each matching tag +5, each matching message +1.
        At most limit conversations are returned, each with up to limit
        matching message snippets, newest first.

        Raises:
            ValueError: If type is not all, title, content or tags, or limit is not positive
        """
        if type not in _SEARCH_TYPES:
            raise ValueError(f"Unsupported search type: {type}")
        if limit <= 0:
            raise ValueError(f"Search limit must be positive: {limit}")

        term = query.strip().lower()
        if not term:
            return []

        results = []
        for conversation in self.state.conversations.values():
            score = 0
            matching = []

            if type in ("all", "title") and term in conversation.title.lower():
                score += 10
            if type in ("all", "tags"):
                score += 5 * sum(1 for tag in conversation.metadata.tags if term in tag.lower())
            if type in ("all", "content"):
                matching = [m for m in conversation.messages if term in m.content.lower()]
                score += len(matching)

            if score > 0:
                results.append(SearchResult(
                    conversation_id=conversation.id,
                    title=conversation.title,
                    score=score,
                    matched_messages=len(matching),
                    matches=[
                        SearchMatch(
                            message_id=m.id,
                            role=m.role,
                            snippet=m.content[:_SNIPPET_LENGTH],
                            timestamp=m.timestamp,
                        )
                        for m in reversed(matching[-limit:])
                    ],
                    updated_at=conversation.metadata.updated_at,
                ))

        results.sort(key=lambda r: (r.score, r.updated_at), reverse=True)
        logger.debug("Conversation search", query=query, results=len(results))
        return results[:limit]

    def get_stats(self, conversation_id: str) -> dict[str, Any]:
        """Per-conversation analytics."""
        conversation = self._require(conversation_id)
        messages = conversation.messages
        metadata = conversation.metadata

        total_length = sum(len(m.content) for m in messages)
        return {
            "id": conversation.id,
            "title": conversation.title,
            "message_count": len(messages),
            "total_messages": metadata.message_count,
            "user_messages": sum(1 for m in messages if m.role == MessageRole.USER),
            "assistant_messages": sum(1 for m in messages if m.role == MessageRole.ASSISTANT),
            "token_usage": metadata.token_usage.model_dump(),
            "cost": metadata.cost_tracking.model_dump(),
            "average_message_length": round(total_length / len(messages)) if messages else 0,
            "compaction_count": metadata.compaction_count,
            "provider_stats": {k: v.model_dump(mode="json") for k, v in metadata.provider_stats.items()},
            "current_provider": conversation.session_state.current_provider,
        }

    # Import / export

    def export_conversation(self, conversation_id: str, format: str = "json") -> str:
        """
        Export a conversation as json, markdown or plain text.

        Raises:
            ConversationNotFound: If the id is unknown
            ValueError: If the format is not supported
        """
        conversation = self._require(conversation_id)
        if format not in _EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {format}")

        if format == "json":
            data = conversation.model_dump(mode="json", by_alias=True)
            data["exported_at"] = utcnow().isoformat()
            data["version"] = "1.0"
            return json.dumps(data, indent=2)

        if format == "markdown":
            parts = [
                f"# {conversation.title}\n",
                f"**Created:** {conversation.metadata.created_at.isoformat()}",
                f"**Messages:** {len(conversation.messages)}\n",
            ]
            for m in conversation.messages:
                parts.append(f"## {m.role.value.title()} ({m.timestamp.isoformat()})\n")
                parts.append(f"{m.content}\n")
            return "\n".join(parts)

        lines = [conversation.title, "=" * len(conversation.title), ""]
        for m in conversation.messages:
            lines.append(f"[{m.timestamp.isoformat()}] {m.role.value}:")
            lines.append(m.content)
            lines.append("")
        return "\n".join(lines)

    def import_conversation(self, data: Union[str, dict[str, Any]]) -> str:
        """
        Import a conversation exported as JSON.

        A fresh id is allocated when the id is already in use.

        Raises:
            ValueError: If the data is not a valid conversation
        """
        try:
            raw = json.loads(data) if isinstance(data, str) else dict(data)
            if "id" not in raw or "messages" not in raw:
                raise ValueError("Invalid conversation data format")
            conversation = Conversation.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Invalid conversation data: {e}") from e

        if conversation.id in self.state.conversations:
            conversation.id = new_id("conv")

        conversation.metadata.last_accessed_at = utcnow()
        self.state.conversations[conversation.id] = conversation

        logger.info("Conversation imported", conversation_id=conversation.id)
        self.bus.publish(EventName.CONVERSATION_IMPORTED, {"conversationId": conversation.id})

        self._enforce_session_limit()
        return conversation.id

    # Persistence

    async def save(self) -> bool:
        """Persist every conversation. Failures are logged, never raised."""
        if self.store is None:
            return False
        try:
            await self.store.set(STATE_KEY, self.state.model_dump(mode="json", by_alias=True))
            return True
        except Exception as e:
            logger.error("Failed to save conversations", error=str(e))
            return False

    async def load(self) -> int:
        """
        Restore persisted conversations. In-memory conversations win on id clashes.

        Returns:
            Number of conversations restored
        """
        if self.store is None:
            return 0
        try:
            data = await self.store.get(STATE_KEY)
            if not data:
                return 0
            saved = ConversationStoreState.model_validate(data)
        except Exception as e:
            logger.warning("Failed to load conversations", error=str(e))
            return 0

        restored = 0
        for conversation_id, conversation in saved.conversations.items():
            if conversation_id not in self.state.conversations:
                self.state.conversations[conversation_id] = conversation
                restored += 1

        if self.state.current_id is None and saved.current_id in self.state.conversations:
            self.state.current_id = saved.current_id

        self._enforce_session_limit()
        logger.info("Conversations loaded", count=restored)
        return restored
