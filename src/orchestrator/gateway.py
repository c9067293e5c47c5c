"""Provider Gateway - turns a chat turn into a provider call and back.

The gateway coordinates:
- Provider selection (pinned conversation provider or the active one)
- Prompt assembly from the conversation's trailing history
- Retries with linear backoff and per-call timeouts
- Tool call execution via the tool registry
- Usage reporting to the registry and message accounting in the store
"""

import asyncio
import json
import math
import time
from typing import Any, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from shared.config import GatewaySettings
from shared.errors import (
    NEEDS_SETUP,
    ConfigurationError,
    OrchestratorError,
    ProviderAuthFailed,
    ProviderRejected,
    ProviderUnavailable,
    Timeout,
    UnknownModel,
)
from shared.logging import bind_context, get_logger, unbind_context
from shared.models import (
    ChatResult,
    Conversation,
    Event,
    LLMResponse,
    MessageRole,
    Provider,
    ProviderStatus,
    ToolResult,
    ToolResultStatus,
    Usage,
)
from orchestrator.bus import EventBus
from orchestrator.conversation import ConversationStore
from orchestrator.events import EventName
from orchestrator.llm import ProviderClient, is_auth_error, is_transient_error
from orchestrator.registry import ProviderRegistry
from orchestrator.tools import ToolRegistry

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
SUBSCRIBER = "provider-gateway"


def estimate_tokens(text: str) -> int:
    """Heuristic token count used when a provider reports none."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class ProviderGateway:
    """
    Provider Gateway - routes chat turns to providers.

    Sends against the same conversation are serialized with one lock per
    conversation; different conversations run concurrently.
    """

    def __init__(
        self,
        bus: EventBus,
        registry: ProviderRegistry,
        conversations: ConversationStore,
        tools: Optional[ToolRegistry] = None,
        settings: Optional[GatewaySettings] = None
    ) -> None:
        """
        Initialize provider gateway.

        Args:
            bus: Event bus shared with the registry and the store
            registry: Provider registry (status, clients, usage)
            conversations: Conversation store
            tools: Optional tool registry for structured tool calls
            settings: Retry, timeout and prompt settings
        """
        self.bus = bus
        self.registry = registry
        self.conversations = conversations
        self.tools = tools
        self.settings = settings or GatewaySettings()

        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, asyncio.Task] = {}

        bus.subscribe(EventName.CONVERSATION_DELETED, self._on_conversation_gone, owner=SUBSCRIBER)
        bus.subscribe(EventName.CONVERSATION_EVICTED, self._on_conversation_gone, owner=SUBSCRIBER)

    def _on_conversation_gone(self, event: Event) -> None:
        self._locks.pop(event.data.get("conversationId"), None)

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    def cancel(self, conversation_id: str) -> bool:
        """
        Cancel the in-flight send for a conversation.

        The task running send() receives CancelledError and the
        conversation's lock is released.

        Returns:
            True if a send was cancelled
        """
        task = self._in_flight.get(conversation_id)
        if task is None or task.done():
            return False

        task.cancel()
        logger.info("Send cancelled", conversation_id=conversation_id)
        return True

    async def send(
        self,
        conversation_id: str,
        user_message: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        use_tools: bool = True
    ) -> ChatResult:
        """
        Send a user message and return the provider's reply.

        Configuration problems (no credential, unknown model), exhausted
        retries, an open circuit breaker and provider errors come back as
        unsuccessful ChatResults, never as exceptions.

        Args:
            conversation_id: Conversation to continue
            user_message: User's input message
            system_prompt: Overrides the conversation and default prompts
            model: Overrides the conversation's model
            temperature: Overrides the conversation's temperature
            max_tokens: Overrides the conversation's max tokens
            use_tools: Offer registered tools to the provider

        Raises:
            ConversationNotFound: If the conversation does not exist
        """
        self.conversations.get(conversation_id)

        async with self._lock_for(conversation_id):
            task = asyncio.current_task()
            if task is not None:
                self._in_flight[conversation_id] = task
            bind_context(conversation_id=conversation_id)
            try:
                return await self._send(
                    conversation_id,
                    user_message,
                    system_prompt=system_prompt,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    use_tools=use_tools,
                )
            finally:
                self._in_flight.pop(conversation_id, None)
                unbind_context("conversation_id")

    def _resolve_provider(self, conversation: Conversation) -> Optional[str]:
        """Pinned provider unless its breaker is open, else the active provider."""
        state = conversation.session_state
        pinned = state.current_provider if state.pinned else None
        if pinned and self.registry.has_provider(pinned):
            if self.registry.get_breaker(pinned).allow_request():
                return pinned
            logger.warning(
                "Pinned provider unavailable, using active provider",
                provider=pinned,
                active=self.registry.active_provider_id
            )
        return self.registry.active_provider_id

    def _resolve_model(self, conversation: Conversation, provider: Provider, model: Optional[str]) -> Optional[str]:
        if model:
            return model
        state = conversation.session_state
        if state.pinned and state.current_provider == provider.id and state.current_model:
            return state.current_model
        return provider.model

    async def _send(
        self,
        conversation_id: str,
        user_message: str,
        system_prompt: Optional[str],
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        use_tools: bool
    ) -> ChatResult:
        conversation = self.conversations.get(conversation_id)

        provider_id = self._resolve_provider(conversation)
        if provider_id is None:
            error = ConfigurationError("No provider is configured")
            return ChatResult(
                success=False,
                conversation_id=conversation_id,
                needs_credential=True,
                error=error.to_info(),
            )

        provider = self.registry.get_provider(provider_id)
        client = self.registry.get_client(provider_id)

        if not provider.has_credential or client is None:
            logger.warning("Provider needs a credential", provider=provider_id)
            self.bus.publish(EventName.PROVIDER_CREDENTIAL_REQUIRED, {
                "providerId": provider_id,
                "conversationId": conversation_id,
            })
            error = ConfigurationError(
                f"Provider '{provider_id}' has no credential configured",
                provider_id=provider_id,
            )
            return ChatResult(
                success=False,
                conversation_id=conversation_id,
                provider=provider_id,
                needs_credential=True,
                error=error.to_info(),
            )

        model_id = self._resolve_model(conversation, provider, model)
        if model_id and provider.available_models and provider.get_model(model_id) is None:
            return ChatResult(
                success=False,
                conversation_id=conversation_id,
                provider=provider_id,
                error=UnknownModel(provider_id, model_id).to_info(),
            )

        if not self.registry.get_breaker(provider_id).allow_request():
            logger.warning("Circuit breaker open, call skipped", provider=provider_id)
            return ChatResult(
                success=False,
                conversation_id=conversation_id,
                provider=provider_id,
                model=model_id,
                error=ProviderUnavailable(provider_id, 0, "Circuit breaker open").to_info(),
            )

        messages = self._build_messages(conversation, user_message, system_prompt)
        tools = self.tools.get_tools_for_llm() if use_tools and self.tools else None

        logger.info("Sending message", provider=provider_id, model=model_id, history=len(messages) - 1)

        start_time = time.time()
        try:
            response = await self._complete_with_retry(
                provider_id,
                client,
                messages,
                model=model_id,
                temperature=temperature if temperature is not None else conversation.settings.temperature,
                max_tokens=max_tokens or conversation.settings.max_tokens,
                tools=tools or None,
            )
        except OrchestratorError as e:
            self.registry.record_failure(provider_id, e.details.get("last_error") or e.message)
            return ChatResult(
                success=False,
                conversation_id=conversation_id,
                provider=provider_id,
                model=model_id,
                needs_credential=e.category == NEEDS_SETUP,
                error=e.to_info(),
            )
        processing_time = time.time() - start_time

        self.registry.record_success(provider_id)

        tool_results = await self._run_tool_calls(response) if response.tool_calls else []
        content = self._compose_content(response, tool_results)
        usage = self._compute_usage(provider, messages, response, content)

        self.registry.track_usage(provider_id, usage.total_tokens, usage.cost)

        self.conversations.record_provider(conversation_id, provider_id, model_id)
        self.conversations.add_message(
            conversation_id,
            MessageRole.USER,
            user_message,
            provider=provider_id,
            model=model_id,
            input_tokens=usage.input_tokens,
        )
        self.conversations.add_message(
            conversation_id,
            MessageRole.ASSISTANT,
            content,
            provider=provider_id,
            model=model_id,
            output_tokens=usage.output_tokens,
            cost=usage.cost,
            processing_time=processing_time,
            tool_results=[r.model_dump(mode="json") for r in tool_results],
        )

        self.bus.publish(EventName.MESSAGE_COMPLETED, {
            "conversationId": conversation_id,
            "providerId": provider_id,
            "model": model_id,
            "usage": usage.model_dump(),
        })

        return ChatResult(
            success=True,
            conversation_id=conversation_id,
            content=content,
            provider=provider_id,
            model=model_id,
            usage=usage,
            tool_results=tool_results,
        )

    def _build_messages(
        self,
        conversation: Conversation,
        user_message: str,
        system_prompt: Optional[str]
    ) -> list[dict[str, Any]]:
        """System prompt, trailing history window, then the new user message."""
        messages: list[dict[str, Any]] = []

        prompt = system_prompt or conversation.settings.system_prompt or self.settings.system_prompt
        if prompt:
            messages.append({"role": "system", "content": prompt})

        for message in self.conversations.get_context_messages(conversation.id, self.settings.history_window):
            messages.append({"role": message.role.value, "content": message.content})

        messages.append({"role": "user", "content": user_message})
        return messages

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Provider call failed, retrying",
            attempt=retry_state.attempt_number,
            wait=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error)
        )

    async def _complete_with_retry(
        self,
        provider_id: str,
        client: ProviderClient,
        messages: list[dict[str, Any]],
        **options: Any
    ) -> LLMResponse:
        """
        Call the client, retrying transport failures with linear backoff.

        Raises:
            ProviderUnavailable: When every attempt failed at the transport level
            ProviderAuthFailed: When the provider refused the credential
            ProviderRejected: For any other failure; not retried
        """
        backoff = self.settings.retry_backoff_seconds
        attempts = 0

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(self.settings.max_retries, 1)),
                wait=wait_incrementing(start=backoff, increment=backoff),
                retry=retry_if_exception(is_transient_error),
                before_sleep=self._log_retry,
                reraise=True
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await self._complete_once(client, messages, **options)
        except Exception as e:
            error = str(e) or type(e).__name__
            if is_transient_error(e):
                logger.error("Provider unavailable", provider=provider_id, attempts=attempts, error=error)
                raise ProviderUnavailable(provider_id, attempts, error) from e
            if is_auth_error(e):
                logger.error("Provider refused credential", provider=provider_id, error=error)
                raise ProviderAuthFailed(provider_id, error) from e
            if isinstance(e, OrchestratorError):
                raise
            logger.error("Provider call failed", provider=provider_id, error=error)
            raise ProviderRejected(provider_id, error) from e

        raise ProviderUnavailable(provider_id, attempts, "No attempt was made")

    async def _complete_once(
        self,
        client: ProviderClient,
        messages: list[dict[str, Any]],
        **options: Any
    ) -> LLMResponse:
        timeout = self.settings.request_timeout_seconds
        try:
            return await asyncio.wait_for(client.complete(messages, **options), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise Timeout(f"Provider call timed out after {timeout}s", timeout_seconds=timeout) from e

    async def _run_tool_calls(self, response: LLMResponse) -> list[ToolResult]:
        results = []
        for tool_call in response.tool_calls or []:
            results.append(await self._execute_tool_call(tool_call))
        return results

    async def _execute_tool_call(self, tool_call: dict[str, Any]) -> ToolResult:
        """Resolve, validate and execute a single tool call."""
        function = tool_call.get("function", {})
        tool_name = function.get("name", "")

        try:
            args_str = function.get("arguments") or "{}"
            parameters = json.loads(args_str) if isinstance(args_str, str) else args_str
        except json.JSONDecodeError:
            return ToolResult(
                tool_name=tool_name,
                status=ToolResultStatus.VALIDATION_ERROR,
                error="Invalid tool call arguments",
                error_code="VALIDATION_ERROR"
            )

        if self.tools is None:
            return ToolResult(
                tool_name=tool_name,
                status=ToolResultStatus.NOT_FOUND,
                error="No tools are available",
                error_code="TOOL_NOT_FOUND"
            )

        logger.info("Executing tool", tool=tool_name)
        return await self.tools.invoke(tool_name, parameters)

    @staticmethod
    def _format_tool_result(result: ToolResult) -> str:
        """One confirmation line per tool call; payloads stay out of the chat."""
        if result.status == ToolResultStatus.SUCCESS:
            return f"[{result.tool_name}] completed"
        return f"[{result.tool_name}] failed: {result.error or result.status.value}"

    def _compose_content(self, response: LLMResponse, tool_results: list[ToolResult]) -> str:
        text = (response.content or "").strip()
        if not tool_results:
            return text
        confirmations = "\n".join(self._format_tool_result(r) for r in tool_results)
        return f"{text}\n\n{confirmations}" if text else confirmations

    @staticmethod
    def _compute_usage(
        provider: Provider,
        messages: list[dict[str, Any]],
        response: LLMResponse,
        content: str
    ) -> Usage:
        reported = response.usage or {}
        prompt = reported.get("prompt_tokens")
        completion = reported.get("completion_tokens")

        if prompt is None and completion is None:
            input_tokens = estimate_tokens("".join(str(m.get("content") or "") for m in messages))
            output_tokens = estimate_tokens(content)
            estimated = True
        else:
            input_tokens = int(prompt or 0)
            output_tokens = int(completion or 0)
            estimated = False

        rates = provider.cost_per_1k
        cost = input_tokens / 1000 * rates.input + output_tokens / 1000 * rates.output

        return Usage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost=cost,
            estimated=estimated,
        )

    def get_conversation_history(self, conversation_id: str) -> list[dict[str, Any]]:
        """Get formatted conversation history."""
        conversation = self.conversations.get(conversation_id)
        return [
            {
                "id": m.id,
                "role": m.role.value,
                "content": m.content,
                "timestamp": m.timestamp.isoformat(),
                "provider": m.metadata.provider,
                "summary": m.metadata.summary,
            }
            for m in conversation.messages
        ]

    def health_check(self) -> dict[str, Any]:
        """Gateway health including the provider registry."""
        active = self.registry.get_active_provider()
        return {
            "gateway": "healthy" if active and active.status == ProviderStatus.CONNECTED else "degraded",
            "active_provider": active.id if active else None,
            "providers": self.registry.get_stats()["providers"],
            "conversations": len(self.conversations),
            "tools": len(self.tools.list_tools()) if self.tools else 0,
            "in_flight": sum(1 for t in self._in_flight.values() if not t.done()),
        }
