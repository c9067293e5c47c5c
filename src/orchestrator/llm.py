"""Provider clients.

A provider client is the only piece that talks to a model vendor. The
engine needs three things from it: the models it offers, its per-1000-token
rates, and complete(). Vendor adapters go through LlamaIndex packages, which
are imported lazily so the engine runs without them (mock clients).
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from shared.config import ProviderSettings
from shared.errors import TransportError
from shared.logging import get_logger
from shared.models import CostRates, LLMResponse, ModelInfo

logger = get_logger(__name__)

# Vendor SDK exception names that mean "try again later"
_TRANSIENT_ERROR_NAMES = {
    "APIConnectionError",
    "APITimeoutError",
    "RateLimitError",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableError",
    "DeadlineExceeded",
    "ConnectError",
    "ReadTimeout",
}


# Vendor SDK exception names that mean the credential was refused
_AUTH_ERROR_NAMES = {
    "AuthenticationError",
    "PermissionDeniedError",
    "PermissionDenied",
    "Unauthenticated",
    "Unauthorized",
}


def _has_error_name(error: BaseException, names: set[str]) -> bool:
    return any(cls.__name__ in names for cls in type(error).__mro__)


def is_transient_error(error: BaseException) -> bool:
    """Whether an exception raised by a vendor SDK is a transport failure."""
    if isinstance(error, (TransportError, ConnectionError, TimeoutError)):
        return True
    return _has_error_name(error, _TRANSIENT_ERROR_NAMES)


def is_auth_error(error: BaseException) -> bool:
    """Whether an exception raised by a vendor SDK means a bad or revoked key."""
    return isinstance(error, PermissionError) or _has_error_name(error, _AUTH_ERROR_NAMES)


class ProviderClient(ABC):
    """
    Interface the gateway and the registry need from a provider.

    Clients receive messages as plain {"role", "content"} dicts and must
    raise TransportError (or ConnectionError/TimeoutError) for failures
    worth retrying.
    """

    models: list[ModelInfo]
    cost_per_1k: CostRates

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Ordered chat messages
            model: Model id; the client default when None
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            tools: Available tools in OpenAI function format

        Returns:
            Response with content and/or tool calls
        """

    async def health_check(self) -> bool:
        """Probe the provider with a one-token completion."""
        await self.complete([{"role": "user", "content": "ping"}], max_tokens=1)
        return True


def _build_openai(settings: ProviderSettings, model: str, **kwargs: Any) -> Any:
    from llama_index.llms.openai import OpenAI

    return OpenAI(model=model, api_key=settings.resolve_api_key(), api_base=settings.api_base, **kwargs)


def _build_azure_openai(settings: ProviderSettings, model: str, **kwargs: Any) -> Any:
    from llama_index.llms.azure_openai import AzureOpenAI

    return AzureOpenAI(
        engine=model,
        model=model,
        api_key=settings.resolve_api_key(),
        azure_endpoint=settings.api_base,
        api_version=settings.api_version or "2024-02-15-preview",
        **kwargs,
    )


def _build_anthropic(settings: ProviderSettings, model: str, **kwargs: Any) -> Any:
    from llama_index.llms.anthropic import Anthropic

    return Anthropic(model=model, api_key=settings.resolve_api_key(), **kwargs)


def _build_gemini(settings: ProviderSettings, model: str, **kwargs: Any) -> Any:
    from llama_index.llms.gemini import Gemini

    return Gemini(model=f"models/{model}", api_key=settings.resolve_api_key(), **kwargs)


_LLAMA_INDEX_BUILDERS = {
    "openai": _build_openai,
    "azure_openai": _build_azure_openai,
    "anthropic": _build_anthropic,
    "gemini": _build_gemini,
}


class LlamaIndexProviderClient(ProviderClient):
    """Provider client backed by a LlamaIndex LLM integration."""

    def __init__(self, settings: ProviderSettings) -> None:
        if settings.kind not in _LLAMA_INDEX_BUILDERS:
            raise ValueError(f"Unsupported LlamaIndex provider kind: {settings.kind}")
        self.settings = settings
        self.models = list(settings.models)
        self.cost_per_1k = settings.cost_per_1k
        self._llms: dict[tuple, Any] = {}

    def _get_llm(self, model: str, temperature: Optional[float], max_tokens: Optional[int]) -> Any:
        """Lazy, cached construction of the LlamaIndex LLM."""
        key = (model, temperature, max_tokens)
        if key not in self._llms:
            kwargs: dict[str, Any] = {}
            if temperature is not None:
                kwargs["temperature"] = temperature
            if max_tokens is not None:
                kwargs["max_tokens"] = max_tokens
            self._llms[key] = _LLAMA_INDEX_BUILDERS[self.settings.kind](self.settings, model, **kwargs)
        return self._llms[key]

    @staticmethod
    def _convert_messages(messages: list[dict[str, Any]]) -> list[Any]:
        """Convert plain messages to LlamaIndex chat messages."""
        from llama_index.core.llms import ChatMessage, MessageRole

        role_map = {
            "user": MessageRole.USER,
            "assistant": MessageRole.ASSISTANT,
            "system": MessageRole.SYSTEM,
            "tool": MessageRole.TOOL,
        }
        return [
            ChatMessage(role=role_map.get(m.get("role", "user"), MessageRole.USER), content=m.get("content", ""))
            for m in messages
        ]

    @staticmethod
    def _extract_tool_calls(message: Any) -> Optional[list[dict[str, Any]]]:
        raw_calls = (getattr(message, "additional_kwargs", None) or {}).get("tool_calls")
        if not raw_calls:
            return None

        calls = []
        for call in raw_calls:
            if isinstance(call, dict):
                calls.append(call)
                continue
            calls.append({
                "id": call.id,
                "type": "function",
                "function": {"name": call.function.name, "arguments": call.function.arguments},
            })
        return calls

    @staticmethod
    def _extract_usage(raw: Any) -> dict[str, int]:
        """Read token counts from the vendor payload (OpenAI or Anthropic naming)."""
        usage = raw.get("usage") if isinstance(raw, dict) else getattr(raw, "usage", None)
        if usage is None:
            return {}
        if not isinstance(usage, dict):
            usage = {k: getattr(usage, k, None) for k in ("prompt_tokens", "completion_tokens", "input_tokens", "output_tokens")}

        prompt = usage.get("prompt_tokens") or usage.get("input_tokens")
        completion = usage.get("completion_tokens") or usage.get("output_tokens")
        if prompt is None and completion is None:
            return {}
        return {"prompt_tokens": int(prompt or 0), "completion_tokens": int(completion or 0)}

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMResponse:
        model_id = model or self.settings.default_model or self.models[0].id
        llm = self._get_llm(model_id, temperature, max_tokens)
        chat_messages = self._convert_messages(messages)

        try:
            if tools:
                response = await llm.achat(chat_messages, tools=tools)
            else:
                response = await llm.achat(chat_messages)
        except Exception as e:
            if is_transient_error(e):
                raise TransportError(f"{self.settings.id}: {e}", provider_id=self.settings.id) from e
            logger.error("LLM completion failed", provider=self.settings.id, model=model_id, error=str(e))
            raise

        tool_calls = self._extract_tool_calls(response.message)
        return LLMResponse(
            content=response.message.content if response.message else None,
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
            usage=self._extract_usage(getattr(response, "raw", None)),
        )


class MockProviderClient(ProviderClient):
    """Scriptable provider client for tests and offline use."""

    def __init__(
        self,
        models: Optional[list[ModelInfo]] = None,
        cost_per_1k: Optional[CostRates] = None,
        healthy: bool = True
    ) -> None:
        self.models = models or [ModelInfo(id="mock-model", display_name="Mock Model", context_window=8192)]
        self.cost_per_1k = cost_per_1k or CostRates()
        self.healthy = healthy
        self.call_history: list[dict[str, Any]] = []
        self.health_checks = 0
        self._responses: list[LLMResponse] = []
        self._failures: list[Exception] = []

    def set_next_response(self, response: LLMResponse) -> None:
        """Queue the next response to return."""
        self._responses.append(response)

    def fail_next(self, count: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next count calls raise (TransportError by default)."""
        for _ in range(count):
            self._failures.append(error or TransportError("Mock transport failure"))

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        tools: Optional[list[dict[str, Any]]] = None
    ) -> LLMResponse:
        self.call_history.append({
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "tools": tools,
        })

        if self._failures:
            raise self._failures.pop(0)

        if self._responses:
            return self._responses.pop(0)

        return LLMResponse(
            content="This is a mock response.",
            finish_reason="stop",
            usage={"prompt_tokens": 10, "completion_tokens": 5}
        )

    async def health_check(self) -> bool:
        self.health_checks += 1
        if not self.healthy:
            raise TransportError("Mock provider unhealthy")
        return True


def create_provider_client(settings: ProviderSettings) -> ProviderClient:
    """
    Factory function to create the client for a provider.

    Supports the openai, azure_openai, anthropic and gemini kinds (through
    LlamaIndex) and mock.

    Raises:
        ValueError: If the provider kind is not supported
    """
    if settings.kind == "mock":
        client: ProviderClient = MockProviderClient(models=settings.models or None, cost_per_1k=settings.cost_per_1k)
    elif settings.kind in _LLAMA_INDEX_BUILDERS:
        client = LlamaIndexProviderClient(settings)
    else:
        raise ValueError(
            f"Unsupported provider kind: {settings.kind}. "
            f"Supported: {['mock', *_LLAMA_INDEX_BUILDERS]}"
        )

    logger.info("Creating provider client", provider=settings.id, kind=settings.kind)
    return client
