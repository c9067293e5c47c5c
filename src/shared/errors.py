"""Error taxonomy for the orchestration engine.

Every error carries a category so callers can tell a problem that needs
setup from a transient failure and from a bug:

- needs_setup: missing credential, unknown provider or model
- transient: provider unreachable, timeouts
- not_found: unknown conversation or session
- bug: anything unexpected, including failing tools
"""

from typing import Any

from shared.models import ErrorInfo

NEEDS_SETUP = "needs_setup"
TRANSIENT = "transient"
NOT_FOUND = "not_found"
BUG = "bug"


class OrchestratorError(Exception):
    """Base exception for orchestration errors."""

    category: str = BUG

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_info(self) -> ErrorInfo:
        """Return a structured, serializable description of the error."""
        return ErrorInfo(
            code=self.code,
            message=self.message,
            category=self.category,
            details=self.details,
        )


class ConfigurationError(OrchestratorError):
    """The engine is not configured for the requested operation."""
    category = NEEDS_SETUP


class UnknownProvider(ConfigurationError):
    """Provider id is not registered."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown provider: {provider_id}", provider_id=provider_id)
        self.provider_id = provider_id


class UnknownModel(ConfigurationError):
    """Model id is not offered by the provider."""

    def __init__(self, provider_id: str, model_id: str) -> None:
        super().__init__(
            f"Unknown model '{model_id}' for provider '{provider_id}'",
            provider_id=provider_id,
            model_id=model_id,
        )
        self.provider_id = provider_id
        self.model_id = model_id


class ProviderNotReady(ConfigurationError):
    """Provider is not connected. Used for warnings, switching is never blocked."""

    def __init__(self, provider_id: str, status: str) -> None:
        super().__init__(
            f"Provider '{provider_id}' is not ready (status: {status})",
            provider_id=provider_id,
            status=status,
        )


class ConversationNotFound(OrchestratorError):
    category = NOT_FOUND

    def __init__(self, conversation_id: str) -> None:
        super().__init__(
            f"Conversation not found: {conversation_id}",
            conversation_id=conversation_id,
        )


class SessionNotFound(OrchestratorError):
    category = NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", session_id=session_id)


class NoRecentSession(OrchestratorError):
    category = NOT_FOUND

    def __init__(self) -> None:
        super().__init__("No recent session to continue")


class Timeout(OrchestratorError, TimeoutError):
    """A correlated wait expired."""
    category = TRANSIENT


class TransportError(OrchestratorError):
    """A single provider call failed at the transport level. Retryable."""
    category = TRANSIENT


class ProviderUnavailable(OrchestratorError):
    """Provider calls kept failing after all retries."""
    category = TRANSIENT

    def __init__(self, provider_id: str, attempts: int, last_error: str) -> None:
        super().__init__(
            f"Provider '{provider_id}' unavailable after {attempts} attempts: {last_error}",
            provider_id=provider_id,
            attempts=attempts,
            last_error=last_error,
        )


class ProviderRejected(OrchestratorError):
    """The provider refused the call for a reason retrying will not fix."""

    def __init__(self, provider_id: str, error: str) -> None:
        super().__init__(
            f"Provider '{provider_id}' rejected the request: {error}",
            provider_id=provider_id,
            last_error=error,
        )


class ProviderAuthFailed(ConfigurationError):
    """The provider refused the configured credential."""

    def __init__(self, provider_id: str, error: str) -> None:
        super().__init__(
            f"Provider '{provider_id}' refused the credential: {error}",
            provider_id=provider_id,
            last_error=error,
        )


class ToolExecutionFailed(OrchestratorError):
    """A tool handler raised."""

    def __init__(self, tool_name: str, error: str) -> None:
        super().__init__(f"Tool '{tool_name}' failed: {error}", tool_name=tool_name)
        self.tool_name = tool_name
