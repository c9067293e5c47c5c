"""Orchestrator - FastAPI Application.

Local, single-user HTTP surface for the interactive client:
- Provider status, activation, model selection and cost reset
- Chat
- Conversation and session management
- Recent bus events
"""

from contextlib import asynccontextmanager
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.errors import BUG, NEEDS_SETUP, NOT_FOUND, TRANSIENT, OrchestratorError
from shared.logging import get_logger, setup_logging
from shared.models import ChatResult, Conversation
from orchestrator.app import Orchestrator, build_orchestrator
from orchestrator.llm import ProviderClient
from orchestrator.persistence import KeyValueStore

logger = get_logger(__name__)

STATUS_BY_CATEGORY = {
    NOT_FOUND: status.HTTP_404_NOT_FOUND,
    NEEDS_SETUP: status.HTTP_400_BAD_REQUEST,
    TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    BUG: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


# Request Models
class ChatRequest(BaseModel):
    """Chat request from the client."""
    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(default=None, description="Existing conversation ID")
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    use_tools: bool = True


class CreateConversationRequest(BaseModel):
    title: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4000, gt=0)
    system_prompt: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class ActivateProviderRequest(BaseModel):
    reason: str = "manual"
    conversation_id: Optional[str] = None


class SetModelRequest(BaseModel):
    model: str


class ResetCostsRequest(BaseModel):
    provider_id: Optional[str] = None


class CompactRequest(BaseModel):
    instructions: Optional[str] = None


class SwitchConversationProviderRequest(BaseModel):
    provider: str
    model: Optional[str] = None


def error_status(category: str) -> int:
    return STATUS_BY_CATEGORY.get(category, status.HTTP_500_INTERNAL_SERVER_ERROR)


async def handle_orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Map an error category to an HTTP status with a structured body."""
    logger.info("Request failed", path=request.url.path, code=exc.code, category=exc.category)
    return JSONResponse(
        status_code=error_status(exc.category),
        content=exc.to_info().model_dump(mode="json"),
    )


def get_orchestrator(request: Request) -> Orchestrator:
    """Dependency to get the running orchestrator."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Orchestrator not initialized"
        )
    return orchestrator


def conversation_view(conversation: Conversation) -> dict[str, Any]:
    return conversation.model_dump(mode="json", by_alias=True)


router = APIRouter()


@router.get("/health", tags=["System"])
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Health check endpoint."""
    gateway_status = orchestrator.gateway.health_check()
    return {
        "status": "healthy" if gateway_status["gateway"] == "healthy" else "degraded",
        **gateway_status,
        "global_cost": orchestrator.registry.global_cost.model_dump(),
        "bus": orchestrator.bus.get_stats(),
    }


@router.get("/providers", tags=["Providers"])
async def list_providers(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """List providers with their status and usage."""
    registry = orchestrator.registry
    return {
        "providers": [p.model_dump(mode="json") for p in registry.providers],
        "active_provider": registry.active_provider_id,
        "global_cost": registry.global_cost.model_dump(),
    }


@router.post("/providers/reset-costs", tags=["Providers"])
async def reset_costs(
    request: Optional[ResetCostsRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Reset session cost counters for one provider or all of them."""
    orchestrator.registry.reset_session_costs(request.provider_id if request else None)
    return {"global_cost": orchestrator.registry.global_cost.model_dump()}


@router.post("/providers/{provider_id}/activate", tags=["Providers"])
async def activate_provider(
    provider_id: str,
    request: Optional[ActivateProviderRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Make a provider the active one."""
    request = request or ActivateProviderRequest()
    record = orchestrator.registry.switch_active_provider(
        provider_id,
        reason=request.reason,
        conversation_id=request.conversation_id,
    )
    return record.model_dump(mode="json", by_alias=True)


@router.put("/providers/{provider_id}/model", tags=["Providers"])
async def set_provider_model(
    provider_id: str,
    request: SetModelRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Select a provider's model."""
    provider = orchestrator.registry.set_model(provider_id, request.model)
    return provider.model_dump(mode="json")


@router.post("/chat", response_model=ChatResult, tags=["Chat"])
async def chat(
    request: ChatRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """
    Process a chat message.

    Starts a new conversation when no conversation_id is given.
    """
    conversation_id = request.conversation_id or orchestrator.conversations.create_conversation()

    result = await orchestrator.gateway.send(
        conversation_id,
        request.message,
        system_prompt=request.system_prompt,
        model=request.model,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
        use_tools=request.use_tools,
    )

    if not result.success and result.error is not None:
        return JSONResponse(
            status_code=error_status(result.error.category),
            content=result.model_dump(mode="json"),
        )
    return result


@router.get("/conversations", tags=["Conversations"])
async def list_conversations(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """List conversations, most recently updated first."""
    return {"conversations": orchestrator.conversations.list_conversations()}


@router.post("/conversations", status_code=status.HTTP_201_CREATED, tags=["Conversations"])
async def create_conversation(
    request: Optional[CreateConversationRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Create a conversation and make it current."""
    request = request or CreateConversationRequest()
    conversation_id = orchestrator.conversations.create_conversation(**request.model_dump())
    return {"conversation_id": conversation_id}


@router.get("/conversations/search", tags=["Conversations"])
async def search_conversations(
    q: str = Query(..., min_length=1),
    type: Literal["all", "title", "content", "tags"] = "all",
    limit: int = Query(20, ge=1, le=100),
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Search conversations by title, tags and message content."""
    results = orchestrator.conversations.search(q, type=type, limit=limit)
    return {"results": [r.model_dump(mode="json") for r in results], "count": len(results)}


@router.get("/conversations/{conversation_id}", tags=["Conversations"])
async def get_conversation(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Get a conversation with its messages."""
    return conversation_view(orchestrator.conversations.get(conversation_id))


@router.delete("/conversations/{conversation_id}", tags=["Conversations"])
async def delete_conversation(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Delete a conversation."""
    orchestrator.gateway.cancel(conversation_id)
    orchestrator.conversations.delete(conversation_id)
    return {"status": "deleted"}


@router.get("/conversations/{conversation_id}/export", tags=["Conversations"])
async def export_conversation(
    conversation_id: str,
    format: Literal["json", "markdown", "plain"] = "json",
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Export a conversation as json, markdown or plain text."""
    exported = orchestrator.conversations.export_conversation(conversation_id, format)
    media_type = "application/json" if format == "json" else "text/plain"
    return PlainTextResponse(exported, media_type=media_type)


@router.post("/conversations/{conversation_id}/compact", tags=["Conversations"])
async def compact_conversation(
    conversation_id: str,
    request: Optional[CompactRequest] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Summarize everything older than the context window."""
    instructions = request.instructions if request else None
    return conversation_view(orchestrator.conversations.compact(conversation_id, instructions))


@router.post("/conversations/{conversation_id}/clear", tags=["Conversations"])
async def clear_conversation(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Drop all messages and zero the counters."""
    return conversation_view(orchestrator.conversations.clear(conversation_id))


@router.post("/conversations/{conversation_id}/provider", tags=["Conversations"])
async def switch_conversation_provider(
    conversation_id: str,
    request: SwitchConversationProviderRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Pin a conversation to a provider."""
    conversation = orchestrator.conversations.switch_provider(conversation_id, request.provider, request.model)
    return conversation_view(conversation)


@router.post("/conversations/{conversation_id}/resume", tags=["Sessions"])
async def resume_session(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Resume a session and make it current."""
    return conversation_view(orchestrator.conversations.resume_session(conversation_id))


@router.post("/conversations/{conversation_id}/cancel", tags=["Chat"])
async def cancel_send(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Cancel the in-flight chat request of a conversation."""
    return {"cancelled": orchestrator.gateway.cancel(conversation_id)}


@router.post("/sessions/continue", tags=["Sessions"])
async def continue_session(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Continue the most recently updated session."""
    return conversation_view(orchestrator.conversations.continue_last())


@router.get("/events", tags=["System"])
async def recent_events(
    name: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=1000),
    orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """Recent bus events, oldest first."""
    events = orchestrator.bus.history(name, limit=limit)
    return {"events": [e.model_dump(mode="json") for e in events], "count": len(events)}


def create_app(
    settings: Optional[Settings] = None,
    clients: Optional[dict[str, ProviderClient]] = None,
    store: Optional[KeyValueStore] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (get_settings() at startup when None)
        clients: Provider clients to use instead of building them
        store: Persistence backend to use instead of the configured one
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        resolved = settings or get_settings()
        setup_logging(resolved.log_level, json_output=resolved.environment == "production")

        logger.info("Starting Orchestrator")
        orchestrator = build_orchestrator(resolved, clients=clients, store=store)
        await orchestrator.start()
        app.state.orchestrator = orchestrator

        yield

        logger.info("Shutting down Orchestrator")
        await orchestrator.stop()
        app.state.orchestrator = None

    app = FastAPI(
        title="Provider Orchestrator",
        description="Provider orchestration and conversation state engine",
        version="0.1.0",
        lifespan=lifespan
    )

    # Local single-user app; the interactive client runs on another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(OrchestratorError, handle_orchestrator_error)
    app.include_router(router)
    return app


app = create_app()


def main():
    """Run the Orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
