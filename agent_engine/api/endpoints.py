"""API endpoints for the agent service."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status

from agent_engine import __version__
from agent_engine.models.conversation import (
    CancelResponse,
    HealthResponse,
    MessageRequest,
    MessageResponse,
    ThreadResponse,
)
from agent_engine.services.agent import AgentService, ProcessOptions
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

_agent_service: AgentService | None = None


def get_agent_service() -> AgentService:
    """Get or create the process-wide agent service."""
    global _agent_service
    if _agent_service is None:
        _agent_service = AgentService.from_settings()
    return _agent_service


@router.post("/threads/{thread_id}/messages", response_model=MessageResponse, tags=["Conversation"])
async def post_message(
    thread_id: str, request: MessageRequest, agent: AgentService = Depends(get_agent_service)
) -> MessageResponse:
    """Post a user message and return the assistant's finalized reply.

    Provider failures do not produce an error status; they come back as a
    reply with status ``failed`` and an explanatory message.
    """
    options = ProcessOptions(
        images=request.images,
        notes=request.notes,
        user_message_id=request.user_message_id,
        include_prior_conversation=request.include_prior_conversation,
        max_turns=request.max_turns,
    )

    try:
        logger.info(f"Processing message for thread {thread_id}: {request.content[:50]}...")
        reply = await agent.process_message(thread_id, request.content, options)
    except ValueError as e:
        logger.warning(f"Message validation error for thread {thread_id}: {e}")
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.info(f"Reply {reply.id} for thread {thread_id} finished as {reply.status}")
    return MessageResponse(thread_id=thread_id, message=reply)


@router.post(
    "/threads/{thread_id}/messages/{message_id}/cancel", response_model=CancelResponse, tags=["Conversation"]
)
async def cancel_message(
    thread_id: str, message_id: str, agent: AgentService = Depends(get_agent_service)
) -> CancelResponse:
    """Cancel a pending assistant reply."""
    cancelled = await agent.cancel_message(thread_id, message_id)
    return CancelResponse(message_id=message_id, cancelled=cancelled)


@router.get("/threads/{thread_id}/messages", response_model=ThreadResponse, tags=["Conversation"])
async def get_messages(thread_id: str, agent: AgentService = Depends(get_agent_service)) -> ThreadResponse:
    """List a thread's messages, oldest first."""
    if not await agent.store.has_thread(thread_id):
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return ThreadResponse(thread_id=thread_id, messages=await agent.get_conversation(thread_id))


@router.delete(
    "/threads/{thread_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Conversation"]
)
async def delete_message(thread_id: str, message_id: str, agent: AgentService = Depends(get_agent_service)) -> Response:
    if not await agent.delete_message(thread_id, message_id):
        raise HTTPException(status_code=404, detail=f"Message not found: {message_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Conversation"])
async def delete_thread(thread_id: str, agent: AgentService = Depends(get_agent_service)) -> Response:
    if not await agent.delete_thread(thread_id):
        raise HTTPException(status_code=404, detail=f"Thread not found: {thread_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(agent: AgentService = Depends(get_agent_service)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
        provider=agent.provider_config.provider,
        model=agent.provider_config.model,
    )


async def shutdown_agent_service() -> None:
    """Release resources held by the agent service, if one was created."""
    global _agent_service
    if _agent_service is not None and _agent_service.local_manager is not None:
        await _agent_service.local_manager.unload()
    _agent_service = None
