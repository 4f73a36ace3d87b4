"""Request and response models for the HTTP API."""

from datetime import datetime

from pydantic import BaseModel, Field

from agent_engine.models.messages import ConversationMessage, ImageAttachment, NoteAttachment


class MessageRequest(BaseModel):
    """Request model for posting a user message to a thread."""

    content: str
    images: list[ImageAttachment] = Field(default_factory=list)
    notes: list[NoteAttachment] = Field(default_factory=list)
    user_message_id: str | None = None
    include_prior_conversation: bool = True
    max_turns: int | None = Field(default=None, ge=1)


class MessageResponse(BaseModel):
    """Response model carrying the finalized assistant reply."""

    thread_id: str
    message: ConversationMessage


class ThreadResponse(BaseModel):
    """Response model for a thread's messages."""

    thread_id: str
    messages: list[ConversationMessage]


class CancelResponse(BaseModel):
    message_id: str
    cancelled: bool


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
    provider: str
    model: str
