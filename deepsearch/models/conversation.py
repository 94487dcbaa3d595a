"""REST request and response models."""

from datetime import datetime

from pydantic import BaseModel, Field

from deepsearch.models.messages import Message


class SessionResponse(BaseModel):
    """Response model for session creation."""

    session_id: str


class MessagesResponse(BaseModel):
    """Conversation history of a session."""

    session_id: str
    messages: list[Message]


class ScheduleTaskRequest(BaseModel):
    """Request model for scheduling a background task."""

    description: str = Field(..., min_length=1, max_length=500)
    delay_seconds: float = Field(..., ge=0, le=7 * 24 * 3600)


class ScheduledTaskResponse(BaseModel):
    """Response model for a scheduled task."""

    id: str
    description: str
    fire_at: datetime


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
