"""API endpoints for the research assistant service."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, WebSocket

from deepsearch import __version__
from deepsearch.models.conversation import (
    HealthResponse,
    MessagesResponse,
    ScheduledTaskResponse,
    ScheduleTaskRequest,
    SessionResponse,
)
from deepsearch.models.session import Session
from deepsearch.services.channel import ChannelManager, get_channel_manager
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def _require_session(channels: ChannelManager, session_id: str) -> Session:
    session = channels.sessions.get_session(session_id)
    if not session:
        logger.warning(f"Unknown session ID: {session_id}")
        raise HTTPException(status_code=404, detail=f"Unknown session ID: {session_id}")
    return session


@router.post("/sessions", response_model=SessionResponse, status_code=201, tags=["Sessions"])
async def create_session(channels: ChannelManager = Depends(get_channel_manager)) -> SessionResponse:
    """Create a new research session."""
    session = channels.sessions.get_or_create_session()
    return SessionResponse(session_id=session.session_id)


@router.get("/sessions/{session_id}/messages", response_model=MessagesResponse, tags=["Sessions"])
async def get_messages(session_id: str, channels: ChannelManager = Depends(get_channel_manager)) -> MessagesResponse:
    """Return the stored conversation of a session."""
    session = _require_session(channels, session_id)
    return MessagesResponse(session_id=session_id, messages=session.messages)


@router.delete("/sessions/{session_id}/messages", status_code=204, tags=["Sessions"])
async def clear_messages(session_id: str, channels: ChannelManager = Depends(get_channel_manager)) -> None:
    """Clear a session's history, cancelling any turn and scheduled tasks."""
    _require_session(channels, session_id)
    await channels.clear_history(session_id)


@router.post(
    "/sessions/{session_id}/schedules",
    response_model=ScheduledTaskResponse,
    status_code=201,
    tags=["Schedules"],
)
async def schedule_task(
    session_id: str,
    request: ScheduleTaskRequest,
    channels: ChannelManager = Depends(get_channel_manager),
) -> ScheduledTaskResponse:
    """Schedule a background notification for a session."""
    _require_session(channels, session_id)
    task = channels.scheduler.schedule(session_id, request.description, request.delay_seconds)
    return ScheduledTaskResponse(id=task.id, description=task.description, fire_at=task.fire_at)


@router.get("/sessions/{session_id}/schedules", response_model=list[ScheduledTaskResponse], tags=["Schedules"])
async def list_schedules(
    session_id: str, channels: ChannelManager = Depends(get_channel_manager)
) -> list[ScheduledTaskResponse]:
    """List a session's pending scheduled tasks."""
    _require_session(channels, session_id)
    return [
        ScheduledTaskResponse(id=task.id, description=task.description, fire_at=task.fire_at)
        for task in channels.scheduler.pending(session_id)
    ]


@router.websocket("/sessions/{session_id}/chat")
async def session_chat(
    websocket: WebSocket, session_id: str, channels: ChannelManager = Depends(get_channel_manager)
) -> None:
    """Duplex research channel for a session; the session is created on first connection."""
    channel = channels.get_channel(session_id)
    logger.info(f"WS connecting to session {session_id}")
    await channel.handle_connection(websocket)


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
    )
