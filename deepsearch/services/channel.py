"""Session channel: the WebSocket side of a research session."""

import asyncio
import json
from collections.abc import Callable

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, TypeAdapter, ValidationError

from deepsearch.clients.anthropic import get_anthropic_client
from deepsearch.errors import SessionBusyError
from deepsearch.models.events import (
    CancelIn,
    ClearHistoryIn,
    ControlIn,
    ErrorEvent,
    HistoryEvent,
    ToolApprovalResponseIn,
    ToolOutputIn,
    UserMessageIn,
)
from deepsearch.models.messages import Message, TextPart
from deepsearch.models.session import Session
from deepsearch.services.orchestrator import StepOrchestrator
from deepsearch.services.scheduler import TaskScheduler
from deepsearch.services.session_manager import InMemorySessionManager, session_manager
from deepsearch.tools import get_tools_registry
from deepsearch.utils.logging import get_logger, session_context

logger = get_logger(__name__)

OrchestratorFactory = Callable[[Session], StepOrchestrator]

_control_adapter: TypeAdapter[ControlIn] = TypeAdapter(ControlIn)


def default_orchestrator_factory(session: Session) -> StepOrchestrator:
    return StepOrchestrator(session, get_anthropic_client(), get_tools_registry())


class SessionChannel:
    """Duplex channel between a session's WebSocket connections and its orchestrator.

    Every outbound event is broadcast to all live connections. Each turn runs
    as its own task so the receive loops keep reading tool outputs, approval
    decisions and cancel requests while it streams.
    """

    def __init__(self, session: Session, orchestrator: StepOrchestrator, manager: "ChannelManager"):
        self.session = session
        self.orchestrator = orchestrator
        self.manager = manager
        self.connections: set[WebSocket] = set()
        self._turn: asyncio.Task | None = None
        self._cancel: asyncio.Event | None = None

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def turn_active(self) -> bool:
        return self._turn is not None and not self._turn.done()

    def attach(self, session: Session, orchestrator: StepOrchestrator) -> None:
        """Point the channel at fresh session state, keeping its connections."""
        self.session = session
        self.orchestrator = orchestrator

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one WebSocket connection until it closes."""
        await websocket.accept()
        self.connections.add(websocket)
        self.session.connect()

        with session_context(self.session_id):
            try:
                await self._send(websocket, HistoryEvent(session_id=self.session_id, messages=self.session.messages))
                for event in self.orchestrator.pending_requests():
                    await self._send(websocket, event)
                await self._message_loop(websocket)
            except WebSocketDisconnect:
                logger.info(f"WS disconnected from session {self.session_id}")
            finally:
                # An in-flight turn keeps running; its result is persisted on the session
                self.connections.discard(websocket)
                self.session.disconnect()

    async def _message_loop(self, websocket: WebSocket) -> None:
        while True:
            raw = await websocket.receive_text()
            logger.debug(f"WS IN ({self.session_id}): {raw[:200]}")
            await self.handle_frame(websocket, raw)

    async def handle_frame(self, websocket: WebSocket, raw: str) -> None:
        """Dispatch one inbound frame; malformed frames are reported to the sender only."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON received on session {self.session_id}")
            await self._send(websocket, ErrorEvent(error_text="Invalid JSON"))
            return

        try:
            if isinstance(data, dict) and "role" in data:
                await self._handle_user_message(UserMessageIn.model_validate(data))
                return
            control = _control_adapter.validate_python(data)
        except ValidationError as e:
            logger.warning(f"Malformed frame on session {self.session_id}: {e.error_count()} errors")
            await self._send(websocket, ErrorEvent(error_text=f"Malformed message: {e.errors()[0]['msg']}"))
            return
        except (SessionBusyError, ValueError) as e:
            await self._send(websocket, ErrorEvent(error_text=str(e)))
            return

        if isinstance(control, ToolOutputIn):
            self.orchestrator.supply_tool_output(control.tool_call_id, control.output)
        elif isinstance(control, ToolApprovalResponseIn):
            self.orchestrator.respond_to_approval(control.id, control.approved)
        elif isinstance(control, CancelIn):
            await self.cancel_turn()
        elif isinstance(control, ClearHistoryIn):
            await self.manager.clear_history(self.session_id)

    async def _handle_user_message(self, incoming: UserMessageIn) -> None:
        if not all(isinstance(part, TextPart) for part in incoming.parts):
            raise ValueError("User messages may only contain text parts")
        await self.start_turn(Message(role="user", parts=tuple(incoming.parts)))

    async def start_turn(self, message: Message) -> None:
        """Start a turn in the background.

        Raises:
            SessionBusyError: If a turn is already running
            ValueError: If the message is empty or too long
        """
        if self.turn_active or self.orchestrator.busy:
            raise SessionBusyError(self.session_id)
        self.orchestrator.validate_user_message(message)
        self._cancel = asyncio.Event()
        self._turn = asyncio.create_task(self._run_turn(message, self._cancel), name=f"turn-{self.session_id}")

    async def _run_turn(self, message: Message, cancel: asyncio.Event) -> None:
        try:
            async for event in self.orchestrator.run(message, cancel=cancel, on_finish=self._on_finish):
                await self.broadcast(event)
        except (SessionBusyError, ValueError) as e:
            logger.warning(f"Turn rejected for session {self.session_id}: {e}")
            await self.broadcast(ErrorEvent(error_text=str(e)))
        except Exception as e:
            logger.error(f"Turn failed for session {self.session_id}: {e}", exc_info=True)
            await self.broadcast(
                ErrorEvent(error_text="I apologize, but I'm experiencing technical difficulties. Please try again.")
            )

    async def _on_finish(self, message: Message) -> None:
        logger.info(f"Session {self.session_id} stored assistant message {message.id}: {message.text[:50]}...")

    async def cancel_turn(self, wait: bool = False) -> None:
        """Signal the in-flight turn to stop, optionally waiting for it to wind down."""
        if not self.turn_active or self._cancel is None:
            return
        logger.info(f"Cancelling turn for session {self.session_id}")
        self._cancel.set()
        if wait and self._turn is not None:
            await asyncio.gather(self._turn, return_exceptions=True)

    async def broadcast(self, event: BaseModel) -> None:
        """Send an event to every live connection."""
        for websocket in list(self.connections):
            await self._send(websocket, event)

    async def _send(self, websocket: WebSocket, event: BaseModel) -> None:
        try:
            await websocket.send_text(event.model_dump_json())
        except Exception as e:
            logger.debug(f"Dropping connection on session {self.session_id}: {e}")
            self.connections.discard(websocket)


class ChannelManager:
    """Owns one SessionChannel per live session, plus the task scheduler."""

    def __init__(
        self,
        sessions: InMemorySessionManager | None = None,
        orchestrator_factory: OrchestratorFactory | None = None,
    ):
        self.sessions = sessions or session_manager
        self.orchestrator_factory = orchestrator_factory or default_orchestrator_factory
        self.scheduler = TaskScheduler(self.sessions, broadcast=self.broadcast)
        self.channels: dict[str, SessionChannel] = {}

    def get_channel(self, session_id: str) -> SessionChannel:
        """Get the channel for a session, creating the session on first use."""
        channel = self.channels.get(session_id)
        if channel is None:
            session = self.sessions.get_or_create_session(session_id)
            channel = SessionChannel(session, self.orchestrator_factory(session), self)
            self.channels[session_id] = channel
        return channel

    async def broadcast(self, session_id: str, event: BaseModel) -> None:
        channel = self.channels.get(session_id)
        if channel is None:
            logger.debug(f"No channel for session {session_id}; dropping {event.__class__.__name__}")
            return
        await channel.broadcast(event)

    async def clear_history(self, session_id: str) -> bool:
        """Cancel any turn and scheduled tasks, then destroy the session's state.

        Returns:
            True if the session existed
        """
        channel = self.channels.get(session_id)
        if channel:
            await channel.cancel_turn(wait=True)
        self.scheduler.cancel_all(session_id)
        existed = self.sessions.get_session(session_id) is not None

        if channel is None or not channel.connections:
            self.sessions.delete_session(session_id)
            self.channels.pop(session_id, None)
            return existed

        # Connected clients keep their channel, bound to a fresh session
        session = self.sessions.reset_session(session_id)
        channel.attach(session, self.orchestrator_factory(session))
        await channel.broadcast(HistoryEvent(session_id=session_id, messages=[]))
        logger.info(f"Cleared history for session {session_id}")
        return existed

    async def shutdown(self) -> None:
        """Cancel every in-flight turn and scheduled task."""
        for channel in list(self.channels.values()):
            await channel.cancel_turn(wait=True)
        for session_id in list(self.sessions.sessions):
            self.scheduler.cancel_all(session_id)
        logger.info(f"Channel manager shut down ({len(self.channels)} channels)")


_channel_manager: ChannelManager | None = None


def get_channel_manager() -> ChannelManager:
    """Get or create the channel manager instance."""
    global _channel_manager
    if _channel_manager is None:
        _channel_manager = ChannelManager()
    return _channel_manager
