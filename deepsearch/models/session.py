"""Session and state management models."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from deepsearch.models.messages import Message
from deepsearch.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ScheduledTask:
    """A background task that fires an out-of-band notification."""

    id: str
    description: str
    fire_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "description": self.description, "fire_at": self.fire_at.isoformat()}


@dataclass
class Session:
    """Session state: the conversation and its live connections."""

    session_id: str
    messages: list[Message] = field(default_factory=list)
    connections: int = 0
    scheduled_tasks: list[ScheduledTask] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def connectivity(self) -> Literal["connected", "disconnected"]:
        return "connected" if self.connections > 0 else "disconnected"

    def as_dict(self) -> dict[str, Any]:
        """Return the session as a dictionary."""
        return {
            "session_id": self.session_id,
            "message_count": len(self.messages),
            "connectivity": self.connectivity,
            "scheduled_tasks": [task.as_dict() for task in self.scheduled_tasks],
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def append_message(self, message: Message) -> None:
        """Append a message to the conversation."""
        self.messages.append(message)
        self.update_activity()

    def connect(self) -> None:
        self.connections += 1
        logger.info(f"Session {self.session_id} connected ({self.connections} connections)")
        self.update_activity()

    def disconnect(self) -> None:
        self.connections = max(0, self.connections - 1)
        logger.info(f"Session {self.session_id} disconnected ({self.connections} connections)")
        self.update_activity()
