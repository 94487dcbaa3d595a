"""Background tasks that notify a session's connections when they fire."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from cuid2 import cuid_wrapper

from deepsearch.models.events import ScheduledTaskEvent
from deepsearch.models.session import ScheduledTask
from deepsearch.services.session_manager import InMemorySessionManager, session_manager
from deepsearch.utils.logging import get_logger, session_context

logger = get_logger(__name__)

cuid = cuid_wrapper()

Broadcast = Callable[[str, ScheduledTaskEvent], Awaitable[None]]


class TaskScheduler:
    """Runs one asyncio task per scheduled item."""

    def __init__(self, sessions: InMemorySessionManager | None = None, broadcast: Broadcast | None = None):
        self.sessions = sessions or session_manager
        self.broadcast = broadcast
        self._tasks: dict[str, dict[str, asyncio.Task]] = {}

    def schedule(self, session_id: str, description: str, delay_seconds: float) -> ScheduledTask:
        """Schedule a notification for a session.

        Raises:
            KeyError: If the session does not exist
        """
        session = self.sessions.get_session(session_id)
        if session is None:
            raise KeyError(session_id)

        task = ScheduledTask(
            id=cuid(),
            description=description,
            fire_at=datetime.now(UTC) + timedelta(seconds=delay_seconds),
        )
        session.scheduled_tasks.append(task)
        runner = asyncio.create_task(self._run(session_id, task, delay_seconds), name=f"scheduled-{task.id}")
        self._tasks.setdefault(session_id, {})[task.id] = runner
        logger.info(f"Scheduled task {task.id} for session {session_id} in {delay_seconds}s: {description[:50]}")
        return task

    async def _run(self, session_id: str, task: ScheduledTask, delay_seconds: float) -> None:
        with session_context(session_id):
            try:
                await asyncio.sleep(delay_seconds)
                logger.info(f"Executing scheduled task {task.id}: {task.description}")
                if self.broadcast:
                    await self.broadcast(session_id, ScheduledTaskEvent(description=task.description))
            finally:
                self._forget(session_id, task.id)

    def _forget(self, session_id: str, task_id: str) -> None:
        self._tasks.get(session_id, {}).pop(task_id, None)
        session = self.sessions.get_session(session_id)
        if session:
            session.scheduled_tasks = [task for task in session.scheduled_tasks if task.id != task_id]

    def pending(self, session_id: str) -> list[ScheduledTask]:
        session = self.sessions.get_session(session_id)
        return list(session.scheduled_tasks) if session else []

    def cancel_all(self, session_id: str) -> int:
        """Cancel every pending task of a session; returns how many were cancelled."""
        runners = self._tasks.pop(session_id, {})
        for runner in runners.values():
            runner.cancel()
        session = self.sessions.get_session(session_id)
        if session:
            session.scheduled_tasks.clear()
        if runners:
            logger.info(f"Cancelled {len(runners)} scheduled tasks for session {session_id}")
        return len(runners)
