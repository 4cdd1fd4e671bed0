from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Coroutine, Optional, Set

from .errors import user_message

if TYPE_CHECKING:
    from .notifier import TelegramNotifier

log = logging.getLogger("supervisor")


class TaskSupervisor:
    """Owns background work spawned off the chat loop.

    A task that raises is logged with its traceback and reported to the chat
    it was started for (or the admin chat). The failure stays inside the
    task; nothing waits on it.
    """

    def __init__(self, notifier: "TelegramNotifier", admin_chat_id: Optional[int] = None):
        self.notifier = notifier
        self.admin_chat_id = admin_chat_id
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any], chat_id: Optional[int] = None) -> asyncio.Task:
        task = asyncio.create_task(self._guard(name, coro, chat_id), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, name: str, coro: Coroutine[Any, Any, Any], chat_id: Optional[int]) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            log.info("task_cancelled name=%s", name)
            raise
        except Exception as e:
            log.exception("task_failed name=%s", name)
            target = chat_id if chat_id is not None else self.admin_chat_id
            if target is not None:
                await self.notifier.send(f"Background task {name} failed: {user_message(e)}", chat_id=target)
            return None

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for everything currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
