"""Callback registration and background task tracking for the client state machines."""

import asyncio
import logging
from typing import Callable

logger = logging.getLogger("peer.events")


class EventEmitter:
    """Synchronous pub/sub.

    Handlers run in registration order on the caller's context. A failing
    handler is logged and does not stop the remaining ones.
    """

    def __init__(self):
        self._handlers: dict[str, list[Callable]] = {}

    def on(self, event: str, handler: Callable | None = None):
        """Register ``handler`` for ``event``. Usable as a decorator when handler is omitted."""
        if handler is None:
            def decorator(fn: Callable) -> Callable:
                self.on(event, fn)
                return fn
            return decorator
        self._handlers.setdefault(event, []).append(handler)
        return handler

    def emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Error in {event} handler")


class TaskSet:
    """Keeps strong references to fire-and-forget tasks and logs their failures."""

    def __init__(self, name: str):
        self._name = name
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._done)
        return task

    def _done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logging.getLogger(self._name).error(f"Background task failed: {exc!r}")

    async def cancel_all(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
