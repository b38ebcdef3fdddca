"""Clock and task-spawning abstraction."""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from canvas_studio.domain.sessions import utcnow


class Scheduler(Protocol):
    """Interface for time and background work."""

    def now(self) -> datetime:
        """Return the current time."""

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for the given delay."""

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        """Start a coroutine in the background and return its task."""


@dataclass
class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio loop."""

    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> "asyncio.Task[Any]":
        return asyncio.get_running_loop().create_task(coro)
