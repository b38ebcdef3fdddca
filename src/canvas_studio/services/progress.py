"""Synthetic progress estimation for requests without provider streaming."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from canvas_studio.services.scheduler import Scheduler
from canvas_studio.services.session_store import SessionStore


@dataclass
class ProgressEstimator:
    """Advances a message's progress toward a ceiling on a fixed interval."""

    store: SessionStore
    scheduler: Scheduler
    message_id: str
    session_id: str | None = None
    ceiling: float = 95.0
    duration_ticks: int = 120
    tick_seconds: float = 1.0
    _task: "asyncio.Task[Any] | None" = field(default=None, init=False)

    def start(self) -> None:
        if self._task is None:
            self._task = self.scheduler.spawn(self._run())

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        step = self.ceiling / max(self.duration_ticks, 1)
        while True:
            await self.scheduler.sleep(self.tick_seconds)
            message = self.store.get_message(self.message_id, self.session_id)
            status = message.generation_status if message else None
            if status is None or not status.is_generating:
                return
            if status.progress >= self.ceiling:
                return
            self.store.update_message_status(
                self.message_id,
                session_id=self.session_id,
                progress=min(self.ceiling, status.progress + step),
            )
