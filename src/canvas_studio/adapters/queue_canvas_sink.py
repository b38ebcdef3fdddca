"""In-process buffer of canvas events for the HTTP surface."""

from collections import deque
from dataclasses import dataclass, field

from canvas_studio.domain.placeholders import CanvasEvent
from canvas_studio.services.placeholders import CanvasEventSink


@dataclass
class QueueCanvasEventSink(CanvasEventSink):
    """Buffers events until the canvas polls for them."""

    max_events: int = 1000
    _events: deque[CanvasEvent] = field(default_factory=deque)

    def emit(self, event: CanvasEvent) -> None:
        self._events.append(event)
        while len(self._events) > self.max_events:
            self._events.popleft()

    def drain(self) -> list[CanvasEvent]:
        """Return and forget every buffered event."""
        events = list(self._events)
        self._events.clear()
        return events
