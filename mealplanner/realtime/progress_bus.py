import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from ..schemas import GenerationProgress

logger = logging.getLogger("mealplanner.planner")

Listener = Callable[[GenerationProgress], None]

# Phases after which no more events are published for a run
TERMINAL_PHASES = ("complete", "error", "cancelled", "discarded")


class ProgressBus:
    """
    In-process pub/sub for one PlanJob's progress events.

    Listeners are plain callables. stream() subscribes at once and yields
    events through an asyncio.Queue until a terminal event has been
    delivered.
    """

    def __init__(self):
        self._listeners: list[Listener] = []
        self.last: Optional[GenerationProgress] = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: GenerationProgress):
        self.last = event
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                # A broken UI listener must not abort generation
                logger.error(f"Progress listener failed: {e}")

    def stream(self) -> AsyncIterator[GenerationProgress]:
        """
        Subscribe now and return an async iterator over the queued events.

        Events published before iteration starts are buffered, not lost.
        """
        queue: asyncio.Queue = asyncio.Queue()
        unsubscribe = self.subscribe(queue.put_nowait)
        return self._drain(queue, unsubscribe)

    @staticmethod
    async def _drain(queue: asyncio.Queue, unsubscribe: Callable[[], None]) -> AsyncIterator[GenerationProgress]:
        try:
            while True:
                event = await queue.get()
                yield event
                if event.phase in TERMINAL_PHASES or event.state == "ready":
                    break
        finally:
            unsubscribe()
