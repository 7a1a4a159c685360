"""In-process async event bus for capture and search notifications."""

import asyncio
import inspect
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger


@dataclass
class Event:
    """
    Something that happened inside the core.

    Types follow `category.action`: capture.recorded, capture.pending,
    capture.timed_out, capture.failed, search.completed, search.degraded.
    """
    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)
    source: Optional[str] = None
    correlation_id: Optional[str] = None


def _make_ref(handler: Callable) -> Callable[[], Optional[Callable]]:
    if inspect.ismethod(handler):
        return weakref.WeakMethod(handler)
    return weakref.ref(handler)


class EventBus:
    """
    Async pub/sub bus.

    Handlers are held weakly and matched by exact type, `category.*` or `*`.
    Emitting never blocks callers; a full queue drops the event.
    """

    def __init__(self, max_queue: int = 1000):
        self._subscribers: Dict[str, List[Callable[[], Optional[Callable]]]] = defaultdict(list)
        self._event_queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._stats = defaultdict(int)

    def subscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        """Subscribe a sync or async handler to a pattern."""
        self._subscribers[event_pattern].append(_make_ref(handler))
        logger.debug(f"Subscribed handler to pattern: {event_pattern}")

    def unsubscribe(self, event_pattern: str, handler: Callable[[Event], Any]) -> None:
        self._subscribers[event_pattern] = [
            ref for ref in self._subscribers[event_pattern]
            if ref() is not None and ref() != handler
        ]

    async def emit(self, event: Event) -> None:
        self.emit_nowait(event)

    def emit_nowait(self, event: Event) -> bool:
        """Queue an event; returns False when it was dropped."""
        try:
            self._event_queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping event: {event.type}")
            self._stats['dropped'] += 1
            return False
        self._stats['emitted'] += 1
        return True

    async def start(self) -> None:
        if self._running:
            logger.warning("Event bus already running")
            return
        self.ensure_running()

    def ensure_running(self) -> bool:
        """Start the processor on the current loop; False when no loop is running."""
        if self._running:
            return True
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())
        logger.info("Event bus started")
        return True

    @property
    def running(self) -> bool:
        return self._running

    async def stop(self) -> None:
        """Deliver what is queued, then stop the processor."""
        if not self._running:
            return
        await self.drain()
        self._running = False
        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
        logger.info("Event bus stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been dispatched."""
        if self._running:
            await self._event_queue.join()

    @property
    def pending(self) -> int:
        return self._event_queue.qsize()

    async def _process_events(self) -> None:
        while self._running:
            event = await self._event_queue.get()
            try:
                await self._dispatch(event)
                self._stats['processed'] += 1
            except Exception as e:
                logger.error(f"Error processing event {event.type}: {e}")
                self._stats['processing_errors'] += 1
            finally:
                self._event_queue.task_done()

    async def _dispatch(self, event: Event) -> None:
        handlers = []
        for pattern, refs in self._subscribers.items():
            if not self._matches_pattern(event.type, pattern):
                continue
            live = []
            for ref in refs:
                handler = ref()
                if handler is not None:
                    handlers.append(handler)
                    live.append(ref)
            self._subscribers[pattern] = live

        if not handlers:
            return

        tasks = []
        for handler in handlers:
            if asyncio.iscoroutinefunction(handler):
                tasks.append(asyncio.create_task(handler(event)))
            else:
                tasks.append(asyncio.create_task(asyncio.to_thread(handler, event)))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Handler error for event {event.type}: {result}")
                self._stats['handler_errors'] += 1

    def _matches_pattern(self, event_type: str, pattern: str) -> bool:
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            return event_type.startswith(pattern[:-2] + ".")
        return event_type == pattern

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)
