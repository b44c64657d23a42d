from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Set, Union

logger = logging.getLogger(__name__)

INVOICE_EVENTS = (
    "created",
    "connected",
    "subscribed",
    "requested",
    "broadcasting",
    "broadcasted",
    "confirmed",
    "expired",
    "timer",
    "failed",
)

Callback = Callable[..., Any]


class EventBus:
    """Per-invoice registry of named-event callbacks.

    Callbacks are only ever appended and fire synchronously in registration
    order. A callback that raises is logged and does not stop delivery to the
    callbacks registered after it. Callbacks returning an awaitable are
    scheduled on the running loop.
    """

    def __init__(self, events: Iterable[str] = INVOICE_EVENTS) -> None:
        self._callbacks: Dict[str, List[Callback]] = {event: [] for event in events}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def on(self, events: Union[str, Iterable[str]], callback: Callback) -> None:
        if isinstance(events, str):
            events = [events]
        events = list(events)
        unknown = [event for event in events if event not in self._callbacks]
        if unknown:
            raise ValueError(f"Unknown event(s): {', '.join(unknown)}")
        for event in events:
            self._callbacks[event].append(callback)

    def callbacks(self, event: str) -> List[Callback]:
        return list(self._callbacks.get(event, []))

    def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._callbacks[event]):
            try:
                result = callback(*args)
            except Exception:
                logger.exception("Callback for %r event failed", event)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)

    def _schedule(self, event: str, awaitable: Any) -> None:
        async def runner() -> None:
            try:
                await awaitable
            except Exception:
                logger.exception("Async callback for %r event failed", event)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("Async callback for %r event needs a running event loop", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for async callbacks scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
