from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional


class ExpiryCountdown:
    """One-second-resolution countdown to an invoice's expiry timestamp.

    Each tick fires ``on_tick(seconds_remaining)`` while time remains, then
    ``on_expired()`` exactly once, after which the countdown is finished.
    """

    def __init__(
        self,
        expires_at: float,
        on_tick: Callable[[int], Any],
        on_expired: Callable[[], Any],
        *,
        clock: Callable[[], float] = time.time,
        interval: float = 1.0,
    ) -> None:
        self._expires_at = expires_at
        self._on_tick = on_tick
        self._on_expired = on_expired
        self._clock = clock
        self._interval = interval
        self._task: Optional["asyncio.Task[None]"] = None
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def seconds_remaining(self) -> int:
        return round(self._expires_at - self._clock())

    def tick(self) -> bool:
        """Advance once. Returns True while the countdown keeps running."""
        if self._finished:
            return False
        remaining = self.seconds_remaining()
        if remaining > 0:
            self._on_tick(remaining)
            return True
        self._finished = True
        self._on_expired()
        return False

    def start(self) -> None:
        if self._task is not None or self._finished:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self.tick():
                break

    def cancel(self) -> None:
        self._finished = True
        task = self._task
        # Cancelled from inside its own tick (expired -> teardown): the loop exits on its own.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
