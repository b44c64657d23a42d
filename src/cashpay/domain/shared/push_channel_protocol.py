"""Protocol interface for push channel implementations.

The push channel is the real-time transport that delivers invoice lifecycle
messages. This protocol lets the lifecycle coordinator accept any transport
(Socket.IO, plain WebSockets, an in-memory fake in tests) without depending on
a concrete client library. Reconnection policy belongs to implementations.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

PushHandler = Callable[[Any], Awaitable[None]]


class PushChannelProtocol(Protocol):
    """Protocol defining the interface for push channel implementations."""

    def on(self, event: str, handler: PushHandler) -> None:
        """Register ``handler`` for a named channel event.

        The special ``connect`` event is delivered with ``None`` once the
        channel is connected (and again after any reconnect).
        """
        ...

    async def connect(self, url: str) -> None:
        """Open the channel to ``url``."""
        ...

    async def emit(self, event: str, data: Any) -> None:
        """Send a control message (e.g. ``subscribe``) over the channel."""
        ...

    async def disconnect(self) -> None:
        """Close the channel. Calling it on a closed channel is a no-op."""
        ...


# Factory type for creating push channels, one per invoice
PushChannelFactory = Callable[[], PushChannelProtocol]
