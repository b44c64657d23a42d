"""In-memory implementation of PushChannelProtocol for unit testing."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, DefaultDict, List, Optional, Tuple

from cashpay.domain.shared import PushHandler


class FakePushChannel:
    """Push channel whose server side is driven by the test via ``deliver``."""

    def __init__(self, fail_connect: bool = False) -> None:
        self.handlers: DefaultDict[str, List[PushHandler]] = defaultdict(list)
        self.emitted: List[Tuple[str, Any]] = []
        self.url: Optional[str] = None
        self.connected = False
        self.disconnect_calls = 0
        self.fail_connect = fail_connect

    def on(self, event: str, handler: PushHandler) -> None:
        self.handlers[event].append(handler)

    async def connect(self, url: str) -> None:
        if self.fail_connect:
            raise ConnectionError(f"Cannot reach {url}")
        self.url = url
        self.connected = True
        await self.deliver("connect", None)

    async def emit(self, event: str, data: Any) -> None:
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnect_calls += 1

    async def deliver(self, event: str, data: Any) -> None:
        """Simulate the server pushing ``event`` to this client."""
        for handler in list(self.handlers[event]):
            await handler(data)


class PushChannelRecorder:
    """Factory handing out FakePushChannels and remembering each one."""

    def __init__(self, fail_connect: bool = False) -> None:
        self.channels: List[FakePushChannel] = []
        self.fail_connect = fail_connect

    def __call__(self) -> FakePushChannel:
        channel = FakePushChannel(fail_connect=self.fail_connect)
        self.channels.append(channel)
        return channel

    @property
    def last(self) -> FakePushChannel:
        return self.channels[-1]
