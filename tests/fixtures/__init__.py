"""Test doubles for the pay server, the push channel and server signing keys."""

from .fake_pay_server import FakeClock, FakePayServer
from .fake_push_channel import FakePushChannel, PushChannelRecorder
from .signing import SigningIdentity, b64

__all__ = [
    "FakeClock",
    "FakePayServer",
    "FakePushChannel",
    "PushChannelRecorder",
    "SigningIdentity",
    "b64",
]
