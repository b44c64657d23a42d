"""Shared domain utilities.

This package is domain-accessible and should not depend on application code.
"""

from .push_channel_protocol import PushChannelFactory, PushChannelProtocol, PushHandler

__all__ = ["PushChannelFactory", "PushChannelProtocol", "PushHandler"]
