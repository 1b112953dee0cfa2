"""
Channel Module - Notification Channels

Broadcast channels between the back-end and front-end halves of the
application, and the registry that owns them.
"""

from .broadcast import (
    DEFAULT_CAPACITY, Message, NotificationChannel, Receiver, Sender, channel,
)
from .registry import ChannelRegistry, Direction

__all__ = [
    'DEFAULT_CAPACITY',
    'Message',
    'NotificationChannel',
    'Receiver',
    'Sender',
    'channel',
    'ChannelRegistry',
    'Direction',
]
