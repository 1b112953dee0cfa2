"""
Channel Registry

Holds the two notification channels the bridge talks over. The registry is
built by the process bootstrap and handed to the HTTP app, which keeps it on
app.state for every request handler.

Each slot is assigned exactly once. Touching a slot before initialize() or
calling initialize() twice is a programming error and raises RegistryError.
"""

import logging
import threading
from enum import Enum
from typing import Optional

from .broadcast import NotificationChannel, Receiver, Sender
from ..errors import RegistryError

logger = logging.getLogger(__name__)


class Direction(Enum):
    """Which half of the application a channel carries messages to."""
    BACK_TO_FRONT = "back_to_front"
    FRONT_TO_BACK = "front_to_back"


class ChannelRegistry:
    """
    Set-once holder for the back-end→front-end and front-end→back-end
    channels.

    The mutex guards only cloning a sender or creating a subscription.
    It is never held while a caller waits for a message.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._back_to_front: Optional[NotificationChannel] = None
        self._front_to_back: Optional[NotificationChannel] = None

    @classmethod
    def create(cls, back_to_front: NotificationChannel,
               front_to_back: NotificationChannel) -> 'ChannelRegistry':
        """Build and initialize a registry in one step."""
        registry = cls()
        registry.initialize(back_to_front, front_to_back)
        return registry

    def initialize(self, back_to_front: NotificationChannel,
                   front_to_back: NotificationChannel):
        """
        Assign both channels.

        Raises:
            RegistryError: the registry was already initialized
        """
        with self._lock:
            if self._back_to_front is not None or self._front_to_back is not None:
                raise RegistryError("Channel registry is already initialized")
            self._back_to_front = back_to_front
            self._front_to_back = front_to_back
        logger.debug("Channel registry initialized")

    @property
    def is_initialized(self) -> bool:
        return self._back_to_front is not None

    def get(self, direction: Direction) -> NotificationChannel:
        """
        Get the shared channel for a direction.

        Raises:
            RegistryError: the registry is not initialized yet
        """
        if direction is Direction.BACK_TO_FRONT:
            channel = self._back_to_front
        else:
            channel = self._front_to_back
        if channel is None:
            raise RegistryError(f"{direction.value} channel used before initialization")
        return channel

    def sender(self, direction: Direction) -> Sender:
        """Clone the send handle of a channel."""
        channel = self.get(direction)
        with self._lock:
            return channel.tx.clone()

    def subscribe(self, direction: Direction) -> Receiver:
        """Create a new subscription to a channel."""
        channel = self.get(direction)
        with self._lock:
            return channel.tx.subscribe()
