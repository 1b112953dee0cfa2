"""
Notification Channel

Design Decision: Delivery Model
===============================

Options:
1. One asyncio.Queue shared by all consumers
   - Each message reaches a single consumer
   - No way for the front-end to observe everything

2. Broadcast with per-subscriber buffers
   - Every subscriber sees every message sent after it subscribed
   - Late subscribers never see history
   - A slow subscriber only hurts itself

Decision: Broadcast with per-subscriber buffers
- Matches how the two halves of the application talk to each other
- Senders never wait on delivery
- Buffers are bounded; the oldest message is dropped when one is full

Messages are shared objects: the same Message instance is handed to every
subscriber, so consumers that must not double-handle a message can claim it.

send() may be called from any thread. Receivers are woken on the loop they
are awaiting on.
"""

import asyncio
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from ..errors import ChannelClosed, ChannelEmpty

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 16

_claim_lock = threading.Lock()


@dataclass(eq=False)
class Message:
    """A payload delivered to every subscriber of a channel."""
    payload: str
    sequence: int
    _claimed: bool = field(default=False, repr=False)

    def claim(self) -> bool:
        """
        Take exclusive ownership of this message.

        Returns:
            True for the first caller only
        """
        with _claim_lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        return self._claimed


def _wake(waiter: asyncio.Future):
    if not waiter.done():
        waiter.set_result(None)


class _Shared:
    """State shared by a sender and all of its receivers."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.lock = threading.Lock()
        self.receivers: List['Receiver'] = []
        self.sequence = itertools.count(1)
        self.closed = False


class Receiver:
    """
    A subscription to a channel.

    Sees only messages sent after it was created. Supports a single
    concurrent recv() call.
    """

    def __init__(self, shared: _Shared):
        self._shared = shared
        self._lock = threading.Lock()
        self._buffer: Deque[Message] = deque()
        self._waiter: Optional[asyncio.Future] = None
        self._closed = False
        self.missed = 0

    def _deliver(self, message: Message):
        with self._lock:
            if len(self._buffer) >= self._shared.capacity:
                self._buffer.popleft()
                self.missed += 1
                logger.debug(f"Receiver lagging, dropped oldest message ({self.missed} missed)")
            self._buffer.append(message)
            waiter, self._waiter = self._waiter, None
        if waiter is not None:
            waiter.get_loop().call_soon_threadsafe(_wake, waiter)

    def _close(self):
        with self._lock:
            self._closed = True
            waiter, self._waiter = self._waiter, None
        if waiter is not None:
            waiter.get_loop().call_soon_threadsafe(_wake, waiter)

    def try_recv(self) -> Message:
        """
        Take the next buffered message without waiting.

        Raises:
            ChannelEmpty: nothing is buffered
            ChannelClosed: nothing is buffered and the channel is closed
        """
        with self._lock:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                raise ChannelClosed("channel closed")
            raise ChannelEmpty("no message available")

    async def recv(self) -> Message:
        """
        Wait for the next message.

        Raises:
            ChannelClosed: the channel was closed and the buffer is drained
        """
        loop = asyncio.get_running_loop()
        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                if self._closed:
                    raise ChannelClosed("channel closed")
                if self._waiter is not None:
                    raise RuntimeError("recv() is already being awaited on this receiver")
                waiter = loop.create_future()
                self._waiter = waiter
            try:
                await waiter
            finally:
                with self._lock:
                    if self._waiter is waiter:
                        self._waiter = None

    def close(self):
        """Stop receiving; buffered messages are discarded."""
        with self._shared.lock:
            if self in self._shared.receivers:
                self._shared.receivers.remove(self)
        self._close()
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Message:
        try:
            return await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration

    def __enter__(self) -> 'Receiver':
        return self

    def __exit__(self, *exc_info):
        self.close()


def _subscribe(shared: _Shared) -> Receiver:
    receiver = Receiver(shared)
    with shared.lock:
        if shared.closed:
            receiver._closed = True
        else:
            shared.receivers.append(receiver)
    return receiver


class Sender:
    """Send half of a channel. Cheap to copy; all copies share state."""

    def __init__(self, shared: _Shared):
        self._shared = shared

    def send(self, payload: str) -> int:
        """
        Broadcast a payload to every current subscriber.

        Never waits. With no subscribers the message is dropped.

        Returns:
            Number of subscribers the message was delivered to

        Raises:
            ChannelClosed: the channel was closed
        """
        with self._shared.lock:
            if self._shared.closed:
                raise ChannelClosed("channel closed")
            message = Message(payload=payload, sequence=next(self._shared.sequence))
            receivers = list(self._shared.receivers)
            # Deliver under the lock so every subscriber sees the same order
            for receiver in receivers:
                receiver._deliver(message)

        if not receivers:
            logger.debug(f"No subscribers, dropped message #{message.sequence}")
        return len(receivers)

    def subscribe(self) -> Receiver:
        """Create a receiver that sees messages sent from now on."""
        return _subscribe(self._shared)

    def clone(self) -> 'Sender':
        return Sender(self._shared)

    def close(self):
        """Close the channel for every sender and receiver."""
        with self._shared.lock:
            if self._shared.closed:
                return
            self._shared.closed = True
            receivers = list(self._shared.receivers)
            self._shared.receivers.clear()
        for receiver in receivers:
            receiver._close()

    @property
    def is_closed(self) -> bool:
        return self._shared.closed

    @property
    def receiver_count(self) -> int:
        with self._shared.lock:
            return len(self._shared.receivers)


@dataclass
class NotificationChannel:
    """A send handle paired with the receive handle created alongside it."""
    tx: Sender
    rx: Receiver

    def subscribe(self) -> Receiver:
        return self.tx.subscribe()


def channel(capacity: int = DEFAULT_CAPACITY) -> NotificationChannel:
    """
    Create a broadcast channel.

    Args:
        capacity: Messages buffered per subscriber before the oldest is dropped

    Returns:
        NotificationChannel with a sender and its first receiver
    """
    shared = _Shared(capacity)
    tx = Sender(shared)
    return NotificationChannel(tx=tx, rx=tx.subscribe())
