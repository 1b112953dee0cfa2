"""
Upload Handshake

Before an upload request may read its body, the bridge tells the front-end
who is calling and waits for the front-end to answer:

1. Subscribe to the front-end→back-end channel
2. Announce the client IP on the back-end→front-end channel
3. Await the next acknowledgment on the subscription

Subscribing before announcing means an acknowledgment sent in reply to the
announcement cannot be missed.

Acknowledgments carry no request identity. Any message on the channel means
"proceed", and each message releases exactly one waiting handshake: the first
waiter to claim it. Which waiter that is across concurrent requests is
undefined.

Cancelling a waiting handshake drops its subscription. Acknowledgments it
had not claimed stay available to the other waiters.

Precondition: the front-end is already subscribed to the back-end→front-end
channel. If it is not, the announcement is dropped and the request still
waits for an acknowledgment.
"""

import logging
import time
from dataclasses import dataclass

from ..channel import ChannelRegistry, Direction

logger = logging.getLogger(__name__)


@dataclass
class HandshakeResult:
    """Outcome of a completed handshake."""
    client_ip: str
    acknowledgment: str
    delivered_to: int
    waited: float


async def handshake(registry: ChannelRegistry, client_ip: str) -> HandshakeResult:
    """
    Announce a client and wait for the front-end's acknowledgment.

    Args:
        registry: Registry holding both channels
        client_ip: Trusted client IP to announce

    Returns:
        HandshakeResult once an acknowledgment has been claimed

    Raises:
        ChannelClosed: the acknowledgment channel closed while waiting
    """
    announcer = registry.sender(Direction.BACK_TO_FRONT)
    start = time.monotonic()

    with registry.subscribe(Direction.FRONT_TO_BACK) as acknowledgments:
        delivered = announcer.send(client_ip)
        if delivered == 0:
            logger.warning(f"Announcement for {client_ip} dropped, front-end is not listening")
        else:
            logger.debug(f"Announced {client_ip} to {delivered} subscriber(s)")

        while True:
            message = await acknowledgments.recv()
            if message.claim():
                break
            logger.debug(f"Acknowledgment #{message.sequence} already taken, still waiting")

    waited = time.monotonic() - start
    logger.debug(f"Handshake for {client_ip} acknowledged after {waited:.2f}s")

    return HandshakeResult(
        client_ip=client_ip,
        acknowledgment=message.payload,
        delivered_to=delivered,
        waited=waited,
    )
