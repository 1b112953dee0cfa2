"""
Request Body Reader

An ASGI app only learns that its client hung up from an http.disconnect
message out of receive(). While a request waits on its handshake, receive()
keeps being drained so a disconnect cancels the wait instead of leaving a
dead request subscribed to acknowledgments.

Body bytes pulled during the wait are held (in memory, spilling to a
temporary file past SPOOL_MAX_SIZE) and replayed first when the body is
read for real. A pull still in flight when the wait ends is never
cancelled; its bytes follow the held ones.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Optional, TypeVar

import aiofiles.tempfile
from starlette.types import Receive

from ..errors import ClientDisconnected, UploadError, UploadTooLarge

logger = logging.getLogger(__name__)

SPOOL_MAX_SIZE = 1024 * 1024  # 1MB
READ_SIZE = 64 * 1024  # 64KB

T = TypeVar('T')


class RequestBody:
    """
    Reads one request's body, watching for a disconnect while it waits.

    Usage:
        body = RequestBody(request.receive)
        try:
            result = await body.wait_for(handshake(...))
            async for chunk in body.stream():
                ...
        finally:
            await body.close()
    """

    def __init__(self, receive: Receive, spool_max_size: int = SPOOL_MAX_SIZE):
        self._receive = receive
        self._spool_max_size = spool_max_size

        self._spool = None
        self._spool_lock = asyncio.Lock()
        self._holding = True
        self._pulling: Optional[asyncio.Task] = None
        self._error: Optional[UploadError] = None

        self.complete = False
        self.disconnected = False
        self.held = 0

    # === Pulling ===

    async def _pull(self) -> bytes:
        """Take one message from receive(); returns body bytes not held back."""
        try:
            message = await self._receive()
        except UploadTooLarge as e:
            # The rest of the body is discarded as it arrives
            if self._error is None:
                self._error = e
            return b""

        if message["type"] == "http.disconnect":
            self.disconnected = True
            return b""
        if message["type"] != "http.request":
            return b""

        self.complete = not message.get("more_body", False)
        body = message.get("body", b"")
        if body and self._error is None:
            async with self._spool_lock:
                if self._holding:
                    await self._hold(body)
                    return b""
        return body

    async def _pull_once(self) -> bytes:
        if self._pulling is None:
            self._pulling = asyncio.ensure_future(self._pull())
        pulling = self._pulling
        try:
            return await asyncio.shield(pulling)
        finally:
            if pulling.done():
                self._pulling = None

    async def _hold(self, body: bytes):
        if self._spool is None:
            self._spool = await aiofiles.tempfile.SpooledTemporaryFile(
                max_size=self._spool_max_size
            )
        await self._spool.write(body)
        self.held += len(body)

    async def _release_spool(self):
        if self._spool is not None:
            spool, self._spool = self._spool, None
            await spool.close()

    async def watch(self):
        """Drain receive() until the client disconnects."""
        while not self.disconnected:
            await self._pull_once()

    # === Public API ===

    async def wait_for(self, awaitable: Awaitable[T]) -> T:
        """
        Await something while watching for a disconnect.

        Raises:
            ClientDisconnected: the client went away first; the awaitable
                is cancelled
        """
        task = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self.watch())
        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not task.done():
                task.cancel()
            await asyncio.gather(task, watcher, return_exceptions=True)

        if not task.cancelled():
            return task.result()

        watcher.result()
        raise ClientDisconnected("Client disconnected while waiting for the front-end")

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Yield the whole body: bytes held while waiting, then the rest.

        Raises:
            UploadTooLarge: the body crossed the size ceiling
            ClientDisconnected: the client went away before the body ended
        """
        # Waits out a hold in progress; later pulls hand their bytes straight back
        async with self._spool_lock:
            self._holding = False

        if self._error is not None:
            raise self._error

        if self._spool is not None:
            logger.debug(f"Replaying {self.held:,} bytes received during the handshake")
            await self._spool.seek(0)
            while True:
                chunk = await self._spool.read(READ_SIZE)
                if not chunk:
                    break
                yield chunk
            await self._release_spool()

        while True:
            # A finished pull is always collected; it may carry the last bytes
            if self._pulling is None or not self._pulling.done():
                if self.complete:
                    break
                if self.disconnected:
                    raise ClientDisconnected()
            chunk = await self._pull_once()
            if self._error is not None:
                raise self._error
            if chunk:
                yield chunk

    async def close(self):
        """Drop held bytes and stop a pull still waiting on the client."""
        if self._pulling is not None:
            self._pulling.cancel()
            await asyncio.gather(self._pulling, return_exceptions=True)
            self._pulling = None
        await self._release_spool()
