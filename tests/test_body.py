"""
Tests for upload_bridge/api/body.py - Body reading around the handshake wait.
"""

from __future__ import annotations

import asyncio

import pytest

from upload_bridge.api.body import RequestBody
from upload_bridge.errors import ClientDisconnected, UploadTooLarge


class ScriptedReceive:
    """ASGI receive() that hands out queued messages and otherwise blocks."""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.calls = 0

    def body(self, data: bytes, more: bool = True):
        self.queue.put_nowait({"type": "http.request", "body": data, "more_body": more})

    def disconnect(self):
        self.queue.put_nowait({"type": "http.disconnect"})

    async def __call__(self):
        self.calls += 1
        return await self.queue.get()


async def read_all(body: RequestBody) -> bytes:
    return b"".join([chunk async for chunk in body.stream()])


class TestWaitFor:

    async def test_returns_the_result(self):
        body = RequestBody(ScriptedReceive())

        assert await body.wait_for(asyncio.sleep(0.01, result="acked")) == "acked"
        await body.close()

    async def test_disconnect_cancels_the_wait(self):
        receive = ScriptedReceive()
        body = RequestBody(receive)
        cancelled = asyncio.Event()

        async def never_acknowledged():
            try:
                await asyncio.Event().wait()
            finally:
                cancelled.set()

        waiting = asyncio.create_task(body.wait_for(never_acknowledged()))
        await asyncio.sleep(0.01)
        receive.disconnect()

        with pytest.raises(ClientDisconnected):
            await asyncio.wait_for(waiting, 1.0)
        assert cancelled.is_set()
        assert body.disconnected
        await body.close()

    async def test_errors_from_the_awaitable_propagate(self):
        body = RequestBody(ScriptedReceive())

        async def fails():
            raise LookupError("boom")

        with pytest.raises(LookupError):
            await body.wait_for(fails())
        await body.close()


class TestStream:

    async def test_held_bytes_come_first(self):
        receive = ScriptedReceive()
        body = RequestBody(receive)
        receive.body(b"ab")
        receive.body(b"cd")

        await body.wait_for(asyncio.sleep(0.05))
        assert body.held == 4

        receive.body(b"ef", more=False)
        assert await read_all(body) == b"abcdef"
        await body.close()

    async def test_pull_in_flight_is_not_lost(self):
        receive = ScriptedReceive()
        body = RequestBody(receive)

        # The watcher is blocked in receive() when the wait ends
        await body.wait_for(asyncio.sleep(0.05))
        assert receive.calls == 1

        receive.body(b"late", more=False)
        assert await read_all(body) == b"late"
        assert receive.calls == 1
        await body.close()

    async def test_large_hold_spills_and_replays_in_order(self):
        receive = ScriptedReceive()
        body = RequestBody(receive, spool_max_size=8)
        pieces = [bytes([n]) * 100 for n in range(10)]
        for piece in pieces:
            receive.body(piece)

        await body.wait_for(asyncio.sleep(0.05))
        receive.body(b"", more=False)

        assert await read_all(body) == b"".join(pieces)
        await body.close()

    async def test_disconnect_mid_body(self):
        receive = ScriptedReceive()
        body = RequestBody(receive)
        await body.wait_for(asyncio.sleep(0.01))

        receive.body(b"partial")
        receive.disconnect()

        received = []
        with pytest.raises(ClientDisconnected):
            async for chunk in body.stream():
                received.append(chunk)
        assert received == [b"partial"]
        await body.close()

    async def test_too_large_during_wait_is_raised_on_read(self):
        calls = 0

        async def receive():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise UploadTooLarge(10)
            await asyncio.Event().wait()

        body = RequestBody(receive)
        await body.wait_for(asyncio.sleep(0.01))

        with pytest.raises(UploadTooLarge):
            await read_all(body)
        await asyncio.wait_for(body.close(), 1.0)
