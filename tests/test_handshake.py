"""
Tests for upload_bridge/transfer/handshake.py - Announce/Acknowledge.
"""

from __future__ import annotations

import asyncio

import pytest

from upload_bridge.channel import ChannelRegistry
from upload_bridge.errors import ChannelClosed
from upload_bridge.transfer import handshake

from tests.conftest import FakeFrontEnd, wait_until


class TestHandshake:
    """Single handshakes."""

    async def test_announces_ip_then_waits(self, registry: ChannelRegistry, front_end: FakeFrontEnd):
        task = asyncio.create_task(handshake(registry, "192.168.1.20"))

        assert await front_end.next_announcement() == "192.168.1.20"
        await asyncio.sleep(0.05)
        assert not task.done()

        front_end.acknowledge("go")
        result = await asyncio.wait_for(task, 1.0)

        assert result.client_ip == "192.168.1.20"
        assert result.acknowledgment == "go"
        assert result.delivered_to >= 1
        assert result.waited >= 0

    async def test_any_payload_means_proceed(self, registry: ChannelRegistry, front_end: FakeFrontEnd):
        task = asyncio.create_task(handshake(registry, "10.0.0.1"))
        await front_end.next_announcement()

        front_end.acknowledge("")

        result = await asyncio.wait_for(task, 1.0)
        assert result.acknowledgment == ""

    async def test_acknowledgment_before_announcement_is_ignored(
        self, registry: ChannelRegistry, front_end: FakeFrontEnd
    ):
        front_end.acknowledge("stale")

        task = asyncio.create_task(handshake(registry, "10.0.0.1"))
        await front_end.next_announcement()
        await asyncio.sleep(0.05)

        assert not task.done()
        front_end.acknowledge("fresh")
        assert (await asyncio.wait_for(task, 1.0)).acknowledgment == "fresh"

    async def test_announcement_lost_without_listener_still_waits(self, back_to_front, front_to_back):
        # Nobody listens on the announcement channel
        back_to_front.rx.close()
        registry = ChannelRegistry.create(back_to_front, front_to_back)

        task = asyncio.create_task(handshake(registry, "10.0.0.1"))
        await wait_until(lambda: front_to_back.tx.receiver_count == 2)
        await asyncio.sleep(0.05)
        assert not task.done()

        front_to_back.tx.send("unrelated")
        result = await asyncio.wait_for(task, 1.0)
        assert result.delivered_to == 0

    async def test_closed_acknowledgment_channel_fails_handshake(
        self, registry: ChannelRegistry, front_end: FakeFrontEnd, front_to_back
    ):
        task = asyncio.create_task(handshake(registry, "10.0.0.1"))
        await front_end.next_announcement()

        front_to_back.tx.close()

        with pytest.raises(ChannelClosed):
            await asyncio.wait_for(task, 1.0)

    async def test_subscription_released_after_handshake(
        self, registry: ChannelRegistry, front_end: FakeFrontEnd, front_to_back
    ):
        before = front_to_back.tx.receiver_count
        task = asyncio.create_task(handshake(registry, "10.0.0.1"))
        await front_end.accept_next()
        await asyncio.wait_for(task, 1.0)

        assert front_to_back.tx.receiver_count == before

    async def test_subscription_released_when_cancelled(
        self, registry: ChannelRegistry, front_end: FakeFrontEnd, front_to_back
    ):
        before = front_to_back.tx.receiver_count
        task = asyncio.create_task(handshake(registry, "10.0.0.1"))
        await front_end.next_announcement()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert front_to_back.tx.receiver_count == before


class TestConcurrentHandshakes:
    """Several requests sharing the single acknowledgment channel."""

    @pytest.mark.parametrize("waiters", [2, 5])
    async def test_one_acknowledgment_releases_exactly_one_waiter(
        self, registry: ChannelRegistry, front_end: FakeFrontEnd, waiters: int
    ):
        tasks = [
            asyncio.create_task(handshake(registry, f"10.0.0.{i}"))
            for i in range(waiters)
        ]
        for _ in range(waiters):
            await front_end.next_announcement()

        front_end.acknowledge("one")
        await asyncio.sleep(0.1)

        assert sum(task.done() for task in tasks) == 1

        for _ in range(waiters - 1):
            front_end.acknowledge("more")
        results = await asyncio.wait_for(asyncio.gather(*tasks), 1.0)

        assert sorted(r.acknowledgment for r in results) == sorted(["one"] + ["more"] * (waiters - 1))
