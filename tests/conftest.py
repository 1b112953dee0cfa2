"""
tests/conftest.py

Shared fixtures for the upload bridge test suite.

HTTP tests drive the ASGI app in-process through httpx. A FakeFrontEnd plays
the application's front-end: it is subscribed to announcements before any
request is made and acknowledges on demand.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import httpx
import pytest
from fastapi import FastAPI

from upload_bridge.api import create_app
from upload_bridge.channel import ChannelRegistry, NotificationChannel, channel
from upload_bridge.config import Config

BOUNDARY = "bridge-test-boundary"


class FakeFrontEnd:
    """Front-end stand-in: reads announcements, sends acknowledgments."""

    def __init__(self, back_to_front: NotificationChannel, front_to_back: NotificationChannel):
        self.announcements = back_to_front.subscribe()
        self.acknowledger = front_to_back.tx

    async def next_announcement(self, timeout: float = 2.0) -> str:
        message = await asyncio.wait_for(self.announcements.recv(), timeout)
        return message.payload

    def acknowledge(self, payload: str = "ok") -> int:
        return self.acknowledger.send(payload)

    async def accept_next(self) -> str:
        client_ip = await self.next_announcement()
        self.acknowledge(client_ip)
        return client_ip


def multipart_body(parts: List[Tuple[List[Tuple[str, str]], bytes]]) -> bytes:
    """Build a multipart/form-data body from (headers, content) parts."""
    body = b""
    for headers, content in parts:
        body += f"--{BOUNDARY}\r\n".encode()
        for name, value in headers:
            body += f"{name}: {value}\r\n".encode()
        body += b"\r\n" + content + b"\r\n"
    body += f"--{BOUNDARY}--\r\n".encode()
    return body


MULTIPART_CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def back_to_front() -> NotificationChannel:
    return channel()


@pytest.fixture
def front_to_back() -> NotificationChannel:
    return channel()


@pytest.fixture
def registry(back_to_front: NotificationChannel, front_to_back: NotificationChannel) -> ChannelRegistry:
    return ChannelRegistry.create(back_to_front, front_to_back)


@pytest.fixture
def front_end(back_to_front: NotificationChannel, front_to_back: NotificationChannel) -> FakeFrontEnd:
    return FakeFrontEnd(back_to_front, front_to_back)


@pytest.fixture
def downloads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "Downloads"
    path.mkdir()
    return path


@pytest.fixture
def config(downloads_dir: Path) -> Config:
    return Config(downloads_dir=downloads_dir)


@pytest.fixture
def app(registry: ChannelRegistry, config: Config, front_end: FakeFrontEnd) -> FastAPI:
    # front_end is requested so it subscribes before the app serves anything
    return create_app(registry, config)


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app, client=("127.0.0.1", 50000))
    async with httpx.AsyncClient(transport=transport, base_url="http://bridge") as c:
        yield c


def make_client(app: FastAPI, client: Optional[Tuple[str, int]] = ("127.0.0.1", 50000)) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, client=client)
    return httpx.AsyncClient(transport=transport, base_url="http://bridge")
