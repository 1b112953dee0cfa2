"""
Upload Bridge - Main Controller

Wires the pieces together:
- Channel registry holding the two notification channels
- FastAPI app with the single upload route
- TCP listener and uvicorn server

The process bootstrap owns the channels' other ends (the front-end side).
Once serving starts, the bridge runs until the process is terminated.
"""

import logging
import socket
from typing import Optional, Tuple

import uvicorn

from .api import create_app
from .channel import ChannelRegistry, NotificationChannel
from .config import Config
from .errors import BindError

logger = logging.getLogger(__name__)


def parse_bind_address(address: str) -> Tuple[str, int]:
    """
    Split "host:port" (or "[v6]:port") into its parts.

    Raises:
        ValueError: the address has no valid port
    """
    host, sep, port = address.strip().rpartition(':')
    if not sep or not port.isdigit():
        raise ValueError(f"Invalid bind address: {address} (use host:port)")

    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    port_number = int(port)
    if port_number > 65535:
        raise ValueError(f"Port out of range: {address}")

    return host or '0.0.0.0', port_number


def bind_listener(address: str) -> socket.socket:
    """
    Bind a listening TCP socket.

    Raises:
        BindError: the address is invalid or cannot be bound
    """
    try:
        host, port = parse_bind_address(address)
    except ValueError as e:
        raise BindError(address, str(e)) from e

    family = socket.AF_INET6 if ':' in host else socket.AF_INET
    try:
        return socket.create_server((host, port), family=family)
    except OSError as e:
        raise BindError(address, e.strerror or str(e)) from e


class UploadBridge:
    """
    The HTTP side of the bridge.

    Takes ownership of both channels for its whole lifetime.
    """

    def __init__(self, back_to_front: NotificationChannel,
                 front_to_back: NotificationChannel,
                 config: Optional[Config] = None):
        """
        Initialize the bridge.

        Args:
            back_to_front: Channel announcements are published on
            front_to_back: Channel acknowledgments arrive on
            config: Bridge configuration (uses defaults if not provided)
        """
        self.config = config or Config()
        self.registry = ChannelRegistry.create(back_to_front, front_to_back)
        self.app = create_app(self.registry, self.config)
        self.server: Optional[uvicorn.Server] = None

    async def serve(self, address: Optional[str] = None,
                    sock: Optional[socket.socket] = None):
        """
        Bind and serve until the process is terminated.

        Args:
            address: host:port to bind (defaults to the configured one)
            sock: An already bound listener to serve on instead

        Raises:
            BindError: the listener could not be bound
        """
        if sock is None:
            address = address or self.config.bind_address
            sock = bind_listener(address)
        else:
            host, port = sock.getsockname()[:2]
            address = f"{host}:{port}"

        self.server = uvicorn.Server(uvicorn.Config(
            self.app,
            log_level=self.config.log_level.lower(),
        ))

        logger.info(f"Web server started at {address}")
        await self.server.serve(sockets=[sock])

    def shutdown(self):
        """Ask a running server to stop."""
        if self.server is not None:
            self.server.should_exit = True

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            'bind_address': self.config.bind_address,
            'ingestor': self.app.state.ingestor.get_stats(),
        }


async def run_bridge(bind: str, back_to_front: NotificationChannel,
                     front_to_back: NotificationChannel,
                     config: Optional[Config] = None):
    """
    Run the bridge on an address (convenience function).

    Serves until the process is terminated.
    """
    bridge = UploadBridge(back_to_front, front_to_back, config)
    await bridge.serve(bind)
