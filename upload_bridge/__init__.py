"""
Upload Bridge

Local HTTP endpoint that announces each uploader to the application's
front-end, waits for its acknowledgment, then saves the uploaded files.
"""

from .bridge import UploadBridge, bind_listener, parse_bind_address, run_bridge
from .channel import ChannelRegistry, Direction, NotificationChannel, channel
from .config import Config, load_config

__version__ = "1.0.0"

__all__ = [
    'UploadBridge',
    'bind_listener',
    'parse_bind_address',
    'run_bridge',
    'ChannelRegistry',
    'Direction',
    'NotificationChannel',
    'channel',
    'Config',
    'load_config',
]
