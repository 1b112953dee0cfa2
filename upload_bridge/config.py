"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv

DEFAULT_MAX_UPLOAD_BYTES = 4 * 1024 ** 3  # 4GB

# Names both logging and uvicorn understand
LOG_LEVELS = ('CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG')


def default_downloads_dir() -> Path:
    return Path.home() / 'Downloads'


@dataclass
class Config:
    """
    Upload Bridge Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (BRIDGE_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '127.0.0.1'
    port: int = 8080

    # Storage
    downloads_dir: Path = field(default_factory=default_downloads_dir)

    # Uploads
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES  # 0 = no limit
    chunk_size: int = 256 * 1024  # 256KB

    # Client IP source trusted for the handshake announcement
    client_ip_source: str = 'connect-info'

    # Channels
    channel_capacity: int = 16

    # Logging
    log_level: str = 'INFO'

    @property
    def bind_address(self) -> str:
        """host:port, with brackets around IPv6 hosts."""
        if ':' in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def validate(self):
        """
        Check values that cannot be fixed up silently.

        Raises:
            ValueError: a setting is out of range or unknown
        """
        from .api.client_ip import ClientIpSource

        try:
            ClientIpSource(self.client_ip_source)
        except ValueError:
            valid = ', '.join(s.value for s in ClientIpSource)
            raise ValueError(
                f"Unknown client IP source '{self.client_ip_source}' (use one of: {valid})"
            )
        if not 0 < self.port < 65536:
            raise ValueError(f"Port out of range: {self.port}")
        if self.max_upload_bytes < 0:
            raise ValueError("max_upload_bytes cannot be negative")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.channel_capacity <= 0:
            raise ValueError("channel_capacity must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(
                f"Unknown log level '{self.log_level}' (use one of: {', '.join(LOG_LEVELS)})"
            )

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('BRIDGE_HOST', config.host)
        config.port = int(os.getenv('BRIDGE_PORT', config.port))

        # Storage
        downloads_dir = os.getenv('BRIDGE_DOWNLOADS_DIR')
        if downloads_dir:
            config.downloads_dir = Path(downloads_dir).expanduser()

        # Uploads
        config.max_upload_bytes = int(
            os.getenv('BRIDGE_MAX_UPLOAD_BYTES', config.max_upload_bytes)
        )
        config.chunk_size = int(os.getenv('BRIDGE_CHUNK_SIZE', config.chunk_size))
        config.client_ip_source = os.getenv('BRIDGE_CLIENT_IP_SOURCE', config.client_ip_source)

        # Channels
        config.channel_capacity = int(
            os.getenv('BRIDGE_CHANNEL_CAPACITY', config.channel_capacity)
        )

        # Logging
        config.log_level = os.getenv('BRIDGE_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)

        # Storage
        if 'downloads_dir' in data:
            config.downloads_dir = Path(data['downloads_dir']).expanduser()

        # Uploads
        config.max_upload_bytes = data.get('max_upload_bytes', config.max_upload_bytes)
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.client_ip_source = data.get('client_ip_source', config.client_ip_source)

        # Channels
        config.channel_capacity = data.get('channel_capacity', config.channel_capacity)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'downloads_dir': str(self.downloads_dir),
            'max_upload_bytes': self.max_upload_bytes,
            'chunk_size': self.chunk_size,
            'client_ip_source': self.client_ip_source,
            'channel_capacity': self.channel_capacity,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


ENV_VARS = {
    'host': 'BRIDGE_HOST',
    'port': 'BRIDGE_PORT',
    'downloads_dir': 'BRIDGE_DOWNLOADS_DIR',
    'max_upload_bytes': 'BRIDGE_MAX_UPLOAD_BYTES',
    'chunk_size': 'BRIDGE_CHUNK_SIZE',
    'client_ip_source': 'BRIDGE_CLIENT_IP_SOURCE',
    'channel_capacity': 'BRIDGE_CHANNEL_CAPACITY',
    'log_level': 'BRIDGE_LOG_LEVEL',
}


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (every variable that is set wins, even at its default value)
    for key, var in ENV_VARS.items():
        if os.getenv(var):
            setattr(config, key, getattr(env_config, key))

    return config
