# smart_get/config.py
"""
Tunable settings for a download session.
"""

import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import aiohttp
import certifi

from smart_get import __version__

MIB = 1024 * 1024


@dataclass
class DownloadConfig:
    """Defaults used by the CLI; tests override individual fields."""
    max_connections: int = 8
    default_connections: int = 2
    probe_candidates: Tuple[int, ...] = (1, 2, 3, 4)
    probe_bytes: int = 5 * MIB

    # Retry policy for a single chunk
    max_retries: int = 5
    backoff_base: float = 1.0
    backoff_cap: float = 30.0

    # Network
    connect_timeout: float = 30.0
    read_timeout: float = 30.0  # inactivity timeout per fetch
    read_size: int = 8192
    user_agent: str = f"SmartGet/{__version__}"

    render_interval: float = 0.1
    work_root: Optional[Path] = None

    def clamp_connections(self, connections: int) -> int:
        return max(1, min(connections, self.max_connections))

    def working_root(self) -> Path:
        if self.work_root is not None:
            return Path(self.work_root)
        return Path(tempfile.gettempdir()) / "smart_get"

    def client_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=None, connect=self.connect_timeout, sock_read=self.read_timeout)

    def create_session(self, connections: int) -> aiohttp.ClientSession:
        """Build an HTTP session allowing `connections` parallel connections to the host."""
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(limit_per_host=connections, ssl=ssl_context)
        headers = {
            'User-Agent': self.user_agent,
            # Ranges must address the raw bytes on the server
            'Accept-Encoding': 'identity',
            'Connection': 'keep-alive'
        }
        return aiohttp.ClientSession(connector=connector, timeout=self.client_timeout(), headers=headers)
