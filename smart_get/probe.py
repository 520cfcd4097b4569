# smart_get/probe.py
"""
Server probing: remote size detection and the connection speed test.
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, Optional, Tuple

import aiohttp

from smart_get.config import DownloadConfig
from smart_get.errors import SizeUnknown
from smart_get.models import ServerCapabilities
from smart_get.utils import format_bytes

logger = logging.getLogger(__name__)


async def detect_capabilities(session: aiohttp.ClientSession, url: str) -> ServerCapabilities:
    """HEAD the URL for its size. Raises SizeUnknown when no usable Content-Length comes back."""
    try:
        async with session.head(url, allow_redirects=True) as response:
            headers = response.headers
            if response.status >= 400:
                raise SizeUnknown(f"HEAD returned HTTP {response.status}")
            supports_range = headers.get('Accept-Ranges', '').lower() != 'none'
            content_length = headers.get('Content-Length', '')
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise SizeUnknown(f"HEAD request failed: {type(e).__name__}: {e}") from e

    try:
        total_size = int(content_length)
    except ValueError:
        raise SizeUnknown(f"Unusable Content-Length: {content_length!r}")
    if total_size <= 0:
        raise SizeUnknown(f"Unusable Content-Length: {content_length!r}")
    return ServerCapabilities(total_size=total_size, supports_range=supports_range)


def choose_connections(results: Dict[int, float], default: int = 2) -> int:
    """Fastest candidate wins; on equal speed the fewer connections win."""
    if not results:
        return default
    return min(results, key=lambda connections: (-results[connections], connections))


class SpeedProbe:
    """Times the same initial range fetch at several connection counts."""

    def __init__(self, url: str, config: DownloadConfig, total_size: Optional[int] = None):
        self.url = url
        self.config = config
        self.range_size = config.probe_bytes
        if total_size:
            self.range_size = min(self.range_size, total_size)

    async def measure(self, connections: int) -> Optional[float]:
        """Bytes per second for one probe fetch, None if it did not complete."""
        headers = {'Range': f'bytes=0-{self.range_size - 1}'}
        try:
            async with self.config.create_session(connections) as session:
                started = time.perf_counter()
                async with session.get(self.url, headers=headers) as response:
                    if not 200 <= response.status < 300:
                        logger.debug("Probe with %d connection(s): HTTP %d", connections, response.status)
                        return None
                    received = 0
                    async for data in response.content.iter_chunked(self.config.read_size):
                        received += len(data)
                        if received >= self.range_size:
                            break
                elapsed = time.perf_counter() - started
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("Probe with %d connection(s) failed: %s", connections, e)
            return None

        if received <= 0 or elapsed <= 0:
            return None
        return min(received, self.range_size) / elapsed

    async def run(self, candidates: Iterable[int] = None) -> Dict[int, float]:
        candidates = tuple(candidates or self.config.probe_candidates)
        speeds = await asyncio.gather(*(self.measure(n) for n in candidates))
        return {n: speed for n, speed in zip(candidates, speeds) if speed is not None}

    async def choose(self, candidates: Iterable[int] = None) -> Tuple[int, Dict[int, float]]:
        results = await self.run(candidates)
        for connections, speed in sorted(results.items(), key=lambda item: -item[1]):
            logger.info("  %d connection(s): %s/s", connections, format_bytes(speed))
        chosen = self.config.clamp_connections(choose_connections(results, self.config.default_connections))
        return chosen, results
