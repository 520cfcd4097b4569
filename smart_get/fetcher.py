# smart_get/fetcher.py
"""
Range fetching for a single chunk, with resume and bounded retry.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

import aiohttp

from smart_get.config import DownloadConfig
from smart_get.errors import ChunkFetchFailed, DownloadCancelled
from smart_get.models import ChunkEvent, ChunkSpec, EventKind, bytes_on_disk
from smart_get.planner import inspect_chunk

logger = logging.getLogger(__name__)

STREAM_INDEX = 0


class IncompleteChunk(aiohttp.ClientPayloadError):
    """The server closed the body before the chunk was complete."""


class ChunkFetcher:
    """Drives range requests for chunks and appends the bytes to their files."""

    def __init__(self, session: aiohttp.ClientSession, url: str, config: DownloadConfig,
                 emit: Callable[[ChunkEvent], None], cancel_event: Optional[asyncio.Event] = None):
        self.session = session
        self.url = url
        self.config = config
        self.emit = emit
        self.cancel_event = cancel_event or asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def backoff(self, attempt: int) -> float:
        return min(self.config.backoff_base * (2 ** attempt), self.config.backoff_cap)

    async def fetch(self, spec: ChunkSpec):
        """Fetch the missing tail of a planned chunk, retrying with exponential backoff."""
        last_error: Optional[BaseException] = None
        for attempt in range(self.config.max_retries):
            if self.is_cancelled:
                raise DownloadCancelled()

            state = inspect_chunk(spec)
            if state.is_complete:
                self.emit(ChunkEvent(spec.index, EventKind.COMPLETED, chunk_bytes=spec.length))
                return

            try:
                await self._fetch_range(spec, state.bytes_on_disk)
                self.emit(ChunkEvent(spec.index, EventKind.COMPLETED, chunk_bytes=spec.length))
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                if attempt < self.config.max_retries - 1:
                    wait_time = self.backoff(attempt)
                    logger.warning("Chunk %d (retry %d/%d): %s. Retrying in %.1fs.", spec.index,
                                   attempt + 1, self.config.max_retries, type(e).__name__, wait_time)
                    await asyncio.sleep(wait_time)

        error = ChunkFetchFailed(spec.index, last_error)
        logger.error("Chunk %d failed after %d attempts", spec.index, self.config.max_retries)
        self.emit(ChunkEvent(spec.index, EventKind.FAILED, error=error))
        raise error

    async def _fetch_range(self, spec: ChunkSpec, on_disk: int):
        start = spec.start + on_disk
        headers = {'Range': f'bytes={start}-{spec.end}'}
        logger.debug("Chunk %d requesting bytes=%d-%d", spec.index, start, spec.end)

        async with self.session.get(self.url, headers=headers) as response:
            # A plain 200 is the whole resource, usable only for a chunk that starts at byte 0
            if response.status != 206 and not (response.status == 200 and spec.start == 0):
                raise aiohttp.ClientResponseError(response.request_info, response.history,
                                                  status=response.status,
                                                  message=f"HTTP Error {response.status}")
            if response.status == 200 and on_disk > 0:
                logger.warning("Chunk %d: server ignored the resume range, restarting the chunk", spec.index)
                on_disk = 0

            written = on_disk
            mode = 'ab' if on_disk > 0 else 'wb'
            with open(spec.path, mode) as f:
                async for data in response.content.iter_chunked(self.config.read_size):
                    if self.is_cancelled:
                        raise DownloadCancelled()

                    data = data[:spec.length - written]
                    if not data:
                        break
                    f.write(data)
                    written += len(data)
                    self.emit(ChunkEvent(spec.index, EventKind.PROGRESS,
                                         bytes_written=len(data), chunk_bytes=written))
                    if written >= spec.length:
                        break

        if written < spec.length:
            raise IncompleteChunk(f"Chunk {spec.index} ended at {written}/{spec.length} bytes")

    async def fetch_stream(self, path: Path):
        """Fetch a resource of unknown length sequentially into one file.

        The file's length is both the progress figure and the resume cursor.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(self.config.max_retries):
            if self.is_cancelled:
                raise DownloadCancelled()
            try:
                await self._fetch_stream(path, bytes_on_disk(path))
                self.emit(ChunkEvent(STREAM_INDEX, EventKind.COMPLETED, chunk_bytes=bytes_on_disk(path)))
                return
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                if attempt < self.config.max_retries - 1:
                    wait_time = self.backoff(attempt)
                    logger.warning("Stream (retry %d/%d): %s. Retrying in %.1fs.",
                                   attempt + 1, self.config.max_retries, type(e).__name__, wait_time)
                    await asyncio.sleep(wait_time)

        error = ChunkFetchFailed(STREAM_INDEX, last_error)
        self.emit(ChunkEvent(STREAM_INDEX, EventKind.FAILED, error=error))
        raise error

    @staticmethod
    def _is_already_complete(response: aiohttp.ClientResponse, on_disk: int) -> bool:
        """A 416 to `bytes=N-` means N is past the end. Trust it unless Content-Range names another size."""
        content_range = response.headers.get('Content-Range', '')
        _, _, size = content_range.rpartition('/')
        if not size.isdigit():
            return True
        return int(size) == on_disk

    async def _fetch_stream(self, path: Path, on_disk: int):
        headers = {'Range': f'bytes={on_disk}-'} if on_disk > 0 else {}

        async with self.session.get(self.url, headers=headers) as response:
            if response.status == 416 and on_disk > 0 and self._is_already_complete(response, on_disk):
                logger.info("Partial file already holds all %d bytes", on_disk)
                self.emit(ChunkEvent(STREAM_INDEX, EventKind.SIZE, total_hint=on_disk))
                return
            if response.status not in (200, 206):
                raise aiohttp.ClientResponseError(response.request_info, response.history,
                                                  status=response.status,
                                                  message=f"HTTP Error {response.status}")
            if on_disk > 0 and response.status == 200:
                logger.warning("Server ignored the resume range, restarting from the beginning")
                on_disk = 0

            content_length = response.headers.get('Content-Length')
            if content_length and content_length.isdigit():
                self.emit(ChunkEvent(STREAM_INDEX, EventKind.SIZE, total_hint=on_disk + int(content_length)))

            written = on_disk
            mode = 'ab' if on_disk > 0 else 'wb'
            with open(path, mode) as f:
                async for data in response.content.iter_chunked(self.config.read_size):
                    if self.is_cancelled:
                        raise DownloadCancelled()
                    f.write(data)
                    written += len(data)
                    self.emit(ChunkEvent(STREAM_INDEX, EventKind.PROGRESS,
                                         bytes_written=len(data), chunk_bytes=written))
