# smart_get/progress.py
"""
Progress aggregation: the single consumer of chunk events.

Fetchers never touch the session counters. They put ChunkEvents on a queue
and the aggregator task applies them one at a time, which keeps
downloaded_bytes and completed_chunk_count free of lost updates.
"""

import asyncio
import logging
import math
import time
from typing import Callable, Dict, Optional

from smart_get.models import ChunkEvent, DownloadSession, EventKind, ProgressSnapshot
from smart_get.utils import format_bytes, format_eta

logger = logging.getLogger(__name__)

_STOP = object()


class ProgressAggregator:
    """Owns the session counters and renders a throttled progress line."""

    def __init__(self, session: DownloadSession, render_callback: Optional[Callable[[str], None]] = None,
                 render_interval: float = 0.1, clock: Callable[[], float] = time.monotonic):
        self.session = session
        self.render_callback = render_callback
        self.render_interval = render_interval
        self.clock = clock

        self.queue: asyncio.Queue = asyncio.Queue()
        self.chunk_bytes: Dict[int, int] = {}
        self.has_started = False
        self.failed_chunks: Dict[int, Exception] = {}
        self.last_render: Optional[float] = None

    def seed(self, index: int, bytes_on_disk: int):
        """Register what a chunk already has on disk before fetching starts."""
        self.chunk_bytes[index] = bytes_on_disk

    # Producer side

    def emit(self, event: ChunkEvent):
        self.queue.put_nowait(event)

    # Consumer side

    async def run(self):
        """Consume events until stop() is called, then render a final line."""
        while True:
            event = await self.queue.get()
            if event is _STOP:
                break
            self.apply(event)
        self.render(force=True)

    def stop(self):
        self.queue.put_nowait(_STOP)

    def apply(self, event: ChunkEvent):
        session = self.session
        if event.kind is EventKind.SIZE:
            if session.total_bytes is None and event.total_hint:
                session.total_bytes = event.total_hint
                logger.debug("Total size learned from response: %d", event.total_hint)
            return

        if event.kind is EventKind.FAILED:
            self.failed_chunks[event.index] = event.error
            logger.debug("Chunk %d reported failure: %s", event.index, event.error)
            return

        previous = self.chunk_bytes.get(event.index, 0)
        if event.chunk_bytes > previous:
            session.downloaded_bytes += event.chunk_bytes - previous
            self.chunk_bytes[event.index] = event.chunk_bytes

        if event.kind is EventKind.PROGRESS:
            self.has_started = True
        elif event.kind is EventKind.COMPLETED:
            session.completed_chunk_count += 1

        self.render()

    # Derived figures

    def elapsed(self) -> float:
        return self.clock() - self.session.start_time

    def speed(self) -> Optional[float]:
        """Bytes per second over this session, resumed bytes excluded."""
        fresh = self.session.downloaded_bytes - self.session.initial_bytes_resumed
        elapsed = self.elapsed()
        if elapsed <= 0 or fresh <= 0:
            return None
        return fresh / elapsed

    def eta(self) -> Optional[float]:
        speed = self.speed()
        total = self.session.total_bytes
        if total is None or speed is None:
            return None
        if speed <= 0 or math.isnan(speed) or math.isinf(speed):
            return None
        eta = (total - self.session.downloaded_bytes) / speed
        if math.isnan(eta) or math.isinf(eta) or eta < 0:
            return None
        if eta < 1:
            return 0.0
        return eta

    def percentage(self) -> Optional[float]:
        total = self.session.total_bytes
        if not total:
            return None
        return min(self.session.downloaded_bytes / total, 1.0) * 100

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            downloaded_bytes=self.session.downloaded_bytes,
            total_bytes=self.session.total_bytes,
            percentage=self.percentage(),
            speed=self.speed(),
            eta=self.eta(),
            completed_chunks=self.session.completed_chunk_count,
            total_chunks=self.session.total_chunk_count,
            chunk_bytes=dict(self.chunk_bytes),
        )

    # Rendering

    def format_line(self) -> str:
        speed = self.speed()
        eta = self.eta()
        if speed is None:
            speed_str = "Starting..." if self.has_started else "0 B/s"
        else:
            speed_str = f"{format_bytes(speed)}/s"
        if eta is None:
            eta_str = "Calculating..." if self.has_started and speed is None else "Unknown"
        else:
            eta_str = format_eta(eta)

        downloaded = format_bytes(self.session.downloaded_bytes)
        percentage = self.percentage()
        if percentage is None:
            return f"Progress: {downloaded} | Speed: {speed_str}"
        return (f"Progress: {percentage:.1f}% | {downloaded}/{format_bytes(self.session.total_bytes)} "
                f"| Speed: {speed_str} | ETA: {eta_str}")

    def render(self, force: bool = False) -> bool:
        """Render at most once per render_interval unless forced."""
        now = self.clock()
        if not force and self.last_render is not None and now - self.last_render < self.render_interval:
            return False
        self.last_render = now
        if self.render_callback:
            self.render_callback(self.format_line())
        return True
