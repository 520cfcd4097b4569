# smart_get/engine.py
"""
Core download engine: sizing, connection tuning, chunked fetching with resume, and merge.
"""

import asyncio
import hashlib
import logging
import os
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional

from smart_get.config import DownloadConfig
from smart_get.errors import (ChunkFetchFailed, DownloadCancelled, InvalidURL, SizeUnknown, SmartGetError,
                             WorkDirUnavailable)
from smart_get.fetcher import STREAM_INDEX, ChunkFetcher
from smart_get.filetype import fix_file_extension
from smart_get.merger import cleanup, finalize_stream, merge_chunks
from smart_get.models import (ChunkSpec, DownloadResult, DownloadSession, DownloadState, Outcome,
                              ServerCapabilities, bytes_on_disk)
from smart_get.planner import inspect_chunk, plan_chunks
from smart_get.probe import SpeedProbe, detect_capabilities
from smart_get.progress import ProgressAggregator
from smart_get.utils import format_bytes, is_valid_url, unique_output_path

logger = logging.getLogger(__name__)

STREAM_FILENAME = "single_partial"


class DownloadEngine:
    """Manages the entire download process for a single file."""

    def __init__(self, url: str, output_path, connections: Optional[int] = None,
                 config: Optional[DownloadConfig] = None):
        self.url = url
        self.config = config or DownloadConfig()
        self.connections = connections
        # Collisions are resolved once, when the session starts
        self.output_path = unique_output_path(output_path)

        self.state = DownloadState.SIZING
        self.capabilities: Optional[ServerCapabilities] = None
        self.chunks: List[ChunkSpec] = []
        self.session: Optional[DownloadSession] = None
        self.aggregator: Optional[ProgressAggregator] = None

        self._cancel_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        # Callbacks for the front end
        self.progress_callback: Optional[Callable[[str], None]] = None
        self.status_callback: Optional[Callable[[str], None]] = None

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self):
        """Stop issuing fetches and abort the ones in flight. Must be called from the event loop."""
        if self.is_cancelled:
            return
        self._cancel_event.set()
        self._update_status("Download stopping...")
        for task in self._tasks:
            task.cancel()

    def working_dir_for(self, plan: str) -> Path:
        """Working directory for one plan of this URL and output path."""
        key = f"{self.url}\n{os.path.abspath(self.output_path)}\n{plan}"
        digest = hashlib.sha1(key.encode('utf-8')).hexdigest()[:16]
        return self.config.working_root() / digest

    @staticmethod
    def plan_key(total_bytes: int, connections: int) -> str:
        return f"{total_bytes}x{connections}"

    async def download(self) -> DownloadResult:
        """Run the download to a terminal outcome. Never raises for download errors."""
        try:
            if not is_valid_url(self.url):
                raise InvalidURL(self.url)
            return await self._run()
        except DownloadCancelled:
            return self._cancelled()
        except asyncio.CancelledError:
            if not self.is_cancelled:
                raise
            return self._cancelled()
        except SmartGetError as e:
            self._set_state(DownloadState.FAILED)
            message = f"Download failed: {e}"
            if self.aggregator is not None and self.aggregator.failed_chunks:
                failed = ", ".join(str(index) for index in sorted(self.aggregator.failed_chunks))
                message += f" (failed chunks: {failed})"
            self._update_status(message)
            return DownloadResult(Outcome.FAILED, error=e)

    async def _run(self) -> DownloadResult:
        self._update_status(f"Output: {self.output_path}")
        self._set_state(DownloadState.SIZING)
        try:
            async with self.config.create_session(1) as http:
                self.capabilities = await detect_capabilities(http, self.url)
        except SizeUnknown as e:
            logger.info("Size unknown: %s", e)
            self._update_status("Could not determine file size, using single connection")
            return await self._download_stream()

        total = self.capabilities.total_size
        self._update_status(f"File size: {format_bytes(total)}")

        connections = await self._choose_connections(total)
        self._check_cancelled()

        self._set_state(DownloadState.PLANNING)
        pending = self._prepare_chunks(total, connections)

        self._set_state(DownloadState.FETCHING)
        self._update_status(f"Starting download with {connections} connection(s)...")
        self.session.start_time = self.aggregator.clock()
        if pending:
            await self._fetch_all(pending, connections)
        self._check_cancelled()

        incomplete = [spec.index for spec in self.chunks if not inspect_chunk(spec).is_complete]
        if incomplete:
            raise ChunkFetchFailed(incomplete[0])

        self._set_state(DownloadState.MERGING)
        self._update_status("Merging chunks...")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, merge_chunks, self.chunks, self.output_path, total,
                                   lambda: self.is_cancelled)
        cleanup(self.session.working_directory, self.chunks)
        return self._completed()

    async def _choose_connections(self, total: int) -> int:
        if not self.capabilities.supports_range:
            self._update_status("Server does not support ranges, using single connection")
            return 1
        if self.connections is not None:
            self._update_status(f"Using user-specified connections: {self.connections}")
            return min(self.config.clamp_connections(self.connections), total)

        previous = self._find_previous_plan(total)
        if previous is not None:
            self._update_status(f"Found partial download, keeping {previous} connection(s)")
            return previous

        self._set_state(DownloadState.SPEED_TESTING)
        self._update_status("Quick connection speed test...")
        probe = SpeedProbe(self.url, self.config, total)
        task = asyncio.create_task(probe.choose())
        self._tasks.append(task)
        try:
            chosen, _ = await task
        finally:
            self._tasks.remove(task)
        self._update_status(f"Optimal connections: {chosen}")
        return min(chosen, total)

    def _find_previous_plan(self, total: int) -> Optional[int]:
        """Connection count of an earlier, interrupted plan for the same file, if any."""
        for connections in range(1, self.config.max_connections + 1):
            work_dir = self.working_dir_for(self.plan_key(total, connections))
            if not work_dir.is_dir():
                continue
            if any(bytes_on_disk(entry) > 0 for entry in work_dir.iterdir()):
                return connections
        return None

    def _new_session(self, work_dir: Path, total: Optional[int], chunk_count: int):
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkDirUnavailable(f"Cannot create working directory {work_dir}: {e}") from e
        self.session = DownloadSession(output_path=self.output_path, working_directory=work_dir,
                                       total_bytes=total, total_chunk_count=chunk_count)
        self.aggregator = ProgressAggregator(self.session, self.progress_callback,
                                             render_interval=self.config.render_interval)

    def _prepare_chunks(self, total: int, connections: int) -> List[ChunkSpec]:
        """Plan the chunks and account for what is already on disk. Returns the chunks to fetch."""
        work_dir = self.working_dir_for(self.plan_key(total, connections))
        self.chunks = plan_chunks(total, connections, work_dir)
        self._new_session(work_dir, total, len(self.chunks))

        pending = []
        resumed = 0
        for spec in self.chunks:
            state = inspect_chunk(spec)
            on_disk = min(state.bytes_on_disk, spec.length)
            resumed += on_disk
            self.aggregator.seed(spec.index, on_disk)
            if state.is_complete:
                self.session.completed_chunk_count += 1
            else:
                pending.append(spec)

        self.session.initial_bytes_resumed = resumed
        self.session.downloaded_bytes = resumed
        if resumed > 0:
            self._update_status(f"Resuming download from {format_bytes(resumed)}")
            self.aggregator.render(force=True)
        return pending

    async def _fetch_all(self, pending: List[ChunkSpec], connections: int):
        queue: Deque[ChunkSpec] = deque(pending)
        consumer = asyncio.create_task(self.aggregator.run())
        try:
            async with self.config.create_session(connections) as http:
                fetcher = ChunkFetcher(http, self.url, self.config, self.aggregator.emit, self._cancel_event)
                workers = [asyncio.create_task(self.download_worker(i, queue, fetcher))
                           for i in range(min(connections, len(queue)))]
                self._tasks.extend(workers)
                await self._await_workers(workers)
        finally:
            self._tasks.clear()
            self.aggregator.stop()
            await consumer

    async def _await_workers(self, workers: List[asyncio.Task]):
        try:
            await asyncio.gather(*workers)
        except BaseException:
            # One worker failed or was cancelled: stop the rest and wait for them to unwind
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    async def download_worker(self, worker_id: int, queue: Deque[ChunkSpec], fetcher: ChunkFetcher):
        """A worker that downloads chunks until none are left."""
        while queue and not self.is_cancelled:
            chunk = queue.popleft()
            logger.debug("Worker %d: chunk %d", worker_id, chunk.index)
            await fetcher.fetch(chunk)

    async def _download_stream(self) -> DownloadResult:
        """Sequential download of a resource whose size is unknown."""
        work_dir = self.working_dir_for("stream")
        partial = work_dir / STREAM_FILENAME
        self._new_session(work_dir, None, 1)

        on_disk = bytes_on_disk(partial)
        self.aggregator.seed(STREAM_INDEX, on_disk)
        self.session.initial_bytes_resumed = on_disk
        self.session.downloaded_bytes = on_disk
        if on_disk > 0:
            self._update_status(f"Resuming download from {format_bytes(on_disk)}")

        self._set_state(DownloadState.FETCHING)
        self.session.start_time = self.aggregator.clock()
        consumer = asyncio.create_task(self.aggregator.run())
        try:
            async with self.config.create_session(1) as http:
                fetcher = ChunkFetcher(http, self.url, self.config, self.aggregator.emit, self._cancel_event)
                worker = asyncio.create_task(fetcher.fetch_stream(partial))
                self._tasks.append(worker)
                await worker
        finally:
            self._tasks.clear()
            self.aggregator.stop()
            await consumer
        self._check_cancelled()

        self._set_state(DownloadState.MERGING)
        finalize_stream(partial, self.output_path, self.session.total_bytes)
        cleanup(work_dir)
        return self._completed()

    def _completed(self) -> DownloadResult:
        try:
            final_path = fix_file_extension(self.output_path)
        except OSError as e:
            logger.warning("Could not check file type of %s: %s", self.output_path, e)
            final_path = self.output_path
        self._set_state(DownloadState.COMPLETED)
        self._update_status(f"Download completed: {final_path}")
        return DownloadResult(Outcome.COMPLETED, output_path=final_path)

    def _cancelled(self) -> DownloadResult:
        self._set_state(DownloadState.CANCELLED)
        self._update_status("Download cancelled")
        return DownloadResult(Outcome.CANCELLED)

    def _check_cancelled(self):
        if self.is_cancelled:
            raise DownloadCancelled()

    def _set_state(self, state: DownloadState):
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _update_status(self, message: str):
        """Send status update to the front end via callback."""
        logger.info(message)
        if self.status_callback:
            self.status_callback(message)
