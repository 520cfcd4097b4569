# smart_get/models.py
"""
Data Models for the SmartGet downloader
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict


@dataclass(frozen=True)
class ChunkSpec:
    """One planned byte range of the remote resource (end is inclusive)."""
    index: int
    start: int
    end: int
    path: Path

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class ChunkState:
    """What is already on disk for a chunk. Derived from the file, never stored."""
    spec: ChunkSpec
    bytes_on_disk: int = 0

    @property
    def is_complete(self) -> bool:
        return self.bytes_on_disk >= self.spec.length

    @property
    def resume_offset(self) -> int:
        """Absolute offset the next range request must start from."""
        return self.spec.start + self.bytes_on_disk


@dataclass
class ServerCapabilities:
    """Detected server capabilities"""
    total_size: Optional[int] = None
    supports_range: bool = True


@dataclass
class DownloadSession:
    """Mutable per-invocation state. Counters are written by the progress aggregator only."""
    output_path: Path
    working_directory: Path
    total_bytes: Optional[int] = None
    downloaded_bytes: int = 0
    start_time: float = 0.0
    initial_bytes_resumed: int = 0
    completed_chunk_count: int = 0
    total_chunk_count: int = 0


class DownloadState(Enum):
    SIZING = "sizing"
    SPEED_TESTING = "speed_testing"
    PLANNING = "planning"
    FETCHING = "fetching"
    MERGING = "merging"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Outcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DownloadResult:
    """Terminal result handed back to the caller, who picks the exit code."""
    outcome: Outcome
    output_path: Optional[Path] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.COMPLETED


class EventKind(Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SIZE = "size"


@dataclass(frozen=True)
class ChunkEvent:
    """Emitted by fetchers, consumed only by the ProgressAggregator."""
    index: int
    kind: EventKind
    bytes_written: int = 0
    chunk_bytes: int = 0
    total_hint: Optional[int] = None
    error: Optional[Exception] = None


@dataclass
class ProgressSnapshot:
    """Derived progress figures; None means unknown."""
    downloaded_bytes: int
    total_bytes: Optional[int]
    percentage: Optional[float]
    speed: Optional[float]
    eta: Optional[float]
    completed_chunks: int = 0
    total_chunks: int = 0
    chunk_bytes: Dict[int, int] = field(default_factory=dict)


def bytes_on_disk(path: os.PathLike) -> int:
    """Size of the file at path, 0 if it is absent or unreadable."""
    try:
        return os.path.getsize(path)
    except OSError:
        return 0
