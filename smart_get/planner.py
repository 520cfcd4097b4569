# smart_get/planner.py
"""
Chunk planning and on-disk resume inspection.
"""

from pathlib import Path
from typing import List

from smart_get.errors import InvalidPlan
from smart_get.models import ChunkSpec, ChunkState, bytes_on_disk


def chunk_path(working_directory: Path, index: int) -> Path:
    return Path(working_directory) / f"chunk_{index}"


def plan_chunks(total_bytes: int, connections: int, working_directory: Path) -> List[ChunkSpec]:
    """Split [0, total_bytes) into `connections` contiguous ranges.

    Every chunk gets total_bytes // connections bytes and the last one
    absorbs the remainder.
    """
    if total_bytes is None or total_bytes <= 0:
        raise InvalidPlan(f"Total size must be positive, got {total_bytes}")
    if connections < 1:
        raise InvalidPlan(f"Connection count must be at least 1, got {connections}")
    if connections > total_bytes:
        raise InvalidPlan(f"Cannot split {total_bytes} bytes into {connections} non-empty chunks")

    chunk_size = total_bytes // connections
    chunks = []
    for i in range(connections):
        start = i * chunk_size
        end = start + chunk_size - 1
        if i == connections - 1:
            end = total_bytes - 1
        chunks.append(ChunkSpec(index=i, start=start, end=end, path=chunk_path(working_directory, i)))
    return chunks


def inspect_chunk(spec: ChunkSpec) -> ChunkState:
    """Report how much of the chunk is already persisted."""
    return ChunkState(spec=spec, bytes_on_disk=bytes_on_disk(spec.path))
