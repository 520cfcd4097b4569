# smart_get/merger.py
"""
Reassembles finished chunks into the output file.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Optional, Sequence

from smart_get.errors import DownloadCancelled, MergeFailed
from smart_get.models import ChunkSpec
from smart_get.planner import inspect_chunk

logger = logging.getLogger(__name__)

COPY_BUFFER = 1024 * 1024


def merge_chunks(chunks: Sequence[ChunkSpec], output_path: Path, total_bytes: Optional[int] = None,
                 should_stop: Optional[Callable[[], bool]] = None) -> Path:
    """Concatenate chunk files in ascending index order into output_path.

    Chunk files are only read here; they are removed by cleanup() once
    the caller is satisfied with the result. On failure or cancellation
    the partial output is removed and the chunks stay on disk.
    """
    output_path = Path(output_path)
    ordered = sorted(chunks, key=lambda spec: spec.index)

    for spec in ordered:
        state = inspect_chunk(spec)
        if not state.is_complete:
            raise MergeFailed(f"Chunk {spec.index} is incomplete ({state.bytes_on_disk}/{spec.length} bytes)")

    try:
        with open(output_path, 'wb') as out:
            for spec in ordered:
                if should_stop and should_stop():
                    raise DownloadCancelled()
                with open(spec.path, 'rb') as f:
                    shutil.copyfileobj(f, out, COPY_BUFFER)
    except DownloadCancelled:
        _discard(output_path)
        raise
    except OSError as e:
        _discard(output_path)
        raise MergeFailed(f"Could not write {output_path}: {e}") from e

    verify_output(output_path, total_bytes)
    return output_path


def verify_output(output_path: Path, total_bytes: Optional[int] = None):
    if not output_path.exists():
        raise MergeFailed(f"Merged file {output_path} was not created")
    if total_bytes is not None:
        actual = output_path.stat().st_size
        if actual != total_bytes:
            _discard(output_path)
            raise MergeFailed(f"Size mismatch. Expected: {total_bytes}, Got: {actual}")


def finalize_stream(partial_path: Path, output_path: Path, total_bytes: Optional[int] = None) -> Path:
    """Move the single-stream file into place. The partial file is checked before it is moved."""
    if not Path(partial_path).exists():
        raise MergeFailed(f"Nothing was downloaded to {partial_path}")
    if total_bytes is not None:
        actual = os.path.getsize(partial_path)
        if actual != total_bytes:
            raise MergeFailed(f"Size mismatch. Expected: {total_bytes}, Got: {actual}")
    try:
        shutil.move(str(partial_path), str(output_path))
    except OSError as e:
        raise MergeFailed(f"Could not move {partial_path} to {output_path}: {e}") from e
    verify_output(Path(output_path))
    return Path(output_path)


def cleanup(working_directory: Path, chunks: Sequence[ChunkSpec] = ()):
    """Delete chunk files and the working directory after a verified merge."""
    for spec in chunks:
        try:
            os.remove(spec.path)
        except FileNotFoundError:
            pass
    shutil.rmtree(working_directory, ignore_errors=True)
    logger.debug("Removed working directory %s", working_directory)


def _discard(path: Path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove partial output %s: %s", path, e)
