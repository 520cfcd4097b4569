# smart_get/errors.py
"""
Exception types raised by the download engine.
"""

from typing import Optional


class SmartGetError(Exception):
    """Base class for all downloader errors."""


class InvalidURL(SmartGetError):
    """The URL is malformed. Raised before any network activity."""

    def __init__(self, url: str):
        super().__init__(f"Invalid URL: {url!r}")
        self.url = url


class InvalidPlan(SmartGetError):
    """The requested chunk plan cannot partition the resource."""


class SizeUnknown(SmartGetError):
    """The server did not report a usable Content-Length."""


class ChunkFetchFailed(SmartGetError):
    """A chunk could not be fetched, even after retrying."""

    def __init__(self, index: int, cause: Optional[BaseException] = None):
        message = f"Chunk {index} failed"
        if cause is not None:
            message += f": {type(cause).__name__}: {cause}"
        super().__init__(message)
        self.index = index
        self.cause = cause


class MergeFailed(SmartGetError):
    """The output file could not be assembled. Chunk files are kept."""


class DownloadCancelled(SmartGetError):
    """The user asked the download to stop."""


class WorkDirUnavailable(SmartGetError):
    """The working directory for chunk files could not be created."""
