import re
from typing import List, Optional, Set

import pytest
from aioresponses import CallbackResult

from smart_get.config import DownloadConfig

URL = "https://example.com/files/archive.bin"

RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")


def make_payload(size: int) -> bytes:
    """Deterministic bytes that match no file signature and are not valid UTF-8."""
    return bytes((i * 7 + 3) % 256 for i in range(size))


class RangeServer:
    """aioresponses callback serving byte ranges of `data` and recording each Range header."""

    def __init__(self, data: bytes, fail_ranges: Optional[Set[str]] = None, status_for_range: int = 206):
        self.data = data
        self.fail_ranges = fail_ranges or set()
        self.status_for_range = status_for_range
        self.ranges: List[Optional[str]] = []

    def callback(self, url, **kwargs):
        headers = kwargs.get("headers") or {}
        range_header = headers.get("Range")
        self.ranges.append(range_header)

        if range_header in self.fail_ranges:
            return CallbackResult(status=500, body=b"boom")
        if range_header is None:
            return CallbackResult(status=200, body=self.data)

        match = RANGE_RE.match(range_header)
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else len(self.data) - 1
        end = min(end, len(self.data) - 1)
        return CallbackResult(
            status=self.status_for_range,
            body=self.data[start:end + 1],
            headers={"Content-Range": f"bytes {start}-{end}/{len(self.data)}"},
        )


@pytest.fixture
def payload():
    return make_payload(1000)


@pytest.fixture
def config(tmp_path):
    return DownloadConfig(
        work_root=tmp_path / "work",
        max_retries=2,
        backoff_base=0.0,
        backoff_cap=0.0,
        probe_bytes=64,
        render_interval=0.0,
        read_size=64,
    )
