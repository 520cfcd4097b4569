"""
Tests for ChunkFetcher: resume offsets, retries and the single-stream mode.
"""

import asyncio

import pytest
from aioresponses import CallbackResult, aioresponses

from conftest import URL, RangeServer
from smart_get.errors import ChunkFetchFailed, DownloadCancelled
from smart_get.fetcher import ChunkFetcher
from smart_get.models import EventKind
from smart_get.planner import plan_chunks


def run_fetch(config, server, coro_factory, events):
    async def scenario():
        with aioresponses() as mock:
            mock.get(URL, callback=server.callback, repeat=True)
            async with config.create_session(4) as http:
                fetcher = ChunkFetcher(http, URL, config, events.append)
                return await coro_factory(fetcher)

    return asyncio.run(scenario())


class TestFetchChunk:
    """Range requests start at the on-disk resume cursor."""

    def test_fresh_chunk_requests_whole_range(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[2]
        server = RangeServer(payload)
        events = []

        run_fetch(config, server, lambda f: f.fetch(spec), events)

        assert server.ranges == ["bytes=500-749"]
        assert spec.path.read_bytes() == payload[500:750]
        assert events[-1].kind is EventKind.COMPLETED
        assert events[-1].chunk_bytes == 250

    def test_partial_chunk_resumes_from_file_length(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[3]
        spec.path.write_bytes(payload[750:850])
        server = RangeServer(payload)
        events = []

        run_fetch(config, server, lambda f: f.fetch(spec), events)

        assert server.ranges == ["bytes=850-999"]
        assert spec.path.read_bytes() == payload[750:1000]

    def test_complete_chunk_makes_no_request(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[1]
        spec.path.write_bytes(payload[250:500])
        server = RangeServer(payload)
        events = []

        run_fetch(config, server, lambda f: f.fetch(spec), events)

        assert server.ranges == []
        assert [e.kind for e in events] == [EventKind.COMPLETED]

    def test_progress_is_monotonic_per_chunk(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 1, tmp_path)[0]
        events = []

        run_fetch(config, RangeServer(payload), lambda f: f.fetch(spec), events)

        running = [e.chunk_bytes for e in events if e.kind is EventKind.PROGRESS]
        assert running == sorted(running)
        assert running[-1] == len(payload)
        assert sum(e.bytes_written for e in events if e.kind is EventKind.PROGRESS) == len(payload)

    def test_short_body_is_retried_from_new_offset(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 10, tmp_path)[0]
        server = RangeServer(payload)
        calls = []

        def flaky(url, **kwargs):
            calls.append(kwargs["headers"]["Range"])
            if len(calls) == 1:
                return CallbackResult(status=206, body=payload[0:40])
            return server.callback(url, **kwargs)

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=flaky, repeat=True)
                async with config.create_session(1) as http:
                    await ChunkFetcher(http, URL, config, lambda e: None).fetch(spec)

        asyncio.run(scenario())

        assert calls == ["bytes=0-99", "bytes=40-99"]
        assert spec.path.read_bytes() == payload[:100]

    def test_oversized_body_is_capped(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[0]

        def overlong(url, **kwargs):
            return CallbackResult(status=206, body=payload)

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=overlong, repeat=True)
                async with config.create_session(1) as http:
                    await ChunkFetcher(http, URL, config, lambda e: None).fetch(spec)

        asyncio.run(scenario())

        assert spec.path.read_bytes() == payload[:250]

    def test_server_error_exhausts_retries(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[1]
        server = RangeServer(payload, fail_ranges={"bytes=250-499"})
        events = []

        with pytest.raises(ChunkFetchFailed) as excinfo:
            run_fetch(config, server, lambda f: f.fetch(spec), events)

        assert excinfo.value.index == 1
        assert len(server.ranges) == config.max_retries
        assert events[-1].kind is EventKind.FAILED

    def test_ignored_range_fails_for_later_chunks(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[2]
        server = RangeServer(payload, status_for_range=200)

        with pytest.raises(ChunkFetchFailed):
            run_fetch(config, server, lambda f: f.fetch(spec), [])
        assert not spec.path.exists()

    def test_ignored_range_restarts_first_chunk(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 4, tmp_path)[0]
        spec.path.write_bytes(b"x" * 100)
        ranges = []

        def whole_body(url, **kwargs):
            ranges.append(kwargs["headers"].get("Range"))
            return CallbackResult(status=200, body=payload)

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=whole_body, repeat=True)
                async with config.create_session(1) as http:
                    await ChunkFetcher(http, URL, config, lambda e: None).fetch(spec)

        asyncio.run(scenario())

        assert ranges == ["bytes=100-249"]
        assert spec.path.read_bytes() == payload[:250]

    def test_cancelled_fetch_keeps_file(self, tmp_path, config, payload):
        spec = plan_chunks(len(payload), 2, tmp_path)[0]
        spec.path.write_bytes(payload[:10])

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=RangeServer(payload).callback, repeat=True)
                async with config.create_session(1) as http:
                    cancel_event = asyncio.Event()
                    cancel_event.set()
                    await ChunkFetcher(http, URL, config, lambda e: None, cancel_event).fetch(spec)

        with pytest.raises(DownloadCancelled):
            asyncio.run(scenario())
        assert spec.path.read_bytes() == payload[:10]


class TestFetchStream:
    """Unknown-length downloads written sequentially to one file."""

    def test_fresh_stream_sends_no_range(self, tmp_path, config, payload):
        path = tmp_path / "single_partial"
        server = RangeServer(payload)

        run_fetch(config, server, lambda f: f.fetch_stream(path), [])

        assert server.ranges == [None]
        assert path.read_bytes() == payload

    def test_resumed_stream_uses_open_range(self, tmp_path, config, payload):
        path = tmp_path / "single_partial"
        path.write_bytes(payload[:300])
        server = RangeServer(payload)

        run_fetch(config, server, lambda f: f.fetch_stream(path), [])

        assert server.ranges == ["bytes=300-"]
        assert path.read_bytes() == payload

    def test_ignored_resume_restarts_file(self, tmp_path, config, payload):
        path = tmp_path / "single_partial"
        path.write_bytes(b"stale bytes")
        ranges = []

        def whole_body(url, **kwargs):
            ranges.append(kwargs["headers"].get("Range"))
            return CallbackResult(status=200, body=payload)

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=whole_body, repeat=True)
                async with config.create_session(1) as http:
                    await ChunkFetcher(http, URL, config, lambda e: None).fetch_stream(path)

        asyncio.run(scenario())

        assert ranges == ["bytes=11-"]
        assert path.read_bytes() == payload

    def test_stream_already_complete_on_416(self, tmp_path, config, payload):
        path = tmp_path / "single_partial"
        path.write_bytes(payload)
        events = []

        def past_the_end(url, **kwargs):
            return CallbackResult(status=416, headers={"Content-Range": f"bytes */{len(payload)}"})

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=past_the_end, repeat=True)
                async with config.create_session(1) as http:
                    await ChunkFetcher(http, URL, config, events.append).fetch_stream(path)

        asyncio.run(scenario())

        assert path.read_bytes() == payload
        assert [e.kind for e in events] == [EventKind.SIZE, EventKind.COMPLETED]
        assert events[0].total_hint == len(payload)

    def test_416_for_a_different_size_fails(self, tmp_path, config, payload):
        path = tmp_path / "single_partial"
        path.write_bytes(payload[:400])

        def wrong_size(url, **kwargs):
            return CallbackResult(status=416, headers={"Content-Range": "bytes */300"})

        async def scenario():
            with aioresponses() as mock:
                mock.get(URL, callback=wrong_size, repeat=True)
                async with config.create_session(1) as http:
                    await ChunkFetcher(http, URL, config, lambda e: None).fetch_stream(path)

        with pytest.raises(ChunkFetchFailed):
            asyncio.run(scenario())
        assert path.read_bytes() == payload[:400]
