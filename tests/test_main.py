"""
Tests for the command-line front end.
"""

import io

import pytest

from smart_get import main as cli
from smart_get.models import DownloadResult, Outcome


class TestParseArgs:
    """Malformed invocations stop before any network activity."""

    def test_defaults(self):
        args = cli.build_parser().parse_args(["https://example.com/f.zip"])
        assert args.url == "https://example.com/f.zip"
        assert args.output is None
        assert args.connections is None

    def test_output_and_connections(self):
        args = cli.build_parser().parse_args(["https://example.com/f.zip", "-o", "x.zip", "--connections", "4"])
        assert args.output == "x.zip"
        assert args.connections == 4

    @pytest.mark.parametrize("argv", [
        [],
        ["https://a/x", "https://b/y"],
        ["https://a/x", "--bogus"],
        ["https://a/x", "-c", "many"],
        ["https://a/x", "-c", "0"],
        ["https://a/x", "-c", "9"],
        ["https://a/x", "-o"],
    ])
    def test_usage_errors(self, argv, monkeypatch):
        monkeypatch.setattr(cli, "DownloadEngine", _forbidden_engine)
        with pytest.raises(SystemExit) as excinfo:
            cli.main(argv)
        assert excinfo.value.code == cli.EXIT_USAGE

    def test_help_exits_cleanly(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "DownloadEngine", _forbidden_engine)
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["--help"])
        assert excinfo.value.code == 0
        assert "--connections" in capsys.readouterr().out

    def test_invalid_url_is_rejected(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "DownloadEngine", _forbidden_engine)
        assert cli.main(["example.com/file.zip"]) == cli.EXIT_USAGE
        assert "invalid URL" in capsys.readouterr().err


class TestExitCodes:

    @pytest.mark.parametrize("outcome, code", [
        (Outcome.COMPLETED, 0),
        (Outcome.FAILED, 1),
        (Outcome.CANCELLED, 130),
    ])
    def test_exit_code(self, outcome, code):
        assert cli.exit_code(DownloadResult(outcome)) == code

    def test_main_runs_engine_and_maps_result(self, monkeypatch, tmp_path):
        created = {}

        class StubEngine:
            def __init__(self, url, output, connections=None, config=None):
                created.update(url=url, output=output, connections=connections)
                self.status_callback = None
                self.progress_callback = None

            def cancel(self):
                pass

            async def download(self):
                return DownloadResult(Outcome.CANCELLED)

        monkeypatch.setattr(cli, "DownloadEngine", StubEngine)
        monkeypatch.chdir(tmp_path)

        assert cli.main(["https://example.com/dir/movie.mkv", "-c", "3"]) == cli.EXIT_CANCELLED
        assert created == {"url": "https://example.com/dir/movie.mkv", "output": "movie.mkv", "connections": 3}


class TestConsoleReporter:

    def test_status_breaks_progress_line(self):
        stream = io.StringIO()
        reporter = cli.ConsoleReporter(stream)
        reporter.on_progress("Progress: 10%")
        reporter.on_progress("Progress: 20%")
        reporter.on_status("Merging chunks...")

        assert stream.getvalue() == "\rProgress: 10%\rProgress: 20%\nMerging chunks...\n"


def _forbidden_engine(*args, **kwargs):
    raise AssertionError("no download may start for a malformed invocation")
