"""
SmartGet - segmented downloader with resume support
Command-line entry point
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from smart_get import __version__
from smart_get.config import DownloadConfig
from smart_get.engine import DownloadEngine
from smart_get.models import DownloadResult, Outcome
from smart_get.utils import get_default_filename, is_valid_url

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

EXAMPLES = """\
examples:
  smart-get https://example.com/file.zip
  smart-get https://example.com/file.zip -o myfile.zip
  smart-get https://example.com/file.zip -c 4

Press Ctrl+C to cancel; run the same command again to resume."""


def connection_count(value: str) -> int:
    try:
        connections = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"requires a number, got {value!r}")
    if not 1 <= connections <= DownloadConfig.max_connections:
        raise argparse.ArgumentTypeError(f"must be between 1 and {DownloadConfig.max_connections}")
    return connections


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smart-get",
        description="Download a file over several connections with resume support.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("url", metavar="URL", help="file to download")
    parser.add_argument("-o", "--output", metavar="FILE",
                        help="output filename (default: last part of the URL path)")
    parser.add_argument("-c", "--connections", type=connection_count, metavar="N",
                        help="number of connections (1-8); skips the speed test")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


class ConsoleReporter:
    """Prints status lines and keeps the progress line on a single row."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self.line_open = False

    def on_status(self, message: str):
        if self.line_open:
            self.stream.write("\n")
            self.line_open = False
        self.stream.write(f"{message}\n")
        self.stream.flush()

    def on_progress(self, line: str):
        self.stream.write(f"\r{line}")
        self.stream.flush()
        self.line_open = True


async def run_download(engine: DownloadEngine) -> DownloadResult:
    """Run the engine with Ctrl+C wired to engine.cancel()."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        # No loop signal support (Windows): hop back onto the loop from the handler
        signal.signal(signal.SIGINT, lambda signum, frame: loop.call_soon_threadsafe(engine.cancel))
        installed = False

    try:
        return await engine.download()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        else:
            signal.signal(signal.SIGINT, signal.default_int_handler)


def exit_code(result: DownloadResult) -> int:
    if result.outcome is Outcome.COMPLETED:
        return EXIT_OK
    if result.outcome is Outcome.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not is_valid_url(args.url):
        print(f"Error: invalid URL '{args.url}'", file=sys.stderr)
        return EXIT_USAGE

    output = args.output or get_default_filename(args.url)
    engine = DownloadEngine(args.url, output, connections=args.connections, config=DownloadConfig())
    reporter = ConsoleReporter()
    engine.status_callback = reporter.on_status
    engine.progress_callback = reporter.on_progress

    reporter.on_status("Starting smart download...")
    reporter.on_status(f"URL: {args.url}")
    result = asyncio.run(run_download(engine))
    return exit_code(result)


if __name__ == "__main__":
    sys.exit(main())
