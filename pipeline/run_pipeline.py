"""
Command-line runner for the ordered meetings pipeline.

Runs the same pipeline as GET /api/meetings and writes one JSON object per
event to stdout, in stream order:

    python -m pipeline.run_pipeline --start-date 2026-01-01 --end-date 2026-01-31

Useful for checking a date range without the frontend, or piping into jq.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import BinaryIO, Optional

from pipeline.config import PIPELINE_WORKER_COUNT
from pipeline.events import SinkWriteError, StreamEvent, format_json_line
from pipeline.models import DateRangeFilter
from pipeline.ordered_pool import run_pipeline

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s', stream=sys.stderr)
logger = logging.getLogger("pipeline-cli")


class JsonLinesSink:
    """
    EventSink writing JSON lines to a binary stream.

    A write failure (e.g. `| head` closed the pipe) closes the sink; the
    pipeline keeps running to completion but nothing more is written.
    """

    def __init__(self, out: Optional[BinaryIO] = None):
        self._out = out if out is not None else sys.stdout.buffer
        self._closed = False
        self.written = 0
        self.last_event_name = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _write(self, data: bytes) -> None:
        try:
            self._out.write(data)
            self._out.flush()
        except (BrokenPipeError, OSError, ValueError) as exc:
            raise SinkWriteError(str(exc)) from exc

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            return
        try:
            self._write(format_json_line(event))
        except SinkWriteError as exc:
            logger.warning(f"Output closed, dropping remaining events: {exc}")
            self._closed = True
            return
        self.written += 1
        self.last_event_name = event.name

    def close(self) -> None:
        self._closed = True


def iso_date(value: str) -> str:
    """argparse type: a real YYYY-MM-DD date, returned unchanged."""
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, use YYYY-MM-DD")
    # strptime accepts 2026-1-5; the date filter compares zero-padded strings.
    if parsed.strftime("%Y-%m-%d") != value:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, use YYYY-MM-DD")
    return value


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Stream council meetings with extracted decisions as JSON lines.")
    parser.add_argument("--start-date", type=iso_date, default=None, help="Inclusive start date (YYYY-MM-DD)")
    parser.add_argument("--end-date", type=iso_date, default=None, help="Inclusive end date (YYYY-MM-DD)")
    parser.add_argument(
        "--workers",
        type=int,
        default=PIPELINE_WORKER_COUNT,
        help=f"Concurrent meeting workers (default {PIPELINE_WORKER_COUNT})",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.workers < 1:
        logger.error("--workers must be >= 1")
        return 2

    date_range = DateRangeFilter(start_date=args.start_date, end_date=args.end_date)
    sink = JsonLinesSink()
    logger.info(f">>> Streaming meetings for {date_range.describe()} with {args.workers} workers")
    asyncio.run(run_pipeline(date_range, args.workers, sink))
    logger.info(f"<<< Done ({sink.written} events written)")
    return 1 if sink.last_event_name == "error" else 0


if __name__ == "__main__":
    sys.exit(main())
