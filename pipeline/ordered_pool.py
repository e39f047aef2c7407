"""
Ordered concurrent pipeline for the meetings stream.

What this does:
1. Fetches the ordered meeting list for a date range
2. Runs a fixed pool of W async workers; each worker claims the next index
   from a shared cursor and processes that meeting (PDF text, then Gemini)
3. Holds finished meetings in a reorder buffer until every earlier meeting
   has been sent, then emits them to the sink in the original order
4. Sends exactly one terminal event (complete or error) and closes the sink

Why a pool instead of one meeting at a time?
Each meeting takes seconds to minutes (Tika + Gemini), and latency has nothing
to do with list position. Running W at once buys throughput; the reorder
buffer gives the frontend the stable, append-only order it renders.

Concurrency model:
Everything runs on one event loop. The claim (ClaimCursor.claim) and the
insert+drain step (ReorderBuffer.complete) contain no await, so no other worker
can interleave with them. If this ever moves to OS threads, both need a mutex.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Sequence

from pipeline.events import CompleteEvent, ErrorEvent, EventSink, ItemEvent
from pipeline.meetings_service import FetchError, fetch_ordered_meetings
from pipeline.metrics import PIPELINE_ACTIVE_WORKERS, record_item, record_pipeline_run
from pipeline.models import (
    DateRangeFilter,
    DegradedOutcome,
    EnrichedOutcome,
    EnrichedResult,
    MeetingRecord,
    ProcessingOutcome,
)
from pipeline.processor import process_meeting


logger = logging.getLogger("ordered-pipeline")

FetchFn = Callable[[DateRangeFilter], Awaitable[Sequence[MeetingRecord]]]
ProcessFn = Callable[[MeetingRecord], Awaitable[EnrichedResult]]


class ReorderInvariantError(AssertionError):
    """The claim/drain discipline was broken (duplicate or stale index)."""


class ClaimCursor:
    """
    Hands out indices 0..total-1, each exactly once, in ascending order.
    """

    def __init__(self, total: int):
        self.total = total
        self._next = 0

    def claim(self) -> Optional[int]:
        index = self._next
        self._next += 1
        if index >= self.total:
            return None
        return index


class ReorderBuffer:
    """
    Holds completed outcomes until all lower indices have been emitted.

    Invariant: every pending index is >= next_index. drain_ready() removes the
    consecutive run starting at next_index, emits it in ascending order and
    advances the cursor past it.
    """

    def __init__(self, emit: Callable[[ProcessingOutcome], None]):
        self._emit = emit
        self._pending: dict[int, ProcessingOutcome] = {}
        self.next_index = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def insert(self, index: int, outcome: ProcessingOutcome) -> None:
        if index < self.next_index:
            raise ReorderInvariantError(f"index {index} already emitted (next is {self.next_index})")
        if index in self._pending:
            raise ReorderInvariantError(f"index {index} inserted twice")
        self._pending[index] = outcome

    def drain_ready(self) -> int:
        emitted = 0
        while self.next_index in self._pending:
            outcome = self._pending.pop(self.next_index)
            self._emit(outcome)
            self.next_index += 1
            emitted += 1
        return emitted

    def complete(self, index: int, outcome: ProcessingOutcome) -> int:
        # No await between insert and drain: this is the single ordering point.
        self.insert(index, outcome)
        return self.drain_ready()


class OrderedWorkerPool:
    """
    Processes `items` with `worker_count` concurrent workers and emits the
    results to `sink` in list order.
    """

    def __init__(
        self,
        items: Sequence[MeetingRecord],
        process: ProcessFn,
        sink: EventSink,
        worker_count: int,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.items = list(items)
        self.worker_count = worker_count
        self._process = process
        self._sink = sink
        self._cursor = ClaimCursor(len(self.items))
        self._buffer = ReorderBuffer(self._emit_outcome)
        self.degraded_count = 0

    @property
    def emitted_count(self) -> int:
        return self._buffer.next_index

    def _emit_outcome(self, outcome: ProcessingOutcome) -> None:
        self._sink.emit(ItemEvent(outcome.index, outcome.to_payload()))
        if outcome.enriched:
            logger.info(f"Sent meeting {outcome.item.id} (index {outcome.index})")
        else:
            logger.info(f"Sent meeting {outcome.item.id} (index {outcome.index}) without decisions: {outcome.reason}")

    async def _process_one(self, index: int) -> ProcessingOutcome:
        item = self.items[index]
        t0 = time.perf_counter()
        PIPELINE_ACTIVE_WORKERS.inc()
        try:
            result = await self._process(item)
        except Exception as exc:
            # One bad meeting must not stall the stream: send it unenriched.
            logger.warning(f"Processing failed for meeting {item.id} (index {index}): {exc}")
            self.degraded_count += 1
            record_item("degraded", time.perf_counter() - t0)
            return DegradedOutcome(index=index, item=item, reason=str(exc))
        finally:
            PIPELINE_ACTIVE_WORKERS.dec()
        record_item("enriched", time.perf_counter() - t0)
        return EnrichedOutcome(index=index, item=item, result=result)

    async def _worker(self, worker_id: int) -> None:
        handled = 0
        while True:
            index = self._cursor.claim()
            if index is None:
                break
            outcome = await self._process_one(index)
            self._buffer.complete(index, outcome)
            handled += 1
        logger.debug(f"Worker {worker_id} finished after {handled} meetings")

    async def run(self) -> None:
        workers = [
            asyncio.create_task(self._worker(n), name=f"meeting-worker-{n}")
            for n in range(self.worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        if self._buffer.pending_count or self.emitted_count != len(self.items):
            raise ReorderInvariantError(
                f"pool finished with {self._buffer.pending_count} pending and "
                f"{self.emitted_count}/{len(self.items)} emitted"
            )


async def run_pipeline(
    date_range: DateRangeFilter,
    worker_count: int,
    sink: EventSink,
    *,
    fetch: Optional[FetchFn] = None,
    process: Optional[ProcessFn] = None,
) -> None:
    """
    Fetch -> process (pooled, reordered) -> complete, driving `sink` throughout.

    Exactly one of complete/error is emitted, always last, and the sink is
    closed on every exit path. Per-meeting failures never reach this level;
    they are streamed as degraded meetings.
    """
    fetch = fetch or fetch_ordered_meetings
    process = process or process_meeting
    t0 = time.perf_counter()

    try:
        logger.info(f"=== Fetching meetings ({date_range.describe()}) ===")
        try:
            items = await fetch(date_range)
        except FetchError as exc:
            logger.error(f"Fetching meetings failed: {exc}")
            sink.emit(ErrorEvent(str(exc)))
            record_pipeline_run("fetch_error")
            return

        logger.info(f"Processing {len(items)} meetings with {worker_count} workers")
        pool = OrderedWorkerPool(items, process, sink, worker_count)
        await pool.run()

        sink.emit(CompleteEvent(len(items)))
        record_pipeline_run("complete")
        logger.info(
            f"=== Stream complete: {len(items)} meetings, {pool.degraded_count} degraded, "
            f"{time.perf_counter() - t0:.1f}s ==="
        )
    except ReorderInvariantError as exc:
        logger.critical(f"Ordering invariant violated: {exc}")
        sink.emit(ErrorEvent("Internal ordering error"))
        record_pipeline_run("error")
        raise
    except Exception as exc:
        logger.error(f"Pipeline aborted: {exc}", exc_info=True)
        sink.emit(ErrorEvent(str(exc) or type(exc).__name__))
        record_pipeline_run("error")
    finally:
        sink.close()
