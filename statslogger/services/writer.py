"""Single-consumer writer that owns the sink."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Tuple

from ..core.exceptions import DownstreamError, SinkError, WriterClosedError
from ..core.logger import get_logger
from ..obs.metrics import Metrics
from .events import Record
from .sinks import Sink

_STOP = object()

_Item = Tuple[Record, bytes, Optional["asyncio.Future[None]"]]


class WriterState(str, Enum):
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"
    FAILED = "failed"


class Writer:
    """
    Serializes records from any number of request tasks into one sink.

    Records are appended one at a time by a single background task, in the
    order it takes them off the queue. ``submit`` waits for a queue slot, so a
    slow sink slows down request handling instead of growing memory.

    A sink failure other than DownstreamError is fatal: the writer stops, the
    sink is closed and ``on_fatal`` is called with the error.
    """

    def __init__(
        self,
        sink: Sink,
        *,
        max_pending: int = 1024,
        on_fatal: Callable[[BaseException], None] | None = None,
        metrics: Metrics | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._sink = sink
        self._on_fatal = on_fatal
        self._metrics = metrics
        self._logger = logger or get_logger("writer")

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._task: asyncio.Task[None] | None = None
        self._state = WriterState.OPEN
        self._entering = 0
        self._sink_closed = False
        self.error: BaseException | None = None

    @property
    def state(self) -> WriterState:
        return self._state

    @property
    def acknowledged(self) -> bool:
        return bool(getattr(self._sink, "acknowledged", False))

    async def start(self) -> None:
        """Start the consumer task once."""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="statslogger-writer")
        self._logger.info("writer_started queue_maxsize=%d", self._queue.maxsize)

    async def submit(self, record: Record, *, wait: bool = False) -> None:
        """
        Hand a record to the writer.

        The record is serialized here, in the caller's task, so a record that
        cannot be encoded raises InvalidPayload without reaching the sink.
        Returns once the record is queued, or once it is persisted when
        ``wait`` is set. Raises WriterClosedError after shutdown or failure.
        """
        if self._state is not WriterState.OPEN:
            raise WriterClosedError(f"writer is {self._state.value}")
        line = record.to_line()
        done = asyncio.get_running_loop().create_future() if wait else None
        self._entering += 1
        try:
            await self._queue.put((record, line, done))
        finally:
            self._entering -= 1
            if self._state is WriterState.DRAINING and self._entering == 0 and self._queue.empty():
                # wake a drain loop that is waiting on a submitter cancelled mid-put
                self._queue.put_nowait(_STOP)
        if done is not None:
            # after a failure _release settles this with SinkError
            await done
        elif self._state is WriterState.FAILED:
            raise WriterClosedError("writer failed")

    async def shutdown(self) -> None:
        """Stop intake, persist everything already handed over, close the sink."""
        if self._state is WriterState.OPEN:
            self._state = WriterState.DRAINING
            self._logger.info("writer_draining pending=%d", self._queue.qsize())
            if self._task is None:
                await asyncio.to_thread(self._close_sink)
                self._state = WriterState.CLOSED
                return
            await self._queue.put(_STOP)
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self) -> None:
        stopping = False
        while True:
            # Submitters that passed the state check before shutdown may still be
            # blocked on a full queue; keep reading until they have all landed.
            if stopping and self._queue.empty() and self._entering == 0:
                break
            item = await self._queue.get()
            if item is _STOP:
                stopping = True
                continue
            if self._metrics:
                self._metrics.queue_depth.set(self._queue.qsize())
            if not await self._persist(item):
                return

        try:
            await asyncio.to_thread(self._close_sink)
        except Exception as exc:
            await self._fail(exc)
            return
        self._state = WriterState.CLOSED
        self._logger.info("writer_closed")

    async def _persist(self, item: _Item) -> bool:
        record, line, done = item
        try:
            await asyncio.to_thread(self._sink.append, line)
        except DownstreamError as exc:
            if self._metrics:
                self._metrics.write_failures.inc(record.kind)
            if done is not None:
                if not done.done():
                    done.set_exception(exc)
            else:
                self._logger.error("forward failed kind=%s: %s", record.kind, exc)
            return True
        except Exception as exc:
            if done is not None and not done.done():
                done.set_exception(SinkError(str(exc)))
            await self._fail(exc)
            return False

        if self._metrics:
            self._metrics.records_written.inc(record.kind)
        if done is not None and not done.done():
            done.set_result(None)
        return True

    async def _fail(self, exc: BaseException) -> None:
        self._state = WriterState.FAILED
        self.error = exc
        self._logger.critical("sink write failed, writer stopped: %s", exc, exc_info=exc)
        try:
            self._close_sink()
        except Exception:
            self._logger.exception("close after failure")
        await self._release()
        if self._on_fatal is not None:
            self._on_fatal(exc)

    async def _release(self) -> None:
        # Every get wakes one submitter blocked on a full queue; yield so it can
        # land its record, then settle that record too, until none are left.
        while True:
            while not self._queue.empty():
                item = self._queue.get_nowait()
                if item is not _STOP and item[2] is not None and not item[2].done():
                    item[2].set_exception(SinkError("writer failed"))
            if self._entering == 0:
                return
            await asyncio.sleep(0)

    def _close_sink(self) -> None:
        if self._sink_closed:
            return
        self._sink_closed = True
        self._sink.close()
