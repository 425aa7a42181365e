"""Ordered, backpressured, cancellable result streams backed by a thread pool.

Chunks are produced concurrently but always delivered in index order. A
stream never holds more than ``high_water_mark`` finished-but-unconsumed
chunks, and closing it cancels pending work, waits for running work, and
then runs its close callbacks.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future, wait
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, Iterator, Sequence, TypeVar, Union

from geoquery.errors import (
    PartialReadError,
    QueryCancelledError,
    QueryError,
    QueryTimeoutError,
)
from geoquery.logging_utils import log_context

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

_OK = "ok"
_ERROR = "error"


@dataclass(frozen=True)
class ChunkFailure:
    """In-order placeholder for a chunk that failed in non-strict mode."""

    index: int
    error: PartialReadError


StreamItem = Union[T, ChunkFailure]


class _Channel:
    """Shared state between the consumer and the pool workers."""

    def __init__(
        self,
        executor: Executor,
        *,
        high_water_mark: int,
        label: str,
    ) -> None:
        self.executor = executor
        self.high_water_mark = max(1, int(high_water_mark))
        self.label = label
        self.cond = threading.Condition(threading.RLock())
        self.buffer: dict[int, tuple[str, Any]] = {}
        self.next_index = 0
        self.total: int | None = None
        self.cancelled = threading.Event()
        self.closed = False
        self.futures: dict[int, Future] = {}
        self.tasks: Sequence[Callable[[], Any]] | None = None
        self.submitted = 0
        self.callbacks: list[Callable[[], None]] = []
        self.peak_buffered = 0

    def exhausted(self) -> bool:
        return self.total is not None and self.next_index >= self.total

    def top_up(self) -> None:
        """Submit tasks until the window ahead of the consumer is full.

        Must be called with ``cond`` held.
        """
        if self.tasks is None or self.cancelled.is_set():
            return
        limit = min(len(self.tasks), self.next_index + self.high_water_mark)
        while self.submitted < limit:
            index = self.submitted
            try:
                future = self.executor.submit(self.run_task, index, self.tasks[index])
            except RuntimeError as exc:
                raise QueryError(
                    f"Task pool is shut down: {exc}", operator_path=self.label
                ) from exc
            self.futures[index] = future
            future.add_done_callback(lambda _f, i=index: self.forget(i))
            self.submitted += 1

    def forget(self, index: int) -> None:
        with self.cond:
            self.futures.pop(index, None)

    def store(self, index: int, outcome: tuple[str, Any]) -> None:
        with self.cond:
            if not self.cancelled.is_set():
                self.buffer[index] = outcome
                self.peak_buffered = max(self.peak_buffered, len(self.buffer))
            self.cond.notify_all()

    def run_task(self, index: int, task: Callable[[], Any]) -> None:
        if self.cancelled.is_set():
            return
        try:
            outcome = (_OK, task())
        except Exception as exc:
            outcome = (_ERROR, exc)
        self.store(index, outcome)

    def produce(self, factory: Callable[[], Iterable[Any]]) -> None:
        """Drain an iterable into the buffer, pausing at the high-water mark.

        A yielded :class:`PartialReadError` stands in for a failed chunk at its
        position; draining continues past it.
        """
        index = 0
        iterator: Iterator[Any] | None = None
        try:
            iterator = iter(factory())
            for item in iterator:
                with self.cond:
                    while not self.cancelled.is_set() and len(self.buffer) >= self.high_water_mark:
                        self.cond.wait()
                    if self.cancelled.is_set():
                        return
                    kind = _ERROR if isinstance(item, PartialReadError) else _OK
                    self.buffer[index] = (kind, item)
                    self.peak_buffered = max(self.peak_buffered, len(self.buffer))
                    index += 1
                    self.cond.notify_all()
            with self.cond:
                self.total = index
                self.cond.notify_all()
        except Exception as exc:
            with self.cond:
                if not self.cancelled.is_set():
                    self.buffer[index] = (_ERROR, exc)
                    self.total = index + 1
                self.cond.notify_all()
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def shutdown(self) -> None:
        """Cancel pending work, wait for running work, then run callbacks."""
        with self.cond:
            if self.closed:
                return
            self.closed = True
            if not self.exhausted():
                self.cancelled.set()
            pending = list(self.futures.values())
            self.buffer.clear()
            self.cond.notify_all()
        for future in pending:
            future.cancel()
        wait(pending)
        callbacks, self.callbacks = self.callbacks, []
        for callback in reversed(callbacks):
            try:
                callback()
            except Exception:
                LOGGER.exception("Stream close callback failed", extra=log_context(self.label))


class ResultStream(Generic[T]):
    """Iterator over query chunks in index order.

    Use as a context manager, or call :meth:`close`, to release the query's
    resources when stopping early. Dropping an unfinished stream closes it.
    """

    def __init__(
        self,
        channel: _Channel,
        *,
        strict: bool = False,
        timeout: float | None = None,
    ) -> None:
        self._channel = channel
        self._strict = strict
        self._timeout = timeout
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    @classmethod
    def from_tasks(
        cls,
        tasks: Sequence[Callable[[], T]],
        *,
        executor: Executor,
        high_water_mark: int = 8,
        strict: bool = False,
        timeout: float | None = None,
        label: str = "stream",
    ) -> "ResultStream[T]":
        """Run one task per chunk; at most ``high_water_mark`` run ahead."""
        channel = _Channel(executor, high_water_mark=high_water_mark, label=label)
        channel.tasks = list(tasks)
        channel.total = len(channel.tasks)
        stream: ResultStream[T] = cls(channel, strict=strict, timeout=timeout)
        with channel.cond:
            channel.top_up()
        return stream

    @classmethod
    def from_iterable(
        cls,
        factory: Callable[[], Iterable[T]],
        *,
        executor: Executor,
        high_water_mark: int = 8,
        strict: bool = False,
        timeout: float | None = None,
        label: str = "stream",
    ) -> "ResultStream[T]":
        """Drain ``factory()`` on one pool worker, pausing when the buffer is full."""
        channel = _Channel(executor, high_water_mark=high_water_mark, label=label)
        stream: ResultStream[T] = cls(channel, strict=strict, timeout=timeout)
        try:
            future = executor.submit(channel.produce, factory)
        except RuntimeError as exc:
            raise QueryError(f"Task pool is shut down: {exc}", operator_path=label) from exc
        with channel.cond:
            channel.futures[-1] = future
        future.add_done_callback(lambda _f: channel.forget(-1))
        return stream

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def high_water_mark(self) -> int:
        return self._channel.high_water_mark

    @property
    def peak_buffered(self) -> int:
        """Largest number of finished chunks held at once."""
        return self._channel.peak_buffered

    @property
    def closed(self) -> bool:
        return self._channel.closed

    @property
    def cancelled(self) -> bool:
        return self._channel.cancelled.is_set()

    def add_close_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the stream is exhausted or closed."""
        with self._channel.cond:
            if not self._channel.closed:
                self._channel.callbacks.append(callback)
                return
        callback()

    def __iter__(self) -> "ResultStream[T]":
        return self

    def __next__(self) -> StreamItem:
        channel = self._channel
        timed_out = False
        with channel.cond:
            while True:
                if channel.exhausted():
                    outcome = None
                    break
                if channel.cancelled.is_set():
                    raise QueryCancelledError("Result stream was cancelled", operator_path=self.label)
                if channel.closed:
                    outcome = None
                    break
                if self._deadline is not None and time.monotonic() >= self._deadline:
                    outcome = (_ERROR, self._timeout_error())
                    timed_out = True
                    break
                channel.top_up()
                if channel.next_index in channel.buffer:
                    outcome = channel.buffer.pop(channel.next_index)
                    break
                remaining = None
                if self._deadline is not None:
                    remaining = max(0.0, self._deadline - time.monotonic())
                channel.cond.wait(timeout=remaining)
            index = channel.next_index
            if outcome is not None and not timed_out:
                channel.next_index += 1
                channel.top_up()
                channel.cond.notify_all()

        if outcome is None:
            self.close()
            raise StopIteration
        kind, payload = outcome
        if kind == _OK:
            return payload
        return self._handle_failure(index, payload)

    def _timeout_error(self) -> QueryTimeoutError:
        return QueryTimeoutError(
            f"Query exceeded its {self._timeout:g}s deadline",
            operator_path=self.label,
        )

    def _handle_failure(self, index: int, error: Exception) -> ChunkFailure:
        if isinstance(error, PartialReadError):
            if error.tile_index is None:
                error.tile_index = index
            if not self._strict:
                LOGGER.warning("Chunk failed: %s", error.message, extra=log_context(self.label, index))
                return ChunkFailure(index, error)
        LOGGER.debug("Cancelling stream after failure: %s", error, extra=log_context(self.label, index))
        self.close()
        raise error

    def collect(self) -> list[StreamItem]:
        """Drain the stream into a list."""
        with self:
            return list(self)

    def close(self) -> None:
        """Stop producing, wait for in-flight chunks, and release resources."""
        self._channel.shutdown()

    cancel = close

    def __enter__(self) -> "ResultStream[T]":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __del__(self) -> None:
        channel = getattr(self, "_channel", None)
        if channel is not None and not channel.closed:
            channel.shutdown()
