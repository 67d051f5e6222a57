"""
Producer/consumer log streaming for long-running cluster operations.

Any number of producers emit text chunks onto a bounded queue. A single
consumer thread drains the queue into a sink (usually the cluster log
field) and the ``oceanctl.logs`` logger, periodically calling a flush hook
so progress can be persisted while the operation is still running.
"""
import logging
import queue
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("oceanctl.logs")

_CLOSED = object()


class LogStreamClosed(RuntimeError):
    """Raised when emitting into a stream that has been closed."""
    pass


class LogStream:
    """Bounded log queue with exactly one draining consumer."""

    def __init__(
        self,
        sink: Callable[[str], None],
        capacity: int = 1024,
        flush: Optional[Callable[[], None]] = None,
        flush_interval: float = 3.0,
        cancel: Optional[threading.Event] = None,
        name: str = "log-stream",
    ):
        self._sink = sink
        self._flush = flush
        self._flush_interval = flush_interval
        self._queue: "queue.Queue" = queue.Queue(maxsize=capacity)
        self._cancel = cancel or threading.Event()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._consumer = threading.Thread(target=self._consume, name=name, daemon=True)
        self._consumer.start()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def alive(self) -> bool:
        return self._consumer.is_alive()

    def emit(self, chunk: str) -> None:
        """Queue a chunk; blocks while the queue is full."""
        if self._closed.is_set():
            raise LogStreamClosed("log stream is closed")
        if not chunk:
            return
        while True:
            if self._cancel.is_set() or not self._consumer.is_alive():
                # Nobody is draining anymore, keep the message in the process log
                logger.info(chunk.rstrip())
                return
            try:
                self._queue.put(chunk, timeout=0.5)
                return
            except queue.Full:
                continue

    __call__ = emit

    def close(self, timeout: Optional[float] = None) -> None:
        """Signal completion and wait for the consumer to finish draining."""
        with self._close_lock:
            if not self._closed.is_set():
                self._closed.set()
                while self._consumer.is_alive() and not self._cancel.is_set():
                    try:
                        self._queue.put(_CLOSED, timeout=0.5)
                        break
                    except queue.Full:
                        continue
        self._consumer.join(timeout)

    def _consume(self) -> None:
        last_flush = time.monotonic()
        try:
            while not self._cancel.is_set():
                try:
                    item = self._queue.get(timeout=0.2)
                except queue.Empty:
                    item = None
                if item is _CLOSED:
                    break
                if item is not None:
                    self._write(item)
                if self._flush and time.monotonic() - last_flush >= self._flush_interval:
                    self._run_flush()
                    last_flush = time.monotonic()
            # Drain whatever producers managed to queue before completion
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not _CLOSED:
                    self._write(item)
        finally:
            if self._flush:
                self._run_flush()

    def _write(self, chunk: str) -> None:
        try:
            self._sink(chunk)
        except Exception as e:
            logger.error(f"Log sink failed: {e}")
        for line in chunk.splitlines():
            if line.strip():
                logger.info(line)

    def _run_flush(self) -> None:
        try:
            self._flush()
        except Exception as e:
            logger.warning(f"Log flush failed: {e}")

    def __enter__(self) -> 'LogStream':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
