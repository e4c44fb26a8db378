"""Single-worker task queue that totally orders the writes against one store."""

import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

from local_review.log import get_logger

T = TypeVar("T")

_STOP = object()


class WriteQueueClosed(RuntimeError):
    """Raised when submitting to a queue that has been closed."""


class WriteQueue:
    """
    FIFO queue drained by one daemon worker thread.

    Tasks run strictly one at a time in submission order. A task that raises
    does not stop the worker: the exception is logged and stored on that
    task's future, and the next task runs normally.

    A task submitted from the worker thread itself (a write that triggers
    another write) runs inline, since waiting on it would deadlock.
    """

    def __init__(self, name: str = "write-queue") -> None:
        self.name = name
        self._tasks: queue.Queue[Any] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._drain, name=self.name, daemon=True)
        self._worker.start()

    def _drain(self) -> None:
        while True:
            item = self._tasks.get()
            try:
                if item is _STOP:
                    return
                fn, future = item
                self._execute(fn, future)
            finally:
                self._tasks.task_done()

    def _execute(self, fn: Callable[[], Any], future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn()
        except BaseException as e:
            get_logger().debug(f"{self.name}: task failed", error=repr(e))
            future.set_exception(e)
        else:
            future.set_result(result)

    def on_worker_thread(self) -> bool:
        return self._worker is not None and threading.current_thread() is self._worker

    def submit(self, fn: Callable[[], T]) -> "Future[T]":
        """
        Enqueue a task.

        Args:
            fn: Zero-argument callable to run on the worker thread

        Returns:
            Future resolved with the task's result or exception

        Raises:
            WriteQueueClosed: If close() has been called
        """
        future: Future[T] = Future()
        if self.on_worker_thread():
            self._execute(fn, future)
            return future

        with self._lock:
            if self._closed:
                raise WriteQueueClosed(f"{self.name} is closed")
            self._ensure_worker()
            self._tasks.put((fn, future))
        return future

    def run(self, fn: Callable[[], T]) -> T:
        """Submit a task and block until it completes, re-raising its exception."""
        return self.submit(fn).result()

    def drain(self) -> None:
        """Block until every task submitted so far has finished."""
        if self.on_worker_thread():
            return
        self._tasks.join()

    def close(self, wait: bool = True) -> None:
        """Stop accepting tasks; pending tasks still run before the worker exits."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
            if worker is None:
                return
            self._tasks.put(_STOP)
        if wait and threading.current_thread() is not worker:
            worker.join()
