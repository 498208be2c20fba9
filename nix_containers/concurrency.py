"""Cancellation scopes and fail-fast task groups.

Work for one build invocation runs inside a ``CancelScope``. Blocking calls
(subprocess waits, pipe reads, daemon and registry requests) cannot be
interrupted from another thread, so cancelling a scope instead kills the
subprocesses bound to it and closes the daemon responses registered with it;
their pipes close and the blocked reads return. Streamed daemon and registry
work also checks the scope between progress records.

A ``TaskGroup`` runs callables on their own threads under a child scope.
The first failure cancels the scope, the group waits for every task, and
the first error is re-raised to the caller.
"""

from __future__ import annotations

import logging
import subprocess
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, TypeVar

from nix_containers.errors import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelScope:
    """Cancellation signal shared by a group of operations.

    Args:
        parent: Scope whose cancellation also cancels this one.
        timeout: Seconds after which the scope cancels itself.
    """

    def __init__(
        self,
        parent: CancelScope | None = None,
        timeout: float | None = None,
    ) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._timer: threading.Timer | None = None
        self.reason: str | None = None
        self._detach_parent: Callable[[], None] | None = None

        if parent is not None:
            self._detach_parent = parent.add_callback(
                lambda: self.cancel(parent.reason or "parent cancelled")
            )
        if timeout is not None:
            self._timer = threading.Timer(
                timeout, self.cancel, args=(f"timed out after {timeout}s",)
            )
            self._timer.daemon = True
            self._timer.start()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the scope and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        logger.debug("Scope cancelled: %s", reason)
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback to run on cancellation.

        The callback runs immediately when the scope is already cancelled.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                key = self._next_id
                self._next_id += 1
                self._callbacks[key] = callback

                def remove() -> None:
                    with self._lock:
                        self._callbacks.pop(key, None)

                return remove
        callback()
        return lambda: None

    def check(self) -> None:
        """Raise if the scope has been cancelled.

        Raises:
            OperationCancelledError: If cancelled.
        """
        if self._event.is_set():
            raise OperationCancelledError(f"operation cancelled: {self.reason}")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or the timeout elapses."""
        return self._event.wait(timeout)

    @contextmanager
    def bind_process(self, proc: subprocess.Popen[Any]) -> Iterator[None]:
        """Kill ``proc`` if the scope is cancelled while the block runs."""

        def kill() -> None:
            if proc.poll() is None:
                logger.debug("Killing process %s", proc.pid)
                proc.kill()

        remove = self.add_callback(kill)
        try:
            yield
        finally:
            remove()

    def close(self) -> None:
        """Stop the deadline timer and detach from the parent scope."""
        if self._timer is not None:
            self._timer.cancel()
        if self._detach_parent is not None:
            self._detach_parent()

    def __enter__(self) -> CancelScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class TaskGroup:
    """Run tasks concurrently, failing fast on the first error.

    Usage::

        with TaskGroup(scope) as group:
            for item in items:
                group.go(work, group.scope, item)
        # leaving the block waits for all tasks and re-raises the first error
    """

    def __init__(
        self,
        parent: CancelScope,
        name: str = "task",
        max_workers: int | None = None,
    ) -> None:
        self.scope = CancelScope(parent)
        self._name = name
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=name
        )
        self._futures: list[Future[Any]] = []
        self._lock = threading.Lock()
        self._error: BaseException | None = None

    def go(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        """Start ``fn(*args, **kwargs)`` on its own thread."""

        def run() -> T:
            try:
                return fn(*args, **kwargs)
            except BaseException as exc:
                self._fail(exc)
                raise

        future = self._executor.submit(run)
        self._futures.append(future)
        return future

    def _fail(self, exc: BaseException) -> None:
        with self._lock:
            first = self._error is None
            if first:
                self._error = exc
        if first:
            self.scope.cancel(f"{self._name} failed: {exc}")

    def _join(self) -> None:
        try:
            self._executor.shutdown(wait=True)
        except BaseException as exc:
            # Interrupted while waiting: the tasks must be cancelled before
            # the scope is detached from its parent.
            self._fail(exc)
            self._executor.shutdown(wait=True)
            raise
        finally:
            self.scope.close()

    def wait(self) -> None:
        """Wait for every task, then re-raise the first failure.

        An exception raised while waiting (``KeyboardInterrupt``) cancels the
        remaining tasks, waits for them and is then re-raised.
        """
        self._join()
        if self._error is not None:
            raise self._error

    def __enter__(self) -> TaskGroup:
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        if exc is not None:
            self._fail(exc)
            self._join()
            return
        self.wait()


__all__ = ["CancelScope", "TaskGroup"]
