"""Subprocess helpers shared by the build and load steps.

Diagnostic output of child processes is only ever logged. It is drained on
a background thread so the child never blocks on a full stderr pipe while
its stdout is being consumed.
"""

from __future__ import annotations

import logging
import threading
from typing import IO

logger = logging.getLogger(__name__)


class StderrDrain:
    """Background reader that logs a stream line by line at DEBUG level.

    Args:
        stream: Binary stream to drain (usually ``proc.stderr``).
        source: Label attached to every logged line.
    """

    def __init__(self, stream: IO[bytes], source: str) -> None:
        self._stream = stream
        self._source = source
        self.error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run, name=f"stderr-drain-{source}", daemon=True
        )

    def start(self) -> StderrDrain:
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            for raw in self._stream:
                line = raw.decode("utf-8", errors="replace").strip()
                if line:
                    logger.debug("[%s] %s", self._source, line)
        except (OSError, ValueError) as exc:
            self.error = exc
        finally:
            try:
                self._stream.close()
            except OSError:
                pass

    def join(self, timeout: float | None = None) -> BaseException | None:
        """Wait for the stream to reach EOF.

        Returns:
            The error that stopped the drain, or None.
        """
        self._thread.join(timeout)
        return self.error


__all__ = ["StderrDrain"]
