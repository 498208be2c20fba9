"""Streaming loader for image-stream producers.

A producer is an executable (for example the result of Nix's
``streamLayeredImage``) that writes an image archive to stdout. This module
runs it, feeds its stdout into the daemon's load call and reads back the
reference the daemon assigned to the loaded image.

The daemon answers a load with newline-delimited JSON records::

    {"status":"Loading layer","id":"a","progress":"1/2"}
    {"stream":"Loaded image: app:abc123\\n"}

Layer progress is logged and skipped; the first ``Loaded image`` record ends
the read, without waiting for the rest of the stream.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Iterable, Iterator
from typing import IO, TYPE_CHECKING, Any

from nix_containers.errors import (
    InvalidReferenceError,
    LoadError,
    NoLoadedRefError,
    OperationCancelledError,
    ProducerFailedError,
    ProtocolError,
    StreamDrainError,
)
from nix_containers.process import StderrDrain
from nix_containers.types import ImageReference

if TYPE_CHECKING:
    from nix_containers.concurrency import CancelScope
    from nix_containers.daemon.client import DaemonClient

logger = logging.getLogger(__name__)

LOADING_LAYER_STATUS = "Loading layer"
LOADED_IMAGE_PREFIX = "Loaded image: "
LOADED_IMAGE_ID_PREFIX = "Loaded image ID: "

# Chunk size for piping producer output to the daemon (bytes)
STREAM_CHUNK_SIZE = 64 * 1024  # 64 KB


def _decode_record(line: bytes | str) -> dict[str, Any]:
    try:
        record = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"failed to decode image load progress: {e}") from e
    if not isinstance(record, dict):
        raise ProtocolError(f"unexpected image load record: {line!r}")
    return record


def _loaded_reference(stream: Any) -> ImageReference:
    if not isinstance(stream, str):
        raise ProtocolError(f"unexpected image load result: {stream!r}")
    text = stream.strip()
    for prefix in (LOADED_IMAGE_ID_PREFIX, LOADED_IMAGE_PREFIX):
        if text.startswith(prefix):
            value = text[len(prefix) :].strip()
            break
    else:
        raise ProtocolError(f"unexpected image load result: {text!r}")
    try:
        return ImageReference.parse(value)
    except InvalidReferenceError as e:
        raise ProtocolError(f"daemon reported invalid image reference {value!r}") from e


def read_loaded_reference(lines: Iterable[bytes | str]) -> ImageReference:
    """Read the daemon's load progress until the loaded image is named.

    Args:
        lines: Newline-delimited JSON records from the daemon.

    Returns:
        Reference of the loaded image.

    Raises:
        LoadError: If the daemon reported an error record.
        ProtocolError: If a record matches neither the progress nor the
            result shape.
        NoLoadedRefError: If the stream ended before a result record.
    """
    for line in lines:
        if not line.strip():
            continue
        record = _decode_record(line)

        if record.get("status") == LOADING_LAYER_STATUS:
            logger.debug(
                "Loading layer %s %s",
                record.get("id", ""),
                record.get("progress", ""),
            )
            continue

        if "error" in record or "errorDetail" in record:
            detail = record.get("errorDetail") or {}
            raise LoadError(
                f"docker image load failed: "
                f"{record.get('error') or detail.get('message')}"
            )

        if "stream" in record:
            ref = _loaded_reference(record["stream"])
            logger.debug("Loaded image %s", ref)
            return ref

        raise ProtocolError(f"unexpected image load record: {record!r}")

    raise NoLoadedRefError("image load stream ended without a loaded image")


def _iter_chunks(stream: IO[bytes], chunk_size: int) -> Iterator[bytes]:
    while chunk := stream.read(chunk_size):
        yield chunk


def load_stream_layered_image(
    scope: CancelScope,
    daemon: DaemonClient,
    path: str,
    chunk_size: int = STREAM_CHUNK_SIZE,
) -> ImageReference:
    """Run an image-stream producer and load its output into the daemon.

    Args:
        scope: Cancellation scope; cancelling it kills the producer and
            closes the daemon's response.
        daemon: Daemon to load into.
        path: Path of the producer executable.
        chunk_size: Bytes per chunk sent to the daemon.

    Returns:
        Reference the daemon assigned to the loaded image.

    Raises:
        ProducerFailedError: If the producer cannot start or exits non-zero,
            even when the image was loaded.
        LoadError, ProtocolError, NoLoadedRefError: From the daemon's reply.
        StreamDrainError: If reading the producer's stderr failed.
        OperationCancelledError: If the scope was cancelled.
    """
    scope.check()
    logger.info("Streaming layered image from %s", path)

    try:
        proc = subprocess.Popen(
            [path],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise ProducerFailedError(f"failed to start stream command {path}: {e}") from e

    load_error: Exception | None = None
    killed = False
    with scope.bind_process(proc):
        drain = StderrDrain(proc.stderr, path).start()
        try:
            with daemon.load(_iter_chunks(proc.stdout, chunk_size), scope) as lines:
                loaded = read_loaded_reference(lines)
        except Exception as e:
            load_error = e
            # The producer may still be writing; stop it before unwinding.
            if proc.poll() is None:
                killed = True
                proc.kill()
        finally:
            proc.stdout.close()
            drain_error = drain.join()
            exit_code = proc.wait()

    if scope.cancelled:
        raise OperationCancelledError(
            f"load of {path} cancelled: {scope.reason}"
        ) from load_error

    if load_error is not None:
        if exit_code != 0 and not killed:
            load_error.add_note(f"stream command {path} exited with code {exit_code}")
        raise load_error

    if exit_code != 0:
        error = ProducerFailedError(
            f"stream command {path} failed with exit code {exit_code}",
            exit_code=exit_code,
        )
        if drain_error is not None:
            error.add_note(f"stderr drain also failed: {drain_error}")
        raise error

    if drain_error is not None:
        raise StreamDrainError(
            f"reading stderr of {path} failed: {drain_error}"
        ) from drain_error

    return loaded


__all__ = [
    "LOADED_IMAGE_ID_PREFIX",
    "LOADED_IMAGE_PREFIX",
    "LOADING_LAYER_STATUS",
    "load_stream_layered_image",
    "read_loaded_reference",
]
