"""Build runner for executing ``nix build`` commands.

This module handles:
- Composing ``nix build --json`` commands for a flake package
- Executing the build with stderr streamed into the log
- Decoding the JSON build result into an output path
- Killing the build when its cancellation scope is cancelled
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from typing import TYPE_CHECKING

from nix_containers.errors import (
    BuildFailedError,
    NoOutputError,
    OperationCancelledError,
    ParseError,
    StreamDrainError,
)
from nix_containers.process import StderrDrain
from nix_containers.types import BuildOptions, BuildResult

if TYPE_CHECKING:
    from nix_containers.concurrency import CancelScope

logger = logging.getLogger(__name__)


def compose_nix_command(package: str, options: BuildOptions) -> list[str]:
    """Compose the ``nix build`` command for a package.

    Args:
        package: Fully-qualified flake package expression.
        options: Build options.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [options.nix_binary, "build"]
    if options.accept_flake_config:
        cmd.append("--accept-flake-config")
    cmd.extend(["--json", package])
    return cmd


def parse_build_output(output: bytes | str) -> list[BuildResult]:
    """Decode ``nix build --json`` output.

    Args:
        output: Raw standard output of the build.

    Returns:
        List of build results (possibly empty).

    Raises:
        ParseError: If the output is not a JSON array of objects.
    """
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"failed to parse nix build output: {e}") from e

    if not isinstance(data, list) or not all(isinstance(i, dict) for i in data):
        raise ParseError("failed to parse nix build output: expected a JSON array")

    return [BuildResult.from_dict(item) for item in data]


def _attach(error: BaseException | None, exc: Exception) -> Exception:
    if error is not None:
        exc.add_note(f"stderr drain also failed: {error}")
    return exc


def build_stream_layered_image(
    scope: CancelScope,
    package: str,
    options: BuildOptions,
) -> str:
    """Build a flake package and return its output path.

    The output is expected to be an image-stream script (such as the result
    of ``streamLayeredImage``), but this function only reads the structured
    build result.

    Args:
        scope: Cancellation scope; cancelling it kills the build.
        package: Fully-qualified flake package expression.
        options: Build options.

    Returns:
        Store path of the first result's ``out`` output.

    Raises:
        BuildFailedError: If nix cannot be started or exits non-zero.
        ParseError: If the build output is not a JSON array.
        NoOutputError: If the build reported no output path.
        StreamDrainError: If reading nix's stderr failed.
        OperationCancelledError: If the scope was cancelled.
    """
    scope.check()
    cmd = compose_nix_command(package, options)
    logger.debug("Running command: %s", shlex.join(cmd))

    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise BuildFailedError(f"failed to run {cmd[0]}: {e}") from e

    with scope.bind_process(proc):
        drain = StderrDrain(proc.stderr, package).start()
        try:
            output = proc.stdout.read()
        finally:
            proc.stdout.close()
            drain_error = drain.join()
            exit_code = proc.wait()

    if scope.cancelled:
        raise OperationCancelledError(
            f"nix build of {package} cancelled: {scope.reason}"
        )

    if exit_code != 0:
        raise _attach(
            drain_error,
            BuildFailedError(
                f"nix build of {package} failed with exit code {exit_code}",
                exit_code=exit_code,
            ),
        )

    try:
        results = parse_build_output(output)
    except ParseError as e:
        _attach(drain_error, e)
        raise

    if drain_error is not None:
        raise StreamDrainError(
            f"reading nix build stderr failed: {drain_error}"
        ) from drain_error

    if not results:
        raise NoOutputError(f"no output path found in nix build result for {package}")

    result = results[0]
    if not result.output_path:
        raise NoOutputError(
            f"nix build result for {package} has no 'out' output: {result.drv_path}"
        )

    logger.debug(
        "Nix build completed: %s (drv=%s, out=%s)",
        package,
        result.drv_path,
        result.output_path,
    )
    return result.output_path


__all__ = [
    "build_stream_layered_image",
    "compose_nix_command",
    "parse_build_output",
]
