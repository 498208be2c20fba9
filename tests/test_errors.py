"""Tests for error definitions and the stderr drain helper."""

import io
import logging

import pytest

from nix_containers import errors
from nix_containers.errors import (
    BuildFailedError,
    InvalidPlatformError,
    InvalidReferenceError,
    NixContainersError,
    PushError,
    describe,
)
from nix_containers.process import StderrDrain


class TestErrorCodes:
    """Tests for error codes."""

    @pytest.mark.parametrize(
        ("cls", "code"),
        [
            (errors.ParseError, errors.PARSE_ERROR),
            (errors.NoOutputError, errors.NO_OUTPUT),
            (errors.BuildFailedError, errors.BUILD_FAILED),
            (errors.ProtocolError, errors.PROTOCOL_ERROR),
            (errors.NoLoadedRefError, errors.NO_LOADED_REF),
            (errors.LoadError, errors.LOAD_FAILED),
            (errors.ProducerFailedError, errors.PRODUCER_FAILED),
            (errors.StreamDrainError, errors.STREAM_DRAIN_FAILED),
            (errors.TagError, errors.TAG_FAILED),
            (errors.PushError, errors.PUSH_FAILED),
            (errors.UnsupportedOperationError, errors.UNSUPPORTED_OPERATION),
            (errors.OperationCancelledError, errors.CANCELLED),
            (errors.InvalidReferenceError, errors.INVALID_REFERENCE),
            (errors.InvalidPlatformError, errors.INVALID_PLATFORM),
            (errors.DaemonError, errors.DAEMON_ERROR),
        ],
    )
    def test_default_codes(self, cls, code):
        """Each error type should carry its stable code."""
        error = cls("failed")
        assert isinstance(error, NixContainersError)
        assert error.code == code

    def test_explicit_code(self):
        """An explicit code should override the default."""
        assert PushError("x", code="custom").code == "custom"

    def test_value_errors(self):
        """Invalid input errors are also ValueErrors."""
        assert isinstance(InvalidReferenceError("x"), ValueError)
        assert isinstance(InvalidPlatformError("x"), ValueError)

    def test_exit_code(self):
        """Process failures keep the exit code."""
        assert BuildFailedError("x", exit_code=2).exit_code == 2


class TestDescribe:
    """Tests for describe function."""

    def test_plain(self):
        """Without notes only the message is rendered."""
        assert describe(PushError("denied")) == "denied"

    def test_notes_outermost_first(self):
        """Notes added later describe outer steps and come first."""
        error = BuildFailedError("exit code 1")
        error.add_note("build stream layered image for linux/amd64 failed")
        error.add_note("build and push of app:v1 failed")

        assert describe(error) == (
            "build and push of app:v1 failed: "
            "build stream layered image for linux/amd64 failed: exit code 1"
        )


class TestStderrDrain:
    """Tests for StderrDrain."""

    def test_logs_lines(self, caplog):
        """Every non-empty line should be logged at DEBUG with its source."""
        caplog.set_level(logging.DEBUG, logger="nix_containers.process")
        stream = io.BytesIO(b"first line\n\nsecond line\n")

        error = StderrDrain(stream, "nix").start().join(5)

        assert error is None
        assert "[nix] first line" in caplog.text
        assert "[nix] second line" in caplog.text
        assert stream.closed

    def test_read_error(self):
        """A failing stream should be reported by join()."""

        class BrokenStream(io.BytesIO):
            def __iter__(self):
                raise OSError("bad file descriptor")

        error = StderrDrain(BrokenStream(), "producer").start().join(5)
        assert isinstance(error, OSError)
