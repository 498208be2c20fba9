"""Shared fixtures: environment isolation, fake daemon, fake registry and scripts."""

import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import pytest

from nix_containers.concurrency import CancelScope
from nix_containers.daemon.client import PushResult
from nix_containers.errors import PushError
from nix_containers.types import Descriptor, ImageReference, MultiArchIndex

SETTINGS_ENV = (
    "IMAGE",
    "PLATFORMS",
    "BUILD_CONTEXT",
    "PUSH_IMAGE",
    "ACCEPT_FLAKE_CONFIG",
    "LOG_LEVEL",
    "NIX_BINARY",
    "BUILD_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's environment out of the settings under test."""
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def write_script(tmp_path: Path) -> Callable[[str, str], str]:
    """Return a factory writing executable shell scripts into tmp_path."""

    def factory(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(0o755)
        return str(path)

    return factory


@dataclass(frozen=True)
class FakeImage:
    """Stand-in for a docker SDK image object."""

    id: str


class FakeDaemon:
    """In-memory DaemonClient that records every call."""

    def __init__(self, load_lines: Iterable[bytes] = ()) -> None:
        self.load_lines = list(load_lines)
        self.loaded_data = b""
        self.tagged: list[tuple[str, str]] = []
        self.removed: list[str] = []
        self.pushed: list[tuple[str, dict[str, str] | None]] = []
        self.push_digest = "sha256:" + "a" * 64
        self.load_error: Exception | None = None

    @contextmanager
    def load(self, data: Iterable[bytes], scope=None) -> Iterator[Iterator[bytes]]:
        if self.load_error is not None:
            raise self.load_error
        self.loaded_data = b"".join(data)
        yield iter(self.load_lines)

    def tag(self, source: ImageReference | str, target: ImageReference) -> None:
        self.tagged.append((str(source), target.name))

    def remove(self, ref: ImageReference) -> None:
        self.removed.append(str(ref))

    def image(self, ref: ImageReference) -> FakeImage:
        return FakeImage(id=f"sha256:{ref.tag}")

    def push(
        self, ref: ImageReference, auth_config: dict[str, str] | None = None, scope=None
    ) -> PushResult:
        self.pushed.append((ref.name, auth_config))
        return PushResult(digest=self.push_digest, size=100)


class FakeRegistry:
    """Records writes.

    ``fail_on`` names references whose write fails; writes of references in
    ``hold`` stay in flight until their scope is cancelled.
    """

    def __init__(self, fail_on: Iterable[str] = (), hold: Iterable[str] = ()) -> None:
        self.fail_on = set(fail_on)
        self.hold = set(hold)
        self.writes: list[tuple[str, FakeImage]] = []
        self.indexes: list[tuple[str, MultiArchIndex]] = []
        self.written = threading.Event()
        self.holding = threading.Event()
        self._lock = threading.Lock()

    def write(
        self, ref: ImageReference, image: FakeImage, scope: CancelScope | None = None
    ) -> Descriptor:
        if ref.name in self.fail_on:
            raise PushError(f"push image {ref} failed: denied")
        if ref.name in self.hold:
            self.holding.set()
            scope.wait(5)
            scope.check()
        with self._lock:
            self.writes.append((ref.name, image))
        self.written.set()
        return Descriptor(
            media_type="application/vnd.oci.image.manifest.v1+json",
            digest=f"sha256:{ref.tag}",
            size=len(ref.name),
        )

    def write_index(self, ref: ImageReference, index: MultiArchIndex) -> Descriptor:
        self.indexes.append((ref.name, index))
        return Descriptor(
            media_type="application/vnd.oci.image.index.v1+json",
            digest="sha256:index",
            size=1,
        )


@pytest.fixture
def make_daemon() -> type[FakeDaemon]:
    """Return the fake daemon class for tests that script load replies."""
    return FakeDaemon


@pytest.fixture
def daemon() -> FakeDaemon:
    return FakeDaemon()


@pytest.fixture
def make_registry() -> type[FakeRegistry]:
    return FakeRegistry


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()
