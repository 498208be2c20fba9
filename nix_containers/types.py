"""Shared type definitions for nix_containers.

This module contains the immutable value types passed between the build,
daemon, registry and pipeline subpackages: platforms, image references,
build results and the pieces a multi-architecture index is assembled from.
"""

from __future__ import annotations

import platform as _host
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from nix_containers.errors import InvalidPlatformError, InvalidReferenceError

if TYPE_CHECKING:
    from nix_containers.registry.auth import Keychain

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

# Machine names reported by the kernel, mapped to OCI architecture names
_HOST_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i686": "386",
    "i386": "386",
}

_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(
    r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$"
)
_REPO_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_REGISTRY_RE = re.compile(r"^[a-zA-Z0-9.-]+(?::[0-9]+)?$")
_IMAGE_ID_RE = re.compile(r"^sha256:[a-f0-9]+$")


@dataclass(frozen=True)
class Platform:
    """Target platform of an image, e.g. ``linux/amd64``."""

    os: str
    arch: str

    @classmethod
    def parse(cls, value: str) -> Platform:
        """Parse an ``os/arch`` string.

        Args:
            value: Platform string such as ``linux/arm64``.

        Returns:
            Parsed Platform.

        Raises:
            InvalidPlatformError: If the string is not exactly ``os/arch``.
        """
        parts = value.strip().split("/")
        if len(parts) != 2 or not all(parts):
            raise InvalidPlatformError(
                f"invalid platform {value!r}: expected os/arch"
            )
        return cls(os=parts[0], arch=parts[1])

    @classmethod
    def host(cls) -> Platform:
        """Return the platform images are built for by default.

        Images are always Linux images, whatever the host OS.
        """
        machine = _host.machine().lower()
        return cls(os="linux", arch=_HOST_ARCH.get(machine, machine))

    def to_dict(self) -> dict[str, str]:
        """Render as an OCI platform object."""
        return {"architecture": self.arch, "os": self.os}

    def __str__(self) -> str:
        return f"{self.os}/{self.arch}"


@dataclass(frozen=True)
class ImageReference:
    """A parsed registry reference.

    ``name`` is the fully-qualified form used for comparisons; ``str()``
    returns the reference exactly as it was written.
    """

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None
    original: str = field(default="", compare=False)

    @classmethod
    def parse(cls, value: str) -> ImageReference:
        """Parse a reference such as ``ghcr.io/you/app:v1``.

        The first path component is a registry host when it contains a dot
        or a port, or is ``localhost``. Otherwise Docker Hub is assumed and
        single-component repositories are placed under ``library/``. A
        reference without tag or digest gets the ``latest`` tag.

        Args:
            value: Reference string.

        Returns:
            Parsed ImageReference.

        Raises:
            InvalidReferenceError: If the reference is malformed.
        """
        text = value.strip()
        if not text:
            raise InvalidReferenceError("empty image reference")

        remainder, digest = text, None
        if "@" in remainder:
            remainder, digest = remainder.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise InvalidReferenceError(f"invalid digest in {value!r}")

        tag = None
        slash = remainder.rfind("/")
        colon = remainder.rfind(":")
        if colon > slash:
            remainder, tag = remainder[:colon], remainder[colon + 1 :]
            if not _TAG_RE.match(tag):
                raise InvalidReferenceError(f"invalid tag in {value!r}")

        parts = remainder.split("/")
        first = parts[0]
        if len(parts) > 1 and (
            "." in first or ":" in first or first == "localhost"
        ):
            registry, path = first, parts[1:]
            if not _REGISTRY_RE.match(registry):
                raise InvalidReferenceError(f"invalid registry in {value!r}")
        else:
            registry, path = DEFAULT_REGISTRY, parts
        if registry == "docker.io":
            registry = DEFAULT_REGISTRY
        if registry == DEFAULT_REGISTRY and len(path) == 1:
            path = ["library", *path]

        for component in path:
            if not _REPO_COMPONENT_RE.match(component):
                raise InvalidReferenceError(
                    f"invalid repository component {component!r} in {value!r}"
                )

        if tag is None and digest is None:
            tag = DEFAULT_TAG

        return cls(
            registry=registry,
            repository="/".join(path),
            tag=tag,
            digest=digest,
            original=text,
        )

    @property
    def context(self) -> str:
        """Registry and repository, without tag or digest."""
        return f"{self.registry}/{self.repository}"

    @property
    def name(self) -> str:
        """Fully-qualified reference."""
        result = self.context
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result

    @property
    def identifier(self) -> str:
        """Digest when present, otherwise the tag."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def is_image_id(self) -> bool:
        """True when the reference was written as a bare ``sha256:`` image id."""
        return bool(_IMAGE_ID_RE.match(self.original))

    def with_digest(self, digest: str) -> ImageReference:
        """Return a digest reference in the same repository."""
        return replace(
            self, tag=None, digest=digest, original=f"{self.context}@{digest}"
        )

    def __str__(self) -> str:
        return self.original or self.name


@dataclass(frozen=True)
class BuildResult:
    """One element of ``nix build --json`` output."""

    drv_path: str
    outputs: dict[str, str]
    start_time: int | None = None
    stop_time: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BuildResult:
        """Create from a decoded JSON object."""
        return cls(
            drv_path=str(data.get("drvPath", "")),
            outputs=dict(data.get("outputs") or {}),
            start_time=data.get("startTime"),
            stop_time=data.get("stopTime"),
        )

    @property
    def output_path(self) -> str | None:
        """Store path of the ``out`` output."""
        return self.outputs.get("out")


@dataclass(frozen=True)
class PlatformImage:
    """A loaded and tagged image for one platform.

    Attributes:
        platform: Platform the image was built for.
        reference: Reference the image is addressable by in the daemon.
        content: Daemon image object for ``reference``.
    """

    platform: Platform
    reference: ImageReference
    content: Any


@dataclass(frozen=True)
class Descriptor:
    """Registry descriptor of a pushed manifest."""

    media_type: str
    digest: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        """Return the descriptor as it appears in a manifest or index."""
        return {"mediaType": self.media_type, "digest": self.digest, "size": self.size}


@dataclass(frozen=True)
class IndexAddendum:
    """One manifest of a multi-architecture index with its platform."""

    descriptor: Descriptor
    platform: Platform


@dataclass(frozen=True)
class MultiArchIndex:
    """Manifests of a multi-architecture image, one per platform."""

    manifests: tuple[IndexAddendum, ...]

    def __post_init__(self) -> None:
        platforms = [m.platform for m in self.manifests]
        if len(set(platforms)) != len(platforms):
            raise ValueError("index contains duplicate platforms")

    @property
    def platforms(self) -> list[Platform]:
        """Platforms in index order."""
        return [m.platform for m in self.manifests]


@dataclass(frozen=True)
class BuildOptions:
    """Options for one build-and-push invocation.

    Attributes:
        push: Push the result to the registry.
        accept_flake_config: Pass ``--accept-flake-config`` to nix.
        nix_binary: Name or path of the nix executable.
        keychain: Credential resolver for registry pushes (None = anonymous).
    """

    push: bool = False
    accept_flake_config: bool = False
    nix_binary: str = "nix"
    keychain: Keychain | None = None


__all__ = [
    "BuildOptions",
    "BuildResult",
    "DEFAULT_REGISTRY",
    "DEFAULT_TAG",
    "Descriptor",
    "ImageReference",
    "IndexAddendum",
    "MultiArchIndex",
    "Platform",
    "PlatformImage",
]
