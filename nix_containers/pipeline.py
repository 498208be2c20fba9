"""Build-load-publish pipeline.

This module provides the high-level build API:
- build_platform_image(): build, load and name the image for one platform
- build_and_push(): main entry point - single or multi-platform dispatch
- Concurrent per-platform builds with fail-fast cancellation
- Multi-architecture index assembly once every platform image is pushed

Publication is not transactional: when one platform fails, images already
pushed for other platforms stay in the registry.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING

from nix_containers.builds.flake import flake_package, platform_reference
from nix_containers.builds.runner import build_stream_layered_image
from nix_containers.concurrency import CancelScope, TaskGroup
from nix_containers.daemon.loader import load_stream_layered_image
from nix_containers.errors import NixContainersError, UnsupportedOperationError
from nix_containers.types import (
    BuildOptions,
    Descriptor,
    ImageReference,
    IndexAddendum,
    MultiArchIndex,
    Platform,
    PlatformImage,
)

if TYPE_CHECKING:
    from nix_containers.daemon.client import DaemonClient
    from nix_containers.registry.client import Registry

logger = logging.getLogger(__name__)


class IndexAddenda:
    """Thread-safe collection of per-platform index entries.

    Each platform task adds exactly one entry; the index is assembled after
    all tasks have finished.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[Platform, IndexAddendum] = {}

    def add(self, descriptor: Descriptor, platform: Platform) -> None:
        """Record the pushed manifest for a platform.

        Raises:
            ValueError: If the platform already has an entry.
        """
        with self._lock:
            if platform in self._entries:
                raise ValueError(f"duplicate index entry for {platform}")
            self._entries[platform] = IndexAddendum(descriptor, platform)

    @property
    def entries(self) -> list[IndexAddendum]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def to_index(self, platforms: Sequence[Platform]) -> MultiArchIndex:
        """Assemble the index in requested platform order.

        Raises:
            ValueError: If the entries do not match ``platforms`` exactly.
        """
        with self._lock:
            if set(self._entries) != set(platforms):
                raise ValueError(
                    "index entries do not match requested platforms: "
                    f"{sorted(map(str, self._entries))} != {sorted(map(str, platforms))}"
                )
            return MultiArchIndex(tuple(self._entries[p] for p in platforms))


@contextmanager
def _step(name: str, platform: Platform) -> Iterator[None]:
    try:
        yield
    except NixContainersError as e:
        e.add_note(f"{name} for {platform} failed")
        raise


def tag_image(
    daemon: DaemonClient, loaded: ImageReference, target: ImageReference
) -> None:
    """Rename a loaded image: tag it as ``target``, then drop the old name.

    Image-id references are not names, so there is nothing to drop for them.
    """
    daemon.tag(loaded, target)
    if not loaded.is_image_id:
        daemon.remove(loaded)


def build_platform_image(
    scope: CancelScope,
    daemon: DaemonClient,
    build_context: str,
    platform: Platform,
    target: ImageReference,
    options: BuildOptions,
) -> PlatformImage:
    """Build, load and name the image for one platform.

    Args:
        scope: Cancellation scope for the build and load subprocesses.
        daemon: Daemon to load the image into.
        build_context: Flake reference or directory.
        platform: Target platform.
        target: Name the image must end up under in the daemon.
        options: Build options.

    Returns:
        The loaded image, addressable as ``target``.

    Raises:
        NixContainersError: From the failing step, noted with the step name.
    """
    logger.info("Build image %s for %s", target, platform)
    package = flake_package(build_context, target, platform)

    with _step("build stream layered image", platform):
        path = build_stream_layered_image(scope, package, options)

    with _step("load stream layered image", platform):
        loaded = load_stream_layered_image(scope, daemon, path)

    if loaded != target:
        logger.debug("Tag image %s as %s", loaded, target)
        with _step("tag image", platform):
            tag_image(daemon, loaded, target)

    with _step("load image", platform):
        scope.check()
        content = daemon.image(target)

    return PlatformImage(platform=platform, reference=target, content=content)


def build_and_push_image(
    scope: CancelScope,
    daemon: DaemonClient,
    registry: Registry,
    build_context: str,
    ref: ImageReference,
    platform: Platform,
    options: BuildOptions,
) -> PlatformImage:
    """Build a single-platform image named ``ref`` and push it if requested."""
    image = build_platform_image(scope, daemon, build_context, platform, ref, options)
    if options.push:
        with _step("push image", platform):
            registry.write(ref, image.content, scope)
    return image


def _build_and_push_platform(
    scope: CancelScope,
    daemon: DaemonClient,
    registry: Registry,
    build_context: str,
    target: ImageReference,
    platform: Platform,
    options: BuildOptions,
    addenda: IndexAddenda,
) -> None:
    image = build_platform_image(scope, daemon, build_context, platform, target, options)
    with _step("push image", platform):
        descriptor = registry.write(target, image.content, scope)
    addenda.add(descriptor, platform)


def build_and_push_multiplatform_image(
    scope: CancelScope,
    daemon: DaemonClient,
    registry: Registry,
    build_context: str,
    ref: ImageReference,
    platforms: Sequence[Platform],
    options: BuildOptions,
) -> MultiArchIndex:
    """Build every platform concurrently and publish a multi-arch index.

    Each platform is pushed under its platform-suffixed reference as soon as
    it is ready. The index is pushed under ``ref`` only after all platforms
    succeeded. The first failure cancels the remaining platforms.

    Raises:
        UnsupportedOperationError: If push is disabled.
        NixContainersError: The first platform failure.
    """
    if not options.push:
        raise UnsupportedOperationError(
            "multiplatform image build is only supported when pushing to remote registry"
        )

    targets = {p: platform_reference(ref, p) for p in platforms}
    addenda = IndexAddenda()

    logger.debug(
        "Build images %s for %s", ref, ", ".join(str(p) for p in platforms)
    )
    try:
        with TaskGroup(scope, name="platform", max_workers=len(platforms)) as group:
            for platform in platforms:
                group.go(
                    _build_and_push_platform,
                    group.scope,
                    daemon,
                    registry,
                    build_context,
                    targets[platform],
                    platform,
                    options,
                    addenda,
                )
    except NixContainersError as e:
        e.add_note("push images failed")
        raise

    scope.check()
    index = addenda.to_index(platforms)
    registry.write_index(ref, index)
    return index


def build_and_push(
    scope: CancelScope,
    daemon: DaemonClient,
    registry: Registry,
    build_context: str,
    ref: ImageReference,
    platforms: Sequence[Platform],
    options: BuildOptions,
) -> None:
    """Build ``ref`` for the given platforms and optionally publish it.

    One platform builds (and pushes) a plain image named ``ref``. Several
    platforms require push and publish a multi-architecture index.

    Raises:
        ValueError: If no platforms are given or a platform is repeated.
        NixContainersError: If any step fails.
    """
    platforms = list(platforms)
    if not platforms:
        raise ValueError("at least one platform is required")
    if len(set(platforms)) != len(platforms):
        raise ValueError("platforms must not repeat")

    try:
        if len(platforms) == 1:
            logger.debug("Build image %s for %s", ref, platforms[0])
            build_and_push_image(
                scope, daemon, registry, build_context, ref, platforms[0], options
            )
        else:
            build_and_push_multiplatform_image(
                scope, daemon, registry, build_context, ref, platforms, options
            )
    except NixContainersError as e:
        e.add_note(f"build and push of {ref} failed")
        raise


__all__ = [
    "IndexAddenda",
    "build_and_push",
    "build_and_push_image",
    "build_and_push_multiplatform_image",
    "build_platform_image",
    "tag_image",
]
