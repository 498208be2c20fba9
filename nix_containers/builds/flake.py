"""Flake package and platform reference formatting."""

from __future__ import annotations

from nix_containers.errors import InvalidReferenceError
from nix_containers.types import ImageReference, Platform

# OCI architecture names mapped to the names used in Nix system doubles
NIX_ARCH = {
    "amd64": "x86_64",
    "arm64": "aarch64",
    "arm32": "armv7l",
}


def nix_arch(arch: str) -> str:
    """Return the Nix name for an OCI architecture."""
    return NIX_ARCH.get(arch, arch)


def nix_system(platform: Platform) -> str:
    """Return the Nix system double, e.g. ``x86_64-linux``."""
    return f"{nix_arch(platform.arch)}-{platform.os}"


def flake_package_name(ref: ImageReference) -> str:
    """Return the package name for a reference: the last repository segment."""
    return ref.repository.rsplit("/", 1)[-1]


def flake_package(build_context: str, ref: ImageReference, platform: Platform) -> str:
    """Compose the flake package expression for one platform.

    Args:
        build_context: Flake reference or directory, e.g. ``.``.
        ref: Canonical image reference; its last path segment names the package.
        platform: Target platform.

    Returns:
        Package expression such as ``.#packages.x86_64-linux.app``.
    """
    return (
        f"{build_context}#packages.{nix_system(platform)}."
        f"{flake_package_name(ref)}"
    )


def platform_reference(ref: ImageReference, platform: Platform) -> ImageReference:
    """Return the platform-suffixed form of a tagged reference.

    ``ghcr.io/x/app:v1`` for ``linux/amd64`` becomes
    ``ghcr.io/x/app:v1_linux_amd64``.

    Raises:
        InvalidReferenceError: If ``ref`` has no tag or the result is invalid.
    """
    if ref.digest or not ref.tag:
        raise InvalidReferenceError(
            f"platform reference requires a tag reference, got {ref}"
        )
    return ImageReference.parse(f"{ref.name}_{platform.os}_{platform.arch}")


__all__ = [
    "NIX_ARCH",
    "flake_package",
    "flake_package_name",
    "nix_arch",
    "nix_system",
    "platform_reference",
]
