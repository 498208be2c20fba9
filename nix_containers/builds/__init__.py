"""Nix build invocation.

This module handles:
- Flake package expressions per platform
- Running ``nix build --json`` and decoding its result
"""

from nix_containers.builds.flake import flake_package, platform_reference
from nix_containers.builds.runner import build_stream_layered_image

__all__ = ["build_stream_layered_image", "flake_package", "platform_reference"]
