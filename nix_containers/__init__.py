"""nix-containers - Build OCI images from Nix flakes.

This package builds container images from Nix flake packages, loads them
into a container daemon and optionally publishes single- or
multi-architecture images to a registry.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
