"""Registry publishing.

This module handles:
- Credential lookup through a keychain (Docker client config by default)
- Token and basic authentication against OCI registries
- Pushing images and multi-architecture indexes
"""

from nix_containers.registry.auth import (
    AnonymousKeychain,
    Credentials,
    DockerConfigKeychain,
    Keychain,
)
from nix_containers.registry.client import Registry

__all__ = [
    "AnonymousKeychain",
    "Credentials",
    "DockerConfigKeychain",
    "Keychain",
    "Registry",
]
