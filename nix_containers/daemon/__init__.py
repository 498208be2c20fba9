"""Container daemon access.

This module handles:
- The docker SDK adapter (load, tag, remove, inspect, push)
- Streaming image producers into the daemon and reading the loaded name
"""

from nix_containers.daemon.client import DaemonClient, DockerDaemon, PushResult
from nix_containers.daemon.loader import (
    load_stream_layered_image,
    read_loaded_reference,
)

__all__ = [
    "DaemonClient",
    "DockerDaemon",
    "PushResult",
    "load_stream_layered_image",
    "read_loaded_reference",
]
