"""Registry client for publishing images and multi-architecture indexes.

Image content lives in the container daemon, so single images are pushed
through the daemon's push endpoint. The registry is then queried over the
OCI distribution API for the pushed manifest's descriptor, and indexes are
written to it directly with ``PUT /v2/<repository>/manifests/<tag>``.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from nix_containers.errors import PushError
from nix_containers.registry.auth import RegistryAuth
from nix_containers.types import DEFAULT_REGISTRY, Descriptor, ImageReference, MultiArchIndex

if TYPE_CHECKING:
    from nix_containers.concurrency import CancelScope
    from nix_containers.daemon.client import DaemonClient
    from nix_containers.registry.auth import Keychain

logger = logging.getLogger(__name__)

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

MANIFEST_ACCEPT = ", ".join(
    [OCI_MANIFEST, OCI_INDEX, DOCKER_MANIFEST, DOCKER_MANIFEST_LIST]
)

# Docker Hub's API lives on a different host than its reference name
DOCKER_HUB_API = "registry-1.docker.io"

# Timeout for registry requests (seconds)
REQUEST_TIMEOUT = 60

_INSECURE_HOSTS = ("localhost", "127.0.0.1")


def _check(scope: CancelScope | None) -> None:
    if scope is not None:
        scope.check()


def registry_url(registry: str) -> str:
    """Return the base URL for a registry host.

    Loopback registries are spoken to over plain HTTP.
    """
    if registry == DEFAULT_REGISTRY:
        registry = DOCKER_HUB_API
    scheme = "http" if registry.split(":")[0] in _INSECURE_HOSTS else "https"
    return f"{scheme}://{registry}"


def index_media_type(index: MultiArchIndex) -> str:
    """Pick the index media type matching the child manifests.

    Docker schema-2 children go into a Docker manifest list; anything else
    is published as an OCI image index.
    """
    if index.manifests and all(
        m.descriptor.media_type == DOCKER_MANIFEST for m in index.manifests
    ):
        return DOCKER_MANIFEST_LIST
    return OCI_INDEX


def render_index(index: MultiArchIndex) -> tuple[str, bytes]:
    """Serialize an index.

    Returns:
        Media type and the JSON body.
    """
    media_type = index_media_type(index)
    body: dict[str, Any] = {
        "schemaVersion": 2,
        "mediaType": media_type,
        "manifests": [
            {**m.descriptor.to_dict(), "platform": m.platform.to_dict()}
            for m in index.manifests
        ],
    }
    return media_type, json.dumps(body, separators=(",", ":")).encode()


class Registry:
    """Publishes images and indexes.

    Args:
        daemon: Daemon holding the images to push.
        keychain: Credential resolver (None = anonymous).
        client: HTTPX client (created on demand when omitted).
        timeout: Registry request timeout in seconds.
    """

    def __init__(
        self,
        daemon: DaemonClient,
        keychain: Keychain | None = None,
        client: httpx.Client | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._daemon = daemon
        self._keychain = keychain
        self._client = client or httpx.Client(timeout=timeout)
        self._timeout = timeout

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Registry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _auth(self, ref: ImageReference) -> RegistryAuth:
        credentials = self._keychain.resolve(ref.registry) if self._keychain else None
        return RegistryAuth(credentials, f"repository:{ref.repository}:pull,push")

    def _manifest_url(self, ref: ImageReference) -> str:
        return (
            f"{registry_url(ref.registry)}/v2/{ref.repository}/manifests/"
            f"{ref.identifier}"
        )

    def _request(
        self,
        method: str,
        ref: ImageReference,
        **kwargs: Any,
    ) -> httpx.Response:
        url = self._manifest_url(ref)
        try:
            response = self._client.request(
                method, url, auth=self._auth(ref), timeout=self._timeout, **kwargs
            )
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise PushError(
                f"HTTP error on {method} {url}: "
                f"{e.response.status_code} {e.response.reason_phrase}",
            ) from e
        except httpx.TimeoutException as e:
            raise PushError(f"Timeout on {method} {url}") from e
        except httpx.RequestError as e:
            raise PushError(f"Network error on {method} {url}: {e}") from e

    def resolve(self, ref: ImageReference) -> Descriptor:
        """Return the descriptor of the manifest ``ref`` points at.

        Raises:
            PushError: If the registry does not serve the manifest.
        """
        response = self._request("HEAD", ref, headers={"Accept": MANIFEST_ACCEPT})
        media_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        digest = response.headers.get("Docker-Content-Digest")
        size = response.headers.get("Content-Length")
        if not (media_type and digest and size):
            # Some registries omit headers on HEAD; fall back to GET.
            response = self._request("GET", ref, headers={"Accept": MANIFEST_ACCEPT})
            media_type = (
                response.headers.get("Content-Type", "").split(";")[0].strip()
                or json.loads(response.content).get("mediaType", "")
            )
            digest = response.headers.get("Docker-Content-Digest") or ref.digest
            size = str(len(response.content))
        if not digest:
            raise PushError(f"registry did not report a digest for {ref}")
        return Descriptor(media_type=media_type, digest=digest, size=int(size))

    def write(
        self,
        ref: ImageReference,
        image: Any,
        scope: CancelScope | None = None,
    ) -> Descriptor:
        """Push a daemon image under ``ref``.

        Args:
            ref: Destination reference.
            image: Daemon image object; ``ref`` is pointed at it before pushing.
            scope: Cancellation scope; the push is abandoned once it is
                cancelled, and no later step starts.

        Returns:
            Descriptor of the pushed manifest.

        Raises:
            TagError: If ``ref`` cannot be pointed at the image.
            PushError: If pushing or resolving the manifest fails.
            OperationCancelledError: If the scope was cancelled.
        """
        _check(scope)
        logger.debug("Push image %s (%s)", ref, image.id)
        self._daemon.tag(image.id, ref)
        credentials = self._keychain.resolve(ref.registry) if self._keychain else None
        pushed = self._daemon.push(
            ref, credentials.to_auth_config() if credentials else None, scope=scope
        )
        _check(scope)
        descriptor = self.resolve(ref.with_digest(pushed.digest))
        logger.info("Pushed %s (%s)", ref, descriptor.digest)
        return descriptor

    def write_index(self, ref: ImageReference, index: MultiArchIndex) -> Descriptor:
        """Publish a multi-architecture index under ``ref``.

        Raises:
            PushError: If the registry rejects the index.
        """
        media_type, body = render_index(index)
        logger.debug(
            "Push manifest %s (%s)",
            ref,
            ", ".join(str(p) for p in index.platforms),
        )
        response = self._request(
            "PUT", ref, content=body, headers={"Content-Type": media_type}
        )
        digest = response.headers.get("Docker-Content-Digest", "")
        logger.info("Pushed index %s (%s)", ref, digest or "unknown digest")
        return Descriptor(media_type=media_type, digest=digest, size=len(body))


__all__ = [
    "DOCKER_MANIFEST",
    "DOCKER_MANIFEST_LIST",
    "OCI_INDEX",
    "OCI_MANIFEST",
    "Registry",
    "index_media_type",
    "registry_url",
    "render_index",
]
