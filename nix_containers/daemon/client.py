"""Container daemon client.

Boundary rules:
- Only this module talks to the docker SDK.
- Upstream callers depend on the ``DaemonClient`` protocol, which tests
  replace with in-memory fakes.
- Transport failures of the SDK's ``requests`` session are mapped to the
  same errors as the SDK's own exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import docker
import requests
from docker.errors import DockerException, ImageNotFound

from nix_containers.errors import DaemonError, LoadError, PushError, TagError
from nix_containers.types import ImageReference

if TYPE_CHECKING:
    from nix_containers.concurrency import CancelScope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushResult:
    """Digest and size of a manifest pushed through the daemon."""

    digest: str
    size: int | None = None


class DaemonClient(Protocol):
    """Operations the pipeline needs from a container daemon."""

    def load(
        self, data: Iterable[bytes], scope: CancelScope | None = None
    ) -> AbstractContextManager[Iterator[bytes]]:  # pragma: no cover - protocol
        """Load an image archive; yields the raw progress lines."""
        ...

    def tag(
        self, source: ImageReference | str, target: ImageReference
    ) -> None:  # pragma: no cover - protocol
        """Add ``target`` as a name for the image ``source``."""
        ...

    def remove(self, ref: ImageReference) -> None:  # pragma: no cover - protocol
        """Remove the name ``ref`` from the daemon."""
        ...

    def image(self, ref: ImageReference) -> Any:  # pragma: no cover - protocol
        """Return the daemon's image object for ``ref``."""
        ...

    def push(
        self,
        ref: ImageReference,
        auth_config: dict[str, str] | None = None,
        scope: CancelScope | None = None,
    ) -> PushResult:  # pragma: no cover - protocol
        """Push ``ref`` to its registry."""
        ...


def _progress_lines(
    response: requests.Response, scope: CancelScope | None
) -> Iterator[bytes]:
    try:
        for line in response.iter_lines():
            if scope is not None:
                scope.check()
            yield line
    except requests.RequestException as e:
        raise LoadError(f"reading docker image load progress failed: {e}") from e


class DockerDaemon:
    """Docker Engine implementation of ``DaemonClient``.

    The client is created lazily from the environment (``DOCKER_HOST`` and
    friends) on first use, negotiating the API version with the daemon.
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client = client

    def _ensure_client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env(version="auto")
            except DockerException as e:
                raise DaemonError(f"create docker client failed: {e}") from e
        return self._client

    @contextmanager
    def load(
        self, data: Iterable[bytes], scope: CancelScope | None = None
    ) -> Iterator[Iterator[bytes]]:
        """Stream an image archive into ``POST /images/load``.

        ``data`` is sent with chunked transfer encoding, so the archive is
        never held in memory. The response body is yielded as raw lines and
        closed when the block exits, whether or not it was read to the end.
        Cancelling ``scope`` closes the response while it is being read.
        """
        api = self._ensure_client().api
        url = f"{api.base_url}/v{api.api_version}/images/load"
        try:
            response = api.post(
                url,
                data=data,
                params={"quiet": "0"},
                headers={"Content-Type": "application/x-tar"},
                stream=True,
            )
        except requests.RequestException as e:
            raise LoadError(f"docker image load failed: {e}") from e

        detach = scope.add_callback(response.close) if scope is not None else None
        try:
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                raise LoadError(
                    f"docker image load failed: {response.status_code} "
                    f"{response.text.strip()}"
                ) from e
            yield _progress_lines(response, scope)
        finally:
            if detach is not None:
                detach()
            response.close()

    def tag(self, source: ImageReference | str, target: ImageReference) -> None:
        api = self._ensure_client().api
        try:
            api.tag(str(source), target.context, tag=target.tag)
        except (DockerException, requests.RequestException) as e:
            raise TagError(f"tag {source} as {target} failed: {e}") from e

    def remove(self, ref: ImageReference) -> None:
        api = self._ensure_client().api
        try:
            api.remove_image(str(ref))
        except (DockerException, requests.RequestException) as e:
            raise TagError(f"remove image {ref} failed: {e}") from e

    def image(self, ref: ImageReference) -> Any:
        client = self._ensure_client()
        try:
            return client.images.get(str(ref))
        except ImageNotFound as e:
            raise DaemonError(f"image {ref} not found in daemon") from e
        except (DockerException, requests.RequestException) as e:
            raise DaemonError(f"inspect image {ref} failed: {e}") from e

    def push(
        self,
        ref: ImageReference,
        auth_config: dict[str, str] | None = None,
        scope: CancelScope | None = None,
    ) -> PushResult:
        """Push ``ref`` and return the pushed manifest's digest.

        The daemon reports push failures inside the progress stream rather
        than as HTTP errors, so every record is checked. A cancelled
        ``scope`` abandons the push at the next record.
        """
        api = self._ensure_client().api
        result: PushResult | None = None
        try:
            for record in api.push(
                ref.context,
                tag=ref.tag,
                stream=True,
                decode=True,
                auth_config=auth_config,
            ):
                if scope is not None:
                    scope.check()
                if "error" in record or "errorDetail" in record:
                    detail = record.get("errorDetail") or {}
                    message = record.get("error") or detail.get("message")
                    raise PushError(f"push image {ref} failed: {message}")
                aux = record.get("aux") or {}
                if aux.get("Digest"):
                    result = PushResult(digest=aux["Digest"], size=aux.get("Size"))
                elif record.get("status"):
                    logger.debug(
                        "push %s: %s %s",
                        ref,
                        record.get("id", ""),
                        record["status"],
                    )
        except (DockerException, requests.RequestException) as e:
            raise PushError(f"push image {ref} failed: {e}") from e

        if result is None:
            raise PushError(f"push image {ref} did not report a digest")
        return result


__all__ = ["DaemonClient", "DockerDaemon", "PushResult"]
