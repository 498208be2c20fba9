"""Registry credentials and authentication.

Credentials are resolved through a ``Keychain``. The default keychain reads
the Docker client configuration (``~/.docker/config.json``), including
``credsStore`` and ``credHelpers``, via the docker SDK.

``RegistryAuth`` is an httpx auth flow that answers the registry's
``WWW-Authenticate`` challenge: Bearer challenges are exchanged for a token
at the advertised realm, Basic challenges are answered directly.
"""

from __future__ import annotations

import base64
import logging
import re
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from docker import auth as docker_auth
from docker.errors import DockerException

logger = logging.getLogger(__name__)

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class Credentials:
    """Username and password for a registry."""

    username: str
    password: str

    def basic_header(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return f"Basic {token}"

    def to_auth_config(self) -> dict[str, str]:
        """Render in the shape the docker SDK expects for ``auth_config``."""
        return {"username": self.username, "password": self.password}


class Keychain(Protocol):
    """Resolves credentials for a registry host."""

    def resolve(self, registry: str) -> Credentials | None:  # pragma: no cover - protocol
        ...


class AnonymousKeychain:
    """Keychain that never has credentials."""

    def resolve(self, registry: str) -> Credentials | None:
        return None


class DockerConfigKeychain:
    """Keychain backed by the Docker client configuration.

    Args:
        config_path: Explicit config file (defaults to the docker SDK lookup:
            ``DOCKER_CONFIG`` or ``~/.docker/config.json``).
    """

    def __init__(self, config_path: str | None = None) -> None:
        self._config_path = config_path
        self._config: Any = None

    def _load(self) -> Any:
        if self._config is None:
            self._config = docker_auth.load_config(config_path=self._config_path)
        return self._config

    def resolve(self, registry: str) -> Credentials | None:
        try:
            entry = self._load().resolve_authconfig(registry)
        except DockerException as e:
            logger.warning("Credential lookup for %s failed: %s", registry, e)
            return None
        if not entry:
            logger.debug("No credentials found for %s", registry)
            return None

        username = entry.get("username") or entry.get("Username")
        password = entry.get("password") or entry.get("Password")
        if not username or not password:
            return None
        return Credentials(username=username, password=password)


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Parse a ``WWW-Authenticate`` header.

    Args:
        header: Header value, e.g. ``Bearer realm="...",service="..."``.

    Returns:
        Lower-cased scheme and its parameters.
    """
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


class RegistryAuth(httpx.Auth):
    """httpx auth flow for the OCI distribution token protocol.

    Args:
        credentials: Credentials for the registry, or None for anonymous.
        scope: Token scope, e.g. ``repository:you/app:pull,push``.
    """

    requires_response_body = True

    def __init__(self, credentials: Credentials | None, scope: str) -> None:
        self._credentials = credentials
        self._scope = scope
        self._authorization: str | None = None

    def auth_flow(
        self, request: httpx.Request
    ) -> Generator[httpx.Request, httpx.Response, None]:
        if self._authorization:
            request.headers["Authorization"] = self._authorization
        response = yield request
        if response.status_code != 401:
            return

        scheme, params = parse_challenge(response.headers.get("WWW-Authenticate", ""))
        if scheme == "basic":
            if self._credentials is None:
                return
            self._authorization = self._credentials.basic_header()
        elif scheme == "bearer" and "realm" in params:
            query = {"scope": self._scope}
            if "service" in params:
                query["service"] = params["service"]
            headers = {}
            if self._credentials is not None:
                headers["Authorization"] = self._credentials.basic_header()
            logger.debug("Requesting registry token from %s", params["realm"])
            token_response = yield httpx.Request(
                "GET", params["realm"], params=query, headers=headers
            )
            if token_response.status_code != 200:
                return
            body = token_response.json()
            token = body.get("token") or body.get("access_token")
            if not token:
                return
            self._authorization = f"Bearer {token}"
        else:
            return

        request.headers["Authorization"] = self._authorization
        yield request


__all__ = [
    "AnonymousKeychain",
    "Credentials",
    "DockerConfigKeychain",
    "Keychain",
    "RegistryAuth",
    "parse_challenge",
]
