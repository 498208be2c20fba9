"""Tests for registry/auth.py module."""

import base64
import json

import httpx
import respx

from nix_containers.registry.auth import (
    AnonymousKeychain,
    Credentials,
    DockerConfigKeychain,
    RegistryAuth,
    parse_challenge,
)


class TestCredentials:
    """Tests for Credentials."""

    def test_basic_header(self) -> None:
        """Should encode username and password."""
        header = Credentials("user", "secret").basic_header()
        assert header == "Basic " + base64.b64encode(b"user:secret").decode()

    def test_auth_config(self) -> None:
        """Should render the docker SDK auth_config shape."""
        assert Credentials("u", "p").to_auth_config() == {
            "username": "u",
            "password": "p",
        }


class TestKeychains:
    """Tests for keychain implementations."""

    def test_anonymous(self) -> None:
        """The anonymous keychain never has credentials."""
        assert AnonymousKeychain().resolve("ghcr.io") is None

    def test_docker_config(self, tmp_path, monkeypatch) -> None:
        """Should read credentials from a docker config file."""
        monkeypatch.setenv("HOME", str(tmp_path))
        config = tmp_path / "config.json"
        auth = base64.b64encode(b"user:secret").decode()
        config.write_text(json.dumps({"auths": {"ghcr.io": {"auth": auth}}}))

        keychain = DockerConfigKeychain(str(config))

        assert keychain.resolve("ghcr.io") == Credentials("user", "secret")
        assert keychain.resolve("quay.io") is None

    def test_docker_config_missing(self, tmp_path, monkeypatch) -> None:
        """A missing config file means no credentials."""
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.delenv("DOCKER_CONFIG", raising=False)
        keychain = DockerConfigKeychain(str(tmp_path / "missing.json"))
        assert keychain.resolve("ghcr.io") is None


class TestParseChallenge:
    """Tests for parse_challenge function."""

    def test_bearer(self) -> None:
        """Should parse scheme and quoted parameters."""
        scheme, params = parse_challenge(
            'Bearer realm="https://auth.docker.io/token",service="registry.docker.io"'
        )
        assert scheme == "bearer"
        assert params == {
            "realm": "https://auth.docker.io/token",
            "service": "registry.docker.io",
        }

    def test_basic(self) -> None:
        """Basic challenges carry only a realm."""
        assert parse_challenge('Basic realm="Registry"') == (
            "basic",
            {"realm": "Registry"},
        )


class TestRegistryAuth:
    """Tests for the RegistryAuth flow."""

    @respx.mock
    def test_no_challenge(self) -> None:
        """Requests that succeed are sent once without credentials."""
        route = respx.get("https://ghcr.io/v2/").mock(return_value=httpx.Response(200))
        auth = RegistryAuth(Credentials("u", "p"), "repository:x/app:pull")

        with httpx.Client(auth=auth) as client:
            client.get("https://ghcr.io/v2/")

        assert route.call_count == 1
        assert "Authorization" not in route.calls.last.request.headers

    @respx.mock
    def test_basic_challenge(self) -> None:
        """A Basic challenge is answered with the credentials."""
        route = respx.get("http://localhost:5000/v2/").mock(
            side_effect=[
                httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="r"'}),
                httpx.Response(200),
            ]
        )
        credentials = Credentials("u", "p")

        with httpx.Client(auth=RegistryAuth(credentials, "s")) as client:
            response = client.get("http://localhost:5000/v2/")

        assert response.status_code == 200
        assert route.calls.last.request.headers["Authorization"] == (
            credentials.basic_header()
        )

    @respx.mock
    def test_basic_challenge_anonymous(self) -> None:
        """Without credentials the 401 is returned as is."""
        respx.get("http://localhost:5000/v2/").mock(
            return_value=httpx.Response(
                401, headers={"WWW-Authenticate": 'Basic realm="r"'}
            )
        )

        with httpx.Client(auth=RegistryAuth(None, "s")) as client:
            response = client.get("http://localhost:5000/v2/")

        assert response.status_code == 401

    @respx.mock
    def test_anonymous_bearer_token(self) -> None:
        """Anonymous token requests carry no Authorization header."""
        respx.get("https://ghcr.io/v2/").mock(
            side_effect=[
                httpx.Response(
                    401,
                    headers={"WWW-Authenticate": 'Bearer realm="https://ghcr.io/token"'},
                ),
                httpx.Response(200),
            ]
        )
        token = respx.get(host="ghcr.io", path="/token").mock(
            return_value=httpx.Response(200, json={"access_token": "anon"})
        )

        with httpx.Client(auth=RegistryAuth(None, "repository:x/app:pull")) as client:
            response = client.get("https://ghcr.io/v2/")

        assert response.status_code == 200
        assert "Authorization" not in token.calls.last.request.headers
