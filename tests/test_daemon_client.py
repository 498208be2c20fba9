"""Tests for daemon/client.py module.

Uses a mocked docker SDK client; no daemon is required.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests
from docker.errors import APIError, DockerException, ImageNotFound

from nix_containers.concurrency import CancelScope
from nix_containers.daemon.client import DockerDaemon, PushResult
from nix_containers.errors import (
    DaemonError,
    LoadError,
    OperationCancelledError,
    PushError,
    TagError,
)
from nix_containers.types import ImageReference

REF = ImageReference.parse("ghcr.io/x/app:v1")
DIGEST = "sha256:" + "b" * 64


@pytest.fixture
def client() -> MagicMock:
    mock = MagicMock()
    mock.api.base_url = "http+docker://localhost"
    mock.api.api_version = "1.43"
    return mock


class TestClientCreation:
    """Tests for lazy client creation."""

    def test_from_env(self) -> None:
        """The docker client should be created on first use."""
        with patch("nix_containers.daemon.client.docker.from_env") as from_env:
            daemon = DockerDaemon()
            from_env.assert_not_called()
            daemon.remove(REF)
        from_env.assert_called_once_with(version="auto")

    def test_unreachable_daemon(self) -> None:
        """A daemon that cannot be reached should raise DaemonError."""
        with patch(
            "nix_containers.daemon.client.docker.from_env",
            side_effect=DockerException("no socket"),
        ):
            with pytest.raises(DaemonError, match="no socket"):
                DockerDaemon().image(REF)


class TestLoad:
    """Tests for DockerDaemon.load."""

    def test_streams_request(self, client: MagicMock) -> None:
        """Should post the chunks to the load endpoint and yield lines."""
        response = client.api.post.return_value
        response.iter_lines.return_value = iter([b'{"stream":"Loaded image: a:b"}'])
        chunks = iter([b"a", b"b"])

        with DockerDaemon(client).load(chunks) as lines:
            assert list(lines) == [b'{"stream":"Loaded image: a:b"}']

        args, kwargs = client.api.post.call_args
        assert args[0] == "http+docker://localhost/v1.43/images/load"
        assert kwargs["data"] is chunks
        assert kwargs["stream"] is True
        response.close.assert_called_once()

    def test_http_error(self, client: MagicMock) -> None:
        """A rejected load should raise LoadError."""
        response = client.api.post.return_value
        response.raise_for_status.side_effect = requests.HTTPError("500")
        response.status_code = 500
        response.text = "daemon exploded\n"

        with pytest.raises(LoadError, match="daemon exploded"):
            with DockerDaemon(client).load(iter([])):
                pass
        response.close.assert_called_once()

    def test_connection_error(self, client: MagicMock) -> None:
        """A failed request should raise LoadError."""
        client.api.post.side_effect = requests.ConnectionError("broken pipe")
        with pytest.raises(LoadError, match="broken pipe"):
            with DockerDaemon(client).load(iter([])):
                pass

    def test_progress_interrupted(self, client: MagicMock) -> None:
        """A progress stream cut off by the daemon should raise LoadError."""

        def lines():
            yield b'{"status":"Loading layer"}'
            raise requests.exceptions.ChunkedEncodingError("connection broken")

        client.api.post.return_value.iter_lines.return_value = lines()

        with pytest.raises(LoadError, match="connection broken"):
            with DockerDaemon(client).load(iter([])) as progress:
                list(progress)

    def test_cancel_closes_response(self, client: MagicMock) -> None:
        """Cancelling the scope should close the response being read."""
        response = client.api.post.return_value
        response.iter_lines.return_value = iter([b"first", b"second"])
        scope = CancelScope()

        with pytest.raises(OperationCancelledError):
            with DockerDaemon(client).load(iter([]), scope) as progress:
                assert next(progress) == b"first"
                response.close.assert_not_called()
                scope.cancel("sibling failed")
                response.close.assert_called_once()
                next(progress)


class TestTagAndRemove:
    """Tests for DockerDaemon.tag and DockerDaemon.remove."""

    def test_tag(self, client: MagicMock) -> None:
        """Should tag the source with the target repository and tag."""
        DockerDaemon(client).tag(ImageReference.parse("app:nixhash"), REF)
        client.api.tag.assert_called_once_with("app:nixhash", "ghcr.io/x/app", tag="v1")

    def test_tag_image_id(self, client: MagicMock) -> None:
        """Image ids are passed through as written."""
        DockerDaemon(client).tag("sha256:abc", REF)
        client.api.tag.assert_called_once_with("sha256:abc", "ghcr.io/x/app", tag="v1")

    def test_tag_failure(self, client: MagicMock) -> None:
        """A daemon error should raise TagError."""
        client.api.tag.side_effect = APIError("conflict")
        with pytest.raises(TagError):
            DockerDaemon(client).tag("sha256:abc", REF)

    def test_remove(self, client: MagicMock) -> None:
        """Should remove the name as written."""
        DockerDaemon(client).remove(ImageReference.parse("app:nixhash"))
        client.api.remove_image.assert_called_once_with("app:nixhash")

    def test_remove_failure(self, client: MagicMock) -> None:
        """A daemon error should raise TagError."""
        client.api.remove_image.side_effect = APIError("in use")
        with pytest.raises(TagError):
            DockerDaemon(client).remove(REF)


class TestImage:
    """Tests for DockerDaemon.image."""

    def test_found(self, client: MagicMock) -> None:
        """Should return the SDK image object."""
        assert DockerDaemon(client).image(REF) is client.images.get.return_value
        client.images.get.assert_called_once_with("ghcr.io/x/app:v1")

    def test_not_found(self, client: MagicMock) -> None:
        """A missing image should raise DaemonError."""
        client.images.get.side_effect = ImageNotFound("missing")
        with pytest.raises(DaemonError, match="not found"):
            DockerDaemon(client).image(REF)


class TestPush:
    """Tests for DockerDaemon.push."""

    def test_success(self, client: MagicMock) -> None:
        """Should return the digest reported in the aux record."""
        client.api.push.return_value = iter(
            [
                {"status": "Pushing", "id": "layer1"},
                {"status": "v1: digest: ... size: 529"},
                {"aux": {"Tag": "v1", "Digest": DIGEST, "Size": 529}},
            ]
        )
        auth = {"username": "u", "password": "p"}

        result = DockerDaemon(client).push(REF, auth)

        assert result == PushResult(digest=DIGEST, size=529)
        client.api.push.assert_called_once_with(
            "ghcr.io/x/app", tag="v1", stream=True, decode=True, auth_config=auth
        )

    def test_error_record(self, client: MagicMock) -> None:
        """An error record in the stream should raise PushError."""
        client.api.push.return_value = iter(
            [
                {"status": "Pushing", "id": "layer1"},
                {"errorDetail": {"message": "denied"}, "error": "denied: access"},
            ]
        )
        with pytest.raises(PushError, match="denied: access"):
            DockerDaemon(client).push(REF)

    def test_no_digest(self, client: MagicMock) -> None:
        """A stream without a digest should raise PushError."""
        client.api.push.return_value = iter([{"status": "Pushing"}])
        with pytest.raises(PushError, match="digest"):
            DockerDaemon(client).push(REF)

    def test_api_error(self, client: MagicMock) -> None:
        """A daemon error should raise PushError."""
        client.api.push.side_effect = APIError("unauthorized")
        with pytest.raises(PushError):
            DockerDaemon(client).push(REF)

    def test_connection_error(self, client: MagicMock) -> None:
        """A dropped connection should raise PushError."""
        client.api.push.side_effect = requests.ConnectionError("connection reset")
        with pytest.raises(PushError, match="connection reset"):
            DockerDaemon(client).push(REF)

    def test_stream_interrupted(self, client: MagicMock) -> None:
        """A progress stream cut off mid-push should raise PushError."""

        def records():
            yield {"status": "Pushing", "id": "layer1"}
            raise requests.exceptions.ChunkedEncodingError("connection broken")

        client.api.push.return_value = records()
        with pytest.raises(PushError, match="connection broken"):
            DockerDaemon(client).push(REF)

    def test_cancelled_mid_push(self, client: MagicMock) -> None:
        """A cancelled scope should abandon the push at the next record."""
        scope = CancelScope()
        seen = []

        def records():
            seen.append("layer1")
            yield {"status": "Pushing", "id": "layer1"}
            scope.cancel("sibling failed")
            seen.append("layer2")
            yield {"status": "Pushing", "id": "layer2"}
            seen.append("aux")
            yield {"aux": {"Digest": DIGEST}}

        client.api.push.return_value = records()
        with pytest.raises(OperationCancelledError, match="sibling failed"):
            DockerDaemon(client).push(REF, scope=scope)
        assert seen == ["layer1", "layer2"]


class TestTransportErrors:
    """Transport failures of the SDK session should map to pipeline errors."""

    def test_tag(self, client: MagicMock) -> None:
        """A dropped connection while tagging should raise TagError."""
        client.api.tag.side_effect = requests.ConnectionError("connection reset")
        with pytest.raises(TagError, match="connection reset"):
            DockerDaemon(client).tag("sha256:abc", REF)

    def test_remove(self, client: MagicMock) -> None:
        """A dropped connection while removing should raise TagError."""
        client.api.remove_image.side_effect = requests.ConnectionError("reset")
        with pytest.raises(TagError):
            DockerDaemon(client).remove(REF)

    def test_image(self, client: MagicMock) -> None:
        """A dropped connection while inspecting should raise DaemonError."""
        client.images.get.side_effect = requests.ConnectionError("reset")
        with pytest.raises(DaemonError, match="inspect image"):
            DockerDaemon(client).image(REF)
