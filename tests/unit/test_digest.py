"""Unit tests for digest.py module."""

from unittest.mock import Mock
import pytest

from cosign_orb.digest import (
    ArtifactDigestReference,
    CraneBackend,
    DigestBackend,
    DockerBackend,
    repository_without_tag,
    resolve_digest,
    select_backend,
)
from cosign_orb.errors import ConfigurationError


def completed(returncode=0, stdout="", stderr=""):
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


class StaticBackend(DigestBackend):
    name = "static"

    def __init__(self, digest):
        self._digest = digest

    def digest(self, reference):
        return self._digest


class TestRepositoryWithoutTag:
    """Tests for repository_without_tag."""

    @pytest.mark.parametrize(
        "reference,expected",
        [
            ("registry.example.com/img:v1", "registry.example.com/img"),
            ("registry.example.com/img", "registry.example.com/img"),
            ("localhost:5000/img:v1", "localhost:5000/img"),
            ("localhost:5000/img", "localhost:5000/img"),
            ("img@sha256:" + "ab" * 32, "img"),
            ("ghcr.io/org/img:v1@sha256:" + "ab" * 32, "ghcr.io/org/img"),
        ],
    )
    def test_strip(self, reference, expected):
        assert repository_without_tag(reference) == expected


class TestResolveDigest:
    """Tests for resolve_digest."""

    def test_pins_requested_repository(self, image_digest):
        pinned = resolve_digest("registry/img:v1", StaticBackend(image_digest))

        assert pinned == ArtifactDigestReference("registry/img", image_digest)
        assert str(pinned) == f"registry/img@{image_digest}"

    def test_rejects_unexpected_digest(self):
        with pytest.raises(ConfigurationError, match="unexpected digest"):
            resolve_digest("registry/img:v1", StaticBackend("registry/img@sha256:abc"))

    def test_rejects_empty_digest(self):
        with pytest.raises(ConfigurationError):
            resolve_digest("registry/img:v1", StaticBackend(""))


class TestCraneBackend:
    """Tests for CraneBackend."""

    def test_digest(self, mocker, image_digest):
        run = mocker.patch(
            "cosign_orb.digest.subprocess.run", return_value=completed(stdout=image_digest + "\n")
        )

        assert CraneBackend().digest("registry/img:v1") == image_digest
        assert run.call_args[0][0] == ["crane", "digest", "registry/img:v1"]

    def test_failure(self, mocker):
        mocker.patch(
            "cosign_orb.digest.subprocess.run",
            return_value=completed(returncode=1, stderr="MANIFEST_UNKNOWN"),
        )

        with pytest.raises(ConfigurationError, match="MANIFEST_UNKNOWN"):
            CraneBackend().digest("registry/img:v1")


class TestDockerBackend:
    """Tests for DockerBackend."""

    def test_local_image(self, mocker, image_digest):
        run = mocker.patch(
            "cosign_orb.digest.subprocess.run",
            side_effect=[
                completed(),
                completed(stdout=f"registry/img@{image_digest}\n"),
            ],
        )

        assert DockerBackend().digest("registry/img:v1") == image_digest
        assert run.call_args_list[0][0][0] == ["docker", "image", "inspect", "registry/img:v1"]

    def test_pulls_missing_image(self, mocker, image_digest):
        run = mocker.patch(
            "cosign_orb.digest.subprocess.run",
            side_effect=[
                completed(returncode=1),
                completed(),
                completed(stdout=f"registry/img@{image_digest}\n"),
            ],
        )

        assert DockerBackend().digest("registry/img:v1") == image_digest
        assert run.call_args_list[1][0][0] == ["docker", "pull", "registry/img:v1"]

    def test_pull_failure(self, mocker):
        mocker.patch(
            "cosign_orb.digest.subprocess.run",
            side_effect=[completed(returncode=1), completed(returncode=1)],
        )

        with pytest.raises(ConfigurationError, match="could not pull"):
            DockerBackend().digest("registry/img:v1")

    def test_unpushed_image(self, mocker):
        mocker.patch(
            "cosign_orb.digest.subprocess.run",
            side_effect=[completed(), completed(returncode=1, stdout="")],
        )

        with pytest.raises(ConfigurationError, match="no repository digest"):
            DockerBackend().digest("registry/img:v1")

    def test_stale_registry_in_repo_digests(self, mocker, image_digest):
        """Test the requested repository is kept when docker names another registry."""
        mocker.patch(
            "cosign_orb.digest.subprocess.run",
            side_effect=[
                completed(),
                completed(stdout=f"old-registry.example/img@{image_digest}\n"),
            ],
        )

        pinned = resolve_digest("new-registry.example/img:v1", DockerBackend())

        assert str(pinned) == f"new-registry.example/img@{image_digest}"


class TestSelectBackend:
    """Tests for select_backend."""

    def test_prefers_crane(self, mocker):
        mocker.patch("cosign_orb.digest.shutil.which", return_value="/usr/bin/tool")
        assert isinstance(select_backend(), CraneBackend)

    def test_falls_back_to_docker(self, mocker):
        mocker.patch(
            "cosign_orb.digest.shutil.which",
            side_effect=lambda name: "/usr/bin/docker" if name == "docker" else None,
        )
        assert isinstance(select_backend("auto"), DockerBackend)

    def test_forced_backend(self, mocker):
        mocker.patch("cosign_orb.digest.shutil.which", return_value="/usr/bin/tool")
        assert isinstance(select_backend("docker"), DockerBackend)

    def test_forced_backend_missing(self, mocker):
        mocker.patch("cosign_orb.digest.shutil.which", return_value=None)
        with pytest.raises(ConfigurationError, match="not installed"):
            select_backend("crane")

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown digest backend"):
            select_backend("podman")

    def test_none_available(self, mocker):
        mocker.patch("cosign_orb.digest.shutil.which", return_value=None)
        with pytest.raises(ConfigurationError, match="crane or docker"):
            select_backend()
