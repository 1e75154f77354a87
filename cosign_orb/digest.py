"""Resolve tag-qualified image references to immutable digest references."""

import logging
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")


@dataclass(frozen=True)
class ArtifactDigestReference:
    """An image repository pinned to a content digest."""

    repository: str
    digest: str

    def __str__(self) -> str:
        return f"{self.repository}@{self.digest}"


def repository_without_tag(reference: str) -> str:
    """
    Strip any tag or digest from an image reference.

    Registry ports are kept: ``localhost:5000/img:v1`` gives ``localhost:5000/img``.
    """
    repository = reference.split("@", 1)[0]
    last_slash = repository.rfind("/")
    colon = repository.rfind(":")
    if colon > last_slash:
        repository = repository[:colon]
    return repository


class DigestBackend(ABC):
    """A tool that can report the digest of an image reference."""

    name = "backend"

    @classmethod
    def available(cls) -> bool:
        return shutil.which(cls.name) is not None

    @abstractmethod
    def digest(self, reference: str) -> str:
        """
        Report the digest for a reference.

        Args:
            reference: Image reference as requested

        Returns:
            Bare digest such as ``sha256:...``
        """
        pass


class CraneBackend(DigestBackend):
    """Remote inspection with crane; returns a bare digest."""

    name = "crane"

    def digest(self, reference: str) -> str:
        result = subprocess.run(
            ["crane", "digest", reference],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise ConfigurationError(
                f"crane could not resolve {reference}: {result.stderr.strip()}"
            )
        return result.stdout.strip()


class DockerBackend(DigestBackend):
    """Local engine inspection with docker; pulls the image when absent."""

    name = "docker"

    def _exists_locally(self, reference: str) -> bool:
        result = subprocess.run(
            ["docker", "image", "inspect", reference],
            capture_output=True,
            text=True,
        )
        return result.returncode == 0

    def digest(self, reference: str) -> str:
        if self._exists_locally(reference):
            logger.info("The image exists locally.")
        else:
            logger.info(
                "The image does not exist locally, but is needed by Docker to "
                "compute the digest."
            )
            logger.info("Pulling image %s...", reference)
            pulled = subprocess.run(["docker", "pull", reference])
            if pulled.returncode != 0:
                raise ConfigurationError(f"docker could not pull {reference}")

        result = subprocess.run(
            ["docker", "inspect", "--format={{index .RepoDigests 0}}", reference],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0 or "@" not in result.stdout:
            raise ConfigurationError(
                f"docker reports no repository digest for {reference}; "
                "push the image to a registry first"
            )

        # RepoDigests may name another registry the same image was pushed to;
        # only the digest part is trustworthy.
        digest_with_registry = result.stdout.strip()
        logger.debug("Docker reported %s", digest_with_registry)
        return digest_with_registry.split("@", 1)[1]


BACKENDS = {
    CraneBackend.name: CraneBackend,
    DockerBackend.name: DockerBackend,
}


def select_backend(preferred: Optional[str] = None) -> DigestBackend:
    """
    Choose the digest backend once, preferring crane.

    Args:
        preferred: Backend name to force, or None/"auto" to detect

    Raises:
        ConfigurationError: If no usable backend is installed
    """
    if preferred and preferred != "auto":
        if preferred not in BACKENDS:
            raise ConfigurationError(
                f"Unknown digest backend: {preferred} (expected crane, docker or auto)"
            )
        backend_class = BACKENDS[preferred]
        if not backend_class.available():
            raise ConfigurationError(f"Digest backend {preferred} is not installed")
        return backend_class()

    for backend_class in (CraneBackend, DockerBackend):
        if backend_class.available():
            return backend_class()

    raise ConfigurationError(
        "Resolving image digests requires that either crane or docker be installed."
    )


def resolve_digest(reference: str, backend: DigestBackend) -> ArtifactDigestReference:
    """
    Pin an image reference to its digest.

    The repository is always rebuilt from the requested reference, never
    taken from what the backend reports.

    Raises:
        ConfigurationError: If the backend fails or returns something unexpected
    """
    logger.info("Determining image URI digest...")
    logger.info("  Tool: %s", backend.name)

    digest = backend.digest(reference)
    if not DIGEST_PATTERN.match(digest):
        raise ConfigurationError(
            f"{backend.name} returned an unexpected digest for {reference}: {digest!r}"
        )

    pinned = ArtifactDigestReference(repository_without_tag(reference), digest)
    logger.info("  Image URI Digest: %s", pinned)
    return pinned
