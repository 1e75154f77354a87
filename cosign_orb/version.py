"""Cosign major versions and the capabilities each one offers."""

import json
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from .errors import ConfigurationError, UnsupportedVersionError

logger = logging.getLogger(__name__)


class ToolVersion(Enum):
    """Supported cosign major versions."""

    V1 = 1
    V2 = 2
    V3 = 3

    @classmethod
    def from_major(cls, major: str) -> "ToolVersion":
        """
        Map a major version string to a ToolVersion.

        Raises:
            UnsupportedVersionError: For anything other than 1, 2 or 3
        """
        try:
            return cls(int(major))
        except (TypeError, ValueError):
            raise UnsupportedVersionError(str(major))

    def __str__(self) -> str:
        return f"v{self.value}"


# Flags every supported version accepts for the operations driven here.
_COMMON_FLAGS = frozenset(
    {
        "--key",
        "--signature",
        "--certificate",
        "--output-signature",
        "--output-certificate",
        "--bundle",
        "--predicate",
        "--type",
        "-a",
        "--fulcio-url",
        "--rekor-url",
        "--oidc-issuer",
        "--certificate-identity",
        "--certificate-oidc-issuer",
    }
)

_V2_FLAGS = _COMMON_FLAGS | {
    "--yes",
    "--tlog-upload",
    "--certificate-identity-regexp",
    "--certificate-oidc-issuer-regexp",
    "--private-infrastructure",
}

# Minimal signing configuration for cosign v3 that disables every external service.
PRIVATE_SIGNING_CONFIG = (
    '{"mediaType":"application/vnd.dev.sigstore.signingconfig.v0.2+json",'
    '"rekorTlogConfig":{},"tsaConfig":{}}\n'
)


@dataclass(frozen=True)
class Capabilities:
    """What one cosign major version accepts; consulted by every operation."""

    flags: FrozenSet[str]
    confirm: str  # non-interactive confirmation switch
    tlog_upload_off: Tuple[str, ...]  # image sign/attest with a key
    blob_tlog_upload_off: Tuple[str, ...]  # sign-blob with a key
    verify_private: Tuple[str, ...]  # key-based verification
    keyless_token_argument: bool  # token passed with --identity-token
    keyless_env: Tuple[Tuple[str, str], ...]
    subject_pattern: bool
    issuer_pattern: bool
    signing_config_opt_out: Tuple[str, ...]
    legacy_output_opt_out: Tuple[str, ...]
    inline_signing_config: bool


CAPABILITIES = {
    ToolVersion.V1: Capabilities(
        flags=_COMMON_FLAGS | {"-y", "--no-tlog-upload", "--identity-token"},
        confirm="-y",
        tlog_upload_off=("--no-tlog-upload",),
        # v1 does not upload blob signatures unless experimental mode is on
        blob_tlog_upload_off=(),
        # v1 does not verify against the transparency log by default
        verify_private=(),
        keyless_token_argument=True,
        keyless_env=(("COSIGN_EXPERIMENTAL", "1"),),
        subject_pattern=False,
        issuer_pattern=False,
        signing_config_opt_out=(),
        legacy_output_opt_out=(),
        inline_signing_config=False,
    ),
    ToolVersion.V2: Capabilities(
        flags=_V2_FLAGS,
        confirm="--yes",
        tlog_upload_off=("--tlog-upload=false",),
        blob_tlog_upload_off=("--tlog-upload=false",),
        verify_private=("--private-infrastructure",),
        keyless_token_argument=False,
        keyless_env=(),
        subject_pattern=True,
        issuer_pattern=True,
        signing_config_opt_out=(),
        legacy_output_opt_out=(),
        inline_signing_config=False,
    ),
    ToolVersion.V3: Capabilities(
        flags=_V2_FLAGS
        | {"--use-signing-config", "--new-bundle-format", "--signing-config"},
        confirm="--yes",
        tlog_upload_off=(),
        blob_tlog_upload_off=("--tlog-upload=false",),
        verify_private=("--private-infrastructure",),
        keyless_token_argument=False,
        keyless_env=(),
        subject_pattern=True,
        issuer_pattern=True,
        signing_config_opt_out=("--use-signing-config=false",),
        legacy_output_opt_out=(
            "--use-signing-config=false",
            "--new-bundle-format=false",
        ),
        inline_signing_config=True,
    ),
}


def capabilities_for(version: ToolVersion) -> Capabilities:
    return CAPABILITIES[version]


def parse_version_output(output: str) -> ToolVersion:
    """
    Parse the output of ``cosign version --json``.

    Args:
        output: Raw command output

    Returns:
        ToolVersion for the reported major version

    Raises:
        ConfigurationError: If the output cannot be parsed
        UnsupportedVersionError: If the major version is not supported
    """
    # v1 prints progress lines before the JSON document
    start = output.find("{")
    if start < 0:
        raise ConfigurationError(f"Unable to determine Cosign version from: {output!r}")

    try:
        data = json.loads(output[start:])
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid Cosign version output: {e}")

    git_version = str(data.get("gitVersion", "")).lstrip("v")
    if not git_version:
        raise ConfigurationError("Cosign version output has no gitVersion")

    return ToolVersion.from_major(git_version.split(".")[0])


def detect_version(binary: str = "cosign") -> ToolVersion:
    """
    Query the installed cosign for its major version.

    Args:
        binary: Name or path of the cosign executable

    Returns:
        Detected ToolVersion

    Raises:
        ConfigurationError: If cosign is missing or its version is unsupported
    """
    try:
        result = subprocess.run(
            [binary, "version", "--json"],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        raise ConfigurationError(
            f"Cosign executable not found: {binary}. Install cosign before signing."
        )

    version = parse_version_output((result.stdout or "") + (result.stderr or ""))
    logger.info("Detected Cosign major version: %s", version.value)
    return version


def flag_name(argument: str) -> Optional[str]:
    """Return the flag name of a command argument, or None for values."""
    if not argument.startswith("-"):
        return None
    return argument.split("=", 1)[0]
