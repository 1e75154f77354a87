"""Trust model selection."""

import logging
from enum import Enum
from typing import Optional, Sequence, Tuple

from .errors import ConfigurationError, MissingSecretError
from .identity import TokenSource, find_token_source

logger = logging.getLogger(__name__)


class TrustMode(Enum):
    """How the signer establishes trust for one whole operation."""

    KEY = "key"
    KEYLESS = "keyless"

    @classmethod
    def from_flag(cls, keyless) -> "TrustMode":
        """Interpret a keyless flag given as bool, ``1``/``0`` or ``true``/``false``."""
        if isinstance(keyless, str):
            keyless = keyless.strip().lower() in ("1", "true", "yes")
        return cls.KEYLESS if keyless else cls.KEY


def resolve_mode(
    keyless,
    key_configured: bool,
    needs_token: bool = False,
    token_sources: Sequence[TokenSource] = (),
    key_description: str = "key",
) -> Tuple[TrustMode, Optional[TokenSource]]:
    """
    Choose exactly one trust model before any secret material is touched.

    Args:
        keyless: Requested keyless flag
        key_configured: Whether key material was supplied
        needs_token: Whether the operation signs and needs an identity token
        token_sources: Candidate identity token sources, in order
        key_description: Name of the expected key for error messages

    Returns:
        Tuple of the TrustMode and, for keyless signing, the token source

    Raises:
        ConfigurationError: Keyless signing without a reachable token source
        MissingSecretError: Key mode without key material
    """
    mode = TrustMode.from_flag(keyless)

    if mode is TrustMode.KEYLESS:
        if key_configured:
            logger.warning(
                "Keyless mode requested; the configured %s will not be used", key_description
            )
        source = None
        if needs_token:
            source = find_token_source(token_sources)
            if source is None:
                raise ConfigurationError(
                    "Keyless signing requires an OIDC identity token, but none is "
                    "reachable.\n"
                    "Please ensure one of:\n"
                    "  1. SIGSTORE_ID_TOKEN is exported\n"
                    "  2. The CircleCI CLI is installed and OIDC is enabled for your "
                    "organization\n"
                    "  3. The GitHub Actions job has the id-token: write permission\n"
                    "Run the 'check-oidc' command to diagnose OIDC issues."
                )
        return mode, source

    if not key_configured:
        raise MissingSecretError(
            f"{key_description.capitalize()} is empty. Check that the environment "
            "variable is set correctly, or enable keyless mode."
        )
    return mode, None
