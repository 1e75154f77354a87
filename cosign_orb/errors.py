"""Error taxonomy for signing orchestration."""


class CosignOrbError(Exception):
    """Base class for all orchestration errors."""
    pass


class ConfigurationError(CosignOrbError):
    """Missing or invalid parameter, or an unreachable collaborator."""
    pass


class UnsupportedVersionError(ConfigurationError):
    """The installed cosign major version is not supported."""

    def __init__(self, version: str):
        self.version = version
        super().__init__(
            f"Unsupported Cosign version: {version} (supported major versions: 1, 2, 3)"
        )


class CapabilityError(ConfigurationError):
    """A requested capability cannot be honored by the selected operation or version."""
    pass


class SecretError(CosignOrbError):
    """Missing, empty or undecodable key material."""
    pass


class MissingSecretError(SecretError):
    pass


class SecretDecodeError(SecretError):
    pass


class EmptySecretError(SecretError):
    pass


class IdentityError(CosignOrbError):
    """Unresolved or contradictory certificate identity parameters."""
    pass


class ExecutionError(CosignOrbError):
    """The external signer exited with a non-zero status."""

    def __init__(self, returncode: int, command: str = "cosign"):
        self.returncode = returncode
        self.command = command
        super().__init__(f"{command} exited with status {returncode}")
