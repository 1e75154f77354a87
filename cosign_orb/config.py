"""Configuration file loading, validation and per-call signing requests."""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from .errors import ConfigurationError
from .identity import IdentityClaim
from .key_material import SecretBuffer
from .mode import TrustMode

CONFIG_DIR = ".cosign-orb"
CONFIG_FILE = "config.yaml"

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "cosign": {"binary": "cosign"},
    "keys": {
        "private_key_var": "COSIGN_PRIVATE_KEY",
        "public_key_var": "COSIGN_PUBLIC_KEY",
        "password_var": "COSIGN_PASSWORD",
        "private_key_file": "cosign.key",
        "public_key_file": "cosign.pub",
    },
    "keyless": {
        "fulcio_url": "https://fulcio.sigstore.dev",
        "rekor_url": "https://rekor.sigstore.dev",
        "oidc_issuer": None,
    },
    "identity": {
        "certificate_identity": None,
        "certificate_identity_regexp": None,
        "certificate_oidc_issuer": None,
        "certificate_oidc_issuer_regexp": None,
    },
    "digest": {"backend": "auto"},
}

DIGEST_BACKENDS = ("auto", "crane", "docker")

# Environment variable -> (section, key)
ENVIRONMENT_OVERRIDES = {
    "COSIGN_ORB_FULCIO_URL": ("keyless", "fulcio_url"),
    "COSIGN_ORB_REKOR_URL": ("keyless", "rekor_url"),
    "COSIGN_ORB_OIDC_ISSUER": ("keyless", "oidc_issuer"),
    "COSIGN_ORB_DIGEST_BACKEND": ("digest", "backend"),
}


def parse_annotations(value: Optional[str]) -> Tuple[str, ...]:
    """
    Parse comma-separated ``key=value`` annotations.

    Args:
        value: Raw annotation string, e.g. ``"a=1, b=2"``

    Returns:
        Tuple of stripped ``key=value`` strings

    Raises:
        ConfigurationError: If a pair does not contain exactly one ``=``
    """
    if not value:
        return ()

    annotations = []
    for pair in value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key = pair.partition("=")[0]
        if pair.count("=") != 1 or not key.strip():
            raise ConfigurationError(
                f"Invalid annotation format '{pair}'. Expected key=value."
            )
        annotations.append(pair)
    return tuple(annotations)


@dataclass(frozen=True)
class SigningRequest:
    """What to sign or verify, and how, for a single call."""

    artifact: str
    mode: TrustMode = TrustMode.KEY
    predicate: Optional[str] = None
    predicate_type: Optional[str] = None
    annotations: Tuple[str, ...] = ()
    signature: Optional[str] = None
    certificate: Optional[str] = None
    bundle: Optional[str] = None
    output_signature: Optional[str] = None
    output_certificate: Optional[str] = None
    identity: IdentityClaim = field(default_factory=IdentityClaim)
    endpoints: Tuple[Tuple[str, str], ...] = ()


def build_request(
    artifact: str,
    keyless=False,
    annotations: Optional[str] = None,
    endpoints: Optional[Mapping[str, Optional[str]]] = None,
    **fields: Any,
) -> SigningRequest:
    """
    Build a SigningRequest from caller parameters.

    Args:
        artifact: Image reference or blob path
        keyless: Keyless flag (bool or ``1``/``true``)
        annotations: Comma-separated ``key=value`` annotations
        endpoints: Service endpoint overrides (fulcio_url, rekor_url, oidc_issuer)
        **fields: Remaining SigningRequest fields

    Raises:
        ConfigurationError: On malformed annotations, or endpoint overrides in key mode
    """
    if not artifact:
        raise ConfigurationError("An artifact reference is required")

    mode = TrustMode.from_flag(keyless)
    given = tuple((k, v) for k, v in (endpoints or {}).items() if v)
    if given and mode is TrustMode.KEY:
        names = ", ".join(k for k, _ in given)
        raise ConfigurationError(
            f"Service endpoint overrides ({names}) only apply in keyless mode"
        )

    return SigningRequest(
        artifact=artifact,
        mode=mode,
        annotations=parse_annotations(annotations),
        endpoints=given,
        **fields,
    )


class OrbConfig:
    """Configuration for signing operations."""

    def __init__(self, data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None):
        """
        Initialize configuration from dictionary.

        Args:
            data: Configuration dictionary from YAML
            environ: Environment holding secrets and CI identifiers; defaults to os.environ
        """
        self.data = data
        self.environ = os.environ if environ is None else environ
        self._validate()

    def _validate(self) -> None:
        """Validate configuration schema."""
        for section, value in self.data.items():
            if section not in DEFAULTS:
                raise ConfigurationError(f"Unknown configuration section: {section}")
            if not isinstance(value, dict):
                raise ConfigurationError(f"{section} must be a dictionary")

            for key, item in value.items():
                if key not in DEFAULTS[section]:
                    raise ConfigurationError(f"Unknown setting: {section}.{key}")
                if item is not None and not isinstance(item, str):
                    raise ConfigurationError(f"{section}.{key} must be a string")

        backend = self.get("digest", "backend")
        if backend not in DIGEST_BACKENDS:
            raise ConfigurationError(
                f"digest.backend must be one of: {', '.join(DIGEST_BACKENDS)}"
            )

    def get(self, section: str, key: str) -> Any:
        """Configured value, falling back to the built-in default."""
        value = self.data.get(section, {}).get(key)
        if value is None:
            return DEFAULTS[section][key]
        return value

    def section(self, section: str) -> Dict[str, Any]:
        return {key: self.get(section, key) for key in DEFAULTS[section]}

    @property
    def binary(self) -> str:
        return self.get("cosign", "binary")

    @property
    def digest_backend(self) -> str:
        return self.get("digest", "backend")

    def identity_claim(self) -> IdentityClaim:
        """Identity matching parameters from configuration."""
        identity = self.section("identity")
        return IdentityClaim(
            issuer=identity["certificate_oidc_issuer"],
            issuer_pattern=identity["certificate_oidc_issuer_regexp"],
            subject=identity["certificate_identity"],
            subject_pattern=identity["certificate_identity_regexp"],
        )

    def secret(self, key: str) -> SecretBuffer:
        """
        Read a secret from the environment variable named by ``keys.<key>``.

        Returns:
            SecretBuffer, empty if the variable is unset
        """
        var = self.get("keys", key)
        return SecretBuffer(self.environ.get(var, ""))

    def has_secret(self, key: str) -> bool:
        var = self.get("keys", key)
        return bool(self.environ.get(var, "").strip())

    def ambient(self, var: str) -> Optional[str]:
        return self.environ.get(var) or None

    def merge_with_cli_args(
        self, overrides: Optional[Dict[str, Dict[str, Any]]] = None
    ) -> "OrbConfig":
        """
        Merge configuration with CLI arguments.
        CLI arguments take precedence over config file.

        Args:
            overrides: Section -> {key: value}; None values are ignored

        Returns:
            New OrbConfig with merged values
        """
        merged = copy.deepcopy(self.data)
        for section, values in (overrides or {}).items():
            for key, value in values.items():
                if value is not None:
                    merged.setdefault(section, {})[key] = value
        return OrbConfig(merged, self.environ)

    def apply_environment_overrides(self) -> "OrbConfig":
        """
        Apply environment variable overrides.

        Environment variables:
        - COSIGN_ORB_FULCIO_URL: Override Fulcio URL
        - COSIGN_ORB_REKOR_URL: Override Rekor URL
        - COSIGN_ORB_OIDC_ISSUER: Override the issuer used for keyless signing
        - COSIGN_ORB_DIGEST_BACKEND: Force crane or docker

        Returns:
            New OrbConfig with environment overrides applied
        """
        merged = copy.deepcopy(self.data)
        for var, (section, key) in ENVIRONMENT_OVERRIDES.items():
            value = self.environ.get(var)
            if value:
                merged.setdefault(section, {})[key] = value
        return OrbConfig(merged, self.environ)


def load_config(config_path: str, environ: Optional[Mapping[str, str]] = None) -> OrbConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file
        environ: Environment for secrets and identifiers

    Returns:
        OrbConfig instance

    Raises:
        ConfigurationError: If config file is missing or invalid
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}")

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a mapping")

    return OrbConfig(data, environ)


def find_default_config() -> Optional[Path]:
    """
    Find default configuration file.

    Searches for .cosign-orb/config.yaml in:
    1. Current directory
    2. Parent directories up to git root
    3. Home directory

    Returns:
        Path to config file, or None if not found
    """
    current = Path.cwd()
    while True:
        config_path = current / CONFIG_DIR / CONFIG_FILE
        if config_path.exists():
            return config_path

        if (current / ".git").exists():
            break

        parent = current.parent
        if parent == current:
            break
        current = parent

    home_config = Path.home() / CONFIG_DIR / CONFIG_FILE
    if home_config.exists():
        return home_config

    return None


def load_default_config(environ: Optional[Mapping[str, str]] = None) -> OrbConfig:
    """
    Load configuration from the default location, or built-in defaults.

    Returns:
        OrbConfig; empty (all defaults) if no file is found
    """
    config_path = find_default_config()
    if config_path:
        return load_config(str(config_path), environ)
    return OrbConfig({}, environ)
