"""Identity tokens and certificate identity matching for keyless operations."""

import base64
import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from .errors import ConfigurationError, IdentityError
from .version import ToolVersion, capabilities_for

logger = logging.getLogger(__name__)

ISSUER_BASE = "https://oidc.circleci.com"
SUBJECT_BASE = "https://circleci.com/api/v2"

ORG_ID_VAR = "CIRCLE_ORGANIZATION_ID"
PROJECT_ID_VAR = "CIRCLE_PROJECT_ID"

SIGSTORE_AUDIENCE = "sigstore"


def derive_issuer(org_id: str) -> str:
    return f"{ISSUER_BASE}/org/{org_id}"


def derive_subject_pattern(project_id: str) -> str:
    return f"{SUBJECT_BASE}/projects/{project_id}/pipeline-definitions/.*"


@dataclass(frozen=True)
class IdentityClaim:
    """Expected certificate issuer and subject, exact or as patterns."""

    issuer: Optional[str] = None
    issuer_pattern: Optional[str] = None
    subject: Optional[str] = None
    subject_pattern: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            (self.issuer, self.issuer_pattern, self.subject, self.subject_pattern)
        )

    def fill_from(self, fallback: "IdentityClaim") -> "IdentityClaim":
        """Fill the issuer and subject from ``fallback`` where this claim gives neither form."""
        claim = self
        if not (self.issuer or self.issuer_pattern):
            claim = replace(claim, issuer=fallback.issuer, issuer_pattern=fallback.issuer_pattern)
        if not (self.subject or self.subject_pattern):
            claim = replace(
                claim, subject=fallback.subject, subject_pattern=fallback.subject_pattern
            )
        return claim


@dataclass
class ResolvedIdentity:
    """Identity claim ready for the version adapter, plus any degradations."""

    claim: IdentityClaim
    warnings: List[str] = field(default_factory=list)


def resolve_identity(
    explicit: IdentityClaim,
    version: ToolVersion,
    org_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> ResolvedIdentity:
    """
    Resolve the identity claim used for keyless verification.

    Explicit values are used verbatim, exact values winning over patterns.
    Missing values are derived from the ambient organization and project
    identifiers, which is only valid for same-organization, same-project
    verification.

    Args:
        explicit: Claim assembled from caller parameters
        version: Detected cosign version
        org_id: Ambient organization identifier
        project_id: Ambient project identifier

    Returns:
        ResolvedIdentity holding the usable claim and warnings

    Raises:
        IdentityError: If no usable claim resolves for this version
    """
    warnings: List[str] = []
    caps = capabilities_for(version)

    issuer, issuer_pattern = explicit.issuer, explicit.issuer_pattern
    if not issuer and not issuer_pattern and org_id:
        issuer = derive_issuer(org_id)
        logger.info("Auto-detected OIDC issuer from %s", ORG_ID_VAR)

    subject, subject_pattern = explicit.subject, explicit.subject_pattern
    if not subject and not subject_pattern and project_id:
        subject_pattern = derive_subject_pattern(project_id)
        logger.info("Auto-detected certificate identity regexp from %s", PROJECT_ID_VAR)

    claim = IdentityClaim()

    if subject:
        claim = replace(claim, subject=subject)
    elif subject_pattern:
        if caps.subject_pattern:
            claim = replace(claim, subject_pattern=subject_pattern)
        else:
            warning = (
                f"Cosign {version} does not support --certificate-identity-regexp. "
                "Skipping identity verification (issuer will still be verified). "
                "For full identity verification, upgrade to Cosign v2+."
            )
            logger.warning(warning)
            warnings.append(warning)
    elif caps.subject_pattern:
        raise IdentityError(
            "Keyless verification requires either certificate_identity or "
            "certificate_identity_regexp. Either provide one of them, or run where "
            f"{PROJECT_ID_VAR} is available."
        )

    if issuer:
        claim = replace(claim, issuer=issuer)
    elif issuer_pattern:
        if not caps.issuer_pattern:
            raise IdentityError(
                f"Cosign {version} does not support --certificate-oidc-issuer-regexp. "
                "Use certificate_oidc_issuer with an exact match, or upgrade to Cosign v2+."
            )
        claim = replace(claim, issuer_pattern=issuer_pattern)
    else:
        raise IdentityError(
            "Keyless verification requires either certificate_oidc_issuer or "
            "certificate_oidc_issuer_regexp. Either provide one of them, or run where "
            f"{ORG_ID_VAR} is available."
        )

    return ResolvedIdentity(claim=claim, warnings=warnings)


def signing_issuer(
    explicit: Optional[str] = None, org_id: Optional[str] = None
) -> str:
    """Issuer passed to ``--oidc-issuer`` when signing keylessly."""
    if explicit:
        return explicit
    if org_id:
        return derive_issuer(org_id)
    logger.warning(
        "%s is not set; falling back to %s, which may not work with all Fulcio "
        "configurations",
        ORG_ID_VAR,
        ISSUER_BASE,
    )
    return ISSUER_BASE


def decode_claims(token: str) -> Dict[str, Any]:
    """
    Decode JWT claims without verifying the signature.

    Raises:
        IdentityError: If the token is not a decodable JWT
    """
    parts = token.split(".")
    if len(parts) < 2:
        raise IdentityError("Identity token is not a JWT")

    claims_b64 = parts[1]
    claims_b64 += "=" * (-len(claims_b64) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(claims_b64))
    except (ValueError, TypeError) as e:
        raise IdentityError(f"Failed to decode JWT payload: {e}")
    if not isinstance(claims, dict):
        raise IdentityError("JWT payload is not a JSON object")
    return claims


@dataclass
class OIDCToken:
    """Short-lived OIDC token used for keyless signing."""

    token: str
    issuer: str
    subject: str
    claims: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, token: str) -> "OIDCToken":
        claims = decode_claims(token)
        return cls(
            token=token,
            issuer=claims.get("iss", ""),
            subject=claims.get("sub", ""),
            claims=claims,
        )

    @property
    def org_id(self) -> Optional[str]:
        return self.claims.get("oidc.circleci.com/org-id")

    @property
    def project_id(self) -> Optional[str]:
        return self.claims.get("oidc.circleci.com/project-id")

    @property
    def pipeline_definition_id(self) -> Optional[str]:
        return self.claims.get("oidc.circleci.com/pipeline-definition-id")

    @property
    def vcs_origin(self) -> Optional[str]:
        return self.claims.get("oidc.circleci.com/vcs-origin")

    def to_dict(self) -> Dict[str, Any]:
        """Claims safe to display; ephemeral timing claims are excluded."""
        return {
            "issuer": self.issuer,
            "subject": self.subject,
            "claims": {
                k: v
                for k, v in self.claims.items()
                if k not in ["iat", "nbf", "exp", "jti"]
            },
        }

    def verification_hints(self) -> Dict[str, str]:
        """Parameters a verifier can use to match certificates from this token."""
        project = self.project_id or "<project-id>"
        return {
            "certificate_oidc_issuer": self.issuer,
            "certificate_identity": (
                f"{SUBJECT_BASE}/projects/{project}/pipeline-definitions/"
                f"{self.pipeline_definition_id or '<your-pipeline-def-id>'}"
            ),
            "certificate_identity_regexp": derive_subject_pattern(project),
        }


class TokenSource(ABC):
    """A place an ambient identity token can be obtained from."""

    name = "token"

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    @abstractmethod
    def available(self) -> bool:
        """Whether this source can be asked for a token at all."""
        pass

    @abstractmethod
    def fetch(self) -> str:
        """
        Obtain a token with the sigstore audience.

        Raises:
            ConfigurationError: If the token cannot be obtained
        """
        pass


class EnvironmentTokenSource(TokenSource):
    """A token already exported as SIGSTORE_ID_TOKEN."""

    name = "SIGSTORE_ID_TOKEN"

    def available(self) -> bool:
        return bool(self.environ.get("SIGSTORE_ID_TOKEN"))

    def fetch(self) -> str:
        token = self.environ.get("SIGSTORE_ID_TOKEN")
        if not token:
            raise ConfigurationError("SIGSTORE_ID_TOKEN is empty")
        return token


class CircleCITokenSource(TokenSource):
    """Token requested from the CircleCI CLI with the sigstore audience."""

    name = "circleci"

    def available(self) -> bool:
        return shutil.which("circleci") is not None

    def fetch(self) -> str:
        # CIRCLE_OIDC_TOKEN carries the org id as audience; Fulcio expects "sigstore"
        result = subprocess.run(
            [
                "circleci",
                "run",
                "oidc",
                "get",
                "--claims",
                json.dumps({"aud": SIGSTORE_AUDIENCE}),
            ],
            capture_output=True,
            text=True,
        )
        token = (result.stdout or "").strip()
        if result.returncode != 0 or not token:
            raise ConfigurationError(
                "Failed to get OIDC token from CircleCI.\n"
                "Keyless signing requires CircleCI OIDC to be enabled. Please ensure:\n"
                "  1. You are using CircleCI Cloud or Server 4.x+\n"
                "  2. OIDC is enabled for your organization\n"
                "  3. Your plan supports OIDC tokens\n"
                "Run the 'check-oidc' command to diagnose OIDC issues."
            )
        return token


class GitHubActionsTokenSource(TokenSource):
    """Token requested from the GitHub Actions OIDC endpoint."""

    name = "github-actions"

    def available(self) -> bool:
        return bool(
            self.environ.get("ACTIONS_ID_TOKEN_REQUEST_URL")
            and self.environ.get("ACTIONS_ID_TOKEN_REQUEST_TOKEN")
        )

    def fetch(self) -> str:
        token_url = self.environ.get("ACTIONS_ID_TOKEN_REQUEST_URL")
        token_bearer = self.environ.get("ACTIONS_ID_TOKEN_REQUEST_TOKEN")

        if not token_url or not token_bearer:
            raise ConfigurationError(
                "Not running in GitHub Actions or id-token permission not granted"
            )

        try:
            response = requests.get(
                f"{token_url}&audience={SIGSTORE_AUDIENCE}",
                headers={"Authorization": f"bearer {token_bearer}"},
                timeout=10,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ConfigurationError(f"Failed to get OIDC token from GitHub Actions: {e}")

        try:
            token = response.json()["value"]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Unexpected OIDC token response from GitHub Actions: {e}")
        if not isinstance(token, str) or not token:
            raise ConfigurationError("GitHub Actions returned an empty OIDC token")
        return token



def default_token_sources(
    environ: Optional[Mapping[str, str]] = None,
) -> List[TokenSource]:
    return [
        EnvironmentTokenSource(environ),
        CircleCITokenSource(environ),
        GitHubActionsTokenSource(environ),
    ]


def find_token_source(sources: Sequence[TokenSource]) -> Optional[TokenSource]:
    """Return the first reachable token source, or None."""
    for source in sources:
        if source.available():
            logger.debug("Using identity token source: %s", source.name)
            return source
    return None


def ambient_token(environ: Optional[Mapping[str, str]] = None) -> OIDCToken:
    """
    Read the job's own OIDC token for inspection.

    Raises:
        ConfigurationError: If CIRCLE_OIDC_TOKEN is not set
    """
    environ = os.environ if environ is None else environ
    token = environ.get("CIRCLE_OIDC_TOKEN")
    if not token:
        raise ConfigurationError(
            "CIRCLE_OIDC_TOKEN is not set\n"
            "Possible causes:\n"
            "  1. OIDC is not enabled for your CircleCI organization\n"
            "  2. You are using CircleCI Server < 4.x without OIDC configuration\n"
            "  3. Your CircleCI plan does not include OIDC tokens\n"
            "To enable OIDC, check your CircleCI Organization Settings."
        )
    return OIDCToken.parse(token)
