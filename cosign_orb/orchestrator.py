"""Signing orchestrator coordinating mode, version, secrets, identity and execution."""

import base64
import logging
import os
import shlex
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .adapter import CommandOptions, Operation, build_command
from .certificate import summarize_certificate
from .config import OrbConfig, SigningRequest
from .digest import DigestBackend, resolve_digest, select_backend
from .errors import ConfigurationError
from .executor import Executor
from .identity import (
    ORG_ID_VAR,
    PROJECT_ID_VAR,
    IdentityClaim,
    TokenSource,
    default_token_sources,
    resolve_identity,
    signing_issuer,
)
from .key_material import SecretBuffer, destroy_file, materialize_key
from .mode import TrustMode, resolve_mode
from .version import ToolVersion, detect_version

logger = logging.getLogger(__name__)

PRIVATE_KEY = ("private_key_var", "private_key_file", "private key")
PUBLIC_KEY = ("public_key_var", "public_key_file", "public key")


def banner(title: str) -> None:
    logger.info("")
    logger.info("=== %s ===", title)


class SigningOrchestrator:
    """Runs one signing or verification operation end to end."""

    def __init__(
        self,
        config: OrbConfig,
        executor: Optional[Executor] = None,
        version: Optional[ToolVersion] = None,
        digest_backend: Optional[DigestBackend] = None,
        token_sources: Optional[Sequence[TokenSource]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Configuration including the environment to read secrets from
            executor: Executor for cosign; built from config if omitted
            version: Known cosign version; detected on first use if omitted
            digest_backend: Digest backend; selected on first use if omitted
            token_sources: Identity token sources; CI defaults if omitted
        """
        self.config = config
        self.executor = executor or Executor(config.binary)
        self._version = version
        self._digest_backend = digest_backend
        self.token_sources = (
            list(token_sources)
            if token_sources is not None
            else default_token_sources(config.environ)
        )

    @property
    def tool_version(self) -> ToolVersion:
        if self._version is None:
            self._version = detect_version(self.config.binary)
        return self._version

    @property
    def digest_backend(self) -> DigestBackend:
        if self._digest_backend is None:
            self._digest_backend = select_backend(self.config.digest_backend)
        return self._digest_backend

    def _resolve_mode(self, request: SigningRequest, key, needs_token: bool):
        var_setting, _, description = key
        return resolve_mode(
            request.mode is TrustMode.KEYLESS,
            self.config.has_secret(var_setting),
            needs_token=needs_token,
            token_sources=self.token_sources,
            key_description=description,
        )

    def _keyless_options(self, request: SigningRequest, source: TokenSource) -> Dict[str, str]:
        endpoints = self.config.section("keyless")
        endpoints.update(dict(request.endpoints))
        issuer = signing_issuer(endpoints["oidc_issuer"], self.config.ambient(ORG_ID_VAR))

        logger.info("Using OIDC identity for identity-based signing")
        logger.info("  Fulcio URL: %s", endpoints["fulcio_url"])
        logger.info("  Rekor URL: %s", endpoints["rekor_url"])
        logger.info("  OIDC Issuer: %s", issuer)

        logger.info("Requesting OIDC token with Sigstore audience...")
        token = source.fetch()
        logger.info("OIDC token obtained (%d characters)", len(token))

        return {
            "fulcio_url": endpoints["fulcio_url"],
            "rekor_url": endpoints["rekor_url"],
            "oidc_issuer": issuer,
            "identity_token": token,
        }

    def _identity(self, request: SigningRequest, version: ToolVersion) -> IdentityClaim:
        explicit = request.identity.fill_from(self.config.identity_claim())

        resolved = resolve_identity(
            explicit,
            version,
            org_id=self.config.ambient(ORG_ID_VAR),
            project_id=self.config.ambient(PROJECT_ID_VAR),
        )
        claim = resolved.claim
        if claim.subject:
            logger.info("Certificate identity: %s", claim.subject)
        if claim.subject_pattern:
            logger.info("Certificate identity regexp: %s", claim.subject_pattern)
        if claim.issuer:
            logger.info("Certificate OIDC issuer: %s", claim.issuer)
        if claim.issuer_pattern:
            logger.info("Certificate OIDC issuer regexp: %s", claim.issuer_pattern)
        return claim

    def _execute(
        self,
        operation: Operation,
        mode: TrustMode,
        options: CommandOptions,
        key=None,
        password: Optional[SecretBuffer] = None,
    ) -> int:
        """Build the plan first, then hold key material only around execution."""
        version = self.tool_version
        if mode is TrustMode.KEY:
            var_setting, file_setting, description = key
            options = replace(options, key=self.config.get("keys", file_setting))
            plan = build_command(version, operation, mode, options)
            with materialize_key(
                self.config.secret(var_setting),
                options.key,
                password=password,
                description=description,
            ) as material:
                return self.executor.run(plan, secret_env=material.env())

        plan = build_command(version, operation, mode, options)
        return self.executor.run(plan)

    def _pin(self, reference: str) -> str:
        return str(resolve_digest(reference, self.digest_backend))

    def sign_image(self, request: SigningRequest) -> int:
        """
        Sign a container image by digest.

        Returns:
            The signer's exit status (always 0; failures raise)
        """
        mode, source = self._resolve_mode(request, PRIVATE_KEY, needs_token=True)
        version = self.tool_version
        target = self._pin(request.artifact)
        for annotation in request.annotations:
            logger.info("  Adding annotation: %s", annotation)

        options = CommandOptions(target=target, annotations=request.annotations)
        if mode is TrustMode.KEYLESS:
            banner("Keyless Signing Mode")
            options = replace(options, **self._keyless_options(request, source))
            logger.info("Signing %s (keyless) with Cosign %s...", target, version)
            status = self._execute(Operation.SIGN, mode, options)
            banner("Keyless Signing Complete")
            logger.info("Image signed: %s", target)
            logger.info("Signature recorded in Rekor transparency log")
            return status

        banner("Private Key Signing Mode")
        logger.info("Signing %s...", target)
        status = self._execute(
            Operation.SIGN, mode, options, PRIVATE_KEY, self.config.secret("password_var")
        )
        banner("Private Key Signing Complete")
        logger.info("Image signed: %s", target)
        return status

    def sign_blob(self, request: SigningRequest) -> int:
        """Sign an arbitrary file, writing a signature and, keylessly, a certificate."""
        mode, source = self._resolve_mode(request, PRIVATE_KEY, needs_token=True)
        version = self.tool_version
        logger.debug("Using Cosign %s", version)
        blob = self._require_file(request.artifact, "Blob file")
        if request.output_signature:
            logger.info("Signature output: %s", request.output_signature)
        else:
            logger.info("Signature output: stdout")

        options = CommandOptions(
            target=blob,
            output_signature=request.output_signature,
            output_certificate=request.output_certificate,
            bundle=request.bundle,
            annotations=request.annotations,
        )
        if mode is TrustMode.KEYLESS:
            banner("Keyless Blob Signing Mode")
            options = replace(options, **self._keyless_options(request, source))
            logger.info("Signing %s (keyless)...", blob)
            status = self._execute(Operation.SIGN_BLOB, mode, options)
            if request.output_certificate:
                self._report_certificate(request.output_certificate)
            banner("Keyless Blob Signing Complete")
            return status

        banner("Private Key Blob Signing Mode")
        logger.info("Signing %s...", blob)
        status = self._execute(
            Operation.SIGN_BLOB,
            mode,
            options,
            PRIVATE_KEY,
            self.config.secret("password_var"),
        )
        banner("Private Key Blob Signing Complete")
        return status

    def verify_image(self, request: SigningRequest) -> int:
        """Verify signatures on a container image."""
        mode, _ = self._resolve_mode(request, PUBLIC_KEY, needs_token=False)
        version = self.tool_version
        options = CommandOptions(target=request.artifact, annotations=request.annotations)

        if mode is TrustMode.KEYLESS:
            banner("Keyless Verification Mode")
            options = replace(options, identity=self._identity(request, version))
        else:
            banner("Public Key Verification Mode")

        logger.info("Verifying cosign signature for %s...", request.artifact)
        status = self._execute(Operation.VERIFY, mode, options, PUBLIC_KEY)
        banner("Verification Complete")
        logger.info("Image verified: %s", request.artifact)
        return status

    def verify_blob(self, request: SigningRequest) -> int:
        """Verify a blob signature with a public key or a certificate identity."""
        mode, _ = self._resolve_mode(request, PUBLIC_KEY, needs_token=False)
        version = self.tool_version
        blob = self._require_file(request.artifact, "Blob file")
        if request.signature:
            self._require_file(request.signature, "Signature file")
        if request.certificate:
            self._require_file(request.certificate, "Certificate file")

        options = CommandOptions(
            target=blob,
            signature=request.signature,
            certificate=request.certificate,
            bundle=request.bundle,
            annotations=request.annotations,
        )
        if mode is TrustMode.KEYLESS:
            banner("Keyless Blob Verification Mode")
            options = replace(options, identity=self._identity(request, version))
        else:
            banner("Public Key Blob Verification Mode")

        logger.info("Verifying cosign signature for %s...", blob)
        status = self._execute(Operation.VERIFY_BLOB, mode, options, PUBLIC_KEY)
        banner("Blob Verification Complete")
        return status

    def attest(self, request: SigningRequest) -> int:
        """Attach a signed attestation with a predicate to an image."""
        mode, source = self._resolve_mode(request, PRIVATE_KEY, needs_token=True)
        version = self.tool_version
        logger.debug("Using Cosign %s", version)
        predicate = self._require_file(request.predicate, "Predicate file")
        target = self._pin(request.artifact)

        options = CommandOptions(
            target=target,
            predicate=predicate,
            predicate_type=request.predicate_type,
            annotations=request.annotations,
        )
        if mode is TrustMode.KEYLESS:
            banner("Keyless Attestation Mode")
            options = replace(options, **self._keyless_options(request, source))
            logger.info("Attesting %s (keyless)...", target)
            status = self._execute(Operation.ATTEST, mode, options)
        else:
            banner("Private Key Attestation Mode")
            logger.info("Attesting %s...", target)
            status = self._execute(
                Operation.ATTEST,
                mode,
                options,
                PRIVATE_KEY,
                self.config.secret("password_var"),
            )

        banner("Attestation Complete")
        logger.info("Attestation attached: %s", target)
        return status

    def verify_attestation(self, request: SigningRequest) -> int:
        """Verify attestations of a given predicate type on an image."""
        mode, _ = self._resolve_mode(request, PUBLIC_KEY, needs_token=False)
        version = self.tool_version
        options = CommandOptions(
            target=request.artifact,
            predicate_type=request.predicate_type,
            annotations=request.annotations,
        )

        if mode is TrustMode.KEYLESS:
            banner("Keyless Attestation Verification Mode")
            options = replace(options, identity=self._identity(request, version))
        else:
            banner("Public Key Attestation Verification Mode")

        logger.info("Verifying attestation for %s...", request.artifact)
        logger.info("  Predicate Type: %s", request.predicate_type)
        status = self._execute(Operation.VERIFY_ATTESTATION, mode, options, PUBLIC_KEY)
        banner("Attestation Verification Complete")
        logger.info("Attestation verified: %s", request.artifact)
        return status

    def generate_key_pair(
        self,
        env_file: str,
        password: Optional[str] = None,
        private_key_var: str = "COSIGN_PRIVATE_KEY",
        public_key_var: str = "COSIGN_PUBLIC_KEY",
        password_var: str = "COSIGN_PASSWORD",
    ) -> List[str]:
        """
        Generate a key pair for development use and export it base64-encoded.

        The key files cosign writes are destroyed afterwards; only the
        ``export`` lines appended to env_file remain.

        Args:
            env_file: File to append ``export VAR=...`` lines to (e.g. $BASH_ENV)
            password: Key password; a random one is generated if omitted
            private_key_var: Variable name for the encoded private key
            public_key_var: Variable name for the encoded public key
            password_var: Variable name for the password

        Returns:
            Names of the exported variables
        """
        key_file = Path(self.config.get("keys", "private_key_file"))
        pub_file = Path(self.config.get("keys", "public_key_file"))
        for path in (key_file, pub_file):
            if path.exists():
                raise ConfigurationError(
                    f"{path} already exists; refusing to overwrite an existing key"
                )

        if not password:
            logger.info("No password provided, generating a random one...")
        secret = SecretBuffer(password or base64.b64encode(os.urandom(32)))

        plan = build_command(
            self.tool_version,
            Operation.GENERATE_KEY_PAIR,
            TrustMode.KEY,
            CommandOptions(target=""),
        )
        try:
            logger.info("Generating Cosign key pair...")
            self.executor.run(plan, secret_env={"COSIGN_PASSWORD": secret.reveal().decode()})

            if not key_file.is_file() or not pub_file.is_file():
                raise ConfigurationError(
                    "Key pair generation failed. Key files not found."
                )

            logger.info("Encoding keys...")
            exports = {
                password_var: secret.reveal().decode(),
                private_key_var: base64.b64encode(key_file.read_bytes()).decode(),
                public_key_var: base64.b64encode(pub_file.read_bytes()).decode(),
            }

            logger.info("Exporting keys to environment variables...")
            with open(env_file, "a") as f:
                for name, value in exports.items():
                    f.write(f"export {name}={shlex.quote(value)}\n")
            exports.clear()
        finally:
            logger.info("Cleaning up key files...")
            destroy_file(key_file)
            destroy_file(pub_file)
            secret.clear()
            logger.info("Key files destroyed.")

        logger.warning("These keys are for development/testing only.")
        return [password_var, private_key_var, public_key_var]

    def _require_file(self, path: Optional[str], description: str) -> str:
        if not path or not Path(path).is_file():
            raise ConfigurationError(f"{description} does not exist: {path}")
        logger.info("%s: %s", description, path)
        return path

    def _report_certificate(self, path: str) -> None:
        try:
            summary = summarize_certificate(path)
        except (OSError, ValueError) as e:
            logger.warning("Could not read signing certificate %s: %s", path, e)
            return
        logger.info("Certificate written: %s", path)
        for identity in summary.identities:
            logger.info("  Identity: %s", identity)
        if summary.issuer:
            logger.info("  OIDC Issuer: %s", summary.issuer)
