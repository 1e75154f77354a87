"""Translate a logical signing operation into cosign arguments for one major version."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .errors import CapabilityError, ConfigurationError, IdentityError, UnsupportedVersionError
from .identity import IdentityClaim
from .mode import TrustMode
from .version import (
    PRIVATE_SIGNING_CONFIG,
    Capabilities,
    ToolVersion,
    capabilities_for,
    flag_name,
)

REDACTED_FLAGS = ("--identity-token",)


class Operation(Enum):
    """Logical operations; values are cosign subcommands."""

    SIGN = "sign"
    SIGN_BLOB = "sign-blob"
    VERIFY = "verify"
    VERIFY_BLOB = "verify-blob"
    ATTEST = "attest"
    VERIFY_ATTESTATION = "verify-attestation"
    GENERATE_KEY_PAIR = "generate-key-pair"


# Operations whose cosign subcommand accepts -a key=value
ANNOTATED_OPERATIONS = frozenset({Operation.SIGN, Operation.VERIFY})


@dataclass
class CommandOptions:
    """Structured options for a single cosign invocation."""

    target: str
    key: Optional[str] = None
    signature: Optional[str] = None
    certificate: Optional[str] = None
    bundle: Optional[str] = None
    output_signature: Optional[str] = None
    output_certificate: Optional[str] = None
    predicate: Optional[str] = None
    predicate_type: Optional[str] = None
    annotations: Sequence[str] = ()
    fulcio_url: Optional[str] = None
    rekor_url: Optional[str] = None
    oidc_issuer: Optional[str] = None
    identity_token: Optional[str] = None
    identity: Optional[IdentityClaim] = None


@dataclass
class CommandPlan:
    """Version-correct arguments, environment and inline documents for cosign."""

    operation: Operation
    version: ToolVersion
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    # flag -> document content, written to a temporary file at execution time
    documents: Dict[str, str] = field(default_factory=dict)

    def redacted(self) -> List[str]:
        """Arguments safe to log."""
        shown = []
        for arg in self.args:
            name = flag_name(arg)
            if name in REDACTED_FLAGS and "=" in arg:
                arg = f"{name}=***"
            shown.append(arg)
        return shown


def _require(value: Optional[str], message: str) -> str:
    if not value:
        raise ConfigurationError(message)
    return value


def _key_flag(options: CommandOptions) -> List[str]:
    return [f"--key={_require(options.key, 'Key-based operations require a key file')}"]


def _annotation_flags(options: CommandOptions) -> List[str]:
    flags: List[str] = []
    for annotation in options.annotations:
        flags.extend(["-a", annotation])
    return flags


def _private_signing(plan: CommandPlan, caps: Capabilities) -> None:
    """Keep image signatures and attestations off every public service."""
    plan.args.extend(caps.tlog_upload_off)
    if caps.inline_signing_config:
        plan.documents["--signing-config"] = PRIVATE_SIGNING_CONFIG


def _keyless_signing(plan: CommandPlan, caps: Capabilities, options: CommandOptions) -> None:
    token = _require(
        options.identity_token, "Keyless signing requires an OIDC identity token"
    )
    for flag, value in (
        ("--fulcio-url", options.fulcio_url),
        ("--rekor-url", options.rekor_url),
        ("--oidc-issuer", options.oidc_issuer),
    ):
        if value:
            plan.args.append(f"{flag}={value}")

    if caps.keyless_token_argument:
        plan.args.append(f"--identity-token={token}")
    else:
        plan.env["SIGSTORE_ID_TOKEN"] = token
    plan.env.update(caps.keyless_env)


def _endpoint_opt_out(plan: CommandPlan, caps: Capabilities, options: CommandOptions) -> None:
    if options.fulcio_url or options.rekor_url:
        _extend_unique(plan.args, caps.signing_config_opt_out)


def _extend_unique(args: List[str], flags: Sequence[str]) -> None:
    for flag in flags:
        if flag not in args:
            args.append(flag)


def _identity_flags(
    plan: CommandPlan, caps: Capabilities, claim: Optional[IdentityClaim]
) -> None:
    if claim is None or claim.is_empty():
        raise IdentityError("Keyless verification requires a certificate identity claim")

    if claim.subject:
        plan.args.append(f"--certificate-identity={claim.subject}")
    elif claim.subject_pattern:
        if not caps.subject_pattern:
            raise CapabilityError(
                f"Cosign {plan.version} does not support --certificate-identity-regexp"
            )
        plan.args.append(f"--certificate-identity-regexp={claim.subject_pattern}")

    if claim.issuer:
        plan.args.append(f"--certificate-oidc-issuer={claim.issuer}")
    elif claim.issuer_pattern:
        if not caps.issuer_pattern:
            raise IdentityError(
                f"Cosign {plan.version} does not support --certificate-oidc-issuer-regexp"
            )
        plan.args.append(f"--certificate-oidc-issuer-regexp={claim.issuer_pattern}")
    else:
        raise IdentityError(
            "Keyless verification requires a certificate OIDC issuer or issuer regexp"
        )

    plan.env.update(caps.keyless_env)


def _predicate_flags(options: CommandOptions, need_predicate: bool) -> List[str]:
    flags = []
    if need_predicate:
        flags.append(
            f"--predicate={_require(options.predicate, 'Attestation requires a predicate file')}"
        )
    flags.append(
        f"--type={_require(options.predicate_type, 'Attestation requires a predicate type')}"
    )
    return flags


def _sign(plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions) -> None:
    if mode is TrustMode.KEY:
        plan.args.extend(_key_flag(options))
        _private_signing(plan, caps)
        plan.args.extend(_annotation_flags(options))
        return

    _keyless_signing(plan, caps, options)
    plan.args.extend(_annotation_flags(options))
    plan.args.append(caps.confirm)
    _endpoint_opt_out(plan, caps, options)


def _sign_blob(
    plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions
) -> None:
    # Legacy single-file outputs, or no bundle at all, need the old format on v3
    legacy_output = bool(
        options.output_signature or options.output_certificate or not options.bundle
    )

    if mode is TrustMode.KEY:
        if options.output_certificate:
            raise CapabilityError("Certificate output is only produced in keyless mode")
        plan.args.extend(_key_flag(options))
        if caps.inline_signing_config and not legacy_output:
            _private_signing(plan, caps)
        else:
            plan.args.extend(caps.blob_tlog_upload_off)
            _extend_unique(plan.args, caps.legacy_output_opt_out)
    else:
        _keyless_signing(plan, caps, options)
        _endpoint_opt_out(plan, caps, options)
        if legacy_output:
            _extend_unique(plan.args, caps.legacy_output_opt_out)

    if options.output_signature:
        plan.args.append(f"--output-signature={options.output_signature}")
    if options.output_certificate:
        plan.args.append(f"--output-certificate={options.output_certificate}")
    if options.bundle:
        plan.args.append(f"--bundle={options.bundle}")

    if mode is TrustMode.KEYLESS:
        plan.args.append(caps.confirm)


def _verify(plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions) -> None:
    if mode is TrustMode.KEY:
        plan.args.extend(_key_flag(options))
        plan.args.extend(caps.verify_private)
    else:
        _identity_flags(plan, caps, options.identity)
    plan.args.extend(_annotation_flags(options))


def _verify_blob(
    plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions
) -> None:
    if not options.signature and not options.bundle:
        raise ConfigurationError("Blob verification requires a signature file or bundle")

    if mode is TrustMode.KEY:
        plan.args.extend(_key_flag(options))
    else:
        if not options.certificate and not options.bundle:
            raise ConfigurationError(
                "Keyless blob verification requires a certificate file or bundle"
            )
        if options.certificate:
            plan.args.append(f"--certificate={options.certificate}")

    if options.signature:
        plan.args.append(f"--signature={options.signature}")
    if options.bundle:
        plan.args.append(f"--bundle={options.bundle}")

    if mode is TrustMode.KEY:
        plan.args.extend(caps.verify_private)
    else:
        _identity_flags(plan, caps, options.identity)


def _attest(plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions) -> None:
    plan.args.extend(_predicate_flags(options, need_predicate=True))
    if mode is TrustMode.KEY:
        plan.args.extend(_key_flag(options))
        _private_signing(plan, caps)
        return

    _keyless_signing(plan, caps, options)
    plan.args.append(caps.confirm)
    _endpoint_opt_out(plan, caps, options)


def _verify_attestation(
    plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions
) -> None:
    plan.args.extend(_predicate_flags(options, need_predicate=False))
    if mode is TrustMode.KEY:
        plan.args.extend(_key_flag(options))
        plan.args.extend(caps.verify_private)
    else:
        _identity_flags(plan, caps, options.identity)


def _generate_key_pair(
    plan: CommandPlan, caps: Capabilities, mode: TrustMode, options: CommandOptions
) -> None:
    # Writes cosign.key and cosign.pub into the working directory
    if mode is not TrustMode.KEY:
        raise CapabilityError("Key pairs are only generated for key-based signing")


_BUILDERS = {
    Operation.SIGN: _sign,
    Operation.SIGN_BLOB: _sign_blob,
    Operation.VERIFY: _verify,
    Operation.VERIFY_BLOB: _verify_blob,
    Operation.ATTEST: _attest,
    Operation.VERIFY_ATTESTATION: _verify_attestation,
    Operation.GENERATE_KEY_PAIR: _generate_key_pair,
}


def _check_flags(plan: CommandPlan, caps: Capabilities, targeted: bool) -> None:
    # skip the subcommand and the trailing target
    end = len(plan.args) - 1 if targeted else len(plan.args)
    for arg in plan.args[1:end] + list(plan.documents):
        name = flag_name(arg)
        if name is not None and name not in caps.flags:
            raise CapabilityError(
                f"Cosign {plan.version} does not accept {name} for {plan.operation.value}"
            )


def build_command(
    version: ToolVersion,
    operation: Operation,
    mode: TrustMode,
    options: CommandOptions,
) -> CommandPlan:
    """
    Build the cosign arguments for an operation.

    Args:
        version: Detected cosign version
        operation: Logical operation
        mode: Trust model for the whole operation
        options: Structured options

    Returns:
        CommandPlan whose args end with the target, if the operation has one

    Raises:
        UnsupportedVersionError: If version is not a supported ToolVersion
        CapabilityError: If a requested capability cannot be honored
        ConfigurationError: If a required option is missing
        IdentityError: If keyless verification has no usable claim
    """
    if not isinstance(version, ToolVersion):
        raise UnsupportedVersionError(str(version))
    if operation not in _BUILDERS:
        raise CapabilityError(f"Unsupported operation: {operation}")
    if options.annotations and operation not in ANNOTATED_OPERATIONS:
        raise CapabilityError(
            f"Annotations are not supported by cosign {operation.value}"
        )
    targeted = operation is not Operation.GENERATE_KEY_PAIR
    if targeted and not options.target:
        raise ConfigurationError(f"cosign {operation.value} requires a target")

    caps = capabilities_for(version)
    plan = CommandPlan(operation=operation, version=version, args=[operation.value])
    _BUILDERS[operation](plan, caps, mode, options)
    if targeted:
        plan.args.append(options.target)

    _check_flags(plan, caps, targeted)
    return plan
