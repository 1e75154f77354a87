"""Command-line interface for signing operations."""

import json
import logging
import os
import signal
import sys
from typing import Callable

import click

from . import __version__
from .config import OrbConfig, build_request, load_config, load_default_config
from .errors import CosignOrbError, ExecutionError
from .identity import IdentityClaim, ambient_token
from .orchestrator import SigningOrchestrator

logger = logging.getLogger(__name__)


class LevelPrefixFormatter(logging.Formatter):
    """Prefix warnings and errors with their level so they stand out from progress."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.WARNING:
            return f"{record.levelname}: {message}"
        return message


def setup_logging(debug: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LevelPrefixFormatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)


def _terminate(signum, frame):
    # Turn SIGTERM into SystemExit so key material cleanup handlers run
    raise SystemExit(128 + signum)


def run_operation(config: OrbConfig, operation: Callable[[SigningOrchestrator], int]) -> None:
    """Run an orchestrator operation and exit with its status."""
    signal.signal(signal.SIGTERM, _terminate)
    try:
        status = operation(SigningOrchestrator(config))
    except ExecutionError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(e.returncode)
    except CosignOrbError as e:
        logger.error("%s", e)
        sys.exit(1)
    sys.exit(status)


def keyless_option(f):
    return click.option(
        "--keyless",
        is_flag=True,
        envvar="COSIGN_ORB_KEYLESS",
        help="Use OIDC identity-based (keyless) mode instead of a key pair.",
    )(f)


def endpoint_options(f):
    f = click.option("--oidc-issuer", help="OIDC issuer for keyless signing.")(f)
    f = click.option("--rekor-url", help="Rekor URL for keyless signing.")(f)
    f = click.option("--fulcio-url", help="Fulcio URL for keyless signing.")(f)
    return f


def identity_options(f):
    f = click.option(
        "--certificate-oidc-issuer-regexp",
        help="Regular expression the certificate OIDC issuer must match (cosign v2+).",
    )(f)
    f = click.option(
        "--certificate-oidc-issuer", help="Expected certificate OIDC issuer."
    )(f)
    f = click.option(
        "--certificate-identity-regexp",
        help="Regular expression the certificate identity must match (cosign v2+).",
    )(f)
    f = click.option("--certificate-identity", help="Expected certificate identity.")(f)
    return f


def _claim(kwargs) -> IdentityClaim:
    return IdentityClaim(
        issuer=kwargs.pop("certificate_oidc_issuer"),
        issuer_pattern=kwargs.pop("certificate_oidc_issuer_regexp"),
        subject=kwargs.pop("certificate_identity"),
        subject_pattern=kwargs.pop("certificate_identity_regexp"),
    )


def _endpoints(kwargs):
    return {
        "fulcio_url": kwargs.pop("fulcio_url"),
        "rekor_url": kwargs.pop("rekor_url"),
        "oidc_issuer": kwargs.pop("oidc_issuer"),
    }


def _with_keys(ctx: click.Context, **keys) -> OrbConfig:
    return ctx.obj.merge_with_cli_args({"keys": keys})


def _fail(e: CosignOrbError) -> None:
    logger.error("%s", e)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Configuration file (YAML). Defaults to .cosign-orb/config.yaml if present.",
)
@click.option("--debug", is_flag=True, help="Show debug output, including cosign commands.")
@click.pass_context
def main(ctx, config, debug):
    """Sign and verify artifacts with cosign v1, v2 or v3."""
    setup_logging(debug)
    try:
        signing_config = load_config(config) if config else load_default_config()
        ctx.obj = signing_config.apply_environment_overrides()
    except CosignOrbError as e:
        click.echo(f"❌ Config error: {e}", err=True)
        sys.exit(1)


@main.command("sign-image")
@click.argument("image")
@keyless_option
@click.option("--annotations", help="Comma-separated key=value annotations.")
@endpoint_options
@click.option("--private-key-var", help="Variable holding the base64 private key.")
@click.option("--password-var", help="Variable holding the key password.")
@click.pass_context
def sign_image(ctx, image, keyless, annotations, private_key_var, password_var, **kwargs):
    """Sign a container image by digest."""
    try:
        request = build_request(
            image, keyless, annotations=annotations, endpoints=_endpoints(kwargs)
        )
    except CosignOrbError as e:
        _fail(e)
    config = _with_keys(ctx, private_key_var=private_key_var, password_var=password_var)
    run_operation(config, lambda orchestrator: orchestrator.sign_image(request))


@main.command("sign-blob")
@click.argument("blob")
@keyless_option
@click.option("--output-signature", help="Write the signature to this file.")
@click.option("--output-certificate", help="Write the signing certificate to this file (keyless).")
@click.option("--bundle", help="Write a Sigstore bundle to this file.")
@endpoint_options
@click.option("--private-key-var", help="Variable holding the base64 private key.")
@click.option("--password-var", help="Variable holding the key password.")
@click.pass_context
def sign_blob(
    ctx,
    blob,
    keyless,
    output_signature,
    output_certificate,
    bundle,
    private_key_var,
    password_var,
    **kwargs,
):
    """Sign an arbitrary file."""
    try:
        request = build_request(
            blob,
            keyless,
            endpoints=_endpoints(kwargs),
            output_signature=output_signature,
            output_certificate=output_certificate,
            bundle=bundle,
        )
    except CosignOrbError as e:
        _fail(e)
    config = _with_keys(ctx, private_key_var=private_key_var, password_var=password_var)
    run_operation(config, lambda orchestrator: orchestrator.sign_blob(request))


@main.command("verify-image")
@click.argument("image")
@keyless_option
@click.option("--annotations", help="Comma-separated key=value annotations to require.")
@identity_options
@click.option("--public-key-var", help="Variable holding the base64 public key.")
@click.pass_context
def verify_image(ctx, image, keyless, annotations, public_key_var, **kwargs):
    """Verify signatures on a container image."""
    try:
        request = build_request(
            image, keyless, annotations=annotations, identity=_claim(kwargs)
        )
    except CosignOrbError as e:
        _fail(e)
    config = _with_keys(ctx, public_key_var=public_key_var)
    run_operation(config, lambda orchestrator: orchestrator.verify_image(request))


@main.command("verify-blob")
@click.argument("blob")
@keyless_option
@click.option("--signature", help="Signature file.")
@click.option("--certificate", help="Signing certificate file (keyless).")
@click.option("--bundle", help="Sigstore bundle file.")
@identity_options
@click.option("--public-key-var", help="Variable holding the base64 public key.")
@click.pass_context
def verify_blob(ctx, blob, keyless, signature, certificate, bundle, public_key_var, **kwargs):
    """Verify a signature on an arbitrary file."""
    try:
        request = build_request(
            blob,
            keyless,
            identity=_claim(kwargs),
            signature=signature,
            certificate=certificate,
            bundle=bundle,
        )
    except CosignOrbError as e:
        _fail(e)
    config = _with_keys(ctx, public_key_var=public_key_var)
    run_operation(config, lambda orchestrator: orchestrator.verify_blob(request))


@main.command()
@click.argument("image")
@keyless_option
@click.option("--predicate", required=True, help="Predicate file to attest.")
@click.option("--predicate-type", required=True, help="Predicate type (e.g. slsaprovenance).")
@endpoint_options
@click.option("--private-key-var", help="Variable holding the base64 private key.")
@click.option("--password-var", help="Variable holding the key password.")
@click.pass_context
def attest(
    ctx, image, keyless, predicate, predicate_type, private_key_var, password_var, **kwargs
):
    """Attach a signed attestation to a container image."""
    try:
        request = build_request(
            image,
            keyless,
            endpoints=_endpoints(kwargs),
            predicate=predicate,
            predicate_type=predicate_type,
        )
    except CosignOrbError as e:
        _fail(e)
    config = _with_keys(ctx, private_key_var=private_key_var, password_var=password_var)
    run_operation(config, lambda orchestrator: orchestrator.attest(request))


@main.command("verify-attestation")
@click.argument("image")
@keyless_option
@click.option("--predicate-type", required=True, help="Predicate type to verify.")
@identity_options
@click.option("--public-key-var", help="Variable holding the base64 public key.")
@click.pass_context
def verify_attestation(ctx, image, keyless, predicate_type, public_key_var, **kwargs):
    """Verify attestations on a container image."""
    try:
        request = build_request(
            image, keyless, identity=_claim(kwargs), predicate_type=predicate_type
        )
    except CosignOrbError as e:
        _fail(e)
    config = _with_keys(ctx, public_key_var=public_key_var)
    run_operation(config, lambda orchestrator: orchestrator.verify_attestation(request))


@main.command("generate-key-pair")
@click.option(
    "--env-file",
    default=lambda: os.environ.get("BASH_ENV"),
    help="File to append export lines to. Defaults to $BASH_ENV.",
)
@click.option("--password", help="Key password. A random one is generated if omitted.")
@click.option("--private-key-var", default="COSIGN_PRIVATE_KEY", show_default=True)
@click.option("--public-key-var", default="COSIGN_PUBLIC_KEY", show_default=True)
@click.option("--password-var", default="COSIGN_PASSWORD", show_default=True)
@click.pass_context
def generate_key_pair(ctx, env_file, password, private_key_var, public_key_var, password_var):
    """Generate a development key pair and export it base64-encoded."""
    if not env_file:
        click.echo("❌ No --env-file given and BASH_ENV is not set", err=True)
        sys.exit(1)

    def operation(orchestrator: SigningOrchestrator) -> int:
        names = orchestrator.generate_key_pair(
            env_file,
            password=password,
            private_key_var=private_key_var,
            public_key_var=public_key_var,
            password_var=password_var,
        )
        click.echo(f"✅ Key pair generated; exported {', '.join(names)} to {env_file}")
        return 0

    run_operation(ctx.obj, operation)


@main.command("check-oidc")
@click.pass_context
def check_oidc(ctx):
    """Check that an OIDC token is available and show its key claims."""
    click.echo("=== CircleCI OIDC Token Check ===")
    try:
        token = ambient_token(ctx.obj.environ)
    except CosignOrbError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo("✅ CIRCLE_OIDC_TOKEN is available")
    click.echo(f"Token length: {len(token.token)} characters\n")

    click.echo("=== OIDC Token Claims ===")
    click.echo(json.dumps(token.to_dict()["claims"], indent=2, sort_keys=True))

    click.echo("\n=== Key Values for Keyless Signing ===")
    click.echo(f"OIDC Issuer: {token.issuer}")
    click.echo(f"Org ID: {token.org_id}")
    click.echo(f"Project ID: {token.project_id}")
    click.echo(f"Pipeline Definition ID: {token.pipeline_definition_id}")
    click.echo(f"VCS Origin: {token.vcs_origin}")

    hints = token.verification_hints()
    click.echo("\n=== Verification Parameters ===")
    click.echo(f'  certificate_oidc_issuer: "{hints["certificate_oidc_issuer"]}"')
    click.echo("  # Option 1: Exact match")
    click.echo(f'  certificate_identity: "{hints["certificate_identity"]}"')
    click.echo("  # Option 2: Regexp match (any pipeline definition)")
    click.echo(f'  certificate_identity_regexp: "{hints["certificate_identity_regexp"]}"')
    click.echo("\n✅ OIDC is ready for keyless signing")


@main.command()
@click.pass_context
def version(ctx):
    """Show the detected cosign major version."""
    try:
        detected = SigningOrchestrator(ctx.obj).tool_version
    except CosignOrbError as e:
        _fail(e)
    click.echo(f"Cosign major version: {detected.value}")


if __name__ == "__main__":
    main()
