"""Inspect signing certificates written by keyless blob signing."""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cryptography import x509
from cryptography.x509.oid import ObjectIdentifier

# Fulcio certificate extensions carrying the OIDC issuer
OIDC_ISSUER_V1 = ObjectIdentifier("1.3.6.1.4.1.57264.1.1")
OIDC_ISSUER_V2 = ObjectIdentifier("1.3.6.1.4.1.57264.1.8")


@dataclass
class CertificateSummary:
    """Identity asserted by a short-lived signing certificate."""

    identities: List[str] = field(default_factory=list)
    issuer: Optional[str] = None
    not_before: Optional[datetime] = None
    not_after: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identities": self.identities,
            "issuer": self.issuer,
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "not_after": self.not_after.isoformat() if self.not_after else None,
        }


def _der_utf8(value: bytes) -> str:
    """Decode a DER UTF8String (tag 0x0c)."""
    if len(value) < 2 or value[0] != 0x0C:
        raise ValueError("not a DER UTF8String")
    length = value[1]
    offset = 2
    if length & 0x80:
        count = length & 0x7F
        length = int.from_bytes(value[2 : 2 + count], "big")
        offset = 2 + count
    return value[offset : offset + length].decode("utf-8")


def _extension_value(cert: x509.Certificate, oid: ObjectIdentifier) -> Optional[bytes]:
    try:
        extension = cert.extensions.get_extension_for_oid(oid)
    except x509.ExtensionNotFound:
        return None
    return getattr(extension.value, "value", None)


def load_certificate(data: bytes) -> x509.Certificate:
    """
    Load a PEM certificate, also accepting base64-wrapped PEM.

    Raises:
        ValueError: If the data is not a certificate
    """
    data = data.strip()
    if not data.startswith(b"-----BEGIN"):
        try:
            data = base64.b64decode(data, validate=True).strip()
        except binascii.Error:
            raise ValueError("certificate is neither PEM nor base64-encoded PEM")
    return x509.load_pem_x509_certificate(data)


def summarize_certificate(path: Union[str, Path]) -> CertificateSummary:
    """
    Summarize a certificate file produced by cosign.

    Raises:
        OSError: If the file cannot be read
        ValueError: If the file does not hold a certificate
    """
    cert = load_certificate(Path(path).read_bytes())

    summary = CertificateSummary(
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
    )

    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        summary.identities = san.get_values_for_type(
            x509.UniformResourceIdentifier
        ) + san.get_values_for_type(x509.RFC822Name)
    except x509.ExtensionNotFound:
        pass

    raw = _extension_value(cert, OIDC_ISSUER_V2)
    if raw is not None:
        try:
            summary.issuer = _der_utf8(raw)
        except ValueError:
            summary.issuer = None
    if summary.issuer is None:
        raw = _extension_value(cert, OIDC_ISSUER_V1)
        if raw is not None:
            summary.issuer = raw.decode("utf-8", errors="replace")

    return summary
