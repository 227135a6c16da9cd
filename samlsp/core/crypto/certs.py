"""X.509 certificate utilities.

Loads the IdP signing certificate from configuration (PEM with or without
armor) and extracts the details shown by preflight checks and the CLI.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

PEM_HEADER = "-----BEGIN CERTIFICATE-----"
PEM_FOOTER = "-----END CERTIFICATE-----"


class CertificateError(Exception):
    """Base exception for certificate-related errors."""


class InvalidCertificate(CertificateError):
    """Raised when a certificate cannot be parsed."""


@dataclass
class CertificateInfo:
    """Information extracted from an X.509 certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint_sha256: str
    is_self_signed: bool
    key_type: str
    key_size: int


def prepare_certificate_pem(cert_data: str) -> str:
    """Ensure certificate data is in armored PEM format.

    IdP metadata usually carries the bare base64 body of the certificate,
    possibly wrapped over several lines.
    """
    cert = cert_data.strip()

    if not cert.startswith("-----BEGIN"):
        body = "".join(cert.split())
        lines = [body[i : i + 64] for i in range(0, len(body), 64)]
        cert = "\n".join([PEM_HEADER, *lines, PEM_FOOTER])

    return cert


def load_certificate(cert_data: str | Path) -> x509.Certificate:
    """Load a certificate from PEM text or a PEM file.

    Args:
        cert_data: PEM text, bare base64 certificate body, or a path to a PEM file.

    Returns:
        X.509 certificate.

    Raises:
        InvalidCertificate: If the certificate cannot be loaded.
    """
    if isinstance(cert_data, Path):
        if not cert_data.exists():
            raise InvalidCertificate(f"Certificate file not found: {cert_data}")
        cert_data = cert_data.read_text()

    if not cert_data or not cert_data.strip():
        raise InvalidCertificate("Certificate is empty")

    try:
        return x509.load_pem_x509_certificate(prepare_certificate_pem(cert_data).encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise InvalidCertificate(f"Failed to load certificate: {e}") from e


def get_certificate_pem(cert: x509.Certificate) -> str:
    """Get PEM-encoded string of a certificate."""
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    """Extract information from an X.509 certificate.

    Args:
        cert: X.509 certificate.

    Returns:
        CertificateInfo with extracted details.
    """
    public_key = cert.public_key()
    if isinstance(public_key, rsa.RSAPublicKey):
        key_type = "RSA"
        key_size = public_key.key_size
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        key_type = "EC"
        key_size = public_key.key_size
    else:
        key_type = type(public_key).__name__
        key_size = 0

    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
        is_self_signed=cert.subject == cert.issuer,
        key_type=key_type,
        key_size=key_size,
    )


def is_certificate_valid(cert: x509.Certificate, now: datetime | None = None) -> bool:
    """Check if a certificate is inside its validity period."""
    now = now or datetime.now(UTC)
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc
