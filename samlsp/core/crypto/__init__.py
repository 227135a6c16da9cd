"""Certificate handling for IdP signature verification."""

from samlsp.core.crypto.certs import (
    CertificateError,
    CertificateInfo,
    InvalidCertificate,
    get_certificate_info,
    get_certificate_pem,
    is_certificate_valid,
    load_certificate,
    prepare_certificate_pem,
)

__all__ = [
    "CertificateError",
    "CertificateInfo",
    "InvalidCertificate",
    "get_certificate_info",
    "get_certificate_pem",
    "is_certificate_valid",
    "load_certificate",
    "prepare_certificate_pem",
]
