"""SAML 2.0 protocol handling for the Service Provider.

The facade in samlsp.core.saml.sp depends on samlsp.storage and is imported
from its own module.
"""

from samlsp.core.saml.builder import RequestBuilder
from samlsp.core.saml.codec import (
    Binding,
    compress_and_encode,
    decode_and_decompress,
    decode_base64,
    decode_message,
    encode_base64,
    encode_message,
    generate_id,
)
from samlsp.core.saml.errors import (
    EncodingFailure,
    IdpReportedFailure,
    MalformedMessage,
    ReplayDetected,
    SAMLError,
    SessionExpired,
    SessionNotFound,
    ValidationFailed,
)
from samlsp.core.saml.identity import (
    extract_attributes,
    extract_session_index,
    extract_user_name,
)
from samlsp.core.saml.logout import (
    LogoutOrchestrator,
    LogoutOutcome,
)
from samlsp.core.saml.validation import (
    FailureKind,
    ResponseValidator,
    ValidationOutcome,
    ValidationStage,
)
from samlsp.core.saml.xmlsec import XMLSecurityProvider, format_instant, parse_instant

__all__ = [
    # Builder
    "RequestBuilder",
    # Codec
    "Binding",
    "compress_and_encode",
    "decode_and_decompress",
    "decode_base64",
    "decode_message",
    "encode_base64",
    "encode_message",
    "generate_id",
    # Errors
    "EncodingFailure",
    "IdpReportedFailure",
    "MalformedMessage",
    "ReplayDetected",
    "SAMLError",
    "SessionExpired",
    "SessionNotFound",
    "ValidationFailed",
    # Identity
    "extract_attributes",
    "extract_session_index",
    "extract_user_name",
    # Logout (SLO)
    "LogoutOrchestrator",
    "LogoutOutcome",
    # Validation
    "FailureKind",
    "ResponseValidator",
    "ValidationOutcome",
    "ValidationStage",
    # XML security
    "XMLSecurityProvider",
    "format_instant",
    "parse_instant",
]
