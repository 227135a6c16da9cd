"""Exception taxonomy for SAML protocol handling.

Validation failures are raised between pipeline stages and converted into
outcome values at the pipeline boundary. They never cross into user-visible
responses.
"""

from __future__ import annotations


class SAMLError(Exception):
    """Base exception for SAML protocol errors."""


class MalformedMessage(SAMLError):
    """Raised when a message cannot be decoded or parsed."""


class IdpReportedFailure(SAMLError):
    """Raised when the IdP returned a non-Success status."""

    def __init__(self, status_code: str | None, message: str | None = None) -> None:
        self.status_code = status_code
        self.status_message = message
        super().__init__(f"IdP reported status {status_code}")


class ValidationFailed(SAMLError):
    """Raised when a security check (issuer, destination, time, audience, signature) fails."""

    def __init__(self, stage: str, detail: str = "") -> None:
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage}: {detail}" if detail else stage)


class ReplayDetected(SAMLError):
    """Raised when a message or assertion ID has already been consumed."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Replayed ID {message_id}")


class EncodingFailure(SAMLError):
    """Raised when an outbound message cannot be constructed or encoded."""


class SessionNotFound(SAMLError):
    """Raised by callers that require a session which does not exist."""


class SessionExpired(SAMLError):
    """Raised by callers that require a session which has expired."""
