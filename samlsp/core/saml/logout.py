"""SAML Single Logout (SLO) processing.

Handles the inbound halves of both logout flows:
- IdP-initiated: a LogoutRequest from the IdP terminates local sessions
- SP-initiated: the IdP's LogoutResponse confirms our LogoutRequest

Both reduce to a boolean LogoutOutcome; there is no partial-success state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from samlsp.core.clock import Clock, utc_now
from samlsp.core.logging import Direction, ProtocolMessage, get_protocol_logger
from samlsp.core.saml.codec import Binding, decode_message
from samlsp.core.saml.errors import (
    IdpReportedFailure,
    MalformedMessage,
    ReplayDetected,
    SAMLError,
    ValidationFailed,
)
from samlsp.core.saml.protocol import LogoutRequest, LogoutResponse
from samlsp.core.saml.validation import (
    FailureKind,
    check_signature,
    failure_kind_for,
)

if TYPE_CHECKING:
    from cryptography import x509

    from samlsp.core.config import SAMLSettings
    from samlsp.core.saml.xmlsec import XMLSecurityProvider
    from samlsp.storage.replay import ReplayCache
    from samlsp.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


LOGOUT_SUCCESS_MESSAGE = "Logout successful."

LOGOUT_FAILURE_MESSAGES = {
    FailureKind.MALFORMED_MESSAGE: "The logout message could not be processed.",
    FailureKind.IDP_REPORTED_FAILURE: "The identity provider reported a logout failure.",
    FailureKind.VALIDATION_FAILED: "The logout message failed validation.",
    FailureKind.REPLAY_DETECTED: "The logout message failed validation.",
}


@dataclass(frozen=True)
class LogoutOutcome:
    """Result of processing an inbound logout message."""

    success: bool
    request: LogoutRequest | None = None
    response: LogoutResponse | None = None
    sessions_terminated: int = 0
    failure: FailureKind | None = None
    stage: str | None = None

    @property
    def message(self) -> str:
        if self.success:
            return LOGOUT_SUCCESS_MESSAGE
        return LOGOUT_FAILURE_MESSAGES[self.failure or FailureKind.VALIDATION_FAILED]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (stage excluded)."""
        return {
            "success": self.success,
            "message": self.message,
            "sessions_terminated": self.sessions_terminated,
        }


class LogoutOrchestrator:
    """Validates inbound SLO messages and terminates matching sessions."""

    def __init__(
        self,
        settings: SAMLSettings,
        provider: XMLSecurityProvider,
        sessions: SessionStore,
        replay_cache: ReplayCache,
        certificate: x509.Certificate | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.sessions = sessions
        self.replay_cache = replay_cache
        self.certificate = certificate
        self._clock = clock

    def _parse(self, encoded: str, binding: Binding, expected: type) -> Any:
        xml = decode_message(encoded, binding)
        message = self.provider.parse(xml)
        if not isinstance(message, expected):
            raise MalformedMessage(f"Expected {expected.__name__}, got {type(message).__name__}")

        get_protocol_logger().log_message(
            ProtocolMessage(
                direction=Direction.INBOUND,
                message_type=expected.__name__,
                message_id=message.id,
                binding=binding.value,
                issuer=message.issuer,
                destination=message.destination,
                xml=xml,
            )
        )
        return message

    def _check_issuer(self, issuer: str | None) -> None:
        if issuer != self.settings.idp_entity_id:
            raise ValidationFailed(
                "issuer", f"expected {self.settings.idp_entity_id!r}, got {issuer!r}"
            )

    def _check_destination(self, destination: str | None) -> None:
        # Destination is optional on logout messages; when present it must be us
        if destination is None or not self.settings.slo_url:
            return
        if destination.rstrip("/") != self.settings.slo_url.rstrip("/"):
            raise ValidationFailed(
                "destination", f"expected {self.settings.slo_url!r}, got {destination!r}"
            )

    def _check_signature(self, message: LogoutRequest | LogoutResponse) -> bool:
        if message.signature is None:
            return False
        return check_signature(
            self.provider,
            message.signature,
            self.certificate,
            self.settings.allow_unverified_signatures,
            "signature",
        )

    def _reject(
        self,
        message_type: str,
        error: SAMLError,
        stage: str,
        message_id: str | None,
        **fields: Any,
    ) -> LogoutOutcome:
        if isinstance(error, ValidationFailed):
            stage = error.stage
        get_protocol_logger().log_validation_failure(message_type, stage, str(error), message_id)
        return LogoutOutcome(success=False, failure=failure_kind_for(error), stage=stage, **fields)

    def process_logout_request(self, encoded: str, binding: Binding = Binding.REDIRECT) -> LogoutOutcome:
        """Process an IdP-initiated LogoutRequest.

        Only an embedded ds:Signature is verified. Over the Redirect binding
        the IdP signs the query string (SigAlg and Signature parameters)
        instead, which is not checked here, so such a request is accepted on
        its Issuer and Destination alone. A warning is logged for every
        request accepted without a verified signature.

        Args:
            encoded: The SAMLRequest value as received.
            binding: Binding the value arrived over.

        Returns:
            LogoutOutcome. The parsed request is included whenever parsing
            succeeded, so a LogoutResponse can be sent even on failure.
        """
        stage = "parse"
        request: LogoutRequest | None = None
        try:
            request = self._parse(encoded, binding, LogoutRequest)

            self._check_issuer(request.issuer)
            self._check_destination(request.destination)
            verified = self._check_signature(request)

            stage = "replay"
            if not self.replay_cache.check_and_record(request.id):
                raise ReplayDetected(request.id)

            if request.name_id is None or not request.name_id.value:
                raise ValidationFailed("name_id", "LogoutRequest has no NameID")
        except SAMLError as e:
            return self._reject(
                "LogoutRequest", e, stage, request.id if request else None, request=request
            )

        if not verified:
            logger.warning(
                "LogoutRequest %s over %s accepted without a verified signature",
                request.id,
                binding.name,
            )

        name_id = request.name_id.value
        if request.session_indexes:
            terminated = sum(
                self.sessions.invalidate_by_name_id(name_id, session_index)
                for session_index in request.session_indexes
            )
        else:
            terminated = self.sessions.invalidate_by_name_id(name_id)

        logger.info(
            "IdP-initiated logout %s terminated %d session(s)", request.id, terminated
        )
        return LogoutOutcome(success=True, request=request, sessions_terminated=terminated)

    def process_logout_response(
        self,
        encoded: str,
        binding: Binding = Binding.REDIRECT,
        expected_request_id: str | None = None,
    ) -> LogoutOutcome:
        """Process the IdP's LogoutResponse to an SP-initiated logout.

        Args:
            encoded: The SAMLResponse value as received.
            binding: Binding the value arrived over.
            expected_request_id: ID of our LogoutRequest, when tracked.

        Returns:
            LogoutOutcome; success only if the IdP reports Success.
        """
        stage = "parse"
        response: LogoutResponse | None = None
        try:
            response = self._parse(encoded, binding, LogoutResponse)

            self._check_issuer(response.issuer)
            self._check_signature(response)

            if expected_request_id and response.in_response_to != expected_request_id:
                raise ValidationFailed(
                    "in_response_to",
                    f"expected {expected_request_id!r}, got {response.in_response_to!r}",
                )

            stage = "status"
            if response.status is None or not response.status.is_success:
                code = response.status.code if response.status else None
                raise IdpReportedFailure(code, response.status.message if response.status else None)
        except SAMLError as e:
            return self._reject(
                "LogoutResponse", e, stage, response.id if response else None, response=response
            )

        logger.info("Logout confirmed by IdP (%s)", response.id)
        return LogoutOutcome(success=True, response=response)
