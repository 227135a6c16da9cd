"""Response security pipeline.

Validates an encoded samlp:Response from the IdP through a fixed sequence
of gates. Every gate is a hard stop: the first failure ends validation and
is reported as a ValidationOutcome carrying a generic message. The failing
stage and its detail are logged, never returned to the caller's user.

Stages:
1. decode      - binding-specific decoding
2. parse       - XML parsing into the protocol model
3. status      - top-level StatusCode is Success
4. issuer      - Response Issuer is the configured IdP
5. destination - Response Destination is our ACS URL
   issue_instant - Response is younger than response_max_age_seconds
6. replay      - Response ID not seen before
7. assertions  - at least one assertion, each validated independently
8. response_signature
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
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
from samlsp.core.saml.protocol import (
    SUBJECT_CONFIRMATION_BEARER,
    Assertion,
    Response,
    SignatureNode,
)

if TYPE_CHECKING:
    from cryptography import x509

    from samlsp.core.config import SAMLSettings
    from samlsp.core.saml.xmlsec import XMLSecurityProvider
    from samlsp.storage.replay import ReplayCache

logger = logging.getLogger(__name__)


class FailureKind(StrEnum):
    """Category of a rejected message."""

    MALFORMED_MESSAGE = "malformed_message"
    IDP_REPORTED_FAILURE = "idp_reported_failure"
    VALIDATION_FAILED = "validation_failed"
    REPLAY_DETECTED = "replay_detected"


class ValidationStage(StrEnum):
    """Pipeline stage names used in logs."""

    DECODE = "decode"
    PARSE = "parse"
    STATUS = "status"
    ISSUER = "issuer"
    DESTINATION = "destination"
    ISSUE_INSTANT = "issue_instant"
    REPLAY = "replay"
    ASSERTIONS = "assertions"
    ASSERTION_ISSUER = "assertion_issuer"
    SUBJECT = "subject"
    CONDITIONS = "conditions"
    AUDIENCE = "audience"
    SUBJECT_CONFIRMATION = "subject_confirmation"
    ASSERTION_SIGNATURE = "assertion_signature"
    ASSERTION_REPLAY = "assertion_replay"
    RESPONSE_SIGNATURE = "response_signature"


# User-facing messages. Deliberately identical across stages.
GENERIC_MESSAGES = {
    FailureKind.MALFORMED_MESSAGE: "The SAML message could not be processed.",
    FailureKind.IDP_REPORTED_FAILURE: "The identity provider reported an authentication failure.",
    FailureKind.VALIDATION_FAILED: "The SAML response failed validation.",
    FailureKind.REPLAY_DETECTED: "The SAML response failed validation.",
}

SUCCESS_MESSAGE = "Authentication successful."


def failure_kind_for(error: SAMLError) -> FailureKind:
    """Map an internal pipeline exception to its outcome category."""
    if isinstance(error, IdpReportedFailure):
        return FailureKind.IDP_REPORTED_FAILURE
    if isinstance(error, ReplayDetected):
        return FailureKind.REPLAY_DETECTED
    if isinstance(error, MalformedMessage):
        return FailureKind.MALFORMED_MESSAGE
    return FailureKind.VALIDATION_FAILED


@dataclass(frozen=True)
class ValidationOutcome:
    """Result of running a Response through the pipeline."""

    success: bool
    response: Response | None = None
    failure: FailureKind | None = None
    stage: str | None = None

    @property
    def message(self) -> str:
        """Generic description safe to show to end users."""
        if self.success:
            return SUCCESS_MESSAGE
        return GENERIC_MESSAGES[self.failure or FailureKind.VALIDATION_FAILED]

    @classmethod
    def accepted(cls, response: Response) -> ValidationOutcome:
        return cls(success=True, response=response)

    @classmethod
    def rejected(cls, failure: FailureKind, stage: str | None = None) -> ValidationOutcome:
        return cls(success=False, failure=failure, stage=stage)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (stage excluded)."""
        return {
            "success": self.success,
            "message": self.message,
            "failure": self.failure.value if self.failure else None,
        }


def check_time_window(
    now: datetime,
    not_before: datetime | None,
    not_on_or_after: datetime | None,
    skew: timedelta,
    stage: str,
) -> None:
    """Require ``not_before <= now < not_on_or_after``, widened by skew.

    Raises:
        ValidationFailed: If now lies outside the window.
    """
    if not_before is not None and now < not_before - skew:
        raise ValidationFailed(stage, f"not yet valid (NotBefore {not_before.isoformat()})")
    if not_on_or_after is not None and now >= not_on_or_after + skew:
        raise ValidationFailed(stage, f"expired (NotOnOrAfter {not_on_or_after.isoformat()})")


def check_signature(
    provider: XMLSecurityProvider,
    signature: SignatureNode,
    certificate: x509.Certificate | None,
    allow_unverified: bool,
    stage: str,
) -> bool:
    """Verify a signature node against the trusted certificate.

    Returns:
        True if the signature was verified, False if verification was
        skipped because no certificate is configured and unverified
        signatures are allowed.

    Raises:
        ValidationFailed: If the signature is invalid, or no certificate is
            configured and unverified signatures are not allowed.
    """
    if certificate is None:
        if not allow_unverified:
            raise ValidationFailed(stage, "signature present but no IdP certificate configured")
        logger.warning(
            "Skipping verification of signature on %s: no IdP certificate configured",
            signature.signed_element_id,
        )
        return False

    if not provider.verify_signature(signature, certificate):
        raise ValidationFailed(stage, f"invalid signature on {signature.signed_element_id}")
    return True


class ResponseValidator:
    """Runs inbound Responses through the security pipeline."""

    def __init__(
        self,
        settings: SAMLSettings,
        provider: XMLSecurityProvider,
        replay_cache: ReplayCache,
        certificate: x509.Certificate | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.replay_cache = replay_cache
        self.certificate = certificate
        self._clock = clock

    @property
    def skew(self) -> timedelta:
        return timedelta(seconds=self.settings.clock_skew_seconds)

    def validate(self, encoded: str, binding: Binding = Binding.POST) -> ValidationOutcome:
        """Validate an encoded SAMLResponse parameter.

        Args:
            encoded: The SAMLResponse value as received.
            binding: Binding the value arrived over.

        Returns:
            ValidationOutcome; on success it carries the parsed Response.
        """
        stage: str = ValidationStage.DECODE
        response: Response | None = None
        try:
            xml = decode_message(encoded, binding)

            stage = ValidationStage.PARSE
            response = self._parse(xml, binding)

            self._run_checks(response)
        except ValidationFailed as e:
            return self._reject(e, e.stage, response)
        except SAMLError as e:
            return self._reject(e, stage, response)

        logger.info("Accepted SAML Response %s from %s", response.id, response.issuer)
        return ValidationOutcome.accepted(response)

    def _reject(self, error: SAMLError, stage: str, response: Response | None) -> ValidationOutcome:
        if isinstance(error, IdpReportedFailure):
            stage = ValidationStage.STATUS
        elif isinstance(error, ReplayDetected):
            if response is not None and error.message_id != response.id:
                stage = ValidationStage.ASSERTION_REPLAY
            else:
                stage = ValidationStage.REPLAY
        get_protocol_logger().log_validation_failure(
            "Response",
            str(stage),
            str(error),
            message_id=response.id if response else None,
        )
        return ValidationOutcome.rejected(failure_kind_for(error), stage=str(stage))

    def _parse(self, xml: str, binding: Binding) -> Response:
        message = self.provider.parse(xml)
        if not isinstance(message, Response):
            raise MalformedMessage(f"Expected samlp:Response, got {type(message).__name__}")

        get_protocol_logger().log_message(
            ProtocolMessage(
                direction=Direction.INBOUND,
                message_type="Response",
                message_id=message.id,
                binding=binding.value,
                issuer=message.issuer,
                destination=message.destination,
                xml=xml,
            )
        )
        return message

    def _run_checks(self, response: Response) -> None:
        now = self._clock()

        # 3. Status
        if response.status is None or not response.status.is_success:
            status = response.status
            raise IdpReportedFailure(
                status.code if status else None,
                status.message if status else None,
            )

        # 4. Issuer
        if response.issuer != self.settings.idp_entity_id:
            raise ValidationFailed(
                ValidationStage.ISSUER,
                f"expected {self.settings.idp_entity_id!r}, got {response.issuer!r}",
            )

        # 5. Destination
        if response.destination != self.settings.acs_url:
            raise ValidationFailed(
                ValidationStage.DESTINATION,
                f"expected {self.settings.acs_url!r}, got {response.destination!r}",
            )

        self._check_issue_instant(response, now)

        # 6. Replay of the Response itself
        if not self.replay_cache.check_and_record(response.id):
            raise ReplayDetected(response.id)

        # 7. Assertions
        if not response.assertions:
            raise ValidationFailed(ValidationStage.ASSERTIONS, "response contains no assertions")

        unsigned_assertions = [
            assertion.id
            for assertion in response.assertions
            if not self._check_assertion(assertion, now)
        ]

        # 8. Response signature
        response_verified = False
        if response.signature is not None:
            response_verified = check_signature(
                self.provider,
                response.signature,
                self.certificate,
                self.settings.allow_unverified_signatures,
                ValidationStage.RESPONSE_SIGNATURE,
            )

        if self.settings.want_assertions_signed and unsigned_assertions and not response_verified:
            raise ValidationFailed(
                ValidationStage.ASSERTION_SIGNATURE,
                f"unsigned assertion(s): {', '.join(unsigned_assertions)}",
            )

    def _check_issue_instant(self, response: Response, now: datetime) -> None:
        # Bounded by the replay window so a Response ID is never forgotten while
        # the Response could still be accepted
        max_age = self.settings.response_max_age_seconds
        if response.issue_instant is None:
            raise ValidationFailed(ValidationStage.ISSUE_INSTANT, "missing IssueInstant")
        if response.issue_instant > now + self.skew:
            raise ValidationFailed(ValidationStage.ISSUE_INSTANT, "issued in the future")
        if now - response.issue_instant >= timedelta(seconds=max_age) + self.skew:
            raise ValidationFailed(
                ValidationStage.ISSUE_INSTANT,
                f"response older than {max_age}s",
            )

    def _check_assertion(self, assertion: Assertion, now: datetime) -> bool:
        """Validate one assertion.

        Returns:
            True if the assertion carries a verified signature.
        """
        if assertion.issuer != self.settings.idp_entity_id:
            raise ValidationFailed(
                ValidationStage.ASSERTION_ISSUER,
                f"assertion {assertion.id}: expected {self.settings.idp_entity_id!r}, "
                f"got {assertion.issuer!r}",
            )

        if assertion.subject is None or assertion.subject.name_id is None:
            raise ValidationFailed(ValidationStage.SUBJECT, f"assertion {assertion.id} has no NameID")

        conditions = assertion.conditions
        if conditions is not None:
            check_time_window(
                now,
                conditions.not_before,
                conditions.not_on_or_after,
                self.skew,
                ValidationStage.CONDITIONS,
            )
            if conditions.audience_restrictions and not any(
                self.settings.entity_id in restriction.audiences
                for restriction in conditions.audience_restrictions
            ):
                raise ValidationFailed(
                    ValidationStage.AUDIENCE,
                    f"{self.settings.entity_id!r} not in audience restrictions",
                )

        for confirmation in assertion.subject.confirmations:
            data = confirmation.data
            if data is None or confirmation.method != SUBJECT_CONFIRMATION_BEARER:
                continue
            check_time_window(
                now,
                data.not_before,
                data.not_on_or_after,
                self.skew,
                ValidationStage.SUBJECT_CONFIRMATION,
            )
            if data.recipient is not None and data.recipient != self.settings.acs_url:
                raise ValidationFailed(
                    ValidationStage.SUBJECT_CONFIRMATION,
                    f"recipient {data.recipient!r} is not the ACS URL",
                )

        verified = False
        if assertion.signature is not None:
            verified = check_signature(
                self.provider,
                assertion.signature,
                self.certificate,
                self.settings.allow_unverified_signatures,
                ValidationStage.ASSERTION_SIGNATURE,
            )

        retain_until = self._assertion_expiry(assertion)
        if conditions is not None and conditions.one_time_use and retain_until is None:
            raise ValidationFailed(
                ValidationStage.CONDITIONS,
                f"OneTimeUse assertion {assertion.id} has no NotOnOrAfter",
            )

        if not self.replay_cache.check_and_record_assertion(assertion.id, retain_until):
            raise ReplayDetected(assertion.id)

        return verified

    def _assertion_expiry(self, assertion: Assertion) -> datetime | None:
        """Instant from which the assertion's time windows reject it.

        Its ID stays in the replay cache until then, so the assertion cannot
        be reused inside a fresh Response once the replay window has passed.
        """
        bounds = []
        if assertion.conditions is not None and assertion.conditions.not_on_or_after is not None:
            bounds.append(assertion.conditions.not_on_or_after)
        if assertion.subject is not None:
            bounds.extend(
                confirmation.data.not_on_or_after
                for confirmation in assertion.subject.confirmations
                if confirmation.method == SUBJECT_CONFIRMATION_BEARER
                and confirmation.data is not None
                and confirmation.data.not_on_or_after is not None
            )
        if not bounds:
            return None
        return min(bounds) + self.skew
