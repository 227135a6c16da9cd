"""Tests for the Response validation pipeline."""

import logging
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from samlsp.core.saml.codec import Binding
from samlsp.core.saml.errors import ValidationFailed
from samlsp.core.saml.protocol import STATUS_RESPONDER
from samlsp.core.saml.validation import (
    GENERIC_MESSAGES,
    SUCCESS_MESSAGE,
    FailureKind,
    ResponseValidator,
    ValidationOutcome,
    ValidationStage,
    check_time_window,
)
from samlsp.storage.replay import ASSERTION_PREFIX


@pytest.fixture
def make_validator(saml_settings, provider, replay_cache, idp_credentials, clock):
    """Build a validator with overridden settings."""

    def factory(certificate=idp_credentials.certificate, **overrides):
        return ResponseValidator(
            replace(saml_settings, **overrides),
            provider,
            replay_cache,
            certificate=certificate,
            clock=clock,
        )

    return factory


def assert_rejected(outcome: ValidationOutcome, failure: FailureKind, stage: ValidationStage) -> None:
    assert not outcome.success
    assert outcome.response is None
    assert outcome.failure == failure
    assert outcome.stage == stage


class TestAcceptance:
    """Tests for responses that pass every check."""

    def test_unsigned_response(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(response_id="_r1")))

        assert outcome.success
        assert outcome.failure is None
        assert outcome.response.id == "_r1"
        assert outcome.message == SUCCESS_MESSAGE

    def test_signed_response(self, validator, idp):
        assert validator.validate(idp.post(idp.response(signed=True))).success

    def test_signed_assertion(self, validator, idp):
        xml = idp.response(assertions=[idp.assertion(signed=True)])
        assert validator.validate(idp.post(xml)).success

    def test_signed_response_and_assertion(self, validator, idp):
        xml = idp.response(signed=True, assertions=[idp.assertion(signed=True)])
        assert validator.validate(idp.post(xml)).success

    def test_redirect_binding(self, validator, idp):
        outcome = validator.validate(idp.redirect(idp.response()), Binding.REDIRECT)
        assert outcome.success

    def test_multiple_assertions(self, validator, idp):
        xml = idp.response(assertions=[idp.assertion(), idp.assertion(name_id="bob@example.com")])
        outcome = validator.validate(idp.post(xml))
        assert outcome.success
        assert len(outcome.response.assertions) == 2

    def test_conditions_optional(self, validator, idp):
        assert validator.validate(idp.post(idp.response(include_conditions=False))).success

    def test_empty_audience_restriction_list(self, validator, idp):
        """Conditions without any AudienceRestriction do not restrict the audience."""
        assert validator.validate(idp.post(idp.response(audiences=None))).success

    def test_audience_among_several(self, validator, idp):
        xml = idp.response(audiences=("https://other.example", "https://sp.example"))
        assert validator.validate(idp.post(xml)).success


class TestMalformed:
    """Tests for input that cannot be decoded or parsed."""

    def test_invalid_base64(self, validator):
        outcome = validator.validate("not base64 !!!")
        assert_rejected(outcome, FailureKind.MALFORMED_MESSAGE, ValidationStage.DECODE)

    def test_not_xml(self, validator, idp):
        outcome = validator.validate(idp.post("<samlp:Response"))
        assert_rejected(outcome, FailureKind.MALFORMED_MESSAGE, ValidationStage.PARSE)

    def test_wrong_message_type(self, validator, idp):
        outcome = validator.validate(idp.post(idp.logout_response()))
        assert_rejected(outcome, FailureKind.MALFORMED_MESSAGE, ValidationStage.PARSE)

    def test_wrong_binding(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response()), Binding.REDIRECT)
        assert not outcome.success
        assert outcome.failure == FailureKind.MALFORMED_MESSAGE


class TestResponseChecks:
    """Tests for checks on the Response envelope."""

    def test_idp_status_failure(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(status=STATUS_RESPONDER)))
        assert_rejected(outcome, FailureKind.IDP_REPORTED_FAILURE, ValidationStage.STATUS)
        assert outcome.message == GENERIC_MESSAGES[FailureKind.IDP_REPORTED_FAILURE]

    def test_wrong_issuer(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(issuer="https://evil.example")))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUER)

    def test_wrong_issuer_with_valid_signature(self, validator, idp):
        """A trusted signature does not make a foreign issuer acceptable."""
        xml = idp.response(issuer="https://evil.example", signed=True)
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUER)

    def test_missing_issuer(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(issuer=None)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUER)

    def test_wrong_destination(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(destination="https://other.example/acs")))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.DESTINATION)

    def test_missing_destination(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(destination=None)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.DESTINATION)

    def test_no_assertions(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(assertions=[])))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ASSERTIONS)


class TestIssueInstant:
    """Tests for the Response freshness check."""

    def test_old_response_rejected_by_default(self, validator, idp, clock):
        xml = idp.response(issue_instant=clock.now - timedelta(hours=1))
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUE_INSTANT)

    def test_max_age_is_exclusive(self, validator, idp, clock):
        xml = idp.response(issue_instant=clock.now - timedelta(minutes=5))
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUE_INSTANT)

    def test_just_inside_max_age(self, validator, idp, clock):
        xml = idp.response(issue_instant=clock.now - timedelta(minutes=4, seconds=59))
        assert validator.validate(idp.post(xml)).success

    def test_stale_response(self, make_validator, idp, clock):
        validator = make_validator(response_max_age_seconds=60)
        xml = idp.response(issue_instant=clock.now - timedelta(minutes=5))
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUE_INSTANT)

    def test_future_response(self, make_validator, idp, clock):
        validator = make_validator(response_max_age_seconds=60)
        xml = idp.response(issue_instant=clock.now + timedelta(minutes=5))
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUE_INSTANT)

    def test_fresh_response(self, make_validator, idp, clock):
        validator = make_validator(response_max_age_seconds=60)
        xml = idp.response(issue_instant=clock.now - timedelta(seconds=30))
        assert validator.validate(idp.post(xml)).success


class TestAssertionChecks:
    """Tests for the per-assertion checks."""

    def test_wrong_assertion_issuer(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(assertions=[idp.assertion(issuer="https://evil.example")])))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ASSERTION_ISSUER)

    def test_missing_name_id(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(name_id=None)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.SUBJECT)

    def test_missing_subject(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(include_subject=False)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.SUBJECT)

    def test_expired_assertion(self, validator, idp, clock):
        xml = idp.response(issue_instant=clock.now + timedelta(minutes=10))
        clock.advance(minutes=10)
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.CONDITIONS)

    def test_not_on_or_after_is_exclusive(self, validator, idp, clock):
        xml = idp.response(not_on_or_after=clock.now, confirmation_not_on_or_after=None)
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.CONDITIONS)

    def test_not_yet_valid(self, validator, idp, clock):
        xml = idp.response(not_before=clock.now + timedelta(minutes=1))
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.CONDITIONS)

    def test_clock_skew_tolerated(self, make_validator, idp, clock):
        validator = make_validator(clock_skew_seconds=120)
        xml = idp.response(not_before=clock.now + timedelta(minutes=1))
        assert validator.validate(idp.post(xml)).success

    def test_wrong_audience(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(audiences=("https://other.example",))))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.AUDIENCE)

    def test_wrong_recipient(self, validator, idp):
        outcome = validator.validate(idp.post(idp.response(recipient="https://other.example/acs")))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.SUBJECT_CONFIRMATION)

    def test_expired_subject_confirmation(self, validator, idp, clock):
        xml = idp.response(confirmation_not_on_or_after=clock.now - timedelta(seconds=1))
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.SUBJECT_CONFIRMATION)

    def test_one_time_use_accepted_once(self, validator, idp):
        assertion = idp.assertion(one_time_use=True)
        assert validator.validate(idp.post(idp.response(assertions=[assertion]))).success

        outcome = validator.validate(idp.post(idp.response(assertions=[assertion])))
        assert_rejected(outcome, FailureKind.REPLAY_DETECTED, ValidationStage.ASSERTION_REPLAY)

    def test_one_time_use_without_expiry(self, validator, idp):
        """OneTimeUse cannot be enforced for an assertion that never expires."""
        xml = idp.response(one_time_use=True, not_on_or_after=None, confirmation_not_on_or_after=None)
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.CONDITIONS)

    def test_one_time_use_bounded_by_confirmation(self, validator, idp):
        xml = idp.response(one_time_use=True, not_on_or_after=None)
        assert validator.validate(idp.post(xml)).success

    def test_second_assertion_checked(self, validator, idp):
        """Every assertion is validated, not only the first."""
        xml = idp.response(assertions=[idp.assertion(), idp.assertion(audiences=("https://other.example",))])
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.AUDIENCE)


class TestSignatures:
    """Tests for signature verification within the pipeline."""

    def test_untrusted_response_signature(self, validator, rogue_idp):
        outcome = validator.validate(rogue_idp.post(rogue_idp.response(signed=True)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.RESPONSE_SIGNATURE)

    def test_untrusted_assertion_signature(self, validator, idp, rogue_idp):
        xml = idp.response(assertions=[rogue_idp.assertion(signed=True)])
        outcome = validator.validate(idp.post(xml))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ASSERTION_SIGNATURE)

    def test_tampered_assertion(self, validator, idp):
        assertion = idp.assertion(signed=True).replace("alice@example.com", "mallory@example.com")
        outcome = validator.validate(idp.post(idp.response(assertions=[assertion])))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ASSERTION_SIGNATURE)

    def test_signature_without_certificate_rejected(self, make_validator, idp):
        validator = make_validator(certificate=None)
        outcome = validator.validate(idp.post(idp.response(signed=True)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.RESPONSE_SIGNATURE)

    def test_signature_without_certificate_allowed(self, make_validator, idp):
        validator = make_validator(certificate=None, allow_unverified_signatures=True)
        assert validator.validate(idp.post(idp.response(signed=True))).success

    def test_unsigned_without_certificate(self, make_validator, idp):
        validator = make_validator(certificate=None)
        assert validator.validate(idp.post(idp.response())).success

    def test_want_assertions_signed_rejects_unsigned(self, make_validator, idp):
        validator = make_validator(want_assertions_signed=True)
        outcome = validator.validate(idp.post(idp.response()))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ASSERTION_SIGNATURE)

    def test_want_assertions_signed_accepts_signed_assertion(self, make_validator, idp):
        validator = make_validator(want_assertions_signed=True)
        xml = idp.response(assertions=[idp.assertion(signed=True)])
        assert validator.validate(idp.post(xml)).success

    def test_want_assertions_signed_accepts_signed_response(self, make_validator, idp):
        validator = make_validator(want_assertions_signed=True)
        assert validator.validate(idp.post(idp.response(signed=True))).success

    def test_want_assertions_signed_needs_verified_signature(self, make_validator, idp):
        """An unverifiable signature does not count as signed."""
        validator = make_validator(
            certificate=None, allow_unverified_signatures=True, want_assertions_signed=True
        )
        outcome = validator.validate(idp.post(idp.response(signed=True)))
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ASSERTION_SIGNATURE)


class TestReplay:
    """Tests for replay protection."""

    def test_same_response_twice(self, validator, idp):
        encoded = idp.post(idp.response())
        assert validator.validate(encoded).success

        outcome = validator.validate(encoded)
        assert_rejected(outcome, FailureKind.REPLAY_DETECTED, ValidationStage.REPLAY)
        assert outcome.message == GENERIC_MESSAGES[FailureKind.VALIDATION_FAILED]

    def test_assertion_reused_in_new_response(self, validator, idp):
        assertion = idp.assertion(assertion_id="_shared")
        assert validator.validate(idp.post(idp.response(assertions=[assertion]))).success

        outcome = validator.validate(idp.post(idp.response(assertions=[assertion])))
        assert_rejected(outcome, FailureKind.REPLAY_DETECTED, ValidationStage.ASSERTION_REPLAY)

    def test_rejected_response_id_is_consumed(self, validator, idp):
        """A Response ID that reached the replay check cannot be retried."""
        encoded = idp.post(idp.response(audiences=("https://other.example",)))
        assert validator.validate(encoded).stage == ValidationStage.AUDIENCE
        assert validator.validate(encoded).stage == ValidationStage.REPLAY

    @pytest.mark.parametrize("elapsed", [timedelta(minutes=5), timedelta(minutes=6), timedelta(hours=1)])
    def test_replay_after_window_rejected(self, make_validator, idp, clock, elapsed):
        """A captured Response stays unusable after its ID leaves the replay window."""
        validator = make_validator(want_assertions_signed=True)
        validator.settings.validate()
        xml = idp.response(
            signed=True,
            not_on_or_after=clock.now + timedelta(hours=2),
            confirmation_not_on_or_after=clock.now + timedelta(hours=2),
        )
        encoded = idp.post(xml)
        assert validator.validate(encoded).success

        clock.now += elapsed
        outcome = validator.validate(encoded)
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUE_INSTANT)

    def test_replay_after_window_with_skew(self, make_validator, idp, clock):
        """A Response issued ahead of our clock is still refused once its ID is forgotten."""
        validator = make_validator(clock_skew_seconds=60, response_max_age_seconds=180)
        validator.settings.validate()
        xml = idp.response(
            issue_instant=clock.now + timedelta(seconds=60),
            not_on_or_after=clock.now + timedelta(hours=1),
            confirmation_not_on_or_after=clock.now + timedelta(hours=1),
        )
        encoded = idp.post(xml)
        assert validator.validate(encoded).success

        clock.advance(minutes=5)
        outcome = validator.validate(encoded)
        assert_rejected(outcome, FailureKind.VALIDATION_FAILED, ValidationStage.ISSUE_INSTANT)

    def test_assertion_rewrapped_after_window(self, validator, idp, clock):
        """A still-valid assertion cannot be moved into a fresh Response later."""
        assertion = idp.assertion(
            assertion_id="_long-lived",
            not_on_or_after=clock.now + timedelta(hours=1),
            confirmation_not_on_or_after=clock.now + timedelta(hours=1),
            signed=True,
        )
        assert validator.validate(idp.post(idp.response(assertions=[assertion]))).success

        clock.advance(minutes=6)
        fresh = idp.response(issue_instant=clock.now, assertions=[assertion])
        outcome = validator.validate(idp.post(fresh))
        assert_rejected(outcome, FailureKind.REPLAY_DETECTED, ValidationStage.ASSERTION_REPLAY)

    def test_assertion_retained_until_expiry(self, validator, idp, clock):
        validator.validate(idp.post(idp.response(assertions=[idp.assertion(assertion_id="_a1")])))

        record = validator.replay_cache.get(f"{ASSERTION_PREFIX}_a1")
        assert record is not None
        assert record.retain_until == clock.now + timedelta(minutes=5)

    def test_concurrent_submissions(self, validator, idp):
        """Exactly one of many simultaneous submissions is accepted."""
        encoded = idp.post(idp.response())
        barrier = threading.Barrier(8)
        outcomes: list[ValidationOutcome] = []
        lock = threading.Lock()

        def submit() -> None:
            barrier.wait()
            outcome = validator.validate(encoded)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for o in outcomes if o.success) == 1
        assert all(o.failure == FailureKind.REPLAY_DETECTED for o in outcomes if not o.success)


class TestOutcome:
    """Tests for what a rejection exposes."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"issuer": "https://evil.example"},
            {"destination": "https://other.example/acs"},
            {"audiences": ("https://other.example",)},
            {"recipient": "https://other.example/acs"},
        ],
    )
    def test_message_is_generic(self, validator, idp, kwargs):
        outcome = validator.validate(idp.post(idp.response(**kwargs)))
        assert outcome.message == GENERIC_MESSAGES[FailureKind.VALIDATION_FAILED]
        assert str(outcome.stage) not in outcome.message

    def test_to_dict_omits_stage(self, validator, idp):
        data = validator.validate(idp.post(idp.response(issuer=None))).to_dict()
        assert data == {
            "success": False,
            "message": GENERIC_MESSAGES[FailureKind.VALIDATION_FAILED],
            "failure": "validation_failed",
        }

    def test_failure_logged_with_stage(self, validator, idp, caplog):
        with caplog.at_level(logging.WARNING, logger="samlsp.protocol"):
            validator.validate(idp.post(idp.response(response_id="_bad", destination=None)))
        assert "_bad" in caplog.text
        assert "destination" in caplog.text


class TestTimeWindow:
    """Tests for the shared time window helper."""

    def test_inside_window(self, clock):
        check_time_window(clock.now, clock.now, clock.now + timedelta(seconds=1), timedelta(0), "t")

    def test_open_window(self, clock):
        check_time_window(clock.now, None, None, timedelta(0), "t")

    def test_skew_extends_expiry(self, clock):
        check_time_window(clock.now, None, clock.now, timedelta(seconds=1), "t")

    def test_expired(self, clock):
        with pytest.raises(ValidationFailed) as exc:
            check_time_window(clock.now, None, clock.now, timedelta(0), "conditions")
        assert exc.value.stage == "conditions"
