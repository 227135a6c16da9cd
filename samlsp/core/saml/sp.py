"""SAML Service Provider facade.

Wires the request builder, response validator, logout orchestrator and the
session and replay stores together for the HTTP layer:
- SP-initiated SSO (AuthnRequest out, Response in)
- SP- and IdP-initiated SLO
- Pre-flight configuration checks
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from samlsp.core.clock import Clock, utc_now
from samlsp.core.crypto.certs import is_certificate_valid
from samlsp.core.saml.builder import RequestBuilder
from samlsp.core.saml.codec import Binding
from samlsp.core.saml.errors import EncodingFailure, SessionExpired, SessionNotFound
from samlsp.core.saml.identity import extract_attributes, extract_session_index, extract_user_name
from samlsp.core.saml.logout import LogoutOrchestrator, LogoutOutcome
from samlsp.core.saml.validation import ResponseValidator, ValidationOutcome
from samlsp.core.saml.xmlsec import XMLSecurityProvider
from samlsp.storage.replay import ReplayCache
from samlsp.storage.sessions import Session, SessionStore

if TYPE_CHECKING:
    from cryptography import x509

    from samlsp.core.config import SAMLSettings

logger = logging.getLogger(__name__)


@dataclass
class PreflightCheck:
    """Represents a pre-flight checklist item."""

    name: str
    description: str
    passed: bool
    details: str = ""


@dataclass
class PreflightResult:
    """Result of pre-flight checks."""

    checks: list[PreflightCheck]
    all_passed: bool
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checks": [
                {
                    "name": c.name,
                    "description": c.description,
                    "passed": c.passed,
                    "details": c.details,
                }
                for c in self.checks
            ],
            "all_passed": self.all_passed,
            "warnings": self.warnings,
        }


@dataclass(frozen=True)
class LoginResult:
    """Outcome of consuming a Response at the ACS endpoint."""

    outcome: ValidationOutcome
    session_id: str | None = None
    user_name: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.outcome.success


@dataclass(frozen=True)
class IdpLogoutResult:
    """Outcome of an IdP-initiated LogoutRequest plus the reply to send."""

    outcome: LogoutOutcome
    redirect_url: str | None = None


class ServiceProvider:
    """SAML Service Provider.

    Owns no global state: stores are created by the caller (normally the
    application factory) and injected.
    """

    def __init__(
        self,
        settings: SAMLSettings,
        sessions: SessionStore,
        replay_cache: ReplayCache,
        certificate: x509.Certificate | None = None,
        provider: XMLSecurityProvider | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.replay_cache = replay_cache
        self.certificate = certificate
        self.provider = provider or XMLSecurityProvider()
        self._clock = clock

        self.builder = RequestBuilder(settings, self.provider, clock=clock)
        self.validator = ResponseValidator(
            settings, self.provider, replay_cache, certificate=certificate, clock=clock
        )
        self.logout = LogoutOrchestrator(
            settings, self.provider, sessions, replay_cache, certificate=certificate, clock=clock
        )

    @classmethod
    def from_settings(
        cls,
        settings: SAMLSettings,
        sessions: SessionStore | None = None,
        replay_cache: ReplayCache | None = None,
        clock: Clock = utc_now,
    ) -> ServiceProvider:
        """Build a Service Provider from validated settings.

        Raises:
            ConfigurationError: If required settings are missing.
            InvalidCertificate: If the configured IdP certificate cannot be loaded.
        """
        settings.validate()

        provider = XMLSecurityProvider()
        certificate = None
        if settings.idp_x509_cert:
            certificate = provider.load_certificate(settings.idp_x509_cert)
        elif settings.allow_unverified_signatures:
            logger.warning("No IdP certificate configured; signatures will not be verified")

        if sessions is None:
            sessions = SessionStore(ttl=timedelta(minutes=settings.session_ttl_minutes), clock=clock)
        if replay_cache is None:
            replay_cache = ReplayCache(
                window=timedelta(minutes=settings.replay_window_minutes), clock=clock
            )

        return cls(settings, sessions, replay_cache, certificate=certificate, provider=provider, clock=clock)

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    def run_preflight_checks(self) -> PreflightResult:
        """Run pre-flight checks before initiating SSO.

        Returns:
            PreflightResult with status of all checks.
        """
        checks: list[PreflightCheck] = []
        warnings: list[str] = []

        checks.append(
            PreflightCheck(
                name="IdP SSO URL",
                description="Identity Provider SSO endpoint is configured",
                passed=bool(self.settings.idp_sso_url),
                details=self.settings.idp_sso_url or "Not configured",
            )
        )

        checks.append(
            PreflightCheck(
                name="IdP Entity ID",
                description="Identity Provider Entity ID is configured",
                passed=bool(self.settings.idp_entity_id),
                details=self.settings.idp_entity_id or "Not configured",
            )
        )

        checks.append(
            PreflightCheck(
                name="SP Entity ID",
                description="Service Provider Entity ID is configured",
                passed=bool(self.settings.entity_id),
                details=self.settings.entity_id or "Not configured",
            )
        )

        acs_is_https = self.settings.acs_url.startswith("https://")
        checks.append(
            PreflightCheck(
                name="ACS URL",
                description="Assertion Consumer Service URL uses HTTPS",
                passed=acs_is_https,
                details=self.settings.acs_url or "Not configured",
            )
        )
        if not acs_is_https:
            warnings.append("ACS URL does not use HTTPS. Most IdPs require HTTPS for security.")

        if self.certificate is None:
            cert_details = "Not configured"
            cert_ok = False
            warnings.append(
                "IdP certificate not configured. Signed messages will be rejected"
                if not self.settings.allow_unverified_signatures
                else "IdP certificate not configured. Signatures will not be verified."
            )
        else:
            cert_ok = is_certificate_valid(self.certificate, now=self._clock())
            cert_details = (
                f"Valid until {self.certificate.not_valid_after_utc.isoformat()}"
                if cert_ok
                else "Certificate is expired or not yet valid"
            )
            if not cert_ok:
                warnings.append("IdP certificate is outside its validity period.")

        checks.append(
            PreflightCheck(
                name="IdP Certificate",
                description="IdP signing certificate is configured and currently valid",
                passed=cert_ok,
                details=cert_details,
            )
        )

        required = {"IdP SSO URL", "IdP Entity ID", "SP Entity ID"}
        all_passed = all(c.passed for c in checks if c.name in required)

        return PreflightResult(checks=checks, all_passed=all_passed, warnings=warnings)

    # ------------------------------------------------------------------
    # SSO
    # ------------------------------------------------------------------

    def build_login_redirect_url(self, relay_state: str | None = None) -> str:
        """Create an AuthnRequest and return the IdP redirect URL.

        Raises:
            EncodingFailure: If the request cannot be built or encoded.
        """
        request = self.builder.create_authn_request()
        url = self.builder.create_redirect_url(request, relay_state)
        logger.info("Issued AuthnRequest %s", request.id)
        return url

    def build_login_post_form(self, relay_state: str | None = None) -> dict[str, Any]:
        """Create an AuthnRequest as HTTP-POST form data."""
        request = self.builder.create_authn_request()
        return self.builder.create_post_form(request, relay_state)

    def process_response(self, encoded: str, binding: Binding = Binding.POST) -> LoginResult:
        """Validate a Response and open a session for its subject."""
        outcome = self.validator.validate(encoded, binding)
        if not outcome.success or outcome.response is None:
            return LoginResult(outcome=outcome)

        response = outcome.response
        user_name = extract_user_name(response) or ""
        attributes = extract_attributes(response)
        session_id = self.sessions.create(user_name, extract_session_index(response), attributes)

        return LoginResult(
            outcome=outcome,
            session_id=session_id,
            user_name=user_name,
            attributes=attributes,
        )

    def require_session(self, session_id: str | None) -> Session:
        """Return the caller's live session.

        Raises:
            SessionNotFound: If no session exists for the ID.
            SessionExpired: If the session outlived its TTL. It is removed.
        """
        session = self.sessions.peek(session_id) if session_id else None
        if session is None:
            raise SessionNotFound(session_id or "")
        if self.sessions.is_expired(session):
            self.sessions.invalidate(session.session_id)
            raise SessionExpired(session.session_id)
        return session

    # ------------------------------------------------------------------
    # SLO
    # ------------------------------------------------------------------

    def build_logout_redirect_url(
        self,
        name_id: str,
        session_index: str | None = None,
        relay_state: str | None = None,
    ) -> str:
        """Create an SP-initiated LogoutRequest and return the IdP redirect URL."""
        request = self.builder.create_logout_request(name_id, session_index)
        url = self.builder.create_logout_redirect_url(request, relay_state)
        logger.info("Issued LogoutRequest %s", request.id)
        return url

    def process_logout_request(
        self,
        encoded: str,
        binding: Binding = Binding.REDIRECT,
        relay_state: str | None = None,
    ) -> IdpLogoutResult:
        """Handle an IdP-initiated LogoutRequest and build the LogoutResponse URL.

        A LogoutResponse is produced whenever the request could be parsed,
        with Success or Responder status matching the outcome.
        """
        outcome = self.logout.process_logout_request(encoded, binding)
        if outcome.request is None:
            return IdpLogoutResult(outcome=outcome)

        try:
            reply = self.builder.create_logout_response(outcome.request.id, outcome.success)
            url = self.builder.create_logout_response_redirect_url(reply, relay_state)
        except EncodingFailure as e:
            logger.error("Failed to build LogoutResponse: %s", e)
            return IdpLogoutResult(outcome=outcome)

        return IdpLogoutResult(outcome=outcome, redirect_url=url)

    def process_logout_response(self, encoded: str, binding: Binding = Binding.REDIRECT) -> LogoutOutcome:
        return self.logout.process_logout_response(encoded, binding)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def metadata(self) -> dict[str, Any]:
        """Describe this SP's endpoints."""
        return {
            "entityId": self.settings.entity_id,
            "acsUrl": self.settings.acs_url,
            "sloUrl": self.settings.slo_url,
            "nameIdFormat": self.settings.name_id_format,
            "acsBinding": Binding.POST.value,
            "sloBinding": Binding.REDIRECT.value,
            "wantAssertionsSigned": self.settings.want_assertions_signed,
            "idpEntityId": self.settings.idp_entity_id,
        }
