"""Outbound SAML message construction.

Builds AuthnRequest, LogoutRequest and LogoutResponse objects and their
HTTP-Redirect and HTTP-POST wire encodings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from samlsp.core.clock import Clock, utc_now
from samlsp.core.logging import Direction, ProtocolMessage, get_protocol_logger
from samlsp.core.saml.codec import Binding, compress_and_encode, encode_base64, generate_id
from samlsp.core.saml.errors import EncodingFailure
from samlsp.core.saml.protocol import (
    AUTHN_CONTEXT_PASSWORD_PROTECTED_TRANSPORT,
    STATUS_RESPONDER,
    STATUS_SUCCESS,
    AuthnRequest,
    LogoutRequest,
    LogoutResponse,
    NameID,
    Status,
)

if TYPE_CHECKING:
    from samlsp.core.config import SAMLSettings
    from samlsp.core.saml.xmlsec import XMLSecurityProvider

OutboundMessage = AuthnRequest | LogoutRequest | LogoutResponse


def _append_query(url: str, params: dict[str, str]) -> str:
    joiner = "&" if "?" in url else "?"
    if url.endswith(("?", "&")):
        joiner = ""
    return f"{url}{joiner}{urlencode(params)}"


class RequestBuilder:
    """Constructs and encodes messages sent from this SP to the IdP."""

    def __init__(
        self,
        settings: SAMLSettings,
        provider: XMLSecurityProvider,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self._clock = clock

    # ------------------------------------------------------------------
    # Message construction
    # ------------------------------------------------------------------

    def create_authn_request(self) -> AuthnRequest:
        """Create an AuthnRequest for SP-initiated SSO.

        Returns:
            AuthnRequest addressed to the IdP SSO endpoint.

        Raises:
            EncodingFailure: If the IdP SSO URL is not configured.
        """
        if not self.settings.idp_sso_url:
            raise EncodingFailure("IdP SSO URL not configured")

        return AuthnRequest(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.settings.entity_id,
            destination=self.settings.idp_sso_url,
            assertion_consumer_service_url=self.settings.acs_url,
            protocol_binding=Binding.POST.value,
            name_id_policy_format=self.settings.name_id_format,
            allow_create=True,
            authn_context_comparison="exact",
            authn_context_class_refs=(AUTHN_CONTEXT_PASSWORD_PROTECTED_TRANSPORT,),
        )

    def create_logout_request(
        self,
        name_id: str,
        session_index: str | None = None,
        name_id_format: str | None = None,
    ) -> LogoutRequest:
        """Create a LogoutRequest for SP-initiated SLO.

        Args:
            name_id: NameID of the principal being logged out.
            session_index: IdP session index, if known.
            name_id_format: NameID format; defaults to the configured format.

        Raises:
            EncodingFailure: If the IdP SLO URL is not configured.
        """
        if not self.settings.idp_slo_url:
            raise EncodingFailure("IdP SLO URL not configured")

        return LogoutRequest(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.settings.entity_id,
            destination=self.settings.idp_slo_url,
            name_id=NameID(value=name_id, format=name_id_format or self.settings.name_id_format),
            session_indexes=(session_index,) if session_index else (),
        )

    def create_logout_response(self, in_response_to: str, success: bool) -> LogoutResponse:
        """Create a LogoutResponse answering an IdP-initiated LogoutRequest.

        Raises:
            EncodingFailure: If the IdP SLO URL is not configured.
        """
        if not self.settings.idp_slo_url:
            raise EncodingFailure("IdP SLO URL not configured")

        return LogoutResponse(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.settings.entity_id,
            destination=self.settings.idp_slo_url,
            in_response_to=in_response_to,
            status=Status(code=STATUS_SUCCESS if success else STATUS_RESPONDER),
        )

    # ------------------------------------------------------------------
    # Wire encodings
    # ------------------------------------------------------------------

    def _serialize(self, message: OutboundMessage, binding: Binding) -> str:
        xml = self.provider.serialize(message)
        get_protocol_logger().log_message(
            ProtocolMessage(
                direction=Direction.OUTBOUND,
                message_type=type(message).__name__,
                message_id=message.id,
                binding=binding.value,
                issuer=message.issuer,
                destination=message.destination,
                xml=xml,
            )
        )
        return xml

    def _redirect_url(self, message: OutboundMessage, parameter: str, relay_state: str | None) -> str:
        if not message.destination:
            raise EncodingFailure(f"{type(message).__name__} has no destination")

        encoded = compress_and_encode(self._serialize(message, Binding.REDIRECT))
        params = {parameter: encoded}
        if relay_state:
            params["RelayState"] = relay_state
        return _append_query(message.destination, params)

    def _post_fields(self, message: OutboundMessage, parameter: str, relay_state: str | None) -> dict[str, str]:
        if not message.destination:
            raise EncodingFailure(f"{type(message).__name__} has no destination")

        fields = {parameter: encode_base64(self._serialize(message, Binding.POST))}
        if relay_state:
            fields["RelayState"] = relay_state
        return fields

    def create_redirect_url(self, request: AuthnRequest, relay_state: str | None = None) -> str:
        """Build the HTTP-Redirect binding URL for an AuthnRequest.

        Args:
            request: The AuthnRequest to encode.
            relay_state: Optional RelayState to preserve across the SSO flow.

        Returns:
            Complete URL to redirect the user to.
        """
        return self._redirect_url(request, "SAMLRequest", relay_state)

    def create_post_form_data(self, request: AuthnRequest, relay_state: str | None = None) -> str:
        """Build the urlencoded HTTP-POST body for an AuthnRequest."""
        return urlencode(self._post_fields(request, "SAMLRequest", relay_state))

    def create_post_form(self, request: AuthnRequest, relay_state: str | None = None) -> dict[str, Any]:
        """Build data for an HTTP-POST binding auto-submit form.

        Returns:
            Dictionary with 'action' URL and 'fields' for form inputs.
        """
        return {
            "action": request.destination,
            "fields": self._post_fields(request, "SAMLRequest", relay_state),
        }

    def create_logout_redirect_url(self, request: LogoutRequest, relay_state: str | None = None) -> str:
        """Build the HTTP-Redirect binding URL for a LogoutRequest."""
        return self._redirect_url(request, "SAMLRequest", relay_state)

    def create_logout_post_form(self, request: LogoutRequest, relay_state: str | None = None) -> dict[str, Any]:
        """Build HTTP-POST form data for a LogoutRequest."""
        return {
            "action": request.destination,
            "fields": self._post_fields(request, "SAMLRequest", relay_state),
        }

    def create_logout_response_redirect_url(
        self, response: LogoutResponse, relay_state: str | None = None
    ) -> str:
        """Build the HTTP-Redirect binding URL for a LogoutResponse."""
        return self._redirect_url(response, "SAMLResponse", relay_state)

    def create_logout_response_post_form(
        self, response: LogoutResponse, relay_state: str | None = None
    ) -> dict[str, Any]:
        """Build HTTP-POST form data for a LogoutResponse."""
        return {
            "action": response.destination,
            "fields": self._post_fields(response, "SAMLResponse", relay_state),
        }
