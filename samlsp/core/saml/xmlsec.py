"""XML security provider.

Parses protocol XML into the immutable object model, serializes outbound
messages, and verifies enveloped XML signatures against the IdP certificate.
lxml does the XML work, signxml the signature cryptography.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import InvalidInput, InvalidSignature

from samlsp.core.crypto.certs import get_certificate_pem, load_certificate
from samlsp.core.saml.errors import EncodingFailure, MalformedMessage
from samlsp.core.saml.protocol import (
    NSMAP,
    SAML_NS,
    SAML_VERSION,
    SAMLP_NS,
    Assertion,
    Attribute,
    AttributeStatement,
    AudienceRestriction,
    AuthnRequest,
    AuthnStatement,
    Conditions,
    LogoutRequest,
    LogoutResponse,
    NameID,
    ProtocolObject,
    Response,
    SignatureNode,
    Status,
    Subject,
    SubjectConfirmation,
    SubjectConfirmationData,
)

if TYPE_CHECKING:
    from cryptography import x509

logger = logging.getLogger(__name__)

# Python's datetime keeps microseconds only; some IdPs emit 7 fractional digits
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def _q(ns: str, tag: str) -> str:
    return f"{{{ns}}}{tag}"


def parse_instant(value: str | None) -> datetime | None:
    """Parse an xs:dateTime instant into an aware UTC datetime.

    Raises:
        MalformedMessage: If the value is present but not a valid instant.
    """
    if value is None:
        return None
    text = _FRACTION_RE.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MalformedMessage(f"Invalid instant: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_instant(value: datetime) -> str:
    """Format a datetime as a SAML UTC instant."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _text(elem: etree._Element | None) -> str | None:
    if elem is None:
        return None
    return "".join(elem.itertext()).strip()


class XMLSecurityProvider:
    """Parses, serializes and verifies SAML protocol messages."""

    def __init__(self) -> None:
        self._parser = etree.XMLParser(
            no_network=True,
            resolve_entities=False,
            load_dtd=False,
            dtd_validation=False,
            remove_comments=True,
            remove_pis=True,
            huge_tree=False,
        )

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, xml: bytes | str) -> ProtocolObject:
        """Parse a protocol message.

        Args:
            xml: Raw XML document.

        Returns:
            The parsed message variant.

        Raises:
            MalformedMessage: If the document is not well-formed, declares a
                DOCTYPE, or is not a supported protocol message.
        """
        if isinstance(xml, str):
            xml = xml.encode("utf-8")

        try:
            root = etree.fromstring(xml, self._parser)
        except etree.XMLSyntaxError as e:
            raise MalformedMessage(f"Failed to parse XML: {e}") from e

        if root is None:
            raise MalformedMessage("Empty XML document")
        if root.getroottree().docinfo.doctype:
            raise MalformedMessage("DOCTYPE declarations are not allowed")

        if root.tag == _q(SAMLP_NS, "Response"):
            return self._parse_response(root)
        if root.tag == _q(SAMLP_NS, "LogoutRequest"):
            return self._parse_logout_request(root)
        if root.tag == _q(SAMLP_NS, "LogoutResponse"):
            return self._parse_logout_response(root)
        if root.tag == _q(SAMLP_NS, "AuthnRequest"):
            return self._parse_authn_request(root)

        raise MalformedMessage(f"Unsupported protocol message: {root.tag}")

    def _required_id(self, elem: etree._Element) -> str:
        element_id = elem.get("ID")
        if not element_id:
            raise MalformedMessage(f"{etree.QName(elem).localname} is missing its ID attribute")
        return element_id

    def _parse_issuer(self, elem: etree._Element) -> str | None:
        return _text(elem.find("saml:Issuer", NSMAP))

    def _parse_status(self, elem: etree._Element) -> Status | None:
        status_elem = elem.find("samlp:Status", NSMAP)
        if status_elem is None:
            return None
        code_elem = status_elem.find("samlp:StatusCode", NSMAP)
        return Status(
            code=code_elem.get("Value") if code_elem is not None else None,
            message=_text(status_elem.find("samlp:StatusMessage", NSMAP)),
        )

    def _parse_name_id(self, elem: etree._Element | None) -> NameID | None:
        if elem is None:
            return None
        return NameID(value=_text(elem) or "", format=elem.get("Format"))

    def _parse_signature(self, elem: etree._Element) -> SignatureNode | None:
        signatures = elem.findall("ds:Signature", NSMAP)
        if not signatures:
            return None
        if len(signatures) > 1:
            raise MalformedMessage("Element carries more than one signature")

        return SignatureNode(
            signed_element=etree.tostring(elem),
            signed_element_tag=elem.tag,
            signed_element_id=self._required_id(elem),
        )

    def _parse_subject(self, elem: etree._Element | None) -> Subject | None:
        if elem is None:
            return None

        confirmations = []
        for conf_elem in elem.findall("saml:SubjectConfirmation", NSMAP):
            data_elem = conf_elem.find("saml:SubjectConfirmationData", NSMAP)
            data = None
            if data_elem is not None:
                data = SubjectConfirmationData(
                    not_before=parse_instant(data_elem.get("NotBefore")),
                    not_on_or_after=parse_instant(data_elem.get("NotOnOrAfter")),
                    recipient=data_elem.get("Recipient"),
                    in_response_to=data_elem.get("InResponseTo"),
                )
            confirmations.append(SubjectConfirmation(method=conf_elem.get("Method", ""), data=data))

        return Subject(
            name_id=self._parse_name_id(elem.find("saml:NameID", NSMAP)),
            confirmations=tuple(confirmations),
        )

    def _parse_conditions(self, elem: etree._Element | None) -> Conditions | None:
        if elem is None:
            return None

        restrictions = []
        for restriction_elem in elem.findall("saml:AudienceRestriction", NSMAP):
            audiences = tuple(
                _text(a) or "" for a in restriction_elem.findall("saml:Audience", NSMAP)
            )
            restrictions.append(AudienceRestriction(audiences=audiences))

        return Conditions(
            not_before=parse_instant(elem.get("NotBefore")),
            not_on_or_after=parse_instant(elem.get("NotOnOrAfter")),
            audience_restrictions=tuple(restrictions),
            one_time_use=elem.find("saml:OneTimeUse", NSMAP) is not None,
        )

    def _parse_attribute_statement(self, elem: etree._Element) -> AttributeStatement:
        attributes = []
        for attr_elem in elem.findall("saml:Attribute", NSMAP):
            values = tuple(
                _text(v) or "" for v in attr_elem.findall("saml:AttributeValue", NSMAP)
            )
            attributes.append(
                Attribute(
                    name=attr_elem.get("Name", ""),
                    values=values,
                )
            )
        return AttributeStatement(attributes=tuple(attributes))

    def _parse_assertion(self, elem: etree._Element) -> Assertion:
        authn_statements = []
        for stmt in elem.findall("saml:AuthnStatement", NSMAP):
            authn_statements.append(
                AuthnStatement(
                    authn_instant=parse_instant(stmt.get("AuthnInstant")),
                    session_index=stmt.get("SessionIndex"),
                    authn_context_class_ref=_text(
                        stmt.find("saml:AuthnContext/saml:AuthnContextClassRef", NSMAP)
                    ),
                )
            )

        return Assertion(
            id=self._required_id(elem),
            issue_instant=parse_instant(elem.get("IssueInstant")),
            issuer=self._parse_issuer(elem),
            subject=self._parse_subject(elem.find("saml:Subject", NSMAP)),
            conditions=self._parse_conditions(elem.find("saml:Conditions", NSMAP)),
            authn_statements=tuple(authn_statements),
            attribute_statements=tuple(
                self._parse_attribute_statement(s)
                for s in elem.findall("saml:AttributeStatement", NSMAP)
            ),
            signature=self._parse_signature(elem),
        )

    def _parse_response(self, root: etree._Element) -> Response:
        return Response(
            id=self._required_id(root),
            issue_instant=parse_instant(root.get("IssueInstant")),
            issuer=self._parse_issuer(root),
            destination=root.get("Destination"),
            status=self._parse_status(root),
            in_response_to=root.get("InResponseTo"),
            assertions=tuple(
                self._parse_assertion(a) for a in root.findall("saml:Assertion", NSMAP)
            ),
            signature=self._parse_signature(root),
        )

    def _parse_logout_request(self, root: etree._Element) -> LogoutRequest:
        return LogoutRequest(
            id=self._required_id(root),
            issue_instant=parse_instant(root.get("IssueInstant")),
            issuer=self._parse_issuer(root),
            destination=root.get("Destination"),
            name_id=self._parse_name_id(root.find("saml:NameID", NSMAP)),
            session_indexes=tuple(
                _text(s) or "" for s in root.findall("samlp:SessionIndex", NSMAP)
            ),
            signature=self._parse_signature(root),
        )

    def _parse_logout_response(self, root: etree._Element) -> LogoutResponse:
        return LogoutResponse(
            id=self._required_id(root),
            issue_instant=parse_instant(root.get("IssueInstant")),
            issuer=self._parse_issuer(root),
            destination=root.get("Destination"),
            in_response_to=root.get("InResponseTo"),
            status=self._parse_status(root),
            signature=self._parse_signature(root),
        )

    def _parse_authn_request(self, root: etree._Element) -> AuthnRequest:
        policy = root.find("samlp:NameIDPolicy", NSMAP)
        requested = root.find("samlp:RequestedAuthnContext", NSMAP)
        return AuthnRequest(
            id=self._required_id(root),
            issue_instant=parse_instant(root.get("IssueInstant")) or datetime.now(UTC),
            issuer=self._parse_issuer(root) or "",
            destination=root.get("Destination", ""),
            assertion_consumer_service_url=root.get("AssertionConsumerServiceURL", ""),
            protocol_binding=root.get("ProtocolBinding", ""),
            name_id_policy_format=policy.get("Format", "") if policy is not None else "",
            allow_create=policy is not None and policy.get("AllowCreate") == "true",
            authn_context_comparison=(
                requested.get("Comparison", "exact") if requested is not None else "exact"
            ),
            authn_context_class_refs=tuple(
                _text(ref) or ""
                for ref in root.findall(
                    "samlp:RequestedAuthnContext/saml:AuthnContextClassRef", NSMAP
                )
            ),
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def serialize(self, obj: ProtocolObject) -> str:
        """Serialize an outbound protocol message to an XML string.

        Raises:
            EncodingFailure: If the object is not an outbound message type.
        """
        if isinstance(obj, AuthnRequest):
            root = self._build_authn_request(obj)
        elif isinstance(obj, LogoutRequest):
            root = self._build_logout_request(obj)
        elif isinstance(obj, LogoutResponse):
            root = self._build_logout_response(obj)
        else:
            raise EncodingFailure(f"Cannot serialize {type(obj).__name__}")

        return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")

    def _new_message(self, tag: str, message_id: str, issue_instant: datetime | None) -> etree._Element:
        root = etree.Element(
            _q(SAMLP_NS, tag),
            nsmap={"samlp": SAMLP_NS, "saml": SAML_NS},
        )
        root.set("ID", message_id)
        root.set("Version", SAML_VERSION)
        root.set("IssueInstant", format_instant(issue_instant or datetime.now(UTC)))
        return root

    def _add_issuer(self, root: etree._Element, issuer: str | None) -> None:
        if issuer:
            etree.SubElement(root, _q(SAML_NS, "Issuer")).text = issuer

    def _build_authn_request(self, request: AuthnRequest) -> etree._Element:
        root = self._new_message("AuthnRequest", request.id, request.issue_instant)
        root.set("Destination", request.destination)
        root.set("AssertionConsumerServiceURL", request.assertion_consumer_service_url)
        root.set("ProtocolBinding", request.protocol_binding)
        self._add_issuer(root, request.issuer)

        policy = etree.SubElement(root, _q(SAMLP_NS, "NameIDPolicy"))
        policy.set("Format", request.name_id_policy_format)
        policy.set("AllowCreate", "true" if request.allow_create else "false")

        if request.authn_context_class_refs:
            requested = etree.SubElement(root, _q(SAMLP_NS, "RequestedAuthnContext"))
            requested.set("Comparison", request.authn_context_comparison)
            for class_ref in request.authn_context_class_refs:
                etree.SubElement(requested, _q(SAML_NS, "AuthnContextClassRef")).text = class_ref

        return root

    def _build_logout_request(self, request: LogoutRequest) -> etree._Element:
        root = self._new_message("LogoutRequest", request.id, request.issue_instant)
        if request.destination:
            root.set("Destination", request.destination)
        self._add_issuer(root, request.issuer)

        if request.name_id is not None:
            name_id = etree.SubElement(root, _q(SAML_NS, "NameID"))
            if request.name_id.format:
                name_id.set("Format", request.name_id.format)
            name_id.text = request.name_id.value

        for session_index in request.session_indexes:
            etree.SubElement(root, _q(SAMLP_NS, "SessionIndex")).text = session_index

        return root

    def _build_logout_response(self, response: LogoutResponse) -> etree._Element:
        root = self._new_message("LogoutResponse", response.id, response.issue_instant)
        if response.destination:
            root.set("Destination", response.destination)
        if response.in_response_to:
            root.set("InResponseTo", response.in_response_to)
        self._add_issuer(root, response.issuer)

        if response.status is not None:
            status = etree.SubElement(root, _q(SAMLP_NS, "Status"))
            code = etree.SubElement(status, _q(SAMLP_NS, "StatusCode"))
            code.set("Value", response.status.code or "")
            if response.status.message:
                etree.SubElement(status, _q(SAMLP_NS, "StatusMessage")).text = response.status.message

        return root

    # ------------------------------------------------------------------
    # Signatures and certificates
    # ------------------------------------------------------------------

    def verify_signature(self, signature: SignatureNode, certificate: x509.Certificate) -> bool:
        """Verify an enveloped signature against a trusted certificate.

        The verified element must be the element that carries the signature,
        so a valid signature over some other element is not accepted.

        Args:
            signature: Signature node extracted during parsing.
            certificate: Trusted IdP signing certificate.

        Returns:
            True if the signature is cryptographically valid and covers the element.
        """
        try:
            verified = XMLVerifier().verify(
                signature.signed_element,
                x509_cert=get_certificate_pem(certificate),
            )
        except (InvalidSignature, InvalidInput, etree.LxmlError) as e:
            logger.info("Signature on %s rejected: %s", signature.signed_element_id, e)
            return False

        results = verified if isinstance(verified, list) else [verified]
        for result in results:
            signed_xml = getattr(result, "signed_xml", None)
            if (
                signed_xml is not None
                and signed_xml.tag == signature.signed_element_tag
                and signed_xml.get("ID") == signature.signed_element_id
            ):
                return True

        logger.info(
            "Signature on %s does not reference the signed element", signature.signed_element_id
        )
        return False

    def load_certificate(self, pem: str) -> x509.Certificate:
        """Load a trusted certificate.

        Raises:
            InvalidCertificate: If the certificate cannot be parsed.
        """
        return load_certificate(pem)

