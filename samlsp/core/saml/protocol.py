"""SAML protocol object model.

A closed set of immutable variants, one per protocol element the SP
consumes or produces. The validator only needs structural access to these,
so they carry no behavior beyond small convenience properties.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

# XML namespaces
SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"

NSMAP = {
    "samlp": SAMLP_NS,
    "saml": SAML_NS,
    "ds": DSIG_NS,
}

SAML_VERSION = "2.0"

# Status codes
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
STATUS_RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"

# NameID formats
NAMEID_FORMAT_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
NAMEID_FORMAT_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
NAMEID_FORMAT_PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
NAMEID_FORMAT_TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"

AUTHN_CONTEXT_PASSWORD_PROTECTED_TRANSPORT = (
    "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
)

SUBJECT_CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"


@dataclass(frozen=True)
class SignatureNode:
    """An enveloped ds:Signature and the element it is attached to.

    ``signed_element`` is the serialized element carrying the signature,
    which is what the signature verifier operates on.
    """

    signed_element: bytes
    signed_element_tag: str
    signed_element_id: str


@dataclass(frozen=True)
class NameID:
    value: str
    format: str | None = None


@dataclass(frozen=True)
class SubjectConfirmationData:
    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    recipient: str | None = None
    in_response_to: str | None = None


@dataclass(frozen=True)
class SubjectConfirmation:
    method: str
    data: SubjectConfirmationData | None = None


@dataclass(frozen=True)
class Subject:
    name_id: NameID | None = None
    confirmations: tuple[SubjectConfirmation, ...] = ()


@dataclass(frozen=True)
class AudienceRestriction:
    audiences: tuple[str, ...] = ()


@dataclass(frozen=True)
class Conditions:
    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    audience_restrictions: tuple[AudienceRestriction, ...] = ()
    one_time_use: bool = False


@dataclass(frozen=True)
class AuthnStatement:
    authn_instant: datetime | None = None
    session_index: str | None = None
    authn_context_class_ref: str | None = None


@dataclass(frozen=True)
class Attribute:
    name: str
    values: tuple[str, ...] = ()


@dataclass(frozen=True)
class AttributeStatement:
    attributes: tuple[Attribute, ...] = ()


@dataclass(frozen=True)
class Status:
    code: str | None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.code == STATUS_SUCCESS


@dataclass(frozen=True)
class Assertion:
    id: str
    issue_instant: datetime | None
    issuer: str | None
    subject: Subject | None = None
    conditions: Conditions | None = None
    authn_statements: tuple[AuthnStatement, ...] = ()
    attribute_statements: tuple[AttributeStatement, ...] = ()
    signature: SignatureNode | None = None


@dataclass(frozen=True)
class Response:
    """A parsed samlp:Response."""

    id: str
    issue_instant: datetime | None
    issuer: str | None
    destination: str | None
    status: Status | None
    in_response_to: str | None = None
    assertions: tuple[Assertion, ...] = ()
    signature: SignatureNode | None = None


@dataclass(frozen=True)
class AuthnRequest:
    id: str
    issue_instant: datetime
    issuer: str
    destination: str
    assertion_consumer_service_url: str
    protocol_binding: str
    name_id_policy_format: str
    allow_create: bool = True
    authn_context_comparison: str = "exact"
    authn_context_class_refs: tuple[str, ...] = ()


@dataclass(frozen=True)
class LogoutRequest:
    id: str
    issue_instant: datetime | None
    issuer: str | None
    destination: str | None
    name_id: NameID | None
    session_indexes: tuple[str, ...] = ()
    signature: SignatureNode | None = None


@dataclass(frozen=True)
class LogoutResponse:
    id: str
    issue_instant: datetime | None
    issuer: str | None
    destination: str | None
    in_response_to: str | None
    status: Status | None
    signature: SignatureNode | None = None


# Top-level message variants handled by the XML security provider
ProtocolObject = Union[AuthnRequest, Response, LogoutRequest, LogoutResponse]
