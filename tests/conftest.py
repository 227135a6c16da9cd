"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
from click.testing import CliRunner
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from flask import Flask
from flask.testing import FlaskClient
from lxml import etree
from signxml import CanonicalizationMethod, XMLSigner

from samlsp.app import create_app
from samlsp.core.config import AppConfig, SAMLSettings
from samlsp.core.saml.codec import compress_and_encode, encode_base64, generate_id
from samlsp.core.saml.protocol import (
    AUTHN_CONTEXT_PASSWORD_PROTECTED_TRANSPORT,
    DSIG_NS,
    NAMEID_FORMAT_EMAIL,
    SAML_NS,
    SAMLP_NS,
    STATUS_SUCCESS,
    SUBJECT_CONFIRMATION_BEARER,
)
from samlsp.core.saml.validation import ResponseValidator
from samlsp.core.saml.xmlsec import XMLSecurityProvider
from samlsp.storage.replay import ReplayCache
from samlsp.storage.sessions import SessionStore

SP_ENTITY_ID = "https://sp.example"
ACS_URL = "https://sp.example/acs"
SLO_URL = "https://sp.example/slo"
IDP_ENTITY_ID = "https://idp.example"
IDP_SSO_URL = "https://idp.example/sso"
IDP_SLO_URL = "https://idp.example/slo"

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

SIGNATURE_PLACEHOLDER = f'<ds:Signature xmlns:ds="{DSIG_NS}" Id="placeholder"/>'


def instant(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeClock:
    """Deterministic clock injected into stores and validators."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class Credentials:
    """A signing key and its self-signed certificate."""

    key_pem: bytes
    cert_pem: str
    certificate: x509.Certificate


def make_credentials(common_name: str) -> Credentials:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime(2020, 1, 1, tzinfo=UTC))
        .not_valid_after(datetime(2099, 1, 1, tzinfo=UTC))
        .sign(key, hashes.SHA256())
    )
    return Credentials(
        key_pem=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        cert_pem=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
        certificate=cert,
    )


class FakeIdP:
    """Builds (optionally signed) IdP messages for tests."""

    def __init__(self, credentials: Credentials) -> None:
        self.credentials = credentials

    # Signing

    def sign(self, xml: str) -> str:
        """Sign the root element, replacing its placeholder signature."""
        root = etree.fromstring(xml.encode("utf-8"))
        signer = XMLSigner(c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0)
        signed = signer.sign(
            root,
            key=self.credentials.key_pem,
            cert=self.credentials.cert_pem,
            reference_uri=f"#{root.get('ID')}",
        )
        return etree.tostring(signed).decode("utf-8")

    # Encoding

    @staticmethod
    def post(xml: str) -> str:
        return encode_base64(xml)

    @staticmethod
    def redirect(xml: str) -> str:
        return compress_and_encode(xml)

    # Messages

    def assertion(
        self,
        assertion_id: str | None = None,
        issuer: str | None = IDP_ENTITY_ID,
        name_id: str | None = "alice@example.com",
        name_id_format: str | None = NAMEID_FORMAT_EMAIL,
        not_before: datetime | None = NOW - timedelta(minutes=5),
        not_on_or_after: datetime | None = NOW + timedelta(minutes=5),
        audiences: tuple[str, ...] | None = (SP_ENTITY_ID,),
        recipient: str | None = ACS_URL,
        confirmation_not_on_or_after: datetime | None = NOW + timedelta(minutes=5),
        session_index: str | None = "_session-1",
        attributes: dict[str, list[str]] | None = None,
        include_subject: bool = True,
        include_conditions: bool = True,
        one_time_use: bool = False,
        signed: bool = False,
    ) -> str:
        assertion_id = assertion_id or generate_id()
        if attributes is None:
            attributes = {"firstName": ["Alice"], "lastName": ["Example"], "groups": ["admins", "users"]}

        parts = [
            f'<saml:Assertion xmlns:saml="{SAML_NS}" ID="{assertion_id}" Version="2.0" '
            f'IssueInstant="{instant(NOW)}">'
        ]
        if issuer is not None:
            parts.append(f"<saml:Issuer>{issuer}</saml:Issuer>")
        if signed:
            parts.append(SIGNATURE_PLACEHOLDER)

        if include_subject:
            parts.append("<saml:Subject>")
            if name_id is not None:
                fmt = f' Format="{name_id_format}"' if name_id_format else ""
                parts.append(f"<saml:NameID{fmt}>{name_id}</saml:NameID>")
            data_attrs = ""
            if confirmation_not_on_or_after is not None:
                data_attrs += f' NotOnOrAfter="{instant(confirmation_not_on_or_after)}"'
            if recipient is not None:
                data_attrs += f' Recipient="{recipient}"'
            parts.append(
                f'<saml:SubjectConfirmation Method="{SUBJECT_CONFIRMATION_BEARER}">'
                f"<saml:SubjectConfirmationData{data_attrs}/>"
                "</saml:SubjectConfirmation>"
            )
            parts.append("</saml:Subject>")

        if include_conditions:
            cond_attrs = ""
            if not_before is not None:
                cond_attrs += f' NotBefore="{instant(not_before)}"'
            if not_on_or_after is not None:
                cond_attrs += f' NotOnOrAfter="{instant(not_on_or_after)}"'
            parts.append(f"<saml:Conditions{cond_attrs}>")
            if audiences is not None:
                parts.append("<saml:AudienceRestriction>")
                parts.extend(f"<saml:Audience>{a}</saml:Audience>" for a in audiences)
                parts.append("</saml:AudienceRestriction>")
            if one_time_use:
                parts.append("<saml:OneTimeUse/>")
            parts.append("</saml:Conditions>")

        index_attr = f' SessionIndex="{session_index}"' if session_index else ""
        parts.append(
            f'<saml:AuthnStatement AuthnInstant="{instant(NOW)}"{index_attr}>'
            "<saml:AuthnContext>"
            f"<saml:AuthnContextClassRef>{AUTHN_CONTEXT_PASSWORD_PROTECTED_TRANSPORT}</saml:AuthnContextClassRef>"
            "</saml:AuthnContext>"
            "</saml:AuthnStatement>"
        )

        if attributes:
            parts.append("<saml:AttributeStatement>")
            for name, values in attributes.items():
                parts.append(f'<saml:Attribute Name="{name}">')
                parts.extend(f"<saml:AttributeValue>{v}</saml:AttributeValue>" for v in values)
                parts.append("</saml:Attribute>")
            parts.append("</saml:AttributeStatement>")

        parts.append("</saml:Assertion>")
        xml = "".join(parts)
        return self.sign(xml) if signed else xml

    def response(
        self,
        response_id: str | None = None,
        issuer: str | None = IDP_ENTITY_ID,
        destination: str | None = ACS_URL,
        status: str = STATUS_SUCCESS,
        issue_instant: datetime = NOW,
        assertions: list[str] | None = None,
        signed: bool = False,
        **assertion_kwargs,
    ) -> str:
        """Build a samlp:Response.

        Unless ``assertions`` is given, one assertion is generated from
        ``assertion_kwargs``.
        """
        response_id = response_id or generate_id()
        if assertions is None:
            assertions = [self.assertion(**assertion_kwargs)]

        dest_attr = f' Destination="{destination}"' if destination is not None else ""
        parts = [
            f'<samlp:Response xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
            f'ID="{response_id}" Version="2.0" IssueInstant="{instant(issue_instant)}"{dest_attr}>'
        ]
        if issuer is not None:
            parts.append(f"<saml:Issuer>{issuer}</saml:Issuer>")
        if signed:
            parts.append(SIGNATURE_PLACEHOLDER)
        parts.append(f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>')
        parts.extend(assertions)
        parts.append("</samlp:Response>")

        xml = "".join(parts)
        return self.sign(xml) if signed else xml

    def logout_request(
        self,
        request_id: str | None = None,
        issuer: str | None = IDP_ENTITY_ID,
        destination: str | None = SLO_URL,
        name_id: str | None = "alice@example.com",
        session_indexes: tuple[str, ...] = (),
        signed: bool = False,
    ) -> str:
        request_id = request_id or generate_id()
        dest_attr = f' Destination="{destination}"' if destination is not None else ""
        parts = [
            f'<samlp:LogoutRequest xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
            f'ID="{request_id}" Version="2.0" IssueInstant="{instant(NOW)}"{dest_attr}>'
        ]
        if issuer is not None:
            parts.append(f"<saml:Issuer>{issuer}</saml:Issuer>")
        if signed:
            parts.append(SIGNATURE_PLACEHOLDER)
        if name_id is not None:
            parts.append(f'<saml:NameID Format="{NAMEID_FORMAT_EMAIL}">{name_id}</saml:NameID>')
        parts.extend(f"<samlp:SessionIndex>{s}</samlp:SessionIndex>" for s in session_indexes)
        parts.append("</samlp:LogoutRequest>")

        xml = "".join(parts)
        return self.sign(xml) if signed else xml

    def logout_response(
        self,
        response_id: str | None = None,
        issuer: str | None = IDP_ENTITY_ID,
        in_response_to: str | None = "_request-1",
        status: str = STATUS_SUCCESS,
        signed: bool = False,
    ) -> str:
        response_id = response_id or generate_id()
        irt_attr = f' InResponseTo="{in_response_to}"' if in_response_to else ""
        parts = [
            f'<samlp:LogoutResponse xmlns:samlp="{SAMLP_NS}" xmlns:saml="{SAML_NS}" '
            f'ID="{response_id}" Version="2.0" IssueInstant="{instant(NOW)}"{irt_attr}>'
        ]
        if issuer is not None:
            parts.append(f"<saml:Issuer>{issuer}</saml:Issuer>")
        if signed:
            parts.append(SIGNATURE_PLACEHOLDER)
        parts.append(f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>')
        parts.append("</samlp:LogoutResponse>")

        xml = "".join(parts)
        return self.sign(xml) if signed else xml


@pytest.fixture(scope="session")
def idp_credentials() -> Credentials:
    """Signing credentials of the trusted IdP."""
    return make_credentials("idp.example")


@pytest.fixture(scope="session")
def rogue_credentials() -> Credentials:
    """Credentials the SP does not trust."""
    return make_credentials("rogue.example")


@pytest.fixture
def idp(idp_credentials: Credentials) -> FakeIdP:
    return FakeIdP(idp_credentials)


@pytest.fixture
def rogue_idp(rogue_credentials: Credentials) -> FakeIdP:
    return FakeIdP(rogue_credentials)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def saml_settings(idp_credentials: Credentials) -> SAMLSettings:
    return SAMLSettings(
        entity_id=SP_ENTITY_ID,
        acs_url=ACS_URL,
        slo_url=SLO_URL,
        idp_entity_id=IDP_ENTITY_ID,
        idp_sso_url=IDP_SSO_URL,
        idp_slo_url=IDP_SLO_URL,
        idp_x509_cert=idp_credentials.cert_pem,
        # Most pipeline tests use unsigned messages
        want_assertions_signed=False,
    )


@pytest.fixture
def provider() -> XMLSecurityProvider:
    return XMLSecurityProvider()


@pytest.fixture
def replay_cache(clock: FakeClock) -> ReplayCache:
    return ReplayCache(clock=clock)


@pytest.fixture
def sessions(clock: FakeClock) -> SessionStore:
    return SessionStore(clock=clock)


@pytest.fixture
def validator(
    saml_settings: SAMLSettings,
    provider: XMLSecurityProvider,
    replay_cache: ReplayCache,
    idp_credentials: Credentials,
    clock: FakeClock,
) -> ResponseValidator:
    return ResponseValidator(
        saml_settings,
        provider,
        replay_cache,
        certificate=idp_credentials.certificate,
        clock=clock,
    )


@pytest.fixture
def app_config(saml_settings: SAMLSettings) -> AppConfig:
    return AppConfig(saml=saml_settings)


@pytest.fixture
def app(app_config: AppConfig, clock: FakeClock) -> Generator[Flask, None, None]:
    """Create application for testing with the background sweeper disabled."""
    app = create_app(
        app_config,
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
            "SWEEPER_ENABLED": False,
        },
        clock=clock,
    )
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()
