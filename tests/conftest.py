"""
Shared fixtures: IdP key pairs, SAML settings and signed SAML responses.

Responses are built and signed at test time with python3-saml's add_sign,
using throwaway self-signed certificates.
"""

import base64
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from xml.sax.saxutils import escape

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.utils import OneLogin_Saml2_Utils

from saml_sp.auth.provider import SamlIdentityProvider
from saml_sp.auth.replay import ReplayGuard
from saml_sp.config import SamlSettings, Settings

CALLBACK_URL = "http://localhost:9000/oauth2/callback/saml"
LOGIN_URL = "http://localhost:8080/realms/acme/protocol/saml"
PROVIDER_ID = "http://localhost:8080/realms/acme"
APPLICATION_ID = "MyApp"

FULL_ATTRIBUTES = {
    "login": ["johndoe"],
    "name": ["John Doe"],
    "email": ["johndoe@email.com"],
    "groups": ["developer", "product-manager"],
}
MINIMAL_ATTRIBUTES = {
    "login": ["johndoe"],
    "name": ["John Doe"],
}


@dataclass(frozen=True)
class KeyPair:
    private_key: str
    certificate: str

    @property
    def bare_certificate(self) -> str:
        """Base64 body only, the way IdP metadata usually shows it."""
        lines = self.certificate.strip().splitlines()
        return "".join(lines[1:-1])


def make_key_pair(common_name: str) -> KeyPair:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return KeyPair(
        private_key=key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        ).decode("ascii"),
        certificate=certificate.public_bytes(serialization.Encoding.PEM).decode("ascii"),
    )


def saml_time(offset_seconds: int = 0) -> str:
    return OneLogin_Saml2_Utils.parse_time_to_SAML(OneLogin_Saml2_Utils.now() + offset_seconds)


def new_id() -> str:
    return "_" + uuid.uuid4().hex


def _sign(xml: str, key_pair: KeyPair) -> str:
    signed = OneLogin_Saml2_Utils.add_sign(
        xml,
        key_pair.private_key,
        key_pair.certificate,
        sign_algorithm=OneLogin_Saml2_Constants.RSA_SHA256,
        digest_algorithm=OneLogin_Saml2_Constants.SHA256,
    )
    return signed.decode("utf-8") if isinstance(signed, bytes) else signed


def assertion_xml(
    attributes: dict,
    assertion_id: str,
    issuer: str = PROVIDER_ID,
    audience: str = APPLICATION_ID,
    destination: str = CALLBACK_URL,
    not_before: str | None = None,
    not_on_or_after: str | None = None,
    recipient: str | None = None,
) -> str:
    not_before = not_before or saml_time(-60)
    recipient = recipient or destination
    not_on_or_after = not_on_or_after or saml_time(600)
    statements = "".join(
        f'<saml:Attribute Name="{escape(name)}">'
        + "".join(f"<saml:AttributeValue>{escape(value)}</saml:AttributeValue>" for value in values)
        + "</saml:Attribute>"
        for name, values in attributes.items()
    )
    return (
        f'<saml:Assertion xmlns:saml="{OneLogin_Saml2_Constants.NS_SAML}" '
        f'ID="{assertion_id}" Version="2.0" IssueInstant="{saml_time()}">'
        f"<saml:Issuer>{issuer}</saml:Issuer>"
        "<saml:Subject>"
        f'<saml:NameID Format="{OneLogin_Saml2_Constants.NAMEID_UNSPECIFIED}">johndoe</saml:NameID>'
        f'<saml:SubjectConfirmation Method="{OneLogin_Saml2_Constants.CM_BEARER}">'
        f'<saml:SubjectConfirmationData NotOnOrAfter="{not_on_or_after}" Recipient="{recipient}"/>'
        "</saml:SubjectConfirmation>"
        "</saml:Subject>"
        f'<saml:Conditions NotBefore="{not_before}" NotOnOrAfter="{not_on_or_after}">'
        f"<saml:AudienceRestriction><saml:Audience>{audience}</saml:Audience></saml:AudienceRestriction>"
        "</saml:Conditions>"
        f'<saml:AuthnStatement AuthnInstant="{saml_time()}" SessionIndex="{new_id()}">'
        "<saml:AuthnContext><saml:AuthnContextClassRef>"
        "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
        "</saml:AuthnContextClassRef></saml:AuthnContext>"
        "</saml:AuthnStatement>"
        f"<saml:AttributeStatement>{statements}</saml:AttributeStatement>"
        "</saml:Assertion>"
    )


def response_xml(
    key_pair: KeyPair | None,
    attributes: dict | None = None,
    message_id: str | None = None,
    destination: str = CALLBACK_URL,
    issuer: str = PROVIDER_ID,
    status: str = OneLogin_Saml2_Constants.STATUS_SUCCESS,
    sign: str = "assertion",
    **assertion_kwargs,
) -> str:
    """
    Build a SAML response. `sign` is "assertion", "response" or "none";
    `key_pair` signs it.
    """
    attributes = FULL_ATTRIBUTES if attributes is None else attributes
    message_id = message_id or new_id()

    assertion = assertion_xml(attributes, new_id(), issuer=issuer, destination=destination, **assertion_kwargs)
    if sign == "assertion":
        assertion = _sign(assertion, key_pair)

    response = (
        f'<samlp:Response xmlns:samlp="{OneLogin_Saml2_Constants.NS_SAMLP}" '
        f'xmlns:saml="{OneLogin_Saml2_Constants.NS_SAML}" '
        f'ID="{message_id}" Version="2.0" IssueInstant="{saml_time()}" Destination="{destination}">'
        f"<saml:Issuer>{issuer}</saml:Issuer>"
        f'<samlp:Status><samlp:StatusCode Value="{status}"/></samlp:Status>'
        f"{assertion}"
        "</samlp:Response>"
    )
    if sign == "response":
        response = _sign(response, key_pair)
    return response


def encode(xml: str) -> str:
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


@pytest.fixture(scope="session")
def idp_keys() -> KeyPair:
    return make_key_pair("idp.example.com")


@pytest.fixture(scope="session")
def other_keys() -> KeyPair:
    return make_key_pair("rogue-idp.example.com")


@pytest.fixture(scope="session")
def sp_keys() -> KeyPair:
    return make_key_pair("sp.example.com")


@pytest.fixture
def make_response(idp_keys):
    """Factory returning a base64 SAMLResponse signed by the configured IdP by default."""

    def factory(key_pair: KeyPair | None = None, **kwargs) -> str:
        return encode(response_xml(key_pair or idp_keys, **kwargs))

    return factory


@pytest.fixture
def make_response_xml(idp_keys):
    """Same as make_response, without the base64 encoding."""

    def factory(key_pair: KeyPair | None = None, **kwargs) -> str:
        return response_xml(key_pair or idp_keys, **kwargs)

    return factory


@pytest.fixture
def settings(idp_keys) -> Settings:
    return Settings(
        saml_enabled=True,
        saml_application_id=APPLICATION_ID,
        saml_provider_id=PROVIDER_ID,
        saml_login_url=LOGIN_URL,
        saml_certificate=idp_keys.bare_certificate,
        saml_user_login_attribute="login",
        saml_user_name_attribute="name",
        saml_user_email_attribute="email",
        saml_group_attribute="groups",
        vault_enabled=False,
        _env_file=None,
    )


@pytest.fixture
def saml_settings(settings) -> SamlSettings:
    return SamlSettings(settings)


@pytest.fixture
def replay_guard(tmp_path) -> ReplayGuard:
    return ReplayGuard.from_url(f"sqlite:///{tmp_path / 'saml_messages.db'}")


@pytest.fixture
def provider(saml_settings, replay_guard) -> SamlIdentityProvider:
    return SamlIdentityProvider(saml_settings, replay_guard)
