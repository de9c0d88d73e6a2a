# saml_sp/auth/codec.py
"""
Decoding of the SAMLResponse form parameter posted by the IdP.

Only the structure is checked here. Nothing in the returned envelope is
trusted until SignatureValidator has verified it.
"""

import base64
import binascii
import logging
from dataclasses import dataclass

from lxml import etree
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

from saml_sp.config import DEFAULT_MAX_RESPONSE_SIZE
from saml_sp.errors import MalformedResponseError, OversizedResponseError

logger = logging.getLogger(__name__)

RESPONSE_TAG = f"{{{OneLogin_Saml2_Constants.NS_SAMLP}}}Response"
MAX_MESSAGE_ID_LENGTH = 256


@dataclass(frozen=True)
class SamlResponseEnvelope:
    """A decoded, not yet trusted, SAML response."""

    message_id: str
    assertion_id: str
    destination: str
    issue_instant: str | None
    issuer: str | None
    status_code: str | None
    raw_xml: bytes
    document: etree._Element
    assertion: etree._Element
    signatures: tuple[etree._Element, ...]

    @property
    def is_signed(self) -> bool:
        return len(self.signatures) > 0


def _first_text(nodes) -> str | None:
    if not nodes:
        return None
    text = nodes[0] if isinstance(nodes[0], str) else nodes[0].text
    return text.strip() if text and text.strip() else None


class AssertionCodec:
    """Decode a base64 SAMLResponse into a SamlResponseEnvelope."""

    def __init__(self, max_size: int = DEFAULT_MAX_RESPONSE_SIZE):
        self.max_size = max_size

    def decode(self, raw_base64: str | None) -> SamlResponseEnvelope:
        if not raw_base64 or not raw_base64.strip():
            raise MalformedResponseError("SAMLResponse parameter is missing")

        if len(raw_base64) > self.max_size:
            raise OversizedResponseError(
                f"SAMLResponse is {len(raw_base64)} bytes, the limit is {self.max_size}"
            )

        # IdPs commonly wrap the base64 payload over several lines
        compact = "".join(raw_base64.split())
        try:
            raw_xml = base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError):
            raise MalformedResponseError("SAMLResponse is not valid base64")

        if len(raw_xml) > self.max_size:
            raise OversizedResponseError(
                f"Decoded SAMLResponse is {len(raw_xml)} bytes, the limit is {self.max_size}"
            )

        try:
            # Hardened parser: DTDs and entity declarations are refused
            document = OneLogin_Saml2_XML.to_etree(raw_xml)
        except (etree.XMLSyntaxError, ValueError) as e:
            logger.info(f"Rejected unparsable SAMLResponse: {e.__class__.__name__}")
            raise MalformedResponseError("SAMLResponse is not well-formed XML")

        return self._read_envelope(raw_xml, document)

    def _read_envelope(self, raw_xml: bytes, document: etree._Element) -> SamlResponseEnvelope:
        if document.tag != RESPONSE_TAG:
            raise MalformedResponseError("SAMLResponse root element is not samlp:Response")

        message_id = (document.get("ID") or "").strip()
        if not message_id:
            raise MalformedResponseError("SAMLResponse has no ID")
        if len(message_id) > MAX_MESSAGE_ID_LENGTH:
            raise MalformedResponseError("SAMLResponse ID is too long")

        destination = (document.get("Destination") or "").strip()
        if not destination:
            raise MalformedResponseError("SAMLResponse has no Destination")

        # Two elements sharing an ID is the basis of signature wrapping attacks
        ids = [element.get("ID") for element in OneLogin_Saml2_XML.query(document, "//*[@ID]")]
        if len(ids) != len(set(ids)):
            raise MalformedResponseError("SAMLResponse contains duplicated ID attributes")

        if OneLogin_Saml2_XML.query(document, "./saml:EncryptedAssertion"):
            raise MalformedResponseError("Encrypted assertions are not supported")

        assertions = OneLogin_Saml2_XML.query(document, "./saml:Assertion")
        if len(assertions) != 1:
            raise MalformedResponseError(
                f"SAMLResponse must contain exactly one assertion, found {len(assertions)}"
            )
        assertion = assertions[0]

        assertion_id = (assertion.get("ID") or "").strip()
        if not assertion_id:
            raise MalformedResponseError("Assertion has no ID")
        if len(assertion_id) > MAX_MESSAGE_ID_LENGTH:
            raise MalformedResponseError("Assertion ID is too long")

        signatures = tuple(
            OneLogin_Saml2_XML.query(document, "./ds:Signature")
            + OneLogin_Saml2_XML.query(assertion, "./ds:Signature")
        )

        return SamlResponseEnvelope(
            message_id=message_id,
            assertion_id=assertion_id,
            destination=destination,
            issue_instant=document.get("IssueInstant"),
            issuer=_first_text(OneLogin_Saml2_XML.query(document, "./saml:Issuer")),
            status_code=_first_text(
                OneLogin_Saml2_XML.query(document, "./samlp:Status/samlp:StatusCode/@Value")
            ),
            raw_xml=raw_xml,
            document=document,
            assertion=assertion,
            signatures=signatures,
        )
