# saml_sp/auth/signature.py
"""
XML-DSig verification of SAML responses.

The certificate configured for this SP is the only trust anchor. The key
material an IdP embeds in <ds:KeyInfo> is ignored, and there is no chain
validation: a signature made with any other certificate, even a perfectly
valid one, is rejected.
"""

import logging

import xmlsec
from onelogin.saml2.errors import OneLogin_Saml2_Error, OneLogin_Saml2_ValidationError
from onelogin.saml2.utils import OneLogin_Saml2_Utils
from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

from saml_sp.auth.codec import SamlResponseEnvelope
from saml_sp.config import format_certificate, load_certificate
from saml_sp.errors import SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_REJECTED = "Signature validation failed. SAML Response rejected"

RESPONSE_SIGNATURE_XPATH = "/samlp:Response/ds:Signature"
ASSERTION_SIGNATURE_XPATH = "/samlp:Response/saml:Assertion/ds:Signature"


def _check_reference(signature) -> None:
    """The signature must cover the element it is enveloped in."""
    signed_element = signature.getparent()
    references = OneLogin_Saml2_XML.query(signature, "./ds:SignedInfo/ds:Reference")
    if len(references) != 1:
        raise SignatureError(SIGNATURE_REJECTED + ": expected exactly one reference")

    uri = references[0].get("URI")
    if uri not in ("", f"#{signed_element.get('ID')}"):
        raise SignatureError(SIGNATURE_REJECTED + ": reference does not match the signed element")


class SignatureValidator:
    """Verify every signature of an envelope against one certificate."""

    def verify(self, envelope: SamlResponseEnvelope, certificate: str) -> None:
        if not envelope.is_signed:
            raise SignatureError("SAML Response is not signed")

        try:
            load_certificate(certificate)
        except ValueError:
            raise SignatureError("IdP certificate cannot be parsed")
        pem = format_certificate(certificate)

        xpaths = []
        for signature in envelope.signatures:
            _check_reference(signature)
            if signature.getparent() is envelope.document:
                xpaths.append(RESPONSE_SIGNATURE_XPATH)
            else:
                xpaths.append(ASSERTION_SIGNATURE_XPATH)

        for xpath in xpaths:
            try:
                valid = OneLogin_Saml2_Utils.validate_sign(
                    envelope.raw_xml,
                    cert=pem,
                    xpath=xpath,
                    raise_exceptions=True,
                )
            except (OneLogin_Saml2_ValidationError, OneLogin_Saml2_Error, xmlsec.Error) as e:
                logger.warning(f"Signature check failed for message {envelope.message_id}: {e}")
                raise SignatureError(SIGNATURE_REJECTED)

            if not valid:
                raise SignatureError(SIGNATURE_REJECTED)

        logger.debug(f"Signature of message {envelope.message_id} verified ({len(xpaths)} signature(s))")
