# saml_sp/auth/conditions.py
"""
Checks on a signed assertion: issuer, audience, validity window and recipient.

Run only once the signature is verified, and before the message id is
recorded, so an expired or misaddressed response never consumes an id.
"""

import logging

from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.utils import OneLogin_Saml2_Utils
from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

from saml_sp.auth.callback_url import normalize
from saml_sp.auth.codec import SamlResponseEnvelope
from saml_sp.config import ProviderConfig
from saml_sp.errors import CallbackMismatchError, IdpStatusError, InvalidAssertionError

logger = logging.getLogger(__name__)


def check_status(envelope: SamlResponseEnvelope) -> None:
    """Raise IdpStatusError unless the IdP reported success."""
    if envelope.status_code != OneLogin_Saml2_Constants.STATUS_SUCCESS:
        status = envelope.status_code or "missing"
        raise IdpStatusError(f"The IdP did not authenticate the user (status: {status})")


def _timestamp(value: str) -> int:
    try:
        return OneLogin_Saml2_Utils.parse_SAML_to_time(value)
    # python3-saml raises a plain Exception for unknown formats
    except Exception:
        raise InvalidAssertionError("Assertion contains an invalid timestamp")


def _check_window(element, now: int, skew: int, what: str) -> None:
    not_before = element.get("NotBefore")
    if not_before and now + skew < _timestamp(not_before):
        raise InvalidAssertionError(f"{what} is not yet valid")

    not_on_or_after = element.get("NotOnOrAfter")
    if not_on_or_after and now - skew >= _timestamp(not_on_or_after):
        raise InvalidAssertionError(f"{what} has expired")


def check_conditions(
    envelope: SamlResponseEnvelope,
    config: ProviderConfig,
    now: int,
    effective_url: str | None = None,
) -> None:
    """
    Validate issuer, audience restrictions and validity windows.

    `now` is a Unix timestamp; windows are widened by the configured clock
    skew on both sides. When `effective_url` is given, the Recipient of
    every bearer confirmation must designate it.
    """
    if envelope.issuer is not None and envelope.issuer != config.provider_id:
        raise InvalidAssertionError(f"Unexpected response issuer: {envelope.issuer}")

    assertion = envelope.assertion
    issuers = OneLogin_Saml2_XML.query(assertion, "./saml:Issuer")
    assertion_issuer = issuers[0].text.strip() if issuers and issuers[0].text else None
    if assertion_issuer != config.provider_id:
        raise InvalidAssertionError(f"Unexpected assertion issuer: {assertion_issuer}")

    skew = config.allowed_clock_skew
    for conditions in OneLogin_Saml2_XML.query(assertion, "./saml:Conditions"):
        _check_window(conditions, now, skew, "Assertion")

        for restriction in OneLogin_Saml2_XML.query(conditions, "./saml:AudienceRestriction"):
            audiences = [
                (audience.text or "").strip()
                for audience in OneLogin_Saml2_XML.query(restriction, "./saml:Audience")
            ]
            if config.application_id not in audiences:
                raise InvalidAssertionError(
                    f"Assertion is not addressed to this application ({config.application_id})"
                )

    confirmations = OneLogin_Saml2_XML.query(
        assertion,
        "./saml:Subject/saml:SubjectConfirmation[@Method='%s']/saml:SubjectConfirmationData"
        % OneLogin_Saml2_Constants.CM_BEARER,
    )
    for data in confirmations:
        _check_window(data, now, skew, "Subject confirmation")
        recipient = (data.get("Recipient") or "").strip()
        if effective_url and recipient and normalize(recipient) != normalize(effective_url):
            raise CallbackMismatchError(
                f"The assertion was issued for {recipient} instead of {effective_url}"
            )

    logger.debug(f"Conditions of message {envelope.message_id} satisfied")
