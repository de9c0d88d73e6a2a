# saml_sp/errors.py
"""
Error taxonomy for SAML authentication.

Every rejection raised while handling an init or callback request derives
from SamlAuthError. Errors flagged as security events (bad signature, replay,
URL mismatch, ...) are logged at WARNING so an operator can tell an attack or
a misconfiguration apart from an ordinary bad request.

Messages must never contain certificate contents or assertion XML: they end
up in logs and, through the error code, in user-facing pages.
"""


class SamlAuthError(Exception):
    """Base class for SAML authentication failures."""

    error_code = "SAML_ERROR"
    security_event = False

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class ConfigurationError(SamlAuthError):
    """SAML settings are missing or invalid. Fatal, never retried."""

    error_code = "SAML_CONFIGURATION"


class MalformedResponseError(SamlAuthError):
    """The SAMLResponse is not valid base64, not well-formed XML, or incomplete."""

    error_code = "SAML_MALFORMED_RESPONSE"


class OversizedResponseError(MalformedResponseError):
    """The SAMLResponse exceeds the configured size ceiling."""

    error_code = "SAML_OVERSIZED_RESPONSE"


class IdpStatusError(SamlAuthError):
    """The IdP answered with a non-success status code."""

    error_code = "SAML_IDP_STATUS"


class MissingAttributeError(SamlAuthError):
    """A mandatory attribute (login or name) is absent from the assertion."""

    error_code = "SAML_MISSING_ATTRIBUTE"


class SignatureError(SamlAuthError):
    error_code = "SAML_SIGNATURE"
    security_event = True


class CallbackMismatchError(SamlAuthError):
    error_code = "SAML_CALLBACK_MISMATCH"
    security_event = True


class InvalidAssertionError(SamlAuthError):
    """Issuer, audience or validity window of the assertion is wrong."""

    error_code = "SAML_INVALID_ASSERTION"
    security_event = True


class ReplayError(SamlAuthError):
    error_code = "SAML_REPLAY"
    security_event = True


class CsrfStateError(SamlAuthError):
    """RelayState does not match the CSRF state bound to the session."""

    error_code = "SAML_CSRF_STATE"
    security_event = True
