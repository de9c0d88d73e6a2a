# saml_sp/auth/provider.py
"""
SAML 2.0 identity provider: SP-initiated login and assertion consumption.

Flow:
1. init: build an AuthnRequest, bind a CSRF state as RelayState and
   redirect the browser to the IdP login URL
2. The user authenticates at the IdP
3. callback: the IdP POSTs a signed SAMLResponse, which goes through
   decode -> status -> URL reconciliation -> signature -> conditions ->
   replay check -> attribute mapping -> CSRF state -> authenticate

The URL and signature checks pass before the message ids are recorded, so a
forged or misdirected response never consumes a legitimate message id.
The Destination is only trusted when the Response itself is signed, so the
signed bearer Recipient is checked against the same URL.
Attributes are read only once the response is trusted.

The HTTP layer is reached through the two small context protocols below.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Protocol
from urllib.parse import urlsplit

import xmlsec
from onelogin.saml2.auth import OneLogin_Saml2_Auth
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.errors import OneLogin_Saml2_Error
from onelogin.saml2.settings import OneLogin_Saml2_Settings
from onelogin.saml2.utils import OneLogin_Saml2_Utils

from saml_sp.auth.attributes import UserIdentity, map_identity
from saml_sp.auth.callback_url import DEFAULT_PORTS, FORWARDED_PROTO_HEADER, compare, reconcile
from saml_sp.auth.codec import AssertionCodec
from saml_sp.auth.conditions import check_conditions, check_status
from saml_sp.auth.replay import ReplayGuard
from saml_sp.auth.signature import SignatureValidator
from saml_sp.config import ProviderConfig, SamlSettings
from saml_sp.errors import ConfigurationError, SamlAuthError

logger = logging.getLogger(__name__)

SAML_RESPONSE_PARAMETER = "SAMLResponse"
RELAY_STATE_PARAMETER = "RelayState"


class InitContext(Protocol):
    def generate_csrf_state(self) -> str: ...

    def redirect_to(self, url: str) -> None: ...

    def get_callback_url(self) -> str: ...


class CallbackContext(Protocol):
    def verify_csrf_state(self, param_name: str) -> None: ...

    def redirect_to_requested_page(self) -> None: ...

    def authenticate(self, identity: UserIdentity) -> None: ...

    def get_callback_url(self) -> str: ...

    def get_request_url(self) -> str: ...

    def get_parameter(self, name: str) -> str | None: ...

    def get_header(self, name: str) -> str | None: ...


class FlowState(enum.Enum):
    IDLE = "idle"
    REQUEST_ISSUED = "request_issued"
    CALLBACK_PENDING = "callback_pending"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Display:
    icon_path: str
    background_color: str


def build_onelogin_settings(config: ProviderConfig, callback_url: str) -> dict:
    """Settings dictionary for python3-saml, derived from the ProviderConfig."""
    sp = {
        "entityId": config.application_id,
        "assertionConsumerService": {
            "url": callback_url,
            "binding": OneLogin_Saml2_Constants.BINDING_HTTP_POST,
        },
        "NameIDFormat": OneLogin_Saml2_Constants.NAMEID_UNSPECIFIED,
    }
    if config.signs_authn_requests:
        sp["x509cert"] = config.sp_certificate
        sp["privateKey"] = config.sp_private_key

    return {
        "strict": True,
        "debug": False,
        "sp": sp,
        "idp": {
            "entityId": config.provider_id,
            "singleSignOnService": {
                "url": config.login_url,
                "binding": OneLogin_Saml2_Constants.BINDING_HTTP_REDIRECT,
            },
            "x509cert": config.certificate,
        },
        "security": {
            "authnRequestsSigned": config.signs_authn_requests,
            "wantAssertionsSigned": True,
            "requestedAuthnContext": False,
            "signatureAlgorithm": OneLogin_Saml2_Constants.RSA_SHA256,
            "digestAlgorithm": OneLogin_Saml2_Constants.SHA256,
        },
    }


def _prepare_request_data(url: str) -> dict:
    """Describe `url` the way python3-saml expects an incoming request."""
    parts = urlsplit(url)
    return {
        "https": "on" if parts.scheme == "https" else "off",
        "http_host": parts.hostname,
        "server_port": parts.port or DEFAULT_PORTS.get(parts.scheme, 80),
        "script_name": parts.path,
        "get_data": {},
        "post_data": {},
    }


class SamlIdentityProvider:
    """Drives the init (SP -> IdP) and callback (IdP -> SP) steps."""

    key = "saml"
    display = Display(icon_path="/images/saml.png", background_color="#444444")
    allows_users_to_sign_up = True

    def __init__(
        self,
        saml_settings: SamlSettings,
        replay_guard: ReplayGuard,
        codec: AssertionCodec | None = None,
        signature_validator: SignatureValidator | None = None,
        clock: Callable[[], int] = OneLogin_Saml2_Utils.now,
    ):
        self._settings = saml_settings
        self._replay_guard = replay_guard
        self._codec = codec
        self._signature_validator = signature_validator or SignatureValidator()
        self._clock = clock

    @property
    def name(self) -> str:
        return self._settings.provider_name()

    def is_enabled(self) -> bool:
        return self._settings.is_enabled()

    def init(self, context: InitContext) -> FlowState:
        config = self._settings.get()
        try:
            auth = OneLogin_Saml2_Auth(
                _prepare_request_data(context.get_callback_url()),
                old_settings=build_onelogin_settings(config, context.get_callback_url()),
            )
            relay_state = context.generate_csrf_state()
            login_url = auth.login(return_to=relay_state)
        except (OneLogin_Saml2_Error, xmlsec.Error) as e:
            logger.error(f"Cannot build SAML AuthnRequest: {e}")
            raise ConfigurationError("Fail to create Auth")

        context.redirect_to(login_url)
        logger.info(f"SAML AuthnRequest issued to {config.provider_id}")
        return FlowState.REQUEST_ISSUED

    def callback(self, context: CallbackContext) -> FlowState:
        config = self._settings.get()
        logger.debug(f"SAML flow state: {FlowState.CALLBACK_PENDING.value}")
        try:
            identity = self._consume_response(context, config)
            context.verify_csrf_state(RELAY_STATE_PARAMETER)
        except SamlAuthError as e:
            self._log_rejection(e)
            raise

        context.authenticate(identity)
        context.redirect_to_requested_page()
        logger.info(f"SAML user '{identity.provider_login}' authenticated")
        return FlowState.AUTHENTICATED

    def _consume_response(self, context: CallbackContext, config: ProviderConfig) -> UserIdentity:
        codec = self._codec or AssertionCodec(config.max_response_size)
        envelope = codec.decode(context.get_parameter(SAML_RESPONSE_PARAMETER))
        check_status(envelope)

        effective_url = reconcile(context.get_request_url(), context.get_header(FORWARDED_PROTO_HEADER))
        compare(effective_url, envelope.destination)

        self._signature_validator.verify(envelope, config.certificate)
        check_conditions(envelope, config, self._clock(), effective_url)

        self._replay_guard.check_and_record(envelope.message_id, envelope.assertion_id)
        return map_identity(envelope, config)

    @staticmethod
    def _log_rejection(error: SamlAuthError) -> None:
        state = FlowState.REJECTED.value
        if error.security_event:
            logger.warning(f"SAML flow {state} [{error.error_code}]: {error.message}")
        else:
            logger.info(f"SAML flow {state} [{error.error_code}]: {error.message}")

    def sp_metadata(self, callback_url: str) -> str:
        """SP metadata XML, for the IdP administrator to import."""
        config = self._settings.get()
        try:
            saml_settings = OneLogin_Saml2_Settings(
                build_onelogin_settings(config, callback_url), sp_validation_only=True
            )
            metadata = saml_settings.get_sp_metadata()
        except (OneLogin_Saml2_Error, xmlsec.Error) as e:
            logger.error(f"Cannot build SP metadata: {e}")
            raise ConfigurationError("Fail to create SP metadata")

        if isinstance(metadata, bytes):
            metadata = metadata.decode("utf-8")
        return metadata
