# saml_sp/auth/saml_routes.py
"""
SAML 2.0 Service Provider (SP) endpoints.

- GET  /saml/login     SP-initiated SSO, redirects to the IdP
- POST /saml/acs       Assertion Consumer Service, receives the SAMLResponse
- GET  /saml/metadata  SP metadata for the IdP administrator

The session-backed contexts below are what SamlIdentityProvider talks to:
they hold the CSRF state, the page to return to and, once authenticated,
the user.
"""

import html
import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from saml_sp.auth.attributes import UserIdentity
from saml_sp.auth.dependencies import get_identity_provider
from saml_sp.auth.provider import SamlIdentityProvider
from saml_sp.config import settings
from saml_sp.errors import ConfigurationError, CsrfStateError, SamlAuthError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/saml", tags=["SAML"])

RELAY_STATE_SESSION_KEY = "saml_relay_state"
RETURN_TO_SESSION_KEY = "saml_return_to"
DEFAULT_RETURN_TO = "/protected"


def _callback_url(request: Request) -> str:
    if settings.server_base_url:
        return settings.server_base_url.rstrip("/") + router.prefix + "/acs"
    return str(request.url_for("saml_acs"))


def _safe_return_to(return_to: str | None) -> str:
    """Only local paths, anything else could turn login into an open redirect."""
    if not return_to or not return_to.startswith("/") or return_to.startswith("//"):
        return DEFAULT_RETURN_TO
    return return_to


class SessionInitContext:
    def __init__(self, request: Request, callback_url: str):
        self._request = request
        self._callback_url = callback_url
        self.redirect_url: str | None = None

    def generate_csrf_state(self) -> str:
        state = secrets.token_urlsafe(32)
        self._request.session[RELAY_STATE_SESSION_KEY] = state
        return state

    def redirect_to(self, url: str) -> None:
        self.redirect_url = url

    def get_callback_url(self) -> str:
        return self._callback_url


class SessionCallbackContext:
    def __init__(self, request: Request, form: dict, callback_url: str):
        self._request = request
        self._form = form
        self._callback_url = callback_url
        self.redirect_url: str | None = None

    def verify_csrf_state(self, param_name: str) -> None:
        expected = self._request.session.pop(RELAY_STATE_SESSION_KEY, None)
        received = self._form.get(param_name) or ""
        if not expected or not secrets.compare_digest(expected, received):
            raise CsrfStateError("CSRF state value is invalid")

    def redirect_to_requested_page(self) -> None:
        self.redirect_url = self._request.session.pop(RETURN_TO_SESSION_KEY, DEFAULT_RETURN_TO)

    def authenticate(self, identity: UserIdentity) -> None:
        self._request.session["user"] = {
            "sub": identity.provider_login,
            "name": identity.name,
            "email": identity.email,
            "groups": sorted(identity.groups),
            "auth_method": "SAML",
        }

    def get_callback_url(self) -> str:
        return self._callback_url

    def get_request_url(self) -> str:
        return str(self._request.url)

    def get_parameter(self, name: str) -> str | None:
        return self._form.get(name)

    def get_header(self, name: str) -> str | None:
        return self._request.headers.get(name)


def _error_response(error: SamlAuthError) -> HTMLResponse:
    if isinstance(error, ConfigurationError):
        status_code = 500
    elif error.security_event:
        status_code = 401
    else:
        status_code = 400
    return HTMLResponse(
        f"SAML Error [{error.error_code}]: {html.escape(error.message)}",
        status_code=status_code,
    )


def _ensure_enabled(provider: SamlIdentityProvider) -> None:
    if not provider.is_enabled():
        raise HTTPException(status_code=404, detail="SAML authentication is disabled")


@router.get("/login")
def saml_login(
    request: Request,
    return_to: str | None = None,
    provider: SamlIdentityProvider = Depends(get_identity_provider),
):
    """
    Initiate SAML authentication (SP-Initiated SSO).
    The user is sent back to `return_to` (a local path) once authenticated.
    """
    _ensure_enabled(provider)
    request.session[RETURN_TO_SESSION_KEY] = _safe_return_to(return_to)

    context = SessionInitContext(request, _callback_url(request))
    try:
        provider.init(context)
    except ConfigurationError as e:
        return _error_response(e)

    return RedirectResponse(url=context.redirect_url)


@router.post("/acs", name="saml_acs")
async def saml_acs(
    request: Request,
    provider: SamlIdentityProvider = Depends(get_identity_provider),
):
    """
    Assertion Consumer Service, receives the SAML Response from the IdP.
    Signature, replay and database work run in the threadpool.
    """
    _ensure_enabled(provider)
    form = dict(await request.form())

    context = SessionCallbackContext(request, form, _callback_url(request))
    try:
        await run_in_threadpool(provider.callback, context)
    except SamlAuthError as e:
        return _error_response(e)

    return RedirectResponse(url=context.redirect_url, status_code=303)


@router.get("/metadata")
def saml_metadata(
    request: Request,
    provider: SamlIdentityProvider = Depends(get_identity_provider),
):
    """SP Metadata endpoint: entity ID, ACS URL and, when configured, the SP certificate."""
    _ensure_enabled(provider)
    try:
        metadata = provider.sp_metadata(_callback_url(request))
    except ConfigurationError as e:
        return _error_response(e)
    return Response(content=metadata, media_type="application/xml")
