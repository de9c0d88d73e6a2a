# saml_sp/main.py
"""
SAML Service Provider: FastAPI app with SP-initiated SSO.
"""

import html
import logging

from fastapi import FastAPI, Request, Depends
from fastapi.responses import RedirectResponse, HTMLResponse
from starlette.middleware.sessions import SessionMiddleware

from saml_sp.auth.dependencies import get_current_user, get_identity_provider
from saml_sp.auth.provider import SamlIdentityProvider
from saml_sp.auth.saml_routes import router as saml_router
from saml_sp.config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="SAML Service Provider", version="0.1.0")
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
app.include_router(saml_router)


@app.get("/", response_class=HTMLResponse)
async def home(request: Request, provider: SamlIdentityProvider = Depends(get_identity_provider)):
    """Public landing page."""
    user = request.session.get("user")

    if user:
        body = f"""
            <p>Logged in as <strong>{html.escape(user['name'])}</strong></p>
            <a href="/protected">Go to Dashboard</a> | <a href="/logout">Log out</a>
        """
    elif provider.is_enabled():
        body = f'<a href="/saml/login">Log in with {html.escape(provider.name)}</a>'
    else:
        body = "<p>SAML authentication is disabled.</p>"

    return f"""
    <html>
        <head><title>SAML Service Provider</title></head>
        <body style="font-family: sans-serif; text-align: center; padding-top: 4rem;">
            <h1>SAML Service Provider</h1>
            {body}
        </body>
    </html>
    """


@app.get("/protected", response_class=HTMLResponse)
async def protected(request: Request, user: dict = Depends(get_current_user)):
    """Protected route, requires authentication."""
    groups = ", ".join(html.escape(group) for group in user.get("groups", [])) or "none"
    return f"""
    <html>
        <head><title>Dashboard</title></head>
        <body style="font-family: sans-serif; padding: 2rem;">
            <h1>Protected Dashboard</h1>
            <p>Your identity was verified via SAML.</p>
            <dl>
                <dt>Login</dt><dd>{html.escape(user['sub'])}</dd>
                <dt>Name</dt><dd>{html.escape(user['name'])}</dd>
                <dt>Email</dt><dd>{html.escape(user.get('email') or '-')}</dd>
                <dt>Groups</dt><dd>{groups}</dd>
            </dl>
            <a href="/logout">Log out</a>
        </body>
    </html>
    """


@app.get("/logout")
async def logout(request: Request):
    """Clear session and redirect to home."""
    request.session.clear()
    return RedirectResponse(url="/")


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "version": "0.1.0"}
