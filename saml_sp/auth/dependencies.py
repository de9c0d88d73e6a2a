# saml_sp/auth/dependencies.py
"""FastAPI dependencies for authentication."""

from functools import lru_cache

from fastapi import Request, HTTPException

from saml_sp.auth.provider import SamlIdentityProvider
from saml_sp.auth.replay import ReplayGuard
from saml_sp.config import SamlSettings, settings


@lru_cache
def get_identity_provider() -> SamlIdentityProvider:
    """
    Process-wide SAML identity provider.
    The replay store is shared by every request handled by this process.
    """
    return SamlIdentityProvider(
        SamlSettings(settings),
        ReplayGuard.from_url(settings.saml_replay_db_url),
    )


async def get_current_user(request: Request) -> dict:
    """
    Extract current user from session.
    Raises 401 if not authenticated.
    """
    user = request.session.get("user")
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please log in.",
        )
    return user
