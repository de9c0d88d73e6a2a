# saml_sp/config.py
"""
Application configuration.
Supports loading secrets from either .env or HashiCorp Vault.

Settings holds the raw values as read from the environment. SamlSettings
turns them into a validated, immutable ProviderConfig every time it is
asked, so a configuration change is picked up on the next request.
"""

import os
import logging
from dataclasses import dataclass
from urllib.parse import urlparse

from cryptography import x509
from onelogin.saml2.constants import OneLogin_Saml2_Constants
from onelogin.saml2.utils import OneLogin_Saml2_Utils
from pydantic_settings import BaseSettings

from saml_sp.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_NAME = "SAML"
DEFAULT_MAX_RESPONSE_SIZE = 256 * 1024


def get_secret_from_vault(secret_path: str, key: str) -> str | None:
    """
    Fetch a secret from HashiCorp Vault (KV v2 secrets engine).
    Returns None if Vault is unavailable, the app then falls back to .env.
    """
    try:
        import hvac

        vault_addr = os.getenv("VAULT_ADDR", "http://127.0.0.1:8200")
        vault_token = os.getenv("VAULT_TOKEN")

        if not vault_token:
            logger.info("No VAULT_TOKEN set, skipping Vault")
            return None

        client = hvac.Client(url=vault_addr, token=vault_token)

        if not client.is_authenticated():
            logger.warning("Vault authentication failed")
            return None

        secret = client.secrets.kv.v2.read_secret_version(path=secret_path)
        value = secret["data"]["data"].get(key)
        logger.info(f"Loaded '{key}' from Vault path '{secret_path}'")
        return value

    except Exception as e:
        logger.warning(f"Vault error: {e}")
        return None


class Settings(BaseSettings):
    """App settings. Priority: Vault > environment variables > .env file."""

    # SAML identity provider
    saml_enabled: bool = False
    saml_provider_name: str = DEFAULT_PROVIDER_NAME
    saml_login_url: str = ""
    saml_provider_id: str = ""
    saml_application_id: str = ""
    saml_certificate: str = ""

    # Attribute mapping
    saml_user_login_attribute: str = ""
    saml_user_name_attribute: str = ""
    saml_user_email_attribute: str = ""
    saml_group_attribute: str = ""

    # Optional SP key pair, AuthnRequests are signed when both are set
    saml_sp_certificate: str = ""
    saml_sp_private_key: str = ""

    saml_allowed_clock_skew: int = OneLogin_Saml2_Constants.ALLOWED_CLOCK_DRIFT
    saml_max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE
    saml_replay_db_url: str = "sqlite:///./saml_messages.db"

    # App
    server_base_url: str = ""
    session_secret: str = "change-me-in-production"
    log_level: str = "INFO"

    # Vault
    vault_enabled: bool = False
    vault_addr: str = "http://127.0.0.1:8200"
    vault_token: str = ""
    vault_secret_path: str = "saml-sp-auth/idp"

    class Config:
        env_file = ".env"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)

        if self.vault_enabled:
            certificate = get_secret_from_vault(self.vault_secret_path, "certificate")
            if certificate:
                self.saml_certificate = certificate
                logger.info("Using IdP certificate from Vault")

            private_key = get_secret_from_vault(self.vault_secret_path, "sp_private_key")
            if private_key:
                self.saml_sp_private_key = private_key
                logger.info("Using SP private key from Vault")


@dataclass(frozen=True)
class ProviderConfig:
    """Validated snapshot of the SAML settings."""

    enabled: bool
    provider_name: str
    login_url: str
    provider_id: str
    application_id: str
    certificate: str
    login_attribute: str
    name_attribute: str
    email_attribute: str | None = None
    group_attribute: str | None = None
    sp_certificate: str | None = None
    sp_private_key: str | None = None
    allowed_clock_skew: int = OneLogin_Saml2_Constants.ALLOWED_CLOCK_DRIFT
    max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE

    @property
    def signs_authn_requests(self) -> bool:
        return bool(self.sp_certificate and self.sp_private_key)


def format_certificate(certificate: str) -> str:
    """Accept a full PEM or a bare base64 body and return a normalized PEM."""
    return OneLogin_Saml2_Utils.format_cert(certificate.strip())


def load_certificate(certificate: str) -> x509.Certificate:
    """Parse a PEM (or bare base64) X.509 certificate. Raises ValueError."""
    return x509.load_pem_x509_certificate(format_certificate(certificate).encode("ascii"))


def _is_absolute_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class SamlSettings:
    """
    Read-only view over Settings, producing a ProviderConfig on demand.

    Nothing is cached: the underlying Settings object is read on every call,
    which keeps this safe to share between concurrent requests.
    """

    REQUIRED_FIELDS = {
        "saml_login_url": "login URL",
        "saml_provider_id": "provider id",
        "saml_application_id": "application id",
        "saml_certificate": "certificate",
    }

    def __init__(self, settings: Settings):
        self._settings = settings

    def is_enabled(self) -> bool:
        return bool(self._settings.saml_enabled)

    def provider_name(self) -> str:
        return self._settings.saml_provider_name or DEFAULT_PROVIDER_NAME

    def get(self) -> ProviderConfig:
        """
        Build the ProviderConfig.
        Raises ConfigurationError if SAML is disabled or misconfigured.
        """
        s = self._settings
        if not s.saml_enabled:
            raise ConfigurationError("SAML authentication is disabled")

        missing = [label for field, label in self.REQUIRED_FIELDS.items() if not getattr(s, field).strip()]
        if missing:
            raise ConfigurationError(f"Missing SAML settings: {', '.join(missing)}")

        login_url = s.saml_login_url.strip()
        if not _is_absolute_http_url(login_url):
            raise ConfigurationError(f"SAML login URL is not a valid http(s) URL: '{login_url}'")

        try:
            load_certificate(s.saml_certificate)
        except ValueError:
            raise ConfigurationError("SAML IdP certificate cannot be parsed")

        sp_certificate = s.saml_sp_certificate.strip() or None
        sp_private_key = s.saml_sp_private_key.strip() or None
        if sp_certificate:
            try:
                load_certificate(sp_certificate)
            except ValueError:
                raise ConfigurationError("SAML SP certificate cannot be parsed")

        return ProviderConfig(
            enabled=True,
            provider_name=self.provider_name(),
            login_url=login_url,
            provider_id=s.saml_provider_id.strip(),
            application_id=s.saml_application_id.strip(),
            certificate=format_certificate(s.saml_certificate),
            login_attribute=s.saml_user_login_attribute.strip(),
            name_attribute=s.saml_user_name_attribute.strip(),
            email_attribute=s.saml_user_email_attribute.strip() or None,
            group_attribute=s.saml_group_attribute.strip() or None,
            sp_certificate=format_certificate(sp_certificate) if sp_certificate else None,
            sp_private_key=OneLogin_Saml2_Utils.format_private_key(sp_private_key) if sp_private_key else None,
            allowed_clock_skew=s.saml_allowed_clock_skew,
            max_response_size=s.saml_max_response_size,
        )


settings = Settings()
