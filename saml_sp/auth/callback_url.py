# saml_sp/auth/callback_url.py
"""
Reconciliation of the callback URL with the response Destination.

The IdP embeds the SP URL it believes it is answering. Behind a reverse
proxy that terminates TLS, the application sees http:// while the IdP posted
to https://, so the X-Forwarded-Proto header is applied before comparing.

Normalization rules:
- scheme and host are compared case-insensitively
- default ports (80 for http, 443 for https) are dropped, other ports count
- the path is compared exactly, an empty path is the same as "/"
- query string and fragment are ignored
"""

import logging
from urllib.parse import urlsplit, urlunsplit

from saml_sp.errors import CallbackMismatchError

logger = logging.getLogger(__name__)

FORWARDED_PROTO_HEADER = "X-Forwarded-Proto"
DEFAULT_PORTS = {"http": 80, "https": 443}


def reconcile(request_url: str, forwarded_proto: str | None = None) -> str:
    """Return the externally visible URL of the current request."""
    if not forwarded_proto:
        return request_url

    # Chained proxies send a list, the first entry is the client-facing one
    proto = forwarded_proto.split(",")[0].strip().lower()
    if proto not in DEFAULT_PORTS:
        logger.warning(f"Ignoring unsupported {FORWARDED_PROTO_HEADER} value: {forwarded_proto!r}")
        return request_url

    parts = urlsplit(request_url)
    return urlunsplit((proto, parts.netloc, parts.path, parts.query, parts.fragment))


def normalize(url: str) -> tuple[str, str, str, str]:
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        # Unparsable port: keep it verbatim so it only matches itself
        return scheme, host, parts.netloc.rpartition(":")[2], parts.path or "/"
    if port is None or port == DEFAULT_PORTS.get(scheme):
        return scheme, host, "", parts.path or "/"
    return scheme, host, str(port), parts.path or "/"


def compare(effective_url: str, destination: str) -> None:
    """Raise CallbackMismatchError unless both URLs designate the same endpoint."""
    if normalize(effective_url) != normalize(destination):
        raise CallbackMismatchError(
            f"The response was received at {effective_url} instead of {destination}"
        )
