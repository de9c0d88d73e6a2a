# saml_sp/auth/attributes.py
"""Mapping of assertion attributes onto a UserIdentity."""

import logging
from dataclasses import dataclass, field

from onelogin.saml2.xml_utils import OneLogin_Saml2_XML

from saml_sp.auth.codec import SamlResponseEnvelope
from saml_sp.config import ProviderConfig
from saml_sp.errors import MissingAttributeError

logger = logging.getLogger(__name__)

AttributeBag = dict[str, list[str]]


@dataclass(frozen=True)
class UserIdentity:
    """Identity handed to the session layer once a response is trusted."""

    provider_login: str
    name: str
    email: str | None = None
    groups: frozenset[str] = field(default_factory=frozenset)


def extract_attributes(envelope: SamlResponseEnvelope) -> AttributeBag:
    """
    Collect the attributes of the assertion, name -> ordered values.
    Attributes repeated across statements are merged in document order.
    """
    bag: AttributeBag = {}
    attributes = OneLogin_Saml2_XML.query(envelope.assertion, "./saml:AttributeStatement/saml:Attribute")
    for attribute in attributes:
        name = attribute.get("Name")
        if not name:
            continue
        values = bag.setdefault(name, [])
        for value in OneLogin_Saml2_XML.query(attribute, "./saml:AttributeValue"):
            text = "".join(value.itertext()).strip()
            if text:
                values.append(text)
    return bag


def _first(bag: AttributeBag, name: str | None) -> str | None:
    if not name:
        return None
    values = bag.get(name)
    return values[0] if values else None


def map_identity(envelope: SamlResponseEnvelope, config: ProviderConfig) -> UserIdentity:
    bag = extract_attributes(envelope)

    login = _first(bag, config.login_attribute)
    if login is None:
        raise MissingAttributeError("login is missing")

    name = _first(bag, config.name_attribute)
    if name is None:
        raise MissingAttributeError("name is missing")

    groups: frozenset[str] = frozenset()
    if config.group_attribute:
        groups = frozenset(bag.get(config.group_attribute, ()))

    identity = UserIdentity(
        provider_login=login,
        name=name,
        email=_first(bag, config.email_attribute),
        groups=groups,
    )
    logger.debug(f"Mapped SAML identity '{login}' with {len(groups)} group(s)")
    return identity
