"""
SAML troubleshooting tool.

Systematically diagnoses common SAML SSO failures: incomplete settings,
expired or mismatched IdP certificates, and rejected SAML responses.
Designed for platform engineers supporting development teams.

Usage:
    python scripts/troubleshoot_saml.py --check all
    python scripts/troubleshoot_saml.py --check config
    python scripts/troubleshoot_saml.py --check certificate
    python scripts/troubleshoot_saml.py --check response --response @captured.b64
    python scripts/troubleshoot_saml.py --check response --response PHNhbWxwOl... --callback-url https://sp.example.com/saml/acs
"""

import argparse
import sys
from datetime import datetime, timezone

from saml_sp.auth.attributes import extract_attributes
from saml_sp.auth.callback_url import compare
from saml_sp.auth.codec import AssertionCodec
from saml_sp.auth.conditions import check_conditions, check_status
from saml_sp.auth.signature import SignatureValidator
from saml_sp.config import SamlSettings, Settings, get_secret_from_vault, load_certificate
from saml_sp.errors import SamlAuthError

# Colors for terminal output
RED = "\033[91m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
CYAN = "\033[96m"
RESET = "\033[0m"
BOLD = "\033[1m"


def header(text: str):
    print(f"\n{BOLD}{CYAN}{'='*60}")
    print(f"  {text}")
    print(f"{'='*60}{RESET}\n")


def ok(text: str):
    print(f"  {GREEN}✓{RESET} {text}")


def warn(text: str):
    print(f"  {YELLOW}⚠{RESET} {text}")


def fail(text: str):
    print(f"  {RED}✗{RESET} {text}")


def hint(text: str):
    print(f"    {CYAN}→ {text}{RESET}")


# ──────────────────────────────────────────────
# CHECK 1: Configuration
# ──────────────────────────────────────────────
def check_config(settings: Settings) -> int:
    """Verify the SAML settings are complete and valid."""
    header("Check 1: Configuration")

    if not settings.saml_enabled:
        warn("SAML is disabled (SAML_ENABLED=false)")
        return 0

    try:
        config = SamlSettings(settings).get()
    except SamlAuthError as e:
        fail(e.message)
        hint("Set the missing values in .env or environment variables")
        return 1

    ok(f"Provider name = {config.provider_name}")
    ok(f"SAML_LOGIN_URL = {config.login_url}")
    ok(f"SAML_PROVIDER_ID = {config.provider_id}")
    ok(f"SAML_APPLICATION_ID = {config.application_id}")

    issues = 0
    for label, value in (("login", config.login_attribute), ("name", config.name_attribute)):
        if value:
            ok(f"{label} attribute = {value}")
        else:
            fail(f"No attribute configured for {label}, every callback will be rejected")
            issues += 1
    if not config.group_attribute:
        warn("No group attribute configured, groups will not be synchronized")

    if config.login_url.startswith("http://"):
        warn("IdP login URL is not HTTPS")
    if config.signs_authn_requests:
        ok("AuthnRequests are signed with the SP key pair")
    else:
        warn("AuthnRequests are not signed (no SP certificate/private key)")

    return issues


# ──────────────────────────────────────────────
# CHECK 2: IdP certificate
# ──────────────────────────────────────────────
def check_certificate(settings: Settings) -> int:
    """Parse the IdP certificate and check its validity period."""
    header("Check 2: IdP Certificate")

    if not settings.saml_certificate:
        fail("SAML_CERTIFICATE is not set")
        return 1

    try:
        certificate = load_certificate(settings.saml_certificate)
    except ValueError:
        fail("SAML_CERTIFICATE cannot be parsed as an X.509 certificate")
        hint("Paste the PEM or the base64 body from the IdP metadata <ds:X509Certificate>")
        return 1

    ok(f"Subject: {certificate.subject.rfc4514_string()}")
    now = datetime.now(timezone.utc)
    not_after = certificate.not_valid_after_utc
    if not_after < now:
        # Signatures still verify against an expired certificate, IdP rollover is likely overdue
        warn(f"Certificate expired on {not_after.isoformat()}")
        hint("Download the current signing certificate from the IdP")
        return 1

    remaining = not_after - now
    ok(f"Valid until {not_after.isoformat()} ({remaining.days} days remaining)")
    if remaining.days < 30:
        warn("Certificate expires in less than 30 days, plan the rollover")
    return 0


# ──────────────────────────────────────────────
# CHECK 3: Captured SAML response
# ──────────────────────────────────────────────
def check_response(settings: Settings, raw: str, callback_url: str = "") -> int:
    """Decode a captured SAMLResponse and run every check except replay."""
    header("Check 3: SAML Response Analysis")

    if not raw:
        warn("No response provided, use --response <base64> or --response @file")
        hint("Copy the SAMLResponse form field from browser DevTools > Network > acs request")
        return 0

    if raw.startswith("@"):
        with open(raw[1:], encoding="utf-8") as f:
            raw = f.read()

    try:
        config = SamlSettings(settings).get()
        envelope = AssertionCodec(config.max_response_size).decode(raw)
    except SamlAuthError as e:
        fail(e.message)
        return 1

    ok(f"Message ID: {envelope.message_id}")
    ok(f"Destination: {envelope.destination}")
    ok(f"Issue instant: {envelope.issue_instant}")
    ok(f"Issuer: {envelope.issuer or '(none on the response)'}")

    issues = 0
    checks = [("IdP status", lambda: check_status(envelope))]
    if callback_url:
        checks.append(("Destination", lambda: compare(callback_url, envelope.destination)))
    checks.append(("Signature", lambda: SignatureValidator().verify(envelope, config.certificate)))
    now = int(datetime.now(timezone.utc).timestamp())
    checks.append(("Conditions", lambda: check_conditions(envelope, config, now, callback_url or None)))

    for label, check in checks:
        try:
            check()
            ok(f"{label}: passed")
        except SamlAuthError as e:
            fail(f"{label}: {e.message}")
            issues += 1

    attributes = extract_attributes(envelope)
    for name, values in attributes.items():
        ok(f"Attribute {name} = {values}")

    for label, name in (("login", config.login_attribute), ("name", config.name_attribute)):
        if name not in attributes:
            fail(f"The {label} attribute '{name}' is not in the assertion")
            hint(f"Available attributes: {sorted(attributes)}")
            issues += 1

    return issues


# ──────────────────────────────────────────────
# CHECK 4: Vault connectivity
# ──────────────────────────────────────────────
def check_vault(settings: Settings) -> int:
    """Test Vault access to the IdP certificate."""
    header("Check 4: Vault")

    if not settings.vault_enabled:
        warn("Vault is disabled (VAULT_ENABLED=false)")
        hint("Set VAULT_ENABLED=true in .env to keep the SP private key in Vault")
        return 0

    certificate = get_secret_from_vault(settings.vault_secret_path, "certificate")
    if certificate:
        ok(f"Certificate readable at '{settings.vault_secret_path}'")
        return 0

    fail(f"No certificate found at '{settings.vault_secret_path}'")
    hint(f"Store it: vault kv put secret/{settings.vault_secret_path} certificate=@idp.pem")
    return 1


# ──────────────────────────────────────────────
# CHECK 5: Common root causes
# ──────────────────────────────────────────────
def print_common_issues():
    """Print a reference guide for common SAML failures."""
    header("Reference: Common SAML Failures")

    problems = [
        (
            "SAML_SIGNATURE: Signature validation failed",
            "The IdP signs with a certificate other than SAML_CERTIFICATE",
            "Download the current signing certificate from the IdP metadata and update SAML_CERTIFICATE",
        ),
        (
            "SAML_CALLBACK_MISMATCH: response received at http://... instead of https://...",
            "A reverse proxy terminates TLS without sending X-Forwarded-Proto",
            "Configure the proxy to set X-Forwarded-Proto and to forward the original Host header",
        ),
        (
            "SAML_REPLAY: This message has already been processed",
            "The browser re-posted the response (back button, refresh) or a replay attempt",
            "Start a new login. Investigate if it repeats for different users",
        ),
        (
            "SAML_MISSING_ATTRIBUTE: login is missing",
            "The IdP does not release the attribute named in SAML_USER_LOGIN_ATTRIBUTE",
            "Add an attribute mapper at the IdP, or fix the attribute name (it is case-sensitive)",
        ),
        (
            "SAML_INVALID_ASSERTION: Assertion has expired",
            "Clock skew between this server and the IdP",
            "Sync server time with NTP, or raise SAML_ALLOWED_CLOCK_SKEW",
        ),
        (
            "SAML_CSRF_STATE: CSRF state value is invalid",
            "IdP-initiated login, or the session cookie was lost between login and callback",
            "Start from /saml/login. Check the session cookie SameSite policy",
        ),
    ]

    for problem, cause, fix in problems:
        print(f"  {RED}{BOLD}{problem}{RESET}")
        print(f"    Root cause: {cause}")
        print(f"    {CYAN}→ Fix: {fix}{RESET}")
        print()


# ──────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────
def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Diagnose SAML authentication issues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/troubleshoot_saml.py --check all
  python scripts/troubleshoot_saml.py --check response --response @captured.b64
  python scripts/troubleshoot_saml.py --check certificate
  python scripts/troubleshoot_saml.py --check reference
        """,
    )
    parser.add_argument(
        "--check",
        choices=["all", "config", "certificate", "response", "vault", "reference"],
        default="all",
        help="Which check to run (default: all)",
    )
    parser.add_argument("--response", help="Base64 SAMLResponse, or @path to a file containing it")
    parser.add_argument("--callback-url", default="", help="URL the response was posted to")

    args = parser.parse_args(argv)
    settings = settings or Settings()

    print(f"\n{BOLD}SAML Service Provider Troubleshooter{RESET}")
    print(f"{'─'*50}")

    total_issues = 0

    if args.check in ("all", "config"):
        total_issues += check_config(settings)

    if args.check in ("all", "certificate"):
        total_issues += check_certificate(settings)

    if args.check in ("all", "response"):
        total_issues += check_response(settings, args.response or "", args.callback_url)

    if args.check in ("all", "vault"):
        total_issues += check_vault(settings)

    if args.check in ("all", "reference"):
        print_common_issues()

    # Summary
    header("Summary")
    if total_issues == 0:
        ok("All checks passed, no issues detected")
    else:
        fail(f"{total_issues} issue(s) found, review the hints above")

    return total_issues


if __name__ == "__main__":
    sys.exit(main())
