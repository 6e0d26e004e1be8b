"""
OAuth Client Metadata

Generates the AT Protocol OAuth client registration document served at
/oauth-client-metadata.json. Public clients identify themselves by the URL
of this document; local development clients that are not publicly reachable
use the loopback identity format instead:

    http://localhost?redirect_uri=<encoded>&scope=<encoded>
"""

from typing import Dict, Any, Optional
from urllib.parse import urlencode, urlsplit


DEFAULT_SCOPE = "atproto transition:generic"

CALLBACK_PATH = "/oauth/callback"
METADATA_PATH = "/oauth-client-metadata.json"

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1", "[::1]")


def normalize_base_url(base_url: str) -> str:
    """Strip trailing slashes so derived URLs never contain '//'."""
    return base_url.rstrip('/')


def is_loopback_url(url: str) -> bool:
    """
    Check if a URL points at a loopback host.

    Args:
        url: Absolute URL

    Returns:
        True for localhost, 127.0.0.1 and the IPv6 loopback literal
    """
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return False
    return host in LOOPBACK_HOSTS


def build_loopback_redirect_uri(base_url: str) -> str:
    """
    Build the callback URI for a loopback base URL.

    The host is always rewritten to 127.0.0.1 (port preserved), as loopback
    redirect URIs must use an IP literal rather than "localhost".

    Args:
        base_url: Loopback base URL (e.g. http://localhost:8000)

    Returns:
        Redirect URI such as http://127.0.0.1:8000/oauth/callback
    """
    parts = urlsplit(base_url)
    netloc = "127.0.0.1"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return f"{parts.scheme}://{netloc}{CALLBACK_PATH}"


def build_loopback_client_id(redirect_uri: str, scope: str) -> str:
    """
    Build a loopback client_id.

    Args:
        redirect_uri: Loopback redirect URI
        scope: Space-separated OAuth scope

    Returns:
        client_id of the form http://localhost?redirect_uri=...&scope=...
    """
    query = urlencode({"redirect_uri": redirect_uri, "scope": scope})
    return f"http://localhost?{query}"


def generate_client_metadata(
    base_url: str,
    app_name: str,
    scope: Optional[str] = None,
    logo_uri: Optional[str] = None,
    policy_uri: Optional[str] = None
) -> Dict[str, Any]:
    """
    Generate the OAuth client metadata document.

    Pure function: identical input yields identical output.

    Args:
        base_url: Public base URL of the application
        app_name: Display name shown on the consent screen
        scope: OAuth scope (default: "atproto transition:generic")
        logo_uri: Optional logo URL
        policy_uri: Optional privacy policy URL

    Returns:
        Client metadata dict
    """
    base_url = normalize_base_url(base_url)
    scope = scope or DEFAULT_SCOPE
    loopback = is_loopback_url(base_url)

    if loopback:
        redirect_uri = build_loopback_redirect_uri(base_url)
        client_id = build_loopback_client_id(redirect_uri, scope)
    else:
        redirect_uri = f"{base_url}{CALLBACK_PATH}"
        client_id = f"{base_url}{METADATA_PATH}"

    metadata = {
        "client_name": app_name,
        "client_id": client_id,
        "client_uri": base_url,
        "redirect_uris": [redirect_uri],
        "scope": scope,
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "application_type": "web",
        "token_endpoint_auth_method": "none",
        "dpop_bound_access_tokens": True,
    }

    if logo_uri:
        metadata["logo_uri"] = logo_uri

    if policy_uri:
        metadata["policy_uri"] = policy_uri

    return metadata


def parse_scope_string(scope: str) -> list[str]:
    """
    Parse space-separated scope string into list.

    Args:
        scope: Space-separated scopes

    Returns:
        List of individual scope strings
    """
    if not scope:
        return []
    return scope.strip().split()


def validate_client_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate that metadata is consistent and well-formed.

    Args:
        metadata: Output of generate_client_metadata

    Returns:
        Validation result dict with status and any errors
    """
    errors = []
    client_uri = metadata.get("client_uri", "")

    if not client_uri:
        errors.append("Client URI not configured")
    elif not client_uri.startswith(('http://', 'https://')):
        errors.append(f"Invalid client URI scheme: {client_uri}")

    if "atproto" not in parse_scope_string(metadata.get("scope", "")):
        errors.append("Scope must include 'atproto'")

    redirect_uris = metadata.get("redirect_uris", [])
    if len(redirect_uris) != 1:
        errors.append("Exactly one redirect URI expected")

    # Public clients must be served over HTTPS
    if client_uri.startswith('http://') and not is_loopback_url(client_uri):
        errors.append("WARNING: Using HTTP for non-loopback client (should use HTTPS)")

    hard_errors = [e for e in errors if not e.startswith("WARNING:")]

    return {
        "valid": len(hard_errors) == 0,
        "errors": hard_errors,
        "warnings": [e for e in errors if e.startswith("WARNING:")]
    }
