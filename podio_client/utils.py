"""URL and response helpers shared by the authenticator and transport."""

from typing import Any
from urllib.parse import parse_qsl, urlsplit, urlunsplit

import httpx

DEFAULT_PORTS = {"http": 80, "https": 443}


def get_api_origin(api_url: str) -> str:
    """Return scheme and host of the API base URL.

    The port is kept only when it is not the scheme's default, so
    "https://api.podio.com:443" yields "https://api.podio.com".
    """
    parsed = urlsplit(api_url)
    scheme = parsed.scheme or "https"
    host = parsed.hostname or ""
    if parsed.port and parsed.port != DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}:{parsed.port}"
    return f"{scheme}://{host}"


def resolve_request_url(api_url: str, path: str) -> str:
    """Resolve a request path (optionally with a query) against the API URL.

    The path and query of the API URL are replaced; scheme, host and port
    are kept as configured.

    Examples:
        >>> resolve_request_url("https://api.podio.com:443", "/item/1?fields=x")
        'https://api.podio.com:443/item/1?fields=x'
    """
    target = urlsplit(path)
    base = urlsplit(api_url)
    return urlunsplit((base.scheme, base.netloc, target.path, target.query, ""))


def parse_hash_params(fragment: str | None) -> dict[str, str]:
    """Parse the parameters of a URL fragment.

    Args:
        fragment: Fragment such as "#access_token=abc&expires_in=28800",
            with or without the leading "#"

    Returns:
        Dictionary of fragment parameters; empty if there are none
    """
    if not fragment:
        return {}
    return dict(parse_qsl(fragment.lstrip("#"), keep_blank_values=True))


def parse_response_body(response: httpx.Response) -> Any:
    """Parse a response body as JSON, falling back to text.

    Returns None for empty bodies.
    """
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
