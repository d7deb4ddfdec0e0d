"""OAuth grant exchange against the Podio token endpoint.

Every grant type (authorization_code, password, refresh_token, app,
activation_code) is a form-encoded POST to the same endpoint with the
client credentials merged in. This module builds those requests and the
browser authorization URL, and interprets token endpoint responses.
"""

import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from ..errors import AuthorizationError, PodioError, UnsupportedOperationError
from ..utils import get_api_origin, parse_response_body
from .tokens import AuthType, ClientIdentity

logger = logging.getLogger(__name__)

AUTH_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"

RESPONSE_TYPES = {
    AuthType.SERVER: "code",
    AuthType.CLIENT: "token",
}


def token_endpoint(api_url: str) -> str:
    """Get the token endpoint URL for an API base URL."""
    return get_api_origin(api_url) + TOKEN_PATH


def build_authorization_url(
    api_url: str,
    identity: ClientIdentity,
    redirect_uri: str,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        api_url: The API base URL
        identity: Client identity; its auth type selects the response type
        redirect_uri: Where the authorization server sends the user back

    Returns:
        Complete authorization URL

    Raises:
        UnsupportedOperationError: For password authentication, which has
            no redirect-based flow
    """
    response_type = RESPONSE_TYPES.get(identity.auth_type)
    if response_type is None:
        raise UnsupportedOperationError(
            "Authorization URLs are not supported for password authentication"
        )

    params: dict[str, str] = {
        "client_id": identity.client_id,
        "redirect_uri": redirect_uri,
        "response_type": response_type,
    }

    return f"{get_api_origin(api_url)}{AUTH_PATH}?{urlencode(params)}"


async def exchange_grant(
    http: httpx.AsyncClient,
    api_url: str,
    identity: ClientIdentity,
    request_data: dict[str, Any],
) -> dict[str, Any]:
    """Run one grant exchange against the token endpoint.

    Args:
        http: HTTP client used for the request
        api_url: The API base URL
        identity: Client identity whose id and secret are merged in
        request_data: Grant fields, including grant_type

    Returns:
        Token endpoint response as dictionary

    Raises:
        AuthorizationError: If the endpoint answers with a non-2xx status
        PodioError: If the request could not be sent at all
    """
    url = token_endpoint(api_url)
    grant_type = request_data.get("grant_type")

    token_request = dict(request_data)
    token_request["client_id"] = identity.client_id
    if identity.client_secret is not None:
        token_request["client_secret"] = identity.client_secret

    logger.debug(f"Requesting {grant_type} grant from {url}")

    try:
        response = await http.post(
            url,
            data=token_request,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    except httpx.RequestError as e:
        raise PodioError(f"Network error during {grant_type} grant: {e}", url=url) from e

    body = parse_response_body(response)

    if not response.is_success:
        # Only extract safe error fields, not arbitrary response data
        reason = body.get("error_description") if isinstance(body, dict) else None
        raise AuthorizationError(
            f"Authentication for {grant_type} failed. Reason: {reason}",
            body=body,
            status=response.status_code,
            url=url,
        )

    if not isinstance(body, dict):
        raise AuthorizationError(
            f"Authentication for {grant_type} returned an unexpected body",
            body=body,
            status=response.status_code,
            url=url,
        )

    return body
