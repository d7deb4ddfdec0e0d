"""Authenticated HTTP transport for the Podio API.

Transport sends API requests and file uploads with the client's current
credential and turns failed responses into typed errors. When a request
fails because its access token expired, it asks the Authenticator for a
refresh and replays the original request once.
"""

import asyncio
import base64
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from .errors import (
    ForbiddenError,
    PodioError,
    UnsupportedOperationError,
    error_for_status,
)
from .oauth.authenticator import Authenticator
from .oauth.tokens import AuthType
from .utils import parse_response_body, resolve_request_url

logger = logging.getLogger(__name__)

FILE_PATH = "/file"

# Methods whose data is sent as query parameters rather than a body
QUERY_METHODS = {"GET", "DELETE", "HEAD"}


class RequestType(str, Enum):
    """Kind of call a RequestDescriptor replays."""

    GENERIC = "generic"
    FILE = "file"


@dataclass(frozen=True)
class RequestDescriptor:
    """Everything needed to replay a request verbatim after a refresh."""

    request_type: RequestType
    url: str
    method: str = "POST"
    path: str | None = None
    data: Any = None
    basic_auth: bool = False
    form: bool = False
    file_path: str | None = None
    file_name: str | None = None


def format_method(method: str) -> str:
    """Normalize an HTTP verb ("del" and "delete" become "DELETE")."""
    method = method.upper()
    if method == "DEL":
        return "DELETE"
    return method


def is_expired_token_error(body: Any) -> bool:
    """Check whether a 401 body reports an expired access token."""
    return isinstance(body, dict) and body.get("error_description") == "expired_token"


class Transport:
    """Sends authenticated requests and recovers from expired tokens.

    Usage:
        transport = Transport(authenticator, http_client)
        items = await transport.request("GET", "/item/app/123/")

    Retry is single-shot: a replayed request never triggers another refresh.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        http: httpx.AsyncClient,
        silent: bool = False,
    ):
        """Initialize the transport.

        Args:
            authenticator: Source of credentials and refreshes
            http: HTTP client used for API calls
            silent: If True, classified errors are logged and the call
                returns None instead of raising. Credentials are still
                cleared on HTTP 401.
        """
        self._auth = authenticator
        self._http = http
        self.silent = silent

    @property
    def api_url(self) -> str:
        return self._auth.api_url

    # Request decoration

    def _basic_auth_header(self) -> str:
        identity = self._auth.identity
        raw = f"{identity.client_id}:{identity.client_secret or ''}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def _headers(self, basic_auth: bool) -> tuple[dict[str, str], str | None]:
        """Build the Authorization header.

        Returns:
            Headers and the access token they carry (None for basic auth)
        """
        if basic_auth:
            return {"Authorization": self._basic_auth_header()}, None

        credential = self._auth.credential
        if credential is None:
            raise ForbiddenError("Authentication has not been performed")
        return {"Authorization": credential.get_auth_header()}, credential.access_token

    def _add_cors(self, request: httpx.Request) -> httpx.Request:
        # Only client (browser-style) auth sends ambient cookies along
        if self._auth.auth_type is not AuthType.CLIENT:
            request.headers.pop("Cookie", None)
        return request

    def _build_request(self, descriptor: RequestDescriptor, headers: dict[str, str]) -> httpx.Request:
        kwargs: dict[str, Any] = {"headers": headers}

        if descriptor.data:
            if descriptor.method in QUERY_METHODS:
                kwargs["params"] = descriptor.data
            elif descriptor.form:
                kwargs["data"] = descriptor.data
            else:
                kwargs["json"] = descriptor.data

        return self._http.build_request(descriptor.method, descriptor.url, **kwargs)

    # Public API

    async def request(
        self,
        method: str,
        path: str,
        data: Any = None,
        *,
        basic_auth: bool = False,
        form: bool = False,
    ) -> Any:
        """Call an API endpoint.

        Args:
            method: HTTP verb (case-insensitive; "del" means DELETE)
            path: Endpoint path, optionally with a query string
            data: Query parameters for GET/DELETE, body for POST/PUT
            basic_auth: Authenticate with the client id and secret instead of
                the bearer token (for endpoints outside OAuth)
            form: Send the body form-encoded instead of as JSON

        Returns:
            Parsed response body

        Raises:
            ForbiddenError: If no credential is present and basic_auth is off
            PodioError: The classified error for a failed response
        """
        descriptor = RequestDescriptor(
            request_type=RequestType.GENERIC,
            url=resolve_request_url(self.api_url, path),
            method=format_method(method),
            path=path,
            data=data,
            basic_auth=basic_auth,
            form=form,
        )
        return await self._dispatch(descriptor)

    async def upload_file(self, file_path: str | os.PathLike[str], file_name: str) -> Any:
        """Upload a file.

        Only confidential clients (server and password authentication) may
        upload.

        Args:
            file_path: Local path of the file to send
            file_name: Name the file gets on Podio

        Returns:
            Parsed response body describing the uploaded file

        Raises:
            UnsupportedOperationError: For client authentication
            ForbiddenError: If no credential is present
            PodioError: If file_path is not a readable file (the OSError is
                chained as the cause), or the classified error for a failed
                response
        """
        if not self._auth.identity.is_confidential():
            raise UnsupportedOperationError(
                "File uploads are only supported for server and password authentication"
            )
        if not os.path.isfile(file_path):
            raise PodioError(f"File not found: {os.fspath(file_path)}")

        descriptor = RequestDescriptor(
            request_type=RequestType.FILE,
            url=resolve_request_url(self.api_url, FILE_PATH),
            method="POST",
            file_path=os.fspath(file_path),
            file_name=file_name,
        )
        return await self._dispatch(descriptor)

    # Dispatch and classification

    async def _dispatch(self, descriptor: RequestDescriptor, allow_refresh: bool = True) -> Any:
        await self._auth.ensure_loaded()
        # Requests issued during a refresh wait for the new credential
        await self._auth.wait_for_refresh()

        headers, access_token = self._headers(descriptor.basic_auth)

        try:
            response = await self._send(descriptor, headers)
        except httpx.RequestError as e:
            logger.warning(f"{descriptor.method} {descriptor.url} failed: {e}")
            return self._fail(PodioError(f"Network error: {e}", url=descriptor.url), e)

        body = parse_response_body(response)

        if response.is_success:
            return body

        status = response.status_code
        logger.debug(f"{descriptor.method} {descriptor.url} returned HTTP {status}")

        if (
            status == 401
            and allow_refresh
            and not descriptor.basic_auth
            and is_expired_token_error(body)
            and self._auth.can_refresh(access_token)
        ):
            return await self._refresh_and_retry(descriptor, body, status, access_token)

        return await self._handle_error(body, status, descriptor.url)

    async def _send(self, descriptor: RequestDescriptor, headers: dict[str, str]) -> httpx.Response:
        if descriptor.request_type is RequestType.FILE:
            file_path = str(descriptor.file_path)
            try:
                content = await asyncio.to_thread(Path(file_path).read_bytes)
            except OSError as e:
                raise PodioError(f"Could not read {file_path}: {e}", url=descriptor.url) from e
            request = self._http.build_request(
                "POST",
                descriptor.url,
                headers=headers,
                data={"filename": descriptor.file_name},
                files={"source": (os.path.basename(file_path), content)},
            )
            return await self._http.send(self._add_cors(request))

        logger.debug(f"{descriptor.method} {descriptor.url}")
        request = self._build_request(descriptor, headers)
        return await self._http.send(self._add_cors(request))

    async def _refresh_and_retry(
        self,
        descriptor: RequestDescriptor,
        body: Any,
        status: int,
        access_token: str | None,
    ) -> Any:
        logger.info(f"Access token expired, refreshing before retrying {descriptor.url}")
        try:
            await self._auth.refresh_token(access_token)
        except PodioError as e:
            error = error_for_status(status, body, descriptor.url)
            return self._fail(error, e)

        return await self._dispatch(descriptor, allow_refresh=False)

    async def _handle_error(self, body: Any, status: int, url: str) -> Any:
        if status == 401:
            await self._auth.clear_authentication()
        return self._fail(error_for_status(status, body, url))

    def _fail(self, error: PodioError, cause: BaseException | None = None) -> None:
        """Raise a classified error, or log it in silent mode."""
        if self.silent:
            logger.warning(f"Suppressed {type(error).__name__} for {error.url}: {error.message}")
            return None
        raise error from cause
