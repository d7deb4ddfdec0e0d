"""High-level Podio API client.

PodioClient composes an Authenticator (credential lifecycle) and a
Transport (authenticated requests) around one shared httpx client.
"""

import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from .config import DEFAULT_API_URL, ClientConfig
from .errors import ForbiddenError
from .oauth.authenticator import (
    Authenticator,
    AuthState,
    FragmentSource,
    RefreshedHook,
    RefreshHook,
)
from .oauth.store import EncryptedFileSessionStore, SessionStore
from .oauth.tokens import AuthType, ClientIdentity, Credential
from .transport import Transport

logger = logging.getLogger(__name__)

THUMBNAIL_SIZES = ("badge", "extra_large", "large", "medium", "small", "tiny")


class PodioClient:
    """Client for the Podio REST API.

    Usage:
        async with PodioClient(
            {"auth_type": "password", "client_id": "app", "client_secret": "s3cret"},
            session_store=MemorySessionStore(),
        ) as podio:
            await podio.authenticate_with_credentials("me@example.com", "pw")
            org = await podio.request("GET", "/org/")
    """

    def __init__(
        self,
        auth_options: Mapping[str, Any] | ClientIdentity | None,
        *,
        session_store: SessionStore | None = None,
        api_url: str = DEFAULT_API_URL,
        on_token_will_refresh: RefreshHook | None = None,
        after_token_refreshed: RefreshedHook | None = None,
        silent: bool = False,
        fragment_source: FragmentSource | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the client.

        Args:
            auth_options: auth_type, client_id and client_secret (the secret
                may be omitted for client authentication)
            session_store: Optional store for persisting the credential
            api_url: The API base URL
            on_token_will_refresh: Client mode hook that re-authenticates when
                the token expired
            after_token_refreshed: Called with the new credential payload
                after every refresh
            silent: Log classified request errors instead of raising them
            fragment_source: Client mode; returns the current redirect fragment
            http_client: Optional HTTP client; one is created if omitted
            timeout: Timeout in seconds for a created HTTP client

        Raises:
            ConfigurationError: If auth_options are missing or incomplete
        """
        if isinstance(auth_options, ClientIdentity):
            self.identity = auth_options
        else:
            self.identity = ClientIdentity.from_options(auth_options)

        self.api_url = api_url
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http_client is None

        self.authenticator = Authenticator(
            self.identity,
            self._http,
            api_url=api_url,
            session_store=session_store,
            on_token_will_refresh=on_token_will_refresh,
            after_token_refreshed=after_token_refreshed,
            fragment_source=fragment_source,
        )
        self.transport = Transport(self.authenticator, self._http, silent=silent)

    @classmethod
    def from_config(cls, config: ClientConfig, **kwargs: Any) -> "PodioClient":
        """Create a client from loaded configuration.

        An EncryptedFileSessionStore is used when config.session_dir is set
        and no session_store is passed explicitly.
        """
        if config.session_dir is not None and "session_store" not in kwargs:
            kwargs["session_store"] = EncryptedFileSessionStore(config.session_dir)
        return cls(config.auth_options(), api_url=config.api_url, **kwargs)

    async def __aenter__(self) -> "PodioClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    # State

    @property
    def auth_type(self) -> AuthType:
        return self.identity.auth_type

    @property
    def credential(self) -> Credential | None:
        return self.authenticator.credential

    @property
    def state(self) -> AuthState:
        return self.authenticator.state

    @property
    def silent(self) -> bool:
        return self.transport.silent

    # Authentication

    async def is_authenticated(self) -> bool:
        return await self.authenticator.is_authenticated()

    async def refresh_auth_from_store(self) -> None:
        await self.authenticator.refresh_auth_from_store()

    def get_authorization_url(self, redirect_url: str) -> str:
        return self.authenticator.get_authorization_url(redirect_url)

    def set_access_token(self, response_data: dict[str, Any]) -> Credential:
        return self.authenticator.set_access_token(response_data)

    async def get_access_token(self, auth_code: str, redirect_url: str) -> Credential:
        return await self.authenticator.get_access_token(auth_code, redirect_url)

    async def authenticate_with_credentials(self, username: str, password: str) -> Credential:
        return await self.authenticator.authenticate_with_credentials(username, password)

    async def authenticate_with_credentials_for_offering(
        self,
        username: str,
        password: str,
        offering_id: str | int | None = None,
    ) -> Credential:
        return await self.authenticator.authenticate_with_credentials_for_offering(
            username, password, offering_id
        )

    async def authenticate_with_activation_code_for_offering(
        self,
        activation_code: str,
        offering_id: str | int | None = None,
    ) -> Credential:
        return await self.authenticator.authenticate_with_activation_code_for_offering(
            activation_code, offering_id
        )

    async def authenticate_with_app(self, app_id: str | int, app_token: str) -> Credential:
        return await self.authenticator.authenticate_with_app(app_id, app_token)

    async def clear_authentication(self) -> None:
        await self.authenticator.clear_authentication()

    # Transport

    async def request(
        self,
        method: str,
        path: str,
        data: Any = None,
        *,
        basic_auth: bool = False,
        form: bool = False,
    ) -> Any:
        """Call an API endpoint. See Transport.request."""
        return await self.transport.request(method, path, data, basic_auth=basic_auth, form=form)

    async def upload_file(self, file_path: str, file_name: str) -> Any:
        """Upload a file. See Transport.upload_file."""
        return await self.transport.upload_file(file_path, file_name)

    # Helpers

    def get_thumbnail_url_for_file_link(self, link: str, size: str | None = None) -> str:
        """Build an authenticated thumbnail URL for a file link.

        Args:
            link: File link as returned by the API
            size: One of THUMBNAIL_SIZES; other values are ignored

        Returns:
            The link with the size segment appended and the access token set
            as the oauth_token query parameter

        Raises:
            ForbiddenError: If no credential is present
        """
        credential = self.credential
        if credential is None:
            raise ForbiddenError("Authentication has not been performed")

        parsed = urlsplit(link)
        path = parsed.path
        if size in THUMBNAIL_SIZES:
            path = f"{path.rstrip('/')}/{size}"

        query = [(key, value) for key, value in parse_qsl(parsed.query) if key != "oauth_token"]
        query.append(("oauth_token", credential.access_token))

        return urlunsplit((parsed.scheme, parsed.netloc, path, urlencode(query), parsed.fragment))
