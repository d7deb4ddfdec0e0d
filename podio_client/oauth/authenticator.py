"""Credential lifecycle management for the Podio client.

The Authenticator owns the client's single credential. It runs the grant
flows, round-trips the credential through an optional session store, and
refreshes it when the transport reports an expired token. It is the only
writer of the credential; the transport only reads it.

State machine:
    NO_CREDENTIAL --grant--> AUTHENTICATED
    AUTHENTICATED --expired token--> REFRESHING --ok--> AUTHENTICATED
                                                --fail--> NO_CREDENTIAL
    CHECKING_STORE is entered while a store read is in flight.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from ..config import DEFAULT_API_URL
from ..errors import (
    AuthorizationError,
    MissingFieldError,
    PodioError,
    SessionStoreError,
    UnsupportedOperationError,
)
from ..utils import parse_hash_params
from .grants import build_authorization_url, exchange_grant
from .store import SessionStore
from .tokens import AuthType, ClientIdentity, Credential

logger = logging.getLogger(__name__)

RefreshHook = Callable[[], Awaitable[None]]
RefreshedHook = Callable[[dict[str, Any]], Any]
FragmentSource = Callable[[], str | None]


class AuthState(str, Enum):
    """Authentication state of a client."""

    NO_CREDENTIAL = "no_credential"
    AUTHENTICATED = "authenticated"
    CHECKING_STORE = "checking_store"
    REFRESHING = "refreshing"


class Authenticator:
    """Acquires, stores and refreshes the client's OAuth credential.

    Usage:
        auth = Authenticator(identity, http_client, session_store=store)

        await auth.authenticate_with_credentials("user@example.com", "secret")
        if await auth.is_authenticated():
            header = auth.credential.get_auth_header()

    Refresh is single-flight: concurrent callers of refresh_token() share
    one in-flight exchange.
    """

    def __init__(
        self,
        identity: ClientIdentity,
        http: httpx.AsyncClient,
        api_url: str = DEFAULT_API_URL,
        session_store: SessionStore | None = None,
        on_token_will_refresh: RefreshHook | None = None,
        after_token_refreshed: RefreshedHook | None = None,
        fragment_source: FragmentSource | None = None,
    ):
        """Initialize the authenticator.

        If a session store is given and an event loop is running, the stored
        credential is loaded in the background right away. Otherwise it is
        loaded on the first call to ensure_loaded() or is_authenticated().

        Args:
            identity: The registered application's identity
            http: HTTP client used for grant exchanges
            api_url: The API base URL
            session_store: Optional store for credential snapshots
            on_token_will_refresh: Client mode only. Awaited when the token
                expired, since public clients cannot refresh silently. It
                must re-run an interactive flow and install a new credential,
                for example by awaiting is_authenticated() once the new
                redirect fragment is available.
            after_token_refreshed: Called with the new credential payload
                after every successful refresh. May be sync or async; its
                errors are logged.
            fragment_source: Client mode only. Returns the redirect fragment
                of the current navigation context, if any.
        """
        self.identity = identity
        self.api_url = api_url
        self._http = http
        self._session_store = session_store
        self._on_token_will_refresh = on_token_will_refresh
        self._after_token_refreshed = after_token_refreshed
        self._fragment_source = fragment_source

        self._credential: Credential | None = None
        # Bumped on every in-memory write so stale store reads are discarded
        self._generation = 0
        self._store_lock = asyncio.Lock()
        self._checking_store = False
        self._store_loaded = session_store is None
        self._load_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[Credential] | None = None
        self._consumed_fragment: str | None = None

        if session_store is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._load_task = loop.create_task(self._load_initial())

    # State

    @property
    def auth_type(self) -> AuthType:
        return self.identity.auth_type

    @property
    def credential(self) -> Credential | None:
        """The current credential, or None."""
        return self._credential

    @property
    def session_store(self) -> SessionStore | None:
        return self._session_store

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    @property
    def state(self) -> AuthState:
        """Current position in the authentication state machine."""
        if self.is_refreshing:
            return AuthState.REFRESHING
        if self._checking_store:
            return AuthState.CHECKING_STORE
        if self._credential is not None:
            return AuthState.AUTHENTICATED
        return AuthState.NO_CREDENTIAL

    def _install(self, credential: Credential) -> None:
        self._credential = credential
        self._generation += 1

    def _drop(self) -> None:
        self._credential = None
        self._generation += 1

    # Session store round-trips

    def _credential_from_snapshot(self, snapshot: dict[str, Any] | None) -> Credential | None:
        if not snapshot:
            return None
        try:
            return Credential.from_dict(snapshot, implicit=self.auth_type is AuthType.CLIENT)
        except MissingFieldError as e:
            logger.warning(f"Ignoring stored {self.auth_type.value} session: {e}")
            return None

    async def refresh_auth_from_store(self) -> None:
        """Reload the in-memory credential from the session store.

        Reads are serialized, and a read that overlaps an in-memory write
        (grant, refresh or clear) is discarded.
        """
        if self._session_store is None:
            return

        async with self._store_lock:
            generation = self._generation
            self._checking_store = True
            try:
                snapshot = await self._session_store.get(self.auth_type.value)
            finally:
                self._checking_store = False
            self._store_loaded = True

            if generation != self._generation:
                logger.debug("Credential changed during store read, keeping in-memory value")
                return

            self._credential = self._credential_from_snapshot(snapshot)
            if self._credential is not None:
                logger.debug(f"Restored {self.auth_type.value} credential from session store")

    async def _load_initial(self) -> None:
        # A credential installed since construction wins over the stored one
        if self._generation == 0:
            await self.refresh_auth_from_store()
        self._store_loaded = True

    async def ensure_loaded(self) -> None:
        """Make sure the stored credential has been loaded at least once."""
        if self._load_task is not None:
            task, self._load_task = self._load_task, None
            await task
        elif not self._store_loaded:
            await self._load_initial()

    async def _persist(self, credential: Credential | None) -> None:
        if self._session_store is None:
            return
        snapshot = credential.to_dict() if credential is not None else {}
        try:
            await self._session_store.set(snapshot, self.auth_type.value)
        except SessionStoreError:
            raise
        except Exception as e:
            raise SessionStoreError(f"Writing in the session store failed: {e}") from e

    def _install_from_response(self, response_data: dict[str, Any]) -> Credential:
        credential = Credential.from_token_response(
            response_data,
            implicit=self.auth_type is AuthType.CLIENT,
        )
        self._install(credential)
        logger.info(f"Installed new {self.auth_type.value} credential")
        return credential

    async def _on_access_token_acquired(self, response_data: dict[str, Any]) -> Credential:
        """Install a credential from a token payload and persist it.

        The in-memory credential is kept even when persisting fails.

        Raises:
            MissingFieldError: If the payload lacks a required field
            SessionStoreError: If the credential could not be persisted
        """
        credential = self._install_from_response(response_data)
        await self._persist(credential)
        return credential

    async def clear_authentication(self) -> None:
        """Drop the credential and write the empty snapshot to the store."""
        self._drop()
        logger.info(f"Cleared {self.auth_type.value} credential")
        try:
            await self._persist(None)
        except SessionStoreError as e:
            # Clearing happens on failure paths whose own error must surface
            logger.warning(f"Could not clear stored session: {e}")

    # Authentication checks

    async def is_authenticated(self) -> bool:
        """Check whether a usable credential exists.

        Refreshes the credential from the session store first. In client
        mode, an access token in the redirect fragment counts as well; it is
        promoted to a credential and persisted the first time it is seen.

        Returns:
            True if authenticated
        """
        await self.wait_for_refresh()
        if self._load_task is not None:
            await self.ensure_loaded()
        await self.refresh_auth_from_store()

        if self._credential is not None:
            return True

        return await self._has_client_side_redirect()

    async def _has_client_side_redirect(self) -> bool:
        if self.auth_type is not AuthType.CLIENT or self._fragment_source is None:
            return False

        fragment = self._fragment_source()
        if not fragment or fragment == self._consumed_fragment:
            return False

        params = parse_hash_params(fragment)
        if "access_token" not in params:
            return False

        self._consumed_fragment = fragment
        try:
            await self._on_access_token_acquired(params)
        except MissingFieldError as e:
            logger.warning(f"Redirect fragment carries an incomplete token: {e}")
            return False

        logger.debug("Authenticated from redirect fragment")
        return True

    def set_access_token(self, response_data: dict[str, Any]) -> Credential:
        """Install a credential from an existing token payload.

        Used by embedding layers that keep the token in their own session.
        The credential is not written to the session store, so with a store
        configured the next refresh_auth_from_store() replaces it.
        """
        return self._install_from_response(response_data)

    # Grant flows

    def get_authorization_url(self, redirect_url: str) -> str:
        """Build the URL that starts a redirect-based flow.

        Raises:
            UnsupportedOperationError: For password authentication
        """
        return build_authorization_url(self.api_url, self.identity, redirect_url)

    async def _authenticate(self, request_data: dict[str, Any]) -> Credential:
        response = await exchange_grant(self._http, self.api_url, self.identity, request_data)
        return await self._on_access_token_acquired(response)

    async def get_access_token(self, auth_code: str, redirect_url: str) -> Credential:
        """Exchange an authorization code for a credential (server mode only).

        Raises:
            UnsupportedOperationError: For any other authentication type
            AuthorizationError: If the exchange is rejected
        """
        if self.auth_type is not AuthType.SERVER:
            raise UnsupportedOperationError(
                "In authentication types other than server access token "
                "is delivered through a redirect"
            )

        return await self._authenticate({
            "grant_type": "authorization_code",
            "code": auth_code,
            "redirect_uri": redirect_url,
        })

    async def authenticate_with_credentials_for_offering(
        self,
        username: str,
        password: str,
        offering_id: str | int | None = None,
    ) -> Credential:
        """Authenticate with a username and password."""
        request_data: dict[str, Any] = {
            "grant_type": "password",
            "username": username,
            "password": password,
        }
        if offering_id:
            request_data["offering_id"] = offering_id

        return await self._authenticate(request_data)

    async def authenticate_with_credentials(self, username: str, password: str) -> Credential:
        return await self.authenticate_with_credentials_for_offering(username, password)

    async def authenticate_with_activation_code_for_offering(
        self,
        activation_code: str,
        offering_id: str | int | None = None,
    ) -> Credential:
        """Authenticate with an activation code."""
        request_data: dict[str, Any] = {
            "grant_type": "activation_code",
            "activation_code": activation_code,
        }
        if offering_id:
            request_data["offering_id"] = offering_id

        return await self._authenticate(request_data)

    async def authenticate_with_app(self, app_id: str | int, app_token: str) -> Credential:
        """Authenticate as an app using its id and token."""
        return await self._authenticate({
            "grant_type": "app",
            "app_id": app_id,
            "app_token": app_token,
        })

    # Refresh

    def can_refresh(self, stale_access_token: str | None = None) -> bool:
        """Check whether an expired-token failure is recoverable.

        Args:
            stale_access_token: The access token the failed request was sent
                with, if known

        Returns:
            True if a refresh is in flight, the credential was already
            replaced since the request was sent, or a refresh token is known.
            Always False inside the refresh itself, which never nests.
        """
        if self._in_refresh_task():
            return False
        if self.is_refreshing:
            return True
        credential = self._credential
        if credential is None:
            return False
        if stale_access_token is not None and credential.access_token != stale_access_token:
            return True
        return credential.has_refresh_token()

    def _in_refresh_task(self) -> bool:
        # True while running inside the refresh itself, e.g. from the client hook
        task = self._refresh_task
        return task is not None and asyncio.current_task() is task

    async def wait_for_refresh(self) -> None:
        """Wait for an in-flight refresh to settle. Never raises its error.

        Returns immediately when called from within the refresh, so the
        client mode hook can use is_authenticated() and request().
        """
        task = self._refresh_task
        if task is not None and not task.done() and not self._in_refresh_task():
            await asyncio.wait({task})

    async def refresh_token(self, stale_access_token: str | None = None) -> Credential:
        """Refresh the credential, sharing any refresh already in flight.

        Args:
            stale_access_token: The access token that was rejected. If the
                current credential no longer uses it, it is returned as is.

        Returns:
            The new credential

        Raises:
            AuthorizationError: If the refresh failed; the credential is cleared
        """
        task = self._refresh_task
        if task is None or task.done():
            current = self._credential
            if (
                stale_access_token is not None
                and current is not None
                and current.access_token != stale_access_token
            ):
                logger.debug("Credential already refreshed by a concurrent request")
                return current

            task = asyncio.get_running_loop().create_task(self._refresh())
            self._refresh_task = task

        return await asyncio.shield(task)

    async def _refresh(self) -> Credential:
        credential = self._credential
        refresh_token = credential.refresh_token if credential is not None else None

        # Cleared eagerly so concurrent requests do not reuse a dead token
        await self.clear_authentication()

        if self.auth_type is AuthType.CLIENT:
            new_credential = await self._refresh_interactively()
        else:
            new_credential = await self._refresh_with_grant(refresh_token)

        logger.info(f"Refreshed {self.auth_type.value} credential")
        await self._notify_refreshed(new_credential.to_dict())
        return new_credential

    async def _refresh_interactively(self) -> Credential:
        # Public clients cannot refresh silently; the hook re-runs the flow
        if self._on_token_will_refresh is None:
            raise AuthorizationError(
                "Token expired and client authentication cannot refresh without "
                "an on_token_will_refresh hook"
            )

        try:
            await self._on_token_will_refresh()
        except PodioError:
            raise
        except Exception as e:
            raise AuthorizationError(f"Re-authentication hook failed: {e}") from e

        if self._credential is None:
            raise AuthorizationError("Re-authentication did not produce a credential")
        return self._credential

    async def _refresh_with_grant(self, refresh_token: str | None) -> Credential:
        if not refresh_token:
            raise AuthorizationError("No refresh token available")

        try:
            response = await exchange_grant(
                self._http,
                self.api_url,
                self.identity,
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        except PodioError as e:
            logger.warning(f"Token refresh failed: {e}")
            raise

        credential = self._install_from_response(response)
        try:
            await self._persist(credential)
        except SessionStoreError as e:
            # The refreshed credential is usable even if it was not persisted
            logger.warning(f"Refreshed credential was not persisted: {e}")
        return credential

    async def _notify_refreshed(self, payload: dict[str, Any]) -> None:
        if self._after_token_refreshed is None:
            return
        try:
            result = self._after_token_refreshed(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # The refresh itself succeeded; a failing listener must not undo it
            logger.warning(f"after_token_refreshed hook failed: {type(e).__name__}: {e}")
