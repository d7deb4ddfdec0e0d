"""Tests for the authenticated transport."""

import asyncio
import base64
import json
import logging
from unittest.mock import patch

import httpx
import pytest

from podio_client.errors import (
    AuthorizationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    GoneError,
    NotFoundError,
    PodioError,
    RateLimitError,
    ServerError,
    UnavailableError,
    UnsupportedOperationError,
)
from podio_client.oauth.authenticator import Authenticator
from podio_client.oauth.tokens import AuthType, ClientIdentity, Credential
from podio_client.transport import Transport, format_method, is_expired_token_error

from .conftest import API_URL, EXPIRED_TOKEN_BODY, form_data, token_body


def expiring_api(expired_token: str = "a"):
    """API handler that rejects one access token as expired and accepts others."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") == f"OAuth2 {expired_token}":
            return httpx.Response(401, json=EXPIRED_TOKEN_BODY)
        return httpx.Response(200, json={"ok": True, "path": request.url.path})

    return handler


@pytest.fixture
def make_transport(http_client):
    """Factory for a transport with its authenticator."""

    def factory(
        auth_type: AuthType = AuthType.PASSWORD,
        credential: dict | None = None,
        silent: bool = False,
        http: httpx.AsyncClient | None = None,
        **auth_kwargs,
    ) -> Transport:
        secret = None if auth_type is AuthType.CLIENT else "s3cret"
        authenticator = Authenticator(
            ClientIdentity(auth_type, "my-app", secret),
            http or http_client,
            api_url=API_URL,
            **auth_kwargs,
        )
        if credential is not None:
            authenticator.set_access_token(credential)
        return Transport(authenticator, http or http_client, silent=silent)

    return factory


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize(
        "method,expected",
        [("get", "GET"), ("post", "POST"), ("del", "DELETE"), ("delete", "DELETE"), ("Put", "PUT")],
    )
    def test_format_method(self, method, expected):
        assert format_method(method) == expected

    def test_is_expired_token_error(self):
        assert is_expired_token_error(EXPIRED_TOKEN_BODY)
        assert not is_expired_token_error({"error": "invalid_token", "error_description": "bad"})
        assert not is_expired_token_error("expired_token")
        assert not is_expired_token_error(None)


class TestRequests:
    """Tests for request construction."""

    @pytest.mark.asyncio
    async def test_get_sends_data_as_query(self, fake_api, make_transport):
        """Test that GET data becomes query parameters."""
        fake_api.api_responses.append(httpx.Response(200, json=[{"item_id": 1}]))
        transport = make_transport(credential=token_body())

        result = await transport.request("GET", "/item/app/1/", {"limit": 10})

        assert result == [{"item_id": 1}]
        request = fake_api.api_requests[0]
        assert request.method == "GET"
        assert request.url.path == "/item/app/1/"
        assert request.url.params["limit"] == "10"
        assert request.headers["Authorization"] == "OAuth2 a"
        assert request.content == b""

    @pytest.mark.asyncio
    async def test_path_query_is_kept(self, fake_api, make_transport):
        """Test that a query string in the path survives."""
        fake_api.api_responses.append(httpx.Response(200, json={}))
        transport = make_transport(credential=token_body())

        await transport.request("get", "/item/1?fields=files")

        assert fake_api.api_requests[0].url.params["fields"] == "files"

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, fake_api, make_transport):
        """Test that POST data is sent as JSON."""
        fake_api.api_responses.append(httpx.Response(200, json={"item_id": 2}))
        transport = make_transport(credential=token_body())

        await transport.request("POST", "/item/app/1/", {"fields": {"title": "x"}})

        request = fake_api.api_requests[0]
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"fields": {"title": "x"}}

    @pytest.mark.asyncio
    async def test_form_body(self, fake_api, make_transport):
        """Test that form=True sends a form-encoded body."""
        fake_api.api_responses.append(httpx.Response(200, json={}))
        transport = make_transport(credential=token_body())

        await transport.request("PUT", "/user/profile/", {"name": "Jane"}, form=True)

        request = fake_api.api_requests[0]
        assert request.method == "PUT"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert form_data(request) == {"name": "Jane"}

    @pytest.mark.asyncio
    async def test_delete_sends_data_as_query(self, fake_api, make_transport):
        """Test that "del" maps to DELETE with query parameters."""
        fake_api.api_responses.append(httpx.Response(204))
        transport = make_transport(credential=token_body())

        result = await transport.request("del", "/item/1", {"silent": 1})

        assert result is None
        request = fake_api.api_requests[0]
        assert request.method == "DELETE"
        assert request.url.params["silent"] == "1"

    @pytest.mark.asyncio
    async def test_text_body(self, fake_api, make_transport):
        """Test that non-JSON bodies are returned as text."""
        fake_api.api_responses.append(httpx.Response(200, text="pong"))
        transport = make_transport(credential=token_body())

        assert await transport.request("GET", "/ping") == "pong"

    @pytest.mark.asyncio
    async def test_requires_authentication(self, fake_api, make_transport):
        """Test that requests without a credential fail before sending."""
        transport = make_transport()

        with pytest.raises(ForbiddenError, match="Authentication has not been performed"):
            await transport.request("GET", "/org/")

        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_basic_auth(self, fake_api, make_transport):
        """Test that basic auth uses client credentials and needs no token."""
        fake_api.api_responses.append(httpx.Response(200, json={}))
        transport = make_transport()

        await transport.request("POST", "/user/", {"mail": "x"}, basic_auth=True)

        expected = base64.b64encode(b"my-app:s3cret").decode("ascii")
        assert fake_api.api_requests[0].headers["Authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_waits_for_stored_credential(self, fake_api, make_transport, session_store):
        """Test that the first request uses a credential from the store."""
        await session_store.set(token_body("stored"), "password")
        fake_api.api_responses.append(httpx.Response(200, json={}))
        transport = make_transport(session_store=session_store)

        await transport.request("GET", "/org/")

        assert fake_api.api_requests[0].headers["Authorization"] == "OAuth2 stored"

    @pytest.mark.parametrize(
        "auth_type,sends_cookie",
        [(AuthType.PASSWORD, False), (AuthType.SERVER, False), (AuthType.CLIENT, True)],
    )
    @pytest.mark.asyncio
    async def test_cookies_only_in_client_mode(self, fake_api, make_transport, auth_type, sends_cookie):
        """Test that ambient cookies are only sent in client mode."""
        fake_api.api_responses.append(httpx.Response(200, json={}))
        credential = token_body() if auth_type is not AuthType.CLIENT else {
            "access_token": "a",
            "expires_in": 100,
        }
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(fake_api),
            cookies={"sid": "browser-session"},
        ) as http:
            transport = make_transport(auth_type, credential=credential, http=http)
            await transport.request("GET", "/org/")

        assert ("Cookie" in fake_api.api_requests[0].headers) is sends_cookie


class TestErrors:
    """Tests for error classification."""

    @pytest.mark.parametrize(
        "status,error_class",
        [
            (400, BadRequestError),
            (401, AuthorizationError),
            (403, ForbiddenError),
            (404, NotFoundError),
            (409, ConflictError),
            (410, GoneError),
            (420, RateLimitError),
            (500, ServerError),
            (502, UnavailableError),
            (503, UnavailableError),
            (504, UnavailableError),
            (418, PodioError),
        ],
    )
    @pytest.mark.asyncio
    async def test_status_mapping(self, fake_api, make_transport, status, error_class):
        """Test that each status raises its error kind with the response details."""
        body = {"error": "some_error", "error_description": "went wrong"}
        fake_api.api_responses.append(httpx.Response(status, json=body))
        transport = make_transport(credential=token_body())

        with pytest.raises(PodioError) as exc_info:
            await transport.request("GET", "/item/1")

        error = exc_info.value
        assert type(error) is error_class
        assert error.status == status
        assert error.body == body
        assert error.url == f"{API_URL}/item/1"

    @pytest.mark.asyncio
    async def test_unauthorized_clears_credential(self, fake_api, make_transport, session_store):
        """Test that a non-expiry 401 is terminal and clears the credential."""
        fake_api.api_responses.append(
            httpx.Response(401, json={"error": "invalid_token", "error_description": "revoked"})
        )
        transport = make_transport(credential=token_body(), session_store=session_store)

        with pytest.raises(AuthorizationError):
            await transport.request("GET", "/org/")

        assert transport._auth.credential is None
        assert await session_store.get("password") == {}
        assert fake_api.token_requests == []

    @pytest.mark.asyncio
    async def test_other_errors_keep_credential(self, fake_api, make_transport):
        """Test that non-401 errors leave the credential alone."""
        fake_api.api_responses.append(httpx.Response(500, json={}))
        transport = make_transport(credential=token_body())

        with pytest.raises(ServerError):
            await transport.request("GET", "/org/")

        assert transport._auth.credential is not None

    @pytest.mark.asyncio
    async def test_network_error(self, make_transport):
        """Test that connection failures become PodioError without a status."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            transport = make_transport(credential=token_body(), http=http)
            with pytest.raises(PodioError) as exc_info:
                await transport.request("GET", "/org/")

        assert exc_info.value.status is None
        assert exc_info.value.url == f"{API_URL}/org/"
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


class TestSilentMode:
    """Tests for silent mode."""

    @pytest.mark.asyncio
    async def test_errors_are_logged_not_raised(self, fake_api, make_transport, caplog):
        """Test that failures return None and are logged."""
        fake_api.api_responses.append(httpx.Response(404, json={"error": "not_found"}))
        transport = make_transport(credential=token_body(), silent=True)

        with caplog.at_level(logging.WARNING, logger="podio_client.transport"):
            result = await transport.request("GET", "/item/1")

        assert result is None
        assert "NotFoundError" in caplog.text

    @pytest.mark.asyncio
    async def test_unauthorized_still_clears_credential(self, fake_api, make_transport):
        """Test that silent mode keeps the 401 side effect."""
        fake_api.api_responses.append(httpx.Response(401, json={"error": "invalid_token"}))
        transport = make_transport(credential=token_body(), silent=True)

        assert await transport.request("GET", "/org/") is None
        assert transport._auth.credential is None

    @pytest.mark.asyncio
    async def test_missing_credential_still_raises(self, make_transport):
        """Test that the unauthenticated check is not silenced."""
        transport = make_transport(silent=True)

        with pytest.raises(ForbiddenError):
            await transport.request("GET", "/org/")


class TestRefreshAndRetry:
    """Tests for recovery from expired tokens."""

    @pytest.mark.asyncio
    async def test_refresh_then_retry_once(self, fake_api, make_transport, session_store):
        """Test that an expired token triggers one refresh and one identical retry."""
        fake_api.api_handler = expiring_api("a")
        fake_api.token_responses.append(httpx.Response(200, json=token_body("c", "d")))
        transport = make_transport(credential=token_body("a", "b"), session_store=session_store)

        result = await transport.request("POST", "/item/app/1/", {"title": "x"})

        assert result == {"ok": True, "path": "/item/app/1/"}
        assert len(fake_api.token_requests) == 1
        assert form_data(fake_api.token_requests[0])["refresh_token"] == "b"

        first, retry = fake_api.api_requests
        assert first.method == retry.method == "POST"
        assert first.url == retry.url
        assert first.content == retry.content
        assert first.headers["Authorization"] == "OAuth2 a"
        assert retry.headers["Authorization"] == "OAuth2 c"

        assert (await session_store.get("password"))["access_token"] == "c"

    @pytest.mark.asyncio
    async def test_retry_is_single_shot(self, fake_api, make_transport):
        """Test that an expired-token response to the retry is not refreshed again."""
        fake_api.api_handler = lambda request: httpx.Response(401, json=EXPIRED_TOKEN_BODY)
        fake_api.token_responses.append(httpx.Response(200, json=token_body("c", "d")))
        fake_api.token_responses.append(httpx.Response(200, json=token_body("e", "f")))
        transport = make_transport(credential=token_body())

        with pytest.raises(AuthorizationError):
            await transport.request("GET", "/org/")

        assert len(fake_api.token_requests) == 1
        assert len(fake_api.api_requests) == 2
        assert transport._auth.credential is None

    @pytest.mark.asyncio
    async def test_refresh_failure_surfaces_original_error(self, fake_api, make_transport):
        """Test that a failed refresh raises the request's own 401 error."""
        fake_api.api_handler = expiring_api("a")
        fake_api.token_responses.append(
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "revoked"})
        )
        transport = make_transport(credential=token_body())

        with pytest.raises(AuthorizationError) as exc_info:
            await transport.request("GET", "/org/")

        assert exc_info.value.status == 401
        assert exc_info.value.body == EXPIRED_TOKEN_BODY
        assert isinstance(exc_info.value.__cause__, AuthorizationError)
        assert transport._auth.credential is None
        assert len(fake_api.api_requests) == 1

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, fake_api, make_transport, session_store):
        """Test client mode without a refresh path ends unauthenticated."""
        fake_api.api_handler = expiring_api("frag")
        transport = make_transport(
            AuthType.CLIENT,
            session_store=session_store,
            fragment_source=lambda: "#access_token=frag&expires_in=28800",
        )
        assert await transport._auth.is_authenticated()

        with pytest.raises(AuthorizationError):
            await transport.request("GET", "/org/")

        assert transport._auth.credential is None
        assert await session_store.get("client") == {}
        assert not await transport._auth.is_authenticated()
        assert fake_api.token_requests == []

    @pytest.mark.asyncio
    async def test_client_mode_hook_then_retry(self, fake_api, make_transport):
        """Test that client mode with a refresh token retries after the hook re-authenticates."""
        fake_api.api_handler = expiring_api("old")

        async def reauthenticate():
            transport._auth.set_access_token({"access_token": "fresh", "expires_in": 3600})

        transport = make_transport(
            AuthType.CLIENT,
            credential={"access_token": "old", "refresh_token": "r", "expires_in": 3600},
            on_token_will_refresh=reauthenticate,
        )

        result = await transport.request("GET", "/org/")

        assert result["ok"] is True
        assert fake_api.api_requests[-1].headers["Authorization"] == "OAuth2 fresh"

    @pytest.mark.asyncio
    async def test_client_mode_hook_reads_new_fragment(self, fake_api, make_transport):
        """Test that the hook can authenticate from a new fragment and call the API."""
        fake_api.api_handler = expiring_api("old")
        fragment = [None]
        statuses = []

        async def reauthenticate():
            fragment[0] = "#access_token=fresh&expires_in=3600&refresh_token=r2"
            assert await transport._auth.is_authenticated()
            statuses.append(await transport.request("GET", "/user/status"))

        transport = make_transport(
            AuthType.CLIENT,
            credential={"access_token": "old", "refresh_token": "r", "expires_in": 3600},
            on_token_will_refresh=reauthenticate,
            fragment_source=lambda: fragment[0],
        )

        result = await asyncio.wait_for(transport.request("GET", "/user/status"), timeout=2)

        assert result == {"ok": True, "path": "/user/status"}
        assert statuses == [{"ok": True, "path": "/user/status"}]
        assert [r.headers["Authorization"] for r in fake_api.api_requests] == [
            "OAuth2 old",
            "OAuth2 fresh",
            "OAuth2 fresh",
        ]

    @pytest.mark.asyncio
    async def test_hook_request_with_expired_token_does_not_hang(self, fake_api, make_transport):
        """Test that an expired-token failure inside the hook is raised instead of refreshed."""
        fake_api.api_handler = expiring_api("old")

        async def reauthenticate():
            transport._auth.set_access_token(
                {"access_token": "old", "refresh_token": "r", "expires_in": 3600}
            )
            await transport.request("GET", "/user/status")

        transport = make_transport(
            AuthType.CLIENT,
            credential={"access_token": "old", "refresh_token": "r", "expires_in": 3600},
            on_token_will_refresh=reauthenticate,
        )

        with pytest.raises(AuthorizationError):
            await asyncio.wait_for(transport.request("GET", "/org/"), timeout=2)

    @pytest.mark.asyncio
    async def test_failing_after_refresh_hook_still_retries(self, fake_api, make_transport, caplog):
        """Test that a listener error is logged and the request is still replayed."""
        fake_api.api_handler = expiring_api("a")
        fake_api.token_responses.append(httpx.Response(200, json=token_body("c", "d")))

        def refreshed(payload):
            raise RuntimeError("listener down")

        transport = make_transport(credential=token_body("a", "b"), after_token_refreshed=refreshed)

        with caplog.at_level(logging.WARNING, logger="podio_client.oauth.authenticator"):
            result = await transport.request("GET", "/org/")

        assert result == {"ok": True, "path": "/org/"}
        assert len(fake_api.api_requests) == 2
        assert fake_api.api_requests[-1].headers["Authorization"] == "OAuth2 c"
        assert transport._auth.credential == Credential("c", "d", 100)
        assert "after_token_refreshed hook failed" in caplog.text

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_refresh(self, fake_api, make_transport):
        """Test that simultaneous expired requests trigger a single refresh."""
        fake_api.api_handler = expiring_api("a")
        fake_api.token_responses.append(httpx.Response(200, json=token_body("c", "d")))
        refreshed = []
        transport = make_transport(
            credential=token_body("a", "b"),
            after_token_refreshed=refreshed.append,
        )

        results = await asyncio.gather(
            transport.request("GET", "/one"),
            transport.request("GET", "/two"),
            transport.request("GET", "/three"),
        )

        assert [r["path"] for r in results] == ["/one", "/two", "/three"]
        assert len(fake_api.token_requests) == 1
        assert len(refreshed) == 1
        assert transport._auth.credential == Credential("c", "d", 100)

    @pytest.mark.asyncio
    async def test_basic_auth_is_not_refreshed(self, fake_api, make_transport):
        """Test that basic auth 401s never trigger a refresh."""
        fake_api.api_handler = lambda request: httpx.Response(401, json=EXPIRED_TOKEN_BODY)
        transport = make_transport(credential=token_body())

        with pytest.raises(AuthorizationError):
            await transport.request("GET", "/org/", basic_auth=True)

        assert fake_api.token_requests == []


class TestUpload:
    """Tests for file uploads."""

    @pytest.mark.asyncio
    async def test_upload_multipart(self, fake_api, make_transport, tmp_path):
        """Test that the file and its name are sent as multipart form data."""
        source = tmp_path / "report.txt"
        source.write_bytes(b"quarterly numbers")
        fake_api.api_responses.append(httpx.Response(200, json={"file_id": 9}))
        transport = make_transport(credential=token_body())

        result = await transport.upload_file(source, "Q3 report.txt")

        assert result == {"file_id": 9}
        request = fake_api.api_requests[0]
        assert request.method == "POST"
        assert request.url.path == "/file"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert b'name="filename"' in request.content
        assert b"Q3 report.txt" in request.content
        assert b'name="source"; filename="report.txt"' in request.content
        assert b"quarterly numbers" in request.content

    @pytest.mark.asyncio
    async def test_upload_unsupported_in_client_mode(self, fake_api, make_transport, tmp_path):
        """Test that public clients cannot upload and nothing is sent."""
        source = tmp_path / "report.txt"
        source.write_bytes(b"data")
        transport = make_transport(
            AuthType.CLIENT,
            credential={"access_token": "a", "expires_in": 100},
        )

        with pytest.raises(UnsupportedOperationError):
            await transport.upload_file(source, "report.txt")

        assert fake_api.requests == []

    @pytest.mark.parametrize("name", ["missing.txt", "."])
    @pytest.mark.asyncio
    async def test_upload_requires_existing_file(self, fake_api, make_transport, tmp_path, name):
        """Test that a path that is not a file fails before anything is sent."""
        transport = make_transport(credential=token_body())

        with pytest.raises(PodioError, match="File not found"):
            await transport.upload_file(tmp_path / name, "report.txt")

        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_upload_read_error_is_podio_error(self, fake_api, make_transport, tmp_path):
        """Test that an OSError while reading the file is raised as PodioError."""
        source = tmp_path / "report.txt"
        source.write_bytes(b"data")
        transport = make_transport(credential=token_body())

        with patch("podio_client.transport.Path.read_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(PodioError, match="Could not read") as exc_info:
                await transport.upload_file(source, "report.txt")

        assert isinstance(exc_info.value.__cause__, PermissionError)
        assert fake_api.requests == []

    @pytest.mark.asyncio
    async def test_upload_retried_after_refresh(self, fake_api, make_transport, tmp_path):
        """Test that an upload is replayed with the file after a refresh."""
        source = tmp_path / "report.txt"
        source.write_bytes(b"quarterly numbers")
        fake_api.api_handler = expiring_api("a")
        fake_api.token_responses.append(httpx.Response(200, json=token_body("c", "d")))
        transport = make_transport(credential=token_body())

        result = await transport.upload_file(source, "report.txt")

        assert result["path"] == "/file"
        first, retry = fake_api.api_requests
        assert b"quarterly numbers" in first.content
        assert b"quarterly numbers" in retry.content
        assert retry.headers["Authorization"] == "OAuth2 c"
