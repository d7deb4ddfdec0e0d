"""OAuth credential data structures.

This module provides the Credential dataclass for a single grant result
and ClientIdentity for the registered application, along with their
validation rules and serialization to session-store snapshots.
"""

from collections.abc import Mapping
from dataclasses import InitVar, dataclass
from enum import Enum
from typing import Any

from ..errors import ConfigurationError, MissingFieldError


class AuthType(str, Enum):
    """Supported OAuth authentication modes."""

    SERVER = "server"  # Authorization code
    CLIENT = "client"  # Implicit
    PASSWORD = "password"  # Resource owner credentials


@dataclass(frozen=True)
class Credential:
    """Result of one OAuth grant.

    Credentials are never mutated; a refresh produces a new instance.

    Attributes:
        access_token: The bearer token sent with API requests
        refresh_token: Token for obtaining a new access token. Only
            optional for credentials obtained in client (implicit) mode.
        expires_in: Lifetime in seconds as delivered by the API
        ref: Opaque reference object returned by the API
        transfer_token: Token for handing the session to another context
        scope: Granted scope string
    """

    access_token: str
    refresh_token: str | None
    expires_in: int | None
    ref: Any = None
    transfer_token: str | None = None
    scope: str | None = None
    implicit: InitVar[bool] = False

    def __post_init__(self, implicit: bool) -> None:
        if self.access_token is None:
            raise MissingFieldError("access_token")
        if self.refresh_token is None and not implicit:
            raise MissingFieldError("refresh_token")
        if self.expires_in is None:
            raise MissingFieldError("expires_in")

    def has_refresh_token(self) -> bool:
        """Check if this credential carries a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a session-store snapshot."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "ref": self.ref,
            "transfer_token": self.transfer_token,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], implicit: bool = False) -> "Credential":
        """Deserialize from a session-store snapshot (via to_dict)."""
        return cls(
            access_token=data.get("access_token"),  # type: ignore[arg-type]
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            ref=data.get("ref"),
            transfer_token=data.get("transfer_token"),
            scope=data.get("scope"),
            implicit=implicit,
        )

    @classmethod
    def from_token_response(
        cls,
        response: Mapping[str, Any],
        implicit: bool = False,
    ) -> "Credential":
        """Create a Credential from a token endpoint response.

        Args:
            response: Parsed token endpoint body (or redirect fragment params)
            implicit: Whether the token came from the implicit flow, in which
                case no refresh token is required

        Returns:
            Credential instance

        Raises:
            MissingFieldError: If a required field is absent
        """
        # Fragment parameters arrive as strings
        expires_in = response.get("expires_in")
        if isinstance(expires_in, str) and expires_in.isdigit():
            expires_in = int(expires_in)

        return cls(
            access_token=response.get("access_token"),  # type: ignore[arg-type]
            refresh_token=response.get("refresh_token"),
            expires_in=expires_in,
            ref=response.get("ref"),
            transfer_token=response.get("transfer_token"),
            scope=response.get("scope"),
            implicit=implicit,
        )

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this credential."""
        return f"OAuth2 {self.access_token}"


@dataclass(frozen=True)
class ClientIdentity:
    """The registered application's identity.

    client_secret may be omitted only for client (implicit) mode, since
    public clients cannot keep a secret.
    """

    auth_type: AuthType
    client_id: str
    client_secret: str | None = None

    def __post_init__(self) -> None:
        if self.auth_type is None:
            raise ConfigurationError("Missing auth property auth_type")
        try:
            auth_type = AuthType(self.auth_type)
        except ValueError as e:
            raise ConfigurationError(f"Unknown auth type {self.auth_type!r}") from e
        # Frozen dataclass: normalize plain strings to the enum
        object.__setattr__(self, "auth_type", auth_type)

        if self.client_id is None:
            raise ConfigurationError("Missing auth property client_id")
        if self.client_secret is None and auth_type is not AuthType.CLIENT:
            raise ConfigurationError("Missing auth property client_secret")

    def is_confidential(self) -> bool:
        """Check if this client can keep a secret (server or password mode)."""
        return self.auth_type in (AuthType.SERVER, AuthType.PASSWORD)

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None) -> "ClientIdentity":
        """Build an identity from an options mapping.

        Accepts snake_case keys as well as camelCase ones (authType,
        clientId, clientSecret).

        Raises:
            ConfigurationError: If options are missing or incomplete
        """
        if options is None:
            raise ConfigurationError("Authentication options are missing")

        def pick(snake: str, camel: str) -> Any:
            return options.get(snake, options.get(camel))

        return cls(
            auth_type=pick("auth_type", "authType"),
            client_id=pick("client_id", "clientId"),
            client_secret=pick("client_secret", "clientSecret"),
        )
