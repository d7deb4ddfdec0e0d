"""OAuth 2.0 authentication support for the Podio client.

This package implements the credential side of the client: the three
Podio authentication modes (server, client and password), the grant
exchanges against the Podio token endpoint, session stores, and the
refresh state machine.

Main Components:
    Authenticator: Credential lifecycle (grants, store, refresh)
    Credential: Result of one grant
    ClientIdentity: The registered application's id, secret and mode
    MemorySessionStore / EncryptedFileSessionStore: Session stores

Quick Start:
    from podio_client.oauth import Authenticator, ClientIdentity

    identity = ClientIdentity("password", "my-app", "s3cret")
    auth = Authenticator(identity, httpx.AsyncClient())

    await auth.authenticate_with_credentials("me@example.com", "pw")
    header = auth.credential.get_auth_header()
"""

from .authenticator import AuthState, Authenticator
from .grants import build_authorization_url, exchange_grant, token_endpoint
from .store import (
    EncryptedFileSessionStore,
    MemorySessionStore,
    SessionStore,
    TokenDecryptionError,
)
from .tokens import AuthType, ClientIdentity, Credential

__all__ = [
    # Authenticator (main entry point)
    "Authenticator",
    "AuthState",
    # Grants
    "build_authorization_url",
    "exchange_grant",
    "token_endpoint",
    # Tokens
    "AuthType",
    "ClientIdentity",
    "Credential",
    # Storage
    "SessionStore",
    "MemorySessionStore",
    "EncryptedFileSessionStore",
    "TokenDecryptionError",
]
