"""Podio client - an async Python client for the Podio REST API with OAuth2 token handling."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("podio-client")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Client
    "PodioClient",
    "ClientConfig",
    "load_config",
    # Auth
    "AuthType",
    "AuthState",
    "ClientIdentity",
    "Credential",
    "MemorySessionStore",
    "EncryptedFileSessionStore",
    # Errors
    "PodioError",
    "BadRequestError",
    "AuthorizationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "GoneError",
    "RateLimitError",
    "ServerError",
    "UnavailableError",
    "UnsupportedOperationError",
    "ConfigurationError",
    "SessionStoreError",
    "MissingFieldError",
]

_ERRORS = {
    "PodioError",
    "BadRequestError",
    "AuthorizationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "GoneError",
    "RateLimitError",
    "ServerError",
    "UnavailableError",
    "UnsupportedOperationError",
    "ConfigurationError",
    "SessionStoreError",
    "MissingFieldError",
}

_OAUTH = {
    "AuthType",
    "AuthState",
    "ClientIdentity",
    "Credential",
    "MemorySessionStore",
    "EncryptedFileSessionStore",
}


# Lazy imports so the package loads without importing every submodule
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name == "PodioClient":
        from .client import PodioClient
        return PodioClient
    elif name in ("ClientConfig", "load_config"):
        from .config import ClientConfig, load_config
        return {"ClientConfig": ClientConfig, "load_config": load_config}[name]
    elif name in _OAUTH:
        from . import oauth
        return getattr(oauth, name)
    elif name in _ERRORS:
        from . import errors
        return getattr(errors, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
