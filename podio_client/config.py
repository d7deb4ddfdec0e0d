"""Configuration loading for the Podio client."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_API_URL = "https://api.podio.com:443"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "podio-client" / ".env",
]

ENV_AUTH_TYPE = "PODIO_AUTH_TYPE"
ENV_CLIENT_ID = "PODIO_CLIENT_ID"
ENV_CLIENT_SECRET = "PODIO_CLIENT_SECRET"
ENV_API_URL = "PODIO_API_URL"
ENV_SESSION_DIR = "PODIO_SESSION_DIR"


@dataclass
class ClientConfig:
    """Settings needed to construct a PodioClient."""

    auth_type: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    api_url: str = DEFAULT_API_URL
    session_dir: Path | None = None
    env_path: Path | None = None

    def auth_options(self) -> dict[str, str | None]:
        """Get the authentication options mapping for PodioClient."""
        return {
            "auth_type": self.auth_type,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_config(env_path: Path | None = None) -> ClientConfig:
    """Load client settings from the environment.

    A .env file is loaded first (without overriding variables that are
    already set), then the PODIO_* variables are read.

    Args:
        env_path: Explicit path to .env file (optional)

    Returns:
        ClientConfig populated from the environment. Missing values stay
        None; they are validated when the client is constructed.
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    session_dir = os.environ.get(ENV_SESSION_DIR)

    return ClientConfig(
        auth_type=os.environ.get(ENV_AUTH_TYPE),
        client_id=os.environ.get(ENV_CLIENT_ID),
        client_secret=os.environ.get(ENV_CLIENT_SECRET),
        api_url=os.environ.get(ENV_API_URL) or DEFAULT_API_URL,
        session_dir=Path(session_dir).expanduser() if session_dir else None,
        env_path=env_file,
    )
