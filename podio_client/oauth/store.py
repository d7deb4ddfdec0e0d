"""Session stores for persisting credential snapshots.

A session store is any object with two coroutine methods:

    async def get(auth_type: str) -> dict | None
    async def set(snapshot: dict, auth_type: str) -> None

Snapshots are the serialized form of a Credential (Credential.to_dict()).
An empty dict is written when a credential is cleared.

Two implementations are provided:
- MemorySessionStore keeps snapshots in process memory
- EncryptedFileSessionStore keeps them on disk using:
  - Fernet symmetric encryption (AES-128-CBC + HMAC)
  - OS keyring for encryption key storage (Keychain, libsecret, DPAPI)
  - File permissions for defense in depth
  - File locking to prevent race conditions
"""

import asyncio
import base64
import copy
import hashlib
import json
import logging
import os
import stat
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Protocol, runtime_checkable

import keyring
from cryptography.fernet import Fernet, InvalidToken

from ..errors import SessionStoreError

logger = logging.getLogger(__name__)

# File locking support
if sys.platform != "win32":
    import fcntl

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Unix implementation using fcntl).

        Args:
            filepath: Path to the file to lock
            exclusive: If True, acquire exclusive lock; otherwise shared lock
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
else:
    import msvcrt

    @contextmanager
    def _file_lock(filepath: Path, exclusive: bool = True) -> Generator[None, None, None]:
        """Acquire a file lock (Windows implementation using msvcrt).

        msvcrt has no shared locks, so every lock is exclusive.
        """
        lock_path = filepath.with_suffix(filepath.suffix + ".lock")
        lock_path.touch(exist_ok=True)

        with open(lock_path, "r+") as lock_file:
            try:
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_LOCK, 1)
                yield
            finally:
                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass


KEYRING_SERVICE = "podio-client"
KEYRING_USERNAME = "session-encryption-key"

DEFAULT_STORE_DIR = Path.home() / ".cache" / "podio-client" / "sessions"

SESSIONS_FILE = "sessions.json"


@runtime_checkable
class SessionStore(Protocol):
    """Capability for persisting credential snapshots per auth type."""

    async def get(self, auth_type: str) -> dict[str, Any] | None:
        """Return the snapshot stored for auth_type, or None/{} if absent."""
        ...

    async def set(self, snapshot: dict[str, Any], auth_type: str) -> None:
        """Store a snapshot for auth_type. An empty dict clears it."""
        ...


class TokenDecryptionError(SessionStoreError):
    """Failed to decrypt the session file.

    This error indicates the encryption key has changed (e.g., keyring cleared,
    different machine) and stored sessions cannot be read. The caller should
    either re-authenticate or clear existing sessions with clear_all().
    """


class MemorySessionStore:
    """Session store backed by a dictionary.

    Snapshots are deep-copied on the way in and out so callers never share
    a live object with the store.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}

    async def get(self, auth_type: str) -> dict[str, Any] | None:
        snapshot = self._sessions.get(auth_type)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    async def set(self, snapshot: dict[str, Any], auth_type: str) -> None:
        self._sessions[auth_type] = copy.deepcopy(snapshot)


def _derive_fallback_key() -> bytes:
    """Derive a fallback encryption key from machine-specific data.

    Used when keyring is not available. Less secure than keyring but
    still provides encryption at rest.

    Returns:
        32-byte key suitable for Fernet
    """
    components = []

    machine_id_path = Path("/etc/machine-id")
    if machine_id_path.exists():
        components.append(machine_id_path.read_text().strip())

    components.append(str(Path.home()))
    components.append(os.environ.get("USER", os.environ.get("USERNAME", "podio")))

    key_bytes = hashlib.sha256(":".join(components).encode()).digest()

    # Fernet requires base64-encoded 32-byte key
    return base64.urlsafe_b64encode(key_bytes)


class EncryptedFileSessionStore:
    """Encrypted on-disk session store.

    All snapshots live in one Fernet-encrypted JSON file keyed by auth type,
    with the encryption key stored in the OS keyring. Files are stored in
    ~/.cache/podio-client/sessions/ with restricted permissions (0600).

    Blocking file I/O runs in a worker thread so the event loop is never
    stalled.
    """

    def __init__(self, store_dir: Path | None = None):
        """Initialize the store.

        Args:
            store_dir: Optional custom storage directory
        """
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        self._cipher: Fernet | None = None
        self._using_keyring = False

        self._init_storage()
        self._init_encryption()

    def _init_storage(self) -> None:
        """Initialize storage directory with secure permissions."""
        self.store_dir.mkdir(parents=True, exist_ok=True)

        try:
            self.store_dir.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def _init_encryption(self) -> None:
        """Initialize encryption using keyring or fallback."""
        try:
            key = keyring.get_password(KEYRING_SERVICE, KEYRING_USERNAME)

            if key is None:
                key = Fernet.generate_key().decode("ascii")
                keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
                logger.debug("Generated new encryption key in keyring")

            self._cipher = Fernet(key.encode("ascii"))
            self._using_keyring = True
            logger.debug("Using keyring for encryption key storage")

        except Exception as e:
            # Any keyring backend failure falls back to the derived key
            logger.warning(
                f"Keyring not available: {type(e).__name__}: {e}. "
                f"Using fallback encryption (machine-derived key)."
            )
            self._cipher = Fernet(_derive_fallback_key())
            self._using_keyring = False

    def _read_sessions(self) -> dict[str, Any]:
        """Read and decrypt the sessions file under a shared lock.

        Raises:
            TokenDecryptionError: If decryption fails (key changed, corrupted data)
        """
        filepath = self.store_dir / SESSIONS_FILE

        if not filepath.exists():
            return {}

        if self._cipher is None:
            raise SessionStoreError("Encryption not initialized")

        try:
            with _file_lock(filepath, exclusive=False):
                encrypted_data = filepath.read_text()
                decrypted = self._cipher.decrypt(encrypted_data.encode("ascii"))
                result: dict[str, Any] = json.loads(decrypted.decode("utf-8"))
                return result
        except InvalidToken as e:
            raise TokenDecryptionError(
                f"Cannot decrypt {SESSIONS_FILE}. The encryption key may have changed."
            ) from e
        except json.JSONDecodeError as e:
            raise TokenDecryptionError(f"Session file {SESSIONS_FILE} is corrupted.") from e

    def _write_sessions(self, data: dict[str, Any]) -> None:
        """Encrypt and write the sessions file under an exclusive lock."""
        filepath = self.store_dir / SESSIONS_FILE

        if self._cipher is None:
            raise SessionStoreError("Encryption not initialized")

        encrypted_data = self._cipher.encrypt(json.dumps(data, indent=2).encode("utf-8"))

        with _file_lock(filepath, exclusive=True):
            filepath.write_text(encrypted_data.decode("ascii"))
            try:
                filepath.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
            except OSError as e:
                logger.warning(f"Could not set file permissions: {e}")

    def _get_sync(self, auth_type: str) -> dict[str, Any] | None:
        return self._read_sessions().get(auth_type)

    def _set_sync(self, snapshot: dict[str, Any], auth_type: str) -> None:
        # Read-modify-write; other auth types' sessions are preserved
        sessions = self._read_sessions()
        sessions[auth_type] = snapshot
        self._write_sessions(sessions)

    async def get(self, auth_type: str) -> dict[str, Any] | None:
        """Get the snapshot stored for an auth type.

        Returns:
            Snapshot dictionary, or None if nothing was stored

        Raises:
            TokenDecryptionError: If the sessions file cannot be decrypted
        """
        snapshot = await asyncio.to_thread(self._get_sync, auth_type)
        logger.debug(f"Read session for {auth_type} ({'found' if snapshot else 'empty'})")
        return snapshot

    async def set(self, snapshot: dict[str, Any], auth_type: str) -> None:
        """Store the snapshot for an auth type.

        Raises:
            SessionStoreError: If the file cannot be written
        """
        try:
            await asyncio.to_thread(self._set_sync, snapshot, auth_type)
        except OSError as e:
            raise SessionStoreError(f"Writing session for {auth_type} failed: {e}") from e
        logger.debug(f"Stored session for {auth_type}")

    def clear_all(self) -> None:
        """Delete all stored sessions."""
        sessions_file = self.store_dir / SESSIONS_FILE
        if sessions_file.exists():
            sessions_file.unlink()
        logger.info("Cleared all stored sessions")

    def is_using_keyring(self) -> bool:
        """Check if keyring is being used for encryption key storage."""
        return self._using_keyring
