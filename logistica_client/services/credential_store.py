"""
Credential store for the authenticated API client.

Holds the access token, the refresh token and the logged-in user's profile
under fixed storage keys, the same keys the web console keeps in
localStorage. Storage is pluggable:

- FileStorage: JSON document on disk, survives process restarts
- MemoryStorage: in-process dict for ephemeral sessions and tests

The access/refresh pair is always written in a single storage operation so
that no reader can observe a new access token next to a stale refresh token.
"""

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Protocol

import structlog

from ..utils.crypto import TokenCipher, UnreadableValueError

logger = structlog.get_logger(__name__)


STORAGE_KEYS = {
    "user": "caramello_logistica_user",
    "access_token": "@CaramelloLogistica:token",
    "refresh_token": "@CaramelloLogistica:refreshToken",
}


class StorageError(Exception):
    """Raised when the backing storage cannot be written."""

    pass


@dataclass(frozen=True)
class Credentials:
    """Access/refresh token pair. Both are absent before login."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.access_token and not self.refresh_token


@dataclass(frozen=True)
class UserProfile:
    """The logged-in user as returned by /auth/login."""

    id: str
    name: str
    email: str
    role: str = "admin"


class KeyValueStorage(Protocol):
    """localStorage-like persistence used by the credential store."""

    def get_item(self, key: str) -> Optional[str]: ...

    def get_items(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        """Read several keys from one consistent snapshot."""
        ...

    def set_items(self, items: Mapping[str, Optional[str]]) -> None:
        """Write several keys at once; a None value removes the key."""
        ...

    def remove_items(self, keys: Iterable[str]) -> None: ...


class MemoryStorage:
    """In-process storage. Lost when the process exits."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def get_items(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        data = self._data
        return {key: data.get(key) for key in keys}

    def set_items(self, items: Mapping[str, Optional[str]]) -> None:
        data = dict(self._data)
        for key, value in items.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        # Swap the whole mapping so readers see all-or-nothing
        self._data = data

    def remove_items(self, keys: Iterable[str]) -> None:
        self.set_items({key: None for key in keys})

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class FileStorage:
    """
    JSON-file storage with atomic writes.

    Every write produces a complete new document in a temporary file next to
    the target and moves it into place with os.replace(), so a crash or a
    concurrent reader never sees a half-written session. The file is created
    with 0600 permissions.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.warning("Session file unreadable", path=str(self.path), error=str(e))
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Session file is not valid JSON", path=str(self.path), error=str(e))
            return {}

        if not isinstance(data, dict):
            logger.warning("Session file has unexpected shape", path=str(self.path))
            return {}

        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _write(self, data: Mapping[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".session-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(dict(data), fh, ensure_ascii=False, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError(f"Cannot write session file {self.path}: {e}") from e

    def get_item(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def get_items(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        # One read: a concurrent writer cannot interleave between the keys
        data = self._read()
        return {key: data.get(key) for key in keys}

    def set_items(self, items: Mapping[str, Optional[str]]) -> None:
        with self._lock:
            data = self._read()
            for key, value in items.items():
                if value is None:
                    data.pop(key, None)
                else:
                    data[key] = value
            self._write(data)

    def remove_items(self, keys: Iterable[str]) -> None:
        self.set_items({key: None for key in keys})


class CredentialStore:
    """
    Process-wide holder of the session credentials.

    Populated on login and refresh, cleared on logout or session expiry.
    clear() is the only operation that makes tokens absent; set() always
    replaces both tokens together.
    """

    def __init__(self, storage: KeyValueStorage, cipher: Optional[TokenCipher] = None):
        self.storage = storage
        self.cipher = cipher

    # ===== Value encoding =====

    def _encode(self, value: Optional[str]) -> Optional[str]:
        if value is None or self.cipher is None:
            return value
        return self.cipher.seal(value)

    def _decode(self, key: str) -> Optional[str]:
        return self._open(key, self.storage.get_item(key))

    def _open(self, key: str, raw: Optional[str]) -> Optional[str]:
        if raw is None or self.cipher is None:
            return raw
        try:
            return self.cipher.open(raw)
        except UnreadableValueError as e:
            # Unreadable values are treated as absent; the next login overwrites them
            logger.warning("Stored value could not be decrypted", key=key, error=str(e))
            return None

    # ===== Tokens =====

    def get(self) -> Credentials:
        """Both tokens, taken from a single storage read."""
        access_key, refresh_key = STORAGE_KEYS["access_token"], STORAGE_KEYS["refresh_token"]
        raw = self.storage.get_items([access_key, refresh_key])
        return Credentials(
            access_token=self._open(access_key, raw[access_key]),
            refresh_token=self._open(refresh_key, raw[refresh_key]),
        )

    def set(self, credentials: Credentials) -> None:
        """Replace both tokens in one storage write."""
        self.storage.set_items(
            {
                STORAGE_KEYS["access_token"]: self._encode(credentials.access_token),
                STORAGE_KEYS["refresh_token"]: self._encode(credentials.refresh_token),
            }
        )
        logger.debug(
            "Credentials stored",
            has_access_token=bool(credentials.access_token),
            has_refresh_token=bool(credentials.refresh_token),
        )

    def clear(self) -> None:
        """Forget tokens and user profile."""
        self.storage.remove_items(STORAGE_KEYS.values())
        logger.info("Credentials cleared")

    def has_session(self) -> bool:
        return not self.get().is_empty

    def reseal(self) -> int:
        """
        Re-encrypt every stored value under the primary key.

        Run after rotating FERNET_KEY so the old key can later be dropped from
        FERNET_KEYS. Values no configured key can open are removed.

        Returns:
            Number of values re-encrypted
        """
        if self.cipher is None:
            return 0

        updates: Dict[str, Optional[str]] = {}
        for key, raw in self.storage.get_items(STORAGE_KEYS.values()).items():
            if raw is None:
                continue
            try:
                updates[key] = self.cipher.reseal(raw)
            except UnreadableValueError:
                logger.warning("Dropping stored value sealed with an unknown key", key=key)
                updates[key] = None

        if updates:
            self.storage.set_items(updates)
        resealed = sum(1 for v in updates.values() if v is not None)
        logger.info("Stored session re-encrypted", values=resealed)
        return resealed

    # ===== User profile =====

    def get_user(self) -> Optional[UserProfile]:
        raw = self._decode(STORAGE_KEYS["user"])
        if not raw:
            return None
        try:
            return UserProfile(**json.loads(raw))
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Stored user profile is invalid", error=str(e))
            self.storage.remove_items([STORAGE_KEYS["user"]])
            return None

    def set_user(self, user: UserProfile) -> None:
        self.storage.set_items(
            {STORAGE_KEYS["user"]: self._encode(json.dumps(asdict(user), ensure_ascii=False))}
        )

    def set_session(self, credentials: Credentials, user: Optional[UserProfile]) -> None:
        """Store tokens and user profile together (used after login)."""
        items = {
            STORAGE_KEYS["access_token"]: self._encode(credentials.access_token),
            STORAGE_KEYS["refresh_token"]: self._encode(credentials.refresh_token),
        }
        if user is not None:
            items[STORAGE_KEYS["user"]] = self._encode(
                json.dumps(asdict(user), ensure_ascii=False)
            )
        self.storage.set_items(items)


def create_credential_store(settings) -> CredentialStore:
    """Build the credential store described by settings."""
    cipher = None
    if settings.fernet_key:
        cipher = TokenCipher(settings.fernet_key, settings.fernet_keys)

    if settings.credential_store_backend == "memory":
        storage: KeyValueStorage = MemoryStorage()
    else:
        storage = FileStorage(settings.credential_store_path)

    logger.debug(
        "Credential store created",
        backend=settings.credential_store_backend,
        encrypted=cipher is not None,
    )
    return CredentialStore(storage, cipher)
