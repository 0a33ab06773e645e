"""
At-rest encryption for the persisted session.

The credential store seals every value it writes to disk with Fernet. Several
keys may be configured: the first one seals, all of them can open, which lets
an operator rotate FERNET_KEY without logging every user out.
"""

from typing import List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class CipherError(Exception):
    """A key is missing or malformed."""

    pass


class UnreadableValueError(CipherError):
    """A sealed value cannot be opened with any configured key."""

    pass


def _load_key(key_b64: str, setting: str) -> Fernet:
    try:
        return Fernet(key_b64.strip().encode())
    except (ValueError, TypeError) as e:
        raise CipherError(f"Invalid key in {setting}: {e}") from e


class TokenCipher:
    """
    Seals and opens stored session values.

    Usage:
        cipher = TokenCipher(settings.fernet_key, settings.fernet_keys)
        stored = cipher.seal("eyJhbGciOi...")
        cipher.open(stored)
    """

    def __init__(self, primary_key: str, older_keys: Optional[Sequence[str]] = None):
        if not primary_key:
            raise CipherError("FERNET_KEY is empty; run `logistica keygen` to create one")

        fernets: List[Fernet] = [_load_key(primary_key, "FERNET_KEY")]
        fernets.extend(_load_key(k, "FERNET_KEYS") for k in older_keys or [] if k.strip())
        self._fernet = MultiFernet(fernets)
        self.key_count = len(fernets)

    def seal(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def open(self, sealed: str) -> str:
        try:
            return self._fernet.decrypt(sealed.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise UnreadableValueError(
                f"Value cannot be opened with any of the {self.key_count} configured keys"
            ) from e

    def reseal(self, sealed: str) -> str:
        """Re-encrypt a value under the primary key."""
        try:
            return self._fernet.rotate(sealed.encode("ascii")).decode("ascii")
        except (InvalidToken, UnicodeError) as e:
            raise UnreadableValueError("Value cannot be re-encrypted") from e


def generate_key() -> str:
    """New random key suitable for FERNET_KEY."""
    return Fernet.generate_key().decode()
