"""
Tests for credential persistence.

Covers the token pair lifecycle, file persistence across store instances
(the equivalent of a page reload), at-rest encryption and recovery from
corrupted session files.
"""

import json
import os
import stat

import pytest

from logistica_client.config import Settings
from logistica_client.services.credential_store import (
    STORAGE_KEYS,
    CredentialStore,
    Credentials,
    FileStorage,
    MemoryStorage,
    StorageError,
    UserProfile,
    create_credential_store,
)
from logistica_client.utils.crypto import TokenCipher, generate_key


class RecordingStorage(MemoryStorage):
    """MemoryStorage that remembers every write."""

    def __init__(self):
        super().__init__()
        self.writes = []

    def set_items(self, items):
        self.writes.append(dict(items))
        super().set_items(items)


class TestCredentialStore:
    def test_empty_before_login(self, store):
        assert store.get() == Credentials()
        assert store.get().is_empty
        assert not store.has_session()

    def test_set_replaces_both_tokens_in_one_write(self):
        storage = RecordingStorage()
        store = CredentialStore(storage)

        store.set(Credentials("a1", "r1"))
        store.set(Credentials("a2", "r2"))

        assert store.get() == Credentials("a2", "r2")
        assert len(storage.writes) == 2
        for write in storage.writes:
            assert set(write) == {STORAGE_KEYS["access_token"], STORAGE_KEYS["refresh_token"]}

    def test_set_with_missing_refresh_token_drops_the_old_one(self, store):
        store.set(Credentials("a1", "r1"))
        store.set(Credentials("a2", None))
        assert store.get() == Credentials("a2", None)

    def test_clear_removes_tokens_and_user(self, store):
        store.set_session(Credentials("a1", "r1"), UserProfile("u-1", "Ana", "ana@x.com", "admin"))
        store.clear()

        assert store.get().is_empty
        assert store.get_user() is None

    def test_user_profile_round_trip(self, store):
        user = UserProfile("u-1", "João", "joao@caramello.com", "motorista")
        store.set_user(user)
        assert store.get_user() == user

    def test_invalid_user_profile_is_discarded(self):
        storage = MemoryStorage({STORAGE_KEYS["user"]: "{not json"})
        store = CredentialStore(storage)
        assert store.get_user() is None
        assert storage.get_item(STORAGE_KEYS["user"]) is None


class RacingFileStorage(FileStorage):
    """FileStorage where another process rewrites the session after every read."""

    def __init__(self, path, next_pair):
        super().__init__(path)
        self.next_pair = next_pair
        self.reads = 0

    def _read(self):
        data = super()._read()
        self.reads += 1
        access, refresh = self.next_pair
        FileStorage(self.path).set_items(
            {STORAGE_KEYS["access_token"]: access, STORAGE_KEYS["refresh_token"]: refresh}
        )
        return data


class TestFileStorage:
    def test_session_survives_new_store_instance(self, tmp_path):
        path = tmp_path / "session.json"
        CredentialStore(FileStorage(path)).set(Credentials("a1", "r1"))

        reloaded = CredentialStore(FileStorage(path))
        assert reloaded.get() == Credentials("a1", "r1")

    def test_uses_fixed_storage_keys(self, tmp_path):
        path = tmp_path / "session.json"
        CredentialStore(FileStorage(path)).set(Credentials("a1", "r1"))

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {
            "@CaramelloLogistica:token": "a1",
            "@CaramelloLogistica:refreshToken": "r1",
        }

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_file_is_private(self, tmp_path):
        path = tmp_path / "session.json"
        FileStorage(path).set_items({"k": "v"})
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_token_pair_comes_from_one_read(self, tmp_path):
        path = tmp_path / "session.json"
        CredentialStore(FileStorage(path)).set(Credentials("a1", "r1"))
        storage = RacingFileStorage(path, next_pair=("a2", "r2"))

        credentials = CredentialStore(storage).get()

        assert credentials == Credentials("a1", "r1")
        assert storage.reads == 1

    def test_missing_file_reads_as_empty(self, tmp_path):
        assert FileStorage(tmp_path / "absent.json").get_item("k") is None

    def test_corrupted_file_reads_as_empty(self, tmp_path):
        path = tmp_path / "session.json"
        path.write_text("{{{", encoding="utf-8")
        store = CredentialStore(FileStorage(path))
        assert store.get().is_empty

        store.set(Credentials("a1", "r1"))
        assert store.get() == Credentials("a1", "r1")

    def test_no_temp_files_left_behind(self, tmp_path):
        storage = FileStorage(tmp_path / "session.json")
        storage.set_items({"a": "1"})
        storage.remove_items(["a"])
        assert [p.name for p in tmp_path.iterdir()] == ["session.json"]

    def test_unwritable_location_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        storage = FileStorage(blocker / "session.json")
        with pytest.raises(StorageError):
            storage.set_items({"a": "1"})


class TestEncryptedStore:
    def test_tokens_are_encrypted_at_rest(self, tmp_path):
        path = tmp_path / "session.json"
        cipher = TokenCipher(generate_key())
        store = CredentialStore(FileStorage(path), cipher)

        store.set(Credentials("access-plain", "refresh-plain"))

        raw = path.read_text(encoding="utf-8")
        assert "access-plain" not in raw
        assert "refresh-plain" not in raw
        assert store.get() == Credentials("access-plain", "refresh-plain")

    def test_rotated_key_still_decrypts(self, tmp_path):
        path = tmp_path / "session.json"
        old_key = generate_key()
        CredentialStore(FileStorage(path), TokenCipher(old_key)).set(Credentials("a1", "r1"))

        rotated = TokenCipher(generate_key(), [old_key])
        assert CredentialStore(FileStorage(path), rotated).get() == Credentials("a1", "r1")

    def test_wrong_key_reads_as_absent(self, tmp_path):
        path = tmp_path / "session.json"
        CredentialStore(FileStorage(path), TokenCipher(generate_key())).set(
            Credentials("a1", "r1")
        )

        other = CredentialStore(FileStorage(path), TokenCipher(generate_key()))
        assert other.get().is_empty

    def test_reseal_moves_values_to_new_key(self, tmp_path):
        path = tmp_path / "session.json"
        old_key, new_key = generate_key(), generate_key()
        CredentialStore(FileStorage(path), TokenCipher(old_key)).set_session(
            Credentials("a1", "r1"), UserProfile("1", "Ana", "ana@x.com")
        )

        assert CredentialStore(FileStorage(path), TokenCipher(new_key, [old_key])).reseal() == 3

        only_new = CredentialStore(FileStorage(path), TokenCipher(new_key))
        assert only_new.get() == Credentials("a1", "r1")
        assert only_new.get_user().name == "Ana"

    def test_reseal_drops_unreadable_values(self, tmp_path):
        path = tmp_path / "session.json"
        CredentialStore(FileStorage(path), TokenCipher(generate_key())).set(
            Credentials("a1", "r1")
        )

        store = CredentialStore(FileStorage(path), TokenCipher(generate_key()))

        assert store.reseal() == 0
        assert FileStorage(path).get_item(STORAGE_KEYS["access_token"]) is None

    def test_reseal_without_cipher_is_a_no_op(self, store):
        store.set(Credentials("a", "r"))
        assert store.reseal() == 0


class TestCreateCredentialStore:
    def test_memory_backend(self):
        settings = Settings(_env_file=None, credential_store_backend="memory")
        store = create_credential_store(settings)
        assert isinstance(store.storage, MemoryStorage)
        assert store.cipher is None

    def test_file_backend_with_encryption(self, tmp_path):
        settings = Settings(
            _env_file=None,
            credential_store_backend="file",
            credential_store_path=tmp_path / "s.json",
            fernet_key=generate_key(),
        )
        store = create_credential_store(settings)
        assert isinstance(store.storage, FileStorage)
        assert store.cipher is not None
