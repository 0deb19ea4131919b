import os
import struct
from unittest.mock import patch

import pytest

from ssh_utils.errors import (
    UNLOCK_FAILED_MESSAGE,
    CorruptVault,
    ExitCode,
    PersistError,
    ProfileNotFound,
    UnsupportedFormat,
    VaultError,
    VaultNotFound,
    WrongSecret,
)
from ssh_utils.models.profile import DefaultAuth, IdentityAuth, PasswordAuth, Profile
from ssh_utils.vault import (
    HEADER_SIZE,
    FORMAT_VERSION,
    Vault,
    VaultFile,
    decode_vault_file,
    encode_vault_file,
    unlock,
)


def make_profiles():
    return [
        Profile(label="web", host="web.example.com", username="deploy",
                auth=PasswordAuth(password="p@ss")),
        Profile(label="db", host="10.0.0.5", port=2222, username="admin",
                auth=IdentityAuth(path="~/.ssh/db_key", passphrase="phrase")),
        Profile(label="bastion", host="bastion.example.com", username="ops"),
    ]


@pytest.fixture
def vault(vault_path, fast_kdf):
    """Initialized vault holding three profiles, locked again"""
    unlocked = Vault(vault_path).initialize("master", fast_kdf)
    for profile in make_profiles():
        unlocked.upsert(profile)
    unlocked.lock()
    return Vault(vault_path)


class TestVaultLifecycle:
    """Test initialize / unlock / lock"""

    def test_initialize_creates_empty_vault(self, vault_path, fast_kdf):
        unlocked = Vault(vault_path).initialize("master", fast_kdf)

        assert vault_path.exists()
        assert unlocked.list_profiles() == []
        assert oct(os.stat(vault_path).st_mode & 0o777) == oct(0o600)

    def test_initialize_refuses_existing(self, vault, fast_kdf):
        with pytest.raises(PersistError):
            Vault(vault.path).initialize("other", fast_kdf)

    def test_round_trip(self, vault):
        expected = [profile.to_record() for profile in make_profiles()]

        with vault.unlock("master") as unlocked:
            records = [unlocked.find(s.id).to_record() for s in unlocked.list_profiles()]

        for record, original in zip(records, expected):
            record.pop("id")
            original.pop("id")
        assert records == expected

    def test_store_order_preserved(self, vault):
        with vault.unlock("master") as unlocked:
            labels = [summary.label for summary in unlocked.list_profiles()]
        assert labels == ["web", "db", "bastion"]

    def test_module_level_unlock(self, vault):
        unlocked = unlock(vault.path, "master")
        assert len(unlocked.list_profiles()) == 3
        unlocked.lock()

    def test_unlock_twice_rejected(self, vault):
        unlocked = vault.unlock("master")
        with pytest.raises(VaultError):
            vault.unlock("master")
        unlocked.lock()
        vault.unlock("master").lock()

    def test_lock_is_idempotent_and_wipes(self, vault):
        unlocked = vault.unlock("master")
        profile = unlocked.find(unlocked.list_profiles()[0].id)
        password = profile.auth.password

        unlocked.lock()
        unlocked.lock()

        assert password.wiped
        assert unlocked.is_locked
        with pytest.raises(VaultError):
            unlocked.list_profiles()


class TestVaultFailures:
    """Test that every unlock failure is reported distinctly"""

    def test_missing_file(self, vault_path):
        with pytest.raises(VaultNotFound) as exc_info:
            Vault(vault_path).unlock("master")
        assert exc_info.value.exit_code == ExitCode.VAULT

    def test_wrong_secret(self, vault):
        with pytest.raises(WrongSecret) as exc_info:
            vault.unlock("not-the-master")
        assert exc_info.value.user_message == UNLOCK_FAILED_MESSAGE

    def test_wrong_secret_leaves_vault_unlockable(self, vault):
        with pytest.raises(WrongSecret):
            vault.unlock("nope")
        vault.unlock("master").lock()

    def test_flipped_ciphertext_byte(self, vault):
        data = bytearray(vault.path.read_bytes())
        data[HEADER_SIZE] ^= 0xFF
        vault.path.write_bytes(bytes(data))

        with pytest.raises(WrongSecret):
            vault.unlock("master")

    def test_tampered_kdf_params_detected(self, vault):
        data = bytearray(vault.path.read_bytes())
        # r (u16) sits after version, salt and n
        data[1 + 16 + 4 + 1] ^= 0x01
        vault.path.write_bytes(bytes(data))

        with pytest.raises(WrongSecret):
            vault.unlock("master")

    def test_invalid_stored_kdf_params(self, vault):
        data = bytearray(vault.path.read_bytes())
        # n (u32) sits after version and salt
        struct.pack_into("!I", data, 1 + 16, 3)
        vault.path.write_bytes(bytes(data))

        with pytest.raises(CorruptVault) as exc_info:
            vault.unlock("wrong-guess")
        assert exc_info.value.user_message == UNLOCK_FAILED_MESSAGE
        assert exc_info.value.exit_code == ExitCode.VAULT

    def test_truncated_header(self, vault):
        vault.path.write_bytes(vault.path.read_bytes()[:10])

        with pytest.raises(CorruptVault) as exc_info:
            vault.unlock("master")
        assert exc_info.value.user_message == UNLOCK_FAILED_MESSAGE

    def test_empty_file(self, vault):
        vault.path.write_bytes(b"")

        with pytest.raises(CorruptVault):
            vault.unlock("master")

    def test_unsupported_version(self, vault):
        data = bytearray(vault.path.read_bytes())
        data[0] = FORMAT_VERSION + 1
        vault.path.write_bytes(bytes(data))

        with pytest.raises(UnsupportedFormat):
            vault.unlock("master")

    def test_malformed_document(self, vault_path, fast_kdf):
        unlocked = Vault(vault_path).initialize("master", fast_kdf)
        with patch("ssh_utils.vault._serialize_profiles", return_value=bytearray(b"not json")):
            unlocked.upsert(Profile(label="x", host="h", username="u"))
        unlocked.lock()

        with pytest.raises(CorruptVault):
            Vault(vault_path).unlock("master")


class TestVaultMutations:
    """Test upsert / remove / change_master_secret"""

    def test_upsert_replaces_by_id(self, vault):
        with vault.unlock("master") as unlocked:
            profile = unlocked.find(unlocked.list_profiles()[0].id)
            old_password = profile.auth.password
            updated = profile.model_copy(update={"label": "web-2", "auth": DefaultAuth()})
            unlocked.upsert(updated)

            assert old_password.wiped
            assert [s.label for s in unlocked.list_profiles()][0] == "web-2"

        with vault.unlock("master") as unlocked:
            assert len(unlocked.list_profiles()) == 3
            assert unlocked.list_profiles()[0].label == "web-2"

    def test_remove(self, vault):
        with vault.unlock("master") as unlocked:
            profile_id = unlocked.list_profiles()[1].id
            unlocked.remove(profile_id)
            with pytest.raises(ProfileNotFound):
                unlocked.find(profile_id)

        with vault.unlock("master") as unlocked:
            assert [s.label for s in unlocked.list_profiles()] == ["web", "bastion"]

    def test_remove_unknown(self, vault):
        with vault.unlock("master") as unlocked:
            with pytest.raises(ProfileNotFound) as exc_info:
                unlocked.remove("missing")
        assert exc_info.value.exit_code == ExitCode.PROFILE_NOT_FOUND

    def test_fresh_nonce_per_write(self, vault):
        before = decode_vault_file(vault.path.read_bytes())
        with vault.unlock("master") as unlocked:
            unlocked.upsert(Profile(label="new", host="h", username="u"))
        after = decode_vault_file(vault.path.read_bytes())

        assert before.nonce != after.nonce
        assert before.salt == after.salt

    def test_failed_write_keeps_original(self, vault):
        original = vault.path.read_bytes()
        with vault.unlock("master") as unlocked:
            with patch("ssh_utils.vault.os.replace", side_effect=OSError(28, "No space left")):
                with pytest.raises(PersistError):
                    unlocked.upsert(Profile(label="new", host="h", username="u"))
            assert len(unlocked.list_profiles()) == 3

        assert vault.path.read_bytes() == original
        assert [p.name for p in vault.path.parent.iterdir()] == [vault.path.name]
        with vault.unlock("master") as unlocked:
            assert len(unlocked.list_profiles()) == 3

    def test_failed_upsert_leaves_stored_profile_untouched(self, vault):
        with vault.unlock("master") as unlocked:
            profile_id = unlocked.list_profiles()[0].id
            edited = unlocked.find(profile_id).model_copy(update={"label": "renamed"})
            with patch("ssh_utils.vault.os.replace", side_effect=OSError(13, "Permission denied")):
                with pytest.raises(PersistError):
                    unlocked.upsert(edited)

            assert unlocked.find(profile_id).label == "web"
            assert not unlocked.find(profile_id).auth.password.wiped

    def test_change_master_secret(self, vault):
        before = decode_vault_file(vault.path.read_bytes())
        with vault.unlock("master") as unlocked:
            unlocked.change_master_secret("new-master")

        assert decode_vault_file(vault.path.read_bytes()).salt != before.salt
        with pytest.raises(WrongSecret):
            vault.unlock("master")
        with vault.unlock("new-master") as unlocked:
            assert len(unlocked.list_profiles()) == 3


class TestPresentationBoundary:
    """Summaries and reprs never expose secrets"""

    def test_summaries_have_no_secrets(self, vault):
        with vault.unlock("master") as unlocked:
            dumped = [summary.model_dump() for summary in unlocked.list_profiles()]

        for summary in dumped:
            assert set(summary) == {"id", "label", "host", "username"}
        assert "p@ss" not in repr(dumped)

    def test_profile_repr_masks_secrets(self, vault):
        with vault.unlock("master") as unlocked:
            text = repr([unlocked.find(s.id) for s in unlocked.list_profiles()])

        assert "p@ss" not in text
        assert "phrase" not in text

    def test_vault_file_has_no_plaintext(self, vault):
        data = vault.path.read_bytes()
        assert b"web.example.com" not in data
        assert b"p@ss" not in data


class TestVaultFileCodec:
    """Test binary container layout"""

    def test_layout(self, fast_kdf):
        vault_file = VaultFile(
            salt=b"s" * 16, kdf_params=fast_kdf, nonce=b"n" * 12, mac=b"m" * 16,
            ciphertext=b"payload",
        )
        data = encode_vault_file(vault_file)

        assert len(data) == HEADER_SIZE + len(b"payload")
        assert data[0] == FORMAT_VERSION
        assert decode_vault_file(data) == vault_file
