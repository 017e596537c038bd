"""Tests for lexis.crypto -- encryption at rest, key management, passthrough."""
import os
import stat

import pytest

from lexis.crypto import (
    PREFIX,
    _get_or_create_key,
    _key_path,
    decrypt_bytes,
    encrypt_bytes,
    is_enabled,
    reset_crypto_state,
    secure_connect,
)


@pytest.fixture(autouse=True)
def _reset_crypto():
    """Reset crypto state before and after each test."""
    reset_crypto_state()
    yield
    reset_crypto_state()


# ============================================================================
# is_enabled
# ============================================================================


class TestIsEnabled:
    def test_enabled_by_default(self, monkeypatch):
        monkeypatch.delenv("LEXIS_ENCRYPT", raising=False)
        assert is_enabled() is True

    @pytest.mark.parametrize("value", ["1", "true", "yes", ""])
    def test_enabled_values(self, monkeypatch, value):
        monkeypatch.setenv("LEXIS_ENCRYPT", value)
        assert is_enabled() is True

    @pytest.mark.parametrize("value", ["0", "false", "no", "FALSE"])
    def test_disabled_values(self, monkeypatch, value):
        monkeypatch.setenv("LEXIS_ENCRYPT", value)
        assert is_enabled() is False


# ============================================================================
# Key management
# ============================================================================


class TestKeyManagement:
    def test_key_created_owner_only(self, tmp_lexis_dir_encrypted):
        _get_or_create_key()
        kp = _key_path()
        assert kp.exists()
        assert stat.S_IMODE(kp.stat().st_mode) == 0o600

    def test_key_is_stable(self, tmp_lexis_dir_encrypted):
        assert _get_or_create_key() == _get_or_create_key()

    def test_raw_32_byte_key_accepted(self, tmp_lexis_dir_encrypted):
        _key_path().write_bytes(b"k" * 32)
        ciphertext = encrypt_bytes(b"hello")
        assert decrypt_bytes(ciphertext) == b"hello"


# ============================================================================
# encrypt / decrypt
# ============================================================================


class TestEncryptDecrypt:
    def test_round_trip(self, tmp_lexis_dir_encrypted):
        data = '{"entries": ["café"]}'.encode("utf-8")
        ciphertext = encrypt_bytes(data)
        assert ciphertext.startswith(PREFIX)
        assert data not in ciphertext
        assert decrypt_bytes(ciphertext) == data

    def test_disabled_is_passthrough(self, tmp_lexis_dir):
        assert encrypt_bytes(b"plain") == b"plain"
        assert not _key_path().exists()

    def test_plaintext_reads_through(self, tmp_lexis_dir_encrypted):
        assert decrypt_bytes(b'{"version": 1}') == b'{"version": 1}'

    def test_wrong_key_raises(self, tmp_lexis_dir_encrypted):
        ciphertext = encrypt_bytes(b"secret")
        _key_path().unlink()
        reset_crypto_state()
        with pytest.raises(ValueError):
            decrypt_bytes(ciphertext)

    def test_corrupted_ciphertext_raises(self, tmp_lexis_dir_encrypted):
        with pytest.raises(ValueError):
            decrypt_bytes(PREFIX + b"not-a-token")


class TestSecureConnect:
    def test_new_file_owner_only(self, tmp_path):
        db = tmp_path / "new.db"
        conn = secure_connect(db)
        conn.close()
        assert stat.S_IMODE(db.stat().st_mode) == 0o600

    def test_fixes_loose_permissions(self, tmp_path):
        db = tmp_path / "loose.db"
        db.touch()
        os.chmod(db, 0o644)
        conn = secure_connect(db)
        conn.close()
        assert stat.S_IMODE(db.stat().st_mode) == 0o600
