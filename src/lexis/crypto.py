"""
Lexis Crypto -- optional encryption at rest for persisted snapshots.

Snapshot bytes written to the key-value store are encrypted with Fernet
(AES-128-CBC + HMAC-SHA256). The key lives at $LEXIS_HOME/.key and is
created on first use with owner-only permissions.

Enabled by default. Disable: LEXIS_ENCRYPT=0

Losing the key file means losing access to encrypted snapshots.
"""

import base64
import logging
import os
import secrets
import sqlite3
import stat
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from lexis.config import lexis_home

logger = logging.getLogger("lexis.crypto")

PREFIX = b"ENC:"

_fernet_instance = None


def _key_path() -> Path:
    return lexis_home() / ".key"


def is_enabled() -> bool:
    """Check if encryption at rest is enabled (on unless LEXIS_ENCRYPT=0)."""
    val = os.environ.get("LEXIS_ENCRYPT", "").strip().lower()
    if val in ("0", "false", "no"):
        return False
    return True


def reset_crypto_state() -> None:
    """Reset module state for test isolation."""
    global _fernet_instance
    _fernet_instance = None


def _get_or_create_key() -> bytes:
    """Get the Fernet key, creating one if it doesn't exist."""
    kp = _key_path()
    if kp.exists():
        raw = kp.read_bytes().strip()
        # A 32-byte raw secret still needs encoding into a Fernet key
        if len(raw) == 32:
            return base64.urlsafe_b64encode(raw)
        return raw

    home = kp.parent
    home.mkdir(parents=True, exist_ok=True, mode=0o700)
    encoded_key = base64.urlsafe_b64encode(secrets.token_bytes(32))
    # O_EXCL with 0600 so the key is never briefly world-readable
    fd = os.open(str(kp), os.O_CREAT | os.O_WRONLY | os.O_EXCL, 0o600)
    try:
        os.write(fd, encoded_key)
    finally:
        os.close(fd)
    logger.info("Created encryption key at %s", kp)
    return encoded_key


def _get_fernet() -> Fernet:
    global _fernet_instance
    if _fernet_instance is None:
        _fernet_instance = Fernet(_get_or_create_key())
    return _fernet_instance


def encrypt_bytes(data: bytes) -> bytes:
    """Encrypt bytes, returning ``ENC:``-prefixed ciphertext.

    Returns data unchanged when encryption is disabled.
    """
    if not is_enabled():
        return data
    return PREFIX + _get_fernet().encrypt(data)


def decrypt_bytes(data: bytes) -> bytes:
    """Decrypt bytes written by ``encrypt_bytes``; plaintext passes through.

    Raises ValueError on a bad key or corrupted ciphertext so callers never
    mistake ciphertext for content.
    """
    if not data.startswith(PREFIX):
        return data
    try:
        return _get_fernet().decrypt(data[len(PREFIX):])
    except InvalidToken as e:
        raise ValueError("Decryption failed: invalid key or corrupted data") from e


def secure_connect(db_path, **kwargs) -> sqlite3.Connection:
    """Open a SQLite connection, creating or fixing the file as mode 0600."""
    db_path_str = str(db_path)
    path_obj = Path(db_path_str)

    if not path_obj.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = path_obj.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)

    return sqlite3.connect(db_path_str, **kwargs)
