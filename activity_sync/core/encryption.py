"""Token encryption utilities using Fernet symmetric encryption.

OAuth access and refresh tokens are stored encrypted; they are only decrypted
immediately before a provider call.
"""

from __future__ import annotations

import base64

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from activity_sync.config.settings import settings


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""


class EncryptionKeyError(EncryptionError):
    """Raised when decryption fails due to wrong encryption key.

    This typically occurs when ENCRYPTION_KEY is not set or changed,
    causing tokens encrypted with a different key to fail decryption.
    """


def _get_encryption_key() -> bytes:
    """Get encryption key from settings, or generate one when explicitly allowed.

    Returns:
        Fernet encryption key as bytes

    Raises:
        EncryptionError: ENCRYPTION_KEY is unset and ALLOW_EPHEMERAL_ENCRYPTION_KEY is off
    """
    if settings.encryption_key:
        return settings.encryption_key.encode()
    if not settings.allow_ephemeral_encryption_key:
        raise EncryptionError("ENCRYPTION_KEY is not set. Set ALLOW_EPHEMERAL_ENCRYPTION_KEY=true for local development only.")

    logger.warning(
        "ENCRYPTION_KEY not set. Generating an ephemeral key (NOT suitable for production). "
        "Tokens stored with this key cannot be decrypted after a restart."
    )
    return Fernet.generate_key()


_cipher: Fernet | None = None


def _get_cipher() -> Fernet:
    global _cipher
    if _cipher is None:
        try:
            _cipher = Fernet(_get_encryption_key())
        except ValueError as e:
            raise EncryptionError("Invalid ENCRYPTION_KEY format. Must be a Fernet key (base64-encoded string).") from e
    return _cipher


def encrypt_token(token: str) -> str:
    """Encrypt a token string for secure storage.

    Args:
        token: Plain text token to encrypt

    Returns:
        Encrypted token as base64-encoded string

    Raises:
        EncryptionError: If encryption fails
    """
    try:
        encrypted = _get_cipher().encrypt(token.encode())
        return base64.urlsafe_b64encode(encrypted).decode()
    except EncryptionError:
        raise
    except Exception as e:
        logger.error(f"Token encryption failed: {e}")
        raise EncryptionError(f"Failed to encrypt token: {e}") from e


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt an encrypted token string.

    Args:
        encrypted_token: Base64-encoded encrypted token

    Returns:
        Decrypted plain text token

    Raises:
        EncryptionKeyError: If decryption fails due to wrong encryption key
        EncryptionError: If decryption fails for other reasons
    """
    try:
        encrypted_bytes = base64.urlsafe_b64decode(encrypted_token.encode())
        return _get_cipher().decrypt(encrypted_bytes).decode()
    except InvalidToken as e:
        error_msg = (
            "Token decryption failed: wrong encryption key. "
            "ENCRYPTION_KEY is unset or has changed since the token was stored; "
            "the athlete must reconnect the provider."
        )
        logger.error(error_msg)
        raise EncryptionKeyError(error_msg) from e
    except EncryptionError:
        raise
    except Exception as e:
        logger.error(f"Token decryption failed: {e}")
        raise EncryptionError(f"Failed to decrypt token: {e}") from e
