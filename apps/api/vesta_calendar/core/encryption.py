"""Encryption utilities for OAuth tokens stored at rest."""

import hmac

from cryptography.fernet import Fernet, InvalidToken

from vesta_calendar.core.config import settings


_fernet: Fernet | None = None


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet
    if _fernet is None:
        if not settings.FERNET_KEY:
            raise RuntimeError(
                "FERNET_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.FERNET_KEY.encode())
    return _fernet


def encrypt_token(token: str) -> str:
    """Encrypt a token for storage."""
    if not token:
        return ""
    return get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored token."""
    if not encrypted:
        return ""
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted token")


def verify_encrypted_token(encrypted: str | None, candidate: str | None) -> bool:
    """Constant-time comparison of a candidate against an encrypted stored token."""
    if not encrypted or not candidate:
        return False
    try:
        expected = decrypt_token(encrypted)
    except ValueError:
        return False
    return hmac.compare_digest(expected, candidate)


def is_encryption_configured() -> bool:
    """Check if encryption is properly configured."""
    return bool(settings.FERNET_KEY)
