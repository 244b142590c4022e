"""Fernet encryption for server access tokens at rest.

Master key sourced from BERTH_ENCRYPTION_KEY. Without a key, servers cannot
be created or contacted; everything else keeps working.
"""

from cryptography.fernet import Fernet, InvalidToken

from berth.config import settings
from berth.logging_config import get_logger

logger = get_logger(__name__)

_fernet: Fernet | None = None


def init_encryption() -> None:
    """Initialize encryption from config. Call during API lifespan startup."""
    global _fernet  # noqa: PLW0603

    key = settings.encryption_key
    if not key:
        logger.warning(
            "No encryption key configured (BERTH_ENCRYPTION_KEY). "
            "Server access tokens cannot be stored or used."
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode())
        logger.info("Encryption initialized")
    except ValueError as e:
        logger.error("Invalid encryption key", error=str(e))
        _fernet = None


def is_encryption_available() -> bool:
    """Check if encryption is configured and available."""
    return _fernet is not None


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string. Returns base64-encoded Fernet ciphertext."""
    if _fernet is None:
        raise RuntimeError("Encryption not configured. Set BERTH_ENCRYPTION_KEY.")
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a Fernet ciphertext string. Returns plaintext."""
    if _fernet is None:
        raise RuntimeError("Encryption not configured. Set BERTH_ENCRYPTION_KEY.")
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        raise ValueError("Failed to decrypt value: key mismatch or corrupted data") from None
