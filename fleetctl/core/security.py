import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from fleetctl.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


def get_fernet() -> Fernet:
    """Derives a Fernet key from the SECRET_KEY and returns a Fernet instance.

    Fernet requires a 32-byte url-safe base64-encoded key, so the key is the
    SHA-256 digest of SECRET_KEY.
    """
    key_bytes = settings.SECRET_KEY.encode()
    hash_object = hashlib.sha256(key_bytes)
    key_32 = base64.urlsafe_b64encode(hash_object.digest())
    return Fernet(key_32)


def encrypt_secret(plain_text: str) -> str:
    """Encrypts a credential secret using Fernet symmetric encryption.

    Args:
        plain_text: The sensitive data to encrypt.

    Returns:
        The encrypted token as a string.
    """
    if not plain_text:
        return ""
    f = get_fernet()
    return f.encrypt(plain_text.encode()).decode()


def decrypt_secret(cipher_text: str) -> str:
    """Decrypts a stored credential secret.

    Secrets that are not valid Fernet tokens are returned unchanged so that
    credentials imported in clear text keep working.

    Args:
        cipher_text: The encrypted token.

    Returns:
        The decrypted plain-text string.
    """
    if not cipher_text:
        return ""
    try:
        f = get_fernet()
        return f.decrypt(cipher_text.encode()).decode()
    except InvalidToken:
        logger.warning("Credential secret is not a valid token, using it as stored")
        return cipher_text
