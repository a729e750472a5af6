"""
Encryption utilities for database passwords kept in the REPLICATION settings.
Uses Fernet symmetric encryption from cryptography library.
"""
import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

logger = logging.getLogger(__name__)


def get_fernet_key():
    """
    Derive a Fernet key from settings.DB_PASSWORD_ENCRYPTION_KEY.
    """
    key = settings.DB_PASSWORD_ENCRYPTION_KEY
    # Fernet wants 32 url-safe base64-encoded bytes
    hashed = hashlib.sha256(key.encode()).digest()
    return base64.urlsafe_b64encode(hashed)


def encrypt_password(plain_password):
    """
    Encrypt a plain text password.

    Args:
        plain_password (str): The password to encrypt

    Returns:
        str: Encrypted password as a string
    """
    if not plain_password:
        return ""

    fernet = Fernet(get_fernet_key())
    return fernet.encrypt(plain_password.encode()).decode()


def decrypt_password(encrypted_password):
    """
    Decrypt a password produced by encrypt_password.

    Raises:
        ValueError: If the token was not produced with the configured key
    """
    if not encrypted_password:
        return ""

    fernet = Fernet(get_fernet_key())
    try:
        return fernet.decrypt(encrypted_password.encode()).decode()
    except InvalidToken as e:
        logger.error("Cannot decrypt database password: invalid token or key")
        raise ValueError("Invalid encrypted password") from e
