"""
Encryption Utilities
Fernet encryption for bank account numbers stored on creator profiles
"""

import base64
import hashlib
import logging
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def get_encryption_key(settings):
    """Fernet key from ENCRYPTION_KEY, or derived from SECRET_KEY when unset"""
    if settings.ENCRYPTION_KEY:
        return settings.ENCRYPTION_KEY.encode()
    logger.warning("ENCRYPTION_KEY not set - deriving key from SECRET_KEY")
    digest = hashlib.sha256(settings.SECRET_KEY.encode()).digest()
    return base64.urlsafe_b64encode(digest)


def encrypt_sensitive_data(data, settings):
    """Encrypt sensitive data like account numbers"""
    if not data or not data.strip():
        return ""
    fernet = Fernet(get_encryption_key(settings))
    return fernet.encrypt(data.strip().encode()).decode()


def decrypt_sensitive_data(encrypted_data, settings):
    """Decrypt sensitive data for payouts"""
    if not encrypted_data:
        return ""
    try:
        fernet = Fernet(get_encryption_key(settings))
        return fernet.decrypt(encrypted_data.encode()).decode()
    except InvalidToken:
        logger.error("Decryption error: invalid token (key rotated?)")
        raise


def mask_sensitive_data(data):
    """Mask sensitive data for display"""
    if not data or len(data) < 4:
        return "***"
    return f"***{data[-4:]}"
