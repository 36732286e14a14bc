"""
Security Utilities
Session JWTs and at-rest encryption for Google OAuth tokens
"""

import base64
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError
from jose import jwt as jose_jwt

from .config import SECRET_KEY, TOKEN_ENCRYPTION_KEY

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


# ============================================================================
# OAUTH TOKEN ENCRYPTION
# ============================================================================


def _get_cipher() -> Fernet:
    # Fernet needs 32 url-safe base64 bytes; derive them from the configured key
    digest = hashlib.sha256(TOKEN_ENCRYPTION_KEY.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """Encrypt a refresh token for storage"""
    if not token:
        return None
    return _get_cipher().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored refresh token

    Returns:
        The plain token, or None if missing or undecryptable
    """
    if not encrypted_token:
        return None
    try:
        return _get_cipher().decrypt(encrypted_token.encode()).decode()
    except (InvalidToken, ValueError) as e:
        logger.error(f"❌ Unable to decrypt stored token: {type(e).__name__}")
        return None


# ============================================================================
# SESSION TOKENS
# ============================================================================


def create_jwt_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT token

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time (default 15 minutes)
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))

    to_encode.update({"exp": expire})
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_jwt_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None
