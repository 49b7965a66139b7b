"""
Security Utilities
Token generation, at-rest encryption of OAuth tokens, and redaction helpers
"""

import base64
import hashlib
import logging
import re
import secrets

from cryptography.fernet import Fernet

from .config import SECRET_KEY

logger = logging.getLogger(__name__)


# ============================================================================
# TOKEN GENERATION & COMPARISON
# ============================================================================


def generate_secure_token(length: int = 32) -> str:
    """Generate a cryptographically secure random token"""
    return secrets.token_urlsafe(length)


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks"""
    return secrets.compare_digest(a.encode(), b.encode())


# ============================================================================
# AT-REST ENCRYPTION
# ============================================================================


def _fernet(secret_key: str = SECRET_KEY) -> Fernet:
    # Fernet needs 32 url-safe base64 bytes; derive them from SECRET_KEY
    digest = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_token(plain: str) -> str:
    """Encrypt an OAuth token for storage"""
    return _fernet().encrypt(plain.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Decrypt a stored OAuth token

    Raises cryptography.fernet.InvalidToken when the value was not encrypted
    with the current SECRET_KEY.
    """
    return _fernet().decrypt(encrypted.encode()).decode()


# ============================================================================
# REDACTION
# ============================================================================

_BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9\-._~+/]+=*")
_TOKEN_FIELD_RE = re.compile(
    r'(?i)("?(?:access_token|refresh_token|client_secret|id_token)"?\s*[:=]\s*"?)[^",&\s}]+'
)


def redact_secrets(text: str) -> str:
    """Scrub bearer tokens and OAuth token fields out of free text"""
    text = _BEARER_RE.sub("Bearer [REDACTED]", text)
    return _TOKEN_FIELD_RE.sub(r"\1[REDACTED]", text)


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """Mask sensitive data for logging/display"""
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
