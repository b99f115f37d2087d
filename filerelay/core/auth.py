"""
Access code helpers.
The access code itself is never stored, only its SHA-256 hash.
"""

import hashlib
import hmac
import re

from filerelay.core.config import settings


def is_valid_credential(credential: str) -> bool:
    """Check the access code format (4 digits by default)."""
    if not isinstance(credential, str):
        return False
    return re.fullmatch(settings.CREDENTIAL_PATTERN, credential, flags=re.ASCII) is not None


def hash_credential(credential: str) -> str:
    """One-way hash of an access code."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def secrets_equal(given: str, expected: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def credential_matches(credential: str, credential_hash: str) -> bool:
    """True when ``credential`` hashes to the stored ``credential_hash``."""
    if not isinstance(credential, str):
        return False
    return secrets_equal(hash_credential(credential), credential_hash)


def download_token(session_id: str, credential_hash: str) -> str:
    """
    Token granting download of a session's archive.

    Derived from the session id and the stored hash, so nothing extra is
    persisted and the token cannot be computed without the hash.
    """
    return hashlib.sha256(f"{session_id}:{credential_hash}".encode("utf-8")).hexdigest()
