"""
Security utilities: access code generation and hashing, grant tokens.
"""
import hashlib
import logging
import secrets
from typing import Tuple

from app.config import get_settings

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    """Trim and case-fold an address before comparing or storing it."""
    return (email or "").strip().casefold()


def generate_access_code(length: int = 6) -> str:
    """
    Generate a numeric one-time code of exactly `length` digits.

    Leading zeros are allowed; the code is a string, never an int.
    """
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_access_code(document_id: str, email: str, code: str) -> str:
    """
    Hash an access code bound to its document and address.

    The same code issued for another document or email hashes differently,
    so a session can never be satisfied by a code minted for someone else.
    Never log the raw code or salt.
    """
    salt = get_settings().access_code_salt
    material = f"{salt}:{document_id}:{normalize_email(email)}:{code.strip()}"
    return hashlib.sha256(material.encode()).hexdigest()


def verify_access_code(document_id: str, email: str, code: str, stored_hash: str) -> bool:
    """Constant-time comparison of a submitted code against the stored hash."""
    if not stored_hash:
        return False
    return secrets.compare_digest(hash_access_code(document_id, email, code), stored_hash)


def hash_grant_token(token: str) -> str:
    """Hash an access grant token for storage and lookup."""
    salt = get_settings().access_code_salt
    return hashlib.sha256(f"{salt}{token}".encode()).hexdigest()


def generate_grant_token() -> Tuple[str, str]:
    """
    Generate a new access grant token and its hash.

    Returns:
        Tuple of (plain_token, hashed_token)
    """
    token = secrets.token_urlsafe(32)
    token_hash = hash_grant_token(token)
    logger.debug(f"generate_grant_token: hash_fp={token_hash[:8]}")
    return token, token_hash
