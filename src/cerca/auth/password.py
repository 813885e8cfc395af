"""
Password hashing and validation using argon2id.
"""

from __future__ import annotations

import argon2

from cerca.errors import ValidationError

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,  # 64 MB
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,
)


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full hash string."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its argon2id hash.

    Returns True if the password matches. Never raises on mismatch.
    """
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def validate_password_strength(password: str, min_length: int = 8) -> None:
    """
    Raise ValidationError if the password is too weak.

    Requirements: minimum length, at most 128 characters, at least one letter
    and one digit, not whitespace-only.
    """
    if not password or not password.strip():
        raise ValidationError("auth.password.empty")
    if len(password) < min_length or len(password) > 128:
        raise ValidationError("auth.password.length")
    if not any(c.isalpha() for c in password) or not any(c.isdigit() for c in password):
        raise ValidationError("auth.password.weak")
