"""
auth/passwords.py -- Password hashing, verification, and strength rules.

Passwords: bcrypt used directly (no passlib wrapper). Bcrypt's cost factor is
the deliberately slow, salted comparison the sign-in flow relies on. The
_DUMMY_HASH constant enables timing equalization: sign-in always runs one
bcrypt comparison, whether or not the email exists [C1].

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import re

import bcrypt

from core.config import get_settings

PASSWORD_MIN_LENGTH = 8
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


def hash_password(plain: str, rounds: int = 0) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps input at 255 chars and the strength rules apply to the full
    string, so truncation only ever affects unusually long passphrases.
    """
    cost = rounds if rounds > 0 else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store -- treat as a mismatch, never as a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first sign-in attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("folio_timing_dummy")


def burn_dummy_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


def password_strength_errors(password: str) -> list[str]:
    """Return human-readable problems with a candidate password (empty = OK)."""
    if not password:
        return ["Password is required"]
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")
    return errors
