"""Password hashing for protected links.

Links store a salted bcrypt hash of their password, so two links sharing a
password never share a stored value. bcrypt only reads the first 72 bytes
of its input; longer passwords are cut there before hashing and checking.
"""

import bcrypt

__all__ = ["hash_password", "verify_password"]

BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, stored_hash: str | None) -> bool:
    """Check a password against its stored hash. Unknown hash formats never match."""
    if not password or not stored_hash:
        return False
    try:
        return bcrypt.checkpw(_encode(password), stored_hash.encode("utf-8"))
    except ValueError:
        return False
