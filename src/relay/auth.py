"""Session password and reclaim token helpers."""

import hashlib
import hmac
import secrets

PBKDF2_ITERATIONS = 100_000


def hash_password(password: str) -> str:
    """Hash a session password with a random salt.

    Returns:
        ``salt$hash`` string suitable for storage
    """
    salt = secrets.token_hex(16)
    hash_val = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt.encode(),
        PBKDF2_ITERATIONS,
    ).hex()

    return f"{salt}${hash_val}"


def verify_password(password: str | None, password_hash: str | None) -> bool:
    """Verify a password against its stored hash.

    A session without a password accepts any (or no) password.
    """
    if password_hash is None:
        return True
    if not password or "$" not in password_hash:
        return False

    salt, hash_val = password_hash.split("$", 1)
    computed = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode(),
        salt.encode(),
        PBKDF2_ITERATIONS,
    ).hex()

    return hmac.compare_digest(computed, hash_val)


def generate_reclaim_token() -> str:
    return secrets.token_urlsafe(24)


def verify_token(presented: str | None, expected: str) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode(), expected.encode())
