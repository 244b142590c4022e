"""Local password hashing, verification and strength checks."""

import hashlib
import secrets
import string

from zxcvbn import zxcvbn

PBKDF2_ITERATIONS = 100_000

# zxcvbn score 3 = "safely unguessable"
MIN_ZXCVBN_SCORE = 3

_GENERATED_ALPHABET = string.ascii_letters + string.digits + "-_"


def validate_password_strength(password: str, user_inputs: list[str] | None = None) -> str:
    """Validate password strength using zxcvbn.

    user_inputs (username, email) penalise the score when they appear in the
    password. Returns the password if valid, raises ValueError with the
    zxcvbn feedback otherwise.
    """
    if len(password) > 72:
        raise ValueError("Password must be 72 characters or fewer")

    result = zxcvbn(password, user_inputs=user_inputs or [])
    if result["score"] >= MIN_ZXCVBN_SCORE:
        return password

    feedback = result.get("feedback", {})
    parts = [p for p in [feedback.get("warning", "")] if p]
    parts.extend(feedback.get("suggestions", []))
    raise ValueError(". ".join(parts) if parts else "Password is too weak")


def generate_password(length: int = 24) -> str:
    """Generate a random password that always passes the strength check."""
    return "".join(secrets.choice(_GENERATED_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    """Hash a password with salted PBKDF2-SHA256.

    Format: pbkdf2:sha256:<iterations>$<salt>$<hex digest>
    """
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), salt.encode(), iterations=PBKDF2_ITERATIONS
    ).hex()
    return f"pbkdf2:sha256:{PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(password: str, password_hash: str | None) -> bool:
    """Verify a password against a stored hash. Never raises."""
    if not password_hash:
        return False
    try:
        method_info, salt, stored = password_hash.split("$")
        if not method_info.startswith("pbkdf2:sha256:"):
            return False
        iterations = int(method_info.rsplit(":", 1)[-1])
    except ValueError:
        return False

    computed = hashlib.pbkdf2_hmac(
        "sha256", password.encode(), salt.encode(), iterations=iterations
    ).hex()
    return secrets.compare_digest(computed, stored)
