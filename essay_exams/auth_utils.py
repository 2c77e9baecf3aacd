"""Authentication utilities: password hashing and classroom join codes."""

import secrets

from passlib.context import CryptContext

# pbkdf2_sha256 is implemented by passlib itself, so hashing does not depend
# on the version of an external bcrypt backend.
PWD_CONTEXT = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6


def hash_password(plain_password: str) -> str:
    """Hash a plaintext password for storage."""
    return PWD_CONTEXT.hash(plain_password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify a plaintext password against its hash."""
    return PWD_CONTEXT.verify(plain_password, password_hash)


def generate_join_code() -> str:
    """Generate a classroom join code without look-alike characters (0/O, 1/I)."""
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))
