"""
Password and client secret digests (argon2).
"""

import secrets

from passlib.hash import argon2


def hash_password(plaintext: str) -> str:
    return argon2.hash(plaintext)


def verify_password(plaintext: str, digest: str) -> bool:
    """Constant-time check of plaintext against an argon2 digest; malformed digests never match."""
    if not plaintext or not digest:
        return False
    try:
        return argon2.verify(plaintext, digest)
    except (ValueError, TypeError):
        return False


def unusable_password_digest() -> str:
    """Digest of a random value nobody knows, for federation-only identities."""
    return hash_password(secrets.token_hex(32))
