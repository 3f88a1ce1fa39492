from __future__ import annotations

import hashlib
import secrets
import uuid


def generate_secure_token(nbytes: int = 32) -> str:
    """Hex-encoded token drawn from the OS CSPRNG."""
    return secrets.token_hex(nbytes)


def generate_jti() -> str:
    return str(uuid.uuid4())


def hash_token(raw: str) -> str:
    """Storage form of a single-use token; the raw value is never persisted."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
