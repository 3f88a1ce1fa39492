import hashlib
import uuid

from junicore.service.secure_tokens import generate_jti, generate_secure_token, hash_token


def test_secure_token_has_requested_entropy():
    token = generate_secure_token()
    assert len(token) == 64
    int(token, 16)
    assert len(generate_secure_token(16)) == 32


def test_secure_tokens_do_not_repeat():
    tokens = {generate_secure_token() for _ in range(500)}
    assert len(tokens) == 500


def test_jti_is_uuid4():
    jti = generate_jti()
    assert uuid.UUID(jti).version == 4
    assert generate_jti() != jti


def test_hash_token_is_sha256_hex():
    assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()
    assert hash_token("abc") != hash_token("abd")
