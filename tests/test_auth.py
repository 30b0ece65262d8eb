"""Tests for credential primitives.

Covers:
  - Session tokens: JWT round trip, tampering, wrong secret, expiry
  - Password hashing: verify, wrong password, malformed hash, iteration encoding
  - Device tokens: format, hash lookup, AES-GCM wrap/unwrap, key mismatch
"""

import base64
import json
import time

import pytest
from jose import jwt

from tracr.core.auth import (
    decrypt_device_token,
    device_token_key,
    device_token_matches,
    encrypt_device_token,
    generate_device_token,
    hash_device_token,
    hash_password,
    issue_session_token,
    verify_password,
    verify_session_token,
)
from tracr.core.errors import Unauthorized

SECRET = "s" * 40
USER = {"id": "u-1", "username": "alice", "role": "admin"}


# ── Session tokens ───────────────────────────────────────────────────


class TestSessionTokens:

    def test_round_trip_returns_claims(self):
        now = int(time.time())
        token, expires_at = issue_session_token(USER, SECRET, 3600, now=now)
        claims = verify_session_token(token, SECRET)
        assert claims["user_id"] == "u-1"
        assert claims["username"] == "alice"
        assert claims["role"] == "admin"
        assert claims["iat"] == now
        assert claims["exp"] == expires_at == now + 3600

    def test_token_is_hs256_jwt(self):
        token, _ = issue_session_token(USER, SECRET, 60)
        assert token.count(".") == 2
        assert jwt.get_unverified_header(token)["alg"] == "HS256"

    def test_default_lifetime_24h(self):
        _, expires_at = issue_session_token(USER, SECRET, 24 * 3600, now=0)
        assert expires_at == 86_400

    def test_expired_token_rejected(self):
        token, _ = issue_session_token(USER, SECRET, 60, now=time.time() - 3600)
        with pytest.raises(Unauthorized, match="Token expired"):
            verify_session_token(token, SECRET)

    def test_wrong_secret_rejected(self):
        token, _ = issue_session_token(USER, SECRET, 60)
        with pytest.raises(Unauthorized, match="Invalid token"):
            verify_session_token(token, "x" * 40)

    def test_tampered_claims_rejected(self):
        token, _ = issue_session_token(
            {"id": "u-2", "username": "bob", "role": "viewer"}, SECRET, 60
        )
        header, body, signature = token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)))
        claims["role"] = "admin"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
        with pytest.raises(Unauthorized, match="Invalid token"):
            verify_session_token(f"{header}.{forged}.{signature}", SECRET)

    def test_missing_claims_rejected(self):
        token = jwt.encode(
            {"username": "alice", "exp": int(time.time()) + 60}, SECRET, algorithm="HS256"
        )
        with pytest.raises(Unauthorized, match="Invalid token"):
            verify_session_token(token, SECRET)

    @pytest.mark.parametrize("token", ["", "abc", "a.b.c", "not-base64.deadbeef"])
    def test_malformed_tokens_rejected(self, token):
        with pytest.raises(Unauthorized):
            verify_session_token(token, SECRET)


# ── Passwords ────────────────────────────────────────────────────────


class TestPasswords:

    def test_verify_matches(self):
        encoded = hash_password("correct horse", iterations=1000)
        assert verify_password("correct horse", encoded)

    def test_wrong_password(self):
        encoded = hash_password("correct horse", iterations=1000)
        assert not verify_password("battery staple", encoded)

    def test_hash_is_salted(self):
        assert hash_password("same", iterations=1000) != hash_password("same", iterations=1000)

    def test_iterations_encoded_in_hash(self):
        encoded = hash_password("pw-12345", iterations=1234)
        scheme, iterations, _, _ = encoded.split("$")
        assert scheme == "pbkdf2_sha256"
        assert iterations == "1234"

    @pytest.mark.parametrize("stored", ["", "garbage", "md5$1$x$y", "pbkdf2_sha256$x$y$z"])
    def test_malformed_hash_never_matches(self, stored):
        assert not verify_password("anything", stored)


# ── Device tokens ────────────────────────────────────────────────────


class TestDeviceTokens:

    def test_token_is_64_hex_chars(self):
        token = generate_device_token()
        assert len(token) == 64
        int(token, 16)

    def test_tokens_are_unique(self):
        assert len({generate_device_token() for _ in range(50)}) == 50

    def test_hash_matches_only_same_token(self):
        token = generate_device_token()
        stored = hash_device_token(token)
        assert stored != token
        assert device_token_matches(token, stored)
        assert not device_token_matches(generate_device_token(), stored)

    def test_encrypt_round_trip(self):
        key = device_token_key(SECRET)
        token = generate_device_token()
        wrapped = encrypt_device_token(token, key)
        assert token not in wrapped
        assert decrypt_device_token(wrapped, key) == token

    def test_key_mismatch_returns_none(self):
        token = generate_device_token()
        wrapped = encrypt_device_token(token, device_token_key(SECRET))
        assert decrypt_device_token(wrapped, device_token_key("y" * 40)) is None

    def test_key_derivation_is_deterministic(self):
        assert device_token_key(SECRET) == device_token_key(SECRET)
        assert len(device_token_key(SECRET)) == 32
