"""Credential primitives: dashboard session tokens, password hashes, device tokens.

Session tokens are HS256 JWTs signed with the server secret, so the
server holds no session table. Claims are ``user_id``, ``username``,
``role``, ``iat`` and ``exp`` (epoch seconds). There is no refresh: an
expired token means log in again.

Passwords use PBKDF2-HMAC-SHA256 from ``cryptography`` with a per-user
salt; the iteration count is stored in the hash so it can be raised
without invalidating existing users.

Device tokens are 256-bit random hex strings. The registry stores a
SHA-256 hash for verification (tokens are high-entropy, so a fast hash
is appropriate) plus an AES-256-GCM copy under a key derived from the
server secret, which is what lets re-registration hand back the same
token.
"""

import base64
import binascii
import functools
import hashlib
import hmac
import os
import secrets
import time
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from .errors import Unauthorized

# ── Constants ────────────────────────────────────────────────────────

SESSION_ALGORITHM = "HS256"
DEVICE_TOKEN_KEY_INFO = b"tracr:device-token:v1"

PBKDF2_ITERATIONS = 600_000
PASSWORD_SALT_LENGTH = 32
PASSWORD_KEY_LENGTH = 32
PASSWORD_SCHEME = "pbkdf2_sha256"

DEVICE_TOKEN_BYTES = 32
NONCE_LENGTH = 12

ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"
ROLES = (ROLE_VIEWER, ROLE_ADMIN)


# ── Session Tokens ───────────────────────────────────────────────────


def issue_session_token(
    user: Dict[str, Any],
    secret: str,
    ttl_seconds: int,
    now: Optional[float] = None,
) -> Tuple[str, int]:
    """Sign a session token for ``user``.

    Returns:
        Tuple of (token, expires_at epoch seconds).
    """
    issued_at = int(now if now is not None else time.time())
    expires_at = issued_at + int(ttl_seconds)
    to_encode = {
        "user_id": user["id"],
        "username": user["username"],
        "role": user["role"],
        "iat": issued_at,
        "exp": expires_at,
    }
    return jwt.encode(to_encode, secret, algorithm=SESSION_ALGORITHM), expires_at


def verify_session_token(token: str, secret: str) -> Dict[str, Any]:
    """Check signature and expiry, returning the claims.

    Raises:
        Unauthorized: malformed, tampered or expired token.
    """
    if not token:
        raise Unauthorized("Invalid token")
    try:
        claims = jwt.decode(token, secret, algorithms=[SESSION_ALGORITHM])
    except ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except JWTError:
        raise Unauthorized("Invalid token")
    if not {"user_id", "role", "exp"} <= claims.keys():
        raise Unauthorized("Invalid token")
    return claims


# ── Passwords ────────────────────────────────────────────────────────


def _pbkdf2(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=PASSWORD_KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = os.urandom(PASSWORD_SALT_LENGTH)
    derived = _pbkdf2(password, salt, iterations)
    return "$".join([
        PASSWORD_SCHEME,
        str(iterations),
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(derived).decode("ascii"),
    ])


def verify_password(password: str, encoded: str) -> bool:
    """Constant-time check of ``password`` against a stored hash."""
    try:
        scheme, iterations, salt_b64, hash_b64 = encoded.split("$")
        if scheme != PASSWORD_SCHEME:
            return False
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
        derived = _pbkdf2(password, salt, int(iterations))
    except (ValueError, binascii.Error):
        return False
    return hmac.compare_digest(derived, expected)


# ── Device Tokens ────────────────────────────────────────────────────


def generate_device_token() -> str:
    return secrets.token_hex(DEVICE_TOKEN_BYTES)


def hash_device_token(token: str) -> str:
    """SHA-256 hash a device token for safe storage."""
    return hashlib.sha256(token.encode()).hexdigest()


def device_token_matches(token: str, stored_hash: str) -> bool:
    return secrets.compare_digest(hash_device_token(token), stored_hash or "")


@functools.lru_cache(maxsize=8)
def device_token_key(secret: str) -> bytes:
    """Derive the AES-256 key that wraps stored device tokens."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=DEVICE_TOKEN_KEY_INFO,
    )
    return hkdf.derive(secret.encode("utf-8"))


def encrypt_device_token(token: str, key: bytes) -> str:
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(nonce, token.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_device_token(encoded: str, key: bytes) -> Optional[str]:
    """Recover a stored device token, or None if the key no longer fits."""
    try:
        raw = base64.b64decode(encoded)
        plaintext = AESGCM(key).decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None)
    except (InvalidTag, ValueError, binascii.Error):
        return None
    return plaintext.decode("utf-8")
