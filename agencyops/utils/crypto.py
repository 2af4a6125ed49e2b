"""
Crypto utilities — bcrypt password hashing & Fernet symmetric encryption.

Password hashing:
  bcrypt ($2b$), 12 rounds. Used when an activation token is consumed and
  the subject sets their first password.

Symmetric encryption (onboarding vault):
  `encrypt_secret` / `decrypt_secret` use Fernet (AES-128-CBC + HMAC-SHA256)
  keyed by ONBOARDING_ENCRYPTION_KEY from the app config (or the
  environment when called outside an app context).

  WARNING: the key must be a 32-byte URL-safe base64 key generated via:
    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
  Store it in the environment — never hard-code or commit it.
"""

import os

import bcrypt
from cryptography.fernet import Fernet, InvalidToken  # noqa: F401  (re-exported for callers)
from flask import current_app, has_app_context


def hash_password(plain_password: str) -> str:
    """Hash a plain-text password with bcrypt (12 rounds)."""
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(plain_password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify a plain-text password against its bcrypt hash."""
    if not password_hash:
        return False
    return bcrypt.checkpw(
        plain_password.encode("utf-8"),
        password_hash.encode("utf-8"),
    )


# ── Fernet symmetric encryption (onboarding vault) ───────────────────────────


def _get_fernet() -> Fernet:
    """Return a Fernet instance keyed by ONBOARDING_ENCRYPTION_KEY.

    Raises RuntimeError if the key is not configured — fail loud rather
    than silently storing plaintext.
    """
    raw_key = None
    if has_app_context():
        raw_key = current_app.config.get("ONBOARDING_ENCRYPTION_KEY")
    raw_key = raw_key or os.getenv("ONBOARDING_ENCRYPTION_KEY")
    if not raw_key:
        raise RuntimeError(
            "ONBOARDING_ENCRYPTION_KEY is not set. "
            "Generate one with: python -c \""
            "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
        )
    return Fernet(raw_key.encode() if isinstance(raw_key, str) else raw_key)


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a plaintext value and return URL-safe base64 ciphertext.

    Output is safe for TEXT database columns.

    Raises:
        RuntimeError: If the encryption key is not configured.
    """
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a Fernet-encrypted ciphertext back to plaintext.

    Raises:
        RuntimeError: If the encryption key is not configured.
        cryptography.fernet.InvalidToken: If ciphertext is tampered or
            encrypted with a different key.
    """
    return _get_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
