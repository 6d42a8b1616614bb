"""
At-rest encryption for exchange and market data credentials.

Values are stored as `enc::<fernet token>`. The active key comes from
CREDENTIALS_ENCRYPTION_KEY (or SECRET_KEY when unset); retired keys listed in
CREDENTIALS_ENCRYPTION_OLD_KEYS still decrypt so keys can be rotated without a
data migration. A value that no key can decrypt reads back as empty, which the
callers treat as "credentials not configured".
"""
from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from django.conf import settings

logger = logging.getLogger(__name__)

_ENC_PREFIX = "enc::"
_DEFAULT_SECRET_FALLBACK = "changeme-in-prod"


def _derive_fernet_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _as_fernet(raw: str) -> Fernet:
    candidate = (raw or "").strip() or _DEFAULT_SECRET_FALLBACK
    if len(candidate) == 44:
        try:
            return Fernet(candidate.encode("utf-8"))
        except ValueError:
            pass
    return Fernet(_derive_fernet_key(candidate))


def _cipher() -> MultiFernet:
    active = str(getattr(settings, "CREDENTIALS_ENCRYPTION_KEY", "") or "").strip()
    if not active:
        active = str(getattr(settings, "SECRET_KEY", "") or _DEFAULT_SECRET_FALLBACK)
    retired = [k for k in getattr(settings, "CREDENTIALS_ENCRYPTION_OLD_KEYS", []) if str(k).strip()]
    return MultiFernet([_as_fernet(active), *(_as_fernet(k) for k in retired)])


def is_encrypted_secret(value: str | None) -> bool:
    return bool(value) and str(value).startswith(_ENC_PREFIX)


def encrypt_secret(value: str | None) -> str:
    if value is None or str(value) == "":
        return ""
    plain = str(value)
    if is_encrypted_secret(plain):
        return plain
    token = _cipher().encrypt(plain.encode("utf-8")).decode("utf-8")
    return f"{_ENC_PREFIX}{token}"


def decrypt_secret(value: str | None) -> str:
    if value is None or str(value) == "":
        return ""
    raw = str(value)
    if not is_encrypted_secret(raw):
        # Plaintext rows written before encryption was enabled.
        return raw
    try:
        return _cipher().decrypt(raw[len(_ENC_PREFIX):].encode("utf-8")).decode("utf-8")
    except InvalidToken:
        logger.warning("Credential decryption failed: no configured key matches")
        return ""


def rotate_secret(value: str | None) -> str:
    """Re-encrypt a stored value under the active key."""
    if not is_encrypted_secret(value):
        return encrypt_secret(value)
    token = str(value)[len(_ENC_PREFIX):].encode("utf-8")
    return f"{_ENC_PREFIX}{_cipher().rotate(token).decode('utf-8')}"
