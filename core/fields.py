from __future__ import annotations

from django.db import models

from core.crypto import decrypt_secret, encrypt_secret


class EncryptedCredentialField(models.TextField):
    """
    Text column holding an `enc::` token; model attributes see plaintext.

    Used for exchange API keys on TradingProfile and the market data token on
    DataSchedulingConfig. Serializers expose these fields write-only.
    """

    description = "Encrypted credential text"

    def from_db_value(self, value, expression, connection):
        return decrypt_secret(value)

    def to_python(self, value):
        if value is None:
            return ""
        return decrypt_secret(value) if isinstance(value, str) else str(value)

    def get_prep_value(self, value):
        return encrypt_secret("" if value is None else str(value))
