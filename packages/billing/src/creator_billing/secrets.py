"""Opaque handles for sensitive identifiers (bank accounts, GST/PAN numbers).

Billing code only ever holds a :class:`SecretString`. Plaintext is produced by
``seal`` when data enters the store and recovered by ``reveal`` at the few
boundaries that need it, such as building a document-render payload.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken

from creator_billing.config import get_settings
from creator_billing.errors import ValidationError


@dataclass(frozen=True)
class SecretString:
    """Encrypted token for a sensitive value. Never interpreted by the core."""

    token: str

    def __repr__(self) -> str:
        return "SecretString('********')"

    __str__ = __repr__


class SecretCodec(Protocol):
    def seal(self, plaintext: str) -> SecretString: ...

    def reveal(self, secret: SecretString) -> str: ...


class FernetSecretCodec:
    """SecretCodec backed by a Fernet symmetric key."""

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def seal(self, plaintext: str) -> SecretString:
        return SecretString(self._fernet.encrypt(plaintext.encode()).decode())

    def reveal(self, secret: SecretString) -> str:
        try:
            return self._fernet.decrypt(secret.token.encode()).decode()
        except InvalidToken as e:
            raise ValidationError(
                "Secret could not be decrypted with the configured key",
                entity="SecretString",
                rule="decryptable",
            ) from e


def seal_optional(codec: SecretCodec, plaintext: str | None) -> SecretString | None:
    return codec.seal(plaintext) if plaintext else None


def reveal_optional(codec: SecretCodec, secret: SecretString | None) -> str | None:
    return codec.reveal(secret) if secret is not None else None


@lru_cache
def get_secret_codec() -> FernetSecretCodec:
    """Build the codec from ``BILLING_ENCRYPTION_KEY``."""
    settings = get_settings()
    return FernetSecretCodec(settings.encryption_key.get_secret_value())
