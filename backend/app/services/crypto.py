from __future__ import annotations

import logging
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)


class PhoneCipherError(Exception):
    pass


class PhoneCipher:
    """Fernet encryption for lead phone numbers at rest.

    The first key encrypts; every key in the chain can decrypt, so old keys stay
    listed until all rows have been rewritten.
    """

    def __init__(self, key: str, old_keys: Iterable[str] = ()) -> None:
        try:
            chain = [Fernet(key.encode("utf-8"))]
            chain.extend(Fernet(item.encode("utf-8")) for item in old_keys if item)
        except (ValueError, TypeError) as exc:
            raise PhoneCipherError("invalid phone encryption key") from exc
        self._fernet = MultiFernet(chain)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise PhoneCipherError("phone ciphertext could not be decrypted") from exc


def build_phone_cipher(
    key: Optional[str], old_keys: Iterable[str] = (), *, app_env: str = "development"
) -> PhoneCipher:
    if not key:
        if app_env == "production":
            raise PhoneCipherError("PHONE_ENCRYPTION_KEY must be set in production")
        logger.warning(
            "phone_encryption_key_missing app_env=%s using ephemeral key; "
            "stored phones will not decrypt after restart",
            app_env,
        )
        key = Fernet.generate_key().decode("utf-8")
    return PhoneCipher(key, old_keys)
