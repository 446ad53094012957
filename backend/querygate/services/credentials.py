from __future__ import annotations

"""backend/querygate/services/credentials.py

Decrypt-on-read for DbInstance credentials.

Values are Fernet tokens when an encryption key is configured. Rows written
before encryption was enabled still hold plaintext; those pass through
unchanged (with a warning) so old instances keep working.
"""

import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from querygate.config import get_settings

logger = logging.getLogger(__name__)


class CredentialCipher:
    def __init__(self, key: Optional[str]) -> None:
        self._fernet = Fernet(key.encode("utf-8")) if key else None

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None or self._fernet is None:
            return value
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value or self._fernet is None:
            return value
        try:
            return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            logger.warning("Credential is not a valid token; treating it as legacy plaintext")
            return value


@lru_cache(maxsize=1)
def get_cipher() -> CredentialCipher:
    return CredentialCipher(get_settings().encryption_key)
