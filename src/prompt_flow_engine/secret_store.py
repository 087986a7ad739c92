"""At-rest obfuscation of the provider API key in local storage.

The passphrase and salt are embedded in the code, so anyone holding both the
storage file and this package can recover the key. This keeps the key out of
plaintext on disk; it is not a security boundary. Deployments that need real
protection should keep provider keys in a server-side, access-controlled
secret manager instead.
"""

from __future__ import annotations

import base64
import binascii
from functools import lru_cache
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from prompt_flow_engine.errors import ConfigurationError
from prompt_flow_engine.local_storage import LocalStorage

API_KEY_STORAGE_KEY = "flow_api_key"

_PASSPHRASE = b"prompt-flow-engine-local-encryption-key"
_SALT = b"prompt-flow-engine-salt"
_KDF_ITERATIONS = 100_000
_KEY_LENGTH = 32
_NONCE_LENGTH = 12


@lru_cache(maxsize=4)
def _derive_key(passphrase: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=salt,
        iterations=_KDF_ITERATIONS,
    )
    return kdf.derive(passphrase)


def seal(plaintext: str) -> str:
    """Encrypt under a fresh nonce; return base64(nonce || ciphertext)."""
    nonce = os.urandom(_NONCE_LENGTH)
    ciphertext = AESGCM(_derive_key(_PASSPHRASE, _SALT)).encrypt(
        nonce, plaintext.encode("utf-8"), None
    )
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def unseal(blob: str) -> str:
    """Reverse `seal`; raise ConfigurationError when the blob does not decrypt."""
    try:
        combined = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ConfigurationError("Stored API key is not valid base64.") from exc
    if len(combined) <= _NONCE_LENGTH:
        raise ConfigurationError("Stored API key blob is truncated.")

    nonce, ciphertext = combined[:_NONCE_LENGTH], combined[_NONCE_LENGTH:]
    try:
        plaintext = AESGCM(_derive_key(_PASSPHRASE, _SALT)).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise ConfigurationError("Stored API key could not be decrypted.") from exc
    return plaintext.decode("utf-8")


class SecretStore:
    """Keeps the encrypted API key blob under a fixed local-storage key."""

    def __init__(self, storage: LocalStorage, storage_key: str = API_KEY_STORAGE_KEY) -> None:
        self.storage = storage
        self.storage_key = storage_key

    def encrypt(self, api_key: str) -> str:
        """Encrypt `api_key`, store the blob, and return it."""
        blob = seal(api_key)
        self.storage.set_item(self.storage_key, blob)
        return blob

    def decrypt(self, blob: str) -> str:
        return unseal(blob)

    def load_api_key(self) -> str | None:
        blob = self.storage.get_item(self.storage_key)
        if not blob:
            return None
        return unseal(blob)

    def clear(self) -> None:
        self.storage.remove_item(self.storage_key)
