"""
Integration Hub Secret Store.

The runtime never persists plaintext credentials. It hands them to a
SecretStore collaborator, which returns an opaque blob.

FernetSecretStore is the reference implementation: each identity gets its
own Fernet key derived via HKDF from a master key, so one identity's blob
cannot be decrypted with another identity's key.
"""
from __future__ import annotations
from typing import Optional, Protocol, runtime_checkable
import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from hub.errors import AuthenticationError, ConfigurationError
from hub.integrations.models import ProviderIdentity

logger = logging.getLogger(__name__)

KEY_LENGTH = 32


@runtime_checkable
class SecretStore(Protocol):
    def encrypt(self, plaintext: str, identity: ProviderIdentity) -> bytes: ...

    def decrypt(self, opaque: bytes, identity: ProviderIdentity) -> str: ...

    def delete(self, identity: ProviderIdentity) -> None: ...


class FernetSecretStore:
    """Per-identity Fernet encryption. Keeps the latest blob per identity in memory."""

    def __init__(self, master_key: Optional[bytes] = None):
        if master_key is None:
            master_key = Fernet.generate_key()
        if len(master_key) < KEY_LENGTH:
            raise ConfigurationError("Master key must be at least 32 bytes")
        self._master_key = master_key
        self._blobs: dict[str, bytes] = {}

    def _fernet(self, identity: ProviderIdentity) -> Fernet:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=identity.key.encode("utf-8"),
            info=b"integration-hub-credential",
        )
        key = hkdf.derive(self._master_key)
        return Fernet(base64.urlsafe_b64encode(key))

    def encrypt(self, plaintext: str, identity: ProviderIdentity) -> bytes:
        blob = self._fernet(identity).encrypt(plaintext.encode("utf-8"))
        self._blobs[identity.key] = blob
        return blob

    def decrypt(self, opaque: bytes, identity: ProviderIdentity) -> str:
        try:
            return self._fernet(identity).decrypt(opaque).decode("utf-8")
        except InvalidToken as exc:
            raise AuthenticationError(
                f"Stored credential for {identity} cannot be decrypted",
                provider=identity.provider,
            ) from exc

    def load(self, identity: ProviderIdentity) -> Optional[bytes]:
        return self._blobs.get(identity.key)

    def delete(self, identity: ProviderIdentity) -> None:
        if self._blobs.pop(identity.key, None) is not None:
            logger.info("Deleted stored credential for %s", identity)
