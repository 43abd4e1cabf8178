"""TokenStore implementations.

InMemoryTokenStore keeps tokens for the lifetime of the process (browser
extension style hosts and tests). EncryptedFileTokenStore persists them for
desktop use in one Fernet-encrypted JSON file readable only by its owner.
"""

import asyncio
import base64
import json
import logging
import os
import secrets
from pathlib import Path
from typing import Dict, Optional, Union

import aiofiles
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from sellerdesk.domain.exceptions import ConfigurationError, TokenError
from sellerdesk.domain.interfaces.token_store import TokenStore
from sellerdesk.domain.models.auth import OAuthTokens
from sellerdesk.domain.models.common import OwnerId

logger = logging.getLogger(__name__)

KDF_SALT = b"SellerDeskTokenStore"
KDF_ITERATIONS = 100000
FILE_MODE = 0o600


def generate_key() -> str:
    """Returns a random passphrase suitable for EncryptedFileTokenStore."""
    return secrets.token_urlsafe(32)


class InMemoryTokenStore(TokenStore):
    """Dict-backed TokenStore."""

    def __init__(self, initial: Optional[Dict[str, OAuthTokens]] = None):
        self._tokens: Dict[str, OAuthTokens] = dict(initial or {})

    async def save(self, owner_id: OwnerId, tokens: OAuthTokens) -> None:
        self._tokens[owner_id] = tokens

    async def get(self, owner_id: OwnerId) -> Optional[OAuthTokens]:
        return self._tokens.get(owner_id)

    async def delete(self, owner_id: OwnerId) -> None:
        self._tokens.pop(owner_id, None)


class EncryptedFileTokenStore(TokenStore):
    """Stores every owner's tokens in one encrypted JSON document.

    The file holds ``Fernet(json.dumps({owner_id: tokens.to_dict()}))``.
    Writes rewrite the whole file; a lock serializes read-modify-write
    cycles within the process.
    """

    def __init__(self, path: Union[str, Path], key: str):
        """Initializes the store.

        Args:
            path: Location of the encrypted token file.
            key: Passphrase the Fernet key is derived from.

        Raises:
            ConfigurationError: If no key is given.
        """
        if not key:
            raise ConfigurationError("A token encryption key is required for the file token store.")
        self.path = Path(path).expanduser()
        self._cipher = self._build_cipher(key)
        self._lock = asyncio.Lock()

    @staticmethod
    def _build_cipher(key: str) -> Fernet:
        # Derive a 32-byte Fernet key from the passphrase
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=KDF_ITERATIONS,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(key.encode("utf-8"))))

    async def _read_all(self) -> Dict[str, dict]:
        if not self.path.is_file():
            return {}
        async with aiofiles.open(self.path, mode="rb") as f:
            encrypted = await f.read()
        if not encrypted:
            return {}
        try:
            decoded = json.loads(self._cipher.decrypt(encrypted).decode("utf-8"))
        except InvalidToken as e:
            raise TokenError(f"Token file {self.path} cannot be decrypted with the configured key.") from e
        except ValueError as e:
            raise TokenError(f"Token file {self.path} is corrupt.") from e
        return decoded if isinstance(decoded, dict) else {}

    async def _write_all(self, data: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        encrypted = self._cipher.encrypt(json.dumps(data).encode("utf-8"))
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(tmp_path, mode="wb") as f:
            await f.write(encrypted)
        os.chmod(tmp_path, FILE_MODE)
        os.replace(tmp_path, self.path)

    async def save(self, owner_id: OwnerId, tokens: OAuthTokens) -> None:
        async with self._lock:
            data = await self._read_all()
            data[owner_id] = tokens.to_dict()
            await self._write_all(data)
        logger.debug(f"Saved tokens for owner {owner_id} to {self.path}")

    async def get(self, owner_id: OwnerId) -> Optional[OAuthTokens]:
        async with self._lock:
            data = await self._read_all()
        record = data.get(owner_id)
        if record is None:
            return None
        try:
            return OAuthTokens.from_dict(record)
        except (KeyError, ValueError) as e:
            raise TokenError(f"Stored tokens for owner {owner_id} are malformed.") from e

    async def delete(self, owner_id: OwnerId) -> None:
        async with self._lock:
            data = await self._read_all()
            if data.pop(owner_id, None) is None:
                return
            await self._write_all(data)
        logger.info(f"Deleted stored tokens for owner {owner_id}.")
