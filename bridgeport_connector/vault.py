"""
Credential storage behind an encrypt/decrypt boundary.

Connectors only ever see plaintext credentials as call-local values returned
by `decrypt_token`. Key ids follow one convention that every connector relies
on:

    {user_id}            primary access token
    {user_id}_refresh    refresh token
    {user_id}_secret     API secret
    {user_id}_password   password

Usage:
    vault = LocalTokenVault(encryption_key="...").scoped("hubspot")
    await vault.encrypt_token(access_token, vault_key(user_id))
    token = await vault.decrypt_token(vault_key(user_id))
"""

import asyncio
import base64
import logging
import os
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .exceptions import TokenError

logger = logging.getLogger(__name__)


class KeyKind(str, Enum):
    """Suffix of a vault key id."""

    PRIMARY = ""
    REFRESH = "_refresh"
    SECRET = "_secret"
    PASSWORD = "_password"


def vault_key(user_id: str, kind: KeyKind = KeyKind.PRIMARY) -> str:
    """Build the key id for one of a user's credentials."""
    if not user_id:
        raise TokenError("user_id is required to address the token vault")
    return f"{user_id}{kind.value}"


class TokenVault(Protocol):
    """Contract every secret backend implements."""

    async def encrypt_token(self, secret: str, key_id: str) -> None: ...

    async def decrypt_token(self, key_id: str) -> str: ...

    async def delete_token(self, key_id: str) -> None: ...


class ScopedTokenVault:
    """View of a vault that namespaces key ids by provider."""

    def __init__(self, vault: TokenVault, provider: str):
        self.vault = vault
        self.provider = provider

    def _key(self, key_id: str) -> str:
        return f"{self.provider}:{key_id}"

    async def encrypt_token(self, secret: str, key_id: str) -> None:
        await self.vault.encrypt_token(secret, self._key(key_id))

    async def decrypt_token(self, key_id: str) -> str:
        return await self.vault.decrypt_token(self._key(key_id))

    async def delete_token(self, key_id: str) -> None:
        await self.vault.delete_token(self._key(key_id))

    async def has_token(self, key_id: str) -> bool:
        try:
            await self.decrypt_token(key_id)
        except TokenError:
            return False
        return True


class LocalTokenVault:
    """
    In-process vault using AES-256-GCM.

    The 256-bit key is derived with scrypt from `encryption_key`. Each secret
    gets a fresh 96-bit nonce; stored values are base64(nonce || ciphertext).
    """

    SALT = b"bridgeport-token-vault"
    NONCE_SIZE = 12

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise TokenError("An encryption key is required for LocalTokenVault")

        kdf = Scrypt(salt=self.SALT, length=32, n=2**14, r=8, p=1)
        self._aead = AESGCM(kdf.derive(encryption_key.encode("utf-8")))
        self._ciphertexts: dict[str, bytes] = {}

    def scoped(self, provider: str) -> ScopedTokenVault:
        return ScopedTokenVault(self, provider)

    def _encrypt(self, plaintext: str) -> bytes:
        nonce = os.urandom(self.NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed)

    def _decrypt(self, ciphertext: bytes) -> str:
        raw = base64.b64decode(ciphertext)
        nonce, sealed = raw[: self.NONCE_SIZE], raw[self.NONCE_SIZE :]
        try:
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as e:
            raise TokenError("Failed to decrypt token: authentication tag mismatch") from e

    async def encrypt_token(self, secret: str, key_id: str) -> None:
        if not secret:
            raise TokenError(f"Refusing to store an empty secret under {key_id}")
        self._ciphertexts[key_id] = self._encrypt(secret)

    async def decrypt_token(self, key_id: str) -> str:
        ciphertext = self._ciphertexts.get(key_id)
        if ciphertext is None:
            raise TokenError(f"No token stored under {key_id}")
        return self._decrypt(ciphertext)

    async def delete_token(self, key_id: str) -> None:
        self._ciphertexts.pop(key_id, None)

    def __len__(self) -> int:
        return len(self._ciphertexts)


class DynamoTokenVault:
    """
    DynamoDB-based vault with KMS encryption.

    Table schema:
    - Partition key: token_key (string) - the (scoped) key id
    - Attributes:
        - ciphertext: binary (KMS blob, or base64 when no KMS key is set)
        - encrypted_with: string ("kms" or "none")
        - created_at: number (unix timestamp)
        - updated_at: number (unix timestamp)
    """

    def __init__(
        self,
        table_name: str,
        kms_key_id: str | None = None,
        region_name: str = "us-east-1",
    ):
        self.table_name = table_name
        self.kms_key_id = kms_key_id
        self.region_name = region_name

        self.dynamodb = boto3.resource("dynamodb", region_name=region_name)
        self.table = self.dynamodb.Table(table_name)

        if kms_key_id:
            self.kms = boto3.client("kms", region_name=region_name)
        else:
            self.kms = None
            logger.warning("DynamoTokenVault has no KMS key; secrets are only base64 encoded")

    def scoped(self, provider: str) -> ScopedTokenVault:
        return ScopedTokenVault(self, provider)

    def _encrypt(self, plaintext: str) -> bytes:
        """Encrypt data using KMS."""
        if not self.kms or not self.kms_key_id:
            return base64.b64encode(plaintext.encode("utf-8"))

        try:
            response = self.kms.encrypt(
                KeyId=self.kms_key_id,
                Plaintext=plaintext.encode("utf-8"),
            )
            return response["CiphertextBlob"]
        except (BotoCoreError, ClientError) as e:
            raise TokenError(f"Failed to encrypt token: {e}") from e

    def _decrypt(self, ciphertext: bytes, encrypted_with: str) -> str:
        """Decrypt data using KMS."""
        if encrypted_with != "kms":
            return base64.b64decode(ciphertext).decode("utf-8")

        if not self.kms:
            raise TokenError("Token was encrypted with KMS but no KMS key is configured")

        try:
            response = self.kms.decrypt(CiphertextBlob=ciphertext)
            return response["Plaintext"].decode("utf-8")
        except (BotoCoreError, ClientError) as e:
            raise TokenError(f"Failed to decrypt token: {e}") from e

    def _put(self, secret: str, key_id: str) -> None:
        now = int(datetime.now(UTC).timestamp())
        try:
            existing = self.table.get_item(Key={"token_key": key_id}).get("Item")
            self.table.put_item(
                Item={
                    "token_key": key_id,
                    "ciphertext": self._encrypt(secret),
                    "encrypted_with": "kms" if self.kms else "none",
                    "created_at": existing.get("created_at", now) if existing else now,
                    "updated_at": now,
                }
            )
        except (BotoCoreError, ClientError) as e:
            raise TokenError(f"Failed to save token: {e}") from e

    def _get(self, key_id: str) -> str:
        try:
            response = self.table.get_item(Key={"token_key": key_id})
        except (BotoCoreError, ClientError) as e:
            raise TokenError(f"Failed to get token: {e}") from e

        if "Item" not in response:
            raise TokenError(f"No token stored under {key_id}")

        item = response["Item"]
        ciphertext = item["ciphertext"]
        # boto3 returns Binary wrappers for B attributes
        raw = ciphertext.value if hasattr(ciphertext, "value") else bytes(ciphertext)
        return self._decrypt(raw, item.get("encrypted_with", "none"))

    def _delete(self, key_id: str) -> None:
        try:
            self.table.delete_item(Key={"token_key": key_id})
        except (BotoCoreError, ClientError) as e:
            raise TokenError(f"Failed to delete token: {e}") from e

    async def encrypt_token(self, secret: str, key_id: str) -> None:
        if not secret:
            raise TokenError(f"Refusing to store an empty secret under {key_id}")
        await asyncio.to_thread(self._put, secret, key_id)

    async def decrypt_token(self, key_id: str) -> str:
        return await asyncio.to_thread(self._get, key_id)

    async def delete_token(self, key_id: str) -> None:
        await asyncio.to_thread(self._delete, key_id)
