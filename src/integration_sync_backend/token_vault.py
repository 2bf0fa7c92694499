"""Encryption of OAuth credentials at rest.

Ciphertexts are self-describing strings safe to store verbatim in a
connection row: ``local:`` + base64(nonce || ciphertext) for the local
backend, ``kms:`` + base64(ciphertext blob) for AWS KMS.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import os
from abc import ABC, abstractmethod
from typing import Any, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import Settings
from .core.errors import ConfigurationError, TokenDecryptError

logger = structlog.get_logger(__name__)

_LOCAL_PREFIX = "local:"
_KMS_PREFIX = "kms:"
_NONCE_BYTES = 12


class TokenVault(ABC):
    """Encrypts and decrypts provider credentials."""

    @abstractmethod
    async def encrypt(self, plaintext: str) -> str:
        ...

    @abstractmethod
    async def decrypt(self, ciphertext: str) -> str:
        ...

    async def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return None if plaintext is None else await self.encrypt(plaintext)

    async def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        return None if ciphertext is None else await self.decrypt(ciphertext)


class LocalTokenVault(TokenVault):
    """AES-256-GCM with a key derived from a configured string. Development only."""

    def __init__(self, key: str) -> None:
        if not key:
            raise ConfigurationError(
                "INTEGRATION_ENCRYPTION_KEY is required", setting="INTEGRATION_ENCRYPTION_KEY"
            )
        self._aesgcm = AESGCM(hashlib.sha256(key.encode("utf-8")).digest())

    async def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _LOCAL_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    async def decrypt(self, ciphertext: str) -> str:
        if not ciphertext.startswith(_LOCAL_PREFIX):
            raise TokenDecryptError("not a local ciphertext")
        try:
            data = base64.b64decode(ciphertext[len(_LOCAL_PREFIX):], validate=True)
            plaintext = self._aesgcm.decrypt(data[:_NONCE_BYTES], data[_NONCE_BYTES:], None)
            return plaintext.decode("utf-8")
        except (binascii.Error, InvalidTag, ValueError) as exc:
            logger.warning("token_decrypt_failed", backend="local", error_type=exc.__class__.__name__)
            raise TokenDecryptError(exc.__class__.__name__) from exc


class KmsTokenVault(TokenVault):
    """AWS KMS envelope-free encryption. Tokens are small enough for direct Encrypt."""

    def __init__(self, key_id: str, region: str, client: Any = None) -> None:
        if not key_id:
            raise ConfigurationError("KMS_KEY_ID is required", setting="KMS_KEY_ID")
        self._key_id = key_id
        self._client = client or boto3.client("kms", region_name=region)

    async def encrypt(self, plaintext: str) -> str:
        response = await asyncio.to_thread(
            self._client.encrypt,
            KeyId=self._key_id,
            Plaintext=plaintext.encode("utf-8"),
        )
        return _KMS_PREFIX + base64.b64encode(response["CiphertextBlob"]).decode("ascii")

    async def decrypt(self, ciphertext: str) -> str:
        if not ciphertext.startswith(_KMS_PREFIX):
            raise TokenDecryptError("not a KMS ciphertext")
        try:
            blob = base64.b64decode(ciphertext[len(_KMS_PREFIX):], validate=True)
            response = await asyncio.to_thread(
                self._client.decrypt,
                KeyId=self._key_id,
                CiphertextBlob=blob,
            )
            return response["Plaintext"].decode("utf-8")
        except (binascii.Error, BotoCoreError, ClientError, ValueError) as exc:
            logger.warning("token_decrypt_failed", backend="kms", error_type=exc.__class__.__name__)
            raise TokenDecryptError(exc.__class__.__name__) from exc


def create_token_vault(settings: Settings) -> TokenVault:
    """Pick the vault backend configured by ``TOKEN_VAULT_BACKEND``."""
    if settings.token_vault_backend == "kms":
        return KmsTokenVault(settings.kms_key_id or "", settings.aws_region)
    return LocalTokenVault(settings.integration_encryption_key or "")
