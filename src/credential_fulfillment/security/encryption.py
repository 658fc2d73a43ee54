"""
Encryption utilities for securing vendor credential payloads.

Uses AES-256-GCM authenticated encryption. Every payload is a JSON document
stored as ``<nonce-hex>:<tag-hex>:<ciphertext-hex>``.
"""

import base64
import binascii
import json
import os
import re
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from credential_fulfillment.utils.exceptions import ConfigurationError, CryptoError
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


class KeyProvider:
    """
    Derives and holds the AES-256 key from the operator secret.
    
    The secret is interpreted as a 64-character hex string first, then as
    canonical base64, and finally as raw UTF-8 bytes. The derived material
    must be at least 32 bytes; the first 32 bytes are the key.
    """
    
    def __init__(self, secret: Optional[str]):
        if not secret:
            raise ConfigurationError(
                "ENCRYPTION_KEY is required. Generate one with: credential-fulfillment generate-key"
            )
        
        material = self._derive(secret)
        if len(material) < KEY_SIZE:
            raise ConfigurationError(
                f"ENCRYPTION_KEY must provide at least {KEY_SIZE} bytes of key material",
                {"provided_bytes": len(material)},
            )
        
        self._key = material[:KEY_SIZE]
    
    @staticmethod
    def _derive(secret: str) -> bytes:
        if _HEX_KEY_PATTERN.match(secret):
            return bytes.fromhex(secret)
        
        if len(secret) % 4 == 0 and _BASE64_PATTERN.match(secret):
            try:
                decoded = base64.b64decode(secret, validate=True)
            except binascii.Error:
                decoded = None
            if decoded is not None and base64.b64encode(decoded).decode("ascii") == secret:
                return decoded
        
        return secret.encode("utf-8")
    
    @property
    def key(self) -> bytes:
        return self._key
    
    @classmethod
    def from_settings(cls, settings) -> "KeyProvider":
        return cls(settings.encryption_key)
    
    @classmethod
    def from_env(cls) -> "KeyProvider":
        return cls(os.getenv("ENCRYPTION_KEY"))


class CredentialEncryptor:
    """
    Encrypts and decrypts credential payloads with AES-256-GCM.
    
    Decryption never returns partial or unauthenticated data: any malformed
    or tampered blob raises CryptoError.
    """
    
    def __init__(self, key_provider: KeyProvider):
        """
        Initialize encryptor.
        
        Args:
            key_provider: Source of the 32-byte key
        """
        self._aesgcm = AESGCM(key_provider.key)
        logger.info("Initialized credential encryptor (AES-256-GCM)")
    
    def encrypt(self, payload: Any) -> str:
        """
        Encrypt a JSON-serialisable payload.
        
        Args:
            payload: Credential object (dict, list or scalar)
            
        Returns:
            Opaque ``nonce:tag:ciphertext`` hex string
        """
        try:
            plaintext = json.dumps(payload, sort_keys=True, ensure_ascii=False,
                                   separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise CryptoError(f"Payload is not serialisable: {e}", action="encrypt") from e
        
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"
    
    def decrypt(self, blob: str) -> Any:
        """
        Decrypt a blob produced by encrypt().
        
        Args:
            blob: Opaque ``nonce:tag:ciphertext`` hex string
            
        Returns:
            The original payload
            
        Raises:
            CryptoError: If the blob is malformed or fails authentication
        """
        if not isinstance(blob, str) or not blob:
            raise CryptoError("Encrypted payload is empty", action="decrypt")
        
        parts = blob.split(":")
        if len(parts) != 3:
            raise CryptoError("Invalid encrypted payload format", action="decrypt")
        
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise CryptoError("Encrypted payload is not valid hex", action="decrypt") from e
        
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise CryptoError("Invalid nonce or authentication tag length", action="decrypt")
        
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            logger.error("Decryption failed - authentication tag mismatch")
            raise CryptoError("Encrypted payload failed authentication", action="decrypt") from e
        
        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CryptoError("Decrypted payload is not valid JSON", action="decrypt") from e
    
    @staticmethod
    def generate_key() -> str:
        """
        Generate a new encryption secret.
        
        Returns:
            64-character hex string suitable for ENCRYPTION_KEY
        """
        return os.urandom(KEY_SIZE).hex()
