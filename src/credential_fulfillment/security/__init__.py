"""
Security utilities for the credential engine.
"""

from .encryption import (
    KeyProvider,
    CredentialEncryptor,
)
from .masking import mask_email, mask_identifier

__all__ = [
    "KeyProvider",
    "CredentialEncryptor",
    "mask_email",
    "mask_identifier",
]
