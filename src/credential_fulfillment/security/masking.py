"""Masking helpers for showing credential identifiers to vendors."""

from typing import Optional


def mask_email(email: Optional[str]) -> Optional[str]:
    """
    Mask the local part of an email address.
    
    Keeps the first two characters of the local part:
    ``jane.doe@example.com`` becomes ``ja******@example.com``.
    """
    if not email or "@" not in email:
        return mask_identifier(email)
    
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        return f"{local[:1]}{'*' * (len(local) - 1)}@{domain}"
    return f"{local[:2]}{'*' * (len(local) - 2)}@{domain}"


def mask_identifier(value: Optional[str], visible: int = 4) -> Optional[str]:
    """Mask everything but the last ``visible`` characters of an opaque identifier."""
    if not value:
        return value
    if len(value) <= visible:
        return "*" * len(value)
    return f"{'*' * (len(value) - visible)}{value[-visible:]}"
