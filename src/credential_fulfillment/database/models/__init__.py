"""
SQLAlchemy database models for the credential fulfillment engine.

Models:
- Vendor: Suppliers of credential inventory
- Product: Sellable offerings with a stock counter
- CredentialBatch: Encrypted credential rows from uploads
- CredentialProfile: Assignable profiles inside account-share rows
- AdminStockRequest: Admin demands for N units of a product
- AuditEntry: Append-only event history
"""

from .base import Base
from .vendor import Vendor
from .product import Product
from .credential_batch import CredentialBatch, CredentialProfile
from .stock_request import AdminStockRequest
from .audit_entry import AuditEntry

__all__ = [
    "Base",
    "Vendor",
    "Product",
    "CredentialBatch",
    "CredentialProfile",
    "AdminStockRequest",
    "AuditEntry",
]
