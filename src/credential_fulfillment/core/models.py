"""
Domain types for the credential fulfillment engine.

Enumerations shared by the persistence layer and services, the tagged
credential record variants produced by the batch parser, and the result
objects returned to callers.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class ServiceType(str, Enum):
    """How a product is delivered to the buyer."""
    ACCOUNT_SHARE = "account_share"
    EMAIL_INVITE = "email_invite"
    LICENSE_KEY = "license_key"
    OTHER = "other"


class Provider(str, Enum):
    """Upstream service the credentials belong to."""
    NETFLIX = "netflix"
    SPOTIFY = "spotify"
    ADOBE = "adobe"
    DISNEY = "disney"
    HULU = "hulu"
    AMAZON = "amazon"
    APPLE = "apple"
    MICROSOFT = "microsoft"
    OTHER = "other"


class ReviewStatus(str, Enum):
    """Admin review state of a product listing."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BatchReviewStatus(str, Enum):
    """Admin review state of a stored credential row."""
    NOT_REQUIRED = "not_required"  # self-stocked by the vendor
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


SELLABLE_REVIEW_STATUSES = (BatchReviewStatus.NOT_REQUIRED, BatchReviewStatus.APPROVED)


class RequestStatus(str, Enum):
    """Lifecycle of an admin stock request."""
    REQUESTED = "requested"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


OPEN_REQUEST_STATUSES = (RequestStatus.REQUESTED, RequestStatus.PARTIALLY_FULFILLED)
CLOSED_REQUEST_STATUSES = (RequestStatus.CANCELLED, RequestStatus.REJECTED)


class AuditAction(str, Enum):
    """Actions recorded in the audit ledger."""
    CREATED = "created"
    UPLOADED = "uploaded"
    DECRYPTED = "decrypted"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    REVERTED = "reverted"
    CANCELLED = "cancelled"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"


class ActorRole(str, Enum):
    ADMIN = "admin"
    VENDOR = "vendor"
    SYSTEM = "system"


class SubjectType(str, Enum):
    CREDENTIAL_BATCH = "credential_batch"
    STOCK_REQUEST = "stock_request"


class UploadMode(str, Enum):
    MANUAL = "manual"
    CSV = "csv"


@dataclass(frozen=True)
class Actor:
    """Identity performing an operation, with request metadata for auditing."""
    
    id: uuid.UUID
    role: ActorRole
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    
    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN
    
    @classmethod
    def system(cls) -> "Actor":
        return cls(id=uuid.UUID(int=0), role=ActorRole.SYSTEM)


# =============================================================================
# Credential record variants
# =============================================================================

@dataclass(frozen=True)
class ProfileSpec:
    """One named profile inside a shared account."""
    
    name: str
    pin: Optional[str] = None


@dataclass(frozen=True)
class AccountShareRecord:
    """A shared account split into individually assignable profiles."""
    
    account_email: str
    account_password: str
    profiles: Tuple[ProfileSpec, ...]
    
    service_type = ServiceType.ACCOUNT_SHARE
    
    @property
    def unit_count(self) -> int:
        return len(self.profiles)
    
    @property
    def identifier(self) -> Optional[str]:
        """Plaintext display handle; only shared accounts have one."""
        return self.account_email
    
    def to_payload(self) -> Dict[str, Any]:
        return {
            "account_email": self.account_email,
            "account_password": self.account_password,
            "profiles": [
                {"name": profile.name, "pin": profile.pin}
                for profile in self.profiles
            ],
        }


@dataclass(frozen=True)
class EmailInviteRecord:
    """An invitation slot delivered to a recipient address."""
    
    email: str
    available: bool = True
    
    service_type = ServiceType.EMAIL_INVITE
    
    @property
    def unit_count(self) -> int:
        return 1
    
    @property
    def identifier(self) -> Optional[str]:
        return None
    
    def to_payload(self) -> Dict[str, Any]:
        return {"email": self.email, "available": self.available}


@dataclass(frozen=True)
class LicenseKeyRecord:
    """A single software license key."""
    
    key: str
    
    service_type = ServiceType.LICENSE_KEY
    
    @property
    def unit_count(self) -> int:
        return 1
    
    @property
    def identifier(self) -> Optional[str]:
        return None
    
    def to_payload(self) -> Dict[str, Any]:
        return {"key": self.key}


CredentialRecord = Union[AccountShareRecord, EmailInviteRecord, LicenseKeyRecord]


# =============================================================================
# Results
# =============================================================================

@dataclass
class RowError:
    """A row rejected by the batch parser, with the original row content."""
    
    row_number: int
    message: str
    row: Dict[str, Any] = field(default_factory=dict)
    field: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "message": self.message,
            "field": self.field,
            "row": self.row,
        }


@dataclass
class ParseResult:
    records: List[CredentialRecord] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    
    @property
    def total_units(self) -> int:
        return sum(record.unit_count for record in self.records)


@dataclass
class UploadResult:
    """Outcome of a credential upload."""
    
    imported: int
    total_units: int
    batch_number: int
    batch_ids: List[uuid.UUID] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    stock_request: Optional[Dict[str, Any]] = None
    product_stock: Optional[int] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "total_units": self.total_units,
            "batch_number": self.batch_number,
            "batch_ids": [str(batch_id) for batch_id in self.batch_ids],
            "errors": [error.to_dict() for error in self.errors],
            "stock_request": self.stock_request,
            "product_stock": self.product_stock,
        }
