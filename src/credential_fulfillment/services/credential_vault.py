"""
Credential vault - encrypted storage, masked listings and audited reveal.

Every credential payload is encrypted before it reaches the database. The
only way back to plaintext is reveal(), which is admin-only and writes a
``decrypted`` audit entry in the same transaction.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from credential_fulfillment.core.models import (
    AccountShareRecord,
    Actor,
    ActorRole,
    AuditAction,
    BatchReviewStatus,
    CredentialRecord,
    ServiceType,
    SubjectType,
)
from credential_fulfillment.database.models import (
    CredentialBatch,
    CredentialProfile,
    Product,
)
from credential_fulfillment.database.models.base import as_utc, utcnow
from credential_fulfillment.security.encryption import CredentialEncryptor
from credential_fulfillment.security.masking import mask_email
from credential_fulfillment.services.audit_ledger import AuditLedger
from credential_fulfillment.utils.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoreContext:
    """Where and by whom a set of parsed records is being stored."""
    
    product: Product
    actor: Actor
    admin_request_id: Optional[uuid.UUID] = None
    
    @property
    def review_status(self) -> BatchReviewStatus:
        if self.admin_request_id is None:
            return BatchReviewStatus.NOT_REQUIRED
        return BatchReviewStatus.PENDING


class CredentialVault:
    """Stores and reads credential rows inside the caller's session."""
    
    def __init__(self, db: Session, encryptor: CredentialEncryptor, ledger: AuditLedger):
        self.db = db
        self.encryptor = encryptor
        self.ledger = ledger
    
    # Storage
    
    def next_batch_number(self, product_id: uuid.UUID) -> int:
        """Atomically take the next batch number for a product."""
        result = self.db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(last_batch_number=Product.last_batch_number + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Product", product_id)
        return self.db.scalar(select(Product.last_batch_number).where(Product.id == product_id))
    
    def store(self, records: Sequence[CredentialRecord], context: StoreContext) -> List[CredentialBatch]:
        """
        Encrypt and persist one row per record under a single batch number.
        
        Args:
            records: Validated credential records
            context: Product, uploader and optional stock request
            
        Returns:
            The persisted CredentialBatch rows
        """
        if not records:
            raise ValidationError("No credential records to store", field="credentials")
        
        product = context.product
        batch_number = self.next_batch_number(product.id)
        stored = []
        
        for record in records:
            units = record.unit_count
            batch = CredentialBatch(
                product_id=product.id,
                vendor_id=product.vendor_id,
                admin_request_id=context.admin_request_id,
                credential_type=record.service_type,
                payload_encrypted=self.encryptor.encrypt(record.to_payload()),
                account_identifier=record.identifier,
                batch_number=batch_number,
                total_count=units,
                assigned_count=0,
                available_count=units,
                is_valid=True,
                review_status=context.review_status,
                created_by=context.actor.id,
            )
            
            if isinstance(record, AccountShareRecord):
                batch.profiles = [
                    CredentialProfile(
                        position=position,
                        profile_name=profile.name,
                        has_pin=bool(profile.pin),
                    )
                    for position, profile in enumerate(record.profiles, start=1)
                ]
            
            self.db.add(batch)
            self.db.flush()
            
            self.ledger.record(
                SubjectType.CREDENTIAL_BATCH,
                batch.id,
                AuditAction.UPLOADED,
                context.actor,
                details={
                    "batch_number": batch_number,
                    "credential_type": record.service_type.value,
                    "units": units,
                    "stock_request_id": str(context.admin_request_id) if context.admin_request_id else None,
                },
                product_id=product.id,
                vendor_id=product.vendor_id,
            )
            stored.append(batch)
        
        logger.info(
            f"Stored {len(stored)} credential row(s) as batch #{batch_number} "
            f"for product {product.id}"
        )
        return stored
    
    # Reads
    
    def get_batch(self, batch_id: uuid.UUID, for_update: bool = False) -> CredentialBatch:
        stmt = select(CredentialBatch).where(CredentialBatch.id == batch_id)
        if for_update:
            stmt = stmt.with_for_update()
        batch = self.db.scalar(stmt)
        if batch is None:
            raise NotFoundError("CredentialBatch", batch_id)
        return batch
    
    def get_request_batch(self, request_id: uuid.UUID, batch_id: uuid.UUID,
                          for_update: bool = False) -> CredentialBatch:
        """A batch that must belong to the given stock request."""
        batch = self.get_batch(batch_id, for_update=for_update)
        if batch.admin_request_id != request_id:
            raise NotFoundError(
                "CredentialBatch",
                batch_id,
                message="Credential batch not found for this stock request",
            )
        return batch
    
    def list_metadata(self, product: Product, viewer: Actor,
                      include_invalid: bool = False) -> List[Dict[str, Any]]:
        """
        Masked summaries of a product's credential rows.
        
        Vendors only see their own products, with masked identifiers and no
        assignment owners. No view ever contains secrets or PINs.
        """
        if viewer.role == ActorRole.VENDOR and viewer.id != product.vendor_id:
            raise PermissionDeniedError(
                "Vendors can only list credentials of their own products",
                required_role="owner",
                actual_role=viewer.role.value,
            )
        
        stmt = select(CredentialBatch).where(CredentialBatch.product_id == product.id)
        if not include_invalid:
            stmt = stmt.where(CredentialBatch.is_valid.is_(True))
        stmt = stmt.order_by(CredentialBatch.batch_number, CredentialBatch.created_at)
        
        full_view = viewer.is_admin
        return [self.summarize(batch, full_view) for batch in self.db.scalars(stmt)]
    
    def list_request_batches(self, request_id: uuid.UUID) -> List[Dict[str, Any]]:
        stmt = (
            select(CredentialBatch)
            .where(CredentialBatch.admin_request_id == request_id)
            .order_by(CredentialBatch.batch_number, CredentialBatch.created_at)
        )
        return [self.summarize(batch, full_view=True) for batch in self.db.scalars(stmt)]
    
    @staticmethod
    def summarize(batch: CredentialBatch, full_view: bool) -> Dict[str, Any]:
        summary = {
            "id": str(batch.id),
            "batch_number": batch.batch_number,
            "credential_type": batch.credential_type.value,
            "account": batch.account_identifier if full_view else mask_email(batch.account_identifier),
            "total_count": batch.total_count,
            "assigned_count": batch.assigned_count,
            "available_count": batch.available_count,
            "is_valid": batch.is_valid,
            "review_status": batch.review_status.value,
            "stock_request_id": str(batch.admin_request_id) if batch.admin_request_id else None,
            "created_at": as_utc(batch.created_at).isoformat() if batch.created_at else None,
        }
        
        if batch.credential_type == ServiceType.ACCOUNT_SHARE:
            profiles = []
            for profile in batch.profiles:
                item = {
                    "id": str(profile.id),
                    "position": profile.position,
                    "name": profile.profile_name,
                    "is_assigned": profile.is_assigned,
                }
                if full_view:
                    item["has_pin"] = profile.has_pin
                    item["assigned_to"] = str(profile.assigned_to) if profile.assigned_to else None
                profiles.append(item)
            summary["profiles"] = profiles
        
        if full_view:
            summary["review_notes"] = batch.review_notes
        return summary
    
    # Decryption
    
    def reveal(self, batch_id: uuid.UUID, requester: Actor,
               request_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        """
        Decrypt a credential row for an administrator.
        
        Exactly one ``decrypted`` audit entry is written before the payload
        is returned.
        """
        if not requester.is_admin:
            logger.warning(f"Non-admin {requester.role.value} {requester.id} attempted to reveal batch {batch_id}")
            raise PermissionDeniedError(
                "Only administrators can view decrypted credentials",
                required_role=ActorRole.ADMIN.value,
                actual_role=requester.role.value,
            )
        
        if request_id is not None:
            batch = self.get_request_batch(request_id, batch_id)
        else:
            batch = self.get_batch(batch_id)
        
        payload = self.encryptor.decrypt(batch.payload_encrypted)
        
        self.ledger.record(
            SubjectType.CREDENTIAL_BATCH,
            batch.id,
            AuditAction.DECRYPTED,
            requester,
            details={
                "batch_number": batch.batch_number,
                "stock_request_id": str(request_id) if request_id else None,
            },
            product_id=batch.product_id,
            vendor_id=batch.vendor_id,
        )
        
        logger.info(f"Batch {batch.id} decrypted by admin {requester.id}")
        return payload
    
    # Allocation
    
    def allocate(self, batch_id: uuid.UUID, owner_id: uuid.UUID, actor: Actor,
                 profile_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        """
        Assign one unit of a sellable credential row to an owner.
        
        Account-share rows assign a profile (the given one or the first free
        one by position); other rows assign their single unit.
        """
        batch = self.get_batch(batch_id, for_update=True)
        if not batch.is_sellable:
            raise StateConflictError(
                "Credential batch is not available for allocation",
                entity="credential_batch",
                entity_id=batch_id,
                current_state=batch.review_status.value if batch.is_valid else "invalid",
            )
        
        profile = None
        if batch.credential_type == ServiceType.ACCOUNT_SHARE:
            profile = self._claim_profile(batch, owner_id, profile_id)
        
        result = self.db.execute(
            update(CredentialBatch)
            .where(
                CredentialBatch.id == batch.id,
                CredentialBatch.is_valid.is_(True),
                CredentialBatch.available_count > 0,
            )
            .values(
                assigned_count=CredentialBatch.assigned_count + 1,
                available_count=CredentialBatch.available_count - 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(
                "Credential batch has no available units",
                entity="credential_batch",
                entity_id=batch_id,
                current_state="exhausted",
            )
        self.db.refresh(batch)
        
        details = {"owner_id": str(owner_id), "available_count": batch.available_count}
        if profile is not None:
            details.update({"profile_id": str(profile.id), "profile_name": profile.profile_name})
        
        self.ledger.record(
            SubjectType.CREDENTIAL_BATCH,
            batch.id,
            AuditAction.ASSIGNED,
            actor,
            details=details,
            product_id=batch.product_id,
            vendor_id=batch.vendor_id,
        )
        return {"batch_id": str(batch.id), "product_id": str(batch.product_id), **details}
    
    def _claim_profile(self, batch: CredentialBatch, owner_id: uuid.UUID,
                       profile_id: Optional[uuid.UUID]) -> CredentialProfile:
        if profile_id is not None:
            profile = self.db.get(CredentialProfile, profile_id)
            if profile is None or profile.batch_id != batch.id:
                raise NotFoundError("CredentialProfile", profile_id)
        else:
            profile = self.db.scalar(
                select(CredentialProfile)
                .where(
                    CredentialProfile.batch_id == batch.id,
                    CredentialProfile.is_assigned.is_(False),
                )
                .order_by(CredentialProfile.position)
                .limit(1)
            )
            if profile is None:
                raise StateConflictError(
                    "Credential batch has no free profiles",
                    entity="credential_batch",
                    entity_id=batch.id,
                    current_state="exhausted",
                )
        
        result = self.db.execute(
            update(CredentialProfile)
            .where(
                CredentialProfile.id == profile.id,
                CredentialProfile.is_assigned.is_(False),
            )
            .values(is_assigned=True, assigned_to=owner_id, assigned_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(
                f"Profile {profile.profile_name} is already assigned",
                entity="credential_profile",
                entity_id=profile.id,
                current_state="assigned",
            )
        self.db.refresh(profile)
        return profile
    
    def release(self, batch_id: uuid.UUID, actor: Actor,
                profile_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        """Return one assigned unit to the available pool (explicit unassignment)."""
        batch = self.get_batch(batch_id, for_update=True)
        
        details: Dict[str, Any] = {}
        if batch.credential_type == ServiceType.ACCOUNT_SHARE:
            if profile_id is None:
                raise ValidationError(
                    "profile_id is required to release an account-share unit",
                    field="profile_id",
                )
            profile = self.db.get(CredentialProfile, profile_id)
            if profile is None or profile.batch_id != batch.id:
                raise NotFoundError("CredentialProfile", profile_id)
            
            previous_owner = profile.assigned_to
            result = self.db.execute(
                update(CredentialProfile)
                .where(
                    CredentialProfile.id == profile.id,
                    CredentialProfile.is_assigned.is_(True),
                )
                .values(is_assigned=False, assigned_to=None, assigned_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise StateConflictError(
                    f"Profile {profile.profile_name} is not assigned",
                    entity="credential_profile",
                    entity_id=profile.id,
                    current_state="unassigned",
                )
            self.db.refresh(profile)
            details.update({
                "profile_id": str(profile.id),
                "profile_name": profile.profile_name,
                "previous_owner_id": str(previous_owner) if previous_owner else None,
            })
        
        result = self.db.execute(
            update(CredentialBatch)
            .where(CredentialBatch.id == batch.id, CredentialBatch.assigned_count > 0)
            .values(
                assigned_count=CredentialBatch.assigned_count - 1,
                available_count=CredentialBatch.available_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(
                "Credential batch has no assigned units",
                entity="credential_batch",
                entity_id=batch_id,
                current_state="unassigned",
            )
        self.db.refresh(batch)
        details["available_count"] = batch.available_count
        
        self.ledger.record(
            SubjectType.CREDENTIAL_BATCH,
            batch.id,
            AuditAction.UNASSIGNED,
            actor,
            details=details,
            product_id=batch.product_id,
            vendor_id=batch.vendor_id,
        )
        return {"batch_id": str(batch.id), "product_id": str(batch.product_id), **details}
