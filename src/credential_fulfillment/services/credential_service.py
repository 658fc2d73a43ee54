"""
Credential fulfillment service - the public surface of the engine.

Each operation runs as one unit of work: a fresh session, one transaction
that commits on success and rolls back on any error, retried on deadlocks.
Notifications are dispatched only after the transaction has committed.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from credential_fulfillment.core.models import (
    Actor,
    ActorRole,
    AuditAction,
    BatchReviewStatus,
    Provider,
    RequestStatus,
    ReviewStatus,
    ServiceType,
    SubjectType,
    UploadResult,
)
from credential_fulfillment.core.validator import CredentialBatchParser
from credential_fulfillment.database.models import CredentialBatch, Product
from credential_fulfillment.database.models.base import utcnow
from credential_fulfillment.security.encryption import CredentialEncryptor
from credential_fulfillment.services import notifications
from credential_fulfillment.services.audit_ledger import AuditLedger
from credential_fulfillment.services.credential_vault import CredentialVault, StoreContext
from credential_fulfillment.services.notifications import NotificationDispatcher, NotificationEvent
from credential_fulfillment.services.stock_reconciler import StockReconciler
from credential_fulfillment.services.stock_request_service import StockRequestService
from credential_fulfillment.utils.exceptions import (
    EmptyBatchError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from credential_fulfillment.utils.logger import get_logger
from credential_fulfillment.utils.transaction import retry_on_deadlock, transaction_scope

logger = get_logger(__name__)

T = TypeVar("T")


def _as_uuid(value: Any, entity: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        raise NotFoundError(entity, value, message=f"{entity} not found (malformed identifier)")


def _require_role(actor: Actor, roles, action: str) -> None:
    if actor.role not in roles:
        raise PermissionDeniedError(
            f"Role '{actor.role.value}' cannot {action}",
            required_role="|".join(role.value for role in roles),
            actual_role=actor.role.value,
        )


@dataclass
class UnitOfWork:
    """Session-bound collaborators for one operation."""
    
    db: Session
    ledger: AuditLedger
    vault: CredentialVault
    requests: StockRequestService
    reconciler: StockReconciler
    events: List[NotificationEvent] = field(default_factory=list)
    
    def notify(self, event_type: str, recipient_role: ActorRole,
               recipient_id: Optional[uuid.UUID], **data) -> None:
        self.events.append(NotificationEvent(event_type, recipient_role, recipient_id, data))


class CredentialFulfillmentService:
    """
    Facade over the vault, stock request lifecycle, reconciler and ledger.
    
    Usage:
        service = CredentialFulfillmentService(session_factory, encryptor, parser)
        request = service.create_stock_request(admin, vendor_id, product_id, 10)
        result = service.upload_batch(product_id, vendor_id, "account_share", "netflix",
                                      "csv", csv_text, vendor, admin_request_id=request["id"])
    """
    
    def __init__(self, session_factory: sessionmaker, encryptor: CredentialEncryptor,
                 parser: CredentialBatchParser,
                 notifier: Optional[NotificationDispatcher] = None,
                 deadlock_retries: int = 3):
        """
        Initialize service.
        
        Args:
            session_factory: Factory producing request-scoped sessions
            encryptor: Payload encryptor holding the AES key
            parser: Upload parser configured with provider rules
            notifier: Post-commit notification dispatcher
            deadlock_retries: Attempts per operation on lock errors
        """
        self.session_factory = session_factory
        self.encryptor = encryptor
        self.parser = parser
        self.notifier = notifier or NotificationDispatcher()
        self.deadlock_retries = deadlock_retries
    
    # Unit of work
    
    @contextmanager
    def _unit_of_work(self) -> Iterator[UnitOfWork]:
        db = self.session_factory()
        try:
            with transaction_scope(db):
                ledger = AuditLedger(db)
                yield UnitOfWork(
                    db=db,
                    ledger=ledger,
                    vault=CredentialVault(db, self.encryptor, ledger),
                    requests=StockRequestService(db, ledger),
                    reconciler=StockReconciler(db, ledger),
                )
        finally:
            db.close()
    
    def _run(self, operation: str, work: Callable[[UnitOfWork], T]) -> T:
        committed_events: List[NotificationEvent] = []
        
        def attempt():
            with self._unit_of_work() as uow:
                result = work(uow)
            committed_events[:] = uow.events
            return result
        
        attempt.__name__ = operation
        result = retry_on_deadlock(max_retries=self.deadlock_retries)(attempt)()
        
        delivered = self.notifier.dispatch_all(committed_events)
        if delivered < len(committed_events):
            logger.warning(f"{operation}: {len(committed_events) - delivered} notification(s) undelivered")
        return result
    
    # Uploads
    
    def upload_batch(self, product_id, vendor_id, service_type, provider, mode,
                     raw_input, actor: Actor, admin_request_id=None) -> UploadResult:
        """
        Validate, encrypt and store a credential upload.
        
        Valid rows are stored under one batch number; invalid rows come back
        in ``errors``. Self-stocked uploads add to product stock right away;
        uploads against a stock request count toward it and wait for review.
        
        Raises:
            EmptyBatchError: No row passed validation (nothing is stored)
            NotFoundError: Unknown product or stock request
            PermissionDeniedError: Vendor uploading to another vendor's product
            StateConflictError: Product not approved, or request not open
            ValidationError: Operation-level input problems
        """
        product_id = _as_uuid(product_id, "Product")
        vendor_id = _as_uuid(vendor_id, "Vendor")
        request_id = _as_uuid(admin_request_id, "AdminStockRequest") if admin_request_id is not None else None
        _require_role(actor, (ActorRole.VENDOR, ActorRole.ADMIN), "upload credentials")
        if actor.role == ActorRole.VENDOR and actor.id != vendor_id:
            raise PermissionDeniedError(
                "Vendors can only upload credentials for themselves",
                required_role="owner",
                actual_role=actor.role.value,
            )
        
        try:
            provider_tag = Provider(str(getattr(provider, "value", provider)).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown provider: {provider}",
                field="provider",
                value=provider,
                expected_type="Provider",
            )
        
        parsed = self.parser.parse(raw_input, service_type, provider, mode)
        if not parsed.records:
            logger.warning(f"Upload for product {product_id} rejected: no valid rows")
            raise EmptyBatchError("No valid credentials found in upload", errors=parsed.errors)
        
        def work(uow: UnitOfWork) -> UploadResult:
            product = self._load_product(uow, product_id)
            if product.vendor_id != vendor_id:
                raise PermissionDeniedError(
                    "Product does not belong to this vendor",
                    required_role="owner",
                    actual_role=actor.role.value,
                )
            if product.review_status != ReviewStatus.APPROVED:
                raise StateConflictError(
                    "Credentials can only be loaded for approved products",
                    entity="product",
                    entity_id=product.id,
                    current_state=product.review_status.value,
                )
            if product.service_type != ServiceType(service_type):
                raise ValidationError(
                    "Service type does not match the product",
                    field="service_type",
                    value=service_type,
                    expected_type=product.service_type.value,
                )
            if product.provider != provider_tag:
                raise ValidationError(
                    "Provider does not match the product",
                    field="provider",
                    value=provider,
                    expected_type=product.provider.value,
                )
            
            request = None
            if request_id is not None:
                request = uow.requests.lock_for_upload(request_id, product)
            
            batches = uow.vault.store(parsed.records, StoreContext(product, actor, request_id))
            product_stock = uow.reconciler.on_batches_stored(product.id, batches, request_id)
            
            request_snapshot = None
            if request is not None:
                request = uow.requests.record_upload(
                    request, parsed.total_units, actor, [batch.id for batch in batches]
                )
                request_snapshot = request.to_dict()
                uow.notify(
                    notifications.CREDENTIALS_UPLOADED, ActorRole.ADMIN, request.admin_id,
                    stock_request_id=str(request.id), units=parsed.total_units,
                    batch_number=batches[0].batch_number,
                )
                if request.status == RequestStatus.FULFILLED:
                    uow.notify(
                        notifications.STOCK_REQUEST_FULFILLED, ActorRole.ADMIN, request.admin_id,
                        stock_request_id=str(request.id),
                    )
            
            return UploadResult(
                imported=len(batches),
                total_units=parsed.total_units,
                batch_number=batches[0].batch_number,
                batch_ids=[batch.id for batch in batches],
                errors=list(parsed.errors),
                stock_request=request_snapshot,
                product_stock=product_stock,
            )
        
        result = self._run("upload_batch", work)
        logger.info(
            f"Upload for product {product_id}: {result.imported} row(s) imported, "
            f"{len(result.errors)} rejected, batch #{result.batch_number}"
        )
        return result
    
    # Admin review
    
    def reveal_batch(self, request_id, batch_id, admin: Actor) -> Dict[str, Any]:
        """Decrypt a request-linked batch for an administrator (audited)."""
        request_id = _as_uuid(request_id, "AdminStockRequest")
        batch_id = _as_uuid(batch_id, "CredentialBatch")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            uow.requests.get(request_id)
            return uow.vault.reveal(batch_id, admin, request_id=request_id)
        
        return self._run("reveal_batch", work)
    
    def approve_batch(self, request_id, batch_id, admin: Actor,
                      comment: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve a pending batch and add its units to product stock.
        
        Raises:
            StateConflictError: Already approved, rejected or invalidated
        """
        request_id = _as_uuid(request_id, "AdminStockRequest")
        batch_id = _as_uuid(batch_id, "CredentialBatch")
        _require_role(admin, (ActorRole.ADMIN,), "approve credentials")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            uow.requests.get(request_id)
            batch = uow.vault.get_request_batch(request_id, batch_id, for_update=True)
            outcome = uow.reconciler.approve(batch, admin, comment)
            uow.notify(
                notifications.BATCH_APPROVED, ActorRole.VENDOR, batch.vendor_id,
                batch_id=str(batch.id), stock_added=outcome["stock_added"],
            )
            return outcome
        
        return self._run("approve_batch", work)
    
    def reject_batch(self, request_id, batch_id, admin: Actor, reason: str) -> Dict[str, Any]:
        """
        Invalidate a pending batch and take its units back off the request.
        
        Raises:
            ValidationError: Missing reason
            StateConflictError: Batch already approved or rejected
        """
        request_id = _as_uuid(request_id, "AdminStockRequest")
        batch_id = _as_uuid(batch_id, "CredentialBatch")
        _require_role(admin, (ActorRole.ADMIN,), "reject credentials")
        if not reason or not str(reason).strip():
            raise ValidationError("A rejection reason is required", field="reason")
        reason = str(reason).strip()
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            request = uow.requests.get(request_id, for_update=True)
            batch = uow.vault.get_request_batch(request_id, batch_id, for_update=True)
            
            result = uow.db.execute(
                update(CredentialBatch)
                .where(
                    CredentialBatch.id == batch.id,
                    CredentialBatch.is_valid.is_(True),
                    CredentialBatch.review_status == BatchReviewStatus.PENDING,
                )
                .values(
                    is_valid=False,
                    review_status=BatchReviewStatus.REJECTED,
                    review_notes=reason,
                    reviewed_by=admin.id,
                    reviewed_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                uow.db.refresh(batch)
                state = batch.review_status.value if batch.is_valid else "invalid"
                if batch.review_status == BatchReviewStatus.APPROVED:
                    message = "Approved credentials cannot be rejected"
                else:
                    message = "Credential batch has already been rejected"
                raise StateConflictError(
                    message, entity="credential_batch", entity_id=batch.id, current_state=state
                )
            uow.db.refresh(batch)
            
            uow.ledger.record(
                SubjectType.CREDENTIAL_BATCH,
                batch.id,
                AuditAction.REJECTED,
                admin,
                details={"reason": reason, "units": batch.total_count, "stock_request_id": str(request.id)},
                product_id=batch.product_id,
                vendor_id=batch.vendor_id,
            )
            request = uow.requests.revert_batch(request, batch, admin, reason)
            
            uow.notify(
                notifications.BATCH_REJECTED, ActorRole.VENDOR, batch.vendor_id,
                batch_id=str(batch.id), reason=reason, stock_request_id=str(request.id),
            )
            return {"success": True, "request": request.to_dict()}
        
        return self._run("reject_batch", work)
    
    # Stock requests
    
    def create_stock_request(self, admin: Actor, vendor_id, product_id, quantity: int,
                             notes: Optional[str] = None,
                             deadline: Optional[datetime] = None) -> Dict[str, Any]:
        vendor_id = _as_uuid(vendor_id, "Vendor")
        product_id = _as_uuid(product_id, "Product")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            request = uow.requests.create(admin, vendor_id, product_id, quantity, notes, deadline)
            uow.notify(
                notifications.STOCK_REQUEST_CREATED, ActorRole.VENDOR, vendor_id,
                stock_request_id=str(request.id), quantity=quantity,
            )
            return request.to_dict()
        
        return self._run("create_stock_request", work)
    
    def cancel_stock_request(self, request_id, actor: Actor,
                             reason: Optional[str] = None) -> Dict[str, Any]:
        """Cancel an open stock request (admin only, never once fulfilled)."""
        request_id = _as_uuid(request_id, "AdminStockRequest")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            request = uow.requests.cancel(request_id, actor, reason)
            uow.notify(
                notifications.STOCK_REQUEST_CANCELLED, ActorRole.VENDOR, request.vendor_id,
                stock_request_id=str(request.id), reason=reason,
            )
            return request.to_dict()
        
        return self._run("cancel_stock_request", work)
    
    def reject_stock_request(self, request_id, actor: Actor,
                             reason: Optional[str] = None) -> Dict[str, Any]:
        """Decline an open stock request on behalf of the vendor."""
        request_id = _as_uuid(request_id, "AdminStockRequest")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            request = uow.requests.reject(request_id, actor, reason)
            uow.notify(
                notifications.STOCK_REQUEST_DECLINED, ActorRole.ADMIN, request.admin_id,
                stock_request_id=str(request.id), reason=reason,
            )
            return request.to_dict()
        
        return self._run("reject_stock_request", work)
    
    def get_stock_request(self, request_id, actor: Actor) -> Dict[str, Any]:
        request_id = _as_uuid(request_id, "AdminStockRequest")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            request = uow.requests.get(request_id)
            if actor.role == ActorRole.VENDOR and request.vendor_id != actor.id:
                raise NotFoundError("AdminStockRequest", request_id, message="Stock request not found")
            snapshot = request.to_dict()
            snapshot["is_overdue"] = request.is_overdue()
            return snapshot
        
        return self._run("get_stock_request", work)
    
    def list_stock_requests(self, actor: Actor, status=None, vendor_id=None) -> List[Dict[str, Any]]:
        """Admins see every request (optionally per vendor); vendors see their own."""
        if actor.role == ActorRole.VENDOR:
            vendor_id = actor.id
        elif vendor_id is not None:
            vendor_id = _as_uuid(vendor_id, "Vendor")
        
        def work(uow: UnitOfWork) -> List[Dict[str, Any]]:
            return [request.to_dict() for request in uow.requests.list_requests(vendor_id, status)]
        
        return self._run("list_stock_requests", work)
    
    def stock_request_counts(self, actor: Actor, vendor_id=None) -> Dict[str, Any]:
        if actor.role == ActorRole.VENDOR:
            vendor_id = actor.id
        elif vendor_id is not None:
            vendor_id = _as_uuid(vendor_id, "Vendor")
        return self._run("stock_request_counts", lambda uow: uow.requests.status_counts(vendor_id))
    
    # Listings
    
    def list_credentials(self, product_id, actor: Actor,
                         include_invalid: bool = False) -> List[Dict[str, Any]]:
        """Masked credential metadata for a product; never secrets."""
        product_id = _as_uuid(product_id, "Product")
        
        def work(uow: UnitOfWork) -> List[Dict[str, Any]]:
            product = self._load_product(uow, product_id)
            return uow.vault.list_metadata(product, actor, include_invalid=include_invalid)
        
        return self._run("list_credentials", work)
    
    def list_request_credentials(self, request_id, admin: Actor) -> List[Dict[str, Any]]:
        request_id = _as_uuid(request_id, "AdminStockRequest")
        _require_role(admin, (ActorRole.ADMIN,), "review stock request credentials")
        
        def work(uow: UnitOfWork) -> List[Dict[str, Any]]:
            uow.requests.get(request_id)
            return uow.vault.list_request_batches(request_id)
        
        return self._run("list_request_credentials", work)
    
    # Allocation
    
    def allocate_unit(self, batch_id, owner_id, actor: Actor, profile_id=None) -> Dict[str, Any]:
        """Assign one sellable unit to a buyer and take it out of stock."""
        batch_id = _as_uuid(batch_id, "CredentialBatch")
        owner_id = _as_uuid(owner_id, "Owner")
        profile_id = _as_uuid(profile_id, "CredentialProfile") if profile_id is not None else None
        _require_role(actor, (ActorRole.ADMIN, ActorRole.SYSTEM), "allocate credentials")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            assignment = uow.vault.allocate(batch_id, owner_id, actor, profile_id)
            batch = uow.vault.get_batch(batch_id)
            assignment["product_stock"] = uow.reconciler.on_unit_allocated(batch)
            return assignment
        
        return self._run("allocate_unit", work)
    
    def release_unit(self, batch_id, actor: Actor, profile_id=None) -> Dict[str, Any]:
        """Explicitly unassign a unit and return it to stock."""
        batch_id = _as_uuid(batch_id, "CredentialBatch")
        profile_id = _as_uuid(profile_id, "CredentialProfile") if profile_id is not None else None
        _require_role(actor, (ActorRole.ADMIN, ActorRole.SYSTEM), "release credentials")
        
        def work(uow: UnitOfWork) -> Dict[str, Any]:
            released = uow.vault.release(batch_id, actor, profile_id)
            batch = uow.vault.get_batch(batch_id)
            released["product_stock"] = uow.reconciler.on_unit_released(batch)
            return released
        
        return self._run("release_unit", work)
    
    # Audit and integrity
    
    def audit_history(self, subject_id, actor: Actor) -> List[Dict[str, Any]]:
        subject_id = _as_uuid(subject_id, "Subject")
        _require_role(actor, (ActorRole.ADMIN, ActorRole.SYSTEM), "read the audit trail")
        return self._run(
            "audit_history",
            lambda uow: [entry.to_dict() for entry in uow.ledger.history(subject_id)],
        )
    
    def actor_activity(self, actor_id, actor: Actor, limit: int = 100) -> List[Dict[str, Any]]:
        actor_id = _as_uuid(actor_id, "Actor")
        _require_role(actor, (ActorRole.ADMIN, ActorRole.SYSTEM), "read the audit trail")
        return self._run(
            "actor_activity",
            lambda uow: [entry.to_dict() for entry in uow.ledger.for_actor(actor_id, limit)],
        )
    
    def verify_product_stock(self, product_id) -> Dict[str, Any]:
        product_id = _as_uuid(product_id, "Product")
        return self._run("verify_product_stock", lambda uow: uow.reconciler.verify_product_stock(product_id))
    
    @staticmethod
    def _load_product(uow: UnitOfWork, product_id: uuid.UUID) -> Product:
        product = uow.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product
