"""
Stock request lifecycle service.

Drives admin stock requests through requested -> partially_fulfilled ->
fulfilled (or cancelled/rejected). Every quantity and status change is one
guarded UPDATE whose WHERE clause re-checks the state the decision was
based on, and every transition writes exactly one audit entry.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.orm import Session

from credential_fulfillment.core import fulfillment
from credential_fulfillment.core.models import (
    CLOSED_REQUEST_STATUSES,
    OPEN_REQUEST_STATUSES,
    Actor,
    ActorRole,
    AuditAction,
    RequestStatus,
    ServiceType,
    SubjectType,
)
from credential_fulfillment.database.models import (
    AdminStockRequest,
    CredentialBatch,
    Product,
    Vendor,
)
from credential_fulfillment.database.models.base import utcnow
from credential_fulfillment.services.audit_ledger import AuditLedger
from credential_fulfillment.utils.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)


def _require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError(
            f"Only administrators can {action}",
            required_role=ActorRole.ADMIN.value,
            actual_role=actor.role.value,
        )


class StockRequestService:
    """Stock request operations inside the caller's session."""
    
    def __init__(self, db: Session, ledger: AuditLedger):
        self.db = db
        self.ledger = ledger
    
    def get(self, request_id: uuid.UUID, for_update: bool = False) -> AdminStockRequest:
        stmt = select(AdminStockRequest).where(AdminStockRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        request = self.db.scalar(stmt)
        if request is None:
            raise NotFoundError("AdminStockRequest", request_id, message="Stock request not found")
        return request
    
    def create(self, admin: Actor, vendor_id: uuid.UUID, product_id: uuid.UUID,
               quantity: int, notes: Optional[str] = None,
               deadline: Optional[datetime] = None) -> AdminStockRequest:
        """
        Open a new stock request.
        
        Raises:
            PermissionDeniedError: Actor is not an administrator
            ValidationError: Non-positive quantity or product/vendor mismatch
            NotFoundError: Unknown vendor or product
            StateConflictError: Product is not approved
        """
        _require_admin(admin, "create stock requests")
        
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(
                "Quantity must be a positive integer",
                field="quantity",
                value=quantity,
                expected_type="int >= 1",
            )
        
        vendor = self.db.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor", vendor_id)
        
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        if product.vendor_id != vendor.id:
            raise ValidationError(
                "Product does not belong to this vendor",
                field="product_id",
                value=product_id,
            )
        if not product.is_approved:
            raise StateConflictError(
                "Stock can only be requested for approved products",
                entity="product",
                entity_id=product_id,
                current_state=product.review_status.value,
            )
        if product.service_type == ServiceType.OTHER:
            raise ValidationError(
                "Products of service type 'other' cannot be stocked with credentials",
                field="product_id",
                value=product_id,
            )
        
        request = AdminStockRequest(
            admin_id=admin.id,
            vendor_id=vendor.id,
            product_id=product.id,
            quantity_requested=quantity,
            quantity_fulfilled=0,
            status=RequestStatus.REQUESTED,
            notes=notes,
            deadline=deadline,
        )
        self.db.add(request)
        self.db.flush()
        
        self.ledger.record(
            SubjectType.STOCK_REQUEST,
            request.id,
            AuditAction.CREATED,
            admin,
            details={"quantity_requested": quantity, "status": RequestStatus.REQUESTED.value},
            product_id=product.id,
            vendor_id=vendor.id,
        )
        
        logger.info(f"Stock request {request.id} created: {quantity} unit(s) of product {product.id}")
        return request
    
    def lock_for_upload(self, request_id: uuid.UUID, product: Product) -> AdminStockRequest:
        """Lock a request that is about to receive an upload and check it can."""
        request = self.get(request_id, for_update=True)
        if request.product_id != product.id:
            raise ValidationError(
                "Stock request is for a different product",
                field="admin_request_id",
                value=request_id,
            )
        fulfillment.ensure_accepts_uploads(request.status, request.id)
        return request
    
    def record_upload(self, request: AdminStockRequest, units: int, actor: Actor,
                      batch_ids: Sequence[uuid.UUID] = ()) -> AdminStockRequest:
        """
        Count uploaded units toward a request, capped at the requested quantity.
        
        Raises:
            StateConflictError: Request is fulfilled, cancelled or rejected
        """
        expected = fulfillment.apply_upload(
            request.status,
            request.quantity_fulfilled,
            request.quantity_requested,
            units,
            request.id,
        )
        
        raised = AdminStockRequest.quantity_fulfilled + units
        reaches_target = raised >= AdminStockRequest.quantity_requested
        result = self.db.execute(
            update(AdminStockRequest)
            .where(
                AdminStockRequest.id == request.id,
                AdminStockRequest.status.in_(OPEN_REQUEST_STATUSES),
            )
            .values(
                quantity_fulfilled=case(
                    (reaches_target, AdminStockRequest.quantity_requested),
                    else_=raised,
                ),
                status=case(
                    (reaches_target, RequestStatus.FULFILLED.value),
                    else_=RequestStatus.PARTIALLY_FULFILLED.value,
                ),
                fulfilled_at=case(
                    (reaches_target, literal(utcnow(), AdminStockRequest.fulfilled_at.type)),
                    else_=AdminStockRequest.fulfilled_at,
                ),
                fulfilled_by=case(
                    (reaches_target, literal(actor.id, AdminStockRequest.fulfilled_by.type)),
                    else_=AdminStockRequest.fulfilled_by,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.refresh(request)
            fulfillment.ensure_accepts_uploads(request.status, request.id)
            raise StateConflictError(
                "Stock request changed concurrently",
                entity="stock_request",
                entity_id=request.id,
                current_state=request.status.value,
            )
        self.db.refresh(request)
        
        action = (AuditAction.FULFILLED if request.status == RequestStatus.FULFILLED
                  else AuditAction.PARTIALLY_FULFILLED)
        self.ledger.record(
            SubjectType.STOCK_REQUEST,
            request.id,
            action,
            actor,
            details={
                "units": units,
                "applied_units": expected.applied_units,
                "overflow_units": expected.overflow_units,
                "quantity_fulfilled": request.quantity_fulfilled,
                "quantity_requested": request.quantity_requested,
                "status": request.status.value,
                "batch_ids": [str(batch_id) for batch_id in batch_ids],
            },
            product_id=request.product_id,
            vendor_id=request.vendor_id,
        )
        
        if expected.overflow_units:
            logger.warning(
                f"Stock request {request.id} received {expected.overflow_units} unit(s) "
                f"beyond the requested quantity"
            )
        logger.info(
            f"Stock request {request.id} now {request.status.value} "
            f"({request.quantity_fulfilled}/{request.quantity_requested})"
        )
        return request
    
    def revert_batch(self, request: AdminStockRequest, batch: CredentialBatch, actor: Actor,
                     reason: str) -> AdminStockRequest:
        """Subtract a rejected batch's units from its request, floored at zero."""
        units = batch.total_count
        expected = fulfillment.apply_reversal(
            request.status,
            request.quantity_fulfilled,
            request.quantity_requested,
            units,
        )
        
        values = {
            "quantity_fulfilled": expected.quantity_fulfilled,
            "status": expected.status,
            "updated_at": utcnow(),
        }
        if expected.status not in CLOSED_REQUEST_STATUSES:
            values.update(fulfilled_at=None, fulfilled_by=None)
        
        result = self.db.execute(
            update(AdminStockRequest)
            .where(
                AdminStockRequest.id == request.id,
                AdminStockRequest.status == expected.previous_status,
                AdminStockRequest.quantity_fulfilled == expected.previous_fulfilled,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.refresh(request)
            raise StateConflictError(
                "Stock request changed concurrently",
                entity="stock_request",
                entity_id=request.id,
                current_state=request.status.value,
            )
        self.db.refresh(request)
        
        self.ledger.record(
            SubjectType.STOCK_REQUEST,
            request.id,
            AuditAction.REVERTED,
            actor,
            details={
                "batch_id": str(batch.id),
                "units": units,
                "removed_units": -expected.applied_units,
                "reason": reason,
                "quantity_fulfilled": request.quantity_fulfilled,
                "quantity_requested": request.quantity_requested,
                "previous_status": expected.previous_status.value,
                "status": request.status.value,
            },
            product_id=request.product_id,
            vendor_id=request.vendor_id,
        )
        
        logger.info(
            f"Stock request {request.id} reverted by {units} unit(s): now {request.status.value} "
            f"({request.quantity_fulfilled}/{request.quantity_requested})"
        )
        return request
    
    def cancel(self, request_id: uuid.UUID, actor: Actor,
               reason: Optional[str] = None) -> AdminStockRequest:
        """Cancel an open request. Fulfilled requests cannot be cancelled."""
        _require_admin(actor, "cancel stock requests")
        return self._close(request_id, actor, RequestStatus.CANCELLED, AuditAction.CANCELLED, reason)
    
    def reject(self, request_id: uuid.UUID, actor: Actor,
               reason: Optional[str] = None) -> AdminStockRequest:
        """Decline an open request (the owning vendor or an administrator)."""
        if actor.role == ActorRole.VENDOR:
            request = self.get(request_id)
            if request.vendor_id != actor.id:
                raise PermissionDeniedError(
                    "Vendors can only decline their own stock requests",
                    required_role="owner",
                    actual_role=actor.role.value,
                )
        elif not actor.is_admin:
            raise PermissionDeniedError(
                "Only the vendor or an administrator can decline a stock request",
                required_role=ActorRole.VENDOR.value,
                actual_role=actor.role.value,
            )
        return self._close(request_id, actor, RequestStatus.REJECTED, AuditAction.REJECTED, reason)
    
    def _close(self, request_id: uuid.UUID, actor: Actor, target: RequestStatus,
               action: AuditAction, reason: Optional[str]) -> AdminStockRequest:
        request = self.get(request_id, for_update=True)
        if request.status == RequestStatus.FULFILLED:
            raise StateConflictError(
                f"A fulfilled stock request cannot be {target.value}",
                entity="stock_request",
                entity_id=request.id,
                current_state=request.status.value,
            )
        fulfillment.ensure_transition(request.status, target, request.id)
        
        previous = request.status
        result = self.db.execute(
            update(AdminStockRequest)
            .where(
                AdminStockRequest.id == request.id,
                AdminStockRequest.status.in_(OPEN_REQUEST_STATUSES),
            )
            .values(status=target.value, closed_reason=reason, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.refresh(request)
            raise StateConflictError(
                "Stock request changed concurrently",
                entity="stock_request",
                entity_id=request.id,
                current_state=request.status.value,
            )
        self.db.refresh(request)
        
        self.ledger.record(
            SubjectType.STOCK_REQUEST,
            request.id,
            action,
            actor,
            details={
                "previous_status": previous.value,
                "reason": reason,
                "quantity_fulfilled": request.quantity_fulfilled,
                "quantity_requested": request.quantity_requested,
            },
            product_id=request.product_id,
            vendor_id=request.vendor_id,
        )
        
        logger.info(f"Stock request {request.id} {target.value} by {actor.role.value} {actor.id}")
        return request
    
    def list_requests(self, vendor_id: Optional[uuid.UUID] = None,
                      status: Optional[RequestStatus] = None) -> List[AdminStockRequest]:
        stmt = select(AdminStockRequest)
        if vendor_id is not None:
            stmt = stmt.where(AdminStockRequest.vendor_id == vendor_id)
        if status is not None:
            stmt = stmt.where(AdminStockRequest.status == RequestStatus(status))
        return list(self.db.scalars(stmt.order_by(AdminStockRequest.created_at.desc())))
    
    def status_counts(self, vendor_id: Optional[uuid.UUID] = None) -> Dict[str, Any]:
        """Number of requests per status, plus total and overdue."""
        stmt = select(AdminStockRequest.status, func.count()).group_by(AdminStockRequest.status)
        if vendor_id is not None:
            stmt = stmt.where(AdminStockRequest.vendor_id == vendor_id)
        
        counts = {status.value: 0 for status in RequestStatus}
        for status, count in self.db.execute(stmt):
            counts[RequestStatus(status).value] = count
        counts["total"] = sum(counts[status.value] for status in RequestStatus)
        
        open_stmt = select(AdminStockRequest).where(
            AdminStockRequest.status.in_(OPEN_REQUEST_STATUSES),
            AdminStockRequest.deadline.is_not(None),
        )
        if vendor_id is not None:
            open_stmt = open_stmt.where(AdminStockRequest.vendor_id == vendor_id)
        now = utcnow()
        counts["overdue"] = sum(1 for request in self.db.scalars(open_stmt) if request.is_overdue(now))
        return counts
