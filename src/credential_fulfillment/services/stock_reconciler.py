"""
Stock reconciler - keeps product stock in step with sellable credential units.

Self-stocked uploads become stock immediately. Uploads against a stock
request only become stock when an administrator approves them, and each
approval is a guarded UPDATE so a row can never be counted twice.
"""

import uuid
from typing import Any, Dict, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from credential_fulfillment.core.models import (
    SELLABLE_REVIEW_STATUSES,
    Actor,
    AuditAction,
    BatchReviewStatus,
    SubjectType,
)
from credential_fulfillment.database.models import CredentialBatch, Product
from credential_fulfillment.database.models.base import utcnow
from credential_fulfillment.services.audit_ledger import AuditLedger
from credential_fulfillment.utils.exceptions import NotFoundError, StateConflictError
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)


class StockReconciler:
    """Product stock adjustments inside the caller's session."""
    
    def __init__(self, db: Session, ledger: AuditLedger):
        self.db = db
        self.ledger = ledger
    
    def adjust_stock(self, product_id: uuid.UUID, delta: int) -> int:
        """
        Atomically add ``delta`` to a product's stock and return the new value.
        
        Negative deltas never take stock below zero.
        """
        stmt = (
            update(Product)
            .where(Product.id == product_id)
            .values(stock=Product.stock + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(Product.stock + delta >= 0)
        
        result = self.db.execute(stmt)
        if result.rowcount == 0:
            if self.db.get(Product, product_id) is None:
                raise NotFoundError("Product", product_id)
            raise StateConflictError(
                "Product stock cannot go below zero",
                entity="product",
                entity_id=product_id,
                current_state="out_of_stock",
            )
        return self.db.scalar(select(Product.stock).where(Product.id == product_id))
    
    def on_batches_stored(self, product_id: uuid.UUID, batches: Sequence[CredentialBatch],
                          admin_request_id: Optional[uuid.UUID]) -> Optional[int]:
        """
        Apply a fresh upload to product stock.
        
        Returns the new stock level, or None when the upload waits for review.
        """
        if admin_request_id is not None:
            logger.info(
                f"Upload for product {product_id} linked to stock request {admin_request_id}; "
                f"stock unchanged until approval"
            )
            return None
        
        units = sum(batch.available_count for batch in batches)
        new_stock = self.adjust_stock(product_id, units)
        logger.info(f"Product {product_id} stock +{units} -> {new_stock}")
        return new_stock
    
    def approve(self, batch: CredentialBatch, actor: Actor,
                comment: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve a pending request-linked batch and add its units to stock.
        
        Raises:
            StateConflictError: Batch already approved, rejected, invalidated
                or not part of a stock request
        """
        result = self.db.execute(
            update(CredentialBatch)
            .where(
                CredentialBatch.id == batch.id,
                CredentialBatch.is_valid.is_(True),
                CredentialBatch.review_status == BatchReviewStatus.PENDING,
            )
            .values(
                review_status=BatchReviewStatus.APPROVED,
                review_notes=comment,
                reviewed_by=actor.id,
                reviewed_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.refresh(batch)
            raise StateConflictError(
                self._approval_conflict_message(batch),
                entity="credential_batch",
                entity_id=batch.id,
                current_state=batch.review_status.value if batch.is_valid else "invalid",
            )
        self.db.refresh(batch)
        
        stock_added = batch.available_count
        new_stock = self.adjust_stock(batch.product_id, stock_added)
        
        self.ledger.record(
            SubjectType.CREDENTIAL_BATCH,
            batch.id,
            AuditAction.APPROVED,
            actor,
            details={
                "stock_added": stock_added,
                "product_stock": new_stock,
                "comment": comment,
                "stock_request_id": str(batch.admin_request_id) if batch.admin_request_id else None,
            },
            product_id=batch.product_id,
            vendor_id=batch.vendor_id,
        )
        
        logger.info(f"Batch {batch.id} approved: product {batch.product_id} stock +{stock_added} -> {new_stock}")
        return {"success": True, "stock_added": stock_added, "product_stock": new_stock}
    
    @staticmethod
    def _approval_conflict_message(batch: CredentialBatch) -> str:
        if not batch.is_valid:
            return "Credential batch has been invalidated"
        if batch.review_status == BatchReviewStatus.APPROVED:
            return "Credential batch is already approved"
        if batch.review_status == BatchReviewStatus.NOT_REQUIRED:
            return "Credential batch is not part of a stock request"
        return f"Credential batch cannot be approved from {batch.review_status.value}"
    
    def on_unit_allocated(self, batch: CredentialBatch) -> int:
        return self.adjust_stock(batch.product_id, -1)
    
    def on_unit_released(self, batch: CredentialBatch) -> Optional[int]:
        if not batch.is_sellable:
            return None
        return self.adjust_stock(batch.product_id, 1)
    
    def sellable_units(self, product_id: uuid.UUID) -> int:
        stmt = select(func.coalesce(func.sum(CredentialBatch.available_count), 0)).where(
            CredentialBatch.product_id == product_id,
            CredentialBatch.is_valid.is_(True),
            CredentialBatch.review_status.in_(SELLABLE_REVIEW_STATUSES),
        )
        return int(self.db.scalar(stmt))
    
    def verify_product_stock(self, product_id: uuid.UUID) -> Dict[str, Any]:
        """Compare the stock counter with the available units on sellable rows."""
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        self.db.refresh(product)
        
        sellable = self.sellable_units(product_id)
        conserved = product.stock == sellable
        if not conserved:
            logger.warning(
                f"Stock mismatch for product {product_id}: counter={product.stock}, sellable={sellable}"
            )
        return {
            "product_id": str(product_id),
            "stock": product.stock,
            "sellable_units": sellable,
            "conserved": conserved,
        }
