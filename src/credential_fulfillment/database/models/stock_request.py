"""
Admin stock request model.
"""

import uuid

from sqlalchemy import (
    Column, String, Integer, DateTime, Text, ForeignKey, Index, CheckConstraint, Uuid
)
from sqlalchemy.orm import relationship

from credential_fulfillment.core.models import RequestStatus

from .base import Base, as_utc, enum_column_type, utcnow


class AdminStockRequest(Base):
    """
    A request from the administrator for N units of a vendor's product.
    
    ``quantity_fulfilled`` stays within ``[0, quantity_requested]`` and
    ``status`` follows from that pair unless the request was cancelled or
    rejected.
    """
    
    __tablename__ = "admin_stock_requests"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    admin_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    vendor_id = Column(Uuid(as_uuid=True), ForeignKey("vendors.id"), nullable=False, index=True)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    
    quantity_requested = Column(Integer, nullable=False)
    quantity_fulfilled = Column(Integer, default=0, nullable=False)
    status = Column(
        enum_column_type(RequestStatus, "stock_request_status"),
        nullable=False,
        default=RequestStatus.REQUESTED,
    )
    
    notes = Column(Text, nullable=True)
    deadline = Column(DateTime(timezone=True), nullable=True)
    closed_reason = Column(Text, nullable=True)
    
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    fulfilled_by = Column(Uuid(as_uuid=True), nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    
    batches = relationship(
        "CredentialBatch",
        back_populates="stock_request",
        order_by="CredentialBatch.created_at",
    )
    
    __table_args__ = (
        CheckConstraint("quantity_requested >= 1", name="ck_stock_requests_requested"),
        CheckConstraint(
            "quantity_fulfilled >= 0 AND quantity_fulfilled <= quantity_requested",
            name="ck_stock_requests_fulfilled_range",
        ),
        Index("ix_stock_requests_vendor_status", "vendor_id", "status"),
    )
    
    @property
    def credential_batch_ids(self):
        """Valid batches that currently count toward this request."""
        return [batch.id for batch in self.batches if batch.is_valid]
    
    def is_overdue(self, now=None) -> bool:
        if self.deadline is None or self.status == RequestStatus.FULFILLED:
            return False
        return as_utc(self.deadline) < (now or utcnow())
    
    def __repr__(self):
        return (
            f"<AdminStockRequest(id={self.id}, status={self.status.value}, "
            f"{self.quantity_fulfilled}/{self.quantity_requested})>"
        )
    
    def to_dict(self):
        return {
            "id": str(self.id),
            "admin_id": str(self.admin_id),
            "vendor_id": str(self.vendor_id),
            "product_id": str(self.product_id),
            "quantity_requested": self.quantity_requested,
            "quantity_fulfilled": self.quantity_fulfilled,
            "status": self.status.value,
            "notes": self.notes,
            "deadline": as_utc(self.deadline).isoformat() if self.deadline else None,
            "closed_reason": self.closed_reason,
            "fulfilled_at": as_utc(self.fulfilled_at).isoformat() if self.fulfilled_at else None,
            "fulfilled_by": str(self.fulfilled_by) if self.fulfilled_by else None,
            "credential_batch_ids": [str(batch_id) for batch_id in self.credential_batch_ids],
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
