"""
Credential batch models - encrypted credential rows and their profiles.

One upload event stores one CredentialBatch row per valid record; rows from
the same upload share ``batch_number``. Rows are never deleted: admin
rejection flips ``is_valid`` off instead.
"""

import uuid

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, ForeignKey, Index,
    CheckConstraint, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship

from credential_fulfillment.core.models import (
    BatchReviewStatus,
    SELLABLE_REVIEW_STATUSES,
    ServiceType,
)

from .base import Base, enum_column_type, utcnow


class CredentialBatch(Base):
    """An encrypted credential unit group produced by an upload."""
    
    __tablename__ = "credential_batches"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    vendor_id = Column(Uuid(as_uuid=True), ForeignKey("vendors.id"), nullable=False, index=True)
    admin_request_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("admin_stock_requests.id"),
        nullable=True,
        index=True,
    )
    
    credential_type = Column(enum_column_type(ServiceType, "credential_type"), nullable=False)
    payload_encrypted = Column(Text, nullable=False)
    account_identifier = Column(String(320), nullable=True)  # account-share email only, masked for vendors
    batch_number = Column(Integer, nullable=False)
    
    # Unit accounting: assigned_count + available_count == total_count
    total_count = Column(Integer, nullable=False)
    assigned_count = Column(Integer, default=0, nullable=False)
    available_count = Column(Integer, nullable=False)
    
    # Review
    is_valid = Column(Boolean, default=True, nullable=False)
    review_status = Column(
        enum_column_type(BatchReviewStatus, "batch_review_status"),
        nullable=False,
        default=BatchReviewStatus.NOT_REQUIRED,
    )
    review_notes = Column(Text, nullable=True)
    reviewed_by = Column(Uuid(as_uuid=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    
    created_by = Column(Uuid(as_uuid=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    
    profiles = relationship(
        "CredentialProfile",
        back_populates="batch",
        order_by="CredentialProfile.position",
        lazy="selectin",
    )
    stock_request = relationship("AdminStockRequest", back_populates="batches")
    
    __table_args__ = (
        CheckConstraint("total_count >= 0", name="ck_credential_batches_total"),
        CheckConstraint("assigned_count >= 0", name="ck_credential_batches_assigned"),
        CheckConstraint("available_count >= 0", name="ck_credential_batches_available"),
        CheckConstraint(
            "assigned_count + available_count = total_count",
            name="ck_credential_batches_conservation",
        ),
        Index("ix_credential_batches_product_number", "product_id", "batch_number"),
        Index("ix_credential_batches_product_valid", "product_id", "is_valid"),
    )
    
    @property
    def is_sellable(self) -> bool:
        return bool(self.is_valid) and self.review_status in SELLABLE_REVIEW_STATUSES
    
    def __repr__(self):
        return (
            f"<CredentialBatch(id={self.id}, batch_number={self.batch_number}, "
            f"available={self.available_count}/{self.total_count})>"
        )


class CredentialProfile(Base):
    """An individually assignable profile inside an account-share batch."""
    
    __tablename__ = "credential_profiles"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    batch_id = Column(Uuid(as_uuid=True), ForeignKey("credential_batches.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    profile_name = Column(String(255), nullable=False)
    has_pin = Column(Boolean, default=False, nullable=False)  # the PIN lives in the encrypted payload
    
    is_assigned = Column(Boolean, default=False, nullable=False)
    assigned_to = Column(Uuid(as_uuid=True), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    
    batch = relationship("CredentialBatch", back_populates="profiles")
    
    __table_args__ = (
        UniqueConstraint("batch_id", "position", name="uq_credential_profiles_position"),
    )
    
    def __repr__(self):
        return f"<CredentialProfile(id={self.id}, name='{self.profile_name}', assigned={self.is_assigned})>"
