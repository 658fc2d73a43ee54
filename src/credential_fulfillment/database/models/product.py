"""
Product model - sellable service offerings with a stock counter.
"""

import uuid

from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Index, CheckConstraint, Uuid
)
from sqlalchemy.orm import relationship

from credential_fulfillment.core.models import Provider, ReviewStatus, ServiceType

from .base import Base, enum_column_type, utcnow


class Product(Base):
    """
    A vendor's service offering.
    
    ``stock`` is only ever changed by the stock reconciler through atomic
    increments; ``last_batch_number`` is the per-product batch sequence.
    """
    
    __tablename__ = "products"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    vendor_id = Column(Uuid(as_uuid=True), ForeignKey("vendors.id"), nullable=False, index=True)
    
    title = Column(String(255), nullable=False)
    sku = Column(String(100), nullable=True)
    service_type = Column(enum_column_type(ServiceType, "service_type"), nullable=False)
    provider = Column(enum_column_type(Provider, "provider"), nullable=False, default=Provider.OTHER)
    
    stock = Column(Integer, default=0, nullable=False)
    last_batch_number = Column(Integer, default=0, nullable=False)
    
    review_status = Column(
        enum_column_type(ReviewStatus, "product_review_status"),
        nullable=False,
        default=ReviewStatus.PENDING,
        index=True,
    )
    
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    
    vendor = relationship("Vendor", back_populates="products")
    
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
        Index("ix_products_vendor_review", "vendor_id", "review_status"),
    )
    
    @property
    def is_approved(self) -> bool:
        return self.review_status == ReviewStatus.APPROVED
    
    def __repr__(self):
        return f"<Product(id={self.id}, title='{self.title}', stock={self.stock})>"
    
    def to_dict(self):
        return {
            "id": str(self.id),
            "vendor_id": str(self.vendor_id),
            "title": self.title,
            "sku": self.sku,
            "service_type": self.service_type.value,
            "provider": self.provider.value,
            "stock": self.stock,
            "review_status": self.review_status.value,
        }
