"""
Vendor model - suppliers of credential inventory.
"""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Uuid
from sqlalchemy.orm import relationship

from .base import Base, utcnow


class Vendor(Base):
    """A marketplace vendor that owns products and uploads credentials."""
    
    __tablename__ = "vendors"
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    
    products = relationship("Product", back_populates="vendor", lazy="dynamic")
    
    def __repr__(self):
        return f"<Vendor(id={self.id}, name='{self.name}')>"
