"""
Audit entry model - append-only history of credential and request events.
"""

from sqlalchemy import Column, Integer, String, DateTime, Index, Uuid

from credential_fulfillment.core.models import ActorRole, AuditAction, SubjectType

from .base import Base, JSONType, as_utc, enum_column_type, utcnow


class AuditEntry(Base):
    """
    One immutable audit record.
    
    Rows are inserted alongside the mutation they describe and are never
    updated or deleted (see database.immutability).
    """
    
    __tablename__ = "audit_entries"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    
    subject_type = Column(enum_column_type(SubjectType, "audit_subject_type"), nullable=False)
    subject_id = Column(Uuid(as_uuid=True), nullable=False)
    product_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    vendor_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    
    action = Column(enum_column_type(AuditAction, "audit_action"), nullable=False)
    actor_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    actor_role = Column(enum_column_type(ActorRole, "actor_role"), nullable=False)
    details = Column(JSONType, nullable=False, default=dict)
    
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    
    __table_args__ = (
        Index("ix_audit_entries_subject", "subject_id", "created_at"),
    )
    
    def __repr__(self):
        return f"<AuditEntry(id={self.id}, action={self.action.value}, subject={self.subject_id})>"
    
    def to_dict(self):
        return {
            "id": self.id,
            "subject_type": self.subject_type.value,
            "subject_id": str(self.subject_id),
            "product_id": str(self.product_id) if self.product_id else None,
            "vendor_id": str(self.vendor_id) if self.vendor_id else None,
            "action": self.action.value,
            "actor_id": str(self.actor_id),
            "actor_role": self.actor_role.value,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
