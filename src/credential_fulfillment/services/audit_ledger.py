"""
Append-only audit ledger for credential and stock request events.

Entries are written in the caller's unit of work so an audit record exists
if and only if the mutation it describes was committed.
"""

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from credential_fulfillment.core.models import Actor, AuditAction, SubjectType
from credential_fulfillment.database.models import AuditEntry
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)


class AuditLedger:
    """Writes and reads audit entries within a session."""
    
    def __init__(self, db: Session):
        self.db = db
    
    def record(self, subject_type: SubjectType, subject_id: uuid.UUID, action: AuditAction,
               actor: Actor, details: Optional[Dict[str, Any]] = None,
               product_id: Optional[uuid.UUID] = None,
               vendor_id: Optional[uuid.UUID] = None) -> AuditEntry:
        """
        Append one audit entry to the current transaction.
        
        Args:
            subject_type: Kind of entity the event is about
            subject_id: Entity identifier
            action: What happened
            actor: Who did it (with request metadata)
            details: JSON-serialisable context; never secrets
            product_id: Owning product, for product-level history
            vendor_id: Owning vendor, for vendor-level history
        """
        entry = AuditEntry(
            subject_type=subject_type,
            subject_id=subject_id,
            product_id=product_id,
            vendor_id=vendor_id,
            action=action,
            actor_id=actor.id,
            actor_role=actor.role,
            details=dict(details or {}),
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
        )
        self.db.add(entry)
        self.db.flush()
        
        logger.debug(
            f"Audit: {subject_type.value} {subject_id} {action.value} by {actor.role.value} {actor.id}"
        )
        return entry
    
    def history(self, subject_id: uuid.UUID) -> List[AuditEntry]:
        """All entries for a subject, oldest first."""
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.subject_id == subject_id)
            .order_by(AuditEntry.created_at, AuditEntry.id)
        )
        return list(self.db.scalars(stmt))
    
    def for_actor(self, actor_id: uuid.UUID, limit: int = 100) -> List[AuditEntry]:
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.actor_id == actor_id)
            .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))
