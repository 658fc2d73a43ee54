"""
ORM-level append-only enforcement.

Audit entries can never be updated or deleted, and credential rows can never
be deleted (rejection is a logical tombstone via ``is_valid``). Both
per-object flushes and bulk ORM statements are intercepted.

Usage:
    from credential_fulfillment.database.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup
"""

from sqlalchemy import event
from sqlalchemy.orm import Session

from credential_fulfillment.utils.exceptions import ImmutabilityViolationError
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)

_registered = False


def _check_audit_entry_update(mapper, connection, target):
    logger.error(f"Blocked update of audit entry {target.id}")
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=target.id,
        reason="Audit entries are immutable and cannot be modified",
    )


def _check_audit_entry_delete(mapper, connection, target):
    logger.error(f"Blocked delete of audit entry {target.id}")
    raise ImmutabilityViolationError(
        entity_type="AuditEntry",
        entity_id=target.id,
        reason="Audit entries cannot be deleted",
    )


def _check_credential_batch_delete(mapper, connection, target):
    logger.error(f"Blocked delete of credential batch {target.id}")
    raise ImmutabilityViolationError(
        entity_type="CredentialBatch",
        entity_id=target.id,
        reason="Credential rows are never deleted; reject them instead",
    )


def _check_bulk_statement(orm_execute_state):
    """Block bulk UPDATE/DELETE statements that would bypass the mapper events."""
    from credential_fulfillment.database.models import AuditEntry, CredentialBatch
    
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    
    mapper = orm_execute_state.bind_mapper
    if mapper is None:
        return
    
    operation = "update" if orm_execute_state.is_update else "delete"
    if mapper.class_ is AuditEntry:
        logger.error(f"Blocked bulk {operation} of audit entries")
        raise ImmutabilityViolationError(
            entity_type="AuditEntry",
            entity_id="*",
            reason=f"Bulk {operation} of audit entries is not allowed",
        )
    if mapper.class_ is CredentialBatch and orm_execute_state.is_delete:
        logger.error("Blocked bulk delete of credential batches")
        raise ImmutabilityViolationError(
            entity_type="CredentialBatch",
            entity_id="*",
            reason="Credential rows are never deleted; reject them instead",
        )


def register_immutability_listeners() -> None:
    """
    Register append-only event listeners.
    
    Safe to call more than once; listeners are only attached the first time.
    """
    global _registered
    if _registered:
        return
    
    from credential_fulfillment.database.models import AuditEntry, CredentialBatch
    
    event.listen(AuditEntry, "before_update", _check_audit_entry_update)
    event.listen(AuditEntry, "before_delete", _check_audit_entry_delete)
    event.listen(CredentialBatch, "before_delete", _check_credential_batch_delete)
    event.listen(Session, "do_orm_execute", _check_bulk_statement)
    
    _registered = True
    logger.info("Immutability listeners registered")
