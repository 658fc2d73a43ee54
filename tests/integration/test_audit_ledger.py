"""
Integration tests for the append-only audit ledger
"""
import uuid

import pytest
from sqlalchemy import delete, select, update

from credential_fulfillment.core.models import AuditAction, SubjectType
from credential_fulfillment.database.models import AuditEntry, CredentialBatch
from credential_fulfillment.services.audit_ledger import AuditLedger
from credential_fulfillment.utils.exceptions import ImmutabilityViolationError, PermissionDeniedError


@pytest.fixture
def audited_request(service, admin, vendor, netflix_product):
    """Stock request whose creation wrote one audit entry"""
    return service.create_stock_request(admin, vendor.id, netflix_product.id, 3)


@pytest.fixture
def license_batch_id(service, vendor, vendor_actor, license_product):
    upload = service.upload_batch(
        license_product.id, vendor.id, "license_key", "microsoft", "manual",
        [{"key": "KEY-0001"}], vendor_actor,
    )
    return upload.batch_ids[0]


class TestAppendOnly:
    """Test that audit entries and credential rows cannot be rewritten"""
    
    def test_update_blocked(self, db_session, audited_request):
        entry = db_session.scalars(select(AuditEntry)).first()
        entry.action = AuditAction.CANCELLED
        
        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
    
    def test_delete_blocked(self, db_session, audited_request):
        entry = db_session.scalars(select(AuditEntry)).first()
        db_session.delete(entry)
        
        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
    
    def test_bulk_update_blocked(self, db_session, audited_request):
        with pytest.raises(ImmutabilityViolationError):
            db_session.execute(update(AuditEntry).values(ip_address="0.0.0.0"))
    
    def test_bulk_delete_blocked(self, db_session, audited_request):
        with pytest.raises(ImmutabilityViolationError):
            db_session.execute(delete(AuditEntry))
    
    def test_credential_row_delete_blocked(self, db_session, license_batch_id):
        batch = db_session.get(CredentialBatch, license_batch_id)
        db_session.delete(batch)
        
        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
    
    def test_credential_row_bulk_delete_blocked(self, db_session, license_batch_id):
        with pytest.raises(ImmutabilityViolationError):
            db_session.execute(delete(CredentialBatch))
    
    def test_entries_survive_blocked_update(self, db_session, service, admin, audited_request):
        entry = db_session.scalars(select(AuditEntry)).first()
        entry.action = AuditAction.CANCELLED
        with pytest.raises(ImmutabilityViolationError):
            db_session.flush()
        
        history = service.audit_history(audited_request["id"], admin)
        assert [item["action"] for item in history] == ["created"]


class TestLedgerQueries:
    """Test reading the audit trail"""
    
    def test_history_oldest_first(self, db_session, admin, audited_request):
        ledger = AuditLedger(db_session)
        request_id = uuid.UUID(audited_request["id"])
        ledger.record(SubjectType.STOCK_REQUEST, request_id, AuditAction.CANCELLED, admin,
                      details={"reason": "test"})
        db_session.commit()
        
        actions = [entry.action for entry in ledger.history(request_id)]
        assert actions == [AuditAction.CREATED, AuditAction.CANCELLED]
    
    def test_entry_captures_actor_metadata(self, service, admin, audited_request):
        entry = service.audit_history(audited_request["id"], admin)[0]
        
        assert entry["actor_id"] == str(admin.id)
        assert entry["actor_role"] == "admin"
        assert entry["ip_address"] == "10.0.0.1"
        assert entry["user_agent"] == "pytest"
        assert entry["details"]["quantity_requested"] == 3
    
    def test_actor_activity_newest_first(self, service, admin, audited_request):
        service.cancel_stock_request(audited_request["id"], admin, reason="Duplicate")
        
        activity = service.actor_activity(admin.id, admin)
        assert [entry["action"] for entry in activity] == ["cancelled", "created"]
        assert len(service.actor_activity(admin.id, admin, limit=1)) == 1
    
    def test_vendor_cannot_read_trail(self, service, vendor_actor, audited_request):
        with pytest.raises(PermissionDeniedError):
            service.audit_history(audited_request["id"], vendor_actor)
    
    def test_system_actor_reads_trail(self, service, system_actor, audited_request):
        assert len(service.audit_history(audited_request["id"], system_actor)) == 1
