"""
Integration tests for admin review of request-linked credential batches
"""
import uuid

import pytest

from conftest import netflix_row
from credential_fulfillment.services import notifications
from credential_fulfillment.utils.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)


@pytest.fixture
def pending_upload(service, admin, vendor, vendor_actor, netflix_product):
    """A stock request for 5 units with one pending 3-profile batch"""
    request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
    result = service.upload_batch(
        netflix_product.id, vendor.id, "account_share", "netflix", "manual",
        [netflix_row("review@example.com", profiles=3)], vendor_actor,
        admin_request_id=request["id"],
    )
    return request, result.batch_ids[0]


class TestApproval:
    """Test approving pending batches"""
    
    def test_approve_adds_stock(self, service, admin, netflix_product, pending_upload):
        request, batch_id = pending_upload
        
        outcome = service.approve_batch(request["id"], batch_id, admin, comment="Looks good")
        
        assert outcome["success"] is True
        assert outcome["stock_added"] == 3
        assert outcome["product_stock"] == 3
        assert service.verify_product_stock(netflix_product.id)["conserved"] is True
    
    def test_double_approval_is_a_conflict(self, service, admin, netflix_product, pending_upload):
        request, batch_id = pending_upload
        service.approve_batch(request["id"], batch_id, admin)
        
        with pytest.raises(StateConflictError) as exc_info:
            service.approve_batch(request["id"], batch_id, admin)
        
        assert "already approved" in exc_info.value.message
        assert service.verify_product_stock(netflix_product.id)["stock"] == 3
    
    def test_vendor_cannot_approve(self, service, vendor_actor, pending_upload):
        request, batch_id = pending_upload
        
        with pytest.raises(PermissionDeniedError):
            service.approve_batch(request["id"], batch_id, vendor_actor)
    
    def test_self_stocked_batch_cannot_be_approved(self, service, admin, vendor, vendor_actor,
                                                   netflix_product, pending_upload):
        request, _ = pending_upload
        direct = service.upload_batch(
            netflix_product.id, vendor.id, "account_share", "netflix", "manual",
            [netflix_row("direct@example.com")], vendor_actor,
        )
        
        with pytest.raises(NotFoundError):
            service.approve_batch(request["id"], direct.batch_ids[0], admin)
    
    def test_approval_notifies_vendor(self, service, admin, vendor, pending_upload, notification_handler):
        request, batch_id = pending_upload
        service.approve_batch(request["id"], batch_id, admin)
        
        event = notification_handler.call_args[0][0]
        assert event.event_type == notifications.BATCH_APPROVED
        assert event.recipient_id == vendor.id
        assert event.data["stock_added"] == 3
    
    def test_failed_notification_keeps_approval(self, service, admin, netflix_product,
                                                pending_upload, notification_handler):
        """Test a handler error after commit does not undo the approval"""
        request, batch_id = pending_upload
        notification_handler.side_effect = RuntimeError("smtp down")
        
        outcome = service.approve_batch(request["id"], batch_id, admin)
        
        assert outcome["success"] is True
        assert service.verify_product_stock(netflix_product.id)["stock"] == 3


class TestRejection:
    """Test rejecting pending batches"""
    
    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reason_required(self, service, admin, pending_upload, reason):
        request, batch_id = pending_upload
        
        with pytest.raises(ValidationError):
            service.reject_batch(request["id"], batch_id, admin, reason)
    
    def test_reject_reverts_request(self, service, admin, netflix_product, pending_upload):
        request, batch_id = pending_upload
        
        outcome = service.reject_batch(request["id"], batch_id, admin, "Wrong region")
        
        assert outcome["request"]["quantity_fulfilled"] == 0
        assert outcome["request"]["status"] == "requested"
        assert outcome["request"]["credential_batch_ids"] == []
        
        listing = service.list_request_credentials(request["id"], admin)
        assert listing[0]["is_valid"] is False
        assert listing[0]["review_status"] == "rejected"
        assert listing[0]["review_notes"] == "Wrong region"
        assert service.verify_product_stock(netflix_product.id)["stock"] == 0
    
    def test_rejected_batch_cannot_be_approved(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        service.reject_batch(request["id"], batch_id, admin, "Wrong region")
        
        with pytest.raises(StateConflictError) as exc_info:
            service.approve_batch(request["id"], batch_id, admin)
        assert "invalidated" in exc_info.value.message
    
    def test_approved_batch_cannot_be_rejected(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        service.approve_batch(request["id"], batch_id, admin)
        
        with pytest.raises(StateConflictError) as exc_info:
            service.reject_batch(request["id"], batch_id, admin, "Changed my mind")
        assert exc_info.value.message == "Approved credentials cannot be rejected"
    
    def test_second_rejection_is_a_conflict(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        service.reject_batch(request["id"], batch_id, admin, "Wrong region")
        
        with pytest.raises(StateConflictError):
            service.reject_batch(request["id"], batch_id, admin, "Wrong region")
    
    def test_rejection_is_audited(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        service.reject_batch(request["id"], batch_id, admin, "Wrong region")
        
        batch_actions = [entry["action"] for entry in service.audit_history(batch_id, admin)]
        request_actions = [entry["action"] for entry in service.audit_history(request["id"], admin)]
        
        assert batch_actions == ["uploaded", "rejected"]
        assert request_actions == ["created", "partially_fulfilled", "reverted"]
    
    def test_revert_details_are_audited(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        service.reject_batch(request["id"], batch_id, admin, "Wrong region")
        
        reverted = service.audit_history(request["id"], admin)[-1]
        assert reverted["action"] == "reverted"
        assert reverted["details"]["units"] == 3
        assert reverted["details"]["removed_units"] == 3
        assert reverted["details"]["previous_status"] == "partially_fulfilled"
        assert reverted["details"]["status"] == "requested"
    
    def test_rejection_keeps_cancelled_request_closed(self, service, admin, pending_upload):
        """Test a cancelled request loses the units but stays cancelled"""
        request, batch_id = pending_upload
        service.cancel_stock_request(request["id"], admin, "No longer needed")
        
        outcome = service.reject_batch(request["id"], batch_id, admin, "Wrong region")
        
        assert outcome["request"]["status"] == "cancelled"
        assert outcome["request"]["quantity_fulfilled"] == 0


class TestReveal:
    """Test audited decryption"""
    
    def test_reveal_returns_plaintext(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        
        payload = service.reveal_batch(request["id"], batch_id, admin)
        
        assert payload["account_email"] == "review@example.com"
        assert payload["account_password"] == "s3cret!"
        assert [profile["pin"] for profile in payload["profiles"]] == ["1001", "1002", "1003"]
    
    def test_reveal_writes_one_audit_entry(self, service, admin, pending_upload):
        request, batch_id = pending_upload
        service.reveal_batch(request["id"], batch_id, admin)
        
        decrypted = [
            entry for entry in service.audit_history(batch_id, admin)
            if entry["action"] == "decrypted"
        ]
        assert len(decrypted) == 1
        assert decrypted[0]["actor_id"] == str(admin.id)
    
    def test_vendor_cannot_reveal(self, service, admin, vendor_actor, pending_upload):
        request, batch_id = pending_upload
        
        with pytest.raises(PermissionDeniedError):
            service.reveal_batch(request["id"], batch_id, vendor_actor)
        
        actions = [entry["action"] for entry in service.audit_history(batch_id, admin)]
        assert "decrypted" not in actions
    
    def test_unknown_batch(self, service, admin, pending_upload):
        request, _ = pending_upload
        
        with pytest.raises(NotFoundError):
            service.reveal_batch(request["id"], uuid.uuid4(), admin)
    
    def test_malformed_batch_id(self, service, admin, pending_upload):
        request, _ = pending_upload
        
        with pytest.raises(NotFoundError):
            service.reveal_batch(request["id"], "not-a-uuid", admin)
