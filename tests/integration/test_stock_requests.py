"""
Integration tests for the stock request lifecycle
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from conftest import netflix_row
from credential_fulfillment.core.models import Actor, ActorRole, Provider, ReviewStatus, ServiceType
from credential_fulfillment.services import notifications
from credential_fulfillment.utils.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)


def upload_units(service, product, vendor, actor, request_id, units, email):
    """Upload one Netflix account carrying ``units`` profiles against a request"""
    return service.upload_batch(
        product.id, vendor.id, "account_share", "netflix", "manual",
        [netflix_row(email, profiles=units)], actor, admin_request_id=request_id,
    )


class TestStockRequestCreation:
    """Test creating stock requests"""
    
    def test_create(self, service, admin, vendor, netflix_product, notification_handler):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 10, notes="Q4 top-up")
        
        assert request["status"] == "requested"
        assert request["quantity_requested"] == 10
        assert request["quantity_fulfilled"] == 0
        assert request["notes"] == "Q4 top-up"
        
        event = notification_handler.call_args[0][0]
        assert event.event_type == notifications.STOCK_REQUEST_CREATED
        assert event.recipient_id == vendor.id
    
    @pytest.mark.parametrize("quantity", [0, -3, 2.5, True])
    def test_quantity_must_be_positive_integer(self, service, admin, vendor, netflix_product, quantity):
        with pytest.raises(ValidationError):
            service.create_stock_request(admin, vendor.id, netflix_product.id, quantity)
    
    def test_requires_admin(self, service, vendor_actor, vendor, netflix_product):
        with pytest.raises(PermissionDeniedError):
            service.create_stock_request(vendor_actor, vendor.id, netflix_product.id, 5)
    
    def test_unknown_vendor(self, service, admin, netflix_product):
        with pytest.raises(NotFoundError):
            service.create_stock_request(admin, uuid.uuid4(), netflix_product.id, 5)
    
    def test_product_of_another_vendor(self, service, admin, other_vendor, netflix_product):
        with pytest.raises(ValidationError):
            service.create_stock_request(admin, other_vendor.id, netflix_product.id, 5)
    
    def test_unapproved_product(self, service, admin, vendor, make_product):
        product = make_product(ServiceType.LICENSE_KEY, Provider.ADOBE, review_status=ReviewStatus.REJECTED)
        with pytest.raises(StateConflictError):
            service.create_stock_request(admin, vendor.id, product.id, 5)


class TestFulfillmentScenario:
    """Test request 10, upload 6, upload 4, reject the first batch"""
    
    def test_full_scenario(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 10)
        
        first = upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 6, "six@example.com")
        assert first.stock_request["status"] == "partially_fulfilled"
        assert first.stock_request["quantity_fulfilled"] == 6
        assert first.product_stock is None
        
        second = upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 4, "four@example.com")
        assert second.stock_request["status"] == "fulfilled"
        assert second.stock_request["quantity_fulfilled"] == 10
        assert second.stock_request["fulfilled_at"] is not None
        assert second.stock_request["fulfilled_by"] == str(vendor_actor.id)
        
        outcome = service.reject_batch(request["id"], first.batch_ids[0], admin, "Profiles already in use")
        assert outcome["request"]["status"] == "partially_fulfilled"
        assert outcome["request"]["quantity_fulfilled"] == 4
        assert outcome["request"]["fulfilled_at"] is None
        assert outcome["request"]["credential_batch_ids"] == [str(second.batch_ids[0])]
    
    def test_stock_untouched_until_approval(self, service, admin, vendor, vendor_actor,
                                            netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 3)
        upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 2, "a@example.com")
        
        report = service.verify_product_stock(netflix_product.id)
        assert report["stock"] == 0
        assert report["conserved"] is True
    
    def test_upload_to_fulfilled_request(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 2)
        upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 2, "a@example.com")
        
        with pytest.raises(StateConflictError) as exc_info:
            upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 1, "b@example.com")
        assert "already fully fulfilled" in exc_info.value.message
    
    def test_overflow_is_capped(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 3)
        result = upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 5, "a@example.com")
        
        assert result.stock_request["quantity_fulfilled"] == 3
        assert result.stock_request["status"] == "fulfilled"
        
        history = service.audit_history(request["id"], admin)
        assert history[-1]["action"] == "fulfilled"
        assert history[-1]["details"]["overflow_units"] == 2
    
    def test_upload_for_wrong_product(self, service, admin, vendor, vendor_actor,
                                      netflix_product, spotify_product):
        request = service.create_stock_request(admin, vendor.id, spotify_product.id, 3)
        
        with pytest.raises(ValidationError):
            upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 1, "a@example.com")
    
    def test_fulfilled_notification(self, service, admin, vendor, vendor_actor, netflix_product,
                                    notification_handler):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 1)
        upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 1, "a@example.com")
        
        event_types = [call.args[0].event_type for call in notification_handler.call_args_list]
        assert notifications.CREDENTIALS_UPLOADED in event_types
        assert notifications.STOCK_REQUEST_FULFILLED in event_types


class TestClosingRequests:
    """Test cancellation and vendor decline"""
    
    def test_cancel_open_request(self, service, admin, vendor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        cancelled = service.cancel_stock_request(request["id"], admin, reason="No longer needed")
        
        assert cancelled["status"] == "cancelled"
        assert cancelled["closed_reason"] == "No longer needed"
    
    def test_cancel_partially_fulfilled_request(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 2, "a@example.com")
        
        cancelled = service.cancel_stock_request(request["id"], admin)
        assert cancelled["status"] == "cancelled"
        assert cancelled["quantity_fulfilled"] == 2
    
    def test_cannot_cancel_fulfilled(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 1)
        upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 1, "a@example.com")
        
        with pytest.raises(StateConflictError):
            service.cancel_stock_request(request["id"], admin)
    
    def test_only_admin_cancels(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 1)
        
        with pytest.raises(PermissionDeniedError):
            service.cancel_stock_request(request["id"], vendor_actor)
    
    def test_cancelled_request_rejects_uploads(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        service.cancel_stock_request(request["id"], admin)
        
        with pytest.raises(StateConflictError):
            upload_units(service, netflix_product, vendor, vendor_actor, request["id"], 1, "a@example.com")
    
    def test_vendor_declines(self, service, admin, vendor, vendor_actor, netflix_product, notification_handler):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        declined = service.reject_stock_request(request["id"], vendor_actor, reason="Out of accounts")
        
        assert declined["status"] == "rejected"
        event = notification_handler.call_args[0][0]
        assert event.event_type == notifications.STOCK_REQUEST_DECLINED
        assert event.recipient_id == admin.id
    
    def test_other_vendor_cannot_decline(self, service, admin, vendor, other_vendor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        intruder = Actor(id=other_vendor.id, role=ActorRole.VENDOR)
        
        with pytest.raises(PermissionDeniedError):
            service.reject_stock_request(request["id"], intruder)
    
    def test_closed_request_cannot_be_closed_again(self, service, admin, vendor, vendor_actor, netflix_product):
        request = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        service.reject_stock_request(request["id"], vendor_actor)
        
        with pytest.raises(StateConflictError):
            service.cancel_stock_request(request["id"], admin)


class TestRequestQueries:
    """Test listing and summaries"""
    
    def test_vendor_sees_own_requests(self, service, admin, vendor, vendor_actor, other_vendor,
                                      netflix_product, make_product):
        foreign_product = make_product(ServiceType.LICENSE_KEY, Provider.ADOBE, owner=other_vendor)
        service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        service.create_stock_request(admin, other_vendor.id, foreign_product.id, 5)
        
        assert len(service.list_stock_requests(vendor_actor)) == 1
        assert len(service.list_stock_requests(admin)) == 2
        assert len(service.list_stock_requests(admin, vendor_id=other_vendor.id)) == 1
    
    def test_vendor_cannot_read_foreign_request(self, service, admin, other_vendor, vendor_actor, make_product):
        foreign_product = make_product(ServiceType.LICENSE_KEY, Provider.ADOBE, owner=other_vendor)
        request = service.create_stock_request(admin, other_vendor.id, foreign_product.id, 5)
        
        with pytest.raises(NotFoundError):
            service.get_stock_request(request["id"], vendor_actor)
    
    def test_status_counts_and_overdue(self, service, admin, vendor, vendor_actor, netflix_product):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        overdue = service.create_stock_request(admin, vendor.id, netflix_product.id, 5, deadline=past)
        partial = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        cancelled = service.create_stock_request(admin, vendor.id, netflix_product.id, 5)
        upload_units(service, netflix_product, vendor, vendor_actor, partial["id"], 1, "a@example.com")
        service.cancel_stock_request(cancelled["id"], admin)
        
        counts = service.stock_request_counts(vendor_actor)
        
        assert counts["requested"] == 1
        assert counts["partially_fulfilled"] == 1
        assert counts["cancelled"] == 1
        assert counts["total"] == 3
        assert counts["overdue"] == 1
        assert service.get_stock_request(overdue["id"], admin)["is_overdue"] is True
