"""
Unit tests for the notification dispatcher
"""
import uuid
from unittest.mock import MagicMock

from credential_fulfillment.core.models import ActorRole
from credential_fulfillment.services.notifications import (
    BATCH_APPROVED,
    NotificationDispatcher,
    NotificationEvent,
    log_notification,
)


def make_event():
    return NotificationEvent(BATCH_APPROVED, ActorRole.VENDOR, uuid.uuid4(), {"stock_added": 2})


class TestNotificationDispatcher:
    """Test fan-out to handlers"""
    
    def test_default_handler_logs(self):
        dispatcher = NotificationDispatcher()
        assert dispatcher.handlers == [log_notification]
        assert dispatcher.dispatch(make_event()) is True
    
    def test_failing_handler_does_not_block_others(self):
        broken = MagicMock(side_effect=RuntimeError("smtp down"))
        broken.__name__ = "broken"
        healthy = MagicMock()
        dispatcher = NotificationDispatcher(handlers=[broken, healthy])
        event = make_event()
        
        assert dispatcher.dispatch(event) is True
        healthy.assert_called_once_with(event)
    
    def test_all_handlers_failing(self):
        broken = MagicMock(side_effect=RuntimeError("smtp down"))
        broken.__name__ = "broken"
        dispatcher = NotificationDispatcher(handlers=[broken])
        
        assert dispatcher.dispatch(make_event()) is False
    
    def test_dispatch_all_counts_delivered_events(self):
        handler = MagicMock(side_effect=[None, RuntimeError("down")])
        handler.__name__ = "flaky"
        dispatcher = NotificationDispatcher(handlers=[handler])
        
        assert dispatcher.dispatch_all([make_event(), make_event()]) == 1
        assert handler.call_count == 2
    
    def test_event_serialization(self):
        event = make_event()
        data = event.to_dict()
        
        assert data["event_type"] == "batch_approved"
        assert data["recipient_role"] == "vendor"
        assert data["recipient_id"] == str(event.recipient_id)
        assert data["data"] == {"stock_added": 2}
