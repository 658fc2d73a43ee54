"""
Notification dispatcher for stock request and credential review events.

Delivery is best-effort: events are dispatched after the unit of work has
committed, and a failing handler is logged without affecting saved state.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from credential_fulfillment.core.models import ActorRole
from credential_fulfillment.utils.logger import get_logger

logger = get_logger(__name__)

# Event types
STOCK_REQUEST_CREATED = "stock_request_created"
STOCK_REQUEST_CANCELLED = "stock_request_cancelled"
STOCK_REQUEST_DECLINED = "stock_request_declined"
CREDENTIALS_UPLOADED = "credentials_uploaded"
STOCK_REQUEST_FULFILLED = "stock_request_fulfilled"
BATCH_APPROVED = "batch_approved"
BATCH_REJECTED = "batch_rejected"


@dataclass
class NotificationEvent:
    """Something a vendor or the administrator should hear about."""
    
    event_type: str
    recipient_role: ActorRole
    recipient_id: Optional[uuid.UUID]
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "recipient_role": self.recipient_role.value,
            "recipient_id": str(self.recipient_id) if self.recipient_id else None,
            "timestamp": self.created_at.isoformat(),
            "data": self.data,
        }


NotificationHandler = Callable[[NotificationEvent], None]


def log_notification(event: NotificationEvent) -> None:
    """Default handler: record the event in the application log."""
    logger.info(
        f"Notification {event.event_type} -> {event.recipient_role.value} "
        f"{event.recipient_id or ''}".rstrip()
    )


class NotificationDispatcher:
    """Fans events out to registered handlers."""
    
    def __init__(self, handlers: Optional[List[NotificationHandler]] = None):
        self.handlers: List[NotificationHandler] = list(handlers) if handlers is not None else [log_notification]
    
    def dispatch(self, event: NotificationEvent) -> bool:
        """
        Deliver an event to every handler.
        
        Returns:
            bool: True if at least one handler succeeded
        """
        delivered = 0
        for handler in self.handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Notification handler {getattr(handler, '__name__', handler)!s} "
                    f"failed for {event.event_type}: {e}",
                    exc_info=True,
                )
        return delivered > 0
    
    def dispatch_all(self, events: List[NotificationEvent]) -> int:
        return sum(1 for event in events if self.dispatch(event))
