"""
Pure fulfillment rules for admin stock requests.

Status is a function of (quantity_fulfilled, quantity_requested) except for
the absorbing cancelled/rejected states. The persistence layer applies these
rules inside guarded UPDATE statements; this module is the reference for
what those statements compute.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from credential_fulfillment.core.models import (
    CLOSED_REQUEST_STATUSES,
    RequestStatus,
)
from credential_fulfillment.utils.exceptions import StateConflictError


ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.REQUESTED: frozenset({
        RequestStatus.PARTIALLY_FULFILLED,
        RequestStatus.FULFILLED,
        RequestStatus.CANCELLED,
        RequestStatus.REJECTED,
    }),
    RequestStatus.PARTIALLY_FULFILLED: frozenset({
        RequestStatus.PARTIALLY_FULFILLED,
        RequestStatus.FULFILLED,
        RequestStatus.REQUESTED,  # admin batch rejection
        RequestStatus.CANCELLED,
        RequestStatus.REJECTED,
    }),
    # Only admin batch rejection reopens a fulfilled request
    RequestStatus.FULFILLED: frozenset({
        RequestStatus.PARTIALLY_FULFILLED,
        RequestStatus.REQUESTED,
    }),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
}


@dataclass(frozen=True)
class FulfillmentChange:
    """Quantities and status before and after one fulfillment event."""
    
    previous_fulfilled: int
    quantity_fulfilled: int
    quantity_requested: int
    previous_status: RequestStatus
    status: RequestStatus
    applied_units: int
    overflow_units: int = 0


def derive_status(quantity_fulfilled: int, quantity_requested: int,
                  closed_status: Optional[RequestStatus] = None) -> RequestStatus:
    """
    Compute the status implied by a quantity pair.
    
    Args:
        quantity_fulfilled: Units delivered so far
        quantity_requested: Units asked for
        closed_status: Absorbing status (cancelled/rejected) that wins if set
    """
    if closed_status is not None:
        return closed_status
    if quantity_fulfilled >= quantity_requested:
        return RequestStatus.FULFILLED
    if quantity_fulfilled > 0:
        return RequestStatus.PARTIALLY_FULFILLED
    return RequestStatus.REQUESTED


def ensure_transition(current: RequestStatus, target: RequestStatus, request_id=None) -> None:
    """Raise StateConflictError if ``current -> target`` is not a legal move."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise StateConflictError(
            f"Cannot move stock request from {current.value} to {target.value}",
            entity="stock_request",
            entity_id=request_id,
            current_state=current.value,
        )


def ensure_accepts_uploads(status: RequestStatus, request_id=None) -> None:
    """Uploads are accepted only while the request is open."""
    if status == RequestStatus.FULFILLED:
        raise StateConflictError(
            "Stock request is already fully fulfilled",
            entity="stock_request",
            entity_id=request_id,
            current_state=status.value,
        )
    if status in CLOSED_REQUEST_STATUSES:
        raise StateConflictError(
            f"Stock request is {status.value} and no longer accepts credentials",
            entity="stock_request",
            entity_id=request_id,
            current_state=status.value,
        )


def apply_upload(status: RequestStatus, quantity_fulfilled: int,
                 quantity_requested: int, units: int, request_id=None) -> FulfillmentChange:
    """
    Add uploaded units to a request, capping at the requested quantity.
    
    Units beyond the requested quantity are reported as overflow and not
    counted toward fulfillment.
    """
    ensure_accepts_uploads(status, request_id)
    if units <= 0:
        raise ValueError("Uploaded units must be positive")
    
    new_fulfilled = min(quantity_fulfilled + units, quantity_requested)
    new_status = derive_status(new_fulfilled, quantity_requested)
    ensure_transition(status, new_status, request_id)
    
    return FulfillmentChange(
        previous_fulfilled=quantity_fulfilled,
        quantity_fulfilled=new_fulfilled,
        quantity_requested=quantity_requested,
        previous_status=status,
        status=new_status,
        applied_units=new_fulfilled - quantity_fulfilled,
        overflow_units=quantity_fulfilled + units - new_fulfilled,
    )


def apply_reversal(status: RequestStatus, quantity_fulfilled: int,
                   quantity_requested: int, units: int) -> FulfillmentChange:
    """
    Subtract a rejected batch's units from a request, floored at zero.
    
    Cancelled and rejected requests keep their status; only the quantity moves.
    """
    new_fulfilled = max(quantity_fulfilled - max(units, 0), 0)
    closed = status if status in CLOSED_REQUEST_STATUSES else None
    new_status = derive_status(new_fulfilled, quantity_requested, closed)
    
    return FulfillmentChange(
        previous_fulfilled=quantity_fulfilled,
        quantity_fulfilled=new_fulfilled,
        quantity_requested=quantity_requested,
        previous_status=status,
        status=new_status,
        applied_units=new_fulfilled - quantity_fulfilled,
    )
