"""Order status state machine.

Pure validation of status transitions. Nothing here touches storage: the
order service and the fulfillment orchestrator consult these functions
before persisting a change, and the accepted transition is what gets
appended to the order's status history.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from shared.errors import InvalidStatusTransition

from .models import OrderStatus

StatusLike = Union[OrderStatus, str]

VALID_TRANSITIONS: Dict[OrderStatus, Tuple[OrderStatus, ...]] = {
    OrderStatus.PENDING: (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
    OrderStatus.PENDING_INVENTORY: (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
    OrderStatus.COMPLETED: (OrderStatus.REFUNDED,),
    OrderStatus.CANCELLED: (OrderStatus.PENDING,),
    OrderStatus.REFUNDED: (),
}

# Orders are born by a transition out of the implicit PENDING state
INITIAL_FROM_STATUS = OrderStatus.PENDING
INITIAL_STATUSES: Tuple[OrderStatus, ...] = (OrderStatus.COMPLETED, OrderStatus.PENDING_INVENTORY)

BUSINESS_RULE_MESSAGES: Dict[Tuple[OrderStatus, OrderStatus], str] = {
    (OrderStatus.COMPLETED, OrderStatus.CANCELLED): "Cannot cancel an order that has already been completed",
    (OrderStatus.REFUNDED, OrderStatus.COMPLETED): "Cannot mark a refunded order as completed",
    (OrderStatus.REFUNDED, OrderStatus.CANCELLED): "Cannot cancel an order that has already been refunded",
    (OrderStatus.CANCELLED, OrderStatus.REFUNDED): "Cannot refund an order that was never completed",
    (OrderStatus.CANCELLED, OrderStatus.COMPLETED): "A cancelled order must be reactivated to pending status first",
    (OrderStatus.PENDING, OrderStatus.REFUNDED): "Can only refund completed orders",
}


@dataclass(frozen=True)
class StatusTransition:
    """A requested status change plus caller metadata carried through validation."""
    from_status: StatusLike
    to_status: StatusLike
    actor: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RejectedTransition:
    transition: StatusTransition
    error: str


@dataclass
class BulkValidation:
    valid: List[StatusTransition] = field(default_factory=list)
    invalid: List[RejectedTransition] = field(default_factory=list)


def _coerce(status: StatusLike) -> Optional[OrderStatus]:
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def _label(status: StatusLike) -> str:
    return status.value if isinstance(status, OrderStatus) else str(status)


def get_valid_next_statuses(status: StatusLike) -> List[OrderStatus]:
    current = _coerce(status)
    if current is None:
        return []
    return list(VALID_TRANSITIONS[current])


def is_valid_transition(from_status: StatusLike, to_status: StatusLike) -> bool:
    source, target = _coerce(from_status), _coerce(to_status)
    if source is None or target is None or source == target:
        return False
    return target in VALID_TRANSITIONS[source]


def get_transition_error_message(from_status: StatusLike, to_status: StatusLike) -> str:
    """Human-readable reason a transition is rejected."""
    source, target = _coerce(from_status), _coerce(to_status)

    if source is None:
        return f"Unknown order status '{_label(from_status)}'"
    if target is None:
        return f"Unknown order status '{_label(to_status)}'"

    rule = BUSINESS_RULE_MESSAGES.get((source, target))
    if rule:
        return rule

    valid_statuses = VALID_TRANSITIONS[source]
    if not valid_statuses:
        return f"Order status '{source.value}' is final and cannot be changed"

    return (
        f"Invalid status transition from '{source.value}' to '{target.value}'. "
        f"Valid transitions: {', '.join(s.value for s in valid_statuses)}"
    )


def validate_transition(from_status: StatusLike, to_status: StatusLike) -> None:
    """Raise ``InvalidStatusTransition`` unless the transition is allowed."""
    if not is_valid_transition(from_status, to_status):
        raise InvalidStatusTransition(
            get_transition_error_message(from_status, to_status),
            from_status=_label(from_status),
            to_status=_label(to_status),
        )


def validate_initial_status(status: StatusLike) -> OrderStatus:
    """Check the status a new order is created in."""
    target = _coerce(status)
    if target not in INITIAL_STATUSES:
        raise InvalidStatusTransition(
            f"Orders cannot be created in status '{_label(status)}'. "
            f"Valid initial statuses: {', '.join(s.value for s in INITIAL_STATUSES)}",
            from_status=INITIAL_FROM_STATUS.value,
            to_status=_label(status),
        )
    return target


def validate_bulk_transitions(transitions: List[StatusTransition]) -> BulkValidation:
    """Split a batch into valid and invalid transitions, keeping input order in each."""
    result = BulkValidation()
    for transition in transitions:
        if is_valid_transition(transition.from_status, transition.to_status):
            result.valid.append(transition)
        else:
            result.invalid.append(
                RejectedTransition(
                    transition=transition,
                    error=get_transition_error_message(transition.from_status, transition.to_status),
                )
            )
    return result
