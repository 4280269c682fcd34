"""Order status transitions the payment gateway is allowed to apply."""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    ON_HOLD = "on_hold"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "on_hold", "cancelled", "failed"},
    "on_hold": {"paid", "cancelled", "failed"},
    "failed": {"pending", "cancelled"},
    "paid": set(),
    "cancelled": set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if current == new and current == OrderStatus.PENDING.value:
        # Re-entering checkout for an order that is still awaiting payment.
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
