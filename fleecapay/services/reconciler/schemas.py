"""Request context and outcome types for reconciliation."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from fleecapay.common.errors import PAYMENT_SUCCESS_MESSAGE, ErrorKind, user_message


class CallbackSession(BaseModel):
    """Identity of the request that delivered a callback."""

    session_id: str = ""
    user_id: str | None = None
    remote_addr: str | None = None


class OrderSnapshot(BaseModel):
    """Read-only copy of the order fields the outcome exposes."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    status: str
    total_amount: int
    owner_user_id: str | None = None
    transaction_id: str | None = None


class Outcome(BaseModel):
    """Classified result of one reconciliation: paid, or rejected with a reason."""

    result: Literal["paid", "rejected"]
    reason: ErrorKind | None = None
    order: OrderSnapshot | None = None
    detail: str = ""
    # Diagnostics for the gateway log, e.g. the provider status code and masked body.
    context: dict[str, Any] = {}

    @classmethod
    def paid(cls, order, detail: str = "") -> "Outcome":
        return cls(result="paid", order=OrderSnapshot.model_validate(order), detail=detail)

    @classmethod
    def rejected(cls, reason: ErrorKind, order=None, detail: str = "", context: dict[str, Any] | None = None) -> "Outcome":
        snapshot = OrderSnapshot.model_validate(order) if order is not None else None
        return cls(result="rejected", reason=reason, order=snapshot, detail=detail, context=context or {})

    @property
    def is_paid(self) -> bool:
        return self.result == "paid"

    @property
    def user_message(self) -> str:
        if self.is_paid:
            return PAYMENT_SUCCESS_MESSAGE
        return user_message(self.reason)
