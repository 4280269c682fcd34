"""Decoded provider responses for token validation."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fleecapay.common.logging import mask_token


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


class ValidationResult(BaseModel):
    """What the provider says one payment token represents.

    Immutable once built; cached as JSON under the token cache key.
    """

    model_config = ConfigDict(frozen=True)

    token: str = Field(min_length=1)
    payment_amount: int
    routing_from: str = ""
    routing_to: str = ""
    is_sandbox: bool = False
    # Informational only; an expired token still completes payment.
    is_expired: bool = False
    auth_key: str

    @classmethod
    def from_provider(cls, payload: dict[str, Any]) -> "ValidationResult":
        """Map the provider's JSON body (`payment`, `sandbox`, `token_expired`) to our fields."""

        return cls(
            token=payload.get("token"),
            payment_amount=payload.get("payment"),
            routing_from=payload.get("routing_from") or "",
            routing_to=payload.get("routing_to") or "",
            is_sandbox=_flag(payload.get("sandbox")),
            is_expired=_flag(payload.get("token_expired")),
            auth_key=payload.get("auth_key"),
        )

    def summary(self) -> dict[str, Any]:
        """Log/admin-safe view: masked token, no auth key."""

        return {
            "token": mask_token(self.token),
            "payment_amount": self.payment_amount,
            "routing_from": self.routing_from,
            "routing_to": self.routing_to,
            "is_sandbox": self.is_sandbox,
            "is_expired": self.is_expired,
        }
