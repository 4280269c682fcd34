"""Payment gateway capability and its Fleeca Bank implementation."""

import secrets
from typing import Protocol

from fleecapay.common.config import GatewayConfig
from fleecapay.common.errors import REFUND_NOT_SUPPORTED
from fleecapay.common.state_machine import OrderStatus
from fleecapay.services.callback.endpoint import CallbackEndpoint, CallbackResponse
from fleecapay.services.reconciler.models import Order
from fleecapay.services.reconciler.schemas import CallbackSession
from fleecapay.services.reconciler.stores import LogSink, OrderStore, SessionBindingStore
from fleecapay.services.validation.provider import ProviderClient


class PaymentGateway(Protocol):
    """What the store needs from any redirect-and-callback payment provider."""

    def is_available(self) -> bool: ...

    def create_payment_redirect(self, order: Order, session: CallbackSession) -> str | None: ...

    def handle_callback(self, token: str, session: CallbackSession) -> CallbackResponse: ...


class FleecaGateway:
    """Fleeca Bank: redirect to the bank, reconcile the token it calls back with."""

    id = "fleeca"
    title = "Fleeca Bank"

    def __init__(
        self,
        config: GatewayConfig,
        provider: ProviderClient,
        orders: OrderStore,
        bindings: SessionBindingStore,
        log_sink: LogSink,
        endpoint: CallbackEndpoint,
        store_currency: str = "USD",
        supported_currency: str = "USD",
    ) -> None:
        self.config = config
        self.provider = provider
        self.orders = orders
        self.bindings = bindings
        self.log_sink = log_sink
        self.endpoint = endpoint
        self.store_currency = store_currency
        self.supported_currency = supported_currency

    def is_available(self) -> bool:
        return bool(self.config.enabled and self.config.api_key and self.store_currency == self.supported_currency)

    def create_payment_redirect(self, order: Order, session: CallbackSession) -> str | None:
        """Bind the session to `order`, mark it pending and return the bank URL.

        Raises ValueError when the order can no longer be paid (already paid or
        cancelled).
        """

        amount = int(order.total_amount)
        payment_url = self.provider.payment_url(amount)
        if not payment_url:
            self.log_sink.append(
                "fleeca", "Error", f"Failed to generate payment URL for order {order.id}", "error"
            )
            return None

        if order.status != OrderStatus.PENDING.value:
            if not self.orders.update_status(
                order.id,
                OrderStatus.PENDING.value,
                expected_current_status=order.status,
                note=None,
            ):
                raise ValueError(f"order {order.id} changed status before checkout")

        security_token = secrets.token_hex(16)
        self.orders.set_metadata(order.id, {"security_token": security_token})
        self.bindings.bind(session.session_id, order.id, security_token)
        self.orders.add_note(order.id, f"Customer redirected to Fleeca Bank for payment of {amount}.")
        self.log_sink.append(
            "fleeca",
            "Redirect",
            f"Redirecting customer to Fleeca Bank for order {order.id} (Amount: {amount})",
            "success",
            user_id=session.user_id,
        )
        return payment_url

    def handle_callback(self, token: str, session: CallbackSession) -> CallbackResponse:
        return self.endpoint.handle(token, session)

    def refund(self, order_id: int, amount: int | None = None, reason: str = "") -> None:
        raise NotImplementedError(REFUND_NOT_SUPPORTED)
