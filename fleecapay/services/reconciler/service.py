"""Payment reconciliation state machine.

Per callback: token validated -> order located -> ownership checked -> amount
verified -> finalized, with an early exit to `Rejected(reason)` at any step.
A settled checkout marks its session binding consumed, so a repeated delivery
resolves to `AlreadyProcessed`; the order-status guard keeps concurrent
deliveries from settling twice.
"""

import hmac
import secrets
import time
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from fleecapay.common.config import GatewayConfig
from fleecapay.common.errors import DeadlineExceeded, ErrorKind, PaymentError
from fleecapay.common.logging import logger, mask_token, order_id_ctx
from fleecapay.common.state_machine import OrderStatus
from fleecapay.common.tracing import tracer
from fleecapay.services.reconciler.models import Order
from fleecapay.services.reconciler.schemas import CallbackSession, Outcome
from fleecapay.services.reconciler.stores import LogSink, OrderStore, SessionBindingStore
from fleecapay.services.validation.schemas import ValidationResult
from fleecapay.services.validation.service import TokenValidator


PaidHook = Callable[[Order, ValidationResult], None]


def generate_transaction_id(token: str) -> str:
    """Receipt label: token prefix, unix time and a random suffix."""

    return f"fleeca_{token[:10]}_{int(time.time())}_{secrets.token_hex(3)}"


def payment_metadata(result: ValidationResult, transaction_id: str) -> dict[str, str]:
    return {
        "payment_token": result.token,
        "routing_from": result.routing_from,
        "routing_to": result.routing_to,
        "payment_amount": str(result.payment_amount),
        "payment_time": datetime.now(timezone.utc).isoformat(),
        "transaction_id": transaction_id,
        "is_sandbox": "yes" if result.is_sandbox else "no",
    }


class PaymentReconciler:
    """Binds a validated token to the session's pending order and settles it once."""

    def __init__(
        self,
        validator: TokenValidator,
        orders: OrderStore,
        bindings: SessionBindingStore,
        log_sink: LogSink,
        config: GatewayConfig,
        deadline_seconds: float = 20.0,
        on_paid: list[PaidHook] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.validator = validator
        self.orders = orders
        self.bindings = bindings
        self.log_sink = log_sink
        self.config = config
        self.deadline_seconds = deadline_seconds
        self.on_paid = list(on_paid or [])
        self.clock = clock

    def reconcile(self, token: str, session: CallbackSession) -> Outcome:
        """Run the full chain for one callback delivery. Never raises `PaymentError`."""

        started = self.clock()
        ctx_token = order_id_ctx.set("")
        try:
            with tracer.start_as_current_span("fleeca.reconcile"):
                return self._reconcile(token, session, started)
        except SQLAlchemyError as exc:
            # The finalize write is atomic, so a failed store call leaves the order as it was.
            logger.exception("reconcile_store_failed token=%s error=%s", mask_token(token), exc.__class__.__name__)
            return Outcome.rejected(
                ErrorKind.STORE_ERROR,
                detail=f"Order store failure during reconciliation for token {mask_token(token)}: {exc.__class__.__name__}",
            )
        finally:
            order_id_ctx.reset(ctx_token)

    def _reconcile(self, token: str, session: CallbackSession, started: float) -> Outcome:
        masked = mask_token(token)

        # A fresh provider answer for the money decision, never a cached one.
        try:
            result = self.validator.validate(token, strict=False, bypass_cache=True)
            if self.clock() - started > self.deadline_seconds:
                raise DeadlineExceeded(f"Reconciliation deadline of {self.deadline_seconds}s exceeded")
        except PaymentError as exc:
            return Outcome.rejected(
                exc.kind,
                detail=f"Token validation failed with code '{exc.kind.value}' for token {masked}: {exc.message}",
                context=exc.data,
            )
        self._debug_token_info(result, session)

        binding = self.bindings.get(session.session_id)
        if binding is None:
            return Outcome.rejected(
                ErrorKind.ORDER_NOT_FOUND,
                detail=f"No order ID found in session for token {masked}",
            )

        order = self.orders.get(binding.order_id)
        if order is None:
            self.bindings.clear(session.session_id)
            return Outcome.rejected(ErrorKind.ORDER_NOT_FOUND, detail=f"Invalid order ID: {binding.order_id}")
        order_id_ctx.set(str(order.id))

        if binding.consumed_at is not None:
            return Outcome.rejected(
                ErrorKind.ALREADY_PROCESSED,
                order,
                detail=f"Repeated callback for settled checkout of order {order.id} (status: {order.status})",
            )

        if order.status != OrderStatus.PENDING.value:
            self.bindings.consume(session.session_id)
            return Outcome.rejected(
                ErrorKind.ALREADY_PROCESSED,
                order,
                detail=f"Callback for non-pending order {order.id} (status: {order.status})",
            )

        if order.owner_user_id and session.user_id and str(session.user_id) != order.owner_user_id:
            return Outcome.rejected(
                ErrorKind.OWNERSHIP_MISMATCH,
                order,
                detail=f"User {session.user_id} attempted to process order {order.id} owned by another user",
            )
        if binding.security_token:
            stored = self.orders.get_metadata(order.id).get("security_token")
            if stored and not hmac.compare_digest(stored, binding.security_token):
                return Outcome.rejected(
                    ErrorKind.OWNERSHIP_MISMATCH,
                    order,
                    detail=f"Security token mismatch for order {order.id}",
                )

        order_amount = int(order.total_amount)
        if order_amount != result.payment_amount:
            return self._hold_for_amount_mismatch(order, order_amount, result, session)

        return self._finalize(order, token, result, session)

    def _hold_for_amount_mismatch(
        self, order: Order, order_amount: int, result: ValidationResult, session: CallbackSession
    ) -> Outcome:
        held = self.orders.update_status(
            order.id,
            OrderStatus.ON_HOLD.value,
            expected_current_status=OrderStatus.PENDING.value,
            note=(
                f"Fleeca Bank payment amount mismatch (order total: {order_amount}, "
                f"paid: {result.payment_amount}). Manual verification required."
            ),
        )
        self.bindings.consume(session.session_id)
        current = self.orders.get(order.id) or order
        if not held:
            return Outcome.rejected(
                ErrorKind.ALREADY_PROCESSED,
                current,
                detail=f"Order {order.id} changed status during reconciliation (status: {current.status})",
            )
        return Outcome.rejected(
            ErrorKind.AMOUNT_MISMATCH,
            current,
            detail=(
                f"Payment amount mismatch for order {order.id}: order amount {order_amount} "
                f"doesn't match token amount {result.payment_amount}"
            ),
        )

    def _finalize(self, order: Order, token: str, result: ValidationResult, session: CallbackSession) -> Outcome:
        transaction_id = generate_transaction_id(token)
        notes = [
            (
                f"Fleeca Bank payment completed (Amount: {result.payment_amount}, From: {result.routing_from or 'unknown'}, "
                f"To: {result.routing_to or 'unknown'}, Token: {mask_token(token)}, Transaction ID: {transaction_id})"
            )
        ]
        if result.is_sandbox:
            notes.append("This was a Fleeca Bank sandbox payment (test mode).")

        won = self.orders.mark_paid(order.id, transaction_id, payment_metadata(result, transaction_id), notes)
        if not won:
            self.bindings.consume(session.session_id)
            current = self.orders.get(order.id) or order
            return Outcome.rejected(
                ErrorKind.ALREADY_PROCESSED,
                current,
                detail=f"Order {order.id} was settled by a concurrent callback (status: {current.status})",
            )

        self.bindings.consume(session.session_id)
        # A consumed token must not satisfy another lookup.
        self.validator.invalidate(token)

        paid = self.orders.get(order.id) or order
        for hook in self.on_paid:
            try:
                hook(paid, result)
            except Exception as exc:
                logger.exception("payment_complete_hook_failed order_id=%s error=%s", order.id, exc)
        return Outcome.paid(
            paid,
            detail=(
                f"Order #{order.id} payment completed with token {mask_token(token)} "
                f"for {result.payment_amount} (transaction {transaction_id})"
            ),
        )

    def _debug_token_info(self, result: ValidationResult, session: CallbackSession) -> None:
        if result.is_expired:
            logger.warning("token_expired_accepted token=%s", mask_token(result.token))
        if not self.config.debug_mode:
            return
        self.log_sink.append(
            "fleeca",
            "Debug",
            "Token info: " + ", ".join(f"{key}={value}" for key, value in result.summary().items()),
            "success",
            user_id=session.user_id,
        )
