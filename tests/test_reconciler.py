"""Reconciliation state machine tests against an in-memory store and mocked bank."""

import pytest
from sqlalchemy.exc import OperationalError

from fleecapay.common.config import GatewayConfig
from fleecapay.common.errors import ErrorKind
from fleecapay.common.state_machine import OrderStatus
from fleecapay.services.reconciler.schemas import CallbackSession
from fleecapay.services.reconciler.service import PaymentReconciler, generate_transaction_id
from fleecapay.services.reconciler.stores import OrderStore
from fleecapay.services.validation.cache import TokenCache

from conftest import API_KEY


@pytest.fixture
def pending_order(orders, bindings):
    order = orders.create(total_amount=500, owner_user_id="42")
    bindings.bind("sess-1", order.id)
    return order


def session(user_id="42", session_id="sess-1"):
    return CallbackSession(session_id=session_id, user_id=user_id, remote_addr="10.0.0.1")


def test_matching_payment_settles_order(bank, reconciler, orders, bindings, pending_order):
    """Token abc123 for 500 against a pending 500 order marks it paid."""

    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.is_paid
    assert outcome.order.id == pending_order.id
    order = orders.get(pending_order.id)
    assert order.status == OrderStatus.PAID.value
    assert order.transaction_id.startswith("fleeca_abc123_")
    meta = orders.get_metadata(pending_order.id)
    assert meta["payment_token"] == "abc123"
    assert meta["payment_amount"] == "500"
    assert meta["routing_from"] == "A"
    assert meta["routing_to"] == "B"
    assert meta["transaction_id"] == order.transaction_id
    assert meta["is_sandbox"] == "no"
    assert "payment_time" in meta
    assert bindings.get("sess-1").consumed_at is not None


def test_completion_note_masks_token(bank, reconciler, orders, pending_order):
    """Order notes never carry the full token."""

    bank.token("abcdefghijkl", 500)

    reconciler.reconcile("abcdefghijkl", session())

    notes = orders.notes(pending_order.id)
    assert any("payment completed" in note for note in notes)
    assert all("abcdefghijkl" not in note for note in notes)


def test_repeated_callback_is_already_processed(bank, reconciler, orders, bindings, pending_order):
    """Delivering the same token twice on one session never pays twice."""

    bank.token("abc123", 500)
    first = reconciler.reconcile("abc123", session())
    transaction_id = orders.get(pending_order.id).transaction_id

    second = reconciler.reconcile("abc123", session())

    assert first.is_paid
    assert second.reason == ErrorKind.ALREADY_PROCESSED
    assert second.order.id == pending_order.id
    assert second.order.status == OrderStatus.PAID.value
    assert orders.get(pending_order.id).transaction_id == transaction_id
    assert sum("payment completed" in note for note in orders.notes(pending_order.id)) == 1


def test_rebound_session_replay_is_already_processed(bank, reconciler, orders, bindings, pending_order):
    """A paid order bound again to the session still refuses a second payment."""

    bank.token("abc123", 500)
    reconciler.reconcile("abc123", session())

    bindings.bind("sess-1", pending_order.id)
    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.ALREADY_PROCESSED
    assert bindings.get("sess-1").consumed_at is not None


def test_replay_after_hold_keeps_order_on_hold(bank, reconciler, orders, pending_order):
    """A second delivery for a held order changes nothing."""

    bank.token("abc123", 600)
    reconciler.reconcile("abc123", session())

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.ALREADY_PROCESSED
    assert orders.get(pending_order.id).status == OrderStatus.ON_HOLD.value


def test_amount_mismatch_puts_order_on_hold(bank, reconciler, orders, bindings, pending_order):
    """A 600 payment against a 500 order holds it for manual review."""

    bank.token("abc123", 600)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.AMOUNT_MISMATCH
    order = orders.get(pending_order.id)
    assert order.status == OrderStatus.ON_HOLD.value
    assert order.transaction_id is None
    assert "payment_token" not in orders.get_metadata(pending_order.id)
    assert any("500" in note and "600" in note for note in orders.notes(pending_order.id))
    assert bindings.get("sess-1").consumed_at is not None


def test_unknown_token_leaves_order_untouched(bank, reconciler, orders, bindings, pending_order):
    """A 404 from the bank rejects the callback and changes nothing."""

    bank.status("deadtoken", 404)

    outcome = reconciler.reconcile("deadtoken", session())

    assert outcome.reason == ErrorKind.TOKEN_NOT_FOUND
    assert outcome.order is None
    assert orders.get(pending_order.id).status == OrderStatus.PENDING.value
    assert bindings.get("sess-1").consumed_at is None


def test_transport_failure_leaves_order_pending(bank, reconciler, orders, pending_order):
    """A network failure decides nothing; the customer may retry."""

    import httpx

    bank.fail_with = httpx.ConnectError("down")

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.TRANSPORT_ERROR
    assert orders.get(pending_order.id).status == OrderStatus.PENDING.value


def test_other_users_session_rejected(bank, reconciler, orders, pending_order):
    """A logged-in user cannot settle someone else's order."""

    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session(user_id="7"))

    assert outcome.reason == ErrorKind.OWNERSHIP_MISMATCH
    assert orders.get(pending_order.id).status == OrderStatus.PENDING.value


def test_guest_session_can_settle(bank, reconciler, orders, pending_order):
    """Without a logged-in user the binding alone identifies the order."""

    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session(user_id=None))

    assert outcome.is_paid


def test_security_token_mismatch_rejected(bank, reconciler, orders, bindings):
    """A binding whose checkout token differs from the order's is refused."""

    order = orders.create(total_amount=500, owner_user_id="42")
    orders.set_metadata(order.id, {"security_token": "expected"})
    bindings.bind("sess-1", order.id, security_token="forged")
    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.OWNERSHIP_MISMATCH
    assert orders.get(order.id).status == OrderStatus.PENDING.value


def test_missing_binding_is_order_not_found(bank, reconciler):
    """A session that never went through checkout has no order."""

    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session(session_id="unknown"))

    assert outcome.reason == ErrorKind.ORDER_NOT_FOUND


def test_binding_to_deleted_order_is_cleared(bank, reconciler, bindings):
    """A binding pointing at a missing order is dropped."""

    bindings.bind("sess-1", 9999)
    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.ORDER_NOT_FOUND
    assert bindings.get("sess-1") is None


def test_cancelled_order_is_already_processed(bank, reconciler, orders, pending_order):
    """Only pending orders can be settled."""

    assert orders.update_status(pending_order.id, OrderStatus.CANCELLED.value)
    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.ALREADY_PROCESSED
    assert orders.get(pending_order.id).status == OrderStatus.CANCELLED.value


class StaleOrderStore(OrderStore):
    """Returns the order as it looked before a concurrent writer settled it."""

    def __init__(self, session_factory, stale) -> None:
        super().__init__(session_factory)
        self.stale = stale

    def get(self, order_id):
        if self.stale is not None and order_id == self.stale.id:
            stale, self.stale = self.stale, None
            return stale
        return super().get(order_id)


def test_concurrent_settlement_only_one_wins(
    bank, reconciler, validator, orders, bindings, log_sink, config, session_factory, pending_order
):
    """A callback that read `pending` before another one paid loses the CAS."""

    stale = orders.get(pending_order.id)
    bank.token("abc123", 500)
    assert reconciler.reconcile("abc123", session()).is_paid
    transaction_id = orders.get(pending_order.id).transaction_id

    bindings.bind("sess-2", pending_order.id)
    loser = PaymentReconciler(validator, StaleOrderStore(session_factory, stale), bindings, log_sink, config)
    outcome = loser.reconcile("abc123", session(session_id="sess-2"))

    assert outcome.reason == ErrorKind.ALREADY_PROCESSED
    assert outcome.order.status == OrderStatus.PAID.value
    assert orders.get(pending_order.id).transaction_id == transaction_id


def test_mark_paid_is_single_shot(orders, pending_order):
    """The finalize write succeeds once per order."""

    assert orders.mark_paid(pending_order.id, "tx-1", {"payment_token": "a"}, ["first"]) is True
    assert orders.mark_paid(pending_order.id, "tx-2", {"payment_token": "b"}, ["second"]) is False
    assert orders.get(pending_order.id).transaction_id == "tx-1"
    assert orders.get_metadata(pending_order.id)["payment_token"] == "a"
    assert "second" not in orders.notes(pending_order.id)


def test_sandbox_payment_noted(bank, reconciler, orders, pending_order):
    """Sandbox tokens complete payment with an extra note."""

    bank.token("abc123", 500, sandbox=True)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.is_paid
    assert orders.get_metadata(pending_order.id)["is_sandbox"] == "yes"
    assert any("sandbox" in note for note in orders.notes(pending_order.id))


def test_expired_token_still_settles(bank, reconciler, pending_order):
    """`token_expired` does not block payment."""

    bank.token("abc123", 500, token_expired=True)

    assert reconciler.reconcile("abc123", session()).is_paid


def test_callback_always_asks_the_bank(bank, reconciler, validator, pending_order):
    """The money decision uses a fresh answer, never a cached one."""

    bank.token("abc123", 600)
    validator.validate("abc123")
    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.is_paid
    assert len(bank.requests) == 2


def test_paid_token_evicted_from_cache(bank, reconciler, cache, pending_order):
    """After settlement the token is no longer served from cache."""

    bank.token("abc123", 500)

    reconciler.reconcile("abc123", session())

    assert cache.get(TokenCache.cache_key("abc123", False)) is None
    assert cache.get(TokenCache.cache_key("abc123", True)) is None


def test_deadline_exceeded(bank, validator, orders, bindings, log_sink, config, clock, pending_order):
    """A slow validation aborts before any order write."""

    class SlowValidator:
        def validate(self, token, strict=False, bypass_cache=False):
            clock.advance(30)
            return validator.validate(token, strict=strict, bypass_cache=bypass_cache)

        def invalidate(self, token):
            validator.invalidate(token)

    bank.token("abc123", 500)
    reconciler = PaymentReconciler(
        SlowValidator(), orders, bindings, log_sink, config, deadline_seconds=20, clock=clock
    )

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.DEADLINE_EXCEEDED
    assert orders.get(pending_order.id).status == OrderStatus.PENDING.value


def test_debug_mode_logs_token_info(bank, validator, orders, bindings, log_sink, pending_order):
    """Debug mode writes a masked token summary to the gateway log."""

    config = GatewayConfig(enabled=True, api_key=API_KEY, debug_mode=True)
    reconciler = PaymentReconciler(validator, orders, bindings, log_sink, config)
    bank.token("abcdefghijkl", 500)

    reconciler.reconcile("abcdefghijkl", session())

    debug = [entry for entry in log_sink.recent(module="fleeca") if entry.event_type == "Debug"]
    assert len(debug) == 1
    assert "abcdef..." in debug[0].message
    assert "abcdefghijkl" not in debug[0].message
    assert "auth_key" not in debug[0].message


def test_failing_hook_does_not_undo_payment(bank, validator, orders, bindings, log_sink, config, pending_order):
    """Post-payment hooks run after commit; their failures are only logged."""

    seen = []

    def broken(order, result):
        raise RuntimeError("mailer down")

    def recorder(order, result):
        seen.append((order.id, order.status, result.payment_amount))

    reconciler = PaymentReconciler(validator, orders, bindings, log_sink, config, on_paid=[broken, recorder])
    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.is_paid
    assert seen == [(pending_order.id, OrderStatus.PAID.value, 500)]


def test_transaction_id_shape():
    """Transaction ids carry the token prefix and are unique."""

    first = generate_transaction_id("abcdefghijklmnop")
    second = generate_transaction_id("abcdefghijklmnop")

    assert first.startswith("fleeca_abcdefghij_")
    assert first != second


class FailingOrderStore(OrderStore):
    """Order store whose finalize write hits a database failure."""

    def mark_paid(self, *args, **kwargs):
        raise OperationalError("UPDATE orders", {}, Exception("database is locked"))


def test_store_failure_is_classified(bank, validator, bindings, log_sink, config, session_factory, pending_order):
    """A database failure becomes a rejected outcome and the order stays pending."""

    orders = FailingOrderStore(session_factory)
    reconciler = PaymentReconciler(validator, orders, bindings, log_sink, config)
    bank.token("abc123", 500)

    outcome = reconciler.reconcile("abc123", session())

    assert outcome.reason == ErrorKind.STORE_ERROR
    assert "OperationalError" in outcome.detail
    assert "abc123" not in outcome.detail
    assert orders.get(pending_order.id).status == OrderStatus.PENDING.value
    assert bindings.get("sess-1").consumed_at is None


def test_validation_diagnostics_kept_on_outcome(bank, reconciler, pending_order):
    """Provider status code and masked body travel with the rejection."""

    bank.status("abc123xyz", 503, "maintenance for abc123xyz")

    outcome = reconciler.reconcile("abc123xyz", session())

    assert outcome.reason == ErrorKind.UNEXPECTED_STATUS
    assert outcome.context["code"] == 503
    assert outcome.context["body"] == "maintenance for abc123..."
