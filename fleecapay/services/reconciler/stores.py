"""SQL-backed collaborators of the reconciler: orders, bindings, gateway log."""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from fleecapay.common.logging import logger
from fleecapay.common.state_machine import OrderStatus, validate_transition
from fleecapay.services.reconciler.models import CheckoutBinding, GatewayLog, Order, OrderMeta, OrderNote


def _upsert_meta(db, order_id: int, values: dict[str, Any]) -> None:
    existing = {
        row.meta_key: row
        for row in db.execute(
            select(OrderMeta).where(OrderMeta.order_id == order_id, OrderMeta.meta_key.in_(list(values)))
        ).scalars()
    }
    for key, value in values.items():
        text = "" if value is None else str(value)
        if key in existing:
            existing[key].meta_value = text
        else:
            db.add(OrderMeta(order_id=order_id, meta_key=key, meta_value=text))


class OrderStore:
    """Order reads and guarded status writes.

    Every status write is a single `UPDATE ... WHERE status = <expected>`; a
    rowcount other than 1 means another writer got there first.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create(self, total_amount: int, owner_user_id: str | None = None, currency: str = "USD") -> Order:
        with self.session_factory() as db:
            order = Order(
                total_amount=total_amount,
                owner_user_id=owner_user_id,
                currency=currency,
                status=OrderStatus.PENDING.value,
            )
            db.add(order)
            db.commit()
            return order

    def get(self, order_id: int) -> Order | None:
        with self.session_factory() as db:
            return db.get(Order, order_id)

    def update_status(
        self,
        order_id: int,
        new_status: str,
        expected_current_status: str | None = None,
        note: str | None = None,
    ) -> bool:
        """Move an order to `new_status` if it is still in the expected status."""

        new_status = OrderStatus(new_status).value
        with self.session_factory() as db:
            current = expected_current_status
            if current is None:
                order = db.get(Order, order_id)
                if order is None:
                    return False
                current = order.status
            current = OrderStatus(current).value
            validate_transition(current, new_status)
            result = db.execute(
                update(Order).where(Order.id == order_id, Order.status == current).values(status=new_status)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            if note:
                db.add(OrderNote(order_id=order_id, note=note))
            db.commit()
            return True

    def mark_paid(
        self,
        order_id: int,
        transaction_id: str,
        metadata: dict[str, Any] | None = None,
        notes: list[str] | tuple[str, ...] = (),
    ) -> bool:
        """Finalize a pending order in one transaction.

        Status, transaction id, payment metadata and notes are written together
        only when the order is still `pending`; otherwise nothing is written.
        """

        validate_transition(OrderStatus.PENDING.value, OrderStatus.PAID.value)
        with self.session_factory() as db:
            result = db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.PAID.value, transaction_id=transaction_id)
            )
            if result.rowcount != 1:
                db.rollback()
                return False
            if metadata:
                _upsert_meta(db, order_id, metadata)
            for note in notes:
                db.add(OrderNote(order_id=order_id, note=note))
            db.commit()
            return True

    def set_metadata(self, order_id: int, values: dict[str, Any]) -> None:
        with self.session_factory() as db:
            _upsert_meta(db, order_id, values)
            db.commit()

    def get_metadata(self, order_id: int) -> dict[str, str]:
        with self.session_factory() as db:
            rows = db.execute(select(OrderMeta).where(OrderMeta.order_id == order_id)).scalars()
            return {row.meta_key: row.meta_value for row in rows}

    def add_note(self, order_id: int, text: str, is_customer_note: bool = False) -> None:
        with self.session_factory() as db:
            db.add(OrderNote(order_id=order_id, note=text, is_customer_note=is_customer_note))
            db.commit()

    def notes(self, order_id: int) -> list[str]:
        with self.session_factory() as db:
            rows = db.execute(
                select(OrderNote).where(OrderNote.order_id == order_id).order_by(OrderNote.id)
            ).scalars()
            return [row.note for row in rows]


class SessionBindingStore:
    """Checkout session -> order bindings.

    A settled checkout is marked consumed rather than deleted, so a repeated
    callback on the same session still finds its order.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def bind(self, session_id: str, order_id: int, security_token: str | None = None) -> None:
        with self.session_factory() as db:
            binding = db.get(CheckoutBinding, session_id)
            if binding is None:
                db.add(CheckoutBinding(session_id=session_id, order_id=order_id, security_token=security_token))
            else:
                binding.order_id = order_id
                binding.security_token = security_token
                binding.consumed_at = None
            db.commit()

    def get(self, session_id: str) -> CheckoutBinding | None:
        if not session_id:
            return None
        with self.session_factory() as db:
            return db.get(CheckoutBinding, session_id)

    def get_order_id(self, session_id: str) -> int | None:
        binding = self.get(session_id)
        return binding.order_id if binding else None

    def consume(self, session_id: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(CheckoutBinding)
                .where(CheckoutBinding.session_id == session_id, CheckoutBinding.consumed_at.is_(None))
                .values(consumed_at=datetime.now(timezone.utc))
            )
            db.commit()

    def clear(self, session_id: str) -> None:
        with self.session_factory() as db:
            db.execute(delete(CheckoutBinding).where(CheckoutBinding.session_id == session_id))
            db.commit()


_LEVELS = {"success": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class LogSink:
    """Persisted gateway event log, mirrored to the process logger.

    Appends never raise: a failing log table must not fail a payment.
    """

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def append(
        self,
        module: str,
        event_type: str,
        message: str,
        status: str = "success",
        context: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> int | None:
        if not module or not event_type or not message:
            return None
        level = logging.WARNING if event_type == "Security" else _LEVELS.get(status, logging.INFO)
        logger.log(
            level,
            "gateway_log module=%s type=%s status=%s message=%s",
            module,
            event_type,
            status,
            message,
            extra={"log_context": context or {}},
        )
        try:
            with self.session_factory() as db:
                entry = GatewayLog(
                    module=module,
                    event_type=event_type,
                    message=message,
                    status=status,
                    user_id=user_id,
                    context=context or None,
                )
                db.add(entry)
                db.commit()
                return entry.id
        except SQLAlchemyError as exc:
            logger.error("gateway_log_write_failed module=%s type=%s error=%s", module, event_type, exc)
            return None

    def recent(self, module: str | None = None, status: str | None = None, limit: int = 50) -> list[GatewayLog]:
        query = select(GatewayLog)
        if module:
            query = query.where(GatewayLog.module == module)
        if status:
            query = query.where(GatewayLog.status == status)
        with self.session_factory() as db:
            return list(db.execute(query.order_by(GatewayLog.id.desc()).limit(limit)).scalars())
