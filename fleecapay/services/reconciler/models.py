"""Reconciliation database models.

Orders and their metadata/notes are owned by the store; checkout bindings are
owned by the session layer; gateway logs are the admin-facing event log.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from fleecapay.common.db import Base


class Order(Base):
    """Current state of a store order awaiting or holding a payment."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    # Whole currency units, the same unit the provider reports `payment` in.
    total_amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    owner_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    payment_method: Mapped[str] = mapped_column(String, default="fleeca")
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class OrderMeta(Base):
    """One metadata key/value on an order."""

    __tablename__ = "order_meta"
    __table_args__ = (UniqueConstraint("order_id", "meta_key", name="uq_order_meta_key"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    meta_key: Mapped[str] = mapped_column(String)
    meta_value: Mapped[str] = mapped_column(Text, default="")


class OrderNote(Base):
    """Human-readable, admin-only note attached to an order."""

    __tablename__ = "order_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    note: Mapped[str] = mapped_column(Text)
    is_customer_note: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CheckoutBinding(Base):
    """Session -> order association created when the customer leaves for the bank."""

    __tablename__ = "checkout_bindings"

    session_id: Mapped[str] = mapped_column(String, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    security_token: Mapped[str | None] = mapped_column(String, nullable=True)
    # Set once the checkout has been settled; replays still resolve the order.
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class GatewayLog(Base):
    """Append-only gateway event log shown to administrators."""

    __tablename__ = "gateway_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    module: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
