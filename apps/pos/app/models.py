from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import DB_SCHEMA


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_TABLE_ARGS = {"schema": DB_SCHEMA} if DB_SCHEMA else {}


def _fk(target: str) -> str:
    return f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target


class OrderType:
    DINE_IN = "DINE_IN"
    TAKEAWAY = "TAKEAWAY"
    COUNTER = "COUNTER"

    ALL = (DINE_IN, TAKEAWAY, COUNTER)


class OrderStatus:
    ORDERED = "ORDERED"
    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    DELIVERED = "DELIVERED"
    BILL_REQUESTED = "BILL_REQUESTED"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    AWAITING_STOCK = "AWAITING_STOCK"

    TERMINAL = (PAID, CANCELLED)


class LineStatus:
    INSERTED = "INSERTED"
    IN_PROGRESS = "IN_PROGRESS"
    READY = "READY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus:
    UNPAID = "UNPAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"


class DebtStatus:
    OPEN = "OPEN"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    SETTLED = "SETTLED"


class Base(DeclarativeBase):
    pass


class Product(Base):
    """Local projection of the catalog: price and the global availability flag."""

    __tablename__ = "products"
    __table_args__ = _TABLE_ARGS
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    station: Mapped[str] = mapped_column(String(32), default="kitchen")  # kitchen/bar
    available: Mapped[bool] = mapped_column(Boolean, default=True)


class Table(Base):
    __tablename__ = "tables"
    __table_args__ = _TABLE_ARGS
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50))
    capacity: Mapped[int] = mapped_column(Integer, default=2)
    status: Mapped[str] = mapped_column(String(16), default="free")  # free/occupied


class InventoryEntry(Base):
    __tablename__ = "inventory_limits"
    __table_args__ = _TABLE_ARGS
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey(_fk("products.id")), primary_key=True)
    remaining_qty: Mapped[int] = mapped_column(Integer, default=0)
    last_updated_by: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    note: Mapped[Optional[str]] = mapped_column(String(200), default=None)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = _TABLE_ARGS
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    type: Mapped[str] = mapped_column(String(16), default=OrderType.DINE_IN)
    table_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    customer_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    waiter_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(24), default=OrderStatus.ORDERED)
    payment_status: Mapped[str] = mapped_column(String(24), default=PaymentStatus.UNPAID)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    origin_order_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    note: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class OrderLine(Base):
    __tablename__ = "order_lines"
    __table_args__ = _TABLE_ARGS
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("orders.id")), index=True)
    product_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default=LineStatus.INSERTED)
    station: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    # units taken out of the inventory ledger for this line; released on cancel
    reserved_qty: Mapped[int] = mapped_column(Integer, default=0)
    paid_qty: Mapped[int] = mapped_column(Integer, default=0)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_by_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    # units of this line waiting for stock while its order is AWAITING_STOCK
    short_qty: Mapped[int] = mapped_column(Integer, default=0)
    # first line of a split chain; quantities sharing it sum to the ordered amount
    origin_line_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    note: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def outstanding_qty(self) -> int:
        return self.quantity - self.paid_qty

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


class PaymentRecord(Base):
    __tablename__ = "payments"
    __table_args__ = _TABLE_ARGS
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("orders.id")), index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    method: Mapped[str] = mapped_column(String(32), default="cash")
    payer_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    operator_id: Mapped[str] = mapped_column(String(64))
    kind: Mapped[str] = mapped_column(String(16), default="payment")  # payment/reversal
    reverses_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    reason: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(120), default=None, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentAllocation(Base):
    """Which units of which line a payment covered."""

    __tablename__ = "payment_lines"
    __table_args__ = _TABLE_ARGS
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("payments.id")), index=True)
    line_id: Mapped[int] = mapped_column(Integer, ForeignKey(_fk("order_lines.id")))
    quantity: Mapped[int] = mapped_column(Integer)
    amount_cents: Mapped[int] = mapped_column(BigInteger)


class DebtRecord(Base):
    __tablename__ = "debts"
    __table_args__ = _TABLE_ARGS
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), index=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("orders.id")))
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    amount_paid_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default=DebtStatus.OPEN)
    operator_id: Mapped[str] = mapped_column(String(64))
    note: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class DebtPayment(Base):
    __tablename__ = "debt_payments"
    __table_args__ = _TABLE_ARGS
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    debt_id: Mapped[str] = mapped_column(String(36), ForeignKey(_fk("debts.id")), index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    method: Mapped[str] = mapped_column(String(32), default="cash")
    operator_id: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SplitRecord(Base):
    __tablename__ = "split_records"
    __table_args__ = _TABLE_ARGS
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    origin_order_id: Mapped[str] = mapped_column(String(36), index=True)
    resulting_order_id: Mapped[str] = mapped_column(String(36))
    product_id: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(200))
    shortfall_qty: Mapped[int] = mapped_column(Integer)
    total_qty_at_split: Mapped[int] = mapped_column(Integer)
    was_whole_order_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AwaitingClaim(Base):
    """Who is handling an AWAITING_STOCK order; kept off the order row."""

    __tablename__ = "awaiting_claims"
    __table_args__ = _TABLE_ARGS
    order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default="OPEN")  # OPEN/IN_HANDLING/RESOLVED
    handled_by: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    handled_by_name: Mapped[Optional[str]] = mapped_column(String(120), default=None)
    handled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"
    __table_args__ = _TABLE_ARGS
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(64))
    payload_json: Mapped[str] = mapped_column(Text)
    targets_json: Mapped[str] = mapped_column(String(400), default="[]")
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
