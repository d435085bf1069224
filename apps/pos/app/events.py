"""
Domain events of the fulfillment and settlement engine.

Events are written to ``outbox_events`` inside the transaction that caused
them and are only handed to the transport after that transaction commits.
Rows that fail to go out stay pending and are retried by the drain loop, so
delivery is at-least-once; every envelope carries the outbox id so consumers
can drop duplicates.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

import redis
from pydantic import BaseModel, Field, TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .config import (
    EVENTS_CHANNEL_PREFIX,
    EVENTS_ENABLED,
    EVENTS_REDIS_URL,
    OUTBOX_BATCH_SIZE,
    OUTBOX_MAX_ATTEMPTS,
)
from .models import OutboxEvent, utcnow
from .ws import queue_broadcast

_log = logging.getLogger("tableside.pos.events")

KITCHEN = "kitchen"
BAR = "bar"
WAITER = "waiter"
CASHIER = "cashier"
PREP_STATIONS = (KITCHEN, BAR)
FLOOR = (WAITER, KITCHEN, BAR)


class EventItem(BaseModel):
    product_id: int
    name: str
    quantity: int


class StockDepleted(BaseModel):
    type: Literal["stock.depleted"] = "stock.depleted"
    product_id: int
    product_name: str
    updated_by: Optional[str] = None


class StockRestored(BaseModel):
    type: Literal["stock.restored"] = "stock.restored"
    product_id: int
    product_name: str
    remaining: Optional[int] = None
    updated_by: Optional[str] = None


class InventoryUpdated(BaseModel):
    type: Literal["inventory.updated"] = "inventory.updated"
    product_id: int
    product_name: str
    remaining: int
    updated_by: Optional[str] = None
    note: Optional[str] = None


class InventoryReset(BaseModel):
    type: Literal["inventory.reset"] = "inventory.reset"
    product_id: int
    product_name: str
    reset_by: Optional[str] = None


class OrderPlaced(BaseModel):
    type: Literal["order.placed"] = "order.placed"
    order_id: str
    table_id: Optional[int] = None
    waiter_id: str
    total_cents: int
    items: List[EventItem]


class OrderStatusChanged(BaseModel):
    type: Literal["order.status_changed"] = "order.status_changed"
    order_id: str
    table_id: Optional[int] = None
    previous: str
    status: str


class OrderSplit(BaseModel):
    type: Literal["order.split"] = "order.split"
    origin_order_id: str
    resulting_order_id: Optional[str] = None
    table_id: Optional[int] = None
    whole_order_blocked: bool
    items: List[EventItem]
    message: str


class OrderCancelled(BaseModel):
    type: Literal["order.cancelled"] = "order.cancelled"
    order_id: str
    table_id: Optional[int] = None
    reason: Optional[str] = None


class OrderSubstituted(BaseModel):
    type: Literal["order.substituted"] = "order.substituted"
    order_id: str
    table_id: Optional[int] = None
    items: List[EventItem]


class AwaitingOrderClaimed(BaseModel):
    type: Literal["order.awaiting_claimed"] = "order.awaiting_claimed"
    order_id: str
    table_id: Optional[int] = None
    claimed_by: Optional[str] = None
    claimed_by_name: Optional[str] = None


class PaymentCompleted(BaseModel):
    type: Literal["payment.completed"] = "payment.completed"
    order_id: str
    payment_id: str
    table_id: Optional[int] = None
    amount_cents: int
    method: str
    remainder_cents: int
    order_paid: bool


class PaymentReversed(BaseModel):
    type: Literal["payment.reversed"] = "payment.reversed"
    order_id: str
    payment_id: str
    reversed_payment_id: str
    amount_cents: int
    reason: Optional[str] = None


class DebtCreated(BaseModel):
    type: Literal["debt.created"] = "debt.created"
    debt_id: str
    order_id: str
    customer_id: str
    amount_cents: int
    table_id: Optional[int] = None


class DebtPaid(BaseModel):
    type: Literal["debt.paid"] = "debt.paid"
    debt_id: str
    amount_cents: int
    remaining_cents: int
    status: str


class TableReleased(BaseModel):
    type: Literal["table.released"] = "table.released"
    table_id: int


PosEvent = Annotated[
    Union[
        StockDepleted,
        StockRestored,
        InventoryUpdated,
        InventoryReset,
        OrderPlaced,
        OrderStatusChanged,
        OrderSplit,
        OrderCancelled,
        OrderSubstituted,
        AwaitingOrderClaimed,
        PaymentCompleted,
        PaymentReversed,
        DebtCreated,
        DebtPaid,
        TableReleased,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(PosEvent)


def parse_event(envelope: Dict[str, Any]) -> BaseModel:
    """Rebuild the typed event from a published envelope."""
    return _event_adapter.validate_python(envelope["payload"])


def publish(
    s: Session,
    event: BaseModel,
    targets: Iterable[str] = (),
    tenant_id: Optional[str] = None,
) -> OutboxEvent:
    """Queue ``event`` in the caller's transaction. Nothing leaves the process before commit."""
    _event_adapter.validate_python(event.model_dump())
    row = OutboxEvent(
        event_type=event.type,
        payload_json=event.model_dump_json(),
        targets_json=json.dumps(sorted(set(targets))),
        tenant_id=tenant_id,
    )
    s.add(row)
    return row


class EventPublisher:
    """
    Pushes committed events to connected stations.

    Local station sockets are always fed. When ``EVENTS_ENABLED`` is set the
    envelope is also published to Redis Pub/Sub (one channel per tenant) so
    other replicas can fan it out; a Redis failure is raised so the outbox
    row stays pending and is retried.
    """

    def __init__(self, enabled: bool = EVENTS_ENABLED, url: str = EVENTS_REDIS_URL) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None
        if enabled:
            self._client = redis.Redis.from_url(url)

    def publish(self, envelope: Dict[str, Any]) -> None:
        if self._client is not None:
            channel = f"{EVENTS_CHANNEL_PREFIX}:{envelope.get('tenant_id') or 'default'}"
            self._client.publish(channel, json.dumps(envelope))
        _log.info("event", extra={"event": envelope})
        queue_broadcast(envelope)


_publisher = EventPublisher()


def get_publisher() -> EventPublisher:
    return _publisher


def _envelope(row: OutboxEvent) -> Dict[str, Any]:
    return {
        "id": row.id,
        "domain": "pos",
        "type": row.event_type,
        "ts_ms": int(time.time() * 1000),
        "tenant_id": row.tenant_id,
        "targets": json.loads(row.targets_json or "[]"),
        "payload": json.loads(row.payload_json),
    }


def dispatch_pending(s: Session, publisher: Optional[EventPublisher] = None, limit: int = OUTBOX_BATCH_SIZE) -> int:
    """Send committed, undelivered events in outbox order. Returns how many went out."""
    pub = publisher or get_publisher()
    rows = (
        s.execute(
            select(OutboxEvent)
            .where(OutboxEvent.published_at.is_(None), OutboxEvent.attempts < OUTBOX_MAX_ATTEMPTS)
            .order_by(OutboxEvent.id.asc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    sent = 0
    for row in rows:
        row.attempts = (row.attempts or 0) + 1
        try:
            pub.publish(_envelope(row))
        except Exception as e:
            row.last_error = str(e)[:400]
            _log.warning("events: publish of outbox row %s failed (attempt %s): %s", row.id, row.attempts, e)
            continue
        row.published_at = utcnow()
        row.last_error = None
        sent += 1
    s.commit()
    return sent


def dispatch_after_commit(s: Session) -> None:
    """Best-effort flush right after an operation commits; the drain loop picks up whatever is left."""
    try:
        dispatch_pending(s)
    except Exception:
        s.rollback()
        _log.warning("events: post-commit dispatch failed, left for drain loop", exc_info=True)


def pending_count(s: Session) -> int:
    return int(
        s.execute(select(func.count(OutboxEvent.id)).where(OutboxEvent.published_at.is_(None))).scalar() or 0
    )
