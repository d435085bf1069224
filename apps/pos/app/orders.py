"""
Order and line state machines, order placement and the order-level
bookkeeping (totals, invariants, table occupancy) shared by the splitter and
settlement.
"""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import Actor, authorize
from .db import atomic, locked
from .errors import ConsistencyViolation, InsufficientStock, InvalidTransition, NotFound, ValidationError
from .events import (
    FLOOR,
    EventItem,
    OrderCancelled,
    OrderPlaced,
    OrderStatusChanged,
    TableReleased,
    dispatch_after_commit,
    publish,
)
from . import inventory
from .models import (
    AwaitingClaim,
    LineStatus,
    Order,
    OrderLine,
    OrderStatus,
    OrderType,
    PaymentRecord,
    Table,
    utcnow,
)

_log = logging.getLogger("tableside.pos.orders")

S = OrderStatus

# States a shortfall may interrupt, and from which settlement may close an order.
OPEN_STATES = frozenset({S.ORDERED, S.IN_PROGRESS, S.READY, S.DELIVERED, S.BILL_REQUESTED, S.PAYMENT_REQUESTED})

ORDER_TRANSITIONS: Dict[str, frozenset] = {
    S.ORDERED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.READY, S.CANCELLED}),
    S.READY: frozenset({S.DELIVERED}),
    S.DELIVERED: frozenset({S.BILL_REQUESTED, S.PAYMENT_REQUESTED}),
    S.BILL_REQUESTED: frozenset({S.PAYMENT_REQUESTED}),
    S.PAYMENT_REQUESTED: frozenset(),
    S.AWAITING_STOCK: frozenset({S.ORDERED, S.CANCELLED}),
    S.PAID: frozenset(),
    S.CANCELLED: frozenset(),
}
# edges fired by the splitter (AWAITING_STOCK) and by settlement (PAID)
for _state in OPEN_STATES:
    ORDER_TRANSITIONS[_state] = ORDER_TRANSITIONS[_state] | {S.AWAITING_STOCK, S.PAID}

# Targets a floor client may request directly through the status endpoint.
MANUAL_TARGETS = frozenset({S.IN_PROGRESS, S.READY, S.DELIVERED, S.BILL_REQUESTED, S.PAYMENT_REQUESTED})
EDITABLE_STATES = frozenset({S.ORDERED, S.IN_PROGRESS})

L = LineStatus
LINE_RANK = {L.INSERTED: 0, L.IN_PROGRESS: 1, L.READY: 2, L.DELIVERED: 3}
CANCELLABLE_LINE_STATES = frozenset({L.INSERTED, L.IN_PROGRESS})

# Order preparation states implied by the slowest live line.
_PROGRESS_PATH = (S.IN_PROGRESS, S.READY, S.DELIVERED)


@dataclass
class LineRequest:
    product_id: int
    quantity: int
    note: Optional[str] = None


@dataclass
class Shortfall:
    line_id: int
    quantity: int


@dataclass
class PlacementResult:
    order: Order
    lines: List[OrderLine]
    split: Optional[object] = None
    shortfalls: List[Shortfall] = field(default_factory=list)


def new_id() -> str:
    return str(uuid.uuid4())


def transition(order: Order, new_state: str) -> str:
    """Move ``order`` along the graph; returns the previous state."""
    current = order.status
    if new_state not in ORDER_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition("order", current, new_state, order.id)
    order.status = new_state
    if new_state in S.TERMINAL:
        order.closed_at = utcnow()
    return current


def transition_line(line: OrderLine, new_state: str) -> str:
    current = line.status
    if new_state == L.CANCELLED:
        ok = current in CANCELLABLE_LINE_STATES
    else:
        ok = current in LINE_RANK and new_state in LINE_RANK and LINE_RANK[new_state] > LINE_RANK[current]
    if not ok:
        raise InvalidTransition("line", current, new_state, line.id)
    line.status = new_state
    return current


def get_order(s: Session, order_id: str, lock: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if lock:
        stmt = locked(s, stmt)
    order = s.execute(stmt).scalars().first()
    if not order:
        raise NotFound(f"order {order_id} not found")
    return order


def get_line(s: Session, line_id: int, lock: bool = False) -> OrderLine:
    stmt = select(OrderLine).where(OrderLine.id == line_id)
    if lock:
        stmt = locked(s, stmt)
    line = s.execute(stmt).scalars().first()
    if not line:
        raise NotFound(f"line {line_id} not found")
    return line


def lines_of(s: Session, order_id: str, live_only: bool = False) -> List[OrderLine]:
    stmt = select(OrderLine).where(OrderLine.order_id == order_id)
    if live_only:
        stmt = stmt.where(OrderLine.status != L.CANCELLED)
    return list(s.execute(stmt.order_by(OrderLine.id.asc())).scalars().all())


def recompute_total(s: Session, order: Order) -> int:
    order.total_cents = sum(l.line_total_cents for l in lines_of(s, order.id, live_only=True))
    return order.total_cents


def check_invariants(s: Session, order: Order) -> None:
    """Abort the transaction if the order's stored figures disagree with its lines."""
    live = lines_of(s, order.id, live_only=True)
    expected = sum(l.line_total_cents for l in live)
    if order.total_cents != expected:
        raise ConsistencyViolation(
            f"order {order.id} total {order.total_cents} != line sum {expected}",
            order_id=order.id,
        )
    for l in live:
        if l.quantity <= 0:
            raise ConsistencyViolation(f"line {l.id} has non-positive quantity", line_id=l.id)
        if not 0 <= l.paid_qty <= l.quantity:
            raise ConsistencyViolation(f"line {l.id} paid {l.paid_qty} of {l.quantity}", line_id=l.id)
        if l.reserved_qty > l.quantity:
            raise ConsistencyViolation(f"line {l.id} reserves {l.reserved_qty} of {l.quantity}", line_id=l.id)


def payments_total(s: Session, order_id: str) -> int:
    return int(
        s.execute(select(func.coalesce(func.sum(PaymentRecord.amount_cents), 0)).where(PaymentRecord.order_id == order_id)).scalar()
        or 0
    )


def release_table_if_idle(s: Session, order: Order, actor: Optional[Actor] = None) -> bool:
    """Free the order's table once no other open order sits on it."""
    if order.table_id is None:
        return False
    others = s.execute(
        select(func.count(Order.id)).where(
            Order.table_id == order.table_id,
            Order.id != order.id,
            Order.status.not_in(S.TERMINAL),
        )
    ).scalar()
    if others:
        return False
    table = s.get(Table, order.table_id)
    if not table or table.status == "free":
        return False
    table.status = "free"
    publish(s, TableReleased(table_id=table.id), FLOOR, order.tenant_id)
    return True


def status_changed(s: Session, order: Order, previous: str) -> None:
    publish(
        s,
        OrderStatusChanged(order_id=order.id, table_id=order.table_id, previous=previous, status=order.status),
        FLOOR,
        order.tenant_id,
    )


def close_if_fully_paid(s: Session, order: Order, remainder_cents: int, actor: Optional[Actor] = None) -> bool:
    """Close the order once nothing is left to pay."""
    if order.status in S.TERMINAL or order.status == S.AWAITING_STOCK or remainder_cents != 0:
        return False
    previous = transition(order, S.PAID)
    _log.info("order %s paid", order.id)
    status_changed(s, order, previous)
    release_table_if_idle(s, order, actor)
    return True


def void_lines(s: Session, order: Order, actor: Optional[Actor] = None) -> None:
    """Cancel every live line of ``order`` and hand its reservations back."""
    for line in lines_of(s, order.id, live_only=True):
        transition_line(line, L.CANCELLED)
        _release_line(s, line, actor)
        line.short_qty = 0
    recompute_total(s, order)


def drop_short_units(s: Session, order: Order, actor: Optional[Actor] = None) -> List[OrderLine]:
    """
    Take the units waiting for stock off ``order``.

    Lines that are wholly short are cancelled; partly short lines shrink back
    to their servable units. Served and paid units are never touched.
    Returns the lines that were cancelled.
    """
    dropped: List[OrderLine] = []
    for line in lines_of(s, order.id, live_only=True):
        if line.short_qty <= 0:
            continue
        if line.short_qty >= line.quantity:
            transition_line(line, L.CANCELLED)
            _release_line(s, line, actor)
            dropped.append(line)
        else:
            line.quantity -= line.short_qty
            line.reserved_qty = min(line.reserved_qty, line.quantity)
        line.short_qty = 0
    recompute_total(s, order)
    return dropped


def resolve_claim(s: Session, order_id: str) -> None:
    claim = s.get(AwaitingClaim, order_id)
    if claim is not None:
        claim.status = "RESOLVED"


def _release_line(s: Session, line: OrderLine, actor: Optional[Actor]) -> None:
    if line.reserved_qty > 0:
        inventory.release(s, line.product_id, line.reserved_qty, actor)
        line.reserved_qty = 0


def _items(lines: Sequence[OrderLine], names: Dict[int, str]) -> List[EventItem]:
    return [EventItem(product_id=l.product_id, name=names.get(l.product_id, str(l.product_id)), quantity=l.quantity) for l in lines]


def _check_requests(lines: Sequence[LineRequest]) -> None:
    if not lines:
        raise ValidationError("order needs at least one line")
    for req in lines:
        if req.quantity <= 0:
            raise ValidationError(f"quantity for product {req.product_id} must be > 0")


def _attach_lines(
    s: Session, actor: Actor, order: Order, requests: Sequence[LineRequest]
) -> tuple:
    """
    Add lines to ``order`` and reserve their stock.

    When a product cannot cover a line, whatever is left is reserved and the
    missing units are returned as shortfalls for the splitter.
    """
    created: List[OrderLine] = []
    shortfalls: List[Shortfall] = []
    names: Dict[int, str] = {}
    for req in requests:
        product = inventory.get_product(s, req.product_id)
        names[product.id] = product.name
        line = OrderLine(
            order_id=order.id,
            product_id=product.id,
            quantity=req.quantity,
            unit_price_cents=product.price_cents,
            status=L.INSERTED,
            station=product.station,
            reserved_qty=0,
            paid_qty=0,
            is_paid=False,
            note=req.note,
        )
        s.add(line)
        s.flush()
        line.origin_line_id = line.id
        res = inventory.reserve(s, product.id, req.quantity, actor)
        if res.ok:
            line.reserved_qty = req.quantity if res.remaining is not None else 0
        else:
            available = res.remaining or 0
            if available > 0 and inventory.reserve(s, product.id, available, actor).ok:
                line.reserved_qty = available
            shortfalls.append(Shortfall(line_id=line.id, quantity=req.quantity - line.reserved_qty))
        created.append(line)
    return created, shortfalls, names


def place_order(
    s: Session,
    actor: Actor,
    order_type: str,
    lines: Sequence[LineRequest],
    table_id: Optional[int] = None,
    customer_name: Optional[str] = None,
    customer_id: Optional[str] = None,
    note: Optional[str] = None,
    allow_split: bool = True,
) -> PlacementResult:
    """
    Open an order, reserve its stock and route any shortfall to the splitter
    in the same transaction.
    """
    from . import splitter

    authorize(actor)
    if order_type not in OrderType.ALL:
        raise ValidationError(f"unknown order type {order_type}")
    _check_requests(lines)
    if order_type == OrderType.DINE_IN and table_id is None:
        raise ValidationError("dine-in orders need a table")
    with atomic(s):
        table = None
        if table_id is not None:
            table = s.get(Table, table_id)
            if not table:
                raise NotFound(f"table {table_id} not found")
        order = Order(
            id=new_id(),
            tenant_id=actor.tenant_id,
            type=order_type,
            table_id=table_id,
            customer_name=customer_name,
            customer_id=customer_id,
            waiter_id=actor.id,
            status=S.ORDERED,
            total_cents=0,
            note=note,
        )
        s.add(order)
        s.flush()
        if table is not None:
            table.status = "occupied"
        created, shortfalls, names = _attach_lines(s, actor, order, lines)
        recompute_total(s, order)
        publish(
            s,
            OrderPlaced(
                order_id=order.id,
                table_id=order.table_id,
                waiter_id=actor.id,
                total_cents=order.total_cents,
                items=_items(created, names),
            ),
            FLOOR,
            order.tenant_id,
        )
        outcome = None
        if shortfalls:
            outcome = splitter.apply_shortfall(s, actor, order, shortfalls, allow_split=allow_split)
        check_invariants(s, order)
        _log.info("order %s placed by %s: %s lines, %s cents", order.id, actor.id, len(created), order.total_cents)
    dispatch_after_commit(s)
    return PlacementResult(order=order, lines=lines_of(s, order.id), split=outcome, shortfalls=shortfalls)


def add_lines(
    s: Session, actor: Actor, order_id: str, lines: Sequence[LineRequest], allow_split: bool = True
) -> PlacementResult:
    from . import splitter

    authorize(actor)
    _check_requests(lines)
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        if order.status not in EDITABLE_STATES:
            raise InvalidTransition("order", order.status, "add lines", order.id)
        created, shortfalls, names = _attach_lines(s, actor, order, lines)
        recompute_total(s, order)
        outcome = None
        if shortfalls:
            outcome = splitter.apply_shortfall(s, actor, order, shortfalls, allow_split=allow_split)
        check_invariants(s, order)
    dispatch_after_commit(s)
    return PlacementResult(order=order, lines=lines_of(s, order.id), split=outcome, shortfalls=shortfalls)


def _editable_line(s: Session, line_id: int) -> tuple:
    line = get_line(s, line_id, lock=True)
    order = get_order(s, line.order_id, lock=True)
    if order.status not in EDITABLE_STATES:
        raise InvalidTransition("order", order.status, "edit lines", order.id)
    if line.status not in CANCELLABLE_LINE_STATES:
        raise ValidationError(f"line {line.id} is {line.status} and can no longer change")
    return line, order


def change_line_quantity(s: Session, actor: Actor, line_id: int, quantity: int) -> OrderLine:
    authorize(actor)
    if quantity <= 0:
        raise ValidationError("quantity must be > 0; cancel the line instead")
    with atomic(s):
        line, order = _editable_line(s, line_id)
        if quantity < line.paid_qty:
            raise ValidationError(f"line {line.id} already has {line.paid_qty} paid units")
        delta = quantity - line.quantity
        if delta > 0:
            res = inventory.reserve(s, line.product_id, delta, actor)
            if not res.ok:
                raise InsufficientStock(line.product_id, delta, res.remaining or 0)
            if res.remaining is not None:
                line.reserved_qty += delta
        elif delta < 0:
            give_back = min(line.reserved_qty, -delta)
            if give_back > 0:
                inventory.release(s, line.product_id, give_back, actor)
                line.reserved_qty -= give_back
            line.reserved_qty = min(line.reserved_qty, quantity)
        line.quantity = quantity
        recompute_total(s, order)
        check_invariants(s, order)
    dispatch_after_commit(s)
    return line


def cancel_line(s: Session, actor: Actor, line_id: int) -> OrderLine:
    authorize(actor)
    with atomic(s):
        line, order = _editable_line(s, line_id)
        if line.paid_qty > 0:
            raise ValidationError(f"line {line.id} has paid units; reverse the payment first")
        _release_line(s, line, actor)
        transition_line(line, L.CANCELLED)
        recompute_total(s, order)
        if not lines_of(s, order.id, live_only=True):
            previous = transition(order, S.CANCELLED)
            status_changed(s, order, previous)
            release_table_if_idle(s, order, actor)
        check_invariants(s, order)
    dispatch_after_commit(s)
    return line


def sync_progress(s: Session, order: Order) -> None:
    """Let the order follow its slowest live line through preparation."""
    if order.status not in (S.ORDERED, S.IN_PROGRESS, S.READY):
        return
    live = lines_of(s, order.id, live_only=True)
    if not live:
        return
    slowest = min(LINE_RANK[l.status] for l in live)
    fastest = max(LINE_RANK[l.status] for l in live)
    if slowest >= 3:
        target = S.DELIVERED
    elif slowest >= 2:
        target = S.READY
    elif fastest >= 1:
        target = S.IN_PROGRESS
    else:
        return
    for step in _PROGRESS_PATH:
        if _PROGRESS_PATH.index(step) > _PROGRESS_PATH.index(target):
            break
        if step in ORDER_TRANSITIONS.get(order.status, frozenset()):
            previous = transition(order, step)
            status_changed(s, order, previous)


def advance_line(s: Session, actor: Actor, line_id: int, new_state: str) -> OrderLine:
    authorize(actor)
    if new_state not in LINE_RANK or new_state == L.INSERTED:
        raise ValidationError(f"unknown line state {new_state}")
    with atomic(s):
        line = get_line(s, line_id, lock=True)
        order = get_order(s, line.order_id, lock=True)
        if order.status in S.TERMINAL or order.status == S.AWAITING_STOCK:
            raise InvalidTransition("order", order.status, f"line {new_state}", order.id)
        transition_line(line, new_state)
        sync_progress(s, order)
    dispatch_after_commit(s)
    return line


def change_status(s: Session, actor: Actor, order_id: str, new_state: str) -> Order:
    """Floor-driven transitions; stock, cancellation and payment have their own entry points."""
    authorize(actor)
    if new_state not in MANUAL_TARGETS:
        raise ValidationError(f"status {new_state} cannot be set directly")
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        previous = transition(order, new_state)
        status_changed(s, order, previous)
    dispatch_after_commit(s)
    return order


def cancel_order(s: Session, actor: Actor, order_id: str, reason: Optional[str] = None) -> Order:
    authorize(actor)
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        # awaiting-stock orders are cancelled through resolution
        if order.status not in EDITABLE_STATES:
            raise InvalidTransition("order", order.status, S.CANCELLED, order.id)
        if payments_total(s, order.id) > 0:
            raise ValidationError(f"order {order.id} has payments; reverse them first")
        void_lines(s, order, actor)
        previous = transition(order, S.CANCELLED)
        resolve_claim(s, order.id)
        publish(s, OrderCancelled(order_id=order.id, table_id=order.table_id, reason=reason), FLOOR, order.tenant_id)
        status_changed(s, order, previous)
        release_table_if_idle(s, order, actor)
        check_invariants(s, order)
        _log.info("order %s cancelled by %s", order.id, actor.id)
    dispatch_after_commit(s)
    return order


def lines_by_order(s: Session, order_ids: Sequence[str]) -> Dict[str, List[OrderLine]]:
    out: Dict[str, List[OrderLine]] = defaultdict(list)
    if not order_ids:
        return out
    rows = s.execute(select(OrderLine).where(OrderLine.order_id.in_(list(order_ids))).order_by(OrderLine.id.asc())).scalars()
    for line in rows:
        out[line.order_id].append(line)
    return out
