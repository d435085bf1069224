"""
Fulfillment splitter.

When stock runs out for part of an order, the unfulfillable units are moved
to a sibling order that waits for stock while the rest of the table keeps
being served. If nothing servable would remain (or the caller forbids a
split) the order itself waits instead. Either way the shortfall products are
marked depleted, a split record is kept per product and the floor is told.

Awaiting orders are then claimed by a waiter and resolved by cancelling or
substituting their lines.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .auth import ROLE_TIERS, Actor, authorize
from .db import atomic
from .errors import ConflictError, ConsistencyViolation, InsufficientStock, InvalidTransition, Unauthorized, ValidationError
from .events import (
    FLOOR,
    AwaitingOrderClaimed,
    EventItem,
    OrderCancelled,
    OrderSplit,
    OrderSubstituted,
    dispatch_after_commit,
    publish,
)
from . import inventory
from .models import AwaitingClaim, LineStatus, Order, OrderLine, OrderStatus, SplitRecord, utcnow
from .orders import (
    OPEN_STATES,
    Shortfall,
    check_invariants,
    drop_short_units,
    get_order,
    lines_by_order,
    lines_of,
    new_id,
    payments_total,
    recompute_total,
    release_table_if_idle,
    resolve_claim,
    status_changed,
    sync_progress,
    transition,
    void_lines,
)

_log = logging.getLogger("tableside.pos.splitter")

CANCEL = "cancel"
SUBSTITUTE = "substitute"
_SPLITTABLE_LINE_STATES = (LineStatus.INSERTED, LineStatus.IN_PROGRESS)


@dataclass
class SplitItem:
    product_id: int
    name: str
    shortfall: int
    kept: int


@dataclass
class SplitOutcome:
    origin_order_id: str
    resulting_order_id: str
    whole_order_blocked: bool
    items: List[SplitItem]
    records: List[SplitRecord]
    message: str


@dataclass
class Substitute:
    product_id: int
    quantity: int
    unit_price_cents: Optional[int] = None
    note: Optional[str] = None


@dataclass
class AwaitingView:
    order: Order
    lines: List[OrderLine]
    claim: Optional[AwaitingClaim]
    splits: List[SplitRecord] = field(default_factory=list)


def _plan(lines: Dict[int, OrderLine], shortfalls: Sequence[Shortfall]) -> list:
    seen = set()
    plan = []
    for sf in shortfalls:
        if sf.line_id in seen:
            raise ValidationError(f"line {sf.line_id} listed twice")
        seen.add(sf.line_id)
        line = lines.get(sf.line_id)
        if line is None:
            raise ValidationError(f"line {sf.line_id} is not a live line of this order")
        if sf.quantity <= 0:
            raise ValidationError(f"shortfall for line {sf.line_id} must be > 0")
        if line.status not in _SPLITTABLE_LINE_STATES:
            raise ValidationError(f"line {line.id} is {line.status} and can no longer be split")
        short = min(sf.quantity, line.quantity)
        kept = line.quantity - short
        if kept < line.paid_qty:
            raise ValidationError(f"line {line.id} has {line.paid_qty} paid units that cannot move")
        plan.append((line, short, kept))
    return plan


def _message(items: List[SplitItem], blocked: bool, resulting_order_id: str) -> str:
    what = ", ".join(f"{i.shortfall}x {i.name}" for i in items)
    if blocked:
        return f"{what} out of stock; order waits for stock"
    return f"{what} out of stock; moved to order {resulting_order_id[:8]}"


def _open_claim(s: Session, order_id: str) -> None:
    claim = s.get(AwaitingClaim, order_id)
    if claim is None:
        s.add(AwaitingClaim(order_id=order_id, status="OPEN"))
    else:
        claim.status = "OPEN"
        claim.handled_by = None
        claim.handled_by_name = None
        claim.handled_at = None


def apply_shortfall(
    s: Session, actor: Actor, order: Order, shortfalls: Sequence[Shortfall], allow_split: bool = True
) -> SplitOutcome:
    """
    Pull the short units out of ``order`` inside the caller's transaction.

    A line whose whole quantity is short moves to the sibling order as is;
    a partly short line keeps the servable units and a new line carrying the
    short units goes to the sibling, linked by ``origin_line_id``.
    """
    if order.status not in OPEN_STATES:
        raise InvalidTransition("order", order.status, OrderStatus.AWAITING_STOCK, order.id)
    if not shortfalls:
        raise ValidationError("no shortfall given")
    live = OrderedDict((l.id, l) for l in lines_of(s, order.id, live_only=True))
    plan = _plan(live, shortfalls)

    affected = {line.id for line, _, _ in plan}
    servable = any(lid not in affected for lid in live) or any(kept > 0 for _, _, kept in plan)
    blocked = not allow_split or not servable

    ordered_qty: Dict[int, int] = {}
    for line in live.values():
        ordered_qty[line.product_id] = ordered_qty.get(line.product_id, 0) + line.quantity

    if blocked:
        previous = transition(order, OrderStatus.AWAITING_STOCK)
        for line, short, kept in plan:
            line.reserved_qty = min(line.reserved_qty, kept)
            line.short_qty = short
        resulting = order
        status_changed(s, order, previous)
    else:
        resulting = Order(
            id=new_id(),
            tenant_id=order.tenant_id,
            type=order.type,
            table_id=order.table_id,
            customer_name=order.customer_name,
            customer_id=order.customer_id,
            waiter_id=order.waiter_id,
            status=OrderStatus.AWAITING_STOCK,
            total_cents=0,
            origin_order_id=order.id,
            note=f"out-of-stock items from order {order.id[:8]}",
        )
        s.add(resulting)
        s.flush()
        for line, short, kept in plan:
            before = line.quantity
            if kept == 0:
                line.order_id = resulting.id
                line.reserved_qty = 0
                line.short_qty = line.quantity
                moved_qty = line.quantity
            else:
                line.quantity = kept
                line.reserved_qty = min(line.reserved_qty, kept)
                moved = OrderLine(
                    order_id=resulting.id,
                    product_id=line.product_id,
                    quantity=short,
                    unit_price_cents=line.unit_price_cents,
                    status=LineStatus.INSERTED,
                    station=line.station,
                    reserved_qty=0,
                    paid_qty=0,
                    is_paid=False,
                    short_qty=short,
                    origin_line_id=line.origin_line_id or line.id,
                    note=line.note,
                )
                s.add(moved)
                moved_qty = short
            if kept + moved_qty != before:
                raise ConsistencyViolation(f"split of line {line.id} lost units", line_id=line.id)
        s.flush()
        recompute_total(s, order)
        recompute_total(s, resulting)

    items: List[SplitItem] = []
    per_product: Dict[int, List[int]] = OrderedDict()
    for line, short, kept in plan:
        acc = per_product.setdefault(line.product_id, [0, 0])
        acc[0] += short
        acc[1] += kept
    records: List[SplitRecord] = []
    for product_id, (short, kept) in per_product.items():
        product = inventory.get_product(s, product_id)
        inventory.set_limit(s, product_id, 0, note=f"shortfall on order {order.id[:8]}", actor=actor)
        rec = SplitRecord(
            origin_order_id=order.id,
            resulting_order_id=resulting.id,
            product_id=product_id,
            name=product.name,
            shortfall_qty=short,
            total_qty_at_split=ordered_qty.get(product_id, short),
            was_whole_order_blocked=blocked,
            created_by=actor.id,
        )
        s.add(rec)
        records.append(rec)
        items.append(SplitItem(product_id=product_id, name=product.name, shortfall=short, kept=kept))

    _open_claim(s, resulting.id)
    message = _message(items, blocked, resulting.id)
    publish(
        s,
        OrderSplit(
            origin_order_id=order.id,
            resulting_order_id=None if blocked else resulting.id,
            table_id=order.table_id,
            whole_order_blocked=blocked,
            items=[EventItem(product_id=i.product_id, name=i.name, quantity=i.shortfall) for i in items],
            message=message,
        ),
        FLOOR,
        order.tenant_id,
    )
    check_invariants(s, order)
    if resulting is not order:
        check_invariants(s, resulting)
    _log.warning("order %s: %s", order.id, message)
    return SplitOutcome(
        origin_order_id=order.id,
        resulting_order_id=resulting.id,
        whole_order_blocked=blocked,
        items=items,
        records=records,
        message=message,
    )


def split_for_shortfall(
    s: Session, actor: Actor, order_id: str, shortfalls: Sequence[Shortfall], allow_split: bool = True
) -> SplitOutcome:
    authorize(actor)
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        outcome = apply_shortfall(s, actor, order, shortfalls, allow_split=allow_split)
    dispatch_after_commit(s)
    return outcome


def resolve_awaiting_order(
    s: Session,
    actor: Actor,
    order_id: str,
    action: str,
    substitutes: Optional[Sequence[Substitute]] = None,
    reason: Optional[str] = None,
) -> Order:
    """Take an AWAITING_STOCK order out of waiting by cancelling it or swapping its lines."""
    authorize(actor)
    if action not in (CANCEL, SUBSTITUTE):
        raise ValidationError(f"unknown resolution {action}")
    if action == SUBSTITUTE:
        if not substitutes:
            raise ValidationError("substitution needs at least one replacement line")
        for sub in substitutes:
            if sub.quantity <= 0:
                raise ValidationError(f"quantity for product {sub.product_id} must be > 0")
            if sub.unit_price_cents is not None and sub.unit_price_cents < 0:
                raise ValidationError(f"price for product {sub.product_id} must be >= 0")
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        if order.status != OrderStatus.AWAITING_STOCK:
            target = OrderStatus.CANCELLED if action == CANCEL else OrderStatus.ORDERED
            raise InvalidTransition("order", order.status, target, order.id)
        if action == CANCEL:
            served = [l.id for l in lines_of(s, order.id, live_only=True) if l.status not in _SPLITTABLE_LINE_STATES]
            if served:
                raise ValidationError(
                    f"order {order.id} has served lines; substitute the short items instead", line_ids=served
                )
            if payments_total(s, order.id) > 0:
                raise ValidationError(f"order {order.id} has payments; reverse them first")
            void_lines(s, order, actor)
            previous = transition(order, OrderStatus.CANCELLED)
            publish(s, OrderCancelled(order_id=order.id, table_id=order.table_id, reason=reason), FLOOR, order.tenant_id)
            status_changed(s, order, previous)
            release_table_if_idle(s, order, actor)
        else:
            # only the units waiting for stock are replaced
            drop_short_units(s, order, actor)
            added: List[EventItem] = []
            for sub in substitutes:
                product = inventory.get_product(s, sub.product_id)
                line = OrderLine(
                    order_id=order.id,
                    product_id=product.id,
                    quantity=sub.quantity,
                    unit_price_cents=product.price_cents if sub.unit_price_cents is None else sub.unit_price_cents,
                    status=LineStatus.INSERTED,
                    station=product.station,
                    reserved_qty=0,
                    paid_qty=0,
                    is_paid=False,
                    note=sub.note,
                )
                s.add(line)
                s.flush()
                line.origin_line_id = line.id
                res = inventory.reserve(s, product.id, sub.quantity, actor)
                if not res.ok:
                    raise InsufficientStock(product.id, sub.quantity, res.remaining or 0)
                line.reserved_qty = sub.quantity if res.remaining is not None else 0
                added.append(EventItem(product_id=product.id, name=product.name, quantity=sub.quantity))
            recompute_total(s, order)
            previous = transition(order, OrderStatus.ORDERED)
            publish(s, OrderSubstituted(order_id=order.id, table_id=order.table_id, items=added), FLOOR, order.tenant_id)
            status_changed(s, order, previous)
            sync_progress(s, order)
        resolve_claim(s, order.id)
        check_invariants(s, order)
        _log.info("awaiting order %s resolved by %s: %s", order.id, actor.id, action)
    dispatch_after_commit(s)
    return order


def _awaiting(s: Session, order_id: str) -> Order:
    order = get_order(s, order_id, lock=True)
    if order.status != OrderStatus.AWAITING_STOCK:
        raise ValidationError(f"order {order_id} is not waiting for stock")
    return order


def claim_awaiting_order(s: Session, actor: Actor, order_id: str) -> AwaitingClaim:
    """Mark an awaiting order as being handled by ``actor``."""
    authorize(actor)
    with atomic(s):
        order = _awaiting(s, order_id)
        claim = s.get(AwaitingClaim, order.id)
        if claim is None:
            claim = AwaitingClaim(order_id=order.id, status="OPEN")
            s.add(claim)
        if claim.status == "IN_HANDLING" and claim.handled_by != actor.id:
            raise ConflictError(
                f"order {order.id} is already handled by {claim.handled_by_name or claim.handled_by}",
                handled_by=claim.handled_by,
            )
        claim.status = "IN_HANDLING"
        claim.handled_by = actor.id
        claim.handled_by_name = actor.display_name
        claim.handled_at = utcnow()
        publish(
            s,
            AwaitingOrderClaimed(
                order_id=order.id, table_id=order.table_id, claimed_by=actor.id, claimed_by_name=actor.display_name
            ),
            FLOOR,
            order.tenant_id,
        )
    dispatch_after_commit(s)
    return claim


def release_awaiting_claim(s: Session, actor: Actor, order_id: str) -> AwaitingClaim:
    """Hand an awaiting order back to the pool; only its handler or a manager may."""
    authorize(actor)
    with atomic(s):
        order = _awaiting(s, order_id)
        claim = s.get(AwaitingClaim, order.id)
        if claim is None or claim.status != "IN_HANDLING":
            raise ValidationError(f"order {order.id} is not being handled")
        if claim.handled_by != actor.id and ROLE_TIERS.get(actor.role, 0) < ROLE_TIERS["manager"]:
            raise Unauthorized(f"order {order.id} is handled by {claim.handled_by_name or claim.handled_by}")
        claim.status = "OPEN"
        claim.handled_by = None
        claim.handled_by_name = None
        claim.handled_at = None
    return claim


def list_awaiting_orders(s: Session, tenant_id: Optional[str] = None) -> List[AwaitingView]:
    stmt = select(Order).where(Order.status == OrderStatus.AWAITING_STOCK)
    if tenant_id:
        stmt = stmt.where(Order.tenant_id == tenant_id)
    orders = list(s.execute(stmt.order_by(Order.opened_at.asc())).scalars().all())
    ids = [o.id for o in orders]
    lines = lines_by_order(s, ids)
    claims = {}
    splits: Dict[str, List[SplitRecord]] = {}
    if ids:
        claims = {c.order_id: c for c in s.execute(select(AwaitingClaim).where(AwaitingClaim.order_id.in_(ids))).scalars()}
        for rec in s.execute(select(SplitRecord).where(SplitRecord.resulting_order_id.in_(ids))).scalars():
            splits.setdefault(rec.resulting_order_id, []).append(rec)
    return [
        AwaitingView(
            order=o,
            lines=[l for l in lines.get(o.id, []) if l.status != LineStatus.CANCELLED],
            claim=claims.get(o.id),
            splits=splits.get(o.id, []),
        )
        for o in orders
    ]


def splits_for(s: Session, order_id: str) -> List[SplitRecord]:
    return list(
        s.execute(
            select(SplitRecord)
            .where((SplitRecord.origin_order_id == order_id) | (SplitRecord.resulting_order_id == order_id))
            .order_by(SplitRecord.id.asc())
        ).scalars()
    )
