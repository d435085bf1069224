"""
Inventory ledger: a bounded remaining-quantity counter per product.

A product without an entry is not stock-limited. Every function here runs
inside the caller's transaction and never commits.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from .auth import Actor
from .db import locked
from .errors import NotFound, ValidationError
from .events import FLOOR, InventoryReset, InventoryUpdated, StockDepleted, StockRestored, publish
from .models import InventoryEntry, Product, utcnow

_log = logging.getLogger("tableside.pos.inventory")


@dataclass
class Reservation:
    ok: bool
    product_id: int
    requested: int
    # None when the product is not stock-limited
    remaining: Optional[int]


def get_product(s: Session, product_id: int) -> Product:
    product = s.get(Product, product_id)
    if not product:
        raise NotFound(f"product {product_id} not found")
    return product


def get_entry(s: Session, product_id: int) -> Optional[InventoryEntry]:
    return s.execute(select(InventoryEntry).where(InventoryEntry.product_id == product_id)).scalars().first()


def _remaining(s: Session, product_id: int) -> Optional[int]:
    return s.execute(
        select(InventoryEntry.remaining_qty).where(InventoryEntry.product_id == product_id)
    ).scalar_one_or_none()


def _set_available(s: Session, product: Product, available: bool, actor: Optional[Actor], remaining: Optional[int] = None) -> None:
    if bool(product.available) == available:
        return
    product.available = available
    who = actor.display_name if actor else None
    tenant = actor.tenant_id if actor else None
    if available:
        _log.info("product %s (%s) available again", product.id, product.name)
        publish(s, StockRestored(product_id=product.id, product_name=product.name, remaining=remaining, updated_by=who), FLOOR, tenant)
    else:
        _log.info("product %s (%s) depleted", product.id, product.name)
        publish(s, StockDepleted(product_id=product.id, product_name=product.name, updated_by=who), FLOOR, tenant)


def set_limit(s: Session, product_id: int, quantity: int, note: Optional[str] = None, actor: Optional[Actor] = None) -> InventoryEntry:
    if quantity < 0:
        raise ValidationError("quantity must be >= 0")
    product = get_product(s, product_id)
    entry = s.execute(locked(s, select(InventoryEntry).where(InventoryEntry.product_id == product_id))).scalars().first()
    if entry is None:
        entry = InventoryEntry(product_id=product_id)
        s.add(entry)
    entry.remaining_qty = quantity
    entry.note = note
    entry.last_updated_by = actor.id if actor else None
    entry.last_updated_at = utcnow()
    s.flush()
    _set_available(s, product, quantity > 0, actor, remaining=quantity)
    publish(
        s,
        InventoryUpdated(
            product_id=product_id,
            product_name=product.name,
            remaining=quantity,
            updated_by=actor.display_name if actor else None,
            note=note,
        ),
        FLOOR,
        actor.tenant_id if actor else None,
    )
    return entry


def reserve(s: Session, product_id: int, quantity: int, actor: Optional[Actor] = None) -> Reservation:
    """
    Take ``quantity`` units if and only if that many remain.

    The check and the decrement are one conditional UPDATE, so concurrent
    reservations serialize on the row and can never drive the counter below
    zero. Insufficient stock is reported with ``ok=False``, never raised.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")
    product = get_product(s, product_id)
    res = s.execute(
        update(InventoryEntry)
        .where(InventoryEntry.product_id == product_id, InventoryEntry.remaining_qty >= quantity)
        .values(remaining_qty=InventoryEntry.remaining_qty - quantity, last_updated_at=utcnow())
    )
    remaining = _remaining(s, product_id)
    if remaining is None:
        return Reservation(ok=True, product_id=product_id, requested=quantity, remaining=None)
    if res.rowcount != 1:
        _log.info("reserve %sx product %s refused, %s remaining", quantity, product_id, remaining)
        return Reservation(ok=False, product_id=product_id, requested=quantity, remaining=remaining)
    if remaining == 0:
        _set_available(s, product, False, actor)
    return Reservation(ok=True, product_id=product_id, requested=quantity, remaining=remaining)


def release(s: Session, product_id: int, quantity: int, actor: Optional[Actor] = None) -> Optional[int]:
    """Give ``quantity`` units back. No-op for products that are not stock-limited."""
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")
    product = get_product(s, product_id)
    res = s.execute(
        update(InventoryEntry)
        .where(InventoryEntry.product_id == product_id)
        .values(remaining_qty=InventoryEntry.remaining_qty + quantity, last_updated_at=utcnow())
    )
    if res.rowcount != 1:
        return None
    remaining = _remaining(s, product_id)
    if remaining is not None and remaining - quantity == 0:
        _set_available(s, product, True, actor, remaining=remaining)
    return remaining


def reset(s: Session, product_id: int, actor: Optional[Actor] = None) -> None:
    """Stop tracking the product; it becomes unconstrained and available."""
    product = get_product(s, product_id)
    s.execute(delete(InventoryEntry).where(InventoryEntry.product_id == product_id))
    _set_available(s, product, True, actor)
    publish(
        s,
        InventoryReset(product_id=product_id, product_name=product.name, reset_by=actor.display_name if actor else None),
        FLOOR,
        actor.tenant_id if actor else None,
    )


def list_limited(s: Session) -> List[tuple]:
    """All tracked products with their names, most recently updated first."""
    rows = s.execute(
        select(InventoryEntry, Product.name)
        .join(Product, Product.id == InventoryEntry.product_id)
        .order_by(InventoryEntry.last_updated_at.desc())
    ).all()
    return [(entry, name) for entry, name in rows]
