"""
Settlement: line payments, reversals and the customer debt ledger.

Money is integer cents throughout. The remainder of an order is always
derived from its records, never stored:

    remainder = max(0, total - sum(payments) - sum(debts))

where reversals count as negative payments. A payment record is never
edited after it is written; corrections are new reversal records.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .auth import CASHIER_TIER, Actor, authorize
from .db import atomic, locked
from .errors import ConflictError, InvalidTransition, NotFound, OrderAlreadySettled, ValidationError
from .events import (
    CASHIER,
    WAITER,
    DebtCreated,
    DebtPaid,
    PaymentCompleted,
    PaymentReversed,
    dispatch_after_commit,
    publish,
)
from . import loyalty
from .models import (
    DebtPayment,
    DebtRecord,
    DebtStatus,
    Order,
    OrderStatus,
    PaymentAllocation,
    PaymentRecord,
    PaymentStatus,
    utcnow,
)
from .orders import check_invariants, close_if_fully_paid, get_order, lines_of, new_id

_log = logging.getLogger("tableside.pos.settlement")

PAYMENT = "payment"
REVERSAL = "reversal"
METHODS = ("cash", "card", "voucher", "other")


@dataclass
class LineSelection:
    line_id: int
    quantity: int


@dataclass
class Balance:
    order_id: str
    total_cents: int
    paid_cents: int
    debt_cents: int
    remainder_cents: int
    overpaid_cents: int


@dataclass
class PaymentResult:
    payment: PaymentRecord
    balance: Balance
    order_paid: bool
    loyalty_points: Optional[int] = None
    replayed: bool = False


def compute_balance(s: Session, order: Order) -> Balance:
    paid = int(
        s.execute(
            select(func.coalesce(func.sum(PaymentRecord.amount_cents), 0)).where(PaymentRecord.order_id == order.id)
        ).scalar()
        or 0
    )
    debt = int(
        s.execute(select(func.coalesce(func.sum(DebtRecord.amount_cents), 0)).where(DebtRecord.order_id == order.id)).scalar()
        or 0
    )
    covered = paid + debt
    total = int(order.total_cents or 0)
    return Balance(
        order_id=order.id,
        total_cents=total,
        paid_cents=paid,
        debt_cents=debt,
        remainder_cents=max(0, total - covered),
        overpaid_cents=max(0, covered - total),
    )


def get_balance(s: Session, order_id: str) -> Balance:
    return compute_balance(s, get_order(s, order_id))


def payments_of(s: Session, order_id: str) -> List[PaymentRecord]:
    return list(
        s.execute(
            select(PaymentRecord).where(PaymentRecord.order_id == order_id).order_by(PaymentRecord.created_at.asc())
        ).scalars()
    )


def _ensure_payable(order: Order) -> None:
    if order.status == OrderStatus.PAID:
        raise OrderAlreadySettled(order.id)
    if order.status in (OrderStatus.CANCELLED, OrderStatus.AWAITING_STOCK):
        raise InvalidTransition("order", order.status, OrderStatus.PAID, order.id)


def _refresh(s: Session, actor: Actor, order: Order) -> tuple:
    """Re-derive payment status from the records and close the order if it is covered."""
    bal = compute_balance(s, order)
    if bal.overpaid_cents:
        _log.warning("order %s overpaid by %s cents", order.id, bal.overpaid_cents)
    if bal.remainder_cents == 0 and (bal.paid_cents or bal.debt_cents):
        order.payment_status = PaymentStatus.PAID
    elif bal.paid_cents or bal.debt_cents:
        order.payment_status = PaymentStatus.PARTIALLY_PAID
    else:
        order.payment_status = PaymentStatus.UNPAID
    closed = close_if_fully_paid(s, order, bal.remainder_cents, actor)
    return bal, closed


def _replay(s: Session, order_id: str, idempotency_key: Optional[str]) -> Optional[PaymentResult]:
    if not idempotency_key:
        return None
    existing = s.execute(select(PaymentRecord).where(PaymentRecord.idempotency_key == idempotency_key)).scalars().first()
    if existing is None:
        return None
    if existing.order_id != order_id:
        raise ConflictError("Idempotency-Key already used for another order", idempotency_key=idempotency_key)
    order = get_order(s, order_id)
    return PaymentResult(
        payment=existing,
        balance=compute_balance(s, order),
        order_paid=order.status == OrderStatus.PAID,
        replayed=True,
    )


def _check_method(method: str) -> None:
    if method not in METHODS:
        raise ValidationError(f"unknown payment method {method}")


def _pay(
    s: Session,
    actor: Actor,
    order: Order,
    selection: Sequence[LineSelection],
    method: str,
    payer_name: Optional[str],
    idempotency_key: Optional[str],
) -> PaymentRecord:
    if not selection:
        raise ValidationError("nothing selected to pay")
    wanted: Dict[int, int] = {}
    for sel in selection:
        if sel.quantity <= 0:
            raise ValidationError(f"quantity for line {sel.line_id} must be > 0")
        wanted[sel.line_id] = wanted.get(sel.line_id, 0) + sel.quantity
    lines = {l.id: l for l in lines_of(s, order.id, live_only=True)}
    amount = 0
    for line_id, qty in wanted.items():
        line = lines.get(line_id)
        if line is None:
            raise ValidationError(f"line {line_id} is not a live line of order {order.id}")
        if line.is_paid or line.outstanding_qty == 0:
            raise ValidationError(f"line {line_id} is already paid")
        if qty > line.outstanding_qty:
            raise ValidationError(f"line {line_id} has only {line.outstanding_qty} unpaid units")
        amount += qty * line.unit_price_cents
    payment = PaymentRecord(
        id=new_id(),
        order_id=order.id,
        amount_cents=amount,
        method=method,
        payer_name=payer_name,
        operator_id=actor.id,
        kind=PAYMENT,
        idempotency_key=idempotency_key,
    )
    s.add(payment)
    s.flush()
    for line_id, qty in wanted.items():
        line = lines[line_id]
        s.add(PaymentAllocation(payment_id=payment.id, line_id=line.id, quantity=qty, amount_cents=qty * line.unit_price_cents))
        line.paid_qty += qty
        line.is_paid = line.paid_qty == line.quantity
        if payer_name:
            line.paid_by_name = payer_name
    s.flush()
    return payment


def _settle(
    s: Session,
    actor: Actor,
    order_id: str,
    selection: Optional[Sequence[LineSelection]],
    method: str,
    payer_name: Optional[str],
    idempotency_key: Optional[str],
) -> PaymentResult:
    authorize(actor)
    _check_method(method)
    replay = _replay(s, order_id, idempotency_key)
    if replay is not None:
        _log.info("payment %s replayed for key %s", replay.payment.id, idempotency_key)
        return replay
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        _ensure_payable(order)
        if selection is None:
            selection = [
                LineSelection(line_id=l.id, quantity=l.outstanding_qty)
                for l in lines_of(s, order.id, live_only=True)
                if l.outstanding_qty > 0
            ]
            if not selection:
                raise ValidationError(f"order {order.id} has no unpaid lines")
        payment = _pay(s, actor, order, selection, method, payer_name, idempotency_key)
        bal, closed = _refresh(s, actor, order)
        publish(
            s,
            PaymentCompleted(
                order_id=order.id,
                payment_id=payment.id,
                table_id=order.table_id,
                amount_cents=payment.amount_cents,
                method=method,
                remainder_cents=bal.remainder_cents,
                order_paid=closed,
            ),
            (CASHIER, WAITER),
            order.tenant_id,
        )
        check_invariants(s, order)
        _log.info("payment %s on order %s: %s cents by %s", payment.id, order.id, payment.amount_cents, method)
    dispatch_after_commit(s)
    points = None
    if closed and order.customer_id:
        points = loyalty.award_points(order.id, order.customer_id, bal.paid_cents)
    return PaymentResult(payment=payment, balance=bal, order_paid=closed, loyalty_points=points)


def pay_lines(
    s: Session,
    actor: Actor,
    order_id: str,
    selection: Sequence[LineSelection],
    method: str = "cash",
    payer_name: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> PaymentResult:
    """Pay the selected units of specific lines; closes the order once nothing is left."""
    return _settle(s, actor, order_id, list(selection), method, payer_name, idempotency_key)


def pay_remainder(
    s: Session,
    actor: Actor,
    order_id: str,
    method: str = "cash",
    payer_name: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> PaymentResult:
    """Pay every unpaid unit of the order in one go."""
    return _settle(s, actor, order_id, None, method, payer_name, idempotency_key)


def reverse_payment(s: Session, actor: Actor, payment_id: str, reason: Optional[str] = None) -> PaymentRecord:
    """Write a compensating record for ``payment_id`` and reopen the units it covered."""
    authorize(actor, CASHIER_TIER)
    with atomic(s):
        original = s.get(PaymentRecord, payment_id)
        if original is None:
            raise NotFound(f"payment {payment_id} not found")
        if original.kind != PAYMENT:
            raise ValidationError(f"payment {payment_id} is itself a reversal")
        already = s.execute(select(PaymentRecord.id).where(PaymentRecord.reverses_id == payment_id)).first()
        if already:
            raise ConflictError(f"payment {payment_id} is already reversed")
        order = get_order(s, original.order_id, lock=True)
        # awaiting-stock orders can still be refunded
        if order.status == OrderStatus.PAID:
            raise OrderAlreadySettled(order.id)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransition("order", order.status, "reverse payment", order.id)
        reversal = PaymentRecord(
            id=new_id(),
            order_id=order.id,
            amount_cents=-original.amount_cents,
            method=original.method,
            payer_name=original.payer_name,
            operator_id=actor.id,
            kind=REVERSAL,
            reverses_id=original.id,
            reason=reason,
        )
        s.add(reversal)
        s.flush()
        lines = {l.id: l for l in lines_of(s, order.id)}
        allocations = s.execute(select(PaymentAllocation).where(PaymentAllocation.payment_id == original.id)).scalars().all()
        for alloc in allocations:
            line = lines.get(alloc.line_id)
            if line is None:
                continue
            line.paid_qty = max(0, line.paid_qty - alloc.quantity)
            line.is_paid = False
            if line.paid_qty == 0:
                line.paid_by_name = None
            s.add(
                PaymentAllocation(
                    payment_id=reversal.id, line_id=line.id, quantity=-alloc.quantity, amount_cents=-alloc.amount_cents
                )
            )
        _refresh(s, actor, order)
        publish(
            s,
            PaymentReversed(
                order_id=order.id,
                payment_id=reversal.id,
                reversed_payment_id=original.id,
                amount_cents=original.amount_cents,
                reason=reason,
            ),
            (CASHIER, WAITER),
            order.tenant_id,
        )
        check_invariants(s, order)
        _log.info("payment %s reversed by %s: %s", original.id, actor.id, reason)
    dispatch_after_commit(s)
    return reversal


def record_debt(
    s: Session, actor: Actor, order_id: str, customer_id: str, amount_cents: int, note: Optional[str] = None
) -> DebtRecord:
    """Put part or all of an order's remainder on a customer's tab."""
    authorize(actor, CASHIER_TIER)
    if not customer_id:
        raise ValidationError("customer_id required")
    if amount_cents <= 0:
        raise ValidationError("amount must be > 0")
    with atomic(s):
        order = get_order(s, order_id, lock=True)
        _ensure_payable(order)
        bal = compute_balance(s, order)
        if amount_cents > bal.remainder_cents:
            raise ValidationError(f"debt of {amount_cents} exceeds remainder {bal.remainder_cents}")
        debt = DebtRecord(
            id=new_id(),
            customer_id=customer_id,
            order_id=order.id,
            amount_cents=amount_cents,
            amount_paid_cents=0,
            status=DebtStatus.OPEN,
            operator_id=actor.id,
            note=note,
        )
        s.add(debt)
        s.flush()
        _refresh(s, actor, order)
        publish(
            s,
            DebtCreated(
                debt_id=debt.id,
                order_id=order.id,
                customer_id=customer_id,
                amount_cents=amount_cents,
                table_id=order.table_id,
            ),
            (CASHIER,),
            order.tenant_id,
        )
        _log.info("debt %s of %s cents for customer %s on order %s", debt.id, amount_cents, customer_id, order.id)
    dispatch_after_commit(s)
    return debt


def pay_debt(s: Session, actor: Actor, debt_id: str, amount_cents: int, method: str = "cash") -> DebtRecord:
    authorize(actor, CASHIER_TIER)
    _check_method(method)
    if amount_cents <= 0:
        raise ValidationError("amount must be > 0")
    with atomic(s):
        debt = s.execute(locked(s, select(DebtRecord).where(DebtRecord.id == debt_id))).scalars().first()
        if debt is None:
            raise NotFound(f"debt {debt_id} not found")
        if debt.status == DebtStatus.SETTLED:
            raise ConflictError(f"debt {debt_id} is already settled")
        outstanding = debt.amount_cents - debt.amount_paid_cents
        if amount_cents > outstanding:
            raise ValidationError(f"payment of {amount_cents} exceeds outstanding debt {outstanding}")
        s.add(DebtPayment(id=new_id(), debt_id=debt.id, amount_cents=amount_cents, method=method, operator_id=actor.id))
        debt.amount_paid_cents += amount_cents
        if debt.amount_paid_cents == debt.amount_cents:
            debt.status = DebtStatus.SETTLED
            debt.settled_at = utcnow()
        else:
            debt.status = DebtStatus.PARTIALLY_PAID
        order = s.get(Order, debt.order_id)
        publish(
            s,
            DebtPaid(
                debt_id=debt.id,
                amount_cents=amount_cents,
                remaining_cents=debt.amount_cents - debt.amount_paid_cents,
                status=debt.status,
            ),
            (CASHIER,),
            order.tenant_id if order else actor.tenant_id,
        )
    dispatch_after_commit(s)
    return debt


def list_debts(
    s: Session, customer_id: Optional[str] = None, status: Optional[str] = None, tenant_id: Optional[str] = None
) -> List[DebtRecord]:
    stmt = select(DebtRecord)
    if tenant_id:
        stmt = stmt.join(Order, Order.id == DebtRecord.order_id).where(Order.tenant_id == tenant_id)
    if customer_id:
        stmt = stmt.where(DebtRecord.customer_id == customer_id)
    if status:
        stmt = stmt.where(DebtRecord.status == status)
    return list(s.execute(stmt.order_by(DebtRecord.created_at.desc())).scalars())
