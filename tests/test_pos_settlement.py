from __future__ import annotations

import httpx
import pytest
from sqlalchemy import select

from apps.pos.app import loyalty, orders, settlement, splitter
from apps.pos.app.errors import (
    ConflictError,
    InvalidTransition,
    OrderAlreadySettled,
    Unauthorized,
    ValidationError,
)
from apps.pos.app.models import DebtStatus, OrderStatus, OrderType, PaymentRecord, PaymentStatus, Table
from apps.pos.app.orders import LineRequest, Shortfall
from apps.pos.app.settlement import LineSelection


def _panini(s, actor, cat, qty=4, **kw):
    res = orders.place_order(
        s, actor, OrderType.DINE_IN, [LineRequest(cat["panino"], qty)], table_id=cat["t2"], **kw
    )
    return res.order.id, res.lines[0].id


def test_partial_line_payment_then_close(session, catalog, waiter):
    oid, line_id = _panini(session, waiter, catalog)
    assert orders.get_order(session, oid).total_cents == 1000

    first = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 2)], method="card")
    assert first.payment.amount_cents == 500
    assert first.balance.remainder_cents == 500
    assert first.order_paid is False
    order = orders.get_order(session, oid)
    assert order.status == OrderStatus.ORDERED
    assert order.payment_status == PaymentStatus.PARTIALLY_PAID
    assert orders.get_line(session, line_id).paid_qty == 2

    second = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 2)], payer_name="Sam")
    assert second.balance.remainder_cents == 0
    assert second.order_paid is True
    order = orders.get_order(session, oid)
    assert order.status == OrderStatus.PAID
    assert order.payment_status == PaymentStatus.PAID
    assert order.closed_at is not None
    line = orders.get_line(session, line_id)
    assert line.is_paid is True
    assert line.paid_by_name == "Sam"
    assert session.get(Table, catalog["t2"]).status == "free"


def test_units_cannot_be_paid_twice(session, catalog, waiter):
    res = orders.place_order(
        session,
        waiter,
        OrderType.COUNTER,
        [LineRequest(catalog["tea"], 1), LineRequest(catalog["panino"], 2)],
    )
    tea, panino = res.lines
    settlement.pay_lines(session, waiter, res.order.id, [LineSelection(tea.id, 1)])

    with pytest.raises(ValidationError):
        settlement.pay_lines(session, waiter, res.order.id, [LineSelection(tea.id, 1)])
    with pytest.raises(ValidationError):
        settlement.pay_lines(session, waiter, res.order.id, [LineSelection(panino.id, 3)])
    with pytest.raises(ValidationError):
        settlement.pay_lines(session, waiter, res.order.id, [LineSelection(panino.id, 1), LineSelection(panino.id, 2)])
    with pytest.raises(ValidationError):
        settlement.pay_lines(session, waiter, res.order.id, [])
    assert settlement.get_balance(session, res.order.id).paid_cents == 100


def test_remainder_never_increases_while_paying(session, catalog, waiter):
    oid, line_id = _panini(session, waiter, catalog, qty=3)
    seen = [settlement.get_balance(session, oid).remainder_cents]
    for _ in range(3):
        res = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 1)])
        seen.append(res.balance.remainder_cents)
    assert seen == [750, 500, 250, 0]
    with pytest.raises(OrderAlreadySettled):
        settlement.pay_remainder(session, waiter, oid)


def test_pay_remainder_settles_everything_unpaid(session, catalog, waiter):
    res = orders.place_order(
        session,
        waiter,
        OrderType.COUNTER,
        [LineRequest(catalog["tea"], 2), LineRequest(catalog["espresso"], 1)],
    )
    settlement.pay_lines(session, waiter, res.order.id, [LineSelection(res.lines[0].id, 1)])
    out = settlement.pay_remainder(session, waiter, res.order.id)
    assert out.payment.amount_cents == 220
    assert out.order_paid is True


def test_awaiting_and_cancelled_orders_are_not_payable(session, catalog, waiter):
    res = orders.place_order(session, waiter, OrderType.COUNTER, [LineRequest(catalog["espresso"], 1)])
    splitter.split_for_shortfall(session, waiter, res.order.id, [Shortfall(res.lines[0].id, 1)])
    with pytest.raises(InvalidTransition):
        settlement.pay_remainder(session, waiter, res.order.id)

    other = orders.place_order(session, waiter, OrderType.COUNTER, [LineRequest(catalog["tea"], 1)])
    orders.cancel_order(session, waiter, other.order.id)
    with pytest.raises(InvalidTransition):
        settlement.pay_remainder(session, waiter, other.order.id)


def test_reversal_reopens_units_without_touching_the_original(session, catalog, waiter, cashier):
    oid, line_id = _panini(session, waiter, catalog)
    paid = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 3)])

    with pytest.raises(Unauthorized):
        settlement.reverse_payment(session, waiter, paid.payment.id)

    reversal = settlement.reverse_payment(session, cashier, paid.payment.id, reason="wrong card")
    assert reversal.amount_cents == -750
    assert reversal.reverses_id == paid.payment.id
    original = session.get(PaymentRecord, paid.payment.id)
    assert original.amount_cents == 750
    assert original.kind == "payment"

    bal = settlement.get_balance(session, oid)
    assert bal.paid_cents == 0
    assert bal.remainder_cents == 1000
    assert orders.get_line(session, line_id).paid_qty == 0
    assert orders.get_order(session, oid).payment_status == PaymentStatus.UNPAID

    with pytest.raises(ConflictError):
        settlement.reverse_payment(session, cashier, paid.payment.id)
    with pytest.raises(ValidationError):
        settlement.reverse_payment(session, cashier, reversal.id)


def test_paid_orders_cannot_be_reversed(session, catalog, waiter, cashier):
    oid, _ = _panini(session, waiter, catalog, qty=1)
    paid = settlement.pay_remainder(session, waiter, oid)
    with pytest.raises(OrderAlreadySettled):
        settlement.reverse_payment(session, cashier, paid.payment.id)


def test_idempotency_key_replays_the_first_payment(session, catalog, waiter):
    oid, line_id = _panini(session, waiter, catalog)
    first = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 1)], idempotency_key="till-1-0001")
    again = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 1)], idempotency_key="till-1-0001")
    assert again.replayed is True
    assert again.payment.id == first.payment.id
    assert len(session.execute(select(PaymentRecord)).scalars().all()) == 1
    assert orders.get_line(session, line_id).paid_qty == 1

    other_oid, other_line = _panini(session, waiter, catalog, qty=1)
    with pytest.raises(ConflictError):
        settlement.pay_lines(
            session, waiter, other_oid, [LineSelection(other_line, 1)], idempotency_key="till-1-0001"
        )


def test_debt_covers_the_remainder(session, catalog, waiter, cashier):
    oid, line_id = _panini(session, waiter, catalog)
    settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 2)])

    with pytest.raises(Unauthorized):
        settlement.record_debt(session, waiter, oid, "cust-7", 500)
    with pytest.raises(ValidationError):
        settlement.record_debt(session, cashier, oid, "cust-7", 501)

    debt = settlement.record_debt(session, cashier, oid, "cust-7", 300, note="regular")
    assert settlement.get_balance(session, oid).remainder_cents == 200
    assert orders.get_order(session, oid).status == OrderStatus.ORDERED

    settlement.record_debt(session, cashier, oid, "cust-7", 200)
    order = orders.get_order(session, oid)
    assert order.status == OrderStatus.PAID
    # a debt does not mark units as paid
    assert orders.get_line(session, line_id).paid_qty == 2

    debts = settlement.list_debts(session, customer_id="cust-7")
    assert {d.id for d in debts} >= {debt.id}
    assert sum(d.amount_cents for d in debts) == 500


def test_debt_repayment_lifecycle(session, catalog, waiter, cashier):
    oid, _ = _panini(session, waiter, catalog, qty=1)
    debt = settlement.record_debt(session, cashier, oid, "cust-9", 250)
    assert debt.status == DebtStatus.OPEN

    with pytest.raises(ValidationError):
        settlement.pay_debt(session, cashier, debt.id, 300)

    debt = settlement.pay_debt(session, cashier, debt.id, 100)
    assert debt.status == DebtStatus.PARTIALLY_PAID
    assert debt.amount_paid_cents == 100

    debt = settlement.pay_debt(session, cashier, debt.id, 150, method="card")
    assert debt.status == DebtStatus.SETTLED
    assert debt.settled_at is not None

    with pytest.raises(ConflictError):
        settlement.pay_debt(session, cashier, debt.id, 1)
    assert [d.id for d in settlement.list_debts(session, status=DebtStatus.SETTLED)] == [debt.id]


def test_loyalty_is_credited_once_the_order_is_paid(session, catalog, waiter, monkeypatch):
    calls = []

    def fake_award(order_id, customer_id, settled_cents):
        calls.append((order_id, customer_id, settled_cents))
        return 12

    monkeypatch.setattr(loyalty, "award_points", fake_award)
    oid, line_id = _panini(session, waiter, catalog, qty=2, customer_id="cust-1")

    first = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 1)])
    assert first.loyalty_points is None
    done = settlement.pay_lines(session, waiter, oid, [LineSelection(line_id, 1)])
    assert done.loyalty_points == 12
    assert calls == [(oid, "cust-1", 500)]


def test_loyalty_failure_does_not_undo_the_payment(session, catalog, waiter, monkeypatch):
    monkeypatch.setattr(loyalty, "LOYALTY_BASE_URL", "http://loyalty.internal")

    def boom(*a, **kw):
        raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(loyalty.httpx, "post", boom)
    oid, _ = _panini(session, waiter, catalog, qty=1, customer_id="cust-2")
    res = settlement.pay_remainder(session, waiter, oid)
    assert res.order_paid is True
    assert res.loyalty_points is None
    assert orders.get_order(session, oid).status == OrderStatus.PAID


def test_loyalty_client_reads_points(monkeypatch):
    monkeypatch.setattr(loyalty, "LOYALTY_BASE_URL", "http://loyalty.internal/")
    seen = {}

    def fake_post(url, json=None, timeout=None):
        seen["url"] = url
        seen["body"] = json
        return httpx.Response(200, json={"points": 7}, request=httpx.Request("POST", url))

    monkeypatch.setattr(loyalty.httpx, "post", fake_post)
    assert loyalty.award_points("o-1", "cust-3", 1250) == 7
    assert seen["url"] == "http://loyalty.internal/points/award"
    assert seen["body"] == {"order_id": "o-1", "customer_id": "cust-3", "amount_cents": 1250}


def test_loyalty_disabled_without_base_url(monkeypatch):
    monkeypatch.setattr(loyalty, "LOYALTY_BASE_URL", "")
    assert loyalty.award_points("o-1", "cust-3", 100) is None


def test_loyalty_reply_that_is_not_an_object_is_ignored(session, catalog, waiter, monkeypatch):
    monkeypatch.setattr(loyalty, "LOYALTY_BASE_URL", "http://loyalty.internal")

    def odd_reply(url, json=None, timeout=None):
        return httpx.Response(200, json=[], request=httpx.Request("POST", url))

    monkeypatch.setattr(loyalty.httpx, "post", odd_reply)
    assert loyalty.award_points("o-1", "cust-3", 100) is None

    oid, _ = _panini(session, waiter, catalog, qty=1, customer_id="cust-4")
    res = settlement.pay_remainder(session, waiter, oid)
    assert res.order_paid is True
    assert res.loyalty_points is None
