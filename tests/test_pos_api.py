from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import apps.pos.app.main as pos  # type: ignore[import]
from apps.pos.app.auth import Actor


def _order(client, hdrs, cat, items, **extra):
    body = {"type": "DINE_IN", "table_id": cat["t1"], "lines": [{"product_id": cat[k], "quantity": q} for k, q in items]}
    body.update(extra)
    r = client.post("/orders", json=body, headers=hdrs)
    assert r.status_code == 200, r.text
    return r.json()


def test_health_reports_checks(client, catalog):
    r = client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["checks"]["db"] is True
    assert data["checks"]["outbox_pending"] == 0


def test_actor_headers_are_required(client, catalog):
    r = client.post("/orders", json={"type": "COUNTER", "lines": [{"product_id": catalog["tea"], "quantity": 1}]})
    assert r.status_code == 401


def test_order_lifecycle_over_http(client, catalog, waiter, cashier, headers):
    w = headers(waiter)
    placed = _order(client, w, catalog, [("espresso", 2), ("cornetto", 1)])
    oid = placed["order"]["id"]
    assert placed["order"]["total_cents"] == 390
    assert placed["split"] is None
    espresso_line = placed["lines"][0]["id"]

    r = client.post(f"/orders/{oid}/shortfall", json={"shortfalls": [{"line_id": espresso_line, "quantity": 1}]}, headers=w)
    assert r.status_code == 200, r.text
    split = r.json()
    assert split["whole_order_blocked"] is False
    sibling = split["resulting_order_id"]

    detail = client.get(f"/orders/{oid}", headers=w).json()
    assert detail["order"]["total_cents"] == 270
    assert detail["balance"]["remainder_cents"] == 270
    assert detail["splits"][0]["shortfall_qty"] == 1

    awaiting = client.get("/awaiting", headers=w).json()
    assert [a["order"]["id"] for a in awaiting] == [sibling]

    r = client.post(f"/awaiting/{sibling}/claim", headers=w)
    assert r.status_code == 200
    assert r.json()["status"] == "IN_HANDLING"

    r = client.post(f"/orders/{sibling}/resolve", json={"action": "cancel", "reason": "no beans"}, headers=w)
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "CANCELLED"

    lines = {l["product_id"]: l["id"] for l in detail["lines"] if l["status"] != "CANCELLED"}
    r = client.post(
        f"/orders/{oid}/payments",
        json={"lines": [{"line_id": lines[catalog["cornetto"]], "quantity": 1}], "method": "card"},
        headers=w,
    )
    assert r.status_code == 200, r.text
    assert r.json()["balance"]["remainder_cents"] == 120

    r = client.post(f"/orders/{oid}/payments/remainder", json={"method": "cash"}, headers=w)
    assert r.json()["order_paid"] is True
    assert client.get(f"/orders/{oid}/balance", headers=w).json()["remainder_cents"] == 0

    r = client.post(f"/orders/{oid}/payments/remainder", json={"method": "cash"}, headers=w)
    assert r.status_code == 409
    assert r.json()["error"] == "OrderAlreadySettled"


def test_status_endpoint_enforces_the_graph(client, catalog, waiter, headers):
    w = headers(waiter)
    oid = _order(client, w, catalog, [("tea", 1)])["order"]["id"]
    r = client.post(f"/orders/{oid}/status", json={"status": "READY"}, headers=w)
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "InvalidTransition"
    assert body["context"]["current"] == "ORDERED"
    assert client.post(f"/orders/{oid}/status", json={"status": "IN_PROGRESS"}, headers=w).json()["status"] == "IN_PROGRESS"


def test_inventory_endpoints(client, catalog, waiter, headers):
    w = headers(waiter)
    pid = catalog["espresso"]
    r = client.post(f"/inventory/{pid}/limit", json={"quantity": 2, "note": "last bag"}, headers=w)
    assert r.status_code == 200
    assert r.json()["product_name"] == "Espresso"

    short = client.post(f"/inventory/{pid}/reserve", json={"quantity": 3}, headers=w)
    assert short.status_code == 409
    assert short.json()["error"] == "InsufficientStock"
    assert short.json()["context"]["remaining"] == 2
    assert client.post(f"/inventory/{pid}/reserve", json={"quantity": 2}, headers=w).json()["remaining"] == 0
    assert client.post(f"/inventory/{pid}/release", json={"quantity": 1}, headers=w).json()["remaining_qty"] == 1
    assert [e["product_id"] for e in client.get("/inventory", headers=w).json()] == [pid]
    assert client.post(f"/inventory/{pid}/limit", json={"quantity": -1}, headers=w).status_code == 422

    assert client.delete(f"/inventory/{pid}", headers=w).json()["ok"] is True
    assert client.get(f"/inventory/{pid}", headers=w).json() is None
    assert client.get("/inventory/99999", headers=w).status_code == 404


def test_placement_over_stock_splits_immediately(client, catalog, waiter, headers):
    w = headers(waiter)
    client.post(f"/inventory/{catalog['espresso']}/limit", json={"quantity": 0}, headers=w)
    placed = _order(client, w, catalog, [("espresso", 1), ("tea", 1)])
    assert placed["split"]["items"][0]["shortfall"] == 1
    assert placed["order"]["total_cents"] == 100


def test_payment_idempotency_header(client, catalog, waiter, headers):
    w = headers(waiter)
    placed = _order(client, w, catalog, [("panino", 2)])
    oid, line = placed["order"]["id"], placed["lines"][0]["id"]
    body = {"lines": [{"line_id": line, "quantity": 1}]}
    h = dict(w, **{"Idempotency-Key": "k-1"})
    a = client.post(f"/orders/{oid}/payments", json=body, headers=h).json()
    b = client.post(f"/orders/{oid}/payments", json=body, headers=h).json()
    assert a["payment"]["id"] == b["payment"]["id"]
    assert b["replayed"] is True
    assert client.get(f"/orders/{oid}/balance", headers=w).json()["remainder_cents"] == 250


def test_debts_over_http(client, catalog, waiter, cashier, headers):
    w, c = headers(waiter), headers(cashier)
    placed = _order(client, w, catalog, [("panino", 1)])
    oid = placed["order"]["id"]
    assert client.post(f"/orders/{oid}/debts", json={"customer_id": "cust-1", "amount_cents": 250}, headers=w).status_code == 403
    debt = client.post(f"/orders/{oid}/debts", json={"customer_id": "cust-1", "amount_cents": 250}, headers=c).json()
    assert debt["status"] == "OPEN"
    r = client.post(f"/debts/{debt['id']}/payments", json={"amount_cents": 250}, headers=c)
    assert r.json()["status"] == "SETTLED"
    assert len(client.get("/debts?customer_id=cust-1", headers=c).json()) == 1


def test_internal_secret_guard(client, catalog, waiter, headers, monkeypatch):
    monkeypatch.setattr(pos, "INTERNAL_SECRET", "s3cret")
    assert client.get("/health").status_code == 200
    assert client.get("/inventory", headers=headers(waiter)).status_code == 403
    ok = client.get("/inventory", headers=dict(headers(waiter), **{"X-Internal-Secret": "s3cret"}))
    assert ok.status_code == 200


def test_station_socket_gets_snapshot_and_live_events(app, catalog, waiter, headers):
    w = headers(waiter)
    with TestClient(app) as c:
        _order(c, w, catalog, [("cornetto", 1), ("tea", 1)])
        with c.websocket_connect("/pos/ws?station=kitchen", headers=w) as sock:
            snap = sock.receive_json()
            assert snap["type"] == "snapshot"
            assert len(snap["orders"]) == 1
            assert [l["station"] for l in snap["orders"][0]["lines"]] == ["kitchen"]

            _order(c, w, catalog, [("cornetto", 2)], table_id=catalog["t2"])
            msg = sock.receive_json()
            assert msg["type"] == "order.placed"
            assert msg["payload"]["items"][0]["quantity"] == 2


def test_station_socket_needs_an_actor(client, catalog, waiter, headers, monkeypatch):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/pos/ws?station=kitchen"):
            pass

    monkeypatch.setattr(pos, "INTERNAL_SECRET", "s3cret")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/pos/ws?station=kitchen", headers=headers(waiter)):
            pass
    hdrs = dict(headers(waiter), **{"X-Internal-Secret": "s3cret"})
    with client.websocket_connect("/pos/ws?station=kitchen", headers=hdrs) as sock:
        assert sock.receive_json()["type"] == "snapshot"


def test_station_socket_only_sees_its_tenant(client, catalog, waiter, headers):
    _order(client, headers(waiter), catalog, [("cornetto", 1)])
    outsider = Actor(id="w-9", role="waiter", tenant_id="diner", name="Nico")
    with client.websocket_connect("/pos/ws?station=kitchen&tenant=bistro", headers=headers(outsider)) as sock:
        snap = sock.receive_json()
    assert snap["orders"] == []


def test_order_reads_are_scoped_to_the_tenant(client, catalog, waiter, cashier, headers):
    w, c = headers(waiter), headers(cashier)
    oid = _order(client, w, catalog, [("panino", 1)])["order"]["id"]
    client.post(f"/orders/{oid}/debts", json={"customer_id": "cust-5", "amount_cents": 250}, headers=c)

    outsider = headers(Actor(id="c-9", role="cashier", tenant_id="diner", name="Nico"))
    assert client.get(f"/orders/{oid}", headers=outsider).status_code == 404
    assert client.get(f"/orders/{oid}/balance", headers=outsider).status_code == 404
    assert client.get("/debts?customer_id=cust-5", headers=outsider).json() == []

    assert client.get(f"/orders/{oid}", headers=w).status_code == 200
    assert len(client.get("/debts?customer_id=cust-5", headers=c).json()) == 1
