import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from tableside_shared import RequestIDMiddleware, add_standard_health, configure_cors, setup_json_logging

from . import db, inventory, orders, settlement, splitter, ws
from .auth import Actor, actor_from_headers, authorize, current_actor
from .config import ALLOWED_ORIGINS, CURRENCY, INTERNAL_SECRET, OUTBOX_DRAIN_INTERVAL_SECS
from .db import atomic, get_session
from .errors import InsufficientStock, NotFound, PosError, Unauthorized
from .events import dispatch_after_commit, dispatch_pending, pending_count
from .models import Order, OrderStatus
from .schemas import (
    AwaitingOut,
    BalanceOut,
    CancelIn,
    ClaimOut,
    DebtCreate,
    DebtOut,
    DebtPayIn,
    InventoryEntryOut,
    LimitIn,
    LineStatusIn,
    LinesAdd,
    OrderCreate,
    OrderDetail,
    OrderLineOut,
    OrderOut,
    PayLinesIn,
    PaymentOut,
    PaymentResultOut,
    PayRemainderIn,
    PlacementOut,
    QuantityIn,
    ReservationOut,
    ResolveIn,
    ReverseIn,
    SplitIn,
    SplitOut,
    SplitRecordOut,
    StatusIn,
)

_log = logging.getLogger("tableside.pos")


def _drain_outbox_once() -> int:
    with Session(db.engine) as s:
        return dispatch_pending(s)


async def _drain_outbox_forever():
    while True:
        await asyncio.sleep(OUTBOX_DRAIN_INTERVAL_SECS)
        try:
            await asyncio.to_thread(_drain_outbox_once)
        except Exception as e:
            _log.warning("outbox drain failed: %s", e)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    db.on_startup()
    q = ws.bind_loop(asyncio.get_running_loop())
    tasks = [
        asyncio.create_task(ws.drain_queue_forever(q)),
        asyncio.create_task(_drain_outbox_forever()),
    ]
    try:
        yield
    finally:
        ws.unbind_loop()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass


def _db_check():
    with Session(db.engine) as s:
        return db.ping(s)


def _outbox_check():
    with Session(db.engine) as s:
        return pending_count(s)


app = FastAPI(title="Tableside POS", version="0.1.0", lifespan=_lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, ALLOWED_ORIGINS)
add_standard_health(app, checks={"db": _db_check, "outbox_pending": _outbox_check})


@app.middleware("http")
async def _internal_secret_guard(request: Request, call_next):
    if not INTERNAL_SECRET:
        return await call_next(request)
    path = request.url.path
    if path.startswith("/health") or path.startswith("/pos/ws"):
        return await call_next(request)
    hdr = (request.headers.get("X-Internal-Secret") or "").strip()
    if not hdr or not hmac.compare_digest(hdr, INTERNAL_SECRET):
        return Response(status_code=403, content="forbidden")
    return await call_next(request)


@app.exception_handler(PosError)
async def _pos_error(request: Request, exc: PosError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__, "context": exc.context},
    )


router = APIRouter(dependencies=[Depends(current_actor)])


# --- inventory ---


def _entry_out(entry, name: Optional[str] = None) -> InventoryEntryOut:
    out = InventoryEntryOut.model_validate(entry)
    if name is not None:
        out.product_name = name
    return out


@router.get("/inventory", response_model=List[InventoryEntryOut])
def list_inventory(s: Session = Depends(get_session)):
    return [_entry_out(e, name) for e, name in inventory.list_limited(s)]


@router.get("/inventory/{product_id}", response_model=Optional[InventoryEntryOut])
def get_inventory(product_id: int, s: Session = Depends(get_session)):
    product = inventory.get_product(s, product_id)
    entry = inventory.get_entry(s, product_id)
    return _entry_out(entry, product.name) if entry else None


@router.post("/inventory/{product_id}/limit", response_model=InventoryEntryOut)
def set_inventory_limit(product_id: int, req: LimitIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    authorize(actor)
    with atomic(s):
        entry = inventory.set_limit(s, product_id, req.quantity, note=req.note, actor=actor)
    dispatch_after_commit(s)
    return _entry_out(entry, inventory.get_product(s, product_id).name)


@router.post("/inventory/{product_id}/reserve", response_model=ReservationOut)
def reserve_inventory(product_id: int, req: QuantityIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    authorize(actor)
    with atomic(s):
        res = inventory.reserve(s, product_id, req.quantity, actor=actor)
        if not res.ok:
            raise InsufficientStock(product_id, req.quantity, res.remaining or 0)
    dispatch_after_commit(s)
    return res


@router.post("/inventory/{product_id}/release", response_model=Optional[InventoryEntryOut])
def release_inventory(product_id: int, req: QuantityIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    authorize(actor)
    with atomic(s):
        inventory.release(s, product_id, req.quantity, actor=actor)
    dispatch_after_commit(s)
    entry = inventory.get_entry(s, product_id)
    return _entry_out(entry, inventory.get_product(s, product_id).name) if entry else None


@router.delete("/inventory/{product_id}")
def reset_inventory(product_id: int, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    authorize(actor)
    with atomic(s):
        inventory.reset(s, product_id, actor=actor)
    dispatch_after_commit(s)
    return {"ok": True, "product_id": product_id}


# --- orders ---


def _detail(s: Session, order: Order) -> OrderDetail:
    return OrderDetail(
        order=OrderOut.model_validate(order),
        lines=[OrderLineOut.model_validate(l) for l in orders.lines_of(s, order.id)],
        payments=[PaymentOut.model_validate(p) for p in settlement.payments_of(s, order.id)],
        balance=_balance_out(settlement.compute_balance(s, order)),
        splits=[SplitRecordOut.model_validate(r) for r in splitter.splits_for(s, order.id)],
    )


def _tenant_order(s: Session, actor: Actor, order_id: str) -> Order:
    order = orders.get_order(s, order_id)
    if actor.tenant_id and order.tenant_id != actor.tenant_id:
        raise NotFound(f"order {order_id} not found")
    return order


def _balance_out(bal) -> BalanceOut:
    out = BalanceOut.model_validate(bal)
    out.currency = CURRENCY
    return out


def _placement_out(res: orders.PlacementResult) -> PlacementOut:
    return PlacementOut(
        order=OrderOut.model_validate(res.order),
        lines=[OrderLineOut.model_validate(l) for l in res.lines],
        split=SplitOut.model_validate(res.split) if res.split is not None else None,
    )


def _line_requests(req_lines) -> List[orders.LineRequest]:
    return [orders.LineRequest(product_id=l.product_id, quantity=l.quantity, note=l.note) for l in req_lines]


@router.post("/orders", response_model=PlacementOut)
def place_order(req: OrderCreate, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    res = orders.place_order(
        s,
        actor,
        req.type,
        _line_requests(req.lines),
        table_id=req.table_id,
        customer_name=req.customer_name,
        customer_id=req.customer_id,
        note=req.note,
        allow_split=req.allow_split,
    )
    return _placement_out(res)


@router.get("/orders", response_model=List[OrderOut])
def list_orders(status: str = "", table_id: Optional[int] = None, limit: int = 50, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    stmt = select(Order)
    if status:
        stmt = stmt.where(Order.status == status)
    if table_id is not None:
        stmt = stmt.where(Order.table_id == table_id)
    if actor.tenant_id:
        stmt = stmt.where(Order.tenant_id == actor.tenant_id)
    return s.execute(stmt.order_by(Order.opened_at.desc()).limit(max(1, min(limit, 200)))).scalars().all()


@router.get("/orders/{order_id}", response_model=OrderDetail)
def get_order(order_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return _detail(s, _tenant_order(s, actor, order_id))


@router.post("/orders/{order_id}/lines", response_model=PlacementOut)
def add_lines(order_id: str, req: LinesAdd, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return _placement_out(orders.add_lines(s, actor, order_id, _line_requests(req.lines), allow_split=req.allow_split))


@router.post("/orders/{order_id}/status", response_model=OrderOut)
def change_order_status(order_id: str, req: StatusIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return orders.change_status(s, actor, order_id, req.status)


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: str, req: CancelIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return orders.cancel_order(s, actor, order_id, reason=req.reason)


@router.post("/lines/{line_id}/quantity", response_model=OrderLineOut)
def change_line_quantity(line_id: int, req: QuantityIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return orders.change_line_quantity(s, actor, line_id, req.quantity)


@router.post("/lines/{line_id}/cancel", response_model=OrderLineOut)
def cancel_line(line_id: int, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return orders.cancel_line(s, actor, line_id)


@router.post("/lines/{line_id}/status", response_model=OrderLineOut)
def advance_line(line_id: int, req: LineStatusIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return orders.advance_line(s, actor, line_id, req.status)


# --- shortfall handling ---


@router.post("/orders/{order_id}/shortfall", response_model=SplitOut)
def split_for_shortfall(order_id: str, req: SplitIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    shortfalls = [orders.Shortfall(line_id=x.line_id, quantity=x.quantity) for x in req.shortfalls]
    return splitter.split_for_shortfall(s, actor, order_id, shortfalls, allow_split=req.allow_split)


@router.post("/orders/{order_id}/resolve", response_model=OrderDetail)
def resolve_awaiting_order(order_id: str, req: ResolveIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    subs = [
        splitter.Substitute(product_id=x.product_id, quantity=x.quantity, unit_price_cents=x.unit_price_cents, note=x.note)
        for x in req.substitutes
    ]
    order = splitter.resolve_awaiting_order(s, actor, order_id, req.action, substitutes=subs, reason=req.reason)
    return _detail(s, order)


@router.get("/awaiting", response_model=List[AwaitingOut])
def list_awaiting(actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return [
        AwaitingOut(
            order=OrderOut.model_validate(v.order),
            lines=[OrderLineOut.model_validate(l) for l in v.lines],
            claim=ClaimOut.model_validate(v.claim) if v.claim else None,
            splits=[SplitRecordOut.model_validate(r) for r in v.splits],
        )
        for v in splitter.list_awaiting_orders(s, tenant_id=actor.tenant_id)
    ]


@router.post("/awaiting/{order_id}/claim", response_model=ClaimOut)
def claim_awaiting(order_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return splitter.claim_awaiting_order(s, actor, order_id)


@router.post("/awaiting/{order_id}/release", response_model=ClaimOut)
def release_awaiting(order_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return splitter.release_awaiting_claim(s, actor, order_id)


# --- settlement ---


def _result_out(res: settlement.PaymentResult) -> PaymentResultOut:
    return PaymentResultOut(
        payment=PaymentOut.model_validate(res.payment),
        balance=_balance_out(res.balance),
        order_paid=res.order_paid,
        loyalty_points=res.loyalty_points,
        replayed=res.replayed,
    )


@router.post("/orders/{order_id}/payments", response_model=PaymentResultOut)
def pay_lines(
    order_id: str,
    req: PayLinesIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
):
    selection = [settlement.LineSelection(line_id=x.line_id, quantity=x.quantity) for x in req.lines]
    res = settlement.pay_lines(
        s, actor, order_id, selection, method=req.method, payer_name=req.payer_name, idempotency_key=idempotency_key
    )
    return _result_out(res)


@router.post("/orders/{order_id}/payments/remainder", response_model=PaymentResultOut)
def pay_remainder(
    order_id: str,
    req: PayRemainderIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    actor: Actor = Depends(current_actor),
    s: Session = Depends(get_session),
):
    res = settlement.pay_remainder(
        s, actor, order_id, method=req.method, payer_name=req.payer_name, idempotency_key=idempotency_key
    )
    return _result_out(res)


@router.post("/payments/{payment_id}/reverse", response_model=PaymentOut)
def reverse_payment(payment_id: str, req: ReverseIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return settlement.reverse_payment(s, actor, payment_id, reason=req.reason)


@router.get("/orders/{order_id}/balance", response_model=BalanceOut)
def get_balance(order_id: str, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return _balance_out(settlement.compute_balance(s, _tenant_order(s, actor, order_id)))


@router.post("/orders/{order_id}/debts", response_model=DebtOut)
def record_debt(order_id: str, req: DebtCreate, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return settlement.record_debt(s, actor, order_id, req.customer_id, req.amount_cents, note=req.note)


@router.post("/debts/{debt_id}/payments", response_model=DebtOut)
def pay_debt(debt_id: str, req: DebtPayIn, actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return settlement.pay_debt(s, actor, debt_id, req.amount_cents, method=req.method)


@router.get("/debts", response_model=List[DebtOut])
def list_debts(customer_id: str = "", status: str = "", actor: Actor = Depends(current_actor), s: Session = Depends(get_session)):
    return settlement.list_debts(s, customer_id=customer_id or None, status=status or None, tenant_id=actor.tenant_id)


app.include_router(router)


def _station_snapshot(s: Session, station: str, tenant: Optional[str]) -> dict:
    stmt = select(Order).where(Order.status.not_in(OrderStatus.TERMINAL))
    stmt = stmt.where(Order.tenant_id == tenant) if tenant else stmt.where(Order.tenant_id.is_(None))
    open_orders = list(s.execute(stmt.order_by(Order.opened_at.asc())).scalars())
    by_order = orders.lines_by_order(s, [o.id for o in open_orders])
    out = []
    for o in open_orders:
        lines = [l for l in by_order.get(o.id, []) if station not in ("kitchen", "bar") or l.station == station]
        if not lines:
            continue
        out.append(
            {
                "order": OrderOut.model_validate(o).model_dump(mode="json"),
                "lines": [OrderLineOut.model_validate(l).model_dump(mode="json") for l in lines],
            }
        )
    return {"type": "snapshot", "station": station, "orders": out}


def _load_snapshot(station: str, tenant: Optional[str]) -> dict:
    with Session(db.engine) as s:
        return _station_snapshot(s, station, tenant)


def _socket_actor(ws_conn: WebSocket) -> Optional[Actor]:
    if INTERNAL_SECRET:
        hdr = (ws_conn.headers.get("X-Internal-Secret") or "").strip()
        if not hdr or not hmac.compare_digest(hdr, INTERNAL_SECRET):
            return None
    try:
        return actor_from_headers(ws_conn.headers)
    except Unauthorized:
        return None


@app.websocket("/pos/ws")
async def station_socket(ws_conn: WebSocket, station: str = "waiter"):
    actor = _socket_actor(ws_conn)
    if actor is None:
        await ws_conn.close(code=1008)
        return
    await ws_conn.accept()
    snapshot = await asyncio.to_thread(_load_snapshot, station, actor.tenant_id)
    ws.active_sockets[ws_conn] = (station, actor.tenant_id)
    try:
        await ws_conn.send_json(snapshot)
        while True:
            await ws_conn.receive_text()  # keep alive
    except WebSocketDisconnect:
        pass
    finally:
        ws.active_sockets.pop(ws_conn, None)
