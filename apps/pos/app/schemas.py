from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class LimitIn(BaseModel):
    quantity: int = Field(ge=0)
    note: Optional[str] = None


class QuantityIn(BaseModel):
    quantity: int = Field(ge=1)


class InventoryEntryOut(BaseModel):
    product_id: int
    product_name: Optional[str] = None
    remaining_qty: int
    last_updated_by: Optional[str]
    last_updated_at: Optional[datetime]
    note: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class ReservationOut(BaseModel):
    ok: bool
    product_id: int
    requested: int
    remaining: Optional[int]
    model_config = ConfigDict(from_attributes=True)


class OrderLineIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    note: Optional[str] = None


class OrderCreate(BaseModel):
    type: Literal["DINE_IN", "TAKEAWAY", "COUNTER"] = "DINE_IN"
    table_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_id: Optional[str] = None
    note: Optional[str] = None
    allow_split: bool = True
    lines: List[OrderLineIn]


class LinesAdd(BaseModel):
    allow_split: bool = True
    lines: List[OrderLineIn]


class OrderOut(BaseModel):
    id: str
    type: str
    table_id: Optional[int]
    customer_name: Optional[str]
    customer_id: Optional[str]
    waiter_id: str
    status: str
    payment_status: str
    total_cents: int
    origin_order_id: Optional[str]
    note: Optional[str]
    opened_at: Optional[datetime]
    closed_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class OrderLineOut(BaseModel):
    id: int
    order_id: str
    product_id: int
    quantity: int
    unit_price_cents: int
    status: str
    station: Optional[str]
    reserved_qty: int
    paid_qty: int
    is_paid: bool
    paid_by_name: Optional[str]
    short_qty: int = 0
    origin_line_id: Optional[int]
    note: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class PaymentOut(BaseModel):
    id: str
    order_id: str
    amount_cents: int
    method: str
    payer_name: Optional[str]
    operator_id: str
    kind: str
    reverses_id: Optional[str]
    reason: Optional[str]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class BalanceOut(BaseModel):
    order_id: str
    total_cents: int
    paid_cents: int
    debt_cents: int
    remainder_cents: int
    overpaid_cents: int
    currency: str = "EUR"
    model_config = ConfigDict(from_attributes=True)


class SplitItemOut(BaseModel):
    product_id: int
    name: str
    shortfall: int
    kept: int
    model_config = ConfigDict(from_attributes=True)


class SplitOut(BaseModel):
    origin_order_id: str
    resulting_order_id: str
    whole_order_blocked: bool
    items: List[SplitItemOut]
    message: str
    model_config = ConfigDict(from_attributes=True)


class SplitRecordOut(BaseModel):
    id: int
    origin_order_id: str
    resulting_order_id: str
    product_id: int
    name: str
    shortfall_qty: int
    total_qty_at_split: int
    was_whole_order_blocked: bool
    created_by: Optional[str]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class OrderDetail(BaseModel):
    order: OrderOut
    lines: List[OrderLineOut]
    payments: List[PaymentOut] = Field(default_factory=list)
    balance: Optional[BalanceOut] = None
    splits: List[SplitRecordOut] = Field(default_factory=list)


class PlacementOut(BaseModel):
    order: OrderOut
    lines: List[OrderLineOut]
    split: Optional[SplitOut] = None


class StatusIn(BaseModel):
    status: str


class LineStatusIn(BaseModel):
    status: str


class CancelIn(BaseModel):
    reason: Optional[str] = None


class ShortfallIn(BaseModel):
    line_id: int
    quantity: int = Field(ge=1)


class SplitIn(BaseModel):
    shortfalls: List[ShortfallIn]
    allow_split: bool = True


class SubstituteIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    unit_price_cents: Optional[int] = Field(default=None, ge=0)
    note: Optional[str] = None


class ResolveIn(BaseModel):
    action: Literal["cancel", "substitute"]
    substitutes: List[SubstituteIn] = Field(default_factory=list)
    reason: Optional[str] = None


class ClaimOut(BaseModel):
    order_id: str
    status: str
    handled_by: Optional[str]
    handled_by_name: Optional[str]
    handled_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class AwaitingOut(BaseModel):
    order: OrderOut
    lines: List[OrderLineOut]
    claim: Optional[ClaimOut]
    splits: List[SplitRecordOut]
    model_config = ConfigDict(from_attributes=True)


class LineSelectionIn(BaseModel):
    line_id: int
    quantity: int = Field(ge=1)


class PayLinesIn(BaseModel):
    lines: List[LineSelectionIn]
    method: str = "cash"
    payer_name: Optional[str] = None


class PayRemainderIn(BaseModel):
    method: str = "cash"
    payer_name: Optional[str] = None


class PaymentResultOut(BaseModel):
    payment: PaymentOut
    balance: BalanceOut
    order_paid: bool
    loyalty_points: Optional[int] = None
    replayed: bool = False
    model_config = ConfigDict(from_attributes=True)


class ReverseIn(BaseModel):
    reason: Optional[str] = None


class DebtCreate(BaseModel):
    customer_id: str = Field(min_length=1)
    amount_cents: int = Field(ge=1)
    note: Optional[str] = None


class DebtPayIn(BaseModel):
    amount_cents: int = Field(ge=1)
    method: str = "cash"


class DebtOut(BaseModel):
    id: str
    customer_id: str
    order_id: str
    amount_cents: int
    amount_paid_cents: int
    status: str
    operator_id: str
    note: Optional[str]
    created_at: Optional[datetime]
    settled_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)
