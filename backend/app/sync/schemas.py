"""
Wire format for terminal -> server sync.

A packet is a transient envelope: only the entities it carries are persisted.
Correctness relies on every entity carrying its own stable, terminal-generated id;
the packet id is advisory and only used for acknowledgement and diagnostics.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..validation import (
    CashTransactionType,
    CustomerType,
    EntityId,
    ProductType,
    SalePaymentMethod,
    SaleStatus,
    ShiftStatus,
    StockMovementType,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Entity(BaseModel):
    # Terminals send their local bookkeeping fields (synced, ...); ignore them.
    model_config = ConfigDict(extra="ignore")


class SaleItemIn(_Entity):
    product_id: EntityId
    quantity: int = Field(ge=1)
    price_at_sale: Decimal = Field(ge=0)
    name: str = Field(min_length=1)
    # Carried so the server can materialize a product stub.
    type: Optional[ProductType] = None
    category: Optional[str] = None


class SaleIn(_Entity):
    id: EntityId
    items: list[SaleItemIn] = Field(min_length=1)

    total_amount: Decimal = Field(ge=0)
    subtotal_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tax_name: Optional[str] = None
    tax_rate_snapshot: Optional[Decimal] = None
    is_tax_inclusive: bool = True
    service_charge_amount: Decimal = Decimal("0")
    discount_name: Optional[str] = None
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    discount_info: Optional[dict[str, Any]] = None

    payment_method: SalePaymentMethod
    status: SaleStatus = "COMPLETED"
    timestamp: datetime = Field(default_factory=utcnow)
    invoice_number: Optional[str] = None
    order_number: Optional[str] = None
    customer_id: Optional[EntityId] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None


class CustomerIn(_Entity):
    id: EntityId
    name: str = Field(min_length=1)
    type: CustomerType = "REGULAR"
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    total_spent: Decimal = Decimal("0")
    last_visit: Optional[datetime] = None
    birthdate: Optional[datetime] = None
    tin_number: Optional[str] = None


class WorkShiftIn(_Entity):
    id: EntityId
    status: ShiftStatus = "OPEN"
    start_time: datetime
    end_time: Optional[datetime] = None
    opening_float: Decimal = Field(ge=0)
    expected_cash: Decimal = Decimal("0")
    actual_cash: Optional[Decimal] = None
    variance: Optional[Decimal] = None
    notes: Optional[str] = None
    closed_by: Optional[str] = None

    @model_validator(mode="after")
    def _closed_shift_has_end_time(self):
        if self.status == "CLOSED" and self.end_time is None:
            raise ValueError("closed shift requires end_time")
        return self


class CashTransactionIn(_Entity):
    id: EntityId
    shift_id: EntityId
    type: CashTransactionType
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    performed_by: Optional[str] = None


class StockMovementIn(_Entity):
    id: EntityId
    product_id: EntityId
    type: StockMovementType
    quantity_change: int
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    reference_id: Optional[str] = None


class SyncPacket(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: EntityId
    terminal_id: EntityId
    # Only sent when the terminal may be unknown to the server (recovery).
    terminal_name: Optional[str] = None
    organization_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    customers: Optional[list[CustomerIn]] = None
    sales: Optional[list[SaleIn]] = None
    # Shifts and cash transactions are validated one record at a time by the
    # reconciler so a single malformed row degrades to a per-record error.
    shifts: Optional[list[dict[str, Any]]] = None
    cash_transactions: Optional[list[dict[str, Any]]] = None
    stock_movements: Optional[list[StockMovementIn]] = None

    def entity_count(self) -> int:
        total = 0
        for name in ("customers", "sales", "shifts", "cash_transactions", "stock_movements"):
            total += len(getattr(self, name) or [])
        return total


AckStatus = Literal["SUCCESS", "PARTIAL", "FAILED"]


class SyncError(BaseModel):
    entity: str
    error: str
    id: Optional[str] = None


class SyncAck(BaseModel):
    packet_id: str
    status: AckStatus
    processed_at: datetime
    errors: Optional[list[SyncError]] = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
