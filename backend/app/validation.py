from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
ProductType = Annotated[Literal["RETAIL", "SERVICE"], BeforeValidator(_to_upper_str)]
SaleStatus = Annotated[
    Literal["COMPLETED", "PENDING_SYNC", "SYNCED", "VOIDED", "REFUNDED", "PARTIALLY_REFUNDED"],
    BeforeValidator(_to_upper_str),
]
SalePaymentMethod = Annotated[Literal["CASH", "CARD", "ONLINE"], BeforeValidator(_to_upper_str)]
CustomerType = Annotated[Literal["REGULAR", "SENIOR", "PWD"], BeforeValidator(_to_upper_str)]
ShiftStatus = Annotated[Literal["OPEN", "CLOSED"], BeforeValidator(_to_upper_str)]
CashTransactionType = Annotated[Literal["PAY_IN", "PAY_OUT", "DROP"], BeforeValidator(_to_upper_str)]
StockMovementType = Annotated[
    Literal["PURCHASE", "SALE", "ADJUSTMENT", "RETURN"],
    BeforeValidator(_to_upper_str),
]
UserRole = Annotated[Literal["SUPER_ADMIN", "ADMIN", "MANAGER", "CASHIER"], BeforeValidator(_to_upper_str)]


# Entity ids are generated on the terminal. Keep them opaque but bounded so they
# fit the TEXT primary keys and never carry whitespace.
EntityId = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$"),
]
