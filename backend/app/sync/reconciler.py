"""
Packet reconciliation.

Applies every entity of a packet through one unit of work, in a fixed order:
customers -> sales -> shifts -> cash transactions -> stock movements. Sales
run first so product stubs they materialize are visible to stock movements of
the same packet.

Idempotency is keyed on entity ids generated by the terminal, never on the
packet id: a sale or stock movement that already exists is a silent no-op.
Expected per-record problems are skipped and reported as itemized errors
(the packet then acknowledges PARTIAL). Anything else propagates and the
caller rolls back the whole packet.
"""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import ValidationError

from .ack import json_log
from .schemas import (
    CashTransactionIn,
    CustomerIn,
    SaleIn,
    StockMovementIn,
    SyncError,
    SyncPacket,
    WorkShiftIn,
)
from .store import UnitOfWork


DEFAULT_CATEGORY = "Uncategorized"
DEFAULT_PRODUCT_TYPE = "RETAIL"


def _validation_message(ex: ValidationError) -> str:
    parts = []
    for err in ex.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ())
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid record"


def _raw_id(raw) -> str | None:
    if isinstance(raw, dict) and raw.get("id") is not None:
        return str(raw.get("id"))
    return None


class PacketReconciler:
    def __init__(self, uow: UnitOfWork, organization_id: str, terminal_id: str):
        self.uow = uow
        self.organization_id = str(organization_id)
        self.terminal_id = str(terminal_id)
        self.errors: list[SyncError] = []
        self.stats = {
            "customers": 0,
            "sales": 0,
            "sales_skipped": 0,
            "product_stubs": 0,
            "shifts": 0,
            "cash_transactions": 0,
            "stock_movements": 0,
        }

    def _skip(self, entity: str, entity_id: str | None, error: str) -> None:
        self.errors.append(SyncError(entity=entity, error=error, id=entity_id))
        json_log(
            "warning",
            "sync.record.skipped",
            entity=entity,
            id=entity_id,
            error=error,
            organization_id=self.organization_id,
            terminal_id=self.terminal_id,
        )

    def apply(self, packet: SyncPacket) -> list[SyncError]:
        for customer in packet.customers or []:
            self.apply_customer(customer)
        for sale in packet.sales or []:
            self.apply_sale(sale)
        for raw in packet.shifts or []:
            self.apply_shift(raw)
        for raw in packet.cash_transactions or []:
            self.apply_cash_transaction(raw)
        for movement in packet.stock_movements or []:
            self.apply_stock_movement(movement)
        return list(self.errors)

    # -- customers -----------------------------------------------------------

    def apply_customer(self, customer: CustomerIn) -> None:
        row = customer.model_dump()
        if row.get("last_visit") is None:
            row["last_visit"] = datetime.now(timezone.utc)
        if not self.uow.upsert_customer(self.organization_id, row):
            self._skip("Customer", customer.id, "customer belongs to another organization")
            return
        self.stats["customers"] += 1

    # -- sales ---------------------------------------------------------------

    def apply_sale(self, sale: SaleIn) -> None:
        if self.uow.sale_exists(sale.id):
            self.stats["sales_skipped"] += 1
            return

        for item in sale.items:
            created = self.uow.ensure_product_stub(
                item.product_id,
                self.organization_id,
                name=item.name,
                price=item.price_at_sale,
                category=(item.category or "").strip() or DEFAULT_CATEGORY,
                product_type=item.type or DEFAULT_PRODUCT_TYPE,
            )
            if created:
                self.stats["product_stubs"] += 1

        # Organization and terminal come from the resolved terminal, never from the payload.
        header = sale.model_dump(exclude={"items"})
        items = [
            {
                "product_id": it.product_id,
                "quantity": it.quantity,
                "price_at_sale": it.price_at_sale,
                "name": it.name,
            }
            for it in sale.items
        ]
        if self.uow.insert_sale(self.organization_id, self.terminal_id, header, items):
            self.stats["sales"] += 1
        else:
            # Lost a race with a concurrent packet carrying the same sale.
            self.stats["sales_skipped"] += 1

    # -- shifts --------------------------------------------------------------

    def apply_shift(self, raw) -> None:
        shift_id = _raw_id(raw)
        try:
            shift = WorkShiftIn.model_validate(raw)
        except ValidationError as ex:
            self._skip("WorkShift", shift_id, _validation_message(ex))
            return
        try:
            with self.uow.savepoint():
                owned = self.uow.upsert_shift(self.organization_id, self.terminal_id, shift.model_dump())
        except self.uow.retryable_errors:
            raise
        except Exception as ex:
            self._skip("WorkShift", shift.id, str(ex) or "shift rejected")
            return
        if not owned:
            self._skip("WorkShift", shift.id, "shift belongs to another organization")
            return
        self.stats["shifts"] += 1

    # -- cash transactions -----------------------------------------------------

    def apply_cash_transaction(self, raw) -> None:
        txn_id = _raw_id(raw)
        try:
            txn = CashTransactionIn.model_validate(raw)
        except ValidationError as ex:
            self._skip("CashTransaction", txn_id, _validation_message(ex))
            return
        shift = self.uow.get_shift(txn.shift_id)
        if not shift or str(shift.get("organization_id")) != self.organization_id:
            self._skip("CashTransaction", txn.id, f"shift {txn.shift_id} not found")
            return
        if self.uow.insert_cash_transaction(self.organization_id, txn.model_dump()):
            self.stats["cash_transactions"] += 1

    # -- stock movements -------------------------------------------------------

    def apply_stock_movement(self, movement: StockMovementIn) -> None:
        if self.uow.stock_movement_exists(movement.id):
            return
        product = self.uow.get_product(movement.product_id)
        owner = (product or {}).get("organization_id")
        if not product or (owner is not None and str(owner) != self.organization_id):
            # Not enough data on a movement to synthesize a product.
            self._skip("StockMovement", movement.id, f"product {movement.product_id} not found")
            return
        if self.uow.insert_stock_movement(self.organization_id, self.terminal_id, movement.model_dump()):
            # The cached level only moves with a newly persisted ledger row.
            self.uow.increment_stock_level(movement.product_id, int(movement.quantity_change))
            self.stats["stock_movements"] += 1


def reconcile_packet(uow: UnitOfWork, packet: SyncPacket, terminal: dict) -> tuple[list[SyncError], dict]:
    reconciler = PacketReconciler(uow, terminal["organization_id"], terminal["id"])
    errors = reconciler.apply(packet)
    return errors, reconciler.stats
