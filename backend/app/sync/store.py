"""
Unit of work used by the sync core.

The reconciler and terminal resolver only talk to this interface, so every
write of a packet (terminal recovery included) lands in one transaction that
the caller commits or rolls back. `pg_store.PgUnitOfWork` is the production
implementation; tests inject an in-memory one.
"""
from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional


class UnitOfWork:
    # Exceptions that mean "the whole transaction may succeed if retried"
    # (serialization failures, deadlocks). Empty for stores without MVCC.
    retryable_errors: tuple = ()

    # -- transaction control -------------------------------------------------

    def begin(self) -> None:
        raise NotImplementedError

    def commit(self) -> None:
        raise NotImplementedError

    def rollback(self) -> None:
        raise NotImplementedError

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """
        Scope for a guarded per-record write: on exception only the writes made
        inside the block are undone and the packet transaction stays usable.
        """
        raise NotImplementedError
        yield  # pragma: no cover

    def __enter__(self):
        self.begin()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.rollback()
        return False

    # -- organizations / terminals -------------------------------------------

    def get_organization(self, organization_id: str, *, lock: bool = False) -> Optional[dict]:
        raise NotImplementedError

    def get_terminal(self, terminal_id: str) -> Optional[dict]:
        raise NotImplementedError

    def find_terminal_by_device(self, organization_id: str, device_id: str) -> Optional[dict]:
        raise NotImplementedError

    def count_terminals(self, organization_id: str) -> int:
        raise NotImplementedError

    def insert_terminal(
        self,
        terminal_id: str,
        organization_id: str,
        counter: int,
        name: str,
        device_id: Optional[str] = None,
        recovered: bool = False,
    ) -> dict:
        raise NotImplementedError

    def touch_terminal(self, terminal_id: str) -> None:
        raise NotImplementedError

    def list_terminals(self, organization_id: str) -> list[dict]:
        raise NotImplementedError

    # -- products ------------------------------------------------------------

    def get_product(self, product_id: str) -> Optional[dict]:
        raise NotImplementedError

    def ensure_product_stub(
        self,
        product_id: str,
        organization_id: str,
        name: str,
        price: Decimal,
        category: str,
        product_type: str,
    ) -> bool:
        """Create the product if missing. Returns True when a stub was created."""
        raise NotImplementedError

    def increment_stock_level(self, product_id: str, delta: int) -> None:
        raise NotImplementedError

    # -- customers -----------------------------------------------------------

    def upsert_customer(self, organization_id: str, customer: dict) -> bool:
        """
        Full-record overwrite keyed by id. Returns False (and writes nothing)
        when the id already belongs to another organization.
        """
        raise NotImplementedError

    # -- sales ---------------------------------------------------------------

    def sale_exists(self, sale_id: str) -> bool:
        raise NotImplementedError

    def insert_sale(self, organization_id: str, terminal_id: str, sale: dict, items: list[dict]) -> bool:
        """Insert header and items together. Returns False when the id already exists."""
        raise NotImplementedError

    # -- shifts / cash ---------------------------------------------------------

    def get_shift(self, shift_id: str) -> Optional[dict]:
        raise NotImplementedError

    def upsert_shift(self, organization_id: str, terminal_id: str, shift: dict) -> bool:
        """Returns False when the id already belongs to another organization."""
        raise NotImplementedError

    def insert_cash_transaction(self, organization_id: str, txn: dict) -> bool:
        """Insert-if-absent. Returns False when the id already exists."""
        raise NotImplementedError

    # -- stock ---------------------------------------------------------------

    def stock_movement_exists(self, movement_id: str) -> bool:
        raise NotImplementedError

    def insert_stock_movement(self, organization_id: str, terminal_id: str, movement: dict) -> bool:
        """Insert-if-absent. Returns False when the id already exists."""
        raise NotImplementedError
