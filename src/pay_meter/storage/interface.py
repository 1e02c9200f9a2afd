# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Persistence contract for the ledger.

Every read and write happens inside a transaction obtained from
``LedgerStorage.transaction()``. Implementations must guarantee:

- All-or-nothing commit: a transaction that exits with an exception leaves
  no trace; one that exits cleanly applies every staged write together.
- Row locks: ``for_update=True`` takes an exclusive lock on that row which
  is held until the transaction ends. Saving a principal, quote,
  reservation or settlement requires the transaction to hold its lock.
- Append-only: usage records and fee records can only be inserted.
  Terminal quotes, reservations and settlements can never be rewritten.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Iterable

from pay_meter.types import (
    BalanceReservation,
    PlatformFeeRecord,
    Principal,
    PricingQuote,
    QuoteStatus,
    ReservationStatus,
    Settlement,
    SettlementStatus,
    Tool,
    UsageFilter,
    UsageRecord,
)


class LedgerTransaction(ABC):
    """One isolated unit of work against the ledger."""

    # ─── Principals ───────────────────────────────────────────────────────────

    @abstractmethod
    async def get_principal(self, principal_id: str, *, for_update: bool = False) -> Principal | None:
        ...

    @abstractmethod
    async def insert_principal(self, principal: Principal) -> None:
        ...

    @abstractmethod
    async def save_principal(self, principal: Principal) -> None:
        ...

    @abstractmethod
    async def list_principals(self) -> list[Principal]:
        ...

    async def lock_principals(self, principal_ids: Iterable[str]) -> dict[str, Principal]:
        """
        Lock several principals in sorted id order and return those that exist.

        A fixed lock order means two transactions locking the same pair in
        opposite roles cannot deadlock.
        """
        locked: dict[str, Principal] = {}
        for principal_id in sorted(set(principal_ids)):
            principal = await self.get_principal(principal_id, for_update=True)
            if principal is not None:
                locked[principal_id] = principal
        return locked

    # ─── Tools ────────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_tool(self, owner_id: str, name: str) -> Tool | None:
        ...

    @abstractmethod
    async def save_tool(self, tool: Tool) -> None:
        ...

    @abstractmethod
    async def list_tools(self, owner_id: str) -> list[Tool]:
        ...

    # ─── Usage records ────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_usage_record(self, record: UsageRecord) -> None:
        ...

    @abstractmethod
    async def list_usage_records(self, usage_filter: UsageFilter | None = None) -> list[UsageRecord]:
        """Return matching records in insertion order."""
        ...

    # ─── Quotes ───────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_quote(self, quote_id: str, *, for_update: bool = False) -> PricingQuote | None:
        ...

    @abstractmethod
    async def insert_quote(self, quote: PricingQuote) -> None:
        ...

    @abstractmethod
    async def save_quote(self, quote: PricingQuote) -> None:
        ...

    @abstractmethod
    async def list_quotes(
        self,
        caller_id: str | None = None,
        status: QuoteStatus | None = None,
    ) -> list[PricingQuote]:
        ...

    # ─── Reservations ─────────────────────────────────────────────────────────

    @abstractmethod
    async def get_reservation(
        self, reservation_id: str, *, for_update: bool = False
    ) -> BalanceReservation | None:
        ...

    @abstractmethod
    async def insert_reservation(self, reservation: BalanceReservation) -> None:
        ...

    @abstractmethod
    async def save_reservation(self, reservation: BalanceReservation) -> None:
        ...

    @abstractmethod
    async def list_reservations(
        self,
        caller_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[BalanceReservation]:
        ...

    # ─── Settlements ──────────────────────────────────────────────────────────

    @abstractmethod
    async def get_settlement(self, settlement_id: str, *, for_update: bool = False) -> Settlement | None:
        ...

    @abstractmethod
    async def insert_settlement(self, settlement: Settlement) -> None:
        ...

    @abstractmethod
    async def save_settlement(self, settlement: Settlement) -> None:
        ...

    @abstractmethod
    async def list_settlements(
        self,
        principal_id: str | None = None,
        status: SettlementStatus | None = None,
    ) -> list[Settlement]:
        ...

    # ─── Platform fees ────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_fee_record(self, record: PlatformFeeRecord) -> None:
        ...

    @abstractmethod
    async def list_fee_records(self) -> list[PlatformFeeRecord]:
        ...


class LedgerStorage(ABC):
    """
    Factory for ledger transactions.

    Implementors may back this with Postgres (``SELECT ... FOR UPDATE``),
    SQLite, or any store offering row locks and atomic commit. The default
    MemoryStorage is suitable for single-process use and testing only.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[LedgerTransaction]:
        """Open a transaction; commit on clean exit, roll back on exception."""
        ...
