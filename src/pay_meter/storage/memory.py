# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
In-process memory ledger, suitable for single-process services and testing.

Transactions stage their writes privately and apply them in one step on
commit, so a failure anywhere inside a transaction leaves committed state
untouched. Row locks are per-row ``asyncio.Lock`` objects; because commit
applies staged writes without yielding to the event loop, no other
coroutine can observe a half-applied transaction.

All state is lost when the process exits. For durable enforcement across
restarts, provide a persistent LedgerStorage implementation.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timezone
from typing import AsyncIterator, TypeVar

from pydantic import BaseModel

from pay_meter.errors import LedgerIntegrityError
from pay_meter.storage.interface import LedgerStorage, LedgerTransaction
from pay_meter.types import (
    TERMINAL_QUOTE_STATUSES,
    TERMINAL_SETTLEMENT_STATUSES,
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

ModelT = TypeVar("ModelT", bound=BaseModel)
RowKey = tuple[str, str]
StagedJournalEntry = tuple[str, BaseModel]

TERMINAL_RESERVATION_STATUSES: frozenset[str] = frozenset({"captured", "released", "expired"})


def _as_utc(value):
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def apply_usage_filter(records: list[UsageRecord], usage_filter: UsageFilter | None) -> list[UsageRecord]:
    """
    Apply an optional UsageFilter to a list of usage records.
    All filter fields are AND-ed together; ``limit`` keeps the most recent.
    Returns a new list; the input is not modified.
    """
    if usage_filter is None:
        return list(records)

    results: list[UsageRecord] = []
    for record in records:
        if usage_filter.caller_id is not None and record.caller_id != usage_filter.caller_id:
            continue
        if usage_filter.callee_id is not None and record.callee_id != usage_filter.callee_id:
            continue
        if usage_filter.quote_id is not None and record.quote_id != usage_filter.quote_id:
            continue

        created_at = _as_utc(record.created_at)
        if usage_filter.since is not None and created_at < _as_utc(usage_filter.since):
            continue
        if usage_filter.until is not None and created_at > _as_utc(usage_filter.until):
            continue

        results.append(record)

    if usage_filter.limit is not None:
        results = results[-usage_filter.limit :]
    return results


class MemoryTransaction(LedgerTransaction):
    """A transaction against MemoryStorage. Created by ``MemoryStorage.transaction()``."""

    def __init__(self, storage: MemoryStorage) -> None:
        self._storage = storage
        self._held_keys: set[RowKey] = set()
        self._held_order: list[RowKey] = []

        # Staged writes, invisible to other transactions until apply().
        self._principals: dict[str, Principal] = {}
        self._tools: dict[RowKey, Tool] = {}
        self._usage: list[UsageRecord] = []
        self._quotes: dict[str, PricingQuote] = {}
        self._reservations: dict[str, BalanceReservation] = {}
        self._settlements: dict[str, Settlement] = {}
        self._fees: list[PlatformFeeRecord] = []
        self._journal: list[StagedJournalEntry] = []

    # ─── Locking ──────────────────────────────────────────────────────────────

    async def _lock(self, table: str, row_id: str) -> None:
        key = (table, row_id)
        if key in self._held_keys:
            return
        await self._storage._acquire_row(key)
        self._held_keys.add(key)
        self._held_order.append(key)

    def _require_lock(self, table: str, row_id: str) -> None:
        if (table, row_id) not in self._held_keys:
            raise LedgerIntegrityError(
                f"Write to {table} '{row_id}' without holding its row lock.",
                table=table,
                row_id=row_id,
            )

    def release_locks(self) -> None:
        for key in reversed(self._held_order):
            self._storage._release_row(key)
        self._held_order.clear()
        self._held_keys.clear()

    # ─── Read helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _read(staged: dict, committed: dict, key) -> ModelT | None:
        value = staged.get(key)
        if value is None:
            value = committed.get(key)
        return value.model_copy(deep=True) if value is not None else None

    @staticmethod
    def _merged(staged: dict, committed: dict) -> list:
        merged = dict(committed)
        merged.update(staged)
        return [value.model_copy(deep=True) for value in merged.values()]

    # ─── Principals ───────────────────────────────────────────────────────────

    async def get_principal(self, principal_id: str, *, for_update: bool = False) -> Principal | None:
        if for_update:
            await self._lock("principal", principal_id)
        return self._read(self._principals, self._storage._principals, principal_id)

    async def insert_principal(self, principal: Principal) -> None:
        if principal.id in self._principals or principal.id in self._storage._principals:
            raise LedgerIntegrityError(f"Principal '{principal.id}' already exists.", principal_id=principal.id)
        self._principals[principal.id] = principal.model_copy(deep=True)

    async def save_principal(self, principal: Principal) -> None:
        self._require_lock("principal", principal.id)
        self._principals[principal.id] = principal.model_copy(deep=True)

    async def list_principals(self) -> list[Principal]:
        return self._merged(self._principals, self._storage._principals)

    # ─── Tools ────────────────────────────────────────────────────────────────

    async def get_tool(self, owner_id: str, name: str) -> Tool | None:
        return self._read(self._tools, self._storage._tools, (owner_id, name))

    async def save_tool(self, tool: Tool) -> None:
        self._tools[(tool.owner_id, tool.name)] = tool.model_copy(deep=True)

    async def list_tools(self, owner_id: str) -> list[Tool]:
        tools = self._merged(self._tools, self._storage._tools)
        return [tool for tool in tools if tool.owner_id == owner_id]

    # ─── Usage records ────────────────────────────────────────────────────────

    async def insert_usage_record(self, record: UsageRecord) -> None:
        if record.id in self._storage._usage_ids or any(r.id == record.id for r in self._usage):
            raise LedgerIntegrityError(
                f"Usage record '{record.id}' already exists; usage records are append-only.",
                usage_record_id=record.id,
            )
        self._usage.append(record)
        self._journal.append(("usage_record", record))

    async def list_usage_records(self, usage_filter: UsageFilter | None = None) -> list[UsageRecord]:
        return apply_usage_filter(self._storage._usage + self._usage, usage_filter)

    # ─── Quotes ───────────────────────────────────────────────────────────────

    async def get_quote(self, quote_id: str, *, for_update: bool = False) -> PricingQuote | None:
        if for_update:
            await self._lock("quote", quote_id)
        return self._read(self._quotes, self._storage._quotes, quote_id)

    async def insert_quote(self, quote: PricingQuote) -> None:
        if quote.id in self._quotes or quote.id in self._storage._quotes:
            raise LedgerIntegrityError(f"Quote '{quote.id}' already exists.", quote_id=quote.id)
        self._quotes[quote.id] = quote.model_copy(deep=True)

    async def save_quote(self, quote: PricingQuote) -> None:
        self._require_lock("quote", quote.id)
        current = self._read(self._quotes, self._storage._quotes, quote.id)
        if current is not None and current.status in TERMINAL_QUOTE_STATUSES:
            raise LedgerIntegrityError(
                f"Quote '{quote.id}' is {current.status}; terminal quotes are immutable.",
                quote_id=quote.id,
                status=current.status,
            )
        self._quotes[quote.id] = quote.model_copy(deep=True)

    async def list_quotes(
        self,
        caller_id: str | None = None,
        status: QuoteStatus | None = None,
    ) -> list[PricingQuote]:
        quotes = self._merged(self._quotes, self._storage._quotes)
        return [
            quote
            for quote in quotes
            if (caller_id is None or quote.caller_id == caller_id)
            and (status is None or quote.status == status)
        ]

    # ─── Reservations ─────────────────────────────────────────────────────────

    async def get_reservation(
        self, reservation_id: str, *, for_update: bool = False
    ) -> BalanceReservation | None:
        if for_update:
            await self._lock("reservation", reservation_id)
        return self._read(self._reservations, self._storage._reservations, reservation_id)

    async def insert_reservation(self, reservation: BalanceReservation) -> None:
        if reservation.id in self._reservations or reservation.id in self._storage._reservations:
            raise LedgerIntegrityError(
                f"Reservation '{reservation.id}' already exists.", reservation_id=reservation.id
            )
        self._reservations[reservation.id] = reservation.model_copy(deep=True)

    async def save_reservation(self, reservation: BalanceReservation) -> None:
        self._require_lock("reservation", reservation.id)
        current = self._read(self._reservations, self._storage._reservations, reservation.id)
        if current is not None and current.status in TERMINAL_RESERVATION_STATUSES:
            raise LedgerIntegrityError(
                f"Reservation '{reservation.id}' is {current.status}; terminal reservations are immutable.",
                reservation_id=reservation.id,
                status=current.status,
            )
        self._reservations[reservation.id] = reservation.model_copy(deep=True)

    async def list_reservations(
        self,
        caller_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[BalanceReservation]:
        reservations = self._merged(self._reservations, self._storage._reservations)
        return [
            reservation
            for reservation in reservations
            if (caller_id is None or reservation.caller_id == caller_id)
            and (status is None or reservation.status == status)
        ]

    # ─── Settlements ──────────────────────────────────────────────────────────

    async def get_settlement(self, settlement_id: str, *, for_update: bool = False) -> Settlement | None:
        if for_update:
            await self._lock("settlement", settlement_id)
        return self._read(self._settlements, self._storage._settlements, settlement_id)

    async def insert_settlement(self, settlement: Settlement) -> None:
        if settlement.id in self._settlements or settlement.id in self._storage._settlements:
            raise LedgerIntegrityError(
                f"Settlement '{settlement.id}' already exists.", settlement_id=settlement.id
            )
        staged = settlement.model_copy(deep=True)
        self._settlements[settlement.id] = staged
        self._journal.append(("settlement", staged))

    async def save_settlement(self, settlement: Settlement) -> None:
        self._require_lock("settlement", settlement.id)
        current = self._read(self._settlements, self._storage._settlements, settlement.id)
        if current is not None and current.status in TERMINAL_SETTLEMENT_STATUSES:
            raise LedgerIntegrityError(
                f"Settlement '{settlement.id}' is {current.status}; terminal settlements are immutable.",
                settlement_id=settlement.id,
                status=current.status,
            )
        staged = settlement.model_copy(deep=True)
        self._settlements[settlement.id] = staged
        self._journal.append(("settlement", staged))

    async def list_settlements(
        self,
        principal_id: str | None = None,
        status: SettlementStatus | None = None,
    ) -> list[Settlement]:
        settlements = self._merged(self._settlements, self._storage._settlements)
        return [
            settlement
            for settlement in settlements
            if (principal_id is None or settlement.principal_id == principal_id)
            and (status is None or settlement.status == status)
        ]

    # ─── Platform fees ────────────────────────────────────────────────────────

    async def insert_fee_record(self, record: PlatformFeeRecord) -> None:
        existing = {fee.id for fee in self._storage._fees} | {fee.id for fee in self._fees}
        if record.id in existing:
            raise LedgerIntegrityError(f"Fee record '{record.id}' already exists.", fee_record_id=record.id)
        self._fees.append(record)
        self._journal.append(("fee_record", record))

    async def list_fee_records(self) -> list[PlatformFeeRecord]:
        return list(self._storage._fees) + list(self._fees)

    # ─── Commit ───────────────────────────────────────────────────────────────

    def journal_entries(self) -> list[StagedJournalEntry]:
        return list(self._journal)

    def apply(self) -> None:
        """Publish every staged write. Must not await: commit is a single step."""
        storage = self._storage
        storage._principals.update(self._principals)
        storage._tools.update(self._tools)
        storage._quotes.update(self._quotes)
        storage._reservations.update(self._reservations)
        storage._settlements.update(self._settlements)
        storage._usage.extend(self._usage)
        storage._usage_ids.update(record.id for record in self._usage)
        storage._fees.extend(self._fees)


class MemoryStorage(LedgerStorage):
    """In-memory, non-persistent LedgerStorage implementation."""

    def __init__(self) -> None:
        self._principals: dict[str, Principal] = {}
        self._tools: dict[RowKey, Tool] = {}
        self._usage: list[UsageRecord] = []
        self._usage_ids: set[str] = set()
        self._quotes: dict[str, PricingQuote] = {}
        self._reservations: dict[str, BalanceReservation] = {}
        self._settlements: dict[str, Settlement] = {}
        self._fees: list[PlatformFeeRecord] = []
        # A row's lock lives only while some transaction holds or awaits it.
        self._row_locks: dict[RowKey, asyncio.Lock] = {}
        self._row_lock_users: dict[RowKey, int] = {}

    async def _acquire_row(self, key: RowKey) -> None:
        lock = self._row_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._row_locks[key] = lock
        self._row_lock_users[key] = self._row_lock_users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._unref_row(key)
            raise

    def _release_row(self, key: RowKey) -> None:
        self._row_locks[key].release()
        self._unref_row(key)

    def _unref_row(self, key: RowKey) -> None:
        users = self._row_lock_users[key] - 1
        if users:
            self._row_lock_users[key] = users
        else:
            del self._row_lock_users[key]
            del self._row_locks[key]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerTransaction]:
        tx = MemoryTransaction(self)
        try:
            yield tx
            await self._write_ahead(tx.journal_entries())
            tx.apply()
        finally:
            tx.release_locks()

    async def _write_ahead(self, entries: list[StagedJournalEntry]) -> None:
        """Hook run before a commit is applied. A failure here aborts the commit."""
        return None
