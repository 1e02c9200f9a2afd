# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Tests for the in-memory ledger storage: atomic commit, row locks, append-only rules."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pay_meter.errors import LedgerIntegrityError
from pay_meter.storage.memory import MemoryStorage
from pay_meter.types import Principal, Settlement, UsageFilter, UsageRecord

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _principal(principal_id: str, balance: int = 1_000) -> Principal:
    return Principal(id=principal_id, balance=balance, default_rate_per_1k_tokens=100)


def _usage(record_id: str, caller: str = "a", callee: str = "b", cost: int = 100, minutes: int = 0) -> UsageRecord:
    return UsageRecord(
        id=record_id,
        caller_id=caller,
        callee_id=callee,
        tool_name="tool",
        tokens_used=10,
        rate_per_1k_tokens=100,
        cost=cost,
        created_at=T0 + timedelta(minutes=minutes),
    )


async def _seed(storage: MemoryStorage, *principals: Principal) -> None:
    async with storage.transaction() as tx:
        for principal in principals:
            await tx.insert_principal(principal)


# ---------------------------------------------------------------------------
# TestTransactions
# ---------------------------------------------------------------------------


class TestTransactions:
    @pytest.mark.asyncio
    async def test_commit_applies_all_writes(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))

        async with storage.transaction() as tx:
            principal = await tx.get_principal("a", for_update=True)
            assert principal is not None
            principal.balance -= 100
            await tx.save_principal(principal)
            await tx.insert_usage_record(_usage("u1"))

        async with storage.transaction() as tx:
            principal = await tx.get_principal("a")
            records = await tx.list_usage_records()
        assert principal is not None and principal.balance == 900
        assert [r.id for r in records] == ["u1"]

    @pytest.mark.asyncio
    async def test_exception_rolls_back_every_write(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))

        with pytest.raises(RuntimeError):
            async with storage.transaction() as tx:
                principal = await tx.get_principal("a", for_update=True)
                assert principal is not None
                principal.balance = 0
                await tx.save_principal(principal)
                await tx.insert_usage_record(_usage("u1"))
                raise RuntimeError("boom")

        async with storage.transaction() as tx:
            principal = await tx.get_principal("a")
            records = await tx.list_usage_records()
        assert principal is not None and principal.balance == 1_000
        assert records == []

    @pytest.mark.asyncio
    async def test_staged_writes_are_invisible_to_other_transactions(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))

        async with storage.transaction() as writer:
            principal = await writer.get_principal("a", for_update=True)
            assert principal is not None
            principal.balance = 5
            await writer.save_principal(principal)
            async with storage.transaction() as reader:
                seen = await reader.get_principal("a")
            assert seen is not None and seen.balance == 1_000

    @pytest.mark.asyncio
    async def test_reads_return_copies(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))

        async with storage.transaction() as tx:
            principal = await tx.get_principal("a")
            assert principal is not None
            principal.balance = 1

        async with storage.transaction() as tx:
            principal = await tx.get_principal("a")
        assert principal is not None and principal.balance == 1_000


# ---------------------------------------------------------------------------
# TestRowLocks
# ---------------------------------------------------------------------------


class TestRowLocks:
    @pytest.mark.asyncio
    async def test_save_without_lock_is_rejected(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))

        with pytest.raises(LedgerIntegrityError):
            async with storage.transaction() as tx:
                principal = await tx.get_principal("a")
                assert principal is not None
                await tx.save_principal(principal)

    @pytest.mark.asyncio
    async def test_for_update_serializes_read_modify_write(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a", balance=0))

        async def increment() -> None:
            async with storage.transaction() as tx:
                principal = await tx.get_principal("a", for_update=True)
                assert principal is not None
                await asyncio.sleep(0)
                principal.balance += 1
                await tx.save_principal(principal)

        await asyncio.gather(*(increment() for _ in range(25)))

        async with storage.transaction() as tx:
            principal = await tx.get_principal("a")
        assert principal is not None and principal.balance == 25

    @pytest.mark.asyncio
    async def test_lock_is_reentrant_within_a_transaction(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"), _principal("b"))

        async with storage.transaction() as tx:
            locked = await tx.lock_principals(["b", "a", "b"])
            again = await tx.get_principal("a", for_update=True)
        assert sorted(locked) == ["a", "b"]
        assert again is not None

    @pytest.mark.asyncio
    async def test_locks_are_released_after_rollback(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))

        with pytest.raises(RuntimeError):
            async with storage.transaction() as tx:
                await tx.get_principal("a", for_update=True)
                raise RuntimeError("boom")

        async with storage.transaction() as tx:
            principal = await asyncio.wait_for(tx.get_principal("a", for_update=True), timeout=1)
        assert principal is not None

    @pytest.mark.asyncio
    async def test_idle_row_locks_are_dropped(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, *(_principal(f"p{i}") for i in range(10)))

        async def touch(principal_id: str) -> None:
            async with storage.transaction() as tx:
                await tx.lock_principals([principal_id, "p0"])
                await asyncio.sleep(0)

        await asyncio.gather(*(touch(f"p{i}") for i in range(10)))

        assert storage._row_locks == {}
        assert storage._row_lock_users == {}

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak_its_lock(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))
        holding = asyncio.Event()
        finish = asyncio.Event()

        async def holder() -> None:
            async with storage.transaction() as tx:
                await tx.get_principal("a", for_update=True)
                holding.set()
                await finish.wait()

        async def waiter() -> None:
            async with storage.transaction() as tx:
                await tx.get_principal("a", for_update=True)

        held = asyncio.create_task(holder())
        await holding.wait()
        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        finish.set()
        await held
        assert storage._row_locks == {}


# ---------------------------------------------------------------------------
# TestAppendOnly
# ---------------------------------------------------------------------------


class TestAppendOnly:
    @pytest.mark.asyncio
    async def test_duplicate_usage_record_rejected(self) -> None:
        storage = MemoryStorage()
        async with storage.transaction() as tx:
            await tx.insert_usage_record(_usage("u1"))

        with pytest.raises(LedgerIntegrityError):
            async with storage.transaction() as tx:
                await tx.insert_usage_record(_usage("u1"))

    @pytest.mark.asyncio
    async def test_terminal_settlement_cannot_be_rewritten(self) -> None:
        storage = MemoryStorage()
        settlement = Settlement(
            id="s1",
            principal_id="a",
            gross=10_000,
            platform_fee=500,
            net=9_500,
            status="confirmed",
            created_at=T0,
            updated_at=T0,
        )
        async with storage.transaction() as tx:
            await tx.insert_settlement(settlement)

        with pytest.raises(LedgerIntegrityError):
            async with storage.transaction() as tx:
                locked = await tx.get_settlement("s1", for_update=True)
                assert locked is not None
                locked.status = "failed"
                await tx.save_settlement(locked)

    @pytest.mark.asyncio
    async def test_duplicate_principal_rejected(self) -> None:
        storage = MemoryStorage()
        await _seed(storage, _principal("a"))
        with pytest.raises(LedgerIntegrityError):
            await _seed(storage, _principal("a"))


# ---------------------------------------------------------------------------
# TestUsageFilter
# ---------------------------------------------------------------------------


class TestUsageFilter:
    @pytest.mark.asyncio
    async def test_filters_are_combined(self) -> None:
        storage = MemoryStorage()
        async with storage.transaction() as tx:
            await tx.insert_usage_record(_usage("u1", caller="a", minutes=0))
            await tx.insert_usage_record(_usage("u2", caller="a", minutes=10))
            await tx.insert_usage_record(_usage("u3", caller="c", minutes=20))
            await tx.insert_usage_record(_usage("u4", caller="a", minutes=30))

        async with storage.transaction() as tx:
            by_caller = await tx.list_usage_records(UsageFilter(caller_id="a"))
            windowed = await tx.list_usage_records(
                UsageFilter(caller_id="a", since=T0 + timedelta(minutes=5), until=T0 + timedelta(minutes=30))
            )
            limited = await tx.list_usage_records(UsageFilter(caller_id="a", limit=2))

        assert [r.id for r in by_caller] == ["u1", "u2", "u4"]
        assert [r.id for r in windowed] == ["u2", "u4"]
        assert [r.id for r in limited] == ["u2", "u4"]
