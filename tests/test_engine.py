# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Tests for the composed engine: auto-settlement, expiry sweeps and the background sweeper."""

from __future__ import annotations

import asyncio

import pytest

from conftest import CALLER, PROVIDER, TOOL
from pay_meter.engine import ExpirySweeper, PaymentEngine
from pay_meter.errors import StateConflictError
from pay_meter.types import QuoteRequest, ReservationRequest


async def _register(engine: PaymentEngine) -> None:
    await engine.ledger.register_principal(CALLER, balance=100_000)
    await engine.ledger.register_principal(PROVIDER)
    await engine.ledger.register_tool(PROVIDER, TOOL, rate_per_1k_tokens=2_000)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_duplicate_principal_rejected(self, seed) -> None:
        engine = await seed()
        with pytest.raises(StateConflictError) as exc_info:
            await engine.ledger.register_principal(CALLER)
        assert exc_info.value.code == "PRINCIPAL_EXISTS"

    @pytest.mark.asyncio
    async def test_deposit_increases_balance(self, seed) -> None:
        engine = await seed()
        principal = await engine.ledger.deposit(CALLER, 5_000)
        assert principal.balance == 105_000

    @pytest.mark.asyncio
    async def test_tool_listing(self, seed) -> None:
        engine = await seed()
        await engine.ledger.register_tool(PROVIDER, "classify", rate_per_1k_tokens=500)
        tools = await engine.ledger.list_tools(PROVIDER)
        assert [t.name for t in tools] == ["classify", TOOL]


class TestAutoSettle:
    @pytest.mark.asyncio
    async def test_callee_is_settled_once_threshold_is_reached(self, clock) -> None:
        payouts: list[tuple[str, int]] = []

        async def rail(recipient_id: str, net: int) -> str:
            payouts.append((recipient_id, net))
            return f"tx-{len(payouts)}"

        engine = PaymentEngine(payment_rail=rail, auto_settle=True, clock=clock)
        await _register(engine)

        await engine.execute_direct(CALLER, PROVIDER, TOOL, 4_000)  # 8000 pending
        await engine.drain()
        assert payouts == []

        await engine.execute_direct(CALLER, PROVIDER, TOOL, 1_000)  # 10000 pending
        await engine.drain()

        assert payouts == [(PROVIDER, 9_500)]
        assert (await engine.ledger.get_principal(PROVIDER)).pending == 0

    @pytest.mark.asyncio
    async def test_rail_failure_never_reaches_the_charge(self, clock) -> None:
        async def rail(recipient_id: str, net: int) -> str:
            raise ConnectionError("rail down")

        engine = PaymentEngine(payment_rail=rail, auto_settle=True, clock=clock)
        await _register(engine)

        result = await engine.execute_direct(CALLER, PROVIDER, TOOL, 5_000)
        await engine.drain()

        assert result.cost == 10_000
        assert (await engine.ledger.get_principal(PROVIDER)).pending == 10_000
        assert [s.status for s in await engine.list_settlements(PROVIDER)] == ["failed"]

    @pytest.mark.asyncio
    async def test_disabled_without_flag(self, clock) -> None:
        payouts: list[int] = []
        engine = PaymentEngine(payment_rail=lambda recipient, net: payouts.append(net) or "tx", clock=clock)
        await _register(engine)

        await engine.execute_direct(CALLER, PROVIDER, TOOL, 5_000)
        await engine.drain()
        assert payouts == []

    @pytest.mark.asyncio
    async def test_settle_task_without_rail_is_a_no_op(self, clock) -> None:
        engine = PaymentEngine(auto_settle=True, clock=clock)
        await _register(engine)
        await engine.execute_direct(CALLER, PROVIDER, TOOL, 5_000)  # 10000 pending
        await engine.drain()

        engine._settling.add(PROVIDER)
        await engine._auto_settle_principal(PROVIDER)

        assert PROVIDER not in engine._settling
        assert (await engine.ledger.get_principal(PROVIDER)).pending == 10_000
        assert await engine.list_settlements(PROVIDER) == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_expires_quotes_and_reservations(self, seed, clock) -> None:
        engine = await seed()
        await engine.issue_quote(
            QuoteRequest(caller_id=CALLER, callee_id=PROVIDER, tool_name=TOOL, estimated_tokens=100)
        )
        await engine.reserve(
            ReservationRequest(caller_id=CALLER, callee_id=PROVIDER, tool_name=TOOL, estimated_tokens=100)
        )
        clock.advance(400)

        result = await engine.sweep_expired()
        assert (result.quotes_expired, result.reservations_expired) == (1, 1)
        again = await engine.sweep_expired()
        assert (again.quotes_expired, again.reservations_expired) == (0, 0)

    @pytest.mark.asyncio
    async def test_background_sweeper(self, seed, clock) -> None:
        engine = await seed()
        response = await engine.issue_quote(
            QuoteRequest(caller_id=CALLER, callee_id=PROVIDER, tool_name=TOOL, estimated_tokens=100)
        )
        clock.advance(400)

        async with ExpirySweeper(engine, interval_seconds=0.01) as sweeper:
            assert sweeper.running
            for _ in range(100):
                if (await engine.get_quote(response.quote_id)).status == "expired":
                    break
                await asyncio.sleep(0.01)

        assert not sweeper.running
        assert (await engine.get_quote(response.quote_id)).status == "expired"

    def test_sweeper_rejects_non_positive_interval(self, engine) -> None:
        with pytest.raises(ValueError):
            ExpirySweeper(engine, interval_seconds=0)
