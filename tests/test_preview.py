# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Tests for read-only cost previews and multi-call spend forecasts."""

from __future__ import annotations

import pytest

from conftest import CALLER, PROVIDER, TOOL
from pay_meter.errors import InvalidRequestError
from pay_meter.types import PlannedCall


class TestPreviewCost:
    @pytest.mark.asyncio
    async def test_affordable_call(self, seed) -> None:
        engine = await seed()
        preview = await engine.preview_cost(CALLER, PROVIDER, TOOL, 1_500)

        assert preview.cost == 4_000
        assert preview.breakdown.platform_fee == 200
        assert preview.can_execute is True
        assert preview.warnings == []
        assert preview.budget_status.available == 100_000

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, seed) -> None:
        engine = await seed(caller_balance=3_000)
        preview = await engine.preview_cost(CALLER, PROVIDER, TOOL, 1_500)

        assert preview.can_execute is False
        assert preview.warnings == ["Insufficient balance: need 4000, have 3000 available (0 reserved)."]

    @pytest.mark.asyncio
    async def test_low_balance_warns_but_allows(self, seed) -> None:
        engine = await seed(caller_balance=4_500)
        preview = await engine.preview_cost(CALLER, PROVIDER, TOOL, 1_500)

        assert preview.can_execute is True
        assert len(preview.warnings) == 1
        assert preview.warnings[0].startswith("Low balance")

    @pytest.mark.asyncio
    async def test_guardrail_violation_blocks(self, seed) -> None:
        engine = await seed(max_cost_per_call=3_000)
        preview = await engine.preview_cost(CALLER, PROVIDER, TOOL, 1_500)

        assert preview.can_execute is False
        assert [v.rule for v in preview.violations] == ["max_cost_per_call"]

    @pytest.mark.asyncio
    async def test_preview_does_not_mutate(self, seed) -> None:
        engine = await seed()
        for _ in range(3):
            await engine.preview_cost(CALLER, PROVIDER, TOOL, 1_500)

        assert (await engine.ledger.get_principal(CALLER)).balance == 100_000
        assert await engine.ledger.usage_history(CALLER) == []


class TestForecastSpend:
    @pytest.mark.asyncio
    async def test_cap_breach_reported_against_the_breaching_call(self, seed) -> None:
        engine = await seed(daily_spend_cap=10_000)
        calls = [PlannedCall(callee_id=PROVIDER, tool_name=TOOL, estimated_tokens=1_500)] * 3

        forecast = await engine.forecast_spend(CALLER, calls)

        assert forecast.estimated_cost == 12_000
        assert forecast.balance_after == 88_000
        assert forecast.daily_spend_after == 12_000
        assert forecast.can_execute is False
        assert len(forecast.violations) == 1
        assert forecast.violations[0].startswith("Call 3")

    @pytest.mark.asyncio
    async def test_total_balance_checked(self, seed) -> None:
        engine = await seed(caller_balance=6_000)
        calls = [PlannedCall(callee_id=PROVIDER, tool_name=TOOL, estimated_tokens=1_500)] * 2

        forecast = await engine.forecast_spend(CALLER, calls)

        assert forecast.can_execute is False
        assert forecast.violations == ["Insufficient balance: need 8000, have 6000 available (0 reserved)."]

    @pytest.mark.asyncio
    async def test_mixed_tools_priced_individually(self, seed) -> None:
        engine = await seed()
        calls = [
            PlannedCall(callee_id=PROVIDER, tool_name=TOOL, estimated_tokens=1_500),
            PlannedCall(callee_id=PROVIDER, tool_name="translate", estimated_tokens=1_500),
        ]

        forecast = await engine.forecast_spend(CALLER, calls)

        assert [c.estimated_cost for c in forecast.calls] == [4_000, 2_000]
        assert forecast.can_execute is True

    @pytest.mark.asyncio
    async def test_empty_workflow_rejected(self, seed) -> None:
        engine = await seed()
        with pytest.raises(InvalidRequestError):
            await engine.forecast_spend(CALLER, [])
