# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Tests for pre-authorization holds: reserve, capture, release and expiry."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import CALLER, PROVIDER, TOOL
from pay_meter.config import ReservationConfig
from pay_meter.errors import (
    GuardrailViolationError,
    InsufficientBalanceError,
    InvalidRequestError,
    ReservationExpiredError,
    ReservationNotActiveError,
    ReservationNotFoundError,
)
from pay_meter.reservations import ReservationEngine, WorkOutcome
from pay_meter.types import ReservationRequest


def _request(tokens: int = 1_000, timeout: int | None = None) -> ReservationRequest:
    return ReservationRequest(
        caller_id=CALLER,
        callee_id=PROVIDER,
        tool_name=TOOL,
        estimated_tokens=tokens,
        timeout_seconds=timeout,
    )


async def _reservation_status(engine, reservation_id: str) -> str:
    async with engine.storage.transaction() as tx:
        reservation = await tx.get_reservation(reservation_id)
    assert reservation is not None
    return reservation.status


# ---------------------------------------------------------------------------
# TestReserve
# ---------------------------------------------------------------------------


class TestReserve:
    @pytest.mark.asyncio
    async def test_hold_includes_safety_margin(self, seed) -> None:
        engine = await seed(rate=1_000)
        result = await engine.reserve(_request())

        assert result.estimated_cost == 1_000
        assert result.reserved_amount == 1_100
        assert result.available_balance == 98_900

        balance = await engine.get_available_balance(CALLER)
        assert (balance.total, balance.reserved, balance.available) == (100_000, 1_100, 98_900)

    @pytest.mark.asyncio
    async def test_hold_is_not_a_debit(self, seed) -> None:
        engine = await seed(rate=1_000)
        await engine.reserve(_request())
        caller = await engine.ledger.get_principal(CALLER)
        assert caller.balance == 100_000

    @pytest.mark.asyncio
    async def test_insufficient_available_balance(self, seed) -> None:
        engine = await seed(caller_balance=1_000, rate=1_000)
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await engine.reserve(_request())
        assert exc_info.value.required == 1_100
        assert await engine.list_active_reservations(CALLER) == []

    @pytest.mark.asyncio
    async def test_guardrails_use_unmargined_cost(self, seed) -> None:
        engine = await seed(rate=1_000, max_cost_per_call=1_000)
        result = await engine.reserve(_request())
        assert result.reserved_amount == 1_100

    @pytest.mark.asyncio
    async def test_guardrail_violation_places_no_hold(self, seed) -> None:
        engine = await seed(rate=1_000, max_cost_per_call=999)
        with pytest.raises(GuardrailViolationError):
            await engine.reserve(_request())
        assert (await engine.get_available_balance(CALLER)).reserved == 0

    @pytest.mark.asyncio
    async def test_timeout_is_clamped_and_validated(self, seed, clock) -> None:
        engine = await seed()
        long = await engine.reserve(_request(timeout=86_400))
        assert (long.expires_at - clock()).total_seconds() == 1_800
        with pytest.raises(InvalidRequestError):
            await engine.reserve(_request(timeout=0))

    @pytest.mark.asyncio
    async def test_concurrent_holds_never_exceed_balance(self, seed) -> None:
        engine = await seed(caller_balance=10_000, rate=1_000)

        results = await asyncio.gather(*(engine.reserve(_request()) for _ in range(20)), return_exceptions=True)

        accepted = [r for r in results if not isinstance(r, BaseException)]
        rejected = [r for r in results if isinstance(r, BaseException)]
        assert len(accepted) == 9
        assert all(isinstance(r, InsufficientBalanceError) for r in rejected)
        balance = await engine.get_available_balance(CALLER)
        assert balance.reserved == 9 * 1_100
        assert balance.available == 10_000 - 9 * 1_100


# ---------------------------------------------------------------------------
# TestCaptureAndRelease
# ---------------------------------------------------------------------------


class TestCaptureAndRelease:
    @pytest.mark.asyncio
    async def test_capture_debits_actual_cost(self, seed) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())

        captured = await engine.capture(hold.reservation_id, actual_tokens=500)

        assert captured.actual_cost == 1_000
        assert captured.refunded == 100
        caller = await engine.ledger.get_principal(CALLER)
        provider = await engine.ledger.get_principal(PROVIDER)
        assert caller.balance == 99_000
        assert provider.pending == 1_000
        assert (await engine.get_available_balance(CALLER)).reserved == 0
        assert await _reservation_status(engine, hold.reservation_id) == "captured"

        history = await engine.ledger.usage_history(CALLER)
        assert history[0].reservation_id == hold.reservation_id

    @pytest.mark.asyncio
    async def test_capture_uses_current_rate(self, seed) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())
        await engine.ledger.register_tool(PROVIDER, TOOL, rate_per_1k_tokens=1_050)

        captured = await engine.capture(hold.reservation_id, actual_tokens=1_000)
        assert captured.actual_cost == 1_050
        assert captured.refunded == 50

    @pytest.mark.asyncio
    async def test_overage_drawn_from_unreserved_balance(self, seed) -> None:
        engine = await seed(caller_balance=3_000, rate=1_000)
        hold = await engine.reserve(_request())

        captured = await engine.capture(hold.reservation_id, actual_tokens=3_000)

        assert captured.actual_cost == 3_000
        assert captured.refunded == 0
        assert (await engine.ledger.get_principal(CALLER)).balance == 0

    @pytest.mark.asyncio
    async def test_uncoverable_overage_leaves_hold_active(self, seed) -> None:
        engine = await seed(caller_balance=2_500, rate=1_000)
        hold = await engine.reserve(_request())

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await engine.capture(hold.reservation_id, actual_tokens=3_000)

        assert exc_info.value.required == 1_900
        assert exc_info.value.available == 1_400
        assert await _reservation_status(engine, hold.reservation_id) == "active"
        assert (await engine.ledger.get_principal(CALLER)).balance == 2_500

    @pytest.mark.asyncio
    async def test_release_returns_hold_without_moving_money(self, seed) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())

        released = await engine.release(hold.reservation_id, reason="work cancelled")

        assert released.released is True
        assert released.reserved_amount == 1_100
        assert (await engine.get_available_balance(CALLER)).available == 100_000
        assert (await engine.ledger.get_principal(PROVIDER)).pending == 0

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, seed) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())
        await engine.capture(hold.reservation_id, actual_tokens=500)

        released = await engine.release(hold.reservation_id)
        assert released.released is False
        assert await _reservation_status(engine, hold.reservation_id) == "captured"

    @pytest.mark.asyncio
    async def test_double_capture_rejected(self, seed) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())
        await engine.capture(hold.reservation_id, actual_tokens=500)

        with pytest.raises(ReservationNotActiveError):
            await engine.capture(hold.reservation_id, actual_tokens=500)
        assert (await engine.ledger.get_principal(CALLER)).balance == 99_000

    @pytest.mark.asyncio
    async def test_capture_and_release_race_resolves_once(self, seed) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())

        captured, released = await asyncio.gather(
            engine.capture(hold.reservation_id, actual_tokens=500),
            engine.release(hold.reservation_id),
            return_exceptions=True,
        )

        status = await _reservation_status(engine, hold.reservation_id)
        balance = (await engine.ledger.get_principal(CALLER)).balance
        if status == "captured":
            assert not isinstance(captured, BaseException)
            assert released.released is False
            assert balance == 99_000
        else:
            assert status == "released"
            assert isinstance(captured, ReservationNotActiveError)
            assert balance == 100_000

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, seed) -> None:
        engine = await seed()
        with pytest.raises(ReservationNotFoundError):
            await engine.capture("missing", actual_tokens=10)
        with pytest.raises(ReservationNotFoundError):
            await engine.release("missing")


# ---------------------------------------------------------------------------
# TestExpiry
# ---------------------------------------------------------------------------


class TestExpiry:
    @pytest.mark.asyncio
    async def test_capture_after_expiry_marks_expired(self, seed, clock) -> None:
        engine = await seed(rate=1_000)
        hold = await engine.reserve(_request())
        clock.advance(300)

        with pytest.raises(ReservationExpiredError):
            await engine.capture(hold.reservation_id, actual_tokens=500)

        assert await _reservation_status(engine, hold.reservation_id) == "expired"
        assert (await engine.ledger.get_principal(CALLER)).balance == 100_000
        with pytest.raises(ReservationNotActiveError):
            await engine.capture(hold.reservation_id, actual_tokens=500)

    @pytest.mark.asyncio
    async def test_lapsed_hold_stops_counting_before_sweep(self, seed, clock) -> None:
        engine = await seed(rate=1_000)
        await engine.reserve(_request(timeout=60))
        clock.advance(61)

        balance = await engine.get_available_balance(CALLER)
        assert balance.reserved == 0
        assert await engine.list_active_reservations(CALLER) == []

    @pytest.mark.asyncio
    async def test_sweep_marks_lapsed_holds(self, seed, clock) -> None:
        engine = await seed(rate=1_000)
        short = await engine.reserve(_request(timeout=60))
        await engine.reserve(_request(timeout=600))
        clock.advance(120)

        assert await engine.reservations.expire_old_reservations() == 1
        assert await _reservation_status(engine, short.reservation_id) == "expired"
        assert await engine.reservations.expire_old_reservations() == 0

    @pytest.mark.asyncio
    async def test_stats(self, seed, clock) -> None:
        engine = await seed(rate=1_000)
        first = await engine.reserve(_request())
        second = await engine.reserve(_request())
        await engine.reserve(_request())
        clock.advance(10)
        await engine.capture(first.reservation_id, actual_tokens=500)
        await engine.release(second.reservation_id)

        stats = await engine.reservations.reservation_stats(CALLER)
        assert stats.active_count == 1
        assert stats.total_reserved == 1_100
        assert stats.avg_duration_seconds == 10.0
        assert stats.capture_rate == round(1 / 3, 4)


# ---------------------------------------------------------------------------
# TestPreAuth
# ---------------------------------------------------------------------------


class TestPreAuth:
    @pytest.mark.asyncio
    async def test_successful_work_is_captured(self, seed) -> None:
        engine = await seed(rate=1_000)

        async def work() -> WorkOutcome[str]:
            return WorkOutcome(result="summary", actual_tokens=500)

        outcome = await engine.execute_with_pre_auth(_request(), work)

        assert outcome.result == "summary"
        assert outcome.reservation.reserved_amount == 1_100
        assert outcome.capture.actual_cost == 1_000
        assert (await engine.ledger.get_principal(CALLER)).balance == 99_000

    @pytest.mark.asyncio
    async def test_failed_work_releases_hold(self, seed) -> None:
        engine = await seed(rate=1_000)

        async def work() -> WorkOutcome[str]:
            raise RuntimeError("tool crashed")

        with pytest.raises(RuntimeError, match="tool crashed"):
            await engine.execute_with_pre_auth(_request(), work)

        balance = await engine.get_available_balance(CALLER)
        assert (balance.total, balance.reserved) == (100_000, 0)
        assert await engine.list_active_reservations(CALLER) == []

    @pytest.mark.asyncio
    async def test_refused_reservation_skips_work(self, seed) -> None:
        engine = await seed(caller_balance=500, rate=1_000)
        calls: list[str] = []

        async def work() -> WorkOutcome[str]:
            calls.append("ran")
            return WorkOutcome(result="x", actual_tokens=1)

        with pytest.raises(InsufficientBalanceError):
            await engine.execute_with_pre_auth(_request(), work)
        assert calls == []


# ---------------------------------------------------------------------------
# TestSpendLimitsAcrossHolds
# ---------------------------------------------------------------------------


class TestSpendLimitsAcrossHolds:
    @pytest.mark.asyncio
    async def test_live_holds_count_toward_daily_cap(self, seed) -> None:
        engine = await seed(daily_spend_cap=5_000)
        first = await engine.reserve(_request())
        second = await engine.reserve(_request())

        with pytest.raises(GuardrailViolationError) as exc_info:
            await engine.reserve(_request())
        assert exc_info.value.rules == ["daily_spend_cap"]

        await engine.capture(first.reservation_id, actual_tokens=1_000)
        await engine.capture(second.reservation_id, actual_tokens=1_000)
        status = await engine.get_budget_status(CALLER)
        assert status.daily_spend.used == 4_000

    @pytest.mark.asyncio
    async def test_capture_refused_above_daily_cap(self, seed) -> None:
        engine = await seed(daily_spend_cap=5_000)
        hold = await engine.reserve(_request())

        with pytest.raises(GuardrailViolationError) as exc_info:
            await engine.capture(hold.reservation_id, actual_tokens=3_000)

        assert exc_info.value.rules == ["daily_spend_cap"]
        assert await _reservation_status(engine, hold.reservation_id) == "active"
        assert (await engine.ledger.get_principal(CALLER)).balance == 100_000
        assert (await engine.ledger.get_principal(PROVIDER)).pending == 0

    @pytest.mark.asyncio
    async def test_capture_refused_above_per_call_ceiling(self, seed) -> None:
        engine = await seed(rate=2_000, max_cost_per_call=2_000)
        hold = await engine.reserve(_request())
        await engine.ledger.register_tool(PROVIDER, TOOL, rate_per_1k_tokens=3_000)

        with pytest.raises(GuardrailViolationError) as exc_info:
            await engine.capture(hold.reservation_id, actual_tokens=1_000)

        assert exc_info.value.rules == ["max_cost_per_call"]
        assert await _reservation_status(engine, hold.reservation_id) == "active"
        assert (await engine.ledger.get_principal(CALLER)).balance == 100_000

        released = await engine.release(hold.reservation_id)
        assert released.released is True

    @pytest.mark.asyncio
    async def test_capture_within_cap_ignores_its_own_hold(self, seed) -> None:
        engine = await seed(daily_spend_cap=2_000)
        hold = await engine.reserve(_request())

        captured = await engine.capture(hold.reservation_id, actual_tokens=1_000)
        assert captured.actual_cost == 2_000

    @pytest.mark.asyncio
    async def test_direct_execution_counts_live_holds(self, seed) -> None:
        engine = await seed(daily_spend_cap=5_000)
        await engine.reserve(_request())

        with pytest.raises(GuardrailViolationError) as exc_info:
            await engine.execute_direct(CALLER, PROVIDER, TOOL, 1_500)
        assert exc_info.value.rules == ["daily_spend_cap"]

        result = await engine.execute_direct(CALLER, PROVIDER, TOOL, 500)
        assert result.cost == 2_000

    @pytest.mark.asyncio
    async def test_lapsed_holds_free_the_cap(self, seed, clock) -> None:
        engine = await seed(daily_spend_cap=5_000)
        await engine.reserve(_request(timeout=60))
        clock.advance(61)

        result = await engine.execute_direct(CALLER, PROVIDER, TOOL, 2_000)
        assert result.cost == 4_000

    @pytest.mark.asyncio
    async def test_preview_counts_live_holds(self, seed) -> None:
        engine = await seed(daily_spend_cap=5_000)
        await engine.reserve(_request())

        preview = await engine.preview_cost(CALLER, PROVIDER, TOOL, 1_500)
        assert [v.rule for v in preview.violations] == ["daily_spend_cap"]
        assert preview.can_execute is False


# ---------------------------------------------------------------------------
# TestTimeoutBounds
# ---------------------------------------------------------------------------


class TestTimeoutBounds:
    @pytest.mark.asyncio
    async def test_default_timeout_applies(self, seed, clock) -> None:
        engine = await seed()
        hold = await engine.reserve(_request())
        assert (hold.expires_at - clock()).total_seconds() == 300

    def test_default_timeout_never_exceeds_max(self, engine) -> None:
        config = ReservationConfig.model_construct(
            default_timeout_seconds=300,
            max_timeout_seconds=60,
            safety_margin=Decimal("1.1"),
        )
        reservations = ReservationEngine(engine.ledger, engine.guardrails, config)
        assert reservations.clamp_timeout(None) == 60
        assert reservations.clamp_timeout(30) == 30
