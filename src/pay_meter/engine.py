# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel

from pay_meter.config import EngineConfig
from pay_meter.errors import InvalidRequestError, PayMeterError
from pay_meter.execution import ExecutionEngine
from pay_meter.guardrails import GuardrailEngine
from pay_meter.ledger import Ledger
from pay_meter.preview import PreviewEngine
from pay_meter.quotes import QuoteEngine
from pay_meter.reservations import PreAuthOutcome, ReservationEngine, WorkOutcome
from pay_meter.settlement import PaymentRail, SettlementEngine, TransferLookupFn
from pay_meter.storage.interface import LedgerStorage
from pay_meter.storage.memory import MemoryStorage
from pay_meter.types import (
    AvailableBalance,
    BalanceReservation,
    BudgetStatus,
    CaptureResult,
    Clock,
    CostPreview,
    ExecutionResult,
    GuardrailUpdate,
    PlannedCall,
    Principal,
    PricingQuote,
    QuoteRequest,
    QuoteResponse,
    ReleaseResult,
    ReservationRequest,
    ReservationResult,
    Settlement,
    SettlementOutcome,
    SpendForecast,
    utc_now,
)

logger = logging.getLogger("pay_meter.engine")

T = TypeVar("T")


class SweepResult(BaseModel, frozen=True):
    quotes_expired: int
    reservations_expired: int


class PaymentEngine:
    """
    Composes the ledger, quote, reservation, guardrail, execution and
    settlement engines behind one object.

    Every component shares the same storage, configuration and clock. The
    components are also exposed as attributes (``engine.quotes``,
    ``engine.reservations``, ...) for operations not surfaced here.

    When built with a ``payment_rail`` and ``auto_settle=True``, a callee
    whose pending earnings reach the minimum payout after a charge is
    settled in a background task. Auto-settle failures are logged and never
    reach the charging call. Await :meth:`drain` to wait for them.

    Example::

        engine = PaymentEngine()
        await engine.ledger.register_principal("caller", balance=100_000)
        await engine.ledger.register_principal("provider")
        await engine.ledger.register_tool("provider", "summarize", 2_000)

        result = await engine.execute_direct("caller", "provider", "summarize", 1_500)
        assert result.cost == 4_000
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        storage: LedgerStorage | None = None,
        payment_rail: PaymentRail | None = None,
        auto_settle: bool = False,
        clock: Clock | None = None,
    ) -> None:
        cfg = config or EngineConfig()
        self._config = cfg
        self._clock = clock or utc_now
        self._payment_rail = payment_rail
        self._auto_settle = auto_settle and payment_rail is not None
        self._background: set[asyncio.Task[None]] = set()
        self._settling: set[str] = set()

        self.storage = storage or MemoryStorage()
        self.ledger = Ledger(self.storage, cfg.pricing, self._clock)
        self.guardrails = GuardrailEngine(self.ledger, cfg.guardrails, cfg.pricing, self._clock)
        self.quotes = QuoteEngine(self.ledger, cfg.quotes, cfg.pricing, self._clock)
        self.reservations = ReservationEngine(
            self.ledger, self.guardrails, cfg.reservations, cfg.pricing, self._clock
        )
        self.execution = ExecutionEngine(self.ledger, self.guardrails, self.quotes, cfg.pricing, self._clock)
        self.preview = PreviewEngine(self.ledger, self.guardrails, cfg.pricing, cfg.guardrails)
        self.settlement = SettlementEngine(self.ledger, cfg.pricing, self._clock)

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Pricing & previews
    # ------------------------------------------------------------------

    async def preview_cost(
        self, caller_id: str, callee_id: str, tool_name: str, tokens_estimate: int
    ) -> CostPreview:
        return await self.preview.preview_cost(caller_id, callee_id, tool_name, tokens_estimate)

    async def forecast_spend(self, principal_id: str, calls: list[PlannedCall]) -> SpendForecast:
        return await self.preview.forecast_spend(principal_id, calls)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def issue_quote(self, request: QuoteRequest) -> QuoteResponse:
        return await self.quotes.issue_quote(request)

    async def get_quote(self, quote_id: str) -> PricingQuote:
        return await self.quotes.get_quote(quote_id)

    async def validate_quote(
        self, quote_id: str, caller_id: str, callee_id: str, tool_name: str, actual_tokens: int
    ) -> PricingQuote:
        return await self.quotes.validate_quote(quote_id, caller_id, callee_id, tool_name, actual_tokens)

    async def cancel_quote(self, quote_id: str, caller_id: str | None = None) -> bool:
        return await self.quotes.cancel_quote(quote_id, caller_id)

    async def list_active_quotes(self, caller_id: str) -> list[PricingQuote]:
        return await self.quotes.list_active_quotes(caller_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_direct(
        self, caller_id: str, callee_id: str, tool_name: str, tokens: int
    ) -> ExecutionResult:
        result = await self.execution.execute_direct(caller_id, callee_id, tool_name, tokens)
        self._after_credit(result.callee_id)
        return result

    async def execute_with_quote(
        self, quote_id: str, caller_id: str, callee_id: str, tool_name: str, actual_tokens: int
    ) -> ExecutionResult:
        result = await self.execution.execute_with_quote(
            quote_id, caller_id, callee_id, tool_name, actual_tokens
        )
        self._after_credit(result.callee_id)
        return result

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def reserve(self, request: ReservationRequest) -> ReservationResult:
        return await self.reservations.reserve(request)

    async def capture(self, reservation_id: str, actual_tokens: int) -> CaptureResult:
        result = await self.reservations.capture(reservation_id, actual_tokens)
        self._after_credit(result.callee_id)
        return result

    async def release(self, reservation_id: str, reason: str | None = None) -> ReleaseResult:
        return await self.reservations.release(reservation_id, reason)

    async def execute_with_pre_auth(
        self,
        request: ReservationRequest,
        work_fn: Callable[[], Awaitable[WorkOutcome[T]]],
    ) -> PreAuthOutcome[T]:
        outcome = await self.reservations.execute_with_pre_auth(request, work_fn)
        self._after_credit(outcome.capture.callee_id)
        return outcome

    async def get_available_balance(self, principal_id: str) -> AvailableBalance:
        return await self.reservations.get_available_balance(principal_id)

    async def list_active_reservations(self, principal_id: str) -> list[BalanceReservation]:
        return await self.reservations.list_active_reservations(principal_id)

    # ------------------------------------------------------------------
    # Budget guardrails
    # ------------------------------------------------------------------

    async def get_budget_status(self, principal_id: str) -> BudgetStatus:
        return await self.guardrails.get_budget_status(principal_id)

    async def update_guardrails(self, principal_id: str, update: GuardrailUpdate) -> Principal:
        return await self.guardrails.update_guardrails(principal_id, update)

    async def pause(self, principal_id: str, reason: str | None = None) -> Principal:
        return await self.guardrails.pause(principal_id, reason)

    async def resume(self, principal_id: str) -> Principal:
        return await self.guardrails.resume(principal_id)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(self, principal_id: str, pay_fn: PaymentRail | None = None) -> SettlementOutcome:
        """
        Settle a principal's pending earnings.

        Uses ``pay_fn`` when given, otherwise the engine's payment rail.

        Raises:
            InvalidRequestError: If neither is available.
        """
        rail = pay_fn or self._payment_rail
        if rail is None:
            raise InvalidRequestError("pay_fn", "no payment rail configured for settlement")
        return await self.settlement.settle(principal_id, rail)

    async def reconcile_pending(
        self, lookup: TransferLookupFn, older_than_seconds: int = 60
    ) -> list[SettlementOutcome]:
        return await self.settlement.reconcile_pending(lookup, older_than_seconds)

    async def list_settlements(self, principal_id: str | None = None) -> list[Settlement]:
        return await self.settlement.list_settlements(principal_id)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> SweepResult:
        """Expire lapsed quotes and reservations. Correctness never depends on this running."""
        quotes = await self.quotes.expire_stale_quotes()
        reservations = await self.reservations.expire_old_reservations()
        return SweepResult(quotes_expired=quotes, reservations_expired=reservations)

    async def drain(self) -> None:
        """Wait for every background auto-settlement started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Auto-settlement
    # ------------------------------------------------------------------

    def _after_credit(self, callee_id: str) -> None:
        if not self._auto_settle or callee_id in self._settling:
            return
        self._settling.add(callee_id)
        task = asyncio.get_running_loop().create_task(self._auto_settle_principal(callee_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _auto_settle_principal(self, principal_id: str) -> None:
        rail = self._payment_rail
        try:
            if rail is None:
                return
            eligibility = await self.settlement.check_settlement_eligibility(principal_id)
            if not eligibility.eligible:
                return
            outcome = await self.settlement.settle(principal_id, rail)
            logger.info(
                "auto_settlement_completed",
                extra={"principal_id": principal_id, "settlement_id": outcome.settlement_id},
            )
        except PayMeterError as exc:
            logger.warning(
                "auto_settlement_failed",
                extra={"principal_id": principal_id, "code": exc.code, "error": exc.message},
            )
        except Exception:
            logger.exception("auto_settlement_error", extra={"principal_id": principal_id})
        finally:
            self._settling.discard(principal_id)


class ExpirySweeper:
    """
    Periodically runs :meth:`PaymentEngine.sweep_expired` on the event loop.

    Example::

        async with ExpirySweeper(engine, interval_seconds=30):
            await serve_forever()
    """

    def __init__(self, engine: PaymentEngine, interval_seconds: float = 30.0) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0; got {interval_seconds}.")
        self._engine = engine
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            try:
                result = await self._engine.sweep_expired()
                if result.quotes_expired or result.reservations_expired:
                    logger.info(
                        "expiry_sweep",
                        extra={
                            "quotes_expired": result.quotes_expired,
                            "reservations_expired": result.reservations_expired,
                        },
                    )
            except Exception:
                logger.exception("expiry_sweep_failed")
            await asyncio.sleep(self._interval)

    async def __aenter__(self) -> ExpirySweeper:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
