# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
pay-meter: metering and settlement engine for agent micropayments.

Quick start::

    import asyncio
    from pay_meter import PaymentEngine, ReservationRequest, WorkOutcome

    async def main() -> None:
        engine = PaymentEngine()
        await engine.ledger.register_principal("caller", balance=100_000)
        await engine.ledger.register_principal("provider")
        await engine.ledger.register_tool("provider", "summarize", rate_per_1k_tokens=2_000)

        result = await engine.execute_direct("caller", "provider", "summarize", tokens=1_500)
        print(result.cost)  # 4000

        async def work() -> WorkOutcome[str]:
            return WorkOutcome(result="summary text", actual_tokens=800)

        outcome = await engine.execute_with_pre_auth(
            ReservationRequest(
                caller_id="caller", callee_id="provider",
                tool_name="summarize", estimated_tokens=1_000,
            ),
            work,
        )
        print(outcome.capture.actual_cost)  # 2000

    asyncio.run(main())
"""
from __future__ import annotations

from pay_meter.config import (
    EngineConfig,
    GuardrailConfig,
    PricingConfig,
    QuoteConfig,
    ReservationConfig,
)
from pay_meter.cost import (
    apply_margin,
    build_cost_breakdown,
    calculate_cost,
    calculate_platform_fee,
    split_payout,
    token_blocks,
)
from pay_meter.engine import ExpirySweeper, PaymentEngine, SweepResult
from pay_meter.errors import (
    BelowMinimumPayoutError,
    GuardrailViolationError,
    InsufficientBalanceError,
    InvalidRequestError,
    LedgerIntegrityError,
    NotFoundError,
    PaymentRailError,
    PayMeterError,
    PrincipalNotFoundError,
    QuoteAlreadyUsedError,
    QuoteExpiredError,
    QuoteMismatchError,
    QuoteNotActiveError,
    QuoteNotFoundError,
    ReservationExpiredError,
    ReservationNotActiveError,
    ReservationNotFoundError,
    SettlementInProgressError,
    SettlementNotFoundError,
    SettlementStateError,
    StateConflictError,
)
from pay_meter.execution import ExecutionEngine
from pay_meter.guardrails import GuardrailEngine, evaluate_guardrails
from pay_meter.ledger import Ledger
from pay_meter.preview import PreviewEngine
from pay_meter.quotes import QuoteEngine
from pay_meter.reservations import PreAuthOutcome, ReservationEngine, WorkOutcome
from pay_meter.settlement import SettlementEngine
from pay_meter.storage import JournaledStorage, LedgerStorage, MemoryStorage
from pay_meter.types import (
    AvailableBalance,
    BalanceReservation,
    BudgetStatus,
    CaptureResult,
    CostBreakdown,
    CostPreview,
    ExecutionResult,
    GuardrailUpdate,
    GuardrailViolation,
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
    Tool,
    TransferLookup,
    UsageFilter,
    UsageRecord,
)

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "EngineConfig",
    "PricingConfig",
    "QuoteConfig",
    "ReservationConfig",
    "GuardrailConfig",
    # Cost model
    "calculate_cost",
    "calculate_platform_fee",
    "split_payout",
    "apply_margin",
    "token_blocks",
    "build_cost_breakdown",
    # Engines
    "PaymentEngine",
    "ExpirySweeper",
    "SweepResult",
    "Ledger",
    "QuoteEngine",
    "ReservationEngine",
    "GuardrailEngine",
    "evaluate_guardrails",
    "ExecutionEngine",
    "PreviewEngine",
    "SettlementEngine",
    "WorkOutcome",
    "PreAuthOutcome",
    # Storage
    "LedgerStorage",
    "MemoryStorage",
    "JournaledStorage",
    # Types
    "Principal",
    "Tool",
    "UsageRecord",
    "UsageFilter",
    "PricingQuote",
    "QuoteRequest",
    "QuoteResponse",
    "BalanceReservation",
    "ReservationRequest",
    "ReservationResult",
    "CaptureResult",
    "ReleaseResult",
    "AvailableBalance",
    "ExecutionResult",
    "GuardrailUpdate",
    "GuardrailViolation",
    "BudgetStatus",
    "CostBreakdown",
    "CostPreview",
    "PlannedCall",
    "SpendForecast",
    "Settlement",
    "SettlementOutcome",
    "TransferLookup",
    # Errors
    "PayMeterError",
    "InvalidRequestError",
    "QuoteMismatchError",
    "InsufficientBalanceError",
    "BelowMinimumPayoutError",
    "GuardrailViolationError",
    "NotFoundError",
    "PrincipalNotFoundError",
    "QuoteNotFoundError",
    "ReservationNotFoundError",
    "SettlementNotFoundError",
    "StateConflictError",
    "QuoteExpiredError",
    "QuoteAlreadyUsedError",
    "QuoteNotActiveError",
    "ReservationNotActiveError",
    "ReservationExpiredError",
    "SettlementInProgressError",
    "SettlementStateError",
    "PaymentRailError",
    "LedgerIntegrityError",
]
