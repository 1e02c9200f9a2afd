# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
Execution orchestrator: price, admit, then charge atomically.

Both paths lock the principals before reading the balance they check, so
the sufficiency check and the debit happen in one isolated unit. Lock
order is always the quote row (when there is one) followed by the
principals in sorted id order.
"""
from __future__ import annotations

import logging
from uuid import uuid4

from pay_meter.config import PricingConfig
from pay_meter.cost import calculate_cost, validate_tokens
from pay_meter.errors import InsufficientBalanceError, PrincipalNotFoundError
from pay_meter.guardrails import GuardrailEngine
from pay_meter.ledger import Ledger
from pay_meter.quotes import QuoteEngine
from pay_meter.storage.interface import LedgerTransaction
from pay_meter.types import Clock, ExecutionResult, UsageRecord, utc_now

logger = logging.getLogger("pay_meter.execution")


class ExecutionEngine:
    """
    Charges single tool calls, either at the live rate or against a quote.

    Example::

        execution = ExecutionEngine(ledger, guardrails, quotes)
        result = await execution.execute_direct("caller", "provider", "summarize", tokens=1_500)
        print(result.cost)  # 4000 at a rate of 2000 per 1k tokens
    """

    def __init__(
        self,
        ledger: Ledger,
        guardrails: GuardrailEngine,
        quotes: QuoteEngine,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._guardrails = guardrails
        self._quotes = quotes
        self._pricing = pricing or PricingConfig()
        self._clock = clock or utc_now

    async def execute_direct(
        self,
        caller_id: str,
        callee_id: str,
        tool_name: str,
        tokens: int,
    ) -> ExecutionResult:
        """
        Charge a call at the tool's live rate.

        Raises:
            InvalidRequestError: If ``tokens`` is negative or above the
                per-call maximum.
            PrincipalNotFoundError: If the caller or callee is unknown.
            GuardrailViolationError: Naming every rule that blocks the call.
            InsufficientBalanceError: If available balance is below the cost.
        """
        validate_tokens(tokens, self._pricing)

        async with self._ledger.storage.transaction() as tx:
            pricing = await self._ledger.resolve_pricing(tx, callee_id, tool_name)
            cost = calculate_cost(tokens, pricing.rate_per_1k_tokens, self._pricing)
            record = await self._charge(
                tx,
                caller_id=caller_id,
                callee_id=callee_id,
                tool_id=pricing.tool_id,
                tool_name=tool_name,
                tokens=tokens,
                rate=pricing.rate_per_1k_tokens,
                cost=cost,
            )

        logger.info(
            "tool_executed",
            extra={
                "usage_record_id": record.id,
                "caller_id": caller_id,
                "callee_id": callee_id,
                "tool_name": tool_name,
                "tokens": tokens,
                "cost": cost,
                "pricing_source": pricing.source,
            },
        )
        return self._result(record)

    async def execute_with_quote(
        self,
        quote_id: str,
        caller_id: str,
        callee_id: str,
        tool_name: str,
        actual_tokens: int,
    ) -> ExecutionResult:
        """
        Charge a call at the rate frozen in a quote, consuming the quote.

        The charge is ``cost(actual_tokens, quoted rate)``; since
        ``actual_tokens`` may not exceed the quoted estimate it never
        exceeds the quoted cost. The quote transitions to ``used`` in the
        same commit as the usage record it backs.

        Raises:
            QuoteNotFoundError, QuoteExpiredError, QuoteAlreadyUsedError,
            QuoteNotActiveError, QuoteMismatchError: If the quote cannot
                pay for this call.
            GuardrailViolationError, InsufficientBalanceError: As for
                :meth:`execute_direct`.
        """
        async with self._ledger.storage.transaction() as tx:
            check = await self._quotes.check_locked(
                tx, quote_id, caller_id, callee_id, tool_name, actual_tokens
            )
            if check.valid:
                quote = check.quote
                cost = calculate_cost(actual_tokens, quote.rate_per_1k_tokens, self._pricing)
                record = await self._charge(
                    tx,
                    caller_id=caller_id,
                    callee_id=callee_id,
                    tool_id=quote.tool_id,
                    tool_name=tool_name,
                    tokens=actual_tokens,
                    rate=quote.rate_per_1k_tokens,
                    cost=cost,
                    quote_id=quote_id,
                )
                await self._quotes.consume(tx, quote, record.id)

        if check.error is not None:
            logger.warning(
                "quote_rejected",
                extra={"quote_id": quote_id, "caller_id": caller_id, "code": check.error.code},
            )
            raise check.error

        logger.info(
            "tool_executed",
            extra={
                "usage_record_id": record.id,
                "caller_id": caller_id,
                "callee_id": callee_id,
                "tool_name": tool_name,
                "tokens": actual_tokens,
                "cost": cost,
                "quote_id": quote_id,
            },
        )
        return self._result(record)

    async def _charge(
        self,
        tx: LedgerTransaction,
        *,
        caller_id: str,
        callee_id: str,
        tool_id: str | None,
        tool_name: str,
        tokens: int,
        rate: int,
        cost: int,
        quote_id: str | None = None,
    ) -> UsageRecord:
        locked = await tx.lock_principals([caller_id, callee_id])
        caller = locked.get(caller_id)
        if caller is None:
            raise PrincipalNotFoundError(caller_id)
        if callee_id not in locked:
            raise PrincipalNotFoundError(callee_id)

        await self._guardrails.enforce(tx, caller, callee_id, cost)

        balance = await self._ledger.available_balance(tx, caller)
        if balance.available < cost:
            logger.warning(
                "execution_rejected",
                extra={"caller_id": caller_id, "cost": cost, "available": balance.available},
            )
            raise InsufficientBalanceError(
                caller_id,
                required=cost,
                available=balance.available,
                balance=balance.total,
                reserved=balance.reserved,
                context=f"call to '{callee_id}/{tool_name}'",
            )

        record = UsageRecord(
            id=str(uuid4()),
            caller_id=caller_id,
            callee_id=callee_id,
            tool_id=tool_id,
            tool_name=tool_name,
            tokens_used=tokens,
            rate_per_1k_tokens=rate,
            cost=cost,
            quote_id=quote_id,
            created_at=self._clock(),
        )
        await self._ledger.debit(tx, caller_id, cost)
        await self._ledger.credit_pending(tx, callee_id, cost)
        await self._ledger.append_usage_record(tx, record)
        return record

    @staticmethod
    def _result(record: UsageRecord) -> ExecutionResult:
        return ExecutionResult(
            usage_record_id=record.id,
            caller_id=record.caller_id,
            callee_id=record.callee_id,
            tool_id=record.tool_id,
            tool_name=record.tool_name,
            tokens_used=record.tokens_used,
            cost=record.cost,
            rate_per_1k_tokens=record.rate_per_1k_tokens,
            quote_id=record.quote_id,
        )
