# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Read-only cost previews and multi-call spend forecasts."""
from __future__ import annotations

import logging

from pay_meter.config import GuardrailConfig, PricingConfig
from pay_meter.cost import build_cost_breakdown, calculate_cost, validate_tokens
from pay_meter.errors import InvalidRequestError
from pay_meter.guardrails import GuardrailEngine, evaluate_guardrails
from pay_meter.ledger import Ledger
from pay_meter.types import (
    BudgetSnapshot,
    CallEstimate,
    CostPreview,
    PlannedCall,
    SpendForecast,
)

logger = logging.getLogger("pay_meter.preview")


class PreviewEngine:
    """
    Answers "what would this cost, and would it be admitted?" without
    mutating anything. Safe to call repeatedly.
    """

    def __init__(
        self,
        ledger: Ledger,
        guardrails: GuardrailEngine,
        pricing: PricingConfig | None = None,
        config: GuardrailConfig | None = None,
    ) -> None:
        self._ledger = ledger
        self._guardrails = guardrails
        self._pricing = pricing or PricingConfig()
        self._config = config or GuardrailConfig()

    async def preview_cost(
        self,
        caller_id: str,
        callee_id: str,
        tool_name: str,
        tokens_estimate: int,
    ) -> CostPreview:
        """
        Price a prospective call and judge it with the same guardrail
        evaluation that real executions use.

        ``can_execute`` is True only when no guardrail is violated and the
        available balance covers the cost.
        """
        validate_tokens(tokens_estimate, self._pricing, field="tokens_estimate")

        async with self._ledger.storage.transaction() as tx:
            caller = await self._ledger.require_principal(tx, caller_id)
            pricing = await self._ledger.resolve_pricing(tx, callee_id, tool_name)
            balance = await self._ledger.available_balance(tx, caller)
            used, _ = await self._guardrails.daily_spend(tx, caller_id)
            held = await self._guardrails.held_spend(tx, caller_id)

        breakdown = build_cost_breakdown(tokens_estimate, pricing.rate_per_1k_tokens, self._pricing)
        cost = breakdown.cost
        committed = used + held
        violations = evaluate_guardrails(caller, callee_id, cost, committed)

        warnings: list[str] = []
        affordable = balance.available >= cost
        if not affordable:
            warnings.append(
                f"Insufficient balance: need {cost}, have {balance.available} available "
                f"({balance.reserved} reserved)."
            )
        elif balance.available < cost * self._config.low_balance_ratio:
            warnings.append(
                f"Low balance: {balance.available} available, this call would use "
                f"{round(cost / balance.available * 100)}% of it."
            )

        cap = caller.daily_spend_cap
        projected = committed + cost
        if cap is not None and cap > 0 and cap * self._config.daily_cap_warning_ratio <= projected <= cap:
            warnings.append(f"High daily usage: this call would bring spend to {projected} of the {cap} cap.")

        can_execute = affordable and not violations
        logger.debug(
            "cost_previewed",
            extra={"caller_id": caller_id, "callee_id": callee_id, "cost": cost, "can_execute": can_execute},
        )
        return CostPreview(
            cost=cost,
            breakdown=breakdown,
            budget_status=BudgetSnapshot(
                balance=balance.total,
                available=balance.available,
                reserved=balance.reserved,
                daily_spend_used=used,
                daily_spend_remaining=None if cap is None else max(0, cap - used),
            ),
            warnings=warnings,
            violations=violations,
            can_execute=can_execute,
        )

    async def forecast_spend(self, principal_id: str, calls: list[PlannedCall]) -> SpendForecast:
        """
        Preview a multi-call workflow.

        Each call is judged with the daily spend accumulated by the calls
        before it, so a cap that only the whole workflow would breach is
        reported against the call that breaches it.
        """
        if not calls:
            raise InvalidRequestError("calls", "at least one planned call is required")
        for call in calls:
            validate_tokens(call.estimated_tokens, self._pricing, field="estimated_tokens")

        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id)
            balance = await self._ledger.available_balance(tx, principal)
            used, _ = await self._guardrails.daily_spend(tx, principal_id)
            held = await self._guardrails.held_spend(tx, principal_id)
            rates = [
                await self._ledger.resolve_pricing(tx, call.callee_id, call.tool_name) for call in calls
            ]

        estimates: list[CallEstimate] = []
        violations: list[str] = []
        running = used + held
        for index, (call, pricing) in enumerate(zip(calls, rates), start=1):
            cost = calculate_cost(call.estimated_tokens, pricing.rate_per_1k_tokens, self._pricing)
            estimates.append(
                CallEstimate(
                    callee_id=call.callee_id,
                    tool_name=call.tool_name,
                    estimated_tokens=call.estimated_tokens,
                    rate_per_1k_tokens=pricing.rate_per_1k_tokens,
                    estimated_cost=cost,
                )
            )
            for violation in evaluate_guardrails(principal, call.callee_id, cost, running):
                message = f"Call {index} ({call.callee_id}/{call.tool_name}): {violation.message}"
                if violation.rule == "kill_switch":
                    message = violation.message
                if message not in violations:
                    violations.append(message)
            running += cost

        total = sum(estimate.estimated_cost for estimate in estimates)
        if balance.available < total:
            violations.append(
                f"Insufficient balance: need {total}, have {balance.available} available "
                f"({balance.reserved} reserved)."
            )

        warnings: list[str] = []
        if balance.available >= total and balance.available < total * self._config.low_balance_ratio:
            warnings.append(
                f"Low balance: the workflow would use {round(total / balance.available * 100)}% "
                "of the available balance."
            )
        if len({call.callee_id for call in calls}) > 5:
            warnings.append("Workflow touches many providers.")
        if len(estimates) > 1 and total > 0 and max(e.estimated_cost for e in estimates) > total * 0.8:
            warnings.append("One call dominates the total cost.")

        return SpendForecast(
            can_execute=not violations,
            estimated_cost=total,
            calls=estimates,
            balance_after=balance.total - total,
            daily_spend_after=used + total,
            violations=violations,
            warnings=warnings,
        )
