# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
Budget admission control.

:func:`evaluate_guardrails` is the single rule evaluator. Previews and real
executions both call it, so a preview that says a call would be admitted
uses exactly the logic that admits it.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Collection

from pay_meter.config import GuardrailConfig, PricingConfig
from pay_meter.errors import GuardrailViolationError
from pay_meter.ledger import Ledger
from pay_meter.storage.interface import LedgerTransaction
from pay_meter.types import (
    BudgetLimits,
    BudgetStatus,
    Clock,
    DailySpend,
    GuardrailRule,
    GuardrailUpdate,
    GuardrailViolation,
    HealthStatus,
    Principal,
    UsageFilter,
    utc_now,
)

logger = logging.getLogger("pay_meter.guardrails")


def evaluate_guardrails(
    principal: Principal,
    callee_id: str,
    cost: int,
    daily_spend_used: int,
) -> list[GuardrailViolation]:
    """
    Evaluate every admission rule and return all that are violated.

    An empty list means the spend is admitted. Evaluation does not stop at
    the first failure.

    Args:
        principal: The caller whose limits apply.
        callee_id: The principal that would be paid.
        cost: Prospective charge in lamports.
        daily_spend_used: Lamports already committed by the caller inside the
            trailing daily window: charged spend plus live holds.
    """
    violations: list[GuardrailViolation] = []

    if principal.is_paused:
        violations.append(
            GuardrailViolation(
                rule="kill_switch",
                message=f"Principal '{principal.id}' is paused; all spending is blocked.",
            )
        )

    if principal.max_cost_per_call is not None and cost > principal.max_cost_per_call:
        violations.append(
            GuardrailViolation(
                rule="max_cost_per_call",
                message=(
                    f"Cost {cost} exceeds the per-call limit of {principal.max_cost_per_call} "
                    f"(over by {cost - principal.max_cost_per_call})."
                ),
                limit=principal.max_cost_per_call,
                attempted=cost,
            )
        )

    if principal.daily_spend_cap is not None and daily_spend_used + cost > principal.daily_spend_cap:
        remaining = max(0, principal.daily_spend_cap - daily_spend_used)
        violations.append(
            GuardrailViolation(
                rule="daily_spend_cap",
                message=(
                    f"Daily cap of {principal.daily_spend_cap} would be exceeded: "
                    f"{daily_spend_used} spent + {cost} requested = {daily_spend_used + cost} "
                    f"({remaining} remaining)."
                ),
                limit=principal.daily_spend_cap,
                attempted=daily_spend_used + cost,
            )
        )

    if principal.allowed_callees is not None and callee_id not in principal.allowed_callees:
        violations.append(
            GuardrailViolation(
                rule="callee_allowlist",
                message=(
                    f"Callee '{callee_id}' is not in the allowlist of principal '{principal.id}' "
                    f"({len(principal.allowed_callees)} allowed)."
                ),
            )
        )

    return violations


class GuardrailEngine:
    """
    Admission checks, budget status and guardrail configuration.

    Example::

        guardrails = GuardrailEngine(ledger)
        await guardrails.update_guardrails("caller", GuardrailUpdate(max_cost_per_call=5_000))
        status = await guardrails.get_budget_status("caller")
        print(status.health)  # "healthy"
    """

    def __init__(
        self,
        ledger: Ledger,
        config: GuardrailConfig | None = None,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._config = config or GuardrailConfig()
        self._pricing = pricing or PricingConfig()
        self._clock = clock or utc_now

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def daily_spend(self, tx: LedgerTransaction, principal_id: str) -> tuple[int, int]:
        """Return ``(lamports, call count)`` charged as caller in the trailing window."""
        since = self._clock() - timedelta(seconds=self._config.daily_window_seconds)
        records = await tx.list_usage_records(UsageFilter(caller_id=principal_id, since=since))
        return sum(record.cost for record in records), len(records)

    async def held_spend(
        self,
        tx: LedgerTransaction,
        principal_id: str,
        exclude_reservation_id: str | None = None,
    ) -> int:
        """Estimated cost of the principal's live holds, already admitted against the cap."""
        now = self._clock()
        holds = await tx.list_reservations(caller_id=principal_id, status="active")
        return sum(
            hold.estimated_cost
            for hold in holds
            if hold.expires_at > now and hold.id != exclude_reservation_id
        )

    async def committed_spend(
        self,
        tx: LedgerTransaction,
        principal_id: str,
        exclude_reservation_id: str | None = None,
    ) -> int:
        """Charged spend in the daily window plus spend admitted by live holds."""
        used, _ = await self.daily_spend(tx, principal_id)
        return used + await self.held_spend(tx, principal_id, exclude_reservation_id)

    async def check(
        self,
        tx: LedgerTransaction,
        principal: Principal,
        callee_id: str,
        cost: int,
        exclude_reservation_id: str | None = None,
    ) -> list[GuardrailViolation]:
        committed = await self.committed_spend(tx, principal.id, exclude_reservation_id)
        return evaluate_guardrails(principal, callee_id, cost, committed)

    async def enforce(
        self,
        tx: LedgerTransaction,
        principal: Principal,
        callee_id: str,
        cost: int,
        *,
        rules: Collection[GuardrailRule] | None = None,
        exclude_reservation_id: str | None = None,
    ) -> None:
        """
        Raise if any guardrail blocks the spend.

        The daily cap is judged against charged spend plus the estimated
        cost of every live hold, so holds cannot admit more than the cap.

        Args:
            rules: Only these rules are enforced when given.
            exclude_reservation_id: A hold whose admitted spend ``cost``
                replaces, so it is not counted twice.

        Raises:
            GuardrailViolationError: Carrying every violated rule.
        """
        violations = await self.check(tx, principal, callee_id, cost, exclude_reservation_id)
        if rules is not None:
            violations = [v for v in violations if v.rule in rules]
        if violations:
            logger.warning(
                "spend_blocked",
                extra={
                    "principal_id": principal.id,
                    "callee_id": callee_id,
                    "cost": cost,
                    "rules": [v.rule for v in violations],
                },
            )
            raise GuardrailViolationError(principal.id, violations)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_budget_status(self, principal_id: str) -> BudgetStatus:
        """Point-in-time budget report with a health verdict and recommendations."""
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id)
            balance = await self._ledger.available_balance(tx, principal)
            used, count = await self.daily_spend(tx, principal_id)
            all_time = await tx.list_usage_records(UsageFilter(caller_id=principal_id))
            holds = [
                r
                for r in await tx.list_reservations(caller_id=principal_id, status="active")
                if r.expires_at > now
            ]

        cap = principal.daily_spend_cap
        if cap is None:
            remaining = None
            percent_used = None
        else:
            remaining = max(0, cap - used)
            percent_used = round(used / cap * 100, 2) if cap > 0 else (100.0 if used > 0 else 0.0)

        warnings: list[str] = []
        recommendations: list[str] = []
        critical = False

        if principal.is_paused:
            warnings.append("Principal is paused; all spending is blocked.")
            recommendations.append("Resume the principal when spending should continue.")

        if balance.available < self._pricing.min_cost:
            critical = True
            warnings.append(
                f"Available balance {balance.available} is below the minimum call cost "
                f"of {self._pricing.min_cost}."
            )
            recommendations.append("Deposit funds to continue making calls.")
        elif balance.available < self._config.low_balance_threshold:
            warnings.append(f"Low available balance: {balance.available} lamports.")
            recommendations.append("Consider topping up before running larger workflows.")

        if cap is not None:
            if used >= cap:
                critical = True
                warnings.append(f"Daily spend cap reached: {used} of {cap} spent.")
                recommendations.append("Wait for the daily window to roll over or raise the cap.")
            elif used >= cap * self._config.daily_cap_warning_ratio:
                warnings.append(f"Daily spend at {percent_used}% of the {cap} cap.")
                recommendations.append("Review recent spend before the cap blocks calls.")

        if len(holds) >= self._config.reservation_count_warning:
            warnings.append(f"{len(holds)} active reservations are holding {balance.reserved} lamports.")
            recommendations.append("Capture or release reservations that are no longer needed.")

        health: HealthStatus
        if principal.is_paused:
            health = "paused"
        elif critical:
            health = "critical"
        elif warnings:
            health = "warning"
        else:
            health = "healthy"

        return BudgetStatus(
            principal_id=principal_id,
            balance=principal.balance,
            available=balance.available,
            reserved=balance.reserved,
            pending=principal.pending,
            limits=BudgetLimits(
                max_cost_per_call=principal.max_cost_per_call,
                daily_spend_cap=cap,
                is_paused=principal.is_paused,
                allowed_callees=principal.allowed_callees,
            ),
            daily_spend=DailySpend(
                used=used,
                remaining=remaining,
                percent_used=percent_used,
                transaction_count=count,
            ),
            all_time_spent=sum(record.cost for record in all_time),
            all_time_transactions=len(all_time),
            active_reservations=sorted(holds, key=lambda r: r.created_at),
            health=health,
            warnings=warnings,
            recommendations=recommendations,
            generated_at=now,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_guardrails(self, principal_id: str, update: GuardrailUpdate) -> Principal:
        """
        Apply the fields explicitly set on ``update``.

        A field set to ``None`` clears that limit. ``is_paused=None`` leaves
        the kill switch as it is.
        """
        changed: dict[str, object] = {}
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id, for_update=True)
            for field in update.model_fields_set:
                value = getattr(update, field)
                if field == "is_paused" and value is None:
                    continue
                setattr(principal, field, value)
                changed[field] = value
            await tx.save_principal(principal)

        logger.info("guardrails_updated", extra={"principal_id": principal_id, "changes": changed})
        return principal

    async def pause(self, principal_id: str, reason: str | None = None) -> Principal:
        """Engage the kill switch. Every spend is refused until :meth:`resume`."""
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id, for_update=True)
            principal.is_paused = True
            await tx.save_principal(principal)

        logger.warning("principal_paused", extra={"principal_id": principal_id, "reason": reason})
        return principal

    async def resume(self, principal_id: str) -> Principal:
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id, for_update=True)
            principal.is_paused = False
            await tx.save_principal(principal)

        logger.info("principal_resumed", extra={"principal_id": principal_id})
        return principal
