# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
Settlement of pending earnings through an external payment rail.

A payout runs in three steps:

1. Record a ``pending`` settlement (its own commit).
2. Call the payment rail with the net amount. No transaction is open and
   no lock is held while the rail runs.
3. On success, confirm the settlement, subtract the gross from the
   principal's ``pending`` and record the platform fee, all in one commit.
   On failure, mark the settlement ``failed``; ``pending`` is untouched.

A crash between steps 2 and 3 leaves a ``pending`` settlement behind.
:meth:`SettlementEngine.reconcile_pending` resolves it by asking the rail
what happened. It never pays twice.
"""
from __future__ import annotations

import inspect
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Union
from uuid import uuid4

from pay_meter.config import PricingConfig
from pay_meter.cost import split_payout
from pay_meter.errors import (
    BelowMinimumPayoutError,
    PaymentRailError,
    SettlementInProgressError,
    SettlementNotFoundError,
    SettlementStateError,
)
from pay_meter.ledger import Ledger
from pay_meter.types import (
    Clock,
    PlatformFeeRecord,
    Settlement,
    SettlementEligibility,
    SettlementOutcome,
    SettlementStatus,
    TransferLookup,
    utc_now,
)

logger = logging.getLogger("pay_meter.settlement")

# (recipient principal id, net lamports) -> transaction reference
PaymentRail = Callable[[str, int], Union[Awaitable[str], str]]
# pending settlement -> what the rail knows about its transfer
TransferLookupFn = Callable[[Settlement], Union[Awaitable[TransferLookup], TransferLookup]]


async def _resolve(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _outcome(settlement: Settlement) -> SettlementOutcome:
    return SettlementOutcome(
        settlement_id=settlement.id,
        principal_id=settlement.principal_id,
        gross=settlement.gross,
        platform_fee=settlement.platform_fee,
        net=settlement.net,
        tx_reference=settlement.tx_reference,
        status=settlement.status,
    )


class SettlementEngine:
    """
    Drains a principal's pending earnings to the payment rail, net of the
    platform fee.

    Example::

        async def pay(recipient_id: str, net: int) -> str:
            return await rail.transfer(recipient_id, net)

        settlements = SettlementEngine(ledger)
        outcome = await settlements.settle("provider", pay)
        print(outcome.net, outcome.tx_reference)
    """

    def __init__(
        self,
        ledger: Ledger,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._pricing = pricing or PricingConfig()
        self._clock = clock or utc_now

    # ------------------------------------------------------------------
    # Payout
    # ------------------------------------------------------------------

    async def check_settlement_eligibility(self, principal_id: str) -> SettlementEligibility:
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id)
            in_flight = await tx.list_settlements(principal_id=principal_id, status="pending")

        pending = principal.pending
        fee, net = split_payout(pending, self._pricing)
        reason = None
        if in_flight:
            reason = f"Settlement '{in_flight[0].id}' is still awaiting the payment rail."
        elif pending == 0 or pending < self._pricing.min_payout:
            reason = (
                f"Pending balance {pending} is below the minimum payout of {self._pricing.min_payout}."
            )
        return SettlementEligibility(
            principal_id=principal_id,
            eligible=reason is None,
            pending=pending,
            min_payout=self._pricing.min_payout,
            platform_fee=fee,
            net=net,
            reason=reason,
        )

    async def settle(self, principal_id: str, pay_fn: PaymentRail) -> SettlementOutcome:
        """
        Pay out the principal's entire pending balance.

        Args:
            principal_id: The principal whose earnings are settled.
            pay_fn: The payment-rail capability ``(recipient, net) ->
                transaction reference``; may be sync or async.

        Raises:
            PrincipalNotFoundError: If the principal is unknown.
            BelowMinimumPayoutError: If ``pending`` is below the minimum payout.
            SettlementInProgressError: If an earlier payout is still pending.
            PaymentRailError: If ``pay_fn`` fails. The settlement is marked
                ``failed`` and ``pending`` is unchanged, so retrying is safe.
        """
        settlement = await self._open(principal_id)

        try:
            tx_reference = await _resolve(pay_fn(principal_id, settlement.net))
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            await self._mark_failed(settlement.id, reason)
            raise PaymentRailError(principal_id, settlement.id, settlement.net, reason) from exc

        if not isinstance(tx_reference, str) or not tx_reference.strip():
            # The rail may have moved funds; only a reconcile can tell.
            logger.error(
                "settlement_reference_missing",
                extra={"settlement_id": settlement.id, "principal_id": principal_id},
            )
            raise PaymentRailError(
                principal_id,
                settlement.id,
                settlement.net,
                f"rail returned no transaction reference ({tx_reference!r}); "
                "settlement left pending for reconciliation",
            )

        return await self._finalize(settlement.id, tx_reference)

    async def _open(self, principal_id: str) -> Settlement:
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id, for_update=True)
            if principal.pending == 0 or principal.pending < self._pricing.min_payout:
                raise BelowMinimumPayoutError(principal_id, principal.pending, self._pricing.min_payout)

            in_flight = await tx.list_settlements(principal_id=principal_id, status="pending")
            if in_flight:
                raise SettlementInProgressError(principal_id, in_flight[0].id)

            fee, net = split_payout(principal.pending, self._pricing)
            settlement = Settlement(
                id=str(uuid4()),
                principal_id=principal_id,
                gross=principal.pending,
                platform_fee=fee,
                net=net,
                created_at=now,
                updated_at=now,
            )
            await tx.insert_settlement(settlement)

        logger.info(
            "settlement_started",
            extra={
                "settlement_id": settlement.id,
                "principal_id": principal_id,
                "gross": settlement.gross,
                "platform_fee": fee,
                "net": net,
            },
        )
        return settlement

    async def _finalize(self, settlement_id: str, tx_reference: str) -> SettlementOutcome:
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            settlement = await tx.get_settlement(settlement_id, for_update=True)
            if settlement is None:
                raise SettlementNotFoundError(settlement_id)
            if settlement.status != "pending":
                raise SettlementStateError(settlement_id, settlement.status)

            principal = await self._ledger.require_principal(tx, settlement.principal_id, for_update=True)
            # Earnings credited while the rail ran stay pending for the next payout.
            principal.pending -= settlement.gross
            await tx.save_principal(principal)

            settlement.status = "confirmed"
            settlement.tx_reference = tx_reference
            settlement.updated_at = now
            await tx.save_settlement(settlement)
            await tx.insert_fee_record(
                PlatformFeeRecord(
                    id=str(uuid4()),
                    settlement_id=settlement_id,
                    fee=settlement.platform_fee,
                    created_at=now,
                )
            )

        logger.info(
            "settlement_confirmed",
            extra={
                "settlement_id": settlement_id,
                "principal_id": settlement.principal_id,
                "net": settlement.net,
                "tx_reference": tx_reference,
            },
        )
        return _outcome(settlement)

    async def _mark_failed(self, settlement_id: str, reason: str) -> SettlementOutcome:
        async with self._ledger.storage.transaction() as tx:
            settlement = await tx.get_settlement(settlement_id, for_update=True)
            if settlement is None:
                raise SettlementNotFoundError(settlement_id)
            if settlement.status != "pending":
                raise SettlementStateError(settlement_id, settlement.status)
            settlement.status = "failed"
            settlement.failure_reason = reason
            settlement.updated_at = self._clock()
            await tx.save_settlement(settlement)

        logger.warning(
            "settlement_failed",
            extra={"settlement_id": settlement_id, "principal_id": settlement.principal_id, "reason": reason},
        )
        return _outcome(settlement)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile_pending(
        self,
        lookup: TransferLookupFn,
        older_than_seconds: int = 60,
    ) -> list[SettlementOutcome]:
        """
        Resolve settlements left ``pending`` by a crash after the rail call.

        ``lookup`` reports what the rail knows about each transfer: a
        ``confirmed`` transfer is finalized with its reference, a definite
        ``not_found`` marks the settlement failed, and ``unknown`` leaves it
        pending. Settlements younger than ``older_than_seconds`` are skipped
        since their payout may still be in flight.

        Returns:
            The settlements that reached a terminal state.
        """
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        async with self._ledger.storage.transaction() as tx:
            stale = [s for s in await tx.list_settlements(status="pending") if s.created_at <= cutoff]

        resolved: list[SettlementOutcome] = []
        for settlement in sorted(stale, key=lambda s: s.created_at):
            try:
                result = await _resolve(lookup(settlement))
            except Exception:
                logger.exception("settlement_lookup_failed", extra={"settlement_id": settlement.id})
                continue

            if result.state == "confirmed" and result.tx_reference:
                resolved.append(await self._finalize(settlement.id, result.tx_reference))
            elif result.state == "not_found":
                resolved.append(await self._mark_failed(settlement.id, "transfer not found on payment rail"))
            else:
                logger.info("settlement_still_pending", extra={"settlement_id": settlement.id})

        return resolved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_settlement(self, settlement_id: str) -> Settlement:
        async with self._ledger.storage.transaction() as tx:
            settlement = await tx.get_settlement(settlement_id)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id)
        return settlement

    async def list_settlements(
        self,
        principal_id: str | None = None,
        status: SettlementStatus | None = None,
    ) -> list[Settlement]:
        """Settlements, newest first."""
        async with self._ledger.storage.transaction() as tx:
            settlements = await tx.list_settlements(principal_id=principal_id, status=status)
        return sorted(settlements, key=lambda s: s.created_at, reverse=True)

    async def platform_revenue(self) -> int:
        """Total platform fees recorded by confirmed settlements."""
        async with self._ledger.storage.transaction() as tx:
            records = await tx.list_fee_records()
        return sum(record.fee for record in records)
