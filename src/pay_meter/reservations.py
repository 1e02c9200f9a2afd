# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
Pre-authorization holds: reserve, then capture or release.

A reservation claims part of the caller's balance before work starts. The
claim is not a debit; it only lowers ``available = balance - active holds``.
Capture debits the real cost once the work is done, release drops the
claim. Either transition locks the reservation row first, so a hold ends
exactly once even when both race.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Generic, TypeVar
from uuid import uuid4

from pay_meter.config import PricingConfig, ReservationConfig
from pay_meter.cost import apply_margin, calculate_cost, validate_tokens
from pay_meter.errors import (
    InsufficientBalanceError,
    InvalidRequestError,
    PrincipalNotFoundError,
    ReservationExpiredError,
    ReservationNotActiveError,
    ReservationNotFoundError,
)
from pay_meter.guardrails import GuardrailEngine
from pay_meter.ledger import Ledger
from pay_meter.types import (
    AvailableBalance,
    BalanceReservation,
    CaptureResult,
    Clock,
    GuardrailRule,
    ReleaseResult,
    ReservationRequest,
    ReservationResult,
    ReservationStats,
    UsageRecord,
    utc_now,
)

logger = logging.getLogger("pay_meter.reservations")

T = TypeVar("T")

_STATS_WINDOW = timedelta(hours=24)

# Spend limits re-checked at capture. The kill switch and allowlist were
# settled at reserve time and do not block completing admitted work.
_CAPTURE_RULES: tuple[GuardrailRule, ...] = ("max_cost_per_call", "daily_spend_cap")


@dataclass
class WorkOutcome(Generic[T]):
    """What a pre-authorized work function returns: its result and the tokens it used."""

    result: T
    actual_tokens: int


@dataclass
class PreAuthOutcome(Generic[T]):
    result: T
    reservation: ReservationResult
    capture: CaptureResult


class ReservationEngine:
    """
    Holds funds against future cost before work executes.

    Example::

        reservations = ReservationEngine(ledger, guardrails)
        hold = await reservations.reserve(ReservationRequest(
            caller_id="caller", callee_id="provider",
            tool_name="summarize", estimated_tokens=1_000,
        ))
        captured = await reservations.capture(hold.reservation_id, actual_tokens=500)
    """

    def __init__(
        self,
        ledger: Ledger,
        guardrails: GuardrailEngine,
        config: ReservationConfig | None = None,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._guardrails = guardrails
        self._config = config or ReservationConfig()
        self._pricing = pricing or PricingConfig()
        self._clock = clock or utc_now

    def clamp_timeout(self, timeout_seconds: int | None) -> int:
        """Hold lifetime in seconds, never above ``max_timeout_seconds``."""
        if timeout_seconds is None:
            timeout_seconds = self._config.default_timeout_seconds
        elif timeout_seconds <= 0:
            raise InvalidRequestError("timeout_seconds", f"must be positive, got {timeout_seconds}")
        return min(timeout_seconds, self._config.max_timeout_seconds)

    # ------------------------------------------------------------------
    # Reserve
    # ------------------------------------------------------------------

    async def reserve(self, request: ReservationRequest) -> ReservationResult:
        """
        Place a hold of ``ceil(estimated_cost * safety_margin)`` on the caller.

        Guardrails are evaluated against the un-margined estimated cost. The
        estimates of the caller's other live holds count toward the daily cap.

        Raises:
            InvalidRequestError: If the token estimate or timeout is out of range.
            PrincipalNotFoundError: If the caller or callee is unknown.
            GuardrailViolationError: If admission control blocks the spend.
            InsufficientBalanceError: If available balance cannot cover the hold.
        """
        validate_tokens(request.estimated_tokens, self._pricing, field="estimated_tokens")
        timeout = self.clamp_timeout(request.timeout_seconds)
        now = self._clock()

        async with self._ledger.storage.transaction() as tx:
            pricing = await self._ledger.resolve_pricing(tx, request.callee_id, request.tool_name)
            estimated_cost = calculate_cost(request.estimated_tokens, pricing.rate_per_1k_tokens, self._pricing)
            reserved_amount = apply_margin(estimated_cost, self._config.safety_margin)

            # The caller lock serializes holds against one balance.
            caller = await self._ledger.require_principal(tx, request.caller_id, for_update=True)
            await self._guardrails.enforce(tx, caller, request.callee_id, estimated_cost)

            balance = await self._ledger.available_balance(tx, caller)
            if balance.available < reserved_amount:
                logger.warning(
                    "reservation_rejected",
                    extra={
                        "caller_id": caller.id,
                        "reserved_amount": reserved_amount,
                        "available": balance.available,
                    },
                )
                raise InsufficientBalanceError(
                    caller.id,
                    required=reserved_amount,
                    available=balance.available,
                    balance=balance.total,
                    reserved=balance.reserved,
                    context="reservation",
                )

            reservation = BalanceReservation(
                id=str(uuid4()),
                caller_id=request.caller_id,
                callee_id=request.callee_id,
                tool_name=request.tool_name,
                estimated_tokens=request.estimated_tokens,
                estimated_cost=estimated_cost,
                reserved_amount=reserved_amount,
                created_at=now,
                expires_at=now + timedelta(seconds=timeout),
                updated_at=now,
            )
            await tx.insert_reservation(reservation)

        logger.info(
            "balance_reserved",
            extra={
                "reservation_id": reservation.id,
                "caller_id": reservation.caller_id,
                "callee_id": reservation.callee_id,
                "reserved_amount": reserved_amount,
            },
        )
        return ReservationResult(
            reservation_id=reservation.id,
            reserved_amount=reserved_amount,
            estimated_cost=estimated_cost,
            rate_per_1k_tokens=pricing.rate_per_1k_tokens,
            expires_at=reservation.expires_at,
            available_balance=balance.available - reserved_amount,
        )

    # ------------------------------------------------------------------
    # Capture / release
    # ------------------------------------------------------------------

    async def capture(self, reservation_id: str, actual_tokens: int) -> CaptureResult:
        """
        Finalize a hold at the real cost.

        The cost is recomputed from the tool's current rate and checked
        against the caller's per-call ceiling and daily cap, with this hold's
        estimate swapped for the real cost. The debit, the callee credit, the
        usage record and the ``captured`` transition commit together. A
        reservation found past its expiry is marked ``expired`` and the
        capture fails.

        Raises:
            ReservationNotFoundError: If no reservation has this id.
            ReservationNotActiveError: If it was already captured, released
                or expired.
            ReservationExpiredError: If its hold lapsed before capture.
            GuardrailViolationError: If the real cost breaks a spend limit.
                The hold stays active and can be released.
            InsufficientBalanceError: If the real cost exceeds the hold and
                the caller's unreserved balance cannot cover the difference.
        """
        validate_tokens(actual_tokens, self._pricing, field="actual_tokens")
        now = self._clock()
        expired: ReservationExpiredError | None = None

        async with self._ledger.storage.transaction() as tx:
            reservation = await tx.get_reservation(reservation_id, for_update=True)
            if reservation is None:
                raise ReservationNotFoundError(reservation_id)
            if reservation.status != "active":
                raise ReservationNotActiveError(reservation_id, reservation.status)

            if reservation.expires_at <= now:
                reservation.status = "expired"
                reservation.updated_at = now
                await tx.save_reservation(reservation)
                expired = ReservationExpiredError(reservation_id, reservation.expires_at.isoformat())
            else:
                pricing = await self._ledger.resolve_pricing(tx, reservation.callee_id, reservation.tool_name)
                actual_cost = calculate_cost(actual_tokens, pricing.rate_per_1k_tokens, self._pricing)

                locked = await tx.lock_principals([reservation.caller_id, reservation.callee_id])
                caller = locked.get(reservation.caller_id)
                if caller is None:
                    raise PrincipalNotFoundError(reservation.caller_id)

                # The hold's own estimate is replaced by the real cost.
                await self._guardrails.enforce(
                    tx,
                    caller,
                    reservation.callee_id,
                    actual_cost,
                    rules=_CAPTURE_RULES,
                    exclude_reservation_id=reservation_id,
                )

                if actual_cost > reservation.reserved_amount:
                    # This hold is still counted in ``reserved``, so
                    # ``available`` is exactly the unreserved remainder.
                    additional = actual_cost - reservation.reserved_amount
                    balance = await self._ledger.available_balance(tx, caller)
                    if balance.available < additional:
                        raise InsufficientBalanceError(
                            caller.id,
                            required=additional,
                            available=balance.available,
                            balance=balance.total,
                            reserved=balance.reserved,
                            context=f"capture overage on reservation '{reservation_id}'",
                        )

                record = UsageRecord(
                    id=str(uuid4()),
                    caller_id=reservation.caller_id,
                    callee_id=reservation.callee_id,
                    tool_id=pricing.tool_id,
                    tool_name=reservation.tool_name,
                    tokens_used=actual_tokens,
                    rate_per_1k_tokens=pricing.rate_per_1k_tokens,
                    cost=actual_cost,
                    reservation_id=reservation_id,
                    created_at=now,
                )
                await self._ledger.debit(tx, reservation.caller_id, actual_cost)
                await self._ledger.credit_pending(tx, reservation.callee_id, actual_cost)
                await self._ledger.append_usage_record(tx, record)

                reservation.status = "captured"
                reservation.actual_tokens = actual_tokens
                reservation.actual_cost = actual_cost
                reservation.usage_record_id = record.id
                reservation.captured_at = now
                reservation.updated_at = now
                await tx.save_reservation(reservation)

        if expired is not None:
            logger.warning("reservation_expired", extra={"reservation_id": reservation_id})
            raise expired

        refunded = max(0, reservation.reserved_amount - actual_cost)
        logger.info(
            "reservation_captured",
            extra={
                "reservation_id": reservation_id,
                "actual_cost": actual_cost,
                "reserved_amount": reservation.reserved_amount,
                "refunded": refunded,
            },
        )
        return CaptureResult(
            reservation_id=reservation_id,
            usage_record_id=record.id,
            caller_id=reservation.caller_id,
            callee_id=reservation.callee_id,
            actual_tokens=actual_tokens,
            actual_cost=actual_cost,
            rate_per_1k_tokens=pricing.rate_per_1k_tokens,
            refunded=refunded,
            captured_at=now,
        )

    async def release(self, reservation_id: str, reason: str | None = None) -> ReleaseResult:
        """
        Drop a hold without moving any money.

        Idempotent: releasing a reservation that is already captured,
        released or expired returns ``released=False``.

        Raises:
            ReservationNotFoundError: If no reservation has this id.
        """
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            reservation = await tx.get_reservation(reservation_id, for_update=True)
            if reservation is None:
                raise ReservationNotFoundError(reservation_id)
            if reservation.status != "active":
                return ReleaseResult(
                    reservation_id=reservation_id,
                    released=False,
                    reserved_amount=reservation.reserved_amount,
                )
            reservation.status = "released"
            reservation.release_reason = reason
            reservation.updated_at = now
            await tx.save_reservation(reservation)

        logger.info(
            "reservation_released",
            extra={
                "reservation_id": reservation_id,
                "reserved_amount": reservation.reserved_amount,
                "reason": reason,
            },
        )
        return ReleaseResult(
            reservation_id=reservation_id,
            released=True,
            reserved_amount=reservation.reserved_amount,
        )

    async def execute_with_pre_auth(
        self,
        request: ReservationRequest,
        work_fn: Callable[[], Awaitable[WorkOutcome[T]]],
    ) -> PreAuthOutcome[T]:
        """
        Reserve, run ``work_fn``, then capture its reported token usage.

        If the reservation is refused, ``work_fn`` never runs. If
        ``work_fn`` or the capture fails, the hold is released and the
        original exception propagates.
        """
        reservation = await self.reserve(request)
        try:
            outcome = await work_fn()
            captured = await self.capture(reservation.reservation_id, outcome.actual_tokens)
        except BaseException as exc:
            # Cancellation included: the hold must not outlive the work.
            await self._release_after_failure(reservation.reservation_id, exc)
            raise
        return PreAuthOutcome(result=outcome.result, reservation=reservation, capture=captured)

    async def _release_after_failure(self, reservation_id: str, exc: BaseException) -> None:
        reason = f"{type(exc).__name__}: {exc}"
        try:
            await self.release(reservation_id, reason=reason)
        except Exception:
            # The original failure is what the caller must see; an unreleased
            # hold still lapses at its expiry.
            logger.exception("reservation_release_failed", extra={"reservation_id": reservation_id})

    # ------------------------------------------------------------------
    # Queries & maintenance
    # ------------------------------------------------------------------

    async def get_available_balance(self, principal_id: str) -> AvailableBalance:
        async with self._ledger.storage.transaction() as tx:
            principal = await self._ledger.require_principal(tx, principal_id)
            return await self._ledger.available_balance(tx, principal)

    async def list_active_reservations(self, principal_id: str) -> list[BalanceReservation]:
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            reservations = await tx.list_reservations(caller_id=principal_id, status="active")
        live = [r for r in reservations if r.expires_at > now]
        return sorted(live, key=lambda r: r.created_at)

    async def expire_old_reservations(self) -> int:
        """
        Mark every active hold past its expiry as ``expired``.

        Availability already ignores lapsed holds, so this only tidies state.
        """
        now = self._clock()
        expired = 0
        async with self._ledger.storage.transaction() as tx:
            candidates = await tx.list_reservations(status="active")
            for candidate in sorted(candidates, key=lambda r: r.id):
                if candidate.expires_at > now:
                    continue
                reservation = await tx.get_reservation(candidate.id, for_update=True)
                if reservation is None or reservation.status != "active":
                    continue
                reservation.status = "expired"
                reservation.updated_at = now
                await tx.save_reservation(reservation)
                expired += 1

        if expired:
            logger.info("reservations_expired", extra={"count": expired})
        return expired

    async def reservation_stats(self, principal_id: str) -> ReservationStats:
        """Active holds now, plus capture rate and mean hold duration over the last day."""
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            reservations = await tx.list_reservations(caller_id=principal_id)

        active = [r for r in reservations if r.status == "active" and r.expires_at > now]
        recent = [r for r in reservations if r.created_at > now - _STATS_WINDOW]
        captured = [r for r in recent if r.status == "captured"]
        durations = [
            ((r.captured_at or r.updated_at) - r.created_at).total_seconds()
            for r in recent
            if r.status != "active"
        ]
        return ReservationStats(
            active_count=len(active),
            total_reserved=sum(r.reserved_amount for r in active),
            avg_duration_seconds=round(sum(durations) / len(durations), 3) if durations else 0.0,
            capture_rate=round(len(captured) / len(recent), 4) if recent else 0.0,
        )
