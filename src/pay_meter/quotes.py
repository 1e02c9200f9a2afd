# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
Price-freezing quotes.

A quote captures the live rate and cost for one (caller, callee, tool)
call at issuance. Executing with a valid quote charges the frozen rate even
if the tool has been repriced since, which is what makes the quote a
receipt the caller can dispute against.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from pay_meter.config import PricingConfig, QuoteConfig
from pay_meter.cost import build_cost_breakdown, validate_tokens
from pay_meter.errors import (
    PayMeterError,
    QuoteAlreadyUsedError,
    QuoteExpiredError,
    QuoteMismatchError,
    QuoteNotActiveError,
    QuoteNotFoundError,
)
from pay_meter.ledger import Ledger
from pay_meter.storage.interface import LedgerTransaction
from pay_meter.types import (
    Clock,
    PriceSnapshot,
    PricingQuote,
    QuoteRequest,
    QuoteResponse,
    QuoteStats,
    utc_now,
)

logger = logging.getLogger("pay_meter.quotes")


def format_expires_in(seconds: int) -> str:
    """Human-readable validity, e.g. ``"5 minutes"`` or ``"1 minute 30 seconds"``."""
    minutes, rest = divmod(seconds, 60)
    parts: list[str] = []
    if minutes:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    if rest or not parts:
        parts.append(f"{rest} second{'s' if rest != 1 else ''}")
    return " ".join(parts)


@dataclass
class QuoteCheck:
    """Outcome of validating a locked quote inside a transaction."""

    quote: PricingQuote
    error: PayMeterError | None = None

    @property
    def valid(self) -> bool:
        return self.error is None


class QuoteEngine:
    """
    Issues, validates and consumes frozen-price quotes.

    Example::

        quotes = QuoteEngine(ledger)
        response = await quotes.issue_quote(QuoteRequest(
            caller_id="caller", callee_id="provider",
            tool_name="summarize", estimated_tokens=1_500,
        ))
        quote = await quotes.validate_quote(
            response.quote_id, "caller", "provider", "summarize", 1_200
        )
    """

    def __init__(
        self,
        ledger: Ledger,
        config: QuoteConfig | None = None,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._config = config or QuoteConfig()
        self._pricing = pricing or PricingConfig()
        self._clock = clock or utc_now

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def clamp_validity(self, validity_seconds: int | None) -> int:
        requested = self._config.default_validity_seconds if validity_seconds is None else validity_seconds
        return max(self._config.min_validity_seconds, min(requested, self._config.max_validity_seconds))

    async def issue_quote(self, request: QuoteRequest) -> QuoteResponse:
        """
        Freeze the current price for a call and persist an ``active`` quote.

        The rate is looked up for (callee, tool), falling back to the
        callee's default rate when the tool is not registered.

        Raises:
            InvalidRequestError: If ``estimated_tokens`` is negative or above
                the per-call maximum.
            PrincipalNotFoundError: If the caller or callee is unknown.
        """
        validate_tokens(request.estimated_tokens, self._pricing, field="estimated_tokens")
        validity = self.clamp_validity(request.validity_seconds)
        issued_at = self._clock()

        async with self._ledger.storage.transaction() as tx:
            await self._ledger.require_principal(tx, request.caller_id)
            pricing = await self._ledger.resolve_pricing(tx, request.callee_id, request.tool_name)
            breakdown = build_cost_breakdown(request.estimated_tokens, pricing.rate_per_1k_tokens, self._pricing)

            quote = PricingQuote(
                id=str(uuid4()),
                caller_id=request.caller_id,
                callee_id=request.callee_id,
                tool_id=pricing.tool_id,
                tool_name=request.tool_name,
                estimated_tokens=request.estimated_tokens,
                rate_per_1k_tokens=pricing.rate_per_1k_tokens,
                quoted_cost=breakdown.cost,
                platform_fee=breakdown.platform_fee,
                issued_at=issued_at,
                expires_at=issued_at + timedelta(seconds=validity),
                validity_seconds=validity,
                price_snapshot=PriceSnapshot(
                    token_blocks=breakdown.token_blocks,
                    raw_cost=breakdown.raw_cost,
                    minimum_applied=breakdown.minimum_applied,
                    platform_fee_percent=self._pricing.platform_fee_percent,
                    min_cost=self._pricing.min_cost,
                    max_tokens_per_call=self._pricing.max_tokens_per_call,
                    calculated_at=issued_at,
                ),
            )
            await tx.insert_quote(quote)

        logger.info(
            "quote_issued",
            extra={
                "quote_id": quote.id,
                "caller_id": quote.caller_id,
                "callee_id": quote.callee_id,
                "tool_name": quote.tool_name,
                "quoted_cost": quote.quoted_cost,
                "validity_seconds": validity,
            },
        )
        return QuoteResponse(
            quote_id=quote.id,
            caller_id=quote.caller_id,
            callee_id=quote.callee_id,
            tool_name=quote.tool_name,
            estimated_tokens=quote.estimated_tokens,
            rate_per_1k_tokens=quote.rate_per_1k_tokens,
            quoted_cost=quote.quoted_cost,
            platform_fee=quote.platform_fee,
            net_to_callee=breakdown.net_to_callee,
            issued_at=quote.issued_at,
            expires_at=quote.expires_at,
            validity_seconds=validity,
            expires_in=format_expires_in(validity),
            price_snapshot=quote.price_snapshot,
        )

    async def get_quote(self, quote_id: str) -> PricingQuote:
        async with self._ledger.storage.transaction() as tx:
            quote = await tx.get_quote(quote_id)
        if quote is None:
            raise QuoteNotFoundError(quote_id)
        return quote

    # ------------------------------------------------------------------
    # Validation & consumption
    # ------------------------------------------------------------------

    def _validation_error(
        self,
        quote: PricingQuote,
        caller_id: str,
        callee_id: str,
        tool_name: str,
        actual_tokens: int,
        now: datetime,
    ) -> PayMeterError | None:
        grace = timedelta(seconds=self._config.expiry_grace_seconds)
        if quote.status == "expired" or now > quote.expires_at + grace:
            return QuoteExpiredError(quote.id, quote.expires_at.isoformat())
        if quote.status == "used":
            return QuoteAlreadyUsedError(quote.id, quote.used_at.isoformat() if quote.used_at else None)
        if quote.status != "active":
            return QuoteNotActiveError(quote.id, quote.status)

        mismatched = [
            field
            for field, expected, given in (
                ("caller_id", quote.caller_id, caller_id),
                ("callee_id", quote.callee_id, callee_id),
                ("tool_name", quote.tool_name, tool_name),
            )
            if expected != given
        ]
        if mismatched:
            return QuoteMismatchError(
                quote.id,
                f"{', '.join(mismatched)} do not match the quote",
                fields=mismatched,
            )
        if actual_tokens > quote.estimated_tokens:
            return QuoteMismatchError(
                quote.id,
                f"actual tokens {actual_tokens} exceed the quoted estimate of {quote.estimated_tokens}",
                actual_tokens=actual_tokens,
                estimated_tokens=quote.estimated_tokens,
            )
        return None

    async def check_locked(
        self,
        tx: LedgerTransaction,
        quote_id: str,
        caller_id: str,
        callee_id: str,
        tool_name: str,
        actual_tokens: int,
    ) -> QuoteCheck:
        """
        Lock the quote row and validate it inside ``tx``.

        An active quote found past its grace period is flipped to
        ``expired`` in the same transaction. The error is returned rather
        than raised so the caller can commit that flip before raising.

        Raises:
            InvalidRequestError: If ``actual_tokens`` is out of range.
            QuoteNotFoundError: If no quote has this id.
        """
        validate_tokens(actual_tokens, self._pricing, field="actual_tokens")
        quote = await tx.get_quote(quote_id, for_update=True)
        if quote is None:
            raise QuoteNotFoundError(quote_id)

        error = self._validation_error(quote, caller_id, callee_id, tool_name, actual_tokens, self._clock())
        if isinstance(error, QuoteExpiredError) and quote.status == "active":
            quote.status = "expired"
            await tx.save_quote(quote)
            logger.info("quote_expired", extra={"quote_id": quote.id})
        return QuoteCheck(quote=quote, error=error)

    async def validate_quote(
        self,
        quote_id: str,
        caller_id: str,
        callee_id: str,
        tool_name: str,
        actual_tokens: int,
    ) -> PricingQuote:
        """
        Check that a quote can pay for this execution.

        Checks run in order: the quote exists, it is not expired (allowing
        the grace period), it has not been used, the parties and tool match,
        and ``actual_tokens`` does not exceed the estimate.

        Returns:
            The validated quote.

        Raises:
            QuoteNotFoundError, QuoteExpiredError, QuoteAlreadyUsedError,
            QuoteNotActiveError, QuoteMismatchError.
        """
        async with self._ledger.storage.transaction() as tx:
            check = await self.check_locked(tx, quote_id, caller_id, callee_id, tool_name, actual_tokens)
        if check.error is not None:
            raise check.error
        return check.quote

    async def consume(self, tx: LedgerTransaction, quote: PricingQuote, usage_record_id: str) -> PricingQuote:
        """
        Mark a locked, validated quote ``used`` and link it to its usage record.

        Must run in the same transaction that inserts the usage record.
        """
        quote.status = "used"
        quote.used_at = self._clock()
        quote.used_by_usage_id = usage_record_id
        await tx.save_quote(quote)
        return quote

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def cancel_quote(self, quote_id: str, caller_id: str | None = None) -> bool:
        """
        Cancel an active quote.

        Returns:
            True if the quote was cancelled, False if it was already in a
            terminal state.

        Raises:
            QuoteNotFoundError: If no quote has this id.
            QuoteMismatchError: If ``caller_id`` is given and does not own
                the quote.
        """
        async with self._ledger.storage.transaction() as tx:
            quote = await tx.get_quote(quote_id, for_update=True)
            if quote is None:
                raise QuoteNotFoundError(quote_id)
            if caller_id is not None and quote.caller_id != caller_id:
                raise QuoteMismatchError(quote_id, f"caller '{caller_id}' does not own this quote")
            if quote.status != "active":
                return False
            quote.status = "cancelled"
            await tx.save_quote(quote)

        logger.info("quote_cancelled", extra={"quote_id": quote_id, "caller_id": quote.caller_id})
        return True

    async def list_active_quotes(self, caller_id: str) -> list[PricingQuote]:
        """Unexpired active quotes held by ``caller_id``, newest first."""
        now = self._clock()
        async with self._ledger.storage.transaction() as tx:
            quotes = await tx.list_quotes(caller_id=caller_id, status="active")
        live = [quote for quote in quotes if quote.expires_at > now]
        live.sort(key=lambda quote: quote.issued_at, reverse=True)
        return live[: self._config.list_limit]

    async def expire_stale_quotes(self) -> int:
        """
        Flip every active quote past its grace period to ``expired``.

        Validation performs the same check inline, so this sweep only keeps
        listings and statistics tidy.

        Returns:
            Number of quotes expired.
        """
        now = self._clock()
        grace = timedelta(seconds=self._config.expiry_grace_seconds)
        expired = 0
        async with self._ledger.storage.transaction() as tx:
            candidates = await tx.list_quotes(status="active")
            for candidate in sorted(candidates, key=lambda quote: quote.id):
                if now <= candidate.expires_at + grace:
                    continue
                quote = await tx.get_quote(candidate.id, for_update=True)
                if quote is None or quote.status != "active":
                    continue
                quote.status = "expired"
                await tx.save_quote(quote)
                expired += 1

        if expired:
            logger.info("quotes_expired", extra={"count": expired})
        return expired

    async def quote_stats(self, caller_id: str) -> QuoteStats:
        async with self._ledger.storage.transaction() as tx:
            quotes = await tx.list_quotes(caller_id=caller_id)

        counts = {"active": 0, "used": 0, "expired": 0, "cancelled": 0}
        for quote in quotes:
            counts[quote.status] += 1
        issued = len(quotes)
        return QuoteStats(
            total_issued=issued,
            total_used=counts["used"],
            total_expired=counts["expired"],
            total_cancelled=counts["cancelled"],
            total_active=counts["active"],
            conversion_rate=round(counts["used"] / issued, 4) if issued else 0.0,
        )
