# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Deterministic cost model for metered tool calls.

Pure integer arithmetic over (tokens, rate). The same inputs always produce
the same lamport amount, which is what lets a quote or a usage record serve
as an auditable receipt. Decimal is used only where a configured fraction
(fee percent, safety margin) is applied, and the result is rounded to an
integer before it leaves this module.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from pay_meter.config import PricingConfig
from pay_meter.errors import InvalidRequestError
from pay_meter.types import CostBreakdown

TOKENS_PER_BLOCK = 1_000


# ---------------------------------------------------------------------------
# Core formula
# ---------------------------------------------------------------------------


def token_blocks(tokens: int) -> int:
    """Number of started 1,000-token blocks: ``ceil(tokens / 1000)``."""
    return -(-tokens // TOKENS_PER_BLOCK)


def calculate_cost(tokens: int, rate_per_1k_tokens: int, pricing: PricingConfig) -> int:
    """
    Price a call: ``max(ceil(tokens / 1000) * rate, min_cost)``.

    The token ceiling (``max_tokens_per_call``) is enforced by callers of
    this function, not here.

    Raises:
        InvalidRequestError: If ``tokens`` or ``rate_per_1k_tokens`` is negative.
    """
    _require_non_negative("tokens", tokens)
    _require_non_negative("rate_per_1k_tokens", rate_per_1k_tokens)
    return max(token_blocks(tokens) * rate_per_1k_tokens, pricing.min_cost)


def calculate_platform_fee(gross: int, pricing: PricingConfig) -> int:
    """``floor(gross * platform_fee_percent)``, computed exactly."""
    _require_non_negative("gross", gross)
    return int((Decimal(gross) * pricing.platform_fee_percent).to_integral_value(ROUND_FLOOR))


def split_payout(gross: int, pricing: PricingConfig) -> tuple[int, int]:
    """Return ``(fee, net)`` for a gross amount; ``fee + net == gross``."""
    fee = calculate_platform_fee(gross, pricing)
    return fee, gross - fee


def apply_margin(amount: int, margin: Decimal) -> int:
    """``ceil(amount * margin)``, computed exactly."""
    return int((Decimal(amount) * margin).to_integral_value(ROUND_CEILING))


# ---------------------------------------------------------------------------
# Breakdown & validation
# ---------------------------------------------------------------------------


def build_cost_breakdown(tokens: int, rate_per_1k_tokens: int, pricing: PricingConfig) -> CostBreakdown:
    """Compute a cost and return every intermediate alongside it."""
    cost = calculate_cost(tokens, rate_per_1k_tokens, pricing)
    blocks = token_blocks(tokens)
    raw_cost = blocks * rate_per_1k_tokens
    fee, net = split_payout(cost, pricing)
    return CostBreakdown(
        tokens=tokens,
        token_blocks=blocks,
        rate_per_1k_tokens=rate_per_1k_tokens,
        raw_cost=raw_cost,
        minimum_applied=raw_cost < pricing.min_cost,
        cost=cost,
        platform_fee=fee,
        net_to_callee=net,
    )


def validate_tokens(tokens: int, pricing: PricingConfig, field: str = "tokens") -> None:
    """
    Reject token counts the engine will not price.

    Raises:
        InvalidRequestError: If ``tokens`` is negative or above
            ``max_tokens_per_call``.
    """
    _require_non_negative(field, tokens)
    if tokens > pricing.max_tokens_per_call:
        raise InvalidRequestError(
            field,
            f"{tokens} exceeds the maximum of {pricing.max_tokens_per_call} tokens per call",
            value=tokens,
            maximum=pricing.max_tokens_per_call,
        )


def _require_non_negative(field: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequestError(field, f"must be an integer, got {value!r}", value=value)
    if value < 0:
        raise InvalidRequestError(field, f"must be non-negative, got {value}", value=value)
