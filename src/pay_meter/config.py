# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, Field, model_validator


class PricingConfig(BaseModel, frozen=True):
    """
    Pricing constants shared by every component.

    Attributes:
        min_cost: Floor applied to every priced call, in lamports.
        max_tokens_per_call: Largest token count a single call may report.
        platform_fee_percent: Fraction of a settled gross kept by the
            platform. Held as a Decimal so the fee floor is exact.
        min_payout: Smallest pending balance that may be settled.
        default_rate_per_1k_tokens: Rate given to principals registered
            without an explicit default rate.
    """

    min_cost: Annotated[int, Field(ge=0)] = 100
    max_tokens_per_call: Annotated[int, Field(gt=0)] = 100_000
    platform_fee_percent: Annotated[Decimal, Field(ge=0, lt=1)] = Decimal("0.05")
    min_payout: Annotated[int, Field(ge=0)] = 10_000
    default_rate_per_1k_tokens: Annotated[int, Field(ge=0)] = 1_000


class QuoteConfig(BaseModel, frozen=True):
    """
    Configuration for the QuoteEngine.

    Attributes:
        default_validity_seconds: Validity used when the caller supplies none.
        min_validity_seconds: Lower clamp for a requested validity.
        max_validity_seconds: Upper clamp for a requested validity.
        expiry_grace_seconds: Latency allowance past ``expires_at`` during
            validation.
        list_limit: Maximum number of quotes returned by list queries.
    """

    default_validity_seconds: Annotated[int, Field(gt=0)] = 300
    min_validity_seconds: Annotated[int, Field(gt=0)] = 60
    max_validity_seconds: Annotated[int, Field(gt=0)] = 1_800
    expiry_grace_seconds: Annotated[int, Field(ge=0)] = 10
    list_limit: Annotated[int, Field(gt=0)] = 50

    @model_validator(mode="after")
    def _check_bounds(self) -> QuoteConfig:
        if self.min_validity_seconds > self.max_validity_seconds:
            raise ValueError(
                "min_validity_seconds must not exceed max_validity_seconds; "
                f"got {self.min_validity_seconds} > {self.max_validity_seconds}."
            )
        return self


class ReservationConfig(BaseModel, frozen=True):
    """
    Configuration for the ReservationEngine.

    Attributes:
        default_timeout_seconds: Hold lifetime when the caller supplies none.
        max_timeout_seconds: Upper clamp for a requested hold lifetime.
        safety_margin: Multiplier applied to the estimated cost. Must be >= 1.
    """

    default_timeout_seconds: Annotated[int, Field(gt=0)] = 300
    max_timeout_seconds: Annotated[int, Field(gt=0)] = 1_800
    safety_margin: Annotated[Decimal, Field(ge=1)] = Decimal("1.1")

    @model_validator(mode="after")
    def _check_bounds(self) -> ReservationConfig:
        if self.default_timeout_seconds > self.max_timeout_seconds:
            raise ValueError(
                "default_timeout_seconds must not exceed max_timeout_seconds; "
                f"got {self.default_timeout_seconds} > {self.max_timeout_seconds}."
            )
        return self


class GuardrailConfig(BaseModel, frozen=True):
    """
    Configuration for budget admission control and status reporting.

    Attributes:
        daily_window_seconds: Length of the trailing spend window.
        daily_cap_warning_ratio: Fraction of the daily cap that triggers a
            warning.
        low_balance_ratio: A request above ``available / low_balance_ratio``
            produces a low-balance warning.
        low_balance_threshold: Available balance under which status reports
            a warning.
        reservation_count_warning: Active holds at or above this count are
            reported in the status warnings.
    """

    daily_window_seconds: Annotated[int, Field(gt=0)] = 86_400
    daily_cap_warning_ratio: Annotated[Decimal, Field(gt=0, le=1)] = Decimal("0.9")
    low_balance_ratio: Annotated[Decimal, Field(ge=1)] = Decimal("1.2")
    low_balance_threshold: Annotated[int, Field(ge=0)] = 10_000
    reservation_count_warning: Annotated[int, Field(gt=0)] = 10


class EngineConfig(BaseModel, frozen=True):
    """
    Top-level configuration for the PaymentEngine.

    Example::

        config = EngineConfig(
            pricing=PricingConfig(min_cost=50, platform_fee_percent=Decimal("0.03")),
            reservations=ReservationConfig(safety_margin=Decimal("1.25")),
        )
        engine = PaymentEngine(config=config)
    """

    pricing: PricingConfig = Field(default_factory=PricingConfig)
    quotes: QuoteConfig = Field(default_factory=QuoteConfig)
    reservations: ReservationConfig = Field(default_factory=ReservationConfig)
    guardrails: GuardrailConfig = Field(default_factory=GuardrailConfig)
