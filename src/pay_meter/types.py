# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


# A zero-argument callable returning an aware UTC datetime.
Clock = Callable[[], datetime]


# ─── Status vocabularies ──────────────────────────────────────────────────────

QuoteStatus = Literal["active", "used", "expired", "cancelled"]
ReservationStatus = Literal["active", "captured", "released", "expired"]
SettlementStatus = Literal["pending", "confirmed", "failed"]
GuardrailRule = Literal["kill_switch", "max_cost_per_call", "daily_spend_cap", "callee_allowlist"]
PricingSource = Literal["tool", "default"]
HealthStatus = Literal["healthy", "warning", "critical", "paused"]

TERMINAL_QUOTE_STATUSES: frozenset[str] = frozenset({"used", "expired", "cancelled"})
TERMINAL_SETTLEMENT_STATUSES: frozenset[str] = frozenset({"confirmed", "failed"})

# ─── Principal & tools ────────────────────────────────────────────────────────


class Principal(BaseModel):
    """
    An account that spends as a caller and earns as a callee.

    ``balance`` is spendable; ``pending`` is earned but not yet settled.
    Both are integer lamports and never negative.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1)
    balance: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    default_rate_per_1k_tokens: int = Field(..., ge=0)
    max_cost_per_call: Optional[int] = Field(default=None, ge=0)
    daily_spend_cap: Optional[int] = Field(default=None, ge=0)
    is_paused: bool = False
    allowed_callees: Optional[list[str]] = None
    created_at: datetime = Field(default_factory=utc_now)


class Tool(BaseModel):
    """A priced resource owned by one principal; ``name`` is unique per owner."""

    id: str
    owner_id: str
    name: str = Field(..., min_length=1)
    rate_per_1k_tokens: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ToolPricing(BaseModel, frozen=True):
    """The live rate for (owner, tool name) and where it came from."""

    tool_id: Optional[str]
    rate_per_1k_tokens: int
    source: PricingSource


class GuardrailUpdate(BaseModel):
    """
    Partial guardrail configuration update.

    Only fields explicitly set are applied; passing ``None`` for a set field
    clears that limit.
    """

    max_cost_per_call: Optional[int] = Field(default=None, ge=0)
    daily_spend_cap: Optional[int] = Field(default=None, ge=0)
    allowed_callees: Optional[list[str]] = None
    is_paused: Optional[bool] = None


# ─── Cost model ───────────────────────────────────────────────────────────────


class CostBreakdown(BaseModel, frozen=True):
    """Every intermediate of a single cost calculation."""

    tokens: int
    token_blocks: int
    rate_per_1k_tokens: int
    raw_cost: int
    minimum_applied: bool
    cost: int
    platform_fee: int
    net_to_callee: int


class PriceSnapshot(BaseModel, frozen=True):
    """Audit snapshot stored with a quote at issuance."""

    token_blocks: int
    raw_cost: int
    minimum_applied: bool
    platform_fee_percent: Decimal
    min_cost: int
    max_tokens_per_call: int
    calculated_at: datetime


# ─── Quotes ───────────────────────────────────────────────────────────────────


class PricingQuote(BaseModel):
    """A frozen price for one (caller, callee, tool) call, valid until expiry."""

    id: str
    caller_id: str
    callee_id: str
    tool_id: Optional[str] = None
    tool_name: str
    estimated_tokens: int = Field(..., ge=0)
    rate_per_1k_tokens: int = Field(..., ge=0)
    quoted_cost: int = Field(..., ge=0)
    platform_fee: int = Field(..., ge=0)
    issued_at: datetime
    expires_at: datetime
    validity_seconds: int
    status: QuoteStatus = "active"
    used_at: Optional[datetime] = None
    used_by_usage_id: Optional[str] = None
    price_snapshot: PriceSnapshot


class QuoteRequest(BaseModel, frozen=True):
    """Caller input for ``issue_quote``."""

    caller_id: str = Field(..., min_length=1)
    callee_id: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    estimated_tokens: int
    validity_seconds: Optional[int] = None


class QuoteResponse(BaseModel, frozen=True):
    """What the caller receives when a quote is issued."""

    quote_id: str
    caller_id: str
    callee_id: str
    tool_name: str
    estimated_tokens: int
    rate_per_1k_tokens: int
    quoted_cost: int
    platform_fee: int
    net_to_callee: int
    issued_at: datetime
    expires_at: datetime
    validity_seconds: int
    expires_in: str
    price_snapshot: PriceSnapshot


class QuoteStats(BaseModel, frozen=True):
    total_issued: int
    total_used: int
    total_expired: int
    total_cancelled: int
    total_active: int
    conversion_rate: float


# ─── Reservations ─────────────────────────────────────────────────────────────


class BalanceReservation(BaseModel):
    """A hold against a caller's balance for work that has not completed yet."""

    id: str
    caller_id: str
    callee_id: str
    tool_name: str
    estimated_tokens: int
    estimated_cost: int
    reserved_amount: int = Field(..., ge=0)
    status: ReservationStatus = "active"
    created_at: datetime
    expires_at: datetime
    updated_at: datetime
    actual_tokens: Optional[int] = None
    actual_cost: Optional[int] = None
    usage_record_id: Optional[str] = None
    captured_at: Optional[datetime] = None
    release_reason: Optional[str] = None


class ReservationRequest(BaseModel, frozen=True):
    """Caller input for ``reserve``."""

    caller_id: str = Field(..., min_length=1)
    callee_id: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    estimated_tokens: int
    timeout_seconds: Optional[int] = None


class ReservationResult(BaseModel, frozen=True):
    reservation_id: str
    reserved_amount: int
    estimated_cost: int
    rate_per_1k_tokens: int
    expires_at: datetime
    available_balance: int


class CaptureResult(BaseModel, frozen=True):
    reservation_id: str
    usage_record_id: str
    caller_id: str
    callee_id: str
    actual_tokens: int
    actual_cost: int
    rate_per_1k_tokens: int
    refunded: int
    captured_at: datetime


class ReleaseResult(BaseModel, frozen=True):
    reservation_id: str
    released: bool
    reserved_amount: int


class AvailableBalance(BaseModel, frozen=True):
    principal_id: str
    total: int
    reserved: int
    available: int


class ReservationStats(BaseModel, frozen=True):
    active_count: int
    total_reserved: int
    avg_duration_seconds: float
    capture_rate: float


# ─── Ledger entries ───────────────────────────────────────────────────────────


class UsageRecord(BaseModel):
    """
    An immutable ledger entry for one charged call.

    The sole record of what happened and what it cost; never updated or
    deleted once written.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    caller_id: str
    callee_id: str
    tool_id: Optional[str] = None
    tool_name: str
    tokens_used: int = Field(..., ge=0)
    rate_per_1k_tokens: int = Field(..., ge=0)
    cost: int = Field(..., ge=0)
    quote_id: Optional[str] = None
    reservation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class UsageFilter(BaseModel):
    """Optional filter applied to usage record queries. All fields are AND-ed."""

    caller_id: Optional[str] = None
    callee_id: Optional[str] = None
    quote_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, gt=0)


class ExecutionResult(BaseModel, frozen=True):
    """What a successful charge returns to the caller."""

    usage_record_id: str
    caller_id: str
    callee_id: str
    tool_id: Optional[str]
    tool_name: str
    tokens_used: int
    cost: int
    rate_per_1k_tokens: int
    quote_id: Optional[str] = None


class PrincipalMetrics(BaseModel, frozen=True):
    principal_id: str
    default_rate_per_1k_tokens: int
    balance: int
    pending: int
    calls_made: int
    total_spent: int
    calls_served: int
    total_earned: int


# ─── Settlement ───────────────────────────────────────────────────────────────


class Settlement(BaseModel):
    """One payout attempt of a principal's pending balance."""

    id: str
    principal_id: str
    gross: int = Field(..., ge=0)
    platform_fee: int = Field(..., ge=0)
    net: int = Field(..., ge=0)
    status: SettlementStatus = "pending"
    tx_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PlatformFeeRecord(BaseModel):
    """Immutable record of the platform's cut of a confirmed settlement."""

    model_config = ConfigDict(frozen=True)

    id: str
    settlement_id: str
    fee: int = Field(..., ge=0)
    created_at: datetime = Field(default_factory=utc_now)


class SettlementOutcome(BaseModel, frozen=True):
    settlement_id: str
    principal_id: str
    gross: int
    platform_fee: int
    net: int
    tx_reference: Optional[str]
    status: SettlementStatus


class SettlementEligibility(BaseModel, frozen=True):
    principal_id: str
    eligible: bool
    pending: int
    min_payout: int
    platform_fee: int
    net: int
    reason: Optional[str] = None


TransferState = Literal["confirmed", "not_found", "unknown"]


class TransferLookup(BaseModel, frozen=True):
    """
    The payment rail's answer when asked what happened to a payout.

    ``not_found`` must be definite (the rail never executed the transfer);
    ``unknown`` leaves the settlement pending for a later reconcile.
    """

    state: TransferState
    tx_reference: Optional[str] = None

    @field_validator("tx_reference")
    @classmethod
    def reference_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("tx_reference must not be blank")
        return value


# ─── Guardrails, budget status & previews ─────────────────────────────────────


class GuardrailViolation(BaseModel, frozen=True):
    """One violated admission rule, with the numbers involved."""

    rule: GuardrailRule
    message: str
    limit: Optional[int] = None
    attempted: Optional[int] = None


class BudgetLimits(BaseModel, frozen=True):
    max_cost_per_call: Optional[int]
    daily_spend_cap: Optional[int]
    is_paused: bool
    allowed_callees: Optional[list[str]]


class DailySpend(BaseModel, frozen=True):
    used: int
    remaining: Optional[int]
    percent_used: Optional[float]
    transaction_count: int


class BudgetStatus(BaseModel, frozen=True):
    """Point-in-time budget snapshot for one principal."""

    principal_id: str
    balance: int
    available: int
    reserved: int
    pending: int
    limits: BudgetLimits
    daily_spend: DailySpend
    all_time_spent: int
    all_time_transactions: int
    active_reservations: list[BalanceReservation]
    health: HealthStatus
    warnings: list[str]
    recommendations: list[str]
    generated_at: datetime


class BudgetSnapshot(BaseModel, frozen=True):
    """The subset of budget state a preview is judged against."""

    balance: int
    available: int
    reserved: int
    daily_spend_used: int
    daily_spend_remaining: Optional[int]


class CostPreview(BaseModel, frozen=True):
    """Read-only answer to "what would this call cost and would it pass?"."""

    cost: int
    breakdown: CostBreakdown
    budget_status: BudgetSnapshot
    warnings: list[str]
    violations: list[GuardrailViolation]
    can_execute: bool


class PlannedCall(BaseModel, frozen=True):
    callee_id: str = Field(..., min_length=1)
    tool_name: str = Field(..., min_length=1)
    estimated_tokens: int = Field(..., ge=0)


class CallEstimate(BaseModel, frozen=True):
    callee_id: str
    tool_name: str
    estimated_tokens: int
    rate_per_1k_tokens: int
    estimated_cost: int


class SpendForecast(BaseModel, frozen=True):
    can_execute: bool
    estimated_cost: int
    calls: list[CallEstimate]
    balance_after: int
    daily_spend_after: int
    violations: list[str]
    warnings: list[str]
