# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
from __future__ import annotations

from typing import Any


class PayMeterError(Exception):
    """
    Base class for all pay-meter errors.

    Attributes:
        code: Stable machine-readable error code.
        message: Human-readable description including the concrete numbers.
        details: Structured values behind the message.
        retryable: True only where retrying without client-side correction
            can succeed.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "PAY_METER_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return a plain-dict rendering suitable for an API response body."""
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class InvalidRequestError(PayMeterError):
    """Raised for malformed or out-of-range input such as negative tokens."""

    def __init__(self, field: str, reason: str, **details: Any) -> None:
        super().__init__(
            f"Validation failed for '{field}': {reason}",
            code="VALIDATION_ERROR",
            details={"field": field, "reason": reason, **details},
        )
        self.field = field
        self.reason = reason


class QuoteMismatchError(PayMeterError):
    """
    Raised when an execution request does not match the quote presented.

    Covers both a party/tool mismatch and actual tokens above the estimate.
    """

    def __init__(self, quote_id: str, reason: str, **details: Any) -> None:
        super().__init__(
            f"Quote '{quote_id}' does not cover this execution: {reason}",
            code="QUOTE_MISMATCH",
            details={"quote_id": quote_id, "reason": reason, **details},
        )
        self.quote_id = quote_id
        self.reason = reason


# ---------------------------------------------------------------------------
# Insufficiency
# ---------------------------------------------------------------------------


class InsufficientBalanceError(PayMeterError):
    """
    Raised when a principal cannot cover a charge or a hold.

    Attributes:
        principal_id: The principal being charged.
        required: Amount needed, in lamports.
        available: Spendable amount (balance minus active holds).
        balance: Total balance.
        reserved: Sum of active holds.
        shortfall: ``required - available``.
    """

    def __init__(
        self,
        principal_id: str,
        required: int,
        available: int,
        balance: int | None = None,
        reserved: int = 0,
        context: str | None = None,
    ) -> None:
        balance = available + reserved if balance is None else balance
        shortfall = max(0, required - available)
        context_text = f" for {context}" if context else ""
        super().__init__(
            f"Insufficient balance{context_text}: principal '{principal_id}' needs "
            f"{required} lamports, has {available} available of {balance} total, "
            f"{reserved} reserved (short by {shortfall}).",
            code="INSUFFICIENT_BALANCE",
            details={
                "principal_id": principal_id,
                "required": required,
                "available": available,
                "balance": balance,
                "reserved": reserved,
                "shortfall": shortfall,
            },
        )
        self.principal_id = principal_id
        self.required = required
        self.available = available
        self.balance = balance
        self.reserved = reserved
        self.shortfall = shortfall


class BelowMinimumPayoutError(PayMeterError):
    """Raised when a settlement is requested below the payout threshold."""

    def __init__(self, principal_id: str, pending: int, min_payout: int) -> None:
        super().__init__(
            f"Pending balance of principal '{principal_id}' is {pending} lamports, "
            f"below the minimum payout of {min_payout} (short by {min_payout - pending}).",
            code="BELOW_MIN_PAYOUT",
            details={
                "principal_id": principal_id,
                "pending": pending,
                "min_payout": min_payout,
                "shortfall": min_payout - pending,
            },
        )
        self.principal_id = principal_id
        self.pending = pending
        self.min_payout = min_payout


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------


class GuardrailViolationError(PayMeterError):
    """
    Raised when admission control blocks a spend.

    Attributes:
        principal_id: The caller whose guardrails were evaluated.
        violations: Every violated rule, not only the first.
    """

    def __init__(self, principal_id: str, violations: list[Any]) -> None:
        rules = ", ".join(v.rule for v in violations)
        messages = "; ".join(v.message for v in violations)
        super().__init__(
            f"Spend blocked for principal '{principal_id}' by {len(violations)} "
            f"guardrail(s) [{rules}]: {messages}",
            code="GUARDRAIL_VIOLATION",
            details={
                "principal_id": principal_id,
                "violations": [v.model_dump() for v in violations],
            },
        )
        self.principal_id = principal_id
        self.violations = list(violations)

    @property
    def rules(self) -> list[str]:
        return [v.rule for v in self.violations]


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(PayMeterError):
    """Base class for unknown-entity errors."""

    def __init__(self, kind: str, entity_id: str, code: str) -> None:
        super().__init__(
            f"{kind} not found: '{entity_id}'.",
            code=code,
            details={"kind": kind, "id": entity_id},
        )
        self.entity_id = entity_id


class PrincipalNotFoundError(NotFoundError):
    def __init__(self, principal_id: str) -> None:
        super().__init__("Principal", principal_id, "PRINCIPAL_NOT_FOUND")


class QuoteNotFoundError(NotFoundError):
    def __init__(self, quote_id: str) -> None:
        super().__init__("Quote", quote_id, "QUOTE_NOT_FOUND")


class ReservationNotFoundError(NotFoundError):
    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation", reservation_id, "RESERVATION_NOT_FOUND")


class SettlementNotFoundError(NotFoundError):
    def __init__(self, settlement_id: str) -> None:
        super().__init__("Settlement", settlement_id, "SETTLEMENT_NOT_FOUND")


# ---------------------------------------------------------------------------
# State conflicts
# ---------------------------------------------------------------------------


class StateConflictError(PayMeterError):
    """
    Raised when an entity is not in a state that permits the operation.

    Retrying without correcting the request reproduces the same conflict.
    """

    def __init__(
        self,
        message: str,
        code: str = "STATE_CONFLICT",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class QuoteExpiredError(StateConflictError):
    def __init__(self, quote_id: str, expires_at: str) -> None:
        super().__init__(
            f"Quote '{quote_id}' expired at {expires_at}.",
            code="QUOTE_EXPIRED",
            details={"quote_id": quote_id, "expires_at": expires_at},
        )
        self.quote_id = quote_id


class QuoteAlreadyUsedError(StateConflictError):
    def __init__(self, quote_id: str, used_at: str | None) -> None:
        super().__init__(
            f"Quote '{quote_id}' was already used at {used_at}.",
            code="QUOTE_ALREADY_USED",
            details={"quote_id": quote_id, "used_at": used_at},
        )
        self.quote_id = quote_id


class QuoteNotActiveError(StateConflictError):
    def __init__(self, quote_id: str, status: str) -> None:
        super().__init__(
            f"Quote '{quote_id}' is {status}, not active.",
            code="QUOTE_NOT_ACTIVE",
            details={"quote_id": quote_id, "status": status},
        )
        self.quote_id = quote_id
        self.status = status


class ReservationNotActiveError(StateConflictError):
    def __init__(self, reservation_id: str, status: str) -> None:
        super().__init__(
            f"Reservation '{reservation_id}' is {status}, not active.",
            code="RESERVATION_NOT_ACTIVE",
            details={"reservation_id": reservation_id, "status": status},
        )
        self.reservation_id = reservation_id
        self.status = status


class ReservationExpiredError(StateConflictError):
    def __init__(self, reservation_id: str, expires_at: str) -> None:
        super().__init__(
            f"Reservation '{reservation_id}' expired at {expires_at}; the hold was released.",
            code="RESERVATION_EXPIRED",
            details={"reservation_id": reservation_id, "expires_at": expires_at},
        )
        self.reservation_id = reservation_id


class SettlementInProgressError(StateConflictError):
    def __init__(self, principal_id: str, settlement_id: str) -> None:
        super().__init__(
            f"Principal '{principal_id}' already has settlement '{settlement_id}' "
            "awaiting the payment rail.",
            code="SETTLEMENT_IN_PROGRESS",
            details={"principal_id": principal_id, "settlement_id": settlement_id},
        )
        self.principal_id = principal_id
        self.settlement_id = settlement_id


class SettlementStateError(StateConflictError):
    def __init__(self, settlement_id: str, status: str) -> None:
        super().__init__(
            f"Settlement '{settlement_id}' is already {status}.",
            code="SETTLEMENT_TERMINAL",
            details={"settlement_id": settlement_id, "status": status},
        )
        self.settlement_id = settlement_id
        self.status = status


# ---------------------------------------------------------------------------
# External dependency
# ---------------------------------------------------------------------------


class PaymentRailError(PayMeterError):
    """
    Raised when the external payment rail fails during a payout.

    The settlement is marked failed and the principal's pending balance is
    left untouched, so the payout can be retried. When the rail returns
    without a transaction reference the outcome is unknown; the settlement
    stays pending until it is reconciled.
    """

    retryable = True

    def __init__(self, principal_id: str, settlement_id: str, net: int, reason: str) -> None:
        super().__init__(
            f"Payment rail failed paying {net} lamports to principal '{principal_id}' "
            f"(settlement '{settlement_id}'): {reason}",
            code="PAYMENT_RAIL_FAILED",
            details={
                "principal_id": principal_id,
                "settlement_id": settlement_id,
                "net": net,
                "reason": reason,
            },
        )
        self.principal_id = principal_id
        self.settlement_id = settlement_id


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


class LedgerIntegrityError(PayMeterError):
    """Raised by the storage layer when a write would break a ledger invariant."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message, code="LEDGER_INTEGRITY", details=details)
