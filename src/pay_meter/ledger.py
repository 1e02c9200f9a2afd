# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""
Ledger: the only place balances and pending earnings change.

Public methods open their own transaction. Methods that take a ``tx``
argument run inside the caller's transaction so that a debit, the matching
credit and the usage record commit together or not at all.
"""
from __future__ import annotations

import logging
from uuid import uuid4

from pay_meter.config import PricingConfig
from pay_meter.errors import (
    InsufficientBalanceError,
    InvalidRequestError,
    PrincipalNotFoundError,
    StateConflictError,
)
from pay_meter.storage.interface import LedgerStorage, LedgerTransaction
from pay_meter.types import (
    AvailableBalance,
    Clock,
    Principal,
    PrincipalMetrics,
    Tool,
    ToolPricing,
    UsageFilter,
    UsageRecord,
    utc_now,
)

logger = logging.getLogger("pay_meter.ledger")


class Ledger:
    """
    Principal registry, tool pricing and balance mutation.

    Example::

        ledger = Ledger(MemoryStorage(), PricingConfig())
        await ledger.register_principal("caller", balance=100_000)
        await ledger.register_principal("provider", default_rate_per_1k_tokens=500)
        await ledger.register_tool("provider", "summarize", rate_per_1k_tokens=2_000)
    """

    def __init__(
        self,
        storage: LedgerStorage,
        pricing: PricingConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._storage = storage
        self._pricing = pricing or PricingConfig()
        self._clock = clock or utc_now

    @property
    def storage(self) -> LedgerStorage:
        return self._storage

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    async def register_principal(
        self,
        principal_id: str,
        default_rate_per_1k_tokens: int | None = None,
        balance: int = 0,
        max_cost_per_call: int | None = None,
        daily_spend_cap: int | None = None,
        allowed_callees: list[str] | None = None,
    ) -> Principal:
        """
        Register a new principal.

        Raises:
            StateConflictError: If ``principal_id`` is already registered.
            pydantic.ValidationError: If a field is out of range.
        """
        rate = (
            self._pricing.default_rate_per_1k_tokens
            if default_rate_per_1k_tokens is None
            else default_rate_per_1k_tokens
        )
        principal = Principal(
            id=principal_id,
            balance=balance,
            default_rate_per_1k_tokens=rate,
            max_cost_per_call=max_cost_per_call,
            daily_spend_cap=daily_spend_cap,
            allowed_callees=allowed_callees,
            created_at=self._clock(),
        )
        async with self._storage.transaction() as tx:
            if await tx.get_principal(principal_id, for_update=True) is not None:
                raise StateConflictError(
                    f"Principal '{principal_id}' is already registered.",
                    code="PRINCIPAL_EXISTS",
                    details={"principal_id": principal_id},
                )
            await tx.insert_principal(principal)

        logger.info(
            "principal_registered",
            extra={"principal_id": principal_id, "balance": balance, "default_rate": rate},
        )
        return principal

    async def get_principal(self, principal_id: str) -> Principal:
        async with self._storage.transaction() as tx:
            return await self.require_principal(tx, principal_id)

    async def deposit(self, principal_id: str, amount: int) -> Principal:
        """Top up a principal's spendable balance by ``amount`` lamports."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRequestError("amount", f"deposit must be a positive integer, got {amount!r}")

        async with self._storage.transaction() as tx:
            principal = await self.require_principal(tx, principal_id, for_update=True)
            principal.balance += amount
            await tx.save_principal(principal)

        logger.info(
            "balance_deposited",
            extra={"principal_id": principal_id, "amount": amount, "balance": principal.balance},
        )
        return principal

    # ------------------------------------------------------------------
    # Tools & pricing
    # ------------------------------------------------------------------

    async def register_tool(self, owner_id: str, name: str, rate_per_1k_tokens: int) -> Tool:
        """
        Register a tool for ``owner_id``, or update its live rate if the
        owner already has a tool with that name.

        Quotes issued before a rate change keep their frozen price.
        """
        if isinstance(rate_per_1k_tokens, bool) or not isinstance(rate_per_1k_tokens, int) or rate_per_1k_tokens < 0:
            raise InvalidRequestError(
                "rate_per_1k_tokens", f"must be a non-negative integer, got {rate_per_1k_tokens!r}"
            )

        now = self._clock()
        async with self._storage.transaction() as tx:
            await self.require_principal(tx, owner_id)
            existing = await tx.get_tool(owner_id, name)
            if existing is None:
                tool = Tool(
                    id=str(uuid4()),
                    owner_id=owner_id,
                    name=name,
                    rate_per_1k_tokens=rate_per_1k_tokens,
                    created_at=now,
                    updated_at=now,
                )
            else:
                tool = existing.model_copy(update={"rate_per_1k_tokens": rate_per_1k_tokens, "updated_at": now})
            await tx.save_tool(tool)

        logger.info(
            "tool_registered",
            extra={"owner_id": owner_id, "tool_name": name, "rate": rate_per_1k_tokens},
        )
        return tool

    async def list_tools(self, owner_id: str) -> list[Tool]:
        async with self._storage.transaction() as tx:
            await self.require_principal(tx, owner_id)
            tools = await tx.list_tools(owner_id)
        return sorted(tools, key=lambda tool: tool.name)

    async def get_tool_pricing(self, owner_id: str, tool_name: str) -> ToolPricing:
        async with self._storage.transaction() as tx:
            return await self.resolve_pricing(tx, owner_id, tool_name)

    async def resolve_pricing(self, tx: LedgerTransaction, owner_id: str, tool_name: str) -> ToolPricing:
        """Live rate for (owner, tool), falling back to the owner's default rate."""
        tool = await tx.get_tool(owner_id, tool_name)
        if tool is not None:
            return ToolPricing(tool_id=tool.id, rate_per_1k_tokens=tool.rate_per_1k_tokens, source="tool")
        owner = await self.require_principal(tx, owner_id)
        return ToolPricing(tool_id=None, rate_per_1k_tokens=owner.default_rate_per_1k_tokens, source="default")

    # ------------------------------------------------------------------
    # Transactional primitives
    # ------------------------------------------------------------------

    async def require_principal(
        self, tx: LedgerTransaction, principal_id: str, *, for_update: bool = False
    ) -> Principal:
        principal = await tx.get_principal(principal_id, for_update=for_update)
        if principal is None:
            raise PrincipalNotFoundError(principal_id)
        return principal

    async def debit(self, tx: LedgerTransaction, principal_id: str, amount: int) -> Principal:
        """
        Subtract ``amount`` from a principal's balance.

        Sufficiency is checked by the orchestrating engine before this is
        called; the check here is the last line of defence against debt.

        Raises:
            InsufficientBalanceError: If the balance would go negative.
        """
        principal = await self.require_principal(tx, principal_id, for_update=True)
        if principal.balance < amount:
            raise InsufficientBalanceError(
                principal_id,
                required=amount,
                available=principal.balance,
                balance=principal.balance,
                context="ledger debit",
            )
        principal.balance -= amount
        await tx.save_principal(principal)
        return principal

    async def credit_pending(self, tx: LedgerTransaction, principal_id: str, amount: int) -> Principal:
        """Add earned lamports to a principal's unsettled ``pending`` balance."""
        principal = await self.require_principal(tx, principal_id, for_update=True)
        principal.pending += amount
        await tx.save_principal(principal)
        return principal

    async def append_usage_record(self, tx: LedgerTransaction, record: UsageRecord) -> UsageRecord:
        await tx.insert_usage_record(record)
        return record

    async def reserved_total(self, tx: LedgerTransaction, principal_id: str) -> int:
        """Sum of the principal's active holds that have not yet expired."""
        now = self._clock()
        reservations = await tx.list_reservations(caller_id=principal_id, status="active")
        return sum(r.reserved_amount for r in reservations if r.expires_at > now)

    async def available_balance(self, tx: LedgerTransaction, principal: Principal) -> AvailableBalance:
        reserved = await self.reserved_total(tx, principal.id)
        return AvailableBalance(
            principal_id=principal.id,
            total=principal.balance,
            reserved=reserved,
            available=principal.balance - reserved,
        )

    # ------------------------------------------------------------------
    # Usage queries
    # ------------------------------------------------------------------

    async def usage_history(
        self,
        principal_id: str,
        as_callee: bool = False,
        limit: int = 100,
    ) -> list[UsageRecord]:
        """Most recent usage records for a principal, newest first."""
        usage_filter = (
            UsageFilter(callee_id=principal_id, limit=limit)
            if as_callee
            else UsageFilter(caller_id=principal_id, limit=limit)
        )
        async with self._storage.transaction() as tx:
            await self.require_principal(tx, principal_id)
            records = await tx.list_usage_records(usage_filter)
        return list(reversed(records))

    async def principal_metrics(self, principal_id: str) -> PrincipalMetrics:
        async with self._storage.transaction() as tx:
            principal = await self.require_principal(tx, principal_id)
            spent = await tx.list_usage_records(UsageFilter(caller_id=principal_id))
            earned = await tx.list_usage_records(UsageFilter(callee_id=principal_id))

        return PrincipalMetrics(
            principal_id=principal_id,
            default_rate_per_1k_tokens=principal.default_rate_per_1k_tokens,
            balance=principal.balance,
            pending=principal.pending,
            calls_made=len(spent),
            total_spent=sum(record.cost for record in spent),
            calls_served=len(earned),
            total_earned=sum(record.cost for record in earned),
        )
