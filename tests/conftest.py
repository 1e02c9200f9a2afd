# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation
"""Shared fixtures for pay-meter tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import pytest

from pay_meter.engine import PaymentEngine

CALLER = "caller-001"
PROVIDER = "provider-001"
TOOL = "summarize"


class FakeClock:
    """A manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock: FakeClock) -> PaymentEngine:
    """A fresh in-memory engine with default config and a controllable clock."""
    return PaymentEngine(clock=clock)


@pytest.fixture
def seed(engine: PaymentEngine) -> Callable[..., Awaitable[PaymentEngine]]:
    """
    Register CALLER (100 000 lamports by default) and PROVIDER, whose TOOL
    is priced at 2000 lamports per 1k tokens. Extra keyword arguments are
    passed to the caller's registration as guardrail settings.
    """

    async def _seed(caller_balance: int = 100_000, rate: int = 2_000, **caller_limits: Any) -> PaymentEngine:
        await engine.ledger.register_principal(CALLER, balance=caller_balance, **caller_limits)
        await engine.ledger.register_principal(PROVIDER, default_rate_per_1k_tokens=1_000)
        await engine.ledger.register_tool(PROVIDER, TOOL, rate_per_1k_tokens=rate)
        return engine

    return _seed
