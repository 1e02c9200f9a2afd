# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
basic_metering.py

Demonstrates the three ways to charge a tool call, then a payout:
  1. Direct execution at the live rate.
  2. A quote that freezes the price before the call.
  3. A pre-authorization hold captured at the real token count.
  4. Settlement of the provider's pending earnings.

Run with:  python examples/basic_metering.py
(from the repository root with pay-meter installed)
"""

import asyncio

from pay_meter import PaymentEngine, QuoteRequest, ReservationRequest, WorkOutcome


async def fake_rail(recipient_id: str, net: int) -> str:
    # A real rail signs and broadcasts a transfer here.
    return f"sim-tx-{recipient_id}-{net}"


async def main() -> None:
    engine = PaymentEngine(payment_rail=fake_rail)

    # ─── Setup ────────────────────────────────────────────────────────────────

    await engine.ledger.register_principal("research-agent", balance=100_000, daily_spend_cap=50_000)
    await engine.ledger.register_principal("summarizer-agent", default_rate_per_1k_tokens=1_000)
    await engine.ledger.register_tool("summarizer-agent", "summarize", rate_per_1k_tokens=2_000)

    # ─── 1. Direct execution ──────────────────────────────────────────────────

    preview = await engine.preview_cost("research-agent", "summarizer-agent", "summarize", 1_500)
    print(f"Preview: cost={preview.cost} can_execute={preview.can_execute}")

    direct = await engine.execute_direct("research-agent", "summarizer-agent", "summarize", 1_500)
    print(f"Direct:  charged {direct.cost} lamports ({direct.tokens_used} tokens)")

    # ─── 2. Quoted execution ──────────────────────────────────────────────────

    quote = await engine.issue_quote(
        QuoteRequest(
            caller_id="research-agent",
            callee_id="summarizer-agent",
            tool_name="summarize",
            estimated_tokens=3_000,
        )
    )
    print(f"Quote:   {quote.quoted_cost} lamports, expires in {quote.expires_in}")

    quoted = await engine.execute_with_quote(
        quote.quote_id, "research-agent", "summarizer-agent", "summarize", 2_400
    )
    print(f"Quoted:  charged {quoted.cost} lamports")

    # ─── 3. Pre-authorized execution ──────────────────────────────────────────

    async def summarize() -> WorkOutcome[str]:
        # Simulate the tool call here.
        return WorkOutcome(result="[summary]", actual_tokens=800)

    outcome = await engine.execute_with_pre_auth(
        ReservationRequest(
            caller_id="research-agent",
            callee_id="summarizer-agent",
            tool_name="summarize",
            estimated_tokens=2_000,
        ),
        summarize,
    )
    print(
        f"Pre-auth: held {outcome.reservation.reserved_amount}, "
        f"captured {outcome.capture.actual_cost}, refunded {outcome.capture.refunded}"
    )

    # ─── 4. Settlement ────────────────────────────────────────────────────────

    settlement = await engine.settle("summarizer-agent")
    print(
        f"Settled: gross={settlement.gross} fee={settlement.platform_fee} "
        f"net={settlement.net} tx={settlement.tx_reference}"
    )

    status = await engine.get_budget_status("research-agent")
    print("\n── Budget summary ────────────────────────────────────")
    print(f"  Health      : {status.health}")
    print(f"  Balance     : {status.balance}")
    print(f"  Spent today : {status.daily_spend.used}")
    print(f"  Remaining   : {status.daily_spend.remaining}")
    print("──────────────────────────────────────────────────────")


if __name__ == "__main__":
    asyncio.run(main())
