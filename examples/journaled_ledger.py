# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
journaled_ledger.py

Runs the engine on a journaled ledger with auto-settlement and a background
expiry sweeper, then prints the journal:
  1. Every charge appends a usage record to the NDJSON journal.
  2. Crossing the payout threshold triggers a settlement in the background.
  3. The journal replays settlement transitions and platform fees.

Run with:  python examples/journaled_ledger.py
"""

import asyncio
import logging
import tempfile
from pathlib import Path

from pay_meter import ExpirySweeper, JournaledStorage, PaymentEngine

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")


def rail(recipient_id: str, net: int) -> str:
    return f"sim-tx-{recipient_id}-{net}"


async def main() -> None:
    journal_path = Path(tempfile.mkdtemp()) / "ledger.ndjson"
    engine = PaymentEngine(storage=JournaledStorage(journal_path), payment_rail=rail, auto_settle=True)

    await engine.ledger.register_principal("orchestrator", balance=250_000)
    await engine.ledger.register_principal("search-agent", default_rate_per_1k_tokens=1_500)

    async with ExpirySweeper(engine, interval_seconds=5):
        for tokens in (1_200, 3_400, 2_000, 900, 4_100):
            result = await engine.execute_direct("orchestrator", "search-agent", "web_search", tokens)
            print(f"Charged {result.cost:>6} lamports for {tokens:>5} tokens")
        await engine.drain()

    print(f"\nJournal at {journal_path}:")
    for entry in await engine.storage.read_journal():
        print(f"  {entry.recorded_at.isoformat()}  {entry.kind:<13} {entry.data.get('id', '')[:8]}")

    revenue = await engine.settlement.platform_revenue()
    print(f"\nPlatform revenue: {revenue} lamports")


if __name__ == "__main__":
    asyncio.run(main())
