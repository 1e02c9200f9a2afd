# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

"""
Memory ledger with an append-only NDJSON journal.

Every committed transaction that produced a usage record, a settlement
transition or a platform fee record appends one JSON object per entry to
the journal file before its writes become visible. If the journal write
fails the transaction is rolled back, so the journal never lags behind
the ledger it describes.

The journal is opened in append mode and never truncated or rewritten;
secure it with OS-level permissions if it must be tamper-evident.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from pay_meter.storage.memory import MemoryStorage, StagedJournalEntry
from pay_meter.types import PlatformFeeRecord, Settlement, UsageRecord, utc_now

logger = logging.getLogger("pay_meter.storage")

JournalKind = Literal["usage_record", "settlement", "fee_record"]

_MODELS: dict[str, type[BaseModel]] = {
    "usage_record": UsageRecord,
    "settlement": Settlement,
    "fee_record": PlatformFeeRecord,
}


class JournalEntry(BaseModel, frozen=True):
    """One line of the journal."""

    kind: JournalKind
    recorded_at: datetime = Field(default_factory=utc_now)
    data: dict[str, Any]

    def to_model(self) -> BaseModel:
        """Rebuild the typed ledger entry this line was written from."""
        return _MODELS[self.kind].model_validate(self.data)


class JournaledStorage(MemoryStorage):
    """
    MemoryStorage that writes an audit journal ahead of every commit.

    Parameters
    ----------
    journal_path:
        Path to the NDJSON journal. Created on first write.
    """

    def __init__(self, journal_path: str | Path) -> None:
        super().__init__()
        self._journal_path = Path(journal_path)

    @property
    def journal_path(self) -> Path:
        return self._journal_path

    async def _write_ahead(self, entries: list[StagedJournalEntry]) -> None:
        if not entries:
            return
        recorded_at = utc_now()
        lines = [
            JournalEntry(
                kind=kind,
                recorded_at=recorded_at,
                data=model.model_dump(mode="json"),
            ).model_dump_json()
            + "\n"
            for kind, model in entries
        ]
        async with aiofiles.open(self._journal_path, mode="a", encoding="utf-8") as file_handle:
            await file_handle.write("".join(lines))

    async def read_journal(self, kind: JournalKind | None = None) -> list[JournalEntry]:
        """
        Parse the whole journal from disk, optionally keeping one kind.

        Malformed lines are skipped and logged; they indicate a torn write
        from a crash mid-append.
        """
        if not self._journal_path.exists():
            return []

        entries: list[JournalEntry] = []
        async with aiofiles.open(self._journal_path, mode="r", encoding="utf-8") as file_handle:
            line_number = 0
            async for line in file_handle:
                line_number += 1
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entry = JournalEntry.model_validate(json.loads(stripped))
                except (json.JSONDecodeError, ValidationError):
                    logger.warning(
                        "journal_line_malformed",
                        extra={"path": str(self._journal_path), "line": line_number},
                    )
                    continue
                if kind is None or entry.kind == kind:
                    entries.append(entry)

        return entries
