# SPDX-License-Identifier: BSL-1.1
# Copyright (c) 2026 MuVeraAI Corporation

from .interface import LedgerStorage, LedgerTransaction
from .memory import MemoryStorage, MemoryTransaction
from .file import JournalEntry, JournaledStorage

__all__ = [
    "LedgerStorage",
    "LedgerTransaction",
    "MemoryStorage",
    "MemoryTransaction",
    "JournalEntry",
    "JournaledStorage",
]
