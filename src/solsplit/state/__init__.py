"""
State Management module.

Handles persistence of the pending lookup table record.
"""

from solsplit.state.alt_store import AltRecordStore
from solsplit.state.database import Database, MemoryStore, init_database

__all__ = [
    "AltRecordStore",
    "Database",
    "MemoryStore",
    "init_database",
]
