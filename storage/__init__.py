"""Storage module - SQLite ledger store."""

from storage.db import LedgerSession, LedgerStore, init_db

__all__ = [
    "LedgerSession",
    "LedgerStore",
    "init_db",
]
