"""Key-value ledger backends for the APDL contract.

The ledger is the world state the contract reads and writes: one key for the
agreement record, one key per participant for its balance. Values are bytes.

Writes produced by one operation are staged in a LedgerTransaction and land
through KeyValueLedger.apply() in a single step. If the operation raises,
nothing is applied. Backends must make apply() atomic to keep that promise.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager

from protocol import StorageReadError, StorageWriteError

log = logging.getLogger(__name__)


class KeyValueLedger(ABC):
    """Abstract world-state store. The contract is injected with one of these."""

    @abstractmethod
    def get_state(self, key: str) -> bytes | None:
        """Return the value stored under key, or None if absent."""
        ...

    @abstractmethod
    def put_state(self, key: str, value: bytes) -> None:
        """Store a single value."""
        ...

    @abstractmethod
    def apply(self, writes: dict[str, bytes]) -> None:
        """Store every value in writes, all or nothing."""
        ...

    def close(self):
        pass

    @contextmanager
    def transaction(self):
        """Stage writes; commit them together when the block exits cleanly."""
        tx = LedgerTransaction(self)
        yield tx
        tx.commit()


class LedgerTransaction:
    """Write buffer over a ledger with read-your-writes semantics."""

    def __init__(self, ledger: KeyValueLedger):
        self.ledger = ledger
        self.writes: dict[str, bytes] = {}
        self.committed = False

    def get_state(self, key: str) -> bytes | None:
        if key in self.writes:
            return self.writes[key]
        return self.ledger.get_state(key)

    def put_state(self, key: str, value: bytes) -> None:
        if self.committed:
            raise StorageWriteError("[-] Transaction already committed")
        self.writes[key] = value

    def commit(self):
        if self.committed:
            return
        if self.writes:
            self.ledger.apply(self.writes)
            log.debug("committed %d write(s): %s", len(self.writes), sorted(self.writes))
        self.committed = True


class MemoryLedger(KeyValueLedger):
    """In-process dict ledger for tests and single-node use."""

    def __init__(self):
        self._state: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get_state(self, key: str) -> bytes | None:
        return self._state.get(key)

    def put_state(self, key: str, value: bytes) -> None:
        self.apply({key: value})

    def apply(self, writes: dict[str, bytes]) -> None:
        with self._lock:
            self._state.update({k: bytes(v) for k, v in writes.items()})

    def keys(self) -> list[str]:
        return sorted(self._state)


class SQLiteLedger(KeyValueLedger):
    """SQLite-backed ledger. One row per key."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        try:
            self.db = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageReadError(f"[-] Cannot open ledger at {db_path}: {e}")
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)
        self.db.commit()

    def get_state(self, key: str) -> bytes | None:
        try:
            row = self.db.execute("SELECT value FROM state WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(f"[-] Failed to read {key}: {e}")
        if not row:
            return None
        return bytes(row[0])

    def put_state(self, key: str, value: bytes) -> None:
        self.apply({key: value})

    def apply(self, writes: dict[str, bytes]) -> None:
        with self._lock:
            try:
                with self.db:
                    self.db.executemany(
                        "INSERT INTO state (key, value) VALUES (?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        [(k, bytes(v)) for k, v in writes.items()],
                    )
            except sqlite3.Error as e:
                raise StorageWriteError(f"[-] Failed to commit {len(writes)} write(s): {e}")

    def keys(self) -> list[str]:
        rows = self.db.execute("SELECT key FROM state ORDER BY key").fetchall()
        return [r[0] for r in rows]

    def close(self):
        self.db.close()
