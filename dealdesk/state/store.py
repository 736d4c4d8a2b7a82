"""
Transaction record store with optimistic concurrency.

CRITICAL PROPERTIES:
1. One durable document per transaction (JSON payload + indexed columns)
2. Conditional writes: UPDATE ... WHERE version = expected
3. At most one active transaction per (kind, initiator, counterparty, subject),
   enforced by a partial unique index at creation time
4. No in-memory cache for the SQLite backend (read from DB always)
5. Thread-safe via one SQLite connection per thread, WAL mode
6. Persistence failures surface as StoreUnavailableError; nothing is mutated

Two backends share the TransactionStore protocol:
- SqliteTransactionStore: production
- MemoryTransactionStore: tests and single-process tooling
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from dealdesk.logging import get_logger, LogStream
from dealdesk.state.errors import (
    DuplicateProposalError,
    StaleWriteError,
    StoreUnavailableError,
    TransactionNotFoundError,
)
from dealdesk.state.models import Offer, Transaction, TransactionKind
from dealdesk.time import Clock, RealTimeClock, epoch_ms, ensure_utc


# ============================================================================
# PROTOCOL
# ============================================================================

class TransactionStore(Protocol):
    """Persistence contract used by the engine and the sweeper."""

    def insert(self, record: Transaction) -> Transaction: ...

    def get(self, transaction_id: str) -> Transaction: ...

    def find(self, transaction_id: str) -> Optional[Transaction]: ...

    def compare_and_set(self, record: Transaction, expected_version: int) -> Transaction: ...

    def list_expirable(self, now, limit: int = 500) -> List[Transaction]: ...

    def list_in_fulfillment(self, limit: int = 500) -> List[Transaction]: ...

    def list_for_party(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        active_only: bool = False,
    ) -> List[Transaction]: ...

    def get_offer_by_message(self, conversation_id: str, message_id: str) -> Optional[Offer]: ...

    def close(self) -> None: ...


def _stale(record: Transaction, expected_version: int, current_version: int) -> StaleWriteError:
    return StaleWriteError(
        f"Transaction {record.transaction_id} changed "
        f"(expected version {expected_version}, found {current_version})",
        transaction_id=record.transaction_id,
        current_state=record.state.value,
        expected_version=expected_version,
        reason="version_conflict",
    )


def _duplicate(record: Transaction) -> DuplicateProposalError:
    return DuplicateProposalError(
        f"An active {record.kind.value} already exists for this pair and subject",
        transaction_id=record.transaction_id,
        attempted="propose",
        actor_id=record.initiator_id,
        reason=f"subject={record.subject_key}",
    )


# ============================================================================
# SQLITE BACKEND
# ============================================================================

class SqliteTransactionStore:
    """
    SQLite-backed transaction persistence.

    SCHEMA:
    - transactions table: indexed columns for queries, JSON payload for the record
    - version column is the optimistic concurrency token
    - expires_at_ms is epoch milliseconds (integer comparisons in the sweep query)

    THREAD SAFETY:
    - Thread-local connections, WAL mode, busy timeout
    - Correctness under concurrency comes from the conditional UPDATE, not locks

    USAGE:
        store = SqliteTransactionStore(Path("data/deals/deals.db"))
        record = store.insert(offer)                    # version 1
        updated = store.compare_and_set(changed, 1)     # version 2 or StaleWriteError
    """

    SCHEMA_VERSION = 1

    CREATE_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS transactions (
            transaction_id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            initiator_id TEXT NOT NULL,
            counterparty_id TEXT NOT NULL,
            subject_key TEXT NOT NULL,
            state TEXT NOT NULL,
            active INTEGER NOT NULL,
            awaiting_response INTEGER NOT NULL,
            in_fulfillment INTEGER NOT NULL,
            expires_at_ms INTEGER,
            conversation_id TEXT,
            message_id TEXT,
            version INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            payload TEXT NOT NULL
        )
    """

    CREATE_INDEXES_SQL = (
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_transactions_active_subject
        ON transactions (kind, initiator_id, counterparty_id, subject_key)
        WHERE active = 1
        """,
        "CREATE INDEX IF NOT EXISTS ix_transactions_expiry ON transactions (awaiting_response, expires_at_ms)",
        "CREATE INDEX IF NOT EXISTS ix_transactions_fulfillment ON transactions (in_fulfillment)",
        "CREATE INDEX IF NOT EXISTS ix_transactions_initiator ON transactions (initiator_id)",
        "CREATE INDEX IF NOT EXISTS ix_transactions_counterparty ON transactions (counterparty_id)",
        "CREATE INDEX IF NOT EXISTS ix_transactions_message ON transactions (conversation_id, message_id)",
    )

    CREATE_VERSION_TABLE_SQL = """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        )
    """

    def __init__(self, db_path: Path, clock: Optional[Clock] = None, busy_timeout_ms: int = 5000):
        """
        Args:
            db_path: Path to SQLite database file
            clock: Clock for updated_at stamps (defaults to RealTimeClock)
            busy_timeout_ms: How long a writer waits on a locked database
        """
        self.db_path = Path(db_path)
        self.clock = clock or RealTimeClock()
        self.busy_timeout_ms = busy_timeout_ms
        self.logger = get_logger(LogStream.STORE)

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

        self._initialize_db()

        self.logger.info("SqliteTransactionStore initialized", extra={
            "db_path": str(self.db_path),
            "schema_version": self.SCHEMA_VERSION
        })

    def _get_connection(self) -> sqlite3.Connection:
        """Thread-local database connection."""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    timeout=self.busy_timeout_ms / 1000,
                    check_same_thread=False,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"Cannot open transaction store {self.db_path}: {e}") from e

            # We control transactions explicitly
            conn.isolation_level = None
            conn.row_factory = sqlite3.Row

            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)

        return conn

    def _initialize_db(self):
        conn = self._get_connection()
        try:
            conn.execute(self.CREATE_TABLE_SQL)
            for statement in self.CREATE_INDEXES_SQL:
                conn.execute(statement)
            conn.execute(self.CREATE_VERSION_TABLE_SQL)

            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,))
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot initialize transaction store: {e}") from e

    @staticmethod
    def _columns(record: Transaction) -> Dict[str, object]:
        offer = record if isinstance(record, Offer) else None
        return {
            "kind": record.kind.value,
            "initiator_id": record.initiator_id,
            "counterparty_id": record.counterparty_id,
            "subject_key": record.subject_key,
            "state": record.state.value,
            "active": int(record.is_active),
            "awaiting_response": int(record.awaiting_response),
            "in_fulfillment": int(record.in_fulfillment),
            "expires_at_ms": epoch_ms(record.expires_at) if record.expires_at else None,
            "conversation_id": offer.conversation_id if offer else None,
            "message_id": offer.message_id if offer else None,
            "version": record.version,
            "created_at": record.created_at.isoformat(),
            "updated_at": record.updated_at.isoformat(),
            "payload": json.dumps(record.to_dict(), sort_keys=True),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, record: Transaction) -> Transaction:
        """
        Persist a new transaction at version 1.

        Raises:
            DuplicateProposalError: active transaction exists for the same subject
            StoreUnavailableError: database failure
        """
        stored = record.clone()
        stored.version = 1
        stored.updated_at = self.clock.now()
        columns = self._columns(stored)
        columns["transaction_id"] = stored.transaction_id

        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        conn = self._get_connection()

        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                exists = conn.execute(
                    "SELECT 1 FROM transactions WHERE transaction_id = ?",
                    (stored.transaction_id,),
                ).fetchone()
                if exists is not None:
                    raise DuplicateProposalError(
                        f"Transaction id already used: {stored.transaction_id}",
                        transaction_id=stored.transaction_id,
                        attempted="propose",
                        reason="duplicate_id",
                    )
                conn.execute(
                    f"INSERT INTO transactions ({names}) VALUES ({placeholders})",
                    tuple(columns.values()),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.IntegrityError as e:
            raise _duplicate(stored) from e
        except sqlite3.Error as e:
            self.logger.error(
                "Failed to insert transaction",
                extra={"transaction_id": stored.transaction_id, "error": str(e)},
                exc_info=True
            )
            raise StoreUnavailableError(f"Failed to insert transaction: {e}") from e

        self.logger.debug("Transaction inserted", extra={
            "transaction_id": stored.transaction_id,
            "kind": stored.kind.value,
            "state": stored.state.value,
        })
        return stored

    def compare_and_set(self, record: Transaction, expected_version: int) -> Transaction:
        """
        Write *record* only if the stored version still equals *expected_version*.

        Returns:
            The stored copy (version = expected_version + 1)

        Raises:
            StaleWriteError: someone else committed first
            TransactionNotFoundError: unknown id
            StoreUnavailableError: database failure
        """
        stored = record.clone()
        stored.version = expected_version + 1
        stored.updated_at = self.clock.now()
        columns = self._columns(stored)

        assignments = ", ".join(f"{name} = ?" for name in columns)
        conn = self._get_connection()

        try:
            cursor = conn.execute(
                f"UPDATE transactions SET {assignments} WHERE transaction_id = ? AND version = ?",
                tuple(columns.values()) + (stored.transaction_id, expected_version),
            )
            updated = cursor.rowcount
            if updated == 0:
                row = conn.execute(
                    "SELECT version FROM transactions WHERE transaction_id = ?",
                    (stored.transaction_id,),
                ).fetchone()
        except sqlite3.IntegrityError as e:
            raise _duplicate(stored) from e
        except sqlite3.Error as e:
            self.logger.error(
                "Failed to update transaction",
                extra={"transaction_id": stored.transaction_id, "error": str(e)},
                exc_info=True
            )
            raise StoreUnavailableError(f"Failed to update transaction: {e}") from e

        if updated == 0:
            if row is None:
                raise TransactionNotFoundError(
                    f"Unknown transaction: {stored.transaction_id}",
                    transaction_id=stored.transaction_id,
                )
            raise _stale(record, expected_version, row["version"])

        return stored

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: tuple = ()) -> List[Transaction]:
        try:
            rows = self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Transaction store query failed: {e}") from e
        return [self._row_to_record(row) for row in rows]

    def find(self, transaction_id: str) -> Optional[Transaction]:
        records = self._query(
            "SELECT payload, version, updated_at FROM transactions WHERE transaction_id = ?",
            (transaction_id,),
        )
        return records[0] if records else None

    def get(self, transaction_id: str) -> Transaction:
        record = self.find(transaction_id)
        if record is None:
            raise TransactionNotFoundError(
                f"Unknown transaction: {transaction_id}",
                transaction_id=transaction_id,
            )
        return record

    def list_expirable(self, now, limit: int = 500) -> List[Transaction]:
        """Records awaiting a response whose deadline is at or before *now*."""
        return self._query(
            """
            SELECT payload, version, updated_at FROM transactions
            WHERE awaiting_response = 1 AND expires_at_ms IS NOT NULL AND expires_at_ms <= ?
            ORDER BY expires_at_ms
            LIMIT ?
            """,
            (epoch_ms(ensure_utc(now)), limit),
        )

    def list_in_fulfillment(self, limit: int = 500) -> List[Transaction]:
        return self._query(
            """
            SELECT payload, version, updated_at FROM transactions
            WHERE in_fulfillment = 1
            ORDER BY updated_at
            LIMIT ?
            """,
            (limit,),
        )

    def list_for_party(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        active_only: bool = False,
    ) -> List[Transaction]:
        sql = (
            "SELECT payload, version, updated_at FROM transactions "
            "WHERE (initiator_id = ? OR counterparty_id = ?)"
        )
        params: list = [user_id, user_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(TransactionKind(kind).value)
        if active_only:
            sql += " AND active = 1"
        sql += " ORDER BY created_at DESC"
        return self._query(sql, tuple(params))

    def get_offer_by_message(self, conversation_id: str, message_id: str) -> Optional[Offer]:
        records = self._query(
            """
            SELECT payload, version, updated_at FROM transactions
            WHERE kind = ? AND conversation_id = ? AND message_id = ?
            LIMIT 1
            """,
            (TransactionKind.OFFER.value, conversation_id, message_id),
        )
        return records[0] if records else None

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Transaction:
        data = json.loads(row["payload"])
        data["version"] = row["version"]
        data["updated_at"] = row["updated_at"]
        return Transaction.from_dict(data)

    def close(self):
        """Close every connection opened by this store. Call on shutdown."""
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
        self.logger.info("SqliteTransactionStore closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class MemoryTransactionStore:
    """
    Dict-backed store with the same conditional-write semantics.

    Holds serialized snapshots so callers never share mutable records.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or RealTimeClock()
        self.logger = get_logger(LogStream.STORE)
        self._records: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def _load(self, transaction_id: str) -> Optional[Transaction]:
        data = self._records.get(transaction_id)
        return Transaction.from_dict(data) if data is not None else None

    def insert(self, record: Transaction) -> Transaction:
        stored = record.clone()
        stored.version = 1
        stored.updated_at = self.clock.now()

        with self._lock:
            if stored.transaction_id in self._records:
                raise DuplicateProposalError(
                    f"Transaction id already used: {stored.transaction_id}",
                    transaction_id=stored.transaction_id,
                    attempted="propose",
                    reason="duplicate_id",
                )
            for data in self._records.values():
                existing = Transaction.from_dict(data)
                if (
                    existing.is_active
                    and existing.kind is stored.kind
                    and existing.initiator_id == stored.initiator_id
                    and existing.counterparty_id == stored.counterparty_id
                    and existing.subject_key == stored.subject_key
                ):
                    raise _duplicate(stored)
            self._records[stored.transaction_id] = stored.to_dict()

        return stored

    def compare_and_set(self, record: Transaction, expected_version: int) -> Transaction:
        stored = record.clone()
        stored.version = expected_version + 1
        stored.updated_at = self.clock.now()

        with self._lock:
            current = self._records.get(stored.transaction_id)
            if current is None:
                raise TransactionNotFoundError(
                    f"Unknown transaction: {stored.transaction_id}",
                    transaction_id=stored.transaction_id,
                )
            if current["version"] != expected_version:
                raise _stale(record, expected_version, current["version"])
            self._records[stored.transaction_id] = stored.to_dict()

        return stored

    def find(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            return self._load(transaction_id)

    def get(self, transaction_id: str) -> Transaction:
        record = self.find(transaction_id)
        if record is None:
            raise TransactionNotFoundError(
                f"Unknown transaction: {transaction_id}",
                transaction_id=transaction_id,
            )
        return record

    def _all(self) -> List[Transaction]:
        with self._lock:
            return [Transaction.from_dict(data) for data in self._records.values()]

    def list_expirable(self, now, limit: int = 500) -> List[Transaction]:
        overdue = [r for r in self._all() if r.is_overdue(now)]
        overdue.sort(key=lambda r: r.expires_at)
        return overdue[:limit]

    def list_in_fulfillment(self, limit: int = 500) -> List[Transaction]:
        records = [r for r in self._all() if r.in_fulfillment]
        records.sort(key=lambda r: r.updated_at)
        return records[:limit]

    def list_for_party(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        active_only: bool = False,
    ) -> List[Transaction]:
        records = [
            r for r in self._all()
            if user_id in r.parties
            and (kind is None or r.kind is TransactionKind(kind))
            and (not active_only or r.is_active)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def get_offer_by_message(self, conversation_id: str, message_id: str) -> Optional[Offer]:
        for record in self._all():
            if (
                isinstance(record, Offer)
                and record.conversation_id == conversation_id
                and record.message_id == message_id
            ):
                return record
        return None

    def close(self):
        pass
