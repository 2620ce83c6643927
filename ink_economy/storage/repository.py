"""
Repository pattern for ledger persistence.

Stores one versioned snapshot per account and an append-only archive of
INK transactions. Snapshot writes are compare-and-swap on the version so
two devices can never silently overwrite each other's changes.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from ink_economy.core.errors import ConcurrentModificationConflict
from .db import DEFAULT_DB_PATH, get_connection
from .models import Transaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSnapshot:
    """Raw snapshot text and the version it was written at."""
    user_id: str
    payload: str
    version: int


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger tables if they don't exist.

    ``ink_transaction`` is an append-only archive: rows are inserted once
    and never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ledger_state (
                user_id TEXT PRIMARY KEY,
                snapshot TEXT NOT NULL,
                version INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ink_transaction (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES ledger_state(user_id),
                type TEXT NOT NULL,
                amount INTEGER NOT NULL,
                balance_before INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_ink_transaction_user
            ON ink_transaction (user_id, timestamp)
        """)
        conn.commit()
    finally:
        conn.close()


class LedgerRepository:
    """Versioned snapshot store backed by SQLite.

    Args:
        db_path: Path to SQLite database file
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def fetch_snapshot(self, user_id: str) -> Optional[StoredSnapshot]:
        """Get the stored snapshot for an account, or None if there is none."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT snapshot, version FROM ledger_state WHERE user_id = ?",
                (user_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return StoredSnapshot(user_id=user_id, payload=row[0], version=row[1])

    def save_snapshot(
        self,
        user_id: str,
        payload: str,
        expected_version: int,
        transactions: Iterable[Transaction] = ()
    ) -> int:
        """Write a snapshot if the stored version still matches.

        The snapshot and any transactions are written in one SQLite
        transaction. Version 0 means "account not stored yet".

        Args:
            user_id: Account identifier
            payload: Encoded ledger snapshot
            expected_version: Version the caller read
            transactions: Transactions to archive; ids already stored are skipped

        Returns:
            The new version

        Raises:
            ConcurrentModificationConflict: If another writer got there first
        """
        new_version = expected_version + 1
        now = datetime.now().isoformat()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            if expected_version == 0:
                try:
                    conn.execute(
                        "INSERT INTO ledger_state (user_id, snapshot, version, updated_at) "
                        "VALUES (?, ?, ?, ?)",
                        (user_id, payload, new_version, now)
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    raise ConcurrentModificationConflict(user_id, expected_version)
            else:
                cursor = conn.execute(
                    "UPDATE ledger_state SET snapshot = ?, version = ?, updated_at = ? "
                    "WHERE user_id = ? AND version = ?",
                    (payload, new_version, now, user_id, expected_version)
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise ConcurrentModificationConflict(user_id, expected_version)

            conn.executemany(
                """
                INSERT OR IGNORE INTO ink_transaction
                (id, user_id, type, amount, balance_before, balance_after, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        tx.id,
                        user_id,
                        tx.type.value,
                        tx.amount,
                        tx.balance_before,
                        tx.balance_after,
                        tx.timestamp.isoformat(),
                        json.dumps(tx.metadata, sort_keys=True),
                    )
                    for tx in transactions
                ]
            )
            conn.commit()
        except ConcurrentModificationConflict:
            logger.warning(
                "Version conflict saving ledger for %s (expected %d)", user_id, expected_version
            )
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return new_version

    def fetch_transactions(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        limit: int = 100
    ) -> List[Transaction]:
        """Fetch archived transactions for an account, newest first.

        Args:
            user_id: Account identifier
            type: Optional filter for a transaction type
            limit: Maximum number of transactions to return

        Returns:
            List of transactions ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT id, type, amount, balance_before, balance_after, timestamp, metadata
                FROM ink_transaction
                WHERE user_id = ?
            """
            params: list = [user_id]
            if type is not None:
                query += " AND type = ?"
                params.append(type.value)
            query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
            params.append(limit)

            transactions = []
            for row in conn.execute(query, params).fetchall():
                transactions.append(Transaction(
                    id=row[0],
                    type=TransactionType(row[1]),
                    amount=row[2],
                    balance_before=row[3],
                    balance_after=row[4],
                    timestamp=datetime.fromisoformat(row[5]),
                    metadata=json.loads(row[6]),
                ))
            return transactions
        finally:
            conn.close()
