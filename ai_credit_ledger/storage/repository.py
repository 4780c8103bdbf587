"""
Repository pattern for data access.

Row-level reads and writes for accounts, monthly usage, the transaction
log, unsettled charges and stored content. Ledger functions take an open
connection so the caller controls the transaction boundary.
"""

import json
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Account,
    MonthlyUsageRecord,
    StoredContent,
    Transaction,
    TransactionKind,
    TransactionStatus,
    UnsettledCharge,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create ledger and content tables if they don't exist.

    credit_transaction is an append-only log: rows are never deleted, and
    the only update ever applied is the status flip performed by rollback.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS account (
                user_id TEXT PRIMARY KEY,
                plan_tier TEXT NOT NULL,
                balance INTEGER NOT NULL CHECK (balance >= 0),
                total_credits_used INTEGER NOT NULL DEFAULT 0,
                total_words_generated INTEGER NOT NULL DEFAULT 0,
                last_deduction_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS monthly_usage (
                user_id TEXT NOT NULL REFERENCES account(user_id),
                month_key TEXT NOT NULL,
                words_generated INTEGER NOT NULL DEFAULT 0,
                credits_used INTEGER NOT NULL DEFAULT 0,
                request_count INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, month_key)
            );

            CREATE TABLE IF NOT EXISTS credit_transaction (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                transaction_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL REFERENCES account(user_id),
                kind TEXT NOT NULL,
                amount INTEGER NOT NULL,
                word_count INTEGER NOT NULL DEFAULT 0,
                previous_balance INTEGER NOT NULL,
                new_balance INTEGER NOT NULL,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                month_key TEXT NOT NULL,
                plan_tier TEXT,
                tool TEXT,
                reference_transaction_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_credit_transaction_user
                ON credit_transaction (user_id, seq);
            CREATE INDEX IF NOT EXISTS idx_credit_transaction_reference
                ON credit_transaction (reference_transaction_id);

            CREATE TABLE IF NOT EXISTS unsettled_charge (
                charge_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES account(user_id),
                credits INTEGER NOT NULL,
                reason TEXT NOT NULL,
                reference_transaction_id TEXT,
                created_at TEXT NOT NULL,
                settled_at TEXT
            );

            CREATE TABLE IF NOT EXISTS generated_content (
                content_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                prompt TEXT NOT NULL,
                content TEXT NOT NULL,
                keywords TEXT NOT NULL,
                word_count INTEGER NOT NULL,
                style TEXT NOT NULL,
                tone TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                last_accessed TEXT NOT NULL,
                access_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            );
        """)
    finally:
        conn.close()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        user_id=row["user_id"],
        plan_tier=row["plan_tier"],
        balance=row["balance"],
        total_credits_used=row["total_credits_used"],
        total_words_generated=row["total_words_generated"],
        created_at=_parse_time(row["created_at"]),
        last_deduction_at=_parse_time(row["last_deduction_at"])
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        transaction_id=row["transaction_id"],
        user_id=row["user_id"],
        kind=TransactionKind(row["kind"]),
        amount=row["amount"],
        word_count=row["word_count"],
        previous_balance=row["previous_balance"],
        new_balance=row["new_balance"],
        status=TransactionStatus(row["status"]),
        timestamp=_parse_time(row["timestamp"]),
        month_key=row["month_key"],
        plan_tier=row["plan_tier"],
        tool=row["tool"],
        reference_transaction_id=row["reference_transaction_id"]
    )


def _row_to_unsettled(row: sqlite3.Row) -> UnsettledCharge:
    return UnsettledCharge(
        charge_id=row["charge_id"],
        user_id=row["user_id"],
        credits=row["credits"],
        reason=row["reason"],
        created_at=_parse_time(row["created_at"]),
        reference_transaction_id=row["reference_transaction_id"],
        settled_at=_parse_time(row["settled_at"])
    )


def _row_to_content(row: sqlite3.Row) -> StoredContent:
    return StoredContent(
        content_id=row["content_id"],
        user_id=row["user_id"],
        prompt=row["prompt"],
        content=row["content"],
        keywords=json.loads(row["keywords"]),
        word_count=row["word_count"],
        style=row["style"],
        tone=row["tone"],
        created_at=_parse_time(row["created_at"]),
        last_accessed=_parse_time(row["last_accessed"]),
        access_count=row["access_count"],
        is_active=bool(row["is_active"]),
        metadata=json.loads(row["metadata"])
    )


# Accounts

def fetch_account(conn: sqlite3.Connection, user_id: str) -> Optional[Account]:
    row = conn.execute("SELECT * FROM account WHERE user_id = ?", (user_id,)).fetchone()
    return _row_to_account(row) if row else None


def insert_account(conn: sqlite3.Connection, account: Account) -> None:
    conn.execute("""
        INSERT INTO account
        (user_id, plan_tier, balance, total_credits_used, total_words_generated,
         last_deduction_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        account.user_id,
        account.plan_tier,
        account.balance,
        account.total_credits_used,
        account.total_words_generated,
        account.last_deduction_at.isoformat() if account.last_deduction_at else None,
        account.created_at.isoformat()
    ))


def update_account(conn: sqlite3.Connection, account: Account) -> None:
    """Write the mutable columns of an account row."""
    conn.execute("""
        UPDATE account
        SET plan_tier = ?, balance = ?, total_credits_used = ?,
            total_words_generated = ?, last_deduction_at = ?
        WHERE user_id = ?
    """, (
        account.plan_tier,
        account.balance,
        account.total_credits_used,
        account.total_words_generated,
        account.last_deduction_at.isoformat() if account.last_deduction_at else None,
        account.user_id
    ))


# Monthly usage

def fetch_monthly_usage(conn: sqlite3.Connection, user_id: str, month_key: str) -> MonthlyUsageRecord:
    """Get the usage record for a period, or an empty one if none exists yet."""
    row = conn.execute(
        "SELECT * FROM monthly_usage WHERE user_id = ? AND month_key = ?",
        (user_id, month_key)
    ).fetchone()
    if row is None:
        return MonthlyUsageRecord(user_id=user_id, month_key=month_key)
    return MonthlyUsageRecord(
        user_id=row["user_id"],
        month_key=row["month_key"],
        words_generated=row["words_generated"],
        credits_used=row["credits_used"],
        request_count=row["request_count"]
    )


def save_monthly_usage(conn: sqlite3.Connection, usage: MonthlyUsageRecord, updated_at: datetime) -> None:
    """Insert or replace the usage record for its period."""
    conn.execute("""
        INSERT INTO monthly_usage
        (user_id, month_key, words_generated, credits_used, request_count, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (user_id, month_key) DO UPDATE SET
            words_generated = excluded.words_generated,
            credits_used = excluded.credits_used,
            request_count = excluded.request_count,
            updated_at = excluded.updated_at
    """, (
        usage.user_id,
        usage.month_key,
        usage.words_generated,
        usage.credits_used,
        usage.request_count,
        updated_at.isoformat()
    ))


# Transaction log

def insert_transaction(conn: sqlite3.Connection, txn: Transaction) -> None:
    conn.execute("""
        INSERT INTO credit_transaction
        (transaction_id, user_id, kind, amount, word_count, previous_balance,
         new_balance, status, timestamp, month_key, plan_tier, tool,
         reference_transaction_id)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        txn.transaction_id,
        txn.user_id,
        txn.kind.value,
        txn.amount,
        txn.word_count,
        txn.previous_balance,
        txn.new_balance,
        txn.status.value,
        txn.timestamp.isoformat(),
        txn.month_key,
        txn.plan_tier,
        txn.tool,
        txn.reference_transaction_id
    ))


def fetch_transaction(conn: sqlite3.Connection, transaction_id: str) -> Optional[Transaction]:
    row = conn.execute(
        "SELECT * FROM credit_transaction WHERE transaction_id = ?", (transaction_id,)
    ).fetchone()
    return _row_to_transaction(row) if row else None


def mark_rolled_back(conn: sqlite3.Connection, transaction_id: str) -> None:
    conn.execute(
        "UPDATE credit_transaction SET status = ? WHERE transaction_id = ?",
        (TransactionStatus.ROLLED_BACK.value, transaction_id)
    )


def count_reversals(
    conn: sqlite3.Connection,
    reference_transaction_id: str,
    kind: TransactionKind = TransactionKind.REFUND
) -> int:
    """Number of completed refunds (or rollbacks) referencing a transaction."""
    row = conn.execute("""
        SELECT COUNT(*) FROM credit_transaction
        WHERE reference_transaction_id = ? AND kind = ? AND status = ?
    """, (
        reference_transaction_id,
        kind.value,
        TransactionStatus.COMPLETED.value
    )).fetchone()
    return row[0]


def fetch_transactions(conn: sqlite3.Connection, user_id: str, limit: int = 50) -> List[Transaction]:
    """Fetch a user's transactions, newest first."""
    cursor = conn.execute("""
        SELECT * FROM credit_transaction
        WHERE user_id = ?
        ORDER BY seq DESC
        LIMIT ?
    """, (user_id, limit))
    return [_row_to_transaction(row) for row in cursor.fetchall()]


# Unsettled charges

def insert_unsettled(conn: sqlite3.Connection, charge: UnsettledCharge) -> None:
    conn.execute("""
        INSERT INTO unsettled_charge
        (charge_id, user_id, credits, reason, reference_transaction_id, created_at, settled_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        charge.charge_id,
        charge.user_id,
        charge.credits,
        charge.reason,
        charge.reference_transaction_id,
        charge.created_at.isoformat(),
        charge.settled_at.isoformat() if charge.settled_at else None
    ))


def fetch_open_unsettled(conn: sqlite3.Connection, user_id: str) -> List[UnsettledCharge]:
    cursor = conn.execute("""
        SELECT * FROM unsettled_charge
        WHERE user_id = ? AND settled_at IS NULL
        ORDER BY created_at
    """, (user_id,))
    return [_row_to_unsettled(row) for row in cursor.fetchall()]


def mark_unsettled_settled(conn: sqlite3.Connection, charge_ids: List[str], settled_at: datetime) -> None:
    conn.executemany(
        "UPDATE unsettled_charge SET settled_at = ? WHERE charge_id = ?",
        [(settled_at.isoformat(), charge_id) for charge_id in charge_ids]
    )


class ContentRepository:
    """Repository for previously generated content.

    Each call opens its own connection; content writes are independent of
    ledger transactions.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert(self, content: StoredContent) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO generated_content
                (content_id, user_id, prompt, content, keywords, word_count, style,
                 tone, metadata, created_at, last_accessed, access_count, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                content.content_id,
                content.user_id,
                content.prompt,
                content.content,
                json.dumps(content.keywords),
                content.word_count,
                content.style,
                content.tone,
                json.dumps(content.metadata, default=str),
                content.created_at.isoformat(),
                content.last_accessed.isoformat(),
                content.access_count,
                int(content.is_active)
            ))
        finally:
            conn.close()

    def get(self, content_id: str) -> Optional[StoredContent]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM generated_content WHERE content_id = ?", (content_id,)
            ).fetchone()
            return _row_to_content(row) if row else None
        finally:
            conn.close()

    def find_candidates(self, keywords: List[str], limit: int = 50) -> List[StoredContent]:
        """Get active content sharing at least one keyword.

        Args:
            keywords: Keywords extracted from the new prompt
            limit: Maximum number of candidates to return

        Returns:
            Candidates ordered by number of shared keywords (most first)
        """
        if not keywords:
            return []
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT * FROM generated_content WHERE is_active = 1"
            )
            wanted = set(keywords)
            scored = []
            for row in cursor.fetchall():
                candidate = _row_to_content(row)
                shared = len(wanted & set(candidate.keywords))
                if shared:
                    scored.append((shared, candidate))
            scored.sort(key=lambda item: item[0], reverse=True)
            return [candidate for _, candidate in scored[:limit]]
        finally:
            conn.close()

    def touch(self, content_ids: List[str], accessed_at: datetime) -> None:
        """Record an access for each content id."""
        if not content_ids:
            return
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN")
            conn.executemany("""
                UPDATE generated_content
                SET last_accessed = ?, access_count = access_count + 1
                WHERE content_id = ?
            """, [(accessed_at.isoformat(), content_id) for content_id in content_ids])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def deactivate_stale(self, now: datetime, days_old: int = 90) -> int:
        """Deactivate content not accessed for `days_old` days and used at most once.

        Returns:
            Number of rows deactivated
        """
        cutoff = (now - timedelta(days=days_old)).isoformat()
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE generated_content SET is_active = 0
                WHERE is_active = 1 AND last_accessed < ? AND access_count <= 1
            """, (cutoff,))
            return cursor.rowcount
        finally:
            conn.close()
