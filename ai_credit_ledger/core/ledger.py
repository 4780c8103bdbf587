"""
Atomic credit ledger.

Owns account balances, monthly usage records and the append-only
transaction log. Every write is one SQLite transaction covering the
account, the usage record and the log entry, retried on write conflicts.

Invariant: for each user, the sum of completed deductions minus the sum of
completed refunds and partial rollbacks equals Account.total_credits_used.
A fully rolled-back deduction leaves the completed set and its rollback row
is an audit record. A partial rollback leaves the deduction completed and
its rollback row counts against it, like a refund.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

from ai_credit_ledger.config.loader import LedgerConfig, default_config
from ai_credit_ledger.storage import repository
from ai_credit_ledger.storage.db import DEFAULT_DB_PATH, get_connection, is_conflict, transaction
from ai_credit_ledger.storage.models import (
    Account,
    MonthlyUsageRecord,
    Transaction,
    TransactionKind,
    TransactionStatus,
    UnsettledCharge,
)

from .errors import (
    AccountExists,
    AccountNotFound,
    InsufficientFunds,
    InvalidAmount,
    QuotaExceeded,
    TransactionAlreadySettled,
    TransactionConflict,
    TransactionNotFound,
)
from .pricing import Operation, Tool, required_credits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeductionResult:
    transaction_id: str
    credits_deducted: int
    words_allocated: int
    previous_balance: int
    new_balance: int
    monthly_usage: MonthlyUsageRecord


@dataclass(frozen=True)
class RefundResult:
    transaction_id: str
    credits_refunded: int
    previous_balance: int
    new_balance: int


@dataclass(frozen=True)
class RollbackResult:
    transaction_id: str
    credits_restored: int
    words_reversed: int
    new_balance: int


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of a monthly allowance refresh."""
    previous_balance: int
    new_balance: int
    credits_added: int
    settled_charges: int
    skipped: bool = False
    transaction_id: Optional[str] = None


def month_key(moment: datetime) -> str:
    """Usage period key (YYYY-MM) for a timestamp."""
    return moment.strftime("%Y-%m")


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class CreditLedger:
    """Credit ledger bound to one backing store.

    Args:
        db_path: Path to SQLite database file (schema must be initialized)
        config: Plan, ratio and store configuration
        clock: Callable returning the current time, injectable for tests
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.db_path = db_path
        self.config = config or default_config()
        self._clock = clock or datetime.now

    # Write path

    def _write(self, operation: str, func: Callable, *args):
        """Run func(conn, *args) in one write transaction with conflict retries."""
        def attempt():
            conn = get_connection(self.db_path, timeout=self.config.store.busy_timeout)
            try:
                with transaction(conn):
                    return func(conn, *args)
            except sqlite3.OperationalError as e:
                if is_conflict(e):
                    raise TransactionConflict(
                        f"{operation} conflicted with a concurrent write: {e}"
                    ) from e
                raise
            finally:
                conn.close()

        try:
            return self.config.store.retry.call(attempt)
        except TransactionConflict:
            logger.error(
                "%s failed after %d attempts", operation, self.config.store.retry.max_attempts
            )
            raise

    def _read(self, func: Callable, *args):
        conn = get_connection(self.db_path, timeout=self.config.store.busy_timeout)
        try:
            return func(conn, *args)
        finally:
            conn.close()

    @staticmethod
    def _require_account(conn: sqlite3.Connection, user_id: str) -> Account:
        account = repository.fetch_account(conn, user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account

    @staticmethod
    def _require_deduction(conn: sqlite3.Connection, user_id: str, transaction_id: str) -> Transaction:
        txn = repository.fetch_transaction(conn, transaction_id)
        if txn is None or txn.user_id != user_id or txn.kind != TransactionKind.DEDUCTION:
            raise TransactionNotFound(transaction_id)
        return txn

    # Accounts

    def open_account(self, user_id: str, plan_tier: str, initial_credits: Optional[int] = None) -> Account:
        """Create an account seeded with the plan's monthly allowance.

        Raises:
            AccountExists: If the user already has an account
            InvalidAmount: If initial_credits is negative
        """
        plan = self.config.get_plan(plan_tier)
        credits = plan.monthly_credits if initial_credits is None else initial_credits
        if credits < 0:
            raise InvalidAmount(f"initial credits cannot be negative: {credits}")

        def apply(conn: sqlite3.Connection) -> Account:
            if repository.fetch_account(conn, user_id) is not None:
                raise AccountExists(user_id)
            now = self._clock()
            account = Account(
                user_id=user_id,
                plan_tier=plan.name,
                balance=credits,
                total_credits_used=0,
                total_words_generated=0,
                created_at=now
            )
            repository.insert_account(conn, account)
            repository.insert_transaction(conn, Transaction(
                transaction_id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.REFRESH,
                amount=credits,
                word_count=0,
                previous_balance=0,
                new_balance=credits,
                status=TransactionStatus.COMPLETED,
                timestamp=now,
                month_key=month_key(now),
                plan_tier=plan.name
            ))
            return account

        account = self._write("open_account", apply)
        logger.info("Opened %s account for %s with %d credits", plan.name, user_id, credits)
        return account

    def deduct(
        self,
        user_id: str,
        amount: int,
        plan_tier: str,
        tool: Tool = Tool.WRITING,
        operation: Optional[Operation] = None
    ) -> DeductionResult:
        """Atomically charge credits for a word amount.

        Detector deductions allocate no words against the monthly quota.

        Args:
            user_id: Account owner
            amount: Words requested
            plan_tier: Caller's plan tier (drives the monthly word cap)
            tool: Tool consuming the credits
            operation: Optional operation within the tool

        Returns:
            DeductionResult with the new balance and monthly usage

        Raises:
            InvalidAmount: If amount <= 0
            AccountNotFound: If the account does not exist
            InsufficientFunds: If balance < required credits
            QuotaExceeded: If the monthly word cap would be exceeded
            TransactionConflict: If every retry hit a concurrent write
        """
        credits = required_credits(amount, tool, operation, self.config.credit_ratios)
        word_count = 0 if tool == Tool.DETECTOR else amount
        return self.charge(user_id, credits, word_count, plan_tier, tool)

    def charge(
        self,
        user_id: str,
        credits: int,
        word_count: int,
        plan_tier: str,
        tool: Tool = Tool.WRITING,
        reference_transaction_id: Optional[str] = None
    ) -> DeductionResult:
        """Atomically deduct an exact credit amount.

        Same checks and bookkeeping as deduct(), with the price already
        computed by the caller.
        """
        if credits is None or credits <= 0:
            raise InvalidAmount(f"credits to charge must be positive: {credits}")
        if word_count < 0:
            raise InvalidAmount(f"word count cannot be negative: {word_count}")
        plan = self.config.get_plan(plan_tier)

        def apply(conn: sqlite3.Connection) -> DeductionResult:
            now = self._clock()
            period = month_key(now)
            account = self._require_account(conn, user_id)
            if account.balance < credits:
                raise InsufficientFunds(credits, account.balance)

            usage = repository.fetch_monthly_usage(conn, user_id, period)
            if plan.is_quota_limited and usage.words_generated + word_count > plan.monthly_word_cap:
                raise QuotaExceeded(usage.words_generated, word_count, plan.monthly_word_cap)

            new_account = replace(
                account,
                balance=account.balance - credits,
                total_credits_used=account.total_credits_used + credits,
                total_words_generated=account.total_words_generated + word_count,
                last_deduction_at=now
            )
            new_usage = replace(
                usage,
                words_generated=usage.words_generated + word_count,
                credits_used=usage.credits_used + credits,
                request_count=usage.request_count + 1
            )
            txn = Transaction(
                transaction_id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.DEDUCTION,
                amount=credits,
                word_count=word_count,
                previous_balance=account.balance,
                new_balance=new_account.balance,
                status=TransactionStatus.COMPLETED,
                timestamp=now,
                month_key=period,
                plan_tier=plan.name,
                tool=tool.value,
                reference_transaction_id=reference_transaction_id
            )
            repository.update_account(conn, new_account)
            repository.save_monthly_usage(conn, new_usage, now)
            repository.insert_transaction(conn, txn)
            return DeductionResult(
                transaction_id=txn.transaction_id,
                credits_deducted=credits,
                words_allocated=word_count,
                previous_balance=account.balance,
                new_balance=new_account.balance,
                monthly_usage=new_usage
            )

        result = self._write("deduct", apply)
        logger.info(
            "Deducted %d credits from %s (%s, %d words): %d -> %d",
            credits, user_id, tool.value, word_count, result.previous_balance, result.new_balance
        )
        return result

    def refund(
        self,
        user_id: str,
        amount: int,
        reference_transaction_id: str,
        words_to_reverse: int = 0
    ) -> RefundResult:
        """Return credits charged by a deduction.

        At most one refund is accepted per deduction, and never for a
        rolled-back one.

        Raises:
            InvalidAmount: If amount <= 0 or exceeds the referenced deduction
            AccountNotFound: If the account does not exist
            TransactionNotFound: If the reference is not one of the user's deductions
            TransactionAlreadySettled: If the reference was rolled back or refunded
        """
        if amount is None or amount <= 0:
            raise InvalidAmount(f"refund amount must be positive: {amount}")
        if words_to_reverse < 0:
            raise InvalidAmount(f"words to reverse cannot be negative: {words_to_reverse}")

        def apply(conn: sqlite3.Connection) -> RefundResult:
            now = self._clock()
            account = self._require_account(conn, user_id)
            reference = self._require_deduction(conn, user_id, reference_transaction_id)
            if reference.status == TransactionStatus.ROLLED_BACK:
                raise TransactionAlreadySettled(reference_transaction_id, "rolled back")
            if repository.count_reversals(conn, reference_transaction_id):
                raise TransactionAlreadySettled(reference_transaction_id, "already refunded")
            if repository.count_reversals(conn, reference_transaction_id, TransactionKind.ROLLBACK):
                raise TransactionAlreadySettled(reference_transaction_id, "partially rolled back")
            if amount > reference.amount:
                raise InvalidAmount(
                    f"refund of {amount} exceeds the {reference.amount} credits charged"
                )

            new_account = replace(
                account,
                balance=account.balance + amount,
                total_credits_used=max(0, account.total_credits_used - amount),
                total_words_generated=max(0, account.total_words_generated - words_to_reverse)
            )
            usage = repository.fetch_monthly_usage(conn, user_id, reference.month_key)
            new_usage = replace(
                usage,
                words_generated=max(0, usage.words_generated - words_to_reverse),
                credits_used=max(0, usage.credits_used - amount)
            )
            txn = Transaction(
                transaction_id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.REFUND,
                amount=amount,
                word_count=words_to_reverse,
                previous_balance=account.balance,
                new_balance=new_account.balance,
                status=TransactionStatus.COMPLETED,
                timestamp=now,
                month_key=month_key(now),
                plan_tier=reference.plan_tier,
                tool=reference.tool,
                reference_transaction_id=reference_transaction_id
            )
            repository.update_account(conn, new_account)
            repository.save_monthly_usage(conn, new_usage, now)
            repository.insert_transaction(conn, txn)
            return RefundResult(
                transaction_id=txn.transaction_id,
                credits_refunded=amount,
                previous_balance=account.balance,
                new_balance=new_account.balance
            )

        result = self._write("refund", apply)
        logger.info(
            "Refunded %d credits to %s against %s: %d -> %d",
            amount, user_id, reference_transaction_id, result.previous_balance, result.new_balance
        )
        return result

    def rollback(
        self,
        user_id: str,
        transaction_id: str,
        amount: Optional[int] = None,
        words_to_reverse: Optional[int] = None
    ) -> RollbackResult:
        """Reverse a deduction and mark it rolled back.

        Restoring less than the full amount leaves the deduction completed;
        the rollback row then counts against it and no further refund or
        rollback is accepted for it.

        Args:
            user_id: Account owner
            transaction_id: Deduction to reverse
            amount: Credits to restore (defaults to the deduction's amount)
            words_to_reverse: Words to remove from usage (defaults to the deduction's words)

        Raises:
            InvalidAmount: If amount is not in (0, deduction amount]
            TransactionNotFound: If the id is not one of the user's deductions
            TransactionAlreadySettled: If already rolled back or refunded
        """
        def apply(conn: sqlite3.Connection) -> RollbackResult:
            now = self._clock()
            account = self._require_account(conn, user_id)
            reference = self._require_deduction(conn, user_id, transaction_id)
            if reference.status == TransactionStatus.ROLLED_BACK:
                raise TransactionAlreadySettled(transaction_id, "already rolled back")
            if repository.count_reversals(conn, transaction_id):
                raise TransactionAlreadySettled(transaction_id, "refunded")
            if repository.count_reversals(conn, transaction_id, TransactionKind.ROLLBACK):
                raise TransactionAlreadySettled(transaction_id, "already partially rolled back")

            credits = reference.amount if amount is None else amount
            if credits <= 0 or credits > reference.amount:
                raise InvalidAmount(
                    f"rollback amount must be between 1 and {reference.amount}: {credits}"
                )
            words = reference.word_count if words_to_reverse is None else words_to_reverse
            if words < 0:
                raise InvalidAmount(f"words to reverse cannot be negative: {words}")

            new_account = replace(
                account,
                balance=account.balance + credits,
                total_credits_used=max(0, account.total_credits_used - credits),
                total_words_generated=max(0, account.total_words_generated - words)
            )
            usage = repository.fetch_monthly_usage(conn, user_id, reference.month_key)
            new_usage = replace(
                usage,
                words_generated=max(0, usage.words_generated - words),
                credits_used=max(0, usage.credits_used - credits),
                request_count=max(0, usage.request_count - 1)
            )
            txn = Transaction(
                transaction_id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.ROLLBACK,
                amount=credits,
                word_count=words,
                previous_balance=account.balance,
                new_balance=new_account.balance,
                status=TransactionStatus.COMPLETED,
                timestamp=now,
                month_key=month_key(now),
                plan_tier=reference.plan_tier,
                tool=reference.tool,
                reference_transaction_id=transaction_id
            )
            repository.update_account(conn, new_account)
            repository.save_monthly_usage(conn, new_usage, now)
            if credits == reference.amount:
                repository.mark_rolled_back(conn, transaction_id)
            repository.insert_transaction(conn, txn)
            return RollbackResult(
                transaction_id=txn.transaction_id,
                credits_restored=credits,
                words_reversed=words,
                new_balance=new_account.balance
            )

        result = self._write("rollback", apply)
        logger.info(
            "Rolled back %s for %s: restored %d credits, balance %d",
            transaction_id, user_id, result.credits_restored, result.new_balance
        )
        return result

    def refresh_monthly_credits(self, user_id: str) -> RefreshResult:
        """Grant the plan's monthly allowance, once per month.

        Non-accumulating plans reset the balance to the allowance,
        accumulating plans add to it. Outstanding unsettled charges are then
        applied and marked settled; the balance is floored at zero.
        """
        def apply(conn: sqlite3.Connection) -> RefreshResult:
            now = self._clock()
            period = month_key(now)
            account = self._require_account(conn, user_id)
            already = conn.execute("""
                SELECT 1 FROM credit_transaction
                WHERE user_id = ? AND kind = ? AND month_key = ?
                LIMIT 1
            """, (user_id, TransactionKind.REFRESH.value, period)).fetchone()
            if already:
                return RefreshResult(
                    previous_balance=account.balance,
                    new_balance=account.balance,
                    credits_added=0,
                    settled_charges=0,
                    skipped=True
                )

            plan = self.config.get_plan(account.plan_tier)
            if plan.accumulate:
                balance = account.balance + plan.monthly_credits
            else:
                balance = plan.monthly_credits

            outstanding = repository.fetch_open_unsettled(conn, user_id)
            balance = max(0, balance - sum(charge.credits for charge in outstanding))
            repository.mark_unsettled_settled(conn, [c.charge_id for c in outstanding], now)

            txn = Transaction(
                transaction_id=_new_id("txn"),
                user_id=user_id,
                kind=TransactionKind.REFRESH,
                amount=balance - account.balance,
                word_count=0,
                previous_balance=account.balance,
                new_balance=balance,
                status=TransactionStatus.COMPLETED,
                timestamp=now,
                month_key=period,
                plan_tier=plan.name
            )
            repository.update_account(conn, replace(account, balance=balance))
            repository.insert_transaction(conn, txn)
            return RefreshResult(
                previous_balance=account.balance,
                new_balance=balance,
                credits_added=balance - account.balance,
                settled_charges=len(outstanding),
                transaction_id=txn.transaction_id
            )

        result = self._write("refresh_monthly_credits", apply)
        if not result.skipped:
            logger.info(
                "Refreshed credits for %s: %d -> %d (%d unsettled charge(s) applied)",
                user_id, result.previous_balance, result.new_balance, result.settled_charges
            )
        return result

    def record_unsettled(
        self,
        user_id: str,
        credits: int,
        reference_transaction_id: Optional[str],
        reason: str
    ) -> UnsettledCharge:
        """Record a reconciliation delta that could not be applied.

        Positive credits are owed by the user, negative credits to the user.
        """
        if not credits:
            raise InvalidAmount("unsettled credits cannot be zero")

        def apply(conn: sqlite3.Connection) -> UnsettledCharge:
            self._require_account(conn, user_id)
            charge = UnsettledCharge(
                charge_id=_new_id("due"),
                user_id=user_id,
                credits=credits,
                reason=reason,
                created_at=self._clock(),
                reference_transaction_id=reference_transaction_id
            )
            repository.insert_unsettled(conn, charge)
            return charge

        charge = self._write("record_unsettled", apply)
        logger.warning(
            "Recorded unsettled %+d credits for %s (%s)", credits, user_id, reason
        )
        return charge

    # Read path

    def get_balance(self, user_id: str) -> Account:
        """Get the account snapshot for a user.

        Raises:
            AccountNotFound: If the account does not exist
        """
        return self._read(self._require_account, user_id)

    def get_history(self, user_id: str, limit: int = 50) -> List[Transaction]:
        """Get a user's transactions, newest first."""
        if limit <= 0:
            raise ValueError("limit must be > 0")

        def read(conn: sqlite3.Connection) -> List[Transaction]:
            self._require_account(conn, user_id)
            return repository.fetch_transactions(conn, user_id, limit)

        return self._read(read)

    def get_monthly_usage(self, user_id: str, period: Optional[str] = None) -> MonthlyUsageRecord:
        """Get usage for a period (defaults to the current month)."""
        key = period or month_key(self._clock())

        def read(conn: sqlite3.Connection) -> MonthlyUsageRecord:
            self._require_account(conn, user_id)
            return repository.fetch_monthly_usage(conn, user_id, key)

        return self._read(read)

    def get_unsettled(self, user_id: str) -> List[UnsettledCharge]:
        """Get charges not yet applied by a monthly refresh."""
        return self._read(repository.fetch_open_unsettled, user_id)
