"""
Data models for storage layer.

Defines ledger entities and stored content.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionKind(Enum):
    DEDUCTION = "deduction"
    REFUND = "refund"
    ROLLBACK = "rollback"
    REFRESH = "refresh"


class TransactionStatus(Enum):
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class Account:
    """Per-user credit state.

    Only ever mutated inside a ledger transaction; balance never drops
    below zero.
    """
    user_id: str
    plan_tier: str
    balance: int
    total_credits_used: int
    total_words_generated: int
    created_at: datetime
    last_deduction_at: Optional[datetime] = None


@dataclass(frozen=True)
class MonthlyUsageRecord:
    """Usage counters for one user in one calendar month."""
    user_id: str
    month_key: str
    words_generated: int = 0
    credits_used: int = 0
    request_count: int = 0


@dataclass(frozen=True)
class Transaction:
    """Immutable record in the append-only transaction log.

    The only change a stored transaction ever sees is the status flip to
    ROLLED_BACK performed by a ledger rollback.
    """
    transaction_id: str
    user_id: str
    kind: TransactionKind
    amount: int
    word_count: int
    previous_balance: int
    new_balance: int
    status: TransactionStatus
    timestamp: datetime
    month_key: str
    plan_tier: Optional[str] = None
    tool: Optional[str] = None
    reference_transaction_id: Optional[str] = None


@dataclass(frozen=True)
class UnsettledCharge:
    """Reconciliation delta that could not be applied to the ledger.

    Positive credits are owed by the user, negative credits are owed to
    the user.
    """
    charge_id: str
    user_id: str
    credits: int
    reason: str
    created_at: datetime
    reference_transaction_id: Optional[str] = None
    settled_at: Optional[datetime] = None


@dataclass(frozen=True)
class StoredContent:
    """Previously generated content kept for similarity reuse."""
    content_id: str
    user_id: str
    prompt: str
    content: str
    keywords: List[str]
    word_count: int
    style: str
    tone: str
    created_at: datetime
    last_accessed: datetime
    access_count: int = 0
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
