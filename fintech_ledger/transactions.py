"""
Transaction Log Module

Transaction records, their status lifecycle and the append-only log that
stores them. Transactions reference accounts by id only; "transactions of an
account" is always a query against the log.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum

from .currency import Currency
from .errors import IllegalTransitionError
from .storage import StorageInterface, StorageRecord


class TransactionStatus(Enum):
    """Lifecycle states of a transaction"""
    PENDING = "PENDING"      # In flight only, never visible to readers
    COMPLETED = "COMPLETED"  # Terminal, balances moved
    FAILED = "FAILED"        # Terminal, effect unconfirmed, needs reconciliation


class TransactionStatusMachine:
    """
    Legal status transitions

    PENDING -> COMPLETED is the normal path, atomic with the balance
    mutation. PENDING -> FAILED is the reconciliation path. Nothing leaves a
    terminal state.
    """

    TRANSITIONS = {
        TransactionStatus.PENDING: frozenset({TransactionStatus.COMPLETED, TransactionStatus.FAILED}),
        TransactionStatus.COMPLETED: frozenset(),
        TransactionStatus.FAILED: frozenset(),
    }

    @classmethod
    def can_transition(cls, from_status: TransactionStatus, to_status: TransactionStatus) -> bool:
        return to_status in cls.TRANSITIONS[from_status]

    @classmethod
    def is_terminal(cls, status: TransactionStatus) -> bool:
        return not cls.TRANSITIONS[status]

    @classmethod
    def transition(
        cls,
        transaction: 'Transaction',
        to_status: TransactionStatus,
        failure_reason: Optional[str] = None
    ) -> 'Transaction':
        """
        Move a transaction to ``to_status``

        Raises:
            IllegalTransitionError: If the transition is not allowed
        """
        if not cls.can_transition(transaction.status, to_status):
            raise IllegalTransitionError(transaction.status.value, to_status.value)

        transaction.status = to_status
        transaction.updated_at = datetime.now(timezone.utc)
        if to_status == TransactionStatus.FAILED:
            transaction.failure_reason = failure_reason or "unspecified failure"
        return transaction


@dataclass
class Transaction(StorageRecord):
    """
    Transfer of ``amount`` from one account to another
    """
    source_account_id: str
    destination_account_id: str
    amount: Decimal
    currency: Currency
    description: str
    initiated_by: str
    status: TransactionStatus = TransactionStatus.PENDING

    # Post-state of both accounts, written in the same atomic unit
    source_balance_after: Optional[Decimal] = None
    destination_balance_after: Optional[Decimal] = None
    source_version_after: Optional[int] = None
    destination_version_after: Optional[int] = None

    failure_reason: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            raise TypeError("Transaction amount must be a Decimal")
        if self.amount <= Decimal('0'):
            raise ValueError("Transaction amount must be positive")
        if self.source_account_id == self.destination_account_id:
            raise ValueError("Transaction source and destination must differ")

    @property
    def timestamp(self) -> datetime:
        """Creation timestamp"""
        return self.created_at

    @property
    def is_terminal(self) -> bool:
        return TransactionStatusMachine.is_terminal(self.status)

    def involves(self, account_id: str) -> bool:
        return account_id in (self.source_account_id, self.destination_account_id)

    def applied_to(self, account) -> bool:
        """
        Whether this transaction's balance write is visible on ``account``

        Once the account has moved past ``version_after`` the write can no
        longer be seen directly and is assumed to have landed. A row that
        claimed a version it never wrote passes this check; the balance
        replay in LedgerReconciler.scan catches it.
        """
        if account is None:
            return False
        if account.id == self.source_account_id:
            version_after, balance_after = self.source_version_after, self.source_balance_after
        elif account.id == self.destination_account_id:
            version_after, balance_after = self.destination_version_after, self.destination_balance_after
        else:
            return False

        if version_after is None:
            return False
        if account.version > version_after:
            return True
        return (account.version == version_after
                and account.last_transaction_id == self.id
                and account.balance == balance_after)

    def as_in_flight(self) -> 'Transaction':
        """
        Copy of a stored record whose effect is unconfirmed, back in PENDING

        Reconciliation uses this for a COMPLETED row whose balance writes
        cannot be found, so the FAILED outcome still goes through the
        status machine. It is the only way a terminal row is rewritten
        (see ``TransactionLog.record_failed``).
        """
        return replace(self, status=TransactionStatus.PENDING)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        def optional_decimal(key: str) -> Optional[Decimal]:
            value = data.get(key)
            return Decimal(value) if value is not None else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            source_account_id=data['source_account_id'],
            destination_account_id=data['destination_account_id'],
            amount=Decimal(data['amount']),
            currency=Currency.from_code(data['currency']),
            description=data['description'],
            initiated_by=data['initiated_by'],
            status=TransactionStatus(data['status']),
            source_balance_after=optional_decimal('source_balance_after'),
            destination_balance_after=optional_decimal('destination_balance_after'),
            source_version_after=data.get('source_version_after'),
            destination_version_after=data.get('destination_version_after'),
            failure_reason=data.get('failure_reason')
        )


def newest_first(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Sort by timestamp descending, id as a stable tie-breaker"""
    return sorted(transactions, key=lambda t: (t.created_at, t.id), reverse=True)


class TransactionLog:
    """
    Append-only storage of Transaction records
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def append(self, transaction: Transaction) -> str:
        """
        Append a finalized transaction

        Returns:
            The transaction id

        Raises:
            ValueError: If the transaction is still PENDING or already recorded
        """
        if not transaction.is_terminal:
            raise ValueError("Only transactions in a terminal status can be appended")
        if self.storage.exists(self.table_name, transaction.id):
            raise ValueError(f"Transaction {transaction.id} already recorded")

        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction.id

    def record_failed(self, transaction: Transaction) -> str:
        """
        Store a FAILED transaction, replacing any unconfirmed row with the same id

        Terminal rows are otherwise never rewritten. Overwriting a stored
        COMPLETED row whose balance writes cannot be confirmed is the one
        exception; callers reach it through ``as_in_flight`` and the status
        machine's PENDING to FAILED transition.
        """
        if transaction.status != TransactionStatus.FAILED:
            raise ValueError("record_failed requires a FAILED transaction")

        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction.id

    def get(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def list_by_account(self, account_id: str) -> List[Transaction]:
        """Transactions where the account is source or destination, newest first"""
        return self.list_by_accounts([account_id])

    def list_by_accounts(self, account_ids: Iterable[str]) -> List[Transaction]:
        """Transactions touching any of the accounts, de-duplicated, newest first"""
        found: Dict[str, Transaction] = {}
        for account_id in account_ids:
            for key in ("source_account_id", "destination_account_id"):
                for data in self.storage.find(self.table_name, {key: account_id}):
                    found[data['id']] = Transaction.from_dict(data)
        return newest_first(found.values())

    def list_by_status(self, status: TransactionStatus) -> List[Transaction]:
        """All transactions in a given status, newest first"""
        return newest_first(
            Transaction.from_dict(data)
            for data in self.storage.find(self.table_name, {"status": status.value})
        )

    def list_all(self) -> List[Transaction]:
        return newest_first(Transaction.from_dict(data) for data in self.storage.load_all(self.table_name))

    def count(self) -> int:
        return self.storage.count(self.table_name)
