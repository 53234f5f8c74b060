"""
Account Management Module

Account records and the AccountStore that owns them. Balances are stored as
Decimal strings together with a version number; the only way to change a
balance after opening is a compare-and-swap on that version, which is what
the transfer engine uses to detect concurrent writers.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Currency, AmountLike, to_decimal, has_valid_precision
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, create_account_event
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Account classifications"""
    SAVINGS = "SAVINGS"
    CURRENT = "CURRENT"


@dataclass
class Account(StorageRecord):
    """
    Bank account holding a fixed-point balance
    """
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: Currency
    balance: Decimal
    version: int = 0
    last_transaction_id: Optional[str] = None
    # Balance at opening; None for rows written before it was recorded
    opening_balance: Optional[Decimal] = None

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            raise TypeError("Account balance must be a Decimal")
        if self.balance < Decimal('0'):
            raise ValueError(f"Account balance cannot be negative: {self.balance}")

    def can_cover(self, amount: Decimal) -> bool:
        """Check if the balance covers a debit of ``amount``"""
        return self.balance >= amount

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            account_type=AccountType(data['account_type']),
            currency=Currency.from_code(data['currency']),
            balance=Decimal(data['balance']),
            version=data.get('version', 0),
            last_transaction_id=data.get('last_transaction_id'),
            opening_balance=(Decimal(data['opening_balance'])
                             if data.get('opening_balance') is not None else None)
        )


class AccountStore:
    """
    Durable keyed storage of Account records

    Lookups always go to storage; no Account instance is cached between
    calls, so every caller works from a fresh read.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        default_currency: Currency = Currency.USD,
        account_number_length: int = 12
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "accounts"
        self.default_currency = default_currency
        self.account_number_length = account_number_length
        self.logger = get_logger("fintech_ledger.accounts")
        self._event_dispatcher = event_dispatcher

    def open_account(
        self,
        owner_id: str,
        account_type: AccountType,
        initial_balance: AmountLike = Decimal('0'),
        currency: Optional[Currency] = None
    ) -> Account:
        """
        Open a new account

        Args:
            owner_id: ID of the owning user
            account_type: SAVINGS or CURRENT
            initial_balance: Opening balance (non-negative, currency precision)
            currency: Account currency, defaults to the store's default currency

        Returns:
            Created Account object
        """
        currency = currency or self.default_currency
        balance = to_decimal(initial_balance)
        if balance < Decimal('0'):
            raise ValueError("Initial balance cannot be negative")
        if not has_valid_precision(balance, currency):
            raise ValueError(f"Initial balance {balance} exceeds {currency.code} precision")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=self._generate_account_number(),
            owner_id=owner_id,
            account_type=account_type,
            currency=currency,
            balance=balance,
            opening_balance=balance
        )
        self.storage.save(self.table_name, account.id, account.to_dict())

        log_action(
            self.logger, "info", "Account opened",
            user_id=owner_id, action="open_account", resource=f"account:{account.id}",
            extra={"account_number": account.account_number, "account_type": account_type.value}
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                user_id=owner_id,
                metadata={
                    "account_number": account.account_number,
                    "account_type": account_type.value,
                    "currency": currency.code,
                    "initial_balance": balance
                }
            )

        if self._event_dispatcher:
            self._event_dispatcher.publish(create_account_event(DomainEvent.ACCOUNT_OPENED, account))

        return account

    def get_by_id(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def get_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by its published account number"""
        accounts = self.storage.find(self.table_name, {"account_number": account_number})
        if accounts:
            return Account.from_dict(accounts[0])
        return None

    def exists_by_number(self, account_number: str) -> bool:
        """Check if an account number is already taken"""
        return bool(self.storage.find(self.table_name, {"account_number": account_number}))

    def list_by_owner(self, owner_id: str) -> List[Account]:
        """Get all accounts owned by a user"""
        return [Account.from_dict(data)
                for data in self.storage.find(self.table_name, {"owner_id": owner_id})]

    def list_all(self) -> List[Account]:
        """Get every account"""
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def compare_and_swap_balance(
        self,
        account_id: str,
        expected_version: int,
        new_balance: Decimal,
        transaction_id: Optional[str] = None
    ) -> bool:
        """
        Replace the balance only if the stored version is still ``expected_version``

        Args:
            account_id: Account to update
            expected_version: Version observed by the caller's read
            new_balance: Balance to write
            transaction_id: Transaction producing the new balance

        Returns:
            True if written, False if the account is missing or was changed concurrently
        """
        if new_balance < Decimal('0'):
            raise ValueError(f"Refusing to write negative balance {new_balance} to account {account_id}")

        current = self.storage.load(self.table_name, account_id)
        if current is None or current.get('version') != expected_version:
            return False

        updated = dict(current)
        updated['balance'] = str(new_balance)
        updated['version'] = expected_version + 1
        updated['last_transaction_id'] = transaction_id
        updated['updated_at'] = datetime.now(timezone.utc).isoformat()

        return self.storage.compare_and_swap(
            self.table_name, account_id, {"version": expected_version}, updated
        )

    def _generate_account_number(self) -> str:
        """Draw random account numbers until an unused one is found"""
        while True:
            account_number = uuid.uuid4().hex[:self.account_number_length]
            if not self.exists_by_number(account_number):
                return account_number
