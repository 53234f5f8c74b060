"""
Ledger Transfer Engine

Moves money between two accounts as one atomic unit:

1. the amount is parsed and checked before anything is read
2. the ownership guard authorizes the caller on the source account
3. the destination is resolved by account number and the transfer rules
   run against this first read (fast-fail)
4. both account locks are taken in ascending id order
5. inside one storage transaction both rows are re-read, the rules run
   again (authoritative), both balances are written with compare-and-swap
   on their version and the COMPLETED transaction is appended
6. the storage transaction commits, or everything is rolled back

Write conflicts and lock timeouts restart the sequence from a fresh read a
bounded number of times. A commit that fails after some of its writes landed
is recorded as a FAILED transaction and raised as ReconciliationRequiredError.
Audit and event records follow the commit; if writing them fails the
transfer still returns COMPLETED and the gap is logged at CRITICAL.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import threading
import time
import uuid

from .accounts import Account, AccountStore, AccountType
from .audit import AuditTrail, AuditEventType
from .currency import AmountLike, Currency
from .errors import (
    AccountNotFoundError, ConflictError, LedgerTimeoutError,
    ReconciliationRequiredError, TransferCancelledError, TransferRejectedError
)
from .events import EventDispatcher, DomainEvent, create_transaction_event
from .locking import AccountLockManager, LockTimeoutError
from .logging_config import correlation_scope, get_logger, log_action
from .ownership import AccountOwnershipGuard, CallerIdentity
from .storage import StorageInterface, StorageConflictError
from .transactions import (
    Transaction, TransactionLog, TransactionStatus, TransactionStatusMachine
)
from .validation import TransferValidator, TransferCheck


class LedgerEngine:
    """
    Validates and executes transfers; owns the balance-mutation algorithm
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        transaction_log: TransactionLog,
        audit_trail: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[AccountLockManager] = None,
        validator: Optional[TransferValidator] = None,
        guard: Optional[AccountOwnershipGuard] = None,
        max_attempts: int = 3,
        retry_backoff: float = 0.01
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.storage = storage
        self.account_store = account_store
        self.transaction_log = transaction_log
        self.audit_trail = audit_trail
        self.lock_manager = lock_manager or AccountLockManager()
        self.validator = validator or TransferValidator(account_store.default_currency)
        self.guard = guard or AccountOwnershipGuard(account_store)
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.logger = get_logger("fintech_ledger.engine")
        self.event_dispatcher = event_dispatcher

    # Transfers

    def transfer(
        self,
        caller: CallerIdentity,
        source_account_id: str,
        destination_account_number: str,
        amount: AmountLike,
        description: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Transaction:
        """
        Transfer ``amount`` from an account of the caller to a published account number

        Args:
            caller: Authenticated caller identity
            source_account_id: ID of the account to debit
            destination_account_number: Account number of the account to credit
            amount: Decimal, int or decimal string (floats are rejected)
            description: Free text; defaults to "Transfer from X to Y"
            cancel_event: Set to abandon the transfer before it enters the critical section

        Returns:
            The COMPLETED Transaction

        Raises:
            InvalidAmountError, ForbiddenError, AccountNotFoundError,
            SameAccountTransferError, InsufficientFundsError: nothing persisted
            ConflictError, LedgerTimeoutError, TransferCancelledError: retryable
            ReconciliationRequiredError: effect unconfirmed, transaction FAILED
        """
        with correlation_scope():
            try:
                destination_id, value = self._prevalidate(
                    caller, source_account_id, destination_account_number, amount
                )
                return self._run_with_retries(
                    caller, source_account_id, destination_id, destination_account_number,
                    value, description, cancel_event
                )
            except TransferRejectedError as e:
                log_action(
                    self.logger, "warning", f"Transfer rejected: {e.message}",
                    user_id=caller.user_id, action="transfer", resource=f"account:{source_account_id}",
                    extra={"code": e.code, "destination_account_number": destination_account_number}
                )
                raise

    def _prevalidate(
        self,
        caller: CallerIdentity,
        source_account_id: str,
        destination_account_number: str,
        amount: AmountLike
    ) -> Tuple[str, Decimal]:
        """Checks outside any lock; returns the destination id and the parsed amount"""
        self.validator.check_amount(amount)
        source = self.guard.authorize(caller, source_account_id)
        value = self.validator.parse_amount(amount, source.currency)
        destination = self.account_store.get_by_number(destination_account_number)
        self.validator.validate(TransferCheck(
            amount=value,
            source=source,
            destination=destination,
            source_account_id=source_account_id,
            destination_account_number=destination_account_number
        ))
        return destination.id, value

    def _run_with_retries(
        self,
        caller: CallerIdentity,
        source_id: str,
        destination_id: str,
        destination_account_number: str,
        amount: Decimal,
        description: Optional[str],
        cancel_event: Optional[threading.Event]
    ) -> Transaction:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            self._check_cancelled(cancel_event)
            try:
                transaction = self._execute(
                    caller, source_id, destination_id, destination_account_number,
                    amount, description, cancel_event
                )
            except (StorageConflictError, LockTimeoutError) as e:
                last_error = e
                self.logger.debug(
                    f"Transfer attempt {attempt}/{self.max_attempts} for {source_id} -> {destination_id} "
                    f"lost a race: {e}"
                )
                if attempt < self.max_attempts:
                    time.sleep(self.retry_backoff * attempt)
                continue

            self._after_commit(caller, transaction)
            return transaction

        log_action(
            self.logger, "warning", "Transfer retries exhausted",
            user_id=caller.user_id, action="transfer", resource=f"account:{source_id}",
            extra={"attempts": self.max_attempts, "error": str(last_error)}
        )
        if isinstance(last_error, LockTimeoutError):
            raise LedgerTimeoutError(
                f"Could not lock accounts after {self.max_attempts} attempts",
                source_account_id=source_id, destination_account_id=destination_id
            ) from last_error
        raise ConflictError(
            f"Transfer conflicted with concurrent updates {self.max_attempts} times",
            source_account_id=source_id, destination_account_id=destination_id
        ) from last_error

    def _check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise TransferCancelledError("Transfer cancelled before execution")

    def _execute(
        self,
        caller: CallerIdentity,
        source_id: str,
        destination_id: str,
        destination_account_number: str,
        amount: Decimal,
        description: Optional[str],
        cancel_event: Optional[threading.Event]
    ) -> Transaction:
        """One attempt: lock, mutate inside a storage transaction, commit"""
        with self.lock_manager.hold([source_id, destination_id]):
            self._check_cancelled(cancel_event)

            # From here on the attempt runs to COMPLETED or FAILED
            self.storage.begin_transaction()
            try:
                transaction = self._apply(
                    caller, source_id, destination_id, destination_account_number,
                    amount, description
                )
            except BaseException:
                self.storage.rollback()
                raise

            try:
                self.storage.commit()
            except StorageConflictError:
                raise
            except Exception as e:
                return self._confirm_commit(caller, transaction, e)

            return transaction

    def _apply(
        self,
        caller: CallerIdentity,
        source_id: str,
        destination_id: str,
        destination_account_number: str,
        amount: Decimal,
        description: Optional[str]
    ) -> Transaction:
        """Fresh read, authoritative validation and all writes of one transfer"""
        source = self.account_store.get_by_id(source_id)
        destination = self.account_store.get_by_id(destination_id)
        self.validator.validate(TransferCheck(
            amount=amount,
            source=source,
            destination=destination,
            source_account_id=source_id,
            destination_account_number=destination_account_number
        ))

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            source_account_id=source.id,
            destination_account_id=destination.id,
            amount=amount,
            currency=source.currency,
            description=description or f"Transfer from {source.account_number} to {destination.account_number}",
            initiated_by=caller.user_id,
            source_balance_after=source.balance - amount,
            destination_balance_after=destination.balance + amount,
            source_version_after=source.version + 1,
            destination_version_after=destination.version + 1
        )

        self._swap_balance(source, transaction.source_balance_after, transaction.id)
        self._swap_balance(destination, transaction.destination_balance_after, transaction.id)

        TransactionStatusMachine.transition(transaction, TransactionStatus.COMPLETED)
        self.transaction_log.append(transaction)
        return transaction

    def _swap_balance(self, account: Account, new_balance: Decimal, transaction_id: str) -> None:
        if not self.account_store.compare_and_swap_balance(
            account.id, account.version, new_balance, transaction_id
        ):
            raise StorageConflictError(f"Account {account.id} changed since version {account.version}")

    def _confirm_commit(
        self,
        caller: CallerIdentity,
        transaction: Transaction,
        commit_error: Exception
    ) -> Transaction:
        """
        Work out what a failed commit left behind; called with both account locks held

        All writes present: the transfer completed. None present: nothing
        happened and the attempt is retried. Anything in between is recorded
        as a FAILED transaction for reconciliation.
        """
        stored = self.transaction_log.get(transaction.id)
        source = self.account_store.get_by_id(transaction.source_account_id)
        destination = self.account_store.get_by_id(transaction.destination_account_id)

        applied = [
            stored is not None and stored.status == TransactionStatus.COMPLETED,
            transaction.applied_to(source),
            transaction.applied_to(destination),
        ]

        if all(applied):
            self.logger.warning(
                f"Commit of transaction {transaction.id} reported {commit_error!r} but all writes are durable"
            )
            return transaction
        if not any(applied):
            raise StorageConflictError(
                f"Commit of transaction {transaction.id} failed before any write: {commit_error}"
            ) from commit_error

        failed = self.mark_unconfirmed(
            transaction,
            reason=f"Partial commit: transaction_row={applied[0]}, source_debit={applied[1]}, "
                   f"destination_credit={applied[2]}; commit error: {commit_error}",
            user_id=caller.user_id
        )
        raise ReconciliationRequiredError(
            f"Transfer {failed.id} could not be confirmed and needs reconciliation",
            transaction_id=failed.id
        ) from commit_error

    def mark_unconfirmed(self, transaction: Transaction, reason: str,
                         user_id: Optional[str] = None) -> Transaction:
        """
        Record a transfer whose effect could not be confirmed as FAILED and raise the alarm
        """
        in_flight = transaction.as_in_flight()
        TransactionStatusMachine.transition(in_flight, TransactionStatus.FAILED, failure_reason=reason)
        self.transaction_log.record_failed(in_flight)

        log_action(
            self.logger, "critical", "Ledger reconciliation required",
            user_id=user_id, action="reconciliation_alert", resource=f"transaction:{in_flight.id}",
            extra={
                "source_account_id": in_flight.source_account_id,
                "destination_account_id": in_flight.destination_account_id,
                "amount": str(in_flight.amount),
                "reason": reason
            }
        )

        self._audit(
            AuditEventType.TRANSACTION_FAILED, in_flight, user_id,
            {"reason": reason, "amount": in_flight.amount}
        )
        self._audit(
            AuditEventType.RECONCILIATION_ALERT, in_flight, user_id,
            {
                "source_account_id": in_flight.source_account_id,
                "destination_account_id": in_flight.destination_account_id,
                "reason": reason
            }
        )
        self._publish(DomainEvent.TRANSFER_FAILED, in_flight, user_id)
        self._publish(DomainEvent.RECONCILIATION_REQUIRED, in_flight, user_id)

        return in_flight

    def _after_commit(self, caller: CallerIdentity, transaction: Transaction) -> None:
        log_action(
            self.logger, "info", "Transfer completed",
            user_id=caller.user_id, action="transfer", resource=f"transaction:{transaction.id}",
            extra={
                "source_account_id": transaction.source_account_id,
                "destination_account_id": transaction.destination_account_id,
                "amount": str(transaction.amount),
                "currency": transaction.currency.code
            }
        )

        self._audit(
            AuditEventType.TRANSFER_COMPLETED, transaction, caller.user_id,
            {
                "source_account_id": transaction.source_account_id,
                "destination_account_id": transaction.destination_account_id,
                "amount": transaction.amount,
                "currency": transaction.currency.code,
                "source_balance_after": transaction.source_balance_after,
                "destination_balance_after": transaction.destination_balance_after
            }
        )
        self._publish(DomainEvent.TRANSFER_COMPLETED, transaction, caller.user_id)

    # Post-commit side effects. The ledger change they describe is already
    # durable, so a failure here is reported and never turns into a transfer error.

    def _audit(self, event_type: AuditEventType, transaction: Transaction,
               user_id: Optional[str], metadata: dict) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="transaction",
                entity_id=transaction.id,
                user_id=user_id,
                metadata=metadata
            )
        except Exception as e:
            self._side_effect_failed("audit", event_type.value, transaction, user_id, e)

    def _publish(self, event_type: DomainEvent, transaction: Transaction, user_id: Optional[str]) -> None:
        if not self.event_dispatcher:
            return
        try:
            self.event_dispatcher.publish(create_transaction_event(event_type, transaction))
        except Exception as e:
            self._side_effect_failed("event", event_type.value, transaction, user_id, e)

    def _side_effect_failed(self, kind: str, name: str, transaction: Transaction,
                            user_id: Optional[str], error: Exception) -> None:
        log_action(
            self.logger, "critical", f"Committed transfer is missing its {kind} record",
            user_id=user_id, action=f"{kind}_failed", resource=f"transaction:{transaction.id}",
            extra={
                "transaction_id": transaction.id,
                "status": transaction.status.value,
                kind: name,
                "error": repr(error)
            }
        )

    # Accounts

    def open_account(
        self,
        owner_id: str,
        account_type: AccountType,
        initial_balance: AmountLike = Decimal('0'),
        currency: Optional[Currency] = None
    ) -> Account:
        """Open an account for a user"""
        return self.account_store.open_account(owner_id, account_type, initial_balance, currency)

    def get_user_accounts(self, user_id: str) -> List[Account]:
        """All accounts owned by a user"""
        return self.account_store.list_by_owner(user_id)

    # Reads

    def get_account_transactions(
        self,
        account_id: str,
        caller: Optional[CallerIdentity] = None
    ) -> List[Transaction]:
        """
        Transactions touching an account, newest first

        When a caller is given the ownership guard applies.
        """
        if caller is not None:
            self.guard.authorize(caller, account_id)
        elif self.account_store.get_by_id(account_id) is None:
            raise AccountNotFoundError(f"Account {account_id} not found", account_id=account_id)

        return self.transaction_log.list_by_account(account_id)

    def get_all_user_transactions(self, user_id: str) -> List[Transaction]:
        """Transactions touching any account of the user, merged, newest first"""
        accounts = self.account_store.list_by_owner(user_id)
        if not accounts:
            return []
        return self.transaction_log.list_by_accounts(account.id for account in accounts)
