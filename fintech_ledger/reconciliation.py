"""
Ledger Reconciliation Module

Finds transfers whose effect cannot be confirmed after the fact and reports
ledger totals. A healthy ledger has no PENDING rows, every COMPLETED
transaction is visible on both accounts, every account's
last_transaction_id names a COMPLETED transaction, and replaying the
COMPLETED transactions over an account's opening balance gives its stored
balance.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .accounts import Account
from .audit import AuditEventType
from .engine import LedgerEngine
from .events import DomainEvent, EventPayload
from .logging_config import get_logger, log_action
from .transactions import Transaction, TransactionStatus


@dataclass
class ReconciliationIssue:
    """One inconsistency found by a scan"""
    # stale_pending, unapplied_transaction, orphan_reference, failed_reference, balance_mismatch
    kind: str
    detail: str
    transaction_id: Optional[str] = None
    account_id: Optional[str] = None


@dataclass
class ReconciliationReport:
    """Result of LedgerReconciler.scan()"""
    scanned_accounts: int
    scanned_transactions: int
    issues: List[ReconciliationIssue] = field(default_factory=list)
    marked_failed: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_clean(self) -> bool:
        return not self.issues


class LedgerReconciler:
    """
    Scans accounts and transactions for partial commits

    Suspect transactions are re-checked with both account locks held before
    they are marked FAILED, so a scan never races an in-process transfer.
    """

    def __init__(self, engine: LedgerEngine):
        self.engine = engine
        self.account_store = engine.account_store
        self.transaction_log = engine.transaction_log
        self.audit_trail = engine.audit_trail
        self.logger = get_logger("fintech_ledger.reconciliation")

    def scan(self) -> ReconciliationReport:
        """
        Detect and mark unconfirmed transfers

        Transactions are read before accounts: a COMPLETED row is committed
        together with its balance writes, so accounts read afterwards always
        reflect it when the commit was whole.
        """
        transactions = self.transaction_log.list_all()
        accounts = self.account_store.list_all()
        report = ReconciliationReport(
            scanned_accounts=len(accounts),
            scanned_transactions=len(transactions)
        )
        by_id = {txn.id: txn for txn in transactions}
        accounts_by_id = {account.id: account for account in accounts}

        for txn in transactions:
            if txn.status == TransactionStatus.PENDING:
                self._recheck(txn, report, kind="stale_pending")
            elif txn.status == TransactionStatus.COMPLETED:
                if not (txn.applied_to(accounts_by_id.get(txn.source_account_id))
                        and txn.applied_to(accounts_by_id.get(txn.destination_account_id))):
                    self._recheck(txn, report, kind="unapplied_transaction")

        for account in accounts:
            if account.last_transaction_id is None:
                continue
            named = by_id.get(account.last_transaction_id)
            if named is None:
                # Committed after the transaction list was read?
                named = self.transaction_log.get(account.last_transaction_id)

            if named is None:
                issue = ReconciliationIssue(
                    kind="orphan_reference",
                    detail=f"Account balance was produced by unknown transaction {account.last_transaction_id}",
                    transaction_id=account.last_transaction_id,
                    account_id=account.id
                )
                report.issues.append(issue)
                self._alert_account(issue)
            elif named.status == TransactionStatus.FAILED:
                report.issues.append(ReconciliationIssue(
                    kind="failed_reference",
                    detail=f"Account balance was produced by FAILED transaction {named.id}",
                    transaction_id=named.id,
                    account_id=account.id
                ))

        # One issue per account: a bad reference already explains a wrong balance
        flagged = {issue.account_id for issue in report.issues if issue.account_id}
        excluded = set(report.marked_failed)
        for account in accounts:
            if account.opening_balance is None or account.id in flagged:
                continue
            if self.replay_balance(account, transactions, excluded) != account.balance:
                self._recheck_balance(account, report)

        self.logger.info(
            f"Reconciliation scan: {report.scanned_accounts} accounts, "
            f"{report.scanned_transactions} transactions, {len(report.issues)} issues"
        )
        return report

    def _recheck(self, txn: Transaction, report: ReconciliationReport, kind: str) -> None:
        with self.engine.lock_manager.hold([txn.source_account_id, txn.destination_account_id]):
            current = self.transaction_log.get(txn.id)
            if current is None or current.status == TransactionStatus.FAILED:
                return

            if current.status == TransactionStatus.COMPLETED:
                source = self.account_store.get_by_id(current.source_account_id)
                destination = self.account_store.get_by_id(current.destination_account_id)
                if current.applied_to(source) and current.applied_to(destination):
                    return
                reason = (
                    f"COMPLETED but not reflected: source_debit={current.applied_to(source)}, "
                    f"destination_credit={current.applied_to(destination)}"
                )
            else:
                reason = "Stale PENDING transaction found by reconciliation scan"

            failed = self.engine.mark_unconfirmed(current, reason=reason)

        report.issues.append(ReconciliationIssue(
            kind=kind, detail=reason, transaction_id=failed.id
        ))
        report.marked_failed.append(failed.id)

    @staticmethod
    def replay_balance(account: Account, transactions: Iterable[Transaction],
                       excluded: Iterable[str] = ()) -> Decimal:
        """
        Balance the account should hold according to the transaction log

        Starts from the opening balance and applies every COMPLETED
        transaction touching the account, skipping ids in ``excluded``.
        """
        excluded = set(excluded)
        balance = account.opening_balance
        for txn in transactions:
            if txn.status != TransactionStatus.COMPLETED or txn.id in excluded:
                continue
            if txn.source_account_id == account.id:
                balance -= txn.amount
            if txn.destination_account_id == account.id:
                balance += txn.amount
        return balance

    def _recheck_balance(self, account: Account, report: ReconciliationReport) -> None:
        with self.engine.lock_manager.hold([account.id]):
            current = self.account_store.get_by_id(account.id)
            expected = self.replay_balance(current, self.transaction_log.list_by_account(account.id))
            if expected == current.balance:
                return

        issue = ReconciliationIssue(
            kind="balance_mismatch",
            detail=f"Stored balance {current.balance} differs from ledger replay {expected}",
            transaction_id=current.last_transaction_id,
            account_id=current.id
        )
        report.issues.append(issue)
        self._alert_account(issue)

    def _alert_account(self, issue: ReconciliationIssue) -> None:
        log_action(
            self.logger, "critical", "Ledger reconciliation required",
            action="reconciliation_alert", resource=f"account:{issue.account_id}",
            extra={"transaction_id": issue.transaction_id, "reason": issue.detail}
        )
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.RECONCILIATION_ALERT,
                entity_type="account",
                entity_id=issue.account_id,
                metadata={"transaction_id": issue.transaction_id, "reason": issue.detail}
            )
        dispatcher = self.engine.event_dispatcher
        if dispatcher:
            dispatcher.publish(EventPayload(
                event_type=DomainEvent.RECONCILIATION_REQUIRED,
                entity_type="account",
                entity_id=issue.account_id,
                data={"transaction_id": issue.transaction_id, "reason": issue.detail}
            ))

    def summary(self) -> Dict[str, Any]:
        """
        Ledger totals for operators

        Returns:
            total_owners, total_accounts, total_transactions,
            transactions_by_status and total_balance_by_currency
        """
        accounts = self.account_store.list_all()
        transactions = self.transaction_log.list_all()

        by_status = {status.value: 0 for status in TransactionStatus}
        for txn in transactions:
            by_status[txn.status.value] += 1

        balances: Dict[str, Decimal] = {}
        for account in accounts:
            code = account.currency.code
            balances[code] = balances.get(code, Decimal('0')) + account.balance

        return {
            'total_owners': len({account.owner_id for account in accounts}),
            'total_accounts': len(accounts),
            'total_transactions': len(transactions),
            'transactions_by_status': by_status,
            'total_balance_by_currency': balances,
            'generated_at': datetime.now(timezone.utc)
        }

    def verify_audit_trail(self) -> Dict[str, Any]:
        """
        Verify the audit hash chain and record the check in the chain

        Raises:
            ValueError: If audit logging is disabled
        """
        if self.audit_trail is None:
            raise ValueError("Audit logging is disabled")

        result = self.audit_trail.verify_integrity()
        self.audit_trail.log_event(
            event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
            entity_type="ledger",
            entity_id="audit_trail",
            metadata={
                'valid': result['valid'],
                'total_events': result['total_events'],
                'hash_errors': len(result['hash_errors']),
                'chain_breaks': len(result['chain_breaks'])
            }
        )
        if not result['valid']:
            self.logger.critical(
                f"Audit trail integrity check failed: {len(result['hash_errors'])} hash errors, "
                f"{len(result['chain_breaks'])} chain breaks"
            )
        return result
