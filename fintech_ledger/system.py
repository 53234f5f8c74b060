"""
Ledger System Wiring

Builds every ledger component from a LedgerConfig.
"""

from typing import Optional

from .accounts import AccountStore
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .currency import Currency
from .engine import LedgerEngine
from .events import EventDispatcher
from .locking import AccountLockManager
from .logging_config import setup_logging, get_logger
from .ownership import AccountOwnershipGuard
from .reconciliation import LedgerReconciler
from .storage import create_storage
from .transactions import TransactionLog
from .validation import TransferValidator


class LedgerSystem:
    """Ledger with all components initialized"""

    def __init__(self, settings: Optional[LedgerConfig] = None, configure_logging: bool = True):
        self.settings = settings or get_config()

        if configure_logging:
            setup_logging(
                level=self.settings.log_level,
                log_format=self.settings.log_format,
                log_file=self.settings.log_file
            )
        self.logger = get_logger("fintech_ledger.system")

        default_currency = Currency.from_code(self.settings.default_currency)

        # Initialize storage
        self.storage = create_storage(self.settings.database_url, timeout=self.settings.lock_timeout_seconds)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage) if self.settings.enable_audit_logging else None
        self.event_dispatcher = EventDispatcher() if self.settings.enable_events else None
        self.account_store = AccountStore(
            self.storage, self.audit_trail, self.event_dispatcher,
            default_currency=default_currency,
            account_number_length=self.settings.account_number_length
        )
        self.transaction_log = TransactionLog(self.storage)
        self.lock_manager = AccountLockManager(timeout=self.settings.lock_timeout_seconds)
        self.guard = AccountOwnershipGuard(self.account_store)
        self.engine = LedgerEngine(
            self.storage, self.account_store, self.transaction_log,
            audit_trail=self.audit_trail,
            event_dispatcher=self.event_dispatcher,
            lock_manager=self.lock_manager,
            validator=TransferValidator(default_currency),
            guard=self.guard,
            max_attempts=self.settings.max_transfer_attempts,
            retry_backoff=self.settings.retry_backoff_seconds
        )
        self.reconciler = LedgerReconciler(self.engine)

        self.logger.info(f"Ledger started with storage {self.settings.database_url}")

    def close(self) -> None:
        """Release the storage backend"""
        self.storage.close()
