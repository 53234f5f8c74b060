"""
Integration tests for the wired ledger system
"""

import logging
import pytest
from decimal import Decimal

from fintech_ledger.accounts import AccountType
from fintech_ledger.config import LedgerConfig
from fintech_ledger.currency import Currency
from fintech_ledger.ownership import CallerIdentity
from fintech_ledger.storage import InMemoryStorage, SQLiteStorage
from fintech_ledger.system import LedgerSystem


class TestLedgerSystem:

    def test_in_memory_system(self):
        system = LedgerSystem(LedgerConfig(database_url="memory://"), configure_logging=False)

        assert isinstance(system.storage, InMemoryStorage)
        assert system.audit_trail is not None
        assert system.event_dispatcher is not None
        assert system.engine.max_attempts == 3

    def test_settings_flow_into_components(self):
        settings = LedgerConfig(
            default_currency="EUR",
            max_transfer_attempts=7,
            lock_timeout_seconds=0.5,
            account_number_length=16,
            enable_audit_logging=False,
            enable_events=False
        )
        system = LedgerSystem(settings, configure_logging=False)

        assert system.audit_trail is None
        assert system.event_dispatcher is None
        assert system.engine.max_attempts == 7
        assert system.lock_manager.timeout == 0.5

        account = system.engine.open_account("alice", AccountType.SAVINGS)
        assert account.currency == Currency.EUR
        assert len(account.account_number) == 16

    def test_unknown_currency_rejected(self):
        with pytest.raises(ValueError, match="Unsupported currency code"):
            LedgerSystem(LedgerConfig(default_currency="XYZ"), configure_logging=False)

    def test_sqlite_system_persists(self, tmp_path):
        """Balances and history survive a restart"""
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        system = LedgerSystem(LedgerConfig(database_url=url), configure_logging=False)
        assert isinstance(system.storage, SQLiteStorage)

        x = system.engine.open_account("alice", AccountType.SAVINGS, "100.00")
        y = system.engine.open_account("bob", AccountType.SAVINGS)
        txn = system.engine.transfer(CallerIdentity.of("alice"), x.id, y.account_number, "40.00")
        system.close()

        restarted = LedgerSystem(LedgerConfig(database_url=url), configure_logging=False)
        assert restarted.account_store.get_by_id(x.id).balance == Decimal('60.00')
        assert restarted.account_store.get_by_id(y.id).balance == Decimal('40.00')
        assert [t.id for t in restarted.engine.get_all_user_transactions("bob")] == [txn.id]
        assert restarted.reconciler.scan().is_clean
        assert restarted.audit_trail.verify_integrity()['valid']
        restarted.close()

    def test_configures_logging(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        system = LedgerSystem(LedgerConfig(log_file=str(log_file), log_level="INFO"))
        system.engine.open_account("alice", AccountType.SAVINGS)

        assert "Account opened" in log_file.read_text()
        system.close()

        for handler in logging.getLogger("fintech_ledger").handlers[:]:
            handler.close()
            logging.getLogger("fintech_ledger").removeHandler(handler)
