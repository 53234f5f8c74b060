"""
Tests for the Event System (Observer Pattern)
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

from fintech_ledger.accounts import Account, AccountType
from fintech_ledger.currency import Currency
from fintech_ledger.events import (
    DomainEvent, EventPayload, EventDispatcher,
    create_transaction_event, create_account_event
)
from fintech_ledger.transactions import Transaction, TransactionStatus


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = EventPayload(
            event_type=DomainEvent.TRANSFER_COMPLETED,
            entity_type="transaction",
            entity_id="test-123",
            data={"amount": "100.00", "currency": "USD"}
        )

        assert event.event_type == DomainEvent.TRANSFER_COMPLETED
        assert event.data["amount"] == "100.00"
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        event = EventPayload(DomainEvent.RECONCILIATION_REQUIRED, "transaction", "tx-1", {"reason": "x"})
        data = event.to_dict()

        assert data['event_type'] == "ledger.reconciliation_required"
        assert data['entity_id'] == "tx-1"
        assert data['data'] == {"reason": "x"}
        datetime.fromisoformat(data['timestamp'])


class TestEventDispatcher:
    """Test publish/subscribe"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()

    def event(self, event_type=DomainEvent.TRANSFER_COMPLETED):
        return EventPayload(event_type, "transaction", "tx-123", {})

    def test_subscribe_and_publish(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, handler)

        event = self.event()
        self.dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handlers_only_see_their_type(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSFER_FAILED, handler)
        self.dispatcher.publish(self.event(DomainEvent.TRANSFER_COMPLETED))
        handler.assert_not_called()

    def test_global_handler_receives_all_events(self):
        handler = Mock()
        self.dispatcher.subscribe_all(handler)

        self.dispatcher.publish(self.event(DomainEvent.TRANSFER_COMPLETED))
        self.dispatcher.publish(self.event(DomainEvent.ACCOUNT_OPENED))

        assert handler.call_count == 2

    def test_unsubscribe(self):
        handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, handler)
        self.dispatcher.unsubscribe(DomainEvent.TRANSFER_COMPLETED, handler)

        self.dispatcher.publish(self.event())
        handler.assert_not_called()

    def test_unsubscribe_unknown_handler(self):
        self.dispatcher.unsubscribe(DomainEvent.TRANSFER_COMPLETED, Mock())
        assert self.dispatcher.get_handler_count() == 0

    def test_handler_exceptions_dont_break_publisher(self):
        """Test that exceptions in handlers don't break event publishing"""
        failing_handler = Mock(side_effect=Exception("Handler error"))
        working_handler = Mock()
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, failing_handler)
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, working_handler)

        self.dispatcher.publish(self.event())

        failing_handler.assert_called_once()
        working_handler.assert_called_once()

    def test_handler_counts(self):
        assert self.dispatcher.get_handler_count() == 0

        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, Mock())
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, Mock())
        assert self.dispatcher.get_handler_count(DomainEvent.TRANSFER_COMPLETED) == 2

        self.dispatcher.subscribe_all(Mock())
        assert self.dispatcher.get_handler_count() == 3

    def test_handler_may_subscribe_during_publish(self):
        late = Mock()

        def subscriber(event):
            self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, late)

        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, subscriber)
        self.dispatcher.publish(self.event())
        late.assert_not_called()

        self.dispatcher.publish(self.event())
        late.assert_called_once()


class TestEventFactories:
    """Test event helper functions"""

    def test_create_transaction_event(self):
        now = datetime.now(timezone.utc)
        txn = Transaction(
            id="TXN001", created_at=now, updated_at=now,
            source_account_id="ACC1", destination_account_id="ACC2",
            amount=Decimal('25.00'), currency=Currency.USD,
            description="Transfer", initiated_by="USER001",
            status=TransactionStatus.COMPLETED
        )

        event = create_transaction_event(DomainEvent.TRANSFER_COMPLETED, txn)

        assert event.entity_type == "transaction"
        assert event.entity_id == "TXN001"
        assert event.data["amount"] == "25.00"
        assert event.data["status"] == "COMPLETED"
        assert event.data["failure_reason"] is None

    def test_create_account_event(self):
        now = datetime.now(timezone.utc)
        account = Account(
            id="ACC001", created_at=now, updated_at=now,
            account_number="abcdef012345", owner_id="USER001",
            account_type=AccountType.SAVINGS, currency=Currency.GBP,
            balance=Decimal('10.00')
        )

        event = create_account_event(DomainEvent.ACCOUNT_OPENED, account)

        assert event.entity_type == "account"
        assert event.data["currency"] == "GBP"
        assert event.data["account_type"] == "SAVINGS"
        assert event.data["balance"] == "10.00"
