"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection and integrity verification.
"""

import pytest
import threading
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from fintech_ledger.storage import InMemoryStorage, SQLiteStorage, StorageConflictError
from fintech_ledger.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        now = datetime.now(timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.TRANSFER_COMPLETED,
            entity_type="transaction",
            entity_id="TXN001",
            previous_hash="",
            current_hash="",
            metadata={"amount": Decimal('50.00'), "at": now},
            user_id="USER001"
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialized(self):
        """Decimals and datetimes in metadata become strings"""
        event = self.make_event()
        assert event.metadata["amount"] == "50.00"
        assert isinstance(event.metadata["at"], str)

    def test_hash_is_deterministic(self):
        event = self.make_event()
        assert event.calculate_hash() == event.calculate_hash()
        assert len(event.calculate_hash()) == 64

    def test_verify_hash(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["amount"] = "5000.00"
        assert not event.verify_hash()

    def test_hash_covers_previous_hash(self):
        a = self.make_event(previous_hash="a" * 64)
        b = self.make_event(previous_hash="b" * 64)
        assert a.calculate_hash() != b.calculate_hash()

    def test_dict_round_trip(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        restored = AuditEvent.from_dict(event.to_dict())
        assert restored == event
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def log(self, entity_id="TXN001", event_type=AuditEventType.TRANSFER_COMPLETED, **metadata):
        return self.audit_trail.log_event(
            event_type=event_type,
            entity_type="transaction",
            entity_id=entity_id,
            metadata=metadata,
            user_id="USER001"
        )

    def test_log_first_event(self):
        """Test logging the first audit event"""
        event = self.log(amount="10.00")

        assert event.sequence == 1
        assert event.previous_hash == ""  # First event has no previous hash
        assert len(event.current_hash) == 64  # SHA-256 hash
        assert self.audit_trail.get_latest_hash() == event.current_hash
        assert self.audit_trail.count_events() == 1

    def test_chain_links(self):
        """Test logging multiple events creates proper hash chain"""
        first = self.log("TXN001")
        second = self.log("TXN002")
        third = self.log("TXN003")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert [e.sequence for e in self.audit_trail.get_all_events()] == [1, 2, 3]

    def test_chain_shared_between_trails(self):
        """A second AuditTrail over the same storage continues the chain"""
        first = self.log("TXN001")
        other = AuditTrail(self.storage)
        second = other.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001")

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    def test_get_events_for_entity(self):
        self.log("TXN001")
        self.log("TXN002")
        self.log("TXN001", event_type=AuditEventType.TRANSACTION_FAILED)

        events = self.audit_trail.get_events_for_entity("transaction", "TXN001")
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSFER_COMPLETED, AuditEventType.TRANSACTION_FAILED
        ]

    def test_get_events_by_type(self):
        self.log("TXN001")
        self.log("TXN002", event_type=AuditEventType.RECONCILIATION_ALERT)

        alerts = self.audit_trail.get_events_by_type(AuditEventType.RECONCILIATION_ALERT)
        assert [e.entity_id for e in alerts] == ["TXN002"]

    def test_verify_integrity_clean(self):
        for i in range(5):
            self.log(f"TXN{i}")

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 5
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_verify_integrity_empty(self):
        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 0

    def test_tampered_metadata_detected(self):
        self.log("TXN001", amount="10.00")
        target = self.log("TXN002", amount="20.00")

        data = self.storage.load("audit_events", target.id)
        data['metadata']['amount'] = "2000.00"
        self.storage.save("audit_events", target.id, data)

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert [e['event_id'] for e in result['hash_errors']] == [target.id]

    def test_rewritten_event_breaks_chain(self):
        """Rewriting an event with a fresh hash still breaks the next link"""
        self.log("TXN001")
        middle = self.log("TXN002")
        self.log("TXN003")

        forged = AuditEvent.from_dict(self.storage.load("audit_events", middle.id))
        forged.metadata = {"forged": True}
        forged.current_hash = forged.calculate_hash()
        self.storage.save("audit_events", forged.id, forged.to_dict())

        result = self.audit_trail.verify_integrity()
        assert not result['valid']
        assert result['hash_errors'] == []
        assert len(result['chain_breaks']) == 1

    def test_concurrent_logging_keeps_one_chain(self):
        threads = [
            threading.Thread(target=lambda i=i: self.log(f"TXN{i}"))
            for i in range(20)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        result = self.audit_trail.verify_integrity()
        assert result['valid']
        assert result['total_events'] == 20

    def test_concurrent_trails_keep_one_chain(self):
        """Independent trails over one storage rebuild on a moved head instead of forking"""
        self.log("TXN000")
        trails = [AuditTrail(self.storage, max_append_attempts=50) for _ in range(4)]

        def append(trail, n):
            for i in range(5):
                trail.log_event(AuditEventType.TRANSFER_COMPLETED, "transaction", f"TXN{n}-{i}")

        threads = [threading.Thread(target=append, args=(trail, n)) for n, trail in enumerate(trails)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        events = self.audit_trail.get_all_events()
        assert [e.sequence for e in events] == list(range(1, 22))
        assert self.audit_trail.verify_integrity()['valid']

    def test_append_gives_up_when_head_keeps_moving(self):
        self.log("TXN001")
        trail = AuditTrail(self.storage, max_append_attempts=2)

        with patch.object(self.storage, "compare_and_swap", return_value=False):
            with pytest.raises(StorageConflictError):
                trail.log_event(AuditEventType.TRANSFER_COMPLETED, "transaction", "TXN002")

        assert self.audit_trail.count_events() == 1
        assert self.audit_trail.verify_integrity()['valid']


class TestAuditTrailSQLite:
    """Audit chain persisted in SQLite"""

    def test_chain_survives_reopen(self, tmp_path):
        path = tmp_path / "audit.db"
        storage = SQLiteStorage(path)
        first = AuditTrail(storage).log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC001")
        storage.close()

        storage = SQLiteStorage(path)
        trail = AuditTrail(storage)
        second = trail.log_event(AuditEventType.ACCOUNT_OPENED, "account", "ACC002")

        assert second.previous_hash == first.current_hash
        assert trail.verify_integrity()['valid']
        storage.close()
