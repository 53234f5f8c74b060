"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every ledger state change (account opening, transfer outcome, reconciliation
alert) is logged here after the storage transaction that caused it commits.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord, StorageConflictError


class AuditEventType(Enum):
    """Types of audit events"""
    # Account events
    ACCOUNT_OPENED = "account_opened"

    # Transfer events
    TRANSFER_COMPLETED = "transfer_completed"
    TRANSACTION_FAILED = "transaction_failed"

    # Reconciliation events
    RECONCILIATION_ALERT = "reconciliation_alert"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    sequence: int
    event_type: AuditEventType
    entity_type: str  # account, transaction, ledger
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _serialize(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            sequence=data['sequence'],
            event_type=AuditEventType(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata', {}),
            user_id=data.get('user_id')
        )


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The chain head (last sequence number and hash) lives in its own record so
    several AuditTrail instances over the same storage keep one chain.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 max_append_attempts: int = 10):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self.max_append_attempts = max_append_attempts
        self._lock = threading.Lock()

    def _load_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return head or {'sequence': 0, 'hash': ""}

    def _advance_head(self, head: Dict[str, Any], event: AuditEvent) -> None:
        """Move the chain head to ``event``; raises StorageConflictError if it moved"""
        new_head = {'id': self.HEAD_ID, 'sequence': event.sequence, 'hash': event.current_hash}
        if head['sequence'] == 0:
            self.storage.save(self.head_table, self.HEAD_ID, new_head)
            return
        expected = {'sequence': head['sequence'], 'hash': head['hash']}
        if not self.storage.compare_and_swap(self.head_table, self.HEAD_ID, expected, new_head):
            raise StorageConflictError(f"Audit chain head moved past sequence {head['sequence']}")

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        The event row and the chain head are written in one storage
        transaction. If another writer extended the chain in the meantime the
        event is rebuilt on the new head.

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: ID of user who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            for _ in range(self.max_append_attempts):
                head = self._load_head()
                now = datetime.now(timezone.utc)

                event = AuditEvent(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    sequence=head['sequence'] + 1,
                    event_type=event_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    previous_hash=head['hash'],
                    current_hash="",
                    metadata=metadata or {},
                    user_id=user_id
                )
                event.current_hash = event.calculate_hash()

                try:
                    with self.storage.atomic():
                        self._advance_head(head, event)
                        self.storage.save(self.table_name, event.id, event.to_dict())
                except StorageConflictError:
                    continue
                return event

        raise StorageConflictError(
            f"Could not append {event_type.value} after {self.max_append_attempts} attempts"
        )

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda x: x.sequence)
        return events

    def get_all_events(self) -> List[AuditEvent]:
        """Get the whole chain, oldest first"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda x: x.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> str:
        """Get the hash of the most recent audit event"""
        return self._load_head()['hash']
