"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Ledger mutations are recorded here after their transaction commits.
"""

import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .clock import Clock, SystemClock
from .models import Operator
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_STATUS_CHANGED = "loan_status_changed"
    LOAN_SETTLED = "loan_settled"
    LOAN_RESCHEDULED = "loan_rescheduled"
    LOAN_DELETED = "loan_deleted"

    # Payment events
    PAYMENT_APPLIED = "payment_applied"

    # Batch events
    SCHEDULES_SWEPT = "schedules_swept"

    # Asset ledger events
    ASSET_BALANCE_CHANGED = "asset_balance_changed"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str    # loan, schedule, asset_balance, ...
    entity_id: str
    sequence: int       # Position in the chain
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    metadata: Dict[str, Any] = field(default_factory=dict)  # before/after snapshots etc.
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None

    def __post_init__(self):
        # Ensure metadata is JSON serializable
        if self.metadata:
            self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'actor_id': self.actor_id,
            'actor_name': self.actor_name,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        """Create AuditEvent from dictionary with proper enum deserialization"""
        data = dict(data)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None,
                 table_name: str = "audit_events"):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = table_name
        self._lock = threading.Lock()  # Thread safety for concurrent access
        self._head: Optional[Dict[str, Any]] = None  # Loaded on first write

    def _load_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _chain_head(self) -> Dict[str, Any]:
        """Sequence and hash of the most recent event; the table is read only once"""
        if self._head is None:
            head = {'sequence': 0, 'hash': ""}
            for data in self.storage.load_all(self.table_name):
                if data.get('sequence', 0) > head['sequence']:
                    head = {'sequence': data['sequence'], 'hash': data.get('current_hash', "")}
            self._head = head
        return self._head

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        operator: Optional[Operator] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data (before/after snapshots)
            operator: Staff member who initiated the action

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = self.clock.now()
            head = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['hash'],
                current_hash="",  # Will be calculated below
                metadata=metadata or {},
                actor_id=operator.id if operator else None,
                actor_name=operator.name if operator else None,
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = {'sequence': event.sequence, 'hash': event.current_hash}
            return event

    def try_log_event(self, *args, **kwargs) -> Optional[AuditEvent]:
        """Log an event; failures are logged and never propagate to the caller"""
        try:
            return self.log_event(*args, **kwargs)
        except Exception:
            logger.exception("Failed to write audit event", extra={'action': 'audit'})
            return None

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of events to return

        Returns:
            List of AuditEvent objects in chain order
        """
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)

        if limit:
            events = events[-limit:]  # Get most recent N events

        return events

    def get_all_events(self, event_type: Optional[AuditEventType] = None) -> List[AuditEvent]:
        """Get all audit events in chain order, optionally of one type"""
        events = self._load_events()
        if event_type:
            events = [e for e in events if e.event_type == event_type]
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
            'chain_breaks': [],
        }

        events = self._load_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
