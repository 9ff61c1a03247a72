"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Loan lifecycle changes, payments and reminder dispatches are logged here
for MEREF compliance traceability.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditAction(Enum):
    """Actions recorded in the audit trail"""
    # Loan lifecycle
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_WITHDRAWN = "loan_withdrawn"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_COMPLETED = "loan_completed"
    LOAN_SCHEDULE_GENERATED = "loan_schedule_generated"

    # Repayments
    LOAN_PAYMENT = "loan_payment"
    INSTALLMENT_MARKED_LATE = "installment_marked_late"

    # Reminders
    PAYMENT_REMINDER_SENT = "payment_reminder_sent"
    REMINDER_SWEEP_COMPLETED = "reminder_sweep_completed"

    # System
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


class AuditCategory(Enum):
    LOANS = "loans"
    PAYMENTS = "payments"
    NOTIFICATIONS = "notifications"
    SYSTEM = "system"


class AuditSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _to_json_value(value):
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _to_json_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_to_json_value(v) for v in value]
    elif hasattr(value, 'isoformat'):
        return value.isoformat()
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    action: AuditAction
    category: AuditCategory
    severity: AuditSeverity
    status: AuditStatus
    previous_hash: str
    current_hash: str
    sequence: int = 0
    target_resource: Optional[str] = None
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.details:
            self.details = {k: _to_json_value(v) for k, v in self.details.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'category': self.category.value,
            'severity': self.severity.value,
            'status': self.status.value,
            'target_resource': self.target_resource,
            'user_id': self.user_id,
            'previous_hash': self.previous_hash,
            'details': self.details
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['action'] = self.action.value
        result['category'] = self.category.value
        result['severity'] = self.severity.value
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['action'] = AuditAction(data['action'])
        data['category'] = AuditCategory(data['category'])
        data['severity'] = AuditSeverity(data['severity'])
        data['status'] = AuditStatus(data['status'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection

    The hash and sequence of the latest event live in a one-row head table,
    so appending an event reads that row instead of the whole log.
    """

    HEAD_ID = "chain"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_logs"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self._last_hash: Optional[str] = None
        self._last_sequence = 0
        self._load_head()

    def _sorted_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def _load_head(self) -> Dict[str, Any]:
        """Read the chain head, seeding it from the stored events the first time"""
        head = self.storage.load(self.head_table, self.HEAD_ID)
        if head is None:
            seed = {'last_hash': "", 'sequence': 0}
            events = self.storage.load_all(self.table_name)
            if events:
                latest = max(events, key=lambda x: x.get('sequence', 0))
                seed = {'last_hash': latest.get('current_hash') or "",
                        'sequence': latest.get('sequence', 0)}
            self.storage.insert_if_absent(self.head_table, self.HEAD_ID, seed)
            head = self.storage.load(self.head_table, self.HEAD_ID)

        self._last_hash = head['last_hash'] or None
        self._last_sequence = head['sequence']
        return head

    def log_event(
        self,
        action: AuditAction,
        category: AuditCategory,
        target_resource: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        status: AuditStatus = AuditStatus.SUCCESS
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            action: What happened
            category: Functional area of the action
            target_resource: ID of the affected loan, installment or notification
            details: Additional event-specific data
            user_id: User who initiated the action, or whose record it concerns
            severity: Severity of the event
            status: Whether the audited operation succeeded

        Returns:
            Created AuditEvent
        """
        with self.storage.atomic():
            while True:
                head = self._load_head()
                now = datetime.now(timezone.utc)
                event = AuditEvent(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    action=action,
                    category=category,
                    severity=severity,
                    status=status,
                    previous_hash=head['last_hash'],
                    current_hash="",
                    sequence=head['sequence'] + 1,
                    target_resource=target_resource,
                    user_id=user_id,
                    details=details or {}
                )
                event.current_hash = event.calculate_hash()

                # Another process sharing the database may have appended since the read
                if self.storage.update_where(
                    self.head_table, self.HEAD_ID,
                    expected={'sequence': head['sequence']},
                    changes={'last_hash': event.current_hash, 'sequence': event.sequence}
                ):
                    break

            self.storage.save(self.table_name, event.id, event.to_dict())

        self._last_hash = event.current_hash
        self._last_sequence = event.sequence
        return event

    def get_events_for_resource(self, target_resource: str,
                                limit: Optional[int] = None) -> List[AuditEvent]:
        """Get all audit events for a loan, installment or notification, oldest first"""
        events_data = self.storage.find(self.table_name, {'target_resource': target_resource})
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    def get_events(
        self,
        action: Optional[AuditAction] = None,
        category: Optional[AuditCategory] = None,
        user_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Query audit events

        Args:
            action: Only events with this action
            category: Only events in this category
            user_id: Only events for this user
            start_time: Start of time range (inclusive)
            end_time: End of time range (inclusive)
            limit: Maximum number of most recent events to return

        Returns:
            List of AuditEvent objects sorted by creation time
        """
        events = self._sorted_events()
        if action:
            events = [e for e in events if e.action == action]
        if category:
            events = [e for e in events if e.category == category]
        if user_id:
            events = [e for e in events if e.user_id == user_id]
        if start_time:
            events = [e for e in events if e.created_at >= start_time]
        if end_time:
            events = [e for e in events if e.created_at <= end_time]
        if limit:
            events = events[-limit:]
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

        events = self._sorted_events()
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

    def get_event_by_id(self, event_id: str) -> Optional[AuditEvent]:
        event_data = self.storage.load(self.table_name, event_id)
        if event_data:
            return AuditEvent.from_dict(event_data)
        return None

    def count_events(self) -> int:
        return self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        return self._last_hash
