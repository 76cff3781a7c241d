"""Audit event logging and persistence.

Provides structured audit logging for every numbering and settlement
change. Transition handlers build an event (with a field-level diff of the
record) and hand it to the AuditLogger together with the open store
session, so the audit row commits or rolls back with the change itself.
"""

import json
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from core.models.refs import AuditEvent, AuditSeverity, FieldChange


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Numbering events
    NUMBER_ALLOCATED = "NUMBER_ALLOCATED"
    NUMBER_COLLISION = "NUMBER_COLLISION"
    SEQUENCE_REBUILT = "SEQUENCE_REBUILT"

    # Record lifecycle
    INVOICE_CREATED = "INVOICE_CREATED"
    INVOICE_TRANSITION = "INVOICE_TRANSITION"
    INVOICE_UPDATED = "INVOICE_UPDATED"
    PAYMENT_CREATED = "PAYMENT_CREATED"
    PAYMENT_TRANSITION = "PAYMENT_TRANSITION"
    PAYMENT_UPDATED = "PAYMENT_UPDATED"
    LEASE_CREATED = "LEASE_CREATED"
    LEASE_MODIFIED = "LEASE_MODIFIED"

    # Reconciliation events
    PAYMENT_INGESTED = "PAYMENT_INGESTED"
    PLACEHOLDER_CANCELLED = "PLACEHOLDER_CANCELLED"
    PLACEHOLDER_DELETED = "PLACEHOLDER_DELETED"
    RECONCILIATION_FAILED = "RECONCILIATION_FAILED"


# =============================================================================
# Diff helpers
# =============================================================================

def _audit_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return str(value)


def diff_changes(
    old: Optional[BaseModel],
    new: BaseModel,
    ignore: tuple = ("updated_at",),
) -> List[FieldChange]:
    """Field-level diff between two versions of a record.

    A missing `old` (record creation) reports every non-empty field as new.
    """
    new_data = new.model_dump()
    old_data = old.model_dump() if old is not None else {}
    changes = []
    for field_name, new_value in new_data.items():
        if field_name in ignore:
            continue
        old_value = old_data.get(field_name)
        if old is None and new_value is None:
            continue
        if old_value != new_value:
            changes.append(FieldChange(
                field=field_name,
                old=_audit_value(old_value),
                new=_audit_value(new_value),
            ))
    return changes


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    company_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    document_number: Optional[str] = None,
    changes: Optional[List[FieldChange]] = None,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        severity: Event severity level
        company_id: Tenant the record belongs to
        entity_type: invoice, payment or lease
        entity_id: Row id of the record
        document_number: Formatted number of the record
        changes: Field-level diff (see diff_changes)
        details: Additional structured details
        actor: Who/what performed the action

    Returns:
        Configured AuditEvent ready for logging
    """
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        document_number=document_number,
        message=message,
        changes=changes or [],
        details=details or {},
        actor=actor,
    )


# =============================================================================
# Backends
# =============================================================================

class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, event: AuditEvent, session=None) -> None:
        """Persist an audit event, inside `session` when one is given."""
        pass

    @abstractmethod
    def query(
        self,
        event_type: Optional[str] = None,
        company_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events with filters."""
        pass


class SQLiteAuditBackend(AuditBackend):
    """Audit backend writing to the ledger's audit_events table."""

    def __init__(self, store):
        self.store = store

    def log(self, event: AuditEvent, session=None) -> None:
        if session is not None:
            session.insert_audit_event(event)
            return
        with self.store.transaction() as own_session:
            own_session.insert_audit_event(event)

    def query(
        self,
        event_type: Optional[str] = None,
        company_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        return self.store.query_audit_events(
            event_type=event_type,
            company_id=company_id,
            entity_id=entity_id,
            limit=limit,
        )


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent, session=None) -> None:
        self._events.append(event)

    def query(
        self,
        event_type: Optional[str] = None,
        company_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = []
        for event in self._events:
            if event_type and event.event_type != event_type:
                continue
            if company_id and event.company_id != company_id:
                continue
            if entity_id and event.entity_id != entity_id:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self._events.clear()


def event_to_row(event: AuditEvent) -> Dict[str, Any]:
    """Flatten an event into audit_events column values."""
    return {
        "event_id": event.event_id,
        "timestamp": event.timestamp.isoformat(),
        "event_type": event.event_type,
        "severity": event.severity.value,
        "company_id": event.company_id,
        "entity_type": event.entity_type,
        "entity_id": event.entity_id,
        "document_number": event.document_number,
        "message": event.message,
        "changes_json": json.dumps([c.model_dump() for c in event.changes]),
        "details_json": json.dumps(event.details, default=str),
        "actor": event.actor,
    }


def row_to_event(row) -> AuditEvent:
    """Inverse of event_to_row for a sqlite3.Row."""
    return AuditEvent(
        event_id=row["event_id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        event_type=row["event_type"],
        severity=AuditSeverity(row["severity"]),
        company_id=row["company_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        document_number=row["document_number"],
        message=row["message"],
        changes=[FieldChange(**c) for c in json.loads(row["changes_json"] or "[]")],
        details=json.loads(row["details_json"] or "{}"),
        actor=row["actor"],
    )


class AuditLogger:
    """Main audit logger that supports multiple backends.

    Usage:
        audit = AuditLogger()
        audit.add_backend(SQLiteAuditBackend(store))

        with store.transaction() as session:
            ...
            audit.log_info(
                AuditEventType.PAYMENT_TRANSITION,
                "Payment pending -> approved",
                session=session,
                company_id="co-1",
                entity_type="payment",
                entity_id=payment.id,
            )

    Backend failures propagate: an audit row that cannot be written rolls
    back the change it describes.
    """

    def __init__(self):
        self._backends: List[AuditBackend] = []

    def add_backend(self, backend: AuditBackend) -> None:
        """Add an audit backend."""
        self._backends.append(backend)

    def log(self, event: AuditEvent, session=None) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            backend.log(event, session=session)

    def log_info(
        self,
        event_type: AuditEventType,
        message: str,
        session=None,
        **kwargs,
    ) -> AuditEvent:
        """Log an INFO level event."""
        event = create_audit_event(event_type, message, AuditSeverity.INFO, **kwargs)
        self.log(event, session=session)
        return event

    def log_warning(
        self,
        event_type: AuditEventType,
        message: str,
        session=None,
        **kwargs,
    ) -> AuditEvent:
        """Log a WARN level event."""
        event = create_audit_event(event_type, message, AuditSeverity.WARN, **kwargs)
        self.log(event, session=session)
        return event

    def query(
        self,
        event_type: Optional[str] = None,
        company_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from all backends (returns first backend's results)."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, company_id, entity_id, limit)
