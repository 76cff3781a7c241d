"""Audit models for tracking changes to billing records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# =============================================================================
# Audit Event Models
# =============================================================================

class AuditSeverity(str, Enum):
    """Severity levels for audit events."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class FieldChange(BaseModel):
    """A single field that differs between the old and new version of a record."""
    field: str
    old: Optional[str] = None
    new: Optional[str] = None


class AuditEvent(BaseModel):
    """An audit event for tracking system actions.

    Provides traceability for every numbering and settlement change: which
    record moved, from what to what, and who triggered it.
    """
    event_id: str = Field(..., description="Unique event identifier")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Event timestamp")
    event_type: str = Field(..., description="Type of event (NUMBER_ALLOCATED, PAYMENT_TRANSITION, ...)")
    severity: AuditSeverity = Field(default=AuditSeverity.INFO, description="Event severity")

    # Context
    company_id: Optional[str] = Field(None, description="Tenant boundary")
    entity_type: Optional[str] = Field(None, description="invoice, payment or lease")
    entity_id: Optional[str] = Field(None, description="Row id of the changed record")
    document_number: Optional[str] = Field(None, description="Formatted number of the record")

    # Details
    message: str = Field(..., description="Human-readable message")
    changes: list[FieldChange] = Field(default_factory=list, description="Field-level diff")
    details: dict = Field(default_factory=dict, description="Additional event details")

    # Actor
    actor: str = Field(default="system", description="Who/what performed the action")
