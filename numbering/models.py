"""Numbering Data Models.

This module defines the value objects used to mint document numbers:
- DocumentKind: Which series a number belongs to
- Period: The calendar bucket a sequence resets on
- TenantScope: The caller's tenant boundary, supplied by the access layer
- ScopeKey: The tuple numbering uniqueness is relative to
- ParsedNumber: A formatted number decomposed back into its parts
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional, Union

from core.errors import ValidationError


class DocumentKind(str, Enum):
    """Document series that receive formatted numbers."""
    INVOICE = "invoice"
    RECEIPT = "receipt"
    PAYMENT_REFERENCE = "payment_reference"
    TRANSACTION_REFERENCE = "transaction_reference"
    LEASE = "lease"

    @classmethod
    def coerce(cls, value: Union["DocumentKind", str]) -> "DocumentKind":
        """Accept an enum member or its value; reject anything else."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown document kind: {value!r}",
                {"allowed": [k.value for k in cls]},
            )


# Kinds whose series may be split per property
PROPERTY_SCOPED_KINDS = frozenset({DocumentKind.INVOICE, DocumentKind.LEASE})

# Kinds whose sequence resets daily instead of monthly
DAILY_KINDS = frozenset({DocumentKind.TRANSACTION_REFERENCE})


@dataclass(frozen=True)
class Period:
    """Calendar bucket for a sequence (month, or day for transaction refs)."""
    year: int
    month: int
    day: Optional[int] = None

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValidationError(f"Invalid month in period: {self.month}")
        if self.day is not None:
            # Raises ValueError for impossible dates such as Feb 30
            try:
                date(self.year, self.month, self.day)
            except ValueError as e:
                raise ValidationError(f"Invalid day in period: {e}")

    @classmethod
    def for_kind(cls, kind: DocumentKind, on: Union[date, datetime]) -> "Period":
        if kind in DAILY_KINDS:
            return cls(on.year, on.month, on.day)
        return cls(on.year, on.month)

    @property
    def key(self) -> str:
        if self.day is not None:
            return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class TenantScope:
    """Tenant boundary injected into every numbering and settlement call.

    Computed by the (external) role-scoping layer; this core never derives
    visibility itself.
    """
    company_id: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    agency_id: Optional[str] = None

    def __post_init__(self):
        if not self.company_id or not isinstance(self.company_id, str) or not self.company_id.strip():
            raise ValidationError("company_id must be a non-empty string")

    @property
    def actor(self) -> str:
        return self.user_id or "system"


@dataclass(frozen=True)
class ScopeKey:
    """The (company, kind, period, property code) tuple a sequence is unique in."""
    company_id: str
    kind: DocumentKind
    period: Period
    property_code: Optional[str] = None

    @property
    def counter_key(self) -> str:
        """Key of the cached counter row for this scope."""
        if self.property_code:
            return f"{self.period.key}|{self.property_code}"
        return self.period.key

    def matches(self, parsed: "ParsedNumber") -> bool:
        """Whether a parsed number belongs to this scope."""
        return (
            parsed.kind == self.kind
            and parsed.year == self.period.year
            and parsed.month == self.period.month
            and parsed.day == self.period.day
            and (parsed.property_code or None) == (self.property_code or None)
        )


@dataclass(frozen=True)
class ParsedNumber:
    """A formatted number decomposed into its parts.

    Attributes:
        kind: Series the number belongs to
        year: Four-digit year (two-digit legacy years are expanded to 20YY)
        month: Month 1-12
        sequence: Sequence within the scope
        property_code: Property sub-scope, if any
        day: Day of month (transaction references only)
        legacy: True when matched by a deprecated format
        format_name: Name of the format that matched
    """
    kind: DocumentKind
    year: int
    month: int
    sequence: int
    property_code: Optional[str] = None
    day: Optional[int] = None
    legacy: bool = False
    format_name: str = ""

    @property
    def period(self) -> Period:
        return Period(self.year, self.month, self.day)
