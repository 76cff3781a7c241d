"""Numbering module - scoped, human-readable document numbers.

Components:
- models: DocumentKind, Period, TenantScope, ScopeKey, ParsedNumber
- scope: Scope resolution and property short codes
- formats: Parsing, validation and formatting of every number layout
- allocator: Next-number allocation with counter rows and bounded retry
- backfill: Counter reconstruction from historical numbers
"""

from numbering.models import (
    DocumentKind,
    Period,
    TenantScope,
    ScopeKey,
    ParsedNumber,
)
from numbering.scope import derive_property_code, resolve_scope
from numbering.formats import format_number, is_valid_number, parse_number
from numbering.allocator import MAX_ALLOCATION_ATTEMPTS, SequenceAllocator

__all__ = [
    "DocumentKind",
    "Period",
    "TenantScope",
    "ScopeKey",
    "ParsedNumber",
    "derive_property_code",
    "resolve_scope",
    "format_number",
    "is_valid_number",
    "parse_number",
    "MAX_ALLOCATION_ATTEMPTS",
    "SequenceAllocator",
]
