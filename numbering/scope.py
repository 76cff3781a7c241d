"""Scope resolution for document numbering.

Derives the ScopeKey a new document is numbered in from its context:
the tenant boundary, the document kind, the date that fixes its period
and, for invoices and leases, an optional property short code.
"""

import re
from datetime import date, datetime
from typing import Optional, Union

from core.errors import ValidationError
from numbering.models import (
    DocumentKind,
    Period,
    PROPERTY_SCOPED_KINDS,
    ScopeKey,
    TenantScope,
)


MAX_PROPERTY_CODE_LENGTH = 4

_NON_LETTERS = re.compile(r"[^A-Z]")


def derive_property_code(property_name: Optional[str]) -> Optional[str]:
    """Derive a short property code from its name.

    - One word: first 3 letters ("Skyline" -> "SKY")
    - Two words: first letter of each plus second letter of word 2
      ("Green Valley" -> "GVA")
    - Three or more words: first letter of the first three words
      ("Green Valley Estates" -> "GVE")

    Non-letters are dropped from each word first. Returns None when
    nothing usable is left.
    """
    if not property_name:
        return None

    words = [_NON_LETTERS.sub("", w) for w in property_name.strip().upper().split()]
    words = [w for w in words if w]
    if not words:
        return None

    if len(words) == 1:
        code = words[0][:3]
    elif len(words) == 2:
        code = words[0][0] + words[1][0] + words[1][1:2]
    else:
        code = "".join(w[0] for w in words[:3])

    return code[:MAX_PROPERTY_CODE_LENGTH] or None


def normalize_property_code(code: Optional[str]) -> Optional[str]:
    """Validate an explicitly supplied property code."""
    if code is None:
        return None
    normalized = code.strip().upper()
    if not normalized:
        return None
    if not re.fullmatch(r"[A-Z]{1,%d}" % MAX_PROPERTY_CODE_LENGTH, normalized):
        raise ValidationError(
            f"Property code must be 1-{MAX_PROPERTY_CODE_LENGTH} letters: {code!r}"
        )
    return normalized


def resolve_scope(
    tenant: TenantScope,
    kind: Union[DocumentKind, str],
    on: Union[date, datetime],
    property_name: Optional[str] = None,
    property_code: Optional[str] = None,
) -> ScopeKey:
    """Build the numbering scope for a document.

    Args:
        tenant: Tenant boundary of the caller
        kind: Document kind (enum or its string value)
        on: Date that fixes the period (issue date, start date, payment date)
        property_name: Property name to derive a code from
        property_code: Explicit property code (wins over property_name)

    Returns:
        ScopeKey for the allocator

    Raises:
        ValidationError: Unknown kind, missing date, or a property code on a
            kind that is not property scoped
    """
    kind = DocumentKind.coerce(kind)
    if not isinstance(on, (date, datetime)):
        raise ValidationError(f"A date is required to resolve the numbering period, got {on!r}")

    code = normalize_property_code(property_code) if property_code else derive_property_code(property_name)
    if code and kind not in PROPERTY_SCOPED_KINDS:
        raise ValidationError(f"{kind.value} numbers cannot be scoped by property")

    return ScopeKey(
        company_id=tenant.company_id,
        kind=kind,
        period=Period.for_kind(kind, on),
        property_code=code,
    )
