"""Document number formats.

Formats every series has used, current and deprecated. Parsing tries them
in priority order and returns the first structural match; formatting
always renders the current format. Everything here is pure.

Current formats:
    INV-[CODE-]YYYY-MM-NNNN     invoice
    LSE-[CODE-]YYYY-MM-NNNN     lease
    RCT-YYYY-MM-NNNN            receipt
    PAY-YYYY-MM-NNN             payment reference
    TXN-YYYYMMDD-NNNN           transaction reference

Deprecated formats (still parsed so scope scans never undercount):
    INV-[CODE-]YYMM-NNN, LSE-[CODE-]YYMM-NNN, RCT-YYMM-NNN,
    PAY-YYMM-NNN, TXN-YYMMDD-NNN
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.errors import ValidationError
from numbering.models import (
    DAILY_KINDS,
    DocumentKind,
    ParsedNumber,
    Period,
    PROPERTY_SCOPED_KINDS,
)


KIND_PREFIXES: Dict[DocumentKind, str] = {
    DocumentKind.INVOICE: "INV",
    DocumentKind.RECEIPT: "RCT",
    DocumentKind.PAYMENT_REFERENCE: "PAY",
    DocumentKind.TRANSACTION_REFERENCE: "TXN",
    DocumentKind.LEASE: "LSE",
}

# Zero-padded width of the sequence in the current format
SEQUENCE_WIDTHS: Dict[DocumentKind, int] = {
    DocumentKind.INVOICE: 4,
    DocumentKind.RECEIPT: 4,
    DocumentKind.PAYMENT_REFERENCE: 3,
    DocumentKind.TRANSACTION_REFERENCE: 4,
    DocumentKind.LEASE: 4,
}

LEGACY_SEQUENCE_WIDTH = 3

_CODE = r"(?P<code>[A-Z]{1,4})"


@dataclass(frozen=True)
class NumberFormat:
    """One concrete layout of a document number.

    Attributes:
        name: Identifier reported in ParsedNumber.format_name
        kind: Series this layout belongs to
        pattern: Anchored regex with named groups year/month[/day]/seq[/code]
        legacy: Deprecated layout (two-digit year, narrower sequence)
        property_scoped: Carries a property code segment
    """
    name: str
    kind: DocumentKind
    pattern: "re.Pattern[str]"
    legacy: bool = False
    property_scoped: bool = False

    def match(self, number: str) -> Optional[ParsedNumber]:
        m = self.pattern.match(number)
        if not m:
            return None

        groups = m.groupdict()
        year = int(groups["year"])
        if self.legacy:
            year += 2000
        month = int(groups["month"])
        day = int(groups["day"]) if groups.get("day") else None

        try:
            Period(year, month, day)
        except ValidationError:
            return None

        return ParsedNumber(
            kind=self.kind,
            year=year,
            month=month,
            day=day,
            sequence=int(groups["seq"]),
            property_code=groups.get("code"),
            legacy=self.legacy,
            format_name=self.name,
        )


def _build_formats() -> List[NumberFormat]:
    formats: List[NumberFormat] = []
    for kind, prefix in KIND_PREFIXES.items():
        width = SEQUENCE_WIDTHS[kind]
        if kind in DAILY_KINDS:
            formats.append(NumberFormat(
                name=f"{prefix.lower()}_current",
                kind=kind,
                pattern=re.compile(rf"^{prefix}-(?P<year>\d{{4}})(?P<month>\d{{2}})(?P<day>\d{{2}})-(?P<seq>\d{{{width},}})$"),
            ))
            formats.append(NumberFormat(
                name=f"{prefix.lower()}_legacy",
                kind=kind,
                pattern=re.compile(rf"^{prefix}-(?P<year>\d{{2}})(?P<month>\d{{2}})(?P<day>\d{{2}})-(?P<seq>\d{{3,}})$"),
                legacy=True,
            ))
            continue

        if kind in PROPERTY_SCOPED_KINDS:
            formats.append(NumberFormat(
                name=f"{prefix.lower()}_property_current",
                kind=kind,
                pattern=re.compile(rf"^{prefix}-{_CODE}-(?P<year>\d{{4}})-(?P<month>\d{{2}})-(?P<seq>\d{{{width},}})$"),
                property_scoped=True,
            ))
        formats.append(NumberFormat(
            name=f"{prefix.lower()}_current",
            kind=kind,
            pattern=re.compile(rf"^{prefix}-(?P<year>\d{{4}})-(?P<month>\d{{2}})-(?P<seq>\d{{{width},}})$"),
        ))
        if kind in PROPERTY_SCOPED_KINDS:
            formats.append(NumberFormat(
                name=f"{prefix.lower()}_property_legacy",
                kind=kind,
                pattern=re.compile(rf"^{prefix}-{_CODE}-(?P<year>\d{{2}})(?P<month>\d{{2}})-(?P<seq>\d{{3,}})$"),
                legacy=True,
                property_scoped=True,
            ))
        formats.append(NumberFormat(
            name=f"{prefix.lower()}_legacy",
            kind=kind,
            pattern=re.compile(rf"^{prefix}-(?P<year>\d{{2}})(?P<month>\d{{2}})-(?P<seq>\d{{3,}})$"),
            legacy=True,
        ))
    return formats


# Priority order within each kind: property-scoped current, current,
# property-scoped legacy, legacy.
NUMBER_FORMATS: List[NumberFormat] = _build_formats()


# =============================================================================
# Parse / Validate
# =============================================================================

def parse_number(number: Optional[str]) -> Optional[ParsedNumber]:
    """Decompose a formatted number into kind, scope and sequence.

    Returns None when the value matches no known format.
    """
    if not number or not isinstance(number, str):
        return None
    candidate = number.strip()
    prefix = candidate[:3]
    for fmt in NUMBER_FORMATS:
        if KIND_PREFIXES[fmt.kind] != prefix:
            continue
        parsed = fmt.match(candidate)
        if parsed is not None:
            return parsed
    return None


def is_valid_number(number: Optional[str]) -> bool:
    """Whether the value matches any current or deprecated format."""
    return parse_number(number) is not None


# =============================================================================
# Format
# =============================================================================

def format_number(
    kind: DocumentKind,
    period: Period,
    sequence: int,
    property_code: Optional[str] = None,
) -> str:
    """Render a number in the current format for its kind.

    Raises:
        ValidationError: Non-positive sequence, a period of the wrong
            granularity, or a property code on a kind without sub-scopes
    """
    kind = DocumentKind.coerce(kind)
    if not isinstance(sequence, int) or sequence < 1:
        raise ValidationError(f"Sequence must be a positive integer, got {sequence!r}")

    prefix = KIND_PREFIXES[kind]
    seq = str(sequence).zfill(SEQUENCE_WIDTHS[kind])

    if kind in DAILY_KINDS:
        if period.day is None:
            raise ValidationError(f"{kind.value} numbers need a daily period")
        return f"{prefix}-{period.year:04d}{period.month:02d}{period.day:02d}-{seq}"

    if period.day is not None:
        raise ValidationError(f"{kind.value} numbers use a monthly period")

    if property_code:
        if kind not in PROPERTY_SCOPED_KINDS:
            raise ValidationError(f"{kind.value} numbers cannot be scoped by property")
        code = property_code.upper()[:4]
        return f"{prefix}-{code}-{period.year:04d}-{period.month:02d}-{seq}"

    return f"{prefix}-{period.year:04d}-{period.month:02d}-{seq}"


def scan_prefixes(
    kind: DocumentKind,
    period: Period,
    property_code: Optional[str] = None,
) -> List[str]:
    """Literal prefixes that every number of this scope starts with, per format.

    Used to narrow the store scan; results are still confirmed by parsing.
    """
    prefix = KIND_PREFIXES[kind]
    yy = f"{period.year % 100:02d}"
    if kind in DAILY_KINDS:
        return [
            f"{prefix}-{period.year:04d}{period.month:02d}{period.day:02d}-",
            f"{prefix}-{yy}{period.month:02d}{period.day:02d}-",
        ]
    head = f"{prefix}-{property_code}-" if property_code else f"{prefix}-"
    return [
        f"{head}{period.year:04d}-{period.month:02d}-",
        f"{head}{yy}{period.month:02d}-",
    ]
