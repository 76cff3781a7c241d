"""Sequence allocation for formatted document numbers.

The next sequence in a scope is the highest of
- the scope's counter row in number_sequences, and
- a live scan of existing numbers in the scope (parsed, so deprecated
  formats count too),
plus one. Allocation runs inside the caller's store transaction, and the
counter is advanced in that same transaction, so the number and the
document that carries it commit together.

The existence check and bounded retry stay in place for numbers written
outside the allocator (imports, manual fixes) that the counter has not
seen.
"""

from typing import Optional, Protocol, Sequence

from core.audit.events import AuditEventType, AuditLogger
from core.errors import CollisionExhausted
from core.observability.logging import get_logger
from core.observability.metrics import get_metrics
from numbering.formats import format_number, parse_number, scan_prefixes
from numbering.models import DocumentKind, ScopeKey


logger = get_logger(__name__)

# Fixed retry budget per allocation
MAX_ALLOCATION_ATTEMPTS = 10


class NumberStore(Protocol):
    """The store operations the allocator needs (satisfied by LedgerSession)."""

    def list_document_numbers(self, company_id: str, kind: DocumentKind, prefixes: Sequence[str]) -> list: ...

    def document_number_exists(self, company_id: str, kind: DocumentKind, number: str) -> bool: ...

    def get_sequence_counter(self, scope: ScopeKey) -> int: ...

    def advance_sequence_counter(self, scope: ScopeKey, sequence: int) -> None: ...


def scan_latest_sequence(session: NumberStore, scope: ScopeKey) -> int:
    """Highest sequence among existing numbers that parse into this scope."""
    prefixes = scan_prefixes(scope.kind, scope.period, scope.property_code)
    latest = 0
    for number in session.list_document_numbers(scope.company_id, scope.kind, prefixes):
        parsed = parse_number(number)
        if parsed is None or not scope.matches(parsed):
            continue
        latest = max(latest, parsed.sequence)
    return latest


class SequenceAllocator:
    """Mints the next formatted number for a scope.

    Usage:
        allocator = SequenceAllocator()
        with store.transaction() as session:
            scope = resolve_scope(tenant, DocumentKind.INVOICE, issue_date, property_name="Skyline")
            number = allocator.allocate(session, scope)
            session.insert_invoice(Invoice(number=number, ...))
    """

    def __init__(self, audit: Optional[AuditLogger] = None):
        self.audit = audit

    def latest_sequence(self, session: NumberStore, scope: ScopeKey) -> int:
        return max(session.get_sequence_counter(scope), scan_latest_sequence(session, scope))

    def allocate(self, session: NumberStore, scope: ScopeKey, attempt: int = 0) -> str:
        """Return an unused number for the scope and reserve it in the counter.

        Each retry offsets the candidate by the attempt count, so successive
        candidates are distinct.

        Raises:
            CollisionExhausted: All attempts produced numbers that already exist
        """
        metrics = get_metrics()
        if attempt >= MAX_ALLOCATION_ATTEMPTS:
            metrics.record_allocation_exhausted(scope.kind.value)
            logger.error(
                f"Numbering retry budget exhausted for {scope.kind.value} in {scope.counter_key}",
                extra_fields={"company_id": scope.company_id, "attempts": attempt},
            )
            raise CollisionExhausted(
                f"Could not allocate a unique {scope.kind.value} number after {attempt} attempts; "
                "retry the request",
                attempts=attempt,
            )

        sequence = self.latest_sequence(session, scope) + 1 + attempt
        candidate = format_number(scope.kind, scope.period, sequence, scope.property_code)

        if session.document_number_exists(scope.company_id, scope.kind, candidate):
            metrics.record_collision(scope.kind.value)
            logger.warning(
                f"Number collision on {candidate} (attempt {attempt + 1}/{MAX_ALLOCATION_ATTEMPTS})",
                extra_fields={"company_id": scope.company_id, "document_number": candidate},
            )
            if self.audit is not None:
                self.audit.log_warning(
                    AuditEventType.NUMBER_COLLISION,
                    f"Candidate {candidate} already exists",
                    session=session,
                    company_id=scope.company_id,
                    document_number=candidate,
                    details={"kind": scope.kind.value, "attempt": attempt},
                )
            try:
                return self.allocate(session, scope, attempt + 1)
            except CollisionExhausted as e:
                if e.last_candidate is None:
                    e.last_candidate = candidate
                    e.details["last_candidate"] = candidate
                raise

        session.advance_sequence_counter(scope, sequence)
        metrics.record_allocation(scope.kind.value)
        logger.debug(
            f"Allocated {candidate}",
            extra_fields={"company_id": scope.company_id, "document_number": candidate},
        )
        return candidate
