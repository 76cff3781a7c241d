"""Re-derive sequence counters from historical document numbers.

Used after a format migration or a bulk import: every stored number of
every kind is parsed (current and deprecated formats alike) and each
scope's counter is set to the highest sequence seen in it.
"""

from collections import defaultdict
from typing import Dict, Tuple

from core.observability.logging import get_logger
from numbering.formats import parse_number
from numbering.models import DocumentKind, ScopeKey


logger = get_logger(__name__)


def rebuild_sequence_counters(store, dry_run: bool = False) -> Dict[str, int]:
    """Recompute every number_sequences row from the stored numbers.

    Numbers that parse into a different kind than the column they sit in
    (or not at all, e.g. placeholders) are ignored.

    Args:
        store: LedgerStore
        dry_run: Compute without writing

    Returns:
        Mapping "company_id/kind/counter_key" -> highest sequence
    """
    highest: Dict[Tuple[str, DocumentKind, str], int] = defaultdict(int)
    skipped = 0

    with store.transaction() as session:
        for kind in DocumentKind:
            for company_id, number in session.list_all_document_numbers(kind):
                parsed = parse_number(number)
                if parsed is None or parsed.kind != kind:
                    skipped += 1
                    continue
                scope = ScopeKey(
                    company_id=company_id,
                    kind=kind,
                    period=parsed.period,
                    property_code=parsed.property_code,
                )
                key = (company_id, kind, scope.counter_key)
                highest[key] = max(highest[key], parsed.sequence)

        if not dry_run:
            session.clear_sequence_counters()
            for (company_id, kind, counter_key), sequence in highest.items():
                session.set_sequence_counter(company_id, kind, counter_key, sequence)

    logger.info(
        f"Rebuilt {len(highest)} sequence counters ({skipped} unparseable numbers skipped)",
        extra_fields={"dry_run": dry_run},
    )
    return {
        f"{company_id}/{kind.value}/{counter_key}": sequence
        for (company_id, kind, counter_key), sequence in sorted(highest.items(), key=lambda kv: (kv[0][0], kv[0][1].value, kv[0][2]))
    }
