"""Ledger Database Operations.

This module handles all database operations for the billing core:
- Schema initialization
- CRUD for properties, invoices, payments and leases
- Settled-payment aggregates used by settlement recompute
- Document number scans and the per-scope sequence counters
- Audit event persistence

Every write goes through LedgerStore.transaction(), which opens a
`BEGIN IMMEDIATE` transaction: one writer at a time, a consistent view for
the read-then-write sequences of allocation and ingestion, and an atomic
commit or rollback.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from core.audit.events import event_to_row, row_to_event
from core.config import get_settings
from core.errors import InconsistentStateError, NotFoundError, ValidationError
from core.models.billing import (
    Invoice,
    Lease,
    Payment,
    PaymentStatus,
    Property,
    SETTLED_PAYMENT_STATUSES,
)
from core.models.refs import AuditEvent
from numbering.models import DocumentKind, ScopeKey


# (table, column) holding each document kind's formatted number
NUMBER_COLUMNS: Dict[DocumentKind, Tuple[str, str]] = {
    DocumentKind.INVOICE: ("invoices", "number"),
    DocumentKind.LEASE: ("leases", "number"),
    DocumentKind.RECEIPT: ("payments", "receipt_number"),
    DocumentKind.PAYMENT_REFERENCE: ("payments", "reference_number"),
    DocumentKind.TRANSACTION_REFERENCE: ("payments", "transaction_id"),
}

PROPERTY_COLUMNS = ("id", "company_id", "name", "created_at", "updated_at")

INVOICE_COLUMNS = (
    "id", "company_id", "property_id", "tenant_id", "number", "status",
    "total_amount", "currency", "issue_date", "due_date", "paid_date",
    "payment_method", "payment_reference", "created_at", "updated_at",
)

PAYMENT_COLUMNS = (
    "id", "company_id", "invoice_id", "tenant_id", "amount", "currency",
    "status", "receipt_number", "reference_number", "transaction_id",
    "payment_method", "payment_date", "processed_at", "notes",
    "created_at", "updated_at",
)

LEASE_COLUMNS = (
    "id", "company_id", "property_id", "tenant_id", "number", "start_date",
    "end_date", "rent_amount", "status", "created_at", "updated_at",
)

AUDIT_COLUMNS = (
    "event_id", "timestamp", "event_type", "severity", "company_id",
    "entity_type", "entity_id", "document_number", "message",
    "changes_json", "details_json", "actor",
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every *_at column is stored in."""
    return datetime.utcnow()


def to_naive_utc(value: datetime) -> datetime:
    """Naive UTC form of a timestamp; aware values are converted first."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _to_db(value: Any) -> Any:
    """Convert a model value into its SQLite representation."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_naive_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _row_values(record, columns: Sequence[str]) -> Tuple:
    return tuple(_to_db(getattr(record, column)) for column in columns)


def _stored_amount(row: sqlite3.Row) -> Decimal:
    try:
        amount = Decimal(row["amount"])
    except (InvalidOperation, TypeError):
        amount = None
    if amount is None or not amount.is_finite():
        raise InconsistentStateError(
            f"Payment {row['id']} has a malformed amount: {row['amount']!r}",
            {"payment_id": row["id"]},
        )
    return amount


def init_db(db_path: Optional[Path] = None) -> None:
    """Initialize ledger tables.

    Creates:
    - properties: Managed properties (name drives the numbering code)
    - invoices: Billed amounts, number unique per company
    - payments: Payments and pending placeholders, receipt and provider
      transaction unique per company
    - leases: Tenancy agreements, number unique per company
    - number_sequences: Highest sequence issued per numbering scope
    - audit_events: Diff-and-append audit trail

    Args:
        db_path: Path to SQLite database file
    """
    db_path = db_path or get_settings().db_path
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS properties (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS invoices (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                property_id TEXT,
                tenant_id TEXT,
                number TEXT NOT NULL,
                status TEXT NOT NULL,
                total_amount TEXT NOT NULL,
                currency TEXT NOT NULL DEFAULT 'KES',
                issue_date TEXT NOT NULL,
                due_date TEXT,
                paid_date TEXT,
                payment_method TEXT,
                payment_reference TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(company_id, number)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                invoice_id TEXT,
                tenant_id TEXT,
                amount TEXT NOT NULL,
                currency TEXT NOT NULL DEFAULT 'KES',
                status TEXT NOT NULL,
                receipt_number TEXT,
                reference_number TEXT,
                transaction_id TEXT,
                payment_method TEXT,
                payment_date TEXT,
                processed_at TEXT,
                notes TEXT,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(company_id, receipt_number),
                UNIQUE(company_id, transaction_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS leases (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL,
                property_id TEXT,
                tenant_id TEXT,
                number TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT,
                rent_amount TEXT,
                status TEXT NOT NULL,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(company_id, number)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS number_sequences (
                company_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                counter_key TEXT NOT NULL,
                last_sequence INTEGER NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (company_id, kind, counter_key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_events (
                event_id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                company_id TEXT,
                entity_type TEXT,
                entity_id TEXT,
                document_number TEXT,
                message TEXT NOT NULL,
                changes_json TEXT,
                details_json TEXT,
                actor TEXT
            )
        """)

        # Indexes for the settlement and reconciliation lookups
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_invoice
            ON payments(invoice_id, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_pending
            ON payments(status, tenant_id)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_invoices_status
            ON invoices(company_id, status, due_date)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_audit_entity
            ON audit_events(entity_id)
        """)

        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Session (one open transaction)
# =============================================================================

class LedgerSession:
    """Reads and writes inside one open transaction.

    Obtained from LedgerStore.transaction(); never commits on its own.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _fetchone(self, sql: str, params: Sequence = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Sequence = ()) -> List[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    def _insert(self, table: str, columns: Sequence[str], record) -> None:
        placeholders = ", ".join("?" for _ in columns)
        self.conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            _row_values(record, columns),
        )

    def _update(self, table: str, columns: Sequence[str], record) -> None:
        assignments = ", ".join(f"{c} = ?" for c in columns if c != "id")
        values = tuple(_to_db(getattr(record, c)) for c in columns if c != "id")
        cursor = self.conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            values + (record.id,),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"{table[:-1].capitalize()} not found: {record.id}")

    # =========================================================================
    # Properties
    # =========================================================================

    def insert_property(self, prop: Property) -> Property:
        self._insert("properties", PROPERTY_COLUMNS, prop)
        return prop

    def get_property(self, property_id: str) -> Optional[Property]:
        row = self._fetchone("SELECT * FROM properties WHERE id = ?", (property_id,))
        return Property.model_validate(dict(row)) if row else None

    # =========================================================================
    # Invoices
    # =========================================================================

    def insert_invoice(self, invoice: Invoice) -> Invoice:
        self._insert("invoices", INVOICE_COLUMNS, invoice)
        return invoice

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        row = self._fetchone("SELECT * FROM invoices WHERE id = ?", (invoice_id,))
        return Invoice.model_validate(dict(row)) if row else None

    def update_invoice(self, invoice: Invoice) -> Invoice:
        self._update("invoices", INVOICE_COLUMNS, invoice)
        return invoice

    def list_invoices(
        self,
        company_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        due_before: Optional[date] = None,
    ) -> List[Invoice]:
        clauses, params = [], []
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(_to_db(s) for s in statuses)
        if due_before:
            clauses.append("due_date IS NOT NULL AND due_date < ?")
            params.append(due_before.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(
            f"SELECT * FROM invoices {where} ORDER BY issue_date, created_at, rowid",
            params,
        )
        return [Invoice.model_validate(dict(r)) for r in rows]

    def list_invoice_ids_with_payments(self, company_id: Optional[str] = None) -> List[str]:
        sql = """
            SELECT DISTINCT i.id FROM invoices i
            JOIN payments p ON p.invoice_id = i.id
        """
        params: List[Any] = []
        if company_id:
            sql += " WHERE i.company_id = ?"
            params.append(company_id)
        sql += " ORDER BY i.id"
        return [r["id"] for r in self._fetchall(sql, params)]

    # =========================================================================
    # Payments
    # =========================================================================

    def insert_payment(self, payment: Payment) -> Payment:
        self._insert("payments", PAYMENT_COLUMNS, payment)
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        row = self._fetchone("SELECT * FROM payments WHERE id = ?", (payment_id,))
        return Payment.model_validate(dict(row)) if row else None

    def update_payment(self, payment: Payment) -> Payment:
        self._update("payments", PAYMENT_COLUMNS, payment)
        return payment

    def delete_payment(self, payment_id: str) -> None:
        self.conn.execute("DELETE FROM payments WHERE id = ?", (payment_id,))

    def list_payments(self, invoice_id: str) -> List[Payment]:
        """Payments of an invoice, most recent first.

        Ordered by payment_date desc (undated last), then creation order desc.
        """
        rows = self._fetchall("""
            SELECT * FROM payments
            WHERE invoice_id = ?
            ORDER BY payment_date IS NULL, payment_date DESC, created_at DESC, rowid DESC
        """, (invoice_id,))
        return [Payment.model_validate(dict(r)) for r in rows]

    def find_payment_by_reference(self, company_id: str, reference: str) -> Optional[Payment]:
        """Payment whose transaction_id or receipt_number equals the reference."""
        row = self._fetchone("""
            SELECT * FROM payments
            WHERE company_id = ? AND (transaction_id = ? OR receipt_number = ?)
            ORDER BY created_at, rowid
            LIMIT 1
        """, (company_id, reference, reference))
        return Payment.model_validate(dict(row)) if row else None

    def list_pending_payments(
        self,
        company_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        references: Optional[Sequence[str]] = None,
        include_all: bool = False,
    ) -> List[Payment]:
        """Pending payments selected by explicit references and/or any reference present.

        Oldest first.
        """
        if not references and not include_all:
            raise ValidationError("Provide references or include_all")

        clauses = ["status = ?"]
        params: List[Any] = [PaymentStatus.PENDING.value]
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        if tenant_id:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)

        alternatives = []
        if references:
            marks = ", ".join("?" for _ in references)
            alternatives.append(f"reference_number IN ({marks})")
            params.extend(references)
            alternatives.append(f"transaction_id IN ({marks})")
            params.extend(references)
        if include_all:
            alternatives.append("reference_number IS NOT NULL")
            alternatives.append("transaction_id IS NOT NULL")
        clauses.append(f"({' OR '.join(alternatives)})")

        rows = self._fetchall(
            f"SELECT * FROM payments WHERE {' AND '.join(clauses)} ORDER BY created_at, rowid",
            params,
        )
        return [Payment.model_validate(dict(r)) for r in rows]

    def list_unlinked_settled_payments(self, company_id: str) -> List[Payment]:
        marks = ", ".join("?" for _ in SETTLED_PAYMENT_STATUSES)
        rows = self._fetchall(f"""
            SELECT * FROM payments
            WHERE company_id = ? AND invoice_id IS NULL AND status IN ({marks})
            ORDER BY created_at, rowid
        """, (company_id, *[s.value for s in SETTLED_PAYMENT_STATUSES]))
        return [Payment.model_validate(dict(r)) for r in rows]

    def settled_total(self, invoice_id: str, exclude_payment_id: Optional[str] = None) -> Decimal:
        """Sum of approved/completed payment amounts for an invoice.

        Summed as Decimal in Python; amounts are TEXT and SQL SUM would go
        through floating point.
        """
        marks = ", ".join("?" for _ in SETTLED_PAYMENT_STATUSES)
        sql = f"SELECT id, amount FROM payments WHERE invoice_id = ? AND status IN ({marks})"
        params: List[Any] = [invoice_id, *[s.value for s in SETTLED_PAYMENT_STATUSES]]
        if exclude_payment_id:
            sql += " AND id != ?"
            params.append(exclude_payment_id)
        return sum((_stored_amount(r) for r in self._fetchall(sql, params)), Decimal("0"))

    # =========================================================================
    # Leases
    # =========================================================================

    def insert_lease(self, lease: Lease) -> Lease:
        self._insert("leases", LEASE_COLUMNS, lease)
        return lease

    def get_lease(self, lease_id: str) -> Optional[Lease]:
        row = self._fetchone("SELECT * FROM leases WHERE id = ?", (lease_id,))
        return Lease.model_validate(dict(row)) if row else None

    def update_lease(self, lease: Lease) -> Lease:
        self._update("leases", LEASE_COLUMNS, lease)
        return lease

    # =========================================================================
    # Document numbers and sequence counters
    # =========================================================================

    def list_document_numbers(
        self,
        company_id: str,
        kind: DocumentKind,
        prefixes: Sequence[str],
    ) -> List[str]:
        """Numbers of a kind in a company that start with any of the prefixes."""
        table, column = NUMBER_COLUMNS[kind]
        if not prefixes:
            return []
        likes = " OR ".join(f"substr({column}, 1, ?) = ?" for _ in prefixes)
        params: List[Any] = [company_id]
        for prefix in prefixes:
            params.extend([len(prefix), prefix])
        rows = self._fetchall(
            f"SELECT {column} AS number FROM {table} WHERE company_id = ? AND ({likes})",
            params,
        )
        return [r["number"] for r in rows]

    def list_all_document_numbers(self, kind: DocumentKind) -> List[Tuple[str, str]]:
        """(company_id, number) for every non-null number of a kind."""
        table, column = NUMBER_COLUMNS[kind]
        rows = self._fetchall(
            f"SELECT company_id, {column} AS number FROM {table} WHERE {column} IS NOT NULL"
        )
        return [(r["company_id"], r["number"]) for r in rows]

    def document_number_exists(self, company_id: str, kind: DocumentKind, number: str) -> bool:
        table, column = NUMBER_COLUMNS[kind]
        row = self._fetchone(
            f"SELECT 1 FROM {table} WHERE company_id = ? AND {column} = ? LIMIT 1",
            (company_id, number),
        )
        return row is not None

    def get_sequence_counter(self, scope: ScopeKey) -> int:
        row = self._fetchone("""
            SELECT last_sequence FROM number_sequences
            WHERE company_id = ? AND kind = ? AND counter_key = ?
        """, (scope.company_id, scope.kind.value, scope.counter_key))
        return row["last_sequence"] if row else 0

    def advance_sequence_counter(self, scope: ScopeKey, sequence: int) -> None:
        """Raise the scope counter to `sequence` (never lowers it)."""
        self.conn.execute("""
            INSERT INTO number_sequences (company_id, kind, counter_key, last_sequence, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(company_id, kind, counter_key) DO UPDATE SET
                last_sequence = MAX(last_sequence, excluded.last_sequence),
                updated_at = excluded.updated_at
        """, (scope.company_id, scope.kind.value, scope.counter_key, sequence, utcnow().isoformat()))

    def set_sequence_counter(self, company_id: str, kind: DocumentKind, counter_key: str, value: int) -> None:
        """Overwrite a counter (backfill only)."""
        self.conn.execute("""
            INSERT INTO number_sequences (company_id, kind, counter_key, last_sequence, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(company_id, kind, counter_key) DO UPDATE SET
                last_sequence = excluded.last_sequence,
                updated_at = excluded.updated_at
        """, (company_id, kind.value, counter_key, value, utcnow().isoformat()))

    def clear_sequence_counters(self) -> None:
        self.conn.execute("DELETE FROM number_sequences")

    # =========================================================================
    # Audit
    # =========================================================================

    def insert_audit_event(self, event: AuditEvent) -> None:
        row = event_to_row(event)
        placeholders = ", ".join("?" for _ in AUDIT_COLUMNS)
        self.conn.execute(
            f"INSERT INTO audit_events ({', '.join(AUDIT_COLUMNS)}) VALUES ({placeholders})",
            tuple(row[c] for c in AUDIT_COLUMNS),
        )


# =============================================================================
# Store
# =============================================================================

class LedgerStore:
    """Entry point to the ledger database.

    Usage:
        store = LedgerStore(Path("billing.db"))
        store.init_db()
        with store.transaction() as session:
            invoice = session.get_invoice(invoice_id)
            ...
    """

    def __init__(self, db_path: Optional[Path] = None, timeout: float = 30.0):
        self.db_path = Path(db_path) if db_path else get_settings().db_path
        self.timeout = timeout

    def init_db(self) -> None:
        init_db(self.db_path)

    def get_db_connection(self) -> sqlite3.Connection:
        """Get SQLite database connection in autocommit mode with Row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[LedgerSession]:
        """Run a unit of work under the database write lock.

        Commits when the block exits normally and rolls back on any exception,
        which is re-raised.
        """
        conn = self.get_db_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield LedgerSession(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def query_audit_events(
        self,
        event_type: Optional[str] = None,
        company_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses, params = [], []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        conn = self.get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM audit_events {where} ORDER BY timestamp, rowid LIMIT ?",
                params,
            ).fetchall()
            return [row_to_event(r) for r in rows]
        finally:
            conn.close()

    def ping(self) -> bool:
        """Cheap connectivity check for readiness probes."""
        conn = self.get_db_connection()
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        finally:
            conn.close()
