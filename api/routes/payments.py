"""Payment endpoints.

Payment intents, reconciliation runs, provider callbacks and reversals.
Provider signature verification happens upstream of /payments/webhook.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_documents, get_engine
from api.services.documents import DocumentService
from core.models.billing import BatchUpdateReport, Payment, ReconciliationFailure
from numbering.models import TenantScope
from reconciliation.engine import PendingPaymentFilter, ReconciliationEngine


router = APIRouter()


class PaymentIntentRequest(BaseModel):
    """Request to record an expected payment."""
    company_id: str
    invoice_id: str
    amount: Optional[Decimal] = Field(None, gt=0)
    payment_method: Optional[str] = None
    user_id: Optional[str] = None


class ReconcilePendingRequest(BaseModel):
    """Selects pending payments to reconcile."""
    company_id: Optional[str] = None
    tenant_id: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    all: bool = Field(False, description="Every pending payment with any reference present")


class ReconcilePendingResponse(BaseModel):
    """Outcome of a reconciliation run."""
    reconciled_count: int
    updated_ids: List[str]
    reconciled_ids: List[str]
    cancelled_ids: List[str]
    skipped_ids: List[str]
    failures: List[ReconciliationFailure]


class WebhookRequest(BaseModel):
    """A verified provider settlement event."""
    provider_reference: str = Field(..., min_length=1)
    invoice_id: str
    amount: Decimal = Field(..., gt=0)
    occurred_at: datetime
    payment_method: str = "online"


class SyncReferencesRequest(BaseModel):
    company_id: Optional[str] = None


class LinkUnmatchedRequest(BaseModel):
    company_id: str


class ReverseRequest(BaseModel):
    """Refund or reverse a settled payment."""
    refund: bool = False
    reason: Optional[str] = None
    user_id: Optional[str] = None


@router.post("/intents", response_model=Payment, status_code=201)
def create_payment_intent(
    body: PaymentIntentRequest,
    documents: DocumentService = Depends(get_documents),
) -> Payment:
    """Create a pending payment with placeholder receipt and internal references."""
    return documents.create_payment_intent(
        TenantScope(company_id=body.company_id, user_id=body.user_id),
        body.invoice_id,
        amount=body.amount,
        payment_method=body.payment_method,
    )


@router.post("/reconcile-pending", response_model=ReconcilePendingResponse)
def reconcile_pending(
    body: ReconcilePendingRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> ReconcilePendingResponse:
    """Promote or cancel pending payments. Per-payment failures are reported, not raised."""
    report = engine.reconcile_pending(PendingPaymentFilter(
        company_id=body.company_id,
        tenant_id=body.tenant_id,
        references=body.references,
        include_all=body.all,
    ))
    return ReconcilePendingResponse(
        reconciled_count=report.reconciled_count,
        updated_ids=report.updated_ids,
        reconciled_ids=report.reconciled_ids,
        cancelled_ids=report.cancelled_ids,
        skipped_ids=report.skipped_ids,
        failures=report.failures,
    )


@router.post("/webhook", response_model=Payment)
def payment_webhook(
    body: WebhookRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Payment:
    """Record a provider settlement; replays return the existing payment."""
    return engine.ingest_external_event(
        body.provider_reference,
        body.invoice_id,
        body.amount,
        body.occurred_at,
        payment_method=body.payment_method,
    )


@router.post("/sync-references", response_model=BatchUpdateReport)
def sync_references(
    body: SyncReferencesRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> BatchUpdateReport:
    """Backfill invoice payment_reference from the latest payment."""
    return engine.sync_invoice_payment_references(body.company_id)


@router.post("/link-unmatched", response_model=BatchUpdateReport)
def link_unmatched(
    body: LinkUnmatchedRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> BatchUpdateReport:
    """Attach settled payments without an invoice to a matching unpaid invoice."""
    return engine.link_unmatched_payments(body.company_id)


@router.post("/{payment_id}/reverse", response_model=Payment)
def reverse_payment(
    payment_id: str,
    body: ReverseRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Payment:
    """Refund or reverse a settled payment."""
    return engine.reverse_payment(
        payment_id,
        refund=body.refund,
        reason=body.reason,
        actor=body.user_id or "system",
    )
