"""Invoice endpoints.

Creates numbered invoices and applies generic status changes.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_documents
from api.services.documents import DocumentService
from core.models.billing import Invoice, InvoiceStatus
from numbering.models import TenantScope


router = APIRouter()


class InvoiceCreateRequest(BaseModel):
    """Request to bill a tenant."""
    company_id: str
    property_id: Optional[str] = None
    tenant_id: Optional[str] = None
    total_amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = None
    issue_date: date
    due_date: Optional[date] = None
    status: InvoiceStatus = InvoiceStatus.SENT
    user_id: Optional[str] = Field(None, description="Acting user, for the audit trail")


class InvoiceStatusRequest(BaseModel):
    """Request to send or cancel an invoice."""
    company_id: str
    status: InvoiceStatus
    user_id: Optional[str] = None


@router.post("", response_model=Invoice, status_code=201)
def create_invoice(
    body: InvoiceCreateRequest,
    documents: DocumentService = Depends(get_documents),
) -> Invoice:
    """Create an invoice with the next number in its scope.

    Returns 409 with retry_safe=true when no unique number could be allocated.
    """
    return documents.create_invoice(
        TenantScope(company_id=body.company_id, user_id=body.user_id),
        total_amount=body.total_amount,
        issue_date=body.issue_date,
        property_id=body.property_id,
        tenant_id=body.tenant_id,
        due_date=body.due_date,
        currency=body.currency,
        status=body.status,
    )


@router.get("/{invoice_id}", response_model=Invoice)
def get_invoice(
    invoice_id: str,
    company_id: str,
    documents: DocumentService = Depends(get_documents),
) -> Invoice:
    """Get an invoice by id."""
    return documents.get_invoice(TenantScope(company_id=company_id), invoice_id)


@router.patch("/{invoice_id}/status", response_model=Invoice)
def change_invoice_status(
    invoice_id: str,
    body: InvoiceStatusRequest,
    documents: DocumentService = Depends(get_documents),
) -> Invoice:
    """Send or cancel an invoice. Setting `paid` here is rejected with 409."""
    return documents.change_invoice_status(
        TenantScope(company_id=body.company_id, user_id=body.user_id),
        invoice_id,
        body.status,
    )
