"""Lease and property endpoints."""

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.dependencies import get_documents
from api.services.documents import DocumentService
from core.models.billing import Lease, LeaseStatus, Property
from numbering.models import TenantScope


router = APIRouter()


class PropertyCreateRequest(BaseModel):
    """Request to register a property."""
    company_id: str
    name: str = Field(..., min_length=1)


class LeaseCreateRequest(BaseModel):
    """Request to create a lease."""
    company_id: str
    property_id: Optional[str] = None
    tenant_id: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    rent_amount: Optional[Decimal] = Field(None, gt=0)
    status: LeaseStatus = LeaseStatus.ACTIVE
    user_id: Optional[str] = None


class LeaseUpdateRequest(BaseModel):
    """Partial lease update; omitted fields are left unchanged."""
    company_id: str
    tenant_id: Optional[str] = None
    property_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    rent_amount: Optional[Decimal] = Field(None, gt=0)
    status: Optional[LeaseStatus] = None
    user_id: Optional[str] = None


@router.post("/properties", response_model=Property, status_code=201)
def register_property(
    body: PropertyCreateRequest,
    documents: DocumentService = Depends(get_documents),
) -> Property:
    """Register a property; its name drives the numbering code."""
    return documents.register_property(TenantScope(company_id=body.company_id), body.name)


@router.post("/leases", response_model=Lease, status_code=201)
def create_lease(
    body: LeaseCreateRequest,
    documents: DocumentService = Depends(get_documents),
) -> Lease:
    """Create a lease with the next number in its scope."""
    return documents.create_lease(
        TenantScope(company_id=body.company_id, user_id=body.user_id),
        start_date=body.start_date,
        property_id=body.property_id,
        tenant_id=body.tenant_id,
        end_date=body.end_date,
        rent_amount=body.rent_amount,
        status=body.status,
    )


@router.patch("/leases/{lease_id}", response_model=Lease)
def update_lease(
    lease_id: str,
    body: LeaseUpdateRequest,
    documents: DocumentService = Depends(get_documents),
) -> Lease:
    """Modify a lease; the change is diffed into the audit trail."""
    changes = body.model_dump(exclude_unset=True, exclude={"company_id", "user_id"})
    return documents.update_lease(
        TenantScope(company_id=body.company_id, user_id=body.user_id),
        lease_id,
        changes,
    )
