# provisioning_engine/api/routes/domains.py
"""Domain API routes."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from provisioning_engine.api.dependencies import get_domain_service
from provisioning_engine.api.schemas import DomainCreateRequest, DomainResponse, DomainUpdateRequest
from provisioning_engine.domains.service import DomainService, domain_to_public_dict

router = APIRouter(prefix="/domains", tags=["domains"])


@router.post("", response_model=DomainResponse, status_code=201)
def add_domain(request: DomainCreateRequest, service: DomainService = Depends(get_domain_service)):
    """Register a domain; distribution to the fleet is queued."""
    return domain_to_public_dict(service.add_domain(request.model_dump(exclude_none=True)))


@router.get("", response_model=List[DomainResponse])
def list_domains(
    search: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: DomainService = Depends(get_domain_service),
):
    return [domain_to_public_dict(d) for d in service.find_many(search, limit=limit, offset=offset)]


@router.get("/{domain_id}", response_model=DomainResponse)
def get_domain(domain_id: UUID, service: DomainService = Depends(get_domain_service)):
    return domain_to_public_dict(service.find_one(domain_id))


@router.patch("/{domain_id}", response_model=DomainResponse)
def update_domain(
    domain_id: UUID,
    request: DomainUpdateRequest,
    service: DomainService = Depends(get_domain_service),
):
    return domain_to_public_dict(service.update_domain(domain_id, request.model_dump(exclude_unset=True)))


@router.post("/{domain_id}/initialize")
def begin_initialization(domain_id: UUID, service: DomainService = Depends(get_domain_service)):
    """Push the domain to every active host now."""
    linked = service.begin_initialization(domain_id)
    return {"domain_id": str(domain_id), "synced_hosts": [str(l.host_id) for l in linked]}
