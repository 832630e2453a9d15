# provisioning_engine/api/routes/hosts.py
"""Host management API routes."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Response

from provisioning_engine.api.dependencies import get_host_service
from provisioning_engine.api.schemas import (
    ConnectionTestRequest,
    HostCreateRequest,
    HostResponse,
    InitializationResponse,
    SwarmResponse,
)
from provisioning_engine.core.models import HostStatus
from provisioning_engine.host_manager.service import HostService, host_to_public_dict

router = APIRouter(prefix="/hosts", tags=["hosts"])


@router.post("", response_model=HostResponse, status_code=201)
def create_host(request: HostCreateRequest, service: HostService = Depends(get_host_service)):
    """Register a host. Initialization is started separately."""
    params = request.model_dump(exclude_none=True)
    if "swarm_id" in params:
        params["swarm_id"] = str(params["swarm_id"])
    host = service.create(params)
    return host_to_public_dict(host)


@router.post("/test-connection")
def test_connection(request: ConnectionTestRequest, service: HostService = Depends(get_host_service)):
    return service.test_connection(request.model_dump(exclude_none=True))


@router.get("", response_model=List[HostResponse])
def list_hosts(search: Optional[str] = None, service: HostService = Depends(get_host_service)):
    return [host_to_public_dict(h) for h in service.find_many(search)]


@router.get("/swarms", response_model=List[SwarmResponse])
def list_swarms(service: HostService = Depends(get_host_service)):
    return [
        SwarmResponse(
            swarm_id=s.swarm_id,
            name=s.name,
            cluster_id=s.cluster_id,
            manager_address=s.manager_address,
        )
        for s in service.find_swarms()
    ]


@router.get("/{host_id}", response_model=HostResponse)
def get_host(host_id: UUID, service: HostService = Depends(get_host_service)):
    return host_to_public_dict(service.find_one(host_id))


@router.post("/{host_id}/initialize", response_model=InitializationResponse, status_code=202)
def begin_initialization(host_id: UUID, service: HostService = Depends(get_host_service)):
    """Move the host to INITIALIZING and queue the provisioning run."""
    before = service.begin_initialization(host_id)
    return InitializationResponse(
        host_id=host_id,
        previous_status=before.status.value,
        status=HostStatus.INITIALIZING.value,
    )


@router.post("/{host_id}/reinitialize", response_model=HostResponse)
def reinitialize(host_id: UUID, service: HostService = Depends(get_host_service)):
    return host_to_public_dict(service.reinitialize(host_id))


@router.delete("/{host_id}", status_code=204)
def delete_host(host_id: UUID, service: HostService = Depends(get_host_service)):
    service.delete(host_id)
    return Response(status_code=204)
