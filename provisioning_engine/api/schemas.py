from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


# ============================================
# HOSTS
# ============================================

class HostCreateRequest(BaseModel):
    """Optional fields so missing ones are reported by the service as a 400."""
    name: Optional[str] = None
    address: Optional[str] = None
    ssh_port: Optional[int] = 22
    admin_username: Optional[str] = None
    private_key: Optional[str] = None
    create_swarm: Optional[bool] = None
    swarm_id: Optional[UUID] = None
    node_role: Optional[str] = None


class ConnectionTestRequest(BaseModel):
    address: Optional[str] = None
    ssh_port: Optional[int] = 22
    admin_username: Optional[str] = None
    private_key: Optional[str] = None


class IntegrationLinkResponse(BaseModel):
    kind: str
    integration_id: UUID


class HostResponse(BaseModel):
    host_id: UUID
    name: str
    address: str
    ssh_port: int
    status: str
    record_status: str
    availability: str
    availability_changed_at: datetime
    system_info: Optional[Dict[str, Any]] = None
    integrations: List[IntegrationLinkResponse] = Field(default_factory=list)
    checkpoint: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class InitializationResponse(BaseModel):
    host_id: UUID
    previous_status: str
    status: str


class SwarmResponse(BaseModel):
    swarm_id: UUID
    name: str
    cluster_id: str
    manager_address: str


# ============================================
# DOMAINS
# ============================================

class DomainCreateRequest(BaseModel):
    domain_name: Optional[str] = None
    description: Optional[str] = None


class DomainUpdateRequest(BaseModel):
    domain_name: Optional[str] = None
    description: Optional[str] = None


class LinkedServerResponse(BaseModel):
    host_id: UUID
    status: str
    last_sync: datetime


class DomainResponse(BaseModel):
    domain_id: UUID
    domain_name: str
    status: str
    description: Optional[str] = None
    ssl_status: str
    linked_servers: List[LinkedServerResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# ============================================
# APPLICATIONS
# ============================================

class DirectivesRequest(BaseModel):
    nginx_directives: Optional[str] = None


class DeploymentGroupsRequest(BaseModel):
    requests: List[Dict[str, Any]]


class ApplicationResponse(BaseModel):
    application_id: UUID
    name: str
    nginx_directives: Optional[str] = None
    deployment_groups: Dict[str, str] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
