"""Core domain models (hosts, integrations, swarms, domains, applications)."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================
# ENUMS
# ============================================

class HostStatus(Enum):
    """Host provisioning status."""
    PENDING_INITIALIZATION = "PENDING_INITIALIZATION"
    INITIALIZING = "INITIALIZING"
    SUCCESSFUL_INITIALIZATION = "SUCCESSFUL_INITIALIZATION"
    FAILED_INITIALIZATION = "FAILED_INITIALIZATION"


class RecordStatus(Enum):
    """Soft-delete status shared by every persisted record."""
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class Availability(Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"


class InitializationOutcome(Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProvisioningStage(Enum):
    """Pipeline checkpoints, in execution order."""
    OS_CHECK = "OS_CHECK"
    INVENTORY = "INVENTORY"
    ENGINE = "ENGINE"
    PROXY = "PROXY"
    CLUSTER = "CLUSTER"
    DOMAIN_SYNC = "DOMAIN_SYNC"

    @classmethod
    def ordered(cls) -> List["ProvisioningStage"]:
        return list(cls)

    def next(self) -> Optional["ProvisioningStage"]:
        stages = self.ordered()
        index = stages.index(self)
        return stages[index + 1] if index + 1 < len(stages) else None


class IntegrationKind(Enum):
    DOCKER = "DOCKER"
    NGINX = "NGINX"


class NodeRole(Enum):
    MANAGER = "MANAGER"
    WORKER = "WORKER"


class SyncStatus(Enum):
    ACTIVE = "ACTIVE"


class SSLStatus(Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


class Module(Enum):
    """Module tag used in error logs and integration ownership."""
    SERVER = "SERVER"
    DOMAIN = "DOMAIN"
    APPLICATION = "APPLICATION"


# ============================================
# VALUE OBJECTS
# ============================================

@dataclass(frozen=True)
class EncryptedData:
    """Ciphertext plus the IV it was produced with (both hex encoded)."""
    iv: str
    encrypted_data: str

    def to_dict(self) -> Dict[str, str]:
        return {"iv": self.iv, "encrypted_data": self.encrypted_data}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, str]]) -> Optional["EncryptedData"]:
        if not data:
            return None
        return cls(iv=data["iv"], encrypted_data=data["encrypted_data"])


@dataclass
class PendingSetup:
    """Desired cluster action, cleared after a successful initialization."""
    create_swarm: bool = True
    swarm_id: Optional[UUID] = None
    node_role: NodeRole = NodeRole.WORKER

    def to_dict(self) -> Dict[str, Any]:
        return {
            "create_swarm": self.create_swarm,
            "swarm_id": str(self.swarm_id) if self.swarm_id else None,
            "node_role": self.node_role.value,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PendingSetup"]:
        if not data:
            return None
        return cls(
            create_swarm=bool(data.get("create_swarm")),
            swarm_id=UUID(data["swarm_id"]) if data.get("swarm_id") else None,
            node_role=NodeRole(data.get("node_role") or NodeRole.WORKER.value),
        )


@dataclass
class SystemInfo:
    os: str
    architecture: Optional[str] = None
    cpu_core_count: Optional[int] = None
    cpu_model: Optional[str] = None
    total_storage: int = 0
    disks: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "os": self.os,
            "architecture": self.architecture,
            "cpu_core_count": self.cpu_core_count,
            "cpu_model": self.cpu_model,
            "storage": {"total_storage": self.total_storage, "disks": self.disks},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SystemInfo"]:
        if not data:
            return None
        storage = data.get("storage") or {}
        return cls(
            os=data.get("os", ""),
            architecture=data.get("architecture"),
            cpu_core_count=data.get("cpu_core_count"),
            cpu_model=data.get("cpu_model"),
            total_storage=storage.get("total_storage", 0),
            disks=storage.get("disks", {}),
        )


@dataclass
class EngineCertificates:
    """Encrypted PEM material for the container engine's mutual TLS API."""
    ca: EncryptedData
    server_cert: EncryptedData
    server_key: EncryptedData
    client_cert: EncryptedData
    client_key: EncryptedData

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ca": self.ca.to_dict(),
            "server": {"cert": self.server_cert.to_dict(), "key": self.server_key.to_dict()},
            "client": {"cert": self.client_cert.to_dict(), "key": self.client_key.to_dict()},
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["EngineCertificates"]:
        if not data:
            return None
        return cls(
            ca=EncryptedData.from_dict(data["ca"]),
            server_cert=EncryptedData.from_dict(data["server"]["cert"]),
            server_key=EncryptedData.from_dict(data["server"]["key"]),
            client_cert=EncryptedData.from_dict(data["client"]["cert"]),
            client_key=EncryptedData.from_dict(data["client"]["key"]),
        )


@dataclass
class IntegrationLink:
    """Host-side reference to an integration record."""
    kind: IntegrationKind
    integration_id: UUID


# ============================================
# HOST
# ============================================

@dataclass
class Host:
    """A managed remote machine."""
    host_id: UUID
    name: str
    address: str
    ssh_port: int
    admin_username: EncryptedData
    private_key: EncryptedData

    status: HostStatus = HostStatus.PENDING_INITIALIZATION
    record_status: RecordStatus = RecordStatus.ACTIVE

    availability: Availability = Availability.ONLINE
    availability_changed_at: datetime = field(default_factory=utcnow)

    system_info: Optional[SystemInfo] = None
    integration_links: List[IntegrationLink] = field(default_factory=list)
    pending_setup: Optional[PendingSetup] = None
    engine_certificates: Optional[EngineCertificates] = None

    # Last pipeline stage that completed; a reinitialize resumes after it.
    checkpoint: Optional[ProvisioningStage] = None
    last_error: Optional[str] = None
    initialization_started_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_online(self) -> bool:
        return self.availability == Availability.ONLINE

    def is_deleted(self) -> bool:
        return self.record_status == RecordStatus.DELETED

    def is_eligible_target(self) -> bool:
        """Online and not deleted: the pre-filter every fan-out applies."""
        return self.is_online() and not self.is_deleted()

    def link_for(self, kind: IntegrationKind) -> Optional[IntegrationLink]:
        for link in self.integration_links:
            if link.kind == kind:
                return link
        return None

    def resume_stage(self) -> ProvisioningStage:
        if self.checkpoint is None:
            return ProvisioningStage.OS_CHECK
        return self.checkpoint.next() or ProvisioningStage.OS_CHECK


# ============================================
# INTEGRATIONS / SWARMS
# ============================================

@dataclass
class Integration:
    integration_id: UUID
    kind: IntegrationKind
    config: Dict[str, Any] = field(default_factory=dict)
    status: RecordStatus = RecordStatus.ACTIVE
    module: Module = Module.SERVER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Swarm:
    """A container orchestration cluster known to the platform."""
    swarm_id: UUID
    name: str
    cluster_id: str
    manager_address: str
    worker_token: str
    manager_token: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def join_token(self, role: NodeRole) -> str:
        return self.manager_token if role == NodeRole.MANAGER else self.worker_token


# ============================================
# DOMAINS
# ============================================

@dataclass
class LinkedServer:
    """Per-domain, per-host sync bookkeeping."""
    host_id: UUID
    status: SyncStatus = SyncStatus.ACTIVE
    last_sync: datetime = field(default_factory=utcnow)


@dataclass
class DomainCertificate:
    cert: EncryptedData
    key: EncryptedData
    issued_at: datetime = field(default_factory=utcnow)


@dataclass
class Domain:
    domain_id: UUID
    domain_name: str
    status: RecordStatus = RecordStatus.ACTIVE
    description: Optional[str] = None
    linked_servers: List[LinkedServer] = field(default_factory=list)
    certificate: Optional[DomainCertificate] = None
    ssl_status: SSLStatus = SSLStatus.NONE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def linked_server_for(self, host_id: UUID) -> Optional[LinkedServer]:
        for linked in self.linked_servers:
            if linked.host_id == host_id:
                return linked
        return None

    def needs_sync(self, host_id: UUID, staleness_window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the host has no record for this domain or the record is stale."""
        linked = self.linked_server_for(host_id)
        if linked is None:
            return True
        now = now or utcnow()
        return linked.last_sync <= now - staleness_window


# ============================================
# APPLICATIONS
# ============================================

@dataclass
class DeploymentGroup:
    group_id: UUID
    name: str


@dataclass
class Application:
    application_id: UUID
    name: str
    status: RecordStatus = RecordStatus.ACTIVE
    nginx_directives: Optional[str] = None
    deployment_groups: Dict[UUID, DeploymentGroup] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Instance:
    """A tenant instance of an application, optionally bound to a domain and port."""
    instance_id: UUID
    application_id: UUID
    name: str
    domain_name: Optional[str] = None
    port: int = 0
    status: RecordStatus = RecordStatus.ACTIVE

    def requires_proxy(self) -> bool:
        return bool(self.domain_name) and self.port > 0
