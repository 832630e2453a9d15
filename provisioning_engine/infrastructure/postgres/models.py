#provisioning_engine\infrastructure\postgres\models.py
"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Enum as SQLEnum, Index, Text, ForeignKey, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship

from provisioning_engine.core.models import (
    Availability,
    HostStatus,
    IntegrationKind,
    Module,
    ProvisioningStage,
    RecordStatus,
    SSLStatus,
    SyncStatus,
    utcnow,
)
from provisioning_engine.infrastructure.postgres.database import Base
from provisioning_engine.jobs.models import JobState


# ============================================
# HOSTS
# ============================================

class HostORM(Base):
    """
    Managed hosts.

    Credentials, inventory, pending setup and engine certificates are stored
    as JSON documents; integration links live in their own table.
    """

    __tablename__ = "hosts"

    host_id = Column(Uuid, primary_key=True)
    name = Column(String(255), nullable=False)
    address = Column(String(255), nullable=False, index=True)
    ssh_port = Column(Integer, nullable=False, default=22)

    admin_username = Column(JSON, nullable=False)
    private_key = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(HostStatus, name="host_status"),
        nullable=False,
        default=HostStatus.PENDING_INITIALIZATION,
        index=True
    )
    record_status = Column(
        SQLEnum(RecordStatus, name="record_status"),
        nullable=False,
        default=RecordStatus.ACTIVE,
        index=True
    )

    availability = Column(SQLEnum(Availability, name="availability"), nullable=False, default=Availability.ONLINE)
    availability_changed_at = Column(DateTime, nullable=False, default=utcnow)

    system_info = Column(JSON, nullable=True)
    pending_setup = Column(JSON, nullable=True)
    engine_certificates = Column(JSON, nullable=True)

    checkpoint = Column(SQLEnum(ProvisioningStage, name="provisioning_stage"), nullable=True)
    last_error = Column(Text, nullable=True)
    initialization_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    integration_links = relationship(
        "HostIntegrationLinkORM",
        lazy="selectin",
        order_by="HostIntegrationLinkORM.link_id",
    )

    __table_args__ = (
        Index('ix_hosts_status_started', 'status', 'initialization_started_at'),
    )

    def __repr__(self) -> str:
        return f"<HostORM(host_id={self.host_id}, address={self.address}, status={self.status.value})>"


class HostIntegrationLinkORM(Base):
    """At most one integration link per kind per host."""

    __tablename__ = "host_integration_links"

    link_id = Column(Integer, primary_key=True, autoincrement=True)
    host_id = Column(Uuid, ForeignKey("hosts.host_id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(SQLEnum(IntegrationKind, name="integration_kind"), nullable=False)
    integration_id = Column(Uuid, nullable=False)

    __table_args__ = (
        UniqueConstraint('host_id', 'kind', name='uq_host_integration_kind'),
    )


# ============================================
# INTEGRATIONS / SWARMS
# ============================================

class IntegrationORM(Base):

    __tablename__ = "integrations"

    integration_id = Column(Uuid, primary_key=True)
    kind = Column(SQLEnum(IntegrationKind, name="integration_kind"), nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    status = Column(SQLEnum(RecordStatus, name="record_status"), nullable=False, default=RecordStatus.ACTIVE)
    module = Column(SQLEnum(Module, name="module"), nullable=False, default=Module.SERVER)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SwarmORM(Base):

    __tablename__ = "swarms"

    swarm_id = Column(Uuid, primary_key=True)
    name = Column(String(255), nullable=False)
    cluster_id = Column(String(255), nullable=False, unique=True)
    manager_address = Column(String(255), nullable=False)
    worker_token = Column(Text, nullable=False)
    manager_token = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ============================================
# DOMAINS
# ============================================

class DomainORM(Base):

    __tablename__ = "domains"

    domain_id = Column(Uuid, primary_key=True)
    domain_name = Column(String(253), nullable=False, unique=True)
    status = Column(SQLEnum(RecordStatus, name="record_status"), nullable=False, default=RecordStatus.ACTIVE, index=True)
    description = Column(Text, nullable=True)
    certificate = Column(JSON, nullable=True)
    ssl_status = Column(SQLEnum(SSLStatus, name="ssl_status"), nullable=False, default=SSLStatus.NONE)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    linked_servers = relationship(
        "DomainLinkedServerORM",
        lazy="selectin",
        order_by="DomainLinkedServerORM.link_id",
    )


class DomainLinkedServerORM(Base):
    """Per-domain, per-host sync record."""

    __tablename__ = "domain_linked_servers"

    link_id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(Uuid, ForeignKey("domains.domain_id", ondelete="CASCADE"), nullable=False, index=True)
    host_id = Column(Uuid, nullable=False, index=True)
    status = Column(SQLEnum(SyncStatus, name="sync_status"), nullable=False, default=SyncStatus.ACTIVE)
    last_sync = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('domain_id', 'host_id', name='uq_domain_linked_server'),
    )


# ============================================
# APPLICATIONS
# ============================================

class ApplicationORM(Base):

    __tablename__ = "applications"

    application_id = Column(Uuid, primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(SQLEnum(RecordStatus, name="record_status"), nullable=False, default=RecordStatus.ACTIVE)
    nginx_directives = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    deployment_groups = relationship(
        "DeploymentGroupORM",
        lazy="selectin",
        order_by="DeploymentGroupORM.name",
    )


class DeploymentGroupORM(Base):

    __tablename__ = "deployment_groups"

    group_id = Column(Uuid, primary_key=True)
    application_id = Column(
        Uuid, ForeignKey("applications.application_id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)


class InstanceORM(Base):

    __tablename__ = "instances"

    instance_id = Column(Uuid, primary_key=True)
    application_id = Column(
        Uuid, ForeignKey("applications.application_id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    domain_name = Column(String(253), nullable=True)
    port = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(RecordStatus, name="record_status"), nullable=False, default=RecordStatus.ACTIVE)


# ============================================
# JOBS / ERROR LOGS
# ============================================

class JobORM(Base):
    """
    Durable background jobs.

    Indexes:
    - (queue, state, available_at) for claiming runnable work
    """

    __tablename__ = "jobs"

    job_id = Column(Uuid, primary_key=True)
    queue = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    state = Column(SQLEnum(JobState, name="job_state"), nullable=False, default=JobState.WAITING)

    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    available_at = Column(DateTime, nullable=False, default=utcnow)
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    failed_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_jobs_claim_lookup', 'queue', 'state', 'available_at'),
    )

    def __repr__(self) -> str:
        return f"<JobORM(job_id={self.job_id}, queue={self.queue}, state={self.state.value})>"


class ErrorLogORM(Base):

    __tablename__ = "error_logs"

    entry_id = Column(Uuid, primary_key=True)
    entity_id = Column(Uuid, nullable=True, index=True)
    module = Column(SQLEnum(Module, name="module"), nullable=False)
    event = Column(String(100), nullable=False)
    status = Column(String(50), nullable=False)
    message = Column(Text, nullable=False)
    error_type = Column(String(100), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
