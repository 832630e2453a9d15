#provisioning_engine\infrastructure\postgres\repositories.py

"""PostgreSQL repository implementations using SQLAlchemy."""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import and_, exists, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from provisioning_engine.core.errors import (
    ConflictError,
    InvalidStateError,
    JobLeaseError,
    NotFoundError,
    PersistenceError,
)
from provisioning_engine.core.models import (
    Application,
    Availability,
    DeploymentGroup,
    Domain,
    DomainCertificate,
    EncryptedData,
    EngineCertificates,
    Host,
    HostStatus,
    Instance,
    Integration,
    IntegrationLink,
    LinkedServer,
    PendingSetup,
    ProvisioningStage,
    RecordStatus,
    SSLStatus,
    Swarm,
    SystemInfo,
    utcnow,
)
from provisioning_engine.core.repository import (
    ApplicationRepository,
    DomainRepository,
    ErrorLogRepository,
    HostRepository,
    IntegrationRepository,
    JobRepository,
    SwarmRepository,
)
from provisioning_engine.core.state_machine import HostStateMachine
from provisioning_engine.errorlog.models import ErrorLogEntry
from provisioning_engine.infrastructure.postgres.database import get_db_session, get_session_factory
from provisioning_engine.infrastructure.postgres.models import (
    ApplicationORM,
    DeploymentGroupORM,
    DomainLinkedServerORM,
    DomainORM,
    ErrorLogORM,
    HostIntegrationLinkORM,
    HostORM,
    InstanceORM,
    IntegrationORM,
    JobORM,
    SwarmORM,
)
from provisioning_engine.jobs.models import Job, JobState, mark_lease_exhausted

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def orm_to_host(orm: HostORM) -> Host:
    return Host(
        host_id=orm.host_id,
        name=orm.name,
        address=orm.address,
        ssh_port=orm.ssh_port,
        admin_username=EncryptedData.from_dict(orm.admin_username),
        private_key=EncryptedData.from_dict(orm.private_key),
        status=orm.status,
        record_status=orm.record_status,
        availability=orm.availability,
        availability_changed_at=orm.availability_changed_at,
        system_info=SystemInfo.from_dict(orm.system_info),
        integration_links=[
            IntegrationLink(kind=link.kind, integration_id=link.integration_id)
            for link in orm.integration_links
        ],
        pending_setup=PendingSetup.from_dict(orm.pending_setup),
        engine_certificates=EngineCertificates.from_dict(orm.engine_certificates),
        checkpoint=orm.checkpoint,
        last_error=orm.last_error,
        initialization_started_at=orm.initialization_started_at,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def host_to_orm(host: Host) -> HostORM:
    return HostORM(
        host_id=host.host_id,
        name=host.name,
        address=host.address,
        ssh_port=host.ssh_port,
        admin_username=host.admin_username.to_dict(),
        private_key=host.private_key.to_dict(),
        status=host.status,
        record_status=host.record_status,
        availability=host.availability,
        availability_changed_at=host.availability_changed_at,
        system_info=host.system_info.to_dict() if host.system_info else None,
        pending_setup=host.pending_setup.to_dict() if host.pending_setup else None,
        engine_certificates=host.engine_certificates.to_dict() if host.engine_certificates else None,
        checkpoint=host.checkpoint,
        last_error=host.last_error,
        initialization_started_at=host.initialization_started_at,
        created_at=host.created_at,
        updated_at=host.updated_at,
    )


def orm_to_integration(orm: IntegrationORM) -> Integration:
    return Integration(
        integration_id=orm.integration_id,
        kind=orm.kind,
        config=dict(orm.config or {}),
        status=orm.status,
        module=orm.module,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def orm_to_swarm(orm: SwarmORM) -> Swarm:
    return Swarm(
        swarm_id=orm.swarm_id,
        name=orm.name,
        cluster_id=orm.cluster_id,
        manager_address=orm.manager_address,
        worker_token=orm.worker_token,
        manager_token=orm.manager_token,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def certificate_to_dict(certificate: DomainCertificate) -> dict:
    return {
        "cert": certificate.cert.to_dict(),
        "key": certificate.key.to_dict(),
        "issued_at": certificate.issued_at.isoformat(),
    }


def certificate_from_dict(data: Optional[dict]) -> Optional[DomainCertificate]:
    if not data:
        return None
    return DomainCertificate(
        cert=EncryptedData.from_dict(data["cert"]),
        key=EncryptedData.from_dict(data["key"]),
        issued_at=datetime.fromisoformat(data["issued_at"]),
    )


def orm_to_domain(orm: DomainORM) -> Domain:
    return Domain(
        domain_id=orm.domain_id,
        domain_name=orm.domain_name,
        status=orm.status,
        description=orm.description,
        linked_servers=[
            LinkedServer(host_id=l.host_id, status=l.status, last_sync=l.last_sync)
            for l in orm.linked_servers
        ],
        certificate=certificate_from_dict(orm.certificate),
        ssl_status=orm.ssl_status,
        created_at=orm.created_at,
        updated_at=orm.updated_at,
    )


def orm_to_application(orm: ApplicationORM) -> Application:
    return Application(
        application_id=orm.application_id,
        name=orm.name,
        status=orm.status,
        nginx_directives=orm.nginx_directives,
        deployment_groups={
            g.group_id: DeploymentGroup(group_id=g.group_id, name=g.name)
            for g in orm.deployment_groups
        },
        updated_at=orm.updated_at,
    )


def orm_to_instance(orm: InstanceORM) -> Instance:
    return Instance(
        instance_id=orm.instance_id,
        application_id=orm.application_id,
        name=orm.name,
        domain_name=orm.domain_name,
        port=orm.port,
        status=orm.status,
    )


def orm_to_job(orm: JobORM) -> Job:
    return Job(
        job_id=orm.job_id,
        queue=orm.queue,
        payload=dict(orm.payload or {}),
        state=orm.state,
        attempts_made=orm.attempts_made,
        max_attempts=orm.max_attempts,
        available_at=orm.available_at,
        lease_owner=orm.lease_owner,
        lease_expires_at=orm.lease_expires_at,
        failed_reason=orm.failed_reason,
        created_at=orm.created_at,
        finished_at=orm.finished_at,
    )


def job_to_orm(job: Job) -> JobORM:
    return JobORM(
        job_id=job.job_id,
        queue=job.queue,
        payload=dict(job.payload),
        state=job.state,
        attempts_made=job.attempts_made,
        max_attempts=job.max_attempts,
        available_at=job.available_at,
        lease_owner=job.lease_owner,
        lease_expires_at=job.lease_expires_at,
        failed_reason=job.failed_reason,
        created_at=job.created_at,
        finished_at=job.finished_at,
    )


def orm_to_error_entry(orm: ErrorLogORM) -> ErrorLogEntry:
    return ErrorLogEntry(
        entry_id=orm.entry_id,
        entity_id=orm.entity_id,
        module=orm.module,
        event=orm.event,
        status=orm.status,
        message=orm.message,
        error_type=orm.error_type,
        details=dict(orm.details or {}),
        created_at=orm.created_at,
    )


# ============================================
# Base
# ============================================

class SqlRepository:
    """Session handling shared by every repository."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def _transaction(self, conflict_message: str = "Record already exists"):
        """Commit on success, roll back on any error, map driver errors."""
        try:
            with get_db_session(self._session_factory) as session:
                yield session
        except IntegrityError as e:
            raise ConflictError(conflict_message) from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"Database error: {e}") from e


# ============================================
# Hosts
# ============================================

class PostgresHostRepository(SqlRepository, HostRepository):

    def _locked(self, session: Session, host_id: UUID) -> HostORM:
        orm = session.query(HostORM).filter(HostORM.host_id == host_id).with_for_update().first()
        if orm is None:
            raise NotFoundError(f"Host {host_id} not found")
        return orm

    def create(self, host: Host) -> None:
        with self._transaction(f"Host {host.host_id} already exists") as session:
            session.add(host_to_orm(host))
        logger.info(f"[host_repo] registered host {host.host_id} ({host.address})")

    def get(self, host_id: UUID) -> Optional[Host]:
        session = self._get_session()
        try:
            orm = session.get(HostORM, host_id)
            return orm_to_host(orm) if orm else None
        finally:
            session.close()

    def get_active_by_address(self, address: str) -> Optional[Host]:
        session = self._get_session()
        try:
            orm = session.query(HostORM).filter(
                HostORM.address == address,
                HostORM.record_status == RecordStatus.ACTIVE,
            ).first()
            return orm_to_host(orm) if orm else None
        finally:
            session.close()

    def list_active(self, search: Optional[str] = None, limit: int = 10000) -> List[Host]:
        session = self._get_session()
        try:
            query = session.query(HostORM).filter(HostORM.record_status == RecordStatus.ACTIVE)
            if search:
                pattern = f"%{search}%"
                query = query.filter(or_(HostORM.name.ilike(pattern), HostORM.address.ilike(pattern)))
            orms = query.order_by(HostORM.created_at.asc(), HostORM.name.asc()).limit(limit).all()
            return [orm_to_host(orm) for orm in orms]
        finally:
            session.close()

    def list_initializing_since(self, cutoff: datetime) -> List[Host]:
        session = self._get_session()
        try:
            orms = session.query(HostORM).filter(
                HostORM.status == HostStatus.INITIALIZING,
                HostORM.initialization_started_at.isnot(None),
                HostORM.initialization_started_at < cutoff,
            ).all()
            return [orm_to_host(orm) for orm in orms]
        finally:
            session.close()

    def begin_initialization(self, host_id: UUID, now: datetime) -> Host:
        with self._transaction() as session:
            orm = self._locked(session, host_id)
            if orm.status == HostStatus.INITIALIZING:
                raise InvalidStateError(f"Host {host_id} is already initializing")

            before = orm_to_host(orm)
            host = orm_to_host(orm)
            HostStateMachine.transition(host, HostStatus.INITIALIZING, now=now)

            orm.status = host.status
            orm.initialization_started_at = host.initialization_started_at
            orm.last_error = host.last_error
            orm.updated_at = host.updated_at
        return before

    def finish_initialization(self, host_id, status, *, clear_setup, last_error) -> None:
        with self._transaction() as session:
            orm = self._locked(session, host_id)
            host = orm_to_host(orm)
            HostStateMachine.transition(host, status)

            orm.status = host.status
            orm.updated_at = host.updated_at
            orm.last_error = last_error
            if clear_setup:
                orm.pending_setup = None
                orm.checkpoint = None

    def reinitialize(self, host_id: UUID) -> Host:
        with self._transaction() as session:
            orm = self._locked(session, host_id)
            if orm.status != HostStatus.FAILED_INITIALIZATION:
                raise InvalidStateError(
                    f"Host {host_id} can only be reinitialized from FAILED_INITIALIZATION (is {orm.status.value})"
                )
            host = orm_to_host(orm)
            HostStateMachine.transition(host, HostStatus.PENDING_INITIALIZATION)

            orm.status = host.status
            orm.initialization_started_at = None
            orm.updated_at = host.updated_at
        return host

    def update_system_info(self, host_id: UUID, system_info: SystemInfo) -> None:
        with self._transaction() as session:
            self._locked(session, host_id).system_info = system_info.to_dict()

    def update_engine_certificates(self, host_id: UUID, certificates: EngineCertificates) -> None:
        with self._transaction() as session:
            self._locked(session, host_id).engine_certificates = certificates.to_dict()

    def update_checkpoint(self, host_id: UUID, stage: Optional[ProvisioningStage]) -> None:
        with self._transaction() as session:
            self._locked(session, host_id).checkpoint = stage

    def replace_integration_link(self, host_id: UUID, link: IntegrationLink) -> None:
        with self._transaction(f"Host {host_id} already has a {link.kind.value} integration") as session:
            orm = self._locked(session, host_id)
            session.query(HostIntegrationLinkORM).filter(
                HostIntegrationLinkORM.host_id == host_id,
                HostIntegrationLinkORM.kind == link.kind,
            ).delete(synchronize_session=False)
            session.flush()
            session.add(HostIntegrationLinkORM(host_id=host_id, kind=link.kind, integration_id=link.integration_id))
            orm.updated_at = utcnow()

    def update_availability(self, host_id: UUID, availability: Availability, changed_at: datetime) -> None:
        with self._transaction() as session:
            orm = self._locked(session, host_id)
            orm.availability = availability
            orm.availability_changed_at = changed_at

    def soft_delete(self, host_id: UUID) -> None:
        with self._transaction() as session:
            orm = self._locked(session, host_id)
            orm.record_status = RecordStatus.DELETED
            orm.updated_at = utcnow()


# ============================================
# Integrations / Swarms
# ============================================

class PostgresIntegrationRepository(SqlRepository, IntegrationRepository):

    def create(self, integration: Integration) -> None:
        with self._transaction(f"Integration {integration.integration_id} already exists") as session:
            session.add(IntegrationORM(
                integration_id=integration.integration_id,
                kind=integration.kind,
                config=dict(integration.config),
                status=integration.status,
                module=integration.module,
                created_at=integration.created_at,
                updated_at=integration.updated_at,
            ))

    def get(self, integration_id: UUID) -> Optional[Integration]:
        session = self._get_session()
        try:
            orm = session.get(IntegrationORM, integration_id)
            return orm_to_integration(orm) if orm else None
        finally:
            session.close()

    def update_config(self, integration_id: UUID, config: dict) -> None:
        with self._transaction() as session:
            orm = session.query(IntegrationORM).filter(
                IntegrationORM.integration_id == integration_id
            ).with_for_update().first()
            if orm is None:
                raise NotFoundError(f"Integration {integration_id} not found")
            # JSON columns are only written back on reassignment.
            orm.config = {**(orm.config or {}), **config}


class PostgresSwarmRepository(SqlRepository, SwarmRepository):

    def create(self, swarm: Swarm) -> None:
        with self._transaction(f"Cluster {swarm.cluster_id} already exists") as session:
            session.add(SwarmORM(
                swarm_id=swarm.swarm_id,
                name=swarm.name,
                cluster_id=swarm.cluster_id,
                manager_address=swarm.manager_address,
                worker_token=swarm.worker_token,
                manager_token=swarm.manager_token,
                created_at=swarm.created_at,
                updated_at=swarm.updated_at,
            ))

    def get(self, swarm_id: UUID) -> Optional[Swarm]:
        session = self._get_session()
        try:
            orm = session.get(SwarmORM, swarm_id)
            return orm_to_swarm(orm) if orm else None
        finally:
            session.close()

    def list_all(self) -> List[Swarm]:
        session = self._get_session()
        try:
            return [orm_to_swarm(orm) for orm in session.query(SwarmORM).order_by(SwarmORM.created_at).all()]
        finally:
            session.close()


# ============================================
# Domains
# ============================================

class PostgresDomainRepository(SqlRepository, DomainRepository):

    def _locked(self, session: Session, domain_id: UUID) -> DomainORM:
        orm = session.query(DomainORM).filter(DomainORM.domain_id == domain_id).with_for_update().first()
        if orm is None:
            raise NotFoundError(f"Domain {domain_id} not found")
        return orm

    def create(self, domain: Domain) -> None:
        with self._transaction(f"Domain {domain.domain_name} already exists") as session:
            session.add(DomainORM(
                domain_id=domain.domain_id,
                domain_name=domain.domain_name,
                status=domain.status,
                description=domain.description,
                certificate=certificate_to_dict(domain.certificate) if domain.certificate else None,
                ssl_status=domain.ssl_status,
                created_at=domain.created_at,
                updated_at=domain.updated_at,
            ))

    def get(self, domain_id: UUID) -> Optional[Domain]:
        session = self._get_session()
        try:
            orm = session.get(DomainORM, domain_id)
            return orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def get_by_name(self, domain_name: str) -> Optional[Domain]:
        session = self._get_session()
        try:
            orm = session.query(DomainORM).filter(DomainORM.domain_name == domain_name).first()
            return orm_to_domain(orm) if orm else None
        finally:
            session.close()

    def list_active(self, search: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Domain]:
        session = self._get_session()
        try:
            query = session.query(DomainORM).filter(DomainORM.status == RecordStatus.ACTIVE)
            if search:
                query = query.filter(DomainORM.domain_name.ilike(f"%{search}%"))
            orms = query.order_by(DomainORM.created_at.asc(), DomainORM.domain_name.asc()) \
                .offset(offset).limit(limit).all()
            return [orm_to_domain(orm) for orm in orms]
        finally:
            session.close()

    def list_needing_sync(self, host_id: UUID, fresh_after: Optional[datetime]) -> List[Domain]:
        session = self._get_session()
        try:
            query = session.query(DomainORM).filter(DomainORM.status == RecordStatus.ACTIVE)
            if fresh_after is not None:
                fresh = exists().where(and_(
                    DomainLinkedServerORM.domain_id == DomainORM.domain_id,
                    DomainLinkedServerORM.host_id == host_id,
                    DomainLinkedServerORM.last_sync > fresh_after,
                ))
                query = query.filter(~fresh)
            orms = query.order_by(DomainORM.created_at.asc(), DomainORM.domain_name.asc()).all()
            return [orm_to_domain(orm) for orm in orms]
        finally:
            session.close()

    def update_description(self, domain_id: UUID, description: Optional[str]) -> None:
        with self._transaction() as session:
            orm = self._locked(session, domain_id)
            orm.description = description
            orm.updated_at = utcnow()

    def rename(self, domain_id: UUID, domain_name: str) -> None:
        with self._transaction(f"Domain {domain_name} already exists") as session:
            orm = self._locked(session, domain_id)
            orm.domain_name = domain_name
            orm.certificate = None
            orm.ssl_status = SSLStatus.NONE
            session.query(DomainLinkedServerORM).filter(
                DomainLinkedServerORM.domain_id == domain_id,
            ).delete(synchronize_session=False)
            orm.updated_at = utcnow()

    def replace_linked_servers(self, domain_id: UUID, records: Iterable[LinkedServer]) -> None:
        records = list(records)
        if not records:
            return
        with self._transaction() as session:
            self._locked(session, domain_id)
            session.query(DomainLinkedServerORM).filter(
                DomainLinkedServerORM.domain_id == domain_id,
                DomainLinkedServerORM.host_id.in_([r.host_id for r in records]),
            ).delete(synchronize_session=False)
            session.flush()
            for record in records:
                session.add(DomainLinkedServerORM(
                    domain_id=domain_id,
                    host_id=record.host_id,
                    status=record.status,
                    last_sync=record.last_sync,
                ))

    def set_certificate(self, domain_id: UUID, certificate: DomainCertificate) -> None:
        with self._transaction() as session:
            orm = self._locked(session, domain_id)
            orm.certificate = certificate_to_dict(certificate)
            orm.ssl_status = SSLStatus.ACTIVE
            orm.updated_at = utcnow()

    def set_ssl_status(self, domain_id: UUID, ssl_status: SSLStatus) -> None:
        with self._transaction() as session:
            self._locked(session, domain_id).ssl_status = ssl_status


# ============================================
# Applications
# ============================================

class PostgresApplicationRepository(SqlRepository, ApplicationRepository):

    def create(self, application: Application) -> None:
        with self._transaction(f"Application {application.application_id} already exists") as session:
            session.add(ApplicationORM(
                application_id=application.application_id,
                name=application.name,
                status=application.status,
                nginx_directives=application.nginx_directives,
                updated_at=application.updated_at,
            ))
            session.flush()
            for group in application.deployment_groups.values():
                session.add(DeploymentGroupORM(
                    group_id=group.group_id,
                    application_id=application.application_id,
                    name=group.name,
                ))

    def get(self, application_id: UUID) -> Optional[Application]:
        session = self._get_session()
        try:
            orm = session.get(ApplicationORM, application_id)
            return orm_to_application(orm) if orm else None
        finally:
            session.close()

    def list_active(self) -> List[Application]:
        session = self._get_session()
        try:
            orms = session.query(ApplicationORM).filter(ApplicationORM.status == RecordStatus.ACTIVE).all()
            return [orm_to_application(orm) for orm in orms]
        finally:
            session.close()

    def update_nginx_directives(self, application_id: UUID, directives: Optional[str]) -> None:
        with self._transaction() as session:
            orm = session.query(ApplicationORM).filter(
                ApplicationORM.application_id == application_id
            ).with_for_update().first()
            if orm is None:
                raise NotFoundError(f"Application {application_id} not found")
            orm.nginx_directives = directives
            orm.updated_at = utcnow()

    def apply_group_changes(self, application_id, *, created=(), deleted=(), renamed=()) -> None:
        deleted = list(deleted)
        with self._transaction() as session:
            orm = session.query(ApplicationORM).filter(
                ApplicationORM.application_id == application_id
            ).with_for_update().first()
            if orm is None:
                raise NotFoundError(f"Application {application_id} not found")

            if deleted:
                session.query(DeploymentGroupORM).filter(
                    DeploymentGroupORM.application_id == application_id,
                    DeploymentGroupORM.group_id.in_(deleted),
                ).delete(synchronize_session=False)

            for group in renamed:
                session.query(DeploymentGroupORM).filter(
                    DeploymentGroupORM.application_id == application_id,
                    DeploymentGroupORM.group_id == group.group_id,
                ).update({DeploymentGroupORM.name: group.name}, synchronize_session=False)

            for group in created:
                session.add(DeploymentGroupORM(
                    group_id=group.group_id,
                    application_id=application_id,
                    name=group.name,
                ))

            orm.updated_at = utcnow()

    def add_instance(self, instance: Instance) -> None:
        with self._transaction(f"Instance {instance.instance_id} already exists") as session:
            session.add(InstanceORM(
                instance_id=instance.instance_id,
                application_id=instance.application_id,
                name=instance.name,
                domain_name=instance.domain_name,
                port=instance.port,
                status=instance.status,
            ))

    def list_instances(self, application_id: UUID) -> List[Instance]:
        session = self._get_session()
        try:
            orms = session.query(InstanceORM).filter(
                InstanceORM.application_id == application_id,
                InstanceORM.status == RecordStatus.ACTIVE,
            ).all()
            return [orm_to_instance(orm) for orm in orms]
        finally:
            session.close()


# ============================================
# Jobs
# ============================================

class PostgresJobRepository(SqlRepository, JobRepository):

    def _locked(self, session: Session, job_id: UUID) -> JobORM:
        orm = session.query(JobORM).filter(JobORM.job_id == job_id).with_for_update().first()
        if orm is None:
            raise NotFoundError(f"Job {job_id} not found")
        return orm

    def _owned(self, session: Session, job_id: UUID, worker_id: str) -> JobORM:
        orm = self._locked(session, job_id)
        if orm.state != JobState.ACTIVE or orm.lease_owner != worker_id:
            raise JobLeaseError(f"Job {job_id} is not leased by {worker_id} (owner: {orm.lease_owner})")
        return orm

    def add(self, job: Job) -> None:
        with self._transaction(f"Job {job.job_id} already exists") as session:
            session.add(job_to_orm(job))

    def get(self, job_id: UUID) -> Optional[Job]:
        session = self._get_session()
        try:
            orm = session.get(JobORM, job_id)
            return orm_to_job(orm) if orm else None
        finally:
            session.close()

    def claim_next(self, queue: str, worker_id: str, lease_seconds: int, now: datetime) -> Optional[Job]:
        with self._transaction() as session:
            expired = and_(
                JobORM.state == JobState.ACTIVE,
                or_(JobORM.lease_expires_at.is_(None), JobORM.lease_expires_at <= now),
            )

            exhausted = session.query(JobORM) \
                .filter(JobORM.queue == queue, expired, JobORM.attempts_made >= JobORM.max_attempts) \
                .with_for_update(skip_locked=True) \
                .all()
            for orm in exhausted:
                mark_lease_exhausted(orm, now)
                logger.warning(f"[jobs] Job {orm.job_id} lost its lease on the final attempt, marked FAILED")

            runnable = or_(
                and_(JobORM.state == JobState.WAITING, JobORM.available_at <= now),
                and_(expired, JobORM.attempts_made < JobORM.max_attempts),
            )
            orm = session.query(JobORM).filter(JobORM.queue == queue, runnable) \
                .order_by(JobORM.available_at.asc(), JobORM.created_at.asc()) \
                .with_for_update(skip_locked=True) \
                .first()
            if orm is None:
                return None

            orm.state = JobState.ACTIVE
            orm.attempts_made += 1
            orm.lease_owner = worker_id
            orm.lease_expires_at = now + timedelta(seconds=lease_seconds)
            session.flush()
            return orm_to_job(orm)

    def renew_lease(self, job_id: UUID, worker_id: str, lease_seconds: int, now: datetime) -> None:
        with self._transaction() as session:
            orm = self._owned(session, job_id, worker_id)
            orm.lease_expires_at = now + timedelta(seconds=lease_seconds)

    def complete(self, job_id: UUID, worker_id: str, now: datetime) -> None:
        with self._transaction() as session:
            orm = self._owned(session, job_id, worker_id)
            orm.state = JobState.COMPLETED
            orm.finished_at = now
            orm.lease_owner = None
            orm.lease_expires_at = None

    def fail(self, job_id: UUID, worker_id: str, reason: str, *, retry_at: Optional[datetime], now: datetime) -> None:
        with self._transaction() as session:
            orm = self._owned(session, job_id, worker_id)
            orm.failed_reason = reason
            orm.lease_owner = None
            orm.lease_expires_at = None
            if retry_at is None:
                orm.state = JobState.FAILED
                orm.finished_at = now
            else:
                orm.state = JobState.WAITING
                orm.available_at = retry_at

    def list_by_state(self, queue: str, state: JobState) -> List[Job]:
        session = self._get_session()
        try:
            orms = session.query(JobORM).filter(JobORM.queue == queue, JobORM.state == state) \
                .order_by(JobORM.created_at.asc()).all()
            return [orm_to_job(orm) for orm in orms]
        finally:
            session.close()


# ============================================
# Error logs
# ============================================

class PostgresErrorLogRepository(SqlRepository, ErrorLogRepository):

    def add(self, entry: ErrorLogEntry) -> None:
        with self._transaction() as session:
            session.add(ErrorLogORM(
                entry_id=entry.entry_id,
                entity_id=entry.entity_id,
                module=entry.module,
                event=entry.event,
                status=entry.status,
                message=entry.message,
                error_type=entry.error_type,
                details=entry.details,
                created_at=entry.created_at,
            ))

    def list_for_entity(self, entity_id: UUID) -> List[ErrorLogEntry]:
        session = self._get_session()
        try:
            orms = session.query(ErrorLogORM).filter(ErrorLogORM.entity_id == entity_id) \
                .order_by(ErrorLogORM.created_at.asc()).all()
            return [orm_to_error_entry(orm) for orm in orms]
        finally:
            session.close()
