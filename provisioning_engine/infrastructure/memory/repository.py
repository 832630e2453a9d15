# provisioning_engine/infrastructure/memory/repository.py

from copy import deepcopy
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from provisioning_engine.core.errors import ConflictError, InvalidStateError, JobLeaseError, NotFoundError
from provisioning_engine.core.models import (
    Application,
    Availability,
    DeploymentGroup,
    Domain,
    DomainCertificate,
    EngineCertificates,
    Host,
    HostStatus,
    Instance,
    Integration,
    IntegrationLink,
    LinkedServer,
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
from provisioning_engine.jobs.models import Job, JobState, mark_lease_exhausted


class InMemoryHostRepository(HostRepository):
    def __init__(self):
        self._store: Dict[UUID, Host] = {}
        self._lock = Lock()

    def _require(self, host_id: UUID) -> Host:
        host = self._store.get(host_id)
        if host is None:
            raise NotFoundError(f"Host {host_id} not found")
        return host

    def create(self, host: Host) -> None:
        with self._lock:
            if host.host_id in self._store:
                raise ConflictError(f"Host {host.host_id} already exists")
            self._store[host.host_id] = deepcopy(host)

    def get(self, host_id: UUID) -> Optional[Host]:
        host = self._store.get(host_id)
        return deepcopy(host) if host else None

    def get_active_by_address(self, address: str) -> Optional[Host]:
        for host in self._store.values():
            if host.address == address and not host.is_deleted():
                return deepcopy(host)
        return None

    def list_active(self, search: Optional[str] = None, limit: int = 10000) -> List[Host]:
        needle = search.lower() if search else None
        results = []
        for host in sorted(self._store.values(), key=lambda h: h.created_at):
            if host.is_deleted():
                continue
            if needle and needle not in host.name.lower() and needle not in host.address.lower():
                continue
            results.append(deepcopy(host))
            if len(results) >= limit:
                break
        return results

    def list_initializing_since(self, cutoff: datetime) -> List[Host]:
        return [
            deepcopy(h) for h in self._store.values()
            if h.status == HostStatus.INITIALIZING
            and h.initialization_started_at is not None
            and h.initialization_started_at < cutoff
        ]

    def begin_initialization(self, host_id: UUID, now: datetime) -> Host:
        with self._lock:
            host = self._require(host_id)
            if host.status == HostStatus.INITIALIZING:
                raise InvalidStateError(f"Host {host_id} is already initializing")
            before = deepcopy(host)
            HostStateMachine.transition(host, HostStatus.INITIALIZING, now=now)
            return before

    def finish_initialization(self, host_id, status, *, clear_setup, last_error) -> None:
        with self._lock:
            host = self._require(host_id)
            HostStateMachine.transition(host, status)
            if clear_setup:
                host.pending_setup = None
                host.checkpoint = None
            host.last_error = last_error

    def reinitialize(self, host_id: UUID) -> Host:
        with self._lock:
            host = self._require(host_id)
            if host.status != HostStatus.FAILED_INITIALIZATION:
                raise InvalidStateError(
                    f"Host {host_id} can only be reinitialized from FAILED_INITIALIZATION (is {host.status.value})"
                )
            HostStateMachine.transition(host, HostStatus.PENDING_INITIALIZATION)
            return deepcopy(host)

    def update_system_info(self, host_id: UUID, system_info: SystemInfo) -> None:
        with self._lock:
            host = self._require(host_id)
            host.system_info = deepcopy(system_info)
            host.updated_at = utcnow()

    def update_engine_certificates(self, host_id: UUID, certificates: EngineCertificates) -> None:
        with self._lock:
            host = self._require(host_id)
            host.engine_certificates = deepcopy(certificates)
            host.updated_at = utcnow()

    def update_checkpoint(self, host_id: UUID, stage: Optional[ProvisioningStage]) -> None:
        with self._lock:
            self._require(host_id).checkpoint = stage

    def replace_integration_link(self, host_id: UUID, link: IntegrationLink) -> None:
        with self._lock:
            host = self._require(host_id)
            host.integration_links = [l for l in host.integration_links if l.kind != link.kind]
            host.integration_links.append(deepcopy(link))

    def update_availability(self, host_id: UUID, availability: Availability, changed_at: datetime) -> None:
        with self._lock:
            host = self._require(host_id)
            host.availability = availability
            host.availability_changed_at = changed_at

    def soft_delete(self, host_id: UUID) -> None:
        with self._lock:
            host = self._require(host_id)
            host.record_status = RecordStatus.DELETED
            host.updated_at = utcnow()


class InMemoryIntegrationRepository(IntegrationRepository):
    def __init__(self):
        self._store: Dict[UUID, Integration] = {}
        self._lock = Lock()

    def create(self, integration: Integration) -> None:
        with self._lock:
            if integration.integration_id in self._store:
                raise ConflictError(f"Integration {integration.integration_id} already exists")
            self._store[integration.integration_id] = deepcopy(integration)

    def get(self, integration_id: UUID) -> Optional[Integration]:
        integration = self._store.get(integration_id)
        return deepcopy(integration) if integration else None

    def update_config(self, integration_id: UUID, config: dict) -> None:
        with self._lock:
            integration = self._store.get(integration_id)
            if integration is None:
                raise NotFoundError(f"Integration {integration_id} not found")
            integration.config = {**integration.config, **config}
            integration.updated_at = utcnow()

    def all(self) -> List[Integration]:
        return [deepcopy(i) for i in self._store.values()]


class InMemorySwarmRepository(SwarmRepository):
    def __init__(self):
        self._store: Dict[UUID, Swarm] = {}

    def create(self, swarm: Swarm) -> None:
        if swarm.swarm_id in self._store:
            raise ConflictError(f"Swarm {swarm.swarm_id} already exists")
        self._store[swarm.swarm_id] = deepcopy(swarm)

    def get(self, swarm_id: UUID) -> Optional[Swarm]:
        swarm = self._store.get(swarm_id)
        return deepcopy(swarm) if swarm else None

    def list_all(self) -> List[Swarm]:
        return [deepcopy(s) for s in self._store.values()]


class InMemoryDomainRepository(DomainRepository):
    def __init__(self):
        self._store: Dict[UUID, Domain] = {}
        self._lock = Lock()

    def _require(self, domain_id: UUID) -> Domain:
        domain = self._store.get(domain_id)
        if domain is None:
            raise NotFoundError(f"Domain {domain_id} not found")
        return domain

    def create(self, domain: Domain) -> None:
        with self._lock:
            for existing in self._store.values():
                if existing.domain_name == domain.domain_name:
                    raise ConflictError(f"Domain {domain.domain_name} already exists")
            self._store[domain.domain_id] = deepcopy(domain)

    def get(self, domain_id: UUID) -> Optional[Domain]:
        domain = self._store.get(domain_id)
        return deepcopy(domain) if domain else None

    def get_by_name(self, domain_name: str) -> Optional[Domain]:
        for domain in self._store.values():
            if domain.domain_name == domain_name:
                return deepcopy(domain)
        return None

    def _active(self) -> List[Domain]:
        domains = [d for d in self._store.values() if d.status != RecordStatus.DELETED]
        return sorted(domains, key=lambda d: d.created_at)

    def list_active(self, search: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Domain]:
        domains = self._active()
        if search:
            domains = [d for d in domains if search.lower() in d.domain_name]
        return [deepcopy(d) for d in domains[offset:offset + limit]]

    def list_needing_sync(self, host_id: UUID, fresh_after: Optional[datetime]) -> List[Domain]:
        results = []
        for domain in self._active():
            linked = domain.linked_server_for(host_id)
            if fresh_after is None or linked is None or linked.last_sync <= fresh_after:
                results.append(deepcopy(domain))
        return results

    def update_description(self, domain_id: UUID, description: Optional[str]) -> None:
        with self._lock:
            domain = self._require(domain_id)
            domain.description = description
            domain.updated_at = utcnow()

    def rename(self, domain_id: UUID, domain_name: str) -> None:
        with self._lock:
            domain = self._require(domain_id)
            for existing in self._store.values():
                if existing.domain_name == domain_name and existing.domain_id != domain_id:
                    raise ConflictError(f"Domain {domain_name} already exists")
            domain.domain_name = domain_name
            domain.linked_servers = []
            domain.certificate = None
            domain.ssl_status = SSLStatus.NONE
            domain.updated_at = utcnow()

    def replace_linked_servers(self, domain_id: UUID, records: Iterable[LinkedServer]) -> None:
        records = list(records)
        with self._lock:
            domain = self._require(domain_id)
            host_ids = {r.host_id for r in records}
            domain.linked_servers = [l for l in domain.linked_servers if l.host_id not in host_ids]
            domain.linked_servers.extend(deepcopy(records))

    def set_certificate(self, domain_id: UUID, certificate: DomainCertificate) -> None:
        with self._lock:
            domain = self._require(domain_id)
            domain.certificate = deepcopy(certificate)
            domain.ssl_status = SSLStatus.ACTIVE
            domain.updated_at = utcnow()

    def set_ssl_status(self, domain_id: UUID, ssl_status: SSLStatus) -> None:
        with self._lock:
            self._require(domain_id).ssl_status = ssl_status


class InMemoryApplicationRepository(ApplicationRepository):
    def __init__(self):
        self._store: Dict[UUID, Application] = {}
        self._instances: Dict[UUID, Instance] = {}
        self._lock = Lock()

    def _require(self, application_id: UUID) -> Application:
        application = self._store.get(application_id)
        if application is None:
            raise NotFoundError(f"Application {application_id} not found")
        return application

    def create(self, application: Application) -> None:
        with self._lock:
            if application.application_id in self._store:
                raise ConflictError(f"Application {application.application_id} already exists")
            self._store[application.application_id] = deepcopy(application)

    def get(self, application_id: UUID) -> Optional[Application]:
        application = self._store.get(application_id)
        return deepcopy(application) if application else None

    def list_active(self) -> List[Application]:
        return [deepcopy(a) for a in self._store.values() if a.status != RecordStatus.DELETED]

    def update_nginx_directives(self, application_id: UUID, directives: Optional[str]) -> None:
        with self._lock:
            application = self._require(application_id)
            application.nginx_directives = directives
            application.updated_at = utcnow()

    def apply_group_changes(self, application_id, *, created=(), deleted=(), renamed=()) -> None:
        with self._lock:
            groups = self._require(application_id).deployment_groups
            for group_id in deleted:
                groups.pop(group_id, None)
            for group in renamed:
                if group.group_id in groups:
                    groups[group.group_id] = DeploymentGroup(group.group_id, group.name)
            for group in created:
                groups[group.group_id] = DeploymentGroup(group.group_id, group.name)

    def add_instance(self, instance: Instance) -> None:
        with self._lock:
            self._instances[instance.instance_id] = deepcopy(instance)

    def list_instances(self, application_id: UUID) -> List[Instance]:
        return [
            deepcopy(i) for i in self._instances.values()
            if i.application_id == application_id and i.status != RecordStatus.DELETED
        ]


class InMemoryJobRepository(JobRepository):
    def __init__(self):
        self._store: Dict[UUID, Job] = {}
        self._lock = Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            self._store[job.job_id] = deepcopy(job)

    def get(self, job_id: UUID) -> Optional[Job]:
        job = self._store.get(job_id)
        return deepcopy(job) if job else None

    def _owned(self, job_id: UUID, worker_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.state != JobState.ACTIVE or job.lease_owner != worker_id:
            raise JobLeaseError(f"Job {job_id} is not leased by {worker_id} (owner: {job.lease_owner})")
        return job

    def claim_next(self, queue: str, worker_id: str, lease_seconds: int, now: datetime) -> Optional[Job]:
        with self._lock:
            candidates = []
            for j in self._store.values():
                if j.queue != queue:
                    continue
                if j.state == JobState.WAITING and j.available_at <= now:
                    candidates.append(j)
                elif j.state == JobState.ACTIVE and j.is_lease_expired(now):
                    if j.has_attempts_left():
                        candidates.append(j)
                    else:
                        mark_lease_exhausted(j, now)

            if not candidates:
                return None

            job = min(candidates, key=lambda j: (j.available_at, j.created_at))
            job.state = JobState.ACTIVE
            job.attempts_made += 1
            job.lease_owner = worker_id
            job.lease_expires_at = now + timedelta(seconds=lease_seconds)
            return deepcopy(job)

    def renew_lease(self, job_id: UUID, worker_id: str, lease_seconds: int, now: datetime) -> None:
        with self._lock:
            job = self._owned(job_id, worker_id)
            job.lease_expires_at = now + timedelta(seconds=lease_seconds)

    def complete(self, job_id: UUID, worker_id: str, now: datetime) -> None:
        with self._lock:
            job = self._owned(job_id, worker_id)
            job.state = JobState.COMPLETED
            job.finished_at = now
            job.lease_owner = None
            job.lease_expires_at = None

    def fail(self, job_id: UUID, worker_id: str, reason: str, *, retry_at: Optional[datetime], now: datetime) -> None:
        with self._lock:
            job = self._owned(job_id, worker_id)
            job.failed_reason = reason
            job.lease_owner = None
            job.lease_expires_at = None
            if retry_at is None:
                job.state = JobState.FAILED
                job.finished_at = now
            else:
                job.state = JobState.WAITING
                job.available_at = retry_at

    def list_by_state(self, queue: str, state: JobState) -> List[Job]:
        return [deepcopy(j) for j in self._store.values() if j.queue == queue and j.state == state]


class InMemoryErrorLogRepository(ErrorLogRepository):
    def __init__(self):
        self.entries: List[ErrorLogEntry] = []

    def add(self, entry: ErrorLogEntry) -> None:
        self.entries.append(entry)

    def list_for_entity(self, entity_id: UUID) -> List[ErrorLogEntry]:
        return [e for e in self.entries if e.entity_id == entity_id]
