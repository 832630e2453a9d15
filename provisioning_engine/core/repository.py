# provisioning_engine/core/repository.py

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

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
    SSLStatus,
    Swarm,
    SystemInfo,
)
from provisioning_engine.errorlog.models import ErrorLogEntry
from provisioning_engine.jobs.models import Job, JobState


class HostRepository(ABC):
    """
    Persistence contract for hosts.

    Every mutation is a targeted field update, never a whole-record overwrite.
    """

    @abstractmethod
    def create(self, host: Host) -> None:
        """Persist a new host. Must fail with ConflictError on duplicate id."""
        raise NotImplementedError

    @abstractmethod
    def get(self, host_id: UUID) -> Optional[Host]:
        raise NotImplementedError

    @abstractmethod
    def get_active_by_address(self, address: str) -> Optional[Host]:
        """Non-deleted host with the given address, if any."""
        raise NotImplementedError

    @abstractmethod
    def list_active(self, search: Optional[str] = None, limit: int = 10000) -> List[Host]:
        """Non-deleted hosts, optionally filtered by name/address substring."""
        raise NotImplementedError

    @abstractmethod
    def list_initializing_since(self, cutoff: datetime) -> List[Host]:
        """Hosts stuck in INITIALIZING since before ``cutoff``."""
        raise NotImplementedError

    @abstractmethod
    def begin_initialization(self, host_id: UUID, now: datetime) -> Host:
        """
        Atomically move a host to INITIALIZING.

        Returns the record as it was before the transition.
        Raises NotFoundError (no write) or InvalidStateError if already INITIALIZING.
        """
        raise NotImplementedError

    @abstractmethod
    def finish_initialization(
        self,
        host_id: UUID,
        status: HostStatus,
        *,
        clear_setup: bool,
        last_error: Optional[str],
    ) -> None:
        raise NotImplementedError

    @abstractmethod
    def reinitialize(self, host_id: UUID) -> Host:
        """
        FAILED_INITIALIZATION -> PENDING_INITIALIZATION as a compare-and-set.

        Raises NotFoundError or InvalidStateError without modifying the record.
        """
        raise NotImplementedError

    @abstractmethod
    def update_system_info(self, host_id: UUID, system_info: SystemInfo) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_engine_certificates(self, host_id: UUID, certificates: EngineCertificates) -> None:
        raise NotImplementedError

    @abstractmethod
    def update_checkpoint(self, host_id: UUID, stage: Optional[ProvisioningStage]) -> None:
        raise NotImplementedError

    @abstractmethod
    def replace_integration_link(self, host_id: UUID, link: IntegrationLink) -> None:
        """Remove any link of the same kind, then add ``link``."""
        raise NotImplementedError

    @abstractmethod
    def update_availability(self, host_id: UUID, availability: Availability, changed_at: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def soft_delete(self, host_id: UUID) -> None:
        raise NotImplementedError


class IntegrationRepository(ABC):

    @abstractmethod
    def create(self, integration: Integration) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, integration_id: UUID) -> Optional[Integration]:
        raise NotImplementedError

    @abstractmethod
    def update_config(self, integration_id: UUID, config: dict) -> None:
        """Merge ``config`` into the record's existing config."""
        raise NotImplementedError


class SwarmRepository(ABC):

    @abstractmethod
    def create(self, swarm: Swarm) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, swarm_id: UUID) -> Optional[Swarm]:
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Swarm]:
        raise NotImplementedError


class DomainRepository(ABC):

    @abstractmethod
    def create(self, domain: Domain) -> None:
        """Must fail with ConflictError if the name already exists."""
        raise NotImplementedError

    @abstractmethod
    def get(self, domain_id: UUID) -> Optional[Domain]:
        raise NotImplementedError

    @abstractmethod
    def get_by_name(self, domain_name: str) -> Optional[Domain]:
        raise NotImplementedError

    @abstractmethod
    def list_active(self, search: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Domain]:
        raise NotImplementedError

    @abstractmethod
    def list_needing_sync(self, host_id: UUID, fresh_after: Optional[datetime]) -> List[Domain]:
        """
        Non-deleted domains that must be pushed to ``host_id``.

        With ``fresh_after`` None every domain qualifies; otherwise only domains
        without a linked-server record for the host newer than ``fresh_after``.
        """
        raise NotImplementedError

    @abstractmethod
    def update_description(self, domain_id: UUID, description: Optional[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def rename(self, domain_id: UUID, domain_name: str) -> None:
        """
        Rename and reset the per-host sync records, certificate and SSL status.

        Must fail with ConflictError if another domain already has the name.
        """
        raise NotImplementedError

    @abstractmethod
    def replace_linked_servers(self, domain_id: UUID, records: Iterable[LinkedServer]) -> None:
        """Remove existing records for the records' hosts, then insert ``records``."""
        raise NotImplementedError

    @abstractmethod
    def set_certificate(self, domain_id: UUID, certificate: DomainCertificate) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_ssl_status(self, domain_id: UUID, ssl_status: SSLStatus) -> None:
        raise NotImplementedError


class ApplicationRepository(ABC):

    @abstractmethod
    def create(self, application: Application) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, application_id: UUID) -> Optional[Application]:
        raise NotImplementedError

    @abstractmethod
    def list_active(self) -> List[Application]:
        raise NotImplementedError

    @abstractmethod
    def update_nginx_directives(self, application_id: UUID, directives: Optional[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def apply_group_changes(
        self,
        application_id: UUID,
        *,
        created: Iterable[DeploymentGroup] = (),
        deleted: Iterable[UUID] = (),
        renamed: Iterable[DeploymentGroup] = (),
    ) -> None:
        """Apply deployment group changes in one write."""
        raise NotImplementedError

    @abstractmethod
    def add_instance(self, instance: Instance) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_instances(self, application_id: UUID) -> List[Instance]:
        """Non-deleted instances of an application."""
        raise NotImplementedError


class JobRepository(ABC):

    @abstractmethod
    def add(self, job: Job) -> None:
        raise NotImplementedError

    @abstractmethod
    def get(self, job_id: UUID) -> Optional[Job]:
        raise NotImplementedError

    @abstractmethod
    def claim_next(self, queue: str, worker_id: str, lease_seconds: int, now: datetime) -> Optional[Job]:
        """
        Atomically claim the oldest runnable job of ``queue``.

        Runnable: WAITING with ``available_at <= now``, or ACTIVE with an
        expired lease and attempts left. An expired ACTIVE job without
        attempts left is marked FAILED instead. The claim moves the job to
        ACTIVE and counts the attempt.
        """
        raise NotImplementedError

    @abstractmethod
    def renew_lease(self, job_id: UUID, worker_id: str, lease_seconds: int, now: datetime) -> None:
        """Extend the lease held by ``worker_id``. Raises JobLeaseError if it holds none."""
        raise NotImplementedError

    @abstractmethod
    def complete(self, job_id: UUID, worker_id: str, now: datetime) -> None:
        raise NotImplementedError

    @abstractmethod
    def fail(self, job_id: UUID, worker_id: str, reason: str, *, retry_at: Optional[datetime], now: datetime) -> None:
        """
        Back to WAITING until ``retry_at``, or FAILED when ``retry_at`` is None.

        Both ``complete`` and ``fail`` raise JobLeaseError when ``worker_id``
        no longer owns the job.
        """
        raise NotImplementedError

    @abstractmethod
    def list_by_state(self, queue: str, state: JobState) -> List[Job]:
        raise NotImplementedError


class ErrorLogRepository(ABC):

    @abstractmethod
    def add(self, entry: ErrorLogEntry) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_for_entity(self, entity_id: UUID) -> List[ErrorLogEntry]:
        raise NotImplementedError
