#provisioning_engine\container.py

"""Dependency injection container - wires all services together."""

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, List, Optional

from provisioning_engine.availability.monitor import AvailabilityMonitor, Prober
from provisioning_engine.certificates.issuer import CertbotIssuer
from provisioning_engine.cluster.service import ClientFactory, ClusterService, DockerClientPool
from provisioning_engine.config import EngineSettings, get_engine_settings
from provisioning_engine.core.repository import (
    ApplicationRepository,
    DomainRepository,
    ErrorLogRepository,
    HostRepository,
    IntegrationRepository,
    JobRepository,
    SwarmRepository,
)
from provisioning_engine.distribution.applications import ApplicationService
from provisioning_engine.distribution.engine import DistributionEngine
from provisioning_engine.domains.service import DomainService
from provisioning_engine.errorlog.service import ErrorLogService
from provisioning_engine.host_manager.service import HostService
from provisioning_engine.jobs.queue import JobQueue
from provisioning_engine.jobs.worker import QueueWorker
from provisioning_engine.jobs.workers import build_domain_workers, build_host_worker
from provisioning_engine.pipeline.pipeline import ProvisioningPipeline
from provisioning_engine.remote.pool import SessionFactory, SessionPool, ssh_session_factory
from provisioning_engine.scheduler.scheduler import FleetScheduler
from provisioning_engine.vault.vault import CredentialVault


# ============================================
# REPOSITORIES
# ============================================

@dataclass
class Repositories:
    hosts: HostRepository
    integrations: IntegrationRepository
    swarms: SwarmRepository
    domains: DomainRepository
    applications: ApplicationRepository
    jobs: JobRepository
    errors: ErrorLogRepository


def postgres_repositories(session_factory=None) -> Repositories:
    from provisioning_engine.infrastructure.postgres.repositories import (
        PostgresApplicationRepository,
        PostgresDomainRepository,
        PostgresErrorLogRepository,
        PostgresHostRepository,
        PostgresIntegrationRepository,
        PostgresJobRepository,
        PostgresSwarmRepository,
    )

    return Repositories(
        hosts=PostgresHostRepository(session_factory),
        integrations=PostgresIntegrationRepository(session_factory),
        swarms=PostgresSwarmRepository(session_factory),
        domains=PostgresDomainRepository(session_factory),
        applications=PostgresApplicationRepository(session_factory),
        jobs=PostgresJobRepository(session_factory),
        errors=PostgresErrorLogRepository(session_factory),
    )


def memory_repositories() -> Repositories:
    from provisioning_engine.infrastructure.memory.repository import (
        InMemoryApplicationRepository,
        InMemoryDomainRepository,
        InMemoryErrorLogRepository,
        InMemoryHostRepository,
        InMemoryIntegrationRepository,
        InMemoryJobRepository,
        InMemorySwarmRepository,
    )

    return Repositories(
        hosts=InMemoryHostRepository(),
        integrations=InMemoryIntegrationRepository(),
        swarms=InMemorySwarmRepository(),
        domains=InMemoryDomainRepository(),
        applications=InMemoryApplicationRepository(),
        jobs=InMemoryJobRepository(),
        errors=InMemoryErrorLogRepository(),
    )


# ============================================
# CONTAINER
# ============================================

class Container:
    """
    Builds every service from settings and a set of repositories.

    Nothing here opens a connection: SSH sessions and engine clients are
    created on first use.
    """

    def __init__(
        self,
        settings: EngineSettings,
        repositories: Repositories,
        *,
        ssh_factory: Optional[SessionFactory] = None,
        docker_client_factory: Optional[ClientFactory] = None,
        prober: Optional[Prober] = None,
        issuer: Optional[CertbotIssuer] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.repositories = repositories

        # Shared infrastructure
        self.vault = CredentialVault.from_settings(settings)
        self.error_log = ErrorLogService(repositories.errors)
        self.queue = JobQueue(repositories.jobs, max_attempts=settings.queue_max_attempts)
        self.sessions = SessionPool(
            repositories.hosts,
            self.vault,
            ssh_factory or ssh_session_factory(settings.ssh_connect_timeout, settings.command_timeout),
        )
        self.docker_clients = DockerClientPool(
            self.vault,
            tls_port=settings.docker_tls_port,
            client_factory=docker_client_factory,
        )

        # Distribution
        self.distribution = DistributionEngine(
            host_repo=repositories.hosts,
            domain_repo=repositories.domains,
            sessions=self.sessions,
            vault=self.vault,
            error_log=self.error_log,
            remote_root=settings.remote_root,
            staleness_window=settings.staleness_window,
            resync_delay=settings.resync_delay,
            sleep=sleep,
        )
        self.application_service = ApplicationService(repositories.applications, self.distribution)

        # Hosts
        self.cluster = ClusterService(repositories.swarms, self.docker_clients, swarm_port=settings.swarm_port)
        self.pipeline = ProvisioningPipeline(
            host_repo=repositories.hosts,
            integration_repo=repositories.integrations,
            sessions=self.sessions,
            vault=self.vault,
            cluster=self.cluster,
            distribution=self.distribution,
            organization=settings.organization,
            docker_tls_port=settings.docker_tls_port,
            deadline_seconds=settings.pipeline_deadline,
        )
        self.host_service = HostService(
            host_repo=repositories.hosts,
            swarm_repo=repositories.swarms,
            vault=self.vault,
            sessions=self.sessions,
            pipeline=self.pipeline,
            queue=self.queue,
            error_log=self.error_log,
            initializing_timeout=settings.initializing_timeout,
        )
        self.monitor = AvailabilityMonitor(
            repositories.hosts,
            prober=prober,
            ping_timeout=settings.ping_timeout,
        )

        # Domains
        self.issuer = issuer or CertbotIssuer(
            base_dir=settings.certbot_dir,
            email=settings.certbot_email,
            staging=settings.certbot_staging,
        )
        self.domain_service = DomainService(
            domain_repo=repositories.domains,
            distribution=self.distribution,
            vault=self.vault,
            queue=self.queue,
            issuer=self.issuer,
        )

    def _worker_options(self) -> dict:
        return {
            "poll_interval": self.settings.queue_poll_interval,
            "lease_seconds": self.settings.queue_lease_seconds,
            "backoff_base": self.settings.queue_backoff_base,
        }

    def build_workers(self) -> List[QueueWorker]:
        workers = build_domain_workers(
            domain_service=self.domain_service,
            queue=self.queue,
            repository=self.repositories.jobs,
            error_log=self.error_log,
            concurrency=self.settings.queue_concurrency,
            **self._worker_options(),
        )
        workers.append(build_host_worker(
            host_service=self.host_service,
            repository=self.repositories.jobs,
            concurrency=self.settings.queue_concurrency,
            **self._worker_options(),
        ))
        return workers

    def build_scheduler(self) -> FleetScheduler:
        return FleetScheduler(
            host_repo=self.repositories.hosts,
            host_service=self.host_service,
            monitor=self.monitor,
            distribution=self.distribution,
            applications=self.application_service,
            availability_interval=self.settings.availability_interval,
            resync_interval=self.settings.resync_interval,
            directives_interval=self.settings.directives_interval,
        )

    def close(self) -> None:
        self.sessions.close_all()
        self.docker_clients.close_all()


@lru_cache
def get_container() -> Container:
    """Process-wide container backed by PostgreSQL."""
    return Container(get_engine_settings(), postgres_repositories())
