# provisioning_engine/pipeline/pipeline.py
"""
Provisioning pipeline - converges one host to a ready state.

Stages run strictly in order over a single session. After each stage the
checkpoint is persisted on the host, so a reinitialized host resumes after
the last stage that completed. The OS check always runs.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from uuid import UUID, uuid4

from provisioning_engine.cluster.service import ClusterService
from provisioning_engine.core.errors import NotFoundError, PipelineDeadlineExceeded
from provisioning_engine.core.models import (
    EngineCertificates,
    Host,
    Integration,
    IntegrationKind,
    IntegrationLink,
    Module,
    ProvisioningStage,
)
from provisioning_engine.core.repository import HostRepository, IntegrationRepository
from provisioning_engine.distribution.engine import DistributionEngine
from provisioning_engine.pipeline import steps
from provisioning_engine.pipeline.engine_tls import EngineTLSBundle, generate_engine_tls
from provisioning_engine.remote.pool import SessionPool
from provisioning_engine.remote.session import OsInfo, RemoteSession
from provisioning_engine.vault.vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass
class PipelineRun:
    host: Host
    session: RemoteSession
    deadline: float
    os_info: Optional[OsInfo] = None


class ProvisioningPipeline:

    def __init__(
        self,
        *,
        host_repo: HostRepository,
        integration_repo: IntegrationRepository,
        sessions: SessionPool,
        vault: CredentialVault,
        cluster: ClusterService,
        distribution: DistributionEngine,
        organization: str = "Provisioning Engine",
        docker_tls_port: int = 2376,
        deadline_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._hosts = host_repo
        self._integrations = integration_repo
        self._sessions = sessions
        self._vault = vault
        self._cluster = cluster
        self._distribution = distribution
        self.organization = organization
        self.docker_tls_port = docker_tls_port
        self.deadline_seconds = deadline_seconds
        self._clock = clock

        self._stages: Dict[ProvisioningStage, Callable[[PipelineRun], None]] = {
            ProvisioningStage.OS_CHECK: self._os_check,
            ProvisioningStage.INVENTORY: self._inventory,
            ProvisioningStage.ENGINE: self._engine,
            ProvisioningStage.PROXY: self._proxy,
            ProvisioningStage.CLUSTER: self._cluster_stage,
            ProvisioningStage.DOMAIN_SYNC: self._domain_sync,
        }

    def run(self, host_id: UUID) -> None:
        """
        Run the remaining stages for a host that is already INITIALIZING.

        Any stage error propagates; completed side effects stay in place.
        """
        host = self._require_host(host_id)
        start = host.resume_stage()
        ordered = ProvisioningStage.ordered()

        run = PipelineRun(
            host=host,
            session=self._sessions.session_for(host_id),
            deadline=self._clock() + self.deadline_seconds,
        )

        logger.info(f"[pipeline] Host {host_id}: starting at {start.value}")

        for stage in ordered:
            if stage != ProvisioningStage.OS_CHECK and ordered.index(stage) < ordered.index(start):
                logger.info(f"[pipeline] Host {host_id}: {stage.value} already done, skipping")
                continue

            self._check_deadline(run, stage)
            logger.info(f"[pipeline] Host {host_id}: {stage.value}")
            self._stages[stage](run)
            self._hosts.update_checkpoint(host_id, stage)

        logger.info(f"[pipeline] ✅ Host {host_id} provisioned")

    def _require_host(self, host_id: UUID) -> Host:
        host = self._hosts.get(host_id)
        if host is None:
            raise NotFoundError(f"Host {host_id} not found")
        return host

    def _check_deadline(self, run: PipelineRun, stage: ProvisioningStage) -> None:
        if self._clock() > run.deadline:
            raise PipelineDeadlineExceeded(
                f"Pipeline deadline of {self.deadline_seconds}s exceeded before {stage.value}",
                host_id=run.host.host_id,
            )

    # ============================================
    # STAGES
    # ============================================

    def _os_check(self, run: PipelineRun) -> None:
        run.os_info = steps.check_os(run.session)

    def _inventory(self, run: PipelineRun) -> None:
        system_info = steps.collect_inventory(run.session, run.os_info)
        self._hosts.update_system_info(run.host.host_id, system_info)

    def _engine(self, run: PipelineRun) -> None:
        info = steps.ensure_docker(run.session)
        bundle = self._engine_tls_bundle(run.host)
        steps.enable_engine_api(run.session, bundle, self.docker_tls_port)
        self._refresh_integration(run.host.host_id, IntegrationKind.DOCKER, info)

    def _proxy(self, run: PipelineRun) -> None:
        version = steps.ensure_nginx(run.session)
        steps.deploy_landing_page(run.session)
        self._refresh_integration(run.host.host_id, IntegrationKind.NGINX, {"version": version})

    def _cluster_stage(self, run: PipelineRun) -> None:
        steps.ensure_openssl(run.session)

        host = self._require_host(run.host.host_id)
        membership = self._cluster.converge(host)

        link = host.link_for(IntegrationKind.DOCKER)
        if link is not None:
            self._integrations.update_config(link.integration_id, {
                "cluster_id": membership.swarm.cluster_id,
                "swarm_id": str(membership.swarm.swarm_id),
                "node_role": membership.role.value,
            })

    def _domain_sync(self, run: PipelineRun) -> None:
        self._distribution.resync(run.host.host_id, ignore_staleness=True)

    # ============================================
    # HELPERS
    # ============================================

    def _engine_tls_bundle(self, host: Host) -> EngineTLSBundle:
        """Reuse stored engine certificates; generate and store them otherwise."""
        current = self._require_host(host.host_id).engine_certificates
        if current is not None:
            return EngineTLSBundle(
                ca_cert=self._vault.decrypt_text(current.ca),
                server_cert=self._vault.decrypt_text(current.server_cert),
                server_key=self._vault.decrypt_text(current.server_key),
                client_cert=self._vault.decrypt_text(current.client_cert),
                client_key=self._vault.decrypt_text(current.client_key),
            )

        bundle = generate_engine_tls(host.address, organization=self.organization)
        self._hosts.update_engine_certificates(host.host_id, EngineCertificates(
            ca=self._vault.encrypt(bundle.ca_cert),
            server_cert=self._vault.encrypt(bundle.server_cert),
            server_key=self._vault.encrypt(bundle.server_key),
            client_cert=self._vault.encrypt(bundle.client_cert),
            client_key=self._vault.encrypt(bundle.client_key),
        ))
        return bundle

    def _refresh_integration(self, host_id: UUID, kind: IntegrationKind, config: dict) -> Integration:
        integration = Integration(
            integration_id=uuid4(),
            kind=kind,
            config=dict(config),
            module=Module.SERVER,
        )
        self._integrations.create(integration)
        self._hosts.replace_integration_link(host_id, IntegrationLink(kind=kind, integration_id=integration.integration_id))
        logger.info(f"[pipeline] Host {host_id}: {kind.value} integration {integration.integration_id}")
        return integration
