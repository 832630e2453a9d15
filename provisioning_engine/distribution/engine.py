# provisioning_engine/distribution/engine.py
"""Domain distribution - pushes per-domain state to every eligible host."""

import logging
import shlex
import time
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Tuple
from uuid import UUID

from provisioning_engine.core.errors import NotFoundError, PartialFleetFailure
from provisioning_engine.core.models import (
    Application,
    Domain,
    Host,
    Instance,
    LinkedServer,
    Module,
    SyncStatus,
    utcnow,
)
from provisioning_engine.core.repository import DomainRepository, HostRepository
from provisioning_engine.distribution import nginx
from provisioning_engine.errorlog.service import ErrorLogService
from provisioning_engine.remote.pool import SessionPool
from provisioning_engine.remote.session import RemoteSession
from provisioning_engine.vault.vault import CredentialVault

logger = logging.getLogger(__name__)

FAILED = "FAILED"

EVENT_ADD_DOMAIN = "ADD_DOMAIN_TO_SERVER"
EVENT_REMOVE_DOMAIN = "REMOVE_DOMAIN_FROM_SERVER"
EVENT_AUTH_FILE = "ADD_DOMAIN_AUTH_FILE"
EVENT_SSL = "ADD_DOMAIN_SSL"
EVENT_DIRECTIVES = "SYNC_APPLICATION_DIRECTIVES"


class DistributionEngine:
    """
    Best-effort fan-out of domain configuration.

    Offline and deleted hosts are skipped silently. A failure on one host is
    recorded in the error log and the fan-out continues with the next host.
    """

    def __init__(
        self,
        *,
        host_repo: HostRepository,
        domain_repo: DomainRepository,
        sessions: SessionPool,
        vault: CredentialVault,
        error_log: ErrorLogService,
        remote_root: str = "/srv/provisioning",
        staleness_window: int = 300,
        resync_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._hosts = host_repo
        self._domains = domain_repo
        self._sessions = sessions
        self._vault = vault
        self._error_log = error_log
        self.remote_root = remote_root
        self.staleness_window = timedelta(seconds=staleness_window)
        self.resync_delay = resync_delay
        self._sleep = sleep

    # ============================================
    # FAN-OUT HELPERS
    # ============================================

    def _eligible(self, hosts: Iterable[Host]) -> List[Host]:
        return [h for h in hosts if h.is_eligible_target()]

    def _record_failure(self, host: Host, entity_id: UUID, module: Module, event: str, error: Exception) -> None:
        failure = PartialFleetFailure(host.host_id, entity_id, event, error)
        logger.warning(f"[distribution] {event} failed on host {host.host_id} for {entity_id}: {error}")
        self._error_log.log_error(failure, entity_id, FAILED, module, event)

    # ============================================
    # DOMAINS
    # ============================================

    def _push_domain(self, session: RemoteSession, domain: Domain) -> None:
        name = domain.domain_name
        tls = domain.certificate is not None

        session.run(f"sudo mkdir -p {nginx.WEB_ROOT}/{name} {nginx.include_dir(name)}")
        session.write_file(nginx.index_path(name), nginx.render_index(name))
        if tls:
            self._write_certificate(session, domain)
        nginx.update_config_file(
            session,
            nginx.vhost_path(name),
            nginx.render_vhost(name, remote_root=self.remote_root, tls=tls),
        )

    def add_domain_to_hosts(self, hosts: Iterable[Host], domain: Domain) -> List[LinkedServer]:
        """
        Push ``domain`` to every eligible host and record per-host sync state.

        Records of the hosts that succeeded replace any earlier records for
        those hosts; hosts that were skipped or failed keep what they had.
        """
        staged: List[LinkedServer] = []

        for host in self._eligible(hosts):
            try:
                session = self._sessions.session_for(host.host_id)
                self._push_domain(session, domain)
                staged.append(LinkedServer(host_id=host.host_id, status=SyncStatus.ACTIVE, last_sync=utcnow()))
                logger.info(f"[distribution] Domain {domain.domain_name} pushed to host {host.host_id}")
            except Exception as e:
                self._record_failure(host, domain.domain_id, Module.DOMAIN, EVENT_ADD_DOMAIN, e)

        if staged:
            self._domains.replace_linked_servers(domain.domain_id, staged)

        return staged

    def add_domain_to_all_hosts(self, domain: Domain) -> List[LinkedServer]:
        return self.add_domain_to_hosts(self._hosts.list_active(), domain)

    def remove_domain_from_hosts(self, domain_name: str, entity_id: UUID) -> List[UUID]:
        """
        Delete the vhost, web root, include directory and certificate of
        ``domain_name`` from every eligible host, then reload nginx.

        Returns the ids of the hosts that were cleaned.
        """
        cert_path, key_path = nginx.certificate_paths(self.remote_root, domain_name)
        paths = " ".join(shlex.quote(p) for p in (
            nginx.vhost_path(domain_name),
            f"{nginx.WEB_ROOT}/{domain_name}",
            nginx.include_dir(domain_name),
            cert_path,
            key_path,
        ))

        removed = []
        for host in self._eligible(self._hosts.list_active()):
            try:
                session = self._sessions.session_for(host.host_id)
                session.run(f"sudo rm -rf {paths}")
                nginx.check_config(session)
                nginx.reload(session)
                removed.append(host.host_id)
            except Exception as e:
                self._record_failure(host, entity_id, Module.DOMAIN, EVENT_REMOVE_DOMAIN, e)

        logger.info(f"[distribution] Domain {domain_name} removed from {len(removed)} host(s)")
        return removed

    def resync(self, host_id: UUID, ignore_staleness: bool = False) -> int:
        """
        Push domains to one host that has no record for them or a stale one.

        Returns how many domains were pushed.
        """
        host = self._hosts.get(host_id)
        if host is None:
            raise NotFoundError(f"Host {host_id} not found")

        if not host.is_eligible_target():
            logger.info(f"[distribution] Host {host_id} is offline or deleted, skipping resync")
            return 0

        fresh_after = None if ignore_staleness else utcnow() - self.staleness_window
        domains = self._domains.list_needing_sync(host_id, fresh_after)
        if not domains:
            return 0

        logger.info(f"[distribution] Resyncing {len(domains)} domain(s) to host {host_id}")
        for index, domain in enumerate(domains):
            if index > 0 and self.resync_delay:
                self._sleep(self.resync_delay)
            self.add_domain_to_hosts([host], domain)

        return len(domains)

    # ============================================
    # CERTIFICATES
    # ============================================

    def add_domain_auth_file(self, domain_id: UUID, token: str, validation: str) -> List[UUID]:
        """Publish an HTTP-01 challenge response on every eligible host."""
        domain = self._domains.get(domain_id)
        if domain is None:
            raise NotFoundError(f"Domain {domain_id} not found")

        applied = []
        for host in self._eligible(self._hosts.list_active()):
            try:
                session = self._sessions.session_for(host.host_id)
                session.write_file(nginx.challenge_path(domain.domain_name, token), validation)
                applied.append(host.host_id)
            except Exception as e:
                self._record_failure(host, domain.domain_id, Module.DOMAIN, EVENT_AUTH_FILE, e)

        logger.info(f"[distribution] Challenge for {domain.domain_name} published on {len(applied)} host(s)")
        return applied

    def remove_domain_auth_file(self, domain_id: UUID, token: str) -> None:
        domain = self._domains.get(domain_id)
        if domain is None:
            return
        for host in self._eligible(self._hosts.list_active()):
            try:
                self._sessions.session_for(host.host_id).remove_file(
                    nginx.challenge_path(domain.domain_name, token)
                )
            except Exception as e:
                logger.warning(f"[distribution] Could not remove challenge on host {host.host_id}: {e}")

    def _write_certificate(self, session: RemoteSession, domain: Domain) -> None:
        cert = self._vault.decrypt_text(domain.certificate.cert)
        key = self._vault.decrypt_text(domain.certificate.key)
        cert_path, key_path = nginx.certificate_paths(self.remote_root, domain.domain_name)
        session.write_file(cert_path, cert, mode="644")
        session.write_file(key_path, key, mode="600")

    def add_domain_ssl(self, domain: Domain) -> List[UUID]:
        """
        Install the domain certificate on every eligible host and switch its
        vhost to TLS.
        """
        if domain.certificate is None:
            raise NotFoundError(f"Domain {domain.domain_id} has no certificate")

        # Fails fast on undecryptable material rather than per host.
        self._vault.decrypt(domain.certificate.cert)
        self._vault.decrypt(domain.certificate.key)

        applied = []
        for host in self._eligible(self._hosts.list_active()):
            try:
                session = self._sessions.session_for(host.host_id)
                self._write_certificate(session, domain)
                nginx.update_config_file(
                    session,
                    nginx.vhost_path(domain.domain_name),
                    nginx.render_vhost(domain.domain_name, remote_root=self.remote_root, tls=True),
                )
                applied.append(host.host_id)
            except Exception as e:
                self._record_failure(host, domain.domain_id, Module.DOMAIN, EVENT_SSL, e)

        logger.info(f"[distribution] ✅ Certificate for {domain.domain_name} installed on {len(applied)} host(s)")
        return applied

    # ============================================
    # APPLICATIONS
    # ============================================

    def apply_application_directives(
        self,
        application: Application,
        instances: Iterable[Instance],
        hosts: Optional[Iterable[Host]] = None,
    ) -> Tuple[List[UUID], List[UUID]]:
        """
        Write the application's directive block into every proxied instance's
        per-domain application config on every eligible host.

        Cleared directives produce an empty application config. Returns the
        ids of the hosts that were updated and of those that failed.
        """
        proxied = [i for i in instances if i.requires_proxy()]
        if not proxied:
            return [], []

        content = nginx.render_application_directives(application.nginx_directives)
        targets = self._eligible(hosts if hosts is not None else self._hosts.list_active())

        applied, failed = [], []
        for host in targets:
            try:
                session = self._sessions.session_for(host.host_id)
                for instance in proxied:
                    nginx.update_config_file(session, nginx.application_conf_path(instance.domain_name), content)
                applied.append(host.host_id)
            except Exception as e:
                failed.append(host.host_id)
                self._record_failure(host, application.application_id, Module.APPLICATION, EVENT_DIRECTIVES, e)

        return applied, failed
