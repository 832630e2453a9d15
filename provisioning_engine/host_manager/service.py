# provisioning_engine/host_manager/service.py
"""Host manager service."""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from provisioning_engine.core.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ProvisioningError,
    RemoteExecutionError,
    ValidationError,
)
from provisioning_engine.core.models import (
    Host,
    HostStatus,
    InitializationOutcome,
    Module,
    NodeRole,
    PendingSetup,
    Swarm,
    utcnow,
)
from provisioning_engine.core.repository import HostRepository, SwarmRepository
from provisioning_engine.core.validation import missing_params, require_params, validate_ssh_port
from provisioning_engine.errorlog.service import ErrorLogService
from provisioning_engine.jobs.models import HOST_INITIALIZE
from provisioning_engine.jobs.queue import JobQueue
from provisioning_engine.pipeline import steps
from provisioning_engine.pipeline.pipeline import ProvisioningPipeline
from provisioning_engine.remote.pool import SessionPool
from provisioning_engine.vault.vault import CredentialVault

logger = logging.getLogger(__name__)


REQUIRED_HOST_PARAMS = ["address", "ssh_port", "admin_username", "private_key", "name"]

EVENT_INITIALIZATION = "HOST_INITIALIZATION"


def host_to_public_dict(host: Host) -> Dict[str, Any]:
    """Host view without credentials or certificate material."""
    return {
        "host_id": str(host.host_id),
        "name": host.name,
        "address": host.address,
        "ssh_port": host.ssh_port,
        "status": host.status.value,
        "record_status": host.record_status.value,
        "availability": host.availability.value,
        "availability_changed_at": host.availability_changed_at.isoformat(),
        "system_info": host.system_info.to_dict() if host.system_info else None,
        "integrations": [
            {"kind": link.kind.value, "integration_id": str(link.integration_id)}
            for link in host.integration_links
        ],
        "checkpoint": host.checkpoint.value if host.checkpoint else None,
        "last_error": host.last_error,
        "created_at": host.created_at.isoformat(),
        "updated_at": host.updated_at.isoformat(),
    }


class HostService:
    """Service for managing hosts and their provisioning lifecycle."""

    def __init__(
        self,
        *,
        host_repo: HostRepository,
        swarm_repo: SwarmRepository,
        vault: CredentialVault,
        sessions: SessionPool,
        pipeline: ProvisioningPipeline,
        queue: JobQueue,
        error_log: ErrorLogService,
        initializing_timeout: int = 7200,
    ):
        self._hosts = host_repo
        self._swarms = swarm_repo
        self._vault = vault
        self._sessions = sessions
        self._pipeline = pipeline
        self._queue = queue
        self._error_log = error_log
        self.initializing_timeout = timedelta(seconds=initializing_timeout)

    # ============================================
    # REGISTRATION
    # ============================================

    def create(self, params: Dict[str, Any]) -> Host:
        require_params(params, REQUIRED_HOST_PARAMS)

        address = params["address"].strip()
        if self._hosts.get_active_by_address(address):
            raise ConflictError(f"A host with address {address} already exists")

        pending_setup = self._pending_setup(params)

        host = Host(
            host_id=uuid4(),
            name=params["name"].strip(),
            address=address,
            ssh_port=validate_ssh_port(params["ssh_port"]),
            admin_username=self._vault.encrypt(params["admin_username"]),
            private_key=self._vault.encrypt(params["private_key"]),
            pending_setup=pending_setup,
        )
        self._hosts.create(host)

        logger.info(f"[host_manager] Registered host {host.host_id} ({host.name} @ {host.address})")
        return host

    def _pending_setup(self, params: Dict[str, Any]) -> PendingSetup:
        swarm_id = params.get("swarm_id")
        create_swarm = bool(params.get("create_swarm", not swarm_id))

        try:
            node_role = NodeRole(str(params.get("node_role") or NodeRole.WORKER.value).upper())
        except ValueError:
            raise ValidationError(f"Invalid node role: {params.get('node_role')}")

        if not create_swarm:
            if not swarm_id:
                raise ValidationError("swarm_id is required to join a cluster", missing_params=["swarm_id"])
            try:
                swarm_id = UUID(str(swarm_id))
            except ValueError:
                raise ValidationError(f"Invalid swarm id: {swarm_id}")
            if self._swarms.get(swarm_id) is None:
                raise NotFoundError(f"Cluster {swarm_id} not found")
        else:
            swarm_id = None

        return PendingSetup(create_swarm=create_swarm, swarm_id=swarm_id, node_role=node_role)

    def test_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Check credentials before a host is registered.

        Uses an unpooled session; verifies admin access and the OS family.
        """
        missing = missing_params(params, ["address", "ssh_port", "admin_username", "private_key"])
        if missing:
            return {"success": False, "missing_params": missing}

        session = self._sessions.open_transient(
            address=params["address"].strip(),
            port=validate_ssh_port(params["ssh_port"]),
            username=params["admin_username"],
            private_key=params["private_key"],
        )
        try:
            session.run("sudo ls /")
            os_info = steps.check_os(session)
            return {"success": True, "os": os_info.pretty_name, "hostname": os_info.hostname}
        except RemoteExecutionError as e:
            logger.info(f"[host_manager] Connection test to {params['address']} failed: {e}")
            return {"success": False, "error": str(e)}
        finally:
            session.close()

    # ============================================
    # QUERIES
    # ============================================

    def find_one(self, host_id: UUID) -> Host:
        host = self._hosts.get(host_id)
        if host is None or host.is_deleted():
            raise NotFoundError(f"Host {host_id} not found")
        return host

    def find_many(self, search: Optional[str] = None) -> List[Host]:
        return self._hosts.list_active(search=search)

    def find_swarms(self) -> List[Swarm]:
        return self._swarms.list_all()

    def delete(self, host_id: UUID) -> None:
        self.find_one(host_id)
        self._hosts.soft_delete(host_id)
        self._sessions.evict(host_id)
        logger.info(f"[host_manager] Host {host_id} deleted")

    # ============================================
    # INITIALIZATION
    # ============================================

    def begin_initialization(self, host_id: UUID, *, enqueue: bool = True) -> Host:
        """
        Move the host to INITIALIZING and queue the pipeline run.

        Returns the host as it was before the transition.
        """
        before = self._hosts.begin_initialization(host_id, utcnow())
        logger.info(f"[host_manager] Host {host_id}: {before.status.value} -> INITIALIZING")

        if enqueue:
            # A failed run is not retried by the queue; reinitialize re-arms it.
            self._queue.add_for_entity(HOST_INITIALIZE, host_id, max_attempts=1)

        return before

    def run_initialization(self, host_id: UUID) -> None:
        """Run the pipeline for an INITIALIZING host and record the outcome."""
        try:
            self._pipeline.run(host_id)
        except Exception as e:
            logger.error(f"[host_manager] ❌ Host {host_id} initialization failed: {e}")
            self.finish_initialization(host_id, InitializationOutcome.FAILED, error=e)
            self._error_log.log_error(e, host_id, InitializationOutcome.FAILED.value, Module.SERVER, EVENT_INITIALIZATION)
            raise

        self.finish_initialization(host_id, InitializationOutcome.COMPLETED)
        logger.info(f"[host_manager] ✅ Host {host_id} initialized")

    def initialize(self, host_id: UUID) -> None:
        """Begin and run the pipeline inline."""
        self.begin_initialization(host_id, enqueue=False)
        self.run_initialization(host_id)

    def finish_initialization(
        self,
        host_id: UUID,
        outcome: InitializationOutcome,
        error: Optional[Exception] = None,
    ) -> None:
        if outcome == InitializationOutcome.COMPLETED:
            status, clear_setup, last_error = HostStatus.SUCCESSFUL_INITIALIZATION, True, None
        else:
            status, clear_setup = HostStatus.FAILED_INITIALIZATION, False
            last_error = str(error) if error else "Initialization failed"

        try:
            self._hosts.finish_initialization(host_id, status, clear_setup=clear_setup, last_error=last_error)
        except InvalidStateError as e:
            # The stuck-initialization sweep may already have failed this host.
            logger.warning(f"[host_manager] Could not finish host {host_id}: {e}")

    def reinitialize(self, host_id: UUID) -> Host:
        host = self._hosts.reinitialize(host_id)
        logger.info(f"[host_manager] Host {host_id} re-armed for initialization (checkpoint={host.checkpoint})")
        return host

    def expire_stale_initializations(self) -> List[UUID]:
        """Fail hosts that have been INITIALIZING longer than the timeout."""
        cutoff = utcnow() - self.initializing_timeout
        expired = []
        for host in self._hosts.list_initializing_since(cutoff):
            error = ProvisioningError(
                f"Initialization did not finish within {int(self.initializing_timeout.total_seconds())}s"
            )
            self.finish_initialization(host.host_id, InitializationOutcome.FAILED, error=error)
            self._error_log.log_error(error, host.host_id, InitializationOutcome.FAILED.value, Module.SERVER, EVENT_INITIALIZATION)
            expired.append(host.host_id)
            logger.warning(f"[host_manager] Host {host.host_id} stuck in INITIALIZING, marked failed")
        return expired
