# provisioning_engine/cluster/service.py
"""Container cluster (Docker Swarm) membership over the engine's TLS API."""

import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from uuid import UUID, uuid4

import docker
import requests
from docker.tls import TLSConfig

from provisioning_engine.core.errors import DataIntegrityError, NotFoundError, RemoteExecutionError
from provisioning_engine.core.models import Host, NodeRole, PendingSetup, Swarm
from provisioning_engine.core.repository import SwarmRepository
from provisioning_engine.vault.vault import CredentialVault

logger = logging.getLogger(__name__)


ClientFactory = Callable[[Host, str, TLSConfig], "docker.DockerClient"]

# Transport failures surface as requests exceptions, API failures as DockerException.
ENGINE_ERRORS = (docker.errors.DockerException, requests.exceptions.RequestException)


@contextmanager
def engine_errors(host: Host, action: str):
    """Re-raise engine API and transport failures as RemoteExecutionError naming ``host``."""
    try:
        yield
    except ENGINE_ERRORS as e:
        raise RemoteExecutionError(f"{action} failed on host {host.host_id}: {e}", host_id=host.host_id) from e


def tls_docker_client(host: Host, base_url: str, tls: TLSConfig) -> docker.DockerClient:
    return docker.DockerClient(base_url=base_url, tls=tls, timeout=60)


class DockerClientPool:
    """
    One docker SDK client per host, authenticated with the host's client
    certificate pair.

    The SDK only reads TLS material from files, so decrypted PEMs live in a
    private temporary directory per host until the client is evicted.
    """

    def __init__(
        self,
        vault: CredentialVault,
        *,
        tls_port: int = 2376,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._vault = vault
        self.tls_port = tls_port
        self._factory = client_factory or tls_docker_client
        self._clients: Dict[UUID, object] = {}
        self._cert_dirs: Dict[UUID, str] = {}
        self._lock = threading.Lock()

    def _write_tls_files(self, host: Host) -> TLSConfig:
        certs = host.engine_certificates
        if certs is None:
            raise DataIntegrityError(f"Host {host.host_id} has no engine certificates")

        directory = tempfile.mkdtemp(prefix=f"engine-{host.host_id}-")
        os.chmod(directory, 0o700)
        paths = {
            "ca.pem": self._vault.decrypt(certs.ca),
            "cert.pem": self._vault.decrypt(certs.client_cert),
            "key.pem": self._vault.decrypt(certs.client_key),
        }
        for name, content in paths.items():
            with open(os.path.join(directory, name), "wb") as f:
                f.write(content)

        self._cert_dirs[host.host_id] = directory
        return TLSConfig(
            client_cert=(os.path.join(directory, "cert.pem"), os.path.join(directory, "key.pem")),
            ca_cert=os.path.join(directory, "ca.pem"),
            verify=True,
        )

    def client_for(self, host: Host):
        with self._lock:
            client = self._clients.get(host.host_id)
            if client is not None:
                return client

            tls = self._write_tls_files(host)
            client = self._factory(host, f"tcp://{host.address}:{self.tls_port}", tls)
            self._clients[host.host_id] = client
            return client

    def evict(self, host_id: UUID) -> None:
        with self._lock:
            client = self._clients.pop(host_id, None)
            directory = self._cert_dirs.pop(host_id, None)
        if client is not None and hasattr(client, "close"):
            client.close()
        if directory:
            shutil.rmtree(directory, ignore_errors=True)

    def close_all(self) -> None:
        for host_id in list(self._clients):
            self.evict(host_id)


@dataclass
class ClusterMembership:
    swarm: Swarm
    role: NodeRole


class ClusterService:
    """Creates a cluster on a host or joins it to a known one."""

    def __init__(
        self,
        swarm_repo: SwarmRepository,
        clients: DockerClientPool,
        *,
        swarm_port: int = 2377,
    ):
        self._swarms = swarm_repo
        self._clients = clients
        self.swarm_port = swarm_port

    def converge(self, host: Host) -> ClusterMembership:
        """
        Apply the host's pending cluster setup.

        Joins ``swarm_id`` with the declared role when one is given and
        creation was not requested; creates a new cluster otherwise. A node
        that is already part of a cluster is left as it is.
        """
        setup = host.pending_setup or PendingSetup()

        with engine_errors(host, "Engine API unreachable"):
            client = self._clients.client_for(host)
            swarm_info = client.info().get("Swarm") or {}

        joining = not setup.create_swarm and setup.swarm_id is not None

        if swarm_info.get("LocalNodeState") == "active":
            logger.info(f"[cluster] Host {host.host_id} is already part of a cluster")
            return self._existing_membership(host, client, swarm_info, setup, joining)

        if joining:
            return self._join(host, client, setup)
        return self._create(host, client)

    def _create(self, host: Host, client) -> ClusterMembership:
        with engine_errors(host, "Cluster creation"):
            client.swarm.init(
                advertise_addr=host.address,
                listen_addr=f"0.0.0.0:{self.swarm_port}",
            )

        swarm = self._record_from_manager(host, client)
        logger.info(f"[cluster] ✅ Host {host.host_id} created cluster {swarm.cluster_id}")
        return ClusterMembership(swarm=swarm, role=NodeRole.MANAGER)

    def _join(self, host: Host, client, setup: PendingSetup) -> ClusterMembership:
        swarm = self._swarms.get(setup.swarm_id)
        if swarm is None:
            raise NotFoundError(f"Cluster {setup.swarm_id} not found")

        with engine_errors(host, f"Joining cluster {swarm.cluster_id}"):
            client.swarm.join(
                remote_addrs=[swarm.manager_address],
                join_token=swarm.join_token(setup.node_role),
                listen_addr=f"0.0.0.0:{self.swarm_port}",
                advertise_addr=host.address,
            )

        logger.info(f"[cluster] ✅ Host {host.host_id} joined cluster {swarm.cluster_id} as {setup.node_role.value}")
        return ClusterMembership(swarm=swarm, role=setup.node_role)

    def _existing_membership(self, host: Host, client, swarm_info: dict, setup: PendingSetup, joining: bool) -> ClusterMembership:
        if joining:
            swarm = self._swarms.get(setup.swarm_id)
            if swarm is None:
                raise NotFoundError(f"Cluster {setup.swarm_id} not found")
            return ClusterMembership(swarm=swarm, role=setup.node_role)

        cluster_id = (swarm_info.get("Cluster") or {}).get("ID")
        for swarm in self._swarms.list_all():
            if swarm.cluster_id == cluster_id:
                return ClusterMembership(swarm=swarm, role=NodeRole.MANAGER)

        return ClusterMembership(swarm=self._record_from_manager(host, client), role=NodeRole.MANAGER)

    def _record_from_manager(self, host: Host, client) -> Swarm:
        with engine_errors(host, "Reading cluster join tokens"):
            client.swarm.reload()
            tokens = client.swarm.attrs.get("JoinTokens") or {}
            cluster_id = client.swarm.id

        swarm = Swarm(
            swarm_id=uuid4(),
            name=f"{host.name}-cluster",
            cluster_id=cluster_id,
            manager_address=f"{host.address}:{self.swarm_port}",
            worker_token=tokens.get("Worker", ""),
            manager_token=tokens.get("Manager", ""),
        )
        self._swarms.create(swarm)
        return swarm
