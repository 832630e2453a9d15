# provisioning_engine/remote/pool.py
"""Per-host session pool."""

import logging
import threading
from typing import Callable, Dict, Optional
from uuid import UUID

from provisioning_engine.core.errors import NotFoundError
from provisioning_engine.core.repository import HostRepository
from provisioning_engine.remote.session import RemoteSession, SSHSession
from provisioning_engine.vault.vault import CredentialVault

logger = logging.getLogger(__name__)


SessionFactory = Callable[..., RemoteSession]


def ssh_session_factory(connect_timeout: float = 10.0, command_timeout: float = 600.0) -> SessionFactory:
    def factory(*, host_id, address, port, username, private_key) -> RemoteSession:
        return SSHSession(
            host_id=host_id,
            address=address,
            port=port,
            username=username,
            private_key=private_key,
            connect_timeout=connect_timeout,
            command_timeout=command_timeout,
        )
    return factory


class SessionPool:
    """
    Memoizes one session per host.

    Credentials are decrypted through the vault only when a session is
    first created. A session lives until it is evicted; a dropped
    connection is re-established by the session on its next command.
    """

    def __init__(
        self,
        host_repo: HostRepository,
        vault: CredentialVault,
        session_factory: Optional[SessionFactory] = None,
    ):
        self._host_repo = host_repo
        self._vault = vault
        self._factory = session_factory or ssh_session_factory()
        self._sessions: Dict[UUID, RemoteSession] = {}
        self._lock = threading.Lock()

    def session_for(self, host_id: UUID) -> RemoteSession:
        with self._lock:
            session = self._sessions.get(host_id)
            if session is not None:
                return session

            host = self._host_repo.get(host_id)
            if host is None:
                raise NotFoundError(f"Host {host_id} not found")

            session = self._factory(
                host_id=host.host_id,
                address=host.address,
                port=host.ssh_port,
                username=self._vault.decrypt_text(host.admin_username),
                private_key=self._vault.decrypt_text(host.private_key),
            )
            self._sessions[host_id] = session
            return session

    def open_transient(self, *, address: str, port: int, username: str, private_key: str) -> RemoteSession:
        """Unpooled session for credentials that are not stored yet."""
        return self._factory(
            host_id=None,
            address=address,
            port=port,
            username=username,
            private_key=private_key,
        )

    def evict(self, host_id: UUID) -> None:
        with self._lock:
            session = self._sessions.pop(host_id, None)
        if session is not None:
            session.close()
            logger.info(f"[session_pool] Evicted session for host {host_id}")

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        return len(self._sessions)
