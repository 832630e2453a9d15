# provisioning_engine/remote/session.py
"""Remote command sessions over SSH."""

import io
import logging
import posixpath
import shlex
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from selectors import EVENT_READ, DefaultSelector
from typing import Dict, Optional, Tuple, Union
from uuid import UUID

import paramiko

from provisioning_engine.core.errors import (
    CommandTimeoutError,
    RemoteConnectionError,
    RemoteExecutionError,
)

logger = logging.getLogger(__name__)

DEBIAN_FAMILY = {"debian", "ubuntu"}
RECV_CHUNK = 16 * 1024


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class OsInfo:
    pretty_name: str
    id: str
    id_like: str
    hostname: str

    def is_debian_family(self) -> bool:
        families = {self.id.lower(), *self.id_like.lower().split()}
        return bool(families & DEBIAN_FAMILY)


def parse_os_release(text: str) -> Dict[str, str]:
    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


class RemoteSession(ABC):
    """
    One authenticated shell channel to a host.

    ``exec`` never raises on a non-zero exit; callers decide with ``run``
    or by inspecting the result.
    """

    host_id: Optional[UUID] = None

    @abstractmethod
    def exec(
        self,
        command: str,
        *,
        input: Optional[Union[str, bytes]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    def run(self, command: str, *, input=None, timeout: Optional[float] = None) -> CommandResult:
        """Execute and raise RemoteExecutionError on a non-zero exit."""
        result = self.exec(command, input=input, timeout=timeout)
        if not result.ok:
            raise RemoteExecutionError(
                f"Command failed on host {self.host_id} (exit {result.exit_code}): {result.stderr.strip()[:500]}",
                host_id=self.host_id,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def write_file(self, path: str, content: Union[str, bytes], *, mode: Optional[str] = None) -> None:
        directory = posixpath.dirname(path)
        if directory:
            self.run(f"sudo mkdir -p {shlex.quote(directory)}")
        self.run(f"sudo tee {shlex.quote(path)} > /dev/null", input=content)
        if mode:
            self.run(f"sudo chmod {mode} {shlex.quote(path)}")

    def read_file(self, path: str) -> Optional[str]:
        """File content, or None when the file does not exist."""
        result = self.exec(f"sudo cat {shlex.quote(path)}")
        if not result.ok:
            return None
        return result.stdout

    def remove_file(self, path: str) -> None:
        self.run(f"sudo rm -f {shlex.quote(path)}")

    def read_os_info(self) -> OsInfo:
        result = self.run('cat /etc/os-release && echo "HOSTNAME=$(hostname)"')
        values = parse_os_release(result.stdout)
        return OsInfo(
            pretty_name=values.get("PRETTY_NAME", ""),
            id=values.get("ID", ""),
            id_like=values.get("ID_LIKE", ""),
            hostname=values.get("HOSTNAME", ""),
        )


def load_private_key(private_key: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key of any supported type."""
    for key_class in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(io.StringIO(private_key))
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException("Unsupported or invalid private key")


class SSHSession(RemoteSession):
    """paramiko-backed session. Commands on one session are serialized."""

    def __init__(
        self,
        *,
        host_id: Optional[UUID],
        address: str,
        port: int,
        username: str,
        private_key: str,
        connect_timeout: float = 10.0,
        command_timeout: float = 600.0,
    ):
        self.host_id = host_id
        self.address = address
        self.port = port
        self.username = username
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

        self._private_key = private_key
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.address,
                port=self.port,
                username=self.username,
                pkey=load_private_key(self._private_key),
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(
                f"Could not connect to host {self.host_id} ({self.address}:{self.port}): {e}",
                host_id=self.host_id,
            ) from e

        self._client = client
        logger.info(f"[ssh] Connected to host {self.host_id} ({self.address}:{self.port})")

    def is_active(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def exec(self, command, *, input=None, timeout=None) -> CommandResult:
        timeout = timeout or self.command_timeout

        with self._lock:
            if not self.is_active():
                self.connect()

            logger.debug(f"[ssh {self.host_id}] $ {command}")
            try:
                channel = self._client.get_transport().open_session(timeout=self.connect_timeout)
                try:
                    channel.exec_command(command)
                    if input is not None:
                        channel.sendall(input.encode("utf-8") if isinstance(input, str) else input)
                    channel.shutdown_write()
                    out, err = self._communicate(channel, command, timeout)
                    exit_code = channel.recv_exit_status()
                finally:
                    channel.close()
            except (paramiko.SSHException, OSError) as e:
                raise RemoteConnectionError(
                    f"Connection to host {self.host_id} lost: {e}",
                    host_id=self.host_id,
                    command=command,
                ) from e

        return CommandResult(
            exit_code=exit_code,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )

    def _communicate(self, channel, command: str, timeout: float) -> Tuple[bytes, bytes]:
        """Drain stdout and stderr together until the command exits or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        out, err = bytearray(), bytearray()

        with DefaultSelector() as selector:
            selector.register(channel, EVENT_READ)
            while True:
                while channel.recv_ready():
                    out += channel.recv(RECV_CHUNK)
                while channel.recv_stderr_ready():
                    err += channel.recv_stderr(RECV_CHUNK)

                if channel.exit_status_ready() and not (channel.recv_ready() or channel.recv_stderr_ready()):
                    return bytes(out), bytes(err)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise CommandTimeoutError(
                        f"Command timed out after {timeout}s on host {self.host_id}",
                        host_id=self.host_id,
                        command=command,
                        stderr=err.decode("utf-8", errors="replace"),
                    )
                selector.select(min(remaining, 1.0))

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
                logger.info(f"[ssh] Closed session for host {self.host_id}")
