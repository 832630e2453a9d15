#tests\test_remote.py

"""Test the SSH session and the per-host session pool."""

import socket
import pytest
from uuid import uuid4

from provisioning_engine.core.errors import CommandTimeoutError, NotFoundError
from provisioning_engine.remote.pool import SessionPool
from provisioning_engine.remote.session import SSHSession


class FakeChannel:
    """Channel that hands out scripted stdout/stderr chunks in order."""

    def __init__(self, chunks=(), exit_code=0, exits=True):
        self.chunks = list(chunks)
        self.exit_code = exit_code
        self.exits = exits
        self.command = None
        self.sent = b""
        self.closed = False
        self._reader, self._writer = socket.socketpair()

    def fileno(self):
        return self._reader.fileno()

    def exec_command(self, command):
        self.command = command

    def sendall(self, data):
        self.sent += data

    def shutdown_write(self):
        pass

    def _next_is(self, stream):
        return bool(self.chunks) and self.chunks[0][0] == stream

    def recv_ready(self):
        return self._next_is("out")

    def recv_stderr_ready(self):
        return self._next_is("err")

    def recv(self, size):
        return self.chunks.pop(0)[1]

    def recv_stderr(self, size):
        return self.chunks.pop(0)[1]

    def exit_status_ready(self):
        return self.exits and not self.chunks

    def recv_exit_status(self):
        return self.exit_code

    def close(self):
        self.closed = True
        self._reader.close()
        self._writer.close()


class FakeTransport:
    def __init__(self, *channels):
        self.channels = list(channels)
        self.active = True

    def is_active(self):
        return self.active

    def open_session(self, timeout=None):
        return self.channels.pop(0)


class FakeClient:
    def __init__(self, transport):
        self.transport = transport

    def get_transport(self):
        return self.transport

    def close(self):
        self.transport.active = False


@pytest.fixture
def ssh_session(monkeypatch):
    """SSHSession whose connections come from a list of fake transports."""

    def build(*transports, command_timeout=5.0):
        session = SSHSession(
            host_id=uuid4(),
            address="10.0.0.1",
            port=22,
            username="admin",
            private_key="KEY",
            command_timeout=command_timeout,
        )
        session.connections = []
        pending = list(transports)

        def connect():
            transport = pending.pop(0)
            session.connections.append(transport)
            session._client = FakeClient(transport)

        monkeypatch.setattr(session, "connect", connect)
        return session

    return build


class TestSSHSession:
    """Test command execution over a channel."""

    def test_reads_interleaved_streams(self, ssh_session):
        noisy = b"warning: deprecated\n" * 5000
        channel = FakeChannel([
            ("err", noisy),
            ("out", b"step 1\n"),
            ("err", b"more\n"),
            ("out", b"step 2\n"),
        ], exit_code=3)
        session = ssh_session(FakeTransport(channel))

        result = session.exec("apt-get install -y nginx")

        assert result.exit_code == 3
        assert result.stdout == "step 1\nstep 2\n"
        assert result.stderr == noisy.decode() + "more\n"
        assert channel.command == "apt-get install -y nginx"
        assert channel.closed

    def test_sends_input(self, ssh_session):
        channel = FakeChannel()
        session = ssh_session(FakeTransport(channel))

        session.exec("sudo tee /etc/nginx/conf.d/app.conf", input="gzip on;")

        assert channel.sent == b"gzip on;"

    def test_overall_timeout(self, ssh_session):
        channel = FakeChannel([("err", b"partial\n")], exits=False)
        session = ssh_session(FakeTransport(channel))

        with pytest.raises(CommandTimeoutError) as exc_info:
            session.exec("sleep 3600", timeout=0.05)

        assert exc_info.value.host_id == session.host_id
        assert exc_info.value.stderr == "partial\n"
        assert channel.closed

    def test_reconnects_dropped_connection(self, ssh_session):
        first = FakeTransport(FakeChannel([("out", b"one")]))
        second = FakeTransport(FakeChannel([("out", b"two")]))
        session = ssh_session(first, second)

        assert session.exec("echo one").stdout == "one"
        first.active = False
        assert session.exec("echo two").stdout == "two"

        assert session.connections == [first, second]


class TestSessionPool:
    """Test session memoization with the SSH session factory."""

    def test_memoizes_unconnected_session(self, container, register_host):
        host = register_host()
        pool = SessionPool(container.repositories.hosts, container.vault)

        first = pool.session_for(host.host_id)

        assert isinstance(first, SSHSession)
        assert not first.is_active()
        assert first.username == "admin"
        assert pool.session_for(host.host_id) is first
        assert len(pool) == 1

    def test_evict_drops_session(self, container, register_host):
        host = register_host()
        pool = SessionPool(container.repositories.hosts, container.vault)
        first = pool.session_for(host.host_id)

        pool.evict(host.host_id)

        assert len(pool) == 0
        assert pool.session_for(host.host_id) is not first

    def test_unknown_host(self, container):
        pool = SessionPool(container.repositories.hosts, container.vault)

        with pytest.raises(NotFoundError):
            pool.session_for(uuid4())
