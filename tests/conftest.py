"""Shared fixtures: scripted fake device servers and a populated device table."""

import socket
import threading
import time

import paramiko
import pytest

from config_archiver.app_config import AppConfig, Options
from config_archiver.device import create_device
from config_archiver.device_table import DeviceTable
from config_archiver.file_storage import SnapshotStore
from config_archiver.vendor_models import register_models


class ScriptedServer:
    """TCP server replaying one scripted dialog on every connection.

    Script steps are ("send", bytes), ("expect", bytes), ("sleep", seconds)
    or ("close", None).
    Everything received on a connection is kept in ``received``.
    """

    def __init__(self, script):
        self.script = script
        self.received = []
        self.errors = []
        self.connections = 0
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen(8)
        self.port = self._sock.getsockname()[1]
        self._closed = False
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def host_port(self):
        return f"127.0.0.1:{self.port}"

    def _serve(self):
        while not self._closed:
            try:
                conn, _ = self._sock.accept()
            except OSError:
                return
            self.connections += 1
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        conn.settimeout(5)
        got = bytearray()
        self.received.append(got)
        consumed = 0
        try:
            for kind, data in self.script:
                if kind == "send":
                    conn.sendall(data)
                elif kind == "expect":
                    while got.find(data, consumed) < 0:
                        chunk = conn.recv(4096)
                        if not chunk:
                            raise ConnectionError(f"client closed while expecting {data!r}")
                        got += chunk
                    consumed = got.find(data, consumed) + len(data)
                elif kind == "stderr":
                    conn.sendall_stderr(data)
                elif kind == "sleep":
                    time.sleep(data)
                elif kind == "close":
                    return
            # script done: wait for the client to hang up
            while True:
                chunk = conn.recv(4096)
                if not chunk:
                    return
                got += chunk
        except (OSError, ConnectionError) as e:
            self.errors.append(e)
        finally:
            conn.close()

    def close(self):
        self._closed = True
        self._sock.close()


class _ShellServer(paramiko.ServerInterface):
    """Accepts one password and a PTY shell session."""

    def __init__(self, owner):
        self.owner = owner
        self.shell_requested = threading.Event()

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED_REQUEST

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        if (username, password) == (self.owner.user, self.owner.password):
            return paramiko.AUTH_SUCCESSFUL
        return paramiko.AUTH_FAILED

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight,
                                  modes):
        if isinstance(term, bytes):
            term = term.decode("ascii")
        self.owner.pty_requests.append((term, width, height))
        return True

    def check_channel_shell_request(self, channel):
        self.shell_requested.set()
        return True


class ScriptedSSHServer(ScriptedServer):
    """SSH server replaying a scripted dialog on the shell channel.

    Adds a ("stderr", bytes) step writing to the extended data stream.
    """

    host_key = None

    def __init__(self, script, user="lab", password="pass"):
        self.user = user
        self.password = password
        self.pty_requests = []
        self._transports = []
        if ScriptedSSHServer.host_key is None:
            ScriptedSSHServer.host_key = paramiko.RSAKey.generate(2048)
        super().__init__(script)

    def _handle(self, conn):
        t = paramiko.Transport(conn)
        self._transports.append(t)
        t.add_server_key(self.host_key)
        server = _ShellServer(self)
        try:
            t.start_server(server=server)
            chan = t.accept(10)
            if chan is None or not server.shell_requested.wait(10):
                return
            super()._handle(chan)
        except (paramiko.SSHException, EOFError, OSError) as e:
            self.errors.append(e)
        finally:
            t.close()

    def close(self):
        super().close()
        for t in self._transports:
            t.close()


def cisco_script(extra_before=(), break_after_sh=False, extra_pager_prompts=0):
    script = list(extra_before) + [
        ("send", b"Username: "),
        ("expect", b"lab\n"),
        ("send", b"Password: "),
        ("expect", b"pass\n"),
        ("send", b"router> "),
        ("expect", b"\n"),
        ("send", b"\r\nrouter> "),
        ("expect", b"enable\n"),
        ("send", b"Password: "),
        ("expect", b"en\n"),
        ("send", b"\r\nrouter# "),
        ("expect", b"term len 0\n"),
        ("send", b"\r\nrouter# "),
    ]
    for _ in range(extra_pager_prompts):
        script += [("sleep", 0.3), ("send", b"\r\nrouter# ")]
    if break_after_sh:
        script += [("expect", b"sh"), ("close", None)]
        return script
    script += [
        ("expect", b"show ver\n"),
        ("send", b"\r\nCisco IOS Software, Version 15.1\r\nrouter# "),
        ("expect", b"show run\n"),
        ("send", b"\r\nhostname router\r\n!\r\nend\r\nrouter# "),
    ]
    return script


@pytest.fixture
def scripted_server():
    servers = []

    def factory(script):
        server = ScriptedServer(script)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.close()


@pytest.fixture
def table():
    t = DeviceTable()
    register_models(t)
    return t


@pytest.fixture
def store():
    return SnapshotStore()


@pytest.fixture
def repository(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    return str(path)


def fast_timeouts(table, device_id, **overrides):
    """Shrink dialog timeouts of a device so failing tests end quickly."""
    d = table.get_device(device_id)
    d.attr.read_timeout = 2.0
    d.attr.match_timeout = 5.0
    d.attr.send_timeout = 2.0
    d.attr.command_read_timeout = 2.0
    d.attr.command_match_timeout = 5.0
    for key, value in overrides.items():
        setattr(d.attr, key, value)
    table.update_device(d)
    return table.get_device(device_id)


def add_cisco(table, device_id, host_port, transports="tcp"):
    create_device(table, "cisco-ios", device_id, host_port, transports, "lab", "pass", "en")
    return fast_timeouts(table, device_id)


def make_options(**kwargs):
    return Options(AppConfig(**kwargs))


@pytest.fixture
def scripted_ssh_server():
    servers = []

    def factory(script, user="lab", password="pass"):
        server = ScriptedSSHServer(script, user, password)
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.close()
