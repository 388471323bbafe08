"""
Device Transports
=================

Uniform byte stream to a device over plain TCP, TELNET, SSH (interactive
shell with PTY) or the pipes of a local child process. Every variant has
deadline-bearing reads and writes; deadlines are ``time.monotonic()``
values.

Features:
- Ordered transport preference list, first variant that connects wins
- TELNET option refusal (DO -> WONT, WILL -> DONT) with IAC stripping
- SSH via paramiko with PTY xterm 80x40 and merged stderr
- Child process transport with run timeout and ARCHIVER_* environment
- Read returns b"" on EOF and raises TimeoutError on deadline
"""

import logging
import os
import queue
import socket
import subprocess
import threading
import time
from typing import List, Optional, Sequence, Tuple

import paramiko

from .error_handling import TelnetNegotiationOnly, TransportError

# Configure logging
logger = logging.getLogger(__name__)

DIAL_TIMEOUT = 10.0
READ_CHUNK = 100000

# TELNET
IAC = 255
DONT = 254
DO = 253
WONT = 252
WILL = 251
SB = 250
SE = 240


def force_host_port(host_port: str, default_port: str) -> str:
    """Append the default port unless host_port already carries one."""
    if ":" in host_port:
        return host_port
    return f"{host_port}:{default_port}"


def split_host_port(host_port: str) -> Tuple[str, int]:
    host, _, port = host_port.rpartition(":")
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError:
        raise TransportError(f"bad port in host:port '{host_port}'") from None


def _remaining(deadline: Optional[float]) -> Optional[float]:
    """Seconds until deadline; None means no deadline."""
    if deadline is None:
        return None
    left = deadline - time.monotonic()
    if left <= 0:
        raise TimeoutError("deadline exceeded")
    return left


class Transport:
    """Base byte stream to a device."""

    name = "base"

    def __init__(self, label: str = ""):
        self.label = label
        self.read_deadline: Optional[float] = None
        self.write_deadline: Optional[float] = None

    def set_read_deadline(self, deadline: Optional[float]):
        self.read_deadline = deadline

    def set_write_deadline(self, deadline: Optional[float]):
        self.write_deadline = deadline

    def set_deadline(self, deadline: Optional[float]):
        self.set_read_deadline(deadline)
        self.set_write_deadline(deadline)

    def read(self, size: int = READ_CHUNK) -> bytes:
        """Read up to size bytes. b"" means EOF."""
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        """Write all of data."""
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class TCPTransport(Transport):
    """Plain TCP stream."""

    name = "tcp"

    def __init__(self, sock: socket.socket, label: str = ""):
        super().__init__(label)
        self.sock = sock

    @classmethod
    def dial(cls, host_port: str, timeout: float = DIAL_TIMEOUT, label: str = ""):
        host, port = split_host_port(host_port)
        sock = socket.create_connection((host, port), timeout=timeout)
        return cls(sock, label)

    def _recv(self, size: int) -> bytes:
        self.sock.settimeout(_remaining(self.read_deadline))
        try:
            return self.sock.recv(size)
        except socket.timeout as e:
            raise TimeoutError(f"read timeout: {e}") from e

    def read(self, size: int = READ_CHUNK) -> bytes:
        return self._recv(size)

    def write(self, data: bytes) -> int:
        self.sock.settimeout(_remaining(self.write_deadline))
        try:
            self.sock.sendall(data)
        except socket.timeout as e:
            raise TimeoutError(f"write timeout: {e}") from e
        return len(data)

    def close(self):
        try:
            self.sock.close()
        except OSError as e:
            logger.debug(f"{self.label}: close: {e}")


class TelnetTransport(TCPTransport):
    """TCP stream refusing every TELNET option offered by the peer."""

    name = "telnet"

    def __init__(self, sock: socket.socket, label: str = ""):
        super().__init__(sock, label)
        self._pending = b""

    def read(self, size: int = READ_CHUNK) -> bytes:
        data = self._recv(size)
        if not data:
            if self._pending:
                logger.debug(f"{self.label}: telnet: dropping partial command at EOF: {self._pending!r}")
                self._pending = b""
            return b""

        payload, replies = self._negotiate(self._pending + data)
        if replies:
            logger.debug(f"{self.label}: telnet: reply {replies!r}")
            self.write(replies)
        if not payload:
            raise TelnetNegotiationOnly("telnet negotiation only")
        return payload

    def _negotiate(self, buf: bytes) -> Tuple[bytes, bytes]:
        """Strip TELNET commands from buf; returns (payload, replies)."""
        out = bytearray()
        replies = bytearray()
        self._pending = b""
        i = 0
        n = len(buf)
        while i < n:
            b = buf[i]
            if b != IAC:
                out.append(b)
                i += 1
                continue
            if i + 1 >= n:
                self._pending = buf[i:]
                break
            cmd = buf[i + 1]
            if cmd == IAC:
                out.append(IAC)
                i += 2
                continue
            if cmd in (DO, DONT, WILL, WONT):
                if i + 2 >= n:
                    self._pending = buf[i:]
                    break
                opt = buf[i + 2]
                if cmd == DO:
                    replies += bytes([IAC, WONT, opt])
                elif cmd == WILL:
                    replies += bytes([IAC, DONT, opt])
                i += 3
                continue
            if cmd == SB:
                end = buf.find(bytes([IAC, SE]), i + 2)
                if end < 0:
                    self._pending = buf[i:]
                    break
                i = end + 2
                continue
            # two-byte command (NOP, GA, ...)
            i += 2
        return bytes(out), bytes(replies)


class SSHTransport(Transport):
    """Interactive SSH shell with a PTY; authenticates during dial."""

    name = "ssh"

    def __init__(self, client: paramiko.SSHClient, channel: paramiko.Channel, label: str = ""):
        super().__init__(label)
        self.client = client
        self.channel = channel

    @classmethod
    def dial(cls, host_port: str, user: str, password: str,
             timeout: float = DIAL_TIMEOUT, label: str = ""):
        host, port = split_host_port(host_port)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=port,
                username=user,
                password=password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            channel = client.invoke_shell(term="xterm", width=80, height=40)
            channel.set_combine_stderr(True)
        except Exception:
            client.close()
            raise
        return cls(client, channel, label)

    def read(self, size: int = READ_CHUNK) -> bytes:
        self.channel.settimeout(_remaining(self.read_deadline))
        try:
            return self.channel.recv(size)
        except socket.timeout as e:
            raise TimeoutError(f"read timeout: {e}") from e

    def write(self, data: bytes) -> int:
        self.channel.settimeout(_remaining(self.write_deadline))
        try:
            self.channel.sendall(data)
        except socket.timeout as e:
            raise TimeoutError(f"write timeout: {e}") from e
        return len(data)

    def close(self):
        try:
            self.channel.close()
        finally:
            self.client.close()


class ProcessTransport(Transport):
    """Pipes of a local child process; process exit reads as EOF."""

    name = "run"

    def __init__(self, proc: subprocess.Popen, run_timeout: float, label: str = ""):
        super().__init__(label)
        self.proc = proc
        self._chunks: "queue.Queue[bytes]" = queue.Queue()
        self._leftover = b""
        self._eof = False
        self._reader = threading.Thread(target=self._read_loop, name=f"run-reader-{label}", daemon=True)
        self._reader.start()
        self._killer: Optional[threading.Timer] = None
        if run_timeout > 0:
            self._killer = threading.Timer(run_timeout, self._kill)
            self._killer.daemon = True
            self._killer.start()

    @classmethod
    def spawn(cls, run_prog: Sequence[str], run_timeout: float, env_extra: dict, label: str = ""):
        env = os.environ.copy()
        env.update(env_extra)
        proc = subprocess.Popen(
            list(run_prog),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            bufsize=0,
        )
        return cls(proc, run_timeout, label)

    def _read_loop(self):
        fd = self.proc.stdout.fileno()
        while True:
            try:
                chunk = os.read(fd, READ_CHUNK)
            except OSError as e:
                logger.debug(f"{self.label}: run: read error: {e}")
                chunk = b""
            self._chunks.put(chunk)
            if not chunk:
                return

    def _kill(self):
        if self.proc.poll() is None:
            logger.warning(f"{self.label}: run: timeout, killing pid={self.proc.pid}")
            self.proc.kill()

    def read(self, size: int = READ_CHUNK) -> bytes:
        if self._leftover:
            data, self._leftover = self._leftover[:size], self._leftover[size:]
            return data
        if self._eof:
            return b""
        timeout = _remaining(self.read_deadline)
        try:
            chunk = self._chunks.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("read timeout") from None
        if not chunk:
            self._eof = True
            return b""
        data, self._leftover = chunk[:size], chunk[size:]
        return data

    def write(self, data: bytes) -> int:
        _remaining(self.write_deadline)
        self.proc.stdin.write(data)
        self.proc.stdin.flush()
        return len(data)

    def close(self):
        if self._killer:
            self._killer.cancel()
        try:
            self.proc.stdin.close()
        except OSError:
            pass
        if self.proc.poll() is None:
            self.proc.terminate()
        try:
            self.proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            self.proc.wait()
        self.proc.stdout.close()


def run_env(model_name: str, device_id: str, host_port: str, transports: str,
            user: str, password: str) -> dict:
    """Environment exported to child process transports."""
    return {
        "ARCHIVER_MODEL": model_name,
        "ARCHIVER_DEV_ID": device_id,
        "ARCHIVER_DEV_HOSTPORT": host_port,
        "ARCHIVER_DEV_TRANSPORTS": transports,
        "ARCHIVER_LOGIN_USER": user,
        "ARCHIVER_LOGIN_PASSWORD": password,
    }


def open_transport(model_name: str, device_id: str, host_port: str, transports: str,
                   user: str, password: str, run_prog: Optional[List[str]] = None,
                   run_timeout: float = 60.0,
                   dial_timeout: float = DIAL_TIMEOUT) -> Tuple[Transport, str, bool]:
    """Open the first transport that connects.

    Returns (transport, chosen transport name, already_logged).
    """
    label = f"{model_name} {device_id} {host_port}"

    if run_prog:
        try:
            t = ProcessTransport.spawn(run_prog, run_timeout,
                                       run_env(model_name, device_id, host_port, transports, user, password),
                                       label)
        except OSError as e:
            raise TransportError(f"open_transport: {label} - run {run_prog}: {e}") from e
        return t, "run", False

    names = [t.strip() for t in transports.split(",") if t.strip()]
    if not names:
        raise TransportError(f"open_transport: missing transports: [{transports}]")

    errors = []
    for name in names:
        try:
            if name == "ssh":
                hp = force_host_port(host_port, "22")
                return SSHTransport.dial(hp, user, password, dial_timeout, label), name, True
            hp = force_host_port(host_port, "23")
            if name == "telnet":
                return TelnetTransport.dial(hp, dial_timeout, label), name, False
            if name != "tcp":
                logger.warning(f"open_transport: {label}: unknown transport '{name}', using tcp")
            return TCPTransport.dial(hp, dial_timeout, label), name, False
        except (OSError, EOFError, paramiko.SSHException, TransportError) as e:
            logger.info(f"open_transport: {label}: {name}: {e}")
            errors.append(f"{name}: {e}")

    raise TransportError(f"open_transport: {label} {transports} - unable to open transport: {'; '.join(errors)}")
