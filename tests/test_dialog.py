"""Tests for the dialog engine against scripted fake devices."""

import socket
import threading
import time

import pytest

from conftest import add_cisco, cisco_script, fast_timeouts
from config_archiver.device import create_device
from config_archiver.dialog import Capture, DialogSession, fetch, find_last_line, quote_command
from config_archiver.error_handling import (
    FetchErrorCode,
    MatchTimeout,
    ReadTimeout,
    StoreError,
    UnexpectedEOF,
)
from config_archiver.transport import TCPTransport


def read_snapshot(store, device, repository):
    return store.file_read(store.find_last_config(device.path_prefix(repository)))


def drip(sock, data, count, interval):
    """Send data count times, interval seconds apart."""
    for _ in range(count):
        try:
            sock.sendall(data)
        except OSError:
            return
        time.sleep(interval)


class TestHelpers:

    @pytest.mark.parametrize("buf,expected", [
        (b"", b""),
        (b"router# ", b"router# "),
        (b"line1\nrouter# ", b"router# "),
        (b"line1\r\nrouter# \r\n", b"router# "),
        (b"a\nb\n", b"b"),
        (b"a\rb", b"b"),
    ])
    def test_find_last_line(self, buf, expected):
        assert find_last_line(buf) == expected

    @pytest.mark.parametrize("fmt,command,expected", [
        ("!![%q]", "show run", '!!["show run"]'),
        ("!![%s]", "show run", "!![show run]"),
        ("[%s]", "", "[]"),
        ("!![%q]", 'say "hi"', '!!["say \\"hi\\""]'),
        ("", "show ver", "show ver"),
        ("%s|%q", "x", 'x|"x"'),
    ])
    def test_quote_command(self, fmt, command, expected):
        assert quote_command(fmt, command) == expected

    def test_capture_rollback(self):
        c = Capture()
        c.save("!![\"a\"]", b"out\n")
        assert c.payload() == b"!![\"a\"]\nout\n"
        c.rollback()
        assert c.payload() == b""


@pytest.fixture
def session_pair(table):
    """Dialog session over a socketpair; the peer end plays the device."""
    create_device(table, "cisco-ios", "r1", "h", "tcp", "lab", "pass", "en")
    device = fast_timeouts(table, "r1", read_timeout=0.5, match_timeout=2.0)
    a, b = socket.socketpair()
    session = DialogSession(device, TCPTransport(a, "test"))
    yield session, b
    session.transport.close()
    b.close()


class TestMatch:

    def test_match_index(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"banner\r\nrouter> ")
        index, buf = session.match([r"\S+#\s*$", r"\S+>\s*$"])
        assert index == 1
        assert buf == b"banner\r\nrouter> "

    def test_match_only_last_line(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"router# old\r\n")
        peer.sendall(b"router> ")
        index, _ = session.match([r"\S+#\s*$", r"\S+>\s*$"])
        assert index == 1

    def test_empty_non_leading_pattern_never_matches(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"router> ")
        index, _ = session.match([r"\S+>\s*$", ""])
        assert index == 0

    def test_control_chars_filtered(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"x\x08y\x1b[0m\r\nrouter> ")
        _, buf = session.match([r"\S+>\s*$"])
        assert buf == b"y\r\nrouter> "

    def test_trailing_cr_held_until_next_read(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"line1\r")
        time.sleep(0.1)
        peer.sendall(b"\nrouter> ")
        _, buf = session.match([r"\S+>\s*$"])
        assert buf == b"line1\r\nrouter> "

    def test_read_timeout(self, session_pair):
        session, peer = session_pair
        with pytest.raises(ReadTimeout):
            session.match([r"\S+>\s*$"])

    def test_match_timeout(self, session_pair):
        session, peer = session_pair
        session.read_timeout = 1.0
        session.match_timeout = 0.3
        dripper = threading.Thread(target=drip, args=(peer, b"x", 10, 0.1), daemon=True)
        dripper.start()
        with pytest.raises(MatchTimeout):
            session.match([r"\S+>\s*$"])
        dripper.join()

    def test_unexpected_eof(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"partial")
        peer.close()
        with pytest.raises(UnexpectedEOF):
            session.match([r"\S+>\s*$"])

    def test_eof_mode(self, session_pair):
        session, peer = session_pair
        peer.sendall(b"all of it\n")
        peer.close()
        index, buf = session.match([""])
        assert index == 0
        assert buf == b"all of it\n"


class TestFetch:

    def test_cisco_happy_path(self, table, store, repository, scripted_server):
        server = scripted_server(cisco_script())
        device = add_cisco(table, "lab1", server.host_port)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.code == FetchErrorCode.NONE, result.message
        assert result.success
        assert result.transport == "tcp"
        data = read_snapshot(store, device, repository)
        assert b'!!["show run"]' in data
        assert b'!!["show ver"]\n\r\nCisco IOS Software' in data
        assert b"hostname router" in data
        received = bytes(server.received[0])
        assert received == b"lab\npass\n\nenable\nen\nterm len 0\nshow ver\nshow run\n"

    def test_telnet_iac_before_username(self, table, store, repository, scripted_server):
        script = cisco_script(extra_before=[("send", b"\xff\xfb\x01"), ("expect", b"\xff\xfe\x01")])
        server = scripted_server(script)
        device = add_cisco(table, "lab1", server.host_port, transports="telnet")

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        assert result.transport == "telnet"
        assert bytes(server.received[0]).startswith(b"\xff\xfe\x01lab\n")

    def test_break_after_show_prefix(self, table, store, repository, scripted_server):
        server = scripted_server(cisco_script(break_after_sh=True))
        device = add_cisco(table, "lab1", server.host_port)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.code == FetchErrorCode.COMMANDS
        assert result.message.startswith("commands:")
        with pytest.raises(StoreError):
            store.find_last_config(device.path_prefix(repository))

    def test_pager_extra_prompt_count(self, table, store, repository, scripted_server):
        server = scripted_server(cisco_script(extra_pager_prompts=1))
        add_cisco(table, "lab1", server.host_port)
        device = fast_timeouts(table, "lab1", disable_pager_extra_prompt_count=1)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        data = read_snapshot(store, device, repository)
        assert b'!!["show ver"]\n\r\nCisco IOS Software' in data

    def test_transport_failure(self, table, store, repository):
        s = socket.socket()
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
        s.close()
        device = add_cisco(table, "lab1", f"127.0.0.1:{port}")

        result = fetch(device, repository, 10, store, dial_timeout=1)

        assert result.code == FetchErrorCode.TRANSPORT
        assert result.message.startswith("fetch transport:")

    def test_login_failure(self, table, store, repository, scripted_server):
        server = scripted_server([("send", b"Welcome\r\n"), ("close", None)])
        device = add_cisco(table, "lab1", server.host_port)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.code == FetchErrorCode.LOGIN
        assert result.message.startswith("fetch login:")

    def test_enable_failure(self, table, store, repository, scripted_server):
        script = cisco_script()[:8] + [("send", b"Password: "), ("expect", b"en\n"),
                                       ("send", b"\r\n% Access denied\r\n"), ("close", None)]
        server = scripted_server(script)
        device = add_cisco(table, "lab1", server.host_port)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.code == FetchErrorCode.ENABLE
        assert result.message.startswith("fetch enable:")

    def test_http_eof_mode(self, table, store, repository, scripted_server):
        server = scripted_server([
            ("expect", b"GET / HTTP/1.0\r\n\r\n"),
            ("send", b"HTTP/1.0 200 OK\r\n\r\nhello"),
            ("close", None),
        ])
        create_device(table, "http", "web1", server.host_port, "tcp", "", "", "")
        device = fast_timeouts(table, "web1")

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        data = read_snapshot(store, device, repository)
        assert data == b"[GET / HTTP/1.0\r\n\r\n]\nHTTP/1.0 200 OK\r\n\r\nhello"
        assert bytes(server.received[0]) == b"GET / HTTP/1.0\r\n\r\n"

    def test_line_filter_applied(self, table, store, repository, scripted_server):
        script = cisco_script()
        script[-1] = ("send", b"\r\nBuilding configuration...\r\nhostname router\r\nrouter# ")
        server = scripted_server(script)
        create_device(table, "cisco-iosxr", "xr1", server.host_port, "tcp", "lab", "pass", "en")
        device = fast_timeouts(table, "xr1", command_list=["show ver", "show run"])

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        data = read_snapshot(store, device, repository)
        assert b"!![show run]" in data
        assert b"Building" not in data
        assert b"hostname router" in data


    def test_post_login_prompt_answered(self, table, store, repository, scripted_server):
        script = (cisco_script()[:4]
                  + [("send", b"\r\nPress RETURN to get started"), ("expect", b"\r")]
                  + cisco_script()[4:])
        server = scripted_server(script)
        add_cisco(table, "lab1", server.host_port)
        device = fast_timeouts(table, "lab1",
                               post_login_prompt_pattern=r"Press RETURN to get started\s*$",
                               post_login_prompt_response="\r")

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        received = bytes(server.received[0])
        assert received == b"lab\npass\n\r\nenable\nen\nterm len 0\nshow ver\nshow run\n"

    def test_enabled_prompt_right_after_username(self, table, store, repository, scripted_server):
        script = cisco_script()[:2] + [("send", b"\r\nrouter# ")] + cisco_script()[11:]
        server = scripted_server(script)
        device = add_cisco(table, "lab1", server.host_port)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        assert bytes(server.received[0]) == b"lab\nterm len 0\nshow ver\nshow run\n"
        assert b"hostname router" in read_snapshot(store, device, repository)

    def test_disabled_prompt_right_after_username(self, table, store, repository, scripted_server):
        script = cisco_script()[:2] + cisco_script()[4:]
        server = scripted_server(script)
        device = add_cisco(table, "lab1", server.host_port)

        result = fetch(device, repository, 10, store, dial_timeout=2)

        assert result.success, result.message
        received = bytes(server.received[0])
        assert received == b"lab\n\nenable\nen\nterm len 0\nshow ver\nshow run\n"

    def test_ssh_skips_login_chat(self, table, store, repository, scripted_ssh_server):
        server = scripted_ssh_server(cisco_script()[6:])
        device = add_cisco(table, "lab1", server.host_port, transports="ssh")

        result = fetch(device, repository, 10, store, dial_timeout=5)

        assert result.success, result.message
        assert result.transport == "ssh"
        assert bytes(server.received[0]) == b"\nenable\nen\nterm len 0\nshow ver\nshow run\n"
        assert server.pty_requests == [("xterm", 80, 40)]
        assert b"hostname router" in read_snapshot(store, device, repository)
