"""
Device Dialog Engine
====================

Drives the interactive CLI of one device through the sequence

    login -> enable -> pager off -> command list -> save

matching prompts with per-model regular expressions under per-read and
whole-match deadlines. The captured dialog (command echoes interleaved
with device output) is published as a new repository snapshot.

Features:
- Match primitive evaluating patterns on the last line received
- EOF-seeking match mode (empty leading pattern)
- TELNET negotiation-only reads tolerated
- Control character filtering before matching
- Post-login banner acknowledgement and username suffix
- Command timeouts swapped in for the command phase
- Capture rollback on command failure
"""

import json
import logging
import re
import socket
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

from .control_chars import CR, remove_control_chars
from .device import Device, FetchResult
from .error_handling import (
    ArchiverError,
    FetchErrorCode,
    MatchError,
    MatchTimeout,
    ReadTimeout,
    StoreError,
    TelnetNegotiationOnly,
    UnexpectedEOF,
)
from .file_storage import SnapshotStore
from .line_filter import FilterTable
from .transport import DIAL_TIMEOUT, READ_CHUNK, Transport, open_transport

# Configure logging
logger = logging.getLogger(__name__)

_QUOTE_VERBS = re.compile(r"%[qs]")


def find_last_line(buf: bytes) -> bytes:
    """Last line of buf, ignoring one trailing line break."""
    if buf.endswith(b"\n"):
        buf = buf[:-1]
        if buf.endswith(b"\r"):
            buf = buf[:-1]
    last_eol = max(buf.rfind(b"\r"), buf.rfind(b"\n"))
    return buf[last_eol + 1:]


def quote_command(fmt: str, command: str) -> str:
    """Format a command echo: %q is the quoted command, %s the raw one."""
    if not fmt:
        return command

    def verb(m):
        if m.group(0) == "%q":
            return json.dumps(command, ensure_ascii=False)
        return command

    return _QUOTE_VERBS.sub(verb, fmt)


class Capture:
    """Blocks of text saved during one dialog."""

    def __init__(self):
        self.blocks: List[bytes] = []

    def save(self, echo: str, buf: bytes):
        self.blocks.append(echo.encode("utf-8") + b"\n")
        self.blocks.append(buf)

    def rollback(self):
        self.blocks = []

    def payload(self) -> bytes:
        return b"".join(self.blocks)


class DialogSession:
    """Dialog state for one fetch of one device over an open transport."""

    def __init__(self, device: Device, transport: Transport):
        self.device = device
        self.attr = device.attr.copy()
        self.transport = transport
        self.capture = Capture()
        self.read_timeout = self.attr.read_timeout
        self.match_timeout = self.attr.match_timeout

    def _debug(self, msg: str):
        if self.device.debug:
            logger.debug(f"device '{self.device.id}': {msg}")

    def _filter(self, buf: bytes, data: bytes) -> bytes:
        if self.attr.keep_control_chars:
            return buf + data
        buf, suffix = remove_control_chars(buf, data, self.device.debug)
        return buf + suffix

    def match(self, patterns: List[str]) -> Tuple[int, bytes]:
        """Read until one pattern matches the last line received.

        Returns the index of the matching pattern and the buffer read by
        this call. An empty first pattern means "read until EOF".
        """
        eof_mode = not patterns or patterns[0] == ""

        compiled = []
        if not eof_mode:
            for p in patterns:
                if not p:
                    compiled.append(None)
                    continue
                try:
                    compiled.append(re.compile(p.encode("utf-8")))
                except re.error as e:
                    raise MatchError(f"match: bad pattern '{p}': {e}") from e

        buf = b""
        pending = b""
        begin = time.monotonic()

        while True:
            now = time.monotonic()
            if now - begin > self.match_timeout:
                raise MatchTimeout(f"match: timed out: {self.match_timeout}s")

            self.transport.set_deadline(now + self.read_timeout)

            try:
                data = self.transport.read(READ_CHUNK)
            except TelnetNegotiationOnly:
                self._debug("recv: telnet negotiation only")
                continue
            except (TimeoutError, socket.timeout) as e:
                raise ReadTimeout(f"match: read timed out ({self.read_timeout}s): {e}") from e
            except OSError as e:
                raise MatchError(f"match: unexpected error: {e}") from e

            eof = not data
            if eof:
                self._debug("recv: EOF")
                if pending:
                    buf = self._filter(buf, pending)
                    pending = b""
            else:
                self._debug(f"recv: [{data!r}]")
                data = pending + data
                pending = b""
                # a trailing CR may be the first half of CR LF
                if not self.attr.keep_control_chars and data[-1] == CR:
                    data, pending = data[:-1], data[-1:]
                buf = self._filter(buf, data)

            if compiled:
                last_line = find_last_line(buf)
                for i, exp in enumerate(compiled):
                    if exp is not None and exp.search(last_line):
                        return i, buf

            if eof:
                if eof_mode:
                    return 0, buf
                raise UnexpectedEOF(f"match: unexpected EOF: buf=[{buf[-200:]!r}]")

    def send(self, msg: Union[str, bytes]):
        """Write msg under the send timeout."""
        data = msg.encode("utf-8") if isinstance(msg, str) else msg
        self.transport.set_write_deadline(time.monotonic() + self.attr.send_timeout)
        self._debug(f"send: [{data!r}]")
        self.transport.write(data)

    def sendln(self, msg: str):
        """Write msg followed by LF, unless the model suppresses it."""
        if self.attr.suppress_auto_lf:
            self.send(msg)
        else:
            self.send(msg + "\n")

    def login(self) -> bool:
        """Run the login chat. Returns True when already in enabled mode."""
        a = self.attr
        try:
            m1, _ = self.match([a.username_prompt_pattern, a.password_prompt_pattern])
        except MatchError as e:
            raise MatchError(f"login: could not find username prompt: {e}") from e

        if m1 == 0:
            logger.debug(f"login: {self.device.id}: found username prompt")
            self.sendln(self.device.login_user + a.username_append)

            try:
                m2, _ = self.match([a.password_prompt_pattern, a.enabled_prompt_pattern,
                                    a.disabled_prompt_pattern])
            except MatchError as e:
                raise MatchError(f"login: could not find password prompt: {e}") from e
            if m2 == 1:
                logger.debug(f"login: {self.device.id}: found enabled command prompt")
                return True
            if m2 == 2:
                logger.debug(f"login: {self.device.id}: found disabled command prompt")
                return False
        else:
            logger.debug(f"login: {self.device.id}: found password prompt")

        self.sendln(self.device.login_password)
        if a.send_extra_post_password_newline:
            self.sendln("")

        try:
            if a.post_login_prompt_pattern:
                m, _ = self.match([a.disabled_prompt_pattern, a.enabled_prompt_pattern,
                                   a.post_login_prompt_pattern])
                if m == 2:
                    logger.debug(f"login: {self.device.id}: found post-login prompt")
                    self.send(a.post_login_prompt_response)
                    m, _ = self.match([a.disabled_prompt_pattern, a.enabled_prompt_pattern])
            else:
                m, _ = self.match([a.disabled_prompt_pattern, a.enabled_prompt_pattern])
        except MatchError as e:
            raise MatchError(f"login: could not find command prompt: {e}") from e

        return m == 1

    def enable(self):
        """Enter enabled mode."""
        a = self.attr
        self.sendln("")
        try:
            m0, _ = self.match([a.disabled_prompt_pattern, a.enabled_prompt_pattern])
        except MatchError as e:
            raise MatchError(f"enable: could not find command prompt: {e}") from e
        if m0 == 1:
            logger.debug(f"enable: {self.device.id}: found enabled command prompt")
            return

        self.sendln(a.enable_command)
        try:
            m, _ = self.match([a.enable_password_prompt_pattern, a.enabled_prompt_pattern])
        except MatchError as e:
            raise MatchError(f"enable: could not match after-enable prompt: {e}") from e
        if m == 1:
            return

        self.sendln(self.device.enable_password)
        try:
            self.match([a.enabled_prompt_pattern])
        except MatchError as e:
            raise MatchError(f"enable: could not find enabled command prompt: {e}") from e

    def pager_off(self):
        """Send the pager-disabling command and consume its prompts."""
        a = self.attr
        self.sendln(a.disable_pager_command)
        for i in range(a.disable_pager_extra_prompt_count + 1):
            try:
                self.match([a.enabled_prompt_pattern])
            except MatchError as e:
                raise MatchError(f"pager off: could not match command prompt {i + 1}: {e}") from e

    @contextmanager
    def command_timeouts(self):
        """Use the command read/match timeouts inside the block."""
        saved = (self.read_timeout, self.match_timeout)
        self.read_timeout = self.attr.command_read_timeout
        self.match_timeout = self.attr.command_match_timeout
        try:
            yield
        finally:
            self.read_timeout, self.match_timeout = saved

    def send_commands(self):
        """Send every command and capture its output."""
        a = self.attr
        pattern = a.enabled_prompt_pattern
        with self.command_timeouts():
            for i, command in enumerate(a.command_list):
                if command:
                    try:
                        self.sendln(command)
                    except OSError as e:
                        raise MatchError(f"send_commands: could not send command [{i}] '{command}': {e}") from e

                try:
                    _, buf = self.match([pattern])
                except MatchError as e:
                    raise MatchError(f"send_commands: could not match command prompt: {e}") from e
                if not pattern:
                    logger.debug(f"send_commands: {self.device.id}: found wanted EOF")

                self.capture.save(quote_command(a.quote_sent_commands_format, command), buf)

    def save_commit(self, store: SnapshotStore, repository: str, max_files: int,
                    filter_table: Optional[FilterTable] = None) -> str:
        """Publish the capture as a new snapshot. Returns its path."""
        a = self.attr
        payload = self.capture.payload()

        if a.line_filter:
            if filter_table is None:
                filter_table = FilterTable()
            try:
                payload = filter_table.apply(a.line_filter, payload, self.device.debug)
            except KeyError as e:
                raise StoreError(f"save_commit: {e}") from e

        dev_dir = self.device.device_dir(repository)
        try:
            store.mkdir(dev_dir)
        except OSError as e:
            raise StoreError(f"save_commit: mkdir: {e}") from e

        path = store.save_new_config(self.device.path_prefix(repository), max_files,
                                     lambda f: f.write(payload), a.changes_only,
                                     a.s3_content_type)
        logger.info(f"save_commit: dev '{self.device.id}' saved to '{path}'")
        return path


def fetch(device: Device, repository: str, max_files: int, store: SnapshotStore,
          filter_table: Optional[FilterTable] = None, delay: float = 0.0,
          dial_timeout: float = DIAL_TIMEOUT) -> FetchResult:
    """Run the whole dialog for one device and save the capture."""
    a = device.attr
    logger.info(f"fetch: {device.model} {device.id} {device.host_port} {device.transports} delay={delay:.3f}s")

    if delay > 0:
        time.sleep(delay)

    result = FetchResult(model=device.model, device_id=device.id, host_port=device.host_port)

    def done(code: FetchErrorCode, message: str = "") -> FetchResult:
        result.code = code
        result.message = message
        result.end = datetime.now(timezone.utc)
        return result

    try:
        transport, chosen, logged = open_transport(
            device.model, device.id, device.host_port, device.transports,
            device.login_user, device.login_password,
            run_prog=a.run_prog, run_timeout=a.run_timeout, dial_timeout=dial_timeout)
    except ArchiverError as e:
        return done(FetchErrorCode.TRANSPORT, f"fetch transport: {e}")

    result.transport = chosen
    logger.info(f"fetch: {device.model} {device.id} {device.host_port} - transport OPEN logged={logged}")

    with transport:
        session = DialogSession(device, transport)
        enabled = False
        if a.need_login_chat and not logged:
            try:
                enabled = session.login()
            except (ArchiverError, OSError) as e:
                return done(FetchErrorCode.LOGIN, f"fetch login: {e}")

        if a.need_enabled_mode and not enabled:
            try:
                session.enable()
            except (ArchiverError, OSError) as e:
                return done(FetchErrorCode.ENABLE, f"fetch enable: {e}")

        if a.need_paging_off:
            try:
                session.pager_off()
            except (ArchiverError, OSError) as e:
                return done(FetchErrorCode.PAGER, f"fetch pager off: {e}")

        try:
            session.send_commands()
        except (ArchiverError, OSError) as e:
            session.capture.rollback()
            return done(FetchErrorCode.COMMANDS, f"commands: {e}")

        try:
            session.save_commit(store, repository, max_files, filter_table)
        except (ArchiverError, OSError) as e:
            return done(FetchErrorCode.SAVE, f"save commit: {e}")

        return done(FetchErrorCode.NONE)
