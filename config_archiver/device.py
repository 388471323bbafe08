"""
Devices
=======

Device records, fetch requests/results and the whitespace-separated text
form used for bulk import and listing:

    <model> <id> <hostPort> <transports> <user> <password> [<enable>] [<debug>]

Lines starting with ``#`` are comments and blank lines are skipped. An
enable password of ``.`` means empty; any 8th token turns on debug.
"""

import copy
import logging
import os
import queue
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .app_config import ChangeMeta, DevConfig
from .error_handling import DeviceRecordError, FetchErrorCode
from .models import DevAttributes, Model

# Configure logging
logger = logging.getLogger(__name__)

NEVER = datetime.fromtimestamp(0, tz=timezone.utc)
AUTO_ID = "auto"


@dataclass
class Device:
    """A device in the table: persisted config plus runtime status."""
    id: str
    model: str
    host_port: str
    transports: str = "ssh,telnet"
    login_user: str = ""
    login_password: str = ""
    enable_password: str = ""
    debug: bool = False
    deleted: bool = False
    last_change: ChangeMeta = field(default_factory=ChangeMeta)
    attr: DevAttributes = field(default_factory=DevAttributes)

    last_try: datetime = NEVER
    last_success: datetime = NEVER
    last_elapsed: float = 0.0
    last_status: bool = False

    def copy(self) -> "Device":
        return copy.deepcopy(self)

    def holdtime(self, now: datetime, holdtime: float) -> float:
        """Seconds left before the device is due again; positive means skip."""
        return holdtime - (now - self.last_success).total_seconds()

    def device_dir(self, repository: str) -> str:
        return os.path.join(repository, self.id)

    def path_prefix(self, repository: str) -> str:
        """Snapshot path prefix: <repo>/<id>/<id>."""
        return os.path.join(self.device_dir(repository), self.id) + "."

    def to_conf(self) -> DevConfig:
        return DevConfig(
            model=self.model,
            id=self.id,
            host_port=self.host_port,
            transports=self.transports,
            login_user=self.login_user,
            login_password=self.login_password,
            enable_password=self.enable_password,
            debug=self.debug,
            deleted=self.deleted,
            last_change=copy.deepcopy(self.last_change),
            attr=self.attr.copy(),
        )


def new_device(model: Model, device_id: str, host_port: str, transports: str,
               login_user: str, login_password: str, enable_password: str,
               debug: bool = False, change: Optional[ChangeMeta] = None) -> Device:
    """Create a device whose attributes are a copy of the model defaults."""
    return Device(
        id=device_id,
        model=model.name,
        host_port=host_port,
        transports=transports,
        login_user=login_user,
        login_password=login_password,
        enable_password=enable_password,
        debug=debug,
        last_change=change or ChangeMeta(),
        attr=model.new_attr(),
    )


def new_device_from_conf(model: Model, conf: DevConfig) -> Device:
    """Rebuild a device from its persisted record."""
    return Device(
        id=conf.id,
        model=model.name,
        host_port=conf.host_port,
        transports=conf.transports,
        login_user=conf.login_user,
        login_password=conf.login_password,
        enable_password=conf.enable_password,
        debug=conf.debug,
        deleted=conf.deleted,
        last_change=copy.deepcopy(conf.last_change),
        attr=conf.attr.copy(),
    )


def create_device(table, model_name: str, device_id: str, host_port: str, transports: str,
                  login_user: str, login_password: str, enable_password: str,
                  debug: bool = False, change: Optional[ChangeMeta] = None) -> Device:
    """Create a device from a registered model and insert it into the table."""
    logger.info(f"create_device: {model_name} {device_id} {host_port} {transports}")
    model = table.get_model(model_name)
    device = new_device(model, device_id, host_port, transports, login_user,
                        login_password, enable_password, debug, change)
    table.set_device(device)
    return device


@dataclass
class FetchResult:
    """Outcome of one device fetch."""
    model: str
    device_id: str
    host_port: str
    transport: str = ""
    message: str = ""
    code: FetchErrorCode = FetchErrorCode.NONE
    begin: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.code == FetchErrorCode.NONE

    @property
    def elapsed(self) -> float:
        return (self.end - self.begin).total_seconds()


@dataclass
class FetchRequest:
    """Spawner request: fetch one device, optionally reply on a queue."""
    device_id: str
    reply_queue: Optional["queue.Queue[FetchResult]"] = None


@dataclass
class DeviceRecord:
    """Parsed device text record."""
    model: str
    id: str
    host_port: str
    transports: str
    login_user: str
    login_password: str
    enable_password: str = ""
    debug: bool = False


def parse_device_record(line: str) -> Optional[DeviceRecord]:
    """Parse one text record. Returns None for comments and blank lines."""
    text = line.strip()
    if not text or text.startswith("#"):
        return None

    tokens = text.split()
    if len(tokens) < 6:
        raise DeviceRecordError(f"missing fields (need at least 6, got {len(tokens)}): [{text}]")

    enable = ""
    if len(tokens) > 6 and tokens[6] != ".":
        enable = tokens[6]

    return DeviceRecord(
        model=tokens[0],
        id=tokens[1],
        host_port=tokens[2],
        transports=tokens[3],
        login_user=tokens[4],
        login_password=tokens[5],
        enable_password=enable,
        debug=len(tokens) > 7,
    )


def format_device_record(device) -> str:
    """Render a device (or DeviceRecord) as one text record."""
    enable = device.enable_password or "."
    line = (f"{device.model} {device.id} {device.host_port} {device.transports} "
            f"{device.login_user} {device.login_password} {enable}")
    if device.debug:
        line += " debug"
    return line


def import_device_records(table, lines: Iterable[str],
                          change: Optional[ChangeMeta] = None) -> List[str]:
    """Create devices from text records. Returns the ids added.

    An id of ``auto`` allocates the next free ``auto<n>`` id. Bad lines
    are logged and skipped.
    """
    added = []
    for num, line in enumerate(lines, start=1):
        try:
            record = parse_device_record(line)
        except DeviceRecordError as e:
            logger.error(f"import_device_records: line {num}: {e}")
            continue
        if record is None:
            continue

        device_id = record.id
        if device_id == AUTO_ID:
            device_id = table.find_device_free_id(AUTO_ID)

        try:
            create_device(table, record.model, device_id, record.host_port, record.transports,
                          record.login_user, record.login_password, record.enable_password,
                          record.debug, change)
        except Exception as e:
            logger.error(f"import_device_records: line {num}: could not add device '{device_id}': {e}")
            continue
        added.append(device_id)

    logger.info(f"import_device_records: {len(added)} devices added")
    return added
