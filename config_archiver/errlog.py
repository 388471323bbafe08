"""
Per-Device Error Log
====================

Bounded history of recent fetch outcomes kept beside each device's
snapshots in ``<repo>/<id>/<id>.errlog``. The newest outcome is the first
line; after a write the file holds at most ``hist_size`` lines.
"""

import logging
import os
from datetime import datetime
from typing import List, Optional

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_HIST_SIZE = 30


def errlog_path(path_prefix: str, device_id: str) -> str:
    """Build the full pathname of a device error log."""
    dirname = os.path.dirname(path_prefix)
    return os.path.join(dirname, device_id) + ".errlog"


def format_errlog_line(result, now: Optional[datetime] = None) -> str:
    """Render one fetch result as a single errlog line."""
    now = now or datetime.now().astimezone()
    message = result.message.replace("\n", " ").replace("\r", " ")
    return (f"{now.isoformat()} success={str(result.success).lower()} "
            f"elapsed={result.elapsed:.3f}s model={result.model} dev={result.device_id} "
            f"host={result.host_port} transport={result.transport} "
            f"code={result.code.name} message=[{message}]")


def _load_lines(f, max_lines: int) -> List[bytes]:
    lines = []
    while len(lines) < max_lines:
        line = f.readline()
        if not line:
            break
        lines.append(line)
    return lines


def write_errlog(result, path_prefix: str, debug: bool = False,
                 hist_size: int = DEFAULT_HIST_SIZE) -> bool:
    """Push a fetch result onto the device error log.

    Errors are logged and reported through the return value; they never
    propagate to the caller.
    """
    path = errlog_path(path_prefix, result.device_id)

    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o640)
    except OSError as e:
        logger.error(f"errlog: could not open dev log: '{path}': {e}")
        return False

    with os.fdopen(fd, 'r+b') as f:
        try:
            lines = _load_lines(f, max(hist_size - 1, 0))
            if debug:
                logger.debug(f"errlog debug: '{path}': {len(lines)} lines")

            msg = format_errlog_line(result)
            if debug:
                logger.debug(f"errlog debug: push: '{path}': [{msg}]")

            f.seek(0)
            f.truncate()
            if hist_size > 0:
                f.write(msg.encode('utf-8') + b"\n")
            for line in lines:
                if not line.endswith(b"\n"):
                    line += b"\n"
                f.write(line)
            f.flush()
            os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"errlog: write error: '{path}': {e}")
            return False

    return True


def read_errlog(path_prefix: str, device_id: str) -> List[str]:
    """Return the error log lines of a device, newest first."""
    path = errlog_path(path_prefix, device_id)
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return [line.rstrip("\n") for line in f]
    except FileNotFoundError:
        return []
