#!/usr/bin/env python3

import argparse
import logging
import logging.handlers
import os
import sys
import threading

from . import APP_NAME, __version__
from .app import ArchiverApp
from .app_config import ChangeMeta
from .config import settings
from .device import format_device_record, import_device_records
from .error_handling import ArchiverError, DeviceNotFound

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_path_prefix, max_files, max_size, disable_stdout=False, level="INFO"):
    handlers = []
    if not disable_stdout:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_path_prefix:
        os.makedirs(os.path.dirname(log_path_prefix) or ".", exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_path_prefix, maxBytes=max_size, backupCount=max_files))
    if not handlers:
        handlers.append(logging.NullHandler())
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=LOG_FORMAT, handlers=handlers, force=True)


def read_ids(stream):
    for line in stream:
        text = line.strip()
        if text and not text.startswith("#"):
            yield text.split()[0]


def manage_devices(app, args):
    """Handle the device list flags. Returns True if one was given."""
    change = ChangeMeta.now(by="cli", source=os.environ.get("USER", "") or "stdin")

    if args.deviceImport:
        added = import_device_records(app.table, sys.stdin, change)
        logger.info(f"device import: {len(added)} devices added")
        app.save_config(change)
        return True

    if args.deviceDelete or args.devicePurge:
        op = app.table.purge_device if args.devicePurge else app.table.delete_device
        for device_id in read_ids(sys.stdin):
            try:
                op(device_id)
            except DeviceNotFound as e:
                logger.error(f"device {'purge' if args.devicePurge else 'delete'}: {e}")
        app.save_config(change)
        return True

    if args.deviceList:
        for d in app.list_devices():
            if d.deleted:
                continue
            print(format_device_record(d))
        return True

    return False


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Network device configuration archiver",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--runOnce", action="store_true", help="Scan devices once and exit")
    parser.add_argument("--deviceImport", action="store_true", help="Import device records from stdin")
    parser.add_argument("--deviceDelete", action="store_true", help="Delete device ids read from stdin")
    parser.add_argument("--devicePurge", action="store_true", help="Purge device ids read from stdin")
    parser.add_argument("--deviceList", action="store_true", help="List devices to stdout")
    parser.add_argument("--disableStdoutLog", action="store_true", help="Disable logging to stdout")
    parser.add_argument("--configPathPrefix", default=settings.config_path_prefix,
                        help=f"Configuration path prefix (default: {settings.config_path_prefix})")
    parser.add_argument("--repositoryPath", default=settings.repository_path,
                        help=f"Repository path (default: {settings.repository_path})")
    parser.add_argument("--logPathPrefix", default=settings.log_path_prefix,
                        help=f"Log path prefix (default: {settings.log_path_prefix})")
    parser.add_argument("--logMaxFiles", type=int, default=settings.log_max_files,
                        help="Number of rotated log files to keep")
    parser.add_argument("--logMaxSize", type=int, default=settings.log_max_size,
                        help="Log file size that triggers rotation (bytes)")
    args = parser.parse_args(argv)

    setup_logging(args.logPathPrefix, args.logMaxFiles, args.logMaxSize,
                  args.disableStdoutLog, settings.log_level)

    logger.info(f"{APP_NAME} {__version__} starting")
    logger.info(f"config path prefix: {args.configPathPrefix}")
    logger.info(f"repository path: {args.repositoryPath}")

    app = ArchiverApp(config_path_prefix=args.configPathPrefix,
                      repository_path=args.repositoryPath)

    try:
        app.make_dirs()
        found = app.load_config()
        if manage_devices(app, args):
            return 0
        if not found:
            app.save_config(ChangeMeta.now(by="startup", source="default config"))
    except ArchiverError as e:
        logger.error(f"startup: {e}")
        return 1

    if args.runOnce:
        summary = app.run_once()
        logger.info(f"runOnce: good={summary.good} bad={summary.bad} skipped={summary.skipped}")
        return 0 if summary.bad == 0 else 2

    app.start()
    stop = threading.Event()
    try:
        while not stop.wait(3600):
            pass
    except KeyboardInterrupt:
        logger.info("interrupted, shutting down")
    finally:
        app.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
