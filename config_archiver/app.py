"""
Archiver Application
====================

Application context holding everything a running archiver shares: the
device table, runtime options, snapshot store, line filters, paths, the
spawner, the priority runner and the scan loop. Collaborators receive the
context explicitly.

Features:
- Config load from the newest versioned snapshot (defaults when none)
- Config save as a new versioned snapshot
- Run-once mode and background scan loop
- Priority (operator requested) device runs
"""

import logging
import os
import queue
from typing import List, Optional

from .app_config import AppConfig, ChangeMeta, ConfigFile, Options
from .config import Settings, settings as default_settings
from .device import Device, new_device_from_conf
from .device_table import DeviceTable
from .error_handling import DeviceExists, ModelNotFound, StoreError
from .file_storage import SnapshotStore
from .line_filter import FilterTable
from .scheduler import (
    PriorityRunner,
    ScanLoop,
    ScanSummary,
    Spawner,
    scan,
    update_last_success,
)
from .vendor_models import register_models

# Configure logging
logger = logging.getLogger(__name__)


class ArchiverApp:
    """Explicit application context."""

    def __init__(self, config_path_prefix: Optional[str] = None,
                 repository_path: Optional[str] = None,
                 settings: Optional[Settings] = None,
                 store: Optional[SnapshotStore] = None,
                 fetch_func=None):
        self.settings = settings or default_settings
        self.config_path_prefix = config_path_prefix or self.settings.config_path_prefix
        self.repository_path = repository_path or self.settings.repository_path
        self.store = store or SnapshotStore()
        self.table = DeviceTable()
        self.options = Options()
        self.filter_table = FilterTable()

        register_models(self.table)

        spawner_kwargs = {}
        if fetch_func is not None:
            spawner_kwargs["fetch_func"] = fetch_func
        self.spawner = Spawner(self.table, self.options, self.store, self.repository_path,
                               self.filter_table, max_workers=self.settings.spawner_max_workers,
                               **spawner_kwargs)
        self.priority = PriorityRunner(self.table, self.options, self.spawner)
        self.scan_loop = ScanLoop(self.table, self.options, self.spawner)
        self._started = False

    def make_dirs(self):
        """Create base directories; failure is fatal."""
        for path in (os.path.dirname(self.config_path_prefix), self.repository_path):
            try:
                self.store.mkdir(path)
            except OSError as e:
                raise StoreError(f"could not create directory '{path}': {e}") from e

    def load_config(self) -> bool:
        """Load options and devices from the newest config snapshot.

        Returns False when no snapshot exists and defaults were kept.
        """
        try:
            last = self.store.find_last_config(self.config_path_prefix)
        except StoreError as e:
            logger.info(f"load_config: no config found, using defaults: {e}")
            return False

        logger.info(f"load_config: loading '{last}'")
        text = self.store.file_read(last).decode("utf-8")
        cfg = ConfigFile.load(text)

        self.options.set(cfg.options)
        loaded = 0
        for dev_conf in cfg.devices:
            try:
                model = self.table.get_model(dev_conf.model)
            except ModelNotFound as e:
                logger.error(f"load_config: skipping device '{dev_conf.id}': {e}")
                continue
            try:
                self.table.set_device(new_device_from_conf(model, dev_conf))
                loaded += 1
            except DeviceExists as e:
                logger.error(f"load_config: {e}")
        logger.info(f"load_config: {loaded} devices loaded")
        return True

    def save_config(self, change: Optional[ChangeMeta] = None) -> str:
        """Save options and devices as a new config snapshot."""
        opt = self.options.get()
        if change is not None:
            opt.last_change = change
            self.options.set(opt)

        cfg = ConfigFile(options=opt, devices=[d.to_conf() for d in self.table.list_devices()])
        payload = cfg.dump().encode("utf-8")

        path = self.store.save_new_config(self.config_path_prefix, self.settings.config_max_files,
                                          lambda f: f.write(payload))
        logger.info(f"save_config: saved to '{path}'")
        return path

    def start(self):
        """Start spawner, priority runner and periodic scans."""
        if self._started:
            return
        update_last_success(self.table, self.store, self.repository_path)
        self.spawner.start()
        self.priority.start()
        self.scan_loop.start()
        self._started = True

    def stop(self):
        self.scan_loop.stop()
        self.priority.stop()
        self.spawner.close()
        self._started = False

    def run_once(self) -> ScanSummary:
        """Scan every due device once, then shut the spawner down."""
        update_last_success(self.table, self.store, self.repository_path)
        self.spawner.start()
        try:
            return scan(self.table.list_devices(), self.options.get(), self.spawner)
        finally:
            self.spawner.close()

    def request_priority(self, device_id: str, reply_queue: Optional[queue.Queue] = None):
        """Fetch a device now, ignoring holdtime."""
        self.priority.request(device_id, reply_queue)

    def list_devices(self) -> List[Device]:
        return self.table.list_devices()

    def set_options(self, config: AppConfig):
        self.options.set(config)
