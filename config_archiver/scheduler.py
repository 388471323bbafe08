"""
Scan Scheduler
==============

Runs device fetches concurrently and paces the periodic scans.

Features:
- Spawner thread turning fetch requests into worker pool tasks
- Per-device serialization of overlapping requests
- Scan driver with bounded concurrency and holdtime cooldown
- Priority runs bypassing holdtime
- Periodic scan loop on APScheduler, paced from the end of each scan
- Device status bookkeeping and per-device error log
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from .app_config import AppConfig, Options
from .device import NEVER, Device, FetchRequest, FetchResult
from .device_table import DeviceTable
from .dialog import fetch
from .errlog import write_errlog
from .error_handling import (
    DeviceNotFound,
    ErrorClassifier,
    FetchErrorCode,
    StoreError,
)
from .file_storage import SnapshotStore
from .line_filter import FilterTable

# Configure logging
logger = logging.getLogger(__name__)

FetchFunc = Callable[..., FetchResult]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def update_device_status(table: DeviceTable, device_id: str, good: bool,
                         last: datetime, elapsed: float = 0.0) -> Optional[Device]:
    """Record the outcome of a fetch on the device."""

    def change(d: Device):
        d.last_try = max(last, d.last_try)
        d.last_status = good
        d.last_elapsed = elapsed
        if good:
            d.last_success = d.last_try

    try:
        return table.modify_device(device_id, change)
    except DeviceNotFound as e:
        logger.warning(f"update_device_status: {e}")
        return None


def clear_device_status(table: DeviceTable, device_id: str, holdtime: float) -> Device:
    """Forget the last success so holdtime no longer delays the device."""
    now = utcnow()
    h1 = table.get_device(device_id).holdtime(now, holdtime)

    def change(d: Device):
        d.last_success = NEVER

    d = table.modify_device(device_id, change)
    h2 = d.holdtime(now, holdtime)
    logger.info(f"clear_device_status: device {device_id} holdtime: old={h1:.1f}s new={h2:.1f}s")
    return d


def update_last_success(table: DeviceTable, store: SnapshotStore, repository: str) -> int:
    """Seed last success of every device from its newest snapshot mtime.

    Last success never moves backwards: with changes_only the newest snapshot
    can be older than a success already recorded in memory.
    """
    updated = 0
    for d in table.list_devices():
        prefix = d.path_prefix(repository)
        try:
            last_config = store.find_last_config(prefix)
            mtime, _ = store.file_info(last_config)
        except (StoreError, OSError) as e:
            logger.debug(f"update_last_success: '{prefix}': {e}")
            continue

        def change(dev: Device, mtime=mtime):
            dev.last_success = max(dev.last_success, mtime)
            dev.last_try = max(dev.last_try, mtime)
            dev.last_status = True

        try:
            table.modify_device(d.id, change)
            updated += 1
        except DeviceNotFound:
            continue
    logger.info(f"update_last_success: {updated} devices updated from repository")
    return updated


_CLOSE = object()


class Spawner:
    """Consumes fetch requests and runs each one in the worker pool."""

    def __init__(self, table: DeviceTable, options: Options, store: SnapshotStore,
                 repository: str, filter_table: Optional[FilterTable] = None,
                 max_workers: int = 50, fetch_func: FetchFunc = fetch):
        self.table = table
        self.options = options
        self.store = store
        self.repository = repository
        self.filter_table = filter_table or FilterTable()
        self.fetch_func = fetch_func
        self.requests: "queue.Queue" = queue.Queue()
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._device_locks: Dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def start(self):
        if self._thread is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                thread_name_prefix="fetch")
            self._thread = threading.Thread(target=self._run, name="spawner", daemon=True)
            self._thread.start()
            logger.info("spawner: started")

    def submit(self, device_id: str, reply_queue: Optional[queue.Queue] = None):
        """Queue a fetch request."""
        self.requests.put(FetchRequest(device_id, reply_queue))

    def close(self, wait: bool = True):
        """Stop after the queued requests; waits for running fetches."""
        if self._thread is None:
            return
        self.requests.put(_CLOSE)
        self._thread.join()
        self._thread = None
        self._executor.shutdown(wait=wait)
        self._executor = None
        logger.info("spawner: exiting")

    def _run(self):
        while True:
            req = self.requests.get()
            if req is _CLOSE:
                return
            self._executor.submit(self._task, req)

    def _device_lock(self, device_id: str) -> threading.Lock:
        with self._locks_lock:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = threading.Lock()
                self._device_locks[device_id] = lock
            return lock

    def _task(self, req: FetchRequest):
        result = self.run_request(req.device_id)
        if req.reply_queue is not None:
            req.reply_queue.put(result)

    def run_request(self, device_id: str) -> FetchResult:
        """Fetch one device, record its status and error log."""
        try:
            device = self.table.get_device(device_id)
        except DeviceNotFound as e:
            logger.error(f"spawner: {e}")
            now = utcnow()
            return FetchResult(model="", device_id=device_id, host_port="", message=str(e),
                               code=FetchErrorCode.GETDEV, begin=now, end=now)

        opt = self.options.get()

        with self._device_lock(device_id):
            begin = utcnow()
            try:
                result = self.fetch_func(device, self.repository, opt.max_config_files,
                                         self.store, self.filter_table)
            except Exception as e:
                logger.exception(f"spawner: fetch {device_id}: unexpected error")
                result = FetchResult(model=device.model, device_id=device.id,
                                     host_port=device.host_port,
                                     message=ErrorClassifier.describe(e),
                                     code=ErrorClassifier.classify_error(e),
                                     begin=begin, end=utcnow())

            update_device_status(self.table, device_id, result.success, result.end, result.elapsed)
            write_errlog(result, device.path_prefix(self.repository), device.debug,
                         device.attr.errlog_hist_size)

        return result


@dataclass
class ScanSummary:
    """Outcome counters of one scan."""
    devices: int = 0
    good: int = 0
    bad: int = 0
    skipped: int = 0
    deleted: int = 0
    elapsed: float = 0.0
    elapsed_min: float = 0.0
    elapsed_max: float = 0.0


def scan(devices: List[Device], options: AppConfig, spawner: Spawner) -> ScanSummary:
    """Fetch every due device, at most max_concurrency at a time."""
    summary = ScanSummary(devices=len(devices))
    logger.info(f"scan: starting devices={len(devices)} max_concurrency={options.max_concurrency}")

    begin = time.monotonic()
    reply: "queue.Queue[FetchResult]" = queue.Queue()
    elapsed_min = None
    elapsed_max = 0.0
    wait = 0
    next_device = 0
    device_count = len(devices)

    while next_device < device_count or wait > 0:

        while next_device < device_count:
            if options.max_concurrency > 0 and wait >= options.max_concurrency:
                break

            d = devices[next_device]
            next_device += 1

            if d.deleted:
                summary.deleted += 1
                summary.skipped += 1
                continue

            h = d.holdtime(utcnow(), options.holdtime)
            if h > 0:
                logger.debug(f"scan: device {d.id} skipping due to holdtime={h:.1f}s")
                summary.skipped += 1
                continue

            spawner.submit(d.id, reply)
            wait += 1
            logger.debug(f"scan: launched: {d.id} wait={wait} max={options.max_concurrency}")

        if wait < 1:
            continue

        r = reply.get()
        wait -= 1
        elapsed = r.elapsed
        logger.info(f"scan: result: {r.model} {r.device_id} {r.host_port} {r.transport} "
                    f"code={r.code.name} msg=[{r.message}] wait={wait} "
                    f"remain={device_count - next_device} skipped={summary.skipped} elapsed={elapsed:.3f}s")

        if r.success:
            summary.good += 1
        else:
            summary.bad += 1
        elapsed_min = elapsed if elapsed_min is None else min(elapsed_min, elapsed)
        elapsed_max = max(elapsed_max, elapsed)

    summary.elapsed = time.monotonic() - begin
    summary.elapsed_min = elapsed_min or 0.0
    summary.elapsed_max = elapsed_max

    logger.info(f"scan: finished elapsed={summary.elapsed:.3f}s devices={device_count} "
                f"good={summary.good} bad={summary.bad} skipped={summary.skipped} "
                f"deleted={summary.deleted} min={summary.elapsed_min:.3f}s max={summary.elapsed_max:.3f}s")
    return summary


class PriorityRunner:
    """Forwards operator-requested device ids to the spawner."""

    def __init__(self, table: DeviceTable, options: Options, spawner: Spawner):
        self.table = table
        self.options = options
        self.spawner = spawner
        self.queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def request(self, device_id: str, reply_queue: Optional[queue.Queue] = None):
        """Run a device as soon as possible, ignoring holdtime."""
        self.queue.put((device_id, reply_queue))

    def start(self):
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="priority", daemon=True)
            self._thread.start()

    def stop(self):
        if self._thread is None:
            return
        self.queue.put(_CLOSE)
        self._thread.join()
        self._thread = None

    def _run(self):
        while True:
            item = self.queue.get()
            if item is _CLOSE:
                return
            device_id, reply_queue = item
            logger.info(f"priority: device {device_id}")
            try:
                clear_device_status(self.table, device_id, self.options.get().holdtime)
            except DeviceNotFound as e:
                logger.warning(f"priority: {e}")
            self.spawner.submit(device_id, reply_queue)


class ScanLoop:
    """Periodic scans driven by one-shot APScheduler jobs.

    Each scan schedules the next one at ``max(0, scan_interval - elapsed)``
    after it ends, so a scan overrunning the interval is followed by the
    next one at once and a changed interval applies from the next scan.
    """

    def __init__(self, table: DeviceTable, options: Options, spawner: Spawner):
        self.table = table
        self.options = options
        self.spawner = spawner
        self.last_summary: Optional[ScanSummary] = None
        self.scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': None,  # a late scan still runs
            },
            timezone='UTC',
        )

    def run_once(self) -> ScanSummary:
        """Scan every device once."""
        summary = scan(self.table.list_devices(), self.options.get(), self.spawner)
        self.last_summary = summary
        return summary

    def _scan_job(self):
        begin = time.monotonic()
        try:
            self.run_once()
        finally:
            elapsed = time.monotonic() - begin
            interval = self.options.get().scan_interval
            self._schedule_next(max(0.0, interval - elapsed))

    def _schedule_next(self, delay: float):
        # one job per scan; a fired date job is removed by its own id
        if not self.scheduler.running:
            return
        run_date = utcnow() + timedelta(seconds=delay)
        self.scheduler.add_job(
            func=self._scan_job,
            trigger=DateTrigger(run_date=run_date),
            name="device scan",
        )
        logger.info(f"scan loop: next scan in {delay:.1f}s")

    def start(self):
        """Start the loop; the first scan runs immediately."""
        self.scheduler.start()
        self._schedule_next(0.0)
        logger.info(f"scan loop: started interval={self.options.get().scan_interval}s")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("scan loop: stopped")
