"""
File Storage Management System
==============================

Versioned snapshot repository. Every snapshot for a path prefix ``P`` is
stored as ``P<n>`` where ``n`` is a monotonically increasing commit id.
New snapshots are written to ``Ptmp`` and published by rename; ``Plast``
holds the id of the newest snapshot as a lookup shortcut.

Features:
- Pluggable storage backends (local filesystem backend included)
- Atomic publish through write-to-temp then rename
- Monotonic commit ids with "last id" shortcut file
- Retention policy keeping the newest N snapshots
- Change-only mode suppressing identical consecutive snapshots
- Integrity comparison with checksums
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Tuple

from .error_handling import StoreError

# Configure logging
logger = logging.getLogger(__name__)

TMP_SUFFIX = "tmp"
LAST_SUFFIX = "last"

WriterFunc = Callable[[BinaryIO], None]


@dataclass
class StorageConfig:
    """Configuration for storage backend."""
    dir_mode: int = 0o750
    file_mode: int = 0o640


class ChecksumCalculator:
    """Handles file integrity verification."""

    @staticmethod
    def calculate_file_checksum(file_path: str, chunk_size: int = 8192) -> str:
        """Calculate SHA256 checksum for file."""
        sha256_hash = hashlib.sha256()

        with open(file_path, 'rb') as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                sha256_hash.update(chunk)

        return sha256_hash.hexdigest()

    @staticmethod
    def files_equal(p1: str, p2: str) -> bool:
        """Compare two files by size, then by checksum."""
        if os.path.getsize(p1) != os.path.getsize(p2):
            return False
        return ChecksumCalculator.calculate_file_checksum(p1) == ChecksumCalculator.calculate_file_checksum(p2)


class BaseStorageBackend:
    """Filesystem primitives used by the snapshot store.

    An object-store backend may replace the local one as long as ``rename``
    publishes the full payload in a single step.
    """

    def __init__(self, config: StorageConfig):
        self.config = config

    def file_exists(self, path: str) -> bool:
        """Check if file exists."""
        raise NotImplementedError

    def remove(self, path: str):
        """Delete file."""
        raise NotImplementedError

    def rename(self, src: str, dst: str):
        """Publish src under the name dst."""
        raise NotImplementedError

    def write_file(self, path: str, writer: WriterFunc, content_type: str = ""):
        """Create file with the bytes produced by writer."""
        raise NotImplementedError

    def write_bytes(self, path: str, data: bytes, content_type: str = ""):
        """Create file with the given bytes."""
        raise NotImplementedError

    def read_first_line(self, path: str) -> str:
        """Read first line of file."""
        raise NotImplementedError

    def read(self, path: str, max_size: int) -> bytes:
        """Read file contents, failing beyond max_size bytes."""
        raise NotImplementedError

    def list_dir(self, path_prefix: str) -> Tuple[str, List[str]]:
        """List names in the directory holding path_prefix."""
        raise NotImplementedError

    def file_info(self, path: str) -> Tuple[datetime, int]:
        """Get modification time and size."""
        raise NotImplementedError

    def compare(self, p1: str, p2: str) -> bool:
        """Check whether two files hold identical bytes."""
        raise NotImplementedError

    def mkdir(self, path: str):
        """Create directory and parents."""
        raise NotImplementedError


class LocalStorageBackend(BaseStorageBackend):
    """Local filesystem storage backend."""

    def file_exists(self, path: str) -> bool:
        return os.path.exists(path)

    def remove(self, path: str):
        os.remove(path)

    def rename(self, src: str, dst: str):
        os.rename(src, dst)

    def write_file(self, path: str, writer: WriterFunc, content_type: str = ""):
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, self.config.file_mode)
        with os.fdopen(fd, 'wb') as f:
            writer(f)

    def write_bytes(self, path: str, data: bytes, content_type: str = ""):
        self.write_file(path, lambda f: f.write(data), content_type)

    def read_first_line(self, path: str) -> str:
        with open(path, 'rb') as f:
            line = f.readline()
        return line.rstrip(b"\r\n").decode('utf-8', errors='replace')

    def read(self, path: str, max_size: int) -> bytes:
        with open(path, 'rb') as f:
            data = f.read(max_size + 1)
        if len(data) > max_size:
            raise StoreError(f"file_read: reached max={max_size}: '{path}'")
        return data

    def list_dir(self, path_prefix: str) -> Tuple[str, List[str]]:
        dirname = os.path.dirname(path_prefix) or "."
        try:
            names = os.listdir(dirname)
        except OSError as e:
            raise StoreError(f"list_config: error reading dir '{dirname}': {e}") from e
        return dirname, names

    def file_info(self, path: str) -> Tuple[datetime, int]:
        stat = Path(path).stat()
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc), stat.st_size

    def compare(self, p1: str, p2: str) -> bool:
        return ChecksumCalculator.files_equal(p1, p2)

    def mkdir(self, path: str):
        os.makedirs(path, mode=self.config.dir_mode, exist_ok=True)


def extract_commit_id(filename: str) -> int:
    """Get the commit id from a snapshot name: "aaa.1" => 1."""
    commit_id = filename[filename.rfind('.') + 1:]
    try:
        return int(commit_id)
    except ValueError:
        raise StoreError(f"extract_commit_id: error parsing filename [{filename}]") from None


def config_path(path_prefix: str, suffix: str) -> str:
    return f"{path_prefix}{suffix}"


class SnapshotStore:
    """Versioned snapshot writer on top of a storage backend."""

    def __init__(self, backend: Optional[BaseStorageBackend] = None):
        self.backend = backend or LocalStorageBackend(StorageConfig())

    def _try_shortcut(self, path_prefix: str) -> Optional[str]:
        last_id_path = config_path(path_prefix, LAST_SUFFIX)
        try:
            commit_id = self.backend.read_first_line(last_id_path).strip()
        except OSError:
            return None
        if not commit_id:
            return None
        path = config_path(path_prefix, commit_id)
        if self.backend.file_exists(path):
            return path
        return None

    def list_config(self, path_prefix: str) -> Tuple[str, List[str]]:
        """List snapshot names under a path prefix."""
        dirname, names = self.backend.list_dir(path_prefix)
        basename = os.path.basename(path_prefix)
        matches = [name for name in names
                   if name and name[-1].isdigit() and name.startswith(basename)]
        logger.debug(f"list_config: prefix=[{path_prefix}] names={len(names)} matches={len(matches)}")
        return dirname, matches

    def list_config_sorted(self, path_prefix: str, reverse: bool = False) -> Tuple[str, List[str]]:
        """List snapshot names sorted by commit id."""
        dirname, matches = self.list_config(path_prefix)

        def sort_key(name: str) -> int:
            try:
                return extract_commit_id(name)
            except StoreError as e:
                logger.warning(f"list_config_sorted: {e}")
                return -1

        matches.sort(key=sort_key, reverse=reverse)
        return dirname, matches

    def find_last_config(self, path_prefix: str) -> str:
        """Find the newest snapshot under a path prefix."""
        path = self._try_shortcut(path_prefix)
        if path:
            return path
        logger.debug(f"find_last_config: not found from shortcut: [{path_prefix}]")

        dirname, matches = self.list_config(path_prefix)
        if not matches:
            raise StoreError(f"find_last_config: no config file found for prefix: {path_prefix}")

        max_id = -1
        last = ""
        for name in matches:
            commit_id = extract_commit_id(name)
            if commit_id >= max_id:
                max_id = commit_id
                last = name

        last_path = os.path.join(dirname, last)
        logger.debug(f"find_last_config: found: {last_path}")
        return last_path

    def save_new_config(self, path_prefix: str, max_files: int, writer: WriterFunc,
                        changes_only: bool = False, content_type: str = "") -> str:
        """Write a new snapshot and return its path.

        With changes_only set, an identical payload leaves the repository
        untouched and the previous snapshot path is returned.
        """
        tmp_path = config_path(path_prefix, TMP_SUFFIX)
        if self.backend.file_exists(tmp_path):
            raise StoreError(f"save_new_config: tmp file exists: [{tmp_path}]")

        try:
            try:
                self.backend.write_file(tmp_path, writer, content_type)
            except StoreError:
                raise
            except Exception as e:
                raise StoreError(f"save_new_config: error creating tmp file: [{tmp_path}]: {e}") from e

            try:
                last_config = self.find_last_config(path_prefix)
                last_id = extract_commit_id(last_config)
            except StoreError as e:
                logger.debug(f"save_new_config: no previous config: [{path_prefix}]: {e}")
                last_config = None
                last_id = -1

            if changes_only and last_config:
                try:
                    if self.backend.compare(last_config, tmp_path):
                        logger.info(f"save_new_config: refusing to create identical new file: [{tmp_path}]")
                        return last_config
                    logger.debug(f"save_new_config: files differ previous=[{last_config}] new=[{tmp_path}]")
                except OSError as e:
                    logger.warning(f"save_new_config: error comparing previous=[{last_config}] to new=[{tmp_path}]: {e}")

            new_id = last_id + 1
            new_path = config_path(path_prefix, str(new_id))
            if self.backend.file_exists(new_path):
                raise StoreError(f"save_new_config: new file exists: [{new_path}]")

            try:
                self.backend.rename(tmp_path, new_path)
            except OSError as e:
                raise StoreError(f"save_new_config: could not rename '{tmp_path}' to '{new_path}': {e}") from e
        finally:
            if self.backend.file_exists(tmp_path):
                try:
                    self.backend.remove(tmp_path)
                except OSError as e:
                    logger.warning(f"save_new_config: error removing temp file=[{tmp_path}]: {e}")

        logger.debug(f"save_new_config: new_path=[{new_path}]")

        last_id_path = config_path(path_prefix, LAST_SUFFIX)
        try:
            self.backend.write_bytes(last_id_path, str(new_id).encode(), content_type)
        except OSError as e:
            # a stale shortcut is worse than none
            logger.warning(f"save_new_config: error writing last id file '{last_id_path}': {e}")
            try:
                self.backend.remove(last_id_path)
            except OSError:
                logger.warning(f"save_new_config: could not remove last id file '{last_id_path}'")

        self.erase_old_files(path_prefix, max_files)

        return new_path

    def erase_old_files(self, path_prefix: str, max_files: int) -> int:
        """Delete the oldest snapshots beyond max_files. Returns count deleted."""
        if max_files < 1:
            return 0

        try:
            dirname, matches = self.list_config_sorted(path_prefix)
        except StoreError as e:
            logger.warning(f"erase_old_files: {e}")
            return 0

        to_delete = len(matches) - max_files
        if to_delete < 1:
            return 0

        deleted = 0
        for name in matches[:to_delete]:
            path = os.path.join(dirname, name)
            logger.debug(f"erase_old_files: delete: [{path}]")
            try:
                self.backend.remove(path)
                deleted += 1
            except OSError as e:
                logger.warning(f"erase_old_files: delete: error: [{path}]: {e}")
        return deleted

    def file_info(self, path: str) -> Tuple[datetime, int]:
        """Return modification time and size of a snapshot."""
        return self.backend.file_info(path)

    def file_read(self, path: str, max_size: int = 10_000_000) -> bytes:
        """Read a snapshot, refusing files larger than max_size."""
        return self.backend.read(path, max_size)

    def mkdir(self, path: str):
        """Create a repository directory."""
        self.backend.mkdir(path)
