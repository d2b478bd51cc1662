"""Sorted listings of monitored roots."""

import logging
import os
import stat
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from .config import ConnectorConfig
from .exceptions import InsufficientAccessError
from .models import Acl, RecordType, compute_file_hash, path_sort_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileEntry:
    """Metadata for one entry found under a monitored root."""
    path: str
    file_type: RecordType
    last_modified: int
    size: int
    acl: Acl

    @property
    def is_directory(self) -> bool:
        return self.file_type == RecordType.DIR

    @property
    def sort_key(self) -> Tuple[str, ...]:
        return path_sort_key(self.path)


class FileSource(ABC):
    """
    A filesystem backend able to list a root in sorted order.

    Entries must be yielded in path-component order so that two listings can
    be compared in one merge pass.
    """

    filesystem_type: str = "unknown"

    @abstractmethod
    def list_entries(self, root: Path) -> Iterator[FileEntry]:
        """
        Yield the entries below root in sorted order.

        Raises:
            InsufficientAccessError: If the root itself cannot be read
            OSError: On I/O failures that should abort the scan
        """

    @abstractmethod
    def checksum(self, entry: FileEntry) -> Optional[str]:
        """Return the content checksum of a file entry, or None if unreadable."""

    def is_stable(self, entry: FileEntry, now: Optional[float] = None) -> bool:
        return True


class AccessTimeRegistry:
    """
    Reference-counted record of original access times.

    The first reader of a path saves its access time; when the last reader
    finishes, the saved time is written back.
    """

    def __init__(self):
        self._entries: Dict[str, List] = {}
        self._lock = threading.Lock()

    def acquire(self, path: str) -> None:
        with self._lock:
            entry = self._entries.get(path)
            if entry is not None:
                entry[1] += 1
                return
            try:
                st = os.stat(path)
            except OSError:
                return
            self._entries[path] = [(st.st_atime_ns, st.st_mtime_ns), 1]

    def release(self, path: str) -> None:
        with self._lock:
            entry = self._entries.get(path)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] > 0:
                return
            del self._entries[path]
            atime_ns, mtime_ns = entry[0]
        try:
            os.utime(path, ns=(atime_ns, mtime_ns))
        except OSError as e:
            logger.warning(f"Couldn't reset the last access time for {path}: {e}")

    def saved_access_time(self, path: str) -> Optional[int]:
        """Access time saved by a live reader of path, in nanoseconds."""
        with self._lock:
            entry = self._entries.get(path)
            return entry[0][0] if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LocalFileSource(FileSource):
    """Lists a local directory tree with os.scandir."""

    filesystem_type = "local"

    def __init__(
        self,
        config: Optional[ConnectorConfig] = None,
        access_times: Optional[AccessTimeRegistry] = None,
    ):
        self.config = config or ConnectorConfig()
        self.access_times = access_times
        if self.access_times is None and self.config.preserve_access_times:
            self.access_times = AccessTimeRegistry()

    def list_entries(self, root: Path) -> Iterator[FileEntry]:
        root = Path(root)
        if not root.is_dir() or not os.access(root, os.R_OK | os.X_OK):
            raise InsufficientAccessError(f"Cannot read monitored root: {root}")
        try:
            children = self._sorted_children(str(root))
        except PermissionError as e:
            raise InsufficientAccessError(f"Cannot read monitored root: {root}") from e
        except FileNotFoundError as e:
            raise InsufficientAccessError(f"Monitored root vanished: {root}") from e
        state_dirs = set(self.config.state_dirs())
        yield from self._walk(children, state_dirs)

    def _sorted_children(self, directory: str) -> List[os.DirEntry]:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda e: e.name)

    def _walk(self, children: List[os.DirEntry], state_dirs: Set[Path]) -> Iterator[FileEntry]:
        follow = self.config.follow_symlinks
        for child in children:
            child_path = Path(child.path)
            # The connector never reports its own snapshot and recovery files.
            if child_path.absolute() in state_dirs or self.config.should_ignore(child_path):
                continue
            try:
                is_dir = child.is_dir(follow_symlinks=follow)
                if not is_dir and not child.is_file(follow_symlinks=follow):
                    continue
                st = child.stat(follow_symlinks=follow)
            except (FileNotFoundError, PermissionError) as e:
                logger.debug(f"Skipping {child.path}: {e}")
                continue

            yield FileEntry(
                path=child.path,
                file_type=RecordType.DIR if is_dir else RecordType.FILE,
                last_modified=st.st_mtime_ns // 1_000_000,
                size=0 if is_dir else st.st_size,
                acl=self._acl_for(st),
            )

            if is_dir:
                try:
                    grandchildren = self._sorted_children(child.path)
                except (FileNotFoundError, PermissionError) as e:
                    logger.debug(f"Skipping contents of {child.path}: {e}")
                    continue
                yield from self._walk(grandchildren, state_dirs)

    @staticmethod
    def _acl_for(st: os.stat_result) -> Acl:
        if st.st_mode & stat.S_IROTH:
            return Acl.public_acl()
        return Acl.new_acl([str(st.st_uid)], [str(st.st_gid)])

    def checksum(self, entry: FileEntry) -> Optional[str]:
        if entry.is_directory:
            return ""
        if self.access_times is None:
            return compute_file_hash(entry.path, self.config.hash_algorithm)
        self.access_times.acquire(entry.path)
        try:
            return compute_file_hash(entry.path, self.config.hash_algorithm)
        finally:
            self.access_times.release(entry.path)

    def is_stable(self, entry: FileEntry, now: Optional[float] = None) -> bool:
        """An entry is stable once unmodified for config.stable_time_seconds."""
        if self.config.stable_time_seconds <= 0:
            return True
        now = time.time() if now is None else now
        return (now * 1000 - entry.last_modified) >= self.config.stable_time_seconds * 1000
