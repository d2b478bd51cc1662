"""Durable numbered snapshots of one monitored root."""

import logging
import os
import re
import threading
from pathlib import Path
from typing import List, Optional, TextIO

from .exceptions import (
    SnapshotConcurrencyError,
    SnapshotReaderError,
    SnapshotStoreError,
)
from .models import MonitorCheckpoint, SnapshotRecord

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "snap."
END_MARKER = "#END"
MINIMUM_SNAPSHOTS_RETAINED = 3

_SNAPSHOT_NAME = re.compile(r"^snap\.(\d+)$")

# Guards garbage collection and stitching across all stores.
_maintenance_lock = threading.RLock()


def _snapshot_path(snapshot_dir: Path, number: int) -> Path:
    return snapshot_dir / f"{SNAPSHOT_PREFIX}{number}"


def _list_snapshot_numbers(snapshot_dir: Path) -> List[int]:
    if not snapshot_dir.is_dir():
        return []
    numbers = []
    for entry in snapshot_dir.iterdir():
        match = _SNAPSHOT_NAME.match(entry.name)
        if match:
            numbers.append(int(match.group(1)))
    return sorted(numbers)


def _is_complete(path: Path) -> bool:
    """Check whether a snapshot file ends with the completion marker."""
    tail = (END_MARKER + "\n").encode("utf-8")
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = f.tell()
            if size < len(tail):
                return False
            f.seek(size - len(tail))
            return f.read() == tail
    except OSError:
        return False


class SnapshotReader:
    """
    Sequential reader over one snapshot file.

    A reader created without a file is an empty snapshot: the first read
    returns None.
    """

    def __init__(self, snapshot_number: int, path: Optional[Path] = None, lenient: bool = False):
        self.snapshot_number = snapshot_number
        self.path = path
        self._lenient = lenient
        self._file: Optional[TextIO] = open(path, "r", encoding="utf-8") if path else None
        self._line_number = 0
        self._done = self._file is None
        self.records_read = 0

    def read(self) -> Optional[SnapshotRecord]:
        """
        Return the next record, or None at the end of the snapshot.

        Raises:
            SnapshotReaderError: If the file is malformed or incomplete
        """
        if self._done:
            return None

        line = self._file.readline()
        self._line_number += 1

        if not line:
            self._done = True
            if self._lenient:
                return None
            raise SnapshotReaderError(
                f"Snapshot {self.path} ends without completion marker"
            )

        if not line.endswith("\n"):
            # Torn last line of a snapshot that was being written.
            self._done = True
            if self._lenient:
                return None
            raise SnapshotReaderError(
                f"Snapshot {self.path} has a partial record at line {self._line_number}"
            )

        line = line.rstrip("\n")
        if line == END_MARKER:
            self._done = True
            return None

        try:
            record = SnapshotRecord.from_json(line)
        except (ValueError, KeyError, TypeError) as e:
            self._done = True
            raise SnapshotReaderError(
                f"Malformed record in {self.path} at line {self._line_number}: {e}"
            ) from e

        self.records_read += 1
        return record

    def __iter__(self):
        while True:
            record = self.read()
            if record is None:
                return
            yield record

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        self._done = True


class SnapshotWriter:
    """Appends records to a new snapshot file."""

    def __init__(self, snapshot_number: int, path: Path):
        self.snapshot_number = snapshot_number
        self.path = path
        self._file: Optional[TextIO] = open(path, "x", encoding="utf-8")
        self.records_written = 0

    def write(self, record: SnapshotRecord) -> None:
        """Append a record; it is flushed before this returns."""
        if self._file is None:
            raise SnapshotStoreError(f"Snapshot writer {self.path} is closed")
        self._file.write(record.to_json() + "\n")
        self._file.flush()
        self.records_written += 1

    @property
    def closed(self) -> bool:
        return self._file is None

    def _finish(self, complete: bool) -> None:
        if self._file is None:
            return
        try:
            if complete:
                self._file.write(END_MARKER + "\n")
            self._file.flush()
            os.fsync(self._file.fileno())
        finally:
            self._file.close()
            self._file = None


class SnapshotStore:
    """
    Numbered snapshot files for one monitored root.

    Snapshots are named snap.N. The most recent snapshot is the highest N
    whose file carries the completion marker. Only one writer may be open
    at a time.
    """

    def __init__(self, snapshot_dir: Path):
        self.snapshot_dir = Path(snapshot_dir)
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._writer: Optional[SnapshotWriter] = None
        self._oldest_guarantee: Optional[MonitorCheckpoint] = None

    def _most_recent_complete(self) -> Optional[int]:
        for number in reversed(_list_snapshot_numbers(self.snapshot_dir)):
            if _is_complete(_snapshot_path(self.snapshot_dir, number)):
                return number
        return None

    def open_most_recent_reader(self) -> SnapshotReader:
        """
        Open the most recent complete snapshot.

        Returns:
            A reader; an empty reader numbered 0 if no snapshot exists yet
        """
        number = self._most_recent_complete()
        if number is None:
            return SnapshotReader(0)
        return SnapshotReader(number, _snapshot_path(self.snapshot_dir, number))

    def open_new_writer(self) -> SnapshotWriter:
        """
        Open a writer for the next snapshot number.

        Raises:
            SnapshotConcurrencyError: If a writer is already open
        """
        with self._lock:
            if self._writer is not None:
                raise SnapshotConcurrencyError("There is already an active writer.")
            numbers = _list_snapshot_numbers(self.snapshot_dir)
            number = numbers[-1] + 1 if numbers else 1
            self._writer = SnapshotWriter(number, _snapshot_path(self.snapshot_dir, number))
            logger.debug(f"Opened snapshot writer {self._writer.path}")
            return self._writer

    def close(self, reader: Optional[SnapshotReader], writer: Optional[SnapshotWriter]) -> None:
        """Close a reader and complete a writer; either may be None."""
        try:
            if reader is not None:
                reader.close()
        finally:
            if writer is not None:
                self._release(writer, complete=True)

    def abandon(self, writer: SnapshotWriter) -> None:
        """Close a writer without completing its snapshot."""
        logger.info(f"Abandoning partial snapshot {writer.path}")
        self._release(writer, complete=False)

    def _release(self, writer: SnapshotWriter, complete: bool) -> None:
        try:
            writer._finish(complete)
        finally:
            with self._lock:
                if self._writer is writer:
                    self._writer = None

    def accept_guarantee(self, checkpoint: MonitorCheckpoint) -> None:
        """Record that changes up to checkpoint are durably queued."""
        with self._lock:
            if self._oldest_guarantee is None or checkpoint > self._oldest_guarantee:
                self._oldest_guarantee = checkpoint

    def delete_old_snapshots(self) -> int:
        """
        Delete snapshots no longer needed for recovery.

        Keeps every snapshot from the oldest outstanding guarantee on and
        always the three most recent.

        Returns:
            Number of snapshot files deleted
        """
        with _maintenance_lock:
            numbers = _list_snapshot_numbers(self.snapshot_dir)
            if not numbers:
                return 0
            keep_from = numbers[-1] - (MINIMUM_SNAPSHOTS_RETAINED - 1)
            with self._lock:
                guarantee = self._oldest_guarantee
                active = self._writer.snapshot_number if self._writer else None
            if guarantee is not None:
                keep_from = min(keep_from, guarantee.snapshot_number)

            deleted = 0
            for number in numbers:
                if number >= keep_from or number == active:
                    continue
                path = _snapshot_path(self.snapshot_dir, number)
                try:
                    path.unlink()
                    deleted += 1
                except FileNotFoundError:
                    pass
            if deleted:
                logger.debug(f"Deleted {deleted} old snapshot(s) in {self.snapshot_dir}")
            return deleted

    def delete_all(self) -> None:
        """Remove every snapshot file of this store."""
        with _maintenance_lock:
            for number in _list_snapshot_numbers(self.snapshot_dir):
                _snapshot_path(self.snapshot_dir, number).unlink(missing_ok=True)

    @staticmethod
    def stitch(snapshot_dir: Path, checkpoint: MonitorCheckpoint) -> int:
        """
        Rebuild a consistent current snapshot after a crash.

        The result holds the first checkpoint.offset2 records of snapshot
        checkpoint.snapshot_number + 1 followed by the records of snapshot
        checkpoint.snapshot_number from index checkpoint.offset1 on. It is
        written as a new snapshot numbered above every existing file.

        Returns:
            Number of the stitched snapshot

        Raises:
            SnapshotStoreError: If the snapshots the checkpoint refers to are missing
        """
        snapshot_dir = Path(snapshot_dir)
        with _maintenance_lock:
            old_number = checkpoint.snapshot_number
            old_path = _snapshot_path(snapshot_dir, old_number)
            new_path = _snapshot_path(snapshot_dir, old_number + 1)

            if old_number > 0 and not old_path.exists():
                raise SnapshotStoreError(
                    f"Cannot stitch {snapshot_dir}: snapshot {old_number} is missing"
                )
            if checkpoint.offset2 > 0 and not new_path.exists():
                raise SnapshotStoreError(
                    f"Cannot stitch {snapshot_dir}: snapshot {old_number + 1} is missing"
                )

            numbers = _list_snapshot_numbers(snapshot_dir)
            target_number = (numbers[-1] if numbers else 0) + 1
            target_path = _snapshot_path(snapshot_dir, target_number)

            newer = SnapshotReader(old_number + 1, new_path if new_path.exists() else None, lenient=True)
            older = SnapshotReader(old_number, old_path if old_number > 0 else None)
            writer = SnapshotWriter(target_number, target_path)
            try:
                for _ in range(checkpoint.offset2):
                    record = newer.read()
                    if record is None:
                        raise SnapshotStoreError(
                            f"Cannot stitch {snapshot_dir}: snapshot {old_number + 1} "
                            f"has fewer than {checkpoint.offset2} records"
                        )
                    writer.write(record)

                for _ in range(checkpoint.offset1):
                    if older.read() is None:
                        break
                for record in older:
                    writer.write(record)
                writer._finish(complete=True)
            except BaseException:
                writer._finish(complete=False)
                target_path.unlink(missing_ok=True)
                raise
            finally:
                newer.close()
                older.close()

            logger.info(
                f"Stitched snapshot {target_number} in {snapshot_dir} from "
                f"{old_number + 1}[0:{checkpoint.offset2}] + {old_number}[{checkpoint.offset1}:]"
            )
            return target_number
