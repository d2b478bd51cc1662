"""Per-root scan, diff and emit loop."""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, Tuple

from .change_source import ChangeAggregator
from .config import ConnectorConfig
from .exceptions import InsufficientAccessError, MonitorAlreadyRunningError
from .filesystem import FileEntry, FileSource
from .models import (
    Change,
    ChangeType,
    MonitorCheckpoint,
    RecordType,
    SnapshotRecord,
)
from .snapshot_store import SnapshotReader, SnapshotStore, SnapshotWriter

logger = logging.getLogger(__name__)


@dataclass
class ScanContext:
    """
    Settings supplied by the consumer of the change stream.

    Attributes:
        max_document_size: Files larger than this are left out of snapshots
    """
    max_document_size: Optional[int] = None


def classify(old: Optional[SnapshotRecord], new: Optional[SnapshotRecord]) -> Optional[ChangeType]:
    """Change type for a pair of records with the same path (None if equal)."""
    if old is None:
        return ChangeType.ADD
    if new is None:
        return ChangeType.DELETE
    if old != new:
        return ChangeType.MODIFY
    return None


def diff_snapshots(
    old_records: Iterable[SnapshotRecord],
    new_records: Iterable[SnapshotRecord],
) -> Iterator[Tuple[ChangeType, Optional[SnapshotRecord], Optional[SnapshotRecord]]]:
    """
    Compare two sorted record sequences in one merge pass.

    Yields:
        (change_type, old, new) for every difference; old is None for ADD
        and new is None for DELETE
    """
    old_iter = iter(old_records)
    new_iter = iter(new_records)
    old = next(old_iter, None)
    new = next(new_iter, None)

    while old is not None or new is not None:
        if new is None or (old is not None and old.sort_key < new.sort_key):
            yield ChangeType.DELETE, old, None
            old = next(old_iter, None)
        elif old is None or new.sort_key < old.sort_key:
            yield ChangeType.ADD, None, new
            new = next(new_iter, None)
        else:
            change_type = classify(old, new)
            if change_type is not None:
                yield change_type, old, new
            old = next(old_iter, None)
            new = next(new_iter, None)


class CycleStopped(Exception):
    """Raised inside a cycle when a stop request interrupts emission."""


class FileSystemMonitor:
    """
    Watches one root by repeatedly snapshotting and diffing it.

    Each cycle reads the most recent snapshot N, scans the root into a new
    snapshot N+1 and emits a change for every difference. A change is only
    emitted after its record is on disk, so a restart can stitch the two
    snapshots at any emitted checkpoint.
    """

    def __init__(
        self,
        name: str,
        root: Path,
        store: SnapshotStore,
        source: FileSource,
        aggregator: ChangeAggregator,
        config: Optional[ConnectorConfig] = None,
        context: Optional[ScanContext] = None,
    ):
        self.name = name
        self.root = Path(root)
        self.store = store
        self.source = source
        self.aggregator = aggregator
        self.config = config or ConnectorConfig()
        self.context = context or ScanContext()
        self.cycles_completed = 0
        self._running = False
        self._lock = threading.Lock()

    def accept_guarantee(self, checkpoint: MonitorCheckpoint) -> None:
        self.store.accept_guarantee(checkpoint)

    def run(self, stop_event: threading.Event, wake_event: Optional[threading.Event] = None) -> None:
        """
        Loop scan cycles until stop_event is set.

        Raises:
            MonitorAlreadyRunningError: If another thread is already running this monitor
        """
        with self._lock:
            if self._running:
                raise MonitorAlreadyRunningError(f"Monitor {self.name} is already running")
            self._running = True

        try:
            self._run(stop_event, wake_event)
        finally:
            with self._lock:
                self._running = False

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def _run(self, stop_event: threading.Event, wake_event: Optional[threading.Event]) -> None:
        logger.info(f"Monitor {self.name} started for {self.root}")
        interval = self.config.scan_interval_seconds

        while not stop_event.is_set():
            try:
                self.perform_cycle(stop_event)
                self.store.delete_old_snapshots()
            except InsufficientAccessError as e:
                logger.warning(f"Monitor {self.name}: {e}")
            except CycleStopped:
                break
            except Exception as e:
                logger.error(f"Monitor {self.name} scan of {self.root} failed: {e}")

            if wake_event is None:
                stop_event.wait(timeout=interval)
            else:
                wake_event.wait(timeout=interval)
                wake_event.clear()

        logger.info(f"Monitor {self.name} stopped")

    def perform_cycle(self, stop_event: Optional[threading.Event] = None) -> int:
        """
        Scan the root once and emit the differences from the last snapshot.

        Returns:
            Number of changes emitted

        Raises:
            InsufficientAccessError: If the root cannot be read; nothing is written
            CycleStopped: If a stop was requested while the aggregator was full
        """
        reader = self.store.open_most_recent_reader()
        try:
            entries = self._entries()
            first = next(entries, None)
        except BaseException:
            reader.close()
            raise

        writer = self.store.open_new_writer()
        try:
            emitted = self._merge(reader, writer, first, entries, stop_event)
        except CycleStopped:
            reader.close()
            self.store.abandon(writer)
            logger.info(f"Monitor {self.name} stopped during snapshot {writer.snapshot_number}")
            raise
        except BaseException:
            reader.close()
            self.store.abandon(writer)
            raise

        self.store.close(reader, writer)
        self.cycles_completed += 1
        if emitted:
            logger.info(
                f"Monitor {self.name} emitted {emitted} change(s) in snapshot {writer.snapshot_number}"
            )
        return emitted

    def _entries(self) -> Iterator[FileEntry]:
        limit = self.context.max_document_size
        for entry in self.source.list_entries(self.root):
            if limit is not None and entry.file_type == RecordType.FILE and entry.size > limit:
                logger.debug(f"Skipping {entry.path}: {entry.size} bytes exceeds {limit}")
                continue
            yield entry

    def _merge(
        self,
        reader: SnapshotReader,
        writer: SnapshotWriter,
        new: Optional[FileEntry],
        entries: Iterator[FileEntry],
        stop_event: Optional[threading.Event],
    ) -> int:
        consumed = 0
        emitted = 0
        old = reader.read()

        def emit(change_type: ChangeType, record: SnapshotRecord) -> None:
            nonlocal emitted
            checkpoint = MonitorCheckpoint(
                self.name, reader.snapshot_number, consumed, writer.records_written
            )
            if not self.aggregator.add(Change(checkpoint, change_type, record), stop_event):
                raise CycleStopped()
            emitted += 1

        while old is not None or new is not None:
            if new is None or (old is not None and old.sort_key < new.sort_key):
                consumed += 1
                emit(ChangeType.DELETE, old)
                old = reader.read()
                continue

            paired = old if old is not None and old.sort_key == new.sort_key else None
            record = self._make_record(new, paired)
            if record is None:
                # Unreadable right now; keep what we knew about it.
                record = paired
            if record is not None:
                writer.write(record)
            if paired is not None:
                consumed += 1
                old = reader.read()
            if record is not None:
                change_type = classify(paired, record)
                if change_type is not None:
                    emit(change_type, record)

            try:
                new = next(entries, None)
            except OSError as e:
                logger.error(f"Monitor {self.name} aborted scan of {self.root}: {e}")
                self._keep_unscanned(old, reader, writer)
                return emitted

        return emitted

    def _keep_unscanned(
        self,
        old: Optional[SnapshotRecord],
        reader: SnapshotReader,
        writer: SnapshotWriter,
    ) -> None:
        """Carry the unscanned remainder of the old snapshot into the new one."""
        while old is not None:
            writer.write(old)
            old = reader.read()

    def _make_record(self, entry: FileEntry, old: Optional[SnapshotRecord]) -> Optional[SnapshotRecord]:
        checksum = ""
        if entry.file_type == RecordType.FILE and self.config.compute_hashes:
            if (
                old is not None
                and old.file_type == RecordType.FILE
                and old.last_modified == entry.last_modified
                and old.size == entry.size
                and old.checksum
            ):
                checksum = old.checksum
            else:
                checksum = self.source.checksum(entry)
                if checksum is None:
                    logger.debug(f"Skipping unreadable file {entry.path}")
                    return None

        return SnapshotRecord(
            filesystem_type=self.source.filesystem_type,
            path=entry.path,
            file_type=entry.file_type,
            last_modified=entry.last_modified,
            acl=entry.acl,
            checksum=checksum,
            size=entry.size,
            stable=self.source.is_stable(entry),
        )
