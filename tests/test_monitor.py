"""Tests for the filesystem monitor."""

import os
import threading
import time
from pathlib import Path

import pytest

from src.connector.change_source import ChangeAggregator
from src.connector.config import ConnectorConfig
from src.connector.exceptions import InsufficientAccessError, MonitorAlreadyRunningError
from src.connector.filesystem import FileEntry, FileSource, LocalFileSource
from src.connector.models import Acl, ChangeType, MonitorCheckpoint, RecordType, SnapshotRecord
from src.connector.monitor import CycleStopped, FileSystemMonitor, ScanContext, diff_snapshots
from src.connector.snapshot_store import SnapshotStore


class FakeSource(FileSource):
    """In-memory listing with scripted failures."""

    filesystem_type = "fake"

    def __init__(self, entries=(), fail_after=None, unreadable=()):
        self.entries = list(entries)
        self.fail_after = fail_after
        self.unreadable = set(unreadable)
        self.deny_root = False
        self.checksum_calls = 0

    def list_entries(self, root):
        if self.deny_root:
            raise InsufficientAccessError(f"Cannot read monitored root: {root}")
        for i, entry in enumerate(self.entries):
            if self.fail_after is not None and i >= self.fail_after:
                raise OSError("Input/output error")
            yield entry

    def checksum(self, entry):
        self.checksum_calls += 1
        if entry.path in self.unreadable:
            return None
        return f"sum:{entry.path}:{entry.last_modified}"


def file_entry(path, mtime=1, size=1):
    return FileEntry(path, RecordType.FILE, mtime, size, Acl.public_acl())


def record(path, mtime=1):
    return SnapshotRecord("fake", path, RecordType.FILE, mtime)


def drain(aggregator):
    changes = []
    while True:
        change = aggregator.get_next_change()
        if change is None:
            return changes
        changes.append(change)


def make_monitor(tmp_path, source, aggregator=None, context=None, **config_kwargs):
    config = ConnectorConfig(work_dir=tmp_path, **config_kwargs)
    store = SnapshotStore(tmp_path / "snapshots")
    aggregator = aggregator if aggregator is not None else ChangeAggregator(capacity=100)
    monitor = FileSystemMonitor("m", Path("/r"), store, source, aggregator, config, context)
    return monitor, store, aggregator


class TestDiffSnapshots:
    """Tests for diff_snapshots."""

    def test_add_delete_modify(self):
        old = [record("/r/a"), record("/r/b"), record("/r/c")]
        new = [record("/r/a"), record("/r/c", mtime=2), record("/r/d")]
        result = list(diff_snapshots(old, new))

        assert result == [
            (ChangeType.DELETE, record("/r/b"), None),
            (ChangeType.MODIFY, record("/r/c"), record("/r/c", mtime=2)),
            (ChangeType.ADD, None, record("/r/d")),
        ]

    def test_identical(self):
        records = [record("/r/a"), record("/r/b")]
        assert list(diff_snapshots(records, list(records))) == []

    def test_empty_sides(self):
        records = [record("/r/a")]
        assert [c[0] for c in diff_snapshots([], records)] == [ChangeType.ADD]
        assert [c[0] for c in diff_snapshots(records, [])] == [ChangeType.DELETE]
        assert list(diff_snapshots([], [])) == []


class TestPerformCycle:
    """Tests for FileSystemMonitor.perform_cycle."""

    def test_first_cycle_adds_everything(self, tmp_path):
        source = FakeSource([file_entry("/r/a"), file_entry("/r/b"), file_entry("/r/c")])
        monitor, store, aggregator = make_monitor(tmp_path, source)

        assert monitor.perform_cycle() == 3
        changes = drain(aggregator)
        assert [c.change_type for c in changes] == [ChangeType.ADD] * 3
        assert [c.record.path for c in changes] == ["/r/a", "/r/b", "/r/c"]
        assert [c.monitor_checkpoint for c in changes] == [
            MonitorCheckpoint("m", 0, 0, 1),
            MonitorCheckpoint("m", 0, 0, 2),
            MonitorCheckpoint("m", 0, 0, 3),
        ]

        reader = store.open_most_recent_reader()
        assert reader.snapshot_number == 1
        assert [r.path for r in reader] == ["/r/a", "/r/b", "/r/c"]
        reader.close()

    def test_unchanged_tree_emits_nothing(self, tmp_path):
        source = FakeSource([file_entry("/r/a"), file_entry("/r/b")])
        monitor, store, aggregator = make_monitor(tmp_path, source)
        monitor.perform_cycle()
        drain(aggregator)

        assert monitor.perform_cycle() == 0
        assert drain(aggregator) == []
        assert store.open_most_recent_reader().snapshot_number == 2
        assert monitor.cycles_completed == 2

    def test_delete_and_modify_checkpoints(self, tmp_path):
        source = FakeSource([file_entry("/r/a"), file_entry("/r/b"), file_entry("/r/c")])
        monitor, store, aggregator = make_monitor(tmp_path, source)
        monitor.perform_cycle()
        drain(aggregator)

        source.entries = [file_entry("/r/a"), file_entry("/r/c", mtime=5)]
        monitor.perform_cycle()
        changes = drain(aggregator)

        assert [(c.change_type, c.record.path) for c in changes] == [
            (ChangeType.DELETE, "/r/b"),
            (ChangeType.MODIFY, "/r/c"),
        ]
        assert changes[0].record.last_modified == 1
        assert changes[1].record.last_modified == 5
        assert [c.monitor_checkpoint for c in changes] == [
            MonitorCheckpoint("m", 1, 2, 1),
            MonitorCheckpoint("m", 1, 3, 2),
        ]

    def test_checksum_reused_when_unchanged(self, tmp_path):
        source = FakeSource([file_entry("/r/a"), file_entry("/r/b")])
        monitor, store, aggregator = make_monitor(tmp_path, source)
        monitor.perform_cycle()
        assert source.checksum_calls == 2

        monitor.perform_cycle()
        assert source.checksum_calls == 2

        source.entries = [file_entry("/r/a"), file_entry("/r/b", size=2)]
        monitor.perform_cycle()
        assert source.checksum_calls == 3

    def test_no_checksums_when_disabled(self, tmp_path):
        source = FakeSource([file_entry("/r/a")])
        monitor, store, aggregator = make_monitor(tmp_path, source, compute_hashes=False)
        monitor.perform_cycle()
        assert source.checksum_calls == 0
        assert drain(aggregator)[0].record.checksum == ""

    def test_max_document_size(self, tmp_path):
        source = FakeSource([file_entry("/r/big", size=1000), file_entry("/r/small", size=10)])
        monitor, store, aggregator = make_monitor(
            tmp_path, source, context=ScanContext(max_document_size=100)
        )
        monitor.perform_cycle()
        assert [c.record.path for c in drain(aggregator)] == ["/r/small"]

    def test_unreadable_root_writes_nothing(self, tmp_path):
        source = FakeSource([file_entry("/r/a")])
        source.deny_root = True
        monitor, store, aggregator = make_monitor(tmp_path, source)

        with pytest.raises(InsufficientAccessError):
            monitor.perform_cycle()
        assert list((tmp_path / "snapshots").iterdir()) == []
        assert drain(aggregator) == []

    def test_unreadable_file_keeps_old_record(self, tmp_path):
        source = FakeSource([file_entry("/r/a")])
        monitor, store, aggregator = make_monitor(tmp_path, source)
        monitor.perform_cycle()
        drain(aggregator)

        source.entries = [file_entry("/r/a", mtime=9), file_entry("/r/new")]
        source.unreadable = {"/r/a", "/r/new"}
        assert monitor.perform_cycle() == 0

        reader = store.open_most_recent_reader()
        records = list(reader)
        reader.close()
        assert [(r.path, r.last_modified) for r in records] == [("/r/a", 1)]

    def test_io_error_mid_walk_keeps_unscanned_records(self, tmp_path):
        source = FakeSource([file_entry("/r/a"), file_entry("/r/b"), file_entry("/r/c")])
        monitor, store, aggregator = make_monitor(tmp_path, source)
        monitor.perform_cycle()
        drain(aggregator)

        source.entries = [file_entry("/r/a", mtime=2), file_entry("/r/b"), file_entry("/r/c")]
        source.fail_after = 1
        assert monitor.perform_cycle() == 1
        changes = drain(aggregator)
        assert [(c.change_type, c.record.path) for c in changes] == [(ChangeType.MODIFY, "/r/a")]

        reader = store.open_most_recent_reader()
        assert reader.snapshot_number == 2
        assert [(r.path, r.last_modified) for r in reader] == [
            ("/r/a", 2),
            ("/r/b", 1),
            ("/r/c", 1),
        ]
        reader.close()

    def test_stop_while_full_abandons_snapshot(self, tmp_path):
        source = FakeSource([file_entry("/r/a"), file_entry("/r/b"), file_entry("/r/c")])
        aggregator = ChangeAggregator(capacity=1, poll_interval=0.01)
        monitor, store, _ = make_monitor(tmp_path, source, aggregator=aggregator)
        stop_event = threading.Event()
        stop_event.set()

        with pytest.raises(CycleStopped):
            monitor.perform_cycle(stop_event)

        assert (tmp_path / "snapshots" / "snap.1").exists()
        assert store.open_most_recent_reader().snapshot_number == 0
        assert monitor.cycles_completed == 0
        writer = store.open_new_writer()
        assert writer.snapshot_number == 2
        store.close(None, writer)


class TestLocalTree:
    """Monitor cycles over a real directory tree."""

    def test_add_modify_delete(self, tmp_path):
        root = tmp_path / "root"
        root.mkdir()
        (root / "doc.txt").write_text("one")
        (root / "sub").mkdir()
        (root / "sub" / "other.txt").write_text("two")

        config = ConnectorConfig(work_dir=tmp_path / "work")
        store = SnapshotStore(config.snapshot_dir / "m")
        aggregator = ChangeAggregator()
        monitor = FileSystemMonitor("m", root, store, LocalFileSource(config), aggregator, config)

        monitor.perform_cycle()
        added = drain(aggregator)
        assert {c.record.path for c in added} == {
            str(root / "doc.txt"),
            str(root / "sub"),
            str(root / "sub" / "other.txt"),
        }
        assert all(c.change_type == ChangeType.ADD for c in added)

        (root / "doc.txt").write_text("changed content")
        os.utime(root / "doc.txt", ns=(0, 2_000_000_000_000_000_000))
        (root / "sub" / "other.txt").unlink()
        monitor.perform_cycle()
        changes = {(c.change_type, c.record.path) for c in drain(aggregator)}

        assert (ChangeType.MODIFY, str(root / "doc.txt")) in changes
        assert (ChangeType.DELETE, str(root / "sub" / "other.txt")) in changes


class TestRun:
    """Tests for the monitor loop."""

    def test_run_until_stopped(self, tmp_path):
        source = FakeSource([file_entry("/r/a")])
        monitor, store, aggregator = make_monitor(tmp_path, source, scan_interval_seconds=0.01)
        stop_event = threading.Event()
        thread = threading.Thread(target=monitor.run, args=(stop_event,))
        thread.start()

        deadline = time.time() + 5
        while monitor.cycles_completed < 5 and time.time() < deadline:
            time.sleep(0.01)

        assert monitor.is_running
        with pytest.raises(MonitorAlreadyRunningError):
            monitor.run(stop_event)

        stop_event.set()
        thread.join(timeout=5)
        assert not thread.is_alive()
        assert monitor.cycles_completed >= 5
        assert not monitor.is_running
        assert len(list((tmp_path / "snapshots").iterdir())) <= 3

    def test_wake_event_triggers_cycle(self, tmp_path):
        source = FakeSource([file_entry("/r/a")])
        monitor, store, aggregator = make_monitor(tmp_path, source, scan_interval_seconds=60)
        stop_event = threading.Event()
        wake_event = threading.Event()
        thread = threading.Thread(target=monitor.run, args=(stop_event, wake_event))
        thread.start()

        deadline = time.time() + 5
        while monitor.cycles_completed < 1 and time.time() < deadline:
            time.sleep(0.01)
        wake_event.set()
        while monitor.cycles_completed < 2 and time.time() < deadline:
            time.sleep(0.01)

        stop_event.set()
        wake_event.set()
        thread.join(timeout=5)
        assert monitor.cycles_completed >= 2
