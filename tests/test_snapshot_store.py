"""Tests for snapshot store module."""

import pytest

from src.connector.exceptions import (
    SnapshotConcurrencyError,
    SnapshotReaderError,
    SnapshotStoreError,
)
from src.connector.models import MonitorCheckpoint, RecordType, SnapshotRecord
from src.connector.snapshot_store import END_MARKER, SnapshotReader, SnapshotStore


def make_record(path, mtime=12345, file_type=RecordType.FILE):
    return SnapshotRecord("local", path, file_type, mtime)


def write_snapshot(store, records, complete=True):
    writer = store.open_new_writer()
    for record in records:
        writer.write(record)
    if complete:
        store.close(None, writer)
    else:
        store.abandon(writer)
    return writer.snapshot_number


def read_all(path, number=0, lenient=False):
    reader = SnapshotReader(number, path, lenient=lenient)
    try:
        return list(reader)
    finally:
        reader.close()


def snapshot_files(directory):
    return sorted(p.name for p in directory.iterdir())


class TestSnapshotStore:
    """Tests for SnapshotStore class."""

    def test_creates_directory(self, tmp_path):
        directory = tmp_path / "a" / "b"
        SnapshotStore(directory)
        assert directory.is_dir()

    def test_empty_store_reader(self, tmp_path):
        store = SnapshotStore(tmp_path)
        reader = store.open_most_recent_reader()
        assert reader.snapshot_number == 0
        assert reader.read() is None
        reader.close()

    def test_write_and_read_back(self, tmp_path):
        store = SnapshotStore(tmp_path)
        record = make_record("/foo/bar", file_type=RecordType.DIR)
        writer = store.open_new_writer()
        writer.write(record)
        store.close(None, writer)

        reader = store.open_most_recent_reader()
        assert reader.snapshot_number == 1
        assert reader.read() == record
        assert reader.read() is None
        store.close(reader, None)

    def test_completed_file_ends_with_marker(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a")])
        lines = (tmp_path / "snap.1").read_text().splitlines()
        assert lines[-1] == END_MARKER
        assert len(lines) == 2

    def test_second_writer_fails(self, tmp_path):
        store = SnapshotStore(tmp_path)
        writer = store.open_new_writer()
        with pytest.raises(SnapshotConcurrencyError, match="already an active writer"):
            store.open_new_writer()
        store.close(None, writer)

        # Slot is free again after close
        store.close(None, store.open_new_writer())

    def test_writer_numbers_increase(self, tmp_path):
        store = SnapshotStore(tmp_path)
        assert write_snapshot(store, []) == 1
        assert write_snapshot(store, []) == 2
        assert write_snapshot(store, []) == 3

    def test_reader_skips_incomplete_snapshot(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a")])
        write_snapshot(store, [make_record("/b")], complete=False)

        reader = store.open_most_recent_reader()
        assert reader.snapshot_number == 1
        assert reader.read().path == "/a"
        reader.close()

    def test_writer_numbered_after_incomplete(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a")])
        write_snapshot(store, [], complete=False)
        assert write_snapshot(store, []) == 3

    def test_abandon_releases_writer(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a")], complete=False)
        writer = store.open_new_writer()
        assert writer.snapshot_number == 2
        store.close(None, writer)

    def test_write_after_close_fails(self, tmp_path):
        store = SnapshotStore(tmp_path)
        writer = store.open_new_writer()
        store.close(None, writer)
        with pytest.raises(SnapshotStoreError):
            writer.write(make_record("/a"))


class TestSnapshotReader:
    """Tests for SnapshotReader class."""

    def test_missing_marker_is_corruption(self, tmp_path):
        path = tmp_path / "snap.1"
        path.write_text(make_record("/a").to_json() + "\n")
        reader = SnapshotReader(1, path)
        assert reader.read().path == "/a"
        with pytest.raises(SnapshotReaderError):
            reader.read()
        reader.close()

    def test_malformed_line_is_corruption(self, tmp_path):
        path = tmp_path / "snap.1"
        path.write_text("{not json}\n" + END_MARKER + "\n")
        reader = SnapshotReader(1, path)
        with pytest.raises(SnapshotReaderError):
            reader.read()
        reader.close()

    def test_lenient_reader_ignores_torn_tail(self, tmp_path):
        path = tmp_path / "snap.1"
        good = make_record("/a").to_json()
        path.write_text(good + "\n" + good[:10])
        records = read_all(path, 1, lenient=True)
        assert [r.path for r in records] == ["/a"]

    def test_records_read_counter(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a"), make_record("/b")])
        reader = store.open_most_recent_reader()
        list(reader)
        assert reader.records_read == 2
        reader.close()


class TestDeleteOldSnapshots:
    """Tests for snapshot garbage collection."""

    def test_keeps_three_most_recent(self, tmp_path):
        store = SnapshotStore(tmp_path)
        for _ in range(10):
            reader = store.open_most_recent_reader()
            writer = store.open_new_writer()
            store.close(reader, writer)
            store.delete_old_snapshots()

        assert snapshot_files(tmp_path) == ["snap.10", "snap.8", "snap.9"]

    def test_guarantee_retains_older_snapshots(self, tmp_path):
        store = SnapshotStore(tmp_path)
        for _ in range(4):
            write_snapshot(store, [])
        store.accept_guarantee(MonitorCheckpoint("m", 2, 0, 0))
        for _ in range(6):
            write_snapshot(store, [])
            store.delete_old_snapshots()

        assert sorted(int(n.split(".")[1]) for n in snapshot_files(tmp_path)) == list(range(2, 11))

    def test_guarantee_only_moves_forward(self, tmp_path):
        store = SnapshotStore(tmp_path)
        for _ in range(10):
            write_snapshot(store, [])
        store.accept_guarantee(MonitorCheckpoint("m", 5, 0, 0))
        store.accept_guarantee(MonitorCheckpoint("m", 2, 0, 0))
        store.delete_old_snapshots()

        assert sorted(int(n.split(".")[1]) for n in snapshot_files(tmp_path)) == list(range(5, 11))

    def test_empty_directory(self, tmp_path):
        store = SnapshotStore(tmp_path)
        assert store.delete_old_snapshots() == 0

    def test_delete_all(self, tmp_path):
        store = SnapshotStore(tmp_path)
        for _ in range(3):
            write_snapshot(store, [])
        store.delete_all()
        assert snapshot_files(tmp_path) == []
        assert store.open_most_recent_reader().snapshot_number == 0


class TestStitch:
    """Tests for SnapshotStore.stitch."""

    def _paths(self):
        return [f"/root/file{i:03d}" for i in range(100)]

    def test_stitch_partial_delivery(self, tmp_path):
        t1, t2 = 1000, 2000
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record(p, t1) for p in self._paths()])
        write_snapshot(store, [make_record(p, t2) for p in self._paths()])

        number = SnapshotStore.stitch(tmp_path, MonitorCheckpoint("foo", 1, 7, 7))
        assert number == 3

        records = read_all(tmp_path / "snap.3", 3)
        assert [r.path for r in records] == self._paths()
        assert all(r.last_modified == t2 for r in records[:7])
        assert all(r.last_modified == t1 for r in records[7:])

    def test_stitch_reads_partial_newer_snapshot(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record(p, 1) for p in self._paths()])
        write_snapshot(store, [make_record(p, 2) for p in self._paths()[:10]], complete=False)

        number = SnapshotStore.stitch(tmp_path, MonitorCheckpoint("foo", 1, 10, 10))
        assert number == 3

        records = read_all(tmp_path / "snap.3", 3)
        assert len(records) == 100
        assert [r.last_modified for r in records[:10]] == [2] * 10
        assert [r.last_modified for r in records[10:]] == [1] * 90

    def test_stitch_before_first_snapshot_completed(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a"), make_record("/b")], complete=False)

        number = SnapshotStore.stitch(tmp_path, MonitorCheckpoint("foo", 0, 0, 1))
        assert number == 2
        assert [r.path for r in read_all(tmp_path / "snap.2", 2)] == ["/a"]

    def test_stitched_snapshot_is_most_recent(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a", 1)])
        write_snapshot(store, [make_record("/a", 2)], complete=False)
        SnapshotStore.stitch(tmp_path, MonitorCheckpoint("foo", 1, 0, 0))

        reader = SnapshotStore(tmp_path).open_most_recent_reader()
        assert reader.snapshot_number == 3
        assert reader.read().last_modified == 1
        reader.close()

    def test_stitch_missing_snapshot(self, tmp_path):
        SnapshotStore(tmp_path)
        with pytest.raises(SnapshotStoreError):
            SnapshotStore.stitch(tmp_path, MonitorCheckpoint("foo", 4, 0, 0))

    def test_stitch_short_newer_snapshot(self, tmp_path):
        store = SnapshotStore(tmp_path)
        write_snapshot(store, [make_record("/a")])
        write_snapshot(store, [make_record("/a")])
        with pytest.raises(SnapshotStoreError):
            SnapshotStore.stitch(tmp_path, MonitorCheckpoint("foo", 1, 1, 5))
        assert not (tmp_path / "snap.3").exists()
