"""
Filesystem Connector Package

Monitors root folders by periodic snapshotting and hands the resulting
changes to a client through a durable, checkpointed queue.

Features:
- Numbered per-root snapshots with crash-safe completion markers
- File change events: ADD, DELETE, MODIFY
- Checksum reuse for unchanged files
- Snapshot stitching at the last guaranteed checkpoint after a restart
- Recovery files for the change queue
- Filesystem notifications to shorten the time between scans
"""

from .models import (
    RecordType,
    ChangeType,
    Acl,
    SnapshotRecord,
    MonitorCheckpoint,
    Change,
    FileConnectorCheckpoint,
    CheckpointAndChange,
    MonitorRestartState,
    compute_file_hash,
)

from .config import ConnectorConfig

from .exceptions import (
    ConnectorError,
    SnapshotStoreError,
    SnapshotConcurrencyError,
    SnapshotReaderError,
    InsufficientAccessError,
    QueueError,
    RecoveryError,
    RecoveryCorruptionError,
    RecoveryWriteError,
    InvalidCheckpointError,
    MonitorError,
    MonitorAlreadyRunningError,
    RootError,
    RootNotFoundError,
    RootAlreadyExistsError,
    InactiveTraversalManagerError,
)

from .snapshot_store import SnapshotStore, SnapshotReader, SnapshotWriter
from .filesystem import FileEntry, FileSource, LocalFileSource, AccessTimeRegistry
from .change_source import ChangeSource, ChangeAggregator
from .monitor import FileSystemMonitor, ScanContext, diff_snapshots
from .queue import CheckpointAndChangeQueue, DEFAULT_MAXIMUM_QUEUE_SIZE
from .root_manager import RootManager
from .fs_watcher import FSWatcherPool, FSEventHandler
from .manager import FileSystemMonitorManager
from .traversal import ChangeBatch, Connector, TraversalManager


__all__ = [
    # Models
    "RecordType",
    "ChangeType",
    "Acl",
    "SnapshotRecord",
    "MonitorCheckpoint",
    "Change",
    "FileConnectorCheckpoint",
    "CheckpointAndChange",
    "MonitorRestartState",
    "compute_file_hash",
    # Config
    "ConnectorConfig",
    # Exceptions
    "ConnectorError",
    "SnapshotStoreError",
    "SnapshotConcurrencyError",
    "SnapshotReaderError",
    "InsufficientAccessError",
    "QueueError",
    "RecoveryError",
    "RecoveryCorruptionError",
    "RecoveryWriteError",
    "InvalidCheckpointError",
    "MonitorError",
    "MonitorAlreadyRunningError",
    "RootError",
    "RootNotFoundError",
    "RootAlreadyExistsError",
    "InactiveTraversalManagerError",
    # Components
    "SnapshotStore",
    "SnapshotReader",
    "SnapshotWriter",
    "FileEntry",
    "FileSource",
    "LocalFileSource",
    "AccessTimeRegistry",
    "ChangeSource",
    "ChangeAggregator",
    "FileSystemMonitor",
    "ScanContext",
    "diff_snapshots",
    "CheckpointAndChangeQueue",
    "DEFAULT_MAXIMUM_QUEUE_SIZE",
    "RootManager",
    "FSWatcherPool",
    "FSEventHandler",
    # Orchestration
    "FileSystemMonitorManager",
    "ChangeBatch",
    "Connector",
    "TraversalManager",
]

__version__ = "0.1.0"
