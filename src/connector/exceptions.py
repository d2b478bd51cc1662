"""Custom exceptions for the filesystem connector package."""


class ConnectorError(Exception):
    """Base exception for all connector errors."""
    pass


class SnapshotStoreError(ConnectorError):
    """Error reading, writing or maintaining snapshot files."""
    pass


class SnapshotConcurrencyError(SnapshotStoreError):
    """A second snapshot writer was requested while one is open."""
    pass


class SnapshotReaderError(SnapshotStoreError):
    """Snapshot file is malformed or was never completed."""
    pass


class InsufficientAccessError(ConnectorError):
    """A monitored root cannot be read."""
    pass


class QueueError(ConnectorError):
    """Error related to the checkpoint and change queue."""
    pass


class RecoveryError(QueueError):
    """Error manipulating queue recovery state."""
    pass


class RecoveryCorruptionError(RecoveryError):
    """No trustworthy recovery file could be found."""
    pass


class RecoveryWriteError(RecoveryError):
    """A recovery file could not be written durably."""
    pass


class InvalidCheckpointError(ConnectorError):
    """Checkpoint token cannot be parsed."""
    pass


class MonitorError(ConnectorError):
    """Error related to filesystem monitors."""
    pass


class MonitorAlreadyRunningError(MonitorError):
    """Monitors are already running."""
    pass


class RootError(ConnectorError):
    """Error related to monitored root management."""
    pass


class RootNotFoundError(RootError):
    """Specified root folder does not exist."""
    pass


class RootAlreadyExistsError(RootError):
    """Root folder is already being monitored."""
    pass


class InactiveTraversalManagerError(ConnectorError):
    """A superseded traversal manager handle was used."""
    pass
