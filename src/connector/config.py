"""Configuration for the filesystem connector package."""

import fnmatch
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


@dataclass
class ConnectorConfig:
    """
    Configuration options for the filesystem connector.

    Attributes:
        work_dir: Directory holding snapshot and queue state
        snapshot_dir: Snapshot directory (defaults to work_dir/snapshots)
        queue_dir: Recovery file directory (defaults to work_dir/queue)
        roots: Root folders to monitor
        scan_interval_seconds: Pause between two scans of the same root
        max_queue_size: Maximum number of changes handed out per resume
        change_queue_size: Capacity of the buffer between monitors and queue
        compute_hashes: Whether to compute content checksums for files
        hash_algorithm: Algorithm for content checksums
        ignore_patterns: Glob patterns for files to ignore
        follow_symlinks: Whether to follow symbolic links while scanning
        preserve_access_times: Restore file access times after checksumming
        stable_time_seconds: Files modified more recently are marked unstable
        use_fs_events: Wake monitors early on filesystem notifications
    """
    work_dir: Path = field(default_factory=lambda: Path("connector-data"))
    snapshot_dir: Optional[Path] = None
    queue_dir: Optional[Path] = None
    roots: List[Path] = field(default_factory=list)
    scan_interval_seconds: float = 10.0
    max_queue_size: int = 500
    change_queue_size: int = 100
    compute_hashes: bool = True
    hash_algorithm: str = "sha256"
    ignore_patterns: List[str] = field(default_factory=lambda: [
        "*.tmp",
        "*.swp",
        "*.swo",
        "*~",
        ".git/*",
        ".git",
        "__pycache__/*",
        "__pycache__",
        "*.pyc",
        ".DS_Store",
        "Thumbs.db",
    ])
    follow_symlinks: bool = False
    preserve_access_times: bool = False
    stable_time_seconds: float = 0.0
    use_fs_events: bool = True

    def __post_init__(self):
        if isinstance(self.work_dir, str):
            self.work_dir = Path(self.work_dir)
        if self.snapshot_dir is None:
            self.snapshot_dir = self.work_dir / "snapshots"
        elif isinstance(self.snapshot_dir, str):
            self.snapshot_dir = Path(self.snapshot_dir)
        if self.queue_dir is None:
            self.queue_dir = self.work_dir / "queue"
        elif isinstance(self.queue_dir, str):
            self.queue_dir = Path(self.queue_dir)
        self.roots = [Path(r) for r in self.roots]
        if self.max_queue_size < 1:
            raise ValueError(f"max_queue_size must be positive: {self.max_queue_size}")
        if self.change_queue_size < 1:
            raise ValueError(f"change_queue_size must be positive: {self.change_queue_size}")

    @classmethod
    def from_env(cls, **overrides) -> "ConnectorConfig":
        """
        Build a configuration from CONNECTOR_* environment variables.

        Explicit keyword overrides win over the environment.
        """
        values = {}
        if os.environ.get("CONNECTOR_WORK_DIR"):
            values["work_dir"] = Path(os.environ["CONNECTOR_WORK_DIR"])
        if os.environ.get("CONNECTOR_ROOTS"):
            values["roots"] = [
                Path(p) for p in os.environ["CONNECTOR_ROOTS"].split(os.pathsep) if p
            ]
        if os.environ.get("CONNECTOR_SCAN_INTERVAL"):
            values["scan_interval_seconds"] = float(os.environ["CONNECTOR_SCAN_INTERVAL"])
        if os.environ.get("CONNECTOR_MAX_QUEUE_SIZE"):
            values["max_queue_size"] = int(os.environ["CONNECTOR_MAX_QUEUE_SIZE"])
        if os.environ.get("CONNECTOR_HASH_ALGORITHM"):
            values["hash_algorithm"] = os.environ["CONNECTOR_HASH_ALGORITHM"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def should_ignore(self, path: Path) -> bool:
        """
        Check if a path should be ignored based on ignore patterns.

        Args:
            path: Path to check

        Returns:
            True if the path should be ignored
        """
        path_str = str(path)
        name = path.name

        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(name, pattern):
                return True
            if fnmatch.fnmatch(path_str, f"*/{pattern}"):
                return True
            if fnmatch.fnmatch(path_str, pattern):
                return True

        return False

    def state_dirs(self) -> List[Path]:
        """Directories holding the connector's own state, absolute and resolved."""
        dirs: List[Path] = []
        for directory in (self.work_dir, self.snapshot_dir, self.queue_dir):
            for candidate in (directory.absolute(), directory.resolve()):
                if candidate not in dirs:
                    dirs.append(candidate)
        return dirs

    def is_state_path(self, path: Path) -> bool:
        """Check if a path lies inside one of the connector's state directories."""
        path = Path(path)
        for directory in self.state_dirs():
            try:
                path.relative_to(directory)
                return True
            except ValueError:
                pass
        return False
