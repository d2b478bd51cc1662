"""Data models for the filesystem connector package."""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePath
from typing import Dict, Optional, Tuple

from .exceptions import InvalidCheckpointError


class RecordType(Enum):
    """Kinds of entries recorded in a snapshot."""
    FILE = "file"
    DIR = "dir"


class ChangeType(Enum):
    """Kinds of changes detected between two snapshots."""
    ADD = "add"
    DELETE = "delete"
    MODIFY = "modify"


@dataclass(frozen=True)
class Acl:
    """
    Access control captured for one snapshot record.

    Attributes:
        users: Principals allowed to read the entry
        groups: Groups allowed to read the entry
        public: Whether the entry is readable by anyone
    """
    users: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()
    public: bool = False

    @classmethod
    def new_acl(cls, users, groups) -> "Acl":
        return cls(users=tuple(users), groups=tuple(groups), public=False)

    @classmethod
    def public_acl(cls) -> "Acl":
        return cls(public=True)

    def to_dict(self) -> dict:
        return {
            "users": list(self.users),
            "groups": list(self.groups),
            "public": self.public,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Acl":
        return cls(
            users=tuple(data.get("users", ())),
            groups=tuple(data.get("groups", ())),
            public=data.get("public", False),
        )


@dataclass(frozen=True)
class SnapshotRecord:
    """
    One file or directory observation in a snapshot.

    Attributes:
        filesystem_type: Identifier of the filesystem backend
        path: Absolute path of the entry
        file_type: FILE or DIR
        last_modified: Modification time in milliseconds since the epoch
        acl: Access control for the entry
        checksum: Content checksum ("" for directories)
        size: Size in bytes
        stable: False while the entry was still being modified at scan time
    """
    filesystem_type: str
    path: str
    file_type: RecordType
    last_modified: int
    acl: Acl = field(default_factory=Acl.public_acl)
    checksum: str = ""
    size: int = 0
    stable: bool = True

    @property
    def sort_key(self) -> Tuple[str, ...]:
        """Ordering key: path components, so parents sort before children."""
        return path_sort_key(self.path)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "fs": self.filesystem_type,
            "path": self.path,
            "type": self.file_type.value,
            "mtime": self.last_modified,
            "acl": self.acl.to_dict(),
            "checksum": self.checksum,
            "size": self.size,
            "stable": self.stable,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SnapshotRecord":
        """Create from dictionary."""
        return cls(
            filesystem_type=data["fs"],
            path=data["path"],
            file_type=RecordType(data["type"]),
            last_modified=int(data["mtime"]),
            acl=Acl.from_dict(data.get("acl", {})),
            checksum=data.get("checksum", ""),
            size=int(data.get("size", 0)),
            stable=data.get("stable", True),
        )

    def to_json(self) -> str:
        """Encode as a single line of JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, line: str) -> "SnapshotRecord":
        """Decode a line written by to_json."""
        return cls.from_dict(json.loads(line))


def path_sort_key(path: str) -> Tuple[str, ...]:
    return PurePath(path).parts


@dataclass(frozen=True, order=True)
class MonitorCheckpoint:
    """
    Marks how far one monitor has emitted changes.

    Attributes:
        monitor_name: Name of the monitor that produced the change
        snapshot_number: Snapshot the monitor was diffing against
        offset1: Records of that snapshot consumed so far
        offset2: Records of the following snapshot written so far
    """
    monitor_name: str
    snapshot_number: int
    offset1: int
    offset2: int

    def to_dict(self) -> dict:
        return {
            "name": self.monitor_name,
            "snapshot": self.snapshot_number,
            "offset1": self.offset1,
            "offset2": self.offset2,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorCheckpoint":
        return cls(
            monitor_name=data["name"],
            snapshot_number=int(data["snapshot"]),
            offset1=int(data["offset1"]),
            offset2=int(data["offset2"]),
        )


@dataclass(frozen=True)
class Change:
    """
    A change to one entry of a monitored root.

    Attributes:
        monitor_checkpoint: Position of the change in its monitor's stream
        change_type: ADD, DELETE or MODIFY
        record: The affected record (the old record for DELETE)
    """
    monitor_checkpoint: MonitorCheckpoint
    change_type: ChangeType
    record: SnapshotRecord

    def to_dict(self) -> dict:
        return {
            "checkpoint": self.monitor_checkpoint.to_dict(),
            "action": self.change_type.value,
            "record": self.record.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Change":
        return cls(
            monitor_checkpoint=MonitorCheckpoint.from_dict(data["checkpoint"]),
            change_type=ChangeType(data["action"]),
            record=SnapshotRecord.from_dict(data["record"]),
        )


@dataclass(frozen=True, order=True)
class FileConnectorCheckpoint:
    """
    Global position in the delivered change stream.

    The major number grows once per queue refill, the minor number once per
    change added during that refill.
    """
    major: int = 0
    minor: int = 0

    @classmethod
    def new_first(cls) -> "FileConnectorCheckpoint":
        return cls(0, 0)

    def next_major(self) -> "FileConnectorCheckpoint":
        return FileConnectorCheckpoint(self.major + 1, 0)

    def next(self) -> "FileConnectorCheckpoint":
        return FileConnectorCheckpoint(self.major, self.minor + 1)

    def to_token(self) -> str:
        return json.dumps({"M": self.major, "m": self.minor}, separators=(",", ":"))

    @classmethod
    def from_token(cls, token: str) -> "FileConnectorCheckpoint":
        try:
            data = json.loads(token)
            return cls(int(data["M"]), int(data["m"]))
        except (TypeError, ValueError, KeyError) as e:
            raise InvalidCheckpointError(f"Invalid checkpoint: {token!r}") from e

    def __str__(self) -> str:
        return self.to_token()


@dataclass(frozen=True)
class CheckpointAndChange:
    """A change paired with the global checkpoint assigned when it was queued."""
    checkpoint: FileConnectorCheckpoint
    change: Change

    def to_dict(self) -> dict:
        return {
            "cp": {"M": self.checkpoint.major, "m": self.checkpoint.minor},
            "change": self.change.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CheckpointAndChange":
        return cls(
            checkpoint=FileConnectorCheckpoint(int(data["cp"]["M"]), int(data["cp"]["m"])),
            change=Change.from_dict(data["change"]),
        )


class MonitorRestartState:
    """Restart checkpoint of every monitor whose changes reached durable storage."""

    def __init__(self, points: Optional[Dict[str, MonitorCheckpoint]] = None):
        self.points: Dict[str, MonitorCheckpoint] = dict(points or {})

    def update_on_guaranteed(self, entries) -> None:
        """Advance restart points past every change in entries."""
        for entry in entries:
            checkpoint = entry.change.monitor_checkpoint
            self.points[checkpoint.monitor_name] = checkpoint

    def copy(self) -> "MonitorRestartState":
        return MonitorRestartState(self.points)

    def to_dict(self) -> dict:
        return {name: cp.to_dict() for name, cp in self.points.items()}

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorRestartState":
        return cls({name: MonitorCheckpoint.from_dict(cp) for name, cp in data.items()})


def compute_file_hash(path, algorithm: str = "sha256") -> Optional[str]:
    """
    Compute hash of file contents.

    Args:
        path: Path to the file
        algorithm: Hash algorithm to use (default: sha256)

    Returns:
        Hex digest of the hash, or None if file cannot be read
    """
    try:
        hasher = hashlib.new(algorithm)
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                hasher.update(chunk)
        return hasher.hexdigest()
    except (IOError, OSError):
        return None
