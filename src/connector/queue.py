"""Durable queue of changes addressed by global checkpoints."""

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .change_source import ChangeSource
from .exceptions import (
    QueueError,
    RecoveryCorruptionError,
    RecoveryError,
    RecoveryWriteError,
)
from .models import (
    CheckpointAndChange,
    FileConnectorCheckpoint,
    MonitorCheckpoint,
    MonitorRestartState,
)

logger = logging.getLogger(__name__)

DEFAULT_MAXIMUM_QUEUE_SIZE = 500

SENTINAL = "SENTINAL"
RECOVERY_FILE_PREFIX = "recovery."
QUEUE_JSON_TAG = "Q"
MONITOR_STATE_JSON_TAG = "MON"
LAST_CHECKPOINT_JSON_TAG = "LAST"


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug(f"Directory fsync failed for {directory}: {e}")
    finally:
        os.close(fd)


class RecoveryFile:
    """
    One persisted copy of the queue and monitor restart state.

    The file name carries a monotonically increasing nanosecond timestamp.
    The content is a JSON object followed by the SENTINAL marker; a file
    without the marker was never completed and is not trusted.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        name = self.path.name
        if not name.startswith(RECOVERY_FILE_PREFIX):
            raise RecoveryCorruptionError(f"Invalid recovery filename: {self.path}")
        try:
            self.timestamp = int(name[len(RECOVERY_FILE_PREFIX):])
        except ValueError as e:
            raise RecoveryCorruptionError(f"Invalid recovery filename: {self.path}") from e

    @classmethod
    def new(cls, persist_dir: Path, after: int = 0) -> "RecoveryFile":
        timestamp = max(time.time_ns(), after + 1)
        return cls(persist_dir / f"{RECOVERY_FILE_PREFIX}{timestamp}")

    def is_older(self, other: "RecoveryFile") -> bool:
        return self.timestamp < other.timestamp

    def read_state(self) -> dict:
        """
        Read the persisted state.

        Raises:
            RecoveryCorruptionError: If the file is incomplete or malformed
        """
        try:
            contents = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise RecoveryCorruptionError(f"Failed reading recovery file {self.path}: {e}") from e
        if not contents.endswith(SENTINAL):
            raise RecoveryCorruptionError(f"Read invalid recovery file: {self.path}")
        try:
            state = json.loads(contents[: -len(SENTINAL)])
        except ValueError as e:
            raise RecoveryCorruptionError(f"Failed reading persisted JSON queue: {self.path}") from e
        if not isinstance(state, dict):
            raise RecoveryCorruptionError(f"Failed reading persisted JSON queue: {self.path}")
        return state

    def is_complete(self) -> bool:
        """True if the file has the marker and readable JSON."""
        try:
            self.read_state()
            return True
        except RecoveryCorruptionError:
            return False

    def write_state(self, state: dict) -> None:
        """
        Write state followed by the marker and sync it to disk.

        Raises:
            RecoveryWriteError: If the file cannot be written completely
        """
        try:
            with open(self.path, "x", encoding="utf-8") as f:
                json.dump(state, f, separators=(",", ":"))
                f.write(SENTINAL)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            self.delete()
            raise RecoveryWriteError(f"Failed writing recovery file {self.path}: {e}") from e
        _fsync_dir(self.path.parent)

    def delete(self) -> bool:
        """Delete the file, logging failures."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.error(f"Failed to delete: {self.path}: {e}")
            return False

    def __repr__(self) -> str:
        return f"RecoveryFile({self.path})"


class CheckpointAndChangeQueue:
    """
    Queue of changes awaiting confirmation by the client.

    Changes are pulled from a ChangeSource and assigned increasing global
    checkpoints. They stay in the queue until the client calls resume with
    their checkpoint or a later one. Every resume writes the full queue and
    the monitor restart state to a new recovery file before returning.

    All operations are serialized; the refill and the recovery write run
    inside the same critical section.
    """

    def __init__(
        self,
        change_source: ChangeSource,
        persist_dir: Path,
        maximum_queue_size: int = DEFAULT_MAXIMUM_QUEUE_SIZE,
    ):
        """
        Initialize the queue.

        Args:
            change_source: Where new changes come from
            persist_dir: Directory for recovery files
            maximum_queue_size: Refill ceiling
        """
        self.change_source = change_source
        self.persist_dir = Path(persist_dir)
        self._maximum_queue_size = maximum_queue_size
        self._entries: List[CheckpointAndChange] = []
        self._last_checkpoint = FileConnectorCheckpoint.new_first()
        self._monitor_points = MonitorRestartState()
        self._last_timestamp = 0
        self._lock = threading.Lock()
        self._closed = False

        self._ensure_persist_dir_exists()

    @staticmethod
    def initialize_checkpoint_if_none(checkpoint: Optional[str]) -> str:
        """Return checkpoint, or the first checkpoint's token if it is None."""
        if checkpoint is None:
            return FileConnectorCheckpoint.new_first().to_token()
        return checkpoint

    def _check_open(self) -> None:
        if self._closed:
            raise QueueError("Queue is closed")

    def _ensure_persist_dir_exists(self) -> None:
        if self.persist_dir.exists() and not self.persist_dir.is_dir():
            raise QueueError(f"Not a directory: {self.persist_dir}")
        self.persist_dir.mkdir(parents=True, exist_ok=True)

    def start(self, checkpoint: Optional[str]) -> None:
        """
        Initialize to continue after checkpoint, or from scratch if it is None.

        A None checkpoint discards all recovery state. Otherwise the queue
        and monitor restart state are loaded from the single complete
        recovery file. Either way exactly one valid recovery file remains.

        Raises:
            RecoveryCorruptionError: If no trustworthy recovery file exists
            InvalidCheckpointError: If checkpoint cannot be parsed
        """
        with self._lock:
            self._check_open()
            logger.info(f"Starting checkpoint and change queue from {checkpoint}")
            self._ensure_persist_dir_exists()
            self._entries.clear()

            if checkpoint is None:
                self._last_checkpoint = FileConnectorCheckpoint.new_first()
                self._remove_all_recovery_state()
                self._monitor_points = MonitorRestartState()
                self._write_recovery_state(self._monitor_points)
            else:
                requested = FileConnectorCheckpoint.from_token(checkpoint)
                current = self._remove_excess_recovery_state()
                last = self._load_up_from_recovery_state(current)
                self._last_checkpoint = max(requested, last)
                logger.info(
                    f"Recovered {len(self._entries)} queued change(s) and "
                    f"{len(self._monitor_points.points)} monitor restart point(s)"
                )

    def resume(self, checkpoint: Optional[str]) -> List[CheckpointAndChange]:
        """
        Return the queued changes that follow checkpoint.

        Entries up to and including checkpoint are removed first (None
        removes nothing), the queue is refilled from the change source and
        the result is made durable before it is returned.

        Raises:
            RecoveryWriteError: If the recovery file cannot be written
            InvalidCheckpointError: If checkpoint cannot be parsed
        """
        with self._lock:
            self._check_open()
            self._ensure_persist_dir_exists()
            self._remove_completed_changes(checkpoint)
            self._load_up_from_change_source()

            points = self._monitor_points.copy()
            points.update_on_guaranteed(self._entries)
            self._write_recovery_state(points)
            self._monitor_points = points
            self._remove_excess_recovery_state()

            return list(self._entries)

    def set_maximum_queue_size(self, maximum_queue_size: int) -> None:
        """Set the refill ceiling used by later resume calls."""
        if maximum_queue_size < 1:
            raise ValueError(f"Maximum queue size must be positive: {maximum_queue_size}")
        with self._lock:
            self._check_open()
            self._maximum_queue_size = maximum_queue_size

    @property
    def maximum_queue_size(self) -> int:
        return self._maximum_queue_size

    def get_monitor_restart_points(self) -> Dict[str, MonitorCheckpoint]:
        """Copy of the restart checkpoint of every monitor."""
        with self._lock:
            self._check_open()
            return dict(self._monitor_points.points)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clean(self) -> None:
        """Delete all recovery state and the persist directory."""
        with self._lock:
            self._entries.clear()
            self._monitor_points = MonitorRestartState()
            self._last_checkpoint = FileConnectorCheckpoint.new_first()
            try:
                self._remove_all_recovery_state()
            except RecoveryError as e:
                logger.error(f"Failure cleaning recovery state: {e}")
            try:
                self.persist_dir.rmdir()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Failed to delete: {self.persist_dir}: {e}")

    def close(self) -> None:
        """Mark the queue closed; later calls raise QueueError."""
        self._closed = True

    def _remove_completed_changes(self, checkpoint: Optional[str]) -> None:
        if checkpoint is None:
            return
        completed = FileConnectorCheckpoint.from_token(checkpoint)
        removed = 0
        while self._entries and self._entries[0].checkpoint <= completed:
            self._entries.pop(0)
            removed += 1
        if removed:
            logger.debug(f"Removed {removed} completed change(s) up to {completed}")

    def _load_up_from_change_source(self) -> None:
        maximum = self._maximum_queue_size
        if len(self._entries) < maximum:
            self._last_checkpoint = self._last_checkpoint.next_major()

        added = 0
        while len(self._entries) < maximum:
            change = self.change_source.get_next_change()
            if change is None:
                break
            self._last_checkpoint = self._last_checkpoint.next()
            self._entries.append(CheckpointAndChange(self._last_checkpoint, change))
            added += 1
        if added:
            logger.debug(f"Queued {added} new change(s); queue holds {len(self._entries)}")

    def _state_json(self, points: MonitorRestartState) -> dict:
        return {
            QUEUE_JSON_TAG: [entry.to_dict() for entry in self._entries],
            MONITOR_STATE_JSON_TAG: points.to_dict(),
            LAST_CHECKPOINT_JSON_TAG: {
                "M": self._last_checkpoint.major,
                "m": self._last_checkpoint.minor,
            },
        }

    def _write_recovery_state(self, points: MonitorRestartState) -> RecoveryFile:
        recovery_file = RecoveryFile.new(self.persist_dir, self._newest_timestamp())
        recovery_file.write_state(self._state_json(points))
        self._last_timestamp = recovery_file.timestamp
        return recovery_file

    def _load_up_from_recovery_state(self, recovery_file: RecoveryFile) -> FileConnectorCheckpoint:
        state = recovery_file.read_state()
        try:
            entries = [CheckpointAndChange.from_dict(e) for e in state[QUEUE_JSON_TAG]]
            points = MonitorRestartState.from_dict(state[MONITOR_STATE_JSON_TAG])
            last = state.get(LAST_CHECKPOINT_JSON_TAG)
            last_checkpoint = (
                FileConnectorCheckpoint(int(last["M"]), int(last["m"]))
                if last
                else FileConnectorCheckpoint.new_first()
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RecoveryCorruptionError(
                f"Failed reading persisted JSON queue: {recovery_file.path}"
            ) from e

        self._entries = entries
        points.update_on_guaranteed(entries)
        self._monitor_points = points
        if entries:
            last_checkpoint = max(last_checkpoint, entries[-1].checkpoint)
        return last_checkpoint

    def _all_recovery_files(self) -> List[RecoveryFile]:
        files = []
        if not self.persist_dir.is_dir():
            return files
        for path in sorted(self.persist_dir.iterdir()):
            if not path.name.startswith(RECOVERY_FILE_PREFIX):
                logger.warning(f"Ignoring unexpected file in recovery directory: {path}")
                continue
            files.append(RecoveryFile(path))
        return files

    def _newest_timestamp(self) -> int:
        newest = self._last_timestamp
        for recovery_file in self._all_recovery_files():
            newest = max(newest, recovery_file.timestamp)
        return newest

    def _remove_excess_recovery_state(self) -> RecoveryFile:
        """
        Leave only the newest complete recovery file and return it.

        Raises:
            RecoveryCorruptionError: If no complete recovery file exists
        """
        all_files = self._all_recovery_files()
        if not all_files:
            raise RecoveryCorruptionError("No recovery state to reduce to.")
        if len(all_files) > 2:
            logger.warning(f"Found too many recovery files: {all_files}")

        complete = []
        for recovery_file in all_files:
            if recovery_file.is_complete():
                complete.append(recovery_file)
            else:
                logger.error(f"Found incomplete recovery file: {recovery_file.path}")
                recovery_file.delete()

        if not complete:
            raise RecoveryCorruptionError(
                f"No complete recovery file among {len(all_files)} in {self.persist_dir}"
            )

        complete.sort(key=lambda f: f.timestamp)
        current = complete[-1]
        for stale in complete[:-1]:
            stale.delete()
        return current

    def _remove_all_recovery_state(self) -> None:
        failed = []
        for recovery_file in self._all_recovery_files():
            if not recovery_file.delete():
                failed.append(str(recovery_file.path))
        if failed:
            raise RecoveryError(f"Failed to delete: {failed}")
