"""Client-facing traversal over the checkpoint and change queue."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from .config import ConnectorConfig
from .exceptions import InactiveTraversalManagerError
from .filesystem import FileSource
from .manager import FileSystemMonitorManager
from .models import CheckpointAndChange
from .monitor import ScanContext
from .queue import CheckpointAndChangeQueue

logger = logging.getLogger(__name__)


@dataclass
class ChangeBatch:
    """
    Changes delivered by one resume call.

    Attributes:
        changes: Queued changes, oldest first
        checkpoint: Token to resume after once the batch has been processed
    """
    changes: List[CheckpointAndChange] = field(default_factory=list)
    checkpoint: str = ""

    @classmethod
    def create(cls, changes: List[CheckpointAndChange], requested: Optional[str]) -> "ChangeBatch":
        if changes:
            checkpoint = changes[-1].checkpoint.to_token()
        else:
            checkpoint = CheckpointAndChangeQueue.initialize_checkpoint_if_none(requested)
        return cls(changes=list(changes), checkpoint=checkpoint)

    def __iter__(self) -> Iterator[CheckpointAndChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)


class Connector:
    """
    Owns the monitor manager and hands out traversal managers.

    Only the most recently issued TraversalManager is usable; each call to
    get_traversal_manager starts a new generation.
    """

    def __init__(self, config: Optional[ConnectorConfig] = None, source: Optional[FileSource] = None):
        self.config = config or ConnectorConfig()
        self.monitor_manager = FileSystemMonitorManager(self.config, source=source)
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    def get_traversal_manager(self) -> "TraversalManager":
        """Stop the monitors and return a handle for the new generation."""
        with self._lock:
            self._generation += 1
            generation = self._generation
        self.monitor_manager.stop()
        logger.debug(f"Issued traversal manager generation {generation}")
        return TraversalManager(self, generation)

    def shutdown(self) -> None:
        self.monitor_manager.stop()

    def delete(self) -> None:
        """Stop and remove all connector state."""
        self.monitor_manager.clean()


class TraversalManager:
    """Handle used by the client to start and resume a traversal."""

    def __init__(self, connector: Connector, generation: int):
        self._connector = connector
        self._generation = generation
        self._context: Optional[ScanContext] = None

    def is_active(self) -> bool:
        return self._generation == self._connector.generation

    def _check_active(self) -> FileSystemMonitorManager:
        if not self.is_active():
            logger.info("Inactive TraversalManager referenced.")
            raise InactiveTraversalManagerError("Inactive TraversalManager referenced.")
        return self._connector.monitor_manager

    def set_batch_hint(self, batch_hint: int) -> None:
        """Limit how many changes later resume calls may return."""
        manager = self._check_active()
        manager.get_checkpoint_and_change_queue().set_maximum_queue_size(batch_hint)

    def set_context(self, context: ScanContext) -> None:
        """Settings applied to monitors started after this call."""
        self._check_active()
        self._context = context

    def start_traversal(self) -> ChangeBatch:
        """Discard all state and traverse from the beginning."""
        manager = self._check_active()
        manager.stop()
        manager.clean()
        return self.resume_traversal(None)

    def resume_traversal(self, checkpoint: Optional[str]) -> ChangeBatch:
        """
        Return the changes after checkpoint, starting the monitors if needed.

        Raises:
            InactiveTraversalManagerError: If a newer handle has been issued
            RecoveryError: If recovery state cannot be read or written
        """
        manager = self._check_active()
        if not manager.is_running():
            manager.start(checkpoint, self._context)

        queue = manager.get_checkpoint_and_change_queue()
        changes = queue.resume(checkpoint)
        manager.accept_guarantees(queue.get_monitor_restart_points())
        return ChangeBatch.create(changes, checkpoint)
