"""Filesystem notifications that wake monitors before their next scan is due."""

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import ConnectorConfig

logger = logging.getLogger(__name__)

RELEVANT_EVENT_TYPES = frozenset({"created", "deleted", "modified", "moved"})


class FSEventHandler(FileSystemEventHandler):
    """Handler that calls back when something relevant changes under a root."""

    def __init__(
        self,
        callback: Callable[[], None],
        config: ConnectorConfig,
        root: Path,
    ):
        super().__init__()
        self.callback = callback
        self.config = config
        self.root = root

    def _should_ignore(self, path: str) -> bool:
        """Check if the path should be ignored."""
        candidate = Path(path)
        return self.config.is_state_path(candidate) or self.config.should_ignore(candidate)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in RELEVANT_EVENT_TYPES:
            return
        if self._should_ignore(event.src_path):
            dest = getattr(event, "dest_path", "")
            if not dest or self._should_ignore(dest):
                return
        self.callback()


class FSWatcherPool:
    """
    Manages watchdog observers, one per monitored root.

    Observers only shorten the wait between scans; snapshots stay the
    source of truth for changes.
    """

    def __init__(self, config: Optional[ConnectorConfig] = None):
        """
        Initialize the watcher pool.

        Args:
            config: Connector configuration
        """
        self.config = config or ConnectorConfig()
        self._observers: Dict[Path, Observer] = {}
        self._lock = threading.Lock()

    def start_watching(self, root: Path, callback: Callable[[], None]) -> bool:
        """
        Start watching a root directory.

        Args:
            root: Path to the root directory
            callback: Called on every relevant event under root

        Returns:
            True if watching started, False if already watching
        """
        root = root.resolve()

        with self._lock:
            if root in self._observers:
                return False

            observer = Observer()
            handler = FSEventHandler(callback, self.config, root)
            observer.schedule(handler, str(root), recursive=True)
            observer.daemon = True
            observer.start()

            self._observers[root] = observer
            logger.debug(f"Watching {root} for filesystem events")
            return True

    def stop_watching(self, root: Path) -> bool:
        """
        Stop watching a root directory.

        Returns:
            True if watching stopped, False if not watching
        """
        root = root.resolve()

        with self._lock:
            if root not in self._observers:
                return False

            observer = self._observers.pop(root)
            observer.stop()
            observer.join(timeout=5.0)
            return True

    def stop_all(self) -> int:
        """
        Stop all watchers.

        Returns:
            Number of watchers stopped
        """
        with self._lock:
            count = len(self._observers)

            for observer in self._observers.values():
                observer.stop()

            for observer in self._observers.values():
                observer.join(timeout=5.0)

            self._observers.clear()
            return count

    def is_watching(self, root: Path) -> bool:
        root = root.resolve()

        with self._lock:
            return root in self._observers

    def __len__(self) -> int:
        """Return the number of active watchers."""
        with self._lock:
            return len(self._observers)
