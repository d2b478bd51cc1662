"""Lifecycle of the filesystem monitors."""

import logging
import shutil
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .change_source import ChangeAggregator
from .config import ConnectorConfig
from .filesystem import FileSource, LocalFileSource
from .fs_watcher import FSWatcherPool
from .models import MonitorCheckpoint
from .monitor import FileSystemMonitor, ScanContext
from .queue import CheckpointAndChangeQueue
from .root_manager import RootManager
from .snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


class FileSystemMonitorManager:
    """
    Starts, stops and resets one monitor thread per root.

    Owns the change aggregator the monitors feed and the checkpoint and
    change queue that drains it.
    """

    def __init__(
        self,
        config: Optional[ConnectorConfig] = None,
        queue: Optional[CheckpointAndChangeQueue] = None,
        aggregator: Optional[ChangeAggregator] = None,
        source: Optional[FileSource] = None,
    ):
        """
        Initialize the manager.

        Args:
            config: Connector configuration (roots, directories, intervals)
            queue: Checkpoint and change queue; built on the aggregator if omitted
            aggregator: Buffer between monitors and the queue
            source: Filesystem backend used by every monitor
        """
        self.config = config or ConnectorConfig()

        self._root_manager = RootManager()
        for root in self.config.roots:
            self._root_manager.add_root(root, must_exist=False)

        self._aggregator = aggregator or ChangeAggregator(self.config.change_queue_size)
        self._queue = queue or CheckpointAndChangeQueue(
            self._aggregator,
            self.config.queue_dir,
            self.config.max_queue_size,
        )
        self._source = source or LocalFileSource(self.config)
        self._fs_watcher_pool = FSWatcherPool(self.config) if self.config.use_fs_events else None

        self._monitors: Dict[str, FileSystemMonitor] = {}
        self._wake_events: Dict[str, threading.Event] = {}
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._running = False
        self._lock = threading.Lock()

    def get_checkpoint_and_change_queue(self) -> CheckpointAndChangeQueue:
        return self._queue

    @property
    def aggregator(self) -> ChangeAggregator:
        return self._aggregator

    def get_roots(self) -> List[Path]:
        return self._root_manager.get_roots()

    def snapshot_dir_for(self, monitor_name: str) -> Path:
        return self.config.snapshot_dir / monitor_name

    def start(self, checkpoint: Optional[str], context: Optional[ScanContext] = None) -> None:
        """
        Start one monitor thread per root, resuming after checkpoint.

        A None checkpoint discards all snapshot and queue state so every
        root is scanned from the beginning. Otherwise each monitor with a
        restart point has its snapshots stitched at that point; a monitor
        without one rescans from scratch. Does nothing if already running.
        """
        with self._lock:
            if self._running:
                logger.debug("Monitors already running")
                return

            self._aggregator.clear()
            self._queue.start(checkpoint)

            if checkpoint is None:
                self._delete_snapshot_state()
                points: Dict[str, MonitorCheckpoint] = {}
            else:
                points = self._queue.get_monitor_restart_points()

            # Registered only once every root has been stitched or wiped.
            monitors: Dict[str, FileSystemMonitor] = {}
            wake_events: Dict[str, threading.Event] = {}
            threads: List[threading.Thread] = []
            for root, name in self._root_manager.items():
                snapshot_dir = self.snapshot_dir_for(name)
                point = points.get(name)
                if checkpoint is not None:
                    if point is not None:
                        SnapshotStore.stitch(snapshot_dir, point)
                    elif snapshot_dir.exists():
                        logger.info(f"No restart point for {root}; rescanning from scratch")
                        SnapshotStore(snapshot_dir).delete_all()

                store = SnapshotStore(snapshot_dir)
                # Changes already queued may still refer to the snapshots
                # this monitor starts from.
                store.accept_guarantee(point or MonitorCheckpoint(name, 0, 0, 0))

                monitor = FileSystemMonitor(
                    name,
                    root,
                    store,
                    self._source,
                    self._aggregator,
                    self.config,
                    context,
                )
                wake_event = threading.Event()
                thread = threading.Thread(
                    target=monitor.run,
                    args=(self._stop_event, wake_event),
                    name=f"Monitor-{name}",
                )
                thread.daemon = True

                monitors[name] = monitor
                wake_events[name] = wake_event
                threads.append(thread)

            self._monitors = monitors
            self._wake_events = wake_events
            self._threads = threads
            self._stop_event.clear()
            for thread in self._threads:
                thread.start()

            if self._fs_watcher_pool is not None:
                for root, name in self._root_manager.items():
                    try:
                        self._fs_watcher_pool.start_watching(root, self._wake_events[name].set)
                    except Exception as e:
                        logger.warning(f"Filesystem events unavailable for {root}, polling only: {e}")

            self._running = True
            logger.info(f"Started {len(self._threads)} monitor(s) from checkpoint {checkpoint}")

    def stop(self) -> None:
        """Signal every monitor to stop and wait for the threads to exit."""
        with self._lock:
            if not self._running and not self._threads:
                return

            self._stop_event.set()
            for wake_event in self._wake_events.values():
                wake_event.set()

            if self._fs_watcher_pool is not None:
                self._fs_watcher_pool.stop_all()

            for thread in self._threads:
                thread.join()

            self._threads.clear()
            self._monitors.clear()
            self._wake_events.clear()
            self._running = False
            logger.info("Monitors stopped")

    def clean(self) -> None:
        """Stop, then delete all snapshot and recovery state."""
        self.stop()
        with self._lock:
            self._aggregator.clear()
            self._delete_snapshot_state(recreate=False)
            self._queue.clean()
            logger.info("Connector state deleted")

    def is_running(self) -> bool:
        return self._running

    def get_thread_count(self) -> int:
        """Number of monitor threads currently alive."""
        with self._lock:
            return sum(1 for thread in self._threads if thread.is_alive())

    def accept_guarantees(self, points: Dict[str, MonitorCheckpoint]) -> None:
        """Pass each monitor the checkpoint its changes are durable up to."""
        with self._lock:
            for name, checkpoint in points.items():
                monitor = self._monitors.get(name)
                if monitor is not None:
                    monitor.accept_guarantee(checkpoint)

    def _delete_snapshot_state(self, recreate: bool = True) -> None:
        snapshot_dir = self.config.snapshot_dir
        if snapshot_dir.exists():
            shutil.rmtree(snapshot_dir)
        if recreate:
            snapshot_dir.mkdir(parents=True, exist_ok=True)

    def close(self) -> None:
        """Stop the monitors and close the queue."""
        self.stop()
        self._queue.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
