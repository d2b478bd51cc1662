"""Thread-safe registry of monitored root folders."""

import hashlib
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import RootNotFoundError, RootAlreadyExistsError


def monitor_name_for(root: Path) -> str:
    """Stable monitor name derived from the resolved root path."""
    return hashlib.sha1(str(root).encode("utf-8")).hexdigest()[:16]


class RootManager:
    """
    Thread-safe management of monitored roots.

    Roots may not repeat or nest inside one another; each one maps to the
    name of the monitor that scans it.
    """

    def __init__(self):
        """Initialize the root manager."""
        self._roots: Dict[Path, str] = {}
        self._lock = threading.RLock()

    def add_root(self, path: Path, must_exist: bool = True) -> str:
        """
        Add a root folder to monitor.

        Args:
            path: Path to the root folder
            must_exist: If True, raise error if path doesn't exist

        Returns:
            The monitor name assigned to the root

        Raises:
            RootNotFoundError: If must_exist and path doesn't exist
            RootAlreadyExistsError: If the root is already monitored or overlaps one
        """
        path = Path(path).resolve()

        if must_exist and not path.exists():
            raise RootNotFoundError(f"Root folder does not exist: {path}")

        with self._lock:
            if path in self._roots:
                raise RootAlreadyExistsError(f"Root already being monitored: {path}")

            # Check for overlapping roots (parent/child)
            for existing in self._roots:
                try:
                    path.relative_to(existing)
                    raise RootAlreadyExistsError(
                        f"'{path}' is already inside monitored root '{existing}'"
                    )
                except ValueError:
                    pass
                try:
                    existing.relative_to(path)
                    raise RootAlreadyExistsError(
                        f"'{path}' contains already-monitored root '{existing}'"
                    )
                except ValueError:
                    pass

            name = monitor_name_for(path)
            self._roots[path] = name
            return name

    def get_roots(self) -> List[Path]:
        """Get the monitored roots in the order they were added."""
        with self._lock:
            return list(self._roots)

    def monitor_name(self, path: Path) -> Optional[str]:
        """Monitor name of a root, or None if it is not monitored."""
        with self._lock:
            return self._roots.get(Path(path).resolve())

    def items(self) -> List[tuple]:
        """(root, monitor name) pairs."""
        with self._lock:
            return list(self._roots.items())

    def __len__(self) -> int:
        """Return the number of monitored roots."""
        with self._lock:
            return len(self._roots)

    def __contains__(self, path: Path) -> bool:
        with self._lock:
            return Path(path).resolve() in self._roots
