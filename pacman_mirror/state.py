"""Observable synchronization state.

:class:`SyncState` is owned by :class:`~pacman_mirror.sync.MirrorSync`
and only changed through its methods. Every change pushes a complete
snapshot to all subscribers; observers never see the live object.
"""

import asyncio
import os
import time
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

LOG_CAPACITY = 200

Subscriber = Callable[[Dict[str, Any]], None]


class SyncPhase(Enum):
    """Phases of a synchronization pass.

    ``IDLE`` is both the initial state and the normal terminal state.
    ``STOPPED`` and ``ERROR`` end a pass that was cancelled or whose
    discovery failed; a new pass may be started from any of the three.
    """
    IDLE = "Idle"
    SCANNING = "Scanning"
    SYNCING = "Syncing"
    STOPPED = "Stopped"
    ERROR = "Error"

    @property
    def running(self) -> bool:
        return self in (SyncPhase.SCANNING, SyncPhase.SYNCING)


@dataclass
class LogEntry:
    timestamp: float
    level: str
    message: str


def format_bytes(bytes_val: float) -> str:
    """Render a byte count for log lines and summaries, e.g. ``5.00 GiB``."""
    for unit in ['B', 'KiB', 'MiB', 'GiB', 'TiB']:
        if bytes_val < 1024.0:
            return f"{bytes_val:.2f} {unit}"
        bytes_val /= 1024.0
    return f"{bytes_val:.2f} PiB"


def format_time(seconds: float) -> str:
    """Render a duration the way ETAs are shown: ``15s``, ``45m 30s``, ``1h 23m``."""
    if seconds < 60:
        return f"{int(seconds)}s"
    elif seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def disk_usage(root: Path) -> int:
    """Sum the sizes of all files below ``root`` (0 if it doesn't exist)."""
    total = 0
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except FileNotFoundError:
                # Renamed or removed by a transfer while walking
                continue
    return total


class SyncState:
    """Progress of the current synchronization pass.

    Tracks the phase, file totals, what each worker is currently doing,
    the estimated time remaining and a bounded log. All mutating methods
    broadcast a fresh snapshot to every subscriber. The disk usage of the
    mirror directory is walked by :meth:`refresh_disk_usage` and advanced by
    each finished download in between.
    """

    def __init__(
        self,
        mirror_path: Path,
        clock: Callable[[], float] = time.monotonic,
        echo: bool = True,
    ):
        """Initialize the state.

        :param mirror_path: Local mirror root, used for disk usage
        :type mirror_path: Path
        :param clock: Monotonic clock used for elapsed time and ETA
        :type clock: Callable[[], float]
        :param echo: Also print log entries to the console
        :type echo: bool
        """
        self.mirror_path = Path(mirror_path)
        self.echo = echo
        self._clock = clock
        self._subscribers: List[Subscriber] = []
        self.log_entries: Deque[LogEntry] = deque(maxlen=LOG_CAPACITY)
        self.disk_usage = 0
        self._clear()

    def _clear(self):
        self.phase = SyncPhase.IDLE
        self.current_task = SyncPhase.IDLE.value
        self.total = 0
        self.progress = 0
        self.failed = 0
        self.discovered = 0
        self.present = 0
        self.eta: Optional[int] = None
        self.projected_bytes: Optional[int] = None
        self.bytes_downloaded = 0
        self.workers: Dict[int, Optional[str]] = {}
        self.started_at: Optional[float] = None
        self.log_entries.clear()

    # -- observers ---------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for snapshots; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def snapshot(self) -> Dict[str, Any]:
        """Return a JSON-serializable copy of the state."""
        return {
            "phase": self.phase.value,
            "currentTask": self.current_task,
            "progress": self.progress,
            "total": self.total,
            "failed": self.failed,
            "discovered": self.discovered,
            "present": self.present,
            "eta": self.eta,
            "diskUsage": self.disk_usage,
            "projectedBytes": self.projected_bytes,
            "bytesDownloaded": self.bytes_downloaded,
            "workers": {str(index): path for index, path in self.workers.items()},
            "log": [asdict(entry) for entry in self.log_entries],
        }

    async def refresh_disk_usage(self):
        """Walk the mirror tree in a worker thread and broadcast the result."""
        self.disk_usage = await asyncio.to_thread(disk_usage, self.mirror_path)
        self.broadcast()

    def broadcast(self):
        """Push a snapshot to every subscriber."""
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for callback in list(self._subscribers):
            callback(snapshot)

    # -- mutations ---------------------------------------------------------

    def _append_log(self, message: str, level: str):
        self.log_entries.append(LogEntry(time.time(), level, message))
        if self.echo:
            prefix = {"warning": "Warning: ", "error": "Error: "}.get(level, "")
            print(f"{prefix}{message}")

    def log(self, message: str, level: str = "info"):
        """Append a log entry (info, warning or error)."""
        self._append_log(message, level)
        self.broadcast()

    def reset(self):
        """Forget everything about the previous pass."""
        self._clear()
        self.broadcast()

    def set_phase(self, phase: SyncPhase, message: Optional[str] = None):
        """Enter ``phase``, optionally logging ``message`` with it."""
        self.phase = phase
        self.current_task = phase.value
        if not phase.running:
            self.workers = {index: None for index in self.workers}
        if phase is SyncPhase.IDLE:
            self.eta = 0
        if message:
            self._append_log(message, "error" if phase is SyncPhase.ERROR else "info")
        self.broadcast()

    def begin_sync(self, total: int, discovered: int, present: int, workers: int):
        """Enter the syncing phase with ``total`` files still to fetch.

        :param total: Number of files that will be downloaded
        :type total: int
        :param discovered: Number of files found by the crawler
        :type discovered: int
        :param present: Number of discovered files already on disk
        :type present: int
        :param workers: Number of concurrent workers
        :type workers: int
        """
        self.phase = SyncPhase.SYNCING
        self.current_task = SyncPhase.SYNCING.value
        self.total = total
        self.discovered = discovered
        self.present = present
        self.progress = 0
        self.failed = 0
        self.eta = None
        self.workers = {index: None for index in range(workers)}
        self.started_at = self._clock()
        self.broadcast()

    def file_started(self, worker: int, path: str, mirror: str):
        self.workers[worker] = path
        self.current_task = f"Downloading {path}"
        self._append_log(f"Downloading {path} from {mirror}...", "info")
        self.broadcast()

    def file_finished(self, worker: int, path: str, size: int):
        self.workers[worker] = None
        self.bytes_downloaded += size
        self.disk_usage += size
        self._advance()
        self._append_log(f"[{self.progress}/{self.total}] Downloaded {path} ({format_bytes(size)})", "info")
        self.broadcast()

    def file_failed(self, worker: int, path: str, error: Exception):
        self.workers[worker] = None
        self.failed += 1
        self._advance()
        self._append_log(f"[{self.progress}/{self.total}] {error}", "error")
        self.broadcast()

    def set_projected(self, nbytes: int):
        """Record the projected number of bytes still to download."""
        self.projected_bytes = nbytes
        self.broadcast()

    def _advance(self):
        """Count one processed file and recompute the ETA.

        The ETA is the average time per processed file so far multiplied
        by the number of files left, so it is not necessarily monotonic.
        """
        self.progress += 1
        if self.started_at is None:
            self.started_at = self._clock()
        elapsed = self._clock() - self.started_at
        remaining = max(0, self.total - self.progress)
        self.eta = round(elapsed / self.progress * remaining)

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        return self._clock() - self.started_at
