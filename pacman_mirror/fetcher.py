"""Downloading single files with mirror failover."""

import asyncio
from pathlib import Path
from typing import Optional, Sequence

import aiohttp

from .crawler import FileTask
from .state import SyncState
from .throttle import BandwidthThrottle

CHUNK_SIZE = 64 * 1024
PARTIAL_SUFFIX = ".part"


class DownloadError(Exception):
    """Every attempted mirror failed for one file."""

    def __init__(self, path: str, mirrors: Sequence[str], last_error: Optional[BaseException]):
        tried = ", ".join(mirrors)
        reason = (str(last_error) or type(last_error).__name__) if last_error else "no mirror"
        super().__init__(f"Failed to download {path} from all mirrors ({tried}): {reason}")
        self.path = path
        self.mirrors = list(mirrors)
        self.last_error = last_error


class FileFetcher:
    """Download files into the local mirror tree.

    Files are streamed into a ``.part`` file next to the destination and
    renamed into place once the transfer has completed, so an existing
    destination always is a complete download.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        mirror_path: Path,
        state: SyncState,
        timeout: float = 30.0,
    ):
        """Initialize the fetcher.

        :param session: HTTP session used for all transfers
        :type session: aiohttp.ClientSession
        :param mirror_path: Local mirror root
        :type mirror_path: Path
        :param state: State receiving start, completion and failure events
        :type state: SyncState
        :param timeout: Connect and per-read timeout in seconds; there is
            no limit on the total duration of a transfer
        :type timeout: float
        """
        self.session = session
        self.mirror_path = Path(mirror_path)
        self.state = state
        self.timeout = aiohttp.ClientTimeout(total=None, connect=timeout, sock_read=timeout)

    def destination(self, task: FileTask) -> Path:
        return self.mirror_path / task.path

    async def fetch(self, task: FileTask, mirrors: Sequence[str], rate: int = 0, worker: int = 0) -> bool:
        """Download ``task`` from the first mirror that delivers it.

        Mirrors are tried strictly in the given order. Passing a single
        mirror disables failover.

        :param task: File to download
        :type task: FileTask
        :param mirrors: Mirror base URLs in priority order
        :type mirrors: Sequence[str]
        :param rate: Rate limit for this transfer in bytes per second
        :type rate: int
        :param worker: Worker slot to report progress on
        :type worker: int
        :returns: True if the file was downloaded, False if it already existed
        :rtype: bool
        :raises DownloadError: If all mirrors failed
        """
        destination = self.destination(task)
        if destination.exists():
            return False

        last_error: Optional[BaseException] = None
        for index, mirror in enumerate(mirrors):
            if index == 0:
                self.state.file_started(worker, task.path, mirror)
            else:
                self.state.log(f"Retrying {task.path} from {mirror}...")
            try:
                size = await self._download(task.url(mirror), destination, rate)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                last_error = e
                reason = str(e) or type(e).__name__
                self.state.log(f"Failed to download {task.path} from {mirror}: {reason}", "warning")
                continue
            self.state.file_finished(worker, task.path, size)
            return True

        error = DownloadError(task.path, mirrors, last_error)
        self.state.file_failed(worker, task.path, error)
        raise error

    async def _download(self, url: str, destination: Path, rate: int) -> int:
        """Stream ``url`` to ``destination`` and return the number of bytes."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
        throttle = BandwidthThrottle(rate)
        chunk_size = min(CHUNK_SIZE, rate) if rate > 0 else CHUNK_SIZE
        written = 0

        try:
            async with self.session.get(url, timeout=self.timeout) as response:
                response.raise_for_status()
                with open(partial, 'wb') as f:
                    async for chunk in response.content.iter_chunked(chunk_size):
                        # Write to file in thread pool
                        await asyncio.to_thread(f.write, chunk)
                        written += len(chunk)
                        await throttle.consume(len(chunk))
            partial.replace(destination)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return written

    async def probe_size(self, task: FileTask, mirror: str) -> Optional[int]:
        """Return the Content-Length reported by ``HEAD``, if any."""
        try:
            async with self.session.head(task.url(mirror), timeout=self.timeout,
                                         allow_redirects=True) as response:
                if not 200 <= response.status < 300:
                    return None
                return response.content_length
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return None
