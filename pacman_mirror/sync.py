"""Synchronization orchestrator."""

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import aiohttp

from .config import Config
from .crawler import Crawler, DiscoveryError, FileTask
from .fetcher import DownloadError, FileFetcher
from .listing import DirectoryLister
from .pool import ConcurrencyPool
from .state import SyncPhase, SyncState, format_bytes, format_time

LOCK_NAME = "pacman-mirror.lock"


@dataclass
class Shard:
    """Files assigned to one worker.

    :param worker: Worker index, also the state slot it reports on
    :type worker: int
    :param mirrors: Mirrors the worker may use, in failover order
    :type mirrors: List[str]
    :param tasks: Files to download, in processing order
    :type tasks: List[FileTask]
    :param rate: Rate limit per transfer in bytes per second (0 = none)
    :type rate: int
    """
    worker: int
    mirrors: List[str]
    tasks: List[FileTask] = field(default_factory=list)
    rate: int = 0


def partition(tasks: List[FileTask], mirrors: List[str], multithreading: bool, rate: int = 0) -> List[Shard]:
    """Split ``tasks`` into worker shards.

    With multithreading disabled or a single mirror there is one shard
    holding every task and the full mirror list for failover. Otherwise
    each mirror gets its own shard and task ``i`` is assigned to mirror
    ``i % len(mirrors)``, without failover. The global ``rate`` is split
    evenly between the shards.

    :param tasks: Files to download
    :type tasks: List[FileTask]
    :param mirrors: Mirror base URLs in priority order
    :type mirrors: List[str]
    :param multithreading: Whether one worker per mirror is wanted
    :type multithreading: bool
    :param rate: Global rate limit in bytes per second (0 = none)
    :type rate: int
    :returns: Shards, one per worker
    :rtype: List[Shard]
    """
    if not multithreading or len(mirrors) < 2:
        shards = [Shard(0, list(mirrors), list(tasks))]
    else:
        shards = [Shard(index, [mirror]) for index, mirror in enumerate(mirrors)]
        for index, task in enumerate(tasks):
            shards[index % len(shards)].tasks.append(task)

    if rate > 0:
        for shard in shards:
            shard.rate = max(1, rate // len(shards))
    return shards


class MirrorSync:
    """Discover the files of the first mirror and fetch the missing ones.

    A pass goes Idle -> Scanning -> Syncing and ends in Idle, Stopped
    (after :meth:`stop`) or Error (discovery failed). Progress is
    published through :attr:`state`.
    """

    def __init__(self, config: Config, state: Optional[SyncState] = None):
        """Initialize the orchestrator.

        Network resources are created by :meth:`initialize`.

        :param config: Resolved configuration
        :type config: Config
        :param state: State to report on, created if not given
        :type state: Optional[SyncState]
        """
        self.config = config
        self.mirror_path = Path(config.mirror_path)
        self.state = state or SyncState(self.mirror_path)
        self.session: Optional[aiohttp.ClientSession] = None
        self.lock_file: Optional[Path] = None
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._running = False

    async def initialize(self):
        """Create directories and the HTTP session, and acquire the lock.

        :raises RuntimeError: If another instance holds the lock file
        """
        for path in [self.config.mirror_path, self.config.var_path]:
            Path(path).mkdir(parents=True, exist_ok=True)

        self.lock_file = Path(self.config.var_path) / LOCK_NAME
        if self.lock_file.exists():
            lock_file, self.lock_file = self.lock_file, None
            raise RuntimeError(f"pacman-mirror is already running ({lock_file} exists), exiting")
        self.lock_file.touch()

        connector = aiohttp.TCPConnector(limit=self.config.crawl_concurrency + len(self.config.mirrors) * 2)
        self.session = aiohttp.ClientSession(
            connector=connector,
            headers={"User-Agent": "pacman-mirror"},
            trust_env=True  # Use environment variables for proxy
        )

    async def cleanup(self):
        """Stop a running pass, close the session and release the lock."""
        if self._task and not self._task.done():
            self.stop()
            await asyncio.gather(self._task, return_exceptions=True)
        if self.session:
            await self.session.close()
        if self.lock_file and self.lock_file.exists():
            self.lock_file.unlink()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Start a pass in the background unless one is running.

        :returns: True if a pass was started
        :rtype: bool
        """
        if self._running or (self._task and not self._task.done()):
            return False
        self._task = asyncio.create_task(self.run())
        self._task.add_done_callback(self._report_crash)
        return True

    def _report_crash(self, task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            print(f"Error: sync pass crashed: {task.exception()!r}")

    def stop(self):
        """Ask the running pass to stop after the files in flight."""
        if self._running and not self._stop.is_set():
            self._stop.set()
            self.state.log("Stop requested, finishing downloads in progress")

    async def wait(self):
        """Wait for the background pass started by :meth:`start`."""
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)

    async def run(self) -> SyncPhase:
        """Run one complete pass and return the phase it ended in.

        Does nothing while another pass is running.

        :returns: Final phase (IDLE, STOPPED or ERROR)
        :rtype: SyncPhase
        """
        if self._running:
            return self.state.phase
        if self.session is None:
            raise RuntimeError("MirrorSync.initialize() must be called first")

        self._running = True
        self._stop.clear()
        try:
            return await self._run()
        except Exception as e:
            self.state.set_phase(SyncPhase.ERROR, f"Sync failed: {e!r}")
            raise
        finally:
            self._running = False

    async def _run(self) -> SyncPhase:
        self.state.reset()
        await self.state.refresh_disk_usage()
        start_time = time.time()
        mirrors = self.config.mirrors
        pool = ConcurrencyPool(self.config.crawl_concurrency)

        self.state.set_phase(SyncPhase.SCANNING, f"Scanning {mirrors[0]}...")
        lister = DirectoryLister(self.session, self.config.list_timeout)
        crawler = Crawler(lister, pool, self.config.folders, log=self.state.log)
        try:
            tasks = await crawler.crawl(mirrors[0])
        except DiscoveryError as e:
            self.state.set_phase(SyncPhase.ERROR, f"Discovery failed: {e}")
            return SyncPhase.ERROR

        if self._stop.is_set():
            self.state.set_phase(SyncPhase.STOPPED, "Sync stopped")
            return SyncPhase.STOPPED

        fetcher = FileFetcher(self.session, self.mirror_path, self.state, self.config.file_timeout)
        missing = [task for task in tasks if not fetcher.destination(task).exists()]
        shards = partition(missing, mirrors, self.config.multithreading, self.config.rate_limit)

        self.state.log(f"Found {len(tasks)} files, {len(missing)} to download "
                       f"using {len(shards)} worker(s)")
        self.state.begin_sync(len(missing), len(tasks), len(tasks) - len(missing), len(shards))
        self.state.log(f"Begin time: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(start_time))}")

        jobs = [self._work(fetcher, shard) for shard in shards]
        if self.config.size_probe and missing:
            jobs.append(self._probe_sizes(fetcher, pool, shards))
        await asyncio.gather(*jobs)

        await self.state.refresh_disk_usage()
        elapsed = time.time() - start_time
        summary = (f"{self.state.progress - self.state.failed} downloaded, "
                   f"{self.state.failed} failed, {self.state.present} already present, "
                   f"{format_bytes(self.state.bytes_downloaded)} in {format_time(elapsed)}")
        if self._stop.is_set():
            self.state.set_phase(SyncPhase.STOPPED, f"Sync stopped: {summary}")
            return SyncPhase.STOPPED
        self.state.set_phase(SyncPhase.IDLE, f"Sync complete: {summary}")
        return SyncPhase.IDLE

    async def _work(self, fetcher: FileFetcher, shard: Shard):
        """Download the files of one shard, in order."""
        for index, task in enumerate(shard.tasks):
            if self._stop.is_set():
                return
            try:
                await fetcher.fetch(task, shard.mirrors, shard.rate, shard.worker)
            except DownloadError:
                # Already recorded by the fetcher; retried on the next run
                pass
            if index < len(shard.tasks) - 1:
                await self._pause()

    async def _pause(self):
        """Sleep ``download_pause`` seconds, waking up early on stop."""
        if self.config.download_pause <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), self.config.download_pause)
        except asyncio.TimeoutError:
            pass

    async def _probe_sizes(self, fetcher: FileFetcher, pool: ConcurrencyPool, shards: List[Shard]):
        """Sum the sizes of the missing files with HEAD requests."""
        async def probe(task: FileTask, mirror: str) -> Optional[int]:
            # Runs inside the pool, so probes still queued see a later stop
            if self._stop.is_set():
                return None
            return await fetcher.probe_size(task, mirror)

        sizes = await asyncio.gather(*[
            pool.run(probe, task, shard.mirrors[0]) for shard in shards for task in shard.tasks
        ])
        known = [size for size in sizes if size is not None]
        self.state.set_projected(sum(known))
        if len(known) < len(sizes) and not self._stop.is_set():
            self.state.log(f"Size unknown for {len(sizes) - len(known)} file(s)", "warning")
