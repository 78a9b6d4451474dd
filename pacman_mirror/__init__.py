"""pacman-mirror - async mirroring of pacman repository trees.

Crawls the directory index of the first configured mirror, then downloads
every missing file, failing over between mirrors (or spreading the work
across them), with optional bandwidth limiting and a live control channel.
"""

from .config import Config, parse_config
from .crawler import Crawler, DiscoveryError, FileTask
from .fetcher import DownloadError, FileFetcher
from .listing import DirectoryLister, ListError, RemoteEntry, parse_listing
from .pool import ConcurrencyPool
from .state import SyncPhase, SyncState
from .sync import MirrorSync, Shard, partition
from .throttle import BandwidthThrottle, parse_rate

__version__ = "1.0.0"

__all__ = [
    "BandwidthThrottle",
    "ConcurrencyPool",
    "Config",
    "Crawler",
    "DirectoryLister",
    "DiscoveryError",
    "DownloadError",
    "FileFetcher",
    "FileTask",
    "ListError",
    "MirrorSync",
    "RemoteEntry",
    "Shard",
    "SyncPhase",
    "SyncState",
    "parse_config",
    "parse_listing",
    "parse_rate",
    "partition",
]
