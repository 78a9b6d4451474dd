"""Recursive discovery of the files on a mirror."""

import asyncio
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from .listing import DirectoryLister, ListError, entry_url
from .pool import ConcurrencyPool


class DiscoveryError(Exception):
    """The root of the discovery mirror could not be listed."""


@dataclass(frozen=True, order=True)
class FileTask:
    """A file to mirror.

    :param path: Path relative to the mirror root, unique within a run
    :type path: str
    :param size: Size hint in bytes, if known
    :type size: Optional[int]
    """
    path: str
    size: Optional[int] = None

    def url(self, mirror: str) -> str:
        return entry_url(mirror, self.path)


class Crawler:
    """Expand a mirror's tree into the full list of files.

    Only the configured top-level folders are descended into; below them
    every subdirectory is followed. Sibling directories are listed
    concurrently, bounded by the listing pool.
    """

    def __init__(
        self,
        lister: DirectoryLister,
        pool: ConcurrencyPool,
        folders: Iterable[str],
        log: Optional[Callable[[str, str], None]] = None,
    ):
        self.lister = lister
        self.pool = pool
        self.folders = set(folders)
        self._log = log or (lambda message, level: None)

    async def crawl(self, mirror: str) -> List[FileTask]:
        """Discover all files below the configured folders of ``mirror``.

        Listing failures below the root only drop the affected subtree.

        :param mirror: Mirror base URL
        :type mirror: str
        :returns: File tasks sorted by path
        :rtype: List[FileTask]
        :raises DiscoveryError: If the mirror root cannot be listed
        """
        try:
            root = await self.pool.run(self.lister.list, mirror, "")
        except ListError as e:
            raise DiscoveryError(str(e)) from e

        found = {entry.path for entry in root if entry.is_dir}
        for name in sorted(self.folders - found):
            self._log(f"Folder {name} not found on {mirror}", "warning")

        selected = [entry.path for entry in root if entry.is_dir and entry.path in self.folders]
        results = await asyncio.gather(*[self._expand(mirror, path) for path in selected])

        files = set()
        for paths in results:
            files.update(paths)
        return [FileTask(path) for path in sorted(files)]

    async def _expand(self, mirror: str, prefix: str) -> List[str]:
        """Return the paths of all files below ``prefix``."""
        try:
            entries = await self.pool.run(self.lister.list, mirror, prefix)
        except ListError as e:
            self._log(str(e), "warning")
            return []

        files = [entry.path for entry in entries if not entry.is_dir]
        subdirs = [entry.path for entry in entries if entry.is_dir]
        if subdirs:
            for paths in await asyncio.gather(*[self._expand(mirror, sub) for sub in subdirs]):
                files.extend(paths)
        return files
