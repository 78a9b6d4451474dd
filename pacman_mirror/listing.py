"""Directory index listing.

Mirrors expose their tree as HTML index pages (Apache/nginx autoindex
and similar). Every anchor on such a page is a child entry: a trailing
``/`` marks a subdirectory, anything else is a file.
"""

import asyncio
from dataclasses import dataclass
from typing import List
from urllib.parse import quote, unquote, urlparse

import aiohttp
from bs4 import BeautifulSoup


class ListError(Exception):
    """A directory listing could not be fetched."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to list {url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass(frozen=True)
class ListingEntry:
    """One child entry found in an index page."""
    name: str
    is_dir: bool


@dataclass(frozen=True)
class RemoteEntry:
    """A child entry located on a specific mirror.

    :param mirror: Base URL of the mirror the entry was listed on
    :type mirror: str
    :param path: Path relative to the mirror root, without trailing slash
    :type path: str
    :param is_dir: Whether the entry is a subdirectory
    :type is_dir: bool
    """
    mirror: str
    path: str
    is_dir: bool

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


def parse_listing(markup: str) -> List[ListingEntry]:
    """Extract child entries from an HTML index page.

    Query links (column sorting), absolute links, fragments, links to
    other hosts and the parent directory link are ignored. Duplicate
    links are reported once, in order of first appearance.

    :param markup: Raw HTML of the index page
    :type markup: str
    :returns: Entries in document order
    :rtype: List[ListingEntry]
    """
    soup = BeautifulSoup(markup, "html.parser")
    entries = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href[0] in "?/#":
            continue
        parsed = urlparse(href)
        if parsed.scheme or parsed.netloc or parsed.query:
            continue

        is_dir = parsed.path.endswith("/")
        name = unquote(parsed.path.rstrip("/"))
        if not name or name in (".", "..") or "/" in name:
            continue
        entries.setdefault(name, ListingEntry(name, is_dir))
    return list(entries.values())


def entry_url(mirror: str, path: str, is_dir: bool = False) -> str:
    """Build the URL of ``path`` on ``mirror``."""
    url = f"{mirror.rstrip('/')}/{quote(path)}" if path else f"{mirror.rstrip('/')}"
    return url + "/" if is_dir else url


class DirectoryLister:
    """Fetch index pages and turn them into :class:`RemoteEntry` objects."""

    def __init__(self, session: aiohttp.ClientSession, timeout: float = 7.0):
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def list(self, mirror: str, prefix: str = "") -> List[RemoteEntry]:
        """List the directory ``prefix`` on ``mirror``.

        :param mirror: Mirror base URL
        :type mirror: str
        :param prefix: Directory path relative to the mirror root, "" for root
        :type prefix: str
        :returns: Child entries with paths relative to the mirror root
        :rtype: List[RemoteEntry]
        :raises ListError: On timeout, transport error or non-2xx status
        """
        url = entry_url(mirror, prefix, is_dir=True)
        try:
            async with self.session.get(url, timeout=self.timeout) as response:
                if not 200 <= response.status < 300:
                    raise ListError(url, f"HTTP {response.status}")
                markup = await response.text(errors="replace")
        except asyncio.TimeoutError:
            raise ListError(url, "timed out") from None
        except aiohttp.ClientError as e:
            raise ListError(url, str(e) or type(e).__name__) from e

        base = f"{prefix}/" if prefix else ""
        return [
            RemoteEntry(mirror, base + entry.name, entry.is_dir)
            for entry in parse_listing(markup)
        ]
