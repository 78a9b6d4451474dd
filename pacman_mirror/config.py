"""Configuration for pacman-mirror.

The configuration file follows the ``mirror.list`` format known from
apt-mirror: ``set`` directives assign settings, every other directive
adds something to mirror. A minimal file looks like::

    set base_path /srv/pacman
    set limit_rate 20m
    set multithreading on

    mirror https://mirror.rackspace.com/archlinux
    mirror https://geo.mirror.pkgbuild.com

    folder core
    folder extra
"""

import os
import re
from dataclasses import dataclass, field, fields
from typing import List

from .throttle import parse_rate

DEFAULT_MIRRORS = ["https://mirror.rackspace.com/archlinux"]
DEFAULT_FOLDERS = ["core", "extra", "community"]


@dataclass
class Config:
    """Configuration settings for pacman-mirror.

    All settings can be changed in the mirror.list file with the ``set``
    directive. Variable substitution is supported using ``$variable_name``
    syntax, e.g. ``$base_path`` is replaced with the value of ``base_path``
    once the whole file has been read.

    :param base_path: Base directory for all mirror operations
    :type base_path: str
    :param mirror_path: Directory where mirrored files are stored
    :type mirror_path: str
    :param var_path: Directory for the lock file and other run data
    :type var_path: str
    :param arch: Target architecture, available as ``$arch`` in mirror URLs
    :type arch: str
    :param mirrors: Ordered mirror base URLs, the first one is crawled
    :type mirrors: List[str]
    :param folders: Top-level folders to mirror
    :type folders: List[str]
    :param limit_rate: Global download rate limit (e.g. "20m"), "0" disables
    :type limit_rate: str
    :param multithreading: Run one worker per mirror instead of one worker
    :type multithreading: bool
    :param download_pause: Seconds each worker waits between two files
    :type download_pause: float
    :param list_timeout: Timeout for one directory listing in seconds
    :type list_timeout: float
    :param file_timeout: Connect and read timeout for file transfers
    :type file_timeout: float
    :param crawl_concurrency: Maximum number of simultaneous listing requests
    :type crawl_concurrency: int
    :param size_probe: Send a HEAD request per missing file to project the
        amount of data still to download
    :type size_probe: bool
    """
    base_path: str = "/var/spool/pacman-mirror"
    mirror_path: str = "$base_path/mirror"
    var_path: str = "$base_path/var"
    arch: str = "x86_64"
    mirrors: List[str] = field(default_factory=lambda: list(DEFAULT_MIRRORS))
    folders: List[str] = field(default_factory=lambda: list(DEFAULT_FOLDERS))
    limit_rate: str = "0"
    multithreading: bool = False
    download_pause: float = 1.0
    list_timeout: float = 7.0
    file_timeout: float = 30.0
    crawl_concurrency: int = 10
    size_probe: bool = False
    admin_host: str = "0.0.0.0"
    admin_port: int = 3000

    def resolve(self):
        """Resolve variable substitutions and normalize mirror URLs.

        Must be called after all settings are known, the parser does it at
        the end of the file.

        :raises ValueError: If no mirror or no folder is configured
        """
        for key, value in vars(self).items():
            if isinstance(value, str) and "$" in value:
                setattr(self, key, self._resolve_vars(value))
        self.mirrors = [self._resolve_vars(m).rstrip("/") for m in self.mirrors]

        if not self.mirrors:
            raise ValueError("At least one mirror must be configured")
        if not self.folders:
            raise ValueError("At least one folder must be configured")
        return self

    def _resolve_vars(self, value: str) -> str:
        """Expand ``$base_path``, ``$mirror_path``, ``$var_path`` and ``$arch``.

        Paths may refer to each other, so expansion repeats until no
        variable is left, at most 16 rounds for self-referencing values.
        """
        for _ in range(16):
            if "$" not in value:
                break
            for name in ("base_path", "mirror_path", "var_path", "arch"):
                value = value.replace(f"${name}", getattr(self, name))
        return value

    @property
    def rate_limit(self) -> int:
        """Global rate limit in bytes per second, 0 when unlimited."""
        return parse_rate(self.limit_rate)


def parse_config(config_file: str) -> Config:
    """Parse a mirror.list configuration file.

    Reads the file line by line, extracting:
    - Configuration settings (``set`` directives)
    - Mirror base URLs (``mirror`` lines, in priority order)
    - Top-level folders to mirror (``folder`` lines)

    The first ``mirror`` or ``folder`` line replaces the built-in default
    list, later ones append to it. Unknown lines only produce a warning.

    :param config_file: Path to the configuration file
    :type config_file: str
    :returns: Resolved configuration
    :rtype: Config
    :raises FileNotFoundError: If config file doesn't exist
    :raises ValueError: If a value cannot be converted to its setting's type
    """
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Config file not found: {config_file}")

    config = Config()
    mirrors: List[str] = []
    folders: List[str] = []

    with open(config_file, 'r') as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            match = re.match(r'set\s+(\S+)\s+(.+)', line)
            if match:
                key, value = match.groups()
                _set_config(config, key, value.strip('"\''))
                continue

            match = re.match(r'^(mirror|folder)\s+(.+)$', line)
            if match:
                kind, values = match.groups()
                target = mirrors if kind == "mirror" else folders
                target.extend(values.split())
                continue

            print(f"Warning: Unrecognized line {line_num}: {line}")

    if mirrors:
        config.mirrors = mirrors
    if folders:
        config.folders = [name.strip("/") for name in folders]
    return config.resolve()


def _set_config(config: Config, key: str, value: str):
    """Set configuration value.

    Converts the value to the type of the setting's default. Booleans
    accept 1/yes/on/true and 0/no/off/false.

    :param config: Configuration to update
    :type config: Config
    :param key: Configuration key name
    :type key: str
    :param value: Configuration value (will be converted to appropriate type)
    :type value: str
    :raises ValueError: If the value does not fit the setting's type
    """
    settable = {f.name: f for f in fields(config) if f.name not in ("mirrors", "folders")}
    if key not in settable:
        print(f"Warning: Unknown config key: {key}")
        return

    current = getattr(config, key)
    if isinstance(current, bool):
        if value.lower() in ('1', 'yes', 'on', 'true'):
            converted = True
        elif value.lower() in ('0', 'no', 'off', 'false'):
            converted = False
        else:
            raise ValueError(f"Invalid boolean for {key}: {value}")
    elif isinstance(current, int):
        converted = int(value)
    elif isinstance(current, float):
        converted = float(value)
    else:
        converted = value

    if key == "limit_rate":
        parse_rate(value)
    setattr(config, key, converted)
