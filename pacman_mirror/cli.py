"""Command line entry point."""

import argparse
import asyncio
import sys

from .config import parse_config
from .server import serve
from .state import SyncPhase
from .sync import MirrorSync

DEFAULT_CONFIG = "/etc/pacman-mirror/mirror.list"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Mirror a pacman repository tree from HTTP mirrors')
    parser.add_argument('config_file', nargs='?', default=DEFAULT_CONFIG,
                        help='Path to mirror.list config file')
    parser.add_argument('--serve', action='store_true',
                        help='Run the control server (websocket on /ws) instead of a single pass')
    parser.add_argument('--no-autostart', action='store_true',
                        help='With --serve, wait for a start command instead of syncing at boot')
    return parser


async def main(argv=None) -> int:
    """Main entry point for pacman-mirror.

    Parses command line arguments, loads the configuration and either runs
    one synchronization pass or serves the control channel.

    :returns: Exit status, 1 when the pass ended in the error phase
    :rtype: int
    """
    args = build_parser().parse_args(argv)
    config = parse_config(args.config_file)

    mirror = MirrorSync(config)
    await mirror.initialize()
    try:
        if args.serve:
            await serve(mirror, config.admin_host, config.admin_port, autostart=not args.no_autostart)
            return 0
        phase = await mirror.run()
        return 1 if phase is SyncPhase.ERROR else 0
    finally:
        await mirror.cleanup()


def entrypoint():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    entrypoint()
