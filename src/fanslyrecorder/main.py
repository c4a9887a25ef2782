"""
Fansly live recorder - entry point.
Runs the monitoring service or edits the watch-list from the command line.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from .config import Config, create_example_config, default_config_path, load_config
from .errors import ApiError, WatchListError
from .fansly_api import FanslyAPI
from .locks import RecordingLocks
from .logger import get_logger, setup_logging
from .monitor import MonitoringService
from .watchlist import WatchList


class FanslyRecorderApp:
    """
    Service mode: monitor every watched creator until SIGINT/SIGTERM.
    """

    def __init__(self, config: Config):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        self.api = FanslyAPI(
            auth_token=config.account.auth_token,
            user_agent=config.account.user_agent
        )
        self.service = MonitoringService(config, self.api)
        self._stop_event = asyncio.Event()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def start(self) -> None:
        """Start the application and block until a shutdown signal."""
        self._logger.info("Starting Fansly live recorder...")

        await self.api.connect()
        await self.service.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

        try:
            await self._stop_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            await self.service.shutdown()
            await self.api.disconnect()
            self._logger.info("Goodbye")


async def toggle_creator(config: Config, username: str, creator_id: Optional[str] = None) -> bool:
    """
    Flip a creator in the watch-list file.

    A running service picks the change up on its next rescan.
    """
    if not creator_id:
        api = FanslyAPI(config.account.auth_token, config.account.user_agent)
        try:
            creator_id = await api.get_account_id(username)
        finally:
            await api.disconnect()

    watchlist = WatchList(config.state.watchlist_file)
    return await watchlist.toggle(creator_id, username)


async def list_creators(config: Config) -> List[str]:
    watchlist = WatchList(config.state.watchlist_file)
    entries = await watchlist.read_file()
    locks = RecordingLocks(config.state.locks_dir)

    lines = []
    for creator_id, name in sorted(entries.items(), key=lambda item: item[1].lower()):
        marker = "🔴 recording" if locks.is_held(creator_id) else ""
        lines.append(f"{name:24} {creator_id:24} {marker}".rstrip())
    return lines


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fansly-recorder",
        description="Monitor Fansly creators and record their livestreams."
    )
    parser.add_argument(
        "-c", "--config",
        default=default_config_path(),
        help="Path to config.yaml (default: %(default)s)"
    )

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the monitoring service (default)")

    toggle = sub.add_parser("toggle", help="Start or stop monitoring a creator")
    toggle.add_argument("username", help="Creator username")
    toggle.add_argument("--id", dest="creator_id", help="Creator account ID (skips the lookup)")

    sub.add_parser("list", help="List monitored creators")

    init = sub.add_parser("init-config", help="Write an example configuration file")
    init.add_argument("path", nargs="?", default="config.example.yaml")

    return parser


async def run_command(args: argparse.Namespace, config: Config) -> int:
    if args.command == "toggle":
        try:
            watching = await toggle_creator(config, args.username, args.creator_id)
        except (ApiError, WatchListError) as e:
            print(f"Error: {e}")
            return 1
        print(f"{args.username}: {'monitoring' if watching else 'not monitoring'}")
        return 0

    if args.command == "list":
        try:
            lines = await list_creators(config)
        except WatchListError as e:
            print(f"Error: {e}")
            return 1
        print("\n".join(lines) if lines else "No creators are being monitored")
        return 0

    app = FanslyRecorderApp(config)
    try:
        await app.start()
    except Exception as e:
        get_logger('app').error(f"Fatal error: {e}")
        raise
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.command == "init-config":
        create_example_config(args.path)
        print(f"Example configuration written to {args.path}")
        return 0

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        return 130


if __name__ == '__main__':
    sys.exit(main())
