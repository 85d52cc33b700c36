"""
Main entry point for the StreamHelper download queue.

This script initializes the configuration, sets up logging, wires the download
manager to its store and controller, queues any URLs given on the command line,
and runs until the queue drains or the process is asked to stop.
"""

import sys
import signal
import logging
import argparse
import asyncio
from types import TracebackType
from typing import List, Optional, Type

from pydantic import ValidationError

from streamhelper._version import __version__
from streamhelper.config import ConfigManager, Settings
from streamhelper.constants import CONFIG_FILE
from streamhelper.controller import AppController
from streamhelper.dependencies import DependencyManager
from streamhelper.downloads import DownloadManager
from streamhelper.exceptions import DependencyError, DownloadCancelledError
from streamhelper.logging_config import setup_logging
from streamhelper.store import JobStore

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamhelper", description="Download captured streams with yt-dlp.")
    parser.add_argument("urls", nargs="*", help="Stream URLs to queue.")
    parser.add_argument("--title", help="Display name used for the output file of the queued URLs.")
    parser.add_argument("--referer", default="", help="Page URL the stream was captured on.")
    parser.add_argument("--priority", type=int, default=0, help="Non-zero queues ahead of normal jobs.")
    parser.add_argument("-j", "--max-concurrent", type=int, help="Override max_concurrent_downloads.")
    parser.add_argument("-o", "--download-dir", help="Override the download directory.")
    parser.add_argument("--list", action="store_true", help="Print the saved queue and exit.")
    parser.add_argument("--install-yt-dlp", action="store_true", help="Download yt-dlp if it is not found.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def print_jobs(manager: DownloadManager):
    for job in manager.list_jobs():
        line = f"{job.job_id[:8]}  {job.status.value:<9} {job.progress:5.1f}%  {job.title}"
        if job.error:
            line += f"  ({job.error})"
        print(line)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    """Runs the queue until it is idle or a stop signal arrives."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_async_exception)

    deps = DependencyManager()
    yt_dlp_path, ffmpeg_path = await deps.initialize(settings.yt_dlp_path, settings.ffmpeg_path)
    if not yt_dlp_path and not args.list:
        if not args.install_yt_dlp:
            logger.error("yt-dlp was not found. Install it or run with --install-yt-dlp.")
            return 1
        try:
            yt_dlp_path = await deps.install_yt_dlp()
        except (DependencyError, DownloadCancelledError) as e:
            logger.error(f"Could not install yt-dlp: {e}")
            return 1
    if yt_dlp_path:
        logger.info(f"Using {await deps.get_version(yt_dlp_path)} at {yt_dlp_path}")

    settings = settings.model_copy(update={'yt_dlp_path': yt_dlp_path, 'ffmpeg_path': ffmpeg_path})
    manager = DownloadManager(settings, JobStore(settings.state_file))
    if args.list:
        manager.jobs = (await asyncio.to_thread(manager.store.load)).jobs
        print_jobs(manager)
        return 0

    controller = AppController(manager)
    await manager.initialize()
    controller.start_forwarder()

    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except (NotImplementedError, RuntimeError):
            pass # Not supported on Windows event loops

    for url in args.urls:
        result = controller.handle_capture({'url': url, 'pageUrl': args.referer, 'customName': args.title}, args.priority)
        if not result['success']:
            logger.error(result['error'])

    idle = asyncio.create_task(manager.wait_idle())
    stopped = asyncio.create_task(stop_requested.wait())
    await asyncio.wait({idle, stopped}, return_when=asyncio.FIRST_COMPLETED)
    for task in (idle, stopped):
        task.cancel()
    if stop_requested.is_set():
        logger.info("Stop requested. Saving queue...")

    await manager.shutdown()
    await controller.stop()
    print_jobs(manager)
    stats = manager.get_stats()
    return 1 if stats.failed else 0


def main(argv: Optional[List[str]] = None) -> int:
    args = make_parser().parse_args(argv)

    config_manager = ConfigManager(CONFIG_FILE)
    settings = config_manager.load()
    setup_logging(settings.log_level)
    try:
        settings = config_manager.with_overrides(
            settings, max_concurrent_downloads=args.max_concurrent, download_dir=args.download_dir
        )
    except ValidationError as e:
        logging.error(f"Invalid command-line option: {e}")
        return 2
    sys.excepthook = handle_exception

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
