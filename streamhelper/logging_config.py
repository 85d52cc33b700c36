"""
Configures the application's logging setup.

Every run writes to `latest.log`; the previous run's file is archived under a
timestamped name and only the newest archives are kept. The command line front
end also echoes records to stderr.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR

LATEST_LOG_NAME = 'latest.log'
MAX_ARCHIVED_LOGS = 10
FILE_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
CONSOLE_FORMAT = '%(asctime)s %(levelname)-8s %(message)s'


def archive_previous_log(log_dir: Path, keep: int = MAX_ARCHIVED_LOGS):
    """Renames the last run's log after its modification time and prunes old archives."""
    latest = log_dir / LATEST_LOG_NAME
    try:
        if latest.exists():
            stamp = datetime.fromtimestamp(latest.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
            latest.rename(latest.with_name(f"{stamp}.log"))
        archives = sorted(p for p in log_dir.glob('*.log') if p.name != LATEST_LOG_NAME)
        for old in archives[:-keep] if keep > 0 else archives:
            old.unlink()
    except OSError as e:
        # Logging is not configured yet.
        print(f"Error rotating log files in {log_dir}: {e}", file=sys.stderr)


def setup_logging(file_log_level_str: str = 'INFO', console: bool = True, log_dir: Optional[Path] = None):
    """
    Configures the root logger for file and console logging.

    Args:
        file_log_level_str: The minimum logging level for both handlers (e.g., 'INFO').
        console: Whether to also echo records to stderr.
        log_dir: Overrides the default log directory.
    """
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    archive_previous_log(log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Handlers do the filtering
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(log_dir / LATEST_LOG_NAME, encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    root_logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, '%H:%M:%S'))
        root_logger.addHandler(console_handler)

    # aiohttp is chatty at DEBUG while installing yt-dlp.
    logging.getLogger('aiohttp').setLevel(max(log_level, logging.INFO))
    logging.info("--- Logging initialized ---")
    logging.debug(f"Log level set to: {logging.getLevelName(log_level)}")
