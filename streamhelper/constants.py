"""
Defines application-wide constants, paths, and utility functions.

This module centralizes configuration for paths, URLs, and subprocess behavior,
adapting to whether the application is running from source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'streamhelper').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.streamhelper'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'
STATE_FILE: Path = USER_DATA_DIR / 'downloads.json'
DEFAULT_DOWNLOAD_DIR: Path = Path.home() / 'Downloads' / 'StreamHelper'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

# --- Download Binary ---
YT_DLP_URLS = {
    'win32': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp.exe',
    'linux': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp',
    'darwin': 'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp_macos'
}
REQUEST_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36'
}

# Sent to yt-dlp when the capture did not carry a usable user agent.
FALLBACK_USER_AGENT = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)

# --- Download Queue ---
STATE_SCHEMA_VERSION = '1'
OUTPUT_EXT_PLACEHOLDER = '%(ext)s'
KNOWN_OUTPUT_EXTENSIONS = ('mp4', 'mkv', 'webm', 'm4a', 'mp3', 'ts', 'flv', 'mov')
DEFAULT_OUTPUT_EXTENSION = KNOWN_OUTPUT_EXTENSIONS[0]
MAX_TITLE_LENGTH = 50
MAX_LOG_LINES = 500
RUN_SEPARATOR = '--- restarted ---'
CANCELLED_BY_USER = 'Download cancelled by user'
