"""
Defines the application's version string.

This is the single source of truth for the application's version number.
It is reported by `--version` and recorded in the persisted state file.
"""

__version__ = "0.4.0"
