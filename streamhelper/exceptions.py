"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""

class StreamValidationError(ValueError):
    """Raised when captured stream data is malformed and no job can be created."""
    pass

class PersistenceError(Exception):
    """Custom exception for failures writing the download state file."""
    pass

class DependencyError(Exception):
    """Custom exception for failures locating or installing yt-dlp."""
    pass

class DownloadCancelledError(Exception):
    """Custom exception for cancelled dependency downloads."""
    pass
