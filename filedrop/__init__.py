"""File upload service with a consistent metadata index and live notifications."""

__version__ = "0.1.0"
