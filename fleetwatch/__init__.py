"""Health monitoring for a fleet of client websites."""

__version__ = "0.1.0"
