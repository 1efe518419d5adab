"""Resilient command execution for the bd ticket store."""

__version__ = "0.1.0"
