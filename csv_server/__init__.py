"""Serve aggregated reports over investment CSV exports."""

__version__ = "1.0.0"
