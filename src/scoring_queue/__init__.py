"""Persistent job queue and batch scoring engine over SQLite."""

__version__ = "0.1.0"
