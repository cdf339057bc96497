"""Crash-tolerant, multi-instance task queue worker."""

__version__ = "0.1.0"
