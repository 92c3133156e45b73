"""Shared memory bank for AI agents with signal-driven confidence."""

__version__ = "0.1.0"
