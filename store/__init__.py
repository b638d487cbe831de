"""
Store Module

Transcript persistence layer.

This module provides:
- SQLite-backed storage for runs, loops, messages and cells
- Secret redaction of stored configuration
- Query interface for replaying a run
"""

__version__ = "0.1.0"
