"""
Runner Module

Configuration and command-line entry points.

This module provides:
- YAML-based run configuration
- Provider, registry and transcript wiring for one run
- Graceful cancellation on Ctrl+C
- The ``rlm`` typer CLI
"""

__version__ = "0.1.0"
