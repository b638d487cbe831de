"""
Registry Module

Build-once catalogue of host-exposed helper functions for the REPL.

This module provides:
- Loading of helper definitions from ordered file/directory locations
- In-memory definitions for tests and programmatic use
- Eager validation (syntax, docstrings, locality, reserved names)
- Deterministic prompt rendering of the exposed surface
"""

__version__ = "0.1.0"

from .catalogue import FunctionDefinition, FunctionRegistry

__all__ = ["FunctionDefinition", "FunctionRegistry"]
