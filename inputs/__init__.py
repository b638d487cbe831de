"""
Inputs Module

Loading of the context value bound into the REPL.

This module provides:
- Plain-text and JSON context files
- Text extraction from PDF documents
"""

__version__ = "0.1.0"

from .loader import load_context

__all__ = ["load_context"]
