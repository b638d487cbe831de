"""
RLM Core Module

Recursive orchestration loop for REPL-driven language-model agents.

This module provides:
- The iterative prompt/execute/feedback loop with a final-answer protocol
- Nested delegation of sub-questions at increasing depth
- Parsing of ```repl cells and FINAL / FINAL_VAR markers
- Typed run outcomes and the shared error taxonomy
"""

__version__ = "0.1.0"

from .errors import (
    BuiltinOverride,
    CellErrorKind,
    CellRuntimeError,
    LoadError,
    MaxIterationsExceeded,
    NameConflict,
    ProviderError,
    RLMError,
    SetupError,
    SubQueryError,
    UnresolvedFinalVar,
)
from .schemas import LLMProviderConfig, LoopConfig, RunOutcome

__all__ = [
    "BuiltinOverride",
    "CellErrorKind",
    "CellRuntimeError",
    "LLMProviderConfig",
    "LoadError",
    "LoopConfig",
    "MaxIterationsExceeded",
    "NameConflict",
    "ProviderError",
    "RLMError",
    "RunOutcome",
    "SetupError",
    "SubQueryError",
    "UnresolvedFinalVar",
]
