"""
Sandbox Module

Persistent, restricted Python REPL for model-written code.

This module provides:
- A per-loop namespace that survives across cells
- RestrictedPython compilation with guarded attribute, item and write access
- Import allowlisting
- Per-cell timeouts and cooperative cancellation
- Captured print output, truncated by characters or model tokens (tiktoken)

WARNING: This sandbox is NOT a security boundary against a determined
attacker. It provides best-effort in-process isolation; run untrusted
workloads inside an operating-system level sandbox as well.
"""

__version__ = "0.1.0"
