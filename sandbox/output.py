"""Capture buffer and deterministic truncation of cell output."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Literal

from . import tokens

TruncationPolicy = Literal["head", "tail", "head_tail"]


def truncation_marker(omitted: int, total: int, unit: str = "chars") -> str:
    return f"\n[... truncated {omitted} of {total} {unit} ...]\n"


@dataclass(frozen=True)
class OutputLimiter:
    """Bound captured output before it reaches the model.

    ``head`` keeps the first ``max_chars`` characters, ``tail`` the last
    ``max_chars``, and ``head_tail`` splits the budget evenly between the
    beginning and the end (the extra character of an odd budget goes to the
    head). The marker is added on top of the budget and always states how
    many characters were dropped, so identical output is always truncated
    identically.

    When ``max_tokens`` is set the budget is counted in ``p50k_base`` tokens
    instead: the first ``max_tokens`` tokens are kept, followed by a marker
    giving the dropped token count, and ``max_chars`` / ``policy`` are unused.
    """

    max_chars: int = 2000
    policy: TruncationPolicy = "head_tail"
    max_tokens: int | None = None

    def apply(self, text: str) -> tuple[str, bool]:
        if self.max_tokens is not None:
            return self._apply_tokens(text, self.max_tokens)
        total = len(text)
        if total <= self.max_chars:
            return text, False
        omitted = total - self.max_chars
        marker = truncation_marker(omitted, total)
        if self.policy == "head":
            return text[: self.max_chars] + marker.rstrip("\n"), True
        if self.policy == "tail":
            return marker.lstrip("\n") + text[total - self.max_chars :], True
        head_chars = (self.max_chars + 1) // 2
        tail_chars = self.max_chars - head_chars
        tail = text[total - tail_chars :] if tail_chars else ""
        return text[:head_chars] + marker + tail, True

    def _apply_tokens(self, text: str, max_tokens: int) -> tuple[str, bool]:
        if not text:
            return text, False
        kept, total = tokens.truncate_tokens(text, max_tokens)
        if total <= max_tokens:
            return text, False
        marker = truncation_marker(total - max_tokens, total, "tokens")
        return kept + marker.rstrip("\n"), True


class OutputBuffer:
    """Ordered capture of everything printed during one cell."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        with self._lock:
            self._parts.append(text)

    def clear(self) -> None:
        with self._lock:
            self._parts = []

    def getvalue(self) -> str:
        with self._lock:
            return "".join(self._parts)


class PrintCollector:
    """Target of RestrictedPython's ``print`` rewrite.

    Compiled cells call ``_print_(_getattr_)`` once per scope and route every
    ``print(...)`` to ``_call_print``.
    """

    def __init__(self, buffer: OutputBuffer) -> None:
        self._buffer = buffer

    def _call_print(
        self,
        *objects: object,
        sep: str | None = " ",
        end: str | None = "\n",
        file: object = None,
        flush: bool = False,
    ) -> None:
        separator = " " if sep is None else sep
        terminator = "\n" if end is None else end
        self._buffer.write(separator.join(str(item) for item in objects) + terminator)

    def __call__(self) -> str:
        return self._buffer.getvalue()

    def write(self, text: str) -> None:
        self._buffer.write(text)
