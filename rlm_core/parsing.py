"""Extraction of ```repl cells and final-answer markers from model output."""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from typing import Literal

CELL_TAG = "repl"

_FENCE = "```"
_MARKER_RE = re.compile(r"^[ \t]*(?P<kind>FINAL_VAR|FINAL)\(", re.MULTILINE)


@dataclass(frozen=True)
class FinalMarker:
    kind: Literal["literal", "variable"]
    value: str


@dataclass
class ParsedResponse:
    blocks: list[str] = field(default_factory=list)
    final: FinalMarker | None = None
    ignored_blocks: int = 0
    notes: list[str] = field(default_factory=list)

    @property
    def has_action(self) -> bool:
        return bool(self.blocks) or self.final is not None


def _closing_paren(text: str, open_index: int, quote_aware: bool) -> int | None:
    depth = 0
    quote: str | None = None
    index = open_index
    while index < len(text):
        char = text[index]
        if quote is not None:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif quote_aware and char in {"'", '"'}:
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return index
        index += 1
    return None


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        try:
            literal = ast.literal_eval(value)
        except (SyntaxError, ValueError):
            return value
        if isinstance(literal, str):
            return literal
    return value


def _parse_marker(text: str, match: re.Match[str]) -> FinalMarker | None:
    open_index = match.end() - 1
    quote_aware = text[open_index + 1 :].lstrip()[:1] in {"'", '"'}
    close_index = _closing_paren(text, open_index, quote_aware)
    if close_index is None:
        return None
    content = text[open_index + 1 : close_index].strip()
    if match.group("kind") == "FINAL_VAR":
        name = _unquote(content).strip()
        if not name.isidentifier():
            return None
        return FinalMarker(kind="variable", value=name)
    return FinalMarker(kind="literal", value=_unquote(content))


def parse_response(text: str) -> ParsedResponse:
    """Split a response into executable cells and an optional final marker.

    Cells are fenced blocks tagged ``repl``. A marker counts only when it
    starts a line outside any fence; the first well-formed one wins and every
    cell after it is ignored. Malformed markers are reported in ``notes``.
    """
    parsed = ParsedResponse()
    lines = text.splitlines(keepends=True)
    offset = 0
    fence_tag: str | None = None
    fence_lines: list[str] = []
    for line in lines:
        line_start = offset
        offset += len(line)
        stripped = line.strip()
        if fence_tag is not None:
            if stripped == _FENCE:
                if fence_tag == CELL_TAG:
                    code = "".join(fence_lines)
                    if parsed.final is None:
                        parsed.blocks.append(code)
                    else:
                        parsed.ignored_blocks += 1
                fence_tag = None
                fence_lines = []
            else:
                fence_lines.append(line)
            continue
        if stripped.startswith(_FENCE):
            fence_tag = stripped[len(_FENCE) :].strip().lower()
            continue
        if parsed.final is not None:
            continue
        match = _MARKER_RE.match(text, line_start)
        if match is None:
            continue
        marker = _parse_marker(text, match)
        if marker is None:
            parsed.notes.append(f"Ignored malformed {match.group('kind')}(...) marker")
            continue
        parsed.final = marker
    if fence_tag == CELL_TAG:
        parsed.notes.append("Ignored an unterminated ```repl block")
    return parsed

