"""Validated, immutable catalogue of REPL helper functions.

Definition sources are plain Python modules. Every top-level function whose
name does not start with ``_`` is exposed and must carry a docstring; a
leading underscore keeps a helper local to its source. Later locations
override earlier ones, and any violation rejects the whole load.
"""

from __future__ import annotations

import ast
import logging
import textwrap
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from rlm_core.errors import LoadError
from rlm_core.schemas import is_reserved_name

logger = logging.getLogger(__name__)

_ALLOWED_TOP_LEVEL = (ast.Import, ast.ImportFrom, ast.Assign, ast.AnnAssign, ast.Pass)


@dataclass(frozen=True)
class FunctionDefinition:
    name: str
    source: str
    doc: str
    signature: str
    origin: str
    priority: int
    lineno: int = 1

    @property
    def usage(self) -> str:
        return f"{self.name}{self.signature}"


def _render_signature(node: ast.FunctionDef) -> str:
    signature = f"({ast.unparse(node.args)})"
    if node.returns is not None:
        signature += f" -> {ast.unparse(node.returns)}"
    return signature


def _is_docstring(node: ast.stmt) -> bool:
    return (
        isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Constant)
        and isinstance(node.value.value, str)
    )


def _parse_source(source: str, origin: str, priority: int) -> dict[str, FunctionDefinition]:
    """Validate one definition source and return its exposed functions."""
    try:
        tree = ast.parse(source, filename=origin)
    except SyntaxError as exc:
        raise LoadError(origin, f"syntax error at line {exc.lineno}: {exc.msg}") from exc

    seen: set[str] = set()
    exposed: dict[str, FunctionDefinition] = {}
    for node in tree.body:
        if isinstance(node, ast.AsyncFunctionDef):
            raise LoadError(origin, "async functions cannot be exposed", node.name)
        if isinstance(node, ast.FunctionDef):
            if node.name in seen:
                raise LoadError(origin, "defined more than once in the same source", node.name)
            seen.add(node.name)
            if node.name.startswith("_"):
                continue
            if is_reserved_name(node.name):
                raise LoadError(origin, "name is reserved by the environment", node.name)
            doc = ast.get_docstring(node)
            if not doc or not doc.strip():
                raise LoadError(
                    origin,
                    "exposed function has no docstring; document it or prefix it with '_'",
                    node.name,
                )
            exposed[node.name] = FunctionDefinition(
                name=node.name,
                source=source,
                doc=doc.strip(),
                signature=_render_signature(node),
                origin=origin,
                priority=priority,
                lineno=node.lineno,
            )
            continue
        if isinstance(node, ast.ClassDef):
            if node.name.startswith("_"):
                continue
            raise LoadError(origin, "classes cannot be exposed; prefix helpers with '_'", node.name)
        if isinstance(node, ast.ImportFrom) and node.level:
            raise LoadError(origin, f"relative import at line {node.lineno}")
        if isinstance(node, _ALLOWED_TOP_LEVEL) or _is_docstring(node):
            continue
        raise LoadError(origin, f"unsupported top-level statement at line {node.lineno}")
    return exposed


def _source_files(location: Path) -> list[Path]:
    if location.is_dir():
        return sorted(
            path for path in location.glob("*.py") if path.is_file() and not path.name.startswith("_")
        )
    return [location]


def _read_source(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise LoadError(str(path), f"cannot read source: {exc}") from exc


class FunctionRegistry:
    """Read-only mapping of exposed function name to definition."""

    def __init__(self, definitions: Mapping[str, FunctionDefinition] | None = None) -> None:
        checked: dict[str, FunctionDefinition] = {}
        for name, definition in (definitions or {}).items():
            if name != definition.name:
                raise LoadError(definition.origin, f"registered under mismatched key '{name}'", definition.name)
            if is_reserved_name(name):
                raise LoadError(definition.origin, "name is reserved by the environment", name)
            checked[name] = definition
        self._definitions = checked
        self._view = MappingProxyType(self._definitions)

    @classmethod
    def empty(cls) -> "FunctionRegistry":
        return cls()

    @classmethod
    def from_paths(cls, locations: Sequence[str | Path]) -> "FunctionRegistry":
        """Load definitions from files or directories in priority order.

        A name defined twice inside one location is ambiguous and fails the
        load; a name redefined by a later location overrides the earlier one.
        """
        merged: dict[str, FunctionDefinition] = {}
        for priority, raw_location in enumerate(locations):
            location = Path(raw_location)
            if not location.exists():
                raise LoadError(str(location), "location does not exist")
            found: dict[str, FunctionDefinition] = {}
            for path in _source_files(location):
                source = _read_source(path)
                for name, definition in _parse_source(source, str(path), priority).items():
                    if name in found:
                        raise LoadError(str(path), f"also defined in {found[name].origin}", name)
                    found[name] = definition
            for name, definition in found.items():
                previous = merged.get(name)
                if previous is not None:
                    logger.info(
                        f"Registry function '{name}' from {definition.origin} overrides {previous.origin}"
                    )
                merged[name] = definition
        logger.debug(f"Loaded {len(merged)} registry function(s) from {len(locations)} location(s)")
        return cls(merged)

    @classmethod
    def from_map(
        cls, entries: Mapping[str, str] | Iterable[tuple[str, str]]
    ) -> "FunctionRegistry":
        """Load in-memory definitions; a repeated name keeps the last source given."""
        items = entries.items() if isinstance(entries, Mapping) else entries
        merged: dict[str, FunctionDefinition] = {}
        for index, (name, source) in enumerate(items):
            origin = f"<map:{name}>"
            exposed = _parse_source(textwrap.dedent(source), origin, index)
            if name not in exposed:
                raise LoadError(origin, "source does not define a documented function with this name", name)
            extra = sorted(set(exposed) - {name})
            if extra:
                raise LoadError(origin, f"source exposes additional functions {extra}", name)
            merged[name] = exposed[name]
        return cls(merged)

    def iter_functions(self) -> Mapping[str, FunctionDefinition]:
        return self._view

    def names(self) -> list[str]:
        return sorted(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def system_prompt_addendum(self) -> str:
        if not self._definitions:
            return ""
        lines = ["Additional helper functions are available in the REPL:"]
        for name in sorted(self._definitions):
            definition = self._definitions[name]
            lines.append(f"- {definition.usage}")
            lines.append(textwrap.indent(definition.doc, "    "))
        return "\n".join(lines)
