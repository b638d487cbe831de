"""
Persistent restricted-Python REPL state for one orchestration loop.

Cells are compiled with RestrictedPython and executed against a single
global namespace that survives between cells. The environment owns the
capture buffer, the fixed built-in set (``print``, ``rlm_query``,
``rlm_map``, ``llm_query`` and the size helpers) and any registry functions
installed before the first cell runs.
"""

from __future__ import annotations

import ast
import copy
import keyword
import logging
import sys
import time
import traceback
import uuid
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from types import CodeType, FrameType
from typing import Iterator, cast

from RestrictedPython import compile_restricted_exec

from registry.catalogue import FunctionDefinition, FunctionRegistry
from rlm_core.cancel import CancelToken
from rlm_core.errors import (
    BuiltinOverride,
    CellErrorKind,
    CellRuntimeError,
    NameConflict,
    SetupError,
    SubQueryError,
)
from rlm_core.schemas import is_builtin_name

from .output import OutputBuffer, OutputLimiter, PrintCollector
from . import tokens
from .policy import build_guards, build_safe_builtins

logger = logging.getLogger(__name__)

SubQueryFn = Callable[[str, object], str]
LLMQueryFn = Callable[[str], str]

# Removed so agent code cannot swallow the timeout and cancellation signals.
_UNCATCHABLE_BUILTINS = ("BaseException", "KeyboardInterrupt", "SystemExit", "GeneratorExit")

# Module name given to registry sources; their frames are traced like cell frames.
_REGISTRY_MODULE_PREFIX = "registry:"


class CellTimeout(BaseException):
    """Raised by the tracer when a cell exceeds its time budget."""


class CellCancelled(BaseException):
    """Raised by the tracer when the owning run is cancelled."""


@dataclass(frozen=True)
class CellResult:
    output: str
    error: CellRuntimeError | None = None
    truncated: bool = False
    elapsed_ms: float = 0.0

    @property
    def raised(self) -> bool:
        return self.error is not None

    def render(self) -> str:
        parts: list[str] = []
        if self.output:
            parts.append(self.output.rstrip("\n"))
        if self.error is not None:
            parts.append(self.error.render())
        if not parts:
            return "(no output)"
        return "\n".join(parts)


class _CellBudget:
    """Wall-clock allowance for one cell; paused while host calls run."""

    def __init__(self, timeout_seconds: float, cancel_token: CancelToken | None) -> None:
        self.timeout_seconds = timeout_seconds
        self.deadline = time.monotonic() + timeout_seconds
        self.cancel_token = cancel_token
        self._paused_depth = 0
        self._paused_at = 0.0

    def pause(self) -> None:
        if self._paused_depth == 0:
            self._paused_at = time.monotonic()
        self._paused_depth += 1

    def resume(self) -> None:
        self._paused_depth -= 1
        if self._paused_depth == 0:
            self.deadline += time.monotonic() - self._paused_at

    def check(self) -> None:
        if self.cancel_token is not None and self.cancel_token.cancelled:
            raise CellCancelled(self.cancel_token.reason or "cancelled")
        if self._paused_depth == 0 and time.monotonic() > self.deadline:
            raise CellTimeout(f"Cell exceeded {self.timeout_seconds:g}s time limit")


def _catches_everything(tree: ast.AST) -> bool:
    return any(isinstance(node, ast.ExceptHandler) and node.type is None for node in ast.walk(tree))


def _policy_error(errors: Sequence[str]) -> CellRuntimeError:
    message = "\n".join(errors)
    return CellRuntimeError(CellErrorKind.POLICY_VIOLATION, "PolicyViolation", message)


class Environment:
    """One sandboxed interpreter state, exclusively owned by one loop."""

    def __init__(
        self,
        *,
        sub_query: SubQueryFn | None = None,
        llm_query: LLMQueryFn | None = None,
        limiter: OutputLimiter | None = None,
        cell_timeout_seconds: float = 30.0,
        max_parallel_subqueries: int = 4,
        cancel_token: CancelToken | None = None,
        allowed_modules: Iterable[str] | None = None,
    ) -> None:
        self.env_id = uuid.uuid4().hex[:8]
        self.limiter = limiter or OutputLimiter()
        self.cell_timeout_seconds = cell_timeout_seconds
        self.max_parallel_subqueries = max_parallel_subqueries
        self.cancel_token = cancel_token
        self._sub_query = sub_query
        self._llm_query = llm_query
        self._allowed_modules = list(allowed_modules) if allowed_modules is not None else None
        self._buffer = OutputBuffer()
        self._collector = PrintCollector(self._buffer)
        self._cell_prefix = f"<cell-{self.env_id}"
        self._cell_count = 0
        self._sealed = False
        self._bound: set[str] = set()
        self._installed: dict[str, FunctionDefinition] = {}
        self._sources: dict[str, list[str]] = {}
        self._budget: _CellBudget | None = None
        self._builtins: dict[str, object] = {}
        self._globals: dict[str, object] = {}
        self.install_builtins()

    # -- setup -----------------------------------------------------------

    def install_builtins(self) -> None:
        """Build the fixed capability set once; later calls are no-ops."""
        if self._builtins:
            return
        environment_builtins: dict[str, object] = {
            "print": self._collector._call_print,
            "rlm_query": self._rlm_query,
            "rlm_map": self._rlm_map,
            "llm_query": self._llm_query_builtin,
            "char_len": self._char_len,
            "byte_len": self._byte_len,
            "char_trunc": _char_trunc,
            "token_len": self._token_len,
            "token_trunc": self._token_trunc,
            "show_vars": self._show_vars,
            "SubQueryError": SubQueryError,
        }
        self._builtins = build_safe_builtins(environment_builtins, self._allowed_modules)
        for name in _UNCATCHABLE_BUILTINS:
            self._builtins.pop(name, None)
        self._globals = {
            "__builtins__": self._builtins,
            "__name__": self._cell_prefix + ">",
            **build_guards(self._print_factory, self._allowed_modules),
        }

    def bind(self, name: str, value: object) -> None:
        """Install a global before any cell runs."""
        if self._sealed:
            raise SetupError(f"Cannot bind '{name}' after the first cell has run")
        if not name.isidentifier() or keyword.iskeyword(name) or name.startswith("_"):
            raise SetupError(f"'{name}' is not a valid public identifier")
        if name in self._builtins or is_builtin_name(name):
            raise NameConflict(name)
        if name in self._installed:
            raise NameConflict(name, f"Name '{name}' is already taken by a registry function")
        self._globals[name] = value
        self._bound.add(name)

    def install_registry(self, registry: FunctionRegistry) -> None:
        """Install every registry function as a callable global.

        Re-installing a definition that is already present is a no-op; a
        different definition under an installed name is a conflict.
        """
        pending: dict[str, FunctionDefinition] = {}
        for name, definition in registry.iter_functions().items():
            if name in self._builtins or is_builtin_name(name):
                raise BuiltinOverride(name)
            installed = self._installed.get(name)
            if installed is not None:
                if installed == definition:
                    continue
                raise NameConflict(name, f"Registry function '{name}' is already installed from {installed.origin}")
            if name in self._bound:
                raise NameConflict(name, f"Registry function '{name}' collides with a bound global")
            pending[name] = definition
        if not pending:
            return
        if self._sealed:
            raise SetupError("Registry functions must be installed before the first cell")

        namespaces: dict[tuple[str, str], dict[str, object]] = {}
        for name, definition in pending.items():
            key = (definition.origin, definition.source)
            namespace = namespaces.get(key)
            if namespace is None:
                namespace = self._load_definition_source(definition)
                namespaces[key] = namespace
            self._globals[name] = namespace[name]
            self._installed[name] = definition
        logger.debug(f"Environment {self.env_id} installed {len(pending)} registry function(s)")

    def _load_definition_source(self, definition: FunctionDefinition) -> dict[str, object]:
        namespace: dict[str, object] = {
            "__builtins__": self._builtins,
            "__name__": f"{_REGISTRY_MODULE_PREFIX}{definition.origin}",
        }
        try:
            code = compile(definition.source, definition.origin, "exec")
            exec(code, namespace)
        except Exception as exc:
            raise SetupError(f"Registry source {definition.origin} failed to load: {exc}") from exc
        return namespace

    # -- execution -------------------------------------------------------

    def run_cell(self, code: str) -> CellResult:
        """Execute one cell; agent errors are returned, never raised."""
        self._sealed = True
        self._buffer.clear()
        self._cell_count += 1
        filename = f"{self._cell_prefix}-{self._cell_count}>"
        start = time.perf_counter()

        error = self._precheck(code)
        if error is None:
            compiled = compile_restricted_exec(code, filename=filename)
            if compiled.errors:
                error = _policy_error(compiled.errors)
            else:
                self._sources[filename] = code.splitlines()
                error = self._execute(cast(CodeType, compiled.code), filename)

        elapsed_ms = (time.perf_counter() - start) * 1000
        output, truncated = self.limiter.apply(self._buffer.getvalue())
        if error is not None:
            logger.debug(f"Cell {filename} failed: {error.kind.value}: {error.message}")
        return CellResult(output=output, error=error, truncated=truncated, elapsed_ms=elapsed_ms)

    def _precheck(self, code: str) -> CellRuntimeError | None:
        try:
            tree = ast.parse(code)
        except SyntaxError as exc:
            return CellRuntimeError(
                CellErrorKind.SYNTAX_ERROR,
                exc.__class__.__name__,
                f"line {exc.lineno}: {exc.msg}",
            )
        if _catches_everything(tree):
            return CellRuntimeError(
                CellErrorKind.POLICY_VIOLATION,
                "PolicyViolation",
                "Bare 'except:' clauses are not allowed; catch Exception instead",
            )
        return None

    def _execute(self, code: CodeType, filename: str) -> CellRuntimeError | None:
        budget = _CellBudget(self.cell_timeout_seconds, self.cancel_token)
        self._budget = budget
        previous_trace = sys.gettrace()
        sys.settrace(self._make_tracer(budget))
        try:
            exec(code, self._globals)
        except CellTimeout as exc:
            return self._runtime_error(CellErrorKind.TIMEOUT, exc)
        except CellCancelled as exc:
            return self._runtime_error(CellErrorKind.CANCELLED, exc)
        except SubQueryError as exc:
            return self._runtime_error(CellErrorKind.SUB_QUERY_FAILED, exc)
        except ImportError as exc:
            return self._runtime_error(CellErrorKind.IMPORT_BLOCKED, exc)
        except Exception as exc:  # noqa: BLE001
            return self._runtime_error(CellErrorKind.RUNTIME_ERROR, exc)
        finally:
            sys.settrace(previous_trace)
            self._budget = None
        return None

    def _make_tracer(self, budget: _CellBudget) -> Callable[[FrameType, str, object], object]:
        prefix = self._cell_prefix

        def trace_lines(frame: FrameType, event: str, arg: object) -> object:
            if event == "line":
                budget.check()
            return trace_lines

        def trace_calls(frame: FrameType, event: str, arg: object) -> object:
            module = frame.f_globals.get("__name__")
            if frame.f_code.co_filename.startswith(prefix) or (
                isinstance(module, str) and module.startswith(_REGISTRY_MODULE_PREFIX)
            ):
                budget.check()
                return trace_lines
            return None

        return trace_calls

    def _runtime_error(self, kind: CellErrorKind, exc: BaseException) -> CellRuntimeError:
        return CellRuntimeError(
            kind=kind,
            exc_type=exc.__class__.__name__,
            message=str(exc),
            traceback=self._format_cell_traceback(exc),
        )

    def _format_cell_traceback(self, exc: BaseException) -> str:
        lines: list[str] = []
        for frame in traceback.extract_tb(exc.__traceback__):
            source = self._sources.get(frame.filename)
            if source is None:
                continue
            lineno = frame.lineno or 0
            text = source[lineno - 1].strip() if 0 < lineno <= len(source) else ""
            lines.append(f"  line {lineno}, in {frame.name}: {text}")
        if not lines:
            return ""
        return "Traceback (cell frames):\n" + "\n".join(lines)

    @contextmanager
    def _host_call(self) -> Iterator[None]:
        budget = self._budget
        if budget is not None:
            budget.pause()
        try:
            yield
        finally:
            if budget is not None:
                budget.resume()

    def _print_factory(self, _getattr: object = None) -> PrintCollector:
        return self._collector

    # -- state access ----------------------------------------------------

    def lookup(self, name: str) -> object:
        """Return the current value of a user-visible global; ``KeyError`` if unbound."""
        if name.startswith("_") or name not in self._globals:
            raise KeyError(name)
        return self._globals[name]

    def user_variables(self) -> dict[str, object]:
        return {
            name: value
            for name, value in self._globals.items()
            if not name.startswith("_") and name not in self._installed
        }

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def cells_executed(self) -> int:
        return self._cell_count

    @property
    def builtin_names(self) -> frozenset[str]:
        return frozenset(self._builtins)

    # -- built-ins -------------------------------------------------------

    def _rlm_query(self, query: str, sub_context: object) -> str:
        if not isinstance(query, str):
            raise TypeError("rlm_query() query must be a string")
        if self._sub_query is None:
            raise SubQueryError("rlm_query is not available in this environment")
        child_context = copy.deepcopy(sub_context)
        with self._host_call():
            return self._sub_query(query, child_context)

    def _rlm_map(self, query: str | Sequence[str], sub_contexts: Sequence[object]) -> list[str]:
        if isinstance(sub_contexts, (str, bytes)) or not isinstance(sub_contexts, Iterable):
            raise TypeError("rlm_map() sub_contexts must be a list of values")
        contexts = [copy.deepcopy(item) for item in sub_contexts]
        if isinstance(query, str):
            queries = [query] * len(contexts)
        else:
            queries = list(query)
            if len(queries) != len(contexts):
                raise ValueError("rlm_map() needs one query per sub-context")
            if not all(isinstance(item, str) for item in queries):
                raise TypeError("rlm_map() queries must be strings")
        sub_query = self._sub_query
        if sub_query is None:
            raise SubQueryError("rlm_map is not available in this environment")
        if not contexts:
            return []

        workers = min(self.max_parallel_subqueries, len(contexts))
        with self._host_call():
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"rlm-{self.env_id}") as pool:
                futures = [pool.submit(sub_query, q, c) for q, c in zip(queries, contexts)]
                answers: list[str] = []
                failures: list[str] = []
                for index, future in enumerate(futures):
                    try:
                        answers.append(future.result())
                    except SubQueryError as exc:
                        failures.append(f"[{index}] {exc}")
                        answers.append("")
        if failures:
            raise SubQueryError(f"{len(failures)} of {len(contexts)} sub-queries failed: " + "; ".join(failures))
        return answers

    def _llm_query_builtin(self, prompt: str) -> str:
        if not isinstance(prompt, str):
            raise TypeError("llm_query() prompt must be a string")
        if self._llm_query is None:
            raise SubQueryError("llm_query is not available in this environment")
        with self._host_call():
            return self._llm_query(prompt)

    def _named_value(self, name: str) -> object:
        if not isinstance(name, str):
            raise TypeError("pass the variable name as a string, e.g. char_len('context')")
        try:
            return self.lookup(name)
        except KeyError:
            raise NameError(f"name '{name}' is not defined") from None

    def _char_len(self, name: str) -> int:
        value = self._named_value(name)
        if isinstance(value, (str, bytes, bytearray)):
            return len(value)
        return len(str(value))

    def _byte_len(self, name: str) -> int:
        value = self._named_value(name)
        if isinstance(value, (bytes, bytearray)):
            return len(value)
        text = value if isinstance(value, str) else str(value)
        return len(text.encode("utf-8"))

    def _load_tokenizer(self) -> None:
        # Fetching the encoding may hit the network the first time.
        with self._host_call():
            tokens.get_encoding()

    def _token_len(self, name: str) -> int:
        value = self._named_value(name)
        if isinstance(value, (bytes, bytearray)):
            text = value.decode("utf-8", errors="replace")
        else:
            text = value if isinstance(value, str) else str(value)
        self._load_tokenizer()
        return tokens.count_tokens(text)

    def _token_trunc(self, text: object, limit: int) -> str:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 0:
            raise ValueError("token_trunc() limit must be a non-negative integer")
        value = text if isinstance(text, str) else str(text)
        self._load_tokenizer()
        kept, _total = tokens.truncate_tokens(value, limit)
        return kept

    def _show_vars(self) -> dict[str, str]:
        return {
            name: type(value).__name__
            for name, value in sorted(self.user_variables().items())
        }


def _char_trunc(text: object, limit: int) -> str:
    if not isinstance(limit, int) or limit < 0:
        raise ValueError("char_trunc() limit must be a non-negative integer")
    value = text if isinstance(text, str) else str(text)
    return value[:limit]
