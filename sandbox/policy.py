"""
Sandbox policy definitions: import allow-list, restricted builtins and the
RestrictedPython guard functions installed into every environment.
"""

from __future__ import annotations

import builtins
import collections
import operator
from collections.abc import Callable, Iterable, Sequence
from types import ModuleType
from typing import cast

from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safe_builtins,
)

BLOCKED_MODULES = [
    "os",
    "sys",
    "subprocess",
    "socket",
    "urllib",
    "requests",
    "http",
    "ctypes",
    "importlib",
    "io",
    "pathlib",
    "shutil",
    "signal",
    "threading",
    "multiprocessing",
    "asyncio",
    "time",
    "builtins",
    "gc",
    "inspect",
    "pickle",
    "marshal",
    "operator",
]

ALLOWED_MODULES = [
    "math",
    "re",
    "json",
    "random",
    "itertools",
    "functools",
    "collections",
    "statistics",
    "datetime",
    "heapq",
    "bisect",
    "textwrap",
    "unicodedata",
]

BLOCKED_BUILTINS = [
    "open",
    "exec",
    "eval",
    "compile",
    "input",
    "globals",
    "locals",
    "vars",
    "breakpoint",
    "memoryview",
    "help",
    "exit",
    "quit",
]

# Additions on top of RestrictedPython's safe_builtins.
_EXTRA_BUILTINS: dict[str, object] = {
    "list": list,
    "dict": dict,
    "set": set,
    "frozenset": frozenset,
    "min": min,
    "max": max,
    "sum": sum,
    "any": any,
    "all": all,
    "enumerate": enumerate,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "iter": iter,
    "next": next,
    "type": type,
    "format": format,
    "StopIteration": StopIteration,
    "__build_class__": builtins.__build_class__,
}

ImportFn = Callable[
    [str, dict[str, object] | None, dict[str, object] | None, Sequence[str], int],
    ModuleType,
]


def _normalize_modules(modules: Iterable[str] | None) -> set[str]:
    return {name for name in (modules or [])}


def build_import_guard(
    allowed_modules: Iterable[str] | None = None,
    blocked_modules: Iterable[str] | None = None,
) -> ImportFn:
    """
    Build a restricted __import__ hook that only allows allowlisted modules
    and explicitly blocks denied modules.
    """
    allowed = _normalize_modules(allowed_modules or ALLOWED_MODULES)
    blocked = _normalize_modules(blocked_modules or BLOCKED_MODULES)
    original_import = cast(ImportFn, builtins.__import__)

    def guarded_import(
        name: str,
        globals: dict[str, object] | None = None,
        locals: dict[str, object] | None = None,
        fromlist: Sequence[str] = (),
        level: int = 0,
    ) -> ModuleType:
        if level != 0:
            raise ImportError("Relative imports are blocked by sandbox policy")
        root = name.split(".")[0]
        if root in blocked or name in blocked:
            raise ImportError(f"Import of '{root}' blocked by sandbox policy")
        if root not in allowed:
            raise ImportError(f"Import of '{root}' is not allowlisted")
        return original_import(name, globals, locals, fromlist, level)

    return guarded_import


_MISSING = object()

_BLOCKED_STR_ATTRIBUTES = {"format", "format_map"}

_WRITABLE_TYPES = (dict, list, set, bytearray, collections.deque)


def build_getattr_guard(
    allowed_modules: Iterable[str] | None = None,
) -> Callable[..., object]:
    """
    Attribute access hook modelled on RestrictedPython's ``safer_getattr``:
    private names and ``str.format`` are refused, and a module outside the
    allow-list is never handed out through an attribute of an allowed one.
    Unlike ``safer_getattr``, a missing attribute raises instead of
    returning ``None``.
    """
    allowed = _normalize_modules(allowed_modules or ALLOWED_MODULES)

    def guarded_getattr(obj: object, name: str, default: object = _MISSING) -> object:
        if name in _BLOCKED_STR_ATTRIBUTES and _is_str_or_str_type(obj):
            raise NotImplementedError("Using the format*() methods of `str` is not safe")
        if name.startswith("_"):
            raise AttributeError(f'"{name}" is an invalid attribute name because it starts with "_"')
        if default is _MISSING:
            value = getattr(obj, name)
        else:
            value = getattr(obj, name, default)
        if isinstance(value, ModuleType) and value.__name__.split(".")[0] not in allowed:
            raise AttributeError(f"Access to module '{value.__name__}' blocked by sandbox policy")
        return value

    return guarded_getattr


def _is_str_or_str_type(obj: object) -> bool:
    # The unbound methods on the class reach the same field lookup as bound ones.
    return isinstance(obj, str) or (isinstance(obj, type) and issubclass(obj, str))


def build_write_guard() -> Callable[[object], object]:
    """Allow mutation of containers and sandbox-defined objects only."""

    def guarded_write(obj: object) -> object:
        if isinstance(obj, _WRITABLE_TYPES):
            return obj
        if _defined_in_sandbox(obj) or _defined_in_sandbox(type(obj)):
            return obj
        raise TypeError(f"Write access not allowed on {type(obj).__name__}")

    return guarded_write


def _defined_in_sandbox(obj: object) -> bool:
    module = getattr(obj, "__module__", None)
    return isinstance(module, str) and module.startswith("<cell")


_INPLACE_OPS: dict[str, Callable[[object, object], object]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "@=": operator.imatmul,
}


def inplace_var(op: str, target: object, value: object) -> object:
    func = _INPLACE_OPS.get(op)
    if func is None:
        raise SyntaxError(f"Unsupported in-place operator: {op}")
    return func(target, value)


def apply_call(func: Callable[..., object], *args: object, **kwargs: object) -> object:
    return func(*args, **kwargs)


def build_safe_builtins(
    extra: dict[str, object] | None = None,
    allowed_modules: Iterable[str] | None = None,
) -> dict[str, object]:
    """Build the restricted ``__builtins__`` mapping for one environment.

    Starts from RestrictedPython's ``safe_builtins`` and only ever adds the
    names listed here plus ``extra``; ``BLOCKED_BUILTINS`` are removed last.
    """
    restricted: dict[str, object] = dict(safe_builtins)
    restricted.update(_EXTRA_BUILTINS)
    getattr_guard = build_getattr_guard(allowed_modules)
    restricted["getattr"] = getattr_guard
    restricted["hasattr"] = _build_hasattr(getattr_guard)
    restricted["__import__"] = build_import_guard(allowed_modules)
    if extra:
        restricted.update(extra)
    for blocked in BLOCKED_BUILTINS:
        restricted.pop(blocked, None)
    return restricted


def _build_hasattr(getattr_guard: Callable[..., object]) -> Callable[[object, str], bool]:
    def guarded_hasattr(obj: object, name: str) -> bool:
        try:
            getattr_guard(obj, name)
        except AttributeError:
            return False
        return True

    return guarded_hasattr


def build_guards(
    print_factory: Callable[[object], object],
    allowed_modules: Iterable[str] | None = None,
) -> dict[str, object]:
    """Return the ``_name_`` hooks RestrictedPython-compiled code expects in globals."""
    return {
        "_getattr_": build_getattr_guard(allowed_modules),
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": build_write_guard(),
        "_inplacevar_": inplace_var,
        "_apply_": apply_call,
        "_print_": print_factory,
        "__metaclass__": type,
    }
