"""Error taxonomy shared by the environment, registry and orchestration loop."""

from __future__ import annotations

from enum import Enum


class RLMError(Exception):
    """Base class for every error raised by this package."""


class SetupError(RLMError):
    """Wiring failure detected before any model call is made."""


class NameConflict(SetupError):
    """A bound global collides with a built-in or an already installed name."""

    name: str

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        super().__init__(message or f"Name '{name}' conflicts with a built-in")


class BuiltinOverride(SetupError):
    """A registry function tried to replace an environment built-in."""

    name: str

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Registry function '{name}' would override a built-in")


class LoadError(SetupError):
    """A registry source violated the definition convention."""

    origin: str
    function: str | None
    reason: str

    def __init__(self, origin: str, reason: str, function: str | None = None) -> None:
        self.origin = origin
        self.function = function
        self.reason = reason
        where = f"{origin}:{function}" if function else origin
        super().__init__(f"{where}: {reason}")


class ContextLoadError(RLMError):
    """The context file could not be read or decoded."""

    path: str

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Failed to load context from {path}: {reason}")


class ProviderError(RLMError):
    """Transport or model failure reported by a provider."""


class UnresolvedFinalVar(RLMError):
    """FINAL_VAR referenced a name that is not bound in the environment."""

    name: str

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"FINAL_VAR references unbound variable '{name}'")


class MaxIterationsExceeded(RLMError):
    """The loop used every iteration without producing a final answer."""

    max_iterations: int

    def __init__(self, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        super().__init__(f"No final answer after {max_iterations} iterations")


class LoopCancelled(RLMError):
    """The loop was cancelled from outside or ran past its deadline."""


class SubQueryError(RLMError):
    """Raised inside a cell when a nested query cannot produce an answer."""


class CellErrorKind(str, Enum):
    SYNTAX_ERROR = "syntax_error"
    POLICY_VIOLATION = "policy_violation"
    IMPORT_BLOCKED = "import_blocked"
    RUNTIME_ERROR = "runtime_error"
    SUB_QUERY_FAILED = "sub_query_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class CellRuntimeError(RLMError):
    """Structured failure of one cell.

    Returned inside a ``CellResult``; ``run_cell`` never raises it. The
    ``render`` form is what the model sees in its next turn.
    """

    kind: CellErrorKind
    exc_type: str
    message: str
    traceback: str

    def __init__(
        self,
        kind: CellErrorKind,
        exc_type: str,
        message: str,
        traceback: str = "",
    ) -> None:
        self.kind = kind
        self.exc_type = exc_type
        self.message = message
        self.traceback = traceback
        super().__init__(f"{exc_type}: {message}")

    def render(self) -> str:
        lines = [f"[{self.kind.value}] {self.exc_type}: {self.message}"]
        if self.traceback:
            lines.append(self.traceback)
        return "\n".join(lines)
