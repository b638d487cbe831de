"""Recursive orchestration loop.

``RLMLoop.run`` drives one agent/environment dialogue to a final answer.
Nested ``rlm_query`` calls made by agent code start a child ``RLMLoop`` at
``depth + 1`` with its own ``Environment``; only the child's answer crosses
back into the parent cell.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from llm.base import LLMResponse, Message
from llm.prompts import PromptTemplate
from registry.catalogue import FunctionRegistry
from sandbox.environment import CellResult, Environment
from sandbox.output import OutputLimiter

from .cancel import CancelToken
from .errors import (
    CellErrorKind,
    LoopCancelled,
    MaxIterationsExceeded,
    ProviderError,
    SetupError,
    SubQueryError,
    UnresolvedFinalVar,
)
from .parsing import FinalMarker, ParsedResponse, parse_response
from .schemas import ErrorInfo, LoopConfig, RunOutcome

logger = logging.getLogger(__name__)


class ChatProvider(Protocol):
    provider_id: str

    def complete(
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...


class TranscriptSink(Protocol):
    def start_loop(self, loop_id: str, parent_id: str | None, depth: int, query: str) -> None:
        ...

    def record_message(self, loop_id: str, iteration: int, role: str, content: str) -> None:
        ...

    def record_cell(
        self, loop_id: str, iteration: int, index: int, code: str, result: CellResult
    ) -> None:
        ...

    def finish_loop(self, loop_id: str, outcome: RunOutcome) -> None:
        ...


class LoopState(str, Enum):
    INIT = "init"
    PROMPTING = "prompting"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING = "executing"
    TERMINATED = "terminated"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LoopEvent:
    kind: str
    loop_id: str
    depth: int
    iteration: int
    detail: str = ""


EventCallback = Callable[[LoopEvent], None]


class RLMLoop:
    """One orchestration loop; construct a new instance per run."""

    def __init__(
        self,
        provider: ChatProvider,
        config: LoopConfig | None = None,
        registry: FunctionRegistry | None = None,
        *,
        sub_provider: ChatProvider | None = None,
        depth: int = 0,
        cancel_token: CancelToken | None = None,
        transcript: TranscriptSink | None = None,
        on_event: EventCallback | None = None,
        prompt_template: PromptTemplate | None = None,
        parent_id: str | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or LoopConfig()
        self.registry = registry or FunctionRegistry.empty()
        self.sub_provider = sub_provider
        self.depth = depth
        self.cancel_token = cancel_token or CancelToken.with_timeout(self.config.run_timeout_seconds)
        self.transcript = transcript
        self.on_event = on_event
        self.prompt_template = prompt_template or PromptTemplate()
        self.parent_id = parent_id
        self.loop_id = uuid.uuid4().hex[:12]
        self.state = LoopState.INIT
        self.environment: Environment | None = None
        self.messages: list[Message] = []
        self._iteration = 0

    # -- public ----------------------------------------------------------

    def run(self, query: str, context: object = None) -> RunOutcome:
        """Run to completion and return the outcome.

        Setup failures (``SetupError``) are raised before any model call;
        every other terminal condition is returned as a ``RunOutcome``.
        """
        self.state = LoopState.INIT
        environment = self._build_environment(query, context)
        self.environment = environment
        self.messages = [
            {"role": "system", "content": self._system_prompt()},
            {
                "role": "user",
                "content": self.prompt_template.initial_user_message(query, context, self.depth),
            },
        ]
        if self.transcript is not None:
            self.transcript.start_loop(self.loop_id, self.parent_id, self.depth, query)
            for message in self.messages:
                self.transcript.record_message(self.loop_id, 0, message["role"], message["content"])
        logger.info(f"Loop {self.loop_id} started at depth {self.depth}")

        for iteration in range(1, self.config.max_iterations + 1):
            self._iteration = iteration
            if self.cancel_token.cancelled:
                return self._cancelled()
            self._emit("iteration", f"{iteration}/{self.config.max_iterations}")

            self.state = LoopState.PROMPTING
            try:
                self.state = LoopState.AWAITING_MODEL
                response = self.provider.complete(
                    self.messages,
                    temperature=self.config.temperature,
                    max_tokens=self.config.max_tokens,
                )
            except ProviderError as exc:
                return self._failed(ProviderError.__name__, str(exc))
            except Exception as exc:  # noqa: BLE001
                return self._failed(ProviderError.__name__, f"{exc.__class__.__name__}: {exc}")

            self._append("assistant", response.text)
            parsed = parse_response(response.text)
            self.state = LoopState.EXECUTING
            rendered = self._execute_cells(parsed, environment)
            if self.cancel_token.cancelled:
                return self._cancelled()

            if parsed.final is not None:
                if parsed.ignored_blocks:
                    logger.debug(
                        f"Loop {self.loop_id} ignored {parsed.ignored_blocks} block(s) after the final answer"
                    )
                try:
                    answer = self._resolve_final(parsed.final, environment)
                except UnresolvedFinalVar as exc:
                    return self._failed(UnresolvedFinalVar.__name__, str(exc))
                return self._completed(answer)

            self._append("user", self._feedback(parsed, rendered))

        error = MaxIterationsExceeded(self.config.max_iterations)
        return self._failed(MaxIterationsExceeded.__name__, str(error))

    # -- setup -----------------------------------------------------------

    def _build_environment(self, query: str, context: object) -> Environment:
        environment = Environment(
            sub_query=self._run_sub_query,
            llm_query=self._run_llm_query,
            limiter=OutputLimiter(
                self.config.output_max_chars,
                self.config.output_truncation,
                self.config.output_max_tokens,
            ),
            cell_timeout_seconds=self.config.cell_timeout_seconds,
            max_parallel_subqueries=self.config.max_parallel_subqueries,
            cancel_token=self.cancel_token,
        )
        environment.bind("context", context)
        environment.bind("query", query)
        environment.bind("depth", self.depth)
        environment.install_registry(self.registry)
        return environment

    def _system_prompt(self) -> str:
        return self.prompt_template.system_prompt(
            registry_addendum=self.registry.system_prompt_addendum(),
            max_output_chars=self.config.output_max_chars,
            max_output_tokens=self.config.output_max_tokens,
            max_depth=self.config.max_depth,
        )

    # -- iteration -------------------------------------------------------

    def _execute_cells(self, parsed: ParsedResponse, environment: Environment) -> list[tuple[int, str]]:
        rendered: list[tuple[int, str]] = []
        for index, code in enumerate(parsed.blocks, start=1):
            result = environment.run_cell(code)
            if self.transcript is not None:
                self.transcript.record_cell(self.loop_id, self._iteration, index, code, result)
            status = result.error.kind.value if result.error is not None else "ok"
            self._emit("cell", f"cell {index}: {status} ({result.elapsed_ms:.0f} ms)")
            rendered.append((index, result.render()))
            if result.error is not None and result.error.kind == CellErrorKind.CANCELLED:
                break
        return rendered

    def _feedback(self, parsed: ParsedResponse, rendered: list[tuple[int, str]]) -> str:
        parts: list[str] = []
        if parsed.has_action:
            parts.append(self.prompt_template.cell_feedback(rendered))
        else:
            parts.append(self.prompt_template.no_action_note())
        parts.extend(parsed.notes)
        return "\n\n".join(parts)

    def _resolve_final(self, marker: FinalMarker, environment: Environment) -> str:
        if marker.kind == "literal":
            return marker.value
        variables = environment.user_variables()
        if marker.value not in variables:
            raise UnresolvedFinalVar(marker.value)
        value = variables[marker.value]
        return value if isinstance(value, str) else str(value)

    def _append(self, role: str, content: str) -> None:
        self.messages.append({"role": role, "content": content})
        if self.transcript is not None:
            self.transcript.record_message(self.loop_id, self._iteration, role, content)

    # -- nested calls ----------------------------------------------------

    def _run_sub_query(self, query: str, sub_context: object) -> str:
        if self.depth >= self.config.max_depth:
            raise SubQueryError(f"Maximum recursion depth {self.config.max_depth} reached")
        child = RLMLoop(
            provider=self.provider,
            config=self.config,
            registry=self.registry,
            sub_provider=self.sub_provider,
            depth=self.depth + 1,
            cancel_token=self.cancel_token,
            transcript=self.transcript,
            on_event=self.on_event,
            prompt_template=self.prompt_template,
            parent_id=self.loop_id,
        )
        try:
            outcome = child.run(query, sub_context)
        except SetupError as exc:
            raise SubQueryError(f"Sub-query setup failed: {exc}") from exc
        if outcome.status != "completed":
            error = outcome.error or ErrorInfo(kind=outcome.status, message="")
            raise SubQueryError(f"Sub-query at depth {child.depth} {outcome.status}: {error.kind}: {error.message}")
        return outcome.answer or ""

    def _run_llm_query(self, prompt: str) -> str:
        provider = self.sub_provider or self.provider
        try:
            response = provider.complete(
                [{"role": "user", "content": prompt}],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except Exception as exc:  # noqa: BLE001
            raise SubQueryError(f"llm_query failed: {exc}") from exc
        return response.text

    # -- outcomes --------------------------------------------------------

    def _usage(self) -> dict[str, int]:
        usage_totals = getattr(self.provider, "usage_totals", None)
        if callable(usage_totals):
            totals = usage_totals()
            if isinstance(totals, dict):
                return {str(key): int(value) for key, value in totals.items()}
        return {}

    def _outcome(self, status: str, answer: str | None = None, error: ErrorInfo | None = None) -> RunOutcome:
        environment = self.environment
        outcome = RunOutcome.from_dict(
            {
                "status": status,
                "answer": answer,
                "error": error,
                "iterations": self._iteration,
                "depth": self.depth,
                "cells_executed": environment.cells_executed if environment is not None else 0,
                "usage": self._usage(),
            }
        )
        if self.transcript is not None:
            self.transcript.finish_loop(self.loop_id, outcome)
        return outcome

    def _completed(self, answer: str) -> RunOutcome:
        self.state = LoopState.TERMINATED
        logger.info(f"Loop {self.loop_id} at depth {self.depth} answered after {self._iteration} iteration(s)")
        self._emit("final", answer)
        return self._outcome("completed", answer=answer)

    def _failed(self, kind: str, message: str) -> RunOutcome:
        self.state = LoopState.FAILED
        logger.warning(f"Loop {self.loop_id} at depth {self.depth} failed: {kind}: {message}")
        self._emit("failed", f"{kind}: {message}")
        return self._outcome("failed", error=ErrorInfo(kind=kind, message=message))

    def _cancelled(self) -> RunOutcome:
        self.state = LoopState.CANCELLED
        reason = self.cancel_token.reason or "cancelled"
        logger.warning(f"Loop {self.loop_id} at depth {self.depth} cancelled: {reason}")
        self._emit("cancelled", reason)
        return self._outcome("cancelled", error=ErrorInfo(kind=LoopCancelled.__name__, message=reason))

    def _emit(self, kind: str, detail: str = "") -> None:
        if self.on_event is None:
            return
        self.on_event(LoopEvent(kind=kind, loop_id=self.loop_id, depth=self.depth, iteration=self._iteration, detail=detail))


def run_query(
    query: str,
    context: object,
    provider: ChatProvider,
    config: LoopConfig | None = None,
    registry: FunctionRegistry | None = None,
    **kwargs: object,
) -> RunOutcome:
    """Convenience wrapper: build a top-level loop and run it once."""
    loop = RLMLoop(provider, config, registry, **kwargs)  # type: ignore[arg-type]
    return loop.run(query, context)
