"""Wires providers, registry, transcript and cancellation into one run."""

from __future__ import annotations

import logging
import signal
import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from types import FrameType

from tqdm import tqdm

from llm.base import BaseLLMProvider
from llm.providers import create_provider
from registry.catalogue import FunctionRegistry
from rlm_core.cancel import CancelToken
from rlm_core.loop import LoopEvent, RLMLoop
from rlm_core.schemas import RunOutcome
from store.transcripts import TranscriptStore

from .config import RunConfig, save_config

logger = logging.getLogger(__name__)

Echo = Callable[[str], None]


def _default_run_id() -> str:
    return f"rlm_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


class RunSession:
    """Coordinates all components for one top-level query."""

    def __init__(
        self,
        config: RunConfig,
        show_progress: bool = True,
        providers: dict[str, BaseLLMProvider] | None = None,
    ) -> None:
        self.config = config
        self.run_id: str = config.run_id or _default_run_id()
        self.show_progress = show_progress
        self.cancel_token = CancelToken.with_timeout(config.loop.run_timeout_seconds)
        self.interrupted = False
        self.transcript: TranscriptStore | None = None
        self._providers = providers
        self._pbar: tqdm | None = None

    @property
    def run_dir(self) -> Path:
        return Path(self.config.artifact_dir) / self.run_id

    def run(self, query: str, context: object = None) -> RunOutcome:
        """Run ``query`` over ``context`` to a final outcome.

        Raises:
            SetupError: If the registry cannot be loaded or installed
        """
        registry = self._initialize_registry()
        providers = self._providers or self._initialize_providers()
        root = providers[self.config.provider_config().provider_id]
        sub = (
            providers[self.config.sub_provider_id]
            if self.config.sub_provider_id is not None
            else None
        )
        self.transcript = self._initialize_transcript(query)

        loop = RLMLoop(
            root,
            self.config.loop,
            registry,
            sub_provider=sub,
            cancel_token=self.cancel_token,
            transcript=self.transcript,
            on_event=self._on_event if self.show_progress else None,
        )
        previous = self._setup_signal_handlers()
        if self.show_progress:
            self._pbar = tqdm(
                total=self.config.loop.max_iterations,
                desc="🔁 Iterations",
                unit="it",
                ncols=100,
            )
        try:
            outcome = loop.run(query, context)
        finally:
            if self._pbar is not None:
                self._pbar.close()
                self._pbar = None
            self._restore_signal_handlers(previous)

        if self.config.save_transcript:
            (self.run_dir / "outcome.json").write_text(outcome.to_json(), encoding="utf-8")
        for provider in providers.values():
            logger.info(f"Provider {provider.provider_id} metrics: {provider.get_metrics()}")
        logger.info(f"Run {self.run_id} finished with status {outcome.status}")
        return outcome

    def _initialize_registry(self) -> FunctionRegistry:
        if not self.config.registry_paths:
            return FunctionRegistry.empty()
        return FunctionRegistry.from_paths(self.config.registry_paths)

    def _initialize_providers(self) -> dict[str, BaseLLMProvider]:
        """Initialize LLM providers from config."""
        providers: dict[str, BaseLLMProvider] = {}
        for provider_config in self.config.providers:
            providers[provider_config.provider_id] = create_provider(provider_config)
        return providers

    def _initialize_transcript(self, query: str) -> TranscriptStore | None:
        if not self.config.save_transcript:
            return None
        save_config(self.config, self.run_dir / "config.yaml")
        return TranscriptStore(
            run_id=self.run_id,
            query=query,
            config=self.config.to_dict(),
            base_dir=self.config.artifact_dir,
        )

    def _setup_signal_handlers(self) -> dict[int, object]:
        """Setup graceful shutdown on Ctrl+C."""
        if threading.current_thread() is not threading.main_thread():
            return {}

        def signal_handler(signum: int, frame: FrameType | None) -> None:
            tqdm.write("\n⚠️  Interrupt received. Stopping the run at the next step...")
            self.interrupted = True
            self.cancel_token.cancel("interrupted by signal")

        previous: dict[int, object] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, signal_handler)
        return previous

    def _restore_signal_handlers(self, previous: dict[int, object]) -> None:
        for signum, handler in previous.items():
            # None means the handler was not installed from Python
            if handler is not None:
                signal.signal(signum, handler)  # type: ignore[arg-type]

    def _on_event(self, event: LoopEvent) -> None:
        indent = "  " * event.depth
        if event.kind == "iteration":
            if event.depth == 0 and self._pbar is not None:
                self._pbar.update(1)
            elif event.depth > 0:
                tqdm.write(f"{indent}↳ depth {event.depth} iteration {event.detail}")
        elif event.kind == "cell":
            tqdm.write(f"{indent}  {event.detail}")
        elif event.kind == "failed":
            tqdm.write(f"{indent}❌ {event.detail}")
        elif event.kind == "cancelled":
            tqdm.write(f"{indent}⚠️  cancelled: {event.detail}")
