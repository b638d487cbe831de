"""Base LLM provider interfaces and response schema."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

Message = dict[str, str]


@dataclass(frozen=True)
class LLMResponse:
    """One chat completion; ``usage`` uses OpenAI key names (``prompt_tokens``, ...)."""

    text: str
    model_id: str
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0.0
    raw_response: dict[str, object] = field(default_factory=dict)


def _empty_metrics() -> dict[str, float | int]:
    return {
        "calls": 0,
        "total_latency_ms": 0.0,
        "total_input_tokens": 0,
        "total_output_tokens": 0,
        "errors": 0,
    }


class BaseLLMProvider(ABC):
    """Abstract interface for chat-completion providers.

    ``complete`` may be called concurrently by sibling sub-queries, so
    implementations must not keep per-call state on the instance.
    """

    provider_id: str
    model_name: str

    def __init__(self, provider_id: str, model_name: str) -> None:
        self.provider_id = provider_id
        self.model_name = model_name
        self._metrics_lock = threading.Lock()
        self._metrics = _empty_metrics()

    @abstractmethod
    def complete(
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Return the model's reply to the transcript; raise ``ProviderError`` on failure."""

    @abstractmethod
    def get_provider_info(self) -> dict[str, object]:
        """Return metadata about the provider/model."""

    def _record_success(self, response: LLMResponse) -> None:
        with self._metrics_lock:
            self._metrics["calls"] += 1
            self._metrics["total_latency_ms"] += response.latency_ms
            self._metrics["total_input_tokens"] += response.usage.get("prompt_tokens", 0)
            self._metrics["total_output_tokens"] += response.usage.get("completion_tokens", 0)

    def _record_error(self) -> None:
        with self._metrics_lock:
            self._metrics["calls"] += 1
            self._metrics["errors"] += 1

    def get_metrics(self) -> dict[str, object]:
        """Get current metrics."""
        with self._metrics_lock:
            metrics: dict[str, object] = dict(self._metrics)
            calls = int(self._metrics["calls"])
            if calls > 0:
                metrics["avg_latency_ms"] = float(self._metrics["total_latency_ms"]) / calls
            else:
                metrics["avg_latency_ms"] = 0.0
        return metrics

    def usage_totals(self) -> dict[str, int]:
        with self._metrics_lock:
            return {
                "calls": int(self._metrics["calls"]),
                "input_tokens": int(self._metrics["total_input_tokens"]),
                "output_tokens": int(self._metrics["total_output_tokens"]),
                "errors": int(self._metrics["errors"]),
            }

    def reset_metrics(self) -> None:
        """Reset metrics."""
        with self._metrics_lock:
            self._metrics = _empty_metrics()
