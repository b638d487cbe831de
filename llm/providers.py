"""LLM provider implementations."""

from __future__ import annotations

import importlib
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Protocol, cast

from rlm_core.errors import ProviderError
from rlm_core.schemas import LLMProviderConfig

from .base import BaseLLMProvider, LLMResponse, Message
from .retry import RetryPolicy, describe_failure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
    "deepseek": "https://api.deepseek.com",
}

API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "openrouter": ("OPENROUTER_API_KEY",),
    "ollama": (),
    "deepseek": ("DEEPSEEK_API_KEY", "OPENAI_API_KEY"),
}


class _ChatCompletions(Protocol):
    def create(self, **kwargs: object) -> object: ...


class _Chat(Protocol):
    completions: _ChatCompletions


class _OpenAIClient(Protocol):
    chat: _Chat


def _load_openai_client(
    api_key: str | None,
    base_url: str | None,
    timeout_seconds: int,
) -> _OpenAIClient:
    try:
        module = importlib.import_module("openai")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency at runtime
        raise ImportError("openai is required to use OpenAIProvider") from exc
    openai_client = getattr(module, "OpenAI", None)
    if openai_client is None:
        raise ImportError("openai.OpenAI client is unavailable")
    return cast(
        _OpenAIClient,
        openai_client(api_key=api_key, base_url=base_url, timeout=timeout_seconds, max_retries=0),
    )


def resolve_api_key(provider_type: str, api_key: str | None = None) -> str | None:
    if api_key:
        return api_key
    for env_var in API_KEY_ENV_VARS.get(provider_type, ()):
        value = os.getenv(env_var)
        if value:
            return value
    if provider_type == "ollama":
        # Ollama ignores the key but the client requires one.
        return "ollama"
    return None


def _extract_usage(raw_usage: object) -> dict[str, int]:
    if raw_usage is None:
        return {}
    model_dump = getattr(raw_usage, "model_dump", None)
    if callable(model_dump):
        raw_usage = model_dump()
    if isinstance(raw_usage, Mapping):
        typed_usage = cast(Mapping[str, object], raw_usage)
        usage: dict[str, int] = {}
        for key, value in typed_usage.items():
            if isinstance(value, bool):
                usage[key] = int(value)
            elif isinstance(value, (int, float)):
                usage[key] = int(value)
        return usage
    return {}


def _response_to_dict(response: object) -> dict[str, object]:
    if response is None:
        return {}
    model_dump = getattr(response, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, Mapping):
            return dict(cast(Mapping[str, object], dumped))
    if isinstance(response, Mapping):
        return dict(cast(Mapping[str, object], response))
    return {"repr": repr(response)}


def _extract_text(response: object) -> str:
    if response is None:
        return ""
    choices = cast(Sequence[object] | None, getattr(response, "choices", None))
    if not choices:
        return ""
    choice = choices[0]
    message = cast(object, getattr(choice, "message", None))
    content = cast(object | None, getattr(message, "content", None)) if message is not None else None
    if content is not None:
        return str(content)
    text_value = cast(object | None, getattr(choice, "text", None))
    if text_value is not None:
        return str(text_value)
    return ""


class OpenAIProvider(BaseLLMProvider):
    """OpenAI-compatible chat provider (OpenAI, OpenRouter, Ollama, DeepSeek)."""

    provider_type: str
    _client: _OpenAIClient
    _base_url: str | None
    _timeout_seconds: int
    _retry_policy: RetryPolicy | None

    def __init__(
        self,
        provider_id: str,
        model_name: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: int = 120,
        retry_policy: RetryPolicy | None = None,
        provider_type: str = "openai",
    ) -> None:
        super().__init__(provider_id=provider_id, model_name=model_name)
        self.provider_type = provider_type
        resolved_base_url = base_url or DEFAULT_BASE_URLS.get(provider_type)
        api_key_value = resolve_api_key(provider_type, api_key)
        self._client = _load_openai_client(api_key_value, resolved_base_url, timeout_seconds)
        self._base_url = resolved_base_url
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy

    def complete(  # pyright: ignore[reportImplicitOverride]
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        request: dict[str, object] = {
            "model": self.model_name,
            "messages": [dict(message) for message in messages],
        }
        if temperature is not None:
            request["temperature"] = temperature
        if max_tokens is not None:
            request["max_tokens"] = max_tokens

        def _call() -> object:
            return self._client.chat.completions.create(**request)

        start = time.perf_counter()
        try:
            if self._retry_policy is None:
                response = _call()
            else:
                response = self._retry_policy.execute(_call)
        except Exception as exc:  # noqa: BLE001
            self._record_error()
            logger.error(f"Provider {self.provider_id} failed: {describe_failure(exc)}")
            raise ProviderError(describe_failure(exc)) from exc
        latency_ms = (time.perf_counter() - start) * 1000

        result = LLMResponse(
            text=_extract_text(response),
            usage=_extract_usage(getattr(response, "usage", None)),
            latency_ms=latency_ms,
            raw_response=_response_to_dict(response),
            model_id=str(getattr(response, "model", None) or self.model_name),
        )
        self._record_success(result)
        return result

    def get_provider_info(self) -> dict[str, object]:  # pyright: ignore[reportImplicitOverride]
        return {
            "provider_id": self.provider_id,
            "provider_type": self.provider_type,
            "model_name": self.model_name,
            "base_url": self._base_url,
            "timeout_seconds": self._timeout_seconds,
        }


ScriptItem = str | BaseException
Router = Callable[[Sequence[Message]], str]


class ScriptedProvider(BaseLLMProvider):
    """Deterministic provider replaying canned replies, for offline runs and tests.

    Either pops replies from a fixed script in call order, or asks a router
    callable for the reply to each transcript. An exception in the script is
    raised as ``ProviderError``; running past the end of the script is one too.
    """

    call_count: int

    def __init__(
        self,
        provider_id: str = "scripted",
        script: Sequence[ScriptItem] | None = None,
        router: Router | None = None,
        model_name: str = "scripted-model",
    ) -> None:
        super().__init__(provider_id=provider_id, model_name=model_name)
        if script is None and router is None:
            raise ValueError("ScriptedProvider needs a script or a router")
        self._script: list[ScriptItem] = list(script or [])
        self._router = router
        self._lock = threading.Lock()
        self.call_count = 0
        self.transcripts: list[list[Message]] = []

    def complete(  # pyright: ignore[reportImplicitOverride]
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        with self._lock:
            self.call_count += 1
            self.transcripts.append([dict(message) for message in messages])
            if self._router is None:
                item: ScriptItem | None = self._script.pop(0) if self._script else None
            else:
                item = None
        if self._router is not None:
            try:
                item = self._router(messages)
            except ProviderError:
                self._record_error()
                raise
        if item is None:
            self._record_error()
            raise ProviderError(f"Scripted provider {self.provider_id} has no reply left")
        if isinstance(item, BaseException):
            self._record_error()
            raise ProviderError(describe_failure(item)) from item

        prompt_words = sum(len(message.get("content", "").split()) for message in messages)
        usage = {
            "prompt_tokens": prompt_words,
            "completion_tokens": len(item.split()),
            "total_tokens": prompt_words + len(item.split()),
        }
        response = LLMResponse(
            text=item,
            usage=usage,
            latency_ms=0.0,
            raw_response={"scripted": True, "temperature": temperature, "max_tokens": max_tokens},
            model_id=self.model_name,
        )
        self._record_success(response)
        return response

    def get_provider_info(self) -> dict[str, object]:  # pyright: ignore[reportImplicitOverride]
        return {
            "provider_id": self.provider_id,
            "provider_type": "scripted",
            "model_name": self.model_name,
            "remaining": len(self._script),
        }


def create_provider(
    config: LLMProviderConfig,
    retry_policy: RetryPolicy | None = None,
) -> BaseLLMProvider:
    provider_type = config.provider_type.lower()
    if provider_type in DEFAULT_BASE_URLS:
        policy = retry_policy or RetryPolicy(max_retries=config.max_retries)
        return OpenAIProvider(
            provider_id=config.provider_id,
            model_name=config.model_name,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            retry_policy=policy,
            provider_type=provider_type,
        )
    if provider_type == "scripted":
        return ScriptedProvider(
            provider_id=config.provider_id,
            script=list(config.responses),
            model_name=config.model_name,
        )
    raise ValueError(f"Unsupported provider type: {config.provider_type}")
