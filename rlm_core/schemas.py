from __future__ import annotations

import builtins
import keyword
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Literal, TypeVar

from pydantic import BaseModel, Field, field_validator


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


TBaseSchema = TypeVar("TBaseSchema", bound="BaseSchema")


# Callables and names every environment installs at construction.
ENVIRONMENT_BUILTINS = frozenset(
    {
        "print",
        "rlm_query",
        "rlm_map",
        "llm_query",
        "char_len",
        "byte_len",
        "char_trunc",
        "token_len",
        "token_trunc",
        "show_vars",
        "SubQueryError",
    }
)

# Globals the loop binds before the first cell.
RESERVED_GLOBALS = frozenset({"context", "query", "depth"})

FINAL_MARKERS = frozenset({"FINAL", "FINAL_VAR"})


def is_builtin_name(name: str) -> bool:
    """True for names an environment always provides, including Python's own."""
    return name in ENVIRONMENT_BUILTINS or hasattr(builtins, name)


def is_reserved_name(name: str) -> bool:
    """True for names registry functions and bindings may never take."""
    return (
        is_builtin_name(name)
        or name in RESERVED_GLOBALS
        or name in FINAL_MARKERS
        or keyword.iskeyword(name)
    )


class BaseSchema(BaseModel):
    def to_json(self) -> str:
        return self.model_dump_json()

    def to_dict(self) -> dict[str, object]:
        return self.model_dump()

    @classmethod
    def from_json(cls: type[TBaseSchema], data: str) -> TBaseSchema:
        return cls.model_validate_json(data)

    @classmethod
    def from_dict(cls: type[TBaseSchema], data: Mapping[str, object]) -> TBaseSchema:
        return cls.model_validate(data)


ProviderType = Literal["openai", "openrouter", "ollama", "deepseek", "scripted"]


class LLMProviderConfig(BaseSchema):
    provider_id: str
    provider_type: ProviderType
    base_url: str | None = None
    model_name: str
    api_key: str | None = None
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: int = Field(default=120, gt=0)
    responses: list[str] = Field(default_factory=list)


TruncationPolicy = Literal["head", "tail", "head_tail"]


class LoopConfig(BaseSchema):
    max_iterations: int = Field(default=10, ge=1)
    max_depth: int = Field(default=2, ge=0)
    cell_timeout_seconds: float = Field(default=30.0, gt=0)
    output_max_chars: int = Field(default=2000, ge=64)
    output_truncation: TruncationPolicy = "head_tail"
    output_max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = None
    max_tokens: int | None = None
    max_parallel_subqueries: int = Field(default=4, ge=1)
    run_timeout_seconds: float | None = None


class ErrorInfo(BaseSchema):
    kind: str
    message: str


RunStatus = Literal["completed", "failed", "cancelled"]


class RunOutcome(BaseSchema):
    status: RunStatus
    answer: str | None = None
    error: ErrorInfo | None = None
    iterations: int = Field(default=0, ge=0)
    depth: int = Field(default=0, ge=0)
    cells_executed: int = Field(default=0, ge=0)
    usage: dict[str, int] = Field(default_factory=dict)
    finished_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("finished_at")
    @classmethod
    def finished_at_utc(cls, value: datetime) -> datetime:
        return _ensure_utc(value)

    @property
    def ok(self) -> bool:
        return self.status == "completed"
