"""
SQLite-backed transcript of one run: every loop, message, cell and outcome.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from collections.abc import Mapping
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, TypeAlias, cast

from .database import connect, initialize_database

if TYPE_CHECKING:
    from rlm_core.schemas import RunOutcome
    from sandbox.environment import CellResult


ConfigInput: TypeAlias = Mapping[str, object] | str | None

_SECRET_TOKENS = ("api_key", "apikey", "token", "secret")


@dataclass
class LoopRecord:
    loop_id: str
    run_id: str
    parent_id: str | None
    depth: int
    query: str
    status: str
    answer: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    iterations: int = 0
    cells_executed: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LoopRecord":
        row_dict = cast(dict[str, object], dict(row))
        return cls(
            loop_id=_require_str(row_dict["loop_id"], "loop_id"),
            run_id=_require_str(row_dict["run_id"], "run_id"),
            parent_id=_optional_str(row_dict.get("parent_id")),
            depth=_require_int(row_dict["depth"], "depth"),
            query=_require_str(row_dict["query"], "query"),
            status=_optional_str(row_dict.get("status")) or "running",
            answer=_optional_str(row_dict.get("answer")),
            error_kind=_optional_str(row_dict.get("error_kind")),
            error_message=_optional_str(row_dict.get("error_message")),
            iterations=_require_int(row_dict.get("iterations", 0), "iterations"),
            cells_executed=_require_int(row_dict.get("cells_executed", 0), "cells_executed"),
        )


@dataclass
class CellRecord:
    loop_id: str
    iteration: int
    cell_index: int
    code: str
    output: str
    error_kind: str | None = None
    error_message: str | None = None
    truncated: bool = False
    elapsed_ms: float | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CellRecord":
        row_dict = cast(dict[str, object], dict(row))
        return cls(
            loop_id=_require_str(row_dict["loop_id"], "loop_id"),
            iteration=_require_int(row_dict["iteration"], "iteration"),
            cell_index=_require_int(row_dict["cell_index"], "cell_index"),
            code=_require_str(row_dict["code"], "code"),
            output=_require_str(row_dict["output"], "output"),
            error_kind=_optional_str(row_dict.get("error_kind")),
            error_message=_optional_str(row_dict.get("error_message")),
            truncated=bool(row_dict.get("truncated")),
            elapsed_ms=_optional_float(row_dict.get("elapsed_ms")),
        )


def _require_str(value: object, field: str) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        raise ValueError(f"{field} is required")
    return str(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _require_int(value: object, field: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an int")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(value)
    if value is None:
        raise ValueError(f"{field} is required")
    raise ValueError(f"{field} must be an int")


def _optional_float(value: object) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise ValueError("value must be a float")


def _looks_like_secret(key: str) -> bool:
    lowered = key.lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def sanitize_mapping(mapping: Mapping[str, object]) -> dict[str, object]:
    """Drop secret-looking keys at any nesting level."""
    sanitized: dict[str, object] = {}
    for key, value in mapping.items():
        if _looks_like_secret(key):
            continue
        if isinstance(value, Mapping):
            sanitized[key] = sanitize_mapping(cast(Mapping[str, object], value))
        elif isinstance(value, list):
            sanitized[key] = [
                sanitize_mapping(cast(Mapping[str, object], item)) if isinstance(item, Mapping) else item
                for item in cast(list[object], value)
            ]
        else:
            sanitized[key] = value
    return sanitized


def _redact_string_config(config: str) -> str:
    redacted = config
    for token in _SECRET_TOKENS:
        pattern = re.compile(rf'("{token}"\s*:\s*)"[^"]*"', re.IGNORECASE)
        redacted = pattern.sub(r'\1"<redacted>"', redacted)
    if redacted == config and any(token in config.lower() for token in _SECRET_TOKENS):
        return "<redacted>"
    return redacted


def _prepare_config_json(config: ConfigInput) -> str:
    if config is None:
        return "{}"
    if isinstance(config, str):
        return _redact_string_config(config)
    return json.dumps(sanitize_mapping(config), sort_keys=True, default=str)


class TranscriptStore:
    """Records loops, messages and cells of one run; safe to share across threads."""

    def __init__(
        self,
        run_id: str,
        query: str,
        config: ConfigInput = None,
        base_dir: str | Path = "artifacts",
        db_path: str | None = None,
    ) -> None:
        self.run_id: str = run_id
        self.db_path: str = (
            str(Path(base_dir) / run_id / "transcript.db") if db_path is None else db_path
        )
        self._lock = threading.Lock()
        initialize_database(self.db_path)
        self._execute(
            "INSERT OR IGNORE INTO runs (run_id, query, config_json) VALUES (?, ?, ?)",
            (run_id, query, _prepare_config_json(config)),
        )

    def _execute(self, sql: str, params: tuple[object, ...]) -> None:
        with self._lock, closing(connect(self.db_path)) as connection:
            _ = connection.execute(sql, params)
            connection.commit()

    def _fetch(self, sql: str, params: tuple[object, ...]) -> list[sqlite3.Row]:
        with closing(connect(self.db_path)) as connection:
            return cast(list[sqlite3.Row], connection.execute(sql, params).fetchall())

    # TranscriptSink

    def start_loop(self, loop_id: str, parent_id: str | None, depth: int, query: str) -> None:
        self._execute(
            "INSERT INTO loops (loop_id, run_id, parent_id, depth, query) VALUES (?, ?, ?, ?, ?)",
            (loop_id, self.run_id, parent_id, depth, query),
        )

    def record_message(self, loop_id: str, iteration: int, role: str, content: str) -> None:
        self._execute(
            "INSERT INTO messages (loop_id, iteration, role, content) VALUES (?, ?, ?, ?)",
            (loop_id, iteration, role, content),
        )

    def record_cell(
        self, loop_id: str, iteration: int, index: int, code: str, result: "CellResult"
    ) -> None:
        error = result.error
        self._execute(
            """
            INSERT INTO cells (
                loop_id, iteration, cell_index, code, output,
                error_kind, error_message, truncated, elapsed_ms
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                loop_id,
                iteration,
                index,
                code,
                result.output,
                error.kind.value if error is not None else None,
                error.message if error is not None else None,
                int(result.truncated),
                result.elapsed_ms,
            ),
        )

    def finish_loop(self, loop_id: str, outcome: "RunOutcome") -> None:
        self._execute(
            """
            UPDATE loops
            SET status = ?, answer = ?, error_kind = ?, error_message = ?,
                iterations = ?, cells_executed = ?, finished_at = CURRENT_TIMESTAMP
            WHERE loop_id = ?
            """,
            (
                outcome.status,
                outcome.answer,
                outcome.error.kind if outcome.error is not None else None,
                outcome.error.message if outcome.error is not None else None,
                outcome.iterations,
                outcome.cells_executed,
                loop_id,
            ),
        )

    # Queries

    def get_loops(self) -> list[LoopRecord]:
        rows = self._fetch(
            "SELECT * FROM loops WHERE run_id = ? ORDER BY depth, started_at, rowid",
            (self.run_id,),
        )
        return [LoopRecord.from_row(row) for row in rows]

    def get_messages(self, loop_id: str) -> list[tuple[str, str]]:
        rows = self._fetch(
            "SELECT role, content FROM messages WHERE loop_id = ? ORDER BY id",
            (loop_id,),
        )
        return [
            (_require_str(row["role"], "role"), _require_str(row["content"], "content")) for row in rows
        ]

    def get_cells(self, loop_id: str) -> list[CellRecord]:
        rows = self._fetch(
            "SELECT * FROM cells WHERE loop_id = ? ORDER BY iteration, cell_index",
            (loop_id,),
        )
        return [CellRecord.from_row(row) for row in rows]

    def get_config(self) -> dict[str, object] | str:
        rows = self._fetch("SELECT config_json FROM runs WHERE run_id = ?", (self.run_id,))
        if not rows:
            return {}
        raw = _require_str(rows[0]["config_json"], "config_json")
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError:
            return raw
        return cast(dict[str, object], loaded) if isinstance(loaded, dict) else raw
