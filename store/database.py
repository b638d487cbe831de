"""
SQLite database utilities for the transcript store.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_SQL = """
CREATE TABLE runs (
  run_id TEXT PRIMARY KEY,
  query TEXT NOT NULL,
  config_json TEXT NOT NULL,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE loops (
  loop_id TEXT PRIMARY KEY,
  run_id TEXT NOT NULL,
  parent_id TEXT,
  depth INTEGER NOT NULL,
  query TEXT NOT NULL,
  status TEXT DEFAULT 'running',
  answer TEXT,
  error_kind TEXT,
  error_message TEXT,
  iterations INTEGER DEFAULT 0,
  cells_executed INTEGER DEFAULT 0,
  started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  finished_at TIMESTAMP,
  FOREIGN KEY (run_id) REFERENCES runs(run_id)
);

CREATE TABLE messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  loop_id TEXT NOT NULL,
  iteration INTEGER NOT NULL,
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (loop_id) REFERENCES loops(loop_id)
);

CREATE TABLE cells (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  loop_id TEXT NOT NULL,
  iteration INTEGER NOT NULL,
  cell_index INTEGER NOT NULL,
  code TEXT NOT NULL,
  output TEXT NOT NULL,
  error_kind TEXT,
  error_message TEXT,
  truncated INTEGER DEFAULT 0,
  elapsed_ms REAL,
  created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (loop_id) REFERENCES loops(loop_id)
);

CREATE INDEX idx_loops_run ON loops(run_id, depth);
CREATE INDEX idx_messages_loop ON messages(loop_id, id);
CREATE INDEX idx_cells_loop ON cells(loop_id, iteration, cell_index);
"""

_IDEMPOTENT_SCHEMA_SQL = (
    SCHEMA_SQL.replace("CREATE TABLE", "CREATE TABLE IF NOT EXISTS")
    .replace("CREATE INDEX", "CREATE INDEX IF NOT EXISTS")
)


def initialize_database(db_path: str) -> None:
    """Create the SQLite database and schema if needed."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(path))
    try:
        _ = connection.executescript(_IDEMPOTENT_SCHEMA_SQL)
        connection.commit()
    finally:
        connection.close()


def connect(db_path: str) -> sqlite3.Connection:
    """Open a SQLite connection with sane defaults."""
    connection = sqlite3.connect(db_path, timeout=30)
    connection.row_factory = sqlite3.Row
    _ = connection.execute("PRAGMA foreign_keys = ON")
    return connection
