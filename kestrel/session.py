"""Conversation sessions and their persistence."""

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .messages import Message, message_from_dict, message_to_dict
from .report import SessionNotFound

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    id: str
    messages: list[Message] = field(default_factory=list)
    summary: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    tokens_used: int = 0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    gentle_phase: int = 0

    @classmethod
    def new(cls) -> "Session":
        return cls(id=uuid.uuid4().hex)

    def add(self, msg: Message) -> None:
        self.messages.append(msg)

    def add_usage(self, input_tokens: int, output_tokens: int) -> None:
        """Record one provider call; prompt_tokens tracks the latest prompt size."""
        if input_tokens:
            self.prompt_tokens = input_tokens
        self.completion_tokens += output_tokens
        self.tokens_used += input_tokens + output_tokens

    def clear(self) -> None:
        self.messages = []
        self.summary = ""
        self.prompt_tokens = 0
        self.gentle_phase = 0


@dataclass(frozen=True)
class SessionInfo:
    id: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    tokens: int


class Store:
    """Persistence contract for sessions."""

    def save(self, session: Session) -> None:
        raise NotImplementedError

    def load(self, session_id: str) -> Session:
        raise NotImplementedError

    def list(self) -> list[SessionInfo]:
        raise NotImplementedError

    def delete(self, session_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryStore(Store):
    """Keeps sessions in process memory; serializes them like the SQLite store."""

    def __init__(self):
        self._rows: dict[str, dict] = {}

    def save(self, session: Session) -> None:
        session.updated_at = _now()
        self._rows[session.id] = _to_row(session)

    def load(self, session_id: str) -> Session:
        row = self._rows.get(session_id)
        if row is None:
            raise SessionNotFound(f"session {session_id} not found")
        return _from_row(row)

    def list(self) -> list[SessionInfo]:
        rows = sorted(self._rows.values(), key=lambda r: r["updated_at"], reverse=True)
        return [_info(r) for r in rows]

    def delete(self, session_id: str) -> None:
        if self._rows.pop(session_id, None) is None:
            raise SessionNotFound(f"session {session_id} not found")


_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id                TEXT PRIMARY KEY,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    tokens_used       INTEGER DEFAULT 0,
    prompt_tokens     INTEGER DEFAULT 0,
    completion_tokens INTEGER DEFAULT 0,
    message_count     INTEGER DEFAULT 0,
    summary           TEXT DEFAULT '',
    gentle_phase      INTEGER DEFAULT 0,
    messages          TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at);
"""

_COLUMNS = (
    "id",
    "created_at",
    "updated_at",
    "tokens_used",
    "prompt_tokens",
    "completion_tokens",
    "message_count",
    "summary",
    "gentle_phase",
    "messages",
)


def default_db_path() -> Path:
    data_home = os.environ.get("XDG_DATA_HOME")
    if data_home:
        return Path(data_home) / "kestrel" / "sessions.db"
    return Path.home() / ".local" / "share" / "kestrel" / "sessions.db"


def _to_row(session: Session) -> dict:
    return {
        "id": session.id,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "tokens_used": session.tokens_used,
        "prompt_tokens": session.prompt_tokens,
        "completion_tokens": session.completion_tokens,
        "message_count": len(session.messages),
        "summary": session.summary,
        "gentle_phase": session.gentle_phase,
        "messages": json.dumps([message_to_dict(m) for m in session.messages]),
    }


def _from_row(row) -> Session:
    return Session(
        id=row["id"],
        messages=[message_from_dict(m) for m in json.loads(row["messages"])],
        summary=row["summary"] or "",
        prompt_tokens=row["prompt_tokens"] or 0,
        completion_tokens=row["completion_tokens"] or 0,
        tokens_used=row["tokens_used"] or 0,
        gentle_phase=row["gentle_phase"] or 0,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _info(row) -> SessionInfo:
    return SessionInfo(
        id=row["id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        message_count=row["message_count"] or 0,
        tokens=row["tokens_used"] or 0,
    )


class SQLiteStore(Store):
    """Sessions in a single SQLite table, messages stored as JSON."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        # Saves can come from the REPL thread and the turn worker thread.
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_CREATE_TABLE_SQL)
            columns = {r["name"] for r in self._conn.execute("PRAGMA table_info(sessions)")}
            if "gentle_phase" not in columns:
                self._conn.execute(
                    "ALTER TABLE sessions ADD COLUMN gentle_phase INTEGER DEFAULT 0"
                )

    def save(self, session: Session) -> None:
        session.updated_at = _now()
        row = _to_row(session)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT OR REPLACE INTO sessions ({', '.join(_COLUMNS)}) "
                f"VALUES ({placeholders})",
                [row[c] for c in _COLUMNS],
            )
        logger.debug("saved session %s (%d messages)", session.id, row["message_count"])

    def load(self, session_id: str) -> Session:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        if row is None:
            raise SessionNotFound(f"session {session_id} not found")
        return _from_row(row)

    def list(self) -> list[SessionInfo]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, created_at, updated_at, message_count, tokens_used "
                "FROM sessions ORDER BY updated_at DESC"
            ).fetchall()
        return [_info(r) for r in rows]

    def delete(self, session_id: str) -> None:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        if cur.rowcount == 0:
            raise SessionNotFound(f"session {session_id} not found")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
