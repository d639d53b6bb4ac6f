"""Session persistence with SQLite storage."""

import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

import aiosqlite
from pydantic import BaseModel, TypeAdapter

from keelson.exceptions import SessionNotFoundError
from keelson.llm import Message
from keelson.logging import get_logger

log = get_logger(__name__)

PREVIEW_CHARS = 120

_messages_adapter: TypeAdapter[list[Message]] = TypeAdapter(list[Message])


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_session_id() -> str:
    return str(uuid.uuid4())


class DisplayEntry(BaseModel):
    """What the user saw: their message, an assistant reply, or a tool execution."""

    kind: Literal["user", "assistant", "tool"]
    content: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None


_display_adapter: TypeAdapter[list[DisplayEntry]] = TypeAdapter(list[DisplayEntry])


def make_preview(messages: list[Message]) -> str:
    """First user text, whitespace-collapsed and truncated."""
    for message in messages:
        if message.role != "user":
            continue
        texts = [getattr(block, "text", "") for block in message.blocks()]
        text = re.sub(r"\s+", " ", " ".join(t for t in texts if t)).strip()
        if not text:
            continue
        if len(text) > PREVIEW_CHARS:
            return text[:PREVIEW_CHARS] + "..."
        return text
    return "(empty session)"


@dataclass
class SessionMetadata:
    """Index entry for a stored session."""

    id: str
    preview: str
    message_count: int
    created_at: str
    updated_at: str


@dataclass
class Session:
    """A persisted conversation session."""

    id: str
    messages: list[Message] = field(default_factory=list)
    display_log: list[DisplayEntry] = field(default_factory=list)
    system_prompt: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @property
    def preview(self) -> str:
        return make_preview(self.messages)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "messages": _messages_adapter.dump_python(self.messages, mode="json", exclude_none=True),
            "display_log": _display_adapter.dump_python(self.display_log, mode="json", exclude_none=True),
            "system_prompt": self.system_prompt,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            messages=_messages_adapter.validate_python(data.get("messages", [])),
            display_log=_display_adapter.validate_python(data.get("display_log", [])),
            system_prompt=data.get("system_prompt", ""),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            created_at=data.get("created_at", _utcnow_iso()),
            updated_at=data.get("updated_at", _utcnow_iso()),
        )


class SessionManager:
    """Stores sessions in SQLite."""

    def __init__(self, db_path: Path | str):
        """Initialize session manager.

        Args:
            db_path: Database path
        """
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    preview TEXT NOT NULL DEFAULT '',
                    system_prompt TEXT NOT NULL DEFAULT '',
                    messages TEXT NOT NULL DEFAULT '[]',
                    display_log TEXT NOT NULL DEFAULT '[]',
                    message_count INTEGER NOT NULL DEFAULT 0,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at)"
            )
            await self._db.commit()

    async def save_session(self, session: Session) -> None:
        """Insert or replace a session.

        Args:
            session: Session to save
        """
        await self._ensure_db()

        session.updated_at = _utcnow_iso()
        data = session.to_dict()

        await self._db.execute("""
            INSERT OR REPLACE INTO sessions (
                id, preview, system_prompt, messages, display_log, message_count,
                input_tokens, output_tokens, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session.id,
            session.preview,
            session.system_prompt,
            json.dumps(data["messages"]),
            json.dumps(data["display_log"]),
            len(session.messages),
            session.input_tokens,
            session.output_tokens,
            session.created_at,
            session.updated_at,
        ))
        await self._db.commit()
        log.debug("Saved session", session_id=session.id, messages=len(session.messages))

    async def load_session(self, session_id: str) -> Session:
        """Get a session by ID.

        Raises:
            SessionNotFoundError if no such session exists
        """
        await self._ensure_db()

        async with self._db.execute(
            """
            SELECT id, system_prompt, messages, display_log, input_tokens, output_tokens,
                   created_at, updated_at
            FROM sessions WHERE id = ?
            """,
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if not row:
            raise SessionNotFoundError(session_id)

        return Session.from_dict({
            "id": row[0],
            "system_prompt": row[1],
            "messages": json.loads(row[2]),
            "display_log": json.loads(row[3]),
            "input_tokens": row[4],
            "output_tokens": row[5],
            "created_at": row[6],
            "updated_at": row[7],
        })

    async def list_sessions(self, limit: int = 20) -> list[SessionMetadata]:
        """List recent sessions, newest first."""
        await self._ensure_db()

        async with self._db.execute("""
            SELECT id, preview, message_count, created_at, updated_at
            FROM sessions
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()

        return [
            SessionMetadata(
                id=row[0],
                preview=row[1],
                message_count=int(row[2]),
                created_at=row[3],
                updated_at=row[4],
            )
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
