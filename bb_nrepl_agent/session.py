"""Session persistence: conversation history in SQLite."""

import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logger import get_logger

_log = get_logger(__name__)

IN_MEMORY = ":memory:"


class SessionStore:
    """Sessions and their ordered messages.

    Assistant tool calls are stored as JSON next to the message; tool
    messages are stored as the JSON of the whole message so that
    ``tool_call_id`` and ``name`` survive a reload.
    """

    def __init__(self, db_path: str = IN_MEMORY):
        self.db_path = str(db_path)
        if self.db_path != IN_MEMORY:
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(Path(self.db_path).expanduser())
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_database()

    def _init_database(self):
        cursor = self._conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_active TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT,
                tool_calls TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (session_id) REFERENCES sessions (id) ON DELETE CASCADE
            )
        ''')
        cursor.execute(
            'CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, id)'
        )
        self._conn.commit()

    def create_session(self, session_id: Optional[str] = None) -> str:
        session_id = session_id or str(uuid.uuid4())
        self._conn.execute('INSERT OR IGNORE INTO sessions (id) VALUES (?)', (session_id,))
        self._conn.commit()
        _log.info("Created session %s", session_id)
        return session_id

    def session_exists(self, session_id: str) -> bool:
        row = self._conn.execute('SELECT 1 FROM sessions WHERE id = ?', (session_id,)).fetchone()
        return row is not None

    def touch(self, session_id: str):
        self._conn.execute(
            'UPDATE sessions SET last_active = ? WHERE id = ?',
            (datetime.now().isoformat(), session_id),
        )
        self._conn.commit()

    def add_message(self, session_id: str, role: str, content: Optional[str],
                    tool_calls: Optional[List[Dict[str, Any]]] = None):
        self._conn.execute(
            'INSERT INTO messages (session_id, role, content, tool_calls) VALUES (?, ?, ?, ?)',
            (session_id, role, content,
             json.dumps(tool_calls, ensure_ascii=False) if tool_calls else None),
        )
        self._conn.commit()

    def remove_last_messages(self, session_id: str, count: int) -> int:
        """Delete the ``count`` most recent messages of a session."""
        if count <= 0:
            return 0
        cursor = self._conn.execute('''
            DELETE FROM messages WHERE id IN (
                SELECT id FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?
            )
        ''', (session_id, count))
        self._conn.commit()
        return cursor.rowcount

    def get_session_history(self, session_id: str) -> List[Dict[str, Any]]:
        rows = self._conn.execute(
            'SELECT role, content, tool_calls FROM messages WHERE session_id = ? ORDER BY id',
            (session_id,),
        ).fetchall()
        return [msg for msg in (self._row_to_message(row) for row in rows) if msg is not None]

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Optional[Dict[str, Any]]:
        role, content = row["role"], row["content"]

        if role == "tool":
            try:
                msg = json.loads(content or "")
            except ValueError:
                _log.warning("Dropping unreadable stored tool message")
                return None
            if not isinstance(msg, dict) or not msg.get("tool_call_id"):
                _log.warning("Dropping stored tool message without tool_call_id")
                return None
            msg["role"] = "tool"
            return msg

        msg: Dict[str, Any] = {"role": role, "content": content}
        if row["tool_calls"]:
            try:
                msg["tool_calls"] = json.loads(row["tool_calls"])
            except ValueError:
                _log.warning("Ignoring unreadable tool_calls on stored %s message", role)
        return msg

    def delete_session(self, session_id: str):
        self._conn.execute('DELETE FROM messages WHERE session_id = ?', (session_id,))
        self._conn.execute('DELETE FROM sessions WHERE id = ?', (session_id,))
        self._conn.commit()

    def list_sessions(self, limit: int = 10) -> List[Dict[str, Any]]:
        rows = self._conn.execute('''
            SELECT s.id, s.created_at, s.last_active, COUNT(m.id) AS message_count
            FROM sessions s LEFT JOIN messages m ON m.session_id = s.id
            GROUP BY s.id ORDER BY s.last_active DESC LIMIT ?
        ''', (limit,)).fetchall()
        return [dict(row) for row in rows]

    def close(self):
        self._conn.close()
