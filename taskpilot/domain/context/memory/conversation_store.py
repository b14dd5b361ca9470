from abc import ABC, abstractmethod
from typing import Dict, List, Tuple
from collections import defaultdict
from datetime import datetime
from pathlib import Path
import asyncio
import sqlite3

import structlog

from taskpilot.domain.models.agent_state import ConversationTurn, Role
from taskpilot.domain.models.errors import MemoryUnavailable
from taskpilot.infrastructure.resilience.keyed_locks import KeyedLocks

logger = structlog.get_logger(__name__)

SessionKey = Tuple[str, str]


class ConversationStore(ABC):
    """Append-only conversation memory keyed by (user, session)"""

    def __init__(self):
        self._session_locks = KeyedLocks()

    async def append(self, user_id: str, session_id: str, role: Role, content: str) -> ConversationTurn:
        """Append a turn, assigning the next sequence number of the session"""

        # appends to one session are serialized so sequence numbers stay gapless
        async with self._session_locks.hold((user_id, session_id)):
            try:
                return await self._append(user_id, session_id, Role(role), content)
            except MemoryUnavailable:
                raise
            except Exception as e:
                logger.error("Conversation append failed", session_id=session_id, error=str(e))
                raise MemoryUnavailable(str(e)) from e

    async def recent_turns(self, user_id: str, session_id: str, limit: int = 20) -> List[ConversationTurn]:
        """Last `limit` turns of a session, oldest first"""

        if limit <= 0:
            return []
        try:
            return await self._recent(user_id, session_id, limit)
        except MemoryUnavailable:
            raise
        except Exception as e:
            logger.error("Conversation read failed", session_id=session_id, error=str(e))
            raise MemoryUnavailable(str(e)) from e

    @abstractmethod
    async def _append(self, user_id: str, session_id: str, role: Role, content: str) -> ConversationTurn:
        pass

    @abstractmethod
    async def _recent(self, user_id: str, session_id: str, limit: int) -> List[ConversationTurn]:
        pass

    async def close(self):
        pass


class InMemoryConversationStore(ConversationStore):
    """Process-local conversation memory"""

    def __init__(self):
        super().__init__()
        self.conversations: Dict[SessionKey, List[ConversationTurn]] = defaultdict(list)

    async def _append(self, user_id: str, session_id: str, role: Role, content: str) -> ConversationTurn:
        turns = self.conversations[(user_id, session_id)]
        turn = ConversationTurn(
            user_id=user_id,
            session_id=session_id,
            role=role,
            content=content,
            timestamp=datetime.utcnow(),
            sequence=len(turns) + 1,
        )
        turns.append(turn)
        return turn

    async def _recent(self, user_id: str, session_id: str, limit: int) -> List[ConversationTurn]:
        return list(self.conversations.get((user_id, session_id), [])[-limit:])


class SQLiteConversationStore(ConversationStore):
    """SQLite-backed conversation memory, one row per (user, session, sequence)"""

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.connection = sqlite3.connect(self.path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        # one connection shared by worker threads
        self._db_lock = asyncio.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_turns (
                user_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                PRIMARY KEY (user_id, session_id, sequence)
            )
            """
        )
        self.connection.commit()

    async def _append(self, user_id: str, session_id: str, role: Role, content: str) -> ConversationTurn:
        async with self._db_lock:
            return await asyncio.to_thread(self._append_sync, user_id, session_id, role, content)

    def _append_sync(self, user_id: str, session_id: str, role: Role, content: str) -> ConversationTurn:
        timestamp = datetime.utcnow()
        with self.connection:
            row = self.connection.execute(
                "SELECT COALESCE(MAX(sequence), 0) AS last FROM conversation_turns WHERE user_id = ? AND session_id = ?",
                (user_id, session_id),
            ).fetchone()
            sequence = row["last"] + 1
            self.connection.execute(
                """
                INSERT INTO conversation_turns (user_id, session_id, sequence, role, content, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, session_id, sequence, role.value, content, timestamp.isoformat()),
            )
        return ConversationTurn(
            user_id=user_id,
            session_id=session_id,
            role=role,
            content=content,
            timestamp=timestamp,
            sequence=sequence,
        )

    async def _recent(self, user_id: str, session_id: str, limit: int) -> List[ConversationTurn]:
        async with self._db_lock:
            return await asyncio.to_thread(self._recent_sync, user_id, session_id, limit)

    def _recent_sync(self, user_id: str, session_id: str, limit: int) -> List[ConversationTurn]:
        rows = self.connection.execute(
            """
            SELECT * FROM conversation_turns
            WHERE user_id = ? AND session_id = ?
            ORDER BY sequence DESC LIMIT ?
            """,
            (user_id, session_id, int(limit)),
        ).fetchall()
        return [
            ConversationTurn(
                user_id=row["user_id"],
                session_id=row["session_id"],
                role=Role(row["role"]),
                content=row["content"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                sequence=row["sequence"],
            )
            for row in reversed(rows)
        ]

    async def close(self):
        self.connection.close()
