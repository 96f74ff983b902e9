# pan/db/store.py
from __future__ import annotations
import json, asyncio, logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, List

import aiosqlite

from pan.models.models import Session
from pan.utils.helpers import short_id

log = logging.getLogger(__name__)

MEMORY = ":memory:"


class PanStore:
    """Session and nonce store over a single aiosqlite connection."""

    def __init__(self, path: str = MEMORY):
        self.path = str(path)
        if self.path != MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()

    async def init(self):
        async with self._init_lock:
            if self._conn is not None:
                return
            conn = await aiosqlite.connect(self.path)
            conn.row_factory = aiosqlite.Row
            if self.path != MEMORY:
                # Pragmas: durability + concurrency
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.commit()
            await conn.executescript("""
        CREATE TABLE IF NOT EXISTS sessions (
          session_id TEXT PRIMARY KEY,          -- Unique session identifier
          data TEXT NOT NULL,                   -- Session record (JSON)
          expires_at INTEGER NOT NULL           -- Epoch milliseconds
        );

        CREATE TABLE IF NOT EXISTS nonces (
          nonce TEXT PRIMARY KEY,               -- Nonce value, globally unique
          expires_at INTEGER NOT NULL,          -- Epoch milliseconds
          created_at INTEGER NOT NULL           -- Epoch milliseconds
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_expires ON sessions(expires_at);
        CREATE INDEX IF NOT EXISTS idx_nonces_expires ON nonces(expires_at);
        """)
            await conn.commit()
            self._conn = conn
        log.info("Store ready at %s", self.path)

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    # --- low-level helpers -------------------------------------------------

    async def exec(self, sql: str, params: Tuple | Dict | List = ()):
        await self.execute_rowcount(sql, params)

    async def execute_rowcount(self, sql: str, params: Tuple | Dict | List = ()) -> int:
        """Run one statement and return the number of rows it changed."""
        if not self._conn:
            await self.init()
        async with self._lock:
            cur = await self._conn.execute(sql, params)
            count = cur.rowcount
            await cur.close()
            await self._conn.commit()
            return count

    async def fetchone(self, sql: str, params: Tuple | Dict = ()) -> Optional[aiosqlite.Row]:
        if not self._conn:
            await self.init()
        async with self._lock:
            cur = await self._conn.execute(sql, params)
            row = await cur.fetchone()
            await cur.close()
            return row

    # ---------------- Sessions ----------------

    async def put_session(self, session: Session):
        data = json.dumps(session.model_dump(by_alias=True), separators=(",", ":"))
        await self.exec(
            "INSERT INTO sessions(session_id, data, expires_at) VALUES(?,?,?) "
            "ON CONFLICT(session_id) DO UPDATE SET data=excluded.data, expires_at=excluded.expires_at",
            (session.session_id, data, session.expires_at),
        )

    async def get_session(self, session_id: str, now_ms: int) -> Optional[Session]:
        row = await self.fetchone(
            "SELECT data, expires_at FROM sessions WHERE session_id=?", (session_id,)
        )
        if not row:
            return None
        if row["expires_at"] <= now_ms:
            log.info("Session expired - session_id: %s", short_id(session_id))
            await self.delete_session(session_id)
            return None
        return Session.model_validate(json.loads(row["data"]))

    async def delete_session(self, session_id: str) -> bool:
        return await self.execute_rowcount("DELETE FROM sessions WHERE session_id=?", (session_id,)) == 1

    async def touch_session(self, session_id: str, now_ms: int) -> bool:
        # Concurrent touches on one session are last-write-wins.
        return await self.execute_rowcount(
            "UPDATE sessions SET data=json_set(data, '$.lastAccessAt', ?) WHERE session_id=? AND expires_at>?",
            (now_ms, session_id, now_ms),
        ) == 1

    # ---------------- Nonces ----------------

    async def add_nonce(self, nonce: str, expires_at_ms: int, created_at_ms: int):
        await self.exec(
            "INSERT INTO nonces(nonce, expires_at, created_at) VALUES(?,?,?)",
            (nonce, expires_at_ms, created_at_ms),
        )

    async def consume_nonce(self, nonce: str, now_ms: int) -> bool:
        """Fetch-and-delete in one statement; exactly one caller can win."""
        return await self.execute_rowcount(
            "DELETE FROM nonces WHERE nonce=? AND expires_at>?", (nonce, now_ms)
        ) == 1

    async def purge_expired(self, now_ms: int) -> Tuple[int, int]:
        sessions = await self.execute_rowcount("DELETE FROM sessions WHERE expires_at<=?", (now_ms,))
        nonces = await self.execute_rowcount("DELETE FROM nonces WHERE expires_at<=?", (now_ms,))
        if sessions or nonces:
            log.info("Purged %d expired sessions, %d expired nonces", sessions, nonces)
        return sessions, nonces
