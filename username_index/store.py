import sqlite3
import aiosqlite
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional, Protocol, Union
from loguru import logger

from username_index.errors import UsernameTakenError, UserNotFoundError
from username_index.utils import normalize_username

class AuthoritativeStore(Protocol):
    """
    What the index needs from the user registry.
    Usernames handed to exists() are already normalized.
    """

    def stream_all_usernames(self) -> AsyncIterator[str]:
        """Finite lazy sequence of every stored username."""
        ...

    async def exists(self, username: str) -> bool:
        """Definitive existence check."""
        ...

    async def count_usernames(self) -> int:
        """Sizing hint for initialize/rebuild; 0 when unknown."""
        ...

class SqliteUserStore:
    """Reference registry backed by a SQLite table with a UNIQUE username."""

    def __init__(self, db_path: Union[str, Path], timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._db_conn: Optional[aiosqlite.Connection] = None

    async def initialize(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_conn = await aiosqlite.connect(self.db_path, timeout=self.timeout)

        # Enable WAL mode for concurrency
        await self._db_conn.execute("PRAGMA journal_mode=WAL")

        await self._db_conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                name TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await self._db_conn.commit()
        logger.info(f"📁 User store ready at {self.db_path}")

    def _conn(self) -> aiosqlite.Connection:
        if not self._db_conn:
            raise RuntimeError("User store not initialized")
        return self._db_conn

    async def stream_all_usernames(self) -> AsyncIterator[str]:
        async with self._conn().execute("SELECT username FROM users WHERE username IS NOT NULL") as cursor:
            async for row in cursor:
                yield row[0]

    async def exists(self, username: str) -> bool:
        async with self._conn().execute(
            "SELECT 1 FROM users WHERE username = ? LIMIT 1", (username,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def count_usernames(self) -> int:
        async with self._conn().execute("SELECT COUNT(*) FROM users") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def create_user(self, username: str, name: Optional[str] = None) -> int:
        conn = self._conn()
        try:
            cursor = await conn.execute(
                "INSERT INTO users (username, name) VALUES (?, ?)",
                (normalize_username(username), name)
            )
            await conn.commit()
        except sqlite3.IntegrityError as e:
            await conn.rollback()
            raise UsernameTakenError(f"Username already taken: {username}") from e
        return cursor.lastrowid or 0

    async def create_users(self, usernames: Iterable[str]) -> int:
        """Bulk insert; existing usernames are skipped. Returns rows created."""
        conn = self._conn()
        cursor = await conn.executemany(
            "INSERT OR IGNORE INTO users (username) VALUES (?)",
            [(normalize_username(u),) for u in usernames]
        )
        await conn.commit()
        return max(cursor.rowcount, 0)

    async def find_user_id(self, username: str) -> Optional[int]:
        async with self._conn().execute(
            "SELECT id FROM users WHERE username = ?", (normalize_username(username),)
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else None

    async def rename_user(self, user_id: int, username: str):
        conn = self._conn()
        try:
            cursor = await conn.execute(
                "UPDATE users SET username = ? WHERE id = ?",
                (normalize_username(username), user_id)
            )
            await conn.commit()
        except sqlite3.IntegrityError as e:
            await conn.rollback()
            raise UsernameTakenError(f"Username already taken: {username}") from e
        if cursor.rowcount == 0:
            raise UserNotFoundError(f"No user with id {user_id}")

    async def delete_test_users(self) -> int:
        """Removes the rows created by seeding (testuser1, testuser2, ...)."""
        conn = self._conn()
        cursor = await conn.execute("DELETE FROM users WHERE username GLOB 'testuser[0-9]*'")
        await conn.commit()
        deleted = max(cursor.rowcount, 0)
        logger.info(f"🧹 Deleted {deleted} test users")
        return deleted

    async def close(self):
        if self._db_conn:
            await self._db_conn.close()
            self._db_conn = None
