from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiosqlite

from .config import DEFAULTS, DB_PATH


logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%d %H:%M:%S"

SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


def fits_integer(value: int) -> bool:
    return SQLITE_INT_MIN <= value <= SQLITE_INT_MAX


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def format_ts(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(TS_FORMAT)


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def fetchone(
    conn: aiosqlite.Connection, query: str, params: tuple
) -> Optional[aiosqlite.Row]:
    async with conn.execute(query, params) as cursor:
        return await cursor.fetchone()


async def fetchall(
    conn: aiosqlite.Connection, query: str, params: tuple
) -> List[aiosqlite.Row]:
    async with conn.execute(query, params) as cursor:
        return await cursor.fetchall()


class Database:
    def __init__(self, path=DB_PATH):
        self.path = str(path)
        self.conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None

    async def connect(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        self._lock = asyncio.Lock()
        await self.conn.execute("PRAGMA foreign_keys = ON")
        await self.conn.execute("PRAGMA journal_mode = WAL")
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def init(self) -> None:
        assert self.conn is not None
        await self.conn.executescript(
            f"""
            CREATE TABLE IF NOT EXISTS users (
                user_id INTEGER PRIMARY KEY,
                short_id INTEGER UNIQUE NOT NULL,
                username TEXT,
                name TEXT,
                faculty TEXT,
                insta TEXT,
                tiktok TEXT,
                phone TEXT,
                rating INTEGER NOT NULL DEFAULT {DEFAULTS.start_rating}
                    CHECK (rating >= 0),
                insta_verified INTEGER NOT NULL DEFAULT 0,
                tiktok_verified INTEGER NOT NULL DEFAULT 0,
                phone_verified INTEGER NOT NULL DEFAULT 0,
                pvp_notifications INTEGER NOT NULL DEFAULT 1,
                agreed INTEGER NOT NULL DEFAULT 0,
                edit_name TEXT,
                edit_faculty TEXT,
                edit_insta TEXT,
                edit_tiktok TEXT,
                edit_phone TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS admins (
                user_id INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS user_farm (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                animal_key TEXT NOT NULL,
                bought_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS user_farm_user_idx ON user_farm(user_id);

            CREATE TABLE IF NOT EXISTS user_protection (
                user_id INTEGER NOT NULL,
                item_key TEXT NOT NULL,
                bought_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(user_id, item_key),
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS active_tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                link TEXT,
                reward INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS completed_tasks (
                user_id INTEGER NOT NULL,
                task_id INTEGER NOT NULL,
                status INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(user_id, task_id),
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE,
                FOREIGN KEY(task_id) REFERENCES active_tasks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS pvp_battles (
                battle_id INTEGER PRIMARY KEY AUTOINCREMENT,
                challenger_id INTEGER NOT NULL,
                bet INTEGER NOT NULL CHECK (bet > 0),
                status TEXT NOT NULL DEFAULT 'pending',
                opponent_id INTEGER,
                challenger_roll INTEGER,
                opponent_roll INTEGER,
                winner_id INTEGER,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                finished_at TEXT,
                FOREIGN KEY(challenger_id) REFERENCES users(user_id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS pvp_battles_status_idx
                ON pvp_battles(status, created_at);

            CREATE TABLE IF NOT EXISTS pvp_stats (
                user_id INTEGER PRIMARY KEY,
                wins INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS giveaways (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                description TEXT,
                prize TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                ends_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS giveaway_users (
                giveaway_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                joined_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(giveaway_id, user_id),
                FOREIGN KEY(giveaway_id) REFERENCES giveaways(id) ON DELETE CASCADE,
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS promo_codes (
                code TEXT PRIMARY KEY,
                reward INTEGER NOT NULL CHECK (reward >= 0),
                max_uses INTEGER NOT NULL DEFAULT 1,
                current_uses INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS promo_history (
                user_id INTEGER NOT NULL,
                code TEXT NOT NULL,
                used_at TEXT DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY(user_id, code),
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS dice_rolls (
                user_id INTEGER PRIMARY KEY,
                last_roll TEXT NOT NULL,
                FOREIGN KEY(user_id) REFERENCES users(user_id) ON DELETE CASCADE
            );
            """
        )
        # Databases created by the old bot predate these columns.
        await self._ensure_column("users", "faculty", "TEXT")
        await self._ensure_column("users", "pvp_notifications", "INTEGER NOT NULL DEFAULT 1")
        for field in ("name", "faculty", "insta", "tiktok", "phone"):
            await self._ensure_column("users", f"edit_{field}", "TEXT")
        await self._ensure_column("pvp_battles", "opponent_id", "INTEGER")
        await self._ensure_column("pvp_battles", "challenger_roll", "INTEGER")
        await self._ensure_column("pvp_battles", "opponent_roll", "INTEGER")
        await self._ensure_column("pvp_battles", "winner_id", "INTEGER")
        await self._ensure_column("pvp_battles", "finished_at", "TEXT")
        await self.conn.commit()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the block as one ``BEGIN IMMEDIATE`` transaction.

        The connection is shared by every request, so the lock keeps other
        coroutines from reading or joining a transaction that is still open.
        Any exception rolls back every statement issued inside the block.
        """
        assert self.conn is not None and self._lock is not None
        async with self._lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()

    async def register_user(self, user) -> Dict[str, Any]:
        async with self.transaction() as conn:
            row = await fetchone(
                conn, "SELECT * FROM users WHERE user_id = ?", (user.id,)
            )
            if row:
                return dict(row)
            max_row = await fetchone(
                conn, "SELECT COALESCE(MAX(short_id), 0) AS max_id FROM users", ()
            )
            short_id = int(max_row["max_id"]) + 1
            await conn.execute(
                """
                INSERT INTO users (user_id, short_id, username, name, rating, agreed)
                VALUES (?, ?, ?, ?, ?, 1)
                """,
                (user.id, short_id, user.username, user.first_name, DEFAULTS.start_rating),
            )
            row = await fetchone(
                conn, "SELECT * FROM users WHERE user_id = ?", (user.id,)
            )
        logger.info("registered user %s with short id %s", user.id, short_id)
        return dict(row)

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        if not fits_integer(user_id):
            return None
        row = await self._fetchone(
            "SELECT * FROM users WHERE user_id = ?",
            (user_id,),
        )
        return dict(row) if row else None

    async def get_rating(self, user_id: int) -> int:
        """Current balance; used by tests and admin scripts."""
        row = await self._fetchone(
            "SELECT rating FROM users WHERE user_id = ?",
            (user_id,),
        )
        return int(row["rating"]) if row else 0

    async def is_admin(self, user_id: int) -> bool:
        row = await self._fetchone(
            "SELECT 1 FROM admins WHERE user_id = ?",
            (user_id,),
        )
        return row is not None

    async def add_admin(self, user_id: int) -> None:
        """Seeding helper; the HTTP surface never grants admin rights."""
        async with self.transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO admins (user_id) VALUES (?)",
                (user_id,),
            )

    async def get_pvp_wins(self, user_id: int) -> int:
        row = await self._fetchone(
            "SELECT wins FROM pvp_stats WHERE user_id = ?",
            (user_id,),
        )
        return int(row["wins"]) if row else 0

    async def get_farm_animals(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT animal_key, COUNT(*) AS count
            FROM user_farm
            WHERE user_id = ?
            GROUP BY animal_key
            ORDER BY MIN(id)
            """,
            (user_id,),
        )
        return [dict(row) for row in rows]

    async def get_protection_keys(self, user_id: int) -> List[str]:
        rows = await self._fetchall(
            "SELECT item_key FROM user_protection WHERE user_id = ? ORDER BY bought_at",
            (user_id,),
        )
        return [row["item_key"] for row in rows]

    async def create_task(
        self,
        title: str,
        description: Optional[str] = None,
        link: Optional[str] = None,
        reward: int = 0,
    ) -> int:
        """Seeding helper; tasks are created out of band, not over HTTP."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO active_tasks (title, description, link, reward)
                VALUES (?, ?, ?, ?)
                """,
                (title, description, link, reward),
            )
            return cursor.lastrowid

    async def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        if not fits_integer(task_id):
            return None
        row = await self._fetchone(
            "SELECT * FROM active_tasks WHERE id = ?",
            (task_id,),
        )
        return dict(row) if row else None

    async def get_tasks_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT t.*,
                   CASE WHEN c.status = 1 THEN 'completed'
                        WHEN c.status = 0 THEN 'pending'
                        ELSE 'available' END AS status
            FROM active_tasks t
            LEFT JOIN completed_tasks c ON c.task_id = t.id AND c.user_id = ?
            WHERE c.status IS NULL OR c.status != 1
            ORDER BY t.id
            """,
            (user_id,),
        )
        return [dict(row) for row in rows]

    async def mark_task_pending(self, user_id: int, task_id: int) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO completed_tasks (user_id, task_id, status)
                VALUES (?, ?, 0)
                ON CONFLICT(user_id, task_id) DO UPDATE SET
                    status = 0,
                    updated_at = CURRENT_TIMESTAMP
                WHERE completed_tasks.status != 1
                """,
                (user_id, task_id),
            )

    async def mark_task_completed(self, user_id: int, task_id: int) -> None:
        """Seeding helper; completion is confirmed by moderators out of band."""
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO completed_tasks (user_id, task_id, status)
                VALUES (?, ?, 1)
                ON CONFLICT(user_id, task_id) DO UPDATE SET
                    status = 1,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (user_id, task_id),
            )

    async def get_pending_offers(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT b.battle_id, b.challenger_id, b.bet, b.status, b.created_at,
                   u.name AS challenger_name, u.short_id AS challenger_short_id
            FROM pvp_battles b
            JOIN users u ON u.user_id = b.challenger_id
            WHERE b.status = 'pending'
            ORDER BY b.created_at DESC, b.battle_id DESC
            """,
            (),
        )
        return [dict(row) for row in rows]

    async def get_offer(self, battle_id: int) -> Optional[Dict[str, Any]]:
        """Full offer row including settlement columns; used by tests."""
        if not fits_integer(battle_id):
            return None
        row = await self._fetchone(
            "SELECT * FROM pvp_battles WHERE battle_id = ?",
            (battle_id,),
        )
        return dict(row) if row else None

    async def get_top_users(self, limit: int = DEFAULTS.top_limit) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT user_id, short_id, name, username, rating
            FROM users
            ORDER BY rating DESC, short_id ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [dict(row) for row in rows]

    async def create_giveaway(
        self,
        title: str,
        description: Optional[str] = None,
        prize: Optional[str] = None,
        ends_at: Optional[str] = None,
        status: str = "active",
    ) -> int:
        """Seeding helper; giveaways are created out of band, not over HTTP."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO giveaways (title, description, prize, status, ends_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (title, description, prize, status, ends_at),
            )
            return cursor.lastrowid

    async def get_giveaway(self, giveaway_id: int) -> Optional[Dict[str, Any]]:
        if not fits_integer(giveaway_id):
            return None
        row = await self._fetchone(
            "SELECT * FROM giveaways WHERE id = ?",
            (giveaway_id,),
        )
        return dict(row) if row else None

    async def get_active_giveaways(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT g.*,
                   (SELECT COUNT(*) FROM giveaway_users gu
                    WHERE gu.giveaway_id = g.id) AS participants
            FROM giveaways g
            WHERE g.status = 'active'
            ORDER BY g.id
            """,
            (),
        )
        return [dict(row) for row in rows]

    async def add_giveaway_participant(self, giveaway_id: int, user_id: int) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO giveaway_users (giveaway_id, user_id)
                VALUES (?, ?)
                """,
                (giveaway_id, user_id),
            )
            return cursor.rowcount > 0

    async def create_promo_code(self, code: str, reward: int, max_uses: int = 1) -> str:
        """Seeding helper; codes are issued out of band, not over HTTP."""
        canonical = code.strip().upper()
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO promo_codes (code, reward, max_uses, current_uses)
                VALUES (?, ?, ?, 0)
                """,
                (canonical, reward, max_uses),
            )
        return canonical

    async def get_promo_code(self, code: str) -> Optional[Dict[str, Any]]:
        """Read-back helper for tests and admin scripts."""
        row = await self._fetchone(
            "SELECT * FROM promo_codes WHERE code = ?",
            (code.strip().upper(),),
        )
        return dict(row) if row else None

    async def get_last_roll(self, user_id: int) -> Optional[str]:
        """Read-back helper for tests; ``roll_dice`` reads it inside its transaction."""
        row = await self._fetchone(
            "SELECT last_roll FROM dice_rolls WHERE user_id = ?",
            (user_id,),
        )
        return row["last_roll"] if row else None

    async def get_users_for_export(self) -> List[Dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM users ORDER BY short_id ASC",
            (),
        )
        return [dict(row) for row in rows]

    async def _fetchone(self, query: str, params: tuple) -> Optional[aiosqlite.Row]:
        assert self.conn is not None and self._lock is not None
        async with self._lock:
            return await fetchone(self.conn, query, params)

    async def _fetchall(self, query: str, params: tuple) -> List[aiosqlite.Row]:
        assert self.conn is not None and self._lock is not None
        async with self._lock:
            return await fetchall(self.conn, query, params)

    async def _ensure_column(self, table: str, column: str, column_type: str) -> None:
        assert self.conn is not None
        rows = await fetchall(self.conn, f"PRAGMA table_info({table})", ())
        if column in _column_names(rows):
            return
        await self.conn.execute(
            f"ALTER TABLE {table} ADD COLUMN {column} {column_type}"
        )
        logger.info("added column %s.%s", table, column)


def _column_names(rows: Iterable[aiosqlite.Row]) -> set[str]:
    return {row["name"] for row in rows}
