"""
Database connection and relation storage
"""
import asyncpg
from typing import Optional, List, Dict, Any, Sequence, Tuple
from datetime import datetime
import logging

from .config import settings
from .domain.models import Collection
from .domain.repositories import IRelationRepository, Row
from .errors import DuplicateIgnored, InvalidTarget, PermissionDenied, Unexpected

logger = logging.getLogger(__name__)


# Whitelisted columns per table; every identifier in generated SQL comes from here
COLUMNS: Dict[Collection, Tuple[str, ...]] = {
    Collection.FOLLOWS: ("follower_id", "following_id", "created_at"),
    Collection.FRIEND_REQUESTS: ("id", "from_user", "to_user", "status", "created_at"),
    Collection.FRIENDSHIPS: ("requester_id", "receiver_id", "status", "created_at"),
    Collection.BLOCKED_USERS: ("blocker_id", "blocked_id", "created_at"),
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS follows (
        follower_id TEXT NOT NULL,
        following_id TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        PRIMARY KEY (follower_id, following_id),
        CONSTRAINT ck_follows_not_self CHECK (follower_id <> following_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_follows_following
    ON follows (following_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS friend_requests (
        id BIGSERIAL PRIMARY KEY,
        from_user TEXT NOT NULL,
        to_user TEXT NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'pending',
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        CONSTRAINT uq_friend_requests_pair UNIQUE (from_user, to_user),
        CONSTRAINT ck_friend_requests_not_self CHECK (from_user <> to_user),
        CONSTRAINT ck_friend_requests_status
            CHECK (status IN ('pending', 'accepted', 'declined'))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_friend_requests_to_status
    ON friend_requests (to_user, status)
    """,
    """
    CREATE TABLE IF NOT EXISTS friendships (
        requester_id TEXT NOT NULL,
        receiver_id TEXT NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'accepted',
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        PRIMARY KEY (requester_id, receiver_id),
        CONSTRAINT ck_friendships_not_self CHECK (requester_id <> receiver_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blocked_users (
        blocker_id TEXT NOT NULL,
        blocked_id TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        PRIMARY KEY (blocker_id, blocked_id),
        CONSTRAINT ck_blocked_users_not_self CHECK (blocker_id <> blocked_id)
    )
    """,
    """
    CREATE OR REPLACE VIEW profile_follow_counts AS
    SELECT p.profile_id,
           (SELECT COUNT(*) FROM follows f WHERE f.following_id = p.profile_id) AS followers_count,
           (SELECT COUNT(*) FROM follows f WHERE f.follower_id = p.profile_id) AS following_count
    FROM (
        SELECT following_id AS profile_id FROM follows
        UNION
        SELECT follower_id AS profile_id FROM follows
    ) p
    """,
]


def _columns(collection: Collection, names) -> List[str]:
    """Validate column names against the whitelist"""
    allowed = COLUMNS[collection]
    for name in names:
        if name not in allowed:
            raise ValueError(f"Unknown column {name!r} for {collection.value}")
    return list(names)


def _where(collection: Collection, match: Row, start: int = 1) -> Tuple[str, List[Any]]:
    """Build an AND-ed equality WHERE clause"""
    if not match:
        return "", []
    cols = _columns(collection, match.keys())
    clauses = [f"{col} = ${start + i}" for i, col in enumerate(cols)]
    return " WHERE " + " AND ".join(clauses), [match[c] for c in cols]


def _affected(status: str) -> int:
    """Parse the row count out of an asyncpg command status ("DELETE 2")"""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError, AttributeError):
        return 0


class Database(IRelationRepository):
    """PostgreSQL relation store using asyncpg"""

    def __init__(self):
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Create database connection pool"""
        try:
            self.pool = await asyncpg.create_pool(
                settings.DATABASE_URL,
                min_size=1,
                max_size=settings.DB_POOL_SIZE,
                command_timeout=60,
            )
            logger.info("Database connection pool created successfully")

            if settings.DB_INIT_SCHEMA:
                await self._init_schema()
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed")

    async def _init_schema(self):
        """Initialize relation tables and the follow-count view"""
        async with self.pool.acquire() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
        logger.info("Relation schema initialized")

    async def _run(self, actor_id: Optional[str], method: str, query: str, *args):
        """
        Run a statement in its own transaction, scoped to ``actor_id``.

        The actor is exposed to row policies as the transaction-local
        setting ``app.actor_id``.
        """
        if not self.pool:
            raise Unexpected("Database is not connected")

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if actor_id is not None:
                        await conn.execute(
                            "SELECT set_config('app.actor_id', $1, true)", str(actor_id)
                        )
                    return await getattr(conn, method)(query, *args)
        except asyncpg.UniqueViolationError as e:
            raise DuplicateIgnored(str(e), cause=e)
        except asyncpg.InsufficientPrivilegeError as e:
            raise PermissionDenied(str(e), cause=e)
        except asyncpg.CheckViolationError as e:
            raise InvalidTarget(str(e), cause=e)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database error: {e}")
            raise Unexpected(str(e), cause=e)

    async def insert(
        self, collection: Collection, values: Row, *, actor_id: Optional[str] = None
    ) -> Row:
        """Insert a row"""
        values = {"created_at": datetime.utcnow(), **values}
        cols = _columns(collection, values.keys())
        placeholders = ", ".join(f"${i + 1}" for i in range(len(cols)))
        query = f"""
            INSERT INTO {collection.value} ({", ".join(cols)})
            VALUES ({placeholders})
            RETURNING *
        """
        row = await self._run(actor_id, "fetchrow", query, *[values[c] for c in cols])
        return dict(row)

    async def upsert(
        self,
        collection: Collection,
        values: Row,
        on_conflict: Sequence[str],
        *,
        actor_id: Optional[str] = None,
    ) -> Row:
        """Insert or overwrite on the conflict columns"""
        values = {"created_at": datetime.utcnow(), **values}
        cols = _columns(collection, values.keys())
        keys = _columns(collection, on_conflict)
        placeholders = ", ".join(f"${i + 1}" for i in range(len(cols)))

        # created_at is kept from the original row
        updates = [c for c in cols if c not in keys and c != "created_at"] or [keys[0]]
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in updates)

        query = f"""
            INSERT INTO {collection.value} ({", ".join(cols)})
            VALUES ({placeholders})
            ON CONFLICT ({", ".join(keys)}) DO UPDATE SET {assignments}
            RETURNING *
        """
        row = await self._run(actor_id, "fetchrow", query, *[values[c] for c in cols])
        return dict(row)

    async def update(
        self,
        collection: Collection,
        values: Row,
        match: Row,
        *,
        actor_id: Optional[str] = None,
    ) -> List[Row]:
        """Conditional update"""
        cols = _columns(collection, values.keys())
        assignments = ", ".join(f"{c} = ${i + 1}" for i, c in enumerate(cols))
        where, where_args = _where(collection, match, start=len(cols) + 1)
        query = f"UPDATE {collection.value} SET {assignments}{where} RETURNING *"
        rows = await self._run(
            actor_id, "fetch", query, *[values[c] for c in cols], *where_args
        )
        return [dict(row) for row in rows]

    async def delete(
        self, collection: Collection, match: Row, *, actor_id: Optional[str] = None
    ) -> int:
        """Delete matching rows"""
        where, args = _where(collection, match)
        if not where:
            raise ValueError("Refusing to delete without a filter")
        status = await self._run(
            actor_id, "execute", f"DELETE FROM {collection.value}{where}", *args
        )
        return _affected(status)

    async def select_one(self, collection: Collection, match: Row) -> Optional[Row]:
        """Fetch a single row"""
        where, args = _where(collection, match)
        row = await self._run(
            None, "fetchrow", f"SELECT * FROM {collection.value}{where} LIMIT 1", *args
        )
        return dict(row) if row else None

    async def select_many(
        self,
        collection: Collection,
        match: Row,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        """Fetch matching rows ordered by created_at, newest first"""
        where, args = _where(collection, match)
        query = f"SELECT * FROM {collection.value}{where} ORDER BY created_at DESC"
        if limit is not None:
            query += f" LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}"
            args = [*args, limit, offset]
        rows = await self._run(None, "fetch", query, *args)
        return [dict(row) for row in rows]

    async def count(self, collection: Collection, match: Row) -> int:
        """Count matching rows"""
        where, args = _where(collection, match)
        result = await self._run(
            None, "fetchval", f"SELECT COUNT(*) FROM {collection.value}{where}", *args
        )
        return int(result or 0)

    async def get_follow_counts(self, profile_id: str) -> Optional[Row]:
        """Read the profile_follow_counts view"""
        query = """
            SELECT profile_id, followers_count, following_count
            FROM profile_follow_counts
            WHERE profile_id = $1
        """
        row = await self._run(None, "fetchrow", query, profile_id)
        return dict(row) if row else None


# Global database instance
db = Database()


async def get_db() -> Database:
    """Dependency for getting database instance"""
    return db
