"""Core storage layer for the memory evolution engine.

Manages a SQLite database holding memories, their embeddings, relationship
edges, the append-only feedback log and the evolution audit log.  All public
methods are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections -- each thread pool worker keeps one
      long-lived connection open.
    - WAL mode enables concurrent readers alongside a single writer.

Every :class:`sqlite3.Error` escaping this module is re-raised as
:class:`~memevolve.errors.StoreFailure` with the original chained.

Usage::

    from memevolve.storage import Storage

    store = Storage(config)
    await store.initialize()
    row_id = await store.execute_write("INSERT INTO memories ...", (...))
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import struct
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable, TypeVar

import anyio
import sqlite_vec

from memevolve.config import EvolutionConfig
from memevolve.errors import StoreFailure

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def to_iso(moment: datetime) -> str:
    """Format *moment* as a fixed-width ISO-8601 UTC string.

    Fixed width (always microseconds, always ``+00:00``) keeps stored
    timestamps lexicographically comparable inside SQL.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored timestamp.  Naive values are taken to be UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(earlier: str | datetime, now: datetime | None = None) -> float:
    """Fractional days elapsed from *earlier* to *now* (never negative)."""
    if isinstance(earlier, str):
        earlier = from_iso(earlier)
    now = now or utc_now()
    return max(0.0, (now - earlier).total_seconds() / 86400.0)


# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into sqlite-vec's compact float32 blob format."""
    return sqlite_vec.serialize_float32(vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack a blob produced by :func:`serialize_embedding`."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"{count}f", data))


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Memories.  content is an opaque encoded payload; decoded_cache holds the
-- human-readable rendering when the encoder produced one.
CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL DEFAULT 'lesson'
        CHECK(type IN ('entity','lesson','error','relation')),
    content TEXT NOT NULL,
    decoded_cache TEXT,
    scope TEXT NOT NULL DEFAULT 'global' CHECK(scope IN ('global','project')),
    project_hash TEXT,
    importance INTEGER NOT NULL DEFAULT 5 CHECK(importance BETWEEN 1 AND 9),
    usefulness_score REAL NOT NULL DEFAULT 5.0
        CHECK(usefulness_score BETWEEN 1.0 AND 9.0),
    times_helpful INTEGER NOT NULL DEFAULT 0 CHECK(times_helpful >= 0),
    times_unhelpful INTEGER NOT NULL DEFAULT 0 CHECK(times_unhelpful >= 0),
    status TEXT NOT NULL DEFAULT 'active'
        CHECK(status IN ('active','archived','consolidated')),
    level INTEGER NOT NULL DEFAULT 1 CHECK(level BETWEEN 1 AND 3),
    parent_id INTEGER REFERENCES memories(id),
    created_at TEXT NOT NULL,
    accessed_at TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0 CHECK(access_count >= 0),
    last_decay TEXT,
    CHECK(status != 'consolidated' OR parent_id IS NOT NULL)
);

-- Stored vectors, one per memory.
CREATE TABLE IF NOT EXISTS memory_embeddings (
    memory_id INTEGER PRIMARY KEY REFERENCES memories(id) ON DELETE CASCADE,
    vector BLOB NOT NULL,
    model TEXT NOT NULL,
    dims INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

-- Embedding cache keyed by content hash.
CREATE TABLE IF NOT EXISTS embedding_cache (
    content_hash TEXT PRIMARY KEY,
    embedding BLOB NOT NULL,
    model TEXT NOT NULL,
    created_at TEXT NOT NULL
);

-- Edges between memories.
CREATE TABLE IF NOT EXISTS memory_relationships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id INTEGER NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    target_id INTEGER NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    relationship TEXT NOT NULL CHECK(relationship IN (
        'similar','supersedes','contradicts','derived_from'
    )),
    strength REAL NOT NULL DEFAULT 1.0 CHECK(strength >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(source_id, target_id, relationship)
);

-- Append-only feedback audit trail.  No foreign key: the trail outlives
-- permanently pruned memories.
CREATE TABLE IF NOT EXISTS memory_feedback (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id INTEGER NOT NULL,
    feedback_type TEXT NOT NULL CHECK(feedback_type IN (
        'helpful','unhelpful','outdated','incorrect'
    )),
    context TEXT,
    created_at TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS memory_feedback_no_update
BEFORE UPDATE ON memory_feedback BEGIN
    SELECT RAISE(ABORT, 'memory_feedback is append-only');
END;

CREATE TRIGGER IF NOT EXISTS memory_feedback_no_delete
BEFORE DELETE ON memory_feedback BEGIN
    SELECT RAISE(ABORT, 'memory_feedback is append-only');
END;

-- Audit log for batch evolution passes.
CREATE TABLE IF NOT EXISTS evolution_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    details TEXT,
    memories_affected TEXT,
    created_at TEXT NOT NULL
);

-- Advisory locks for cross-process mutual exclusion.
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status);
CREATE INDEX IF NOT EXISTS idx_memories_level ON memories(level);
CREATE INDEX IF NOT EXISTS idx_memories_parent ON memories(parent_id);
CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope, project_hash);
CREATE INDEX IF NOT EXISTS idx_memories_usefulness
    ON memories(usefulness_score) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_memories_accessed
    ON memories(accessed_at) WHERE status = 'active';
CREATE INDEX IF NOT EXISTS idx_rel_source ON memory_relationships(source_id);
CREATE INDEX IF NOT EXISTS idx_rel_target ON memory_relationships(target_id);
CREATE INDEX IF NOT EXISTS idx_rel_type ON memory_relationships(relationship);
CREATE INDEX IF NOT EXISTS idx_feedback_memory ON memory_feedback(memory_id);
CREATE INDEX IF NOT EXISTS idx_feedback_time ON memory_feedback(created_at);
"""

_STALE_LOCK_MINUTES = 10


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    config:
        The engine configuration.  ``db_path``, ``backup_dir`` and
        ``backup_count`` are read from it.
    db_path:
        Optional override of ``config.db_path`` (handy in tests).
    """

    def __init__(self, config: EvolutionConfig, db_path: Path | None = None) -> None:
        self._db_path: Path = db_path or config.db_path
        self._backup_dir: Path = config.backup_dir
        self._backup_count: int = config.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory and backup directory.
        2. Creates all tables, triggers and indexes.
        3. Runs an automatic backup (pruning old backups).
        """
        try:
            await anyio.to_thread.run_sync(self._initialize_sync)
        except sqlite3.Error as exc:
            raise StoreFailure(f"Failed to initialise {self._db_path}: {exc}") from exc
        self._initialized = True
        log.info("Storage initialised at %s", self._db_path)

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        # Dedicated one-time connection for schema setup (not thread-local).
        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.executescript(_INDEX_SQL)
            conn.execute("ANALYZE")
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with WAL journaling, foreign key
        enforcement and :class:`sqlite3.Row` as the row factory.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows."""
        return await self._run(lambda: self._execute_sync(sql, params))

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await self._run(lambda: self._execute_write_sync(sql, params))

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_many(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        """Execute a statement for each set of parameters under the write lock."""
        await self._run(lambda: self._execute_many_sync(sql, params_list))

    def _execute_many_sync(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executemany(sql, params_list)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        the transaction.  Commit happens on success; any exception rolls
        the whole transaction back before propagating, so a callback never
        leaves a half-applied mutation behind.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await self._run(lambda: self._execute_transaction_sync(fn))

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    async def _run(self, fn: Callable[[], _T]) -> _T:
        """Run *fn* in a worker thread, mapping sqlite errors to StoreFailure."""
        try:
            return await anyio.to_thread.run_sync(fn)
        except sqlite3.Error as exc:
            raise StoreFailure(f"SQLite error: {exc}") from exc

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 10 minutes are cleaned up before the
        acquisition attempt.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        cutoff = to_iso(utc_now() - timedelta(minutes=_STALE_LOCK_MINUTES))
        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < ?",
            (name, cutoff),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder, acquired_at) VALUES (?, ?, ?)",
                (name, holder, to_iso(utc_now())),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given the lock is only released when it is held by
        that holder.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute("DELETE FROM locks WHERE name = ?", (name,))

    @contextlib.asynccontextmanager
    async def advisory_lock(self, name: str) -> AsyncIterator[bool]:
        """Hold the named advisory lock for the duration of the block.

        Yields ``True`` when the lock was obtained and ``False`` when
        another holder owns it; in the latter case nothing is released on
        exit.

        Usage::

            async with storage.advisory_lock("evolution") as acquired:
                if not acquired:
                    return
                ...
        """
        holder = uuid.uuid4().hex
        acquired = await self.execute_transaction(
            lambda conn: self.try_acquire_lock(conn, name, holder)
        )
        try:
            yield acquired
        finally:
            if acquired:
                await self.execute_transaction(
                    lambda conn: self.release_lock(conn, name, holder)
                )

    # ------------------------------------------------------------------
    # Evolution audit log
    # ------------------------------------------------------------------

    async def log_action(
        self,
        action: str,
        details: Any,
        memories_affected: Iterable[int] = (),
    ) -> int:
        """Append one entry to ``evolution_log``.

        *details* is stored as JSON; *memories_affected* as a sorted JSON
        list of ids.
        """
        return await self.execute_write(
            "INSERT INTO evolution_log (action, details, memories_affected, created_at) "
            "VALUES (?, ?, ?, ?)",
            (
                action,
                json.dumps(details, default=str),
                json.dumps(sorted(set(memories_affected))),
                to_iso(utc_now()),
            ),
        )

    async def history(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent ``evolution_log`` entries, newest first."""
        rows = await self.execute(
            "SELECT id, action, details, memories_affected, created_at "
            "FROM evolution_log ORDER BY created_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        entries: list[dict[str, Any]] = []
        for row in rows:
            entry: dict[str, Any] = {
                "id": row["id"],
                "action": row["action"],
                "created_at": row["created_at"],
            }
            for key in ("details", "memories_affected"):
                try:
                    entry[key] = json.loads(row[key]) if row[key] else None
                except (json.JSONDecodeError, TypeError):
                    entry[key] = row[key]
            entries.append(entry)
        return entries

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.
        """
        return await self._run(self._backup_sync)

    def _backup_sync(self) -> Path:
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path
        if self._backup_count == 0:
            return self._db_path

        timestamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"memevolve_{timestamp}.db"

        # SQLite's online backup API gives a consistent snapshot.
        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("memevolve_*.db"),
            key=lambda p: p.name,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for the core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'             AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'memory_embeddings',            COUNT(*)        FROM memory_embeddings
            UNION ALL
            SELECT 'memory_relationships',         COUNT(*)        FROM memory_relationships
            UNION ALL
            SELECT 'memory_feedback',              COUNT(*)        FROM memory_feedback
            UNION ALL
            SELECT 'evolution_log',                COUNT(*)        FROM evolution_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        self._initialized = False
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
