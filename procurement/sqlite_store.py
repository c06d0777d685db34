"""
SQLite backend for the document store.

A single database file (output/panel.db) holds the whole tree, so several
panel processes pointed at the same file share orders, profiles and the
order counter:

  nodes       one row per written document: path -> JSON value.  No row
              is ever an ancestor of another row; writes below an existing
              row are merged into that row's JSON, writes above existing
              rows replace them.
  revisions   subtree_rev / set_rev per path (see procurement.store).
  store_meta  the global revision sequence.

Every write runs inside BEGIN IMMEDIATE, which takes the database write
lock, so the compare-and-swap commit of a transaction is atomic across
processes.  Reads run in a deferred transaction so the value and its
version token come from the same snapshot.

Blocking sqlite3 calls are moved off the event loop with asyncio.to_thread.
Changes made by other processes are picked up by polling each subscribed
path every `poll_interval` seconds.
"""
import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

from .errors import StoreError
from .store import Store, get_in, normalize, set_in, split_path, _Subscription

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    path   TEXT PRIMARY KEY,
    value  TEXT NOT NULL            -- JSON document
);

CREATE TABLE IF NOT EXISTS revisions (
    path         TEXT PRIMARY KEY,  -- '' is the root
    subtree_rev  INTEGER NOT NULL DEFAULT 0,
    set_rev      INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS store_meta (
    key    TEXT PRIMARY KEY,
    value  INTEGER NOT NULL
);

INSERT OR IGNORE INTO store_meta (key, value) VALUES ('seq', 0);
"""


def _p(segments: tuple[str, ...]) -> str:
    return "/".join(segments)


class SQLiteStore(Store):
    """Document store persisted to one SQLite file."""

    def __init__(self, db_path: Path, poll_interval: float = 1.0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.db_path = db_path
        self.poll_interval = poll_interval
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Store schema ready: %s", self.db_path)

    async def _run(self, fn, *args) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            raise StoreError(f"SQLite store error: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous tree operations (always called inside a transaction)
    # ------------------------------------------------------------------

    @staticmethod
    def _holder(conn: sqlite3.Connection, segments: tuple[str, ...], strict: bool) -> Optional[sqlite3.Row]:
        """Return the row stored at an ancestor (or, unless strict, at the path itself)."""
        end = len(segments) if strict else len(segments) + 1
        candidates = [_p(segments[:i]) for i in range(end)]
        if not candidates:
            return None
        marks = ",".join("?" * len(candidates))
        return conn.execute(
            f"SELECT path, value FROM nodes WHERE path IN ({marks}) "
            f"ORDER BY length(path) ASC LIMIT 1",
            candidates,
        ).fetchone()

    @staticmethod
    def _descendants(conn: sqlite3.Connection, segments: tuple[str, ...]) -> list[sqlite3.Row]:
        if not segments:
            return conn.execute("SELECT path, value FROM nodes").fetchall()
        prefix = _p(segments) + "/"
        return conn.execute(
            "SELECT path, value FROM nodes WHERE substr(path, 1, ?) = ?",
            (len(prefix), prefix),
        ).fetchall()

    def _read(self, conn: sqlite3.Connection, segments: tuple[str, ...]) -> Any:
        holder = self._holder(conn, segments, strict=False)
        if holder is not None:
            held = split_path(holder["path"])
            return get_in(json.loads(holder["value"]), segments[len(held):])
        tree: Any = None
        for row in self._descendants(conn, segments):
            tree = set_in(tree, split_path(row["path"])[len(segments):], json.loads(row["value"]))
        return tree

    @staticmethod
    def _token(conn: sqlite3.Connection, segments: tuple[str, ...]) -> tuple:
        paths = [_p(segments[:i]) for i in range(len(segments) + 1)]
        marks = ",".join("?" * len(paths))
        rows = {
            r["path"]: r
            for r in conn.execute(
                f"SELECT path, subtree_rev, set_rev FROM revisions WHERE path IN ({marks})",
                paths,
            ).fetchall()
        }
        own = rows.get(paths[-1])
        ancestors = tuple(rows[p]["set_rev"] if p in rows else 0 for p in paths[:-1])
        return (own["subtree_rev"] if own else 0, ancestors)

    def _write(self, conn: sqlite3.Connection, segments: tuple[str, ...], value: Any) -> None:
        path = _p(segments)
        holder = self._holder(conn, segments, strict=True)
        if holder is not None:
            held = split_path(holder["path"])
            tree = set_in(json.loads(holder["value"]), segments[len(held):], value)
            if tree is None:
                conn.execute("DELETE FROM nodes WHERE path = ?", (holder["path"],))
            else:
                conn.execute(
                    "UPDATE nodes SET value = ? WHERE path = ?",
                    (json.dumps(tree), holder["path"]),
                )
        else:
            if segments:
                prefix = path + "/"
                conn.execute(
                    "DELETE FROM nodes WHERE path = ? OR substr(path, 1, ?) = ?",
                    (path, len(prefix), prefix),
                )
            else:
                conn.execute("DELETE FROM nodes")
            if value is not None:
                conn.execute(
                    "INSERT INTO nodes (path, value) VALUES (?, ?)",
                    (path, json.dumps(value)),
                )

        conn.execute("UPDATE store_meta SET value = value + 1 WHERE key = 'seq'")
        seq = conn.execute("SELECT value FROM store_meta WHERE key = 'seq'").fetchone()[0]
        conn.execute(
            """INSERT INTO revisions (path, subtree_rev, set_rev) VALUES (?, ?, ?)
               ON CONFLICT(path) DO UPDATE SET subtree_rev = excluded.subtree_rev,
                                               set_rev     = excluded.set_rev""",
            (path, seq, seq),
        )
        for i in range(len(segments)):
            conn.execute(
                """INSERT INTO revisions (path, subtree_rev) VALUES (?, ?)
                   ON CONFLICT(path) DO UPDATE SET subtree_rev = excluded.subtree_rev""",
                (_p(segments[:i]), seq),
            )

    # ------------------------------------------------------------------
    # Blocking entry points (run in a worker thread)
    # ------------------------------------------------------------------

    def _get_sync(self, segments: tuple[str, ...]) -> tuple[Any, tuple]:
        with self._conn() as conn:
            conn.execute("BEGIN")
            return self._read(conn, segments), self._token(conn, segments)

    def _set_sync(self, writes: list[tuple[tuple[str, ...], Any]]) -> None:
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            for segments, value in writes:
                self._write(conn, segments, value)

    def _cas_sync(self, segments: tuple[str, ...], token: tuple, value: Any) -> bool:
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            if self._token(conn, segments) != token:
                return False
            self._write(conn, segments, value)
            return True

    # ------------------------------------------------------------------
    # Store interface
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Any:
        value, _ = await self._run(self._get_sync, split_path(path))
        return value

    async def set(self, path: str, value: Any) -> None:
        segments = split_path(path)
        await self._run(self._set_sync, [(segments, normalize(value))])
        logger.debug("set %s", path)
        self._notify(segments)

    async def update(self, path: str, partial: dict) -> None:
        base = split_path(path)
        writes = [(base + split_path(key), normalize(value)) for key, value in partial.items()]
        await self._run(self._set_sync, writes)
        logger.debug("update %s (%d keys)", path, len(writes))
        self._notify(base)

    async def _read_versioned(self, segments: tuple[str, ...]) -> tuple[Any, Any]:
        return await self._run(self._get_sync, segments)

    async def _commit_if_unchanged(self, segments: tuple[str, ...], token: Any, value: Any) -> bool:
        return await self._run(self._cas_sync, segments, token, value)

    # ------------------------------------------------------------------
    # Cross-process change detection
    # ------------------------------------------------------------------

    def _start_polling(self, sub: _Subscription) -> None:
        if self.poll_interval <= 0:
            return
        sub.poller = asyncio.get_running_loop().create_task(self._poll(sub))

    async def _poll(self, sub: _Subscription) -> None:
        while sub.active:
            await asyncio.sleep(self.poll_interval)
            self._schedule(sub)
