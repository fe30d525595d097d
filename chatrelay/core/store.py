"""
Durable document store backed by SQLite
---------------------------------------
Three collections, each a table keyed by ``id``:

  identities     -> contact_address is UNIQUE
  conversations  -> pair_key (sorted participant ids) is UNIQUE
  messages       -> append-only; ``seq`` records insertion order

Every operation runs under one asyncio.Lock, so the store is the single-writer
serialization point for the process. Unique violations surface as
ConflictRetry; callers re-read instead of failing.

Filters are equality dicts AND-ed together. A tuple key means "any of these
columns equals the value", e.g. {("participant_a", "participant_b"): uid}.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import aiosqlite

from .errors import ConflictRetry, StoreUnavailable

log = logging.getLogger("chatrelay.core.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS identities(
    id              TEXT PRIMARY KEY,
    display_name    TEXT NOT NULL,
    contact_address TEXT NOT NULL UNIQUE,
    avatar_ref      TEXT NOT NULL DEFAULT '',
    last_seen_at    INT  NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS conversations(
    id                   TEXT PRIMARY KEY,
    participant_a        TEXT NOT NULL,
    participant_b        TEXT NOT NULL,
    pair_key             TEXT NOT NULL UNIQUE,
    last_message_preview TEXT NOT NULL DEFAULT '',
    last_message_at      INT  NOT NULL DEFAULT 0,
    created_at           INT  NOT NULL
);
CREATE INDEX IF NOT EXISTS conversations_a ON conversations(participant_a);
CREATE INDEX IF NOT EXISTS conversations_b ON conversations(participant_b);
CREATE TABLE IF NOT EXISTS messages(
    seq                 INTEGER PRIMARY KEY AUTOINCREMENT,
    id                  TEXT NOT NULL UNIQUE,
    conversation_id     TEXT NOT NULL REFERENCES conversations(id),
    sender_id           TEXT NOT NULL,
    sender_display_name TEXT NOT NULL,
    body                TEXT NOT NULL,
    kind                TEXT NOT NULL DEFAULT 'text',
    sent_at             INT  NOT NULL,
    read                INT  NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS messages_by_conversation ON messages(conversation_id, seq);
"""

COLUMNS: Dict[str, frozenset[str]] = {
    "identities": frozenset({"id", "display_name", "contact_address", "avatar_ref", "last_seen_at"}),
    "conversations": frozenset({
        "id", "participant_a", "participant_b", "pair_key",
        "last_message_preview", "last_message_at", "created_at",
    }),
    "messages": frozenset({
        "seq", "id", "conversation_id", "sender_id", "sender_display_name",
        "body", "kind", "sent_at", "read",
    }),
}

Doc = Dict[str, Any]
FilterKey = Union[str, Tuple[str, ...]]
Filter = Dict[FilterKey, Any]
Sort = Sequence[Tuple[str, str]]


def _columns(collection: str) -> frozenset[str]:
    try:
        return COLUMNS[collection]
    except KeyError:
        raise ValueError(f"unknown collection: {collection}") from None


def _check(collection: str, names: Iterable[str]) -> None:
    allowed = _columns(collection)
    for name in names:
        if name not in allowed:
            raise ValueError(f"unknown column {collection}.{name}")


def _where(collection: str, flt: Optional[Filter]) -> Tuple[str, List[Any]]:
    if not flt:
        return "", []
    clauses: List[str] = []
    params: List[Any] = []
    for key, value in flt.items():
        cols = key if isinstance(key, tuple) else (key,)
        _check(collection, cols)
        clauses.append("(" + " OR ".join(f"{c} = ?" for c in cols) + ")")
        params.extend([value] * len(cols))
    return " WHERE " + " AND ".join(clauses), params


def _order(collection: str, sort: Optional[Sort]) -> str:
    if not sort:
        return ""
    parts = []
    for col, direction in sort:
        _check(collection, [col])
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError(f"bad sort direction: {direction}")
        parts.append(f"{col} {direction.upper()}")
    return " ORDER BY " + ", ".join(parts)


class StoreSession:
    """Operations bound to the store's connection while its lock is held."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def find(
        self,
        collection: str,
        flt: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        where, params = _where(collection, flt)
        sql = f"SELECT * FROM {collection}{where}{_order(collection, sort)}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        async with self._conn.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [dict(row) for row in rows]

    async def find_one(self, collection: str, flt: Filter) -> Optional[Doc]:
        rows = await self.find(collection, flt, limit=1)
        return rows[0] if rows else None

    async def find_by_id(self, collection: str, id_: str) -> Optional[Doc]:
        return await self.find_one(collection, {"id": id_})

    async def insert(self, collection: str, doc: Doc) -> Doc:
        _check(collection, doc.keys())
        cols = list(doc.keys())
        sql = (
            f"INSERT INTO {collection}({', '.join(cols)}) "
            f"VALUES({', '.join('?' for _ in cols)})"
        )
        try:
            await self._conn.execute(sql, [doc[c] for c in cols])
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc) or "PRIMARY KEY" in str(exc):
                raise ConflictRetry(collection, str(exc)) from exc
            raise
        stored = await self.find_by_id(collection, doc["id"])
        if stored is None:
            raise RuntimeError(f"{collection} row {doc['id']!r} missing after insert")
        return stored

    async def update_by_id(self, collection: str, id_: str, patch: Doc) -> Optional[Doc]:
        if not patch:
            return await self.find_by_id(collection, id_)
        _check(collection, patch.keys())
        if "id" in patch:
            raise ValueError("id is immutable")
        cols = list(patch.keys())
        sql = f"UPDATE {collection} SET {', '.join(f'{c} = ?' for c in cols)} WHERE id = ?"
        try:
            cur = await self._conn.execute(sql, [patch[c] for c in cols] + [id_])
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise ConflictRetry(collection, str(exc)) from exc
            raise
        if cur.rowcount == 0:
            return None
        return await self.find_by_id(collection, id_)


class Store:
    """SQLite-backed persistent store; see module docstring for semantics."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = str(path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._conn is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn: Optional[aiosqlite.Connection] = None
        try:
            conn = await aiosqlite.connect(self.path)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys=ON;")
            await conn.executescript(SCHEMA)
            await conn.commit()
        except (sqlite3.Error, OSError) as exc:
            if conn is not None:
                await conn.close()
            raise StoreUnavailable(f"cannot open store at {self.path}: {exc}") from exc
        self._conn = conn
        log.info("Store opened at %s", self.path)

    async def close(self) -> None:
        if self._conn is None:
            return
        async with self._lock:
            await self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        """Run several operations atomically; commit on success, roll back on error."""

        async with self._lock:
            conn = self._require()
            try:
                yield StoreSession(conn)
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    # ------------------------------------------------------------------
    # Single-operation shortcuts
    # ------------------------------------------------------------------

    async def find(
        self,
        collection: str,
        flt: Optional[Filter] = None,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Doc]:
        async with self.transaction() as tx:
            return await tx.find(collection, flt, sort, limit)

    async def find_one(self, collection: str, flt: Filter) -> Optional[Doc]:
        async with self.transaction() as tx:
            return await tx.find_one(collection, flt)

    async def find_by_id(self, collection: str, id_: str) -> Optional[Doc]:
        async with self.transaction() as tx:
            return await tx.find_by_id(collection, id_)

    async def insert(self, collection: str, doc: Doc) -> Doc:
        async with self.transaction() as tx:
            return await tx.insert(collection, doc)

    async def update_by_id(self, collection: str, id_: str, patch: Doc) -> Optional[Doc]:
        async with self.transaction() as tx:
            return await tx.update_by_id(collection, id_, patch)

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreUnavailable("store is not open")
        return self._conn


__all__ = ["Store", "StoreSession", "SCHEMA"]
