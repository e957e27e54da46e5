"""Relational mirror of the MIDI registry.

One SQLite connection shared by every table accessor. Statements are
serialized through ``Store.db_lock`` so interleaved tasks never share a
half-finished transaction.

Read helpers log and return empty results on ``sqlite3.Error``. The token
write path raises ``StoreError`` so the indexer can report the store's own
message.
"""

import asyncio
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from .utils import json_dumps, json_loads, normalize_key

logger = structlog.get_logger(__name__)


class StoreError(Exception):
    pass


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS midi (
        id INTEGER PRIMARY KEY,
        metadata TEXT,
        created_by TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',
        total_supply INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        manufacturer TEXT NOT NULL DEFAULT '',
        name_key TEXT NOT NULL,
        manufacturer_key TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(name_key, manufacturer_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS midi_devices (
        midi INTEGER NOT NULL REFERENCES midi(id),
        device INTEGER NOT NULL REFERENCES devices(id),
        PRIMARY KEY (midi, device)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_midi_devices_device ON midi_devices(device)",
    """
    CREATE TABLE IF NOT EXISTS listings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        listing_address TEXT NOT NULL,
        token_id INTEGER NOT NULL,
        amount INTEGER NOT NULL,
        price TEXT NOT NULL,
        seller_address TEXT NOT NULL,
        transaction_hash TEXT,
        log_index INTEGER,
        block_number INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(transaction_hash, log_index)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_listings_seller ON listings(seller_address)",
    "CREATE INDEX IF NOT EXISTS idx_listings_token ON listings(token_id)",
    """
    CREATE TABLE IF NOT EXISTS queue (
        id INTEGER PRIMARY KEY,
        attempts INTEGER NOT NULL DEFAULT 1,
        error TEXT,
        operator TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_queue_attempts ON queue(attempts)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        last_processed_block INTEGER NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


def _midi_row(row: sqlite3.Row) -> Dict[str, Any]:
    out = dict(row)
    out["metadata"] = json_loads(out.get("metadata"))
    out["tags"] = json_loads(out.get("tags")) or []
    return out


class Store:
    def __init__(self, db_path: str = "./midi.db"):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self.db_lock = asyncio.Lock()

        self.midi = MidiTable(self)
        self.devices = DevicesTable(self)
        self.midi_devices = MidiDevicesTable(self)
        self.listings = ListingsTable(self)
        self.queue = QueueTable(self)

    async def init_db(self) -> None:
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        cur = self.conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)
        self.conn.commit()

    async def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _cursor(self) -> sqlite3.Cursor:
        if not self.conn:
            raise RuntimeError("DB not initialized")
        return self.conn.cursor()

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one write statement and commit. Returns the affected row count."""
        async with self.db_lock:
            cur = self._cursor()
            try:
                cur.execute(sql, params)
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
            return cur.rowcount

    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        async with self.db_lock:
            return self._cursor().execute(sql, params).fetchall()

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        async with self.db_lock:
            return self._cursor().execute(sql, params).fetchone()

    async def get_last_processed_block(self) -> Optional[int]:
        row = await self.fetchone("SELECT last_processed_block FROM sync_state WHERE id = 1")
        return int(row["last_processed_block"]) if row else None

    async def update_sync_state(self, block_number: int) -> None:
        await self.execute(
            """
            INSERT INTO sync_state (id, last_processed_block) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET
                last_processed_block = MAX(last_processed_block, excluded.last_processed_block),
                updated_at = CURRENT_TIMESTAMP
            """,
            (block_number,),
        )


class MidiTable:
    def __init__(self, store: Store):
        self.store = store

    async def create(
        self,
        token_id: int,
        metadata: Dict[str, Any],
        created_by: str,
        tags: Iterable[str],
        device_ids: Iterable[int] = (),
    ) -> None:
        """Insert the token row and its device links in one transaction.

        Raises StoreError with the sqlite message when anything fails; nothing
        is left behind in that case.
        """
        async with self.store.db_lock:
            cur = self.store._cursor()
            try:
                cur.execute(
                    "INSERT INTO midi (id, metadata, created_by, tags) VALUES (?, ?, ?, ?)",
                    (token_id, json_dumps(metadata), created_by, json_dumps(list(tags))),
                )
                cur.executemany(
                    "INSERT INTO midi_devices (midi, device) VALUES (?, ?)",
                    [(token_id, device_id) for device_id in device_ids],
                )
                self.store.conn.commit()
            except sqlite3.Error as exc:
                self.store.conn.rollback()
                raise StoreError(f"{type(exc).__name__}: {exc}") from exc

    async def get(self, token_id: int) -> Optional[Dict[str, Any]]:
        try:
            row = await self.store.fetchone("SELECT * FROM midi WHERE id = ?", (token_id,))
        except sqlite3.Error as exc:
            logger.error("error fetching midi", token_id=token_id, error=str(exc))
            return None
        return _midi_row(row) if row else None

    async def ids(self) -> Optional[List[int]]:
        """All stored token ids, or None when the store could not be read."""
        try:
            rows = await self.store.fetchall("SELECT id FROM midi ORDER BY id")
        except sqlite3.Error as exc:
            logger.error("error fetching midi ids", error=str(exc))
            return None
        return [int(row["id"]) for row in rows]

    async def burn(self, token_id: int) -> int:
        return await self.store.execute("DELETE FROM midi WHERE id = ?", (token_id,))


class DevicesTable:
    def __init__(self, store: Store):
        self.store = store

    async def fetch(self, name: str, manufacturer: str) -> Optional[Dict[str, Any]]:
        try:
            row = await self.store.fetchone(
                "SELECT * FROM devices WHERE name_key = ? AND manufacturer_key = ?",
                (normalize_key(name), normalize_key(manufacturer)),
            )
        except sqlite3.Error as exc:
            logger.error("error fetching device", name=name, manufacturer=manufacturer, error=str(exc))
            return None
        return dict(row) if row else None

    async def create(self, name: str, manufacturer: str) -> Optional[Dict[str, Any]]:
        """Upsert on the normalized key and return whichever row owns it."""
        try:
            await self.store.execute(
                """
                INSERT OR IGNORE INTO devices (name, manufacturer, name_key, manufacturer_key)
                VALUES (?, ?, ?, ?)
                """,
                (name.strip(), manufacturer.strip(), normalize_key(name), normalize_key(manufacturer)),
            )
        except sqlite3.Error as exc:
            logger.error("error creating new device", name=name, manufacturer=manufacturer, error=str(exc))
            return None

        created = await self.fetch(name, manufacturer)
        if created is None:
            logger.error("data not found creating new device", name=name, manufacturer=manufacturer)
        return created


class MidiDevicesTable:
    def __init__(self, store: Store):
        self.store = store

    async def fetch(self, token_id: int) -> List[int]:
        try:
            rows = await self.store.fetchall(
                "SELECT device FROM midi_devices WHERE midi = ? ORDER BY rowid", (token_id,)
            )
        except sqlite3.Error as exc:
            logger.error("error fetching midi devices", token_id=token_id, error=str(exc))
            return []
        return [int(row["device"]) for row in rows]

    async def burn(self, token_id: int) -> int:
        return await self.store.execute("DELETE FROM midi_devices WHERE midi = ?", (token_id,))


class ListingsTable:
    def __init__(self, store: Store):
        self.store = store

    async def create(
        self,
        token_id: int,
        listing_address: str,
        amount: int,
        price: int,
        seller_address: str,
        transaction_hash: Optional[str] = None,
        log_index: Optional[int] = None,
        block_number: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        try:
            await self.store.execute(
                """
                INSERT OR IGNORE INTO listings (
                    listing_address, token_id, amount, price, seller_address,
                    transaction_hash, log_index, block_number
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    listing_address,
                    int(token_id),
                    int(amount),
                    str(price),
                    seller_address,
                    transaction_hash,
                    log_index,
                    block_number,
                ),
            )
            if transaction_hash is not None and log_index is not None:
                row = await self.store.fetchone(
                    "SELECT * FROM listings WHERE transaction_hash = ? AND log_index = ?",
                    (transaction_hash, log_index),
                )
            else:
                row = await self.store.fetchone("SELECT * FROM listings ORDER BY id DESC LIMIT 1")
        except sqlite3.Error as exc:
            logger.error("error creating new listing", listing_address=listing_address, error=str(exc))
            return None

        if row is None:
            logger.error("data not found creating new listing", listing_address=listing_address)
            return None
        return dict(row)

    async def fetch_all(
        self,
        seller_address: Optional[str] = None,
        device_id: Optional[int] = None,
        limit: int = 200,
    ) -> List[Dict[str, Any]]:
        if not seller_address and device_id is None:
            logger.error("neither seller_address nor device_id provided")
            return []

        clauses = []
        params: List[Any] = []
        if seller_address:
            clauses.append("l.seller_address = ? COLLATE NOCASE")
            params.append(seller_address)
        if device_id is not None:
            clauses.append("EXISTS (SELECT 1 FROM midi_devices md WHERE md.midi = l.token_id AND md.device = ?)")
            params.append(int(device_id))
        params.append(limit)

        sql = (
            "SELECT l.*, m.created_by AS midi_created_by, m.metadata AS midi_metadata "
            "FROM listings l LEFT JOIN midi m ON m.id = l.token_id "
            f"WHERE {' AND '.join(clauses)} ORDER BY l.id DESC LIMIT ?"
        )
        try:
            rows = await self.store.fetchall(sql, params)
        except sqlite3.Error as exc:
            logger.error("error fetching listings", seller_address=seller_address, device_id=device_id, error=str(exc))
            return []

        result = []
        for row in rows:
            item = dict(row)
            item["midi_metadata"] = json_loads(item.get("midi_metadata"))
            result.append(item)
        return result


class QueueTable:
    """Retry queue. Rows at or above the attempt ceiling stay as dead letters."""

    def __init__(self, store: Store):
        self.store = store

    async def enqueue(self, token_id: int, error: str, operator: str) -> bool:
        try:
            await self.store.execute(
                "INSERT INTO queue (id, attempts, error, operator) VALUES (?, 1, ?, ?)",
                (token_id, error, operator),
            )
        except sqlite3.Error as exc:
            logger.error("error inserting to queue", token_id=token_id, error=str(exc))
            return False
        return True

    async def remove(self, token_id: int) -> None:
        try:
            await self.store.execute("DELETE FROM queue WHERE id = ?", (token_id,))
        except sqlite3.Error as exc:
            logger.error("error deleting from queue", token_id=token_id, error=str(exc))

    async def update(self, token_id: int, attempts: int, error: str) -> None:
        try:
            await self.store.execute(
                "UPDATE queue SET attempts = ?, error = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (attempts, error, token_id),
            )
        except sqlite3.Error as exc:
            logger.error("error updating queue", token_id=token_id, error=str(exc))

    async def fetch(self, attempt_ceiling: int) -> List[Dict[str, Any]]:
        try:
            rows = await self.store.fetchall(
                "SELECT * FROM queue WHERE attempts < ? ORDER BY id", (attempt_ceiling,)
            )
        except sqlite3.Error as exc:
            logger.error("error fetching queue rows", error=str(exc))
            return []
        return [dict(row) for row in rows]

    async def fetch_all(self) -> List[Dict[str, Any]]:
        try:
            rows = await self.store.fetchall("SELECT * FROM queue ORDER BY id")
        except sqlite3.Error as exc:
            logger.error("error fetching queue rows", error=str(exc))
            return []
        return [dict(row) for row in rows]

    async def ids(self) -> Optional[List[int]]:
        try:
            rows = await self.store.fetchall("SELECT id FROM queue")
        except sqlite3.Error as exc:
            logger.error("error fetching queue ids", error=str(exc))
            return None
        return [int(row["id"]) for row in rows]
