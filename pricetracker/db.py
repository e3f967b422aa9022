"""SQLite persistence layer for the price tracker.

One `Database` object backs the Item Store, the History Store and the
Subscription Store. Every call opens its own short-lived connection, so the
object can be shared between the scheduler threads and the request path.
Cross-writer safety comes from SQLite itself: unique constraints,
single-statement updates and compare-and-swap on `updated_at`.
"""

from __future__ import annotations

import datetime as _dt
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from .config import MAX_DEVICES, MAX_TRACKED_ITEMS, SQLITE_DB_PATH
from .errors import ItemNotModified, StoreWriteFailed, UserNotFound
from .models import Device, Item, ItemHistory, TrackedItem, User
from .sites import Site
from .utils import utcnow

_PAGE_SIZE = 200

_ITEM_COLUMNS = """
    id, site, merchant_id, product_id, url, name, price, stock, image_url,
    description, rating, sold, price_history_previous, price_history_highest,
    price_history_lowest, price_last_changed_at, created_at, updated_at
"""


def _ts(value: Optional[_dt.datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so text comparison and ordering follow time.

    Naive datetimes are taken as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    return value.astimezone(_dt.timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[_dt.datetime]:
    return _dt.datetime.fromisoformat(value) if value else None


def _row_to_item(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        site=Site(row["site"]),
        merchant_id=row["merchant_id"],
        product_id=row["product_id"],
        url=row["url"],
        name=row["name"],
        price=int(row["price"]),
        stock=int(row["stock"]),
        image_url=row["image_url"],
        description=row["description"],
        rating=float(row["rating"]),
        sold=int(row["sold"]),
        price_history_previous=row["price_history_previous"],
        price_history_highest=row["price_history_highest"],
        price_history_lowest=row["price_history_lowest"],
        price_last_changed_at=_parse_ts(row["price_last_changed_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_tracked(row: sqlite3.Row) -> TrackedItem:
    return TrackedItem(
        item_id=row["item_id"],
        price_lower_threshold=int(row["price_lower_threshold"]),
        notification_enabled=bool(row["notification_enabled"]),
        notification_count=int(row["notification_count"]),
        notification_count_total=int(row["notification_count_total"]),
        last_notified_at=_parse_ts(row["last_notified_at"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_device(row: sqlite3.Row) -> Device:
    return Device(
        device_id=row["device_id"],
        fcm_token=row["fcm_token"],
        last_seen=_parse_ts(row["last_seen"]),
        created_at=_parse_ts(row["created_at"]),
    )


class Database:
    def __init__(self, path: str = SQLITE_DB_PATH, *, timeout: float = 30.0) -> None:
        self.path = path
        self.timeout = timeout

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and always closes."""
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error opening database at {self.path}") from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            # WAL keeps the scheduler's reads from blocking request-path writes.
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("""
              CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                site TEXT NOT NULL,
                merchant_id TEXT NOT NULL,
                product_id TEXT NOT NULL,
                url TEXT NOT NULL,
                name TEXT NOT NULL,
                price INTEGER NOT NULL,
                stock INTEGER NOT NULL,
                image_url TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                rating REAL NOT NULL DEFAULT 0,
                sold INTEGER NOT NULL DEFAULT 0,
                price_history_previous INTEGER,
                price_history_highest INTEGER,
                price_history_lowest INTEGER,
                price_last_changed_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (site, merchant_id, product_id)
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS item_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                item_id INTEGER NOT NULL,
                price INTEGER NOT NULL,
                stock INTEGER NOT NULL,
                rating REAL NOT NULL DEFAULT 0,
                sold INTEGER NOT NULL DEFAULT 0,
                ts TEXT NOT NULL
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL DEFAULT '',
                email TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS devices (
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                device_id TEXT NOT NULL,
                fcm_token TEXT NOT NULL DEFAULT '',
                last_seen TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, device_id)
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS tracked_items (
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                item_id INTEGER NOT NULL,
                price_lower_threshold INTEGER NOT NULL,
                notification_enabled INTEGER NOT NULL DEFAULT 1,
                notification_count INTEGER NOT NULL DEFAULT 0,
                notification_count_total INTEGER NOT NULL DEFAULT 0,
                last_notified_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, item_id)
              )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_items_site ON items(site, id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_item_history_item_ts ON item_history(item_id, ts)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tracked_items_item ON tracked_items(item_id)")

    # ---- Item Store ----------------------------------------------------------

    def find_item(self, item_id: int) -> Optional[Item]:
        try:
            with self._connect() as conn:
                row = conn.execute(f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ?", (item_id,)).fetchone()
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error reading Item id={item_id}") from e
        return _row_to_item(row) if row else None

    def find_item_by_identity(self, site: Site, merchant_id: str, product_id: str) -> Optional[Item]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_ITEM_COLUMNS} FROM items WHERE site = ? AND merchant_id = ? AND product_id = ?",
                    (Site(site).value, merchant_id, product_id),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error reading Item {site}/{merchant_id}/{product_id}") from e
        return _row_to_item(row) if row else None

    def insert_item(self, item: Item) -> int:
        """Insert a new Item and return its id.

        Raises StoreWriteFailed if the identity triple already exists.
        """
        _, item_id = self._insert_item(item, ignore_conflict=False)
        return item_id

    def insert_or_get_item(self, item: Item) -> Tuple[Item, bool]:
        """Insert `item` unless its identity exists; return (stored item, created).

        The unique constraint decides the race between concurrent inserts: the
        loser gets the winner's row back with created=False.
        """
        created, item_id = self._insert_item(item, ignore_conflict=True)
        if created:
            stored = self.find_item(item_id)
        else:
            stored = self.find_item_by_identity(item.site, item.merchant_id, item.product_id)
        if stored is None:
            raise StoreWriteFailed(f"item vanished after insert: {item.identity}")
        return stored, created

    def _insert_item(self, item: Item, *, ignore_conflict: bool) -> Tuple[bool, int]:
        now = utcnow()
        conflict = "ON CONFLICT(site, merchant_id, product_id) DO NOTHING" if ignore_conflict else ""
        params = (
            Site(item.site).value, item.merchant_id, item.product_id, item.url, item.name,
            int(item.price), int(item.stock), item.image_url or "", item.description or "",
            float(item.rating or 0.0), int(item.sold or 0),
            item.price_history_previous, item.price_history_highest, item.price_history_lowest,
            _ts(item.price_last_changed_at), _ts(item.created_at or now), _ts(item.updated_at or now),
        )
        try:
            with self._connect() as conn:
                cur = conn.execute(f"""
                    INSERT INTO items (
                      site, merchant_id, product_id, url, name, price, stock, image_url,
                      description, rating, sold, price_history_previous, price_history_highest,
                      price_history_lowest, price_last_changed_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    {conflict}
                """, params)
                return cur.rowcount == 1, cur.lastrowid
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error inserting Item: {item.identity}") from e

    def replace_item(self, item: Item, expected_updated_at: Optional[_dt.datetime] = None) -> None:
        """Overwrite every mutable field of a stored Item.

        With `expected_updated_at`, the write only lands if the row still
        carries that version; otherwise ItemNotModified is raised.
        """
        if item.id is None:
            raise StoreWriteFailed("cannot replace an Item without id")
        sql = """
            UPDATE items
               SET url = ?, name = ?, price = ?, stock = ?, image_url = ?, description = ?,
                   rating = ?, sold = ?, price_history_previous = ?, price_history_highest = ?,
                   price_history_lowest = ?, price_last_changed_at = ?, updated_at = ?
             WHERE id = ?
        """
        params: list = [
            item.url, item.name, int(item.price), int(item.stock), item.image_url or "",
            item.description or "", float(item.rating or 0.0), int(item.sold or 0),
            item.price_history_previous, item.price_history_highest, item.price_history_lowest,
            _ts(item.price_last_changed_at), _ts(item.updated_at or utcnow()), item.id,
        ]
        if expected_updated_at is not None:
            sql += " AND updated_at = ?"
            params.append(_ts(expected_updated_at))
        try:
            with self._connect() as conn:
                cur = conn.execute(sql, tuple(params))
                modified = cur.rowcount
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error replacing Item id={item.id}") from e
        if modified == 0:
            raise ItemNotModified(f"Item not modified when replacing, id={item.id}")

    def iter_items_by_site(self, site: Site) -> Iterator[Item]:
        """Yield every Item of `site` ordered by id.

        Pages are read on separate connections, so nothing stays open while
        the caller works through an item.
        """
        last_id = 0
        while True:
            try:
                with self._connect() as conn:
                    rows = conn.execute(
                        f"SELECT {_ITEM_COLUMNS} FROM items WHERE site = ? AND id > ? ORDER BY id LIMIT ?",
                        (Site(site).value, last_id, _PAGE_SIZE),
                    ).fetchall()
            except sqlite3.Error as e:
                raise StoreWriteFailed(f"error reading {Site(site).value} items after id={last_id}") from e
            if not rows:
                return
            for row in rows:
                yield _row_to_item(row)
            last_id = rows[-1]["id"]

    # ---- History Store -------------------------------------------------------

    def append_history(self, history: ItemHistory) -> int:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "INSERT INTO item_history (item_id, price, stock, rating, sold, ts) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        history.item_id, int(history.price), int(history.stock),
                        float(history.rating or 0.0), int(history.sold or 0), _ts(history.timestamp),
                    ),
                )
                return cur.lastrowid
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error inserting ItemHistory for item_id={history.item_id}") from e

    def find_history(
        self,
        item_id: int,
        start: Optional[_dt.datetime] = None,
        end: Optional[_dt.datetime] = None,
    ) -> List[ItemHistory]:
        """History samples of one item, oldest first, within [start, end]."""
        sql = "SELECT id, item_id, price, stock, rating, sold, ts FROM item_history WHERE item_id = ?"
        params: list = [item_id]
        if start is not None:
            sql += " AND ts >= ?"
            params.append(_ts(start))
        if end is not None:
            sql += " AND ts <= ?"
            params.append(_ts(end))
        sql += " ORDER BY ts ASC, id ASC"
        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error reading ItemHistory for item_id={item_id}") from e
        return [
            ItemHistory(
                id=r["id"],
                item_id=r["item_id"],
                price=int(r["price"]),
                stock=int(r["stock"]),
                rating=float(r["rating"]),
                sold=int(r["sold"]),
                timestamp=_parse_ts(r["ts"]),
            )
            for r in rows
        ]

    # ---- Subscription Store --------------------------------------------------

    def create_user(self, name: str, email: str) -> int:
        now = _ts(utcnow())
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "INSERT INTO users (name, email, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (name, email, now, now),
                )
                return cur.lastrowid
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error inserting User: {email}") from e

    def find_user(self, user_id: int) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, name, email, created_at, updated_at FROM users WHERE id = ?", (user_id,)
                ).fetchone()
                if row is None:
                    return None
                devices = conn.execute(
                    "SELECT device_id, fcm_token, last_seen, created_at FROM devices "
                    "WHERE user_id = ? ORDER BY last_seen DESC",
                    (user_id,),
                ).fetchall()
                tracked = conn.execute(
                    "SELECT * FROM tracked_items WHERE user_id = ? ORDER BY updated_at DESC",
                    (user_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error reading User id={user_id}") from e
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            devices=[_row_to_device(d) for d in devices],
            tracked_items=[_row_to_tracked(t) for t in tracked],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def upsert_tracked_item(self, user_id: int, tracked: TrackedItem, limit: int = MAX_TRACKED_ITEMS) -> None:
        """Update the user's subscription to `tracked.item_id` or add it.

        An update rewrites threshold, enabled flag and notification_count (a
        resubscription re-arms it). An insert is followed, in the same
        transaction, by trimming the user's list to the `limit` most recently
        updated subscriptions.
        """
        now = _ts(utcnow())
        try:
            with self._connect() as conn:
                self._touch_user(conn, user_id, now)
                cur = conn.execute("""
                    UPDATE tracked_items
                       SET price_lower_threshold = ?,
                           notification_enabled = ?,
                           notification_count = ?,
                           updated_at = ?
                     WHERE user_id = ? AND item_id = ?
                """, (
                    int(tracked.price_lower_threshold), int(bool(tracked.notification_enabled)),
                    int(tracked.notification_count), now, user_id, tracked.item_id,
                ))
                if cur.rowcount:
                    return
                conn.execute("""
                    INSERT INTO tracked_items (
                      user_id, item_id, price_lower_threshold, notification_enabled,
                      notification_count, notification_count_total, last_notified_at,
                      created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    user_id, tracked.item_id, int(tracked.price_lower_threshold),
                    int(bool(tracked.notification_enabled)), int(tracked.notification_count),
                    int(tracked.notification_count_total), _ts(tracked.last_notified_at), now, now,
                ))
                conn.execute("""
                    DELETE FROM tracked_items
                     WHERE user_id = ?
                       AND item_id NOT IN (
                         SELECT item_id FROM tracked_items
                          WHERE user_id = ?
                          ORDER BY updated_at DESC, rowid DESC
                          LIMIT ?
                       )
                """, (user_id, user_id, limit))
        except sqlite3.Error as e:
            raise StoreWriteFailed(
                f"error updating or adding TrackedItem for user_id={user_id}, item_id={tracked.item_id}"
            ) from e

    def remove_tracked_item(self, user_id: int, item_id: int) -> bool:
        now = _ts(utcnow())
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM tracked_items WHERE user_id = ? AND item_id = ?", (user_id, item_id)
                )
                if cur.rowcount:
                    conn.execute("UPDATE users SET updated_at = ? WHERE id = ?", (now, user_id))
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error removing TrackedItem user_id={user_id}, item_id={item_id}") from e

    def add_device(self, user_id: int, device: Device, limit: int = MAX_DEVICES) -> None:
        """Register or refresh a device, keeping the `limit` most recently seen."""
        now = utcnow()
        last_seen = _ts(device.last_seen or now)
        try:
            with self._connect() as conn:
                self._touch_user(conn, user_id, _ts(now))
                conn.execute("""
                    INSERT INTO devices (user_id, device_id, fcm_token, last_seen, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, device_id) DO UPDATE SET
                      fcm_token = excluded.fcm_token,
                      last_seen = excluded.last_seen
                """, (user_id, device.device_id, device.fcm_token or "", last_seen, _ts(now)))
                conn.execute("""
                    DELETE FROM devices
                     WHERE user_id = ?
                       AND device_id NOT IN (
                         SELECT device_id FROM devices
                          WHERE user_id = ?
                          ORDER BY last_seen DESC, rowid DESC
                          LIMIT ?
                       )
                """, (user_id, user_id, limit))
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error adding Device {device.device_id} to user_id={user_id}") from e

    def update_device_token(self, user_id: int, device_id: str, fcm_token: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE devices SET fcm_token = ?, last_seen = ? WHERE user_id = ? AND device_id = ?",
                    (fcm_token, _ts(utcnow()), user_id, device_id),
                )
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error updating token of Device {device_id}, user_id={user_id}") from e

    def remove_device(self, user_id: int, device_id: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM devices WHERE user_id = ? AND device_id = ?", (user_id, device_id)
                )
                return cur.rowcount > 0
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error removing Device {device_id}, user_id={user_id}") from e

    def find_users_tracking_item(self, item_id: int) -> List[User]:
        """Users subscribed to `item_id`, each with only that TrackedItem and its devices."""
        try:
            with self._connect() as conn:
                tracked_rows = conn.execute(
                    "SELECT * FROM tracked_items WHERE item_id = ? ORDER BY user_id", (item_id,)
                ).fetchall()
                if not tracked_rows:
                    return []
                user_ids = [r["user_id"] for r in tracked_rows]
                placeholders = ",".join("?" * len(user_ids))
                device_rows = conn.execute(
                    f"SELECT user_id, device_id, fcm_token, last_seen, created_at FROM devices "
                    f"WHERE user_id IN ({placeholders}) ORDER BY user_id, last_seen DESC",
                    tuple(user_ids),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"error reading users tracking item_id={item_id}") from e
        devices: dict[int, list[Device]] = {}
        for d in device_rows:
            devices.setdefault(d["user_id"], []).append(_row_to_device(d))
        return [
            User(id=r["user_id"], tracked_items=[_row_to_tracked(r)], devices=devices.get(r["user_id"], []))
            for r in tracked_rows
        ]

    def increment_notification_counters(
        self,
        user_ids: Sequence[int],
        item_id: int,
        now: Optional[_dt.datetime] = None,
    ) -> int:
        """Bump the counters of `item_id` for every listed user in one statement.

        Returns how many subscriptions were actually modified; users that
        unsubscribed in the meantime are simply not counted.
        """
        ids = list(user_ids)
        if not ids:
            return 0
        ts = _ts(now or utcnow())
        placeholders = ",".join("?" * len(ids))
        try:
            with self._connect() as conn:
                cur = conn.execute(f"""
                    UPDATE tracked_items
                       SET notification_count = notification_count + 1,
                           notification_count_total = notification_count_total + 1,
                           last_notified_at = ?,
                           updated_at = ?
                     WHERE item_id = ? AND user_id IN ({placeholders})
                """, (ts, ts, item_id, *ids))
                return cur.rowcount
        except sqlite3.Error as e:
            raise StoreWriteFailed(
                f"error incrementing notification counts, user_ids={ids}, item_id={item_id}"
            ) from e

    @staticmethod
    def _touch_user(conn: sqlite3.Connection, user_id: int, now: Optional[str]) -> None:
        cur = conn.execute("UPDATE users SET updated_at = ? WHERE id = ?", (now, user_id))
        if cur.rowcount == 0:
            raise UserNotFound(f"no user with id={user_id}")


__all__ = ["Database"]
