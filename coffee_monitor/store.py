from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from .models import (
    AvailabilityRecord,
    CoffeeTags,
    Favorite,
    NotificationRecord,
    Product,
    RawObservation,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    roastery_name TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL DEFAULT '',
    price REAL,
    description TEXT NOT NULL DEFAULT '',
    organic INTEGER NOT NULL DEFAULT 0,
    first_seen_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(name, roastery_name)
);

CREATE TABLE IF NOT EXISTS availability_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL REFERENCES products(id),
    available INTEGER NOT NULL,
    price REAL,
    checked_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_favorites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    size_preference TEXT,
    organic_only INTEGER NOT NULL DEFAULT 0,
    notification_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS favorite_terms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    favorite_id INTEGER NOT NULL REFERENCES user_favorites(id) ON DELETE CASCADE,
    term TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications_sent (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id INTEGER NOT NULL,
    notification_type TEXT NOT NULL,
    sent_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS check_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    products_checked INTEGER NOT NULL DEFAULT 0,
    new_products INTEGER NOT NULL DEFAULT 0,
    newly_available INTEGER NOT NULL DEFAULT 0,
    newly_unavailable INTEGER NOT NULL DEFAULT 0,
    notifications_sent INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_history_product ON availability_history(product_id, checked_at);
CREATE INDEX IF NOT EXISTS idx_notifications_lookup
    ON notifications_sent(product_id, notification_type, sent_at);
"""

# Columns added after the first schema; applied to older databases on open.
PRODUCT_COLUMN_ADDITIONS = {
    "ai_country_of_origin": "TEXT",
    "ai_region": "TEXT",
    "ai_process_method": "TEXT",
    "ai_roast_level": "TEXT",
    "ai_variety": "TEXT",
    "ai_is_organic": "INTEGER NOT NULL DEFAULT 0",
    "ai_is_fair_trade": "INTEGER NOT NULL DEFAULT 0",
    "ai_is_decaf": "INTEGER NOT NULL DEFAULT 0",
    "ai_flavor_notes": "TEXT NOT NULL DEFAULT '[]'",
    "ai_certifications": "TEXT NOT NULL DEFAULT '[]'",
    "ai_confidence": "REAL NOT NULL DEFAULT 0",
    "ai_tagged_at": "TEXT",
    "size_extracted": "TEXT",
    "size_grams": "INTEGER",
    "product_group_id": "TEXT",
}

LATEST_RECORD_JOIN = """
    JOIN availability_history ah ON ah.id = (
        SELECT id FROM availability_history
        WHERE product_id = p.id
        ORDER BY checked_at DESC, id DESC
        LIMIT 1
    )
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> str:
    moment = value or utc_now()
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _json_list(value: Any) -> list[str]:
    if not value:
        return []
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(item) for item in data] if isinstance(data, list) else []


def _row_value(row: sqlite3.Row, key: str, default: Any = None) -> Any:
    return row[key] if key in row.keys() else default


def tags_from_row(row: sqlite3.Row) -> Optional[CoffeeTags]:
    if not _row_value(row, "ai_tagged_at"):
        return None
    return CoffeeTags(
        country_of_origin=row["ai_country_of_origin"],
        region=row["ai_region"],
        process_method=row["ai_process_method"],
        roast_level=row["ai_roast_level"],
        variety=row["ai_variety"],
        is_organic=bool(row["ai_is_organic"]),
        is_fair_trade=bool(row["ai_is_fair_trade"]),
        is_decaf=bool(row["ai_is_decaf"]),
        flavor_notes=_json_list(row["ai_flavor_notes"]),
        certifications=_json_list(row["ai_certifications"]),
        confidence=min(100.0, max(0.0, float(row["ai_confidence"] or 0))),
        tagged_at=row["ai_tagged_at"],
    )


def product_from_row(row: sqlite3.Row) -> Product:
    available = _row_value(row, "available")
    return Product(
        id=row["id"],
        name=row["name"],
        roastery_name=row["roastery_name"],
        url=row["url"],
        price=row["price"],
        description=row["description"],
        organic=bool(row["organic"]),
        tags=tags_from_row(row),
        size_extracted=row["size_extracted"],
        size_grams=row["size_grams"],
        product_group_id=row["product_group_id"],
        first_seen_at=row["first_seen_at"],
        updated_at=row["updated_at"],
        current_price=_row_value(row, "current_price"),
        available=None if available is None else bool(available),
        checked_at=_row_value(row, "checked_at") or "",
    )


def record_from_row(row: sqlite3.Row) -> AvailabilityRecord:
    return AvailabilityRecord(
        id=row["id"],
        product_id=row["product_id"],
        available=bool(row["available"]),
        price=row["price"],
        checked_at=row["checked_at"],
    )


class CoffeeStore:
    """SQLite-backed product, availability, favorite and notification log."""

    def __init__(self, path: Path, logger: Optional[logging.Logger] = None) -> None:
        self.path = path
        self._logger = logger or logging.getLogger("coffee_monitor.store")
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.executescript(SCHEMA)
        self._ensure_columns()
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_products_group ON products(product_group_id)"
        )
        self._conn.commit()

    def __enter__(self) -> "CoffeeStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _ensure_columns(self) -> None:
        columns = {row[1] for row in self._conn.execute("PRAGMA table_info(products)")}
        for name, ddl in PRODUCT_COLUMN_ADDITIONS.items():
            if name in columns:
                continue
            self._conn.execute(f"ALTER TABLE products ADD COLUMN {name} {ddl}")

    # Products

    def upsert_product(
        self,
        observation: RawObservation,
        size_extracted: Optional[str] = None,
        size_grams: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> tuple[int, bool]:
        """Insert or update the product keyed by (name, roastery).

        Returns the product id and whether the row was created.
        """
        timestamp = to_iso(now)
        existing = self._conn.execute(
            "SELECT id FROM products WHERE name = ? AND roastery_name = ?",
            (observation.name, observation.roastery_name),
        ).fetchone()
        if existing:
            self._conn.execute(
                """
                UPDATE products SET
                    url = ?,
                    price = COALESCE(?, price),
                    description = CASE WHEN ? != '' THEN ? ELSE description END,
                    organic = ?,
                    size_extracted = COALESCE(?, size_extracted),
                    size_grams = COALESCE(?, size_grams),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    observation.url,
                    observation.price,
                    observation.description,
                    observation.description,
                    int(observation.organic),
                    size_extracted,
                    size_grams,
                    timestamp,
                    existing["id"],
                ),
            )
            self._conn.commit()
            return existing["id"], False
        cursor = self._conn.execute(
            """
            INSERT INTO products
                (name, roastery_name, url, price, description, organic,
                 size_extracted, size_grams, first_seen_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                observation.name,
                observation.roastery_name,
                observation.url,
                observation.price,
                observation.description,
                int(observation.organic),
                size_extracted,
                size_grams,
                timestamp,
                timestamp,
            ),
        )
        self._conn.commit()
        return int(cursor.lastrowid), True

    def save_tags(
        self, product_id: int, tags: CoffeeTags, group_id: Optional[str]
    ) -> None:
        self._conn.execute(
            """
            UPDATE products SET
                ai_country_of_origin = ?,
                ai_region = ?,
                ai_process_method = ?,
                ai_roast_level = ?,
                ai_variety = ?,
                ai_is_organic = ?,
                ai_is_fair_trade = ?,
                ai_is_decaf = ?,
                ai_flavor_notes = ?,
                ai_certifications = ?,
                ai_confidence = ?,
                ai_tagged_at = ?,
                product_group_id = ?
            WHERE id = ?
            """,
            (
                tags.country_of_origin,
                tags.region,
                tags.process_method,
                tags.roast_level,
                tags.variety,
                int(tags.is_organic),
                int(tags.is_fair_trade),
                int(tags.is_decaf),
                json.dumps(tags.flavor_notes, ensure_ascii=False),
                json.dumps(tags.certifications, ensure_ascii=False),
                float(tags.confidence),
                tags.tagged_at or to_iso(None),
                group_id,
                product_id,
            ),
        )
        self._conn.commit()

    def update_group(
        self,
        product_id: int,
        group_id: Optional[str],
        size_extracted: Optional[str],
        size_grams: Optional[int],
    ) -> None:
        self._conn.execute(
            "UPDATE products SET product_group_id = ?, size_extracted = ?, size_grams = ? "
            "WHERE id = ?",
            (group_id, size_extracted, size_grams, product_id),
        )
        self._conn.commit()

    def get_product(self, product_id: int) -> Optional[Product]:
        row = self._conn.execute(
            "SELECT * FROM products WHERE id = ?", (product_id,)
        ).fetchone()
        return product_from_row(row) if row else None

    def find_product(self, name: str, roastery_name: str) -> Optional[Product]:
        row = self._conn.execute(
            "SELECT * FROM products WHERE name = ? AND roastery_name = ?",
            (name, roastery_name),
        ).fetchone()
        return product_from_row(row) if row else None

    def untagged_products(self, limit: Optional[int] = None) -> list[Product]:
        return self._select_products("WHERE ai_tagged_at IS NULL", limit)

    def tagged_products(self) -> list[Product]:
        return self._select_products("WHERE ai_tagged_at IS NOT NULL", None)

    def all_products(self, limit: Optional[int] = None) -> list[Product]:
        return self._select_products("", limit)

    def _select_products(self, where: str, limit: Optional[int]) -> list[Product]:
        query = f"SELECT * FROM products {where} ORDER BY id"
        params: tuple[Any, ...] = ()
        if limit:
            query += " LIMIT ?"
            params = (int(limit),)
        return [product_from_row(row) for row in self._conn.execute(query, params)]

    def group_stats(self, limit: int = 10) -> list[tuple[str, int, list[Product]]]:
        rows = self._conn.execute(
            """
            SELECT product_group_id, COUNT(*) AS variants
            FROM products
            WHERE product_group_id IS NOT NULL
            GROUP BY product_group_id
            HAVING variants > 1
            ORDER BY variants DESC, product_group_id
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        stats: list[tuple[str, int, list[Product]]] = []
        for row in rows:
            examples = [
                product_from_row(example)
                for example in self._conn.execute(
                    "SELECT * FROM products WHERE product_group_id = ? ORDER BY id LIMIT 3",
                    (row["product_group_id"],),
                )
            ]
            stats.append((row["product_group_id"], row["variants"], examples))
        return stats

    # Availability

    def record_availability(
        self,
        product_id: int,
        available: bool,
        price: Optional[float],
        checked_at: Optional[datetime] = None,
    ) -> AvailabilityRecord:
        timestamp = to_iso(checked_at)
        cursor = self._conn.execute(
            "INSERT INTO availability_history (product_id, available, price, checked_at) "
            "VALUES (?, ?, ?, ?)",
            (product_id, int(available), price, timestamp),
        )
        self._conn.commit()
        return AvailabilityRecord(
            id=int(cursor.lastrowid),
            product_id=product_id,
            available=available,
            price=price,
            checked_at=timestamp,
        )

    def last_availability_records(
        self, product_id: int, limit: int = 2
    ) -> list[AvailabilityRecord]:
        rows = self._conn.execute(
            "SELECT * FROM availability_history WHERE product_id = ? "
            "ORDER BY checked_at DESC, id DESC LIMIT ?",
            (product_id, limit),
        ).fetchall()
        return [record_from_row(row) for row in rows]

    def product_history(
        self, product_id: int, days: int = 30, now: Optional[datetime] = None
    ) -> list[AvailabilityRecord]:
        since = to_iso((now or utc_now()) - timedelta(days=days))
        rows = self._conn.execute(
            "SELECT * FROM availability_history WHERE product_id = ? AND checked_at >= ? "
            "ORDER BY checked_at DESC, id DESC",
            (product_id, since),
        ).fetchall()
        return [record_from_row(row) for row in rows]

    def available_products(self) -> list[Product]:
        rows = self._conn.execute(
            f"""
            SELECT p.*, ah.available AS available, ah.price AS current_price,
                   ah.checked_at AS checked_at
            FROM products p
            {LATEST_RECORD_JOIN}
            WHERE ah.available = 1
            ORDER BY ah.checked_at DESC, p.id
            """
        ).fetchall()
        return [product_from_row(row) for row in rows]

    def latest_available_for_roastery(self, roastery_name: str) -> list[Product]:
        rows = self._conn.execute(
            f"""
            SELECT p.*, ah.available AS available, ah.price AS current_price,
                   ah.checked_at AS checked_at
            FROM products p
            {LATEST_RECORD_JOIN}
            WHERE ah.available = 1 AND p.roastery_name = ?
            ORDER BY p.id
            """,
            (roastery_name,),
        ).fetchall()
        return [product_from_row(row) for row in rows]

    # Notifications

    def record_notification(
        self, product_id: int, notification_type: str, sent_at: Optional[datetime] = None
    ) -> None:
        self._conn.execute(
            "INSERT INTO notifications_sent (product_id, notification_type, sent_at) "
            "VALUES (?, ?, ?)",
            (product_id, notification_type, to_iso(sent_at)),
        )
        self._conn.commit()

    def count_notifications_since(
        self, product_id: int, notification_type: str, since: datetime
    ) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS sent FROM notifications_sent "
            "WHERE product_id = ? AND notification_type = ? AND sent_at >= ?",
            (product_id, notification_type, to_iso(since)),
        ).fetchone()
        return int(row["sent"])

    def recent_notifications(self, limit: int = 5) -> list[NotificationRecord]:
        rows = self._conn.execute(
            "SELECT product_id, notification_type, sent_at FROM notifications_sent "
            "ORDER BY sent_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [
            NotificationRecord(row["product_id"], row["notification_type"], row["sent_at"])
            for row in rows
        ]

    # Favorites

    def add_favorite(
        self,
        name: str,
        terms: list[str],
        description: str = "",
        size_preference: Optional[str] = None,
        organic_only: bool = False,
    ) -> int:
        timestamp = to_iso(None)
        cursor = self._conn.execute(
            "INSERT INTO user_favorites "
            "(name, description, size_preference, organic_only, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (name, description, size_preference, int(organic_only), timestamp),
        )
        favorite_id = int(cursor.lastrowid)
        for term in terms or [name]:
            self._conn.execute(
                "INSERT INTO favorite_terms (favorite_id, term, created_at) VALUES (?, ?, ?)",
                (favorite_id, term.strip(), timestamp),
            )
        self._conn.commit()
        return favorite_id

    def update_favorite(
        self,
        favorite_id: int,
        terms: Optional[list[str]] = None,
        description: Optional[str] = None,
        size_preference: Optional[str] = None,
        organic_only: Optional[bool] = None,
    ) -> None:
        self._conn.execute(
            """
            UPDATE user_favorites SET
                description = COALESCE(?, description),
                size_preference = COALESCE(?, size_preference),
                organic_only = COALESCE(?, organic_only)
            WHERE id = ?
            """,
            (
                description,
                size_preference,
                None if organic_only is None else int(organic_only),
                favorite_id,
            ),
        )
        if terms:
            self._conn.execute(
                "DELETE FROM favorite_terms WHERE favorite_id = ?", (favorite_id,)
            )
            timestamp = to_iso(None)
            for term in terms:
                self._conn.execute(
                    "INSERT INTO favorite_terms (favorite_id, term, created_at) "
                    "VALUES (?, ?, ?)",
                    (favorite_id, term.strip(), timestamp),
                )
        self._conn.commit()

    def remove_favorite(self, name: str) -> bool:
        cursor = self._conn.execute("DELETE FROM user_favorites WHERE name = ?", (name,))
        self._conn.commit()
        return cursor.rowcount > 0

    def add_term(self, favorite_id: int, term: str) -> None:
        self._conn.execute(
            "INSERT INTO favorite_terms (favorite_id, term, created_at) VALUES (?, ?, ?)",
            (favorite_id, term.strip(), to_iso(None)),
        )
        self._conn.commit()

    def remove_term(self, favorite_id: int, term: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM favorite_terms WHERE favorite_id = ? AND term = ?",
            (favorite_id, term.strip()),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def get_favorites(self, enabled_only: bool = True) -> list[Favorite]:
        query = "SELECT * FROM user_favorites"
        if enabled_only:
            query += " WHERE notification_enabled = 1"
        rows = self._conn.execute(query + " ORDER BY id").fetchall()
        return [self._favorite_from_row(row) for row in rows]

    def get_favorite_by_name(self, name: str) -> Optional[Favorite]:
        row = self._conn.execute(
            "SELECT * FROM user_favorites WHERE name = ?", (name,)
        ).fetchone()
        return self._favorite_from_row(row) if row else None

    def count_favorites(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS total FROM user_favorites").fetchone()
        return int(row["total"])

    def _favorite_from_row(self, row: sqlite3.Row) -> Favorite:
        terms = tuple(
            term_row["term"]
            for term_row in self._conn.execute(
                "SELECT term FROM favorite_terms WHERE favorite_id = ? ORDER BY id",
                (row["id"],),
            )
        )
        return Favorite(
            id=row["id"],
            name=row["name"],
            terms=terms,
            description=row["description"],
            size_preference=row["size_preference"],
            organic_only=bool(row["organic_only"]),
            notification_enabled=bool(row["notification_enabled"]),
        )

    # Check runs

    def start_check_run(self, now: Optional[datetime] = None) -> int:
        cursor = self._conn.execute(
            "INSERT INTO check_runs (started_at) VALUES (?)", (to_iso(now),)
        )
        self._conn.commit()
        return int(cursor.lastrowid)

    def finish_check_run(self, run_id: int, status: str, counts: dict[str, int]) -> None:
        self._conn.execute(
            """
            UPDATE check_runs SET
                finished_at = ?, status = ?, products_checked = ?, new_products = ?,
                newly_available = ?, newly_unavailable = ?, notifications_sent = ?,
                errors = ?
            WHERE id = ?
            """,
            (
                to_iso(None),
                status,
                counts.get("products_checked", 0),
                counts.get("new_products", 0),
                counts.get("newly_available", 0),
                counts.get("newly_unavailable", 0),
                counts.get("notifications_sent", 0),
                counts.get("errors", 0),
                run_id,
            ),
        )
        self._conn.commit()

    def last_check_run(self) -> Optional[dict[str, Any]]:
        row = self._conn.execute(
            "SELECT * FROM check_runs ORDER BY started_at DESC, id DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None

    def stats(self) -> dict[str, Any]:
        def count(query: str) -> int:
            return int(self._conn.execute(query).fetchone()[0])

        return {
            "total_products": count("SELECT COUNT(*) FROM products"),
            "tagged_products": count(
                "SELECT COUNT(*) FROM products WHERE ai_tagged_at IS NOT NULL"
            ),
            "product_groups": count(
                "SELECT COUNT(DISTINCT product_group_id) FROM products "
                "WHERE product_group_id IS NOT NULL"
            ),
            "availability_records": count("SELECT COUNT(*) FROM availability_history"),
            "notifications_sent": count("SELECT COUNT(*) FROM notifications_sent"),
            "check_runs": count("SELECT COUNT(*) FROM check_runs"),
        }

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error as exc:
            self._logger.warning("Failed to close coffee store %s: %s", self.path, exc)
