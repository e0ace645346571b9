"""
SQLite persistence for Nearby Search.

Holds the geocoding response cache.  Nominatim's usage policy asks
clients to cache results, and repeated lookups of the same place string
are common while a user edits a search.

No ORM, just raw sqlite3.  Cache errors are logged and swallowed so they
never break a lookup.
"""

import sqlite3
import os
import hashlib
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("NEARBY_DB_PATH", "nearby_search.db")

_GEOCODE_CACHE_TTL_DAYS = 30


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    conn = _get_db()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS geocode_cache (
            cache_key     TEXT PRIMARY KEY,
            request_kind  TEXT NOT NULL,
            response_json TEXT NOT NULL,
            created_at    TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_geocode_cache_created ON geocode_cache(created_at);
    """)
    conn.commit()
    conn.close()


def geocode_cache_key(kind: str, params: dict) -> str:
    """Deterministic key from the request kind and its sorted parameters."""
    canonical = kind + "?" + "&".join(f"{k}={params[k]}" for k in sorted(params))
    return hashlib.sha256(canonical.encode()).hexdigest()


def get_geocode_cache(cache_key: str, ttl_days: Optional[int] = None) -> Optional[str]:
    """Look up a cached geocoding response by key.

    Returns the raw JSON string if found and younger than the TTL, else None.
    """
    if ttl_days is None:
        ttl_days = _GEOCODE_CACHE_TTL_DAYS
    try:
        conn = _get_db()
        row = conn.execute(
            """SELECT response_json, created_at FROM geocode_cache
               WHERE cache_key = ?""",
            (cache_key,),
        ).fetchone()
        conn.close()

        if not row:
            return None

        created_str = row["created_at"]
        if created_str:
            try:
                created = datetime.fromisoformat(created_str)
                if created.tzinfo is None:
                    created = created.replace(tzinfo=timezone.utc)
                if datetime.now(timezone.utc) - created > timedelta(days=ttl_days):
                    return None  # Expired
            except (ValueError, TypeError):
                pass

        return row["response_json"]
    except Exception:
        logger.warning("Geocode cache lookup failed", exc_info=True)
        return None


def set_geocode_cache(cache_key: str, request_kind: str, response_json: str) -> None:
    """Store a geocoding response in the persistent cache."""
    try:
        conn = _get_db()
        conn.execute(
            """INSERT OR REPLACE INTO geocode_cache
                   (cache_key, request_kind, response_json, created_at)
               VALUES (?, ?, ?, ?)""",
            (cache_key, request_kind, response_json, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        conn.close()
    except Exception:
        logger.warning("Geocode cache write failed", exc_info=True)


def purge_geocode_cache(older_than_days: Optional[int] = None) -> int:
    """Delete expired cache rows. Returns the number removed."""
    if older_than_days is None:
        older_than_days = _GEOCODE_CACHE_TTL_DAYS
    cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
    conn = _get_db()
    cur = conn.execute("DELETE FROM geocode_cache WHERE created_at < ?", (cutoff,))
    count = cur.rowcount
    conn.commit()
    conn.close()
    return count
