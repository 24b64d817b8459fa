"""
Report request cache backed by SQLite.

Identical request descriptors map to one entry, so repeating a report load with
unchanged context and grouping is served locally. With `ttl_seconds` set, an
entry older than the TTL is dropped on lookup so backend changes show up again.
A refresh skips the lookup and overwrites the entry. Operators can clear
everything or one tenant's entries. With `max_entries` set, the least recently
used entries are evicted on write.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional

from offer_analytics.models.schemas import RequestDescriptor

logger = logging.getLogger(__name__)

NO_TENANT = '(none)'

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS report_cache (
        cache_key TEXT PRIMARY KEY,
        query_type TEXT NOT NULL,
        dkey TEXT NOT NULL,
        params_json TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        payload_bytes INTEGER NOT NULL,
        row_count INTEGER,
        stored_at TEXT NOT NULL,
        last_hit_at TEXT,
        hit_count INTEGER NOT NULL DEFAULT 0
    )
"""


class QueryCacheService:
    """Backend payloads keyed by request descriptor."""

    def __init__(self, db_path: str, max_entries: Optional[int] = None, ttl_seconds: Optional[int] = None):
        self.db_path = db_path
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._connect() as conn:
            conn.execute(_SCHEMA)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_report_cache_dkey ON report_cache(dkey)")
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def descriptor_to_cache_key(descriptor: RequestDescriptor, query_type: str = 'report') -> str:
        """'<query_type>:<md5 of the sorted params>'."""
        return f"{query_type}:{descriptor.cache_key()}"

    def get(self, cache_key: str) -> Optional[Any]:
        """Cached payload, or None on a miss or an expired entry. A hit bumps the hit counters."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json, stored_at FROM report_cache WHERE cache_key = ?", (cache_key,)
            ).fetchone()
            if row is None:
                logger.debug(f"Cache miss: {cache_key}")
                return None
            if self._expired(row['stored_at']):
                conn.execute("DELETE FROM report_cache WHERE cache_key = ?", (cache_key,))
                conn.commit()
                logger.debug(f"Cache entry expired: {cache_key}")
                return None
            conn.execute(
                "UPDATE report_cache SET last_hit_at = ?, hit_count = hit_count + 1 WHERE cache_key = ?",
                (datetime.utcnow().isoformat(), cache_key),
            )
            conn.commit()
        logger.debug(f"Cache hit: {cache_key}")
        return json.loads(row['payload_json'])

    def _expired(self, stored_at: str) -> bool:
        if not self.ttl_seconds:
            return False
        return datetime.fromisoformat(stored_at) + timedelta(seconds=self.ttl_seconds) < datetime.utcnow()

    def set(
        self,
        cache_key: str,
        query_type: str,
        descriptor: RequestDescriptor,
        result: Any,
        row_count: Optional[int] = None
    ) -> bool:
        """
        Store (or overwrite) the payload for a descriptor.

        Args:
            cache_key: Key from descriptor_to_cache_key
            query_type: Request kind, e.g. 'report'
            descriptor: Params the payload answers; the tenant is taken from its dkey
            result: JSON-serializable backend payload
            row_count: Top-level row count, kept for the stats endpoint

        Returns:
            False when the payload could not be stored; the caller carries on uncached
        """
        try:
            payload_json = json.dumps(result)
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO report_cache
                        (cache_key, query_type, dkey, params_json, payload_json,
                         payload_bytes, row_count, stored_at, last_hit_at, hit_count)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, 0)
                    """,
                    (
                        cache_key,
                        query_type,
                        str(descriptor.params.get('dkey') or NO_TENANT),
                        json.dumps(descriptor.params, sort_keys=True),
                        payload_json,
                        len(payload_json.encode('utf-8')),
                        row_count,
                        datetime.utcnow().isoformat(),
                    ),
                )
                if self.max_entries:
                    self._evict(conn)
                conn.commit()
            return True
        except (TypeError, ValueError, sqlite3.Error) as e:
            logger.warning(f"Could not cache {cache_key}: {e}")
            return False

    def _evict(self, conn: sqlite3.Connection) -> None:
        cursor = conn.execute(
            """
            DELETE FROM report_cache WHERE cache_key IN (
                SELECT cache_key FROM report_cache
                ORDER BY COALESCE(last_hit_at, stored_at) DESC, rowid DESC
                LIMIT -1 OFFSET ?
            )
            """,
            (self.max_entries,),
        )
        if cursor.rowcount:
            logger.info(f"Evicted {cursor.rowcount} least recently used cache entries")

    def invalidate(self, cache_key: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM report_cache WHERE cache_key = ?", (cache_key,)).rowcount
            conn.commit()
        return deleted > 0

    def clear_all(self) -> int:
        """Drop every entry; returns how many were removed."""
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM report_cache").rowcount
            conn.commit()
        logger.info(f"Cleared {deleted} cache entries")
        return deleted

    def clear_by_tenant(self, dkey: str) -> int:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM report_cache WHERE dkey = ?", (dkey,)).rowcount
            conn.commit()
        logger.info(f"Cleared {deleted} cache entries for tenant {dkey}")
        return deleted

    def get_stats(self) -> Dict[str, Any]:
        """Entry count, payload size and hits, overall and per tenant."""
        with self._connect() as conn:
            overall = conn.execute(
                """
                SELECT COUNT(*) AS entries,
                       COALESCE(SUM(payload_bytes), 0) AS size_bytes,
                       COALESCE(SUM(hit_count), 0) AS hits,
                       MIN(stored_at) AS oldest,
                       MAX(stored_at) AS newest
                FROM report_cache
                """
            ).fetchone()
            tenants = conn.execute(
                """
                SELECT dkey, COUNT(*) AS entries, SUM(payload_bytes) AS size_bytes, SUM(hit_count) AS hits
                FROM report_cache
                GROUP BY dkey
                ORDER BY entries DESC, dkey
                """
            ).fetchall()

        return {
            'total_entries': overall['entries'],
            'total_size_bytes': overall['size_bytes'],
            'total_size_mb': round(overall['size_bytes'] / (1024 * 1024), 2),
            'total_hits': overall['hits'],
            'oldest_entry': overall['oldest'],
            'newest_entry': overall['newest'],
            'by_tenant': [dict(row) for row in tenants],
        }


_query_cache: Optional[QueryCacheService] = None


def get_query_cache() -> Optional[QueryCacheService]:
    """Process-wide cache, or None until initialize_query_cache runs."""
    return _query_cache


def initialize_query_cache(
    db_path: str,
    max_entries: Optional[int] = None,
    ttl_seconds: Optional[int] = None
) -> QueryCacheService:
    global _query_cache
    _query_cache = QueryCacheService(db_path, max_entries=max_entries, ttl_seconds=ttl_seconds)
    return _query_cache
