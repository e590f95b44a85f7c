"""
Key-value store backends with TTL and atomic read-modify-write
"""
import copy
import threading
import time
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Tuple

import psycopg2
from psycopg2 import pool, sql
from psycopg2.extras import RealDictCursor, Json

from reaction_shield.lib.config import Settings

logger = logging.getLogger(__name__)

Transform = Callable[[Optional[Any]], Any]


class StoreError(Exception):
    """Raised by every backend when the underlying storage fails."""

    def __init__(self, operation: str, key: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        super().__init__(f"store {operation} failed for {key!r}: {cause}")


class Keys:
    """Namespaced store keys"""

    @staticmethod
    def rate_limit(action: str, user_id: str) -> str:
        return f"ratelimit:{action}:{user_id}"

    @staticmethod
    def ip_rate_limit(action: str, ip_address: str) -> str:
        return f"ratelimit:ip:{action}:{ip_address}"

    @staticmethod
    def penalty(user_id: str) -> str:
        return f"penalty:{user_id}"

    @staticmethod
    def violations(user_id: str) -> str:
        return f"violations:{user_id}"

    @staticmethod
    def ip_violations(ip_address: str) -> str:
        return f"violations:ip:{ip_address}"

    @staticmethod
    def whitelist(user_id: str) -> str:
        return f"whitelist:{user_id}"

    @staticmethod
    def history(user_id: str) -> str:
        return f"history:{user_id}"

    @staticmethod
    def validation_log(user_id: str) -> str:
        return f"validation:user:{user_id}"

    @staticmethod
    def validation_metrics(hour: int) -> str:
        return f"validation:metrics:hourly:{hour}"

    @staticmethod
    def flagged_user(user_id: str) -> str:
        return f"validation:flagged:{user_id}"

    @staticmethod
    def security_event(event_id: str) -> str:
        return f"security:event:{event_id}"

    @staticmethod
    def user_events(user_id: str) -> str:
        return f"security:events:user:{user_id}"

    @staticmethod
    def recent_events() -> str:
        return "security:events:recent"

    @staticmethod
    def realtime_metrics() -> str:
        return "security:metrics:realtime"

    @staticmethod
    def appeal_stats() -> str:
        return "security:appeals:stats"

    @staticmethod
    def report(report_id: str) -> str:
        return f"report:{report_id}"

    @staticmethod
    def user_reports(user_id: str) -> str:
        return f"report:user:{user_id}"

    @staticmethod
    def appeal(appeal_id: str) -> str:
        return f"appeal:{appeal_id}"

    @staticmethod
    def user_appeals(user_id: str) -> str:
        return f"appeal:user:{user_id}"


class KVStore(ABC):
    """
    Store contract consumed by the services.
    Values are JSON-compatible structures; ttl is in seconds.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def atomic_update(self, key: str, transform: Transform, ttl: int) -> Any:
        """Apply transform(current or None) and persist the result as one serialized step."""
        ...


class InMemoryStore(KVStore):
    """Thread-safe in-process store for tests and single-process deployments"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: int) -> Optional[float]:
        return self.clock() + ttl if ttl and ttl > 0 else None

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._live(key))

    def set(self, key: str, value: Any, ttl: int) -> bool:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def atomic_update(self, key: str, transform: Transform, ttl: int) -> Any:
        with self._lock:
            current = copy.deepcopy(self._live(key))
            updated = transform(current)
            self._data[key] = (copy.deepcopy(updated), self._expiry(ttl))
            return updated

    def keys(self, prefix: str = "") -> list:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]


class PostgresStore(KVStore):
    """PostgreSQL-backed store; one JSONB row per key"""

    def __init__(self, settings: Settings, minconn: int = 1, maxconn: int = 20):
        self.table = settings.kv_table
        self.connection_pool = None
        self._initialize_pool(settings, minconn, maxconn)

    def _initialize_pool(self, settings: Settings, minconn: int, maxconn: int):
        """Create connection pool"""
        try:
            self.connection_pool = psycopg2.pool.SimpleConnectionPool(
                minconn=minconn,
                maxconn=maxconn,
                host=settings.db_host,
                port=settings.db_port,
                database=settings.db_name,
                user=settings.db_user,
                password=settings.db_password
            )
            logger.info("Database connection pool initialized")
        except psycopg2.Error as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise StoreError("connect", settings.db_host, e) from e

    @contextmanager
    def get_cursor(self, cursor_factory=RealDictCursor):
        """Get database cursor with automatic connection handling"""
        conn = self.connection_pool.getconn()
        cursor = None
        try:
            cursor = conn.cursor(cursor_factory=cursor_factory)
            yield cursor
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if cursor is not None:
                cursor.close()
            self.connection_pool.putconn(conn)

    def _query(self, template: str) -> sql.Composed:
        return sql.SQL(template).format(table=sql.Identifier(self.table))

    def ensure_schema(self):
        """Create the key-value table if missing"""
        with self.get_cursor() as cursor:
            cursor.execute(self._query(
                """
                CREATE TABLE IF NOT EXISTS {table} (
                    key TEXT PRIMARY KEY,
                    value JSONB NOT NULL,
                    expires_at TIMESTAMPTZ
                )
                """
            ))
        logger.info(f"Key-value table {self.table} ready")

    def purge_expired(self) -> int:
        """Delete expired rows; returns the number removed"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute(self._query(
                    "DELETE FROM {table} WHERE expires_at IS NOT NULL AND expires_at <= now()"
                ))
                return cursor.rowcount
        except psycopg2.Error as e:
            raise StoreError("purge", "*", e) from e

    def _select(self, cursor, key: str) -> Optional[Any]:
        cursor.execute(
            self._query(
                "SELECT value FROM {table} "
                "WHERE key = %s AND (expires_at IS NULL OR expires_at > now())"
            ),
            (key,),
        )
        row = cursor.fetchone()
        return row["value"] if row else None

    def _upsert(self, cursor, key: str, value: Any, ttl: int):
        cursor.execute(
            self._query(
                """
                INSERT INTO {table} (key, value, expires_at)
                VALUES (%(key)s, %(value)s,
                        CASE WHEN %(ttl)s > 0 THEN now() + %(ttl)s * interval '1 second' END)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    expires_at = EXCLUDED.expires_at
                """
            ),
            {"key": key, "value": Json(value), "ttl": int(ttl or 0)},
        )

    def get(self, key: str) -> Optional[Any]:
        try:
            with self.get_cursor() as cursor:
                return self._select(cursor, key)
        except psycopg2.Error as e:
            raise StoreError("get", key, e) from e

    def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            with self.get_cursor() as cursor:
                self._upsert(cursor, key, value, ttl)
            return True
        except psycopg2.Error as e:
            raise StoreError("set", key, e) from e

    def delete(self, key: str) -> bool:
        try:
            with self.get_cursor() as cursor:
                cursor.execute(self._query("DELETE FROM {table} WHERE key = %s"), (key,))
                return cursor.rowcount > 0
        except psycopg2.Error as e:
            raise StoreError("delete", key, e) from e

    def atomic_update(self, key: str, transform: Transform, ttl: int) -> Any:
        try:
            with self.get_cursor() as cursor:
                # Serializes writers of this key until the transaction commits
                cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))
                updated = transform(self._select(cursor, key))
                self._upsert(cursor, key, updated, ttl)
                return updated
        except psycopg2.Error as e:
            raise StoreError("atomic_update", key, e) from e

    def close(self):
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Database connection pool closed")


def create_store(settings: Settings) -> KVStore:
    """Build the configured backend"""
    if settings.store_backend == 'postgres':
        store = PostgresStore(settings)
        store.ensure_schema()
        return store
    return InMemoryStore()
