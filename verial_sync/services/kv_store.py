# -*- coding: utf-8 -*-
"""
Almacenes clave-valor con TTL

Respaldan la caché de respuestas, los puntos de recuperación, la bandera
de cancelación y el bloqueo de sincronización. Los valores deben ser
serializables a JSON. Las escrituras son last-write-wins; una entrada
ausente, caducada o corrupta se lee como None.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional, Tuple

_logger = logging.getLogger(__name__)


class KVStore:
    """Interfaz mínima get/set/add/delete con TTL en segundos"""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        raise NotImplementedError

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Escribe solo si la clave no existe (o ha caducado)"""
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError


class InMemoryKVStore(KVStore):
    """Almacén en memoria del proceso (tests y ejecuciones de un solo proceso)"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _expires_at(self, ttl):
        if ttl is None or ttl <= 0:
            return None
        return self._clock() + ttl

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    def get(self, key, default=None):
        with self._lock:
            raw = self._live(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set(self, key, value, ttl=None):
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = (raw, self._expires_at(ttl))
        return True

    def add(self, key, value, ttl=None):
        raw = json.dumps(value)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (raw, self._expires_at(ttl))
        return True

    def delete(self, key):
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self):
        with self._lock:
            return [key for key in list(self._data) if self._live(key) is not None]


class SqliteKVStore(KVStore):
    """
    Almacén duradero sobre SQLite

    Compartido entre invocaciones del proceso (por ejemplo, una petición
    HTTP por lote en el panel de administración).
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    expires_at REAL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv_store(expires_at)")
            conn.commit()

    def _expires_at(self, ttl):
        if ttl is None or ttl <= 0:
            return None
        return self._clock() + ttl

    def get(self, key, default=None):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value_json, expires_at FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        value_json, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            self.delete(key)
            return default
        try:
            return json.loads(value_json)
        except ValueError:
            _logger.warning(f"Corrupt KV entry '{key}', treating as missing")
            return default

    def set(self, key, value, ttl=None):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value_json, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), self._expires_at(ttl)),
            )
            conn.commit()
        return True

    def add(self, key, value, ttl=None):
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM kv_store WHERE key = ? AND expires_at IS NOT NULL AND expires_at <= ?",
                (key, self._clock()),
            )
            cursor = conn.execute(
                "INSERT OR IGNORE INTO kv_store (key, value_json, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), self._expires_at(ttl)),
            )
            conn.commit()
            return cursor.rowcount == 1

    def delete(self, key):
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0

    def purge_expired(self) -> int:
        """Elimina las entradas caducadas y devuelve cuántas se borraron"""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self._clock(),),
            )
            conn.commit()
            return cursor.rowcount
