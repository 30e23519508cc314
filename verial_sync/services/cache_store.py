# -*- coding: utf-8 -*-
"""
Caché de respuestas GET del API de Verial
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

from ..config import CacheConfig
from .kv_store import InMemoryKVStore, KVStore

_logger = logging.getLogger(__name__)


def stable_hash(value: Any) -> str:
    """Hash determinista de una estructura JSON (claves ordenadas)"""
    serialized = json.dumps(value, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(serialized.encode('utf-8')).hexdigest()


class CacheStore:
    """
    Caché con espacio de nombres y TTL sobre un KVStore

    Lleva contadores de aciertos, fallos y escrituras que se exponen
    mediante stats(); no afectan a la corrección.
    """

    def __init__(self, kv: Optional[KVStore] = None, config: Optional[CacheConfig] = None):
        self.kv = kv if kv is not None else InMemoryKVStore()
        self.config = config or CacheConfig()
        self.reset_stats()

    def make_key(self, method: str, endpoint: str, session_id: str,
                 params: Optional[Dict[str, Any]] = None) -> str:
        """
        Clave de caché: (método, endpoint, sesión, parámetros serializados)

        Args:
            method: Método HTTP
            endpoint: Endpoint sin parámetros de sesión
            session_id: Número de sesión de Verial
            params: Parámetros de la consulta (sin el parámetro de sesión)

        Returns:
            Clave con el espacio de nombres de la caché
        """
        parts = [
            self.config.namespace,
            method.lower(),
            endpoint.strip('/'),
            str(session_id),
            stable_hash(params or {}),
        ]
        return ':'.join(parts)

    def get(self, key: str) -> Optional[Any]:
        value = self.kv.get(key)
        if value is None:
            self._stats['misses'] += 1
            _logger.debug(f"Cache miss: {key}")
            return None
        self._stats['hits'] += 1
        _logger.debug(f"Cache hit: {key}")
        return value

    def set(self, key: str, value: Any, ttl: int) -> bool:
        if value is None:
            return False
        stored = self.kv.set(key, value, ttl)
        if stored:
            self._stats['sets'] += 1
        return stored

    def delete(self, key: str) -> bool:
        return self.kv.delete(key)

    def ttl_for(self, endpoint: str) -> int:
        return self.config.ttl_for(endpoint.strip('/'))

    def stats(self) -> Dict[str, Any]:
        lookups = self._stats['hits'] + self._stats['misses']
        hit_ratio = round(self._stats['hits'] * 100.0 / lookups, 2) if lookups else 0.0
        return dict(self._stats, hit_ratio=hit_ratio)

    def reset_stats(self):
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0}
