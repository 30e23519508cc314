# -*- coding: utf-8 -*-
"""
Bloqueo de sincronización por entidad

Bloqueo consultivo con caducidad: evita que dos ejecuciones de la misma
entidad compartan (y corrompan) un checkpoint. No es un mecanismo de
consenso distribuido.
"""

import logging
import os
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Optional

from ..config import normalize_entity
from .kv_store import KVStore

_logger = logging.getLogger(__name__)

LOCK_PREFIX = 'verial_sync_lock_'
DEFAULT_TIMEOUT = 3600  # 1 hora


class SyncLock:

    def __init__(self, kv: KVStore, timeout: int = DEFAULT_TIMEOUT):
        self.kv = kv
        self.timeout = timeout
        self.owner = uuid.uuid4().hex

    @staticmethod
    def _key(entity: str) -> str:
        return LOCK_PREFIX + normalize_entity(entity).lower()

    def acquire(self, entity: str, timeout: Optional[int] = None) -> bool:
        """
        Intenta adquirir el bloqueo de la entidad

        Args:
            entity: Entidad a sincronizar
            timeout: Segundos tras los que el bloqueo caduca solo

        Returns:
            True si se adquirió, False si otra ejecución lo tiene
        """
        timeout = timeout or self.timeout
        data = {
            'entity': normalize_entity(entity),
            'owner': self.owner,
            'pid': os.getpid(),
            'timestamp': time.time(),
            'timeout': timeout,
        }
        if self.kv.add(self._key(entity), data, timeout):
            _logger.info(f"Sync lock acquired for {entity} (timeout={timeout}s)")
            return True

        info = self.get_lock_info(entity)
        age = info['age'] if info else 0
        _logger.warning(f"Sync lock for {entity} already held (age={age:.0f}s)")
        return False

    def release(self, entity: str, force: bool = False) -> bool:
        """
        Libera el bloqueo

        Solo se borra un bloqueo propio salvo que force=True.
        """
        lock = self.kv.get(self._key(entity))
        if lock is None:
            return False
        if lock.get('owner') != self.owner and not force:
            _logger.warning(f"Refusing to release sync lock for {entity} held by another owner")
            return False
        released = self.kv.delete(self._key(entity))
        _logger.info(f"Sync lock released for {entity} (age={time.time() - lock.get('timestamp', 0):.0f}s)")
        return released

    def is_locked(self, entity: str) -> bool:
        return self.kv.get(self._key(entity)) is not None

    def get_lock_info(self, entity: str) -> Optional[Dict[str, Any]]:
        lock = self.kv.get(self._key(entity))
        if lock is None:
            return None
        return dict(lock, age=time.time() - lock.get('timestamp', time.time()),
                    is_mine=lock.get('owner') == self.owner)

    @contextmanager
    def hold(self, entity: str, timeout: Optional[int] = None):
        """
        Context manager: entrega True si se adquirió el bloqueo

        Ejemplo:
            with lock.hold('productos') as acquired:
                if acquired:
                    run_sync()
        """
        acquired = self.acquire(entity, timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(entity)
