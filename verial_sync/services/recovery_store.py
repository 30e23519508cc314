# -*- coding: utf-8 -*-
"""
Puntos de recuperación de la sincronización por lotes

Un checkpoint por entidad; la huella de los filtros viaja dentro del
checkpoint y una huella distinta se trata como "no hay checkpoint".
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..config import normalize_entity
from ..models.checkpoint import Checkpoint, CheckpointStatus
from .cache_store import stable_hash
from .kv_store import KVStore

_logger = logging.getLogger(__name__)

RECOVERY_PREFIX = 'verial_sync_recovery_'
CANCEL_PREFIX = 'verial_sync_cancel_'
DEFAULT_TTL = 86400  # 24 horas
CANCEL_TTL = 3600


def normalize_filters(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Descarta valores vacíos y normaliza claves a texto"""
    normalized = {}
    for key, value in (filters or {}).items():
        if value is None or value == '' or value == [] or value == {}:
            continue
        if isinstance(value, (list, tuple, set)):
            value = sorted(str(v) for v in value)
        normalized[str(key)] = value
    return normalized


def filter_fingerprint(entity: str, filters: Optional[Dict[str, Any]]) -> str:
    return stable_hash({'entity': normalize_entity(entity), 'filters': normalize_filters(filters)})


class RecoveryStore:
    """
    Persistencia de checkpoints sobre un KVStore

    Cada save() sustituye por completo al checkpoint anterior de la entidad.
    """

    def __init__(self, kv: KVStore, ttl: int = DEFAULT_TTL):
        self.kv = kv
        self.ttl = ttl

    @staticmethod
    def _key(entity: str) -> str:
        return RECOVERY_PREFIX + normalize_entity(entity).lower()

    def save(self, entity: str, filters: Optional[Dict[str, Any]], checkpoint: Checkpoint) -> bool:
        """
        Guarda el checkpoint de la entidad

        Args:
            entity: Entidad sincronizada (productos, clientes...)
            filters: Filtros de la ejecución
            checkpoint: Estado a persistir (se sella con la huella y la hora)
        """
        checkpoint = checkpoint.model_copy(update={
            'entity': normalize_entity(entity),
            'filter_fingerprint': filter_fingerprint(entity, filters),
            'updated_at': time.time(),
        })
        _logger.debug(
            f"Saving recovery point for {entity}: batch={checkpoint.last_batch_index} "
            f"processed={checkpoint.items_processed} status={checkpoint.status.value}"
        )
        return self.kv.set(self._key(entity), checkpoint.model_dump(mode='json'), self.ttl)

    def load(self, entity: str, filters: Optional[Dict[str, Any]] = None) -> Optional[Checkpoint]:
        """
        Recupera el checkpoint si coincide la huella de los filtros

        Returns:
            Checkpoint o None (ausente, corrupto o de otros filtros)
        """
        raw = self.kv.get(self._key(entity))
        if raw is None:
            return None
        try:
            checkpoint = Checkpoint.model_validate(raw)
        except ValidationError as e:
            _logger.warning(f"Discarding unreadable recovery point for {entity}: {e}")
            return None

        if checkpoint.filter_fingerprint != filter_fingerprint(entity, filters):
            _logger.info(f"Recovery point for {entity} belongs to a different filter set, ignoring it")
            return None
        return checkpoint

    def peek(self, entity: str) -> Optional[Checkpoint]:
        """Checkpoint de la entidad sin comprobar filtros (solo lectura de progreso)"""
        raw = self.kv.get(self._key(entity))
        if raw is None:
            return None
        try:
            return Checkpoint.model_validate(raw)
        except ValidationError:
            return None

    def clear(self, entity: str) -> bool:
        _logger.info(f"Clearing recovery point for {entity}")
        return self.kv.delete(self._key(entity))

    def has_recovery_point(self, entity: str, filters: Optional[Dict[str, Any]] = None) -> bool:
        checkpoint = self.load(entity, filters)
        return checkpoint is not None and checkpoint.status != CheckpointStatus.COMPLETED

    def recovery_message(self, entity: str, filters: Optional[Dict[str, Any]] = None) -> str:
        """Mensaje legible para el panel de administración"""
        checkpoint = self.load(entity, filters)
        if checkpoint is None:
            return ''
        updated = datetime.fromtimestamp(checkpoint.updated_at).strftime('%Y-%m-%d %H:%M:%S')
        return (
            f"Se encontró un punto de recuperación del {updated}. "
            f"Último lote procesado: {checkpoint.last_batch_index}. "
            f"Elementos procesados: {checkpoint.items_processed}/{checkpoint.total_items}."
        )

    # ========== Cancelación entre procesos ==========

    def request_cancel(self, entity: str) -> bool:
        _logger.warning(f"Cancellation requested for {entity} sync")
        return self.kv.set(CANCEL_PREFIX + normalize_entity(entity).lower(), True, CANCEL_TTL)

    def is_cancel_requested(self, entity: str) -> bool:
        return bool(self.kv.get(CANCEL_PREFIX + normalize_entity(entity).lower()))

    def clear_cancel(self, entity: str) -> bool:
        return self.kv.delete(CANCEL_PREFIX + normalize_entity(entity).lower())
