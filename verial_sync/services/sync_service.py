# -*- coding: utf-8 -*-
"""
Servicio de Sincronización de Productos
Orquesta la descarga de artículos de Verial y su proceso por lotes
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import BatchConfig, Settings, normalize_entity
from ..models.checkpoint import BatchResult
from .batch_coordinator import BatchCoordinator
from .cache_store import CacheStore
from .errors import DecodeError, ErrorKind
from .kv_store import KVStore, SqliteKVStore
from .notifier import EmailNotifier, LoggingNotifier, Notifier
from .recovery_store import RecoveryStore
from .request_executor import RequestExecutor
from .sync_lock import SyncLock

_logger = logging.getLogger(__name__)

PRODUCTS = 'productos'
DEFAULT_PAGE_SIZE = 100


class VerialSyncService:
    """
    Servicio de sincronización con Verial

    Responsabilidades:
    - Evitar ejecuciones simultáneas de la misma entidad (SyncLock)
    - Obtener los artículos paginando GetNumArticulosWS + GetArticulosWS
    - Delegar el proceso por lotes y la recuperación en BatchCoordinator
    - Avisar al administrador cuando la sincronización termina con errores

    El tratamiento de cada artículo (mapeo y escritura en la tienda) lo
    aporta el llamador como handler(articulo) -> ItemOutcome | bool.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        kv: KVStore,
        batch_config: Optional[BatchConfig] = None,
        notifier: Optional[Notifier] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        memory_probe: Optional[Callable[[], float]] = None,
    ):
        self.executor = executor
        self.kv = kv
        self.batch_config = batch_config or BatchConfig()
        self.notifier = notifier or LoggingNotifier()
        self.page_size = page_size
        self.memory_probe = memory_probe
        self.recovery_store = RecoveryStore(kv, ttl=self.batch_config.checkpoint_ttl)
        self.lock = SyncLock(kv)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> 'VerialSyncService':
        """
        Construye el servicio a partir de la configuración del entorno

        Raises:
            ConfigurationError: Si la configuración no es válida
        """
        settings = settings or Settings()
        kv = SqliteKVStore(settings.STATE_DB)
        executor_config = settings.executor_config()
        executor = RequestExecutor(
            executor_config,
            cache=CacheStore(kv=kv, config=executor_config.cache) if executor_config.cache.enabled else None,
        )
        notifier = None
        if settings.ADMIN_EMAIL:
            notifier = EmailNotifier(settings.ADMIN_EMAIL, host=settings.SMTP_HOST, port=settings.SMTP_PORT)
        return cls(executor, kv, batch_config=settings.batch_config(), notifier=notifier)

    def _coordinator(self, entity: str, filters: Optional[Dict[str, Any]]) -> BatchCoordinator:
        return BatchCoordinator(
            entity,
            self.recovery_store,
            filters=filters,
            config=self.batch_config,
            notifier=self.notifier,
            memory_probe=self.memory_probe,
        )

    # ========== Obtención de artículos ==========

    def fetch_articles(self, filters: Optional[Dict[str, Any]] = None) -> Tuple[List[Dict], Optional[ErrorKind]]:
        """
        Descarga los artículos de Verial paginando con inicio/fin

        Args:
            filters: Filtros de Verial (fecha, hora, ...)

        Returns:
            (artículos, error); si una página falla se devuelve el error
        """
        params = {key: value for key, value in (filters or {}).items() if value not in (None, '')}

        result = self.executor.get('GetNumArticulosWS', params=params, use_cache=False)
        if not result.ok:
            _logger.error(f"Could not count articles: {result.error}")
            return [], result.error

        data = result.data if isinstance(result.data, dict) else {}
        try:
            total = int(data.get('NumArticulos', 0) or 0)
        except (TypeError, ValueError):
            error = DecodeError(f"Invalid NumArticulos value: {data.get('NumArticulos')!r}")
            _logger.error(f"Could not count articles: {error}")
            return [], error
        _logger.info(f"Found {total} articles in Verial")

        articles: List[Dict] = []
        for offset in range(0, total, self.page_size):
            page_params = dict(params, inicio=offset + 1, fin=min(offset + self.page_size, total))
            page = self.executor.get('GetArticulosWS', params=page_params, use_cache=False)
            if not page.ok:
                _logger.error(
                    f"Could not fetch articles {page_params['inicio']}-{page_params['fin']}: {page.error}"
                )
                return articles, page.error

            data = page.data
            items = data.get('Articulos', []) if isinstance(data, dict) else (data or [])
            articles.extend(items)
            _logger.debug(f"Fetched articles {page_params['inicio']}-{page_params['fin']} ({len(items)})")

        return articles, None

    # ========== Sincronización ==========

    def sync_products(
        self,
        handler: Callable[[Dict], Any],
        filters: Optional[Dict[str, Any]] = None,
        batch_size: Optional[int] = None,
        force_restart: bool = False,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Sincroniza productos desde Verial

        Flujo principal:
        1. Adquirir el bloqueo de la entidad
        2. Obtener artículos (GetNumArticulosWS + GetArticulosWS)
        3. Procesarlos por lotes, reanudando si hay punto de recuperación
        4. Liberar el bloqueo y avisar si hubo errores

        Args:
            handler: Función que trata un artículo
            filters: Filtros de Verial; forman parte de la huella del checkpoint
            batch_size: Tamaño de lote (None = el de la entidad)
            force_restart: Ignorar el punto de recuperación
            limit: Limitar número de artículos a procesar

        Returns:
            dict: Resumen de la sincronización
        """
        start_time = time.time()
        sync_batch_id = str(uuid.uuid4())
        summary = {
            'status': 'error',
            'total': 0,
            'processed': 0,
            'errors': 0,
            'failed_items': [],
            'cancelled': False,
            'memory_exceeded': False,
            'resumed': False,
            'sync_batch_id': sync_batch_id,
        }

        with self.lock.hold(PRODUCTS) as acquired:
            if not acquired:
                summary['status'] = 'locked'
                summary['message'] = 'Ya hay una sincronización de productos en curso'
                return summary

            _logger.info(f"Starting product synchronization (batch {sync_batch_id})")
            try:
                articles, error = self.fetch_articles(filters)
                if error is not None:
                    summary['message'] = str(error)
                    self._send_error_notification(summary)
                    return summary

                if limit:
                    articles = articles[:limit]
                    _logger.info(f"Limited to {limit} articles for processing")

                result = self._coordinator(PRODUCTS, filters).process(
                    articles,
                    batch_size=batch_size,
                    per_item_fn=handler,
                    force_restart=force_restart,
                )
                summary.update(self._summarize(result))
            finally:
                summary['execution_time'] = round(time.time() - start_time, 2)
                _logger.info(
                    f"Product synchronization finished: status={summary['status']} "
                    f"total={summary['total']} processed={summary['processed']} "
                    f"errors={summary['errors']} time={summary['execution_time']}s"
                )

        if summary['errors']:
            self._send_error_notification(summary)
        return summary

    @staticmethod
    def _summarize(result: BatchResult) -> Dict[str, Any]:
        if result.success:
            status = 'success'
        elif result.cancelled:
            status = 'cancelled'
        elif result.memory_exceeded:
            status = 'memory_limit'
        else:
            status = 'partial'
        return {
            'status': status,
            'total': result.total,
            'processed': result.processed,
            'errors': result.errors,
            'failed_items': result.failed_items,
            'cancelled': result.cancelled,
            'memory_exceeded': result.memory_exceeded,
            'resumed': result.resumed,
            'item_retries': result.item_retries,
            'duration_ms': result.duration_ms,
        }

    def resume_sync(self, handler: Callable[[Dict], Any],
                    filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Reanuda la sincronización pendiente; no hace nada si no la hay"""
        pending = self.check_pending_sync(PRODUCTS, filters)
        if not pending['pending']:
            return {'status': 'nothing_to_resume', 'message': 'No hay sincronización pendiente'}
        return self.sync_products(handler, filters=filters)

    def cancel_sync(self, entity: str = PRODUCTS) -> Dict[str, Any]:
        """
        Solicita la cancelación de la sincronización en curso

        La ejecución se detiene en el siguiente punto de control y deja un
        checkpoint 'cancelled' para reanudar después.
        """
        entity = normalize_entity(entity)
        self.recovery_store.request_cancel(entity)
        return {
            'status': 'cancel_requested',
            'entity': entity,
            'running': self.lock.is_locked(entity),
        }

    def check_pending_sync(self, entity: str = PRODUCTS,
                           filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Informa de la sincronización pendiente de una entidad

        Returns:
            dict con pending, message y progreso (porcentaje, ETA)
        """
        coordinator = self._coordinator(entity, filters)
        checkpoint = coordinator.check_recovery_point()
        if checkpoint is None:
            return {'pending': False, 'entity': coordinator.entity, 'locked': self.lock.is_locked(entity)}
        return {
            'pending': True,
            'entity': coordinator.entity,
            'locked': self.lock.is_locked(entity),
            'status': checkpoint.status.value,
            'message': coordinator.get_recovery_message(),
            'last_batch': checkpoint.last_batch_index,
            'processed': checkpoint.items_processed,
            'failed': checkpoint.items_failed,
            'total': checkpoint.total_items,
            'progress_percent': checkpoint.progress_percent,
            'eta_seconds': checkpoint.eta_seconds(time.time()),
        }

    def run_scheduled_sync(self, handler: Callable[[Dict], Any]) -> Dict[str, Any]:
        """Sincronización programada: reanuda lo pendiente o empieza de cero"""
        _logger.info("Running scheduled product synchronization")
        return self.sync_products(handler)

    def _send_error_notification(self, summary: Dict[str, Any]):
        _logger.warning(f"Sync errors detected: {summary.get('errors', 0)} errors ({summary['status']})")
        lines = [
            f"Estado: {summary['status']}",
            f"Procesados: {summary['processed']}/{summary['total']}",
            f"Errores: {summary['errors']}",
        ]
        if summary.get('message'):
            lines.append(f"Detalle: {summary['message']}")
        if summary['failed_items']:
            lines.append(f"Elementos fallidos: {', '.join(summary['failed_items'][:20])}")
        self.notifier.notify('Sincronización de productos con errores', '\n'.join(lines))

    def test_connection(self) -> Dict[str, Any]:
        """
        Prueba la conexión con Verial

        Returns:
            dict: Estado de la conexión
        """
        return self.executor.test_connectivity()
