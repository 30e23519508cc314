# -*- coding: utf-8 -*-
"""
Tests de integración para VerialSyncService
Usa el API Verial simulado a través de TestClient
"""

import json

import pytest
from fastapi.testclient import TestClient
from unittest.mock import Mock, patch

from mock_api.main import app
from verial_sync.config import BatchConfig, ExecutorConfig, RetryPolicy, Settings
from verial_sync.models import ItemOutcome
from verial_sync.services.errors import ConfigurationError, DecodeError
from verial_sync.services.kv_store import InMemoryKVStore, SqliteKVStore
from verial_sync.services.notifier import EmailNotifier, LoggingNotifier
from verial_sync.services.request_executor import RequestExecutor
from verial_sync.services.sync_lock import SyncLock
from verial_sync.services.sync_service import VerialSyncService
from verial_sync.services.transport import Transport, TransportResponse


class ProcessCrash(BaseException):
    pass


class MockApiTransport(Transport):
    """Transporte que envía las peticiones a la aplicación FastAPI en memoria"""

    def __init__(self, client):
        self.client = client

    def send(self, method, url, headers, body, timeout):
        response = self.client.request(method, url, headers=headers, content=body)
        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )


class TestVerialSyncService:
    """Test suite para VerialSyncService"""

    def setup_method(self):
        self.client = TestClient(app)
        self.client.post('/simulate/reset', json={'articles': 45})

        self.sleep = Mock()
        self.kv = InMemoryKVStore()
        self.notifier = Mock()
        self.service = self.make_service(session_id='18')

    def make_service(self, session_id):
        config = ExecutorConfig(
            base_url='http://testserver',
            session_id=session_id,
            retry_policy=RetryPolicy(max_retries=3, jitter=False),
        )
        executor = RequestExecutor(config, transport=MockApiTransport(self.client), sleep=self.sleep)
        return VerialSyncService(
            executor,
            self.kv,
            batch_config=BatchConfig(item_max_retries=1),
            notifier=self.notifier,
            page_size=20,
            memory_probe=lambda: 50.0,
        )

    def collect(self, seen):
        def handler(articulo):
            seen.append(articulo['Id'])
            return ItemOutcome.ok()
        return handler

    def test_fetch_articles_pages(self):
        """Test: Paginación inicio/fin con GetNumArticulosWS + GetArticulosWS"""
        articles, error = self.service.fetch_articles()

        assert error is None
        assert [a['Id'] for a in articles] == list(range(1, 46))

    def test_fetch_articles_with_filters(self):
        self.client.post('/simulate/reset', json={'articles': 120})

        articles, error = self.service.fetch_articles({'fecha': '2026-02-20', 'hora': None})

        assert error is None
        assert len(articles) == 20

    def test_invalid_article_count_is_error(self):
        """Test: Un NumArticulos no numérico se devuelve como error"""
        body = json.dumps({'InfoError': {'Codigo': 0, 'Descripcion': ''}, 'NumArticulos': 'muchos'})
        transport = self.service.executor.transport

        with patch.object(transport, 'send', return_value=TransportResponse(200, {}, body)):
            articles, error = self.service.fetch_articles()
            summary = self.service.sync_products(Mock())

        assert articles == []
        assert isinstance(error, DecodeError)
        assert 'muchos' in error.message
        assert summary['status'] == 'error'

    def test_sync_products(self):
        seen = []

        summary = self.service.sync_products(self.collect(seen), batch_size=10)

        assert summary['status'] == 'success'
        assert summary['total'] == 45
        assert summary['processed'] == 45
        assert summary['errors'] == 0
        assert seen == list(range(1, 46))
        assert not self.service.lock.is_locked('productos')
        self.notifier.notify.assert_not_called()

    def test_sync_with_limit(self):
        seen = []

        summary = self.service.sync_products(self.collect(seen), limit=7)

        assert summary['total'] == 7
        assert seen == list(range(1, 8))

    def test_sync_retries_server_errors(self):
        """Test: Los 503 del servidor se reintentan de forma transparente"""
        self.client.post('/simulate/failures',
                         json={'count': 2, 'status_code': 503, 'endpoint': 'GetArticulosWS'})

        summary = self.service.sync_products(self.collect([]))

        assert summary['status'] == 'success'
        assert summary['processed'] == 45
        assert self.sleep.call_count == 2
        assert self.service.executor.get_retry_stats()['retry_by_status_code'] == {503: 1}

    def test_sync_while_locked(self):
        """Test: No se ejecuta si otra sincronización tiene el bloqueo"""
        SyncLock(self.kv).acquire('productos')
        handler = Mock()

        summary = self.service.sync_products(handler)

        assert summary['status'] == 'locked'
        handler.assert_not_called()

    def test_fetch_error_notifies(self):
        service = self.make_service(session_id='99')

        summary = service.sync_products(Mock())

        assert summary['status'] == 'error'
        assert 'Verial error -1' in summary['message']
        self.notifier.notify.assert_called_once()
        assert not service.lock.is_locked('productos')

    def test_item_errors_notify(self):
        summary = self.service.sync_products(lambda articulo: articulo['Id'] != 5)

        assert summary['status'] == 'partial'
        assert summary['errors'] == 1
        assert summary['failed_items'] == ['5']
        # Aviso del elemento agotado y resumen final
        assert self.notifier.notify.call_count == 2
        assert '5' in self.notifier.notify.call_args_list[0].args[1]
        assert 'Elementos fallidos: 5' in self.notifier.notify.call_args.args[1]

    def test_crash_pending_and_resume(self):
        """Test: Tras una caída queda una sincronización pendiente que se reanuda"""
        def crashing(articulo):
            if articulo['Id'] == 30:
                raise ProcessCrash()
            return True

        with pytest.raises(ProcessCrash):
            self.service.sync_products(crashing, batch_size=10)

        assert not self.service.lock.is_locked('productos')

        pending = self.service.check_pending_sync()
        assert pending['pending'] is True
        assert pending['processed'] == 20
        assert pending['total'] == 45
        assert pending['progress_percent'] == pytest.approx(44.44)
        assert 'Último lote procesado: 2' in pending['message']

        seen = []
        summary = self.service.resume_sync(self.collect(seen))

        assert summary['status'] == 'success'
        assert summary['resumed'] is True
        assert summary['processed'] == 45
        assert seen == list(range(21, 46))
        assert self.service.check_pending_sync()['pending'] is False

    def test_resume_without_pending(self):
        handler = Mock()

        result = self.service.resume_sync(handler)

        assert result['status'] == 'nothing_to_resume'
        handler.assert_not_called()

    def test_cancel_sync(self):
        result = self.service.cancel_sync('products')

        assert result['status'] == 'cancel_requested'
        assert result['entity'] == 'productos'
        assert result['running'] is False
        assert self.service.recovery_store.is_cancel_requested('productos')

    def test_cancel_during_sync(self):
        def handler(articulo):
            if articulo['Id'] == 3:
                self.service.cancel_sync()
            return True

        summary = self.service.sync_products(handler, batch_size=10)

        assert summary['status'] == 'cancelled'
        assert summary['processed'] == 10
        assert self.service.check_pending_sync()['status'] == 'cancelled'

    def test_connection(self):
        assert self.service.test_connection()['status'] == 'success'

    def test_connection_invalid_session(self):
        result = self.make_service(session_id='99').test_connection()

        assert result['status'] == 'error'
        assert 'sesión inválido' in result['message']


class TestServiceFromSettings:

    def test_from_settings(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VERIAL_SESSION_ID', '18')
        monkeypatch.setenv('VERIAL_STATE_DB', str(tmp_path / 'state.db'))
        monkeypatch.setenv('VERIAL_RETRY_POLICY', 'background')
        monkeypatch.setenv('VERIAL_ADMIN_EMAIL', 'admin@example.com')

        service = VerialSyncService.from_settings()

        assert isinstance(service.kv, SqliteKVStore)
        assert isinstance(service.notifier, EmailNotifier)
        assert service.executor.config.session_id == '18'
        assert service.executor.retry_policy.max_retries == 7
        assert service.executor.cache.kv is service.kv

    def test_from_settings_without_email(self, tmp_path):
        settings = Settings(SESSION_ID='18', STATE_DB=str(tmp_path / 'state.db'), CACHE_ENABLED=False)

        service = VerialSyncService.from_settings(settings)

        assert isinstance(service.notifier, LoggingNotifier)
        assert service.executor.cache is None
        assert service.batch_config.notify_on_item_failure is True

    def test_item_failure_alerts_can_be_disabled(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VERIAL_NOTIFY_ITEM_FAILURES', 'false')
        settings = Settings(SESSION_ID='18', STATE_DB=str(tmp_path / 'state.db'))

        service = VerialSyncService.from_settings(settings)

        assert service.batch_config.notify_on_item_failure is False

    def test_missing_session_raises(self, tmp_path):
        settings = Settings(SESSION_ID='', STATE_DB=str(tmp_path / 'state.db'))

        with pytest.raises(ConfigurationError):
            VerialSyncService.from_settings(settings)

    def test_unknown_retry_policy_raises(self, tmp_path):
        settings = Settings(SESSION_ID='18', RETRY_POLICY='eager', STATE_DB=str(tmp_path / 'state.db'))

        with pytest.raises(ConfigurationError):
            VerialSyncService.from_settings(settings)
