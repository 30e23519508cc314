# -*- coding: utf-8 -*-
"""
Tests para los almacenes clave-valor y la caché de respuestas
"""

import sqlite3

import pytest
from unittest.mock import patch

from verial_sync.config import CacheConfig
from verial_sync.services.cache_store import CacheStore, stable_hash
from verial_sync.services.kv_store import InMemoryKVStore, SqliteKVStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class KVStoreContract:
    """Comportamiento común a todos los KVStore"""

    def test_set_and_get(self):
        self.kv.set('a', {'n': 1, 'items': [1, 2]})

        assert self.kv.get('a') == {'n': 1, 'items': [1, 2]}

    def test_missing_key_returns_default(self):
        assert self.kv.get('missing') is None
        assert self.kv.get('missing', 'fallback') == 'fallback'

    def test_ttl_expiry(self):
        """Test: Una entrada caducada se lee como ausente"""
        self.kv.set('a', 1, ttl=10)

        self.clock.now += 9
        assert self.kv.get('a') == 1

        self.clock.now += 1
        assert self.kv.get('a') is None

    def test_set_overwrites(self):
        self.kv.set('a', 1)
        self.kv.set('a', 2)

        assert self.kv.get('a') == 2

    def test_add_only_if_absent(self):
        assert self.kv.add('lock', 'first', ttl=60) is True
        assert self.kv.add('lock', 'second', ttl=60) is False
        assert self.kv.get('lock') == 'first'

    def test_add_reclaims_expired_entry(self):
        self.kv.add('lock', 'first', ttl=60)
        self.clock.now += 61

        assert self.kv.add('lock', 'second', ttl=60) is True
        assert self.kv.get('lock') == 'second'

    def test_delete(self):
        self.kv.set('a', 1)

        assert self.kv.delete('a') is True
        assert self.kv.delete('a') is False
        assert self.kv.get('a') is None


class TestInMemoryKVStore(KVStoreContract):

    def setup_method(self):
        self.clock = FakeClock()
        self.kv = InMemoryKVStore(clock=self.clock)

    def test_values_are_copied(self):
        """Test: Modificar el valor leído no altera el almacenado"""
        self.kv.set('a', {'refs': []})
        self.kv.get('a')['refs'].append('x')

        assert self.kv.get('a') == {'refs': []}

    def test_keys_skip_expired(self):
        self.kv.set('a', 1, ttl=5)
        self.kv.set('b', 2)
        self.clock.now += 5

        assert self.kv.keys() == ['b']


class TestSqliteKVStore(KVStoreContract):

    @pytest.fixture(autouse=True)
    def _store(self, tmp_path):
        self.db_path = str(tmp_path / 'state.db')
        self.clock = FakeClock()
        self.kv = SqliteKVStore(self.db_path, clock=self.clock)

    def test_shared_between_instances(self):
        """Test: Otra instancia sobre el mismo fichero ve los datos"""
        self.kv.set('checkpoint', {'batch': 3})

        other = SqliteKVStore(self.db_path, clock=self.clock)

        assert other.get('checkpoint') == {'batch': 3}

    def test_corrupt_entry_reads_as_missing(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO kv_store (key, value_json, expires_at) VALUES (?, ?, NULL)",
                ('broken', '{"batch": '),
            )
            conn.commit()

        assert self.kv.get('broken') is None

    def test_connections_are_closed(self):
        """Test: Cada operación cierra su conexión a SQLite"""
        opened = []
        real_connect = sqlite3.connect

        def tracking_connect(*args, **kwargs):
            conn = real_connect(*args, **kwargs)
            opened.append(conn)
            return conn

        with patch('verial_sync.services.kv_store.sqlite3.connect', side_effect=tracking_connect):
            self.kv.set('a', 1)
            self.kv.get('a')
            self.kv.add('b', 2)
            self.kv.delete('a')

        assert len(opened) == 4
        for conn in opened:
            with pytest.raises(sqlite3.ProgrammingError):
                conn.execute('SELECT 1')

    def test_purge_expired(self):
        self.kv.set('a', 1, ttl=5)
        self.kv.set('b', 2, ttl=50)
        self.kv.set('c', 3)
        self.clock.now += 10

        assert self.kv.purge_expired() == 1
        assert self.kv.get('b') == 2
        assert self.kv.get('c') == 3


class TestCacheStore:
    """Test suite para CacheStore"""

    def setup_method(self):
        self.cache = CacheStore(InMemoryKVStore(), CacheConfig(namespace='test_cache'))

    def test_key_is_stable_for_param_order(self):
        key_a = self.cache.make_key('GET', 'GetArticulosWS', '18', {'inicio': 1, 'fin': 100})
        key_b = self.cache.make_key('get', '/GetArticulosWS/', '18', {'fin': 100, 'inicio': 1})

        assert key_a == key_b
        assert key_a.startswith('test_cache:get:GetArticulosWS:18:')

    def test_key_depends_on_session_and_params(self):
        base = self.cache.make_key('GET', 'GetArticulosWS', '18', {'inicio': 1})

        assert base != self.cache.make_key('GET', 'GetArticulosWS', '19', {'inicio': 1})
        assert base != self.cache.make_key('GET', 'GetArticulosWS', '18', {'inicio': 2})
        assert base != self.cache.make_key('HEAD', 'GetArticulosWS', '18', {'inicio': 1})

    def test_stats(self):
        """Test: Contadores de aciertos, fallos y escrituras"""
        self.cache.get('k')
        self.cache.set('k', {'body': []}, ttl=60)
        self.cache.get('k')
        self.cache.get('k')

        stats = self.cache.stats()
        assert stats['hits'] == 2
        assert stats['misses'] == 1
        assert stats['sets'] == 1
        assert stats['hit_ratio'] == pytest.approx(66.67)

        self.cache.reset_stats()
        assert self.cache.stats() == {'hits': 0, 'misses': 0, 'sets': 0, 'hit_ratio': 0.0}

    def test_none_is_not_cached(self):
        assert self.cache.set('k', None, ttl=60) is False
        assert self.cache.stats()['sets'] == 0

    def test_ttl_per_endpoint(self):
        assert self.cache.ttl_for('GetPaisesWS') == 86400
        assert self.cache.ttl_for('/GetStockArticulosWS') == 300
        assert self.cache.ttl_for('GetClientesWS') == 3600

    def test_stable_hash(self):
        assert stable_hash({'b': 1, 'a': [1, 2]}) == stable_hash({'a': [1, 2], 'b': 1})
        assert stable_hash({'a': 1}) != stable_hash({'a': '1'})
