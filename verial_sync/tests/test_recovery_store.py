# -*- coding: utf-8 -*-
"""
Tests para RecoveryStore y SyncLock
"""

import pytest

from verial_sync.models import Checkpoint, CheckpointStatus
from verial_sync.services.kv_store import InMemoryKVStore
from verial_sync.services.recovery_store import (
    RECOVERY_PREFIX,
    RecoveryStore,
    filter_fingerprint,
    normalize_filters,
)
from verial_sync.services.sync_lock import SyncLock


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_checkpoint(**values):
    data = {'entity': 'productos', 'filter_fingerprint': '', 'batch_size': 20, 'total_items': 100}
    data.update(values)
    return Checkpoint(**data)


class TestRecoveryStore:
    """Test suite para RecoveryStore"""

    def setup_method(self):
        self.clock = FakeClock()
        self.kv = InMemoryKVStore(clock=self.clock)
        self.store = RecoveryStore(self.kv)
        self.filters = {'fecha': '2024-01-01'}

    def test_save_and_load(self):
        self.store.save('productos', self.filters, make_checkpoint(last_batch_index=2, items_processed=40))

        checkpoint = self.store.load('productos', self.filters)

        assert checkpoint.last_batch_index == 2
        assert checkpoint.items_processed == 40
        assert checkpoint.filter_fingerprint == filter_fingerprint('productos', self.filters)

    def test_entity_alias_shares_checkpoint(self):
        self.store.save('products', self.filters, make_checkpoint(last_batch_index=1))

        assert self.store.load('productos', self.filters).last_batch_index == 1

    def test_different_filters_means_no_checkpoint(self):
        """Test: Una huella distinta se trata como ausencia de checkpoint"""
        self.store.save('productos', self.filters, make_checkpoint(last_batch_index=2))

        assert self.store.load('productos', {'fecha': '2024-02-01'}) is None
        assert self.store.peek('productos').last_batch_index == 2

    def test_last_write_wins(self):
        self.store.save('productos', self.filters, make_checkpoint(last_batch_index=1))
        self.store.save('productos', {'fecha': '2024-02-01'}, make_checkpoint(last_batch_index=5))

        assert self.store.load('productos', self.filters) is None
        assert self.store.load('productos', {'fecha': '2024-02-01'}).last_batch_index == 5

    def test_corrupt_entry_is_missing(self):
        self.kv.set(RECOVERY_PREFIX + 'productos', {'last_batch_index': 'many'})

        assert self.store.load('productos', self.filters) is None
        assert self.store.peek('productos') is None

    def test_expires_after_ttl(self):
        """Test: El checkpoint caduca a las 24 horas"""
        self.store.save('productos', self.filters, make_checkpoint())

        self.clock.now += 86400

        assert self.store.load('productos', self.filters) is None

    def test_clear(self):
        self.store.save('productos', self.filters, make_checkpoint())

        assert self.store.clear('productos') is True
        assert self.store.load('productos', self.filters) is None

    def test_has_recovery_point_ignores_completed(self):
        self.store.save('productos', None, make_checkpoint(status=CheckpointStatus.COMPLETED))
        assert self.store.has_recovery_point('productos') is False

        self.store.save('productos', None, make_checkpoint(status=CheckpointStatus.CANCELLED))
        assert self.store.has_recovery_point('productos') is True

    def test_recovery_message(self):
        self.store.save('productos', self.filters,
                        make_checkpoint(last_batch_index=3, items_processed=60))

        message = self.store.recovery_message('productos', self.filters)

        assert 'Último lote procesado: 3' in message
        assert 'Elementos procesados: 60/100' in message
        assert self.store.recovery_message('clientes') == ''

    def test_cancel_flag(self):
        assert self.store.is_cancel_requested('productos') is False

        self.store.request_cancel('productos')
        assert self.store.is_cancel_requested('productos') is True
        assert self.store.is_cancel_requested('clientes') is False

        self.store.clear_cancel('productos')
        assert self.store.is_cancel_requested('productos') is False


class TestFilterFingerprint:

    def test_empty_values_are_ignored(self):
        assert normalize_filters({'fecha': '2024-01-01', 'hora': None, 'categoria': ''}) == {
            'fecha': '2024-01-01'
        }
        assert filter_fingerprint('productos', {'fecha': '2024-01-01', 'hora': None}) == \
            filter_fingerprint('productos', {'fecha': '2024-01-01'})

    def test_order_does_not_matter(self):
        assert filter_fingerprint('productos', {'a': 1, 'b': [3, 1]}) == \
            filter_fingerprint('productos', {'b': [1, 3], 'a': 1})

    def test_entity_is_part_of_fingerprint(self):
        assert filter_fingerprint('productos', None) != filter_fingerprint('clientes', None)
        assert filter_fingerprint('products', None) == filter_fingerprint('productos', None)


class TestCheckpointProgress:

    def test_progress_percent(self):
        checkpoint = make_checkpoint(last_batch_index=2, batch_item_offset=5, batch_size=10, total_items=100)

        assert checkpoint.items_handled == 25
        assert checkpoint.progress_percent == 25.0

    def test_progress_without_total(self):
        assert make_checkpoint(total_items=0).progress_percent == 0.0

    def test_eta(self):
        """Test: ETA a partir del ritmo observado"""
        checkpoint = make_checkpoint(
            last_batch_index=1, batch_size=25, total_items=100, started_at=1000.0,
        )

        assert checkpoint.eta_seconds(now=1050.0) == 150.0
        assert make_checkpoint(started_at=1000.0).eta_seconds(now=1010.0) is None


class TestSyncLock:
    """Test suite para SyncLock"""

    def setup_method(self):
        self.kv = InMemoryKVStore()
        self.lock = SyncLock(self.kv)

    def test_acquire_and_release(self):
        assert self.lock.acquire('productos') is True
        assert self.lock.is_locked('productos') is True

        assert self.lock.release('productos') is True
        assert self.lock.is_locked('productos') is False

    def test_second_acquire_fails(self):
        """Test: Otra ejecución no puede adquirir el bloqueo"""
        other = SyncLock(self.kv)

        assert self.lock.acquire('productos') is True
        assert other.acquire('products') is False
        assert other.acquire('clientes') is True

    def test_release_only_own_lock(self):
        other = SyncLock(self.kv)
        self.lock.acquire('productos')

        assert other.release('productos') is False
        assert self.lock.is_locked('productos') is True

        assert other.release('productos', force=True) is True
        assert self.lock.is_locked('productos') is False

    def test_expired_lock_is_reclaimed(self):
        clock = FakeClock()
        kv = InMemoryKVStore(clock=clock)
        first, second = SyncLock(kv), SyncLock(kv)

        first.acquire('productos', timeout=60)
        clock.now += 61

        assert second.acquire('productos') is True

    def test_lock_info(self):
        assert self.lock.get_lock_info('productos') is None

        self.lock.acquire('productos', timeout=120)
        info = self.lock.get_lock_info('productos')

        assert info['entity'] == 'productos'
        assert info['timeout'] == 120
        assert info['is_mine'] is True
        assert info['age'] >= 0

    def test_hold_context_manager(self):
        with self.lock.hold('productos') as acquired:
            assert acquired is True
            assert self.lock.is_locked('productos')

        assert not self.lock.is_locked('productos')

    def test_hold_releases_on_error(self):
        with pytest.raises(RuntimeError):
            with self.lock.hold('productos'):
                raise RuntimeError('boom')

        assert not self.lock.is_locked('productos')

    def test_hold_when_already_locked(self):
        SyncLock(self.kv).acquire('productos')

        with self.lock.hold('productos') as acquired:
            assert acquired is False

        assert self.lock.is_locked('productos')
