from __future__ import annotations

import json
import time

from esxivm.cache import SCHEMA_VERSION, StateCache, cache_path_for
from esxivm.config import CACHE_BYPASS
from esxivm.model import (
    ActualVM,
    AssetRecord,
    Collision,
    FleetMap,
    Reachability,
)

ISO = '/vmfs/volumes/datastore1/.iso/debian.iso'


def _fleet(captured_at: float | None = None) -> FleetMap:
    web = ActualVM(
        name='web',
        host='esx1',
        vmid='3',
        vmx_path='/vmfs/volumes/datastore1/web/web.vmx',
        datastore='datastore1',
        power_state='on',
        attrs={'memory_mb': '2048', 'iso': ISO},
        asset_checksums={ISO: 'abc'},
    )
    dup1 = ActualVM(name='dup', host='esx1', vmid='4')
    dup2 = ActualVM(name='dup', host='esx2', vmid='9')
    return FleetMap(
        vms={'web': web},
        collisions={'dup': Collision('dup', ['esx1', 'esx2'], [dup1, dup2])},
        assets={'esx1': [AssetRecord(ISO, 'abc')]},
        host_status={
            'esx1': Reachability.REACHABLE,
            'esx2': Reachability.REACHABLE,
            'esx3': Reachability.UNREACHABLE,
        },
        probed_hosts=['esx1', 'esx2'],
        partial=True,
        captured_at=time.time() if captured_at is None else captured_at,
    )


def test_store_then_load_keeps_every_field(tmp_path) -> None:
    cache = StateCache(tmp_path / 'fleet.json')
    fleet = _fleet()
    cache.store(fleet)
    loaded, ok = cache.load(300)
    assert ok
    assert loaded == fleet
    assert loaded.host_status['esx3'] is Reachability.UNREACHABLE
    assert not list(tmp_path.glob('*.tmp'))


def test_bypass_always_misses(tmp_path) -> None:
    cache = StateCache(tmp_path / 'fleet.json')
    cache.store(_fleet())
    assert cache.load(CACHE_BYPASS) == (None, False)
    assert cache.load(300)[1]


def test_expired_entry_is_a_miss(tmp_path) -> None:
    cache = StateCache(tmp_path / 'fleet.json')
    cache.store(_fleet(captured_at=time.time() - 100))
    assert cache.load(50) == (None, False)
    assert cache.load(500)[1]


def test_corrupt_or_foreign_record_is_a_miss(tmp_path) -> None:
    path = tmp_path / 'fleet.json'
    cache = StateCache(path)
    assert cache.load(300) == (None, False)
    path.write_text('{not json', encoding='utf-8')
    assert cache.load(300) == (None, False)
    path.write_text(json.dumps({'schema_version': SCHEMA_VERSION}), encoding='utf-8')
    assert cache.load(300) == (None, False)
    path.write_text(json.dumps({'schema_version': 0, 'fleet': {}}), encoding='utf-8')
    assert cache.load(300) == (None, False)


def test_invalidate(tmp_path) -> None:
    cache = StateCache(tmp_path / 'fleet.json')
    cache.store(_fleet())
    cache.invalidate()
    assert cache.load(300) == (None, False)
    cache.invalidate()


def test_cache_path_is_per_config(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr('esxivm.cache._appdir', lambda name, kind: tmp_path)
    a = cache_path_for(tmp_path / 'a.toml')
    b = cache_path_for(tmp_path / 'b.toml')
    assert a != b
    assert a == cache_path_for(tmp_path / 'a.toml')
    assert a.parent == tmp_path
    assert a.name.startswith('fleet-')
